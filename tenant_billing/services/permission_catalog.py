"""Default permission and role templates seeded into every tenant.

Each permission is (name, display_name, description, module). Each role
lists the permission names it is granted; "*" grants the whole catalog.
"""

_CRUD_MODULES = [
    ("patients", "Patients"),
    ("appointments", "Appointments"),
    ("medical_records", "Medical Records"),
    ("prescriptions", "Prescriptions"),
    ("invoices", "Invoices"),
    ("inventory", "Inventory"),
    ("users", "Users"),
]

_ACTIONS = [
    ("create", "Create", "Create new {label_lower}"),
    ("read", "View", "View {label_lower}"),
    ("update", "Edit", "Edit existing {label_lower}"),
    ("delete", "Delete", "Delete {label_lower}"),
]


def _crud_permissions():
    perms = []
    for module, label in _CRUD_MODULES:
        for action, verb, desc in _ACTIONS:
            perms.append({
                "name": f"{module}.{action}",
                "display_name": f"{verb} {label}",
                "description": desc.format(label_lower=label.lower()),
                "module": module,
            })
    return perms


PERMISSION_CATALOG = _crud_permissions() + [
    {
        "name": "payments.process",
        "display_name": "Process Payments",
        "description": "Record and process patient payments",
        "module": "invoices",
    },
    {
        "name": "reports.read",
        "display_name": "View Reports",
        "description": "View clinical and financial reports",
        "module": "reports",
    },
    {
        "name": "reports.export",
        "display_name": "Export Reports",
        "description": "Export reports to CSV or PDF",
        "module": "reports",
    },
    {
        "name": "roles.manage",
        "display_name": "Manage Roles",
        "description": "Create roles and assign them to users",
        "module": "roles",
    },
    {
        "name": "settings.manage",
        "display_name": "Manage Settings",
        "description": "Change clinic and organization settings",
        "module": "settings",
    },
    {
        "name": "subscription.read",
        "display_name": "View Subscription",
        "description": "View the organization's subscription and plan",
        "module": "settings",
    },
]

PERMISSION_NAMES = {p["name"] for p in PERMISSION_CATALOG}


ROLE_CATALOG = [
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "Full access to every module in the organization",
        "priority": 100,
        "permissions": ["*"],
    },
    {
        "name": "doctor",
        "display_name": "Doctor",
        "description": "Clinical staff with full patient care access",
        "priority": 80,
        "permissions": [
            "patients.create", "patients.read", "patients.update",
            "appointments.create", "appointments.read", "appointments.update",
            "medical_records.create", "medical_records.read", "medical_records.update",
            "prescriptions.create", "prescriptions.read", "prescriptions.update",
            "prescriptions.delete",
            "invoices.read",
            "reports.read",
        ],
    },
    {
        "name": "nurse",
        "display_name": "Nurse",
        "description": "Clinical support staff",
        "priority": 60,
        "permissions": [
            "patients.read", "patients.update",
            "appointments.read", "appointments.update",
            "medical_records.create", "medical_records.read", "medical_records.update",
            "prescriptions.read",
            "inventory.read", "inventory.update",
        ],
    },
    {
        "name": "receptionist",
        "display_name": "Receptionist",
        "description": "Front desk: registration, scheduling and payments",
        "priority": 40,
        "permissions": [
            "patients.create", "patients.read", "patients.update",
            "appointments.create", "appointments.read", "appointments.update",
            "appointments.delete",
            "invoices.create", "invoices.read",
            "payments.process",
        ],
    },
    {
        "name": "accountant",
        "display_name": "Accountant",
        "description": "Billing, payments and financial reporting",
        "priority": 50,
        "permissions": [
            "patients.read",
            "invoices.create", "invoices.read", "invoices.update", "invoices.delete",
            "payments.process",
            "reports.read", "reports.export",
            "subscription.read",
        ],
    },
    {
        "name": "staff",
        "display_name": "Staff",
        "description": "Basic read access; fallback role for migrated users",
        "priority": 10,
        "permissions": [
            "patients.read",
            "appointments.read",
        ],
    },
]

DEFAULT_ROLE = "staff"


def role_permission_names(template):
    if "*" in template["permissions"]:
        return sorted(PERMISSION_NAMES)
    return list(template["permissions"])
