"""Tenant-scoped role / permission models.

- Permission: a named capability, unique per tenant (not globally).
- Role: a named bundle of permissions, unique per tenant. System roles are
  seeded from the catalog and cannot be deleted by the tenant.
- RolePermission: grant of a permission to a role.
- UserClinic: links a user to a clinic. legacy_role holds the old single
  global role string until migrate_user_roles() converts it.
- UserClinicRole: role assignment for a user-clinic link.
- PermissionAuditEntry: one row per role change on a user-clinic link.
"""

import uuid

from tenant_billing.extensions import db
from tenant_billing.utils import utc_now


class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenants.id"), nullable=False, index=True
    )
    name = db.Column(db.String(100), nullable=False)  # e.g. "patients.read"
    display_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    module = db.Column(db.String(50), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_permission_tenant_name"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "module": self.module,
        }

    def __repr__(self):
        return f"<Permission {self.name} tenant={self.tenant_id}>"


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenants.id"), nullable=False, index=True
    )
    clinic_id = db.Column(
        db.String(36), db.ForeignKey("clinics.id"), nullable=True
    )  # set on custom roles created for one clinic
    name = db.Column(db.String(100), nullable=False)
    display_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    is_system_role = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    priority = db.Column(db.Integer, default=0)
    can_be_deleted = db.Column(db.Boolean, default=True)
    created_by_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
    )

    # --- Relationships ---
    grants = db.relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
    )

    @property
    def permission_names(self):
        return sorted(g.permission.name for g in self.grants)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "clinic_id": self.clinic_id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_system_role": bool(self.is_system_role),
            "is_active": bool(self.is_active),
            "priority": self.priority,
            "can_be_deleted": bool(self.can_be_deleted),
            "permissions": self.permission_names,
        }

    def __repr__(self):
        return f"<Role {self.name} tenant={self.tenant_id}>"


class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    role_id = db.Column(
        db.String(36), db.ForeignKey("roles.id"), nullable=False, index=True
    )
    permission_id = db.Column(
        db.String(36), db.ForeignKey("permissions.id"), nullable=False
    )
    granted_by_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    granted_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "role_id", "permission_id", name="uq_role_permission"
        ),
    )

    # --- Relationships ---
    role = db.relationship("Role", back_populates="grants")
    permission = db.relationship("Permission")


class UserClinic(db.Model):
    __tablename__ = "user_clinics"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    clinic_id = db.Column(
        db.String(36), db.ForeignKey("clinics.id"), nullable=False, index=True
    )
    legacy_role = db.Column(db.String(50), nullable=True)  # pre-RBAC role name
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "clinic_id", name="uq_user_clinic"),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="clinic_links")
    clinic = db.relationship("Clinic", back_populates="user_links")
    role_assignments = db.relationship(
        "UserClinicRole",
        back_populates="user_clinic",
        cascade="all, delete-orphan",
    )
    audit_entries = db.relationship(
        "PermissionAuditEntry",
        back_populates="user_clinic",
        lazy="dynamic",
        order_by="PermissionAuditEntry.created_at",
    )

    @property
    def primary_role(self):
        for assignment in self.role_assignments:
            if assignment.is_primary:
                return assignment.role
        return None

    def audit_permission_change(self, action, actor_user_id, before=None, after=None):
        entry = PermissionAuditEntry(
            user_clinic=self,
            action=action,
            actor_user_id=actor_user_id,
            before=before or {},
            after=after or {},
        )
        db.session.add(entry)
        return entry

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "clinic_id": self.clinic_id,
            "roles": [
                {
                    "role_id": a.role_id,
                    "name": a.role.name,
                    "is_primary": bool(a.is_primary),
                }
                for a in self.role_assignments
            ],
        }

    def __repr__(self):
        return f"<UserClinic user={self.user_id} clinic={self.clinic_id}>"


class UserClinicRole(db.Model):
    __tablename__ = "user_clinic_roles"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_clinic_id = db.Column(
        db.String(36), db.ForeignKey("user_clinics.id"), nullable=False, index=True
    )
    role_id = db.Column(
        db.String(36), db.ForeignKey("roles.id"), nullable=False
    )
    is_primary = db.Column(db.Boolean, default=False)
    assigned_by_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    assigned_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "user_clinic_id", "role_id", name="uq_user_clinic_role"
        ),
    )

    # --- Relationships ---
    user_clinic = db.relationship("UserClinic", back_populates="role_assignments")
    role = db.relationship("Role")


class PermissionAuditEntry(db.Model):
    __tablename__ = "permission_audit_entries"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_clinic_id = db.Column(
        db.String(36), db.ForeignKey("user_clinics.id"), nullable=False, index=True
    )
    action = db.Column(db.String(50), nullable=False)  # role_migrated | roles_changed
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    before = db.Column(db.JSON, default=dict)
    after = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    # --- Relationships ---
    user_clinic = db.relationship("UserClinic", back_populates="audit_entries")

    def __repr__(self):
        return f"<PermissionAuditEntry {self.action} user_clinic={self.user_clinic_id}>"
