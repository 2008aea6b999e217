"""Permission service: tenant-scoped permission / role provisioning.

Seeding is an upsert by (tenant_id, name) against the fixed catalogs in
permission_catalog, so it is safe to re-run. migrate_user_roles() moves
user-clinic links off the legacy single global role string.

Functions flush but do NOT commit; the caller commits.
"""

import logging
import re

from tenant_billing.errors import Conflict, Forbidden, NotFound, ValidationError
from tenant_billing.extensions import db
from tenant_billing.models.rbac import (
    Permission,
    Role,
    RolePermission,
    UserClinic,
    UserClinicRole,
)
from tenant_billing.models.tenant import Clinic, Tenant
from tenant_billing.services.permission_catalog import (
    DEFAULT_ROLE,
    PERMISSION_CATALOG,
    ROLE_CATALOG,
    role_permission_names,
)

logger = logging.getLogger(__name__)


def _apply_changes(record, values):
    """Set values on record; return True if anything actually changed."""
    changed = False
    for key, value in values.items():
        if getattr(record, key) != value:
            setattr(record, key, value)
            changed = True
    return changed


def _empty_report(tenants, per_tenant):
    return {
        "created": 0,
        "updated": 0,
        "tenants": len(tenants),
        "per_tenant": per_tenant,
        "total": 0,
        "by_tenant": {},
    }


# ──────────────────────────────────────────────
# Seeding
# ──────────────────────────────────────────────

def seed_permissions(tenants):
    """Upsert every catalog permission for each tenant."""
    report = _empty_report(tenants, len(PERMISSION_CATALOG))

    for tenant in tenants:
        existing = {
            p.name: p for p in Permission.query.filter_by(tenant_id=tenant.id)
        }
        created = updated = 0
        for template in PERMISSION_CATALOG:
            values = {
                "display_name": template["display_name"],
                "description": template["description"],
                "module": template["module"],
            }
            permission = existing.get(template["name"])
            if permission is None:
                db.session.add(Permission(
                    tenant_id=tenant.id, name=template["name"], **values
                ))
                created += 1
            elif _apply_changes(permission, values):
                updated += 1
        db.session.flush()

        report["by_tenant"][tenant.id] = {"created": created, "updated": updated}
        report["created"] += created
        report["updated"] += updated
        logger.info(
            f"Permissions for tenant {tenant.name}: {created} created, {updated} updated"
        )

    report["total"] = Permission.query.filter(
        Permission.tenant_id.in_([t.id for t in tenants])
    ).count() if tenants else 0
    return report


def seed_roles(tenants):
    """Upsert every catalog role for each tenant and top up its grants.

    Grants are only added, never removed, so a tenant's extra grants on a
    system role survive a re-seed.
    """
    report = _empty_report(tenants, len(ROLE_CATALOG))
    report["grants_added"] = 0

    for tenant in tenants:
        permissions = {
            p.name: p for p in Permission.query.filter_by(tenant_id=tenant.id)
        }
        existing = {r.name: r for r in Role.query.filter_by(tenant_id=tenant.id)}
        created = updated = grants_added = 0

        for template in ROLE_CATALOG:
            values = {
                "display_name": template["display_name"],
                "description": template["description"],
                "priority": template["priority"],
                "is_system_role": True,
                "can_be_deleted": False,
            }
            role = existing.get(template["name"])
            if role is None:
                role = Role(tenant_id=tenant.id, name=template["name"], is_active=True, **values)
                db.session.add(role)
                created += 1
            elif _apply_changes(role, values):
                updated += 1

            granted = {g.permission_id for g in role.grants}
            for name in role_permission_names(template):
                permission = permissions.get(name)
                if permission is None:
                    logger.warning(
                        f"Role {template['name']}: permission {name} missing "
                        f"for tenant {tenant.id}; seed permissions first"
                    )
                    continue
                if permission.id not in granted:
                    role.grants.append(RolePermission(permission=permission))
                    granted.add(permission.id)
                    grants_added += 1
        db.session.flush()

        report["by_tenant"][tenant.id] = {
            "created": created, "updated": updated, "grants_added": grants_added,
        }
        report["created"] += created
        report["updated"] += updated
        report["grants_added"] += grants_added
        logger.info(
            f"Roles for tenant {tenant.name}: {created} created, {updated} updated, "
            f"{grants_added} grants added"
        )

    report["total"] = Role.query.filter(
        Role.tenant_id.in_([t.id for t in tenants]),
        Role.is_system_role.is_(True),
    ).count() if tenants else 0
    return report


def _ensure(tenants):
    permission_result = seed_permissions(tenants)
    role_result = seed_roles(tenants)
    return {
        "permissions_created": permission_result["created"],
        "permissions_updated": permission_result["updated"],
        "roles_created": role_result["created"],
        "roles_updated": role_result["updated"],
    }


def ensure_tenant_permissions(tenant_id):
    """Make sure one tenant has the full default permission / role set."""
    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        raise NotFound(f"Tenant not found: {tenant_id}")
    return _ensure([tenant])


def ensure_multiple_tenant_permissions(tenant_ids):
    tenant_ids = list(dict.fromkeys(tenant_ids))
    tenants = Tenant.query.filter(Tenant.id.in_(tenant_ids)).all() if tenant_ids else []
    found = {t.id for t in tenants}
    missing = [tid for tid in tenant_ids if tid not in found]
    if missing:
        raise NotFound(f"Some tenants not found: {', '.join(missing)}")
    return _ensure(tenants)


# ──────────────────────────────────────────────
# Legacy role migration
# ──────────────────────────────────────────────

def _system_role(tenant_id, name):
    return Role.query.filter_by(
        tenant_id=tenant_id, name=name, is_system_role=True
    ).first()


def _migrate_link(link):
    """Assign the tenant role matching link.legacy_role. Returns True if
    migrated, False if the link had to be skipped."""
    if not link.legacy_role:
        logger.info(f"Skipping user {link.user_id}: no legacy role")
        return False

    clinic = db.session.get(Clinic, link.clinic_id)
    if not clinic:
        logger.info(f"Skipping user {link.user_id}: clinic {link.clinic_id} not found")
        return False

    role = _system_role(clinic.tenant_id, link.legacy_role)
    if role is None:
        logger.warning(
            f"Role '{link.legacy_role}' not found for tenant {clinic.tenant_id}; "
            f"assigning '{DEFAULT_ROLE}' to user {link.user_id}"
        )
        role = _system_role(clinic.tenant_id, DEFAULT_ROLE)
    if role is None:
        logger.warning(f"Skipping user {link.user_id}: tenant {clinic.tenant_id} has no roles")
        return False

    link.role_assignments.append(UserClinicRole(
        role=role,
        is_primary=True,
        assigned_by_user_id=link.user_id,  # self-assigned during migration
    ))
    link.audit_permission_change(
        "role_migrated",
        link.user_id,
        before={"legacy_role": link.legacy_role},
        after={
            "role_id": role.id,
            "role_name": role.name,
            "tenant_id": clinic.tenant_id,
        },
    )
    return True


def migrate_user_roles():
    """Convert user-clinic links that have no role assignments yet.

    Each link runs in its own savepoint; a failure is counted as skipped.
    """
    links = UserClinic.query.filter(~UserClinic.role_assignments.any()).all()
    logger.info(f"Found {len(links)} user-clinic links to migrate")

    migrated = skipped = 0
    for link in links:
        try:
            with db.session.begin_nested():
                ok = _migrate_link(link)
        except Exception as e:
            logger.error(f"Error migrating user {link.user_id}: {e}", exc_info=True)
            ok = False
        if ok:
            migrated += 1
            logger.info(f"Migrated user {link.user_id} from '{link.legacy_role}'")
        else:
            skipped += 1

    return {"migrated": migrated, "skipped": skipped}


def seed_permission_system(tenants):
    """Permissions, then roles, then the legacy migration."""
    if not tenants:
        raise ValidationError("No tenants provided for permission system setup")

    permissions = seed_permissions(tenants)
    roles = seed_roles(tenants)
    migration = migrate_user_roles()
    return {"permissions": permissions, "roles": roles, "migration": migration}


# ──────────────────────────────────────────────
# Tenant role management
# ──────────────────────────────────────────────

def _normalize_role_name(name):
    return re.sub(r"[^a-z0-9]+", "_", (name or "").strip().lower()).strip("_")


def list_roles(tenant_id):
    if not db.session.get(Tenant, tenant_id):
        raise NotFound("Tenant not found")
    return (
        Role.query.filter_by(tenant_id=tenant_id)
        .order_by(Role.priority.desc(), Role.name)
        .all()
    )


def create_custom_role(tenant_id, name, display_name, permission_names,
                       actor=None, clinic_id=None, description=None):
    """Create a tenant role granting the named tenant permissions."""
    if not db.session.get(Tenant, tenant_id):
        raise NotFound("Tenant not found")

    errors = []
    role_name = _normalize_role_name(name)
    if not role_name:
        errors.append({"field": "name", "message": "Role name is required"})
    elif len(role_name) > 100:
        errors.append({"field": "name", "message": "Role name must be at most 100 characters"})
    if not display_name:
        errors.append({"field": "display_name", "message": "Display name is required"})

    if clinic_id:
        clinic = db.session.get(Clinic, clinic_id)
        if not clinic or clinic.tenant_id != tenant_id:
            errors.append({"field": "clinic_id", "message": "Clinic does not belong to this tenant"})

    permission_names = list(dict.fromkeys(permission_names or []))
    permissions = Permission.query.filter(
        Permission.tenant_id == tenant_id,
        Permission.name.in_(permission_names),
    ).all() if permission_names else []
    unknown = sorted(set(permission_names) - {p.name for p in permissions})
    if unknown:
        errors.append({
            "field": "permissions",
            "message": f"Unknown permissions: {', '.join(unknown)}",
        })

    if role_name and Role.query.filter_by(tenant_id=tenant_id, name=role_name).first():
        errors.append({"field": "name", "message": f"Role '{role_name}' already exists"})

    if errors:
        raise ValidationError("Validation failed", details=errors)

    actor_id = actor.id if actor else None
    role = Role(
        tenant_id=tenant_id,
        clinic_id=clinic_id,
        name=role_name,
        display_name=display_name.strip(),
        description=description,
        is_system_role=False,
        is_active=True,
        priority=0,
        can_be_deleted=True,
        created_by_user_id=actor_id,
    )
    for permission in permissions:
        role.grants.append(RolePermission(
            permission=permission, granted_by_user_id=actor_id
        ))
    db.session.add(role)
    db.session.flush()
    logger.info(f"Created role {role_name} for tenant {tenant_id}")
    return role


def assign_roles(user_clinic_id, role_ids, actor=None, primary_role_id=None):
    """Replace a user-clinic link's role set and audit the change."""
    link = db.session.get(UserClinic, user_clinic_id)
    if not link:
        raise NotFound("User clinic link not found")
    role_ids = list(dict.fromkeys(role_ids or []))
    if not role_ids:
        raise ValidationError("At least one role is required")

    tenant_id = link.clinic.tenant_id
    roles = Role.query.filter(
        Role.id.in_(role_ids),
        Role.tenant_id == tenant_id,
        Role.is_active.is_(True),
    ).all()
    found = {r.id for r in roles}
    missing = [rid for rid in role_ids if rid not in found]
    if missing:
        raise ValidationError(
            "Validation failed",
            details=[{"field": "role_ids", "message": f"Roles not available in this tenant: {', '.join(missing)}"}],
        )
    primary_role_id = primary_role_id or role_ids[0]
    if primary_role_id not in found:
        raise ValidationError("Primary role must be one of the assigned roles")

    before = sorted(a.role.name for a in link.role_assignments)
    actor_id = actor.id if actor else None

    current = {a.role_id: a for a in link.role_assignments}
    for role_id, assignment in current.items():
        if role_id not in found:
            link.role_assignments.remove(assignment)
    for role in roles:
        assignment = current.get(role.id)
        if assignment is None:
            assignment = UserClinicRole(role=role, assigned_by_user_id=actor_id)
            link.role_assignments.append(assignment)
        assignment.is_primary = role.id == primary_role_id

    link.audit_permission_change(
        "roles_changed",
        actor_id,
        before={"roles": before},
        after={"roles": sorted(r.name for r in roles), "primary": primary_role_id},
    )
    db.session.flush()
    return link


def delete_role(tenant_id, role_id):
    role = Role.query.filter_by(id=role_id, tenant_id=tenant_id).first()
    if not role:
        raise NotFound("Role not found")
    if role.is_system_role or not role.can_be_deleted:
        raise Forbidden("System roles cannot be deleted")
    in_use = UserClinicRole.query.filter_by(role_id=role.id).count()
    if in_use:
        raise Conflict(f"Role is assigned to {in_use} users")
    db.session.delete(role)
    db.session.flush()
    logger.info(f"Deleted role {role.name} from tenant {tenant_id}")
