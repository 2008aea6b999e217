"""Tenant administration blueprint - /api/tenants/*, /api/user-clinics/*

Route Map:
  POST   /api/tenants/<id>/permissions/seed   - Ensure default permissions + roles
  GET    /api/tenants/<id>/roles              - List tenant roles
  POST   /api/tenants/<id>/roles              - Create custom role
  DELETE /api/tenants/<id>/roles/<role_id>    - Delete custom role
  PUT    /api/user-clinics/<id>/roles         - Replace a user's clinic roles

All routes protected by @super_admin_required.
"""

import logging

from flask import Blueprint, request
from flask_login import current_user

from tenant_billing.decorators import super_admin_required
from tenant_billing.errors import ValidationError
from tenant_billing.extensions import db
from tenant_billing.services import permission_service
from tenant_billing.utils import respond

logger = logging.getLogger(__name__)

tenants_bp = Blueprint("tenants", __name__, url_prefix="/api")


@tenants_bp.route("/tenants/<tenant_id>/permissions/seed", methods=["POST"])
@super_admin_required
def seed_tenant_permissions(tenant_id):
    result = permission_service.ensure_tenant_permissions(tenant_id)
    db.session.commit()
    logger.info(f"Permissions ensured for tenant {tenant_id} by {current_user.email}")
    return respond(result, "Tenant permissions are up to date")


@tenants_bp.route("/tenants/<tenant_id>/roles", methods=["GET"])
@super_admin_required
def list_roles(tenant_id):
    roles = permission_service.list_roles(tenant_id)
    return respond([r.to_dict() for r in roles], "Roles retrieved successfully")


@tenants_bp.route("/tenants/<tenant_id>/roles", methods=["POST"])
@super_admin_required
def create_role(tenant_id):
    data = request.get_json(silent=True) or {}
    permissions = data.get("permissions") or []
    if not isinstance(permissions, list):
        raise ValidationError("permissions must be a list of permission names")

    role = permission_service.create_custom_role(
        tenant_id,
        name=data.get("name"),
        display_name=(data.get("display_name") or "").strip(),
        permission_names=permissions,
        actor=current_user,
        clinic_id=data.get("clinic_id"),
        description=data.get("description"),
    )
    db.session.commit()
    return respond(role.to_dict(), "Role created successfully", 201)


@tenants_bp.route("/tenants/<tenant_id>/roles/<role_id>", methods=["DELETE"])
@super_admin_required
def delete_role(tenant_id, role_id):
    permission_service.delete_role(tenant_id, role_id)
    db.session.commit()
    return respond(None, "Role deleted successfully")


@tenants_bp.route("/user-clinics/<user_clinic_id>/roles", methods=["PUT"])
@super_admin_required
def assign_roles(user_clinic_id):
    data = request.get_json(silent=True) or {}
    role_ids = data.get("role_ids")
    if not isinstance(role_ids, list):
        raise ValidationError("role_ids must be a list of role ids")

    link = permission_service.assign_roles(
        user_clinic_id,
        role_ids,
        actor=current_user,
        primary_role_id=data.get("primary_role_id"),
    )
    db.session.commit()
    return respond(link.to_dict(), "Roles updated successfully")
