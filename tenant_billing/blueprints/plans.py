"""Plans blueprint - /api/stripe/plans*

Plan CRUD mirrored into Stripe, plus the Stripe -> local plan sync.
All routes protected by @super_admin_required.
"""

from flask import Blueprint, request
from flask_login import current_user

from tenant_billing.decorators import super_admin_required
from tenant_billing.extensions import db
from tenant_billing.services import plan_service
from tenant_billing.utils import respond

plans_bp = Blueprint("plans", __name__, url_prefix="/api/stripe/plans")


@plans_bp.route("", methods=["GET"])
@super_admin_required
def list_plans():
    active_only = request.args.get("active_only", "true").lower() != "false"
    plans = plan_service.list_plans(active_only=active_only)
    return respond([p.to_dict() for p in plans], "Plans retrieved successfully")


@plans_bp.route("", methods=["POST"])
@super_admin_required
def create_plan():
    data = request.get_json(silent=True) or {}
    plan = plan_service.create_plan(data, current_user)
    db.session.commit()
    return respond(plan.to_dict(), "Plan created successfully", 201)


@plans_bp.route("/sync", methods=["POST"])
@super_admin_required
def sync_plans():
    report = plan_service.sync_plans_from_stripe()
    db.session.commit()
    return respond(report, f"Successfully synced {report['synced_count']} plans from Stripe")


@plans_bp.route("/<plan_id>", methods=["PUT"])
@super_admin_required
def update_plan(plan_id):
    data = request.get_json(silent=True) or {}
    plan = plan_service.update_plan(plan_id, data, current_user)
    db.session.commit()
    return respond(plan.to_dict(), "Plan updated successfully")


@plans_bp.route("/<plan_id>", methods=["DELETE"])
@super_admin_required
def archive_plan(plan_id):
    plan = plan_service.archive_plan(plan_id, current_user)
    db.session.commit()
    return respond(plan.to_dict(), "Plan archived successfully")
