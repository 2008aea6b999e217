"""Subscriptions blueprint - /api/stripe/subscriptions*

Route Map:
  GET  /api/stripe/subscriptions                     - Paginated list
  POST /api/stripe/subscriptions                     - Provision (self-pay or admin-paid)
  POST /api/stripe/subscriptions/<id>/cancel         - Cancel now / at period end
  POST /api/stripe/subscriptions/<id>/pay-on-behalf  - Admin pays the open invoice

All routes protected by @super_admin_required.
"""

from flask import Blueprint, current_app, request
from flask_login import current_user

from tenant_billing.decorators import super_admin_required
from tenant_billing.errors import ValidationError
from tenant_billing.extensions import db
from tenant_billing.services import subscription_service
from tenant_billing.utils import parse_pagination, respond

subscriptions_bp = Blueprint(
    "subscriptions", __name__, url_prefix="/api/stripe/subscriptions"
)


@subscriptions_bp.route("", methods=["GET"])
@super_admin_required
def list_subscriptions():
    page, limit = parse_pagination(
        request.args,
        default_limit=current_app.config["DEFAULT_PAGE_SIZE"],
        max_limit=current_app.config["MAX_PAGE_SIZE"],
    )
    filters = {
        "status": request.args.get("status"),
        "tenant_id": request.args.get("tenant_id"),
        "plan_id": request.args.get("plan_id"),
    }
    items, pagination = subscription_service.list_subscriptions(filters, page, limit)
    return respond(
        {"subscriptions": [s.to_dict() for s in items], "pagination": pagination},
        "Subscriptions retrieved successfully",
    )


@subscriptions_bp.route("", methods=["POST"])
@super_admin_required
def create_subscription():
    data = request.get_json(silent=True) or {}

    errors = []
    for field in ("tenant_id", "plan_id", "customer_email"):
        if not data.get(field):
            errors.append({"field": field, "message": f"{field} is required"})
    email = data.get("customer_email") or ""
    if email and "@" not in email:
        errors.append({"field": "customer_email", "message": "Invalid email address"})
    trial_days = data.get("trial_days")
    if trial_days is not None and (isinstance(trial_days, bool) or not isinstance(trial_days, int)):
        errors.append({"field": "trial_days", "message": "trial_days must be an integer"})
    if errors:
        raise ValidationError("Validation failed", details=errors)

    result = subscription_service.create_subscription(
        tenant_id=data["tenant_id"],
        plan_id=data["plan_id"],
        customer_email=email.strip().lower(),
        actor=current_user,
        admin_payment_method_id=data.get("admin_payment_method_id"),
        trial_days=trial_days,
    )
    db.session.commit()
    return respond(result, result.pop("message"), 201)


@subscriptions_bp.route("/<subscription_id>/cancel", methods=["POST"])
@super_admin_required
def cancel_subscription(subscription_id):
    data = request.get_json(silent=True) or {}
    immediately = bool(data.get("immediately", False))
    sub = subscription_service.cancel_subscription(
        subscription_id, immediately=immediately, actor=current_user
    )
    db.session.commit()
    message = (
        "Subscription canceled immediately"
        if immediately
        else "Subscription will cancel at period end"
    )
    return respond(sub.to_dict(), message)


@subscriptions_bp.route("/<subscription_id>/pay-on-behalf", methods=["POST"])
@super_admin_required
def pay_on_behalf(subscription_id):
    data = request.get_json(silent=True) or {}
    result = subscription_service.pay_subscription_on_behalf(
        subscription_id,
        data.get("admin_payment_method_id"),
        current_user,
    )
    db.session.commit()
    return respond(result, "Subscription paid successfully by admin")
