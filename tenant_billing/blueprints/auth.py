"""Auth blueprint - /auth/*

JSON session login / logout. Tenant users are refused at login when their
tenant's subscription doesn't allow access; super admins always get in.
"""

import logging

from flask import Blueprint, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from tenant_billing.errors import BillingError, ValidationError
from tenant_billing.extensions import limiter
from tenant_billing.middleware.subscription_gate import check_tenant_access
from tenant_billing.models.user import User
from tenant_billing.services.access_service import (
    get_status_message,
    get_tenant_subscription,
)
from tenant_billing.utils import respond

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


class InvalidCredentials(BillingError):
    status_code = 401
    code = "INVALID_CREDENTIALS"


def _subscription_snapshot(user):
    if user.is_super_admin or not user.tenant_id:
        return None
    sub = get_tenant_subscription(user.tenant_id)
    if sub is None:
        return None
    return {
        "id": sub.id,
        "status": sub.status,
        "status_message": get_status_message(sub.status),
        "plan_name": sub.plan.name if sub.plan else None,
        "current_period_end": sub.to_dict()["current_period_end"],
        "days_until_renewal": sub.days_until_renewal,
        "is_trial": sub.is_trial,
    }


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute", methods=["POST"])
def login():
    """Email + password login. Runs the subscription gate for tenant users."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        raise ValidationError("Email and password are required.")

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        raise InvalidCredentials("Invalid email or password.")

    if not user.is_active:
        raise InvalidCredentials("Your account has been deactivated.", code="ACCOUNT_DISABLED")

    try:
        check_tenant_access(user)
    except BillingError as e:
        logger.info(f"Login refused for {email}: {e.code}")
        raise

    login_user(user, remember=remember)
    return respond(
        {"user": user.to_dict(), "subscription": _subscription_snapshot(user)},
        "Logged in successfully.",
    )


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return respond(None, "You have been logged out.")


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    """Current user plus a snapshot of their tenant's subscription.

    Gated like the tenant routes: a tenant user whose access lapsed
    mid-session gets SUBSCRIPTION_REQUIRED here too.
    """
    check_tenant_access(current_user)
    return respond(
        {
            "user": current_user.to_dict(),
            "subscription": _subscription_snapshot(current_user),
        },
        "Current user retrieved.",
    )
