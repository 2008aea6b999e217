"""Tenant-user blueprint - /api/tenant/*

Routes for signed-in tenant users. Every request re-runs the subscription
gate, so a tenant whose subscription lapses mid-session is cut off on the
next call.
"""

from flask import Blueprint, g
from flask_login import login_required

from tenant_billing.middleware.subscription_gate import init_subscription_gate
from tenant_billing.services.access_service import get_status_message
from tenant_billing.utils import respond

tenant_bp = Blueprint("tenant", __name__, url_prefix="/api/tenant")
init_subscription_gate(tenant_bp)


@tenant_bp.route("/subscription")
@login_required
def subscription():
    """The caller's own tenant subscription (None for super admins)."""
    sub = g.get("subscription")
    if sub is None:
        return respond(None, "No tenant subscription in context")

    data = sub.to_dict()
    data["status_message"] = get_status_message(sub.status)
    return respond(data, "Subscription retrieved successfully")
