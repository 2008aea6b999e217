"""Subscription gate: re-checks tenant access on every tenant-scoped request.

Registered as a before_request hook on tenant blueprints. Sets
g.tenant_id and g.subscription for the view.

Super admins bypass the gate. Anonymous requests pass through so the
view's @login_required answers them.
"""

from flask import g
from flask_login import current_user

from tenant_billing.errors import Forbidden
from tenant_billing.services.access_service import can_tenant_users_login


class SubscriptionRequired(Forbidden):
    code = "SUBSCRIPTION_REQUIRED"


def check_tenant_access(user):
    """Raise Forbidden unless the user's tenant may sign in.

    Returns the AccessDecision for users that pass (None for super admins).
    """
    if user.is_super_admin:
        return None

    if not user.tenant_id:
        raise Forbidden(
            "No organization context found. Please contact your administrator.",
            code="NO_TENANT_CONTEXT",
        )

    decision = can_tenant_users_login(user.tenant_id)
    if not decision.allowed:
        sub = decision.subscription
        raise SubscriptionRequired(
            decision.reason,
            details={
                "tenant_id": user.tenant_id,
                "subscription_status": sub.status if sub else "none",
                "plan_name": sub.plan.name if sub and sub.plan else None,
            },
        )
    return decision


def enforce_subscription():
    """Before-request hook for tenant routes."""
    if not current_user.is_authenticated:
        return

    decision = check_tenant_access(current_user)
    g.tenant_id = current_user.tenant_id
    g.subscription = decision.subscription if decision else None


def init_subscription_gate(blueprint):
    """Register the gate as a before_request hook on a blueprint."""
    blueprint.before_request(enforce_subscription)
