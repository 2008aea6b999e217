"""Access service: may this tenant's users sign in?

Decided from the tenant's most recent subscription record alone. Nothing
here writes to the database.
"""

from collections import namedtuple

from tenant_billing.models.billing import TenantSubscription
from tenant_billing.utils import as_utc, utc_now

AccessDecision = namedtuple("AccessDecision", ["allowed", "reason", "subscription"])

CONTACT_ADMIN = "Please contact your administrator"

DENIAL_REASONS = {
    None: (
        "No subscription found for this organization. "
        f"{CONTACT_ADMIN} to set up a subscription plan."
    ),
    "trial_expired": (
        "Your trial period has expired. "
        f"{CONTACT_ADMIN} to activate a subscription plan."
    ),
    "past_due": (
        "Your subscription payment is overdue. "
        f"{CONTACT_ADMIN} to resolve payment issues."
    ),
    "incomplete": (
        "Your subscription setup is incomplete. "
        f"{CONTACT_ADMIN} to complete the subscription setup."
    ),
    "incomplete_expired": (
        "Your subscription setup has expired. "
        f"{CONTACT_ADMIN} to set up a new subscription."
    ),
    "canceled": (
        "Your subscription has been canceled. "
        f"{CONTACT_ADMIN} to reactivate your subscription."
    ),
    "unpaid": (
        "Your subscription has unpaid invoices. "
        f"{CONTACT_ADMIN} to resolve payment issues."
    ),
    "unknown": f"Your subscription status is unknown. {CONTACT_ADMIN}.",
}

STATUS_MESSAGES = {
    "active": "Active subscription",
    "trialing": "Trial period active",
    "past_due": "Payment overdue",
    "incomplete": "Setup incomplete",
    "incomplete_expired": "Setup expired",
    "canceled": "Subscription canceled",
    "unpaid": "Payment required",
}


def get_tenant_subscription(tenant_id):
    """Most recent subscription for the tenant (created_at, then id)."""
    return (
        TenantSubscription.query
        .filter_by(tenant_id=tenant_id)
        .order_by(
            TenantSubscription.created_at.desc(),
            TenantSubscription.id.desc(),
        )
        .first()
    )


def can_tenant_users_login(tenant_id, now=None):
    """Classify the tenant's latest subscription.

    Returns AccessDecision(allowed, reason, subscription); reason is None
    when allowed.
    """
    subscription = get_tenant_subscription(tenant_id)
    if subscription is None:
        return AccessDecision(False, DENIAL_REASONS[None], None)

    status = subscription.status
    if status == "active":
        return AccessDecision(True, None, subscription)

    if status == "trialing":
        now = as_utc(now) or utc_now()
        trial_end = as_utc(subscription.trial_end)
        if trial_end is not None and trial_end < now:
            return AccessDecision(False, DENIAL_REASONS["trial_expired"], subscription)
        return AccessDecision(True, None, subscription)

    reason = DENIAL_REASONS.get(status, DENIAL_REASONS["unknown"])
    return AccessDecision(False, reason, subscription)


def get_status_message(status):
    return STATUS_MESSAGES.get(status, "Unknown status")
