"""Billing service: DB sync helpers shared by every write path.

Responsible for:
- Applying Stripe-reported statuses to tenant_subscriptions through the
  transition table (rejections are logged and audited, never applied)
- Copying period / trial / cancel fields from Stripe subscription payloads
- Resolving the tenant behind a Stripe subscription, customer or metadata
- Upserting payment-intent transactions and appending invoice transactions
- Writing billing audit events

Everything here flushes; the caller owns the commit.
"""

import logging

from tenant_billing.extensions import db
from tenant_billing.models.audit import AuditEvent
from tenant_billing.models.billing import TenantSubscription
from tenant_billing.models.tenant import Tenant
from tenant_billing.models.transaction import StripeTransaction
from tenant_billing.utils import from_timestamp, utc_now

logger = logging.getLogger(__name__)


def _extract_period(sub_data, field):
    """Extract current_period_start / current_period_end from a Stripe
    subscription object.

    In newer Stripe API versions, the period fields moved from the
    subscription top level to items.data[0]. This helper checks both
    locations.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get(field)

    if not ts:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            ts = items["data"][0].get(field)

    return from_timestamp(ts)


def log_billing_audit(tenant_id, action, metadata=None, actor_user_id=None):
    """Log a billing-related audit event.

    Actor is None for webhook events, which are system-initiated.
    """
    event = AuditEvent(
        tenant_id=tenant_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


def apply_subscription_status(sub, new_status, source):
    """Move a subscription to new_status if the transition table allows it.

    Returns True when the status was applied (same-status writes count).
    Unknown statuses and disallowed transitions leave the row untouched.
    """
    if new_status in TenantSubscription.STATUSES and sub.can_transition_to(new_status):
        if sub.status != new_status:
            logger.info(
                f"Subscription {sub.stripe_subscription_id}: "
                f"{sub.status} -> {new_status} ({source})"
            )
        sub.status = new_status
        db.session.flush()
        return True

    logger.warning(
        f"Rejected status change for {sub.stripe_subscription_id}: "
        f"{sub.status} -> {new_status} ({source})"
    )
    log_billing_audit(sub.tenant_id, "subscription.transition_rejected", {
        "stripe_subscription_id": sub.stripe_subscription_id,
        "from": sub.status,
        "to": new_status,
        "source": source,
    })
    return False


def sync_subscription_fields(sub, sub_data):
    """Copy billing-window fields from a Stripe subscription payload.

    Optional fields missing from the payload keep their stored values.
    """
    period_start = _extract_period(sub_data, "current_period_start")
    period_end = _extract_period(sub_data, "current_period_end")
    if period_start:
        sub.current_period_start = period_start
    if period_end:
        sub.current_period_end = period_end

    if sub_data.get("trial_start"):
        sub.trial_start = from_timestamp(sub_data["trial_start"])
    if sub_data.get("trial_end"):
        sub.trial_end = from_timestamp(sub_data["trial_end"])

    # Stripe uses cancel_at_period_end OR cancel_at (a future timestamp)
    # to indicate the subscription is set to cancel. Treat either as cancelling.
    if "cancel_at_period_end" in sub_data or "cancel_at" in sub_data:
        sub.cancel_at_period_end = bool(
            sub_data.get("cancel_at_period_end") or sub_data.get("cancel_at")
        )

    if sub_data.get("canceled_at"):
        sub.canceled_at = from_timestamp(sub_data["canceled_at"])
    if sub_data.get("ended_at"):
        sub.ended_at = from_timestamp(sub_data["ended_at"])

    db.session.flush()
    return sub


def get_subscription_by_stripe_id(stripe_subscription_id):
    if not stripe_subscription_id:
        return None
    return TenantSubscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()


def resolve_tenant_id(stripe_subscription_id=None, stripe_customer_id=None,
                      metadata=None):
    """Find the tenant behind a Stripe object.

    Tries the local subscription first, then any subscription held by the
    Stripe customer, then a tenant_id carried in metadata.

    Returns tenant_id string or None.
    """
    sub = get_subscription_by_stripe_id(stripe_subscription_id)
    if sub:
        return sub.tenant_id

    if stripe_customer_id:
        sub = TenantSubscription.query.filter_by(
            stripe_customer_id=stripe_customer_id
        ).first()
        if sub:
            return sub.tenant_id

    tenant_id = (metadata or {}).get("tenant_id")
    if tenant_id and db.session.get(Tenant, tenant_id):
        return tenant_id
    return None


def map_payment_intent_status(status):
    """Stripe reports a declined intent as requires_payment_method."""
    if status == "requires_payment_method":
        return "failed"
    if status in StripeTransaction.STATUSES:
        return status
    return "processing"


def normalize_card_brand(brand):
    if not brand:
        return None
    brand = brand.lower()
    return brand if brand in StripeTransaction.CARD_BRANDS else "unknown"


def charge_details(charge):
    """Pull card and fee details out of a Stripe charge.

    The fee comes from the expanded balance transaction when present, else
    from application_fee_amount. Returns a dict of StripeTransaction fields.
    """
    if not charge or isinstance(charge, str):
        return {}

    details = {}
    method = charge.get("payment_method_details") or {}
    if method.get("type"):
        details["payment_method_type"] = method["type"]
    card = method.get("card")
    if card:
        details["card_last4"] = card.get("last4")
        details["card_brand"] = normalize_card_brand(card.get("brand"))

    fee = None
    balance_tx = charge.get("balance_transaction")
    if balance_tx and not isinstance(balance_tx, str):
        fee = balance_tx.get("fee")
    if fee is None:
        fee = charge.get("application_fee_amount") or 0
    details["fee_amount"] = fee
    return details


def upsert_payment_intent_transaction(payment_intent, charge=None, tenant_id=None,
                                      transaction_type=None):
    """Create or update the transaction keyed by payment-intent id.

    Rows already in a final status only get fee / net amounts attached.
    Returns (StripeTransaction, created: bool).
    """
    pi_id = payment_intent["id"]
    amount = payment_intent.get("amount") or 0
    status = map_payment_intent_status(payment_intent.get("status"))
    details = charge_details(charge)

    txn = StripeTransaction.query.filter_by(
        stripe_payment_intent_id=pi_id
    ).first()
    created = txn is None
    frozen = False

    if created:
        metadata = dict(payment_intent.get("metadata") or {})
        txn = StripeTransaction(
            stripe_payment_intent_id=pi_id,
            stripe_invoice_id=payment_intent.get("invoice"),
            stripe_subscription_id=metadata.get("subscription_id"),
            stripe_customer_id=payment_intent.get("customer") or "unknown",
            tenant_id=tenant_id,
            amount=amount,
            currency=(payment_intent.get("currency") or "usd").upper(),
            status=status,
            type=transaction_type or "one_time",
            description=(payment_intent.get("description") or "One-time payment")[:500],
            customer_email=payment_intent.get("receipt_email"),
            metadata_=metadata,
        )
        db.session.add(txn)
    elif txn.status in StripeTransaction.FINAL_STATUSES:
        frozen = True
        logger.info(f"Transaction {pi_id} is {txn.status}, only attaching fees")
    else:
        txn.status = status

    if not frozen:
        for field in ("payment_method_type", "card_last4", "card_brand"):
            if details.get(field):
                setattr(txn, field, details[field])

        error = payment_intent.get("last_payment_error")
        if error:
            txn.failure_code = error.get("code") or error.get("decline_code")
            txn.failure_message = (error.get("message") or "")[:500] or None

    if "fee_amount" in details:
        fee = min(details["fee_amount"], txn.amount)
        txn.fee_amount = fee
        txn.net_amount = txn.amount - fee

    txn.processed_at = utc_now()
    db.session.flush()
    return txn, created


def record_invoice_transaction(invoice, stripe_event_id, tenant_id=None):
    """Append a transaction for an invoice payment event.

    Keyed by (invoice id, event id): a redelivered event finds the row it
    wrote the first time. Returns (StripeTransaction, created: bool).
    """
    existing = StripeTransaction.query.filter_by(
        stripe_invoice_id=invoice["id"],
        stripe_event_id=stripe_event_id,
    ).first()
    if existing:
        return existing, False

    stripe_subscription_id = invoice.get("subscription")
    description = invoice.get("description") or "No description"
    txn = StripeTransaction(
        stripe_invoice_id=invoice["id"],
        stripe_event_id=stripe_event_id,
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=invoice.get("customer") or "unknown",
        tenant_id=tenant_id,
        amount=invoice.get("amount_paid") or 0,
        currency=(invoice.get("currency") or "usd").upper(),
        status="succeeded" if invoice.get("paid") else "failed",
        type="subscription" if stripe_subscription_id else "invoice",
        description=f"Subscription payment - {description}"[:500],
        customer_email=invoice.get("customer_email"),
        processed_at=utc_now(),
    )
    db.session.add(txn)
    db.session.flush()
    return txn, True


def record_delegated_payment(payment_intent, invoice_id, stripe_subscription_id,
                             stripe_customer_id, tenant_id, customer_email,
                             actor_user_id):
    """Write the succeeded transaction for an admin-paid invoice.

    The payment_intent.succeeded webhook can land while the admin request
    is still running, so an existing row for the payment intent is
    completed in place instead of inserted twice.
    """
    pi_id = payment_intent["id"]
    metadata = {
        "subscription_id": stripe_subscription_id,
        "tenant_id": tenant_id,
        "paid_by_admin": "true",
        "admin_id": actor_user_id,
    }

    txn = StripeTransaction.query.filter_by(stripe_payment_intent_id=pi_id).first()
    if txn is None:
        txn = StripeTransaction(stripe_payment_intent_id=pi_id, metadata_={})
        db.session.add(txn)
    else:
        logger.info(f"Transaction {pi_id} already recorded ({txn.status}), completing it")

    txn.stripe_invoice_id = invoice_id
    txn.stripe_subscription_id = stripe_subscription_id
    txn.stripe_customer_id = stripe_customer_id
    txn.tenant_id = tenant_id
    txn.customer_email = customer_email or txn.customer_email
    txn.amount = payment_intent.get("amount") or txn.amount or 0
    txn.currency = (payment_intent.get("currency") or txn.currency or "usd").upper()
    txn.status = "succeeded"
    txn.type = "subscription"
    txn.description = f"Admin payment on behalf for subscription {stripe_subscription_id}"
    txn.metadata_ = {**(txn.metadata_ or {}), **metadata}
    txn.failure_code = None
    txn.failure_message = None
    txn.processed_at = utc_now()
    db.session.flush()
    return txn
