"""Stripe service: Stripe customer lookups and webhook handling.

Responsible for:
- Resolving tenant customers (list-by-email, then idempotent create)
- Resolving the super admin's own customer used for pay-on-behalf, and
  managing the cards stored on it
- Handling incoming webhooks with signature verification
- Dispatching to event-specific handlers
- Idempotency via stripe_events table
"""

import hashlib
import logging

import stripe
from flask import current_app

from tenant_billing.errors import Forbidden, InvalidSignature, ValidationError
from tenant_billing.extensions import db
from tenant_billing.models.stripe_event import StripeEvent
from tenant_billing.services.billing_service import (
    apply_subscription_status,
    get_subscription_by_stripe_id,
    log_billing_audit,
    record_invoice_transaction,
    resolve_tenant_id,
    sync_subscription_fields,
    upsert_payment_intent_transaction,
)
from tenant_billing.utils import from_timestamp

logger = logging.getLogger(__name__)


def configure_stripe():
    """Point the SDK at this app's account and pinned API version."""
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    stripe.api_version = current_app.config["STRIPE_API_VERSION"]


def _idempotency_key(*parts):
    raw = ":".join(str(p) for p in parts)
    return hashlib.sha256(raw.encode()).hexdigest()


# ──────────────────────────────────────────────
# Customers
# ──────────────────────────────────────────────

def get_or_create_tenant_customer(tenant, email):
    """Return the Stripe customer id for a tenant's billing email.

    Looks the email up first; creates the customer otherwise. The create
    carries an idempotency key on tenant + email so two concurrent first
    subscriptions end up with one customer.
    """
    configure_stripe()

    customers = stripe.Customer.list(email=email, limit=1)
    if customers.get("data"):
        return customers["data"][0]["id"]

    customer = stripe.Customer.create(
        email=email,
        name=tenant.name,
        metadata={
            "tenant_id": str(tenant.id),
            "tenant_name": tenant.name,
        },
        idempotency_key=_idempotency_key("tenant-customer", tenant.id, email.lower()),
    )
    logger.info(f"Created Stripe customer {customer['id']} for tenant {tenant.id}")
    return customer["id"]


def get_or_create_admin_customer(user):
    """Return the Stripe customer that holds a super admin's own cards.

    Order: STRIPE_ADMIN_CUSTOMER_ID, the id already stored on the user,
    list by the admin's billing address, create. Whatever is found is
    stored on the user (flushed, caller commits).
    """
    configured = current_app.config.get("STRIPE_ADMIN_CUSTOMER_ID")
    if configured:
        return configured

    if user.stripe_customer_id:
        return user.stripe_customer_id

    configure_stripe()
    domain = current_app.config["ADMIN_CUSTOMER_EMAIL_DOMAIN"]
    email = f"admin+{user.id}@{domain}"

    customers = stripe.Customer.list(email=email, limit=1)
    if customers.get("data"):
        customer_id = customers["data"][0]["id"]
        logger.info(f"Found existing admin customer {customer_id} for user {user.id}")
    else:
        customer = stripe.Customer.create(
            email=email,
            name=user.full_name or "Billing Admin",
            description="Admin customer for paying subscriptions on behalf of tenants",
            metadata={
                "admin_id": str(user.id),
                "is_admin_customer": "true",
            },
            idempotency_key=_idempotency_key("admin-customer", user.id),
        )
        customer_id = customer["id"]
        logger.info(f"Created admin customer {customer_id} for user {user.id}")

    user.stripe_customer_id = customer_id
    db.session.flush()
    return customer_id


def get_admin_payment_method(payment_method_id, admin_customer_id):
    """Retrieve a payment method and check the admin customer owns it.

    Raises ValidationError if Stripe doesn't know the id, Forbidden if the
    card is attached to some other customer.
    """
    if not payment_method_id:
        raise ValidationError("Admin payment method ID is required")

    configure_stripe()
    try:
        payment_method = stripe.PaymentMethod.retrieve(payment_method_id)
    except stripe.InvalidRequestError as e:
        logger.warning(f"Unknown payment method {payment_method_id}: {e}")
        raise ValidationError("Invalid payment method ID")

    if payment_method.get("customer") != admin_customer_id:
        raise Forbidden("Payment method does not belong to admin customer")
    return payment_method


def list_admin_payment_methods(user):
    admin_customer_id = get_or_create_admin_customer(user)
    configure_stripe()
    methods = stripe.PaymentMethod.list(customer=admin_customer_id, type="card")

    result = []
    for pm in methods.get("data", []):
        card = pm.get("card")
        result.append({
            "id": pm["id"],
            "card": {
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
            } if card else None,
            "created": pm.get("created"),
        })
    return {"payment_methods": result, "admin_customer_id": admin_customer_id}


def create_admin_setup_intent(user):
    """Create a SetupIntent so the admin can save a new card off-session."""
    admin_customer_id = get_or_create_admin_customer(user)
    configure_stripe()
    setup_intent = stripe.SetupIntent.create(
        customer=admin_customer_id,
        usage="off_session",
        automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
        metadata={
            "admin_id": str(user.id),
            "purpose": "admin_payment_method",
        },
    )
    return {
        "client_secret": setup_intent.get("client_secret"),
        "setup_intent_id": setup_intent["id"],
        "admin_customer_id": admin_customer_id,
    }


def detach_admin_payment_method(user, payment_method_id):
    admin_customer_id = get_or_create_admin_customer(user)
    get_admin_payment_method(payment_method_id, admin_customer_id)
    stripe.PaymentMethod.detach(payment_method_id)
    logger.info(f"Detached payment method {payment_method_id} from {admin_customer_id}")


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises InvalidSignature on a missing header or bad signature.
    """
    if not sig_header:
        raise InvalidSignature("Missing signature")

    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    try:
        return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except (stripe.SignatureVerificationError, ValueError) as e:
        raise InvalidSignature(f"Webhook signature verification failed: {e}")


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotency: checks stripe_events table before processing.
    If the event was already processed, returns immediately.

    A handler failure is logged, rolled back and recorded as "failed";
    it never propagates, so the endpoint still acknowledges the event.

    Returns the outcome string.
    """
    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    existing = StripeEvent.query.filter_by(
        stripe_event_id=event_id
    ).first()
    if existing:
        logger.info(f"Duplicate webhook event {event_id}, skipping")
        return "already_processed"

    # --- Route to handler ---
    handlers = {
        "customer.subscription.updated": _handle_subscription_changed,
        "customer.subscription.deleted": _handle_subscription_changed,
        "invoice.payment_succeeded": _handle_invoice_payment,
        "invoice.payment_failed": _handle_invoice_payment,
        "payment_intent.succeeded": _handle_payment_intent,
        "payment_intent.payment_failed": _handle_payment_intent,
    }

    handler = handlers.get(event_type)
    outcome, error = "ignored", None
    if handler:
        try:
            handler(event)
            outcome = "processed"
        except Exception as e:
            logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
            db.session.rollback()
            outcome, error = "failed", str(e)[:500]
    else:
        logger.info(f"Ignoring unhandled webhook event type {event_type}")

    # --- Record event for idempotency ---
    db.session.add(StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        outcome=outcome,
        error=error,
    ))
    db.session.commit()

    return outcome


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_subscription_changed(event):
    """Handle customer.subscription.updated / customer.subscription.deleted.

    Updates status, period boundaries, cancel flag and canceled / ended
    timestamps on the matching local record. A subscription this system
    doesn't know about is a no-op.
    """
    sub_data = event["data"]["object"]
    stripe_subscription_id = sub_data.get("id")

    sub = get_subscription_by_stripe_id(stripe_subscription_id)
    if not sub:
        logger.info(
            f"{event['type']}: no local record for sub={stripe_subscription_id}"
        )
        return

    status = sub_data.get("status")
    if event["type"] == "customer.subscription.deleted":
        status = "canceled"
    if not status:
        logger.warning(f"{event['type']}: payload for {stripe_subscription_id} has no status")
        return

    if not apply_subscription_status(sub, status, source=event["type"]):
        return

    sync_subscription_fields(sub, sub_data)
    if status == "canceled":
        sub.cancel_at_period_end = False
        db.session.flush()


def _handle_invoice_payment(event):
    """Handle invoice.payment_succeeded / invoice.payment_failed.

    Appends one transaction per (invoice, event) and stamps payment dates
    on the local subscription. Status changes arrive separately through
    customer.subscription.updated.
    """
    invoice = event["data"]["object"]
    if not invoice.get("id"):
        logger.warning(f"{event['type']}: invoice payload has no id")
        return

    stripe_subscription_id = invoice.get("subscription")
    tenant_id = resolve_tenant_id(
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=invoice.get("customer"),
        metadata=invoice.get("metadata"),
    )

    txn, created = record_invoice_transaction(invoice, event["id"], tenant_id)
    if not created:
        return

    sub = get_subscription_by_stripe_id(stripe_subscription_id)
    if sub:
        if invoice.get("paid"):
            transitions = invoice.get("status_transitions") or {}
            sub.last_payment_date = from_timestamp(transitions.get("paid_at")) or txn.processed_at
            sub.next_payment_attempt = None
        else:
            sub.next_payment_attempt = from_timestamp(invoice.get("next_payment_attempt"))
        db.session.flush()

    if tenant_id:
        log_billing_audit(tenant_id, event["type"], {
            "stripe_invoice_id": invoice["id"],
            "stripe_subscription_id": stripe_subscription_id,
            "amount_paid": invoice.get("amount_paid"),
            "amount_due": invoice.get("amount_due"),
        })


def _handle_payment_intent(event):
    """Handle payment_intent.succeeded / payment_intent.payment_failed.

    Upserts the transaction keyed by payment-intent id, with card and fee
    details from the latest charge when Stripe can provide them.
    """
    payment_intent = event["data"]["object"]
    if not payment_intent.get("id"):
        logger.warning(f"{event['type']}: payment intent payload has no id")
        return

    metadata = payment_intent.get("metadata") or {}
    tenant_id = resolve_tenant_id(
        stripe_subscription_id=metadata.get("subscription_id"),
        stripe_customer_id=payment_intent.get("customer"),
        metadata=metadata,
    )

    charge = payment_intent.get("latest_charge")
    if isinstance(charge, str):
        configure_stripe()
        try:
            charge = stripe.Charge.retrieve(charge, expand=["balance_transaction"])
        except stripe.StripeError as e:
            logger.warning(f"Could not load charge {charge} for {payment_intent['id']}: {e}")
            charge = None

    transaction_type = "subscription" if (
        metadata.get("subscription_id") or payment_intent.get("invoice")
    ) else "one_time"

    txn, created = upsert_payment_intent_transaction(
        payment_intent,
        charge=charge,
        tenant_id=tenant_id,
        transaction_type=transaction_type,
    )
    logger.info(
        f"{'Created' if created else 'Updated'} transaction for "
        f"{payment_intent['id']} ({txn.status})"
    )
