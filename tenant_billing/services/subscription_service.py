"""Subscription service: provisioning, cancellation and pay-on-behalf.

Write paths that start from an admin action. Webhook-driven updates live
in stripe_service; both go through billing_service so the status
transition rules are the same everywhere.
"""

import logging

import stripe
from sqlalchemy.exc import IntegrityError

from tenant_billing.errors import (
    AlreadyActive,
    Conflict,
    NotFound,
    NothingDue,
    PaymentFailed,
    UpstreamError,
    ValidationError,
)
from tenant_billing.extensions import db
from tenant_billing.models.billing import SubscriptionPlan, TenantSubscription
from tenant_billing.models.tenant import Tenant
from tenant_billing.services import stripe_service
from tenant_billing.services.billing_service import (
    apply_subscription_status,
    log_billing_audit,
    record_delegated_payment,
    sync_subscription_fields,
)
from tenant_billing.utils import paginate, utc_now

logger = logging.getLogger(__name__)


def _charge_admin_card(amount, currency, admin_customer_id, payment_method_id,
                       description, metadata):
    """Create and confirm a PaymentIntent against the admin's card.

    Returns the succeeded PaymentIntent. Raises PaymentFailed on a decline
    or any non-succeeded status.
    """
    try:
        payment_intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            customer=admin_customer_id,
            payment_method=payment_method_id,
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            description=description,
            metadata=metadata,
        )
    except stripe.CardError as e:
        logger.warning(f"Admin card declined ({e.code}): {e.user_message}")
        raise PaymentFailed(f"Payment failed: {e.user_message or str(e)}")

    logger.info(f"PaymentIntent {payment_intent['id']} status={payment_intent['status']}")
    if payment_intent["status"] != "succeeded":
        raise PaymentFailed(f"Payment failed with status: {payment_intent['status']}")
    return payment_intent


def create_subscription(tenant_id, plan_id, customer_email, actor,
                        admin_payment_method_id=None, trial_days=None):
    """Provision a Stripe subscription for a tenant and record it locally.

    Self-pay: the subscription is created incomplete and the response
    carries the client_secret the tenant confirms with.

    Delegated: the admin's card pays the first invoice right away; the
    invoice is then marked paid out-of-band. If the card payment fails
    nothing is stored locally and the incomplete Stripe subscription is
    left behind (audited as subscription.orphaned).

    Returns a dict for the API response. Flushes; the caller commits.
    """
    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        raise NotFound("Tenant not found")
    plan = db.session.get(SubscriptionPlan, plan_id)
    if not plan:
        raise NotFound("Plan not found")
    if not plan.is_active:
        raise ValidationError("Plan is archived")
    if trial_days is not None and not 0 <= trial_days <= 365:
        raise ValidationError("Trial days must be between 0 and 365")

    existing = TenantSubscription.query.filter(
        TenantSubscription.tenant_id == tenant_id,
        TenantSubscription.status.in_(TenantSubscription.BLOCKING_STATUSES),
    ).first()
    if existing:
        raise Conflict(
            f"Tenant already has a subscription ({existing.status})",
            details={"subscription_id": existing.id, "status": existing.status},
        )

    paid_by_admin = bool(admin_payment_method_id)
    admin_customer_id = None
    if paid_by_admin:
        admin_customer_id = stripe_service.get_or_create_admin_customer(actor)
        stripe_service.get_admin_payment_method(admin_payment_method_id, admin_customer_id)

    stripe_customer_id = stripe_service.get_or_create_tenant_customer(tenant, customer_email)

    metadata = {
        "tenant_id": str(tenant.id),
        "tenant_name": tenant.name,
        "plan_id": str(plan.id),
        "plan_name": plan.name,
        "paid_by_admin": "true" if paid_by_admin else "false",
    }
    if paid_by_admin:
        metadata["admin_id"] = str(actor.id)

    params = {
        "customer": stripe_customer_id,
        "items": [{"price": plan.stripe_price_id}],
        "payment_behavior": "default_incomplete",
        "payment_settings": {"save_default_payment_method": "on_subscription"},
        "expand": ["latest_invoice.payment_intent"],
        "metadata": metadata,
    }
    trial = trial_days if trial_days is not None else plan.trial_period_days
    if trial:
        params["trial_period_days"] = trial

    stripe_sub = stripe.Subscription.create(**params)
    invoice = stripe_sub.get("latest_invoice") or {}

    if paid_by_admin and invoice and invoice.get("status") != "paid" and invoice.get("amount_due"):
        try:
            payment_intent = _charge_admin_card(
                amount=invoice["amount_due"],
                currency=invoice["currency"],
                admin_customer_id=admin_customer_id,
                payment_method_id=admin_payment_method_id,
                description=f"Admin payment on behalf for subscription {stripe_sub['id']}",
                metadata={
                    "subscription_id": stripe_sub["id"],
                    "invoice_id": invoice["id"],
                    "tenant_id": str(tenant.id),
                    "paid_by_admin": "true",
                    "admin_id": str(actor.id),
                },
            )
        except PaymentFailed:
            logger.warning(
                f"Delegated payment failed; Stripe subscription {stripe_sub['id']} "
                f"left incomplete for tenant {tenant.id}"
            )
            log_billing_audit(tenant.id, "subscription.orphaned", {
                "stripe_subscription_id": stripe_sub["id"],
                "stripe_customer_id": stripe_customer_id,
                "plan_id": plan.id,
            }, actor_user_id=actor.id)
            db.session.commit()
            raise

        stripe.Invoice.pay(invoice["id"], paid_out_of_band=True)
        logger.info(f"Invoice {invoice['id']} marked as paid out-of-band")

        record_delegated_payment(
            payment_intent,
            invoice_id=invoice["id"],
            stripe_subscription_id=stripe_sub["id"],
            stripe_customer_id=stripe_customer_id,
            tenant_id=tenant.id,
            customer_email=customer_email,
            actor_user_id=actor.id,
        )
        stripe_sub = stripe.Subscription.retrieve(stripe_sub["id"])

    status = stripe_sub.get("status")
    if status not in TenantSubscription.STATUSES:
        raise UpstreamError(f"Stripe returned unexpected subscription status '{status}'")

    sub = TenantSubscription(
        tenant_id=tenant.id,
        plan_id=plan.id,
        stripe_subscription_id=stripe_sub["id"],
        stripe_customer_id=stripe_customer_id,
        status=status,
        price_amount=plan.price,
        currency=plan.currency,
        paid_by_admin=paid_by_admin,
        created_by_user_id=actor.id,
    )
    if paid_by_admin and status in ("active", "trialing"):
        sub.last_payment_date = utc_now()
    db.session.add(sub)
    try:
        sync_subscription_fields(sub, stripe_sub)
    except IntegrityError:
        db.session.rollback()
        logger.error(
            f"Concurrent subscription for tenant {tenant.id}; "
            f"Stripe subscription {stripe_sub['id']} not recorded"
        )
        raise Conflict("Tenant already has an active subscription")

    log_billing_audit(tenant.id, "subscription.created", {
        "stripe_subscription_id": stripe_sub["id"],
        "plan_id": plan.id,
        "status": status,
        "paid_by_admin": paid_by_admin,
    }, actor_user_id=actor.id)

    data = {
        "subscription": sub.to_dict(),
        "stripe_subscription_id": stripe_sub["id"],
        "payment_status": status,
        "paid_by_admin": paid_by_admin,
    }
    if paid_by_admin:
        data["message"] = "Subscription created and paid by admin successfully"
    else:
        payment_intent = invoice.get("payment_intent") if invoice else None
        data["client_secret"] = (
            payment_intent.get("client_secret")
            if payment_intent and not isinstance(payment_intent, str)
            else None
        )
        data["message"] = "Subscription created - customer payment required"
    return data


def cancel_subscription(subscription_id, immediately=False, actor=None):
    """Cancel now, or flag the subscription to end with its current period."""
    sub = db.session.get(TenantSubscription, subscription_id)
    if not sub:
        raise NotFound("Subscription not found")

    if sub.status in TenantSubscription.TERMINAL_STATUSES:
        raise Conflict(f"Cannot cancel a subscription in status '{sub.status}'")

    stripe_service.configure_stripe()
    if immediately:
        stripe.Subscription.cancel(sub.stripe_subscription_id)
        now = utc_now()
        apply_subscription_status(sub, "canceled", source="admin.cancel")
        sub.canceled_at = now
        sub.ended_at = now
        sub.cancel_at_period_end = False
    else:
        stripe.Subscription.modify(
            sub.stripe_subscription_id, cancel_at_period_end=True
        )
        sub.cancel_at_period_end = True
    db.session.flush()

    log_billing_audit(sub.tenant_id, "subscription.canceled", {
        "stripe_subscription_id": sub.stripe_subscription_id,
        "immediately": bool(immediately),
    }, actor_user_id=actor.id if actor else None)
    return sub


def pay_subscription_on_behalf(subscription_id, admin_payment_method_id, actor):
    """Pay an existing subscription's open invoice with the admin's card.

    Raises AlreadyActive / NothingDue / Forbidden / Conflict before any
    charge is made; PaymentFailed on decline, with no local change.
    """
    if not admin_payment_method_id:
        raise ValidationError("Admin payment method ID is required")

    sub = db.session.get(TenantSubscription, subscription_id)
    if not sub:
        raise NotFound("Subscription not found")

    stripe_service.configure_stripe()
    stripe_sub = stripe.Subscription.retrieve(
        sub.stripe_subscription_id, expand=["latest_invoice", "customer"]
    )
    if stripe_sub.get("status") == "active":
        raise AlreadyActive("Subscription is already active and paid")

    invoice = stripe_sub.get("latest_invoice")
    if not invoice or isinstance(invoice, str) or invoice.get("status") == "paid":
        raise NothingDue("No unpaid invoice found for this subscription")

    if not sub.can_transition_to("active"):
        raise Conflict(f"Subscription in status '{sub.status}' cannot be reactivated")

    admin_customer_id = stripe_service.get_or_create_admin_customer(actor)
    stripe_service.get_admin_payment_method(admin_payment_method_id, admin_customer_id)

    logger.info(
        f"Paying {stripe_sub['id']} on behalf: {invoice.get('amount_due')} "
        f"{invoice.get('currency')}"
    )
    payment_intent = _charge_admin_card(
        amount=invoice["amount_due"],
        currency=invoice["currency"],
        admin_customer_id=admin_customer_id,
        payment_method_id=admin_payment_method_id,
        description=f"Admin payment on behalf for subscription {stripe_sub['id']}",
        metadata={
            "subscription_id": stripe_sub["id"],
            "invoice_id": invoice["id"],
            "tenant_id": str(sub.tenant_id),
            "paid_by_admin": "true",
            "admin_id": str(actor.id),
        },
    )

    stripe.Invoice.pay(invoice["id"], paid_out_of_band=True)
    logger.info(f"Invoice {invoice['id']} marked as paid out-of-band")

    apply_subscription_status(sub, "active", source="admin.pay_on_behalf")
    sub.paid_by_admin = True
    sub.last_payment_date = utc_now()
    sub.next_payment_attempt = None

    customer = stripe_sub.get("customer")
    if isinstance(customer, str):
        stripe_customer_id, customer_email = customer, None
    else:
        stripe_customer_id = customer.get("id") if customer else sub.stripe_customer_id
        customer_email = customer.get("email") if customer else None

    record_delegated_payment(
        payment_intent,
        invoice_id=invoice["id"],
        stripe_subscription_id=stripe_sub["id"],
        stripe_customer_id=stripe_customer_id or sub.stripe_customer_id,
        tenant_id=sub.tenant_id,
        customer_email=customer_email,
        actor_user_id=actor.id,
    )
    log_billing_audit(sub.tenant_id, "subscription.paid_on_behalf", {
        "stripe_subscription_id": stripe_sub["id"],
        "stripe_invoice_id": invoice["id"],
        "payment_intent_id": payment_intent["id"],
        "amount": payment_intent.get("amount"),
    }, actor_user_id=actor.id)

    return {
        "subscription": sub.to_dict(),
        "payment_intent_id": payment_intent["id"],
        "invoice_id": invoice["id"],
        "amount_paid": payment_intent.get("amount"),
        "status": payment_intent["status"],
    }


def list_subscriptions(filters, page, limit):
    query = TenantSubscription.query
    if filters.get("status"):
        query = query.filter(TenantSubscription.status == filters["status"])
    if filters.get("tenant_id"):
        query = query.filter(TenantSubscription.tenant_id == filters["tenant_id"])
    if filters.get("plan_id"):
        query = query.filter(TenantSubscription.plan_id == filters["plan_id"])
    query = query.order_by(
        TenantSubscription.created_at.desc(), TenantSubscription.id.desc()
    )
    return paginate(query, page, limit)
