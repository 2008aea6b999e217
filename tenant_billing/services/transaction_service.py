"""Transaction service: ledger listing, Stripe backfill, analytics."""

import logging

import stripe
from sqlalchemy import func

from tenant_billing.errors import ValidationError
from tenant_billing.extensions import db
from tenant_billing.models.billing import SubscriptionPlan, TenantSubscription
from tenant_billing.models.tenant import Tenant
from tenant_billing.models.transaction import StripeTransaction
from tenant_billing.services.billing_service import (
    charge_details,
    map_payment_intent_status,
)
from tenant_billing.services.stripe_service import configure_stripe
from tenant_billing.utils import from_timestamp, paginate

logger = logging.getLogger(__name__)


def _check_window(start_date, end_date):
    if start_date and end_date and start_date > end_date:
        raise ValidationError(
            "Validation failed",
            details=[{"field": "end_date", "message": "End date must be after start date"}],
        )


def list_transactions(filters, page, limit):
    """Filter by status, type, tenant_id, customer_email and a created_at
    window; newest first."""
    _check_window(filters.get("start_date"), filters.get("end_date"))

    query = StripeTransaction.query
    if filters.get("status"):
        query = query.filter(StripeTransaction.status == filters["status"])
    if filters.get("type"):
        query = query.filter(StripeTransaction.type == filters["type"])
    if filters.get("tenant_id"):
        query = query.filter(StripeTransaction.tenant_id == filters["tenant_id"])
    if filters.get("customer_email"):
        query = query.filter(
            func.lower(StripeTransaction.customer_email) == filters["customer_email"].lower()
        )
    if filters.get("start_date"):
        query = query.filter(StripeTransaction.created_at >= filters["start_date"])
    if filters.get("end_date"):
        query = query.filter(StripeTransaction.created_at <= filters["end_date"])

    query = query.order_by(
        StripeTransaction.created_at.desc(), StripeTransaction.id.desc()
    )
    return paginate(query, page, limit)


def _transaction_from_payment_intent(pi):
    metadata = dict(pi.get("metadata") or {})
    description = pi.get("description") or ""

    transaction_type = "one_time"
    if "subscription" in description.lower() or metadata.get("subscription_id") or pi.get("invoice"):
        transaction_type = "subscription"

    tenant_id = metadata.get("tenant_id")
    if tenant_id and not db.session.get(Tenant, tenant_id):
        tenant_id = None

    txn = StripeTransaction(
        stripe_payment_intent_id=pi["id"],
        stripe_invoice_id=pi.get("invoice"),
        stripe_subscription_id=metadata.get("subscription_id"),
        stripe_customer_id=pi.get("customer") or "unknown",
        tenant_id=tenant_id,
        customer_email=pi.get("receipt_email"),
        amount=pi.get("amount") or 0,
        currency=(pi.get("currency") or "usd").upper(),
        status=map_payment_intent_status(pi.get("status")),
        type=transaction_type,
        description=(description or f"Payment {pi['id']}")[:500],
        metadata_=metadata,
    )
    created = from_timestamp(pi.get("created"))
    if created:
        txn.created_at = created
        txn.processed_at = created

    details = charge_details(pi.get("latest_charge"))
    for field in ("payment_method_type", "card_last4", "card_brand"):
        if details.get(field):
            setattr(txn, field, details[field])
    if "fee_amount" in details:
        txn.fee_amount = min(details["fee_amount"], txn.amount)
        txn.net_amount = txn.amount - txn.fee_amount

    error = pi.get("last_payment_error")
    if error:
        txn.failure_code = error.get("code")
        txn.failure_message = (error.get("message") or "")[:500] or None
    return txn


def sync_transactions_from_stripe():
    """Backfill the last page of payment intents into the ledger.

    Payment intents already stored are skipped. Each insert runs in its own
    savepoint so one bad item never aborts the batch.
    Returns the sync report dict.
    """
    configure_stripe()
    payment_intents = stripe.PaymentIntent.list(
        limit=100, expand=["data.latest_charge"]
    )
    items = payment_intents.get("data", [])

    report = {
        "synced_count": 0,
        "skipped_count": 0,
        "error_count": 0,
        "errors": [],
        "total_processed": len(items),
    }

    for pi in items:
        try:
            exists = StripeTransaction.query.filter_by(
                stripe_payment_intent_id=pi["id"]
            ).first()
            if exists:
                logger.info(f"Transaction {pi['id']} already exists, skipping")
                report["skipped_count"] += 1
                continue

            with db.session.begin_nested():
                db.session.add(_transaction_from_payment_intent(pi))
            report["synced_count"] += 1
        except Exception as e:
            msg = f"Failed to sync transaction {pi.get('id')}: {e}"
            logger.error(msg, exc_info=True)
            report["error_count"] += 1
            report["errors"].append(msg)

    logger.info(
        f"Transaction sync: {report['synced_count']} synced, "
        f"{report['skipped_count']} skipped, {report['error_count']} errors"
    )
    return report


def get_subscription_analytics(start_date=None, end_date=None):
    """Aggregate subscriptions by status, live revenue by plan, and
    succeeded transactions by type. The date window filters on created_at
    (not applied to the by-plan view, which describes the current book)."""
    _check_window(start_date, end_date)

    sub_query = db.session.query(
        TenantSubscription.status,
        func.count(TenantSubscription.id),
        func.coalesce(func.sum(TenantSubscription.price_amount), 0),
    )
    if start_date:
        sub_query = sub_query.filter(TenantSubscription.created_at >= start_date)
    if end_date:
        sub_query = sub_query.filter(TenantSubscription.created_at <= end_date)
    subscription_stats = [
        {"status": status, "count": count, "total_revenue": int(total)}
        for status, count, total in sub_query.group_by(TenantSubscription.status).all()
    ]

    plan_rows = (
        db.session.query(
            SubscriptionPlan.name,
            func.count(TenantSubscription.id),
            func.coalesce(func.sum(TenantSubscription.price_amount), 0),
            func.max(SubscriptionPlan.price),
        )
        .join(SubscriptionPlan, TenantSubscription.plan_id == SubscriptionPlan.id)
        .filter(TenantSubscription.status.in_(["active", "trialing"]))
        .group_by(SubscriptionPlan.name)
        .order_by(SubscriptionPlan.name)
        .all()
    )
    revenue_by_plan = [
        {"plan_name": name, "count": count, "revenue": int(revenue), "plan_price": price}
        for name, count, revenue, price in plan_rows
    ]

    txn_query = db.session.query(
        StripeTransaction.type,
        func.count(StripeTransaction.id),
        func.coalesce(func.sum(StripeTransaction.amount), 0),
        func.coalesce(func.sum(StripeTransaction.fee_amount), 0),
    ).filter(StripeTransaction.status == "succeeded")
    if start_date:
        txn_query = txn_query.filter(StripeTransaction.created_at >= start_date)
    if end_date:
        txn_query = txn_query.filter(StripeTransaction.created_at <= end_date)
    transaction_stats = [
        {"type": t, "count": count, "total_amount": int(amount), "total_fees": int(fees)}
        for t, count, amount, fees in txn_query.group_by(StripeTransaction.type).all()
    ]

    return {
        "subscription_stats": subscription_stats,
        "revenue_by_plan": revenue_by_plan,
        "transaction_stats": transaction_stats,
    }
