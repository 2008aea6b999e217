"""Stripe transaction model.

One row per payment event seen from Stripe: a payment intent (upserted by
its id), an invoice payment (keyed by invoice id + event id), or a row
backfilled by the transaction sync.
"""

import uuid

from tenant_billing.extensions import db
from tenant_billing.utils import format_money, isoformat, utc_now


class StripeTransaction(db.Model):
    __tablename__ = "stripe_transactions"

    # -- Processor-defined lifecycle (payment intent statuses + "failed") --
    STATUSES = [
        "requires_payment_method",
        "requires_confirmation",
        "requires_action",
        "processing",
        "requires_capture",
        "canceled",
        "succeeded",
        "failed",
    ]

    TYPES = ["subscription", "one_time", "refund", "dispute", "payout", "invoice"]

    CARD_BRANDS = [
        "visa",
        "mastercard",
        "amex",
        "discover",
        "diners",
        "jcb",
        "unionpay",
        "unknown",
    ]

    # Once here, only fee/net amounts may still be attached
    FINAL_STATUSES = ["succeeded", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenants.id"), nullable=True, index=True
    )
    stripe_payment_intent_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    stripe_invoice_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(255), nullable=False, index=True)
    stripe_event_id = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(50), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False, default="subscription")
    description = db.Column(db.String(500), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True, index=True)
    payment_method_type = db.Column(db.String(50), nullable=True)
    card_last4 = db.Column(db.String(4), nullable=True)
    card_brand = db.Column(db.String(20), nullable=True)
    failure_code = db.Column(db.String(100), nullable=True)
    failure_message = db.Column(db.String(500), nullable=True)
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)
    fee_amount = db.Column(db.Integer, nullable=True)
    net_amount = db.Column(db.Integer, nullable=True)
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    processed_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        db.CheckConstraint("amount >= 0", name="ck_stripe_transactions_amount"),
        db.CheckConstraint(
            "refunded_amount >= 0", name="ck_stripe_transactions_refunded"
        ),
        db.CheckConstraint(
            "fee_amount IS NULL OR fee_amount >= 0",
            name="ck_stripe_transactions_fee",
        ),
        db.CheckConstraint(
            "net_amount IS NULL OR (net_amount >= 0 AND net_amount <= amount)",
            name="ck_stripe_transactions_net",
        ),
        # Redelivery of the same invoice event must not append a second row
        db.UniqueConstraint(
            "stripe_invoice_id",
            "stripe_event_id",
            name="uq_stripe_transactions_invoice_event",
        ),
        db.Index("ix_stripe_transactions_tenant_created", "tenant_id", "created_at"),
        db.Index("ix_stripe_transactions_status_created", "status", "created_at"),
        db.Index("ix_stripe_transactions_type_created", "type", "created_at"),
    )

    # --- Relationships ---
    tenant = db.relationship("Tenant")

    @property
    def is_successful(self):
        return self.status == "succeeded"

    @property
    def is_refundable(self):
        return self.is_successful and (self.refunded_amount or 0) < self.amount

    @property
    def formatted_amount(self):
        return format_money(self.amount, self.currency)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant.name if self.tenant else None,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_invoice_id": self.stripe_invoice_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_customer_id": self.stripe_customer_id,
            "amount": self.amount,
            "formatted_amount": self.formatted_amount,
            "currency": self.currency,
            "status": self.status,
            "type": self.type,
            "description": self.description,
            "customer_email": self.customer_email,
            "payment_method_type": self.payment_method_type,
            "card_last4": self.card_last4,
            "card_brand": self.card_brand,
            "failure_code": self.failure_code,
            "failure_message": self.failure_message,
            "refunded_amount": self.refunded_amount,
            "fee_amount": self.fee_amount,
            "net_amount": self.net_amount,
            "metadata": dict(self.metadata_ or {}),
            "processed_at": isoformat(self.processed_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<StripeTransaction {self.stripe_payment_intent_id or self.stripe_invoice_id} ({self.status})>"
