"""Billing models.

- SubscriptionPlan: a sellable plan, mirrored in Stripe as a product + price.
- TenantSubscription: one tenant's subscription, reconciled from Stripe.
  tenant_subscriptions.status is the source of truth for access gating.
"""

import math
import uuid

from tenant_billing.extensions import db
from tenant_billing.utils import as_utc, format_money, isoformat, utc_now

CURRENCIES = ["USD", "EUR", "GBP", "INR", "CAD", "AUD"]


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    INTERVALS = ["month", "year"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_product_id = db.Column(db.String(255), nullable=False, index=True)
    stripe_price_id = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=False, default="")
    price = db.Column(db.Integer, nullable=False)  # minor units (cents)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    interval = db.Column(db.String(10), nullable=False, default="month")
    interval_count = db.Column(db.Integer, nullable=False, default=1)
    trial_period_days = db.Column(db.Integer, nullable=False, default=0)
    features = db.Column(db.JSON, default=list)  # ordered capability tokens
    max_clinics = db.Column(db.Integer, nullable=False, default=1)
    max_users = db.Column(db.Integer, nullable=False, default=5)
    max_patients = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_by_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # null for plans pulled in by the Stripe sync
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_subscription_plans_price"),
        db.CheckConstraint(
            "interval_count >= 1", name="ck_subscription_plans_interval_count"
        ),
        # Only one row may carry is_default = true
        db.Index(
            "uq_subscription_plans_single_default",
            "is_default",
            unique=True,
            postgresql_where=db.text("is_default"),
            sqlite_where=db.text("is_default = 1"),
        ),
        db.Index("ix_subscription_plans_active_default", "is_active", "is_default"),
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "TenantSubscription", back_populates="plan", lazy="dynamic"
    )

    @property
    def formatted_price(self):
        return format_money(self.price, self.currency)

    def to_dict(self):
        return {
            "id": self.id,
            "stripe_product_id": self.stripe_product_id,
            "stripe_price_id": self.stripe_price_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "formatted_price": self.formatted_price,
            "currency": self.currency,
            "interval": self.interval,
            "interval_count": self.interval_count,
            "trial_period_days": self.trial_period_days,
            "features": list(self.features or []),
            "max_clinics": self.max_clinics,
            "max_users": self.max_users,
            "max_patients": self.max_patients,
            "is_active": self.is_active,
            "is_default": self.is_default,
        }

    def __repr__(self):
        return f"<SubscriptionPlan {self.name} ({self.stripe_price_id})>"


class TenantSubscription(db.Model):
    __tablename__ = "tenant_subscriptions"

    # -- Valid statuses (mirrors Stripe's subscription.status) --
    STATUSES = [
        "incomplete",
        "incomplete_expired",
        "trialing",
        "active",
        "past_due",
        "canceled",
        "unpaid",
    ]

    # A tenant may hold at most one row in these statuses
    LIVE_STATUSES = ["active", "trialing", "past_due"]

    # Statuses that block provisioning a new subscription for the tenant
    BLOCKING_STATUSES = ["incomplete", "active", "trialing", "past_due"]

    # Final Stripe statuses; nothing can be canceled or reactivated from here
    TERMINAL_STATUSES = ["canceled", "incomplete_expired"]

    # -- Valid status transitions (enforced in billing_service) --
    VALID_TRANSITIONS = {
        "incomplete": [
            "active", "trialing", "past_due", "incomplete_expired", "canceled",
        ],
        "incomplete_expired": [],
        "trialing": ["active", "past_due", "canceled", "unpaid"],
        "active": ["past_due", "canceled", "unpaid", "trialing"],
        "past_due": ["active", "canceled", "unpaid"],
        "unpaid": ["active", "canceled", "past_due"],
        "canceled": [],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenants.id"), nullable=False, index=True
    )
    plan_id = db.Column(
        db.String(36),
        db.ForeignKey("subscription_plans.id"),
        nullable=False,
        index=True,
    )
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    stripe_customer_id = db.Column(db.String(255), nullable=False, index=True)
    status = db.Column(db.String(50), nullable=False, index=True)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_start = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    price_amount = db.Column(db.Integer, nullable=False)  # snapshot of plan.price
    currency = db.Column(db.String(3), nullable=False, default="USD")
    paid_by_admin = db.Column(db.Boolean, default=False)
    next_payment_attempt = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payment_date = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    # Set client-side so "most recent subscription" ordering has sub-second
    # resolution on every backend.
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        db.CheckConstraint(
            "price_amount >= 0", name="ck_tenant_subscriptions_price_amount"
        ),
        db.Index(
            "uq_tenant_subscriptions_one_live_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=db.text(
                "status IN ('active', 'trialing', 'past_due')"
            ),
            sqlite_where=db.text("status IN ('active', 'trialing', 'past_due')"),
        ),
        db.Index("ix_tenant_subscriptions_tenant_status", "tenant_id", "status"),
        db.Index(
            "ix_tenant_subscriptions_status_period_end",
            "status",
            "current_period_end",
        ),
    )

    # --- Relationships ---
    tenant = db.relationship("Tenant", back_populates="subscriptions")
    plan = db.relationship("SubscriptionPlan", back_populates="subscriptions")

    @property
    def is_trial(self):
        trial_end = as_utc(self.trial_end)
        return (
            self.status == "trialing"
            and trial_end is not None
            and utc_now() < trial_end
        )

    @property
    def is_past_due(self):
        period_end = as_utc(self.current_period_end)
        return self.status == "past_due" or (
            self.status == "active"
            and period_end is not None
            and utc_now() > period_end
        )

    @property
    def days_until_renewal(self):
        period_end = as_utc(self.current_period_end)
        if period_end is None:
            return None
        return math.ceil((period_end - utc_now()).total_seconds() / 86400)

    @property
    def formatted_price(self):
        return format_money(self.price_amount, self.currency)

    def can_transition_to(self, status):
        if status == self.status:
            return True
        return status in self.VALID_TRANSITIONS.get(self.status, [])

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan.name if self.plan else None,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_customer_id": self.stripe_customer_id,
            "status": self.status,
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "trial_start": isoformat(self.trial_start),
            "trial_end": isoformat(self.trial_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "canceled_at": isoformat(self.canceled_at),
            "ended_at": isoformat(self.ended_at),
            "price_amount": self.price_amount,
            "formatted_price": self.formatted_price,
            "currency": self.currency,
            "paid_by_admin": bool(self.paid_by_admin),
            "last_payment_date": isoformat(self.last_payment_date),
            "next_payment_attempt": isoformat(self.next_payment_attempt),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<TenantSubscription {self.stripe_subscription_id} ({self.status})>"
