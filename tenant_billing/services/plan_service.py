"""Plan service: plan CRUD mirrored into Stripe, default flag, plan sync.

Plan name / description / features are sanitized with bleach.clean() to
strip HTML tags. Prices arrive in major units (29.99) and are stored in
minor units (2999).

Functions flush but do NOT commit; the caller commits.
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import bleach
import stripe
from sqlalchemy.exc import IntegrityError

from tenant_billing.errors import Conflict, NotFound, ValidationError
from tenant_billing.extensions import db
from tenant_billing.models.billing import (
    CURRENCIES,
    SubscriptionPlan,
    TenantSubscription,
)
from tenant_billing.services.billing_service import log_billing_audit
from tenant_billing.services.stripe_service import configure_stripe

logger = logging.getLogger(__name__)

LIMIT_FIELDS = ("max_clinics", "max_users", "max_patients")
LIMIT_DEFAULTS = {"max_clinics": 1, "max_users": 5, "max_patients": 100}


def _sanitize(text):
    """Strip all HTML tags from admin input and synced Stripe text."""
    if text is None:
        return text
    return bleach.clean(str(text), tags=[], strip=True).strip()


def _to_minor_units(value):
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _int_in_range(data, field, errors, low, high=None, default=None):
    value = data.get(field, default)
    try:
        value = int(value)
        if isinstance(data.get(field), bool):
            raise ValueError
    except (TypeError, ValueError):
        errors.append({"field": field, "message": f"{field} must be an integer"})
        return None
    if value < low or (high is not None and value > high):
        bound = f"between {low} and {high}" if high is not None else f"at least {low}"
        errors.append({"field": field, "message": f"{field} must be {bound}"})
        return None
    return value


def _validate_plan_data(data, partial=False):
    """Validate and normalise plan input. Returns a dict of clean fields.

    With partial=True only the keys present in data are checked.
    """
    errors = []
    clean = {}

    def wanted(field):
        return not partial or field in data

    if wanted("name"):
        name = _sanitize(data.get("name"))
        if not name:
            errors.append({"field": "name", "message": "Plan name is required"})
        elif len(name) > 100:
            errors.append({"field": "name", "message": "Plan name must be at most 100 characters"})
        else:
            clean["name"] = name

    if wanted("description"):
        description = _sanitize(data.get("description")) or ""
        if len(description) > 500:
            errors.append({"field": "description", "message": "Description must be at most 500 characters"})
        else:
            clean["description"] = description

    if "price" in data or not partial:
        price = _to_minor_units(data.get("price"))
        if price is None:
            errors.append({"field": "price", "message": "Price must be a non-negative number"})
        else:
            clean["price"] = price

    if wanted("currency"):
        currency = str(data.get("currency") or "USD").upper()
        if currency not in CURRENCIES:
            errors.append({"field": "currency", "message": f"Currency must be one of: {', '.join(CURRENCIES)}"})
        else:
            clean["currency"] = currency

    if wanted("interval"):
        interval = data.get("interval") or "month"
        if interval not in SubscriptionPlan.INTERVALS:
            errors.append({"field": "interval", "message": "Interval must be month or year"})
        else:
            clean["interval"] = interval

    if wanted("interval_count"):
        value = _int_in_range(data, "interval_count", errors, 1, default=1)
        if value is not None:
            clean["interval_count"] = value

    if wanted("trial_period_days"):
        value = _int_in_range(data, "trial_period_days", errors, 0, 365, default=0)
        if value is not None:
            clean["trial_period_days"] = value

    for field in LIMIT_FIELDS:
        if wanted(field):
            value = _int_in_range(data, field, errors, 1, default=LIMIT_DEFAULTS[field])
            if value is not None:
                clean[field] = value

    if wanted("features"):
        features = data.get("features") or []
        if not isinstance(features, list):
            errors.append({"field": "features", "message": "Features must be a list"})
        else:
            tokens = []
            for feature in features:
                token = _sanitize(feature)
                if not token:
                    continue
                if len(token) > 200:
                    errors.append({"field": "features", "message": "Each feature must be at most 200 characters"})
                    break
                if token not in tokens:
                    tokens.append(token)
            clean["features"] = tokens

    for flag in ("is_default", "is_active"):
        if flag in data:
            if not isinstance(data[flag], bool):
                errors.append({"field": flag, "message": f"{flag} must be true or false"})
            else:
                clean[flag] = data[flag]

    if errors:
        raise ValidationError("Validation failed", details=errors)
    return clean


def get_plan(plan_id):
    plan = db.session.get(SubscriptionPlan, plan_id)
    if not plan:
        raise NotFound("Plan not found")
    return plan


def list_plans(active_only=True):
    query = SubscriptionPlan.query
    if active_only:
        query = query.filter(SubscriptionPlan.is_active.is_(True))
    return query.order_by(SubscriptionPlan.price.asc(), SubscriptionPlan.name.asc()).all()


def set_default_plan(plan, actor_user_id=None):
    """Make plan the single default.

    Clears the flag on every other plan and sets it on this one in the same
    flush; the partial unique index rejects a concurrent second default.
    """
    if not plan.is_active:
        raise ValidationError("An archived plan cannot be the default")

    try:
        with db.session.begin_nested():
            SubscriptionPlan.query.filter(
                SubscriptionPlan.id != plan.id,
                SubscriptionPlan.is_default.is_(True),
            ).update({"is_default": False}, synchronize_session="fetch")
            plan.is_default = True
    except IntegrityError:
        raise Conflict("Another plan was made default at the same time")

    log_billing_audit(None, "plan.default_changed", {"plan_id": plan.id}, actor_user_id)
    return plan


def create_plan(data, actor):
    """Create the Stripe product + recurring price, then the local plan."""
    clean = _validate_plan_data(data)
    limits = {f: str(clean[f]) for f in LIMIT_FIELDS}

    configure_stripe()
    product = stripe.Product.create(
        name=clean["name"],
        description=clean["description"] or None,
        metadata=limits,
    )
    recurring = {
        "interval": clean["interval"],
        "interval_count": clean["interval_count"],
    }
    if clean["trial_period_days"] > 0:
        recurring["trial_period_days"] = clean["trial_period_days"]
    price = stripe.Price.create(
        unit_amount=clean["price"],
        currency=clean["currency"].lower(),
        recurring=recurring,
        product=product["id"],
        metadata={"plan_name": clean["name"], **limits},
    )

    plan = SubscriptionPlan(
        stripe_product_id=product["id"],
        stripe_price_id=price["id"],
        name=clean["name"],
        description=clean["description"],
        price=clean["price"],
        currency=clean["currency"],
        interval=clean["interval"],
        interval_count=clean["interval_count"],
        trial_period_days=clean["trial_period_days"],
        features=clean["features"],
        max_clinics=clean["max_clinics"],
        max_users=clean["max_users"],
        max_patients=clean["max_patients"],
        is_active=True,
        is_default=False,
        created_by_user_id=actor.id,
    )
    db.session.add(plan)
    db.session.flush()

    if clean.get("is_default"):
        set_default_plan(plan, actor.id)

    log_billing_audit(None, "plan.created", {
        "plan_id": plan.id,
        "stripe_price_id": plan.stripe_price_id,
    }, actor.id)
    logger.info(f"Created plan {plan.name} ({plan.stripe_price_id})")
    return plan


def update_plan(plan_id, data, actor=None):
    """Update a plan's local fields and mirror text changes to Stripe.

    Price, currency and interval belong to the Stripe price and cannot be
    changed here; create a new plan instead.
    """
    plan = get_plan(plan_id)
    immutable = [f for f in ("price", "currency", "interval", "interval_count") if f in data]
    if immutable:
        raise ValidationError(
            "Validation failed",
            details=[{"field": f, "message": f"{f} cannot be changed on an existing plan"} for f in immutable],
        )

    clean = _validate_plan_data(data, partial=True)
    actor_id = actor.id if actor else None

    if clean.get("is_active") is False:
        archive_plan(plan.id, actor)
        clean.pop("is_default", None)
    elif clean.get("is_active") is True and not plan.is_active:
        configure_stripe()
        stripe.Product.modify(plan.stripe_product_id, active=True)
        stripe.Price.modify(plan.stripe_price_id, active=True)
        plan.is_active = True

    product_changes = {}
    if "name" in clean and clean["name"] != plan.name:
        product_changes["name"] = clean["name"]
    if "description" in clean and clean["description"] != plan.description:
        product_changes["description"] = clean["description"] or ""
    if product_changes:
        configure_stripe()
        stripe.Product.modify(plan.stripe_product_id, **product_changes)

    for field in ("name", "description", "trial_period_days", "features") + LIMIT_FIELDS:
        if field in clean:
            setattr(plan, field, clean[field])
    db.session.flush()

    if clean.get("is_default") is True and not plan.is_default:
        set_default_plan(plan, actor_id)
    elif clean.get("is_default") is False:
        plan.is_default = False
        db.session.flush()

    return plan


def archive_plan(plan_id, actor=None):
    """Deactivate a plan here and in Stripe.

    Refused with Conflict while any subscription on the plan is live.
    """
    plan = get_plan(plan_id)

    live = TenantSubscription.query.filter(
        TenantSubscription.plan_id == plan.id,
        TenantSubscription.status.in_(TenantSubscription.LIVE_STATUSES),
    ).count()
    if live > 0:
        raise Conflict(
            f"Cannot archive plan with {live} active subscriptions",
            details={"active_subscriptions": live},
        )

    configure_stripe()
    stripe.Product.modify(plan.stripe_product_id, active=False)
    stripe.Price.modify(plan.stripe_price_id, active=False)

    plan.is_active = False
    plan.is_default = False
    db.session.flush()

    log_billing_audit(None, "plan.archived", {"plan_id": plan.id}, actor.id if actor else None)
    return plan


def _plan_fields_from_stripe(product, price):
    recurring = price.get("recurring") or {}
    interval = recurring.get("interval")
    metadata = product.get("metadata") or {}

    def limit(field):
        try:
            return max(1, int(metadata.get(field) or LIMIT_DEFAULTS[field]))
        except (TypeError, ValueError):
            return LIMIT_DEFAULTS[field]

    currency = (price.get("currency") or "usd").upper()
    return {
        "stripe_product_id": product["id"],
        "stripe_price_id": price["id"],
        "name": (_sanitize(product.get("name") or "") or price["id"])[:100],
        "description": _sanitize(product.get("description") or "")[:500],
        "price": price.get("unit_amount") or 0,
        "currency": currency if currency in CURRENCIES else "USD",
        "interval": interval if interval in SubscriptionPlan.INTERVALS else "month",
        "interval_count": recurring.get("interval_count") or 1,
        "trial_period_days": min(recurring.get("trial_period_days") or 0, 365),
        "max_clinics": limit("max_clinics"),
        "max_users": limit("max_users"),
        "max_patients": limit("max_patients"),
        "is_active": bool(product.get("active") and price.get("active")),
    }


def sync_plans_from_stripe():
    """Pull one page of active products / recurring prices into plans.

    Upserts by price id. A failing item is recorded and the rest carry on.
    Returns the sync report dict.
    """
    configure_stripe()
    products = stripe.Product.list(active=True, limit=100)
    prices = stripe.Price.list(active=True, limit=100)

    report = {
        "synced_count": 0,
        "created_count": 0,
        "updated_count": 0,
        "error_count": 0,
        "errors": [],
    }

    for product in products.get("data", []):
        product_prices = [
            p for p in prices.get("data", [])
            if p.get("product") == product["id"] and p.get("recurring")
        ]
        for price in product_prices:
            try:
                with db.session.begin_nested():
                    fields = _plan_fields_from_stripe(product, price)
                    plan = SubscriptionPlan.query.filter_by(
                        stripe_price_id=price["id"]
                    ).first()
                    if plan:
                        for key, value in fields.items():
                            setattr(plan, key, value)
                    else:
                        db.session.add(SubscriptionPlan(features=[], **fields))
                report["updated_count" if plan else "created_count"] += 1
                report["synced_count"] += 1
            except Exception as e:
                logger.error(f"Error syncing price {price.get('id')}: {e}", exc_info=True)
                report["error_count"] += 1
                report["errors"].append(f"Product {product.get('name')}: {e}")

    logger.info(
        f"Plan sync: {report['created_count']} created, "
        f"{report['updated_count']} updated, {report['error_count']} errors"
    )
    return report
