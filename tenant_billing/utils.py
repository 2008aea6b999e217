"""Small shared helpers: time handling and request parsing."""

from datetime import datetime, timezone

from flask import jsonify

from tenant_billing.errors import ValidationError


def utc_now():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return an aware UTC datetime.

    SQLite returns naive datetimes; Postgres returns aware ones.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts):
    """Convert a Stripe unix timestamp to an aware datetime (None-safe)."""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_iso_date(value, field):
    """Parse an ISO-8601 date or datetime query parameter."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            "Validation failed",
            details=[{"field": field, "message": f"Invalid {field.replace('_', ' ')} format"}],
        )
    return as_utc(parsed)


def parse_pagination(args, default_limit=10, max_limit=100):
    """Read page/limit from query args. Returns (page, limit)."""
    errors = []
    try:
        page = int(args.get("page", 1))
        if page < 1:
            raise ValueError
    except (TypeError, ValueError):
        errors.append({"field": "page", "message": "Page must be at least 1"})
        page = 1
    try:
        limit = int(args.get("limit", default_limit))
        if limit < 1 or limit > max_limit:
            raise ValueError
    except (TypeError, ValueError):
        errors.append({
            "field": "limit",
            "message": f"Limit must be between 1 and {max_limit}",
        })
        limit = default_limit
    if errors:
        raise ValidationError("Validation failed", details=errors)
    return page, limit


def paginate(query, page, limit):
    """Apply offset/limit to a query. Returns (items, pagination dict)."""
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


def format_money(amount_minor, currency):
    """Format minor units for display, e.g. (2999, "USD") -> "29.99 USD"."""
    if amount_minor is None:
        return None
    return f"{amount_minor / 100:,.2f} {(currency or '').upper()}"


def respond(data=None, message="", status=200):
    """JSON success envelope used by every API route."""
    return jsonify({"success": True, "data": data, "message": message}), status
