"""Transactions blueprint - /api/stripe/transactions*, /api/stripe/analytics

Ledger listing with filters, Stripe backfill, and billing analytics.
"""

from flask import Blueprint, current_app, request

from tenant_billing.decorators import super_admin_required
from tenant_billing.extensions import db
from tenant_billing.services import transaction_service
from tenant_billing.utils import parse_iso_date, parse_pagination, respond

transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/stripe")


@transactions_bp.route("/transactions", methods=["GET"])
@super_admin_required
def list_transactions():
    page, limit = parse_pagination(
        request.args,
        default_limit=current_app.config["DEFAULT_PAGE_SIZE"],
        max_limit=current_app.config["MAX_PAGE_SIZE"],
    )
    filters = {
        "status": request.args.get("status"),
        "type": request.args.get("type"),
        "tenant_id": request.args.get("tenant_id"),
        "customer_email": request.args.get("customer_email"),
        "start_date": parse_iso_date(request.args.get("start_date"), "start_date"),
        "end_date": parse_iso_date(request.args.get("end_date"), "end_date"),
    }
    items, pagination = transaction_service.list_transactions(filters, page, limit)
    return respond(
        {"transactions": [t.to_dict() for t in items], "pagination": pagination},
        "Transactions retrieved successfully",
    )


@transactions_bp.route("/transactions/sync", methods=["POST"])
@super_admin_required
def sync_transactions():
    report = transaction_service.sync_transactions_from_stripe()
    db.session.commit()
    return respond(
        report, f"Successfully synced {report['synced_count']} transactions from Stripe"
    )


@transactions_bp.route("/analytics", methods=["GET"])
@super_admin_required
def analytics():
    data = transaction_service.get_subscription_analytics(
        start_date=parse_iso_date(request.args.get("start_date"), "start_date"),
        end_date=parse_iso_date(request.args.get("end_date"), "end_date"),
    )
    return respond(data, "Analytics retrieved successfully")
