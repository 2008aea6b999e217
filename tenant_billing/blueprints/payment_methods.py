"""Admin payment methods blueprint - /api/stripe/admin/*

Cards on the super admin's own Stripe customer, used for pay-on-behalf.
"""

from flask import Blueprint
from flask_login import current_user

from tenant_billing.decorators import super_admin_required
from tenant_billing.extensions import db
from tenant_billing.services import stripe_service
from tenant_billing.utils import respond

payment_methods_bp = Blueprint(
    "payment_methods", __name__, url_prefix="/api/stripe/admin"
)


@payment_methods_bp.route("/payment-methods", methods=["GET"])
@super_admin_required
def list_payment_methods():
    data = stripe_service.list_admin_payment_methods(current_user)
    db.session.commit()  # persists a newly resolved admin customer id
    return respond(data, "Admin payment methods retrieved successfully")


@payment_methods_bp.route("/setup-intent", methods=["POST"])
@super_admin_required
def create_setup_intent():
    data = stripe_service.create_admin_setup_intent(current_user)
    db.session.commit()
    return respond(data, "Setup intent created successfully")


@payment_methods_bp.route("/payment-methods/<payment_method_id>", methods=["DELETE"])
@super_admin_required
def delete_payment_method(payment_method_id):
    stripe_service.detach_admin_payment_method(current_user, payment_method_id)
    db.session.commit()
    return respond(None, "Payment method removed successfully")
