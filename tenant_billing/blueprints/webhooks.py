"""Webhooks blueprint - /api/stripe/webhook

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, request

from tenant_billing.errors import InvalidSignature
from tenant_billing.services.stripe_service import (
    handle_webhook_event,
    verify_webhook_signature,
)
from tenant_billing.utils import respond

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/stripe")


@webhooks_bp.route("/webhook", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET (400 on failure)
    3. Pass to handle_webhook_event (idempotent via stripe_events table)
    4. Return 200 to acknowledge receipt, whatever the handler outcome

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except InvalidSignature as e:
        logger.warning(f"Webhook rejected: {e.message}")
        raise

    # --- Process event (idempotent) ---
    outcome = handle_webhook_event(event)
    if outcome == "failed":
        logger.error(f"Webhook {event['id']} ({event['type']}) failed; acknowledged anyway")

    return respond({"status": outcome}, "Webhook received")
