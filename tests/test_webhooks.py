"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid)
- Idempotent event processing (duplicate events skipped)
- customer.subscription.updated / deleted handlers
- Transition table enforcement on webhook statuses
- invoice.payment_succeeded / invoice.payment_failed handlers
- payment_intent.succeeded / payment_intent.payment_failed handlers
- Handler failures are recorded and still acknowledged
- Unknown event types (accepted but not processed)
"""

from unittest.mock import patch

import stripe

from tenant_billing.extensions import db
from tenant_billing.models.audit import AuditEvent
from tenant_billing.models.billing import TenantSubscription
from tenant_billing.models.stripe_event import StripeEvent
from tenant_billing.models.transaction import StripeTransaction
from tenant_billing.services.billing_service import record_invoice_transaction

WEBHOOK_URL = "/api/stripe/webhook"
CONSTRUCT_EVENT = "tenant_billing.services.stripe_service.stripe.Webhook.construct_event"


def _post(client):
    return client.post(
        WEBHOOK_URL,
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        resp = client.post(WEBHOOK_URL, data="{}", content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_SIGNATURE"

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_returns_400(self, mock_construct, client, seed_data):
        mock_construct.side_effect = stripe.SignatureVerificationError(
            "No signatures found", "bad_sig"
        )
        resp = _post(client)
        assert resp.status_code == 400
        assert StripeEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_malformed_payload_returns_400(self, mock_construct, client, seed_data):
        mock_construct.side_effect = ValueError("Invalid payload")
        resp = _post(client)
        assert resp.status_code == 400


class TestWebhookIdempotency:
    """Tests for duplicate event handling."""

    @patch(CONSTRUCT_EVENT)
    def test_duplicate_event_returns_200(self, mock_construct, client, seed_data):
        db.session.add(StripeEvent(
            stripe_event_id="evt_duplicate_123",
            event_type="customer.subscription.updated",
        ))
        db.session.commit()

        mock_construct.return_value = _event(
            "evt_duplicate_123", "customer.subscription.updated", {}
        )
        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == "already_processed"

    @patch(CONSTRUCT_EVENT)
    def test_unknown_event_type_ignored(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event("evt_unknown", "charge.refunded", {})
        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == "ignored"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_unknown").one().outcome == "ignored"


class TestSubscriptionEvents:
    """customer.subscription.updated / customer.subscription.deleted."""

    @patch(CONSTRUCT_EVENT)
    def test_updated_moves_to_past_due(self, mock_construct, client, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event("evt_upd_1", "customer.subscription.updated", {
            "id": "sub_wh",
            "status": "past_due",
            "cancel_at_period_end": False,
            "items": {"data": [{
                "current_period_start": 1767225600,
                "current_period_end": 1769904000,
            }]},
        })

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == "processed"

        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.status == "past_due"
        # period read from items.data[0] on newer API payloads
        assert sub.current_period_end.replace(tzinfo=None).year == 2026
        assert sub.current_period_end.replace(tzinfo=None).month == 2

    @patch(CONSTRUCT_EVENT)
    def test_cancel_at_sets_flag(self, mock_construct, client, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event("evt_upd_2", "customer.subscription.updated", {
            "id": "sub_wh",
            "status": "active",
            "cancel_at_period_end": False,
            "cancel_at": 1769904000,
        })

        _post(client)
        assert db.session.get(TenantSubscription, sub.id).cancel_at_period_end is True

    @patch(CONSTRUCT_EVENT)
    def test_deleted_marks_canceled(self, mock_construct, client, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event("evt_del_1", "customer.subscription.deleted", {
            "id": "sub_wh",
            "status": "canceled",
            "canceled_at": 1767225600,
            "ended_at": 1767225600,
        })

        _post(client)
        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.status == "canceled"
        assert sub.canceled_at is not None
        assert sub.ended_at is not None
        assert sub.cancel_at_period_end is False

    @patch(CONSTRUCT_EVENT)
    def test_unknown_subscription_is_noop(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event("evt_upd_3", "customer.subscription.updated", {
            "id": "sub_not_ours", "status": "active",
        })
        resp = _post(client)
        assert resp.status_code == 200
        assert TenantSubscription.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_terminal_status_not_reopened(self, mock_construct, client, make_subscription):
        sub = make_subscription("canceled", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event("evt_upd_4", "customer.subscription.updated", {
            "id": "sub_wh", "status": "active",
        })

        resp = _post(client)
        assert resp.status_code == 200
        assert db.session.get(TenantSubscription, sub.id).status == "canceled"
        rejected = AuditEvent.query.filter_by(action="subscription.transition_rejected").one()
        assert rejected.metadata_["to"] == "active"

    @patch(CONSTRUCT_EVENT)
    def test_same_status_redelivery_is_idempotent(self, mock_construct, client, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")
        for event_id in ("evt_a", "evt_b"):
            mock_construct.return_value = _event(event_id, "customer.subscription.updated", {
                "id": "sub_wh", "status": "active",
            })
            assert _post(client).status_code == 200

        assert db.session.get(TenantSubscription, sub.id).status == "active"
        assert AuditEvent.query.filter_by(action="subscription.transition_rejected").count() == 0


class TestInvoiceEvents:
    """invoice.payment_succeeded / invoice.payment_failed."""

    def _invoice(self, paid=True):
        return {
            "id": "in_wh",
            "subscription": "sub_wh",
            "customer": "cus_tenant",
            "customer_email": "billing@acme.test",
            "amount_paid": 2999 if paid else 0,
            "amount_due": 2999,
            "currency": "usd",
            "paid": paid,
            "status_transitions": {"paid_at": 1767225600} if paid else {},
            "next_payment_attempt": None if paid else 1767312000,
        }

    @patch(CONSTRUCT_EVENT)
    def test_payment_succeeded_records_transaction(self, mock_construct, client,
                                                   seed_data, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event(
            "evt_inv_1", "invoice.payment_succeeded", self._invoice()
        )

        resp = _post(client)
        assert resp.status_code == 200

        txn = StripeTransaction.query.filter_by(stripe_invoice_id="in_wh").one()
        assert txn.status == "succeeded"
        assert txn.amount == 2999
        assert txn.currency == "USD"
        assert txn.type == "subscription"
        assert txn.tenant_id == seed_data["tenant_id"]

        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.last_payment_date is not None
        assert AuditEvent.query.filter_by(action="invoice.payment_succeeded").count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_payment_failed_records_failure(self, mock_construct, client, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event(
            "evt_inv_2", "invoice.payment_failed", self._invoice(paid=False)
        )

        _post(client)
        txn = StripeTransaction.query.filter_by(stripe_invoice_id="in_wh").one()
        assert txn.status == "failed"
        # status changes only come from subscription events
        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.status == "active"
        assert sub.next_payment_attempt is not None

    @patch(CONSTRUCT_EVENT)
    def test_redelivery_does_not_duplicate(self, mock_construct, client, make_subscription):
        make_subscription("active", stripe_subscription_id="sub_wh")
        mock_construct.return_value = _event(
            "evt_inv_3", "invoice.payment_succeeded", self._invoice()
        )

        _post(client)
        resp = _post(client)
        assert resp.get_json()["data"]["status"] == "already_processed"
        assert StripeTransaction.query.filter_by(stripe_invoice_id="in_wh").count() == 1

    def test_invoice_key_is_invoice_and_event(self, seed_data):
        invoice = self._invoice()
        first, created = record_invoice_transaction(invoice, "evt_x", seed_data["tenant_id"])
        again, created_again = record_invoice_transaction(invoice, "evt_x", seed_data["tenant_id"])
        assert created is True
        assert created_again is False
        assert first.id == again.id

        _, created_other = record_invoice_transaction(invoice, "evt_y", seed_data["tenant_id"])
        assert created_other is True

    @patch(CONSTRUCT_EVENT)
    def test_unknown_tenant_still_recorded(self, mock_construct, client, seed_data):
        invoice = self._invoice()
        invoice["subscription"] = None
        invoice["customer"] = "cus_stranger"
        mock_construct.return_value = _event("evt_inv_4", "invoice.payment_succeeded", invoice)

        _post(client)
        txn = StripeTransaction.query.filter_by(stripe_invoice_id="in_wh").one()
        assert txn.tenant_id is None
        assert txn.type == "invoice"


class TestPaymentIntentEvents:
    """payment_intent.succeeded / payment_intent.payment_failed."""

    def _pi(self, status="succeeded", latest_charge=None):
        return {
            "id": "pi_wh",
            "amount": 5000,
            "currency": "usd",
            "status": status,
            "customer": "cus_tenant",
            "description": "Setup fee",
            "receipt_email": "billing@acme.test",
            "metadata": {},
            "latest_charge": latest_charge,
            "last_payment_error": None if status == "succeeded" else {
                "code": "card_declined", "message": "Your card was declined.",
            },
        }

    @patch(CONSTRUCT_EVENT)
    def test_succeeded_upserts_once(self, mock_construct, client, seed_data, make_subscription):
        make_subscription("active")
        for event_id in ("evt_pi_1", "evt_pi_2"):
            mock_construct.return_value = _event(event_id, "payment_intent.succeeded", self._pi())
            assert _post(client).status_code == 200

        txns = StripeTransaction.query.filter_by(stripe_payment_intent_id="pi_wh").all()
        assert len(txns) == 1
        assert txns[0].status == "succeeded"
        assert txns[0].type == "one_time"
        assert txns[0].tenant_id == seed_data["tenant_id"]

    @patch("tenant_billing.services.stripe_service.stripe.Charge.retrieve")
    @patch(CONSTRUCT_EVENT)
    def test_card_and_fee_from_charge(self, mock_construct, mock_charge, client, seed_data):
        mock_construct.return_value = _event(
            "evt_pi_3", "payment_intent.succeeded", self._pi(latest_charge="ch_1")
        )
        mock_charge.return_value = {
            "id": "ch_1",
            "payment_method_details": {
                "type": "card",
                "card": {"brand": "Visa", "last4": "4242"},
            },
            "balance_transaction": {"fee": 175},
        }

        _post(client)
        mock_charge.assert_called_once_with("ch_1", expand=["balance_transaction"])
        txn = StripeTransaction.query.filter_by(stripe_payment_intent_id="pi_wh").one()
        assert txn.card_brand == "visa"
        assert txn.card_last4 == "4242"
        assert txn.fee_amount == 175
        assert txn.net_amount == 4825

    @patch(CONSTRUCT_EVENT)
    def test_failed_records_failure_details(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event(
            "evt_pi_4", "payment_intent.payment_failed",
            self._pi(status="requires_payment_method"),
        )

        _post(client)
        txn = StripeTransaction.query.filter_by(stripe_payment_intent_id="pi_wh").one()
        assert txn.status == "failed"
        assert txn.failure_code == "card_declined"

    @patch(CONSTRUCT_EVENT)
    def test_final_status_is_frozen(self, mock_construct, client, seed_data):
        mock_construct.return_value = _event(
            "evt_pi_5", "payment_intent.payment_failed",
            self._pi(status="requires_payment_method"),
        )
        _post(client)

        mock_construct.return_value = _event("evt_pi_6", "payment_intent.succeeded", self._pi())
        _post(client)

        txn = StripeTransaction.query.filter_by(stripe_payment_intent_id="pi_wh").one()
        assert txn.status == "failed"


class TestHandlerFailures:
    """A failing handler is recorded but the event is still acknowledged."""

    @patch("tenant_billing.services.stripe_service.record_invoice_transaction")
    @patch(CONSTRUCT_EVENT)
    def test_handler_error_returns_200(self, mock_construct, mock_record, client, seed_data):
        mock_construct.return_value = _event("evt_boom", "invoice.payment_succeeded", {
            "id": "in_boom", "paid": True,
        })
        mock_record.side_effect = RuntimeError("database hiccup")

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["data"]["status"] == "failed"

        event = StripeEvent.query.filter_by(stripe_event_id="evt_boom").one()
        assert event.outcome == "failed"
        assert "database hiccup" in event.error

    @patch(CONSTRUCT_EVENT)
    def test_malformed_event_does_not_block_next(self, mock_construct, client, make_subscription):
        sub = make_subscription("active", stripe_subscription_id="sub_wh")

        mock_construct.return_value = _event("evt_bad", "invoice.payment_succeeded", {})
        assert _post(client).status_code == 200

        mock_construct.return_value = _event("evt_good", "customer.subscription.updated", {
            "id": "sub_wh", "status": "past_due",
        })
        assert _post(client).status_code == 200
        assert db.session.get(TenantSubscription, sub.id).status == "past_due"
