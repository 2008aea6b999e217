"""Tests for subscription provisioning, cancellation and listing.

Covers:
- Self-pay provisioning (incomplete + client_secret)
- Stripe customer reuse vs idempotent create
- Blocking pre-check (Conflict) and re-subscribe after cancel
- Input validation, missing tenant / archived plan
- Delegated (admin-paid) provisioning: success, decline, foreign card
- Cancel at period end / immediately; terminal subscriptions refused
- Listing with filters and pagination
- Super admin protection
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from tenant_billing.extensions import db
from tenant_billing.models.audit import AuditEvent
from tenant_billing.models.billing import SubscriptionPlan, TenantSubscription
from tenant_billing.models.transaction import StripeTransaction
from tenant_billing.services.billing_service import upsert_payment_intent_transaction

PERIOD_START = 1767225600  # 2026-01-01
PERIOD_END = 1769904000  # 2026-02-01


def _stripe_subscription(status="incomplete", invoice_status="open", client_secret="pi_secret_123"):
    return {
        "id": "sub_new",
        "status": status,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
        "latest_invoice": {
            "id": "in_new",
            "status": invoice_status,
            "amount_due": 2999,
            "currency": "usd",
            "payment_intent": {"id": "pi_self", "client_secret": client_secret},
        },
    }


def _payload(seed_data, **extra):
    body = {
        "tenant_id": seed_data["tenant_id"],
        "plan_id": seed_data["plan_id"],
        "customer_email": "Billing@Acme.test",
    }
    body.update(extra)
    return body


class TestCreateSelfPay:
    """POST /api/stripe/subscriptions without an admin card."""

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    def test_creates_incomplete_subscription(self, mock_list, mock_create, mock_sub_create,
                                             admin_client, seed_data):
        mock_list.return_value = {"data": []}
        mock_create.return_value = {"id": "cus_tenant_new"}
        mock_sub_create.return_value = _stripe_subscription()

        resp = admin_client.post("/api/stripe/subscriptions", json=_payload(seed_data))
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["client_secret"] == "pi_secret_123"
        assert data["paid_by_admin"] is False
        assert data["payment_status"] == "incomplete"

        # email normalised before the customer lookup
        mock_list.assert_called_once_with(email="billing@acme.test", limit=1)
        assert "idempotency_key" in mock_create.call_args.kwargs

        kwargs = mock_sub_create.call_args.kwargs
        assert kwargs["customer"] == "cus_tenant_new"
        assert kwargs["items"] == [{"price": "price_pro"}]
        assert kwargs["payment_behavior"] == "default_incomplete"
        assert kwargs["metadata"]["tenant_id"] == seed_data["tenant_id"]
        assert "trial_period_days" not in kwargs

        sub = TenantSubscription.query.filter_by(stripe_subscription_id="sub_new").one()
        assert sub.status == "incomplete"
        assert sub.price_amount == 2999
        assert sub.stripe_customer_id == "cus_tenant_new"
        assert sub.current_period_end is not None
        assert sub.created_by_user_id == seed_data["admin_id"]

        audit = AuditEvent.query.filter_by(action="subscription.created").one()
        assert audit.tenant_id == seed_data["tenant_id"]

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    def test_reuses_existing_customer(self, mock_list, mock_create, mock_sub_create,
                                      admin_client, seed_data):
        mock_list.return_value = {"data": [{"id": "cus_existing"}]}
        mock_sub_create.return_value = _stripe_subscription()

        resp = admin_client.post("/api/stripe/subscriptions", json=_payload(seed_data))
        assert resp.status_code == 201
        mock_create.assert_not_called()
        assert mock_sub_create.call_args.kwargs["customer"] == "cus_existing"

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    def test_trial_days_forwarded(self, mock_list, mock_sub_create, admin_client, seed_data):
        mock_list.return_value = {"data": [{"id": "cus_existing"}]}
        mock_sub_create.return_value = _stripe_subscription(status="trialing")

        resp = admin_client.post(
            "/api/stripe/subscriptions", json=_payload(seed_data, trial_days=14)
        )
        assert resp.status_code == 201
        assert mock_sub_create.call_args.kwargs["trial_period_days"] == 14

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    def test_unexpected_stripe_status(self, mock_list, mock_sub_create, admin_client, seed_data):
        mock_list.return_value = {"data": [{"id": "cus_existing"}]}
        mock_sub_create.return_value = _stripe_subscription(status="paused")

        resp = admin_client.post("/api/stripe/subscriptions", json=_payload(seed_data))
        assert resp.status_code == 502
        assert TenantSubscription.query.count() == 0


class TestCreateGuards:
    """Pre-checks that refuse before anything reaches Stripe."""

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    def test_blocking_subscription_conflicts(self, mock_sub_create, admin_client,
                                             seed_data, make_subscription):
        make_subscription("incomplete")

        resp = admin_client.post("/api/stripe/subscriptions", json=_payload(seed_data))
        assert resp.status_code == 409
        assert resp.get_json()["details"]["status"] == "incomplete"
        mock_sub_create.assert_not_called()

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    def test_resubscribe_after_cancel(self, mock_list, mock_sub_create, admin_client,
                                      seed_data, make_subscription):
        make_subscription("canceled")
        mock_list.return_value = {"data": [{"id": "cus_tenant"}]}
        mock_sub_create.return_value = _stripe_subscription()

        resp = admin_client.post("/api/stripe/subscriptions", json=_payload(seed_data))
        assert resp.status_code == 201
        assert TenantSubscription.query.count() == 2

    def test_missing_fields(self, admin_client, seed_data):
        resp = admin_client.post("/api/stripe/subscriptions", json={})
        assert resp.status_code == 400
        fields = {d["field"] for d in resp.get_json()["details"]}
        assert fields == {"tenant_id", "plan_id", "customer_email"}

    def test_invalid_email(self, admin_client, seed_data):
        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, customer_email="not-an-email"),
        )
        assert resp.status_code == 400

    def test_trial_days_out_of_range(self, admin_client, seed_data):
        resp = admin_client.post(
            "/api/stripe/subscriptions", json=_payload(seed_data, trial_days=400)
        )
        assert resp.status_code == 400

    def test_unknown_tenant(self, admin_client, seed_data):
        resp = admin_client.post(
            "/api/stripe/subscriptions", json=_payload(seed_data, tenant_id="missing")
        )
        assert resp.status_code == 404

    def test_unknown_plan(self, admin_client, seed_data):
        resp = admin_client.post(
            "/api/stripe/subscriptions", json=_payload(seed_data, plan_id="missing")
        )
        assert resp.status_code == 404

    def test_archived_plan(self, admin_client, seed_data):
        plan = db.session.get(SubscriptionPlan, seed_data["basic_plan_id"])
        plan.is_active = False
        db.session.commit()

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, plan_id=seed_data["basic_plan_id"]),
        )
        assert resp.status_code == 400


class TestCreateDelegated:
    """POST /api/stripe/subscriptions with admin_payment_method_id."""

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.retrieve")
    @patch("tenant_billing.services.subscription_service.stripe.Invoice.pay")
    @patch("tenant_billing.services.subscription_service.stripe.PaymentIntent.create")
    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    @patch("tenant_billing.services.stripe_service.stripe.PaymentMethod.retrieve")
    def test_admin_pays_first_invoice(self, mock_pm, mock_list, mock_sub_create, mock_pi,
                                      mock_invoice_pay, mock_sub_retrieve,
                                      admin_client, seed_data):
        mock_pm.return_value = {"id": "pm_admin", "customer": "cus_admin"}
        mock_list.return_value = {"data": [{"id": "cus_tenant"}]}
        mock_sub_create.return_value = _stripe_subscription()
        mock_pi.return_value = {
            "id": "pi_admin", "status": "succeeded", "amount": 2999, "currency": "usd",
        }
        mock_sub_retrieve.return_value = dict(_stripe_subscription(status="active"))

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, admin_payment_method_id="pm_admin"),
        )
        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["paid_by_admin"] is True
        assert data["payment_status"] == "active"
        assert "client_secret" not in data

        pi_kwargs = mock_pi.call_args.kwargs
        assert pi_kwargs["customer"] == "cus_admin"
        assert pi_kwargs["payment_method"] == "pm_admin"
        assert pi_kwargs["amount"] == 2999
        assert pi_kwargs["confirm"] is True
        mock_invoice_pay.assert_called_once_with("in_new", paid_out_of_band=True)

        sub = TenantSubscription.query.filter_by(stripe_subscription_id="sub_new").one()
        assert sub.status == "active"
        assert sub.paid_by_admin is True
        assert sub.last_payment_date is not None

        txn = StripeTransaction.query.filter_by(stripe_payment_intent_id="pi_admin").one()
        assert txn.status == "succeeded"
        assert txn.amount == 2999
        assert txn.tenant_id == seed_data["tenant_id"]
        assert txn.metadata_["paid_by_admin"] == "true"

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.retrieve")
    @patch("tenant_billing.services.subscription_service.stripe.Invoice.pay")
    @patch("tenant_billing.services.subscription_service.stripe.PaymentIntent.create")
    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    @patch("tenant_billing.services.stripe_service.stripe.PaymentMethod.retrieve")
    def test_payment_recorded_by_webhook_first(self, mock_pm, mock_list, mock_sub_create,
                                               mock_pi, mock_invoice_pay, mock_sub_retrieve,
                                               admin_client, seed_data):
        mock_pm.return_value = {"id": "pm_admin", "customer": "cus_admin"}
        mock_list.return_value = {"data": [{"id": "cus_tenant"}]}
        mock_sub_create.return_value = _stripe_subscription()
        mock_sub_retrieve.return_value = dict(_stripe_subscription(status="active"))
        payment_intent = {
            "id": "pi_admin", "status": "succeeded", "amount": 2999, "currency": "usd",
            "customer": "cus_admin",
        }

        def _charge_lands_via_webhook(**kwargs):
            upsert_payment_intent_transaction(payment_intent)
            db.session.commit()
            return payment_intent

        mock_pi.side_effect = _charge_lands_via_webhook

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, admin_payment_method_id="pm_admin"),
        )
        assert resp.status_code == 201

        sub = TenantSubscription.query.filter_by(stripe_subscription_id="sub_new").one()
        assert sub.status == "active"

        txn = StripeTransaction.query.filter_by(stripe_payment_intent_id="pi_admin").one()
        assert StripeTransaction.query.count() == 1
        assert txn.status == "succeeded"
        assert txn.stripe_invoice_id == "in_new"
        assert txn.tenant_id == seed_data["tenant_id"]
        assert txn.metadata_["paid_by_admin"] == "true"

    @patch("tenant_billing.services.subscription_service.stripe.Invoice.pay")
    @patch("tenant_billing.services.subscription_service.stripe.PaymentIntent.create")
    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    @patch("tenant_billing.services.stripe_service.stripe.PaymentMethod.retrieve")
    def test_declined_card_leaves_orphan(self, mock_pm, mock_list, mock_sub_create, mock_pi,
                                         mock_invoice_pay, admin_client, seed_data):
        mock_pm.return_value = {"id": "pm_admin", "customer": "cus_admin"}
        mock_list.return_value = {"data": [{"id": "cus_tenant"}]}
        mock_sub_create.return_value = _stripe_subscription()
        mock_pi.side_effect = stripe.CardError(
            "Your card was declined.", param=None, code="card_declined"
        )

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, admin_payment_method_id="pm_admin"),
        )
        assert resp.status_code == 402
        assert resp.get_json()["code"] == "PAYMENT_FAILED"
        mock_invoice_pay.assert_not_called()

        assert TenantSubscription.query.count() == 0
        assert StripeTransaction.query.count() == 0
        orphan = AuditEvent.query.filter_by(action="subscription.orphaned").one()
        assert orphan.metadata_["stripe_subscription_id"] == "sub_new"

    @patch("tenant_billing.services.subscription_service.stripe.Invoice.pay")
    @patch("tenant_billing.services.subscription_service.stripe.PaymentIntent.create")
    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.Customer.list")
    @patch("tenant_billing.services.stripe_service.stripe.PaymentMethod.retrieve")
    def test_requires_action_is_a_failure(self, mock_pm, mock_list, mock_sub_create, mock_pi,
                                          mock_invoice_pay, admin_client, seed_data):
        mock_pm.return_value = {"id": "pm_admin", "customer": "cus_admin"}
        mock_list.return_value = {"data": [{"id": "cus_tenant"}]}
        mock_sub_create.return_value = _stripe_subscription()
        mock_pi.return_value = {"id": "pi_admin", "status": "requires_action"}

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, admin_payment_method_id="pm_admin"),
        )
        assert resp.status_code == 402
        mock_invoice_pay.assert_not_called()
        assert TenantSubscription.query.count() == 0

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.PaymentMethod.retrieve")
    def test_foreign_card_forbidden(self, mock_pm, mock_sub_create, admin_client, seed_data):
        mock_pm.return_value = {"id": "pm_other", "customer": "cus_someone_else"}

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, admin_payment_method_id="pm_other"),
        )
        assert resp.status_code == 403
        mock_sub_create.assert_not_called()

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.create")
    @patch("tenant_billing.services.stripe_service.stripe.PaymentMethod.retrieve")
    def test_unknown_card(self, mock_pm, mock_sub_create, admin_client, seed_data):
        mock_pm.side_effect = stripe.InvalidRequestError("No such PaymentMethod", param="id")

        resp = admin_client.post(
            "/api/stripe/subscriptions",
            json=_payload(seed_data, admin_payment_method_id="pm_missing"),
        )
        assert resp.status_code == 400
        mock_sub_create.assert_not_called()


class TestCancel:
    """POST /api/stripe/subscriptions/<id>/cancel."""

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.modify")
    def test_cancel_at_period_end(self, mock_modify, admin_client, make_subscription):
        sub = make_subscription("active")

        resp = admin_client.post(f"/api/stripe/subscriptions/{sub.id}/cancel", json={})
        assert resp.status_code == 200
        mock_modify.assert_called_once_with(
            sub.stripe_subscription_id, cancel_at_period_end=True
        )

        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.status == "active"
        assert sub.cancel_at_period_end is True

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.cancel")
    def test_cancel_immediately(self, mock_cancel, admin_client, make_subscription):
        sub = make_subscription("past_due")

        resp = admin_client.post(
            f"/api/stripe/subscriptions/{sub.id}/cancel", json={"immediately": True}
        )
        assert resp.status_code == 200
        mock_cancel.assert_called_once_with(sub.stripe_subscription_id)

        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.status == "canceled"
        assert sub.canceled_at is not None
        assert AuditEvent.query.filter_by(action="subscription.canceled").count() == 1

    @patch("tenant_billing.services.subscription_service.stripe.Subscription.cancel")
    def test_cannot_cancel_twice(self, mock_cancel, admin_client, make_subscription):
        ended = datetime(2026, 1, 10, tzinfo=timezone.utc)
        sub = make_subscription("canceled", canceled_at=ended, ended_at=ended)
        original_canceled_at = sub.canceled_at

        resp = admin_client.post(
            f"/api/stripe/subscriptions/{sub.id}/cancel", json={"immediately": True}
        )
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "CONFLICT"
        mock_cancel.assert_not_called()

        sub = db.session.get(TenantSubscription, sub.id)
        assert sub.canceled_at == original_canceled_at
        assert AuditEvent.query.filter_by(action="subscription.canceled").count() == 0

    @pytest.mark.parametrize("status", ["canceled", "incomplete_expired"])
    @patch("tenant_billing.services.subscription_service.stripe.Subscription.modify")
    def test_period_end_cancel_refused_when_terminal(self, mock_modify, status,
                                                     admin_client, make_subscription):
        sub = make_subscription(status)

        resp = admin_client.post(f"/api/stripe/subscriptions/{sub.id}/cancel", json={})
        assert resp.status_code == 409
        mock_modify.assert_not_called()
        assert db.session.get(TenantSubscription, sub.id).cancel_at_period_end is not True

    def test_cancel_unknown(self, admin_client):
        resp = admin_client.post("/api/stripe/subscriptions/missing/cancel", json={})
        assert resp.status_code == 404


class TestList:
    """GET /api/stripe/subscriptions."""

    def test_filters_and_pagination(self, admin_client, seed_data, make_subscription):
        make_subscription("canceled")
        make_subscription("canceled")
        make_subscription("active")

        resp = admin_client.get("/api/stripe/subscriptions?status=canceled&limit=1")
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert len(data["subscriptions"]) == 1
        assert data["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}

    def test_bad_limit(self, admin_client):
        resp = admin_client.get("/api/stripe/subscriptions?limit=1000")
        assert resp.status_code == 400


class TestProtection:
    """Billing routes are super-admin only."""

    def test_anonymous_gets_401(self, client, seed_data):
        resp = client.get("/api/stripe/subscriptions")
        assert resp.status_code == 401

    def test_tenant_user_gets_403(self, client, seed_data, make_subscription):
        make_subscription("active")
        resp = client.post(
            "/auth/login", json={"email": "doctor@acme.test", "password": "password123"}
        )
        assert resp.status_code == 200

        resp = client.get("/api/stripe/subscriptions")
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "SUPER_ADMIN_REQUIRED"
