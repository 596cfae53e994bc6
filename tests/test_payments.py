"""
Tests for Stripe payment intents and webhooks.
"""
import json
from unittest.mock import Mock, patch

import pytest
import stripe

from leila import config, payments


@pytest.fixture
def stripe_on(monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "whsec_test")


@pytest.fixture
def create_intent(stripe_on):
    intent = Mock(id="pi_123", amount=15000, client_secret="pi_123_secret", status="requires_payment_method")
    with patch("leila.payments.stripe.PaymentIntent.create", return_value=intent) as create:
        yield create


def _booking(fake_db, booking_id="b1", customer="customer-1", intent_id=None, **pricing):
    fake_db.set_document("bookings", booking_id, {
        "customerId": customer,
        "pricing": pricing or {"estimatedAmount": 150},
        "payment": {"status": "pending", "stripePaymentIntentId": intent_id},
    })


class TestStatementSuffix:

    @pytest.mark.parametrize("service_id,expected", [
        ("plumbing-repair", "SVCPLUMB"),
        ("a-b", "SVCAB"),
        ("", None),
        (None, None),
    ])
    def test_suffix(self, service_id, expected):
        assert payments.statement_suffix(service_id) == expected


# ─────────────────────────────────────
#  payment intents
# ─────────────────────────────────────

class TestPaymentIntent:

    def test_minimum_amount(self, client, customer_headers):
        response = client.post("/api/v1/payments/intent", json={"amount": 49}, headers=customer_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    def test_not_configured(self, client, customer_headers):
        response = client.post("/api/v1/payments/intent", json={"amount": 5000}, headers=customer_headers)
        assert response.status_code == 503
        assert response.json()["code"] == "STRIPE_NOT_CONFIGURED"

    def test_requires_auth(self, client):
        assert client.post("/api/v1/payments/intent", json={"amount": 5000}).status_code == 401

    def test_creates_intent_for_booking(self, client, fake_db, create_intent, customer_headers):
        _booking(fake_db)
        response = client.post("/api/v1/payments/intent", headers=customer_headers, json={
            "amount": 15000, "metadata": {"bookingId": "b1", "serviceId": "plumbing-repair"},
        })
        assert response.status_code == 200
        assert response.json() == {
            "clientSecret": "pi_123_secret", "paymentIntentId": "pi_123",
            "amount": 15000, "status": "requires_payment_method",
        }

        params = create_intent.call_args.kwargs
        assert params["currency"] == "usd"
        assert params["statement_descriptor_suffix"] == "SVCPLUMB"
        assert params["metadata"]["userId"] == "customer-1"
        assert params["metadata"]["platform"] == "leila-home-services"

        payment = fake_db.get_document("bookings", "b1")["payment"]
        assert payment == {"status": "processing", "stripePaymentIntentId": "pi_123"}

    def test_amount_must_match_booking(self, client, fake_db, create_intent, customer_headers):
        _booking(fake_db)
        response = client.post("/api/v1/payments/intent", headers=customer_headers, json={
            "amount": 100, "metadata": {"bookingId": "b1"},
        })
        assert response.status_code == 400
        assert response.json()["code"] == "AMOUNT_MISMATCH"
        assert response.json()["details"]["expectedAmount"] == 15000
        create_intent.assert_not_called()

    def test_final_amount_wins_over_estimate(self, client, fake_db, create_intent, customer_headers):
        _booking(fake_db, estimatedAmount=150, finalAmount=182.5)
        stale = client.post("/api/v1/payments/intent", headers=customer_headers, json={
            "amount": 15000, "metadata": {"bookingId": "b1"},
        })
        assert stale.status_code == 400
        current = client.post("/api/v1/payments/intent", headers=customer_headers, json={
            "amount": 18250, "metadata": {"bookingId": "b1"},
        })
        assert current.status_code == 200

    def test_unknown_booking(self, client, create_intent, customer_headers):
        response = client.post("/api/v1/payments/intent", headers=customer_headers, json={
            "amount": 5000, "metadata": {"bookingId": "ghost"},
        })
        assert response.status_code == 404
        create_intent.assert_not_called()

    def test_someone_elses_booking(self, client, fake_db, create_intent, customer_headers):
        _booking(fake_db, customer="customer-2")
        response = client.post("/api/v1/payments/intent", headers=customer_headers, json={
            "amount": 5000, "metadata": {"bookingId": "b1"},
        })
        assert response.status_code == 403

    @pytest.mark.parametrize("error,status,code", [
        (stripe.CardError("Your card was declined.", "number", "card_declined"), 400, "card_declined"),
        (stripe.InvalidRequestError("Bad currency", "currency"), 400, "INVALID_REQUEST"),
        (stripe.AuthenticationError("bad key"), 401, "AUTH_ERROR"),
        (stripe.APIConnectionError("timeout"), 503, "CONNECTION_ERROR"),
        (stripe.APIError("stripe down"), 503, "STRIPE_API_ERROR"),
        (RuntimeError("boom"), 500, "INTERNAL_ERROR"),
    ])
    def test_stripe_errors(self, client, create_intent, customer_headers, error, status, code):
        create_intent.side_effect = error
        response = client.post("/api/v1/payments/intent", json={"amount": 5000}, headers=customer_headers)
        assert response.status_code == status
        assert response.json()["code"] == code


# ─────────────────────────────────────
#  webhook events
# ─────────────────────────────────────

class TestHandleEvent:

    def test_succeeded_by_metadata(self, fake_db):
        _booking(fake_db)
        booking_id = payments.handle_event({
            "id": "evt_1", "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "amount": 15000, "amount_received": 15000,
                                "metadata": {"bookingId": "b1"}}},
        })
        assert booking_id == "b1"
        payment = fake_db.get_document("bookings", "b1")["payment"]
        assert payment["status"] == "completed"
        assert payment["amountReceived"] == 15000
        assert payment["paidAt"] is not None

        log = fake_db.all("activity_logs")[0]
        assert log["actor"]["type"] == "WEBHOOK"
        assert log["action"]["category"] == "PAYMENT_PROCESSED"

    def test_failed_by_intent_id(self, fake_db):
        _booking(fake_db, intent_id="pi_9")
        payments.handle_event({
            "id": "evt_2", "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_9", "last_payment_error": {"message": "Insufficient funds"}}},
        })
        payment = fake_db.get_document("bookings", "b1")["payment"]
        assert payment["status"] == "failed"
        assert payment["failureMessage"] == "Insufficient funds"
        assert fake_db.all("activity_logs")[0]["action"]["status"] == "FAILED"

    @pytest.mark.parametrize("refunded,status", [(15000, "refunded"), (5000, "partially_refunded")])
    def test_refunds(self, fake_db, refunded, status):
        _booking(fake_db, intent_id="pi_5")
        payments.handle_event({
            "id": "evt_3", "type": "charge.refunded",
            "data": {"object": {"payment_intent": "pi_5", "amount": 15000, "amount_refunded": refunded}},
        })
        payment = fake_db.get_document("bookings", "b1")["payment"]
        assert payment["status"] == status
        assert payment["amountRefunded"] == refunded

    def test_underpaid_intent_not_marked_paid(self, fake_db):
        _booking(fake_db)
        payments.handle_event({
            "id": "evt_6", "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "amount": 100, "amount_received": 100,
                                "metadata": {"bookingId": "b1"}}},
        })
        payment = fake_db.get_document("bookings", "b1")["payment"]
        assert payment["status"] == "processing"
        assert payment["shortBy"] == 14900
        assert "paidAt" not in payment

        log = fake_db.all("activity_logs")[0]
        assert log["action"]["status"] == "FAILED"
        assert log["audit"]["requiresReview"] is True

    def test_unhandled_type(self, fake_db):
        assert payments.handle_event({"id": "evt_4", "type": "customer.created", "data": {"object": {}}}) is None

    def test_no_matching_booking(self, fake_db):
        event = {"id": "evt_5", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_unknown"}}}
        assert payments.handle_event(event) is None
        assert fake_db.all("activity_logs") == []


class TestWebhookRoute:

    EVENT = {
        "id": "evt_1", "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "amount": 15000, "metadata": {"bookingId": "b1"}}},
    }

    def _post(self, client, headers=None):
        return client.post("/api/v1/payments/webhook", content=json.dumps(self.EVENT), headers=headers or {})

    def test_missing_signature(self, client, stripe_on):
        assert self._post(client).status_code == 400

    def test_missing_secret(self, client):
        assert self._post(client, {"stripe-signature": "t=1,v1=abc"}).status_code == 500

    @patch("leila.payments.stripe.Webhook.construct_event")
    def test_bad_signature(self, mock_construct, client, stripe_on):
        mock_construct.side_effect = stripe.SignatureVerificationError("mismatch", "t=1,v1=abc")
        assert self._post(client, {"stripe-signature": "t=1,v1=abc"}).status_code == 400

    @patch("leila.payments.stripe.Webhook.construct_event")
    def test_verified_event_applied(self, mock_construct, client, fake_db, stripe_on):
        _booking(fake_db)
        response = self._post(client, {"stripe-signature": "t=1,v1=abc"})
        assert response.status_code == 200
        assert response.json() == {"received": True, "bookingId": "b1"}
        assert mock_construct.call_args.args[1:] == ("t=1,v1=abc", "whsec_test")
        assert fake_db.get_document("bookings", "b1")["payment"]["amountReceived"] == 15000

    @patch("leila.payments.handle_event", side_effect=RuntimeError("firestore down"))
    @patch("leila.payments.stripe.Webhook.construct_event")
    def test_processing_failure_acknowledged(self, mock_construct, mock_handle, client, stripe_on):
        response = self._post(client, {"stripe-signature": "t=1,v1=abc"})
        assert response.status_code == 200
        assert response.json()["received"] is True
        assert "error" in response.json()
