"""
Tests for the health check endpoints.
"""
from unittest.mock import Mock, patch

import stripe
from google.api_core import exceptions as google_exceptions

import leila
from leila import config, health


class TestHealth:

    def test_basic(self, client):
        body = client.get("/api/v1/health").json()
        assert body["status"] == "ok"
        assert body["version"] == leila.__version__
        assert body["environment"] == "test"

    def test_firestore(self, client, fake_db):
        body = client.get("/api/v1/health/firestore").json()
        assert body["status"] == "healthy"
        assert fake_db.get_document("_health_check", "test") is None

    def test_firestore_permission_denied(self, client):
        with patch.object(health.storage, "set_document", side_effect=google_exceptions.PermissionDenied("rules")):
            response = client.get("/api/v1/health/firestore")
        assert response.status_code == 403
        assert response.json()["error"] == "Permission denied"

    def test_firestore_unreachable(self, client):
        with patch.object(health.storage, "set_document", side_effect=ConnectionError("no route")):
            response = client.get("/api/v1/health/firestore")
        assert response.status_code == 500
        assert response.json()["error"] == "ConnectionError"


class TestStripeHealth:

    def test_unconfigured_is_a_warning(self, client):
        body = client.get("/api/v1/health/stripe").json()
        assert body["status"] == "warning"
        assert body["details"]["hasSecretKey"] is False

    @patch("leila.health.stripe.Account.retrieve")
    def test_healthy(self, mock_retrieve, client, monkeypatch):
        monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
        mock_retrieve.return_value = Mock(
            id="acct_1", charges_enabled=True, payouts_enabled=False, country="US", default_currency="usd",
        )
        body = client.get("/api/v1/health/stripe").json()
        assert body["status"] == "healthy"
        assert body["details"]["accountId"] == "acct_1"
        assert body["details"]["payoutsEnabled"] is False

    @patch("leila.health.stripe.Account.retrieve", side_effect=stripe.AuthenticationError("Invalid API Key"))
    def test_bad_key(self, mock_retrieve, client, monkeypatch):
        monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_wrong")
        assert client.get("/api/v1/health/stripe").status_code == 401


class TestAuthAndAiHealth:

    @patch("leila.auth._firebase_app")
    def test_auth_healthy(self, mock_app, client):
        body = client.get("/api/v1/health/auth").json()
        assert body["checks"] == {"jwt": True, "firebaseAdmin": True}

    @patch("leila.auth._firebase_app", side_effect=ValueError("no credentials"))
    def test_auth_without_firebase(self, mock_app, client):
        response = client.get("/api/v1/health/auth")
        assert response.status_code == 500
        assert response.json()["errors"] == {"firebaseAdmin": "ValueError"}

    def test_ai_unconfigured(self, client):
        body = client.get("/api/v1/health/ai").json()
        assert body["status"] == "warning"
        assert body["configured"] is False

    def test_ai_configured(self, client, ai):
        body = client.get("/api/v1/health/ai").json()
        assert body["status"] == "healthy"
        assert body["backend"] == "gemini-api"
        assert body["models"]["chat"] == config.MODEL_NAME
