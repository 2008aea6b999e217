"""Security tests.

Tests:
- Security headers are present on responses (including error responses)
- Unknown routes and wrong methods answer with the JSON error envelope
- Admin-only API surface rejects anonymous and tenant users
- Webhook endpoint is reachable without a session or CSRF token
"""

import pytest

TENANT_USER_EMAIL = "doctor@acme.test"
TENANT_USER_PASSWORD = "password123"

ADMIN_ROUTES = [
    ("get", "/api/stripe/plans"),
    ("post", "/api/stripe/plans/sync"),
    ("get", "/api/stripe/subscriptions"),
    ("post", "/api/stripe/subscriptions"),
    ("get", "/api/stripe/transactions"),
    ("post", "/api/stripe/transactions/sync"),
    ("get", "/api/stripe/analytics"),
    ("get", "/api/stripe/admin/payment-methods"),
    ("post", "/api/stripe/admin/setup-intent"),
]


class TestSecurityHeaders:
    """Verify security headers are present on responses."""

    def test_headers_on_success(self, client, seed_data):
        resp = client.post("/auth/login", json={"email": "admin@billing.test", "password": "admin123"})
        assert resp.status_code == 200
        assert resp.headers.get("X-Content-Type-Options") == "nosniff"
        assert resp.headers.get("X-Frame-Options") == "DENY"
        assert resp.headers.get("Referrer-Policy") == "strict-origin-when-cross-origin"
        assert resp.headers.get("Cache-Control") == "no-store"
        assert "frame-ancestors 'none'" in resp.headers.get("Content-Security-Policy")

    def test_headers_on_error_pages(self, client):
        resp = client.get("/nonexistent-page-xyz")
        assert resp.headers.get("X-Content-Type-Options") == "nosniff"
        assert resp.headers.get("X-Frame-Options") == "DENY"

    def test_no_hsts_in_debug(self, app, client):
        """HSTS is only sent when the app is not in debug mode."""
        assert app.debug is True
        resp = client.get("/auth/me")
        assert "Strict-Transport-Security" not in resp.headers


class TestJsonErrors:

    def test_unknown_route(self, client):
        resp = client.get("/nonexistent-page-xyz")
        assert resp.status_code == 404
        data = resp.get_json()
        assert data["success"] is False
        assert data["code"] == "NOT_FOUND"

    def test_wrong_method(self, client):
        resp = client.get("/auth/login")
        assert resp.status_code == 405
        assert resp.get_json()["code"] == "METHOD_NOT_ALLOWED"


class TestAdminSurface:

    @pytest.mark.parametrize("method,url", ADMIN_ROUTES)
    def test_anonymous_gets_401(self, client, seed_data, method, url):
        resp = getattr(client, method)(url)
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "AUTH_REQUIRED"

    @pytest.mark.parametrize("method,url", ADMIN_ROUTES)
    def test_tenant_user_gets_403(self, client, seed_data, make_subscription, method, url):
        make_subscription("active")
        client.post("/auth/login", json={
            "email": TENANT_USER_EMAIL, "password": TENANT_USER_PASSWORD,
        })
        resp = getattr(client, method)(url)
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "SUPER_ADMIN_REQUIRED"


class TestWebhookExposure:

    def test_webhook_needs_no_session(self, client):
        # rejected for the signature, not for auth or CSRF
        resp = client.post("/api/stripe/webhook", data="{}", content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_SIGNATURE"
