"""Shared test fixtures for the tenant billing test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: super admin, tenant + clinic + tenant user, two plans
- admin_client: test client with the super admin signed in
- make_subscription: factory for tenant_subscriptions rows
"""

from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

from tenant_billing import create_app
from tenant_billing.extensions import db as _db
from tenant_billing.models.billing import SubscriptionPlan, TenantSubscription
from tenant_billing.models.tenant import Clinic, Tenant
from tenant_billing.models.user import User

ADMIN_EMAIL = "admin@billing.test"
ADMIN_PASSWORD = "admin123"
TENANT_USER_EMAIL = "doctor@acme.test"
TENANT_USER_PASSWORD = "password123"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed a super admin, one tenant with a clinic and a user, and plans.

    Returns a dict of plain IDs so tests can use them after the objects
    are expired by a request's commit.
    """
    # --- Super admin (already has a Stripe customer for pay-on-behalf) ---
    admin = User(
        email=ADMIN_EMAIL,
        password_hash=generate_password_hash(ADMIN_PASSWORD),
        full_name="Billing Admin",
        is_super_admin=True,
        stripe_customer_id="cus_admin",
    )
    _db.session.add(admin)

    # --- Tenant + clinic ---
    tenant = Tenant(name="Acme Health", slug="acme", email="billing@acme.test")
    _db.session.add(tenant)
    _db.session.flush()

    clinic = Clinic(tenant_id=tenant.id, name="Acme Downtown")
    _db.session.add(clinic)

    # --- Tenant user ---
    tenant_user = User(
        email=TENANT_USER_EMAIL,
        password_hash=generate_password_hash(TENANT_USER_PASSWORD),
        full_name="Dr. Test",
        tenant_id=tenant.id,
    )
    _db.session.add(tenant_user)

    # --- Plans ---
    pro = SubscriptionPlan(
        stripe_product_id="prod_pro",
        stripe_price_id="price_pro",
        name="Pro",
        description="Everything a busy clinic needs",
        price=2999,
        currency="USD",
        interval="month",
        features=["appointments", "reports"],
        is_active=True,
        is_default=True,
    )
    basic = SubscriptionPlan(
        stripe_product_id="prod_basic",
        stripe_price_id="price_basic",
        name="Basic",
        price=999,
        currency="USD",
        interval="month",
        is_active=True,
        is_default=False,
    )
    _db.session.add_all([pro, basic])
    _db.session.commit()

    return {
        "admin_id": admin.id,
        "tenant_id": tenant.id,
        "clinic_id": clinic.id,
        "tenant_user_id": tenant_user.id,
        "plan_id": pro.id,
        "basic_plan_id": basic.id,
    }


def login(client, email, password):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture
def admin_client(client, seed_data):
    """Test client with the super admin signed in."""
    resp = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert resp.status_code == 200
    return client


@pytest.fixture
def make_subscription(db_session, seed_data):
    """Factory: insert a tenant subscription row and return it."""
    counter = {"n": 0}

    def _make(status="active", tenant_id=None, plan_id=None, created_at=None, **fields):
        counter["n"] += 1
        sub = TenantSubscription(
            tenant_id=tenant_id or seed_data["tenant_id"],
            plan_id=plan_id or seed_data["plan_id"],
            stripe_subscription_id=fields.pop(
                "stripe_subscription_id", f"sub_test_{counter['n']}"
            ),
            stripe_customer_id=fields.pop("stripe_customer_id", "cus_tenant"),
            status=status,
            price_amount=fields.pop("price_amount", 2999),
            currency="USD",
            current_period_start=datetime.now(timezone.utc) - timedelta(days=5),
            current_period_end=datetime.now(timezone.utc) + timedelta(days=25),
            created_at=created_at or datetime.now(timezone.utc),
            **fields,
        )
        _db.session.add(sub)
        _db.session.commit()
        return sub

    return _make
