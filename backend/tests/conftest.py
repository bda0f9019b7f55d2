"""
Pytest fixtures for storefront backend tests.

Provides test database setup, users with sessions for each role, a small
catalog, and helpers for signed webhook / identity requests.
"""

import json

import pytest
from storefront import create_app
from storefront.extensions import db
from storefront.models import User, Category
from storefront.models.auth import ROLE_CUSTOMER, ROLE_SELLER, ROLE_ADMIN
from storefront.services import catalog_service, session_service
from storefront.services.signatures import compute_signature


WEBHOOK_SECRET = "test-webhook-secret"
IDENTITY_SECRET = "test-identity-secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PAYMENT_GATEWAY': 'mock',
        'PORTONE_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'IDENTITY_SHARED_SECRET': IDENTITY_SECRET,
        'STORAGE_BUCKET': '',
        'TAX_RATE_BPS': 0,
        'SHIPPING_FLAT_CENTS': 0,
        'FREE_SHIPPING_THRESHOLD_CENTS': 0,
        'MAX_UPLOAD_BYTES': 1024,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def _make_user(db_session, subject, email, role):
    user = User(provider="test", subject=subject, email=email, name=subject, role=role, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def customer(db_session):
    return _make_user(db_session, "customer-1", "customer@example.com", ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def other_customer(db_session):
    return _make_user(db_session, "customer-2", "other@example.com", ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def seller(db_session):
    return _make_user(db_session, "seller-1", "seller@example.com", ROLE_SELLER)


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user(db_session, "admin-1", "admin@example.com", ROLE_ADMIN)


def auth_headers(user) -> dict:
    """Issue a session for user and return Authorization headers."""
    _, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def customer_headers(customer):
    return auth_headers(customer)


@pytest.fixture(scope='function')
def other_headers(other_customer):
    return auth_headers(other_customer)


@pytest.fixture(scope='function')
def seller_headers(seller):
    return auth_headers(seller)


@pytest.fixture(scope='function')
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture(scope='function')
def category(db_session):
    return catalog_service.create_category(name="Electronics")


@pytest.fixture(scope='function')
def phone(db_session, category):
    """Product with two stock-tracked variants (5 and 2 units)."""
    return catalog_service.create_product(
        patch={
            "name": "Galaxy S24",
            "sku": "GS24",
            "price_cents": 100000,
            "category_id": category.id,
        },
        images=[{"url": "https://cdn.example.com/gs24.png"}],
        variants=[
            {"name": "256GB Black", "sku": "GS24-256-BK",
             "attributes": {"storage": "256GB", "color": "black"}, "stock": 5},
            {"name": "512GB White", "sku": "GS24-512-WH",
             "attributes": {"storage": "512GB", "color": "white"}, "price_cents": 120000, "stock": 2},
        ],
    )


@pytest.fixture(scope='function')
def mug(db_session, category):
    """Product without variants (not stock-tracked)."""
    return catalog_service.create_product(
        patch={"name": "Coffee Mug", "sku": "MUG-1", "price_cents": 15000, "category_id": category.id},
    )


def signed_post(client, path, payload, secret, header):
    """POST payload as raw JSON with an HMAC signature header."""
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        path,
        data=body,
        content_type="application/json",
        headers={header: compute_signature(body, secret)},
    )


def post_webhook(client, payload, secret=WEBHOOK_SECRET):
    return signed_post(client, "/api/payments/webhook", payload, secret, "x-portone-signature")


def post_identity(client, payload, secret=IDENTITY_SECRET):
    return signed_post(client, "/api/auth/session", payload, secret, "X-Identity-Signature")
