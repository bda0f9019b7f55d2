"""
Authentication and authorization tests.

Verifies:
- Signed identity assertions exchange for bearer sessions
- Unsigned/forged assertions are rejected (401)
- Unauthenticated requests to protected endpoints return 401
- Customers are denied seller/admin operations (403)
- Expired, idle and revoked sessions stop working
"""

from datetime import timedelta

import pytest

from conftest import post_identity
from storefront.models import User, SessionToken
from storefront.services import session_service


# =============================================================================
# IDENTITY ASSERTION -> SESSION
# =============================================================================


class TestIdentitySession:

    def test_valid_assertion_creates_customer_and_token(self, client, db_session):
        resp = post_identity(client, {
            "provider": "google",
            "subject": "1098",
            "email": "jane@example.com",
            "name": "Jane",
        })
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["token"]
        assert body["user"]["role"] == "CUSTOMER"

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.get_json()["user"]["email"] == "jane@example.com"

    def test_repeat_login_reuses_user(self, client, db_session):
        payload = {"provider": "kakao", "subject": "42", "email": "a@example.com"}
        assert post_identity(client, payload).status_code == 200
        assert post_identity(client, dict(payload, name="Renamed")).status_code == 200

        users = db_session.query(User).filter_by(provider="kakao", subject="42").all()
        assert len(users) == 1
        assert users[0].name == "Renamed"

    def test_forged_signature_rejected(self, client, db_session):
        resp = post_identity(client, {"provider": "google", "subject": "1"}, secret="wrong")
        assert resp.status_code == 401
        assert db_session.query(User).count() == 0

    def test_missing_signature_rejected(self, client, db_session):
        resp = client.post("/api/auth/session", json={"provider": "google", "subject": "1"})
        assert resp.status_code == 401

    def test_missing_subject_is_bad_request(self, client, db_session):
        resp = post_identity(client, {"provider": "google"})
        assert resp.status_code == 400

    def test_unknown_role_is_bad_request(self, client, db_session):
        resp = post_identity(client, {"provider": "google", "subject": "1", "role": "ROOT"})
        assert resp.status_code == 400

    def test_deactivated_user_cannot_sign_in(self, client, db_session, customer):
        customer.is_active = False
        db_session.commit()

        resp = post_identity(client, {"provider": customer.provider, "subject": customer.subject})
        assert resp.status_code == 403

    def test_logout_revokes_token(self, client, customer_headers):
        assert client.post("/api/auth/logout", headers=customer_headers).status_code == 200
        assert client.get("/api/auth/me", headers=customer_headers).status_code == 401


# =============================================================================
# UNAUTHENTICATED ACCESS - 401
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/auth/me"),
            ("GET", "/api/cart"),
            ("POST", "/api/cart"),
            ("GET", "/api/orders"),
            ("POST", "/api/orders"),
            ("POST", "/api/orders/checkout"),
            ("GET", "/api/payments?order_id=1"),
            ("POST", "/api/payments/confirm"),
            ("POST", "/api/payments/refund"),
            ("POST", "/api/uploads"),
            ("GET", "/api/users/stats"),
            ("GET", "/api/admin/orders"),
            ("GET", "/api/admin/inventory/low-stock"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token_rejected(self, client, db_session):
        resp = client.get("/api/cart", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401


# =============================================================================
# ROLE CHECKS - 403
# =============================================================================


class TestRoleChecks:

    def test_customer_cannot_create_product(self, client, customer_headers):
        resp = client.post("/api/products", json={"name": "X", "price_cents": 100}, headers=customer_headers)
        assert resp.status_code == 403

    def test_seller_can_create_product(self, client, seller_headers):
        resp = client.post("/api/products", json={"name": "Desk Lamp", "price_cents": 4500}, headers=seller_headers)
        assert resp.status_code == 201
        assert resp.get_json()["product"]["slug"] == "desk-lamp"

    def test_customer_cannot_list_all_orders(self, client, customer_headers):
        assert client.get("/api/admin/orders", headers=customer_headers).status_code == 403

    def test_seller_cannot_use_admin_console(self, client, seller_headers):
        assert client.get("/api/admin/inventory/low-stock", headers=seller_headers).status_code == 403

    def test_admin_can_create_category(self, client, admin_headers):
        resp = client.post("/api/categories", json={"name": "Garden"}, headers=admin_headers)
        assert resp.status_code == 201

    def test_customer_cannot_create_category(self, client, customer_headers):
        resp = client.post("/api/categories", json={"name": "Garden"}, headers=customer_headers)
        assert resp.status_code == 403


# =============================================================================
# SESSION LIFETIME
# =============================================================================


class TestSessionLifetime:

    def test_expired_session_is_invalid(self, db_session, customer):
        session, token = session_service.create_session(customer.id)
        session.expires_at = session.created_at - timedelta(seconds=1)
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_idle_session_is_invalid(self, db_session, customer):
        session, token = session_service.create_session(customer.id)
        session.last_used_at = session.last_used_at - session_service.SESSION_IDLE_TIMEOUT
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_token_is_stored_hashed(self, db_session, customer):
        _, token = session_service.create_session(customer.id)
        stored = db_session.query(SessionToken).filter_by(user_id=customer.id).one()
        assert stored.token_hash != token
        assert stored.token_hash == session_service.hash_token(token)

    def test_revoke_all_user_sessions(self, db_session, customer):
        _, first = session_service.create_session(customer.id)
        _, second = session_service.create_session(customer.id)

        assert session_service.revoke_all_user_sessions(customer.id) == 2
        assert session_service.validate_session(first) is None
        assert session_service.validate_session(second) is None
