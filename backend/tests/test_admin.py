"""
Admin console, health check and CLI tests.
"""

from storefront.models import Product, User
from storefront.models.auth import ROLE_ADMIN
from storefront.services import order_service


class TestAdminInventory:

    def test_inventory_detail_with_ledger(self, client, admin_headers, phone):
        variant_id = phone.variants[0].id
        resp = client.get(f"/api/admin/inventory/{variant_id}", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["inventory"]["quantity"] == 5
        assert body["adjustments"] == []

    def test_receive(self, client, admin_headers, phone):
        variant_id = phone.variants[0].id
        resp = client.post(
            f"/api/admin/inventory/{variant_id}/receive",
            json={"quantity_delta": 20, "note": "PO-1042"},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["inventory"]["quantity"] == 25
        assert body["adjustment"]["reason"] == "RECEIVE"

    def test_adjust_requires_note(self, client, admin_headers, phone):
        resp = client.post(
            f"/api/admin/inventory/{phone.variants[0].id}/adjust",
            json={"quantity_delta": -1},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_adjust_below_zero_is_409(self, client, admin_headers, phone):
        resp = client.post(
            f"/api/admin/inventory/{phone.variants[1].id}/adjust",
            json={"quantity_delta": -3, "note": "Recount"},
            headers=admin_headers,
        )
        assert resp.status_code == 409

    def test_unknown_fields_rejected(self, client, admin_headers, phone):
        resp = client.post(
            f"/api/admin/inventory/{phone.variants[0].id}/receive",
            json={"quantity_delta": 1, "quantity_after": 999},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_low_stock_report(self, client, admin_headers, phone):
        resp = client.get("/api/admin/inventory/low-stock", headers=admin_headers)
        assert resp.status_code == 200
        items = resp.get_json()["items"]
        assert [i["sku"] for i in items] == ["GS24-512-WH", "GS24-256-BK"]

    def test_threshold(self, client, admin_headers, phone):
        variant_id = phone.variants[0].id
        resp = client.put(
            f"/api/admin/inventory/{variant_id}/threshold",
            json={"low_stock_threshold": 1},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.get_json()["inventory"]["low_stock_threshold"] == 1

    def test_untracked_variant_is_404(self, client, admin_headers, db_session):
        assert client.get("/api/admin/inventory/999", headers=admin_headers).status_code == 404


class TestAdminOrders:

    def test_list_filters_by_status(self, client, admin_headers, db_session, customer, mug):
        order_service.create_order(customer.id, [{"product_id": mug.id, "quantity": 1}])
        cancelled = order_service.create_order(customer.id, [{"product_id": mug.id, "quantity": 1}])
        order_service.cancel_order(cancelled.id, customer.id)

        resp = client.get("/api/admin/orders?status=CANCELLED", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.get_json()
        assert [o["id"] for o in body["orders"]] == [cancelled.id]

        assert client.get("/api/admin/orders?status=LOST", headers=admin_headers).status_code == 400

    def test_payment_statuses_not_settable(self, client, admin_headers, db_session, customer, mug):
        order = order_service.create_order(customer.id, [{"product_id": mug.id, "quantity": 1}])
        resp = client.patch(
            f"/api/admin/orders/{order.id}/status", json={"status": "REFUNDED"}, headers=admin_headers
        )
        assert resp.status_code == 400


class TestHealth:

    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "ok"
        assert body["checks"]["database"]["status"] == "healthy"


class TestCli:

    def test_seed_is_idempotent(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["catalog", "seed"])
        assert result.exit_code == 0, result.output
        seeded = db_session.query(Product).count()
        assert seeded == 4

        result = runner.invoke(args=["catalog", "seed"])
        assert result.exit_code == 0
        assert "SKIP" in result.output
        assert db_session.query(Product).count() == seeded

    def test_set_role(self, app, db_session, customer):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["users", "set-role", customer.email, "admin"])
        assert result.exit_code == 0, result.output

        db_session.expire_all()
        assert db_session.get(User, customer.id).role == ROLE_ADMIN

    def test_set_role_unknown_user(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["users", "set-role", "ghost@example.com", "ADMIN"])
        assert result.exit_code != 0
