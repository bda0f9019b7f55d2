"""
Payment reconciliation tests.

Verifies:
- Confirm and webhook converge on the same state, in either order, any number of times
- Amount mismatches write nothing
- Stock is decremented exactly once per confirmed order and restored on full refund
- Forged webhooks are rejected (401)
- Gateway failure/cancel cancels the order; cancel cascades to payments
- Captured money always stays refundable (stock shortfall, capture after cancel)
- A refund in flight blocks a second refund of the same payment
"""

import pytest

from conftest import post_webhook
from storefront.models import Inventory, InventoryAdjustment, Order, Payment, PaymentEvent
from storefront.models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_REFUNDED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_REFUNDED,
)
from storefront.services import inventory_service, order_service, payment_service
from storefront.services.gateway import GatewayError, normalize_notification


@pytest.fixture(scope='function')
def order(db_session, customer, phone, mug):
    """PENDING order: 2x phone (256GB, stock 5) + 1x mug = 215000."""
    return order_service.create_order(customer.id, [
        {"product_id": phone.id, "variant_id": phone.variants[0].id, "quantity": 2},
        {"product_id": mug.id, "quantity": 1},
    ])


def _stock(db_session, variant_id):
    db_session.expire_all()
    return db_session.query(Inventory).filter_by(variant_id=variant_id).one().quantity


def _reload(db_session, model, pk):
    db_session.expire_all()
    return db_session.get(model, pk)


def _confirm(client, headers, order, **overrides):
    body = {
        "imp_uid": "imp_001",
        "merchant_uid": order.order_number,
        "amount": order.total_cents,
        "status": "SUCCEEDED",
        "pay_method": "card",
    }
    body.update(overrides)
    return client.post("/api/payments/confirm", json=body, headers=headers)


def _webhook(order, status="paid", imp_uid="imp_001", **overrides):
    payload = {
        "imp_uid": imp_uid,
        "merchant_uid": order.order_number,
        "status": status,
        "amount": order.total_cents,
    }
    payload.update(overrides)
    return payload


class FakeGateway:
    """Gateway double returning a fixed authoritative record."""

    def __init__(self, record=None, error=None, on_cancel=None):
        self.record = record
        self.error = error
        self.on_cancel = on_cancel
        self.cancelled = []
        self.checksums = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def fetch_payment(self, imp_uid, reported=None):
        if self.error:
            raise self.error
        return normalize_notification(dict(self.record, imp_uid=imp_uid))

    def cancel_payment(self, imp_uid, amount, reason=None, checksum=None):
        if self.error:
            raise self.error
        if self.on_cancel:
            self.on_cancel()
        self.cancelled.append((imp_uid, amount))
        self.checksums.append(checksum)
        return {"refund_id": f"rf_{len(self.cancelled)}", "amount": amount, "cancel_amount": amount,
                "receipt_url": None}


# =============================================================================
# CONFIRM
# =============================================================================


class TestConfirm:

    def test_confirm_marks_paid_and_decrements_stock(self, client, db_session, customer_headers, order, phone):
        variant_id = phone.variants[0].id

        resp = _confirm(client, customer_headers, order)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["order"]["status"] == ORDER_STATUS_CONFIRMED
        assert body["payment"]["status"] == PAYMENT_STATUS_SUCCEEDED
        assert body["payment"]["amount_cents"] == 215000

        assert _stock(db_session, variant_id) == 3
        sale = db_session.query(InventoryAdjustment).filter_by(reason="SALE").one()
        assert sale.idempotency_key == inventory_service.sale_key(order.id, order.items[0].id)

    def test_confirm_twice_decrements_once(self, client, db_session, customer_headers, order, phone):
        assert _confirm(client, customer_headers, order).status_code == 200
        assert _confirm(client, customer_headers, order).status_code == 200

        assert _stock(db_session, phone.variants[0].id) == 3
        assert db_session.query(InventoryAdjustment).filter_by(reason="SALE").count() == 1
        assert db_session.query(Payment).count() == 1
        assert db_session.query(PaymentEvent).filter_by(source="CONFIRM").count() == 2

    def test_amount_mismatch_writes_nothing(self, client, db_session, customer_headers, order, phone):
        resp = _confirm(client, customer_headers, order, amount=1)
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["expected"] == 215000
        assert body["actual"] == 1

        assert db_session.query(Payment).count() == 0
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_PENDING
        assert _stock(db_session, phone.variants[0].id) == 5

    def test_gateway_amount_is_authoritative(self, client, db_session, customer_headers, order, monkeypatch):
        fake = FakeGateway({"merchant_uid": order.order_number, "status": "paid", "amount": 100})
        monkeypatch.setattr(payment_service, "get_gateway", lambda: fake)

        resp = _confirm(client, customer_headers, order)
        assert resp.status_code == 400
        assert db_session.query(Payment).count() == 0

    def test_other_user_forbidden(self, client, db_session, other_headers, order):
        assert _confirm(client, other_headers, order).status_code == 403
        assert db_session.query(Payment).count() == 0

    def test_unknown_order(self, client, customer_headers, order):
        assert _confirm(client, customer_headers, order, merchant_uid="ORD-NOPE").status_code == 404

    def test_gateway_down_is_502(self, client, customer_headers, order, monkeypatch):
        fake = FakeGateway(error=GatewayError("timeout"))
        monkeypatch.setattr(payment_service, "get_gateway", lambda: fake)
        assert _confirm(client, customer_headers, order).status_code == 502

    def test_gateway_is_closed_after_confirm(self, client, customer_headers, order, monkeypatch):
        fake = FakeGateway({"merchant_uid": order.order_number, "status": "paid", "amount": order.total_cents})
        monkeypatch.setattr(payment_service, "get_gateway", lambda: fake)

        assert _confirm(client, customer_headers, order).status_code == 200
        assert fake.closed


# =============================================================================
# STOCK SHORTFALL AT CONFIRMATION
# =============================================================================


class TestStockShortfall:

    @pytest.fixture
    def short_order(self, db_session, customer, phone):
        """2x 512GB White, but only 1 left on the shelf."""
        variant = phone.variants[1]
        order = order_service.create_order(customer.id, [
            {"product_id": phone.id, "variant_id": variant.id, "quantity": 2},
        ])
        inventory_service.adjust(variant.id, -1, "Damaged in storage")
        return order

    def test_capture_is_kept_and_order_stays_pending(self, client, db_session, customer_headers, short_order,
                                                     phone):
        resp = _confirm(client, customer_headers, short_order)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["stock_shortfall"] is True
        assert body["order"]["status"] == ORDER_STATUS_PENDING
        assert body["payment"]["status"] == PAYMENT_STATUS_SUCCEEDED

        assert _stock(db_session, phone.variants[1].id) == 1
        assert db_session.query(InventoryAdjustment).filter_by(reason="SALE").count() == 0
        assert db_session.query(PaymentEvent).filter_by(event_type="order.stock_shortfall").count() == 1

    def test_webhook_redelivery_is_not_an_error(self, client, db_session, short_order):
        for _ in range(2):
            resp = post_webhook(client, _webhook(short_order))
            assert resp.status_code == 200
            assert resp.get_json()["stock_shortfall"] is True

        assert db_session.query(Payment).one().status == PAYMENT_STATUS_SUCCEEDED

    def test_confirms_once_stock_is_back(self, client, db_session, short_order, phone):
        variant_id = phone.variants[1].id
        assert post_webhook(client, _webhook(short_order)).status_code == 200

        inventory_service.receive(variant_id, 5, "PO-2001")
        resp = post_webhook(client, _webhook(short_order))
        assert resp.status_code == 200
        assert resp.get_json()["stock_shortfall"] is False

        assert _reload(db_session, Order, short_order.id).status == ORDER_STATUS_CONFIRMED
        assert _stock(db_session, variant_id) == 4

    def test_short_capture_can_be_refunded_without_restock(self, client, db_session, customer_headers,
                                                           short_order, phone):
        assert post_webhook(client, _webhook(short_order)).status_code == 200
        payment = db_session.query(Payment).one()

        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == ORDER_STATUS_REFUNDED

        assert _stock(db_session, phone.variants[1].id) == 1
        assert db_session.query(InventoryAdjustment).filter_by(reason="RESTOCK").count() == 0

    def test_cancelling_keeps_the_capture_refundable(self, client, db_session, customer, admin_headers,
                                                     short_order):
        assert post_webhook(client, _webhook(short_order)).status_code == 200
        order_service.cancel_order(short_order.id, customer.id)

        db_session.expire_all()
        assert db_session.query(Payment).one().status == PAYMENT_STATUS_SUCCEEDED
        assert db_session.query(PaymentEvent).filter_by(source="ORDER_CANCEL").count() == 0

        resp = client.get("/api/admin/orders?awaiting_refund=1", headers=admin_headers)
        assert resp.status_code == 200
        assert [o["id"] for o in resp.get_json()["orders"]] == [short_order.id]



# =============================================================================
# WEBHOOK
# =============================================================================


class TestWebhook:

    def test_webhook_confirms_order(self, client, db_session, order, phone):
        resp = post_webhook(client, _webhook(order))
        assert resp.status_code == 200
        assert resp.get_json()["success"] is True
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CONFIRMED
        assert _stock(db_session, phone.variants[0].id) == 3

    def test_replay_is_idempotent(self, client, db_session, order, phone):
        for _ in range(3):
            assert post_webhook(client, _webhook(order)).status_code == 200

        assert _stock(db_session, phone.variants[0].id) == 3
        assert db_session.query(Payment).count() == 1
        assert db_session.query(PaymentEvent).filter_by(source="WEBHOOK").count() == 3

    def test_confirm_after_webhook(self, client, db_session, customer_headers, order, phone):
        assert post_webhook(client, _webhook(order)).status_code == 200
        assert _confirm(client, customer_headers, order).status_code == 200

        assert _stock(db_session, phone.variants[0].id) == 3
        payment = db_session.query(Payment).one()
        assert payment.status == PAYMENT_STATUS_SUCCEEDED

    def test_bad_signature_rejected(self, client, db_session, order):
        resp = post_webhook(client, _webhook(order), secret="forged")
        assert resp.status_code == 401
        assert db_session.query(Payment).count() == 0

    def test_missing_signature_rejected(self, client, db_session, order):
        resp = client.post("/api/payments/webhook", json=_webhook(order))
        assert resp.status_code == 401

    def test_failed_payment_cancels_order(self, client, db_session, order, phone):
        resp = post_webhook(client, _webhook(order, status="failed", fail_reason="card declined"))
        assert resp.status_code == 200

        payment = db_session.query(Payment).one()
        assert payment.status == PAYMENT_STATUS_FAILED
        assert payment.failure_reason == "card declined"
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CANCELLED
        assert _stock(db_session, phone.variants[0].id) == 5

    def test_unknown_status_is_ignored(self, client, db_session, order):
        resp = post_webhook(client, _webhook(order, status="vbank_issued"))
        assert resp.status_code == 200
        assert resp.get_json()["ignored"] is True
        assert db_session.query(Payment).count() == 0

    def test_settled_payment_keeps_status(self, client, db_session, order):
        assert post_webhook(client, _webhook(order)).status_code == 200
        assert post_webhook(client, _webhook(order, status="failed")).status_code == 200

        assert db_session.query(Payment).one().status == PAYMENT_STATUS_SUCCEEDED
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CONFIRMED

    def test_paid_after_cancel_does_not_move_stock(self, client, db_session, customer, order, phone):
        order_service.cancel_order(order.id, customer.id)

        assert post_webhook(client, _webhook(order)).status_code == 200
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CANCELLED
        assert _stock(db_session, phone.variants[0].id) == 5

    def test_paid_after_cancel_can_be_refunded(self, client, db_session, customer, customer_headers, order,
                                               phone):
        order_service.cancel_order(order.id, customer.id)
        assert post_webhook(client, _webhook(order)).status_code == 200

        payment = db_session.query(Payment).one()
        assert payment.status == PAYMENT_STATUS_SUCCEEDED
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CANCELLED

        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=customer_headers)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["payment"]["status"] == PAYMENT_STATUS_REFUNDED
        assert body["order"]["status"] == ORDER_STATUS_REFUNDED

        # The cancelled order never took stock, so a full refund returns none
        assert _stock(db_session, phone.variants[0].id) == 5
        assert db_session.query(InventoryAdjustment).filter_by(reason="RESTOCK").count() == 0

    def test_webhook_without_amount_fetches_from_gateway(self, client, db_session, order, monkeypatch):
        fake = FakeGateway({"merchant_uid": order.order_number, "status": "paid", "amount": order.total_cents})
        monkeypatch.setattr(payment_service, "get_gateway", lambda: fake)

        payload = {"imp_uid": "imp_001", "merchant_uid": order.order_number, "status": "paid"}
        assert post_webhook(client, payload).status_code == 200
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CONFIRMED

    def test_imp_uid_cannot_move_between_orders(self, client, db_session, customer, order, mug):
        second = order_service.create_order(customer.id, [{"product_id": mug.id, "quantity": 1}])
        assert post_webhook(client, _webhook(order)).status_code == 200

        resp = post_webhook(client, _webhook(second))
        assert resp.status_code == 400
        assert _reload(db_session, Order, second.id).status == ORDER_STATUS_PENDING


# =============================================================================
# CANCEL CASCADE
# =============================================================================


class TestCancelCascade:

    def test_cancel_cascades_to_pending_payment(self, client, db_session, customer_headers, order):
        assert post_webhook(client, _webhook(order, status="ready")).status_code == 200
        assert db_session.query(Payment).one().status == PAYMENT_STATUS_PENDING

        resp = client.patch(f"/api/orders/{order.id}", json={"status": "CANCELLED"}, headers=customer_headers)
        assert resp.status_code == 200

        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.status == PAYMENT_STATUS_CANCELLED
        assert db_session.query(PaymentEvent).filter_by(source="ORDER_CANCEL").count() == 1

    def test_late_paid_after_cascade_is_refundable(self, client, db_session, customer, customer_headers, order,
                                                   phone):
        assert post_webhook(client, _webhook(order, status="ready")).status_code == 200
        order_service.cancel_order(order.id, customer.id)

        # Our cancel never reached the gateway, which captured anyway
        assert post_webhook(client, _webhook(order)).status_code == 200
        db_session.expire_all()
        payment = db_session.query(Payment).one()
        assert payment.status == PAYMENT_STATUS_SUCCEEDED
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CANCELLED
        assert _stock(db_session, phone.variants[0].id) == 5

        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=customer_headers)
        assert resp.status_code == 200
        assert _reload(db_session, Payment, payment.id).status == PAYMENT_STATUS_REFUNDED

    def test_gateway_cancelled_payment_stays_cancelled(self, client, db_session, order):
        assert post_webhook(client, _webhook(order, status="cancelled")).status_code == 200
        assert post_webhook(client, _webhook(order)).status_code == 200

        db_session.expire_all()
        assert db_session.query(Payment).one().status == PAYMENT_STATUS_CANCELLED
        assert _reload(db_session, Order, order.id).status == ORDER_STATUS_CANCELLED



# =============================================================================
# REFUNDS
# =============================================================================


class TestRefunds:

    def _paid(self, client, db_session, customer_headers, order):
        assert _confirm(client, customer_headers, order).status_code == 200
        db_session.expire_all()
        return db_session.query(Payment).one()

    def test_full_refund_restocks(self, client, db_session, customer_headers, order, phone):
        payment = self._paid(client, db_session, customer_headers, order)

        resp = client.post("/api/payments/refund", json={"payment_id": payment.id, "reason": "changed mind"},
                           headers=customer_headers)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["payment"]["status"] == PAYMENT_STATUS_REFUNDED
        assert body["payment"]["refund_amount_cents"] == 215000
        assert body["order"]["status"] == ORDER_STATUS_REFUNDED

        assert _stock(db_session, phone.variants[0].id) == 5
        restock = db_session.query(InventoryAdjustment).filter_by(reason="RESTOCK").one()
        assert restock.idempotency_key == inventory_service.restock_key(order.id, order.items[0].id)

        history = client.get(f"/api/payments/refund?payment_id={payment.id}", headers=customer_headers)
        refunds = history.get_json()["refunds"]
        assert len(refunds) == 1
        assert refunds[0]["amount_cents"] == -215000
        assert refunds[0]["event_type"] == "payment.refunded"

    def test_partial_refund_keeps_stock(self, client, db_session, customer_headers, order, phone):
        payment = self._paid(client, db_session, customer_headers, order)

        resp = client.post("/api/payments/refund", json={"payment_id": payment.id, "amount": 15000},
                           headers=customer_headers)
        assert resp.status_code == 200
        assert resp.get_json()["payment"]["refund_amount_cents"] == 15000

        assert _stock(db_session, phone.variants[0].id) == 3
        event = db_session.query(PaymentEvent).filter_by(source="REFUND").one()
        assert event.event_type == "payment.partially_refunded"

    def test_refund_cannot_exceed_paid(self, client, db_session, customer_headers, order):
        payment = self._paid(client, db_session, customer_headers, order)
        resp = client.post("/api/payments/refund", json={"payment_id": payment.id, "amount": 215001},
                           headers=customer_headers)
        assert resp.status_code == 400

    def test_refund_twice_rejected(self, client, db_session, customer_headers, order):
        payment = self._paid(client, db_session, customer_headers, order)
        assert client.post("/api/payments/refund", json={"payment_id": payment.id},
                           headers=customer_headers).status_code == 200
        assert client.post("/api/payments/refund", json={"payment_id": payment.id},
                           headers=customer_headers).status_code == 400

    def test_pending_payment_cannot_be_refunded(self, client, db_session, customer_headers, order):
        assert post_webhook(client, _webhook(order, status="ready")).status_code == 200
        payment = db_session.query(Payment).one()
        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=customer_headers)
        assert resp.status_code == 400

    def test_other_user_cannot_refund(self, client, db_session, customer_headers, other_headers, order):
        payment = self._paid(client, db_session, customer_headers, order)
        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=other_headers)
        assert resp.status_code == 403

    def test_admin_can_refund(self, client, db_session, customer_headers, admin_headers, order):
        payment = self._paid(client, db_session, customer_headers, order)
        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=admin_headers)
        assert resp.status_code == 200

    def test_gateway_refused_refund_changes_nothing(self, client, db_session, customer_headers, order,
                                                    monkeypatch):
        payment = self._paid(client, db_session, customer_headers, order)
        fake = FakeGateway(error=GatewayError("already cancelled"))
        monkeypatch.setattr(payment_service, "get_gateway", lambda: fake)

        resp = client.post("/api/payments/refund", json={"payment_id": payment.id}, headers=customer_headers)
        assert resp.status_code == 502
        assert _reload(db_session, Payment, payment.id).status == PAYMENT_STATUS_SUCCEEDED

    def test_refund_in_flight_blocks_a_second_request(self, client, db_session, customer, customer_headers, order,
                                                      monkeypatch):
        payment = self._paid(client, db_session, customer_headers, order)
        rejected = []

        def second_request():
            with pytest.raises(payment_service.PaymentError, match="already in progress"):
                payment_service.refund_payment(payment.id, customer.id)
            rejected.append(True)

        fake = FakeGateway(on_cancel=second_request)
        monkeypatch.setattr(payment_service, "get_gateway", lambda: fake)

        refunded = payment_service.refund_payment(payment.id, customer.id)

        assert rejected == [True]
        assert fake.cancelled == [("imp_001", 215000)]
        assert fake.checksums == [215000]
        assert fake.closed
        assert refunded.status == PAYMENT_STATUS_REFUNDED

    def test_failed_gateway_call_releases_the_claim(self, client, db_session, customer, customer_headers, order,
                                                    monkeypatch):
        payment = self._paid(client, db_session, customer_headers, order)
        monkeypatch.setattr(payment_service, "get_gateway", lambda: FakeGateway(error=GatewayError("timeout")))

        with pytest.raises(GatewayError):
            payment_service.refund_payment(payment.id, customer.id)
        assert _reload(db_session, Payment, payment.id).status == PAYMENT_STATUS_SUCCEEDED

        monkeypatch.setattr(payment_service, "get_gateway", lambda: FakeGateway())
        assert payment_service.refund_payment(payment.id, customer.id).status == PAYMENT_STATUS_REFUNDED


# =============================================================================
# PAYMENT REQUEST / QUERIES
# =============================================================================


class TestPaymentRequest:

    def test_payment_request_payload(self, client, customer_headers, order):
        resp = client.post("/api/payments", json={"order_id": order.id}, headers=customer_headers)
        assert resp.status_code == 200
        data = resp.get_json()["payment_request"]
        assert data["merchant_uid"] == order.order_number
        assert data["amount"] == 215000
        assert data["name"] == "Galaxy S24 and 1 more"
        assert data["buyer"]["email"] == "customer@example.com"

    def test_payment_request_for_confirmed_order(self, client, customer_headers, order):
        assert _confirm(client, customer_headers, order).status_code == 200
        resp = client.post("/api/payments", json={"order_id": order.id}, headers=customer_headers)
        assert resp.status_code == 400

    def test_get_payment_for_order(self, client, customer_headers, other_headers, order):
        assert client.get(f"/api/payments?order_id={order.id}", headers=customer_headers).status_code == 404

        assert _confirm(client, customer_headers, order).status_code == 200
        resp = client.get(f"/api/payments?orderId={order.id}", headers=customer_headers)
        assert resp.status_code == 200
        payment = resp.get_json()["payment"]
        assert payment["payment_intent_id"] == "imp_001"
        assert [e["source"] for e in payment["events"]] == ["CONFIRM"]

        assert client.get(f"/api/payments?order_id={order.id}", headers=other_headers).status_code == 403
