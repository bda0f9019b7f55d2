# Overview: Service-layer operations for payments; encapsulates business logic and database work.

# backend/storefront/services/payment_service.py
"""
Payment Reconciliation Service

WHY: The gateway reports the outcome of a payment twice: once through the
customer's browser (confirm) and once server-to-server (webhook). Both go
through reconcile_payment so they cannot disagree, and either one may arrive
first, late, or more than once.

DESIGN:
- Payment.payment_intent_id (imp_uid) is the idempotency key for the payment
- Order status guard: only a PENDING order is confirmed or cancelled
- Inventory SALE/RESTOCK movements carry ledger idempotency keys
- Every notification appends a PaymentEvent (audit trail)
- A capture is never discarded: when stock ran out the SUCCEEDED payment is
  kept and the order stays PENDING until stock returns or it is refunded
- Refunds claim the payment (REFUNDING) before the gateway call

AMOUNT SAFETY:
- The notified amount must equal Order.total_cents or nothing is written
- Refund amount must be positive and never exceed the captured amount
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..models import Order, Payment, PaymentEvent, User
from ..models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_REFUNDED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_REFUNDING,
)
from ..errors import NotFoundError, ForbiddenError
from storefront.time_utils import utcnow, parse_iso_datetime
from .concurrency import lock_for_update, run_atomic
from .gateway import get_gateway, normalize_notification
from .signatures import verify_signature
from . import inventory_service, order_service


# Gateway status vocabulary -> Payment.status
GATEWAY_STATUS_MAP = {
    "paid": PAYMENT_STATUS_SUCCEEDED,
    "failed": PAYMENT_STATUS_FAILED,
    "cancelled": PAYMENT_STATUS_CANCELLED,
    "ready": PAYMENT_STATUS_PENDING,
}

# The storefront client reports outcomes in our own vocabulary
CLIENT_STATUS_MAP = {
    PAYMENT_STATUS_SUCCEEDED: "paid",
    PAYMENT_STATUS_FAILED: "failed",
    PAYMENT_STATUS_CANCELLED: "cancelled",
    PAYMENT_STATUS_PENDING: "ready",
}


class PaymentError(Exception):
    """Raised for payment operation errors."""
    pass


class PaymentAmountMismatch(PaymentError):
    """Notified amount differs from the order total."""

    def __init__(self, expected: int, actual):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Payment amount mismatch: expected {expected}, got {actual}")


@dataclass
class ReconcileResult:
    order: Order
    payment: Payment | None
    ignored: bool = False
    stock_shortfall: bool = False

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "payment": self.payment.to_dict() if self.payment else None,
            "ignored": self.ignored,
            "stock_shortfall": self.stock_shortfall,
        }


def _coerce_amount(value) -> int:
    if isinstance(value, bool):
        raise PaymentError("amount must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise PaymentError("amount must be an integer")


def _order_by_merchant_uid(merchant_uid, *, lock: bool = False) -> Order:
    """merchant_uid is the order number; a plain numeric order id is also accepted."""
    if merchant_uid is None or str(merchant_uid).strip() == "":
        raise PaymentError("merchant_uid is required")

    ref = str(merchant_uid).strip()
    query = db.session.query(Order)
    if ref.isdigit():
        query = query.filter(Order.id == int(ref))
    else:
        query = query.filter(Order.order_number == ref)
    if lock:
        query = lock_for_update(query)

    order = query.first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def _record_event(payment: Payment, *, source: str, event_type: str, gateway_status=None,
                  amount_cents: int = 0, note=None, reference=None) -> PaymentEvent:
    event = PaymentEvent(
        payment_id=payment.id,
        order_id=payment.order_id,
        source=source,
        event_type=event_type,
        gateway_status=gateway_status,
        amount_cents=amount_cents,
        note=note,
        reference=reference,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    return event


def _apply_gateway_details(payment: Payment, data: dict) -> None:
    details = dict(payment.gateway_details or {})
    for key in ("pg_provider", "pg_tid", "receipt_url", "paid_at"):
        if data.get(key) is not None:
            details[key] = data[key]
    payment.gateway_details = details

    if data.get("pay_method"):
        payment.payment_method = data["pay_method"]
    if data.get("failed_reason"):
        payment.failure_reason = str(data["failed_reason"])[:255]


def _confirm_order_locked(order: Order, payment: Payment, source: str) -> bool:
    """
    PENDING -> CONFIRMED and one SALE movement per line. Anything else is a
    no-op so a replayed notification changes nothing.

    Returns False when stock ran out. The captured payment is kept, the order
    stays PENDING and an order.stock_shortfall event is recorded; a later
    notification confirms it once stock is back, or the payment is refunded.
    """
    if order.status != ORDER_STATUS_PENDING:
        if order.status == ORDER_STATUS_CANCELLED:
            current_app.logger.warning(
                "Payment %s succeeded for cancelled order %s; awaiting refund",
                payment.payment_intent_id, order.order_number,
            )
        return True

    sales = [
        (item.variant_id, item.quantity, inventory_service.sale_key(order.id, item.id))
        for item in order.items
        if item.variant_id is not None
    ]
    shortfall = inventory_service.find_shortfall(sales)
    if shortfall is not None:
        current_app.logger.warning(
            "Payment %s captured for order %s but stock ran out (%s); order left PENDING",
            payment.payment_intent_id, order.order_number, shortfall,
        )
        _record_event(
            payment,
            source=source,
            event_type="order.stock_shortfall",
            note=str(shortfall)[:255],
            reference=payment.payment_intent_id,
        )
        return False

    order_service.assert_transition(order.status, ORDER_STATUS_CONFIRMED)
    order.status = ORDER_STATUS_CONFIRMED
    order.confirmed_at = utcnow()
    if payment.payment_method and not order.payment_method:
        order.payment_method = payment.payment_method

    for variant_id, quantity, key in sales:
        inventory_service.decrement(
            variant_id,
            quantity,
            key,
            order_id=order.id,
            payment_id=payment.id,
            note=f"Order {order.order_number}",
        )
    return True


def _cancelled_by_order(payment: Payment) -> bool:
    """CANCELLED by an order cancel on our side only, never by the gateway."""
    events = db.session.query(PaymentEvent).filter_by(payment_id=payment.id).all()
    return (
        any(e.source == "ORDER_CANCEL" for e in events)
        and not any(e.gateway_status in ("failed", "cancelled") for e in events)
    )


def reconcile_payment(notification: dict, source: str) -> ReconcileResult:
    """
    Apply one gateway notification. Shared by confirm (source="CONFIRM") and
    webhook (source="WEBHOOK").

    Raises:
        PaymentError: missing imp_uid/merchant_uid, bad amount, or imp_uid
            already bound to another order
        PaymentAmountMismatch: amount != order total (nothing written)
        NotFoundError: no order for merchant_uid

    Stock running out does not raise: the captured payment is recorded and
    the result carries stock_shortfall=True with the order still PENDING.
    """
    data = normalize_notification(notification or {})
    imp_uid = data.get("imp_uid")
    if not imp_uid:
        raise PaymentError("imp_uid is required")
    imp_uid = str(imp_uid)
    amount = _coerce_amount(data.get("amount"))
    gateway_status = str(data.get("status") or "").lower()

    def _op():
        order = _order_by_merchant_uid(data.get("merchant_uid"), lock=True)

        if amount != order.total_cents:
            current_app.logger.warning(
                "Payment amount mismatch for order %s: expected %s, got %s (imp_uid=%s, source=%s)",
                order.order_number, order.total_cents, amount, imp_uid, source,
            )
            raise PaymentAmountMismatch(order.total_cents, amount)

        new_status = GATEWAY_STATUS_MAP.get(gateway_status)
        if new_status is None:
            current_app.logger.warning(
                "Ignoring gateway status %r for order %s (imp_uid=%s)",
                gateway_status, order.order_number, imp_uid,
            )
            return ReconcileResult(order=order, payment=None, ignored=True)

        payment = lock_for_update(
            db.session.query(Payment).filter_by(payment_intent_id=imp_uid)
        ).first()
        if payment is not None and payment.order_id != order.id:
            raise PaymentError("Payment belongs to another order")

        if payment is None:
            payment = Payment(
                order=order,
                payment_intent_id=imp_uid,
                amount_cents=amount,
                status=PAYMENT_STATUS_PENDING,
            )
            db.session.add(payment)
            db.session.flush()

        _apply_gateway_details(payment, data)

        # Only a PENDING payment moves; settled payments keep their status.
        # The exception is a capture the gateway reports after an order cancel
        # cancelled the payment on our side only.
        captured_after_cancel = (
            new_status == PAYMENT_STATUS_SUCCEEDED
            and payment.status == PAYMENT_STATUS_CANCELLED
            and _cancelled_by_order(payment)
        )
        if captured_after_cancel:
            current_app.logger.warning(
                "Payment %s captured after order %s was cancelled; awaiting refund",
                imp_uid, order.order_number,
            )
        settles = payment.status == PAYMENT_STATUS_PENDING and new_status != PAYMENT_STATUS_PENDING
        if settles or captured_after_cancel:
            payment.status = new_status
            if new_status == PAYMENT_STATUS_SUCCEEDED:
                payment.paid_at = parse_iso_datetime(data.get("paid_at")) or utcnow()
        elif payment.status != new_status:
            current_app.logger.warning(
                "Payment %s is %s; gateway reported %s, keeping current status",
                imp_uid, payment.status, gateway_status,
            )

        _record_event(
            payment,
            source=source,
            event_type=f"payment.{gateway_status}",
            gateway_status=gateway_status,
            amount_cents=amount if new_status == PAYMENT_STATUS_SUCCEEDED else 0,
            note=data.get("failed_reason"),
            reference=imp_uid,
        )

        stock_shortfall = False
        if payment.status == PAYMENT_STATUS_SUCCEEDED:
            stock_shortfall = not _confirm_order_locked(order, payment, source)
        elif payment.status in (PAYMENT_STATUS_FAILED, PAYMENT_STATUS_CANCELLED):
            if order.status == ORDER_STATUS_PENDING:
                order_service.cancel_locked(order, note=f"Gateway reported {gateway_status}")

        db.session.commit()
        current_app.logger.info(
            "Reconciled payment %s for order %s via %s: payment=%s order=%s",
            imp_uid, order.order_number, source, payment.status, order.status,
        )
        return ReconcileResult(order=order, payment=payment, stock_shortfall=stock_shortfall)

    return run_atomic(_op)


def create_payment_request(order_id: int, user_id: int, payment_method: str = "card") -> dict:
    """
    Payload for the gateway's checkout widget. The order must belong to the
    caller and still be PENDING.
    """
    order = order_service.get_order_for_user(order_id, user_id)
    if order.status != ORDER_STATUS_PENDING:
        raise PaymentError("Order is not in pending status")
    if not order.items:
        raise PaymentError("Order has no items")

    first = order.items[0].product_name
    name = first if len(order.items) == 1 else f"{first} and {len(order.items) - 1} more"

    user = db.session.get(User, order.user_id)
    address = order.shipping_address or {}

    return {
        "order_id": order.id,
        "merchant_uid": order.order_number,
        "amount": order.total_cents,
        "name": name,
        "pay_method": payment_method or "card",
        "buyer": {
            "name": user.name if user else None,
            "email": user.email if user else None,
            "tel": (user.phone if user else None) or address.get("phone"),
            "addr": address.get("address") or address.get("line1"),
            "postcode": address.get("postal_code") or address.get("postcode"),
        },
    }


def confirm_payment(
    user_id: int,
    imp_uid: str,
    merchant_uid,
    amount=None,
    status: str | None = None,
    pay_method: str | None = None,
) -> ReconcileResult:
    """
    Synchronous confirm from the customer's browser.

    The client's report is only a hint: the gateway is asked for the
    authoritative payment and that record is reconciled.
    """
    if not imp_uid:
        raise PaymentError("imp_uid is required")

    order = _order_by_merchant_uid(merchant_uid)
    if order.user_id != user_id:
        raise ForbiddenError("Forbidden")

    if amount is not None and _coerce_amount(amount) != order.total_cents:
        current_app.logger.warning(
            "Client-reported amount mismatch for order %s: expected %s, got %s",
            order.order_number, order.total_cents, amount,
        )
        raise PaymentAmountMismatch(order.total_cents, amount)

    reported = {
        "imp_uid": imp_uid,
        "merchant_uid": order.order_number,
        "status": CLIENT_STATUS_MAP.get(status, status),
        "amount": amount,
        "pay_method": pay_method,
    }
    with get_gateway() as gateway:
        authoritative = gateway.fetch_payment(str(imp_uid), reported=reported)

    if authoritative.get("merchant_uid") is None:
        authoritative["merchant_uid"] = order.order_number
    elif str(authoritative["merchant_uid"]) not in (order.order_number, str(order.id)):
        raise PaymentError("Payment does not belong to this order")

    return reconcile_payment(authoritative, source="CONFIRM")


def handle_webhook(raw_body: bytes, signature: str | None) -> ReconcileResult:
    """
    Gateway webhook. The signature covers the raw body bytes.

    Raises:
        SignatureError: missing/invalid signature (-> 401)
        PaymentError: body is not a JSON object
    """
    verify_signature(raw_body, signature, current_app.config["PORTONE_WEBHOOK_SECRET"])

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise PaymentError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise PaymentError("Invalid JSON payload")

    current_app.logger.info(
        "Payment webhook received: imp_uid=%s merchant_uid=%s status=%s amount=%s",
        payload.get("imp_uid"), payload.get("merchant_uid"), payload.get("status"), payload.get("amount"),
    )

    # PortOne's own webhooks carry no amount; ask the gateway for the full record
    if payload.get("amount") is None and payload.get("imp_uid"):
        with get_gateway() as gateway:
            fetched = gateway.fetch_payment(str(payload["imp_uid"]), reported=payload)
        if fetched.get("merchant_uid") is None:
            fetched["merchant_uid"] = payload.get("merchant_uid")
        payload = fetched

    return reconcile_payment(payload, source="WEBHOOK")


def _owned_payment(payment_id: int, user_id: int, is_admin: bool) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    if payment.order.user_id != user_id and not is_admin:
        raise ForbiddenError("Forbidden")
    return payment


def _release_refund_claim(payment_id: int) -> None:
    def _op():
        locked = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if locked.status == PAYMENT_STATUS_REFUNDING:
            locked.status = PAYMENT_STATUS_SUCCEEDED
        db.session.commit()

    run_atomic(_op)


def refund_payment(
    payment_id: int,
    user_id: int,
    amount=None,
    reason: str | None = None,
    is_admin: bool = False,
) -> Payment:
    """
    Refund a SUCCEEDED payment through the gateway.

    Payment -> REFUNDED, Order -> REFUNDED (from any status but REFUNDED, so
    captures on cancelled or unconfirmed orders can be returned). A full
    refund restocks only the lines whose sale is in the ledger; partial
    refunds leave inventory untouched.

    The payment is claimed (SUCCEEDED -> REFUNDING) and committed before the
    gateway call, so a concurrent refund request is rejected instead of
    returning the money twice. A failed gateway call releases the claim.
    """
    payment = _owned_payment(payment_id, user_id, is_admin)
    if payment.status == PAYMENT_STATUS_REFUNDING:
        raise PaymentError("A refund is already in progress for this payment")
    if payment.status != PAYMENT_STATUS_SUCCEEDED:
        raise PaymentError("Only succeeded payments can be refunded")

    refund_amount = payment.amount_cents if amount is None else _coerce_amount(amount)
    if refund_amount <= 0:
        raise PaymentError("Refund amount must be positive")
    if refund_amount > payment.amount_cents:
        raise PaymentError("Refund amount cannot exceed the paid amount")

    try:
        order_service.assert_transition(payment.order.status, ORDER_STATUS_REFUNDED)
    except order_service.OrderError as e:
        raise PaymentError(str(e))

    def _claim():
        locked = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if locked.status == PAYMENT_STATUS_REFUNDING:
            raise PaymentError("A refund is already in progress for this payment")
        if locked.status != PAYMENT_STATUS_SUCCEEDED:
            raise PaymentError("Only succeeded payments can be refunded")
        locked.status = PAYMENT_STATUS_REFUNDING
        db.session.commit()
        return locked

    claimed = run_atomic(_claim)
    payment_intent_id = claimed.payment_intent_id
    captured = claimed.amount_cents

    try:
        with get_gateway() as gateway:
            refund = gateway.cancel_payment(payment_intent_id, refund_amount, reason, checksum=captured)
    except Exception:
        _release_refund_claim(payment_id)
        raise

    full_refund = refund_amount == captured

    def _op():
        locked = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if locked.status != PAYMENT_STATUS_REFUNDING:
            raise PaymentError("Payment was modified during refund")

        locked_order = lock_for_update(db.session.query(Order).filter_by(id=locked.order_id)).first()
        now = utcnow()

        locked.status = PAYMENT_STATUS_REFUNDED
        locked.refund_amount_cents = refund_amount
        locked.refund_reason = reason
        locked.refund_id = refund["refund_id"]
        locked.refunded_at = now
        details = dict(locked.gateway_details or {})
        if refund.get("receipt_url"):
            details["refund_receipt_url"] = refund["receipt_url"]
        locked.gateway_details = details

        order_service.assert_transition(locked_order.status, ORDER_STATUS_REFUNDED)
        locked_order.status = ORDER_STATUS_REFUNDED
        locked_order.refunded_at = now

        _record_event(
            locked,
            source="REFUND",
            event_type="payment.refunded" if full_refund else "payment.partially_refunded",
            amount_cents=-refund_amount,
            note=reason,
            reference=refund["refund_id"],
        )

        if full_refund:
            for item in locked_order.items:
                if item.variant_id is None:
                    continue
                # Stock the order never took (cancelled or short) is not returned
                if not inventory_service.key_applied(inventory_service.sale_key(locked_order.id, item.id)):
                    continue
                inventory_service.increment(
                    item.variant_id,
                    item.quantity,
                    inventory_service.restock_key(locked_order.id, item.id),
                    order_id=locked_order.id,
                    payment_id=locked.id,
                    note=f"Refund {refund['refund_id']}",
                )

        db.session.commit()
        current_app.logger.info(
            "Refunded %s of payment %s (order %s, full=%s)",
            refund_amount, locked.payment_intent_id, locked_order.order_number, full_refund,
        )
        return locked

    try:
        return run_atomic(_op)
    except Exception:
        current_app.logger.error(
            "Refund %s of payment %s went through at the gateway but was not recorded; "
            "payment left REFUNDING",
            refund["refund_id"], payment_intent_id,
        )
        raise


def get_payment_for_order(order_id: int, user_id: int, *, is_admin: bool = False) -> Payment:
    order = order_service.get_order_for_user(order_id, user_id, is_admin=is_admin)
    if order.payment is None:
        raise NotFoundError("Payment not found")
    return order.payment


def list_refunds(payment_id: int, user_id: int, *, is_admin: bool = False) -> list[PaymentEvent]:
    payment = _owned_payment(payment_id, user_id, is_admin)
    return (
        db.session.query(PaymentEvent)
        .filter_by(payment_id=payment.id, source="REFUND")
        .order_by(PaymentEvent.occurred_at.desc(), PaymentEvent.id.desc())
        .all()
    )
