# Overview: Service-layer operations for orders; checkout, numbering, status lifecycle.

"""
Order Service

WHY: Orders are the boundary between the mutable cart/catalog and the
payment gateway. Everything the gateway will be asked to charge is computed
here, server-side, from the live catalog.

LIFECYCLE:
    PENDING -> CONFIRMED (payment succeeded) -> PROCESSING -> SHIPPED -> DELIVERED
    PENDING -> CANCELLED (customer cancel, gateway failed/cancelled)
    CONFIRMED/PROCESSING/SHIPPED/DELIVERED -> REFUNDED (payment refunded)
    PENDING/CANCELLED -> REFUNDED (captured payment the order never used)

A PENDING or CANCELLED order can still hold a SUCCEEDED payment: the gateway
captured after the customer cancelled, or stock ran out at confirmation.
That money stays refundable; list_all_orders(awaiting_refund=True) finds it.

CONFIRMED and REFUNDED are only reached through payment_service; admins
drive the fulfilment statuses.
"""

from __future__ import annotations

import base64
import secrets

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Cart, Order, OrderItem, Payment, PaymentEvent, Product, ProductVariant
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from ..models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_REFUNDED,
    VALID_ORDER_STATUSES,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
    PAYMENT_STATUS_CANCELLED,
)
from ..errors import NotFoundError, ForbiddenError
from ..validation import validate_quantity, validate_id
from storefront.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import InsufficientStock
from . import cart_service


ORDER_TRANSITIONS = {
    ORDER_STATUS_PENDING: {ORDER_STATUS_CONFIRMED, ORDER_STATUS_CANCELLED, ORDER_STATUS_REFUNDED},
    ORDER_STATUS_CONFIRMED: {ORDER_STATUS_PROCESSING, ORDER_STATUS_REFUNDED},
    ORDER_STATUS_PROCESSING: {ORDER_STATUS_SHIPPED, ORDER_STATUS_REFUNDED},
    ORDER_STATUS_SHIPPED: {ORDER_STATUS_DELIVERED, ORDER_STATUS_REFUNDED},
    ORDER_STATUS_DELIVERED: {ORDER_STATUS_REFUNDED},
    ORDER_STATUS_CANCELLED: {ORDER_STATUS_REFUNDED},
    ORDER_STATUS_REFUNDED: set(),
}

# Statuses an admin may set directly; the rest are payment driven.
ADMIN_SETTABLE_STATUSES = {
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
}

ORDER_NUMBER_ATTEMPTS = 5


class OrderError(Exception):
    """Raised for order operation errors."""
    pass


def assert_transition(current: str, target: str) -> None:
    if target not in ORDER_TRANSITIONS.get(current, set()):
        raise OrderError(f"Cannot change order status from {current} to {target}")


def generate_order_number() -> str:
    """ORD-YYYYMMDDHHMMSS-XXXXXX (UTC timestamp + random base32 suffix)."""
    stamp = utcnow().strftime("%Y%m%d%H%M%S")
    suffix = base64.b32encode(secrets.token_bytes(5)).decode("ascii")[:6]
    return f"ORD-{stamp}-{suffix}"


def compute_tax_cents(subtotal_cents: int, rate_bps: int) -> int:
    """Basis-point tax, rounded half-up to the cent."""
    if rate_bps <= 0:
        return 0
    return (subtotal_cents * rate_bps + 5000) // 10000


def compute_shipping_cents(subtotal_cents: int, flat_cents: int, free_threshold_cents: int) -> int:
    if free_threshold_cents > 0 and subtotal_cents >= free_threshold_cents:
        return 0
    return max(flat_cents, 0)


def _build_line(raw: dict) -> OrderItem:
    if not isinstance(raw, dict):
        raise OrderError("Each item must be an object")

    product_id = validate_id(raw.get("product_id"), "product_id")
    quantity = validate_quantity(raw.get("quantity"))

    product = db.session.get(Product, product_id)
    if product is None or product.status != PRODUCT_STATUS_ACTIVE:
        raise OrderError(f"Product {product_id} is not available")

    variant = None
    if raw.get("variant_id") is not None:
        variant = db.session.get(ProductVariant, validate_id(raw["variant_id"], "variant_id"))
        if variant is None or variant.product_id != product.id:
            raise OrderError("Variant does not belong to product")
    elif product.variants:
        raise OrderError(f"A variant is required for product {product.name}")

    # Early rejection; the authoritative check is the locked decrement at confirmation
    if variant is not None and variant.inventory is not None:
        if variant.inventory.quantity < quantity:
            raise InsufficientStock(variant.id, variant.inventory.quantity, quantity)

    unit_price = variant.effective_price_cents if variant else product.price_cents
    return OrderItem(
        product_id=product.id,
        variant_id=variant.id if variant else None,
        quantity=quantity,
        price_cents=unit_price,
        total_price_cents=unit_price * quantity,
        product_name=product.name,
        variant_name=variant.name if variant else None,
        sku=(variant.sku if variant and variant.sku else product.sku),
    )


def _build_order(
    user_id: int,
    items: list,
    *,
    shipping_address=None,
    billing_address=None,
    payment_method=None,
    notes=None,
) -> Order:
    if not items:
        raise OrderError("Order must contain at least one item")
    if not isinstance(items, list):
        raise OrderError("items must be a list")

    lines = [_build_line(raw) for raw in items]

    subtotal = sum(line.total_price_cents for line in lines)
    tax = compute_tax_cents(subtotal, current_app.config["TAX_RATE_BPS"])
    shipping = compute_shipping_cents(
        subtotal,
        current_app.config["SHIPPING_FLAT_CENTS"],
        current_app.config["FREE_SHIPPING_THRESHOLD_CENTS"],
    )
    discount = 0

    order = Order(
        user_id=user_id,
        status=ORDER_STATUS_PENDING,
        subtotal_cents=subtotal,
        tax_cents=tax,
        shipping_cents=shipping,
        discount_cents=discount,
        total_cents=subtotal + tax + shipping - discount,
        shipping_address=shipping_address,
        billing_address=billing_address,
        payment_method=payment_method,
        notes=notes,
    )
    order.items = lines
    return order


def _save_with_fresh_number(build) -> Order:
    """
    Insert the order built by build(), regenerating the order number when the
    unique constraint reports a collision.
    """
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        order = build()
        order.order_number = generate_order_number()
        db.session.add(order)
        try:
            db.session.commit()
            return order
        except IntegrityError:
            db.session.rollback()
            current_app.logger.warning("Order number collision, regenerating (attempt %s)", attempt + 1)
    raise OrderError("Could not allocate an order number")


def create_order(
    user_id: int,
    items: list,
    shipping_address=None,
    billing_address=None,
    payment_method=None,
    notes=None,
) -> Order:
    """
    Create a PENDING order from explicit {product_id, quantity, variant_id?}
    lines. Client-supplied prices and totals are never read.
    """
    return _save_with_fresh_number(lambda: _build_order(
        user_id,
        items,
        shipping_address=shipping_address,
        billing_address=billing_address,
        payment_method=payment_method,
        notes=notes,
    ))


def checkout_cart(
    user_id: int,
    shipping_address=None,
    billing_address=None,
    payment_method=None,
    notes=None,
) -> Order:
    """Create an order from the user's cart and empty the cart in the same commit."""

    def _build():
        cart = db.session.query(Cart).filter_by(user_id=user_id).first()
        if cart is None or not cart.items:
            raise OrderError("Cart is empty")

        items = [
            {"product_id": item.product_id, "quantity": item.quantity, "variant_id": item.variant_id}
            for item in cart.items
        ]
        order = _build_order(
            user_id,
            items,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            notes=notes,
        )
        cart_service.clear_cart(user_id, commit=False)
        return order

    return _save_with_fresh_number(_build)


def _paginate(query, page: int, limit: int) -> dict:
    page = max(page or 1, 1)
    limit = min(max(limit or 10, 1), 100)
    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "orders": [o.to_dict() for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit if total else 0,
        },
    }


def list_orders(user_id: int, page: int = 1, limit: int = 10) -> dict:
    return _paginate(db.session.query(Order).filter_by(user_id=user_id), page, limit)


def list_all_orders(status: str | None = None, page: int = 1, limit: int = 20, *,
                    awaiting_refund: bool = False) -> dict:
    """
    awaiting_refund: only PENDING/CANCELLED orders that hold a SUCCEEDED
    payment, i.e. captured money the order will never use.
    """
    query = db.session.query(Order)
    if status:
        if status not in VALID_ORDER_STATUSES:
            raise OrderError(f"status must be one of: {', '.join(VALID_ORDER_STATUSES)}")
        query = query.filter(Order.status == status)
    if awaiting_refund:
        query = query.filter(
            Order.status.in_((ORDER_STATUS_PENDING, ORDER_STATUS_CANCELLED)),
            Order.payments.any(Payment.status == PAYMENT_STATUS_SUCCEEDED),
        )
    return _paginate(query, page, limit)


def get_order_for_user(order_id: int, user_id: int, *, is_admin: bool = False) -> Order:
    """
    Raises:
        NotFoundError: order does not exist (404)
        ForbiddenError: order belongs to another user (403)
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != user_id and not is_admin:
        raise ForbiddenError("Forbidden")
    return order


def cancel_locked(order: Order, *, note: str | None = None) -> Order:
    """
    Cancel a PENDING order that the caller has already locked, cascading
    CANCELLED to its PENDING payments. A SUCCEEDED payment has been captured
    at the gateway, so it keeps its status and stays refundable. Does not commit.
    """
    assert_transition(order.status, ORDER_STATUS_CANCELLED)

    now = utcnow()
    order.status = ORDER_STATUS_CANCELLED
    order.cancelled_at = now

    for payment in order.payments:
        if payment.status == PAYMENT_STATUS_SUCCEEDED:
            current_app.logger.warning(
                "Order %s cancelled with captured payment %s; awaiting refund",
                order.order_number, payment.payment_intent_id,
            )
            continue
        if payment.status != PAYMENT_STATUS_PENDING:
            continue
        payment.status = PAYMENT_STATUS_CANCELLED
        db.session.add(PaymentEvent(
            payment_id=payment.id,
            order_id=order.id,
            source="ORDER_CANCEL",
            event_type="payment.cancelled",
            gateway_status=None,
            amount_cents=0,
            note=note or f"Order {order.order_number} cancelled",
            occurred_at=now,
        ))
    return order


def cancel_order(order_id: int, user_id: int, *, is_admin: bool = False) -> Order:
    """Customer cancel. Only PENDING orders can be cancelled."""

    def _op():
        get_order_for_user(order_id, user_id, is_admin=is_admin)
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order.status != ORDER_STATUS_PENDING:
            raise OrderError("Only pending orders can be cancelled")
        cancel_locked(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_order_status(order_id: int, status: str) -> Order:
    """
    Admin fulfilment update, validated against ORDER_TRANSITIONS.
    CANCELLED goes through the same cascade as a customer cancel.
    """
    if status not in VALID_ORDER_STATUSES:
        raise OrderError(f"status must be one of: {', '.join(VALID_ORDER_STATUSES)}")
    if status not in ADMIN_SETTABLE_STATUSES:
        raise OrderError(f"Status {status} is set by payment processing, not manually")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError("Order not found")

        if status == ORDER_STATUS_CANCELLED:
            cancel_locked(order, note=f"Order {order.order_number} cancelled by admin")
        else:
            assert_transition(order.status, status)
            order.status = status
            if status == ORDER_STATUS_SHIPPED:
                order.shipped_at = utcnow()
            elif status == ORDER_STATUS_DELIVERED:
                order.delivered_at = utcnow()

        db.session.commit()
        return order

    return run_with_retry(_op)


def get_user_stats(user_id: int) -> dict:
    """Order count, total spent (excluding cancelled/refunded) and recent orders."""
    order_count = db.session.query(func.count(Order.id)).filter(Order.user_id == user_id).scalar() or 0

    total_spent = (
        db.session.query(func.coalesce(func.sum(Order.total_cents), 0))
        .filter(
            Order.user_id == user_id,
            Order.status.notin_([ORDER_STATUS_CANCELLED, ORDER_STATUS_REFUNDED]),
        )
        .scalar()
    )

    recent = (
        db.session.query(Order)
        .filter_by(user_id=user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(5)
        .all()
    )

    return {
        "order_count": int(order_count),
        "total_spent_cents": int(total_spent or 0),
        "recent_orders": [o.to_dict(include_items=False) for o in recent],
    }
