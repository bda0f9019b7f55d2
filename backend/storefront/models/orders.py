from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_CONFIRMED = "CONFIRMED"
ORDER_STATUS_PROCESSING = "PROCESSING"
ORDER_STATUS_SHIPPED = "SHIPPED"
ORDER_STATUS_DELIVERED = "DELIVERED"
ORDER_STATUS_CANCELLED = "CANCELLED"
ORDER_STATUS_REFUNDED = "REFUNDED"

VALID_ORDER_STATUSES = (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_REFUNDED,
)

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_SUCCEEDED = "SUCCEEDED"
PAYMENT_STATUS_FAILED = "FAILED"
PAYMENT_STATUS_CANCELLED = "CANCELLED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"
# Refund sent to the gateway, not yet recorded
PAYMENT_STATUS_REFUNDING = "REFUNDING"

VALID_PAYMENT_STATUSES = (
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_REFUNDING,
)


class Order(db.Model):
    """
    Customer order created at checkout.

    Amounts are computed server-side when the order is created:
    total = subtotal + tax + shipping - discount.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)
    payment_method = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    payments = db.relationship("Payment", backref="order", lazy=True, order_by="Payment.id")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def payment(self):
        """Most recent payment attempt, if any."""
        return self.payments[-1] if self.payments else None

    def to_dict(self, *, include_items: bool = True) -> dict:
        payment = self.payment
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "payment_status": payment.status if payment else None,
            "payment": payment.to_dict() if payment else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "refunded_at": to_utc_z(self.refunded_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    Order line.

    product_name / variant_name / sku / price_cents are snapshots taken at
    order creation so history survives later catalog edits.
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)

    product_name = db.Column(db.String(255), nullable=False)
    variant_name = db.Column(db.String(255), nullable=True)
    sku = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "total_price_cents": self.total_price_cents,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "sku": self.sku,
        }


class Payment(db.Model):
    """
    Gateway payment for an order.

    payment_intent_id is the gateway's payment id (imp_uid) and is the
    idempotency key for confirm/webhook reconciliation.
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    payment_intent_id = db.Column(db.String(128), nullable=False, unique=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=True)

    # pg_provider, pg_tid, receipt_url, refund ids ...
    gateway_details = db.Column(db.JSON, nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    refund_amount_cents = db.Column(db.Integer, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    refund_id = db.Column(db.String(128), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_intent_id": self.payment_intent_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "payment_method": self.payment_method,
            "gateway_details": self.gateway_details or {},
            "failure_reason": self.failure_reason,
            "refund_amount_cents": self.refund_amount_cents,
            "refund_reason": self.refund_reason,
            "refund_id": self.refund_id,
            "paid_at": to_utc_z(self.paid_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PaymentEvent(db.Model):
    """
    Append-only log of every confirm/webhook/refund touching a payment.

    SOURCES: CONFIRM, WEBHOOK, REFUND, ORDER_CANCEL
    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "payment_events"
    __table_args__ = (
        db.Index("ix_payment_events_payment_occurred", "payment_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    source = db.Column(db.String(16), nullable=False)
    event_type = db.Column(db.String(32), nullable=False)
    gateway_status = db.Column(db.String(32), nullable=True)

    # Positive for captures, negative for refunds
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    note = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(128), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", backref=db.backref("events", lazy=True, order_by="PaymentEvent.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "source": self.source,
            "event_type": self.event_type,
            "gateway_status": self.gateway_status,
            "amount_cents": self.amount_cents,
            "note": self.note,
            "reference": self.reference,
            "occurred_at": to_utc_z(self.occurred_at),
        }
