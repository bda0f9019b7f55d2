from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Inventory(db.Model):
    """
    Stock counter for one variant.

    Variants without an Inventory row are not stock-tracked.
    quantity is only changed through inventory_service so every change has a
    matching InventoryAdjustment.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="quantity_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(
        db.Integer, db.ForeignKey("product_variants.id"), nullable=False, unique=True, index=True
    )

    quantity = db.Column(db.Integer, nullable=False, default=0)
    # Present in the schema for holds; no operation writes it yet.
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=5)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.low_stock_threshold

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryAdjustment(db.Model):
    """
    Append-only ledger of stock movements.

    REASONS:
    - SALE: confirmed payment consumed stock (negative)
    - RESTOCK: full refund returned stock (positive)
    - RECEIVE: admin received goods (positive)
    - ADJUST: admin correction (either sign)

    idempotency_key is unique so a replayed webhook or refund cannot move
    stock twice.
    """
    __tablename__ = "inventory_adjustments"
    __table_args__ = (
        db.Index("ix_inventory_adjustments_variant_occurred", "variant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(16), nullable=False, index=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)

    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "quantity_delta": self.quantity_delta,
            "quantity_after": self.quantity_after,
            "reason": self.reason,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "idempotency_key": self.idempotency_key,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
