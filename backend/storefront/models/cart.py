from __future__ import annotations

import json

from ..extensions import db
from storefront.time_utils import to_utc_z


class Cart(db.Model):
    """One open cart per user (unique user_id)."""
    __tablename__ = "carts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "CartItem",
        backref="cart",
        lazy=True,
        order_by="CartItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        items = [item.to_dict() for item in self.items]
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": items,
            "item_count": sum(item["quantity"] for item in items),
            "subtotal_cents": sum(item["line_total_cents"] for item in items),
            "updated_at": to_utc_z(self.updated_at),
        }


class CartItem(db.Model):
    """
    Cart line.

    selected_variants holds the canonical JSON of the variant selection
    (sorted keys) so two selections compare equal as plain strings.
    Prices are not stored here; they are always read from the live catalog.
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "product_id", "selected_variants", name="uq_cart_items_selection"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    selected_variants = db.Column(db.Text, nullable=False, default="")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")

    @property
    def unit_price_cents(self) -> int:
        if self.variant is not None:
            return self.variant.effective_price_cents
        return self.product.price_cents

    def to_dict(self) -> dict:
        unit_price = self.unit_price_cents
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "selected_variants": json.loads(self.selected_variants) if self.selected_variants else None,
            "unit_price_cents": unit_price,
            "line_total_cents": unit_price * self.quantity,
            "product": self.product.to_dict(include_children=False) if self.product else None,
            "variant": self.variant.to_dict() if self.variant else None,
        }
