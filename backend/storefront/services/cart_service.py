# Overview: Service-layer operations for the shopping cart; encapsulates business logic and database work.

"""
Cart Service

One cart per user. Lines are keyed by (product, canonical variant selection)
so adding the same product with the same selection merges quantities.
Prices are never stored on the cart; CartItem reads them from the live catalog.
"""

from __future__ import annotations

import json

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError

from ..extensions import db
from ..models import Cart, CartItem, Product, ProductVariant
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from ..errors import NotFoundError
from ..validation import validate_quantity, MAX_LINE_QUANTITY
from .catalog_service import find_variant_by_attributes
from .concurrency import lock_for_update, run_with_retry


class CartError(Exception):
    """Raised for cart operation errors."""
    pass


def canonical_selection(selected_variants: dict | None) -> str:
    """Canonical JSON of a variant selection ("" when there is none)."""
    if not selected_variants:
        return ""
    if not isinstance(selected_variants, dict):
        raise CartError("selected_variants must be an object")
    normalized = {str(k): str(v) for k, v in selected_variants.items()}
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def get_or_create_cart(user_id: int) -> Cart:
    """
    Find-or-create under the unique user_id constraint. A concurrent insert
    loses the race with IntegrityError and re-reads the winner's row.
    """
    cart = db.session.query(Cart).filter_by(user_id=user_id).first()
    if cart:
        return cart

    cart = Cart(user_id=user_id)
    db.session.add(cart)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        cart = db.session.query(Cart).filter_by(user_id=user_id).first()
        if cart is None:
            raise
    return cart


def get_cart(user_id: int) -> dict:
    """
    Serialized cart for the API. When the database is unreachable the caller
    gets an empty cart instead of an error.
    """
    try:
        cart = db.session.query(Cart).filter_by(user_id=user_id).first()
        if cart is None:
            return {"id": None, "user_id": user_id, "items": [], "item_count": 0, "subtotal_cents": 0}
        return cart.to_dict()
    except OperationalError:
        db.session.rollback()
        current_app.logger.warning("Cart read failed for user %s; returning empty cart", user_id)
        return {"id": None, "user_id": user_id, "items": [], "item_count": 0, "subtotal_cents": 0}


def _resolve_variant(product: Product, variant_id: int | None, selection: dict | None) -> ProductVariant | None:
    if variant_id is not None:
        variant = db.session.get(ProductVariant, variant_id)
        if variant is None or variant.product_id != product.id:
            raise CartError("Variant does not belong to product")
        return variant

    if selection:
        variant = find_variant_by_attributes(product, selection)
        if variant is None:
            raise CartError("No variant matches the selected options")
        return variant

    if product.variants:
        raise CartError("A variant selection is required for this product")
    return None


def add_item(
    user_id: int,
    product_id: int,
    quantity,
    selected_variants: dict | None = None,
    variant_id: int | None = None,
) -> CartItem:
    """
    Add a product to the user's cart, merging with an existing line that has
    the same product and selection.

    Raises:
        ValidationError: quantity is not a positive integer
        NotFoundError: product does not exist or is not ACTIVE
        CartError: variant problems or merged quantity over the line cap
    """
    qty = validate_quantity(quantity)
    product = db.session.get(Product, product_id)
    if product is None or product.status != PRODUCT_STATUS_ACTIVE:
        raise NotFoundError("Product not found")

    variant = _resolve_variant(product, variant_id, selected_variants)
    if variant is not None:
        # The stored selection always describes the resolved variant
        variant_selection = canonical_selection(variant.attributes)
        if selected_variants and canonical_selection(selected_variants) != variant_selection:
            raise CartError("Selected options do not match the variant")
        selection_key = variant_selection
    else:
        selection_key = canonical_selection(selected_variants)

    cart = get_or_create_cart(user_id)

    def _op():
        existing = lock_for_update(
            db.session.query(CartItem).filter_by(
                cart_id=cart.id,
                product_id=product.id,
                variant_id=variant.id if variant else None,
                selected_variants=selection_key,
            )
        ).first()

        if existing:
            merged = existing.quantity + qty
            if merged > MAX_LINE_QUANTITY:
                raise CartError(f"quantity cannot exceed {MAX_LINE_QUANTITY}")
            existing.quantity = merged
            item = existing
        else:
            item = CartItem(
                cart_id=cart.id,
                product_id=product.id,
                variant_id=variant.id if variant else None,
                quantity=qty,
                selected_variants=selection_key,
            )
            db.session.add(item)

        db.session.commit()
        return item

    return run_with_retry(_op)


def _owned_item(user_id: int, item_id: int) -> CartItem:
    item = (
        db.session.query(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .filter(CartItem.id == item_id, Cart.user_id == user_id)
        .first()
    )
    if item is None:
        raise NotFoundError("Cart item not found")
    return item


def update_item(user_id: int, item_id: int, quantity) -> CartItem | None:
    """
    Set a line's quantity. quantity <= 0 removes the line and returns None.
    """
    qty = validate_quantity(quantity, allow_zero_or_negative=True)
    item = _owned_item(user_id, item_id)

    if qty <= 0:
        db.session.delete(item)
        db.session.commit()
        return None

    item.quantity = qty
    db.session.commit()
    return item


def remove_item(user_id: int, item_id: int) -> None:
    item = _owned_item(user_id, item_id)
    db.session.delete(item)
    db.session.commit()


def clear_cart(user_id: int, *, commit: bool = True) -> int:
    """Delete every line of the user's cart. Returns the number removed."""
    cart = db.session.query(Cart).filter_by(user_id=user_id).first()
    if cart is None:
        return 0

    removed = len(cart.items)
    cart.items.clear()
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return removed
