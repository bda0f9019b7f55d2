# Overview: Flask API routes for cart operations; parses input and returns JSON responses.

# backend/storefront/routes/cart.py
"""
Shopping cart routes. Every route operates on the caller's own cart.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..errors import NotFoundError
from ..services import cart_service
from ..services.cart_service import CartError
from ..validation import ValidationError, validate_id
from ..decorators import require_auth


cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
def get_cart_route():
    return jsonify({"cart": cart_service.get_cart(g.current_user.id)})


@cart_bp.post("")
@require_auth
def add_item_route():
    """
    Add a product to the cart.

    Request body:
    {
        "product_id": 12,
        "quantity": 2,
        "selected_variants": {"storage": "256GB", "color": "black"},  (optional)
        "variant_id": 31  (optional, instead of selected_variants)
    }

    Same product + same selection merges into the existing line.
    """
    data = request.get_json(silent=True) or {}

    try:
        product_id = validate_id(data.get("product_id"), "product_id")
        variant_id = data.get("variant_id")
        item = cart_service.add_item(
            g.current_user.id,
            product_id,
            data.get("quantity"),
            selected_variants=data.get("selected_variants"),
            variant_id=validate_id(variant_id, "variant_id") if variant_id is not None else None,
        )
        return jsonify({"item": item.to_dict(), "cart": cart_service.get_cart(g.current_user.id)}), 201

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (CartError, ValidationError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("")
@require_auth
def update_item_route():
    """
    Request body: {"item_id": 5, "quantity": 3}

    quantity <= 0 removes the line.
    """
    data = request.get_json(silent=True) or {}

    try:
        item_id = validate_id(data.get("item_id"), "item_id")
        item = cart_service.update_item(g.current_user.id, item_id, data.get("quantity"))
        return jsonify({
            "item": item.to_dict() if item else None,
            "removed": item is None,
            "cart": cart_service.get_cart(g.current_user.id),
        })

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("")
@require_auth
def delete_item_route():
    """
    DELETE /api/cart?item_id=5 removes one line; without item_id the whole
    cart is emptied.
    """
    raw_item_id = request.args.get("item_id")

    try:
        if raw_item_id is None:
            removed = cart_service.clear_cart(g.current_user.id)
            return jsonify({"removed": removed, "cart": cart_service.get_cart(g.current_user.id)})

        cart_service.remove_item(g.current_user.id, validate_id(raw_item_id, "item_id"))
        return jsonify({"removed": 1, "cart": cart_service.get_cart(g.current_user.id)})

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500
