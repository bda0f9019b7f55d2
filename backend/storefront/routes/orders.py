# Overview: Flask API routes for orders operations; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Customer order routes.

DESIGN:
- Orders are created PENDING, either from explicit lines or from the cart
- Amounts are always computed server-side
- Customers may read and cancel only their own orders (403 otherwise)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..errors import NotFoundError, ForbiddenError
from ..models.orders import ORDER_STATUS_CANCELLED
from ..services import order_service
from ..services.order_service import OrderError
from ..services.inventory_service import InsufficientStock
from ..validation import ValidationError
from ..decorators import require_auth, current_user_is_admin


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _order_fields(data: dict) -> dict:
    return {
        "shipping_address": data.get("shipping_address"),
        "billing_address": data.get("billing_address"),
        "payment_method": data.get("payment_method"),
        "notes": data.get("notes"),
    }


def _create_response(create):
    try:
        order = create()
        return jsonify({"order": order.to_dict()}), 201
    except InsufficientStock as e:
        db.session.rollback()
        return jsonify({
            "error": str(e),
            "variant_id": e.variant_id,
            "available": e.available,
            "requested": e.requested,
        }), 409
    except (OrderError, ValidationError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
def list_orders_route():
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", 10, type=int)
    return jsonify(order_service.list_orders(g.current_user.id, page=page, limit=limit))


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Create an order from explicit lines.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2, "variant_id": 3}],
        "shipping_address": {...},
        "billing_address": {...},  (optional)
        "payment_method": "card",
        "notes": "..."  (optional)
    }

    Any price or total fields in the body are ignored.
    """
    data = request.get_json(silent=True) or {}
    return _create_response(lambda: order_service.create_order(
        g.current_user.id, data.get("items"), **_order_fields(data)
    ))


@orders_bp.post("/checkout")
@require_auth
def checkout_route():
    """Create an order from the caller's cart and empty the cart."""
    data = request.get_json(silent=True) or {}
    return _create_response(lambda: order_service.checkout_cart(
        g.current_user.id, **_order_fields(data)
    ))


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order_for_user(
            order_id, g.current_user.id, is_admin=current_user_is_admin()
        )
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ForbiddenError as e:
        return jsonify({"error": str(e)}), 403

    data = order.to_dict()
    data["payments"] = [p.to_dict() for p in order.payments]
    return jsonify({"order": data})


@orders_bp.patch("/<int:order_id>")
@require_auth
def update_order_route(order_id: int):
    """
    Request body: {"status": "CANCELLED"}

    Customers can only cancel PENDING orders. Admins may also move orders
    through the fulfilment statuses here.
    """
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    is_admin = current_user_is_admin()

    try:
        if status == ORDER_STATUS_CANCELLED:
            order = order_service.cancel_order(order_id, g.current_user.id, is_admin=is_admin)
        elif is_admin and status:
            order = order_service.update_order_status(order_id, status)
        else:
            return jsonify({"error": "Only cancellation is allowed"}), 400

        return jsonify({"order": order.to_dict()})

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ForbiddenError as e:
        return jsonify({"error": str(e)}), 403
    except OrderError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500
