# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/storefront/routes/admin.py
"""
Admin console routes.

Provides endpoints for:
- Order fulfilment (list all orders, move through PROCESSING/SHIPPED/DELIVERED)
- Inventory (low-stock report, per-variant stock and ledger, receive, adjust)

All endpoints require an ADMIN session.
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import NotFoundError
from ..models import InventoryAdjustment
from ..models.auth import ROLE_ADMIN
from ..services import order_service, inventory_service
from ..services.order_service import OrderError
from ..services.inventory_service import InventoryError, InsufficientStock
from ..validation import ModelValidationPolicy, validate_payload, ValidationError, coerce_int
from ..decorators import require_auth, require_role

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

INVENTORY_MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={"quantity_delta", "note"},
    required_on_create={"quantity_delta"},
)


# =============================================================================
# ORDERS
# =============================================================================

@admin_bp.get("/orders")
@require_auth
@require_role(ROLE_ADMIN)
def list_orders_route():
    """
    Query params:
    - status: filter by order status
    - awaiting_refund: "1" for unconfirmed orders holding a captured payment
    - page, limit: pagination (default 1 / 20)
    """
    try:
        result = order_service.list_all_orders(
            status=request.args.get("status"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
            awaiting_refund=request.args.get("awaiting_refund", "").lower() in ("1", "true", "yes"),
        )
        return jsonify(result)
    except OrderError as e:
        return jsonify({"error": str(e)}), 400


@admin_bp.patch("/orders/<int:order_id>/status")
@require_auth
@require_role(ROLE_ADMIN)
def update_order_status_route(order_id: int):
    """Request body: {"status": "SHIPPED"}"""
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if not status:
        return jsonify({"error": "status is required"}), 400

    try:
        order = order_service.update_order_status(order_id, status)
        return jsonify({"order": order.to_dict()})
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except OrderError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# INVENTORY
# =============================================================================

@admin_bp.get("/inventory/low-stock")
@require_auth
@require_role(ROLE_ADMIN)
def low_stock_route():
    items = inventory_service.list_low_stock()
    result = []
    for inventory in items:
        data = inventory.to_dict()
        variant = inventory.variant
        data["variant_name"] = variant.name
        data["sku"] = variant.sku
        data["product_id"] = variant.product_id
        data["product_name"] = variant.product.name
        result.append(data)
    return jsonify({"items": result, "count": len(result)})


@admin_bp.get("/inventory/<int:variant_id>")
@require_auth
@require_role(ROLE_ADMIN)
def get_inventory_route(variant_id: int):
    try:
        inventory = inventory_service.get_inventory(variant_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    limit = request.args.get("limit", 100, type=int)
    adjustments = inventory_service.list_adjustments(variant_id, limit=min(max(limit, 1), 500))
    return jsonify({
        "inventory": inventory.to_dict(),
        "adjustments": [a.to_dict() for a in adjustments],
    })


def _movement(variant_id: int, apply):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=InventoryAdjustment, payload=payload, policy=INVENTORY_MOVEMENT_POLICY, partial=False
        )
        adjustment = apply(patch["quantity_delta"], patch.get("note"))
        inventory = inventory_service.get_inventory(variant_id)
        return jsonify({"adjustment": adjustment.to_dict(), "inventory": inventory.to_dict()}), 201
    except NotFoundError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 404
    except InsufficientStock as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except (InventoryError, ValidationError) as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record inventory movement")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/inventory/<int:variant_id>/receive")
@require_auth
@require_role(ROLE_ADMIN)
def receive_route(variant_id: int):
    """Request body: {"quantity_delta": 20, "note": "PO-1042"}"""
    return _movement(variant_id, lambda qty, note: inventory_service.receive(variant_id, qty, note))


@admin_bp.post("/inventory/<int:variant_id>/adjust")
@require_auth
@require_role(ROLE_ADMIN)
def adjust_route(variant_id: int):
    """Request body: {"quantity_delta": -2, "note": "Damaged in storage"}"""
    return _movement(variant_id, lambda delta, note: inventory_service.adjust(variant_id, delta, note))


@admin_bp.put("/inventory/<int:variant_id>/threshold")
@require_auth
@require_role(ROLE_ADMIN)
def threshold_route(variant_id: int):
    """Request body: {"low_stock_threshold": 3}"""
    data = request.get_json(silent=True) or {}
    try:
        threshold = coerce_int("low_stock_threshold", data.get("low_stock_threshold"))
        inventory = inventory_service.set_low_stock_threshold(variant_id, threshold)
        return jsonify({"inventory": inventory.to_dict()})
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (InventoryError, ValidationError) as e:
        return jsonify({"error": str(e)}), 400
