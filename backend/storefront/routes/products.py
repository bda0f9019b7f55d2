# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/storefront/routes/products.py
"""
Product catalog routes.

SECURITY:
- Read operations are public and only show ACTIVE products
- Staff (SELLER/ADMIN) presenting a bearer token may list other statuses
- Write operations require SELLER or ADMIN
"""
from flask import Blueprint, request, current_app

from ..extensions import db
from ..models import Product
from ..models.auth import ROLE_SELLER, ROLE_ADMIN
from ..errors import NotFoundError
from ..services import catalog_service, session_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_product,
    ValidationError,
    ConflictError,
)
from ..decorators import require_auth, require_role

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "slug", "sku", "name", "description", "short_description", "brand",
        "price_cents", "compare_price_cents", "category_id", "status", "featured",
        "images", "variants",
    },
    required_on_create={"name", "price_cents"},
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _is_staff_request() -> bool:
    """Optional auth: public routes widen their view for staff tokens."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return False
    context = session_service.validate_session(auth_header.split(" ", 1)[1].strip())
    return bool(context and context.user.role in (ROLE_SELLER, ROLE_ADMIN))


@products_bp.get("")
def list_products():
    """
    List products with pagination.

    Query params:
    - page: int (default 1)
    - limit: int (default 10, max 100)
    - category: category id or slug
    - search: matches name or description
    - featured: true/false
    - status: staff only; "all" lists every status
    """
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", 10, type=int)
    category = request.args.get("category")
    search = request.args.get("search")
    featured_arg = request.args.get("featured")
    featured = None if featured_arg is None else featured_arg.lower() == "true"

    status = "ACTIVE"
    requested_status = request.args.get("status")
    if requested_status and _is_staff_request():
        status = None if requested_status.lower() == "all" else requested_status.upper()

    try:
        return catalog_service.list_products(
            page=page,
            limit=limit,
            category=category,
            search=search,
            status=status,
            featured=featured,
        )
    except Exception:
        current_app.logger.exception("Failed to list products")
        return {"error": "Internal server error"}, 500


@products_bp.get("/<id_or_slug>")
def get_product_route(id_or_slug: str):
    try:
        product = catalog_service.get_product(id_or_slug, public=not _is_staff_request())
    except NotFoundError as e:
        return {"error": str(e)}, 404
    return {"product": product.to_dict()}


@products_bp.post("")
@require_auth
@require_role(ROLE_SELLER, ROLE_ADMIN)
def create_product_route():
    """
    Create a product with nested images and variants.

    Request body:
    {
        "name": "Phone X",
        "price_cents": 99900,
        "category_id": 1,
        "images": [{"url": "...", "alt_text": "..."}],
        "variants": [{"name": "256GB Black", "attributes": {"storage": "256GB"}, "stock": 10}]
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
        created = catalog_service.create_product(
            patch=patch,
            images=payload.get("images"),
            variants=payload.get("variants"),
        )
    except ConflictError as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create product")
        return {"error": "Internal server error"}, 500

    return {"product": created.to_dict()}, 201


@products_bp.put("/<int:product_id>")
@require_auth
@require_role(ROLE_SELLER, ROLE_ADMIN)
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    payload.pop("variants", None)

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        updated = catalog_service.update_product(
            product_id=product_id,
            patch=patch,
            images=payload.get("images"),
        )
    except NotFoundError as e:
        return {"error": str(e)}, 404
    except ConflictError as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update product")
        return {"error": "Internal server error"}, 500

    return {"product": updated.to_dict()}, 200


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role(ROLE_SELLER, ROLE_ADMIN)
def delete_product_route(product_id: int):
    """Soft delete: the product is ARCHIVED, never removed."""
    try:
        catalog_service.archive_product(product_id)
    except NotFoundError as e:
        return {"error": str(e)}, 404

    return {"ok": True}, 200
