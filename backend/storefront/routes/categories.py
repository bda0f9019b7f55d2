# Overview: Flask API routes for category operations; parses input and returns JSON responses.

from flask import Blueprint, request, current_app

from ..extensions import db
from ..models.auth import ROLE_ADMIN
from ..services import catalog_service
from ..validation import ValidationError, coerce_int
from ..decorators import require_auth, require_role

categories_bp = Blueprint("categories", __name__, url_prefix="/api/categories")


@categories_bp.get("")
def list_categories_route():
    """Active categories, ordered by sort_order."""
    try:
        categories = catalog_service.list_categories()
        return {"categories": [c.to_dict() for c in categories]}
    except Exception:
        current_app.logger.exception("Failed to list categories")
        return {"error": "Internal server error"}, 500


@categories_bp.post("")
@require_auth
@require_role(ROLE_ADMIN)
def create_category_route():
    """
    Request body: {"name": "Smartphones", "slug"?: "...", "description"?: "...", "sort_order"?: 1}

    The slug is derived from the name when omitted and suffixed (-1, -2, ...)
    when already taken.
    """
    payload = request.get_json(silent=True) or {}

    try:
        category = catalog_service.create_category(
            name=payload.get("name") or "",
            slug=payload.get("slug"),
            description=payload.get("description"),
            sort_order=coerce_int("sort_order", payload.get("sort_order", 0)),
        )
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create category")
        return {"error": "Internal server error"}, 500

    return {"category": category.to_dict()}, 201
