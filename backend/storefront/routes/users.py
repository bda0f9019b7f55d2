# Overview: Flask API routes for the signed-in user's profile statistics.

from flask import Blueprint, jsonify, g, current_app

from ..services import order_service
from ..decorators import require_auth


users_bp = Blueprint("users", __name__, url_prefix="/api/users")


@users_bp.get("/stats")
@require_auth
def user_stats_route():
    """Order count, total spent and the five most recent orders."""
    try:
        stats = order_service.get_user_stats(g.current_user.id)
        return jsonify({"user": g.current_user.to_dict(), **stats})
    except Exception:
        current_app.logger.exception("Failed to load user stats")
        return jsonify({"error": "Internal server error"}), 500
