# Overview: Flask API routes for image uploads; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..models.auth import ROLE_SELLER, ROLE_ADMIN
from ..services import storage_service
from ..services.storage_service import StorageError
from ..decorators import require_auth, require_role


uploads_bp = Blueprint("uploads", __name__, url_prefix="/api/uploads")


@uploads_bp.post("")
@require_auth
@require_role(ROLE_SELLER, ROLE_ADMIN)
def upload_route():
    """
    multipart/form-data with an "image" file and optional "folder" field.

    Allowed: JPEG, PNG, WebP, GIF up to MAX_UPLOAD_BYTES.
    """
    file = request.files.get("image")
    if file is None or not file.filename:
        return jsonify({"error": "No file provided"}), 400

    try:
        result = storage_service.upload(
            file.stream,
            file.filename,
            file.mimetype,
            folder=request.form.get("folder") or "products",
        )
        return jsonify(result), 201
    except StorageError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to upload image")
        return jsonify({"error": "Internal server error"}), 500


@uploads_bp.get("")
@require_auth
@require_role(ROLE_SELLER, ROLE_ADMIN)
def list_uploads_route():
    try:
        objects = storage_service.list_objects(request.args.get("folder") or "products")
        return jsonify({"images": objects})
    except StorageError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list images")
        return jsonify({"error": "Internal server error"}), 500


@uploads_bp.delete("")
@require_auth
@require_role(ROLE_SELLER, ROLE_ADMIN)
def delete_upload_route():
    """DELETE /api/uploads?key=products/1700000000000-ab12cd.jpg"""
    key = request.args.get("key")
    if not key:
        return jsonify({"error": "key is required"}), 400

    try:
        storage_service.delete_object(key)
        return jsonify({"ok": True})
    except StorageError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to delete image")
        return jsonify({"error": "Internal server error"}), 500
