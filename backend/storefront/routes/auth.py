# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/storefront/routes/auth.py
"""
Authentication API routes

Sign-in itself happens at the identity provider. Its front door posts the
verified profile here, signed with IDENTITY_SHARED_SECRET, and receives a
storefront bearer token in exchange.

SECURITY FEATURES:
- HMAC-SHA256 signature over the raw assertion body (X-Identity-Signature)
- Session management with hashed, expiring bearer tokens
"""

import json

from flask import Blueprint, request, jsonify, current_app, g

from ..services import identity_service
from ..services import session_service
from ..services.signatures import verify_signature, SignatureError
from ..validation import ValidationError
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/session")
def create_session_route():
    """
    Exchange a signed identity assertion for a session token.

    Request body (signed verbatim):
    {
        "provider": "google",
        "subject": "1098...",
        "email": "jane@example.com",
        "name": "Jane",
        "role": "CUSTOMER"  (optional)
    }
    """
    raw_body = request.get_data()
    try:
        verify_signature(
            raw_body,
            request.headers.get("X-Identity-Signature"),
            current_app.config["IDENTITY_SHARED_SECRET"],
        )
    except SignatureError as e:
        return jsonify({"error": str(e)}), 401

    try:
        try:
            assertion = json.loads(raw_body or b"{}")
        except ValueError:
            return jsonify({"error": "Invalid JSON payload"}), 400

        user = identity_service.upsert_user_from_identity(assertion)
        if not user.is_active:
            return jsonify({"error": "User account is deactivated"}), 403

        session, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "user": user.to_dict(),
            "token": token,
            "session": session.to_dict(),
            "message": "Login successful",
        }), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create session")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({
        "user": g.current_user.to_dict(),
        "session": g.session_context.session.to_dict(),
    })


@auth_bp.post("/logout")
@require_auth
def logout_route():
    """
    Revoke the presenting session token.

    WHY: Explicit logout prevents token reuse.
    """
    try:
        session_service.revoke_session(g.session_token)
        return jsonify({"message": "Logout successful"}), 200
    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500
