# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/storefront/routes/payments.py
"""
Payment Processing API Routes

DESIGN:
- POST /api/payments builds the checkout widget payload for a PENDING order
- /confirm (browser) and /webhook (gateway) both end in
  payment_service.reconcile_payment
- Refunds go back through the gateway; full refunds restore the stock the
  order actually took
- A capture is answered with 200 even when stock ran out; the body then
  carries stock_shortfall=true and the order stays PENDING

SECURITY:
- confirm/refund/read require the order owner (refund also allows ADMIN)
- webhook requires a valid HMAC-SHA256 signature over the raw body
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..errors import NotFoundError, ForbiddenError
from ..services import payment_service
from ..services.payment_service import PaymentError, PaymentAmountMismatch
from ..services.gateway import GatewayError
from ..services.signatures import SignatureError
from ..validation import ValidationError, validate_id
from ..decorators import require_auth, current_user_is_admin


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _error_response(e: Exception, action: str):
    """Map payment-flow exceptions to JSON responses."""
    db.session.rollback()
    if isinstance(e, SignatureError):
        return jsonify({"error": str(e)}), 401
    if isinstance(e, ForbiddenError):
        return jsonify({"error": str(e)}), 403
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, PaymentAmountMismatch):
        return jsonify({"error": "Payment amount mismatch", "expected": e.expected, "actual": e.actual}), 400
    if isinstance(e, (PaymentError, ValidationError)):
        return jsonify({"error": str(e)}), 400
    if isinstance(e, GatewayError):
        current_app.logger.error("Payment gateway error during %s: %s", action, e)
        return jsonify({"error": "Payment gateway unavailable"}), 502
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENT REQUEST / QUERIES
# =============================================================================

@payments_bp.get("")
@require_auth
def get_payment_route():
    """GET /api/payments?order_id=123 -> latest payment of an owned order."""
    raw_order_id = request.args.get("order_id") or request.args.get("orderId")
    try:
        order_id = validate_id(raw_order_id, "order_id")
        payment = payment_service.get_payment_for_order(
            order_id, g.current_user.id, is_admin=current_user_is_admin()
        )
        data = payment.to_dict()
        data["events"] = [e.to_dict() for e in payment.events]
        return jsonify({"payment": data})
    except Exception as e:
        return _error_response(e, "fetch payment")


@payments_bp.post("")
@require_auth
def create_payment_request_route():
    """
    Request body: {"order_id": 123, "payment_method": "card"}

    Returns the payload for the gateway's checkout widget (merchant_uid,
    amount, display name, buyer info).
    """
    data = request.get_json(silent=True) or {}
    try:
        order_id = validate_id(data.get("order_id"), "order_id")
        payment_request = payment_service.create_payment_request(
            order_id, g.current_user.id, data.get("payment_method") or "card"
        )
        return jsonify({"payment_request": payment_request})
    except Exception as e:
        return _error_response(e, "create payment request")


# =============================================================================
# RECONCILIATION
# =============================================================================

@payments_bp.post("/confirm")
@require_auth
def confirm_payment_route():
    """
    Request body:
    {
        "imp_uid": "imp_123",
        "merchant_uid": "ORD-20250101120000-ABCDEF",  (or "order_id": 123)
        "amount": 129000,
        "status": "SUCCEEDED",
        "pay_method": "card"  (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        result = payment_service.confirm_payment(
            g.current_user.id,
            data.get("imp_uid"),
            data.get("merchant_uid") or data.get("order_id"),
            amount=data.get("amount"),
            status=data.get("status"),
            pay_method=data.get("pay_method"),
        )
        return jsonify(result.to_dict())
    except Exception as e:
        return _error_response(e, "confirm payment")


@payments_bp.post("/webhook")
def webhook_route():
    """
    Gateway notification. Header x-portone-signature carries the hex
    HMAC-SHA256 of the raw body under PORTONE_WEBHOOK_SECRET.
    """
    try:
        result = payment_service.handle_webhook(
            request.get_data(),
            request.headers.get("x-portone-signature"),
        )
        return jsonify({"success": True, **result.to_dict()})
    except Exception as e:
        return _error_response(e, "process payment webhook")


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/refund")
@require_auth
def refund_route():
    """
    Request body: {"payment_id": 7, "amount": 129000 (optional), "reason": "..."}

    amount defaults to the full captured amount.
    """
    data = request.get_json(silent=True) or {}
    try:
        payment_id = validate_id(data.get("payment_id"), "payment_id")
        payment = payment_service.refund_payment(
            payment_id,
            g.current_user.id,
            amount=data.get("amount"),
            reason=data.get("reason"),
            is_admin=current_user_is_admin(),
        )
        return jsonify({"payment": payment.to_dict(), "order": payment.order.to_dict()})
    except Exception as e:
        return _error_response(e, "refund payment")


@payments_bp.get("/refund")
@require_auth
def refund_history_route():
    """GET /api/payments/refund?payment_id=7 -> refund events, newest first."""
    raw_payment_id = request.args.get("payment_id") or request.args.get("paymentId")
    try:
        payment_id = validate_id(raw_payment_id, "payment_id")
        events = payment_service.list_refunds(
            payment_id, g.current_user.id, is_admin=current_user_is_admin()
        )
        return jsonify({"refunds": [e.to_dict() for e in events]})
    except Exception as e:
        return _error_response(e, "list refunds")
