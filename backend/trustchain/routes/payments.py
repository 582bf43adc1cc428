# Overview: Flask API routes for escrow payments; parses input and returns JSON responses.

# backend/trustchain/routes/payments.py
"""
Escrow Payment API Routes

DESIGN:
- Customers initiate a mobile-money capture for their order
- The gateway confirms out-of-band (capture-confirm); the upstream gateway
  presents that callback with an admin identity
- The delivering driver releases escrow after the OTP hand-off

SECURITY:
- Release is only possible after delivery with a verified OTP
- All operations logged to the activity trail
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..models.states import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_DRIVER
from ..services import escrow_service, order_service
from ..validation import (
    AuthorizationError,
    NotFoundError,
    TrustchainError,
    optional_text,
    parse_bool,
    parse_int,
    require_payload,
    require_text,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _payment_response(result, status_code: int = 200):
    return jsonify({
        "payment": result.entity.to_dict(),
        "previous_status": result.previous_status,
        "status": result.status,
        "replayed": result.replayed,
    }), status_code


@payments_bp.post("/initiate")
@require_auth
@require_role(ROLE_CUSTOMER, ROLE_ADMIN)
def initiate_payment_route():
    """
    Initiate capture for an order's pending payment.

    Request body:
    {
        "order_id": 12,
        "phone": "0712345678"
    }

    Returns:
        200: Capture requested (payment stays pending until confirmed)
             or declined by the gateway (payment failed)
        502: Gateway unreachable; nothing changed
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = parse_int(data.get("order_id"), "order_id")
        phone = require_text(data, "phone", max_length=32)
        result = escrow_service.initiate_capture(order_id, g.current_user.id, phone)
        return _payment_response(result)

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/capture-confirm")
@require_auth
@require_role(ROLE_ADMIN)
def confirm_capture_route():
    """
    Gateway confirmation of a capture.

    Request body:
    {
        "order_id": 12,
        "transaction_ref": "MOCK-12-AB12CD34EF",
        "success": true,
        "reason": "insufficient funds"  (optional, failures only)
    }

    Duplicate confirmations of the same outcome return replayed=true.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = parse_int(data.get("order_id"), "order_id")
        transaction_ref = require_text(data, "transaction_ref", max_length=128)
        success = parse_bool(data.get("success"), "success")
        result = escrow_service.confirm_capture(
            order_id,
            transaction_ref,
            success,
            reason=optional_text(data, "reason", max_length=255),
        )
        return _payment_response(result)

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to confirm capture")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/release")
@require_auth
@require_role(ROLE_DRIVER)
def release_escrow_route():
    """
    Release held escrow to the delivering driver.

    Request body:
    {
        "order_id": 12
    }

    Returns:
        200: Released (replayed=true if it already was)
        409: ORDER_NOT_DELIVERED, OTP_NOT_VERIFIED, PAYMENT_NOT_IN_ESCROW,
             or DRIVER_MISMATCH
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = parse_int(data.get("order_id"), "order_id")
        result = escrow_service.release_escrow(order_id, g.current_user.id)
        return _payment_response(result)

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to release escrow")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/order/<int:order_id>")
@require_auth
def get_order_payment_route(order_id: int):
    try:
        order = order_service.require_order(order_id)
        if not escrow_service.can_view_payment(order, g.current_user):
            raise AuthorizationError("You do not have access to this payment")
        payment = escrow_service.get_payment_for_order(order_id)
        if payment is None:
            raise NotFoundError(f"Payment for order {order_id} not found")
        return jsonify({"payment": payment.to_dict()}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500
