# Overview: Flask API routes for the order lifecycle; parses input and returns JSON responses.

# backend/trustchain/routes/orders.py
"""
Order Lifecycle API Routes

DESIGN:
- Customers create orders (pending) and may cancel before transit
- Drivers browse pending orders, accept one, pick it up, and complete it
  by submitting the customer's 4-digit delivery code
- Admins can see everything and clear OTP lockouts

SECURITY:
- Identity comes from trusted upstream headers (see decorators.require_auth)
- delivery_otp is only ever returned to the customer and admins
- Every transition is logged to the activity trail with user attribution
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..models.states import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_DRIVER
from ..services import delivery_service, order_service
from ..validation import TrustchainError, optional_text, parse_int, require_payload


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


# =============================================================================
# CREATE
# =============================================================================

@orders_bp.post("")
@require_auth
@require_role(ROLE_CUSTOMER)
def create_order_route():
    """
    Create a new order (status: pending) with its pending escrow payment.

    Request body:
    {
        "pickup_address": "Westlands, Nairobi",
        "delivery_address": "Kilimani, Nairobi",
        "amount": "1500.00",
        "payment_method": "prepay",        (optional: prepay, postpay, cheque)
        "merchant_id": "merchant-uuid",    (optional)
        "pickup_lat": -1.26, "pickup_lng": 36.80,       (optional)
        "delivery_lat": -1.29, "delivery_lng": 36.78,   (optional)
        "notes": "Leave at reception",     (optional)
        "items": [{"product_id": "p1", "quantity": 2, "unit_price": "500.00"}]  (optional)
    }

    Returns:
        201: Order created (includes delivery_otp for the customer)
        400: Invalid input
        404: Merchant not found
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order = order_service.create_order(
            customer_id=g.current_user.id,
            pickup_address=data.get("pickup_address"),
            delivery_address=data.get("delivery_address"),
            amount=data.get("amount"),
            payment_method=data.get("payment_method") or "prepay",
            merchant_id=optional_text(data, "merchant_id", max_length=64),
            pickup_lat=data.get("pickup_lat"),
            pickup_lng=data.get("pickup_lng"),
            delivery_lat=data.get("delivery_lat"),
            delivery_lng=data.get("delivery_lng"),
            notes=optional_text(data, "notes", max_length=2000),
            items=data.get("items"),
        )
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 201

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@orders_bp.get("")
@require_auth
def list_my_orders_route():
    """
    List orders relevant to the caller (placed, sold, delivered, or all for admins).

    Query params:
    - status: filter by order status
    - limit: max results (default 50)
    """
    try:
        status = request.args.get("status") or None
        limit = parse_int(request.args.get("limit", "50"), "limit")
        orders = order_service.list_orders_for(g.current_user, status=status, limit=limit)
        return jsonify({
            "orders": [order_service.serialize_order(o, g.current_user) for o in orders],
            "count": len(orders),
        }), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/available")
@require_auth
@require_role(ROLE_DRIVER, ROLE_ADMIN)
def list_available_orders_route():
    """Pending orders waiting for a driver, oldest first."""
    try:
        limit = parse_int(request.args.get("limit", "50"), "limit")
        orders = order_service.list_available_orders(limit=limit)
        return jsonify({
            "orders": [order_service.serialize_order(o, g.current_user) for o in orders],
            "count": len(orders),
        }), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list available orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order_for_viewer(order_id, g.current_user)
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/track/<tracking_id>")
@require_auth
def track_order_route(tracking_id: str):
    """Look an order up by its human-readable tracking id."""
    try:
        order = order_service.track_order(tracking_id)
        if not order_service.can_view_order(order, g.current_user):
            return jsonify({"error": "You do not have access to this order", "code": "FORBIDDEN"}), 403
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to track order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TRANSITIONS
# =============================================================================

@orders_bp.post("/<int:order_id>/accept")
@require_auth
@require_role(ROLE_DRIVER)
def accept_order_route(order_id: int):
    """
    Accept a pending order (pending -> assigned).

    Returns:
        200: Order assigned to the caller
        409: Order is no longer pending (another driver won)
    """
    try:
        order = order_service.accept_order(order_id, g.current_user.id)
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to accept order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/pickup")
@require_auth
@require_role(ROLE_DRIVER)
def pickup_order_route(order_id: int):
    """
    Start transit (assigned -> in_transit). Repeat calls are no-ops.
    """
    try:
        result = order_service.start_transit(order_id, g.current_user.id)
        return jsonify({
            "order": order_service.serialize_order(result.entity, g.current_user),
            "replayed": result.replayed,
        }), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start transit")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/complete")
@require_auth
@require_role(ROLE_DRIVER)
def complete_order_route(order_id: int):
    """
    Complete delivery with the customer's code (in_transit -> delivered).

    Request body:
    {
        "otp": "4821"
    }

    Returns:
        200: Delivered
        400: OTP is not 4 digits
        409: Wrong code (OTP_MISMATCH), lockout (OTP_ATTEMPTS_EXCEEDED),
             or order not in transit (INVALID_TRANSITION)
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order = delivery_service.complete_delivery(order_id, g.current_user.id, data.get("otp"))
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete delivery")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """
    Cancel a pending or assigned order.

    Request body:
    {
        "reason": "Changed my mind"  (optional)
    }

    Held escrow is refunded and any driver assignment voided.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order = order_service.cancel_order(
            order_id,
            g.current_user.id,
            reason=optional_text(data, "reason", max_length=255),
        )
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/otp-reset")
@require_auth
@require_role(ROLE_ADMIN)
def reset_otp_attempts_route(order_id: int):
    """Clear a delivery-code lockout. Admin only."""
    try:
        data = require_payload(request.get_json(silent=True))
        order = delivery_service.reset_otp_attempts(
            order_id,
            g.current_user.id,
            note=optional_text(data, "note", max_length=255),
        )
        return jsonify({"order": order_service.serialize_order(order, g.current_user)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reset OTP attempts")
        return jsonify({"error": "Internal server error"}), 500
