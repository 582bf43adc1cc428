# Overview: Flask API routes for shipment insurance and post-delivery ratings.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..models.states import ROLE_ADMIN, ROLE_CUSTOMER
from ..services import insurance_service, rating_service
from ..validation import TrustchainError, optional_text, require_payload


insurance_bp = Blueprint("insurance", __name__, url_prefix="/api")


# =============================================================================
# INSURANCE
# =============================================================================

@insurance_bp.post("/orders/<int:order_id>/insurance")
@require_auth
@require_role(ROLE_CUSTOMER, ROLE_ADMIN)
def purchase_insurance_route(order_id: int):
    """
    Insure an order's shipment.

    Request body (all optional):
    {
        "coverage_amount": "15000.00",   (default: order amount)
        "premium_percentage": "5",       (default: INSURANCE_DEFAULT_PREMIUM_PCT)
        "duration_days": 30,             (default: INSURANCE_DEFAULT_DURATION_DAYS)
        "provider": "TrustChain Insurance"
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        policy = insurance_service.purchase_policy(
            order_id,
            g.current_user.id,
            coverage=data.get("coverage_amount"),
            premium_pct=data.get("premium_percentage"),
            duration_days=data.get("duration_days"),
            provider=optional_text(data, "provider", max_length=64),
        )
        return jsonify({"policy": policy.to_dict()}), 201

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to purchase insurance")
        return jsonify({"error": "Internal server error"}), 500


@insurance_bp.post("/insurance/<int:policy_id>/claim")
@require_auth
@require_role(ROLE_CUSTOMER, ROLE_ADMIN)
def claim_insurance_route(policy_id: int):
    try:
        policy = insurance_service.claim_policy(policy_id, g.current_user.id)
        return jsonify({"policy": policy.to_dict()}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to claim insurance")
        return jsonify({"error": "Internal server error"}), 500


@insurance_bp.post("/insurance/<int:policy_id>/cancel")
@require_auth
@require_role(ROLE_CUSTOMER, ROLE_ADMIN)
def cancel_insurance_route(policy_id: int):
    try:
        policy = insurance_service.cancel_policy(policy_id, g.current_user.id)
        return jsonify({"policy": policy.to_dict()}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel insurance")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# RATINGS
# =============================================================================

@insurance_bp.post("/orders/<int:order_id>/rating")
@require_auth
@require_role(ROLE_CUSTOMER)
def submit_rating_route(order_id: int):
    """
    Rate the driver and/or merchant of a delivered order (1-5).

    Request body:
    {
        "driver_rating": 5,
        "merchant_rating": 4,
        "driver_review": "Fast and polite",   (optional)
        "merchant_review": "Well packed"      (optional)
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        review = rating_service.submit_rating(
            order_id,
            g.current_user.id,
            driver_rating=data.get("driver_rating"),
            merchant_rating=data.get("merchant_rating"),
            driver_review=optional_text(data, "driver_review", max_length=2000),
            merchant_review=optional_text(data, "merchant_review", max_length=2000),
        )
        return jsonify({"rating": review.to_dict()}), 201

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to submit rating")
        return jsonify({"error": "Internal server error"}), 500
