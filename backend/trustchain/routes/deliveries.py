# Overview: Flask API routes for driver location telemetry.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..models.states import ROLE_DRIVER
from ..services import delivery_service
from ..validation import TrustchainError, parse_optional_datetime, require_payload


deliveries_bp = Blueprint("deliveries", __name__, url_prefix="/api/deliveries")


@deliveries_bp.post("/<int:delivery_id>/location")
@require_auth
@require_role(ROLE_DRIVER)
def update_location_route(delivery_id: int):
    """
    Report the driver's position while in transit.

    Request body:
    {
        "lat": -1.2921,
        "lng": 36.8219,
        "recorded_at": "2026-10-19T08:15:00Z"  (optional, defaults to now)
    }

    Returns:
        200: {"delivery": {...}, "applied": true|false}
             applied is false when an older ping arrived after a newer one
        400: Invalid coordinates
        409: Order not in transit
    """
    try:
        data = require_payload(request.get_json(silent=True))
        delivery, applied = delivery_service.update_location(
            delivery_id,
            g.current_user.id,
            data.get("lat"),
            data.get("lng"),
            recorded_at=parse_optional_datetime(data.get("recorded_at"), "recorded_at"),
        )
        return jsonify({"delivery": delivery.to_dict(), "applied": applied}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update delivery location")
        return jsonify({"error": "Internal server error"}), 500
