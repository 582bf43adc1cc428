# Overview: Flask API routes for fraud checks and alert review.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..models.states import ROLE_ADMIN
from ..services import fraud_service
from ..validation import TrustchainError, optional_text, parse_bool, parse_int, require_payload


fraud_bp = Blueprint("fraud", __name__, url_prefix="/api/fraud")


@fraud_bp.post("/check")
@require_auth
@require_role(ROLE_ADMIN)
def run_fraud_check_route():
    """
    Run the fraud heuristics for a user and/or order.

    Request body:
    {
        "user_id": "customer-uuid",   (optional)
        "order_id": 12,               (optional, one of the two required)
        "action": "manual_review"     (optional)
    }

    Returns:
        200: {"alerts_generated": n, "alerts": [...]}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = data.get("order_id")
        alerts = fraud_service.run_fraud_check(
            user_id=optional_text(data, "user_id", max_length=64),
            order_id=parse_int(order_id, "order_id") if order_id is not None else None,
            action=optional_text(data, "action", max_length=64) or "manual_check",
        )
        return jsonify({
            "alerts_generated": len(alerts),
            "alerts": [a.to_dict() for a in alerts],
        }), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Fraud check failed")
        return jsonify({"error": "Internal server error"}), 500


@fraud_bp.get("/alerts")
@require_auth
@require_role(ROLE_ADMIN)
def list_alerts_route():
    """
    Query params:
    - resolved: true|false
    - severity: low|medium|high|critical
    - user_id, order_id, limit
    """
    try:
        resolved = request.args.get("resolved")
        order_id = request.args.get("order_id")
        alerts = fraud_service.list_alerts(
            resolved=parse_bool(resolved, "resolved") if resolved is not None else None,
            severity=request.args.get("severity") or None,
            user_id=request.args.get("user_id") or None,
            order_id=parse_int(order_id, "order_id") if order_id else None,
            limit=parse_int(request.args.get("limit", "100"), "limit"),
        )
        return jsonify({"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list fraud alerts")
        return jsonify({"error": "Internal server error"}), 500


@fraud_bp.post("/alerts/<int:alert_id>/resolve")
@require_auth
@require_role(ROLE_ADMIN)
def resolve_alert_route(alert_id: int):
    try:
        data = require_payload(request.get_json(silent=True))
        alert = fraud_service.resolve_alert(
            alert_id,
            g.current_user.id,
            note=optional_text(data, "note", max_length=500),
        )
        return jsonify({"alert": alert.to_dict()}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resolve fraud alert")
        return jsonify({"error": "Internal server error"}), 500
