# Overview: Flask API routes for admin oversight (activity trail, system stats).

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..models.states import ROLE_ADMIN
from ..services import stats_service
from ..services.activity_service import list_activity
from ..validation import TrustchainError, parse_int


admin_bp = Blueprint("admin", __name__, url_prefix="/api")


@admin_bp.get("/activity")
@require_auth
@require_role(ROLE_ADMIN)
def list_activity_route():
    """
    Activity trail, oldest first.

    Query params:
    - order_id, user_id, action: filters
    - limit: max results (default 100)
    """
    try:
        order_id = request.args.get("order_id")
        entries = list_activity(
            order_id=parse_int(order_id, "order_id") if order_id else None,
            user_id=request.args.get("user_id") or None,
            action=request.args.get("action") or None,
            limit=parse_int(request.args.get("limit", "100"), "limit"),
        )
        return jsonify({"activity": [e.to_dict() for e in entries], "count": len(entries)}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list activity")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/admin/stats")
@require_auth
@require_role(ROLE_ADMIN)
def system_stats_route():
    try:
        return jsonify(stats_service.system_stats()), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute system stats")
        return jsonify({"error": "Internal server error"}), 500
