# Overview: Flask API routes for the caller's in-app notifications.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..services import notification_service
from ..validation import TrustchainError, parse_bool, parse_int


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_auth
def list_notifications_route():
    """
    Query params:
    - unread_only: true|false (default false)
    - limit: max results (default 50)
    """
    try:
        unread_only = parse_bool(request.args.get("unread_only", "false"), "unread_only")
        limit = parse_int(request.args.get("limit", "50"), "limit")
        rows = notification_service.list_for_user(g.current_user.id, unread_only=unread_only, limit=limit)
        return jsonify({
            "notifications": [n.to_dict() for n in rows],
            "unread_count": notification_service.unread_count(g.current_user.id),
        }), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list notifications")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/<int:notification_id>/read")
@require_auth
def mark_read_route(notification_id: int):
    try:
        row = notification_service.mark_read(notification_id, g.current_user.id)
        return jsonify({"notification": row.to_dict()}), 200

    except TrustchainError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark notification read")
        return jsonify({"error": "Internal server error"}), 500
