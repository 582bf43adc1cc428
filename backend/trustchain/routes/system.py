# backend/trustchain/routes/system.py
"""
System health and version endpoints.

Health covers the relational store and the external collaborators
(payment gateway, SMS transport) as configured.
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, Profile
from ..integrations.messaging import get_sms_transport
from ..integrations.payments import get_payment_gateway
from trustchain.time_utils import utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        profile_count = db.session.query(Profile).count()
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "profiles": profile_count,
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_integrations_health() -> dict:
    """
    Report which collaborators are configured. Never calls them.
    """
    try:
        gateway = get_payment_gateway()
        sms = get_sms_transport()
    except RuntimeError as e:
        return {"status": "degraded", "warning": str(e)}

    status = "degraded" if sms.name == "disabled" else "healthy"
    return {
        "status": status,
        "details": {
            "payment_gateway": gateway.name,
            "sms_transport": sms.name,
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (still operational)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    integrations_health = check_integrations_health()

    all_checks = [database_health, integrations_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "integrations": integrations_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """
    Version endpoint for deployment debugging.

    Does NOT expose secret keys, database credentials or internal paths.
    """
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": API_VERSION,
        "environment": env,
        "python_version": sys.version.split()[0],
        "currency": current_app.config.get("CURRENCY"),
        "server_time": utcnow().isoformat() + "Z",
    }
