# backend/trustchain/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/trustchain.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///trustchain.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    CURRENCY = os.environ.get("CURRENCY", "KES")

    # Delivery confirmation
    OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS", "5"))
    # Location pings dated further ahead of server time are rejected
    LOCATION_MAX_CLOCK_SKEW_SECONDS = int(os.environ.get("LOCATION_MAX_CLOCK_SKEW_SECONDS", "120"))

    # Fraud heuristics
    FRAUD_CHECKS_ON_TRANSITIONS = _env_bool("FRAUD_CHECKS_ON_TRANSITIONS", True)
    FRAUD_RAPID_ORDER_LIMIT = int(os.environ.get("FRAUD_RAPID_ORDER_LIMIT", "5"))
    FRAUD_CANCELLATION_LIMIT = int(os.environ.get("FRAUD_CANCELLATION_LIMIT", "3"))
    FRAUD_HIGH_VALUE_THRESHOLD = os.environ.get("FRAUD_HIGH_VALUE_THRESHOLD", "50000")
    FRAUD_FAST_DELIVERY_MINUTES = int(os.environ.get("FRAUD_FAST_DELIVERY_MINUTES", "5"))
    FRAUD_LOW_RATING_THRESHOLD = float(os.environ.get("FRAUD_LOW_RATING_THRESHOLD", "2.0"))
    FRAUD_LOW_RATING_MIN_DELIVERIES = int(os.environ.get("FRAUD_LOW_RATING_MIN_DELIVERIES", "10"))

    # Payment gateway collaborator: "mock" or "http"
    PAYMENT_GATEWAY_PROVIDER = os.environ.get("PAYMENT_GATEWAY_PROVIDER", "mock")
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "")
    PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY", "")
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "10"))

    # SMS transport collaborator: "log", "http" or "disabled"
    SMS_PROVIDER = os.environ.get("SMS_PROVIDER", "log")
    SMS_GATEWAY_URL = os.environ.get("SMS_GATEWAY_URL", "")
    SMS_GATEWAY_API_KEY = os.environ.get("SMS_GATEWAY_API_KEY", "")
    SMS_GATEWAY_TIMEOUT = float(os.environ.get("SMS_GATEWAY_TIMEOUT", "5"))

    # Shipment insurance
    INSURANCE_DEFAULT_PREMIUM_PCT = os.environ.get("INSURANCE_DEFAULT_PREMIUM_PCT", "5")
    INSURANCE_DEFAULT_DURATION_DAYS = int(os.environ.get("INSURANCE_DEFAULT_DURATION_DAYS", "30"))
