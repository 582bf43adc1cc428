# backend/trustchain/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(str(app.config.get("LOG_LEVEL") or "INFO").upper())

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Event bus and external collaborators
    from .events import EventBus, EXTENSION_KEY as EVENTS_KEY
    from .integrations.messaging import forward_notification_sms
    from .integrations import messaging, payments

    bus = EventBus()
    bus.subscribe("notification.created", forward_notification_sms)
    app.extensions[EVENTS_KEY] = bus
    app.extensions.setdefault(payments.EXTENSION_KEY, payments.build_payment_gateway(app.config))
    app.extensions.setdefault(messaging.EXTENSION_KEY, messaging.build_sms_transport(app.config))

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.deliveries import deliveries_bp
    from .routes.payments import payments_bp
    from .routes.fraud import fraud_bp
    from .routes.notifications import notifications_bp
    from .routes.insurance import insurance_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(deliveries_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(fraud_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(insurance_bp)
    app.register_blueprint(admin_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-User-Id, X-User-Role"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
