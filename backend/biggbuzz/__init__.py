# backend/biggbuzz/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate, jwt


def create_app(config_object=None, *, transport=None, recorder=None) -> Flask:
    """
    Build the application.

    transport and recorder may be injected (tests, alternative providers);
    otherwise they are built from configuration. A transport that cannot be
    built (unknown provider, missing credentials) fails startup.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Wire core services
    from .services.registry import EXTENSION_KEY
    from .services.sms_service import build_transport
    from .services.compliance_service import ComplianceRecorder
    from .services.otp_service import OtpLedger
    from .services.registration_service import RegistrationMachine
    from .services.checkout_service import CheckoutEngine

    transport = transport or build_transport(app.config)
    recorder = recorder or ComplianceRecorder()
    otp_ledger = OtpLedger(transport, ttl_minutes=app.config["OTP_TTL_MINUTES"])
    app.extensions[EXTENSION_KEY] = {
        "transport": transport,
        "recorder": recorder,
        "otp_ledger": otp_ledger,
        "registration_machine": RegistrationMachine(
            otp_ledger,
            recorder,
            ttl_minutes=app.config["PENDING_REGISTRATION_TTL_MINUTES"],
            max_attempts=app.config["OTP_MAX_ATTEMPTS"],
            minimum_age=app.config["MINIMUM_AGE"],
        ),
        "checkout_engine": CheckoutEngine(
            tax_rate_bps=app.config["TAX_RATE_BPS"],
            delivery_fees_cents=app.config["DELIVERY_FEES_CENTS"],
            recorder=recorder,
        ),
    }

    from .decorators import register_jwt_handlers
    register_jwt_handlers(jwt)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.admin import admin_bp
    from .routes.cart import cart_bp
    from .routes.orders import orders_bp
    from .routes.subscribers import subscribers_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(subscribers_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
