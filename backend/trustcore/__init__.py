# backend/trustcore/__init__.py
import time

from flask import Flask, jsonify, request

from .config import Config, resolve_secrets
from .errors import TrustCoreError
from .extensions import db, migrate


def create_app(config_object=Config, *, event_sink=None, sleep=time.sleep) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)

    # Fails closed in hardened mode before anything else is wired
    generated = resolve_secrets(app.config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .context import EXTENSION_KEY, build_security_context
    app.extensions[EXTENSION_KEY] = build_security_context(
        app.config,
        generated_secrets=generated,
        event_sink=event_sink,
        sleep=sleep,
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.transactions import transactions_bp
    from .routes.customers import customers_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(customers_bp)

    @app.errorhandler(TrustCoreError)
    def handle_trust_core_error(exc: TrustCoreError):
        if exc.http_status >= 500:
            app.logger.error("%s on %s %s: %s", exc.code, request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.http_status

    @app.after_request
    def add_security_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = (
                "Authorization, Content-Type, X-CSRF-Token, X-Session-Token, X-Device-Info"
            )
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
