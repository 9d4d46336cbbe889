# backend/murimi_pos/__init__.py
import logging

from flask import Flask, request
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import AppError, error_response, internal_error_response
from .extensions import db, migrate


def _configure_logging(app: Flask) -> None:
    level = app.config.get("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app.logger.setLevel(level)


def _register_error_handlers(app: Flask) -> None:
    """Keep the {success, error} envelope for errors raised outside route try/excepts."""

    @app.errorhandler(AppError)
    def handle_app_error(exc: AppError):
        return error_response(exc)

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc: HTTPException):
        if not request.path.startswith("/api"):
            return exc
        messages = {
            404: "Not found",
            405: "Method not allowed",
            415: "Content-Type must be application/json",
        }
        response = exc.get_response()
        response.data = app.json.dumps({"success": False, "error": messages.get(exc.code, exc.name)})
        response.content_type = "application/json"
        return response

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return internal_error_response()


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Rate limiting, JSON-only writes, CORS and security headers
    from . import security
    security.init_app(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.products import products_bp
    from .routes.categories import categories_bp
    from .routes.suppliers import suppliers_bp
    from .routes.sales import sales_bp
    from .routes.offline_sync import offline_sync_bp
    from .routes.mpesa import mpesa_bp
    from .routes.audit_logs import audit_logs_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(categories_bp)
    app.register_blueprint(suppliers_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(offline_sync_bp)
    app.register_blueprint(mpesa_bp)
    app.register_blueprint(audit_logs_bp)

    _register_error_handlers(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
