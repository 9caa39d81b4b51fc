# backend/cinepos/__init__.py
import logging
import time

from flask import Flask, g, request

from .config import Config
from .extensions import db, migrate
from .errors import CoreError, error_response


def _request_deadline_seconds(app: Flask) -> float:
    seconds = float(app.config.get("REQUEST_DEADLINE_SECONDS", 30))
    header = request.headers.get("X-Request-Timeout")
    if header:
        try:
            requested = float(header)
        except ValueError:
            requested = None
        # A client may shorten the deadline, never extend it
        if requested is not None and 0 < requested < seconds:
            seconds = requested
    return seconds


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.catalog import products_bp, combos_bp
    from .routes.stock import stock_bp
    from .routes.carts import carts_bp
    from .routes.orders import orders_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(combos_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(carts_bp)
    app.register_blueprint(orders_bp)

    @app.before_request
    def set_request_deadline():
        g.deadline = time.monotonic() + _request_deadline_seconds(app)

    @app.errorhandler(CoreError)
    def handle_core_error(exc: CoreError):
        return error_response(exc)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
