#!/usr/bin/env python3
"""
Ztooly Analytics API

Records tool usage events from the analytics client, serves aggregate
statistics for dashboards, and helps clients discover their public IP.
Every request passes an in-memory per-client rate limiter first.
"""

import logging
import sys
from typing import Optional

import httpx
from flask import Flask, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from api import create_api_blueprint
from config import Settings, load_settings
from db import configure, init_db
from errors import AnalyticsError, ConfigError, RateLimitExceeded
from tracking import RateLimiter

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10 MB

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,HEAD,PUT,PATCH,POST,DELETE",
    "Access-Control-Allow-Headers": "Content-Type, X-Admin-Key",
}


def create_app(
    settings: Optional[Settings] = None,
    rate_limiter: Optional[RateLimiter] = None,
    http_client: Optional[httpx.Client] = None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        settings: Configuration (read from the environment if omitted)
        rate_limiter: Rate limiter shared by all requests of this app
        http_client: HTTP client for outbound public IP lookups

    Raises:
        ConfigError: if the settings are invalid
    """
    if settings is None:
        settings = load_settings()

    if rate_limiter is None:
        rate_limiter = RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            block_seconds=settings.rate_limit_block_seconds,
        )
    if http_client is None:
        http_client = httpx.Client(timeout=settings.public_ip_timeout)

    app = Flask(__name__)
    app.config["ADMIN_KEY"] = settings.admin_key
    app.config["PUBLIC_IP_TIMEOUT"] = settings.public_ip_timeout
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
    app.extensions["rate_limiter"] = rate_limiter
    app.extensions["ip_http_client"] = http_client

    # Degraded mode: keep serving when the database is down at startup
    configure(settings.resolved_database_url(), echo=settings.sql_debug)
    try:
        init_db()
        logger.info("Database tables ready")
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {e}")

    _register_middleware(app)
    _register_error_handlers(app)
    app.register_blueprint(create_api_blueprint())

    return app


# ============================================================================
# Middleware
# ============================================================================


def _register_middleware(app: Flask) -> None:
    # Must stay registered before log_request
    @app.before_request
    def enforce_rate_limit():
        """Reject clients over their request budget before routing."""
        limiter: RateLimiter = app.extensions["rate_limiter"]
        client_key = request.remote_addr or "unknown"
        if not limiter.check_and_record(client_key):
            raise RateLimitExceeded()

    @app.before_request
    def log_request():
        """Log all incoming requests for debugging."""
        logger.info(f">>> {request.method} {request.path}")
        data = request.get_json(silent=True) if request.is_json else None
        if isinstance(data, dict):
            logger.debug(f"    Request fields: {sorted(data)}")

    @app.after_request
    def add_headers(response):
        """Security and CORS headers on every response."""
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        for name, value in CORS_HEADERS.items():
            response.headers.setdefault(name, value)
        logger.info(f"<<< {response.status_code} {request.path}")
        return response


# ============================================================================
# Error Handlers - Return JSON instead of HTML for all errors
# ============================================================================


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AnalyticsError)
    def analytics_error(e: AnalyticsError):
        """Render known errors with their status code and message."""
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        """Handle 404 Not Found errors."""
        return jsonify({"error": f"Endpoint not found: {request.path}"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        """Handle 405 Method Not Allowed errors."""
        return jsonify(
            {"error": f"Method {request.method} not allowed for {request.path}"}
        ), 405

    @app.errorhandler(413)
    def payload_too_large(e):
        """Handle bodies over MAX_CONTENT_LENGTH."""
        return jsonify({"error": "Payload too large"}), 413

    @app.errorhandler(500)
    def internal_error(e):
        """Handle 500 Internal Server errors."""
        logger.exception("Internal server error")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle any unhandled exceptions without leaking details."""
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        logger.exception(f"Unhandled exception: {e}")
        return jsonify({"error": "Internal server error"}), 500


# ============================================================================
# Main
# ============================================================================


def main() -> None:
    try:
        settings = load_settings()
        app = create_app(settings)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logger.info(f"Ztooly Analytics API running on http://{settings.host}:{settings.port}")
    app.run(host=settings.host, port=settings.port, debug=settings.debug, threaded=True)


if __name__ == "__main__":
    main()
