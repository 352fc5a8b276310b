"""
Analytics API Flask blueprint.

Provides:
- Public endpoints for tracking tool usage and reading aggregates
- Client IP diagnostics used by the analytics client's fallback chain
- Admin endpoints (raw IPs, header dumps) guarded by the admin key
"""

import logging
import re
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from db import check_db_connection, check_db_initialized
from errors import ServerError, ValidationError
from tracking import resolve_public_ip, tracker
from tracking.ip_resolver import extract_raw_ip, normalize_ip

from .auth import require_admin_key

logger = logging.getLogger(__name__)

API_VERSION = "2.0.0"
MAX_LIMIT = 500
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _int_arg(name: str, default: int) -> int:
    """
    Read a positive integer query parameter.

    Leading digits are used as-is ("2.5" is 2, "3abc" is 3). Missing,
    non-numeric, zero or negative values fall back to the default; large
    values are capped at MAX_LIMIT.
    """
    match = _LEADING_INT.match(request.args.get(name, ""))
    if not match:
        return default
    value = int(match.group(1))
    if value <= 0:
        return default
    return min(value, MAX_LIMIT)


def _user_agent() -> str:
    return request.headers.get("User-Agent") or "Unknown"


def create_api_blueprint(url_prefix: str = "/api") -> Blueprint:
    """
    Create and configure the API blueprint.

    Args:
        url_prefix: URL prefix for all analytics routes
    """
    api = Blueprint("api", __name__, url_prefix=url_prefix)

    # -------------------------------------------------------------------------
    # Discovery & Health
    # -------------------------------------------------------------------------

    @api.route("", methods=["GET"])
    def index():
        """List the public endpoints (admin routes are not advertised)."""
        return jsonify(
            {
                "message": "Ztooly Analytics API - Tools Made Simple",
                "version": API_VERSION,
                "endpoints": {
                    "GET /api/health": "Health check",
                    "POST /api/track-usage": "Track tool usage",
                    "GET /api/popular-tools": "Get popular tools",
                    "GET /api/daily-stats": "Get daily statistics",
                    "GET /api/tool-usage/:toolId": "Get usage count for specific tool",
                    "GET /api/client-info": "Get basic client info",
                    "GET /api/public-ip": "Get public IP address",
                },
                "timestamp": _now_iso(),
            }
        )

    @api.route("/health", methods=["GET"])
    def health():
        """Health check called by the analytics client at startup."""
        database_ok = check_db_connection()
        schema_ok = database_ok and check_db_initialized()
        return jsonify(
            {
                "status": "ok",
                "database": "connected" if database_ok else "unavailable",
                "schema": "ready" if schema_ok else "missing",
                "timestamp": _now_iso(),
            }
        )

    # -------------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------------

    @api.route("/track-usage", methods=["POST"])
    def track_usage():
        """Record one tool usage event."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}

        # The client's own resolution sees through proxies we cannot
        raw_ip = data.get("clientIp") or extract_raw_ip(request)
        if not isinstance(raw_ip, str):
            raise ValidationError("clientIp must be a string")

        user_agent = data.get("userAgent")
        if not isinstance(user_agent, str) or not user_agent:
            user_agent = _user_agent()

        try:
            tracker.record_usage(
                data.get("toolId"),
                data.get("toolName"),
                data.get("userSession"),
                ip_address=raw_ip,
                user_agent=user_agent,
            )
        except SQLAlchemyError:
            logger.exception("Error tracking usage")
            raise ServerError("Failed to track usage")

        return jsonify({"success": True})

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    @api.route("/popular-tools", methods=["GET"])
    def popular_tools():
        """Tools ordered by usage count."""
        limit = _int_arg("limit", 10)
        try:
            return jsonify(tracker.popular_tools(limit))
        except SQLAlchemyError:
            logger.exception("Error fetching popular tools")
            raise ServerError("Failed to fetch popular tools")

    @api.route("/daily-stats", methods=["GET"])
    def daily_stats():
        """Most recent daily aggregates, newest first."""
        days = _int_arg("days", 30)
        try:
            return jsonify(tracker.daily_stats(days))
        except SQLAlchemyError:
            logger.exception("Error fetching daily stats")
            raise ServerError("Failed to fetch daily stats")

    @api.route("/tool-usage/<path:tool_id>", methods=["GET"])
    def tool_usage(tool_id: str):
        """Total usage count for a single tool."""
        try:
            count = tracker.tool_usage_count(tool_id)
        except SQLAlchemyError:
            logger.exception("Error fetching tool usage")
            raise ServerError("Failed to fetch tool usage")
        return jsonify({"toolId": tool_id, "count": count})

    # -------------------------------------------------------------------------
    # Client IP
    # -------------------------------------------------------------------------

    @api.route("/client-info", methods=["GET"])
    def client_info():
        """The caller's IP as seen by this server (no persistence)."""
        raw_ip = extract_raw_ip(request)
        return jsonify(
            {
                "ip": normalize_ip(raw_ip),
                "rawIp": raw_ip,
                "userAgent": _user_agent(),
                "timestamp": _now_iso(),
            }
        )

    @api.route("/public-ip", methods=["GET"])
    def public_ip():
        """Public IP via external services, falling back to request headers."""
        http_client = current_app.extensions["ip_http_client"]
        timeout = current_app.config.get("PUBLIC_IP_TIMEOUT", 5.0)
        return jsonify(resolve_public_ip(request, http_client, timeout=timeout))

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    @api.route("/admin/recent-usage", methods=["GET"])
    @require_admin_key
    def recent_usage():
        """Latest usage rows including IP addresses."""
        limit = _int_arg("limit", 10)
        try:
            return jsonify(tracker.recent_usage(limit))
        except SQLAlchemyError:
            logger.exception("Error fetching recent usage")
            raise ServerError("Failed to fetch recent usage")

    @api.route("/admin/client-debug", methods=["GET"])
    @require_admin_key
    def client_debug():
        """Full header dump plus raw and cleaned IP."""
        raw_ip = extract_raw_ip(request)
        clean_ip = normalize_ip(raw_ip)
        logger.info(f"Admin debug - Raw IP: {raw_ip}, Clean IP: {clean_ip}")

        return jsonify(
            {
                "ip": clean_ip,
                "rawIp": raw_ip,
                "userAgent": _user_agent(),
                "allHeaders": {key.lower(): value for key, value in request.headers.items()},
                "connection": {
                    "remoteAddress": request.remote_addr,
                    "socketAddress": request.environ.get("REMOTE_ADDR"),
                },
                "timestamp": _now_iso(),
            }
        )

    @api.route("/admin/dashboard", methods=["GET"])
    @require_admin_key
    def dashboard():
        """Totals and last-24h activity for the admin dashboard."""
        try:
            return jsonify(tracker.dashboard_summary())
        except SQLAlchemyError:
            logger.exception("Error fetching dashboard data")
            raise ServerError("Failed to fetch dashboard data")

    return api
