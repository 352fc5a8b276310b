"""Tests for IP extraction, normalization and public IP lookups."""

import httpx
import pytest
from flask import Flask, request

from conftest import RecordingTransport, json_response
from tracking.ip_resolver import (
    CLIENT_IP_SERVICES,
    SERVER_IP_SERVICES,
    extract_raw_ip,
    fetch_public_ip,
    is_detected_ip,
    normalize_ip,
    resolve_public_ip,
    resolve_server_ip,
)

IPIFY = "https://api.ipify.org"
IPAPI = "https://ipapi.co"
IPIFY64 = "https://api64.ipify.org"
MYIP = "https://api.my-ip.io"
JSONIP = "https://jsonip.com"


@pytest.fixture
def flask_app():
    return Flask(__name__)


def request_context(flask_app, headers=None, remote_addr="10.0.0.1"):
    return flask_app.test_request_context(
        "/", headers=headers or {}, environ_base={"REMOTE_ADDR": remote_addr}
    )


class TestNormalizeIp:
    """Normalization of raw IP strings."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("::ffff:203.0.113.9", "203.0.113.9"),
            ("::FFFF:203.0.113.9", "203.0.113.9"),
            ("::1", "localhost"),
            ("127.0.0.1", "localhost"),
            ("::ffff:127.0.0.1", "localhost"),
            ("", "unknown"),
            (None, "unknown"),
            ("unknown", "unknown"),
            ("  198.51.100.4  ", "198.51.100.4"),
            ("2001:0db8:0000:0000:0000:ff00:0042:8329", "2001:0db8:0000:0000:0000:ff00:0042:8329"),
        ],
    )
    def test_normalize(self, raw, expected):
        """Test the documented normalization cases."""
        assert normalize_ip(raw) == expected

    def test_nonstandard_value_kept(self):
        """Test values that do not look like an IP pass through unchanged."""
        assert normalize_ip("not-an-ip") == "not-an-ip"
        assert normalize_ip("2001:db8::1") == "2001:db8::1"

    @pytest.mark.parametrize(
        "raw",
        ["::ffff:::ffff:10.1.1.1", "::1", "", "unknown", "1.2.3.4", "garbage", " ::ffff: 8.8.8.8"],
    )
    def test_idempotent(self, raw):
        """Test normalizing twice equals normalizing once."""
        once = normalize_ip(raw)
        assert normalize_ip(once) == once

    def test_never_returns_loopback_or_mapped(self):
        """Test the output never keeps a loopback literal or mapped prefix."""
        for raw in ("::1", "127.0.0.1", "::ffff:127.0.0.1", "::ffff:1.2.3.4"):
            result = normalize_ip(raw)
            assert result not in ("::1", "127.0.0.1")
            assert not result.lower().startswith("::ffff:")

    def test_is_detected_ip(self):
        """Test sentinel values are not treated as detected IPs."""
        assert is_detected_ip("203.0.113.9") is True
        assert is_detected_ip("unknown") is False
        assert is_detected_ip("localhost") is False
        assert is_detected_ip("") is False
        assert is_detected_ip(None) is False


class TestExtractRawIp:
    """Header precedence when reading the client address."""

    def test_forwarded_for_first_entry(self, flask_app):
        """Test the leftmost X-Forwarded-For entry wins."""
        headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
        with request_context(flask_app, headers):
            assert extract_raw_ip(request) == "203.0.113.9"

    def test_cloudflare_header_beats_forwarded_for(self, flask_app):
        """Test CF-Connecting-IP takes precedence over X-Forwarded-For."""
        headers = {"CF-Connecting-IP": "198.51.100.7", "X-Forwarded-For": "203.0.113.9"}
        with request_context(flask_app, headers):
            assert extract_raw_ip(request) == "198.51.100.7"

    def test_real_ip_used_when_forwarded_missing(self, flask_app):
        """Test X-Real-IP is used when earlier headers are absent."""
        with request_context(flask_app, {"X-Real-IP": "192.0.2.5"}):
            assert extract_raw_ip(request) == "192.0.2.5"

    def test_unknown_header_value_skipped(self, flask_app):
        """Test a header carrying "unknown" falls through to the next one."""
        headers = {"X-Forwarded-For": "unknown", "X-Real-IP": "192.0.2.5"}
        with request_context(flask_app, headers):
            assert extract_raw_ip(request) == "192.0.2.5"

    def test_falls_back_to_socket_address(self, flask_app):
        """Test the socket address is used when no header is present."""
        with request_context(flask_app, remote_addr="10.9.8.7"):
            assert extract_raw_ip(request) == "10.9.8.7"

    def test_resolve_server_ip_normalizes(self, flask_app):
        """Test the resolved IP is normalized."""
        with request_context(flask_app, {"X-Forwarded-For": "::ffff:203.0.113.9"}):
            assert resolve_server_ip(request) == "203.0.113.9"
        with request_context(flask_app, remote_addr="127.0.0.1"):
            assert resolve_server_ip(request) == "localhost"


class TestFetchPublicIp:
    """Walking the list of external IP services."""

    def test_first_service_wins(self):
        """Test the first successful service is used."""
        transport = RecordingTransport({IPIFY: json_response({"ip": "203.0.113.9"})})
        with httpx.Client(transport=transport) as http:
            result = fetch_public_ip(http, SERVER_IP_SERVICES)

        assert result.ip == "203.0.113.9"
        assert result.source.startswith(IPIFY)
        assert len(transport.requests) == 1

    def test_failed_services_are_skipped(self):
        """Test errors, bad status and bad JSON move on to the next service."""
        transport = RecordingTransport(
            {
                IPIFY: httpx.ConnectTimeout("timed out"),
                IPAPI: json_response({"error": True}, status_code=429),
                IPIFY64: lambda request: httpx.Response(200, content=b"not json"),
                MYIP: json_response({"ip": "198.51.100.1"}),
            }
        )
        with httpx.Client(transport=transport) as http:
            result = fetch_public_ip(http, SERVER_IP_SERVICES)

        assert result.ip == "198.51.100.1"
        assert result.source.startswith(MYIP)
        assert len(transport.requests) == 4

    def test_alternate_field_names(self):
        """Test "query" and "IPv4" response fields are understood."""
        transport = RecordingTransport({IPIFY: json_response({"query": "192.0.2.44"})})
        with httpx.Client(transport=transport) as http:
            assert fetch_public_ip(http, SERVER_IP_SERVICES).ip == "192.0.2.44"

        transport = RecordingTransport({IPIFY: json_response({"IPv4": "192.0.2.45"})})
        with httpx.Client(transport=transport) as http:
            assert fetch_public_ip(http, SERVER_IP_SERVICES).ip == "192.0.2.45"

    def test_all_services_fail(self):
        """Test None is returned when nothing answers."""
        transport = RecordingTransport()
        with httpx.Client(transport=transport) as http:
            assert fetch_public_ip(http, CLIENT_IP_SERVICES) is None

        assert len(transport.requests) == len(CLIENT_IP_SERVICES)
        assert transport.urls()[-1].startswith(JSONIP)


class TestResolvePublicIp:
    """Public IP lookup for the public-ip endpoint."""

    def test_service_result(self, flask_app):
        """Test a service result is reported with its source."""
        transport = RecordingTransport({IPIFY: json_response({"ip": "203.0.113.9"})})
        with request_context(flask_app), httpx.Client(transport=transport) as http:
            result = resolve_public_ip(request, http)

        assert result["ip"] == "203.0.113.9"
        assert result["source"].startswith(IPIFY)
        assert "warning" not in result
        assert "timestamp" in result
        assert transport.requests[0].headers["User-Agent"] == "Mozilla/5.0 (Analytics Service)"

    def test_fallback_to_headers(self, flask_app):
        """Test the request IP is used when every service fails."""
        transport = RecordingTransport()
        headers = {"X-Forwarded-For": "203.0.113.77"}
        with request_context(flask_app, headers), httpx.Client(transport=transport) as http:
            result = resolve_public_ip(request, http)

        assert result["ip"] == "203.0.113.77"
        assert result["source"] == "fallback-headers"
        assert result["warning"] == "External IP services unavailable"
