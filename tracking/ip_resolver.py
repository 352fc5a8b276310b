"""
IP address resolution.

Provides utilities for extracting client IP addresses from requests,
normalizing them, and discovering a public IP through external echo
services when the request itself does not reveal one.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

import httpx
from flask import Request

logger = logging.getLogger(__name__)

# Sentinel values standing in for a real IP
UNKNOWN = "unknown"
LOCALHOST = "localhost"

# Checked in order; the first usable value wins
IP_HEADERS = (
    "cf-connecting-ip",  # Cloudflare
    "x-forwarded-for",  # Standard proxy header (leftmost is original client)
    "x-real-ip",  # Nginx
    "x-client-ip",  # Apache
    "x-forwarded",  # Other proxies
    "forwarded-for",  # Legacy
    "forwarded",  # RFC 7239
)

_IPV4_MAPPED_PREFIX = "::ffff:"
_LOOPBACK = frozenset({"::1", "127.0.0.1"})
_IPV4_RE = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
_IPV6_RE = re.compile(r"^([0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$")

PUBLIC_IP_USER_AGENT = "Mozilla/5.0 (Analytics Service)"


def extract_raw_ip(request: Request) -> str:
    """
    Get the client IP address as reported, before normalization.

    Checks the proxy headers in IP_HEADERS order, taking the first entry
    of comma-separated values, then falls back to the socket address.

    Args:
        request: Flask request object

    Returns:
        Raw IP string, or "unknown"
    """
    for header in IP_HEADERS:
        value = request.headers.get(header)
        if not value:
            continue
        ip = value.split(",")[0].strip()
        if ip and ip != UNKNOWN:
            return ip

    return request.remote_addr or UNKNOWN


def normalize_ip(raw_ip: Optional[str]) -> str:
    """
    Clean up an IP address for storage.

    - Empty values and "unknown" become "unknown"
    - IPv4-mapped IPv6 addresses lose their ::ffff: prefix
    - Loopback addresses become "localhost"
    - Anything else is returned as-is, even if it does not look like an IP

    Applying it twice gives the same result as applying it once.
    """
    if not raw_ip:
        return UNKNOWN

    ip = str(raw_ip).strip()
    while ip.lower().startswith(_IPV4_MAPPED_PREFIX):
        ip = ip[len(_IPV4_MAPPED_PREFIX):].strip()

    if not ip or ip == UNKNOWN:
        return UNKNOWN

    if ip in _LOOPBACK:
        return LOCALHOST

    if not (_IPV4_RE.match(ip) or _IPV6_RE.match(ip)):
        # Spoofed or unusual header formats are expected; keep the value
        logger.debug(f"Non-standard IP format kept as-is: {ip!r}")

    return ip


def resolve_server_ip(request: Request) -> str:
    """Get the normalized client IP for an inbound request."""
    return normalize_ip(extract_raw_ip(request))


def is_detected_ip(ip: Optional[str]) -> bool:
    """Check if a value is a real IP rather than a sentinel."""
    return bool(ip) and ip not in (UNKNOWN, LOCALHOST)


# ============================================================================
# Public IP services
# ============================================================================


def _default_extract(data: Any) -> Optional[str]:
    """Pull the IP out of the common echo-service response shapes."""
    if not isinstance(data, dict):
        return None
    for key in ("ip", "query", "IPv4"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class IpService:
    """An external IP echo service and how to read its response."""

    url: str
    extract: Callable[[Any], Optional[str]] = _default_extract


@dataclass(frozen=True)
class PublicIpResult:
    """A public IP and the service that reported it."""

    ip: str
    source: str


SERVER_IP_SERVICES: tuple[IpService, ...] = (
    IpService("https://api.ipify.org?format=json"),
    IpService("https://ipapi.co/json/"),
    IpService("https://api64.ipify.org?format=json"),
    IpService("https://api.my-ip.io/ip.json"),
)

CLIENT_IP_SERVICES: tuple[IpService, ...] = SERVER_IP_SERVICES + (
    IpService("https://jsonip.com"),
)


def fetch_public_ip(
    http_client: httpx.Client,
    services: Sequence[IpService] = SERVER_IP_SERVICES,
    timeout: float = 5.0,
    headers: Optional[dict[str, str]] = None,
    log_failures: bool = True,
) -> Optional[PublicIpResult]:
    """
    Ask each service in turn for our public IP.

    A failing service (timeout, network error, error status, malformed
    JSON, no usable field) never stops the chain; the next one is tried.

    Args:
        http_client: HTTP client used for the lookups
        services: Services to try, in order
        timeout: Per-service timeout in seconds
        headers: Extra request headers
        log_failures: Log failed services at WARNING (DEBUG otherwise)

    Returns:
        The first usable result, or None if every service failed
    """
    for service in services:
        try:
            response = http_client.get(service.url, timeout=timeout, headers=headers)
            if not response.is_success:
                logger.debug(f"Public IP service {service.url} returned {response.status_code}")
                continue

            ip = service.extract(response.json())
            if ip and ip != UNKNOWN:
                return PublicIpResult(ip=ip, source=service.url)

        except (httpx.HTTPError, ValueError) as e:
            level = logging.WARNING if log_failures else logging.DEBUG
            logger.log(level, f"Public IP service {service.url} failed: {e}")
            continue

    return None


def resolve_public_ip(
    request: Request,
    http_client: httpx.Client,
    timeout: float = 5.0,
    services: Sequence[IpService] = SERVER_IP_SERVICES,
) -> dict:
    """
    Find the public IP for the public-ip endpoint.

    Tries the external services first; when all of them fail, falls back
    to the request headers and reports source "fallback-headers".
    """
    timestamp = datetime.now(timezone.utc).isoformat()

    result = fetch_public_ip(
        http_client,
        services,
        timeout=timeout,
        headers={"User-Agent": PUBLIC_IP_USER_AGENT},
    )
    if result:
        logger.info(f"Public IP detected via {result.source}: {result.ip}")
        return {"ip": result.ip, "source": result.source, "timestamp": timestamp}

    return {
        "ip": resolve_server_ip(request),
        "source": "fallback-headers",
        "warning": "External IP services unavailable",
        "timestamp": timestamp,
    }
