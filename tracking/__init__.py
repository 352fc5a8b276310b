"""
Usage tracking module for the analytics service.

Provides rate limiting, IP resolution, and usage statistics.
"""

from .ip_resolver import (
    normalize_ip,
    resolve_public_ip,
    resolve_server_ip,
)
from .rate_limiter import RateLimiter
from .usage_tracker import tracker

__all__ = [
    "tracker",
    "RateLimiter",
    "normalize_ip",
    "resolve_server_ip",
    "resolve_public_ip",
]
