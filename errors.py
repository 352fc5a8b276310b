"""
Error types for the analytics service.

Each error carries the HTTP status code it maps to. Validation and auth
errors are surfaced with their message; infrastructure errors carry a
generic message so internals never reach the client.
"""


class AnalyticsError(Exception):
    """Base class for errors rendered as JSON responses."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(AnalyticsError):
    """Client sent a request with missing or invalid fields."""

    status_code = 400


class Unauthorized(AnalyticsError):
    """Admin-gated endpoint called without a valid admin key."""

    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class RateLimitExceeded(AnalyticsError):
    """Client exceeded its request window or is in cooldown."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message)


class ServerError(AnalyticsError):
    """Unexpected failure while handling a request."""

    status_code = 500


class ConfigError(Exception):
    """Invalid configuration detected at startup."""
