"""
Admin key authentication for privileged API routes.

Admin routes expose raw IPs and header dumps, so the key is checked
before the view runs and any mismatch is rejected without detail.
"""

import hmac
import logging
from functools import wraps

from flask import current_app, request

from errors import Unauthorized

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "x-admin-key"
ADMIN_KEY_PARAM = "admin_key"


def get_supplied_admin_key() -> str | None:
    """Admin key sent with the current request (header wins over query)."""
    return request.headers.get(ADMIN_KEY_HEADER) or request.args.get(ADMIN_KEY_PARAM)


def is_admin_request() -> bool:
    """Check the current request carries the configured admin key."""
    expected = current_app.config.get("ADMIN_KEY")
    supplied = get_supplied_admin_key()
    if not expected or not supplied:
        return False
    return hmac.compare_digest(supplied.encode(), expected.encode())


def require_admin_key(f):
    """Decorator rejecting requests without a valid admin key (403)."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not is_admin_request():
            logger.warning(f"Rejected admin request to {request.path}")
            raise Unauthorized()
        return f(*args, **kwargs)

    return decorated
