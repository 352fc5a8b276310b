"""
HTTP API for the analytics service.
"""

from .app import create_api_blueprint
from .auth import require_admin_key

__all__ = ["create_api_blueprint", "require_admin_key"]
