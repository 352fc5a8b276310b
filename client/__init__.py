"""
Analytics client for tools reporting their usage.
"""

from .analytics_client import (
    IP_ERROR,
    IP_UNDETECTED,
    AnalyticsClient,
    ClientSettings,
    ClientState,
)
from .session_store import SessionStore
from .tool_analytics import ToolAnalytics

__all__ = [
    "AnalyticsClient",
    "ClientSettings",
    "ClientState",
    "SessionStore",
    "ToolAnalytics",
    "IP_UNDETECTED",
    "IP_ERROR",
]
