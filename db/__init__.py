"""
Database layer for the analytics service.

Provides SQLAlchemy models and database connection management.
"""

from .connection import (
    check_db_connection,
    check_db_initialized,
    configure,
    get_db_context,
    get_engine,
    init_db,
    reset_connection,
)
from .models import Base, DailyStats, ToolUsage, UserSession

__all__ = [
    "configure",
    "get_db_context",
    "init_db",
    "check_db_initialized",
    "check_db_connection",
    "get_engine",
    "reset_connection",
    "Base",
    "ToolUsage",
    "UserSession",
    "DailyStats",
]
