"""
SQLAlchemy models for the analytics service.

Three tables back the usage statistics:
- tool_usage: one immutable row per tracked tool action
- user_sessions: one row per client session id, upserted on every event
- daily_stats: one row per UTC calendar date, upserted on every event
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ToolUsage(Base):
    """
    Log of individual tool usage events.

    Rows are insert-only; nothing in the service updates or deletes them.
    """

    __tablename__ = "tool_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tool_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tool_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_session: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, index=True
    )

    # Client identification
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))  # IPv6 max length
    user_agent: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = ({"sqlite_autoincrement": True},)

    def to_dict(self) -> dict:
        """Convert to dictionary for admin API responses."""
        return {
            "tool_id": self.tool_id,
            "tool_name": self.tool_name,
            "user_session": self.user_session,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class UserSession(Base):
    """
    Rollup of activity per client session identifier.

    first_visit is written once on insert; last_visit, ip_address and
    user_agent are overwritten on every event.
    """

    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    first_visit: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_visit: Mapped[Optional[datetime]] = mapped_column(DateTime)
    total_tool_uses: Mapped[int] = mapped_column(Integer, default=0)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = ({"sqlite_autoincrement": True},)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "first_visit": self.first_visit.isoformat() if self.first_visit else None,
            "last_visit": self.last_visit.isoformat() if self.last_visit else None,
            "total_tool_uses": self.total_tool_uses,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


class DailyStats(Base):
    """
    Pre-aggregated daily statistics for fast dashboard queries.

    One row per UTC date. total_users counts distinct sessions and
    unique_tools_used counts distinct tool ids seen that day.
    """

    __tablename__ = "daily_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[date] = mapped_column(Date, nullable=False, unique=True, index=True)
    total_users: Mapped[int] = mapped_column(Integer, default=0)
    total_tool_uses: Mapped[int] = mapped_column(Integer, default=0)
    unique_tools_used: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = ({"sqlite_autoincrement": True},)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "date": self.date.strftime("%Y-%m-%d") if self.date else None,
            "total_users": self.total_users,
            "total_tool_uses": self.total_tool_uses,
            "unique_tools_used": self.unique_tools_used,
        }
