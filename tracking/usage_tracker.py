"""
Usage tracking service.

Records tool usage events and keeps the per-session and per-day rollups
up to date, and answers the aggregate queries behind the dashboards.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db import DailyStats, ToolUsage, UserSession, get_db_context
from errors import ValidationError

from .ip_resolver import normalize_ip

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Unknown"

REQUIRED_FIELDS = ("toolId", "toolName", "userSession")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (how timestamps are stored)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


class UsageTracker:
    """
    Usage tracking service.

    Each tracked event writes three records in one transaction: the event
    row, the session rollup and the daily aggregate.
    """

    def record_usage(
        self,
        tool_id: Optional[str],
        tool_name: Optional[str],
        session_id: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Record a tool usage event.

        Args:
            tool_id: Tool identifier
            tool_name: Human readable tool name
            session_id: Opaque client session identifier
            ip_address: Client IP (normalized before storage)
            user_agent: Client user agent
            now: Event time (defaults to the current UTC time)

        Returns:
            The normalized IP address stored with the event

        Raises:
            ValidationError: if tool_id, tool_name or session_id is missing
        """
        tool_id, tool_name, session_id = _required_fields(
            {"toolId": tool_id, "toolName": tool_name, "userSession": session_id}
        )

        clean_ip = normalize_ip(ip_address)
        safe_user_agent = user_agent or DEFAULT_USER_AGENT
        if now is None:
            now = utcnow()

        logger.info(
            f"Tracking: {tool_id} | IP: {clean_ip} (raw: {ip_address}) | "
            f"Session: {session_id[:8]}..."
        )

        with get_db_context() as db:
            db.add(
                ToolUsage(
                    tool_id=tool_id,
                    tool_name=tool_name,
                    user_session=session_id,
                    ip_address=clean_ip,
                    user_agent=safe_user_agent,
                    timestamp=now,
                )
            )
            db.flush()

            self._upsert_session(db, session_id, clean_ip, safe_user_agent, now)
            self._upsert_daily_stat(db, now.date())

        return clean_ip

    def _upsert_session(
        self,
        db: Session,
        session_id: str,
        ip_address: str,
        user_agent: str,
        now: datetime,
    ):
        """Insert the session row or bump its counter and latest details."""
        table = UserSession.__table__
        _upsert(
            db,
            UserSession,
            key="session_id",
            values={
                "session_id": session_id,
                "first_visit": now,
                "last_visit": now,
                "total_tool_uses": 1,
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
            update={
                "last_visit": now,
                "total_tool_uses": table.c.total_tool_uses + 1,
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
        )

    def _upsert_daily_stat(self, db: Session, stat_date: date):
        """
        Insert or update the aggregate row for a date.

        The distinct user and tool counts are subqueries over tool_usage
        evaluated by the write itself, so they cover the day's new event
        (flushed beforehand) and events committed concurrently.
        """
        start, end = _day_bounds(stat_date)
        in_day = (ToolUsage.timestamp >= start, ToolUsage.timestamp < end)
        total_users = (
            select(func.count(distinct(ToolUsage.user_session)))
            .where(*in_day)
            .scalar_subquery()
        )
        unique_tools = (
            select(func.count(distinct(ToolUsage.tool_id)))
            .where(*in_day)
            .scalar_subquery()
        )

        table = DailyStats.__table__
        _upsert(
            db,
            DailyStats,
            key="date",
            values={
                "date": stat_date,
                "total_tool_uses": 1,
                "total_users": total_users,
                "unique_tools_used": unique_tools,
            },
            update={
                "total_tool_uses": table.c.total_tool_uses + 1,
                "total_users": total_users,
                "unique_tools_used": unique_tools,
            },
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def popular_tools(self, limit: int = 10) -> list[dict]:
        """Tools ordered by event count, ties by first appearance."""
        with get_db_context() as db:
            usage_count = func.count(ToolUsage.id).label("usage_count")
            results = (
                db.query(ToolUsage.tool_id, ToolUsage.tool_name, usage_count)
                .group_by(ToolUsage.tool_id, ToolUsage.tool_name)
                .order_by(usage_count.desc(), func.min(ToolUsage.id))
                .limit(limit)
                .all()
            )

            return [
                {
                    "tool_id": r.tool_id,
                    "tool_name": r.tool_name,
                    "usage_count": r.usage_count,
                }
                for r in results
            ]

    def daily_stats(self, days: int = 30) -> list[dict]:
        """Most recent daily aggregates, newest first."""
        with get_db_context() as db:
            stats = (
                db.query(DailyStats)
                .order_by(DailyStats.date.desc())
                .limit(days)
                .all()
            )
            return [stat.to_dict() for stat in stats]

    def tool_usage_count(self, tool_id: str) -> int:
        """Total number of events recorded for one tool."""
        with get_db_context() as db:
            return (
                db.query(func.count(ToolUsage.id))
                .filter(ToolUsage.tool_id == tool_id)
                .scalar()
                or 0
            )

    def recent_usage(self, limit: int = 10) -> list[dict]:
        """Latest events including raw IPs (admin only)."""
        with get_db_context() as db:
            logs = (
                db.query(ToolUsage)
                .order_by(ToolUsage.timestamp.desc(), ToolUsage.id.desc())
                .limit(limit)
                .all()
            )
            return [log.to_dict() for log in logs]

    def get_session(self, session_id: str) -> Optional[dict]:
        with get_db_context() as db:
            session = (
                db.query(UserSession)
                .filter(UserSession.session_id == session_id)
                .first()
            )
            return session.to_dict() if session else None

    def dashboard_summary(self, now: Optional[datetime] = None) -> dict:
        """Totals plus the five most used tools over the last 24 hours."""
        if now is None:
            now = utcnow()
        since = now - timedelta(hours=24)

        with get_db_context() as db:
            total_usage = db.query(func.count(ToolUsage.id)).scalar() or 0
            total_sessions = db.query(func.count(UserSession.id)).scalar() or 0

            count = func.count(ToolUsage.id).label("count")
            recent = (
                db.query(ToolUsage.tool_name, count)
                .filter(ToolUsage.timestamp >= since)
                .group_by(ToolUsage.tool_name)
                .order_by(count.desc(), func.min(ToolUsage.id))
                .limit(5)
                .all()
            )

            return {
                "totalUsage": total_usage,
                "totalSessions": total_sessions,
                "recentActivity": [
                    {"tool_name": r.tool_name, "count": r.count} for r in recent
                ],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }


def _required_fields(values: dict[str, Any]) -> list[str]:
    """
    Check the required event fields and return them, in order, as strings.

    Non-zero numbers are converted to strings. Absent or blank values are
    reported as missing, values of any other type as invalid.

    Raises:
        ValidationError: if a field is missing or invalid
    """
    missing, invalid, cleaned = [], [], []
    for name in REQUIRED_FIELDS:
        value = values[name]
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            value = str(value)

        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
        elif not isinstance(value, str):
            invalid.append(name)
        else:
            cleaned.append(value)

    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(REQUIRED_FIELDS)}"
            f" (missing: {', '.join(missing)})"
        )
    if invalid:
        raise ValidationError(f"Invalid fields: {', '.join(invalid)} must be strings")
    return cleaned


def _mysql_upsert(model, key: str, values: dict[str, Any], update: dict[str, Any]):
    return mysql_insert(model).values(**values).on_duplicate_key_update(**update)


def _sqlite_upsert(model, key: str, values: dict[str, Any], update: dict[str, Any]):
    return (
        sqlite_insert(model)
        .values(**values)
        .on_conflict_do_update(index_elements=[key], set_=update)
    )


def _postgresql_upsert(model, key: str, values: dict[str, Any], update: dict[str, Any]):
    return (
        postgresql_insert(model)
        .values(**values)
        .on_conflict_do_update(index_elements=[key], set_=update)
    )


# Dialects with a single-statement upsert
NATIVE_UPSERTS = {
    "mysql": _mysql_upsert,
    "sqlite": _sqlite_upsert,
    "postgresql": _postgresql_upsert,
}


def _upsert(
    db: Session,
    model,
    key: str,
    values: dict[str, Any],
    update: dict[str, Any],
):
    """
    Insert a row or update the existing one with the same unique key.

    Uses the database's native upsert where available so concurrent first
    writes for one key cannot both insert.
    """
    build = NATIVE_UPSERTS.get(db.get_bind().dialect.name)
    if build is not None:
        db.execute(build(model, key, values, update))
        return

    # Other databases: find existing record, then update or create
    existing = db.query(model).filter(getattr(model, key) == values[key]).first()
    if existing:
        for column, value in update.items():
            setattr(existing, column, value)
    else:
        db.add(model(**values))
    db.flush()


# Global tracker instance
tracker = UsageTracker()
