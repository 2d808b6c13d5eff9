from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlmodel import Session, select

from ..database import init_db, session_scope
from ..models import ApiUsageStat


_usage_initialized = False


def _ensure_usage_table() -> None:
    global _usage_initialized
    if not _usage_initialized:
        init_db()
        _usage_initialized = True


def record_api_usage(api_type: str, *, increment: int = 1) -> None:
    """Increment the request counter for the given API type."""

    if increment <= 0:
        return

    _ensure_usage_table()

    with session_scope() as session:
        increment_usage(session, api_type, increment=increment)


def increment_usage(session: Session, api_type: str, *, increment: int = 1) -> ApiUsageStat:
    statement = select(ApiUsageStat).where(ApiUsageStat.api_type == api_type)
    usage = session.exec(statement).one_or_none()
    now = datetime.now(timezone.utc)
    if usage is None:
        usage = ApiUsageStat(api_type=api_type, request_count=increment, last_used_at=now)
        session.add(usage)
    else:
        usage.request_count += increment
        usage.last_used_at = now
    session.commit()
    return usage


def usage_summary(session: Session) -> List[Dict[str, Any]]:
    rows = session.exec(select(ApiUsageStat).order_by(ApiUsageStat.api_type)).all()
    return [
        {
            "api_type": row.api_type,
            "request_count": row.request_count,
            "last_used_at": row.last_used_at.isoformat() if row.last_used_at else None,
        }
        for row in rows
    ]
