from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.app_log import AppLog

LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


async def log_event(
    session: AsyncSession,
    level: str,
    event_type: str,
    message: str | None = None,
    data: dict[str, Any] | None = None,
    commit: bool = True,
) -> AppLog:
    """Persist an operational event next to the structured log line.

    With ``commit=False`` the row joins the caller's transaction, so it is
    only written if the surrounding state change is.
    """
    normalized = (level or "info").lower()
    entry = AppLog(
        level=normalized if normalized in LOG_LEVELS else "info",
        event_type=event_type,
        message=message[:2000] if message else None,
        data=data,
    )
    session.add(entry)
    if commit:
        await session.commit()
    return entry
