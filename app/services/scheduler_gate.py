from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.services.sync_runs import last_completed_at
from app.utils.time import as_utc, utc_now

logger = structlog.get_logger(__name__)


def decide(
    now: datetime,
    last_completed: datetime | None,
    min_interval: timedelta,
    force: bool = False,
) -> bool:
    if force or last_completed is None:
        return True
    return as_utc(now) - as_utc(last_completed) >= min_interval


async def should_run(
    session: AsyncSession,
    now: datetime | None = None,
    min_interval: timedelta | None = None,
    force: bool = False,
) -> bool:
    """Whether a scheduled run may start; reads state, never starts one."""
    now = now or utc_now()
    if min_interval is None:
        min_interval = timedelta(hours=settings.SYNC_MIN_INTERVAL_HOURS)
    last = await last_completed_at(session)
    allowed = decide(now, last, min_interval, force)
    logger.info(
        "catalog_sync_gate",
        allowed=allowed,
        forced=force,
        last_completed_at=as_utc(last).isoformat() if last else None,
    )
    return allowed
