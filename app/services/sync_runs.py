from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.sync_run import SyncRun, SyncRunStatus, SyncTrigger
from app.services.app_log_store import log_event
from app.utils.time import utc_now

logger = structlog.get_logger(__name__)

RUNNING = SyncRunStatus.running.value
SUCCESS = SyncRunStatus.success.value
PARTIAL = SyncRunStatus.partial.value
FAILED = SyncRunStatus.failed.value

STALE_RUN_MESSAGE = "abandoned: still running after the stale-run limit"


class SyncAlreadyRunningError(Exception):
    def __init__(self, message: str = "a catalog sync is already running") -> None:
        super().__init__(message)


class SyncRunNotFoundError(Exception):
    def __init__(self, run_id: int) -> None:
        super().__init__(f"sync run {run_id} not found")
        self.run_id = run_id


@dataclass
class RunHandle:
    """In-memory view of a claimed run; only the coordinator mutates it."""

    run_id: int
    trigger: str
    scope_source_product_id: str | None = None
    requested_by: str | None = None
    items_succeeded: int = 0
    items_failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    errors_dropped: int = 0
    counters: dict[str, int] = field(default_factory=dict)
    categories: dict[str, int] | None = None

    def bump(self, name: str, amount: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + amount

    def record_success(self) -> None:
        self.items_succeeded += 1

    def record_failure(self, source_product_id: str | None, stage: str, error: str) -> None:
        self.items_failed += 1
        if len(self.errors) >= settings.SYNC_DETAIL_MAX_ERRORS:
            self.errors_dropped += 1
            return
        self.errors.append(
            {
                "source_product_id": source_product_id,
                "stage": stage,
                "error": error[:500],
            }
        )

    def detail(self, message: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "products": {
                "succeeded": self.items_succeeded,
                "failed": self.items_failed,
                **self.counters,
            },
            "errors": list(self.errors),
        }
        if self.errors_dropped:
            payload["errors_dropped"] = self.errors_dropped
        if self.categories is not None:
            payload["categories"] = dict(self.categories)
        if self.scope_source_product_id:
            payload["scope_source_product_id"] = self.scope_source_product_id
        if self.requested_by:
            payload["requested_by"] = self.requested_by
        if message:
            payload["message"] = message
        return payload


def determine_status(items_succeeded: int, items_failed: int) -> str:
    if items_failed == 0 and items_succeeded > 0:
        return SUCCESS
    if items_succeeded == 0 and items_failed > 0:
        return FAILED
    return PARTIAL


async def close_stale_runs(session: AsyncSession, max_age_sec: float | None = None) -> int:
    """Close ``running`` rows left behind by a crashed process."""
    max_age = settings.SYNC_STALE_RUN_SEC if max_age_sec is None else max_age_sec
    now = utc_now()
    cutoff = now - timedelta(seconds=max_age)
    result = await session.execute(
        update(SyncRun)
        .where(SyncRun.status == RUNNING)
        .where(SyncRun.started_at < cutoff)
        .values(status=FAILED, completed_at=now, error_message=STALE_RUN_MESSAGE)
        .execution_options(synchronize_session=False)
    )
    closed = result.rowcount or 0
    if closed:
        await log_event(
            session,
            level="warning",
            event_type="catalog_sync_stale_closed",
            data={"closed": closed, "max_age_sec": max_age},
            commit=False,
        )
        logger.warning("catalog_sync_stale_closed", closed=closed)
    await session.commit()
    return closed


async def start_run(
    session: AsyncSession,
    trigger: SyncTrigger | str,
    scope_source_product_id: str | None = None,
    requested_by: str | None = None,
) -> RunHandle:
    """Claim the single ``running`` slot by inserting the run row.

    The partial unique index on ``sync_runs(status)`` makes the insert itself
    the claim; the loser gets ``SyncAlreadyRunningError``.
    """
    trigger_value = SyncTrigger(trigger).value
    await close_stale_runs(session)
    run = SyncRun(
        trigger=trigger_value,
        status=RUNNING,
        scope_source_product_id=scope_source_product_id,
        started_at=utc_now(),
        items_succeeded=0,
        items_failed=0,
    )
    session.add(run)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        logger.info("catalog_sync_claim_lost", trigger=trigger_value)
        raise SyncAlreadyRunningError() from exc

    await log_event(
        session,
        level="info",
        event_type="catalog_sync_started",
        data={
            "run_id": run.id,
            "trigger": trigger_value,
            "scope_source_product_id": scope_source_product_id,
            "requested_by": requested_by,
        },
    )
    logger.info(
        "catalog_sync_started",
        run_id=run.id,
        trigger=trigger_value,
        scope_source_product_id=scope_source_product_id,
    )
    return RunHandle(
        run_id=run.id,
        trigger=trigger_value,
        scope_source_product_id=scope_source_product_id,
        requested_by=requested_by,
    )


async def finalize_run(
    session: AsyncSession,
    handle: RunHandle,
    *,
    status: str | None = None,
    error_message: str | None = None,
) -> SyncRun:
    """Write final counts and the terminal status exactly once.

    The UPDATE only matches while the row is still ``running``; a run closed
    elsewhere (stale cleanup) is left as it is.
    """
    final_status = status or determine_status(handle.items_succeeded, handle.items_failed)
    result = await session.execute(
        update(SyncRun)
        .where(SyncRun.id == handle.run_id)
        .where(SyncRun.status == RUNNING)
        .values(
            status=final_status,
            completed_at=utc_now(),
            items_succeeded=handle.items_succeeded,
            items_failed=handle.items_failed,
            detail=handle.detail(error_message),
            error_message=error_message[:1000] if error_message else None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("catalog_sync_already_finalized", run_id=handle.run_id)
    failed = final_status == FAILED
    await log_event(
        session,
        level="error" if failed and error_message else "info",
        event_type="catalog_sync_failed" if failed and error_message else "catalog_sync_finished",
        message=error_message,
        data={
            "run_id": handle.run_id,
            "trigger": handle.trigger,
            "status": final_status,
            "items_succeeded": handle.items_succeeded,
            "items_failed": handle.items_failed,
        },
        commit=False,
    )
    await session.commit()
    return await get_run(session, handle.run_id)


async def get_run(session: AsyncSession, run_id: int) -> SyncRun:
    run = await session.get(SyncRun, run_id, populate_existing=True)
    if run is None:
        raise SyncRunNotFoundError(run_id)
    return run


async def list_runs(
    session: AsyncSession,
    *,
    status: str | None = None,
    trigger: str | None = None,
    skip: int = 0,
    limit: int | None = 50,
) -> tuple[list[SyncRun], int]:
    query = select(SyncRun)
    if status:
        query = query.where(SyncRun.status == status)
    if trigger:
        query = query.where(SyncRun.trigger == trigger)
    total = await session.scalar(select(func.count()).select_from(query.subquery()))
    query = query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).offset(skip)
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all()), total or 0


async def last_completed_at(session: AsyncSession) -> datetime | None:
    return await session.scalar(
        select(SyncRun.completed_at)
        .where(SyncRun.completed_at.is_not(None))
        .order_by(SyncRun.completed_at.desc())
        .limit(1)
    )
