from __future__ import annotations

import asyncio
from typing import Any, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.logging import bind_sync_context, clear_sync_context
from app.models.sync_run import SyncRun, SyncTrigger
from app.services.app_log_store import log_event
from app.services.catalog_client import (
    CatalogClient,
    CatalogSource,
    CatalogUnavailableError,
    SourceProduct,
)
from app.services.category_mapping import sync_categories
from app.services.change_detector import NewProductSignal, detect_product_changes
from app.services.change_review import auto_apply_changes
from app.services.product_intake import find_local_product, intake_new_product
from app.services.scheduler_gate import should_run
from app.services.sync_runs import FAILED, RunHandle, finalize_run, start_run

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


class SyncFatalError(Exception):
    """The run was aborted because the catalog as a whole is unusable."""

    def __init__(self, message: str, run_id: int | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class CatalogSyncCoordinator:
    def __init__(
        self,
        source: CatalogSource,
        session_factory: SessionFactory | None = None,
        *,
        concurrency: int | None = None,
        max_duration_sec: float | None = None,
        actor: str | None = None,
        auto_apply_severities: set[str] | None = None,
    ) -> None:
        self.source = source
        self.session_factory = session_factory or AsyncSessionLocal
        self.concurrency = max(1, concurrency or settings.SYNC_WORKER_CONCURRENCY)
        self.max_duration_sec = max_duration_sec or settings.SYNC_MAX_DURATION_SEC
        self.actor = actor or settings.SYNC_SYSTEM_ACTOR
        if auto_apply_severities is None:
            auto_apply_severities = settings.auto_apply_severities()
        self.auto_apply_severities = auto_apply_severities

    async def start(
        self,
        trigger: SyncTrigger | str,
        scope_source_product_id: str | None = None,
        requested_by: str | None = None,
    ) -> RunHandle:
        async with self.session_factory() as session:
            return await start_run(
                session,
                trigger,
                scope_source_product_id=scope_source_product_id,
                requested_by=requested_by,
            )

    async def execute(self, handle: RunHandle) -> None:
        if handle.scope_source_product_id:
            products = [
                SourceProduct(source_id=handle.scope_source_product_id, name=None, variants=None)
            ]
        else:
            categories = await self.source.fetch_categories()
            async with self.session_factory() as session:
                result = await sync_categories(session, categories)
            handle.categories = result.as_dict()
            products = await self.source.fetch_products()

        logger.info("catalog_sync_products_listed", run_id=handle.run_id, count=len(products))
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [
            asyncio.create_task(self._process_item(handle, semaphore, product))
            for product in products
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _process_item(
        self,
        handle: RunHandle,
        semaphore: asyncio.Semaphore,
        summary: SourceProduct,
    ) -> None:
        async with semaphore:
            source_id = summary.source_id
            if summary.parse_error is not None:
                logger.warning(
                    "catalog_sync_item_failed",
                    run_id=handle.run_id,
                    source_product_id=source_id or None,
                    stage="parse",
                    error=summary.parse_error,
                )
                handle.record_failure(source_id or None, "parse", summary.parse_error)
                return
            stage = "fetch"
            try:
                product = summary
                if product.variants is None:
                    product = await self.source.fetch_product(source_id)
                stage = "detect"
                async with self.session_factory() as session:
                    local = await find_local_product(session, source_id)
                    outcome = await detect_product_changes(
                        session, product, local, handle.run_id, self.actor
                    )
                    if isinstance(outcome, NewProductSignal):
                        stage = "intake"
                        local = await intake_new_product(session, outcome.source_product)
                        handle.bump("new_products")
                        stage = "detect"
                        outcome = await detect_product_changes(
                            session, product, local, handle.run_id, self.actor
                        )
                    handle.bump("changes_recorded", len(outcome.recorded))
                    handle.bump("moot_resolved", len(outcome.moot))
                    handle.bump("landed_resolved", len(outcome.landed))
                    if self.auto_apply_severities and outcome.recorded:
                        stage = "auto_apply"
                        pairs = [(change.id, change.severity) for change in outcome.recorded]
                        applied = await auto_apply_changes(
                            session, pairs, self.auto_apply_severities, self.actor
                        )
                        handle.bump("auto_applied", applied)
            except CatalogUnavailableError:
                raise
            except Exception as exc:
                logger.warning(
                    "catalog_sync_item_failed",
                    run_id=handle.run_id,
                    source_product_id=source_id,
                    stage=stage,
                    error=str(exc),
                )
                handle.record_failure(source_id, stage, str(exc) or exc.__class__.__name__)
                return
            handle.record_success()

    async def finalize(
        self,
        handle: RunHandle,
        *,
        status: str | None = None,
        error_message: str | None = None,
    ) -> SyncRun:
        async with self.session_factory() as session:
            run = await finalize_run(
                session, handle, status=status, error_message=error_message
            )
        logger.info(
            "catalog_sync_finished",
            run_id=handle.run_id,
            status=run.status,
            items_succeeded=run.items_succeeded,
            items_failed=run.items_failed,
        )
        return run

    async def run(
        self,
        trigger: SyncTrigger | str,
        scope_source_product_id: str | None = None,
        requested_by: str | None = None,
    ) -> SyncRun:
        handle = await self.start(trigger, scope_source_product_id, requested_by)
        bind_sync_context(handle.run_id, handle.trigger)
        try:
            return await self._run_claimed(handle)
        finally:
            clear_sync_context()

    async def _run_claimed(self, handle: RunHandle) -> SyncRun:
        try:
            await asyncio.wait_for(self.execute(handle), timeout=self.max_duration_sec)
        except asyncio.TimeoutError:
            message = f"run exceeded the {self.max_duration_sec:g}s time budget"
            logger.error("catalog_sync_timeout", run_id=handle.run_id)
            return await self.finalize(handle, status=FAILED, error_message=message)
        except CatalogUnavailableError as exc:
            logger.error("catalog_sync_unavailable", run_id=handle.run_id, error=str(exc))
            await self.finalize(
                handle, status=FAILED, error_message=f"catalog unavailable: {exc}"
            )
            raise SyncFatalError(str(exc), handle.run_id) from exc
        except Exception as exc:
            logger.exception("catalog_sync_failed", run_id=handle.run_id, error=str(exc))
            await self.finalize(
                handle, status=FAILED, error_message=str(exc) or exc.__class__.__name__
            )
            raise
        return await self.finalize(handle)


def summarize_run(run: SyncRun) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "trigger": run.trigger,
        "status": run.status,
        "scope_source_product_id": run.scope_source_product_id,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "items_succeeded": run.items_succeeded,
        "items_failed": run.items_failed,
        "detail": run.detail,
        "error_message": run.error_message,
    }


async def run_catalog_sync(
    trigger: SyncTrigger | str,
    *,
    scope_source_product_id: str | None = None,
    requested_by: str | None = None,
    source: CatalogSource | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    coordinator = CatalogSyncCoordinator(source or CatalogClient(), session_factory)
    run = await coordinator.run(trigger, scope_source_product_id, requested_by)
    return summarize_run(run)


async def run_manual_sync(
    actor: str | None = None,
    *,
    source: CatalogSource | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    return await run_catalog_sync(
        SyncTrigger.manual,
        requested_by=actor,
        source=source,
        session_factory=session_factory,
    )


async def run_scheduled_sync(
    force: bool = False,
    *,
    source: CatalogSource | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        if not await should_run(session, force=force):
            await log_event(
                session,
                level="info",
                event_type="catalog_sync_skipped",
                message="last completed run is more recent than the minimum interval",
                data={"force": force, "min_interval_hours": settings.SYNC_MIN_INTERVAL_HOURS},
            )
            logger.info("catalog_sync_skipped", force=force)
            return {"skipped": True, "reason": "min_interval"}
    return await run_catalog_sync(
        SyncTrigger.scheduled, source=source, session_factory=factory
    )


async def run_webhook_sync(
    source_product_id: str,
    *,
    source: CatalogSource | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    return await run_catalog_sync(
        SyncTrigger.webhook,
        scope_source_product_id=source_product_id,
        source=source,
        session_factory=session_factory,
    )
