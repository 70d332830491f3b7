from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import InvalidApiTokenError, get_catalog_source, get_session_factory
from app.core.config import settings
from app.schemas.admin.sync_run import ScheduledSyncRequest
from app.schemas.webhook import CatalogWebhookPayload
from app.services.app_log_store import log_event
from app.services.catalog_client import CatalogSource
from app.services.catalog_sync import SyncFatalError, run_scheduled_sync, run_webhook_sync
from app.services.sync_runs import SyncAlreadyRunningError
from app.utils.security import verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["service"])


def require_cron_auth(
    authorization: str | None = Header(default=None),
    api_key: str | None = Header(default=None),
) -> None:
    if api_key and api_key == settings.SERVICE_API_KEY:
        return
    token = (authorization or "").removeprefix("Bearer ").strip()
    if settings.CRON_SECRET and token == settings.CRON_SECRET:
        return
    raise InvalidApiTokenError(token or api_key or "")


@router.post("/api/cron/catalog-sync")
async def cron_catalog_sync(
    payload: ScheduledSyncRequest | None = None,
    source: CatalogSource = Depends(get_catalog_source),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    _: None = Depends(require_cron_auth),
) -> dict:
    force = payload.force if payload else False
    return await run_scheduled_sync(force, source=source, session_factory=session_factory)


async def _run_webhook_sync(
    source_product_id: str,
    source: CatalogSource,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    try:
        await run_webhook_sync(
            source_product_id, source=source, session_factory=session_factory
        )
    except SyncAlreadyRunningError:
        # the running sync or the next scheduled one picks the product up
        logger.info("catalog_webhook_sync_deferred", source_product_id=source_product_id)
        async with session_factory() as session:
            await log_event(
                session,
                level="info",
                event_type="catalog_webhook_deferred",
                data={"source_product_id": source_product_id},
            )
    except SyncFatalError as exc:
        logger.error(
            "catalog_webhook_sync_failed",
            source_product_id=source_product_id,
            run_id=exc.run_id,
            error=str(exc),
        )


@router.post("/webhooks/catalog")
async def catalog_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    source: CatalogSource = Depends(get_catalog_source),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    body = await request.body()

    if settings.WEBHOOK_SECRET:
        signature = request.headers.get("x-catalog-signature")
        if not verify_signature(settings.WEBHOOK_SECRET, body, signature):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = CatalogWebhookPayload.model_validate(json.loads(body.decode("utf-8")))
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc

    source_product_id = payload.source_product_id()
    if source_product_id is None:
        logger.info("catalog_webhook_ignored", event_type=payload.type)
        return {"status": "ignored", "type": payload.type}

    background_tasks.add_task(_run_webhook_sync, source_product_id, source, session_factory)
    return {"status": "accepted", "source_product_id": source_product_id}
