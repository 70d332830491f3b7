from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.admin.utils import list_response, page_bounds
from app.api.deps import get_catalog_source, get_session_factory, require_operator
from app.core.database import get_session
from app.schemas.admin.sync_run import SyncRunOut
from app.services.catalog_client import CatalogSource
from app.services.catalog_sync import run_manual_sync
from app.services.sync_runs import get_run, list_runs

router = APIRouter(prefix="/admin/sync", tags=["admin"])


@router.post("/run", response_model=dict)
async def trigger_manual_sync(
    actor: str = Depends(require_operator),
    source: CatalogSource = Depends(get_catalog_source),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    return await run_manual_sync(actor, source=source, session_factory=session_factory)


@router.get("/runs", response_model=dict)
async def list_sync_runs(
    skip: int = 0,
    limit: int = 25,
    status: str | None = None,
    trigger: str | None = None,
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_operator),
) -> dict:
    skip, limit = page_bounds(skip, limit)
    runs, total = await list_runs(
        session, status=status, trigger=trigger, skip=skip, limit=limit
    )
    items = [SyncRunOut.model_validate(run) for run in runs]
    return list_response(items, total)


@router.get("/runs/{run_id}", response_model=SyncRunOut)
async def get_sync_run(
    run_id: int,
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_operator),
) -> SyncRunOut:
    return SyncRunOut.model_validate(await get_run(session, run_id))
