from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin.utils import list_response, page_bounds, parse_filter
from app.api.deps import get_request_ip, require_operator
from app.core.database import get_session
from app.schemas.admin.product_change import ProductChangeOut, ReconcileFinding
from app.services.change_review import (
    apply_change,
    approve_change,
    reconcile_changes,
    reject_change,
)
from app.services.change_store import get_change, list_changes

router = APIRouter(prefix="/admin/changes", tags=["admin"])

FILTER_KEYS = ("status", "severity", "change_type", "source_product_id")


def _filter_kwargs(filters: dict[str, Any]) -> dict[str, Any]:
    kwargs = {key: filters[key] for key in FILTER_KEYS if filters.get(key) is not None}
    if "local_product_id" in filters:
        try:
            kwargs["local_product_id"] = int(filters["local_product_id"])
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Invalid local_product_id") from exc
    return kwargs


@router.get("", response_model=dict)
async def list_product_changes(
    skip: int = 0,
    limit: int = 25,
    sort: str = "created_at",
    order: str = "desc",
    filter: str | None = None,
    status: str | None = None,
    severity: str | None = None,
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_operator),
) -> dict:
    skip, limit = page_bounds(skip, limit)
    filters = parse_filter(filter)
    if status:
        filters["status"] = status
    if severity:
        filters["severity"] = severity
    items, total = await list_changes(
        session,
        skip=skip,
        limit=limit,
        sort=sort,
        order=order,
        **_filter_kwargs(filters),
    )
    return list_response([ProductChangeOut.model_validate(item) for item in items], total)


@router.get("/reconcile", response_model=dict)
async def reconcile_report(
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_operator),
) -> dict:
    findings = await reconcile_changes(session, repair=False)
    return list_response([ReconcileFinding(**item) for item in findings], len(findings))


@router.post("/reconcile", response_model=dict)
async def reconcile_repair(
    session: AsyncSession = Depends(get_session),
    actor: str = Depends(require_operator),
) -> dict:
    findings = await reconcile_changes(session, repair=True, actor=actor)
    return list_response([ReconcileFinding(**item) for item in findings], len(findings))


@router.get("/{change_id}", response_model=ProductChangeOut)
async def get_product_change(
    change_id: int,
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_operator),
) -> ProductChangeOut:
    return ProductChangeOut.model_validate(await get_change(session, change_id))


@router.post("/{change_id}/approve", response_model=ProductChangeOut)
async def approve_product_change(
    change_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    actor: str = Depends(require_operator),
) -> ProductChangeOut:
    change = await approve_change(
        session,
        change_id,
        actor,
        ip=await get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ProductChangeOut.model_validate(change)


@router.post("/{change_id}/reject", response_model=ProductChangeOut)
async def reject_product_change(
    change_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    actor: str = Depends(require_operator),
) -> ProductChangeOut:
    change = await reject_change(
        session,
        change_id,
        actor,
        ip=await get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ProductChangeOut.model_validate(change)


@router.post("/{change_id}/apply", response_model=ProductChangeOut)
async def apply_product_change(
    change_id: int,
    request: Request,
    session: AsyncSession = Depends(get_session),
    actor: str = Depends(require_operator),
) -> ProductChangeOut:
    change = await apply_change(
        session,
        change_id,
        actor,
        ip=await get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ProductChangeOut.model_validate(change)
