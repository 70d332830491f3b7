from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin.utils import list_response, page_bounds, parse_filter
from app.api.deps import get_catalog_source, get_request_ip, require_operator
from app.core.database import get_session
from app.models.category import CategoryMapping
from app.schemas.admin.category_mapping import CategoryMappingOut, CategoryMappingUpdate
from app.services.audit import record_audit
from app.services.catalog_client import CatalogSource
from app.services.category_mapping import sync_categories, update_category_mapping

router = APIRouter(prefix="/admin/category-mappings", tags=["admin"])


@router.get("", response_model=dict)
async def list_category_mappings(
    skip: int = 0,
    limit: int = 50,
    sort: str = "source_category_name",
    order: str = "asc",
    filter: str | None = None,
    session: AsyncSession = Depends(get_session),
    _: str = Depends(require_operator),
) -> dict:
    skip, limit = page_bounds(skip, limit)
    filters = parse_filter(filter)
    query = select(CategoryMapping)
    if "mapped" in filters:
        if filters["mapped"] in (True, "true", "1"):
            query = query.where(CategoryMapping.local_category_id.isnot(None))
        elif filters["mapped"] in (False, "false", "0"):
            query = query.where(CategoryMapping.local_category_id.is_(None))
    if "is_active" in filters and isinstance(filters["is_active"], bool):
        query = query.where(CategoryMapping.is_active.is_(filters["is_active"]))
    if "q" in filters:
        query = query.where(CategoryMapping.source_category_name.ilike(f"%{filters['q']}%"))

    sort_col = getattr(CategoryMapping, sort, CategoryMapping.source_category_name)
    if order.lower() == "desc":
        query = query.order_by(sort_col.desc())
    else:
        query = query.order_by(sort_col.asc())

    total = await session.scalar(select(func.count()).select_from(query.subquery()))
    result = await session.execute(query.offset(skip).limit(limit))
    items = [CategoryMappingOut.model_validate(item) for item in result.scalars().all()]
    return list_response(items, total or 0)


@router.patch("/{mapping_id}", response_model=CategoryMappingOut)
async def patch_category_mapping(
    mapping_id: int,
    payload: CategoryMappingUpdate,
    request: Request,
    session: AsyncSession = Depends(get_session),
    actor: str = Depends(require_operator),
) -> CategoryMappingOut:
    existing = await session.get(CategoryMapping, mapping_id)
    before = CategoryMappingOut.model_validate(existing) if existing else None
    mapping = await update_category_mapping(
        session, mapping_id, payload.model_dump(exclude_unset=True)
    )

    await record_audit(
        session,
        actor=actor,
        entity="category_mapping",
        entity_id=mapping.id,
        action="update",
        before=before,
        after=mapping,
        ip=await get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    return CategoryMappingOut.model_validate(mapping)


@router.post("/sync", response_model=dict)
async def sync_category_mappings(
    session: AsyncSession = Depends(get_session),
    source: CatalogSource = Depends(get_catalog_source),
    _: str = Depends(require_operator),
) -> dict:
    categories = await source.fetch_categories()
    result = await sync_categories(session, categories)
    return {"status": "ok", **result.as_dict()}
