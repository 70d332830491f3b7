from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.category import Category, CategoryMapping
from app.services.catalog_client import SourceCategory

logger = structlog.get_logger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_RENAMED = "renamed"
OUTCOME_UNCHANGED = "unchanged"


class CategoryMappingNotFoundError(Exception):
    pass


class LocalCategoryNotFoundError(Exception):
    pass


@dataclass
class CategorySyncResult:
    created: int = 0
    renamed: int = 0
    unchanged: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "renamed": self.renamed,
            "unchanged": self.unchanged,
        }


async def _get_by_source_id(
    session: AsyncSession, source_category_id: str
) -> CategoryMapping | None:
    result = await session.execute(
        select(CategoryMapping).where(
            CategoryMapping.source_category_id == source_category_id
        )
    )
    return result.scalars().first()


async def resolve_category(
    session: AsyncSession, category: SourceCategory
) -> tuple[CategoryMapping, str]:
    """Upsert the mapping row for a source category.

    New categories are stored unmapped. An existing row only has its source
    name refreshed; ``local_category_id`` is operator-owned and never touched.
    """
    mapping = await _get_by_source_id(session, category.source_id)
    if mapping is not None:
        if mapping.source_category_name == category.name:
            return mapping, OUTCOME_UNCHANGED
        mapping.source_category_name = category.name
        await session.commit()
        return mapping, OUTCOME_RENAMED

    mapping = CategoryMapping(
        source_category_id=category.source_id,
        source_category_name=category.name,
        local_category_id=None,
        is_active=True,
    )
    session.add(mapping)
    try:
        await session.commit()
    except IntegrityError:
        # another run inserted the same source id first
        await session.rollback()
        existing = await _get_by_source_id(session, category.source_id)
        if existing is None:
            raise
        return await resolve_category(session, category)
    return mapping, OUTCOME_CREATED


async def sync_categories(
    session: AsyncSession, categories: Iterable[SourceCategory]
) -> CategorySyncResult:
    result = CategorySyncResult()
    for category in categories:
        _, outcome = await resolve_category(session, category)
        if outcome == OUTCOME_CREATED:
            result.created += 1
        elif outcome == OUTCOME_RENAMED:
            result.renamed += 1
        else:
            result.unchanged += 1
    logger.info("category_sync_complete", **result.as_dict())
    return result


async def update_category_mapping(
    session: AsyncSession,
    mapping_id: int,
    changes: dict[str, Any],
) -> CategoryMapping:
    """Apply an operator edit: ``local_category_id`` and/or ``is_active``."""
    mapping = await session.get(CategoryMapping, mapping_id)
    if mapping is None:
        raise CategoryMappingNotFoundError(f"category mapping {mapping_id} not found")
    if "local_category_id" in changes:
        local_category_id = changes["local_category_id"]
        if local_category_id is not None:
            if await session.get(Category, local_category_id) is None:
                raise LocalCategoryNotFoundError(
                    f"category {local_category_id} not found"
                )
        mapping.local_category_id = local_category_id
    if changes.get("is_active") is not None:
        mapping.is_active = bool(changes["is_active"])
    await session.commit()
    return mapping
