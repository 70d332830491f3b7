from __future__ import annotations

import re
import unicodedata

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.product import Product, ProductVariant
from app.services.catalog_client import SourceProduct

logger = structlog.get_logger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def _slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode()
    return _SLUG_STRIP.sub("-", normalized.lower()).strip("-")


async def find_local_product(
    session: AsyncSession, source_product_id: str
) -> Product | None:
    result = await session.execute(
        select(Product)
        .where(Product.source_product_id == source_product_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def intake_new_product(session: AsyncSession, source: SourceProduct) -> Product:
    """Create an unmatched source product locally, inactive until reviewed.

    Variants are created active so that the follow-up detection only raises
    the product-level ``is_active`` difference.
    """
    base_slug = _slugify(source.name or "") or "product"
    product = Product(
        source_product_id=source.source_id,
        name=source.name,
        slug=f"{base_slug}-{source.source_id}",
        description=source.description,
        price=source.effective_price,
        inventory_count=len(source.variants or []),
        is_active=False,
        image_urls=list(source.image_urls),
        variants=[
            ProductVariant(
                source_variant_id=variant.source_id,
                name=variant.name,
                sku=variant.sku,
                price=variant.price,
                options=dict(variant.options),
                is_active=True,
            )
            for variant in source.variants or []
        ],
    )
    session.add(product)
    try:
        await session.commit()
    except IntegrityError:
        # a concurrent webhook run created it first
        await session.rollback()
        existing = await find_local_product(session, source.source_id)
        if existing is None:
            raise
        return existing

    product = await find_local_product(session, source.source_id)
    logger.info(
        "product_intake_created",
        source_product_id=source.source_id,
        product_id=product.id if product else None,
        variants=len(source.variants or []),
    )
    return product
