import asyncio
import copy
import os
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CATALOG_API_BASE_URL", "https://catalog.example.com/v1")
os.environ.setdefault("SERVICE_API_KEY", "test")
os.environ.setdefault("SYNC_WORKER_CONCURRENCY", "1")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.models import Base, Product, ProductVariant
from app.services.catalog_client import (
    CatalogItemError,
    CatalogUnavailableError,
    SourceCategory,
    SourceProduct,
    SourceVariant,
)


class FakeCatalogSource:
    def __init__(
        self,
        products: list[SourceProduct] | None = None,
        categories: list[SourceCategory] | None = None,
    ) -> None:
        self.products = {product.source_id: product for product in products or []}
        self.categories = list(categories or [])
        self.unavailable = False
        self.broken: set[str] = set()
        self.list_delay = 0.0
        self.detail_calls: list[str] = []

    async def fetch_categories(self) -> list[SourceCategory]:
        if self.unavailable:
            raise CatalogUnavailableError("catalog unreachable")
        return list(self.categories)

    async def fetch_products(self) -> list[SourceProduct]:
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.unavailable:
            raise CatalogUnavailableError("catalog unreachable")
        return [copy.deepcopy(product) for product in self.products.values()]

    async def fetch_product(self, source_id: str) -> SourceProduct:
        self.detail_calls.append(source_id)
        if self.unavailable:
            raise CatalogUnavailableError("catalog unreachable")
        if source_id in self.broken or source_id not in self.products:
            raise CatalogItemError(f"product {source_id} not available", source_id)
        return copy.deepcopy(self.products[source_id])


def build_source_product(
    source_id: str = "1001",
    name: str | None = "Classic Tee",
    price: str | None = "19.99",
    description: str | None = None,
    is_active: bool = True,
    image_urls: list[str] | None = None,
    variants: list[SourceVariant] | None = None,
) -> SourceProduct:
    if variants is None:
        variants = [
            SourceVariant(
                source_id=f"{source_id}-s",
                name=f"{name} / S" if name else None,
                sku=f"SKU-{source_id}-S",
                price=Decimal("19.99"),
                options={"size": "S"},
            )
        ]
    return SourceProduct(
        source_id=source_id,
        name=name,
        price=Decimal(price) if price is not None else None,
        description=description,
        is_active=is_active,
        image_urls=list(image_urls or ["https://cdn.example.com/tee.png"]),
        variants=variants,
    )


async def _insert_local_product(session_factory, source: SourceProduct, overrides: dict) -> int:
    async with session_factory() as session:
        product = Product(
            source_product_id=source.source_id,
            name=source.name,
            slug=f"product-{source.source_id}",
            description=source.description,
            price=source.effective_price,
            inventory_count=len(source.variants or []),
            is_active=source.is_active,
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
        for key, value in overrides.items():
            setattr(product, key, value)
        session.add(product)
        await session.commit()
        return product.id


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def make_product():
    return build_source_product


@pytest.fixture
def add_local_product(session_factory):
    """Mirror a source product locally; keyword overrides make it differ."""

    def _add(source: SourceProduct, **overrides) -> int:
        return asyncio.run(_insert_local_product(session_factory, source, overrides))

    return _add


@pytest.fixture
def fake_source():
    return FakeCatalogSource
