import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from app.models import AppLog, CategoryMapping, Product, ProductChange, SyncRun
from app.services.catalog_client import CatalogClient, SourceCategory
from app.services.catalog_sync import (
    CatalogSyncCoordinator,
    SyncFatalError,
    run_manual_sync,
    run_scheduled_sync,
    run_webhook_sync,
)
from app.services.change_review import approve_change
from app.services.change_store import APPLIED, PENDING, REJECTED
from app.services.sync_runs import FAILED, PARTIAL, SUCCESS
from app.utils.time import utc_now


async def _changes(session_factory, **filters) -> list[ProductChange]:
    async with session_factory() as session:
        query = select(ProductChange).order_by(ProductChange.id)
        for key, value in filters.items():
            query = query.where(getattr(ProductChange, key) == value)
        result = await session.execute(query)
        return list(result.scalars().all())


async def _products(session_factory) -> dict[str, Product]:
    async with session_factory() as session:
        result = await session.execute(select(Product))
        return {product.source_product_id: product for product in result.scalars().all()}


async def _app_logs(session_factory, event_type: str) -> list[AppLog]:
    async with session_factory() as session:
        result = await session.execute(select(AppLog).where(AppLog.event_type == event_type))
        return list(result.scalars().all())


def test_one_bad_item_does_not_abort_the_run(
    session_factory, fake_source, make_product, add_local_product
) -> None:
    products = []
    for index in range(1, 11):
        source_id = str(1000 + index)
        if index == 5:
            products.append(make_product(source_id=source_id, name=None))
            continue
        product = make_product(source_id=source_id, price="24.99")
        add_local_product(product, price=Decimal("19.99"))
        products.append(product)
    source = fake_source(products, categories=[SourceCategory("10", "Apparel")])

    summary = asyncio.run(run_manual_sync("ops", source=source, session_factory=session_factory))

    assert summary["status"] == PARTIAL
    assert (summary["items_succeeded"], summary["items_failed"]) == (9, 1)
    assert summary["detail"]["errors"][0]["source_product_id"] == "1005"
    assert summary["detail"]["categories"] == {"created": 1, "renamed": 0, "unchanged": 0}
    changes = asyncio.run(_changes(session_factory, status=PENDING))
    assert len(changes) == 9
    assert {change.field_name for change in changes} == {"price"}
    assert all(change.originating_run_id == summary["run_id"] for change in changes)
    products_by_id = asyncio.run(_products(session_factory))
    assert products_by_id["1001"].price == Decimal("19.99")


def test_unreachable_catalog_fails_the_run(session_factory, fake_source) -> None:
    source = fake_source()
    source.unavailable = True

    with pytest.raises(SyncFatalError) as excinfo:
        asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    async def _run():
        async with session_factory() as session:
            return await session.get(SyncRun, excinfo.value.run_id)

    run = asyncio.run(_run())
    assert run.status == FAILED
    assert run.completed_at is not None
    assert "catalog unavailable" in run.error_message
    failures = asyncio.run(_app_logs(session_factory, "catalog_sync_failed"))
    assert [log.level for log in failures] == ["error"]


def test_time_budget_closes_the_run(session_factory, fake_source, make_product) -> None:
    source = fake_source([make_product()])
    source.list_delay = 1.0
    coordinator = CatalogSyncCoordinator(source, session_factory, max_duration_sec=0.05)

    run = asyncio.run(coordinator.run("manual"))

    assert run.status == FAILED
    assert "time budget" in run.error_message
    assert run.completed_at is not None


def test_webhook_run_only_touches_one_product(
    session_factory, fake_source, make_product, add_local_product
) -> None:
    first = make_product(source_id="1001")
    second = make_product(source_id="1002", price="5.00")
    add_local_product(first)
    add_local_product(second, price=Decimal("1.00"))
    source = fake_source([first, second])

    summary = asyncio.run(
        run_webhook_sync("1001", source=source, session_factory=session_factory)
    )

    assert source.detail_calls == ["1001"]
    assert summary["trigger"] == "webhook"
    assert summary["scope_source_product_id"] == "1001"
    assert summary["status"] == SUCCESS
    assert asyncio.run(_changes(session_factory)) == []


def test_unknown_product_is_taken_in_inactive(
    session_factory, fake_source, make_product
) -> None:
    source = fake_source([make_product(source_id="2001", name="Hoodie")])

    summary = asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    assert summary["status"] == SUCCESS
    assert summary["detail"]["products"]["new_products"] == 1
    product = asyncio.run(_products(session_factory))["2001"]
    assert product.is_active is False
    assert product.slug == "hoodie-2001"
    changes = asyncio.run(_changes(session_factory, status=PENDING))
    assert [(change.field_name, change.severity) for change in changes] == [
        ("is_active", "critical")
    ]

    async def _approve():
        async with session_factory() as session:
            await approve_change(session, changes[0].id, "ops", apply=True)

    asyncio.run(_approve())
    assert asyncio.run(_products(session_factory))["2001"].is_active is True


def test_repeated_runs_do_not_duplicate_changes(
    session_factory, fake_source, make_product, add_local_product
) -> None:
    product = make_product(price="24.99")
    add_local_product(product, price=Decimal("19.99"))
    source = fake_source([product])

    asyncio.run(run_manual_sync(source=source, session_factory=session_factory))
    second = asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    assert len(asyncio.run(_changes(session_factory))) == 1
    assert second["detail"]["products"].get("changes_recorded", 0) == 0


def test_source_reverting_closes_pending_change_as_moot(
    session_factory, fake_source, make_product, add_local_product
) -> None:
    add_local_product(make_product(price="19.99"))
    source = fake_source([make_product(price="24.99")])
    asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    source.products["1001"] = make_product(price="19.99")
    summary = asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    changes = asyncio.run(_changes(session_factory))
    assert [change.status for change in changes] == [REJECTED]
    assert changes[0].reviewed_by == "catalog-sync"
    assert summary["detail"]["products"]["moot_resolved"] == 1


def test_minor_changes_can_bypass_review(
    session_factory, fake_source, make_product, add_local_product
) -> None:
    product = make_product(name="Classic Tee")
    add_local_product(product, name="classic  tee")
    coordinator = CatalogSyncCoordinator(
        fake_source([product]), session_factory, auto_apply_severities={"minor"}
    )

    run = asyncio.run(coordinator.run("manual"))

    assert run.detail["products"]["auto_applied"] == 1
    changes = asyncio.run(_changes(session_factory))
    assert [(change.severity, change.status) for change in changes] == [("minor", APPLIED)]
    assert asyncio.run(_products(session_factory))["1001"].name == "Classic Tee"


def test_scheduled_run_respects_minimum_interval(
    session_factory, fake_source, make_product
) -> None:
    async def _seed():
        async with session_factory() as session:
            session.add(
                SyncRun(
                    trigger="manual",
                    status=SUCCESS,
                    started_at=utc_now(),
                    completed_at=utc_now(),
                )
            )
            await session.commit()

    asyncio.run(_seed())
    source = fake_source([make_product()])

    skipped = asyncio.run(run_scheduled_sync(source=source, session_factory=session_factory))
    forced = asyncio.run(
        run_scheduled_sync(force=True, source=source, session_factory=session_factory)
    )

    assert skipped == {"skipped": True, "reason": "min_interval"}
    assert forced["trigger"] == "scheduled"
    assert len(asyncio.run(_app_logs(session_factory, "catalog_sync_skipped"))) == 1


def test_category_mappings_are_created_unmapped(session_factory, fake_source) -> None:
    source = fake_source(categories=[SourceCategory("123", "T-Shirts")])

    asyncio.run(run_manual_sync(source=source, session_factory=session_factory))
    asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    async def _mappings():
        async with session_factory() as session:
            result = await session.execute(select(CategoryMapping))
            return result.scalars().all()

    mappings = asyncio.run(_mappings())
    assert [(m.source_category_id, m.local_category_id) for m in mappings] == [("123", None)]


def test_malformed_listing_row_counts_as_failed_item(session_factory) -> None:
    detail = {
        "result": {
            "sync_product": {"id": 1, "name": "Tee", "thumbnail_url": "https://cdn.test/1.png"},
            "sync_variants": [
                {"id": 11, "name": "Tee / S", "sku": "TEE-S", "retail_price": "10.00"}
            ],
        }
    }
    listing = [
        {"id": 1, "name": "Tee", "thumbnail_url": "https://cdn.test/1.png"},
        {"id": 2, "name": "Cap", "price": "not-a-price"},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/categories"):
            return httpx.Response(200, json={"result": {"categories": []}})
        if path.endswith("/store/products"):
            return httpx.Response(200, json={"result": listing, "paging": {"total": 2}})
        if path.endswith("/store/products/1"):
            return httpx.Response(200, json=detail)
        return httpx.Response(404, json={"error": "not found"})

    source = CatalogClient(
        base_url="https://catalog.test/v1", transport=httpx.MockTransport(handler)
    )

    summary = asyncio.run(run_manual_sync(source=source, session_factory=session_factory))

    assert summary["status"] == PARTIAL
    assert (summary["items_succeeded"], summary["items_failed"]) == (1, 1)
    [error] = summary["detail"]["errors"]
    assert error["source_product_id"] == "2"
    assert error["stage"] == "parse"
    assert "1" in asyncio.run(_products(session_factory))
