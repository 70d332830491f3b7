import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.config import settings
from app.models import AppLog, AuditLog, Product, ProductChange, ProductVariant
from app.services.catalog_client import SourceVariant
from app.services.change_detector import detect_product_changes
from app.services.change_review import (
    ChangeApplyError,
    apply_change,
    approve_change,
    list_pending,
    reconcile_changes,
    reject_change,
)
from app.services.change_store import InvalidTransitionError
from app.services.product_intake import find_local_product


async def _detect(session_factory, source) -> list[int]:
    async with session_factory() as session:
        local = await find_local_product(session, source.source_id)
        await detect_product_changes(session, source, local, None, "catalog-sync")
        result = await session.execute(
            select(ProductChange.id).where(ProductChange.status == "pending_review").order_by(
                ProductChange.id
            )
        )
        return list(result.scalars().all())


async def _product(session_factory, product_id: int) -> Product:
    async with session_factory() as session:
        return await session.get(Product, product_id)


@pytest.fixture
def price_change(session_factory, make_product, add_local_product):
    product_id = add_local_product(make_product(), price=Decimal("17.99"))
    [change_id] = asyncio.run(_detect(session_factory, make_product(price="19.99")))
    return product_id, change_id


def test_approve_writes_price_and_completes_change(session_factory, price_change) -> None:
    product_id, change_id = price_change

    async def _run():
        async with session_factory() as session:
            return await approve_change(session, change_id, "alice", apply=True)

    change = asyncio.run(_run())
    assert change.status == "applied"
    assert change.reviewed_by == "alice"
    assert asyncio.run(_product(session_factory, product_id)).price == Decimal("19.99")

    async def _audit():
        async with session_factory() as session:
            result = await session.execute(select(AuditLog))
            return list(result.scalars().all())

    [entry] = asyncio.run(_audit())
    assert entry.actor == "alice"
    assert entry.entity_id == change_id
    assert entry.before_json["status"] == "pending_review"
    assert entry.after_json["status"] == "applied"


def test_reject_leaves_local_value(session_factory, price_change) -> None:
    product_id, change_id = price_change

    async def _run():
        async with session_factory() as session:
            rejected = await reject_change(session, change_id, "alice")
            with pytest.raises(InvalidTransitionError):
                await approve_change(session, change_id, "bob", apply=True)
            return rejected

    assert asyncio.run(_run()).status == "rejected"
    assert asyncio.run(_product(session_factory, product_id)).price == Decimal("17.99")


def test_deferred_apply_mode(session_factory, price_change, monkeypatch) -> None:
    product_id, change_id = price_change
    monkeypatch.setattr(settings, "CHANGE_APPLY_ON_APPROVE", False)

    async def _approve():
        async with session_factory() as session:
            return await approve_change(session, change_id, "alice")

    assert asyncio.run(_approve()).status == "approved"
    assert asyncio.run(_product(session_factory, product_id)).price == Decimal("17.99")

    async def _apply():
        async with session_factory() as session:
            return await apply_change(session, change_id, "bob")

    assert asyncio.run(_apply()).status == "applied"
    assert asyncio.run(_product(session_factory, product_id)).price == Decimal("19.99")


def test_failed_field_write_leaves_change_pending(
    session_factory, make_product, add_local_product
) -> None:
    source = make_product()
    add_local_product(source)
    changed = make_product(
        variants=[
            SourceVariant(
                "1001-s", "Classic Tee / S", "SKU-1001-S", Decimal("25.00"), {"size": "S"}
            )
        ]
    )
    [change_id] = asyncio.run(_detect(session_factory, changed))

    async def _run():
        async with session_factory() as session:
            # the variant disappears locally before the operator approves
            variant = (
                await session.execute(
                    select(ProductVariant).where(ProductVariant.source_variant_id == "1001-s")
                )
            ).scalar_one()
            variant.source_variant_id = "gone"
            await session.commit()
            with pytest.raises(ChangeApplyError):
                await approve_change(session, change_id, "alice", apply=True)
            return (await session.get(ProductChange, change_id, populate_existing=True)).status

    assert asyncio.run(_run()) == "pending_review"


def test_variant_removal_deactivates_variant(
    session_factory, make_product, add_local_product
) -> None:
    add_local_product(make_product())
    pending_ids = asyncio.run(_detect(session_factory, make_product(variants=[])))

    async def _run():
        async with session_factory() as session:
            changes = {
                change.field_name: change
                for change in [await session.get(ProductChange, pk) for pk in pending_ids]
            }
            assert set(changes) == {"inventory_count", "variant:1001-s"}
            change_id = changes["variant:1001-s"].id
            assert changes["variant:1001-s"].severity == "critical"
            await approve_change(session, change_id, "alice", apply=True)
            variant = (
                await session.execute(
                    select(ProductVariant)
                    .where(ProductVariant.source_variant_id == "1001-s")
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            return variant.is_active

    assert asyncio.run(_run()) is False


def test_list_pending_filters_by_severity(session_factory, make_product, add_local_product) -> None:
    add_local_product(make_product(), price=Decimal("17.99"), name="Old Tee")
    asyncio.run(_detect(session_factory, make_product()))

    async def _run():
        async with session_factory() as session:
            critical, _ = await list_pending(session, severity="critical")
            everything, total = await list_pending(session)
            return critical, total

    critical, total = asyncio.run(_run())
    assert [change.field_name for change in critical] == ["price"]
    assert total == 2


def test_reconcile_reports_and_repairs_field_already_updated(
    session_factory, price_change
) -> None:
    product_id, change_id = price_change

    async def _out_of_band_write():
        async with session_factory() as session:
            product = await session.get(Product, product_id)
            product.price = Decimal("19.99")
            await session.commit()

    asyncio.run(_out_of_band_write())

    async def _reconcile(repair: bool):
        async with session_factory() as session:
            return await reconcile_changes(session, repair=repair)

    [finding] = asyncio.run(_reconcile(False))
    assert finding["change_id"] == change_id
    assert finding["repaired"] is False

    [repaired] = asyncio.run(_reconcile(True))
    assert repaired["repaired"] is True
    assert asyncio.run(_reconcile(False)) == []

    async def _state():
        async with session_factory() as session:
            change = await session.get(ProductChange, change_id)
            logs = await session.execute(
                select(AppLog).where(AppLog.event_type == "product_change_inconsistent")
            )
            return change.status, len(list(logs.scalars().all()))

    assert asyncio.run(_state()) == ("applied", 2)
