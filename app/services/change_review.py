from __future__ import annotations

from typing import Any, Iterable

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.product import Product, ProductVariant
from app.models.product_change import ProductChange
from app.services.app_log_store import log_event
from app.services.audit import record_audit, snapshot
from app.services.change_detector import local_variant_snapshot
from app.services.change_fields import parse_field_name
from app.services.change_store import (
    APPLIED,
    APPROVED,
    PENDING,
    REJECTED,
    InvalidTransitionError,
    get_change,
    list_changes,
    transition,
)
from app.services.change_values import (
    KIND_DECIMAL,
    KIND_JSON,
    ValueKindError,
    decode_value,
    encode_value,
)
from app.utils.time import utc_now

logger = structlog.get_logger(__name__)

PRODUCT_COLUMNS = {"name", "description", "price", "is_active", "inventory_count", "image_urls"}
VARIANT_COLUMNS = {"name", "sku", "price", "options"}
NOT_NULL_COLUMNS = {"name", "is_active", "inventory_count"}

AUDIT_ENTITY = "product_change"


class ChangeApplyError(Exception):
    def __init__(self, message: str, change_id: int | None = None) -> None:
        super().__init__(message)
        self.change_id = change_id


def _decode(field_name: str, value_kind: str, text: str | None) -> Any:
    try:
        return decode_value(value_kind, text)
    except (ValueKindError, ValueError) as exc:
        raise ChangeApplyError(f"cannot decode value for {field_name}: {exc}") from exc


async def write_change_field(
    session: AsyncSession,
    local_product_id: int,
    field_name: str,
    value_kind: str,
    new_value: str | None,
) -> None:
    """Write one proposed value into the local catalog as a single UPDATE/INSERT.

    Does not commit; the caller commits the write together with the change's
    state transition.
    """
    value = _decode(field_name, value_kind, new_value)
    variant_id, attr = parse_field_name(field_name)
    now = utc_now()

    if variant_id is None:
        if field_name not in PRODUCT_COLUMNS:
            raise ChangeApplyError(f"unsupported product field {field_name}")
        if value is None and field_name in NOT_NULL_COLUMNS:
            raise ChangeApplyError(f"{field_name} cannot be cleared")
        result = await session.execute(
            update(Product)
            .where(Product.id == local_product_id)
            .values({field_name: value, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ChangeApplyError(f"product {local_product_id} not found")
        return

    if attr is not None:
        if attr not in VARIANT_COLUMNS:
            raise ChangeApplyError(f"unsupported variant field {field_name}")
        result = await session.execute(
            update(ProductVariant)
            .where(ProductVariant.product_id == local_product_id)
            .where(ProductVariant.source_variant_id == variant_id)
            .values({attr: value, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ChangeApplyError(f"variant {variant_id} not found on product {local_product_id}")
        return

    if value is None:
        result = await session.execute(
            update(ProductVariant)
            .where(ProductVariant.product_id == local_product_id)
            .where(ProductVariant.source_variant_id == variant_id)
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ChangeApplyError(f"variant {variant_id} not found on product {local_product_id}")
        return

    if not isinstance(value, dict):
        raise ChangeApplyError(f"variant snapshot for {field_name} is not an object")
    values = {
        "product_id": local_product_id,
        "name": value.get("name"),
        "sku": value.get("sku"),
        "price": _decode(field_name, KIND_DECIMAL, value.get("price")),
        "options": value.get("options") or {},
        "is_active": True,
    }
    result = await session.execute(
        update(ProductVariant)
        .where(ProductVariant.source_variant_id == variant_id)
        .values(**values, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.execute(
            insert(ProductVariant).values(source_variant_id=variant_id, **values)
        )


async def read_current_value(
    session: AsyncSession,
    local_product_id: int,
    field_name: str,
    value_kind: str,
) -> str | None:
    """Encoded local value of a change's target field, None when absent."""
    variant_id, attr = parse_field_name(field_name)
    if variant_id is None:
        if field_name not in PRODUCT_COLUMNS:
            raise ChangeApplyError(f"unsupported product field {field_name}")
        value = await session.scalar(
            select(getattr(Product, field_name)).where(Product.id == local_product_id)
        )
        return encode_value(value_kind, value)

    result = await session.execute(
        select(ProductVariant)
        .where(ProductVariant.product_id == local_product_id)
        .where(ProductVariant.source_variant_id == variant_id)
        .where(ProductVariant.is_active.is_(True))
        .execution_options(populate_existing=True)
    )
    variant = result.scalars().first()
    if variant is None:
        return None
    if attr is None:
        return encode_value(KIND_JSON, local_variant_snapshot(variant))
    if attr not in VARIANT_COLUMNS:
        raise ChangeApplyError(f"unsupported variant field {field_name}")
    return encode_value(value_kind, getattr(variant, attr))


async def approve_change(
    session: AsyncSession,
    change_id: int,
    actor: str,
    *,
    apply: bool | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> ProductChange:
    """Approve a pending change.

    With ``apply`` (default ``CHANGE_APPLY_ON_APPROVE``) the field write and
    both transitions commit as one unit; a failed write or a lost race rolls
    everything back.
    """
    apply_now = settings.CHANGE_APPLY_ON_APPROVE if apply is None else apply
    change = await get_change(session, change_id)
    if change.status != PENDING:
        raise InvalidTransitionError(change_id, change.status, APPROVED)
    before = snapshot(change)
    target = (change.local_product_id, change.field_name, change.value_kind, change.new_value)

    try:
        if apply_now:
            await write_change_field(session, *target)
        change = await transition(session, change_id, APPROVED, actor, commit=False)
        if apply_now:
            change = await transition(session, change_id, APPLIED, actor, commit=False)
        await record_audit(
            session,
            actor=actor,
            entity=AUDIT_ENTITY,
            entity_id=change_id,
            action="approve_apply" if apply_now else "approve",
            before=before,
            after=change,
            ip=ip,
            user_agent=user_agent,
            commit=False,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("product_change_apply_failed", change_id=change_id, error=str(exc))
        raise ChangeApplyError(f"could not apply change {change_id}", change_id) from exc
    except (ChangeApplyError, InvalidTransitionError) as exc:
        await session.rollback()
        logger.warning("product_change_approve_failed", change_id=change_id, error=str(exc))
        if isinstance(exc, ChangeApplyError):
            exc.change_id = change_id
        raise

    logger.info(
        "product_change_approved",
        change_id=change_id,
        actor=actor,
        applied=apply_now,
        field_name=target[1],
    )
    return change


async def apply_change(
    session: AsyncSession,
    change_id: int,
    actor: str,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> ProductChange:
    """Write an approved change's value and complete it as applied."""
    change = await get_change(session, change_id)
    if change.status != APPROVED:
        raise InvalidTransitionError(change_id, change.status, APPLIED)
    before = snapshot(change)
    target = (change.local_product_id, change.field_name, change.value_kind, change.new_value)

    try:
        await write_change_field(session, *target)
        change = await transition(session, change_id, APPLIED, actor, commit=False)
        await record_audit(
            session,
            actor=actor,
            entity=AUDIT_ENTITY,
            entity_id=change_id,
            action="apply",
            before=before,
            after=change,
            ip=ip,
            user_agent=user_agent,
            commit=False,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("product_change_apply_failed", change_id=change_id, error=str(exc))
        raise ChangeApplyError(f"could not apply change {change_id}", change_id) from exc
    except (ChangeApplyError, InvalidTransitionError):
        await session.rollback()
        raise

    logger.info("product_change_applied", change_id=change_id, actor=actor)
    return change


async def reject_change(
    session: AsyncSession,
    change_id: int,
    actor: str,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
) -> ProductChange:
    before = snapshot(await get_change(session, change_id))
    try:
        change = await transition(session, change_id, REJECTED, actor, commit=False)
        await record_audit(
            session,
            actor=actor,
            entity=AUDIT_ENTITY,
            entity_id=change_id,
            action="reject",
            before=before,
            after=change,
            ip=ip,
            user_agent=user_agent,
            commit=False,
        )
        await session.commit()
    except InvalidTransitionError:
        await session.rollback()
        raise
    logger.info("product_change_rejected", change_id=change_id, actor=actor)
    return change


async def list_pending(
    session: AsyncSession,
    *,
    severity: str | list[str] | None = None,
    change_type: str | list[str] | None = None,
    local_product_id: int | None = None,
    source_product_id: str | None = None,
    skip: int = 0,
    limit: int | None = None,
) -> tuple[list[ProductChange], int]:
    return await list_changes(
        session,
        status=PENDING,
        severity=severity,
        change_type=change_type,
        local_product_id=local_product_id,
        source_product_id=source_product_id,
        skip=skip,
        limit=limit,
        sort="created_at",
        order="asc",
    )


async def auto_apply_changes(
    session: AsyncSession,
    changes: Iterable[tuple[int, str]],
    severities: set[str],
    actor: str,
) -> int:
    """Approve and apply ``(change_id, severity)`` pairs whose severity bypasses review."""
    applied = 0
    for change_id, severity in changes:
        if severity not in severities:
            continue
        try:
            await approve_change(session, change_id, actor, apply=True)
        except (ChangeApplyError, InvalidTransitionError) as exc:
            logger.warning("product_change_auto_apply_skipped", change_id=change_id, error=str(exc))
            continue
        applied += 1
    return applied


async def reconcile_changes(
    session: AsyncSession,
    repair: bool = False,
    actor: str | None = None,
) -> list[dict[str, Any]]:
    """Find open changes whose target field already holds ``new_value``.

    Each one is logged as ``product_change_inconsistent``. With ``repair`` the
    change is completed to applied through the normal transitions.
    """
    actor = actor or settings.SYNC_SYSTEM_ACTOR
    result = await session.execute(
        select(ProductChange)
        .where(ProductChange.status.in_([PENDING, APPROVED]))
        .order_by(ProductChange.id)
    )
    candidates = [
        (
            change.id,
            change.status,
            change.local_product_id,
            change.field_name,
            change.value_kind,
            change.new_value,
        )
        for change in result.scalars().all()
    ]

    findings: list[dict[str, Any]] = []
    for change_id, status, local_product_id, field_name, value_kind, new_value in candidates:
        current = await read_current_value(session, local_product_id, field_name, value_kind)
        if current != new_value:
            continue
        finding = {
            "change_id": change_id,
            "status": status,
            "local_product_id": local_product_id,
            "field_name": field_name,
            "new_value": new_value,
            "repaired": False,
        }
        logger.warning("product_change_inconsistent", **finding)
        try:
            if repair:
                if status == PENDING:
                    await transition(session, change_id, APPROVED, actor, commit=False)
                await transition(session, change_id, APPLIED, actor, commit=False)
                finding["repaired"] = True
            await log_event(
                session,
                level="warning",
                event_type="product_change_inconsistent",
                message="field already holds the proposed value",
                data=dict(finding),
                commit=False,
            )
            await session.commit()
        except InvalidTransitionError:
            await session.rollback()
            logger.info("product_change_already_reviewed", change_id=change_id)
            continue
        findings.append(finding)
    return findings
