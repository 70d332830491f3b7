from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.product_change import ChangeStatus, ProductChange
from app.services.app_log_store import log_event
from app.services.change_fields import is_presence_field
from app.utils.time import utc_now

if TYPE_CHECKING:
    from app.services.change_detector import FieldDiff

logger = structlog.get_logger(__name__)

PENDING = ChangeStatus.pending_review.value
APPROVED = ChangeStatus.approved.value
REJECTED = ChangeStatus.rejected.value
APPLIED = ChangeStatus.applied.value

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {APPROVED, REJECTED},
    APPROVED: {APPLIED},
}
TERMINAL_STATUSES = {REJECTED, APPLIED}

SORTABLE_COLUMNS = {"id", "created_at", "updated_at", "severity", "change_type", "status"}


class ChangeNotFoundError(Exception):
    def __init__(self, change_id: int) -> None:
        super().__init__(f"product change {change_id} not found")
        self.change_id = change_id


class InvalidTransitionError(Exception):
    def __init__(self, change_id: int, current: str | None, target: str) -> None:
        super().__init__(
            f"product change {change_id} cannot move from {current} to {target}"
        )
        self.change_id = change_id
        self.current = current
        self.target = target


async def get_pending_change(
    session: AsyncSession, local_product_id: int, field_name: str
) -> ProductChange | None:
    result = await session.execute(
        select(ProductChange)
        .where(ProductChange.local_product_id == local_product_id)
        .where(ProductChange.field_name == field_name)
        .where(ProductChange.status == PENDING)
    )
    return result.scalars().first()


async def record_detection(
    session: AsyncSession,
    *,
    local_product_id: int,
    source_product_id: str,
    diff: FieldDiff,
    run_id: int | None,
) -> tuple[ProductChange, str]:
    """Insert or refresh the single pending change for ``(product, field)``.

    Returns the change and one of ``created``, ``updated`` or ``unchanged``.
    """
    existing = await get_pending_change(session, local_product_id, diff.field_name)
    if existing is not None:
        if (
            existing.new_value == diff.new_value
            and existing.old_value == diff.old_value
        ):
            return existing, "unchanged"
        existing.old_value = diff.old_value
        existing.new_value = diff.new_value
        existing.value_kind = diff.value_kind
        existing.change_type = diff.change_type
        existing.severity = diff.severity
        existing.originating_run_id = run_id
        await session.commit()
        return existing, "updated"

    change = ProductChange(
        local_product_id=local_product_id,
        source_product_id=source_product_id,
        field_name=diff.field_name,
        change_type=diff.change_type,
        severity=diff.severity,
        value_kind=diff.value_kind,
        old_value=diff.old_value,
        new_value=diff.new_value,
        originating_run_id=run_id,
        status=PENDING,
    )
    session.add(change)
    try:
        await session.commit()
    except IntegrityError:
        # lost the race on the pending-field index; fold into the winner
        await session.rollback()
        if await get_pending_change(session, local_product_id, diff.field_name) is None:
            raise
        return await record_detection(
            session,
            local_product_id=local_product_id,
            source_product_id=source_product_id,
            diff=diff,
            run_id=run_id,
        )
    return change, "created"


async def get_change(session: AsyncSession, change_id: int) -> ProductChange:
    change = await session.get(ProductChange, change_id, populate_existing=True)
    if change is None:
        raise ChangeNotFoundError(change_id)
    return change


async def transition(
    session: AsyncSession,
    change_id: int,
    new_status: str,
    actor: str,
    *,
    commit: bool = True,
) -> ProductChange:
    """Move a change along the review state machine with one conditional UPDATE.

    The row only changes if it still holds an allowed predecessor status, so
    of two concurrent reviewers exactly one wins; the other gets
    ``InvalidTransitionError``.
    """
    predecessors = [
        status for status, targets in ALLOWED_TRANSITIONS.items() if new_status in targets
    ]
    now = utc_now()
    values: dict[str, Any] = {"status": new_status, "updated_at": now}
    if new_status in {APPROVED, REJECTED}:
        values["reviewed_by"] = actor
        values["reviewed_at"] = now
    if new_status == APPLIED:
        values["applied_at"] = now

    if predecessors:
        result = await session.execute(
            update(ProductChange)
            .where(ProductChange.id == change_id)
            .where(ProductChange.status.in_(predecessors))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount
    else:
        updated = 0

    if updated != 1:
        current = await session.scalar(
            select(ProductChange.status).where(ProductChange.id == change_id)
        )
        if current is None:
            raise ChangeNotFoundError(change_id)
        raise InvalidTransitionError(change_id, current, new_status)

    if commit:
        await session.commit()
    return await get_change(session, change_id)


async def list_changes(
    session: AsyncSession,
    *,
    status: str | list[str] | None = None,
    severity: str | list[str] | None = None,
    change_type: str | list[str] | None = None,
    local_product_id: int | None = None,
    source_product_id: str | None = None,
    skip: int = 0,
    limit: int | None = None,
    sort: str = "created_at",
    order: str = "desc",
) -> tuple[list[ProductChange], int]:
    query = select(ProductChange)
    for column, value in (
        (ProductChange.status, status),
        (ProductChange.severity, severity),
        (ProductChange.change_type, change_type),
    ):
        if isinstance(value, list):
            query = query.where(column.in_(value))
        elif value:
            query = query.where(column == value)
    if local_product_id is not None:
        query = query.where(ProductChange.local_product_id == local_product_id)
    if source_product_id:
        query = query.where(ProductChange.source_product_id == source_product_id)

    sort_col = getattr(ProductChange, sort if sort in SORTABLE_COLUMNS else "created_at")
    if order.lower() == "desc":
        query = query.order_by(sort_col.desc(), ProductChange.id.desc())
    else:
        query = query.order_by(sort_col.asc(), ProductChange.id.asc())

    total = await session.scalar(select(func.count()).select_from(query.subquery()))
    if skip:
        query = query.offset(skip)
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all()), total or 0


async def list_by_status(session: AsyncSession, status: str) -> list[ProductChange]:
    items, _ = await list_changes(session, status=status, order="asc")
    return items


async def resolve_in_sync_changes(
    session: AsyncSession,
    *,
    local_product_id: int,
    in_sync: dict[str, str | None],
    actor: str,
    run_id: int | None,
) -> tuple[list[ProductChange], list[ProductChange]]:
    """Close pending changes for fields that compare equal again.

    A pending change whose proposed value is now the local value landed
    outside review and is completed as applied. Any other pending change is
    moot (the source moved back) and is rejected by ``actor``.
    """
    result = await session.execute(
        select(ProductChange)
        .where(ProductChange.local_product_id == local_product_id)
        .where(ProductChange.field_name.in_(list(in_sync)))
        .where(ProductChange.status == PENDING)
        .order_by(ProductChange.id)
    )
    pending = [
        (change.id, change.field_name, change.old_value, change.new_value)
        for change in result.scalars().all()
    ]
    moot: list[ProductChange] = []
    landed: list[ProductChange] = []
    for change_id, field_name, old_value, new_value in pending:
        current = in_sync[field_name]
        if is_presence_field(field_name):
            has_landed = new_value is not None
        else:
            has_landed = current == new_value
        try:
            if has_landed:
                await transition(session, change_id, APPROVED, actor, commit=False)
                closed = await transition(session, change_id, APPLIED, actor, commit=False)
                event_type = "product_change_landed"
            else:
                closed = await transition(session, change_id, REJECTED, actor, commit=False)
                event_type = "product_change_moot"
        except InvalidTransitionError:
            # an operator reviewed it meanwhile
            await session.rollback()
            logger.info("product_change_already_reviewed", change_id=change_id)
            continue
        await log_event(
            session,
            level="info",
            event_type=event_type,
            data={
                "change_id": change_id,
                "local_product_id": local_product_id,
                "field_name": field_name,
                "old_value": old_value,
                "new_value": new_value,
                "current_value": current,
                "run_id": run_id,
            },
            commit=False,
        )
        await session.commit()
        (landed if has_landed else moot).append(closed)
        logger.info(
            event_type,
            change_id=change_id,
            local_product_id=local_product_id,
            field_name=field_name,
        )
    return moot, landed


async def close_uncompared_changes(
    session: AsyncSession,
    *,
    local_product_id: int,
    compared: set[str],
    actor: str,
    run_id: int | None,
) -> list[ProductChange]:
    """Reject pending changes for fields the latest comparison no longer covers.

    This happens when the source stops sending a description or drops a
    variant whose attributes had pending changes.
    """
    result = await session.execute(
        select(ProductChange)
        .where(ProductChange.local_product_id == local_product_id)
        .where(ProductChange.status == PENDING)
        .order_by(ProductChange.id)
    )
    stale = [
        (change.id, change.field_name, change.old_value, change.new_value)
        for change in result.scalars().all()
        if change.field_name not in compared
    ]
    closed: list[ProductChange] = []
    for change_id, field_name, old_value, new_value in stale:
        try:
            change = await transition(session, change_id, REJECTED, actor, commit=False)
        except InvalidTransitionError:
            await session.rollback()
            logger.info("product_change_already_reviewed", change_id=change_id)
            continue
        await log_event(
            session,
            level="info",
            event_type="product_change_moot",
            message="field is no longer provided by the source",
            data={
                "change_id": change_id,
                "local_product_id": local_product_id,
                "field_name": field_name,
                "old_value": old_value,
                "new_value": new_value,
                "run_id": run_id,
            },
            commit=False,
        )
        await session.commit()
        closed.append(change)
        logger.info(
            "product_change_moot",
            change_id=change_id,
            local_product_id=local_product_id,
            field_name=field_name,
            reason="not_compared",
        )
    return closed
