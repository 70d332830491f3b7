from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.inspection import inspect

from app.models.audit_log import AuditLog


def _serialize(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {key: _serialize(val) for key, val in value.items()}
    return value


def snapshot(value: object | None) -> dict | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return _serialize(value)
    if hasattr(value, "model_dump"):
        return _serialize(value.model_dump(mode="json"))
    mapper = inspect(value, raiseerr=False)
    if mapper is not None:
        payload = {
            attr.key: getattr(value, attr.key) for attr in mapper.mapper.column_attrs
        }
        return _serialize(payload)
    return None


async def record_audit(
    session: AsyncSession,
    actor: str,
    entity: str,
    entity_id: int | None,
    action: str,
    before: object | None,
    after: object | None,
    ip: str | None = None,
    user_agent: str | None = None,
    commit: bool = True,
) -> None:
    log = AuditLog(
        actor=actor,
        entity=entity,
        entity_id=entity_id,
        action=action,
        before_json=snapshot(before),
        after_json=snapshot(after),
        ip=ip,
        user_agent=user_agent,
    )
    session.add(log)
    if commit:
        await session.commit()
