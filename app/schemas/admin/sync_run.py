from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class SyncRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trigger: str
    status: str
    scope_source_product_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    items_succeeded: int = 0
    items_failed: int = 0
    detail: dict[str, Any] | None = None
    error_message: str | None = None


class ScheduledSyncRequest(BaseModel):
    force: bool = False
