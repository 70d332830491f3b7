from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class CategoryMappingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_category_id: str
    source_category_name: str
    local_category_id: int | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CategoryMappingUpdate(BaseModel):
    local_category_id: int | None = None
    is_active: bool | None = None
