from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, computed_field

from app.services.change_values import KIND_DECIMAL, ValueKindError, decode_value


class ProductChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    local_product_id: int
    source_product_id: str
    field_name: str
    change_type: str
    severity: str
    value_kind: str
    old_value: str | None = None
    new_value: str | None = None
    originating_run_id: int | None = None
    status: str
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    applied_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @computed_field
    @property
    def old(self) -> Any:
        return _decoded(self.value_kind, self.old_value)

    @computed_field
    @property
    def new(self) -> Any:
        return _decoded(self.value_kind, self.new_value)


def _decoded(kind: str, text: str | None) -> Any:
    try:
        value = decode_value(kind, text)
    except ValueKindError:
        return text
    # decimals travel as strings so JSON clients keep the cents exact
    return str(value) if kind == KIND_DECIMAL and value is not None else value


class ReconcileFinding(BaseModel):
    change_id: int
    status: str
    local_product_id: int
    field_name: str
    new_value: str | None = None
    repaired: bool = False
