from __future__ import annotations

from typing import Any

from pydantic import BaseModel

PRODUCT_EVENT_TYPES = {"product_synced", "product_updated"}


class CatalogWebhookPayload(BaseModel):
    type: str
    created: int | None = None
    retries: int | None = None
    store: int | str | None = None
    data: dict[str, Any] | None = None

    def source_product_id(self) -> str | None:
        """Affected product id for product events, None for anything else."""
        if self.type not in PRODUCT_EVENT_TYPES or not self.data:
            return None
        product = self.data.get("sync_product") or {}
        product_id = product.get("id") if isinstance(product, dict) else None
        if product_id is None:
            return None
        return str(product_id).strip() or None
