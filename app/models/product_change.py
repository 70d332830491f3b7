from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class ChangeType(str, Enum):
    price = "price"
    inventory = "inventory"
    metadata = "metadata"
    image = "image"
    variant = "variant"
    other = "other"


class ChangeSeverity(str, Enum):
    critical = "critical"
    standard = "standard"
    minor = "minor"


class ChangeStatus(str, Enum):
    pending_review = "pending_review"
    approved = "approved"
    rejected = "rejected"
    applied = "applied"


class ProductChange(TimestampMixin, Base):
    __tablename__ = "product_changes"
    __table_args__ = (
        Index(
            "uq_product_changes_pending_field",
            "local_product_id",
            "field_name",
            unique=True,
            postgresql_where=text("status = 'pending_review'"),
            sqlite_where=text("status = 'pending_review'"),
        ),
        Index("ix_product_changes_status_created_at", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    local_product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id"), index=True
    )
    source_product_id: Mapped[str] = mapped_column(String(64), index=True)
    field_name: Mapped[str] = mapped_column(String(128))
    change_type: Mapped[str] = mapped_column(String(20))
    severity: Mapped[str] = mapped_column(String(20), index=True)
    value_kind: Mapped[str] = mapped_column(String(16))
    old_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)
    originating_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id"))
    status: Mapped[str] = mapped_column(
        String(20), default=ChangeStatus.pending_review.value
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(150))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
