from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class Category(TimestampMixin, Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(255), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CategoryMapping(TimestampMixin, Base):
    __tablename__ = "category_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_category_id: Mapped[str] = mapped_column(String(64), unique=True)
    source_category_name: Mapped[str] = mapped_column(String(255))
    local_category_id: Mapped[int | None] = mapped_column(
        ForeignKey("categories.id"), index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
