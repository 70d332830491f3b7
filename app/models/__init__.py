from app.models.app_log import AppLog
from app.models.audit_log import AuditLog
from app.models.base import Base, TimestampMixin
from app.models.category import Category, CategoryMapping
from app.models.product import Product, ProductVariant
from app.models.product_change import (
    ChangeSeverity,
    ChangeStatus,
    ChangeType,
    ProductChange,
)
from app.models.sync_run import SyncRun, SyncRunStatus, SyncTrigger

__all__ = [
    "AppLog",
    "AuditLog",
    "Base",
    "TimestampMixin",
    "Category",
    "CategoryMapping",
    "ChangeSeverity",
    "ChangeStatus",
    "ChangeType",
    "Product",
    "ProductChange",
    "ProductVariant",
    "SyncRun",
    "SyncRunStatus",
    "SyncTrigger",
]
