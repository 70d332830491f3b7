from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.product import Product, ProductVariant
from app.models.product_change import ChangeSeverity, ChangeType, ProductChange
from app.services.catalog_client import (
    CatalogValidationError,
    SourceProduct,
    SourceVariant,
)
from app.services.change_fields import variant_field
from app.services.change_store import (
    close_uncompared_changes,
    record_detection,
    resolve_in_sync_changes,
)
from app.services.change_values import (
    KIND_BOOL,
    KIND_DECIMAL,
    KIND_INT,
    KIND_JSON,
    KIND_TEXT,
    encode_value,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FieldRule:
    name: str
    change_type: ChangeType
    severity: ChangeSeverity
    kind: str


PRODUCT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("name", ChangeType.metadata, ChangeSeverity.standard, KIND_TEXT),
    FieldRule("description", ChangeType.metadata, ChangeSeverity.standard, KIND_TEXT),
    FieldRule("price", ChangeType.price, ChangeSeverity.critical, KIND_DECIMAL),
    FieldRule("is_active", ChangeType.inventory, ChangeSeverity.critical, KIND_BOOL),
    FieldRule("inventory_count", ChangeType.inventory, ChangeSeverity.critical, KIND_INT),
    FieldRule("image_urls", ChangeType.image, ChangeSeverity.standard, KIND_JSON),
)

VARIANT_FIELDS: tuple[FieldRule, ...] = (
    FieldRule("name", ChangeType.variant, ChangeSeverity.standard, KIND_TEXT),
    FieldRule("sku", ChangeType.variant, ChangeSeverity.standard, KIND_TEXT),
    FieldRule("price", ChangeType.price, ChangeSeverity.critical, KIND_DECIMAL),
    FieldRule("options", ChangeType.variant, ChangeSeverity.standard, KIND_JSON),
)

VARIANT_ADDED = FieldRule("", ChangeType.variant, ChangeSeverity.standard, KIND_JSON)
VARIANT_REMOVED = FieldRule("", ChangeType.variant, ChangeSeverity.critical, KIND_JSON)


@dataclass
class FieldDiff:
    field_name: str
    change_type: str
    severity: str
    value_kind: str
    old_value: str | None
    new_value: str | None


@dataclass
class ComparisonResult:
    diffs: list[FieldDiff] = field(default_factory=list)
    # field name -> encoded value for every compared field that matched
    in_sync: dict[str, str | None] = field(default_factory=dict)


@dataclass
class NewProductSignal:
    source_product: SourceProduct


@dataclass
class DetectionOutcome:
    recorded: list[ProductChange] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    moot: list[ProductChange] = field(default_factory=list)
    landed: list[ProductChange] = field(default_factory=list)


def _cosmetic_only(old: str | None, new: str | None) -> bool:
    if old is None or new is None:
        return False
    return " ".join(old.split()).casefold() == " ".join(new.split()).casefold()


def _compare(
    result: ComparisonResult,
    field_name: str,
    rule: FieldRule,
    local_value: Any,
    source_value: Any,
) -> None:
    old = encode_value(rule.kind, local_value)
    new = encode_value(rule.kind, source_value)
    if old == new:
        result.in_sync[field_name] = new
        return
    severity = rule.severity
    if rule.kind == KIND_TEXT and _cosmetic_only(old, new):
        severity = ChangeSeverity.minor
    result.diffs.append(
        FieldDiff(
            field_name=field_name,
            change_type=rule.change_type.value,
            severity=severity.value,
            value_kind=rule.kind,
            old_value=old,
            new_value=new,
        )
    )


def source_variant_snapshot(variant: SourceVariant) -> dict[str, Any]:
    return {
        "name": variant.name,
        "sku": variant.sku,
        "price": encode_value(KIND_DECIMAL, variant.price),
        "options": dict(variant.options),
    }


def local_variant_snapshot(variant: ProductVariant) -> dict[str, Any]:
    return {
        "name": variant.name,
        "sku": variant.sku,
        "price": encode_value(KIND_DECIMAL, variant.price),
        "options": dict(variant.options or {}),
    }


def validate_source_product(product: SourceProduct) -> None:
    if not product.name:
        raise CatalogValidationError("product is missing a name", product.source_id)
    if product.variants is None:
        raise CatalogValidationError("product detail has no variants", product.source_id)
    if product.effective_price is None:
        raise CatalogValidationError("product has no price", product.source_id)
    seen: set[str] = set()
    for variant in product.variants:
        if variant.source_id in seen:
            raise CatalogValidationError(
                f"duplicate variant {variant.source_id}", product.source_id
            )
        seen.add(variant.source_id)


def compare_product(source: SourceProduct, local: Product) -> ComparisonResult:
    """Diff a validated source product against its local counterpart.

    Fields are compared in a fixed order: product fields first, then variants
    in source order, then local variants the source no longer lists.
    """
    result = ComparisonResult()
    variants = source.variants or []
    source_values = {
        "name": source.name,
        "description": source.description,
        "price": source.effective_price,
        "is_active": source.is_active,
        "inventory_count": len(variants),
        "image_urls": list(source.image_urls),
    }
    local_values = {
        "name": local.name,
        "description": local.description,
        "price": local.price,
        "is_active": bool(local.is_active),
        "inventory_count": local.inventory_count or 0,
        "image_urls": list(local.image_urls or []),
    }
    for rule in PRODUCT_FIELDS:
        # the catalog does not always carry descriptions; keep local copy then
        if rule.name == "description" and source.description is None:
            continue
        _compare(result, rule.name, rule, local_values[rule.name], source_values[rule.name])

    local_variants = {
        variant.source_variant_id: variant
        for variant in local.variants
        if variant.source_variant_id and variant.is_active
    }
    for variant in variants:
        presence = variant_field(variant.source_id)
        current = local_variants.pop(variant.source_id, None)
        if current is None:
            result.diffs.append(
                FieldDiff(
                    field_name=presence,
                    change_type=VARIANT_ADDED.change_type.value,
                    severity=VARIANT_ADDED.severity.value,
                    value_kind=KIND_JSON,
                    old_value=None,
                    new_value=encode_value(KIND_JSON, source_variant_snapshot(variant)),
                )
            )
            continue
        result.in_sync[presence] = encode_value(KIND_JSON, local_variant_snapshot(current))
        for rule in VARIANT_FIELDS:
            _compare(
                result,
                variant_field(variant.source_id, rule.name),
                rule,
                getattr(current, rule.name),
                getattr(variant, rule.name),
            )

    for source_variant_id, current in local_variants.items():
        result.diffs.append(
            FieldDiff(
                field_name=variant_field(source_variant_id),
                change_type=VARIANT_REMOVED.change_type.value,
                severity=VARIANT_REMOVED.severity.value,
                value_kind=KIND_JSON,
                old_value=encode_value(KIND_JSON, local_variant_snapshot(current)),
                new_value=None,
            )
        )
    return result


async def detect_product_changes(
    session: AsyncSession,
    source: SourceProduct,
    local: Product | None,
    run_id: int | None,
    actor: str,
) -> DetectionOutcome | NewProductSignal:
    """Record every difference between ``source`` and ``local`` for review.

    Nothing is written to the local product here. Pending changes whose field
    now matches again are closed through the change store.
    """
    validate_source_product(source)
    if local is None:
        return NewProductSignal(source_product=source)

    local_product_id = local.id
    comparison = compare_product(source, local)
    outcome = DetectionOutcome()
    for diff in comparison.diffs:
        change, status = await record_detection(
            session,
            local_product_id=local_product_id,
            source_product_id=source.source_id,
            diff=diff,
            run_id=run_id,
        )
        if status == "created":
            outcome.created += 1
        elif status == "updated":
            outcome.updated += 1
        if status != "unchanged":
            outcome.recorded.append(change)

    if comparison.in_sync:
        moot, landed = await resolve_in_sync_changes(
            session,
            local_product_id=local_product_id,
            in_sync=comparison.in_sync,
            actor=actor,
            run_id=run_id,
        )
        outcome.moot.extend(moot)
        outcome.landed.extend(landed)

    compared = {diff.field_name for diff in comparison.diffs} | set(comparison.in_sync)
    outcome.moot.extend(
        await close_uncompared_changes(
            session,
            local_product_id=local_product_id,
            compared=compared,
            actor=actor,
            run_id=run_id,
        )
    )

    if outcome.recorded or outcome.moot or outcome.landed:
        logger.info(
            "product_changes_detected",
            source_product_id=source.source_id,
            local_product_id=local_product_id,
            created=outcome.created,
            updated=outcome.updated,
            moot=len(outcome.moot),
            landed=len(outcome.landed),
        )
    return outcome
