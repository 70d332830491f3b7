from __future__ import annotations

VARIANT_PREFIX = "variant:"


def variant_field(source_variant_id: str, attr: str | None = None) -> str:
    if attr is None:
        return f"{VARIANT_PREFIX}{source_variant_id}"
    return f"{VARIANT_PREFIX}{source_variant_id}:{attr}"


def parse_field_name(field_name: str) -> tuple[str | None, str | None]:
    """Return ``(source_variant_id, attr)``; both None for product-level fields."""
    if not field_name.startswith(VARIANT_PREFIX):
        return None, None
    rest = field_name[len(VARIANT_PREFIX) :]
    variant_id, _, attr = rest.partition(":")
    return variant_id, attr or None


def is_presence_field(field_name: str) -> bool:
    variant_id, attr = parse_field_name(field_name)
    return variant_id is not None and attr is None
