from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

KIND_DECIMAL = "decimal"
KIND_INT = "int"
KIND_BOOL = "bool"
KIND_TEXT = "text"
KIND_JSON = "json"

VALUE_KINDS = {KIND_DECIMAL, KIND_INT, KIND_BOOL, KIND_TEXT, KIND_JSON}

_CENTS = Decimal("0.01")


class ValueKindError(ValueError):
    pass


def to_price(value: Any) -> Decimal | None:
    """Coerce a price to two-decimal fixed point, or None when absent."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueKindError(f"not a price: {value!r}") from exc


def normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def normalize_value(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == KIND_DECIMAL:
        return to_price(value)
    if kind == KIND_INT:
        return int(value)
    if kind == KIND_BOOL:
        return bool(value)
    if kind == KIND_TEXT:
        return normalize_text(value)
    if kind == KIND_JSON:
        return json.loads(json.dumps(value, sort_keys=True, default=str))
    raise ValueKindError(f"unknown value kind: {kind}")


def encode_value(kind: str, value: Any) -> str | None:
    value = normalize_value(kind, value)
    if value is None:
        return None
    if kind == KIND_DECIMAL:
        return f"{value:.2f}"
    if kind == KIND_INT:
        return str(value)
    if kind == KIND_BOOL:
        return "true" if value else "false"
    if kind == KIND_TEXT:
        return value
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def decode_value(kind: str, text: str | None) -> Any:
    if text is None:
        return None
    if kind == KIND_DECIMAL:
        return to_price(text)
    if kind == KIND_INT:
        return int(text)
    if kind == KIND_BOOL:
        if text not in {"true", "false"}:
            raise ValueKindError(f"not a boolean: {text!r}")
        return text == "true"
    if kind == KIND_TEXT:
        return text
    if kind == KIND_JSON:
        return json.loads(text)
    raise ValueKindError(f"unknown value kind: {kind}")
