from __future__ import annotations

import json
from typing import Any

from fastapi import HTTPException

MAX_PAGE_SIZE = 200


def parse_filter(filter_param: str | None) -> dict[str, Any]:
    """Decode the admin UI's JSON ``filter`` query parameter."""
    if not filter_param:
        return {}
    try:
        parsed = json.loads(filter_param)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Invalid filter") from exc
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail="Filter must be a JSON object")
    return parsed


def page_bounds(skip: int, limit: int) -> tuple[int, int]:
    return max(skip, 0), min(max(limit, 1), MAX_PAGE_SIZE)


def list_response(items: list[Any], total: int) -> dict[str, Any]:
    return {"data": items, "total": total}
