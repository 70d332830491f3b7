import asyncio
from decimal import Decimal

import httpx
import pytest

from app.services import catalog_client
from app.services.catalog_client import (
    CatalogClient,
    CatalogItemError,
    CatalogUnavailableError,
    CatalogValidationError,
    parse_source_product,
)

BASE_URL = "https://catalog.test/v1"


def _summary(product_id: int, name: str = "Tee") -> dict:
    return {
        "id": product_id,
        "name": name,
        "thumbnail_url": f"https://cdn.test/{product_id}.png",
        "is_ignored": False,
    }


def _client(handler) -> CatalogClient:
    return CatalogClient(
        base_url=BASE_URL,
        api_key="secret",
        store_id="77",
        page_size=2,
        transport=httpx.MockTransport(handler),
    )


def test_fetch_products_walks_every_page() -> None:
    pages = {
        0: [_summary(1), _summary(2)],
        2: [_summary(3)],
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        offset = int(request.url.params["offset"])
        return httpx.Response(
            200, json={"result": pages[offset], "paging": {"total": 3, "offset": offset}}
        )

    products = asyncio.run(_client(handler).fetch_products())

    assert [product.source_id for product in products] == ["1", "2", "3"]
    assert all(product.variants is None for product in products)
    assert [request.url.params["offset"] for request in seen] == ["0", "2"]
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert seen[0].headers["X-PF-Store-Id"] == "77"


def test_rejected_credentials_make_the_catalog_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "unauthorized"})

    with pytest.raises(CatalogUnavailableError):
        asyncio.run(_client(handler).fetch_categories())


def test_missing_product_is_an_item_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    with pytest.raises(CatalogItemError) as excinfo:
        asyncio.run(_client(handler).fetch_product("55"))
    assert excinfo.value.source_id == "55"


def test_rate_limit_is_retried(monkeypatch) -> None:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(catalog_client.asyncio, "sleep", fake_sleep)
    responses = iter(
        [
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json={"result": {"categories": [{"id": 5, "title": "Hats"}]}}),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    categories = asyncio.run(_client(handler).fetch_categories())

    assert [(category.source_id, category.name) for category in categories] == [("5", "Hats")]
    assert delays == [2.0]


def test_fetch_product_parses_variants() -> None:
    payload = {
        "result": {
            "sync_product": {"id": 9, "name": " Mug ", "thumbnail_url": "https://cdn.test/9.png"},
            "sync_variants": [
                {
                    "id": 91,
                    "name": "Mug / 11oz",
                    "sku": "MUG-11",
                    "retail_price": "12.50",
                    "options": [{"id": "size", "value": "11oz"}],
                }
            ],
        }
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/store/products/9")
        return httpx.Response(200, json=payload)

    product = asyncio.run(_client(handler).fetch_product("9"))

    assert product.name == "Mug"
    assert product.effective_price == Decimal("12.50")
    assert product.image_urls == ["https://cdn.test/9.png"]
    assert product.variants[0].options == {"size": "11oz"}


def test_invalid_price_is_rejected() -> None:
    with pytest.raises(CatalogValidationError):
        parse_source_product({"id": 3, "name": "Cap", "price": "free"})


def test_transport_error_on_detail_is_an_item_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset", request=request)

    with pytest.raises(CatalogItemError) as excinfo:
        asyncio.run(_client(handler).fetch_product("55"))
    assert excinfo.value.source_id == "55"
    with pytest.raises(CatalogUnavailableError):
        asyncio.run(_client(handler).fetch_products())


def test_unparseable_listing_row_is_kept_as_failed_item() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [_summary(1), {"id": 2, "name": "Cap", "price": "not-a-price"}]
        return httpx.Response(200, json={"result": rows, "paging": {"total": 2}})

    products = asyncio.run(_client(handler).fetch_products())

    assert [(p.source_id, p.parse_error is None) for p in products] == [("1", True), ("2", False)]
    assert "invalid price" in products[1].parse_error
