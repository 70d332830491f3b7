from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

import httpx
import structlog

from app.core.config import settings
from app.services.change_values import ValueKindError, normalize_text, to_price

logger = structlog.get_logger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0
UNAVAILABLE_STATUS_CODES = {401, 403}


class CatalogError(Exception):
    pass


class CatalogUnavailableError(CatalogError):
    """The source catalog cannot be reached or refuses our credentials."""


class CatalogItemError(CatalogError):
    def __init__(self, message: str, source_id: str | None = None) -> None:
        super().__init__(message)
        self.source_id = source_id


class CatalogValidationError(CatalogItemError):
    pass


@dataclass
class SourceCategory:
    source_id: str
    name: str
    parent_id: str | None = None


@dataclass
class SourceVariant:
    source_id: str
    name: str | None
    sku: str | None
    price: Decimal | None
    options: dict[str, str] = field(default_factory=dict)


@dataclass
class SourceProduct:
    source_id: str
    name: str | None
    price: Decimal | None = None
    description: str | None = None
    is_active: bool = True
    image_urls: list[str] = field(default_factory=list)
    # None means the listing only carried a summary; fetch the detail per item.
    variants: list[SourceVariant] | None = None
    # set on listing rows that could not be parsed; the run counts them as failed items
    parse_error: str | None = None

    @property
    def effective_price(self) -> Decimal | None:
        if self.price is not None:
            return self.price
        if self.variants:
            return self.variants[0].price
        return None


class CatalogSource(Protocol):
    async def fetch_categories(self) -> list[SourceCategory]: ...

    async def fetch_products(self) -> list[SourceProduct]: ...

    async def fetch_product(self, source_id: str) -> SourceProduct: ...


def _source_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    cleaned = str(value).strip()
    return cleaned or None


def parse_source_category(payload: Any) -> SourceCategory:
    if not isinstance(payload, dict):
        raise CatalogValidationError("category payload is not an object")
    source_id = _source_id(payload.get("id"))
    name = normalize_text(payload.get("title") or payload.get("name"))
    if not source_id or not name:
        raise CatalogValidationError("category is missing id or title", source_id)
    parent_id = _source_id(payload.get("parent_id"))
    if parent_id == "0":
        parent_id = None
    return SourceCategory(source_id=source_id, name=name, parent_id=parent_id)


def _parse_options(value: Any) -> dict[str, str]:
    options: dict[str, str] = {}
    if isinstance(value, dict):
        for key, item in value.items():
            if item is not None:
                options[str(key)] = str(item)
    elif isinstance(value, list):
        for item in value:
            if not isinstance(item, dict):
                continue
            key = item.get("id") or item.get("name")
            if key is None or item.get("value") is None:
                continue
            options[str(key)] = str(item["value"])
    return options


def parse_source_variant(payload: Any, product_id: str | None = None) -> SourceVariant:
    if not isinstance(payload, dict):
        raise CatalogValidationError("variant payload is not an object", product_id)
    source_id = _source_id(payload.get("id"))
    if not source_id:
        raise CatalogValidationError("variant is missing id", product_id)
    try:
        price = to_price(payload.get("retail_price", payload.get("price")))
    except ValueKindError as exc:
        raise CatalogValidationError(
            f"variant {source_id} has an invalid price", product_id
        ) from exc
    return SourceVariant(
        source_id=source_id,
        name=normalize_text(payload.get("name")),
        sku=normalize_text(payload.get("sku")),
        price=price,
        options=_parse_options(payload.get("options")),
    )


def _parse_images(payload: dict[str, Any]) -> list[str]:
    images: list[str] = []
    raw = payload.get("image_urls")
    if isinstance(raw, list):
        images.extend(str(item).strip() for item in raw if item)
    thumbnail = normalize_text(payload.get("thumbnail_url"))
    if thumbnail and thumbnail not in images:
        images.append(thumbnail)
    return [item for item in images if item]


def parse_source_product(payload: Any) -> SourceProduct:
    """Parse a listing summary or a detail payload with nested sync variants."""
    if not isinstance(payload, dict):
        raise CatalogValidationError("product payload is not an object")
    body = payload.get("sync_product") if "sync_product" in payload else payload
    if not isinstance(body, dict):
        raise CatalogValidationError("product payload is not an object")
    source_id = _source_id(body.get("id"))
    if not source_id:
        raise CatalogValidationError("product is missing id")

    variants: list[SourceVariant] | None = None
    raw_variants = payload.get("sync_variants", body.get("sync_variants"))
    if isinstance(raw_variants, list):
        variants = [parse_source_variant(item, source_id) for item in raw_variants]

    try:
        price = to_price(body.get("price"))
    except ValueKindError as exc:
        raise CatalogValidationError("product has an invalid price", source_id) from exc

    return SourceProduct(
        source_id=source_id,
        name=normalize_text(body.get("name")),
        price=price,
        description=normalize_text(body.get("description")),
        is_active=not bool(body.get("is_ignored", False)),
        image_urls=_parse_images(body),
        variants=variants,
    )


class CatalogClient:
    """Async adapter over the fulfillment provider's REST catalog."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        store_id: str | None = None,
        page_size: int | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.CATALOG_API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.CATALOG_API_KEY
        self.store_id = store_id if store_id is not None else settings.CATALOG_STORE_ID
        self.page_size = page_size or settings.CATALOG_PAGE_SIZE
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SEC
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "catalog-sync/1.0",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.store_id:
            headers["X-PF-Store-Id"] = self.store_id
        return headers

    async def _get(
        self,
        client: httpx.AsyncClient,
        path: str,
        params: dict[str, Any] | None = None,
        item_id: str | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await client.get(url, params=params)
            except httpx.TimeoutException as exc:
                logger.warning("catalog_request_timeout", path=path, item_id=item_id)
                if item_id is not None:
                    raise CatalogItemError(f"timeout fetching {path}", item_id) from exc
                raise CatalogUnavailableError(f"timeout fetching {path}") from exc
            except httpx.TransportError as exc:
                logger.error("catalog_unreachable", path=path, item_id=item_id, error=str(exc))
                if item_id is not None:
                    raise CatalogItemError(
                        f"transport error fetching {path}: {exc}", item_id
                    ) from exc
                raise CatalogUnavailableError(f"catalog unreachable: {exc}") from exc

            if response.status_code == 429 and attempt < MAX_RETRIES:
                try:
                    retry_after = float(response.headers.get("Retry-After", RETRY_BASE_DELAY))
                except ValueError:
                    retry_after = RETRY_BASE_DELAY
                delay = max(retry_after, RETRY_BASE_DELAY * (2**attempt))
                logger.warning(
                    "catalog_rate_limited",
                    path=path,
                    attempt=attempt + 1,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                continue
            break

        if response.status_code in UNAVAILABLE_STATUS_CODES:
            logger.error("catalog_auth_failed", path=path, status_code=response.status_code)
            raise CatalogUnavailableError(
                f"catalog rejected credentials: {response.status_code}"
            )
        if response.status_code >= 400:
            body = (response.text or "")[:500]
            logger.warning(
                "catalog_request_failed",
                path=path,
                status_code=response.status_code,
                response=body,
            )
            if item_id is not None:
                raise CatalogItemError(
                    f"catalog returned {response.status_code} for {path}", item_id
                )
            raise CatalogUnavailableError(
                f"catalog returned {response.status_code} for {path}: {body}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            if item_id is not None:
                raise CatalogValidationError(f"invalid JSON from {path}", item_id) from exc
            raise CatalogUnavailableError(f"invalid JSON from {path}") from exc
        if isinstance(data, dict) and "result" in data:
            return data
        return {"result": data}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers=self._headers(),
            transport=self.transport,
        )

    async def fetch_categories(self) -> list[SourceCategory]:
        async with self._client() as client:
            data = await self._get(client, "/categories")
        result = data.get("result")
        raw = result.get("categories") if isinstance(result, dict) else result
        if not isinstance(raw, list):
            raise CatalogUnavailableError("categories response is not a list")
        categories: list[SourceCategory] = []
        for item in raw:
            try:
                categories.append(parse_source_category(item))
            except CatalogValidationError as exc:
                logger.warning("catalog_category_invalid", error=str(exc))
        return categories

    async def fetch_products(self) -> list[SourceProduct]:
        products: list[SourceProduct] = []
        offset = 0
        async with self._client() as client:
            while True:
                data = await self._get(
                    client,
                    "/store/products",
                    params={"offset": offset, "limit": self.page_size},
                )
                page = data.get("result")
                if not isinstance(page, list):
                    raise CatalogUnavailableError("products response is not a list")
                for item in page:
                    try:
                        products.append(parse_source_product(item))
                    except CatalogValidationError as exc:
                        logger.warning(
                            "catalog_product_invalid", source_id=exc.source_id, error=str(exc)
                        )
                        products.append(
                            SourceProduct(
                                source_id=exc.source_id or "",
                                name=None,
                                parse_error=str(exc),
                            )
                        )
                paging = data.get("paging") or {}
                total = paging.get("total")
                offset += len(page)
                if not page or total is None or offset >= int(total):
                    break
        return products

    async def fetch_product(self, source_id: str) -> SourceProduct:
        async with self._client() as client:
            data = await self._get(client, f"/store/products/{source_id}", item_id=source_id)
        product = parse_source_product(data.get("result"))
        if product.variants is None:
            product.variants = []
        return product
