from __future__ import annotations

import ipaddress

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.services.catalog_client import CatalogClient, CatalogSource


class InvalidApiTokenError(Exception):
    def __init__(self, api_token: str) -> None:
        super().__init__("Invalid API token")
        self.api_token = api_token


def require_service_key(api_key: str | None = Header(default=None)) -> None:
    token = api_key or ""
    if token != settings.SERVICE_API_KEY:
        raise InvalidApiTokenError(token)


def require_operator(
    x_operator: str | None = Header(default=None),
    _: None = Depends(require_service_key),
) -> str:
    """Name recorded as ``reviewed_by`` and audit actor for operator actions."""
    operator = (x_operator or "").strip()
    return operator or "operator"


async def get_request_ip(request: Request) -> str | None:
    def _valid_ip(raw: str | None) -> str | None:
        if not raw:
            return None
        try:
            return str(ipaddress.ip_address(raw.strip()))
        except ValueError:
            return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            for candidate in forwarded.split(","):
                parsed = _valid_ip(candidate)
                if parsed:
                    return parsed
        real_ip = _valid_ip(request.headers.get("x-real-ip"))
        if real_ip:
            return real_ip

    if request.client:
        return _valid_ip(request.client.host)
    return None


def get_catalog_source() -> CatalogSource:
    return CatalogClient()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal
