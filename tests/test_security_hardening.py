import asyncio

import pytest
from starlette.requests import Request

from app.api.deps import InvalidApiTokenError, get_request_ip, require_service_key
from app.core.config import settings
from app.utils.security import sign_payload, verify_signature


def _build_request(
    *,
    headers: dict[str, str] | None = None,
    client_host: str = "127.0.0.1",
) -> Request:
    encoded_headers = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": encoded_headers,
        "client": (client_host, 12345),
    }
    return Request(scope)


def test_signature_accepts_matching_digest() -> None:
    body = b'{"type":"product_updated"}'
    assert verify_signature("s3cret", body, sign_payload("s3cret", body))
    assert verify_signature("s3cret", body, "sha256=" + sign_payload("s3cret", body).upper())


def test_signature_rejects_tampered_body_or_missing_header() -> None:
    body = b'{"type":"product_updated"}'
    signature = sign_payload("s3cret", body)
    assert not verify_signature("s3cret", body + b" ", signature)
    assert not verify_signature("other", body, signature)
    assert not verify_signature("s3cret", body, None)


def test_service_key_must_match() -> None:
    require_service_key(settings.SERVICE_API_KEY)
    with pytest.raises(InvalidApiTokenError):
        require_service_key("wrong")
    with pytest.raises(InvalidApiTokenError):
        require_service_key(None)


def test_request_ip_ignores_forwarded_by_default(monkeypatch) -> None:
    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", False)
    request = _build_request(
        headers={"x-forwarded-for": "1.1.1.1, 2.2.2.2"},
        client_host="127.0.0.1",
    )
    assert asyncio.run(get_request_ip(request)) == "127.0.0.1"


def test_request_ip_uses_forwarded_when_enabled(monkeypatch) -> None:
    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", True)
    request = _build_request(
        headers={"x-forwarded-for": "not-an-ip, 1.1.1.1, 2.2.2.2"},
        client_host="127.0.0.1",
    )
    assert asyncio.run(get_request_ip(request)) == "1.1.1.1"
