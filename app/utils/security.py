from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an HMAC-SHA256 hex digest of the raw webhook body."""
    if not signature:
        return False
    cleaned = signature.strip().removeprefix(SIGNATURE_PREFIX).lower()
    return hmac.compare_digest(sign_payload(secret, body), cleaned)
