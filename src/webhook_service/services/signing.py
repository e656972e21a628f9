"""Payload signing for outgoing webhook requests."""
from __future__ import annotations

import hmac
import json
from hashlib import sha256
from typing import Any

SIGNATURE_PREFIX = "sha256="


def encode_body(body: dict[str, Any]) -> bytes:
    """Canonical JSON encoding; the signature is computed over these exact bytes."""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign(secret: str, body_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(secret: str, body_bytes: bytes, signature: str) -> bool:
    """Receiver-side check, constant time."""
    return hmac.compare_digest(sign(secret, body_bytes), signature)
