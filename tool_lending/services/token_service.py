from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def issue_token(secret: str, payload: dict[str, Any], ttl_seconds: int, now: float | None = None) -> str:
    issued_at = time.time() if now is None else now
    body = dict(payload)
    body["expiresAt"] = issued_at + ttl_seconds
    encoded = _b64encode(json.dumps(body, ensure_ascii=True, separators=(",", ":")).encode("utf-8"))
    signature = hmac.new(secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def read_token(secret: str, token: str | None, now: float | None = None) -> dict[str, Any] | None:
    """Return the token payload, or None when it is malformed, forged or expired."""
    if not token or "." not in token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        payload = json.loads(_b64decode(encoded).decode("utf-8"))
    except ValueError:
        # binascii.Error, UnicodeError and JSONDecodeError all derive from ValueError.
        return None

    if not isinstance(payload, dict):
        return None
    try:
        expires_at = float(payload.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if (time.time() if now is None else now) >= expires_at:
        return None
    return payload
