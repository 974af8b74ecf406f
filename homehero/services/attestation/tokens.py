from __future__ import annotations

import base64
import hashlib
import json
from typing import Any

from jose import jwt
from jose.exceptions import JOSEError


def normalize_token(raw: str | None) -> str | None:
    """Accept either a raw token or ``Bearer <token>``."""
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    if trimmed.lower().startswith("bearer "):
        rest = trimmed[len("bearer ") :].strip()
        return rest or None
    return trimmed


def is_likely_jwt(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def decode_base64url_json(segment: str) -> Any:
    padded = segment + "=" * (-len(segment) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    return json.loads(raw.decode("utf-8"))


def read_unverified_claims(token: str) -> dict[str, Any]:
    """Claims of a JWT or single-segment base64url JSON token, without any signature check."""
    if is_likely_jwt(token):
        try:
            claims = jwt.get_unverified_claims(token)
        except JOSEError:
            return {}
        return claims if isinstance(claims, dict) else {}

    if "." in token:
        return {}
    try:
        claims = decode_base64url_json(token)
    except (ValueError, UnicodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


def extract_device_hint(token: str) -> str:
    claims = read_unverified_claims(token)
    for key in ("deviceId", "sub", "keyId"):
        value = claims.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return "unknown"
