from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from homehero.core.config import Settings
from homehero.services.attestation.models import (
    AttestationError,
    AttestationInfo,
    AttestationUnavailableError,
    Platform,
    RiskLevel,
)
from homehero.services.attestation.play_integrity import parse_comma_list
from homehero.services.attestation.tokens import decode_base64url_json


@dataclass(slots=True)
class AppAttestClaims:
    bundle_id: str
    key_id: str
    timestamp_ms: float
    nonce: str | None = None
    attestation_object_b64: str | None = None
    assertion_b64: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bundleId": self.bundle_id,
            "keyId": self.key_id,
            "timestampMs": self.timestamp_ms,
            "nonce": self.nonce,
            "attestationObjectB64": self.attestation_object_b64,
            "assertionB64": self.assertion_b64,
        }


def parse_app_attest_claims(token: str) -> AppAttestClaims:
    """Claims from a base64url JSON token or the payload segment of a JWT-shaped token."""
    parts = token.strip().split(".")
    if len(parts) == 3:
        segment = parts[1]
    elif len(parts) == 1:
        segment = parts[0]
    else:
        raise AttestationError("invalid token format", code="IOS_ATTEST_FORMAT")

    try:
        payload = decode_base64url_json(segment)
    except (ValueError, UnicodeError) as exc:
        raise AttestationError("invalid token payload", code="IOS_ATTEST_BAD_PAYLOAD") from exc
    if not isinstance(payload, dict):
        raise AttestationError("invalid token payload", code="IOS_ATTEST_BAD_PAYLOAD")

    bundle_id = str(payload.get("bundleId") or payload.get("bundleID") or payload.get("appId") or "").strip()
    key_id = str(payload.get("keyId") or payload.get("keyID") or payload.get("kid") or "").strip()
    raw_timestamp = payload.get("timestampMs", payload.get("timestampMillis", payload.get("ts")))
    try:
        timestamp_ms = float(raw_timestamp)
    except (TypeError, ValueError):
        timestamp_ms = 0.0
    if not math.isfinite(timestamp_ms):
        timestamp_ms = 0.0
    nonce = payload.get("nonce").strip() if isinstance(payload.get("nonce"), str) else None

    if not bundle_id:
        raise AttestationError("missing bundle id", code="IOS_ATTEST_NO_BUNDLE")
    if not key_id:
        raise AttestationError("missing key id", code="IOS_ATTEST_NO_KEY_ID")

    return AppAttestClaims(
        bundle_id=bundle_id,
        key_id=key_id,
        timestamp_ms=timestamp_ms,
        nonce=nonce or None,
        attestation_object_b64=payload.get("attestationObjectB64") if isinstance(payload.get("attestationObjectB64"), str) else None,
        assertion_b64=payload.get("assertionB64") if isinstance(payload.get("assertionB64"), str) else None,
    )


class AppAttestVerifier:
    """iOS App Attest: local policy checks, then a remote verification service for the cryptography."""

    def __init__(
        self,
        *,
        bundle_id: str | None,
        allowed_key_ids: str | None,
        verify_url: str | None,
        verify_auth_header: str | None = None,
        max_token_age_seconds: int = 300,
        max_future_skew_seconds: int = 60,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bundle_id = (bundle_id or "").strip()
        raw_key_ids = (allowed_key_ids or "").strip()
        self.allow_any_key_id = raw_key_ids == "*"
        self.allowed_key_ids = set() if self.allow_any_key_id else set(parse_comma_list(raw_key_ids))
        self.verify_url = (verify_url or "").strip()
        self.verify_auth_header = (verify_auth_header or "").strip()
        self.max_token_age_seconds = max(1, max_token_age_seconds)
        self.max_future_skew_seconds = max(0, max_future_skew_seconds)
        self.timeout_seconds = timeout_seconds
        self.client = client
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> AppAttestVerifier:
        return cls(
            bundle_id=settings.app_attest_bundle_id,
            allowed_key_ids=settings.app_attest_allowed_key_ids,
            verify_url=settings.app_attest_verify_url,
            verify_auth_header=settings.app_attest_verify_auth_header,
            max_token_age_seconds=settings.app_attest_max_token_age_seconds,
            max_future_skew_seconds=settings.app_attest_max_future_skew_seconds,
            timeout_seconds=settings.attestation_timeout_seconds,
            client=client,
        )

    async def verify(self, token: str, *, expected_nonce: str | None = None) -> AttestationInfo:
        if not token or not token.strip():
            raise AttestationError("missing App Attest token", code="IOS_ATTEST_MISSING_TOKEN")
        if not self.bundle_id:
            raise AttestationUnavailableError("bundle id not configured", code="IOS_ATTEST_NOT_CONFIGURED")
        if not self.allow_any_key_id and not self.allowed_key_ids:
            raise AttestationUnavailableError("allowed key ids not configured", code="IOS_ATTEST_NOT_CONFIGURED")

        claims = parse_app_attest_claims(token)
        if claims.bundle_id != self.bundle_id:
            raise AttestationError("bundle id mismatch", code="IOS_ATTEST_BUNDLE_MISMATCH")
        if not self.allow_any_key_id and claims.key_id not in self.allowed_key_ids:
            raise AttestationError("key id not allowed", code="IOS_ATTEST_KEY_ID_NOT_ALLOWED")
        self._require_fresh(claims.timestamp_ms)

        nonce = (expected_nonce or "").strip()
        if nonce:
            if not claims.nonce:
                raise AttestationError("missing nonce", code="IOS_ATTEST_NO_NONCE")
            if claims.nonce != nonce:
                raise AttestationError("nonce mismatch", code="IOS_ATTEST_NONCE_MISMATCH")

        result = await self._verify_remote(token.strip(), claims)
        if not bool(result.get("verified")):
            failure_code = result.get("failureCode")
            raise AttestationError(
                "provider rejected token",
                code=failure_code if isinstance(failure_code, str) and failure_code else "IOS_ATTEST_PROVIDER_REJECTED",
            )

        device_hint = result.get("deviceIdHint")
        device_id = f"ios:{device_hint}" if isinstance(device_hint, str) and device_hint else f"key:{claims.key_id}"
        return AttestationInfo(
            platform=Platform.IOS,
            device_id=device_id,
            issued_at=datetime.fromtimestamp(claims.timestamp_ms / 1000, tz=timezone.utc),
            risk_level=RiskLevel.LOW,
        )

    def _require_fresh(self, timestamp_ms: float) -> None:
        if not math.isfinite(timestamp_ms) or timestamp_ms <= 0:
            raise AttestationError("missing timestamp", code="IOS_ATTEST_NO_TIMESTAMP")
        now_ms = self.clock() * 1000
        if timestamp_ms > now_ms + self.max_future_skew_seconds * 1000:
            raise AttestationError("timestamp in the future", code="IOS_ATTEST_TIMESTAMP_FUTURE")
        if now_ms - timestamp_ms > self.max_token_age_seconds * 1000:
            raise AttestationError("token too old", code="IOS_ATTEST_STALE")

    async def _verify_remote(self, token: str, claims: AppAttestClaims) -> dict[str, Any]:
        if not self.verify_url:
            raise AttestationUnavailableError("verify url not configured", code="IOS_ATTEST_PROVIDER_NOT_CONFIGURED")

        headers = {"Authorization": self.verify_auth_header} if self.verify_auth_header else None
        body = {"token": token, "claims": claims.to_dict()}
        try:
            if self.client is not None:
                response = await self.client.post(self.verify_url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.verify_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise AttestationUnavailableError(
                f"provider request failed: {type(exc).__name__}",
                code="IOS_ATTEST_PROVIDER_UNAVAILABLE",
            ) from exc

        if response.status_code >= 500:
            raise AttestationUnavailableError(
                f"provider returned {response.status_code}",
                code="IOS_ATTEST_PROVIDER_UNAVAILABLE",
            )
        if response.status_code >= 400:
            raise AttestationError(f"provider returned {response.status_code}", code="IOS_ATTEST_PROVIDER_ERROR")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AttestationError("provider returned non-JSON body", code="IOS_ATTEST_PROVIDER_ERROR") from exc
        return payload if isinstance(payload, dict) else {}
