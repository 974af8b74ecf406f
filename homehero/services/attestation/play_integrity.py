from __future__ import annotations

import asyncio
import json
import math
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from homehero.core.config import Settings
from homehero.services.attestation.models import (
    AttestationError,
    AttestationInfo,
    AttestationUnavailableError,
    Platform,
    RiskLevel,
)

PLAY_INTEGRITY_SCOPE = "https://www.googleapis.com/auth/playintegrity"
DECODE_URL_TEMPLATE = "https://playintegrity.googleapis.com/v1/{package}:decodeIntegrityToken"


def parse_comma_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class PlayIntegrityVerifier:
    """Android verdicts via Google's ``decodeIntegrityToken`` API.

    Access tokens come from service-account credentials (google-auth), refreshed
    only once expired. The decoded verdict is then checked against the package,
    signing certificates, device integrity, Play recognition, licensing,
    freshness and nonce policy.
    """

    def __init__(
        self,
        *,
        package_name: str | None,
        cert_digests: list[str],
        service_account_json: str | None,
        max_token_age_seconds: int = 300,
        max_future_skew_seconds: int = 60,
        allowed_device_verdicts: list[str] | None = None,
        require_play_recognized: bool = True,
        require_licensed: bool = False,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
        credentials: Credentials | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.package_name = (package_name or "").strip()
        self.cert_digests = cert_digests
        self.service_account_json = service_account_json
        self.max_token_age_seconds = max(1, max_token_age_seconds)
        self.max_future_skew_seconds = max(0, max_future_skew_seconds)
        self.allowed_device_verdicts = allowed_device_verdicts or ["MEETS_DEVICE_INTEGRITY", "MEETS_STRONG_INTEGRITY"]
        self.require_play_recognized = require_play_recognized
        self.require_licensed = require_licensed
        self.timeout_seconds = timeout_seconds
        self.client = client
        self.clock = clock
        self._credentials = credentials

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> PlayIntegrityVerifier:
        return cls(
            package_name=settings.play_integrity_package_name,
            cert_digests=parse_comma_list(settings.play_integrity_cert_digests),
            service_account_json=settings.play_integrity_service_account_json,
            max_token_age_seconds=settings.play_integrity_max_token_age_seconds,
            max_future_skew_seconds=settings.play_integrity_max_future_skew_seconds,
            allowed_device_verdicts=parse_comma_list(settings.play_integrity_allowed_device_verdicts),
            require_play_recognized=settings.play_integrity_require_play_recognized,
            require_licensed=settings.play_integrity_require_licensed,
            timeout_seconds=settings.attestation_timeout_seconds,
            client=client,
        )

    async def verify(self, token: str, *, expected_nonce: str | None = None) -> AttestationInfo:
        if not token or not token.strip():
            raise AttestationError("missing Play Integrity token", code="PLAY_INTEGRITY_MISSING_TOKEN")
        if not self.package_name:
            raise AttestationUnavailableError("package name not configured", code="PLAY_INTEGRITY_NOT_CONFIGURED")
        if not self.cert_digests:
            raise AttestationUnavailableError("cert digests not configured", code="PLAY_INTEGRITY_NOT_CONFIGURED")

        verdict = await self._decode(token.strip())
        request_details = _as_dict(verdict.get("requestDetails"))
        app_integrity = _as_dict(verdict.get("appIntegrity"))
        device_integrity = _as_dict(verdict.get("deviceIntegrity"))
        account_details = _as_dict(verdict.get("accountDetails"))

        package_name = str(request_details.get("requestPackageName") or "").strip()
        if not package_name:
            raise AttestationError("verdict missing package name", code="PLAY_INTEGRITY_NO_PACKAGE")
        if package_name != self.package_name:
            raise AttestationError("verdict package mismatch", code="PLAY_INTEGRITY_PACKAGE_MISMATCH")

        timestamp_ms = _parse_timestamp_ms(request_details.get("timestampMillis"))
        self._require_fresh(timestamp_ms)

        digests = _as_str_list(app_integrity.get("certificateSha256Digest"))
        if not set(digests) & set(self.cert_digests):
            raise AttestationError("certificate digest mismatch", code="PLAY_INTEGRITY_CERT_MISMATCH")

        device_verdicts = _as_str_list(device_integrity.get("deviceRecognitionVerdict"))
        if not set(device_verdicts) & set(self.allowed_device_verdicts):
            raise AttestationError("device integrity not met", code="PLAY_INTEGRITY_DEVICE_NOT_TRUSTED")

        if self.require_play_recognized:
            if str(app_integrity.get("appRecognitionVerdict") or "").strip() != "PLAY_RECOGNIZED":
                raise AttestationError("app not recognized", code="PLAY_INTEGRITY_APP_NOT_RECOGNIZED")

        if self.require_licensed:
            if str(account_details.get("appLicensingVerdict") or "").strip() != "LICENSED":
                raise AttestationError("app not licensed", code="PLAY_INTEGRITY_NOT_LICENSED")

        actual_nonce = str(request_details.get("nonce") or "").strip()
        nonce = (expected_nonce or "").strip()
        if nonce:
            if not actual_nonce:
                raise AttestationError("verdict missing nonce", code="PLAY_INTEGRITY_NO_NONCE")
            if actual_nonce != nonce:
                raise AttestationError("nonce mismatch", code="PLAY_INTEGRITY_NONCE_MISMATCH")

        # No stable per-device id is exposed; a nonce prefix is kept for correlation only.
        device_id = f"nonce:{actual_nonce[:16]}" if actual_nonce else "play-integrity"
        return AttestationInfo(
            platform=Platform.ANDROID,
            device_id=device_id,
            issued_at=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc),
            risk_level=RiskLevel.LOW,
        )

    def _require_fresh(self, timestamp_ms: float) -> None:
        now_ms = self.clock() * 1000
        if timestamp_ms > now_ms + self.max_future_skew_seconds * 1000:
            raise AttestationError("verdict timestamp in the future", code="PLAY_INTEGRITY_TIMESTAMP_FUTURE")
        if now_ms - timestamp_ms > self.max_token_age_seconds * 1000:
            raise AttestationError("verdict too old", code="PLAY_INTEGRITY_STALE")

    async def _decode(self, token: str) -> dict[str, Any]:
        url = DECODE_URL_TEMPLATE.format(package=quote(self.package_name, safe=""))
        async with self._http() as client:
            access_token = await self._get_access_token()
            try:
                response = await client.post(
                    url,
                    json={"integrityToken": token},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.HTTPError as exc:
                raise AttestationUnavailableError(
                    f"decode request failed: {type(exc).__name__}",
                    code="PLAY_INTEGRITY_API_UNAVAILABLE",
                ) from exc

        if response.status_code >= 500:
            raise AttestationUnavailableError(
                f"decode returned {response.status_code}",
                code="PLAY_INTEGRITY_API_UNAVAILABLE",
            )
        if response.status_code >= 400:
            raise AttestationError(f"decode returned {response.status_code}", code="PLAY_INTEGRITY_API_ERROR")

        try:
            body = response.json()
        except ValueError as exc:
            raise AttestationError("decode returned non-JSON body", code="PLAY_INTEGRITY_BAD_RESPONSE") from exc
        verdict = body.get("tokenPayloadExternal") if isinstance(body, dict) else None
        if not isinstance(verdict, dict):
            raise AttestationError("decode response missing verdict", code="PLAY_INTEGRITY_BAD_RESPONSE")
        return verdict

    async def _get_access_token(self) -> str:
        credentials = self._credentials or self._load_credentials()
        if not credentials.valid:
            try:
                await asyncio.to_thread(credentials.refresh, GoogleAuthRequest())
            except GoogleAuthError as exc:
                raise AttestationUnavailableError(
                    f"OAuth refresh failed: {type(exc).__name__}",
                    code="PLAY_INTEGRITY_OAUTH_FAILED",
                ) from exc
        if not credentials.token:
            raise AttestationUnavailableError("OAuth refresh returned no token", code="PLAY_INTEGRITY_OAUTH_FAILED")
        return credentials.token

    def _load_credentials(self) -> Credentials:
        if not self.service_account_json:
            raise AttestationUnavailableError(
                "service account credentials not configured",
                code="PLAY_INTEGRITY_NOT_CONFIGURED",
            )
        try:
            info = json.loads(self.service_account_json)
            if not isinstance(info, dict):
                raise ValueError("service account JSON is not an object")
            credentials = service_account.Credentials.from_service_account_info(info, scopes=[PLAY_INTEGRITY_SCOPE])
        except ValueError as exc:
            raise AttestationUnavailableError(
                "service account JSON is invalid",
                code="PLAY_INTEGRITY_BAD_SERVICE_ACCOUNT",
            ) from exc
        self._credentials = credentials
        return credentials

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


def _parse_timestamp_ms(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise AttestationError("verdict missing timestamp", code="PLAY_INTEGRITY_NO_TIMESTAMP") from None
    if not math.isfinite(parsed) or parsed <= 0:
        raise AttestationError("verdict missing timestamp", code="PLAY_INTEGRITY_NO_TIMESTAMP")
    return parsed
