from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from homehero.core.config import Settings
from homehero.services.attestation.models import (
    AttestationError,
    AttestationInfo,
    AttestationUnavailableError,
    parse_platform,
    parse_risk_level,
)

CLOCK_SKEW_LEEWAY_SECONDS = 30


def parse_public_keys(raw: str | None) -> dict[str, str]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(kid): value for kid, value in parsed.items() if isinstance(value, str) and value.strip()}


class SignedTokenVerifier:
    """Legacy attestation: a JWT signed by our own attestation service.

    Keys are selected by ``kid`` when a key set is configured, otherwise the
    single PEM is used.
    """

    def __init__(
        self,
        *,
        public_keys: dict[str, str] | None = None,
        public_key_pem: str | None = None,
        algorithm: str = "RS256",
        issuer: str | None = None,
        audience: str | None = None,
    ) -> None:
        self.public_keys = public_keys or {}
        self.public_key_pem = (public_key_pem or "").strip() or None
        self.algorithm = algorithm
        self.issuer = issuer or None
        self.audience = audience or None

    @classmethod
    def from_settings(cls, settings: Settings) -> SignedTokenVerifier:
        return cls(
            public_keys=parse_public_keys(settings.attestation_public_keys_json),
            public_key_pem=settings.attestation_public_key_pem,
            algorithm=settings.attestation_jwt_algorithm,
            issuer=settings.attestation_issuer,
            audience=settings.attestation_audience,
        )

    @property
    def configured(self) -> bool:
        return bool(self.public_keys) or self.public_key_pem is not None

    def _select_key(self, token: str) -> str:
        if not self.configured:
            raise AttestationUnavailableError("no attestation keys configured", code="ATTESTATION_NOT_CONFIGURED")
        if not self.public_keys:
            return self.public_key_pem  # type: ignore[return-value]

        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as exc:
            raise AttestationError("malformed attestation token", code="ATTESTATION_MALFORMED") from exc
        kid = header.get("kid")
        if isinstance(kid, str) and kid in self.public_keys:
            return self.public_keys[kid]
        if kid is None and self.public_key_pem is not None:
            return self.public_key_pem
        raise AttestationError("unknown attestation key id", code="ATTESTATION_KID_UNKNOWN")

    async def verify(self, token: str, *, expected_nonce: str | None = None) -> AttestationInfo:
        key = self._select_key(token)
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={
                    "verify_aud": self.audience is not None,
                    "require_exp": True,
                    "require_iat": True,
                    "leeway": CLOCK_SKEW_LEEWAY_SECONDS,
                },
            )
        except ExpiredSignatureError as exc:
            raise AttestationError("attestation token expired", code="ATTESTATION_EXPIRED") from exc
        except JWTClaimsError as exc:
            raise AttestationError("attestation claims rejected", code="ATTESTATION_CLAIMS") from exc
        except JOSEError as exc:
            raise AttestationError("attestation signature invalid", code="ATTESTATION_SIGNATURE") from exc

        nonce = (expected_nonce or "").strip()
        if nonce and str(claims.get("nonce") or "").strip() != nonce:
            raise AttestationError("nonce mismatch", code="ATTESTATION_NONCE_MISMATCH")

        device_id = claims.get("deviceId") or claims.get("sub")
        if not isinstance(device_id, str) or not device_id.strip():
            raise AttestationError("attestation token missing device id", code="ATTESTATION_NO_DEVICE")

        issued_at = claims.get("iat")
        return AttestationInfo(
            platform=parse_platform(claims.get("platform") or claims.get("plat")),
            device_id=device_id.strip(),
            issued_at=datetime.fromtimestamp(float(issued_at), tz=timezone.utc),
            risk_level=parse_risk_level(claims.get("riskLevel") or claims.get("risk")),
        )
