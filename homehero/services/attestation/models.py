from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol


class Platform(str, Enum):
    ANDROID = "android"
    IOS = "ios"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


def parse_platform(value: Any) -> Platform:
    normalized = str(value or "").strip().lower()
    try:
        return Platform(normalized)
    except ValueError:
        return Platform.UNKNOWN


def parse_risk_level(value: Any) -> RiskLevel:
    normalized = str(value or "").strip().lower()
    try:
        return RiskLevel(normalized)
    except ValueError:
        return RiskLevel.UNKNOWN


class AttestationError(Exception):
    """Verification rejected the token. ``code`` is for logs; clients get a generic message."""

    def __init__(self, message: str, status_code: int = 401, code: str = "ATTESTATION_INVALID") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class AttestationUnavailableError(AttestationError):
    """The verifier could not reach a decision (missing configuration or upstream failure)."""

    def __init__(self, message: str, code: str = "ATTESTATION_UNAVAILABLE") -> None:
        super().__init__(message, status_code=503, code=code)


@dataclass(slots=True)
class AttestationInfo:
    platform: Platform
    device_id: str
    issued_at: datetime
    risk_level: RiskLevel

    def to_dict(self) -> dict[str, str]:
        return {
            "platform": self.platform.value,
            "device_id": self.device_id,
            "issued_at": self.issued_at.isoformat(),
            "risk_level": self.risk_level.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AttestationInfo:
        issued_at = datetime.fromisoformat(str(payload["issued_at"]))
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return cls(
            platform=parse_platform(payload.get("platform")),
            device_id=str(payload.get("device_id") or "unknown"),
            issued_at=issued_at,
            risk_level=parse_risk_level(payload.get("risk_level")),
        )


@dataclass(slots=True)
class AttestationVerdict:
    attested: bool
    attestation: AttestationInfo | None = None
    cached: bool = False

    def to_cache_dict(self) -> dict[str, Any]:
        return {
            "attested": self.attested,
            "attestation": self.attestation.to_dict() if self.attestation is not None else None,
        }

    @classmethod
    def from_cache_dict(cls, payload: dict[str, Any]) -> AttestationVerdict:
        raw_info = payload.get("attestation")
        return cls(
            attested=bool(payload.get("attested")),
            attestation=AttestationInfo.from_dict(raw_info) if isinstance(raw_info, dict) else None,
            cached=True,
        )


class AttestationVerifier(Protocol):
    async def verify(self, token: str, *, expected_nonce: str | None = None) -> AttestationInfo: ...
