from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request

from homehero.core.auth import Role
from homehero.core.config import Settings, get_settings
from homehero.core.network import client_address_for
from homehero.services.attestation.app_attest import AppAttestVerifier
from homehero.services.attestation.cache import AttestationDecisionCache
from homehero.services.attestation.models import (
    AttestationError,
    AttestationInfo,
    AttestationUnavailableError,
    AttestationVerdict,
    AttestationVerifier,
    Platform,
    parse_platform,
)
from homehero.services.attestation.play_integrity import PlayIntegrityVerifier
from homehero.services.attestation.signed_token import SignedTokenVerifier
from homehero.services.attestation.tokens import (
    extract_device_hint,
    is_likely_jwt,
    normalize_token,
    token_fingerprint,
)
from homehero.services.cache import get_cache_client
from homehero.services.rate_limit import (
    RateLimiter,
    RateLimitPolicy,
    RateLimitUnavailableError,
    resolve_identity,
)

logger = logging.getLogger(__name__)

PLATFORM_HEADER = "X-App-Platform"
TOKEN_HEADER = "X-App-Attestation"
NONCE_HEADER = "X-App-Attestation-Nonce"

ATTESTATION_REQUIRED_MESSAGE = "App attestation required"
ATTESTATION_FAILED_MESSAGE = "App attestation failed"
ATTESTATION_UNAVAILABLE_MESSAGE = "App attestation unavailable"
ATTESTATION_THROTTLED_MESSAGE = "Too many invalid attestation attempts. Please slow down."

FAILURE_BUCKET = "attestation_failures"
FAILURE_WINDOW_SECONDS = 60


class AttestationRejected(Exception):
    def __init__(self, status_code: int, message: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.headers = headers


@dataclass(slots=True)
class AttestationDecision:
    attested: bool
    attestation: AttestationInfo | None
    reason: str


@dataclass(slots=True)
class AttestationVerifiers:
    android: AttestationVerifier
    ios: AttestationVerifier
    signed_token: AttestationVerifier

    @classmethod
    def from_settings(cls, settings: Settings) -> AttestationVerifiers:
        return cls(
            android=PlayIntegrityVerifier.from_settings(settings),
            ios=AppAttestVerifier.from_settings(settings),
            signed_token=SignedTokenVerifier.from_settings(settings),
        )

    def for_request(self, platform: Platform, token: str) -> AttestationVerifier:
        if platform is Platform.ANDROID:
            return self.android
        if platform is Platform.IOS:
            return self.ios
        if is_likely_jwt(token):
            return self.signed_token
        raise AttestationError("unsupported attestation token/platform", code="ATTESTATION_UNSUPPORTED")


@lru_cache
def get_attestation_verifiers() -> AttestationVerifiers:
    # Process-wide so the Play Integrity OAuth token is reused between requests.
    return AttestationVerifiers.from_settings(get_settings())


class AttestationGate:
    """Decides whether a request carries a valid device attestation.

    Flow: enforcement off or a dev bypass lets the request through
    unattested; otherwise both headers are required, a cached verdict is
    reused when present, and a fresh verification result is cached on
    success. Verifier outages fail closed unless ``fail_open`` is set.
    Each rejection is counted per client through the rate limiter; past the
    failure limit the client gets 429 instead of 401 until the window ends.
    """

    def __init__(
        self,
        *,
        enforce: bool,
        is_production: bool,
        allow_unattested_dev: bool,
        fail_open: bool,
        verifiers: AttestationVerifiers,
        cache: AttestationDecisionCache,
        failure_limiter: RateLimiter | None = None,
        failure_limit: int = 25,
        trust_forwarded_for: bool = False,
        ipv6_prefix: int = 56,
    ) -> None:
        self.enforce = enforce
        self.is_production = is_production
        self.allow_unattested_dev = allow_unattested_dev
        self.fail_open = fail_open
        self.verifiers = verifiers
        self.cache = cache
        self.failure_limiter = failure_limiter
        self.failure_policy = RateLimitPolicy(
            bucket=FAILURE_BUCKET,
            window_seconds=FAILURE_WINDOW_SECONDS,
            limits={Role.UNKNOWN.value: max(1, failure_limit)},
        )
        self.trust_forwarded_for = trust_forwarded_for
        self.ipv6_prefix = ipv6_prefix

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        cache_client: redis.Redis | None,
        verifiers: AttestationVerifiers | None = None,
    ) -> AttestationGate:
        return cls(
            enforce=settings.attestation_enforce,
            is_production=settings.is_production,
            allow_unattested_dev=settings.allow_unattested_dev,
            fail_open=settings.attestation_fail_open,
            verifiers=verifiers or get_attestation_verifiers(),
            cache=AttestationDecisionCache(cache_client, prefix=settings.attestation_cache_prefix),
            failure_limiter=RateLimiter(cache_client, prefix=settings.rate_limit_prefix, fail_open=True),
            failure_limit=settings.attestation_failure_limit,
            trust_forwarded_for=settings.rate_limit_trust_forwarded_for,
            ipv6_prefix=settings.rate_limit_ipv6_prefix,
        )

    async def evaluate(self, request: Request) -> AttestationDecision:
        if not self.enforce:
            return AttestationDecision(attested=False, attestation=None, reason="enforcement_disabled")
        if not self.is_production and self.allow_unattested_dev:
            return AttestationDecision(attested=False, attestation=None, reason="dev_bypass")

        raw_platform = request.headers.get(PLATFORM_HEADER)
        token = normalize_token(request.headers.get(TOKEN_HEADER))
        identity = resolve_identity(
            None,
            client_address_for(request, trust_forwarded_for=self.trust_forwarded_for),
            ipv6_prefix=self.ipv6_prefix,
        )

        if not raw_platform or not raw_platform.strip() or token is None:
            logger.warning(
                "attestation missing method=%s path=%s platform=%s has_token=%s",
                request.method,
                request.url.path,
                raw_platform or "-",
                token is not None,
            )
            await self._record_failure(identity)
            raise AttestationRejected(401, ATTESTATION_REQUIRED_MESSAGE)

        platform = parse_platform(raw_platform)
        device_hint = extract_device_hint(token)
        cache_key = self.cache.key_for(platform.value, device_hint, token)

        cached = await self.cache.get(cache_key)
        if cached is not None and cached.attested:
            return AttestationDecision(attested=True, attestation=cached.attestation, reason="cache_hit")

        nonce = normalize_token(request.headers.get(NONCE_HEADER))
        fingerprint = token_fingerprint(token)
        try:
            verifier = self.verifiers.for_request(platform, token)
            info = await verifier.verify(token, expected_nonce=nonce)
        except AttestationUnavailableError as exc:
            logger.error(
                "attestation verifier unavailable platform=%s code=%s fingerprint=%s fail_open=%s",
                platform.value,
                exc.code,
                fingerprint,
                self.fail_open,
            )
            if self.fail_open:
                return AttestationDecision(attested=False, attestation=None, reason="verifier_unavailable")
            raise AttestationRejected(503, ATTESTATION_UNAVAILABLE_MESSAGE) from exc
        except AttestationError as exc:
            logger.warning(
                "attestation rejected platform=%s code=%s fingerprint=%s detail=%s",
                platform.value,
                exc.code,
                fingerprint,
                exc,
            )
            await self._record_failure(identity)
            raise AttestationRejected(exc.status_code, ATTESTATION_FAILED_MESSAGE) from exc

        await self.cache.put(cache_key, AttestationVerdict(attested=True, attestation=info))
        logger.info(
            "attestation verified platform=%s device=%s fingerprint=%s",
            info.platform.value,
            info.device_id,
            fingerprint,
        )
        return AttestationDecision(attested=True, attestation=info, reason="verified")

    async def _record_failure(self, identity: str) -> None:
        if self.failure_limiter is None:
            return
        try:
            decision = await self.failure_limiter.check(identity, Role.UNKNOWN, self.failure_policy)
        except RateLimitUnavailableError:
            logger.warning("attestation failure throttle unavailable identity=%s", identity)
            return
        if not decision.allowed:
            raise AttestationRejected(
                429,
                ATTESTATION_THROTTLED_MESSAGE,
                headers={"Retry-After": str(decision.reset_seconds)},
            )


def get_attestation_gate(settings: Settings = Depends(get_settings)) -> AttestationGate:
    return AttestationGate.from_settings(settings, cache_client=get_cache_client())


async def require_attestation(
    request: Request,
    gate: AttestationGate = Depends(get_attestation_gate),
) -> AttestationDecision:
    try:
        decision = await gate.evaluate(request)
    except AttestationRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message, headers=exc.headers) from exc
    request.state.attested = decision.attested
    request.state.attestation = decision.attestation
    return decision
