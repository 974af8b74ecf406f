from __future__ import annotations

import hashlib
import json
import logging

import redis.asyncio as redis

from homehero.services.attestation.models import AttestationVerdict
from homehero.services.cache import CacheUnavailableError, require_cache

logger = logging.getLogger(__name__)

ATTESTATION_CACHE_TTL_SECONDS = 600

_CACHE_ERRORS = (redis.RedisError, CacheUnavailableError, OSError)


class AttestationDecisionCache:
    """Short-lived verdict cache so a device does not pay for verification on every request.

    Keys are digests of ``platform|device|token``; the raw token never
    reaches the cache.
    """

    def __init__(
        self,
        client: redis.Redis | None,
        *,
        prefix: str = "attest",
        ttl_seconds: int = ATTESTATION_CACHE_TTL_SECONDS,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def key_for(self, platform: str, device_id: str, token: str) -> str:
        digest = hashlib.sha256(f"{platform}|{device_id}|{token}".encode("utf-8")).hexdigest()
        return f"{self.prefix}:{digest}"

    async def get(self, key: str) -> AttestationVerdict | None:
        try:
            raw = await require_cache(self.client).get(key)
        except _CACHE_ERRORS as exc:
            logger.debug("attestation cache read failed error=%s", type(exc).__name__)
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return AttestationVerdict.from_cache_dict(payload) if isinstance(payload, dict) else None
        except (ValueError, KeyError, TypeError):
            logger.warning("discarding malformed attestation cache entry")
            return None

    async def put(self, key: str, verdict: AttestationVerdict) -> bool:
        try:
            await require_cache(self.client).setex(key, self.ttl_seconds, json.dumps(verdict.to_cache_dict()))
        except _CACHE_ERRORS as exc:
            logger.warning("attestation cache write failed error=%s", type(exc).__name__)
            return False
        return True
