from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request, Response, status

from homehero.core.auth import Principal, Role
from homehero.core.config import Settings, get_settings
from homehero.core.network import client_address_for, normalize_client_address
from homehero.core.security import get_optional_principal
from homehero.services.cache import CacheUnavailableError, get_cache_client, require_cache

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS_MESSAGE = "Too many requests. Please slow down."


class RateLimitUnavailableError(RuntimeError):
    """Raised when the counter store is down and the limiter is configured to fail closed."""


class RateLimitExceeded(Exception):
    def __init__(self, decision: RateLimitDecision) -> None:
        super().__init__(TOO_MANY_REQUESTS_MESSAGE)
        self.decision = decision


@dataclass(slots=True, frozen=True)
class RateLimitPolicy:
    bucket: str
    window_seconds: int
    limits: Mapping[str, int]

    def limit_for(self, role: Role) -> int:
        if role.value in self.limits:
            return int(self.limits[role.value])
        return int(self.limits.get(Role.UNKNOWN.value, 0))


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    degraded: bool = False

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_seconds)
        return headers


def resolve_identity(user_id: int | None, client_address: str | None, *, ipv6_prefix: int = 56) -> str:
    if user_id is not None and user_id > 0:
        return f"u:{user_id}"
    return "ip:" + normalize_client_address(client_address, ipv6_prefix=ipv6_prefix)


class RateLimiter:
    """Fixed-window counter in Redis.

    The first increment in a window sets the key's expiry; the count is then
    compared against the caller's role limit. A window that ends mid-burst
    can let up to twice the limit through; that approximation is accepted.
    """

    def __init__(self, client: redis.Redis | None, *, prefix: str, fail_open: bool) -> None:
        self.client = client
        self.prefix = prefix
        self.fail_open = fail_open

    def key_for(self, bucket: str, identity: str) -> str:
        return f"{self.prefix}:{bucket}:{identity}"

    async def check(self, identity: str, role: Role, policy: RateLimitPolicy) -> RateLimitDecision:
        limit = policy.limit_for(role)
        window_seconds = max(1, policy.window_seconds)
        if limit <= 0:
            return RateLimitDecision(allowed=False, limit=0, remaining=0, reset_seconds=window_seconds)

        key = self.key_for(policy.bucket, identity)
        window_ms = window_seconds * 1000
        try:
            client = require_cache(self.client)
            count = int(await client.incr(key))
            if count == 1:
                await client.pexpire(key, window_ms)
            ttl_ms = int(await client.pttl(key))
            if ttl_ms == -1:
                # Expiry was never attached (e.g. the process died between INCR and PEXPIRE).
                await client.pexpire(key, window_ms)
                ttl_ms = window_ms
        except (redis.RedisError, CacheUnavailableError, OSError) as exc:
            if self.fail_open:
                logger.warning(
                    "rate limiter cache unavailable; allowing request bucket=%s error=%s",
                    policy.bucket,
                    type(exc).__name__,
                )
                return RateLimitDecision(
                    allowed=True,
                    limit=limit,
                    remaining=limit,
                    reset_seconds=window_seconds,
                    degraded=True,
                )
            raise RateLimitUnavailableError("rate limit store unavailable") from exc

        reset_seconds = max(1, math.ceil(ttl_ms / 1000)) if ttl_ms > 0 else window_seconds
        allowed = count <= limit
        if not allowed:
            logger.info("rate limit exceeded bucket=%s identity=%s count=%s limit=%s", policy.bucket, identity, count, limit)
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
        )


def get_rate_limiter(settings: Settings = Depends(get_settings)) -> RateLimiter:
    return RateLimiter(
        get_cache_client(),
        prefix=settings.rate_limit_prefix,
        fail_open=settings.rate_limit_fail_open,
    )


def rate_limit(
    bucket: str,
    *,
    window_seconds: int | None = None,
    limits: Mapping[str, int] | None = None,
) -> Callable[..., Awaitable[RateLimitDecision]]:
    """Build a route dependency that enforces ``bucket`` for the caller."""

    async def dependency(
        request: Request,
        response: Response,
        settings: Settings = Depends(get_settings),
        principal: Principal | None = Depends(get_optional_principal),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitDecision:
        policy = RateLimitPolicy(
            bucket=bucket,
            window_seconds=window_seconds or settings.rate_limit_window_seconds,
            limits=limits or settings.rate_limit_limits,
        )
        address = client_address_for(request, trust_forwarded_for=settings.rate_limit_trust_forwarded_for)
        identity = resolve_identity(
            principal.user_id if principal else None,
            address,
            ipv6_prefix=settings.rate_limit_ipv6_prefix,
        )
        role = principal.role if principal else Role.UNKNOWN

        try:
            decision = await limiter.check(identity, role, policy)
        except RateLimitUnavailableError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="rate limiting unavailable",
            ) from exc

        if not decision.allowed:
            raise RateLimitExceeded(decision)

        response.headers.update(decision.headers())
        request.state.rate_limit = decision
        return decision

    return dependency
