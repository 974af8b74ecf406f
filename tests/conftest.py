from __future__ import annotations

import asyncio
import hashlib
import hmac
import itertools
import os
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import pytest
import redis.asyncio as redis

from homehero.core.config import get_settings
from homehero.jobs.types import JobRecord, JobStatus, JobTransition
from homehero.services.attestation.gate import get_attestation_verifiers
from homehero.services.cache import get_cache_client
from homehero.services.payments import PaymentGatewayError, PaymentIntent
from homehero.services.repository import (
    EntitlementsRecord,
    ProviderStatsInputs,
    ProviderStatsSnapshot,
    PurchaseRecord,
    PurchaseSeed,
    PurchaseStatus,
    ReconcileOutcome,
    ReconcileResult,
    RepositoryConflictError,
    get_repository,
    grant_for_purchase,
)

# homehero.main reads settings at import time, before any fixture runs.
os.environ.setdefault("HH_OTEL_ENABLED", "false")


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setenv("HH_OTEL_ENABLED", "false")
    get_settings.cache_clear()
    get_cache_client.cache_clear()
    get_attestation_verifiers.cache_clear()
    get_repository.cache_clear()
    yield
    get_settings.cache_clear()
    get_cache_client.cache_clear()
    get_attestation_verifiers.cache_clear()
    get_repository.cache_clear()


class FakeRedis:
    """Enough of ``redis.asyncio.Redis`` for counters and verdict caching, with a clock you control."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expires_at_ms: dict[str, int] = {}
        self.now_ms = 1_700_000_000_000
        self.fail = False
        self.calls: list[str] = []

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def _check(self, command: str) -> None:
        self.calls.append(command)
        if self.fail:
            raise redis.ConnectionError("redis is down")

    def _evict(self, key: str) -> None:
        expires_at = self.expires_at_ms.get(key)
        if expires_at is not None and expires_at <= self.now_ms:
            self.values.pop(key, None)
            self.expires_at_ms.pop(key, None)

    async def incr(self, key: str) -> int:
        self._check("incr")
        self._evict(key)
        value = int(self.values.get(key, "0")) + 1
        self.values[key] = str(value)
        return value

    async def pexpire(self, key: str, milliseconds: int) -> bool:
        self._check("pexpire")
        if key not in self.values:
            return False
        self.expires_at_ms[key] = self.now_ms + milliseconds
        return True

    async def pttl(self, key: str) -> int:
        self._check("pttl")
        self._evict(key)
        if key not in self.values:
            return -2
        expires_at = self.expires_at_ms.get(key)
        if expires_at is None:
            return -1
        return expires_at - self.now_ms

    async def get(self, key: str) -> str | None:
        self._check("get")
        self._evict(key)
        return self.values.get(key)

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        self._check("setex")
        self.values[key] = value
        self.expires_at_ms[key] = self.now_ms + seconds * 1000
        return True

    async def aclose(self) -> None:
        return None


class FakeRepository:
    """In-memory stand-in for ``PostgresRepository`` with the same conditional-update rules."""

    def __init__(self) -> None:
        self.jobs: dict[int, JobRecord] = {}
        self.singleton_keys: dict[int, str] = {}
        self.claims: list[tuple[int, str]] = []
        self.lock_touches: list[int] = []
        self.purchases: dict[str, PurchaseRecord] = {}
        self.entitlements: dict[int, EntitlementsRecord] = {}
        self.webhook_events: dict[str, dict[str, Any]] = {}
        self.stats_inputs: list[ProviderStatsInputs] = []
        self.stats: dict[int, ProviderStatsSnapshot] = {}
        self._ids = itertools.count(1)
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    # Jobs

    async def enqueue_job(self, *, job_type: str, payload: dict[str, Any], run_at: datetime, max_attempts: int) -> int:
        job_id = next(self._ids)
        now = datetime.now(timezone.utc)
        self.jobs[job_id] = JobRecord(
            id=job_id,
            type=job_type,
            payload=dict(payload),
            run_at=run_at,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        return job_id

    async def enqueue_singleton_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        run_at: datetime,
        max_attempts: int,
        reschedule_existing: bool = True,
    ) -> tuple[int, bool]:
        for job_id, key in self.singleton_keys.items():
            job = self.jobs[job_id]
            if key != job_type or job.status not in {JobStatus.PENDING, JobStatus.PROCESSING}:
                continue
            if reschedule_existing:
                self.jobs[job_id] = replace(
                    job,
                    payload=dict(payload),
                    run_at=run_at,
                    status=JobStatus.PENDING,
                    attempts=0,
                    max_attempts=max_attempts,
                    locked_at=None,
                    locked_by=None,
                    last_error=None,
                )
            return job_id, False
        job_id = await self.enqueue_job(job_type=job_type, payload=payload, run_at=run_at, max_attempts=max_attempts)
        self.singleton_keys[job_id] = job_type
        return job_id, True

    def _claimable(self, job: JobRecord, now: datetime, stale_before: datetime) -> bool:
        if job.status is JobStatus.PENDING:
            return job.run_at <= now
        if job.status is JobStatus.PROCESSING:
            return job.locked_at is not None and job.locked_at < stale_before
        return False

    async def claim_job(self, *, worker_id: str, now: datetime, stale_before: datetime) -> JobRecord | None:
        while True:
            candidates = sorted(
                (job for job in self.jobs.values() if self._claimable(job, now, stale_before)),
                key=lambda job: (job.run_at, job.id),
            )
            if not candidates:
                return None
            candidate_id = candidates[0].id
            # Yield between select and update; the update re-checks the row like the SQL where clause.
            await asyncio.sleep(0)
            current = self.jobs[candidate_id]
            if not self._claimable(current, now, stale_before):
                continue
            claimed = replace(current, status=JobStatus.PROCESSING, locked_at=now, locked_by=worker_id)
            self.jobs[claimed.id] = claimed
            self.claims.append((claimed.id, worker_id))
            return claimed

    async def touch_job_lock(
        self, *, job_id: int, worker_id: str, locked_at: datetime | None, now: datetime
    ) -> datetime | None:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PROCESSING:
            return None
        if job.locked_by != worker_id or job.locked_at != locked_at:
            return None
        self.jobs[job_id] = replace(job, locked_at=now)
        self.lock_touches.append(job_id)
        return now

    async def complete_job(
        self,
        *,
        job_id: int,
        worker_id: str,
        locked_at: datetime | None,
        transition: JobTransition,
    ) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PROCESSING:
            return None
        if job.locked_by != worker_id or job.locked_at != locked_at:
            return None
        updated = replace(
            job,
            status=transition.status,
            attempts=transition.attempts,
            run_at=transition.run_at or job.run_at,
            last_error=transition.last_error,
            locked_at=None,
            locked_by=None,
        )
        self.jobs[job_id] = updated
        return updated

    async def release_stale_jobs(self, *, stale_before: datetime, limit: int) -> int:
        released = 0
        for job in sorted(self.jobs.values(), key=lambda item: item.id):
            if released >= limit:
                break
            if job.status is JobStatus.PROCESSING and job.locked_at is not None and job.locked_at < stale_before:
                self.jobs[job.id] = replace(job, status=JobStatus.PENDING, locked_at=None, locked_by=None)
                released += 1
        return released

    async def list_jobs(self, *, status: str | None, job_type: str | None, limit: int, offset: int) -> list[JobRecord]:
        rows = sorted(self.jobs.values(), key=lambda job: job.id, reverse=True)
        if status:
            rows = [job for job in rows if job.status.value == status.upper()]
        if job_type:
            rows = [job for job in rows if job.type == job_type.upper()]
        return rows[offset : offset + limit]

    # Purchases and entitlements

    async def create_purchase(
        self,
        *,
        provider_id: int,
        addon_type,
        amount_cents: int,
        currency: str,
        external_payment_intent_id: str,
        metadata: dict[str, Any],
    ) -> PurchaseRecord:
        if external_payment_intent_id in self.purchases:
            raise RepositoryConflictError("purchase already exists for payment intent")
        record = PurchaseRecord(
            id=str(uuid.uuid4()),
            provider_id=provider_id,
            addon_type=addon_type,
            amount_cents=amount_cents,
            currency=currency,
            external_payment_intent_id=external_payment_intent_id,
            status=PurchaseStatus.PENDING,
            metadata=dict(metadata),
        )
        self.purchases[external_payment_intent_id] = record
        return record

    async def get_purchase_by_intent(self, external_payment_intent_id: str) -> PurchaseRecord | None:
        return self.purchases.get(external_payment_intent_id)

    def _apply_grant(self, purchase: PurchaseRecord) -> EntitlementsRecord:
        grant = grant_for_purchase(purchase.addon_type, purchase.metadata)
        current = self.entitlements.get(purchase.provider_id) or EntitlementsRecord(provider_id=purchase.provider_id)
        updated = replace(
            current,
            lead_credits=current.lead_credits + grant.lead_credits,
            featured_zip_codes=sorted(set(current.featured_zip_codes) | set(grant.zip_codes)),
            verification_badge=current.verification_badge or purchase.addon_type.value == "VERIFICATION_BADGE",
        )
        self.entitlements[purchase.provider_id] = updated
        return updated

    async def reconcile_purchase(
        self,
        *,
        external_payment_intent_id: str,
        succeeded: bool,
        seed: PurchaseSeed | None = None,
    ) -> ReconcileOutcome:
        target = PurchaseStatus.SUCCEEDED if succeeded else PurchaseStatus.FAILED
        # Yield before the conditional write so concurrent reconciles interleave; the
        # write below reads the row fresh, like the single-statement update.
        await asyncio.sleep(0)
        existing = self.purchases.get(external_payment_intent_id)
        if existing is not None and existing.status is PurchaseStatus.PENDING:
            purchase = replace(existing, status=target)
            self.purchases[external_payment_intent_id] = purchase
            entitlements = self._apply_grant(purchase) if succeeded else None
            return ReconcileOutcome(
                result=ReconcileResult.APPLIED,
                purchase=purchase,
                previous_status=PurchaseStatus.PENDING,
                entitlements=entitlements,
            )
        if existing is not None:
            return ReconcileOutcome(
                result=ReconcileResult.ALREADY_PROCESSED,
                purchase=existing,
                previous_status=existing.status,
            )
        if not succeeded or seed is None:
            return ReconcileOutcome(result=ReconcileResult.UNKNOWN_INTENT)

        purchase = PurchaseRecord(
            id=str(uuid.uuid4()),
            provider_id=seed.provider_id,
            addon_type=seed.addon_type,
            amount_cents=seed.amount_cents,
            currency=seed.currency,
            external_payment_intent_id=external_payment_intent_id,
            status=PurchaseStatus.SUCCEEDED,
            metadata=dict(seed.metadata),
        )
        self.purchases[external_payment_intent_id] = purchase
        return ReconcileOutcome(
            result=ReconcileResult.APPLIED,
            purchase=purchase,
            entitlements=self._apply_grant(purchase),
        )

    async def get_entitlements(self, provider_id: int) -> EntitlementsRecord:
        return self.entitlements.get(provider_id) or EntitlementsRecord(provider_id=provider_id)

    async def has_webhook_event(self, event_id: str) -> bool:
        return event_id in self.webhook_events

    async def record_webhook_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payment_intent_id: str | None,
        payload_hash: str,
    ) -> bool:
        if event_id in self.webhook_events:
            return False
        self.webhook_events[event_id] = {
            "event_type": event_type,
            "payment_intent_id": payment_intent_id,
            "payload_hash": payload_hash,
        }
        return True

    # Provider stats

    async def fetch_provider_stats_inputs(self, *, provider_id: int | None, since: datetime) -> list[ProviderStatsInputs]:
        if provider_id is None:
            return list(self.stats_inputs)
        return [item for item in self.stats_inputs if item.provider_id == provider_id]

    async def upsert_provider_stats(self, snapshots: list[ProviderStatsSnapshot]) -> int:
        for snapshot in snapshots:
            self.stats[snapshot.provider_id] = snapshot
        return len(snapshots)


class FakePaymentGateway:
    def __init__(self) -> None:
        self.intents: dict[str, PaymentIntent] = {}
        self.created: list[dict[str, Any]] = []
        self.list_calls: list[datetime] = []
        self.fail_create: Exception | None = None
        self._ids = itertools.count(1)

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        if self.fail_create is not None:
            raise self.fail_create
        intent_id = f"pi_test_{next(self._ids)}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount_cents,
            currency=currency,
            metadata=dict(metadata),
            client_secret=f"{intent_id}_secret",
            created=datetime.now(timezone.utc),
        )
        self.intents[intent_id] = intent
        self.created.append({"amount_cents": amount_cents, "metadata": metadata, "idempotency_key": idempotency_key})
        return intent

    def settle(self, intent_id: str, status: str = "succeeded") -> PaymentIntent:
        intent = replace(self.intents[intent_id], status=status)
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentGatewayError(f"No such payment_intent: '{intent_id}'")
        return intent

    async def list_payment_intents(self, *, created_gte: datetime, max_intents: int = 2000) -> list[PaymentIntent]:
        self.list_calls.append(created_gte)
        return [intent for intent in self.intents.values() if intent.created is None or intent.created >= created_gte]


@pytest.fixture
def fake_repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()




def _stripe_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    signed_at = int(time.time()) if timestamp is None else timestamp
    signed = f"{signed_at}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={signed_at},v1={digest}"


@pytest.fixture
def stripe_signature():
    """Build a ``Stripe-Signature`` header the way the processor signs webhook deliveries."""
    return _stripe_signature_header
