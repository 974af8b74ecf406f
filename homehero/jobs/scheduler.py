from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from homehero.core.config import Settings
from homehero.core.events import JOB_DEAD_LETTERED, EventBus
from homehero.core.log_context import get_request_id
from homehero.jobs.types import (
    JobOutcome,
    JobRecord,
    JobStatus,
    JobTransition,
    JobType,
    is_singleton_job,
    parse_job_type,
)
from homehero.services.repository import RepositoryValidationError

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
RETRY_JITTER_RATIO = 0.2
RETRY_JITTER_CAP_SECONDS = 1.0


class JobStore(Protocol):
    async def enqueue_job(
        self, *, job_type: str, payload: dict[str, Any], run_at: datetime, max_attempts: int
    ) -> int: ...

    async def enqueue_singleton_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        run_at: datetime,
        max_attempts: int,
        reschedule_existing: bool = True,
    ) -> tuple[int, bool]: ...

    async def claim_job(self, *, worker_id: str, now: datetime, stale_before: datetime) -> JobRecord | None: ...

    async def complete_job(
        self, *, job_id: int, worker_id: str, locked_at: datetime | None, transition: JobTransition
    ) -> JobRecord | None: ...

    async def touch_job_lock(
        self, *, job_id: int, worker_id: str, locked_at: datetime | None, now: datetime
    ) -> datetime | None: ...

    async def release_stale_jobs(self, *, stale_before: datetime, limit: int) -> int: ...

    async def list_jobs(
        self, *, status: str | None, job_type: str | None, limit: int, offset: int
    ) -> list[JobRecord]: ...


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max(0, max_seconds))


def jittered_retry_delay_seconds(
    *, attempt: int, base_seconds: int, max_seconds: int, sample: Callable[[], float] = random.random
) -> float:
    """Backoff delay plus up to 20% (at most one second), still capped at ``max_seconds``."""
    delay = compute_retry_delay_seconds(attempt=attempt, base_seconds=base_seconds, max_seconds=max_seconds)
    spread = min(delay * RETRY_JITTER_RATIO, RETRY_JITTER_CAP_SECONDS)
    return min(delay + spread * sample(), float(max(0, max_seconds)))


def resolve_transition(
    job: JobRecord,
    outcome: JobOutcome,
    *,
    now: datetime,
    retry_base_seconds: int,
    retry_max_seconds: int,
    jitter: Callable[[], float] = random.random,
) -> JobTransition:
    """Decide the row values a finished run writes.

    Success is terminal. A reschedule keeps the attempt count. A permanent
    failure is terminal without consuming an attempt. Any other failure
    consumes one and is terminal once attempts reach ``max_attempts``.
    """
    if outcome.succeeded:
        return JobTransition(status=JobStatus.SUCCEEDED, attempts=job.attempts, run_at=None, last_error=None)

    if outcome.reschedule_at is not None:
        return JobTransition(
            status=JobStatus.PENDING,
            attempts=job.attempts,
            run_at=outcome.reschedule_at,
            last_error=None,
        )

    error = _truncate_error(outcome.error)
    if outcome.permanent:
        return JobTransition(status=JobStatus.FAILED, attempts=job.attempts, run_at=None, last_error=error)

    next_attempts = min(job.attempts + 1, job.max_attempts)
    if next_attempts >= job.max_attempts:
        return JobTransition(status=JobStatus.FAILED, attempts=next_attempts, run_at=None, last_error=error)

    delay = jittered_retry_delay_seconds(
        attempt=next_attempts,
        base_seconds=retry_base_seconds,
        max_seconds=retry_max_seconds,
        sample=jitter,
    )
    return JobTransition(
        status=JobStatus.PENDING,
        attempts=next_attempts,
        run_at=now + timedelta(seconds=delay),
        last_error=error,
    )


class JobScheduler:
    def __init__(
        self,
        store: JobStore,
        *,
        default_max_attempts: int,
        retry_base_seconds: int,
        retry_max_seconds: int,
        stale_lock_seconds: int,
        events: EventBus | None = None,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.default_max_attempts = max(1, default_max_attempts)
        self.retry_base_seconds = max(0, retry_base_seconds)
        self.retry_max_seconds = max(0, retry_max_seconds)
        self.stale_lock_seconds = max(1, stale_lock_seconds)
        self.events = events
        self.jitter = jitter

    @classmethod
    def from_settings(cls, store: JobStore, settings: Settings, *, events: EventBus | None = None) -> JobScheduler:
        return cls(
            store,
            default_max_attempts=settings.job_default_max_attempts,
            retry_base_seconds=settings.job_retry_base_seconds,
            retry_max_seconds=settings.job_retry_max_seconds,
            stale_lock_seconds=settings.job_stale_lock_seconds,
            events=events,
        )

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        *,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
        reschedule_existing: bool = True,
    ) -> int:
        try:
            resolved_type = parse_job_type(job_type)
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc
        if payload is not None and not isinstance(payload, dict):
            raise RepositoryValidationError("job payload must be an object")
        attempts_limit = self.default_max_attempts if max_attempts is None else max_attempts
        if attempts_limit < 1:
            raise RepositoryValidationError("max_attempts must be at least 1")

        job_payload = dict(payload or {})
        request_id = get_request_id()
        if request_id and "request_id" not in job_payload:
            job_payload["request_id"] = request_id
        due_at = run_at or datetime.now(timezone.utc)

        if is_singleton_job(resolved_type, job_payload):
            job_id, created = await self.store.enqueue_singleton_job(
                job_type=resolved_type.value,
                payload=job_payload,
                run_at=due_at,
                max_attempts=attempts_limit,
                reschedule_existing=reschedule_existing,
            )
            logger.info(
                "singleton job %s type=%s id=%s run_at=%s",
                "enqueued" if created else "rescheduled",
                resolved_type.value,
                job_id,
                due_at.isoformat(),
            )
            return job_id

        job_id = await self.store.enqueue_job(
            job_type=resolved_type.value,
            payload=job_payload,
            run_at=due_at,
            max_attempts=attempts_limit,
        )
        logger.info("job enqueued type=%s id=%s run_at=%s", resolved_type.value, job_id, due_at.isoformat())
        return job_id

    async def claim(self, worker_id: str, now: datetime | None = None) -> JobRecord | None:
        claimed_at = now or datetime.now(timezone.utc)
        stale_before = claimed_at - timedelta(seconds=self.stale_lock_seconds)
        job = await self.store.claim_job(worker_id=worker_id, now=claimed_at, stale_before=stale_before)
        if job is not None:
            logger.debug("job claimed id=%s type=%s worker=%s", job.id, job.type, worker_id)
        return job

    async def claim_batch(self, worker_id: str, now: datetime | None = None, *, limit: int = 1) -> list[JobRecord]:
        claimed: list[JobRecord] = []
        for _ in range(max(0, limit)):
            job = await self.claim(worker_id, now)
            if job is None:
                break
            claimed.append(job)
        return claimed

    @property
    def heartbeat_interval_seconds(self) -> float:
        return self.stale_lock_seconds / 3

    async def heartbeat(self, job: JobRecord, *, worker_id: str, now: datetime | None = None) -> bool:
        """Refresh the claim on a running job so it is not reclaimed as stale.

        Updates ``job.locked_at`` in place so the completion fence keeps matching.
        """
        touched_at = now or datetime.now(timezone.utc)
        locked_at = await self.store.touch_job_lock(
            job_id=job.id,
            worker_id=worker_id,
            locked_at=job.locked_at,
            now=touched_at,
        )
        if locked_at is None:
            logger.warning("job lock lost during run id=%s type=%s worker=%s", job.id, job.type, worker_id)
            return False
        job.locked_at = locked_at
        return True

    async def complete(
        self,
        job: JobRecord,
        outcome: JobOutcome,
        *,
        worker_id: str,
        now: datetime | None = None,
    ) -> JobRecord | None:
        finished_at = now or datetime.now(timezone.utc)
        transition = resolve_transition(
            job,
            outcome,
            now=finished_at,
            retry_base_seconds=self.retry_base_seconds,
            retry_max_seconds=self.retry_max_seconds,
            jitter=self.jitter,
        )
        updated = await self.store.complete_job(
            job_id=job.id,
            worker_id=worker_id,
            locked_at=job.locked_at,
            transition=transition,
        )
        if updated is None:
            logger.warning("job lock lost before completion id=%s type=%s worker=%s", job.id, job.type, worker_id)
            return None

        if transition.dead_lettered:
            logger.error(
                "job dead-lettered id=%s type=%s attempts=%s max_attempts=%s last_error=%s",
                updated.id,
                updated.type,
                updated.attempts,
                updated.max_attempts,
                (updated.last_error or "")[:500],
            )
            if self.events is not None:
                await self.events.publish(
                    JOB_DEAD_LETTERED,
                    {
                        "job_id": updated.id,
                        "type": updated.type,
                        "attempts": updated.attempts,
                        "max_attempts": updated.max_attempts,
                        "last_error": (updated.last_error or "")[:500],
                    },
                )
        elif transition.status is JobStatus.PENDING and outcome.error:
            logger.info(
                "job scheduled for retry id=%s type=%s attempts=%s run_at=%s",
                updated.id,
                updated.type,
                updated.attempts,
                updated.run_at.isoformat(),
            )
        return updated

    async def release_stale_locks(self, now: datetime | None = None, *, limit: int = 100) -> int:
        reference = now or datetime.now(timezone.utc)
        released = await self.store.release_stale_jobs(
            stale_before=reference - timedelta(seconds=self.stale_lock_seconds),
            limit=limit,
        )
        if released:
            logger.info("released stale job locks count=%s", released)
        return released

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobRecord]:
        return await self.store.list_jobs(status=status, job_type=job_type, limit=limit, offset=offset)


def _truncate_error(error: str | None) -> str:
    message = (error or "job failed").strip() or "job failed"
    return message[:MAX_ERROR_LENGTH]
