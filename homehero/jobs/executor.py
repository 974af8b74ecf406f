from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from homehero.core.config import Settings
from homehero.jobs.errors import PermanentJobError, RescheduleJobError, UnknownJobTypeError
from homehero.jobs.scheduler import JobScheduler
from homehero.jobs.types import JobOutcome, JobRecord, JobType, parse_job_type
from homehero.services.repository import PostgresRepository, RepositoryValidationError

if TYPE_CHECKING:
    from homehero.services.purchases import PurchaseReconciler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobContext:
    job: JobRecord
    scheduler: JobScheduler
    settings: Settings
    repository: PostgresRepository | Any
    reconciler: PurchaseReconciler | None = None
    now: datetime | None = None


JobHandler = Callable[[dict[str, Any], JobContext], Awaitable[dict[str, Any] | None]]
NextRunAt = Callable[[datetime, dict[str, Any]], datetime | None]


@dataclass(slots=True)
class JobRegistration:
    job_type: JobType
    handler: JobHandler
    next_run_at: NextRunAt | None = None


class JobHandlerRegistry:
    """Maps job types to handlers. Feature areas register their own types."""

    def __init__(self) -> None:
        self._registrations: dict[JobType, JobRegistration] = {}

    def register(
        self,
        job_type: JobType | str,
        handler: JobHandler,
        *,
        next_run_at: NextRunAt | None = None,
    ) -> None:
        resolved = parse_job_type(job_type)
        if resolved in self._registrations:
            raise ValueError(f"handler already registered for {resolved.value}")
        self._registrations[resolved] = JobRegistration(job_type=resolved, handler=handler, next_run_at=next_run_at)

    def get(self, job_type: JobType | str) -> JobRegistration:
        try:
            resolved = parse_job_type(job_type)
        except ValueError:
            raise UnknownJobTypeError(str(job_type)) from None
        registration = self._registrations.get(resolved)
        if registration is None:
            raise UnknownJobTypeError(resolved.value)
        return registration

    def recurring(self) -> list[JobRegistration]:
        return [item for item in self._registrations.values() if item.next_run_at is not None]

    def __contains__(self, job_type: object) -> bool:
        try:
            return parse_job_type(job_type) in self._registrations
        except ValueError:
            return False


async def execute_job(registry: JobHandlerRegistry, job: JobRecord, context: JobContext) -> JobOutcome:
    """Run the registered handler and convert whatever happens into an outcome."""
    try:
        registration = registry.get(job.type)
        result = await registration.handler(job.payload, context)
    except RescheduleJobError as exc:
        logger.info("job asked to reschedule id=%s type=%s run_at=%s", job.id, job.type, exc.run_at.isoformat())
        return JobOutcome.rescheduled(exc.run_at)
    except (PermanentJobError, RepositoryValidationError) as exc:
        logger.warning("job failed permanently id=%s type=%s error=%s", job.id, job.type, exc)
        return JobOutcome.failure(f"{type(exc).__name__}: {exc}", permanent=True)
    except Exception as exc:
        logger.exception("job handler failed id=%s type=%s attempt=%s", job.id, job.type, job.attempts + 1)
        return JobOutcome.failure(f"{type(exc).__name__}: {exc}")

    return JobOutcome.success(result)
