from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobType(str, Enum):
    PROVIDER_STATS_RECOMPUTE = "PROVIDER_STATS_RECOMPUTE"
    PURCHASE_RECONCILE = "PURCHASE_RECONCILE"
    PAYMENT_INTENT_SWEEP = "PAYMENT_INTENT_SWEEP"
    JOB_MATCH_NOTIFY = "JOB_MATCH_NOTIFY"
    JOB_MATCH_DIGEST = "JOB_MATCH_DIGEST"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


SINGLETON_RECURRING_TYPES = frozenset({JobType.PROVIDER_STATS_RECOMPUTE, JobType.PAYMENT_INTENT_SWEEP})
TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


def parse_job_type(value: Any) -> JobType:
    if isinstance(value, JobType):
        return value
    if isinstance(value, str):
        try:
            return JobType(value.strip().upper())
        except ValueError:
            pass
    raise ValueError(f"unknown job type: {value!r}")


def is_singleton_job(job_type: JobType, payload: dict[str, Any]) -> bool:
    """Recurring types keep one live row for their global run; provider-scoped runs are ordinary jobs."""
    return job_type in SINGLETON_RECURRING_TYPES and not payload.get("provider_id")


@dataclass(slots=True)
class JobRecord:
    id: int
    type: str
    payload: dict[str, Any]
    run_at: datetime
    status: JobStatus
    attempts: int
    max_attempts: int
    locked_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "run_at": self.run_at,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "locked_at": self.locked_at,
            "locked_by": self.locked_by,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class JobOutcome:
    """What a handler run produced, as seen by the scheduler."""

    succeeded: bool
    error: str | None = None
    permanent: bool = False
    reschedule_at: datetime | None = None
    result: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, result: dict[str, Any] | None = None) -> JobOutcome:
        return cls(succeeded=True, result=result or {})

    @classmethod
    def failure(cls, error: str, *, permanent: bool = False) -> JobOutcome:
        return cls(succeeded=False, error=error, permanent=permanent)

    @classmethod
    def rescheduled(cls, run_at: datetime) -> JobOutcome:
        return cls(succeeded=False, reschedule_at=run_at)


@dataclass(slots=True)
class JobTransition:
    """Row values a completion writes, guarded by the claim that produced the job."""

    status: JobStatus
    attempts: int
    run_at: datetime | None
    last_error: str | None

    @property
    def dead_lettered(self) -> bool:
        return self.status is JobStatus.FAILED
