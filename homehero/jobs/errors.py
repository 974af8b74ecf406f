from __future__ import annotations

from datetime import datetime


class JobError(Exception):
    """Base class for errors raised by job handlers to steer the scheduler."""


class PermanentJobError(JobError):
    """The job can never succeed; mark it FAILED without consuming retries."""


class UnknownJobTypeError(PermanentJobError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"no handler registered for job type {job_type}")
        self.job_type = job_type


class RescheduleJobError(JobError):
    """Ask the scheduler to run the job again at ``run_at`` without counting an attempt."""

    def __init__(self, run_at: datetime, message: str | None = None) -> None:
        super().__init__(message or f"rescheduled to {run_at.isoformat()}")
        self.run_at = run_at
