from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

_REQUEST_ID: ContextVar[str | None] = ContextVar("homehero_request_id", default=None)
_JOB_ID: ContextVar[int | None] = ContextVar("homehero_job_id", default=None)


def get_request_id() -> str | None:
    return _REQUEST_ID.get()


def get_job_id() -> int | None:
    return _JOB_ID.get()


def new_request_id() -> str:
    return uuid4().hex


@contextmanager
def log_context(*, request_id: str | None = None, job_id: int | None = None) -> Iterator[None]:
    request_token = _REQUEST_ID.set(request_id)
    job_token = _JOB_ID.set(job_id)
    try:
        yield
    finally:
        _JOB_ID.reset(job_token)
        _REQUEST_ID.reset(request_token)
