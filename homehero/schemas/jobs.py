from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatusName = Literal["PENDING", "PROCESSING", "SUCCEEDED", "FAILED"]


class JobOut(BaseModel):
    id: int
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatusName
    attempts: int
    max_attempts: int
    run_at: datetime
    locked_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobEnqueueRequest(BaseModel):
    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    run_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=100)


class JobEnqueueResponse(BaseModel):
    id: int
    type: str


class ReleaseStaleRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class ReleaseStaleResponse(BaseModel):
    released: int
