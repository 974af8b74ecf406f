from fastapi import APIRouter, Depends, HTTPException, Query, status

from homehero.api.deps import get_scheduler
from homehero.core.security import get_admin_principal
from homehero.jobs.scheduler import JobScheduler
from homehero.schemas.jobs import (
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobOut,
    JobStatusName,
    ReleaseStaleRequest,
    ReleaseStaleResponse,
)
from homehero.services.repository import RepositoryUnavailableError, RepositoryValidationError

router = APIRouter(dependencies=[Depends(get_admin_principal)])


@router.get("", response_model=list[JobOut])
async def list_jobs(
    scheduler: JobScheduler = Depends(get_scheduler),
    status_filter: JobStatusName | None = Query(default=None, alias="status"),
    job_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        jobs = await scheduler.list_jobs(status=status_filter, job_type=job_type, limit=limit, offset=offset)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut(**job.to_dict()) for job in jobs]


@router.post("", response_model=JobEnqueueResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    payload: JobEnqueueRequest,
    scheduler: JobScheduler = Depends(get_scheduler),
) -> JobEnqueueResponse:
    try:
        job_id = await scheduler.enqueue(
            payload.type,
            payload.payload,
            run_at=payload.run_at,
            max_attempts=payload.max_attempts,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobEnqueueResponse(id=job_id, type=payload.type.strip().upper())


@router.post("/release-stale", response_model=ReleaseStaleResponse)
async def release_stale_jobs(
    payload: ReleaseStaleRequest | None = None,
    scheduler: JobScheduler = Depends(get_scheduler),
) -> ReleaseStaleResponse:
    limit = payload.limit if payload is not None else 100
    try:
        released = await scheduler.release_stale_locks(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReleaseStaleResponse(released=released)
