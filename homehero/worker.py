from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from homehero.core.config import Settings, get_settings, validate_startup_settings
from homehero.core.events import EventBus
from homehero.core.log_context import log_context
from homehero.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from homehero.jobs.executor import JobContext, JobHandlerRegistry, execute_job
from homehero.jobs.handlers import build_default_registry
from homehero.jobs.scheduler import JobScheduler
from homehero.jobs.types import SINGLETON_RECURRING_TYPES, JobRecord
from homehero.services.purchases import PurchaseReconciler
from homehero.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RECURRING_CHECK_INTERVAL_SECONDS = 300.0


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class JobWorker:
    worker_id: str
    scheduler: JobScheduler
    registry: JobHandlerRegistry
    settings: Settings
    repository: Any
    reconciler: PurchaseReconciler | None = None
    lock_heartbeat_seconds: float | None = None

    async def ensure_recurring_jobs(self, now: datetime | None = None) -> list[int]:
        """Make sure every recurring singleton type has a non-terminal row, without moving existing ones."""
        reference = now or datetime.now(timezone.utc)
        job_ids: list[int] = []
        for registration in self.registry.recurring():
            if registration.job_type not in SINGLETON_RECURRING_TYPES or registration.next_run_at is None:
                continue
            run_at = registration.next_run_at(reference, {})
            if run_at is None:
                continue
            job_ids.append(
                await self.scheduler.enqueue(
                    registration.job_type,
                    {},
                    run_at=run_at,
                    reschedule_existing=False,
                )
            )
        return job_ids

    async def run_cycle(self, now: datetime | None = None) -> int:
        processed = 0
        for _ in range(max(1, self.settings.worker_batch_size)):
            job = await self.scheduler.claim(self.worker_id, now)
            if job is None:
                break
            await self.process_job(job, now=now)
            processed += 1
        return processed

    async def process_job(self, job: JobRecord, *, now: datetime | None = None) -> JobRecord | None:
        raw_request_id = job.payload.get("request_id")
        request_id = raw_request_id if isinstance(raw_request_id, str) else None

        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", job.id)
            job_span.set_attribute("job.type", job.type)
            job_span.set_attribute("job.attempts", job.attempts)
            with log_context(request_id=request_id, job_id=job.id):
                started_at = now or datetime.now(timezone.utc)
                context = JobContext(
                    job=job,
                    scheduler=self.scheduler,
                    settings=self.settings,
                    repository=self.repository,
                    reconciler=self.reconciler,
                    now=started_at,
                )
                stop_heartbeat = asyncio.Event()
                heartbeat = asyncio.create_task(self._keep_lock(job, stop_heartbeat))
                try:
                    outcome = await execute_job(self.registry, job, context)
                finally:
                    stop_heartbeat.set()
                    await heartbeat
                job_span.set_attribute("job.succeeded", outcome.succeeded)
                updated = await self.scheduler.complete(job, outcome, worker_id=self.worker_id, now=now)
                if updated is not None and outcome.succeeded:
                    await self._schedule_next_run(job, started_at)
                return updated

    async def _keep_lock(self, job: JobRecord, stop: asyncio.Event) -> None:
        interval = self.lock_heartbeat_seconds or self.scheduler.heartbeat_interval_seconds
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                held = await self.scheduler.heartbeat(job, worker_id=self.worker_id)
            except Exception:
                logger.exception("job lock heartbeat failed id=%s type=%s", job.id, job.type)
                continue
            if not held:
                return

    async def _schedule_next_run(self, job: JobRecord, finished_at: datetime) -> None:
        if job.type not in self.registry:
            return
        registration = self.registry.get(job.type)
        if registration.next_run_at is None:
            return
        next_run = registration.next_run_at(finished_at, job.payload)
        if next_run is None:
            return
        payload = {key: value for key, value in job.payload.items() if key != "request_id"}
        next_id = await self.scheduler.enqueue(registration.job_type, payload, run_at=next_run)
        logger.info("recurring job scheduled type=%s id=%s run_at=%s", job.type, next_id, next_run.isoformat())


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    validate_startup_settings(settings)
    telemetry_runtime = setup_telemetry(settings, "worker")

    repository = get_repository()
    events = EventBus()
    scheduler = JobScheduler.from_settings(repository, settings, events=events)
    reconciler = PurchaseReconciler.from_settings(repository, settings, events=events, jobs=scheduler)
    worker = JobWorker(
        worker_id=settings.worker_id or default_worker_id(),
        scheduler=scheduler,
        registry=build_default_registry(settings),
        settings=settings,
        repository=repository,
        reconciler=reconciler,
    )
    logger.info("worker starting id=%s", worker.worker_id)

    backoff = settings.worker_poll_interval_seconds
    last_recurring_check_at: float | None = None

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    monotonic_now = time.monotonic()
                    if (
                        last_recurring_check_at is None
                        or monotonic_now - last_recurring_check_at >= RECURRING_CHECK_INTERVAL_SECONDS
                    ):
                        await worker.ensure_recurring_jobs()
                        last_recurring_check_at = monotonic_now

                    processed = await worker.run_cycle()

                backoff = settings.worker_poll_interval_seconds
                if not processed:
                    await asyncio.sleep(settings.worker_poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        events.close()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
