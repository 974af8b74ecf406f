#!/usr/bin/env python3
"""Enqueue a background job from the command line (ops backfills, manual reconciles)."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any

from homehero.core.config import get_settings
from homehero.jobs.scheduler import JobScheduler
from homehero.jobs.types import JobType, parse_job_type
from homehero.services.repository import RepositoryError, get_repository


def _parse_run_at(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_request(
    *, job_type: str, payload_json: str, run_at: str | None, max_attempts: int | None
) -> dict[str, Any]:
    resolved = parse_job_type(job_type)
    payload = json.loads(payload_json)
    if not isinstance(payload, dict):
        raise ValueError("--payload must be a JSON object")
    scheduled = _parse_run_at(run_at)
    return {
        "type": resolved.value,
        "payload": payload,
        "run_at": scheduled.isoformat() if scheduled is not None else None,
        "max_attempts": max_attempts,
    }


async def _enqueue(request: dict[str, Any]) -> int:
    settings = get_settings()
    repository = get_repository()
    try:
        scheduler = JobScheduler.from_settings(repository, settings)
        return await scheduler.enqueue(
            request["type"],
            request["payload"],
            run_at=_parse_run_at(request["run_at"]),
            max_attempts=request["max_attempts"],
        )
    finally:
        await repository.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue a homehero background job.")
    parser.add_argument("--type", required=True, choices=[job_type.value for job_type in JobType])
    parser.add_argument("--payload", default="{}", help="JSON object passed to the handler")
    parser.add_argument("--run-at", default=None, help="ISO-8601 due time (default: now)")
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true", help="Print the job that would be enqueued and exit")
    args = parser.parse_args()

    try:
        request = build_request(
            job_type=args.type,
            payload_json=args.payload,
            run_at=args.run_at,
            max_attempts=args.max_attempts,
        )
    except ValueError as exc:
        parser.error(str(exc))

    if args.dry_run:
        print(json.dumps(request, sort_keys=True))
        return 0

    try:
        job_id = asyncio.run(_enqueue(request))
    except RepositoryError as exc:
        print(f"enqueue failed: {exc}", file=sys.stderr)
        return 1
    print(json.dumps({"id": job_id, "type": request["type"]}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
