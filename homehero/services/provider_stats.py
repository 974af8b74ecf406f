from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Protocol

from homehero.services.repository import ProviderStatsInputs, ProviderStatsSnapshot

logger = logging.getLogger(__name__)

STATS_WINDOW_DAYS = 30


class ProviderStatsStore(Protocol):
    async def fetch_provider_stats_inputs(
        self, *, provider_id: int | None, since: datetime
    ) -> list[ProviderStatsInputs]: ...

    async def upsert_provider_stats(self, snapshots: list[ProviderStatsSnapshot]) -> int: ...


def _clamp_rate(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def compute_provider_stats_snapshot(inputs: ProviderStatsInputs) -> ProviderStatsSnapshot:
    rating_count = max(0, inputs.rating_count)
    avg_rating: float | None = None
    if rating_count > 0 and inputs.avg_rating is not None and math.isfinite(inputs.avg_rating):
        avg_rating = max(0.0, min(5.0, inputs.avg_rating))

    finished = max(0, inputs.jobs_finished_30d)
    denominator = finished if finished > 0 else 1
    return ProviderStatsSnapshot(
        provider_id=inputs.provider_id,
        avg_rating=avg_rating,
        rating_count=rating_count,
        jobs_completed_all_time=max(0, inputs.jobs_completed_all_time),
        jobs_completed_30d=max(0, inputs.jobs_completed_30d),
        cancellation_rate_30d=_clamp_rate(inputs.jobs_cancelled_30d / denominator),
    )


def next_daily_run_at(now: datetime, *, hour_utc: int) -> datetime:
    """Next occurrence of ``hour_utc``:00 UTC strictly after ``now``."""
    hour = max(0, min(23, hour_utc))
    current = now.astimezone(timezone.utc)
    candidate = current.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= current:
        candidate += timedelta(days=1)
    return candidate


async def recompute_provider_stats(
    store: ProviderStatsStore,
    *,
    provider_id: int | None = None,
    now: datetime | None = None,
) -> int:
    reference = now or datetime.now(timezone.utc)
    inputs = await store.fetch_provider_stats_inputs(
        provider_id=provider_id,
        since=reference - timedelta(days=STATS_WINDOW_DAYS),
    )
    snapshots = [compute_provider_stats_snapshot(item) for item in inputs]
    written = await store.upsert_provider_stats(snapshots)
    logger.info("provider stats recomputed scope=%s providers=%s", provider_id or "all", written)
    return written
