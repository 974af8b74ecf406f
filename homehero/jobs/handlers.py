from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from homehero.core.config import Settings
from homehero.jobs.errors import PermanentJobError, RescheduleJobError
from homehero.jobs.executor import JobContext, JobHandlerRegistry
from homehero.jobs.types import JobType
from homehero.services.payments import PaymentGatewayError, PaymentGatewayUnavailableError
from homehero.services.provider_stats import next_daily_run_at, recompute_provider_stats

if TYPE_CHECKING:
    from homehero.services.purchases import PurchaseReconciler

PROCESSING_INTENT_RECHECK_SECONDS = 60


def _optional_positive_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise PermanentJobError(f"{key} must be an integer") from None
    if parsed <= 0:
        raise PermanentJobError(f"{key} must be positive")
    return parsed


def _require_reconciler(context: JobContext) -> PurchaseReconciler:
    if context.reconciler is None:
        raise PermanentJobError("payment reconciliation is not configured for this worker")
    return context.reconciler


async def handle_provider_stats_recompute(payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
    provider_id = _optional_positive_int(payload, "provider_id")
    written = await recompute_provider_stats(context.repository, provider_id=provider_id, now=context.now)
    return {"scope": provider_id or "all", "providers": written}


async def handle_purchase_reconcile(payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
    intent_id = payload.get("payment_intent_id")
    if not isinstance(intent_id, str) or not intent_id.strip():
        raise PermanentJobError("payment_intent_id is required")
    reconciler = _require_reconciler(context)

    try:
        intent = await reconciler.gateway.retrieve_payment_intent(intent_id.strip())
    except PaymentGatewayUnavailableError:
        raise
    except PaymentGatewayError as exc:
        raise PermanentJobError(str(exc)) from exc

    if intent.status == "processing":
        now = context.now or datetime.now(timezone.utc)
        raise RescheduleJobError(now + timedelta(seconds=PROCESSING_INTENT_RECHECK_SECONDS))

    outcome = await reconciler.reconcile_intent(intent)
    return {
        "payment_intent_id": intent.id,
        "intent_status": intent.status,
        "result": outcome.result.value if outcome is not None else "not_terminal",
    }


async def handle_payment_intent_sweep(payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
    reconciler = _require_reconciler(context)
    return await reconciler.sweep_recent_intents(context.now)


def build_default_registry(settings: Settings) -> JobHandlerRegistry:
    registry = JobHandlerRegistry()

    def next_stats_run(now: datetime, payload: dict[str, Any]) -> datetime | None:
        # Per-provider recomputes are one-off; only the global run recurs.
        if payload.get("provider_id"):
            return None
        return next_daily_run_at(now, hour_utc=settings.provider_stats_recompute_hour_utc)

    def next_sweep_run(now: datetime, payload: dict[str, Any]) -> datetime | None:
        return now + timedelta(minutes=max(1, settings.payment_sweep_interval_minutes))

    registry.register(JobType.PROVIDER_STATS_RECOMPUTE, handle_provider_stats_recompute, next_run_at=next_stats_run)
    registry.register(JobType.PURCHASE_RECONCILE, handle_purchase_reconcile)
    registry.register(JobType.PAYMENT_INTENT_SWEEP, handle_payment_intent_sweep, next_run_at=next_sweep_run)
    return registry
