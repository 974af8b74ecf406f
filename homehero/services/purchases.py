from __future__ import annotations

import hashlib
import logging
import math
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from homehero.core.config import Settings
from homehero.core.events import ENTITLEMENTS_GRANTED, PURCHASE_FAILED, EventBus
from homehero.jobs.types import JobType
from homehero.services.payments import (
    PaymentIntent,
    StripePaymentGateway,
    verify_webhook_signature,
)
from homehero.services.repository import (
    AddonType,
    EntitlementsRecord,
    PurchaseRecord,
    PurchaseSeed,
    PurchaseStatus,
    ReconcileOutcome,
    ReconcileResult,
    RepositoryNotFoundError,
    RepositoryValidationError,
    grant_for_purchase,
)

logger = logging.getLogger(__name__)

ADDON_INTENT_KIND = "ADDON_V2"
MAX_PACK_SIZE = 100_000
VERIFICATION_BADGE_CENTS = 1000
FEATURED_ZIP_CENTS = 200
LEAD_CENTS = 50

HANDLED_WEBHOOK_EVENTS = {
    "payment_intent.succeeded": True,
    "payment_intent.payment_failed": False,
    "payment_intent.canceled": False,
}

_LEGACY_ADDON_TYPES = {
    "EXTRA_LEADS": AddonType.LEAD_PACK,
    "FEATURED_ZIP_CODES": AddonType.FEATURED_ZIP,
    "VERIFICATION_BADGE": AddonType.VERIFICATION_BADGE,
}


class PurchaseValidationError(ValueError):
    """The add-on request cannot be priced or granted."""


class PurchaseStore(Protocol):
    async def create_purchase(
        self,
        *,
        provider_id: int,
        addon_type: AddonType,
        amount_cents: int,
        currency: str,
        external_payment_intent_id: str,
        metadata: dict[str, Any],
    ) -> PurchaseRecord: ...

    async def get_purchase_by_intent(self, external_payment_intent_id: str) -> PurchaseRecord | None: ...

    async def reconcile_purchase(
        self,
        *,
        external_payment_intent_id: str,
        succeeded: bool,
        seed: PurchaseSeed | None = None,
    ) -> ReconcileOutcome: ...

    async def get_entitlements(self, provider_id: int) -> EntitlementsRecord: ...

    async def has_webhook_event(self, event_id: str) -> bool: ...

    async def record_webhook_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payment_intent_id: str | None,
        payload_hash: str,
    ) -> bool: ...


class JobEnqueuer(Protocol):
    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        *,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
    ) -> int: ...


@dataclass(slots=True)
class AddonRequest:
    addon_type: AddonType
    zip_codes: list[str] = field(default_factory=list)
    pack_size: int | None = None

    def record_metadata(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"addon_type": self.addon_type.value}
        if self.addon_type is AddonType.FEATURED_ZIP:
            metadata["zip_codes"] = list(self.zip_codes)
        if self.addon_type is AddonType.LEAD_PACK:
            metadata["pack_size"] = self.pack_size
        return metadata


@dataclass(slots=True)
class PendingPurchase:
    purchase_id: str
    external_payment_intent_id: str
    client_secret: str | None
    addon_type: AddonType
    amount_cents: int
    currency: str


@dataclass(slots=True)
class WebhookResult:
    event_id: str
    event_type: str
    status: str
    reconcile: ReconcileResult | None = None


@dataclass(slots=True)
class ConfirmationResult:
    external_payment_intent_id: str
    status: PurchaseStatus
    job_id: int | None = None


def normalize_zip_codes(values: Any) -> list[str]:
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple)):
        return []
    seen: dict[str, None] = {}
    for value in values:
        if value is None:
            continue
        normalized = str(value).strip().upper()
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def _clamp_pack_size(value: Any) -> int:
    try:
        size = float(value)
    except (TypeError, ValueError):
        raise PurchaseValidationError("pack_size must be a number") from None
    if not math.isfinite(size):
        raise PurchaseValidationError("pack_size must be a finite number")
    return max(1, min(MAX_PACK_SIZE, int(size)))


def normalize_addon_request(raw: Mapping[str, Any]) -> AddonRequest:
    """Accept current and legacy add-on request shapes and return one canonical form."""
    raw_type = raw.get("addon_type", raw.get("addonType"))
    if raw_type is not None:
        try:
            addon_type = AddonType(str(raw_type).strip().upper())
        except ValueError:
            raise PurchaseValidationError(f"unsupported addon_type: {raw_type}") from None
        if addon_type is AddonType.LEAD_PACK:
            return AddonRequest(
                addon_type=addon_type,
                pack_size=_clamp_pack_size(raw.get("pack_size", raw.get("packSize"))),
            )
        if addon_type is AddonType.FEATURED_ZIP:
            zips = raw.get("zip_codes", raw.get("zipCodes"))
            if zips is None:
                zips = raw.get("zip_code", raw.get("zipCode"))
            return AddonRequest(addon_type=addon_type, zip_codes=normalize_zip_codes(zips))
        return AddonRequest(addon_type=addon_type)

    legacy_type = str(raw.get("type") or "").strip().upper()
    addon_type = _LEGACY_ADDON_TYPES.get(legacy_type)
    if addon_type is None:
        raise PurchaseValidationError("addon_type is required")
    if addon_type is AddonType.LEAD_PACK:
        return AddonRequest(addon_type=addon_type, pack_size=_clamp_pack_size(raw.get("quantity")))
    if addon_type is AddonType.FEATURED_ZIP:
        return AddonRequest(addon_type=addon_type, zip_codes=normalize_zip_codes(raw.get("zipCodes")))
    return AddonRequest(addon_type=addon_type)


def compute_addon_amount_cents(request: AddonRequest) -> int:
    if request.addon_type is AddonType.VERIFICATION_BADGE:
        return VERIFICATION_BADGE_CENTS
    if request.addon_type is AddonType.FEATURED_ZIP:
        return max(1, len(request.zip_codes)) * FEATURED_ZIP_CENTS
    return max(1, request.pack_size or 1) * LEAD_CENTS


def seed_from_intent_metadata(
    metadata: Mapping[str, Any] | None,
    *,
    amount_cents: int | None,
    currency: str | None,
) -> PurchaseSeed | None:
    """Rebuild a purchase from processor-side metadata, or ``None`` if it is not ours or unusable."""
    if not metadata or str(metadata.get("kind") or "") != ADDON_INTENT_KIND:
        return None
    try:
        provider_id = int(str(metadata.get("provider_id") or ""))
        addon_type = AddonType(str(metadata.get("addon_type") or ""))
    except ValueError:
        return None
    if provider_id <= 0:
        return None

    record_metadata: dict[str, Any] = {"addon_type": addon_type.value}
    if addon_type is AddonType.FEATURED_ZIP:
        record_metadata["zip_codes"] = normalize_zip_codes(str(metadata.get("zip_codes") or "").split(","))
    elif addon_type is AddonType.LEAD_PACK:
        raw_pack_size = str(metadata.get("pack_size") or "").strip()
        if not raw_pack_size:
            return None
        try:
            record_metadata["pack_size"] = _clamp_pack_size(raw_pack_size)
        except PurchaseValidationError:
            return None

    try:
        grant_for_purchase(addon_type, record_metadata)
    except RepositoryValidationError:
        return None

    return PurchaseSeed(
        provider_id=provider_id,
        addon_type=addon_type,
        amount_cents=int(amount_cents or 0),
        currency=(currency or "usd").lower(),
        metadata=record_metadata,
    )


def _intent_metadata(provider_id: int, addon_type: AddonType, metadata: Mapping[str, Any]) -> dict[str, str]:
    zip_codes = metadata.get("zip_codes") or []
    pack_size = metadata.get("pack_size")
    return {
        "kind": ADDON_INTENT_KIND,
        "provider_id": str(provider_id),
        "addon_type": addon_type.value,
        "zip_codes": ",".join(zip_codes),
        "pack_size": str(pack_size) if pack_size is not None else "",
    }


class PurchaseReconciler:
    def __init__(
        self,
        store: PurchaseStore,
        gateway: StripePaymentGateway,
        *,
        currency: str = "usd",
        events: EventBus | None = None,
        jobs: JobEnqueuer | None = None,
        webhook_secret: str | None = None,
        webhook_tolerance_seconds: int = 300,
        sweep_lookback_hours: int = 24,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.currency = currency.lower()
        self.events = events
        self.jobs = jobs
        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.sweep_lookback_hours = max(1, sweep_lookback_hours)

    @classmethod
    def from_settings(
        cls,
        store: PurchaseStore,
        settings: Settings,
        *,
        events: EventBus | None = None,
        jobs: JobEnqueuer | None = None,
        gateway: StripePaymentGateway | None = None,
    ) -> PurchaseReconciler:
        return cls(
            store,
            gateway or StripePaymentGateway.from_settings(settings),
            currency=settings.payment_currency,
            events=events,
            jobs=jobs,
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
            sweep_lookback_hours=settings.payment_sweep_lookback_hours,
        )

    async def create_addon_purchase(self, provider_id: int, raw_request: Mapping[str, Any]) -> PendingPurchase:
        request = normalize_addon_request(raw_request)
        if request.addon_type is AddonType.FEATURED_ZIP and not request.zip_codes:
            raise PurchaseValidationError("at least one zip code is required")
        return await self.create_pending_purchase(
            provider_id,
            request.addon_type,
            compute_addon_amount_cents(request),
            request.record_metadata(),
        )

    async def create_pending_purchase(
        self,
        provider_id: int,
        addon_type: AddonType,
        amount_cents: int,
        metadata: dict[str, Any],
    ) -> PendingPurchase:
        """Create the processor intent, then the PENDING record keyed by its id.

        If the record write fails after the intent exists, the intent is
        logged and left for the payment sweep to adopt from its metadata.
        """
        if provider_id <= 0:
            raise PurchaseValidationError("provider_id must be positive")
        if amount_cents <= 0:
            raise PurchaseValidationError("amount_cents must be positive")
        try:
            grant_for_purchase(addon_type, metadata)
        except RepositoryValidationError as exc:
            raise PurchaseValidationError(str(exc)) from exc

        intent = await self.gateway.create_payment_intent(
            amount_cents=amount_cents,
            currency=self.currency,
            metadata=_intent_metadata(provider_id, addon_type, metadata),
            idempotency_key=f"addon-{provider_id}-{uuid.uuid4().hex}",
        )

        try:
            record = await self.store.create_purchase(
                provider_id=provider_id,
                addon_type=addon_type,
                amount_cents=amount_cents,
                currency=self.currency,
                external_payment_intent_id=intent.id,
                metadata=metadata,
            )
        except Exception:
            logger.error(
                "purchase record write failed after intent creation intent_id=%s provider_id=%s addon_type=%s",
                intent.id,
                provider_id,
                addon_type.value,
            )
            raise

        logger.info(
            "pending purchase created purchase_id=%s intent_id=%s provider_id=%s addon_type=%s amount_cents=%s",
            record.id,
            intent.id,
            provider_id,
            addon_type.value,
            amount_cents,
        )
        return PendingPurchase(
            purchase_id=record.id,
            external_payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            addon_type=addon_type,
            amount_cents=amount_cents,
            currency=self.currency,
        )

    async def reconcile(
        self,
        external_payment_intent_id: str,
        succeeded: bool,
        amount_cents: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        *,
        currency: str | None = None,
    ) -> ReconcileOutcome:
        seed = None
        if succeeded:
            seed = seed_from_intent_metadata(metadata, amount_cents=amount_cents, currency=currency or self.currency)

        outcome = await self.store.reconcile_purchase(
            external_payment_intent_id=external_payment_intent_id,
            succeeded=succeeded,
            seed=seed,
        )

        if outcome.result is ReconcileResult.APPLIED and outcome.purchase is not None:
            purchase = outcome.purchase
            logger.info(
                "purchase reconciled intent_id=%s provider_id=%s status=%s",
                external_payment_intent_id,
                purchase.provider_id,
                purchase.status.value,
            )
            if self.events is not None:
                topic = ENTITLEMENTS_GRANTED if succeeded else PURCHASE_FAILED
                await self.events.publish(
                    topic,
                    {
                        "provider_id": purchase.provider_id,
                        "purchase_id": purchase.id,
                        "addon_type": purchase.addon_type.value,
                        "external_payment_intent_id": external_payment_intent_id,
                    },
                )
        elif outcome.result is ReconcileResult.ALREADY_PROCESSED:
            if succeeded and outcome.previous_status is PurchaseStatus.FAILED:
                logger.warning(
                    "success event for a purchase already marked failed intent_id=%s; no grant applied",
                    external_payment_intent_id,
                )
            else:
                logger.info("purchase already processed intent_id=%s", external_payment_intent_id)
        else:
            logger.warning(
                "payment event for unknown intent intent_id=%s succeeded=%s",
                external_payment_intent_id,
                succeeded,
            )
        return outcome

    async def reconcile_intent(self, intent: PaymentIntent) -> ReconcileOutcome | None:
        if not intent.terminal:
            return None
        return await self.reconcile(
            intent.id,
            intent.succeeded,
            intent.amount,
            intent.metadata,
            currency=intent.currency,
        )

    async def handle_webhook(self, raw_body: bytes, signature_header: str | None) -> WebhookResult:
        event = verify_webhook_signature(
            raw_body,
            signature_header,
            secret=self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        )
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if not event_id:
            raise RepositoryValidationError("webhook event is missing an id")

        if await self.store.has_webhook_event(event_id):
            logger.info("duplicate webhook event skipped event_id=%s type=%s", event_id, event_type)
            return WebhookResult(event_id=event_id, event_type=event_type, status="duplicate")

        data = event.get("data")
        intent_payload = data.get("object") if isinstance(data, dict) else None
        intent = PaymentIntent.from_api(intent_payload) if isinstance(intent_payload, dict) else None

        result: ReconcileResult | None = None
        status = "ignored"
        if event_type in HANDLED_WEBHOOK_EVENTS and intent is not None and intent.id:
            outcome = await self.reconcile(
                intent.id,
                HANDLED_WEBHOOK_EVENTS[event_type],
                intent.amount,
                intent.metadata,
                currency=intent.currency,
            )
            result = outcome.result
            status = "processed"

        # Recorded only after processing succeeds so a failed attempt is retried by the processor.
        await self.store.record_webhook_event(
            event_id=event_id,
            event_type=event_type,
            payment_intent_id=intent.id if intent is not None else None,
            payload_hash=hashlib.sha256(raw_body).hexdigest(),
        )
        return WebhookResult(event_id=event_id, event_type=event_type, status=status, reconcile=result)

    async def request_confirmation(self, provider_id: int, external_payment_intent_id: str) -> ConfirmationResult:
        purchase = await self.store.get_purchase_by_intent(external_payment_intent_id)
        if purchase is None or purchase.provider_id != provider_id:
            raise RepositoryNotFoundError("purchase not found")

        if purchase.status is not PurchaseStatus.PENDING or self.jobs is None:
            return ConfirmationResult(external_payment_intent_id=external_payment_intent_id, status=purchase.status)

        job_id = await self.jobs.enqueue(
            JobType.PURCHASE_RECONCILE,
            {"payment_intent_id": external_payment_intent_id, "provider_id": provider_id},
        )
        return ConfirmationResult(
            external_payment_intent_id=external_payment_intent_id,
            status=purchase.status,
            job_id=job_id,
        )

    async def sweep_recent_intents(self, now: datetime | None = None) -> dict[str, int]:
        reference = now or datetime.now(timezone.utc)
        intents = await self.gateway.list_payment_intents(
            created_gte=reference - timedelta(hours=self.sweep_lookback_hours),
        )
        summary = {"scanned": len(intents), "applied": 0, "already_processed": 0, "unknown_intent": 0, "skipped": 0}
        for intent in intents:
            if intent.metadata.get("kind") != ADDON_INTENT_KIND or not intent.terminal:
                summary["skipped"] += 1
                continue
            outcome = await self.reconcile_intent(intent)
            if outcome is not None:
                summary[outcome.result.value] += 1
        logger.info(
            "payment sweep finished scanned=%s applied=%s already_processed=%s unknown_intent=%s",
            summary["scanned"],
            summary["applied"],
            summary["already_processed"],
            summary["unknown_intent"],
        )
        return summary

    async def get_entitlements(self, provider_id: int) -> EntitlementsRecord:
        return await self.store.get_entitlements(provider_id)
