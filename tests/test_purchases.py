from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from homehero.core.events import ENTITLEMENTS_GRANTED, PURCHASE_FAILED, EventBus
from homehero.jobs.scheduler import JobScheduler
from homehero.services.payments import WebhookSignatureError
from homehero.services.purchases import (
    ADDON_INTENT_KIND,
    AddonRequest,
    PurchaseReconciler,
    PurchaseValidationError,
    compute_addon_amount_cents,
    normalize_addon_request,
    seed_from_intent_metadata,
)
from homehero.services.repository import (
    AddonType,
    PurchaseStatus,
    ReconcileResult,
    RepositoryNotFoundError,
)

SECRET = "whsec_test"


def _reconciler(repository, gateway, *, events: EventBus | None = None, with_jobs: bool = False) -> PurchaseReconciler:
    jobs = (
        JobScheduler(repository, default_max_attempts=5, retry_base_seconds=30, retry_max_seconds=600, stale_lock_seconds=300)
        if with_jobs
        else None
    )
    return PurchaseReconciler(repository, gateway, events=events, jobs=jobs, webhook_secret=SECRET)


def _event(event_id: str, event_type: str, intent: dict[str, Any]) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": intent}}).encode("utf-8")


def _intent_payload(intent) -> dict[str, Any]:
    return {
        "id": intent.id,
        "status": intent.status,
        "amount": intent.amount,
        "currency": intent.currency,
        "metadata": intent.metadata,
    }


def test_normalize_accepts_current_and_legacy_shapes() -> None:
    assert normalize_addon_request({"addon_type": "lead_pack", "pack_size": 25}) == AddonRequest(
        addon_type=AddonType.LEAD_PACK, pack_size=25
    )
    assert normalize_addon_request({"addonType": "FEATURED_ZIP", "zipCode": " 94107 "}).zip_codes == ["94107"]
    assert normalize_addon_request({"type": "EXTRA_LEADS", "quantity": "7"}) == AddonRequest(
        addon_type=AddonType.LEAD_PACK, pack_size=7
    )
    legacy_zip = normalize_addon_request({"type": "FEATURED_ZIP_CODES", "zipCodes": ["94107", "94107", "10001"]})
    assert legacy_zip.addon_type is AddonType.FEATURED_ZIP
    assert legacy_zip.zip_codes == ["94107", "10001"]


def test_normalize_clamps_pack_size_and_rejects_unknown_types() -> None:
    assert normalize_addon_request({"addon_type": "LEAD_PACK", "pack_size": 0}).pack_size == 1
    assert normalize_addon_request({"addon_type": "LEAD_PACK", "pack_size": 10_000_000}).pack_size == 100_000

    with pytest.raises(PurchaseValidationError):
        normalize_addon_request({"addon_type": "LEAD_PACK", "pack_size": "many"})
    with pytest.raises(PurchaseValidationError, match="finite"):
        normalize_addon_request({"type": "EXTRA_LEADS", "quantity": float("inf")})
    with pytest.raises(PurchaseValidationError, match="finite"):
        normalize_addon_request({"addon_type": "LEAD_PACK", "packSize": "nan"})
    with pytest.raises(PurchaseValidationError):
        normalize_addon_request({"addon_type": "GOLD_STAR"})
    with pytest.raises(PurchaseValidationError):
        normalize_addon_request({})


def test_pricing() -> None:
    assert compute_addon_amount_cents(AddonRequest(addon_type=AddonType.VERIFICATION_BADGE)) == 1000
    assert compute_addon_amount_cents(AddonRequest(addon_type=AddonType.FEATURED_ZIP, zip_codes=["1", "2", "3"])) == 600
    assert compute_addon_amount_cents(AddonRequest(addon_type=AddonType.LEAD_PACK, pack_size=10)) == 500


def test_seed_from_metadata_only_for_our_intents() -> None:
    seed = seed_from_intent_metadata(
        {"kind": ADDON_INTENT_KIND, "provider_id": "7", "addon_type": "FEATURED_ZIP", "zip_codes": "94107,10001"},
        amount_cents=400,
        currency="USD",
    )
    assert seed is not None
    assert seed.provider_id == 7
    assert seed.currency == "usd"
    assert seed.metadata == {"addon_type": "FEATURED_ZIP", "zip_codes": ["94107", "10001"]}

    assert seed_from_intent_metadata({"kind": "OTHER"}, amount_cents=1, currency="usd") is None
    assert (
        seed_from_intent_metadata(
            {"kind": ADDON_INTENT_KIND, "provider_id": "7", "addon_type": "LEAD_PACK", "pack_size": ""},
            amount_cents=1,
            currency="usd",
        )
        is None
    )
    assert (
        seed_from_intent_metadata(
            {"kind": ADDON_INTENT_KIND, "provider_id": "7", "addon_type": "LEAD_PACK", "pack_size": "inf"},
            amount_cents=1,
            currency="usd",
        )
        is None
    )
    assert (
        seed_from_intent_metadata(
            {"kind": ADDON_INTENT_KIND, "provider_id": "0", "addon_type": "VERIFICATION_BADGE"},
            amount_cents=1,
            currency="usd",
        )
        is None
    )


def test_create_purchase_writes_pending_record_with_intent_metadata(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)

    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "FEATURED_ZIP", "zip_codes": ["94107"]}))

    record = fake_repository.purchases[pending.external_payment_intent_id]
    assert record.status is PurchaseStatus.PENDING
    assert record.amount_cents == pending.amount_cents == 200
    assert pending.client_secret == f"{pending.external_payment_intent_id}_secret"
    created = fake_gateway.created[0]
    assert created["metadata"]["kind"] == ADDON_INTENT_KIND
    assert created["metadata"]["zip_codes"] == "94107"
    assert created["idempotency_key"].startswith("addon-7-")


def test_create_purchase_rejects_empty_zip_list_and_bad_provider(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)

    with pytest.raises(PurchaseValidationError):
        asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "FEATURED_ZIP", "zip_codes": []}))
    with pytest.raises(PurchaseValidationError):
        asyncio.run(reconciler.create_addon_purchase(0, {"addon_type": "VERIFICATION_BADGE"}))
    assert fake_gateway.created == []


def test_reconcile_twice_grants_once_and_publishes(fake_repository, fake_gateway) -> None:
    events = EventBus()
    published: list[tuple[str, dict[str, Any]]] = []

    async def record(topic: str, payload: dict[str, Any]) -> None:
        published.append((topic, payload))

    events.subscribe(ENTITLEMENTS_GRANTED, record)
    events.subscribe(PURCHASE_FAILED, record)
    reconciler = _reconciler(fake_repository, fake_gateway, events=events)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "LEAD_PACK", "pack_size": 10}))

    first = asyncio.run(reconciler.reconcile(pending.external_payment_intent_id, True))
    second = asyncio.run(reconciler.reconcile(pending.external_payment_intent_id, True))

    assert first.result is ReconcileResult.APPLIED
    assert second.result is ReconcileResult.ALREADY_PROCESSED
    assert fake_repository.entitlements[7].lead_credits == 10
    assert [topic for topic, _ in published] == [ENTITLEMENTS_GRANTED]
    assert published[0][1]["provider_id"] == 7
    assert published[0][1]["addon_type"] == "LEAD_PACK"


def test_concurrent_reconciles_grant_exactly_once(fake_repository, fake_gateway) -> None:
    events = EventBus()
    published: list[str] = []

    async def record(topic: str, payload: dict[str, Any]) -> None:
        published.append(topic)

    events.subscribe(ENTITLEMENTS_GRANTED, record)
    reconciler = _reconciler(fake_repository, fake_gateway, events=events)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "LEAD_PACK", "pack_size": 10}))
    intent = fake_gateway.settle(pending.external_payment_intent_id)

    async def race():
        return await asyncio.gather(
            reconciler.reconcile(intent.id, True),
            reconciler.reconcile_intent(intent),
            reconciler.reconcile(intent.id, True),
            reconciler.reconcile_intent(intent),
        )

    results = [outcome.result for outcome in asyncio.run(race())]

    assert results.count(ReconcileResult.APPLIED) == 1
    assert results.count(ReconcileResult.ALREADY_PROCESSED) == 3
    assert fake_repository.entitlements[7].lead_credits == 10
    assert published == [ENTITLEMENTS_GRANTED]


def test_concurrent_recovery_of_orphaned_intent_creates_one_record(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "LEAD_PACK", "pack_size": 5}))
    del fake_repository.purchases[pending.external_payment_intent_id]
    intent = fake_gateway.settle(pending.external_payment_intent_id)

    async def race():
        return await asyncio.gather(*(reconciler.reconcile_intent(intent) for _ in range(3)))

    results = [outcome.result for outcome in asyncio.run(race())]

    assert results.count(ReconcileResult.APPLIED) == 1
    assert results.count(ReconcileResult.ALREADY_PROCESSED) == 2
    assert fake_repository.purchases[intent.id].status is PurchaseStatus.SUCCEEDED
    assert fake_repository.entitlements[7].lead_credits == 5


def test_success_after_failure_is_not_granted(fake_repository, fake_gateway, caplog) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "VERIFICATION_BADGE"}))

    asyncio.run(reconciler.reconcile(pending.external_payment_intent_id, False))
    outcome = asyncio.run(reconciler.reconcile(pending.external_payment_intent_id, True))

    assert outcome.result is ReconcileResult.ALREADY_PROCESSED
    assert outcome.previous_status is PurchaseStatus.FAILED
    assert fake_repository.purchases[pending.external_payment_intent_id].status is PurchaseStatus.FAILED
    assert 7 not in fake_repository.entitlements
    assert "already marked failed" in caplog.text


def test_unknown_intent_without_metadata_is_not_created(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)

    outcome = asyncio.run(reconciler.reconcile("pi_elsewhere", True, 500, {"kind": "SUBSCRIPTION"}))

    assert outcome.result is ReconcileResult.UNKNOWN_INTENT
    assert fake_repository.purchases == {}


def test_featured_zip_grants_union(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    first = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "FEATURED_ZIP", "zip_codes": ["94107", "10001"]}))
    second = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "FEATURED_ZIP", "zip_codes": ["10001", "60601"]}))

    asyncio.run(reconciler.reconcile(first.external_payment_intent_id, True))
    asyncio.run(reconciler.reconcile(second.external_payment_intent_id, True))

    entitlements = asyncio.run(reconciler.get_entitlements(7))
    assert entitlements.featured_zip_codes == ["10001", "60601", "94107"]


def test_webhook_processes_once_and_skips_duplicates(fake_repository, fake_gateway, stripe_signature) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "LEAD_PACK", "pack_size": 3}))
    intent = fake_gateway.settle(pending.external_payment_intent_id)
    body = _event("evt_1", "payment_intent.succeeded", _intent_payload(intent))

    first = asyncio.run(reconciler.handle_webhook(body, stripe_signature(body, SECRET)))
    second = asyncio.run(reconciler.handle_webhook(body, stripe_signature(body, SECRET)))

    assert first.status == "processed"
    assert first.reconcile is ReconcileResult.APPLIED
    assert second.status == "duplicate"
    assert fake_repository.entitlements[7].lead_credits == 3
    assert fake_repository.webhook_events["evt_1"]["payment_intent_id"] == pending.external_payment_intent_id


def test_webhook_failure_event_marks_purchase_failed(fake_repository, fake_gateway, stripe_signature) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "VERIFICATION_BADGE"}))
    intent = fake_gateway.settle(pending.external_payment_intent_id, "requires_payment_method")
    body = _event("evt_2", "payment_intent.payment_failed", _intent_payload(intent))

    result = asyncio.run(reconciler.handle_webhook(body, stripe_signature(body, SECRET)))

    assert result.status == "processed"
    assert fake_repository.purchases[pending.external_payment_intent_id].status is PurchaseStatus.FAILED


def test_webhook_ignores_other_event_types_but_records_them(fake_repository, fake_gateway, stripe_signature) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    body = _event("evt_3", "charge.refunded", {"id": "ch_1"})

    result = asyncio.run(reconciler.handle_webhook(body, stripe_signature(body, SECRET)))

    assert result.status == "ignored"
    assert result.reconcile is None
    assert "evt_3" in fake_repository.webhook_events


def test_webhook_with_bad_signature_is_rejected_and_not_recorded(fake_repository, fake_gateway, stripe_signature) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    body = _event("evt_4", "payment_intent.succeeded", {"id": "pi_1"})

    with pytest.raises(WebhookSignatureError):
        asyncio.run(reconciler.handle_webhook(body, stripe_signature(body, "whsec_other")))
    with pytest.raises(WebhookSignatureError):
        asyncio.run(reconciler.handle_webhook(body, None))
    assert fake_repository.webhook_events == {}


def test_request_confirmation_enqueues_reconcile_for_pending(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway, with_jobs=True)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "VERIFICATION_BADGE"}))

    confirmation = asyncio.run(reconciler.request_confirmation(7, pending.external_payment_intent_id))

    assert confirmation.status is PurchaseStatus.PENDING
    job = fake_repository.jobs[confirmation.job_id]
    assert job.type == "PURCHASE_RECONCILE"
    assert job.payload["payment_intent_id"] == pending.external_payment_intent_id

    asyncio.run(reconciler.reconcile(pending.external_payment_intent_id, True))
    settled = asyncio.run(reconciler.request_confirmation(7, pending.external_payment_intent_id))
    assert settled.status is PurchaseStatus.SUCCEEDED
    assert settled.job_id is None


def test_request_confirmation_hides_other_providers_purchases(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway, with_jobs=True)
    pending = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "VERIFICATION_BADGE"}))

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(reconciler.request_confirmation(8, pending.external_payment_intent_id))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(reconciler.request_confirmation(7, "pi_missing"))


def test_sweep_skips_foreign_and_non_terminal_intents(fake_repository, fake_gateway) -> None:
    reconciler = _reconciler(fake_repository, fake_gateway)
    settled = asyncio.run(reconciler.create_addon_purchase(7, {"addon_type": "VERIFICATION_BADGE"}))
    asyncio.run(reconciler.create_addon_purchase(8, {"addon_type": "VERIFICATION_BADGE"}))
    fake_gateway.settle(settled.external_payment_intent_id)

    summary = asyncio.run(reconciler.sweep_recent_intents())

    assert summary["scanned"] == 2
    assert summary["applied"] == 1
    assert summary["skipped"] == 1
    assert fake_repository.entitlements[7].verification_badge is True
