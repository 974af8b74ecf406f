from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from homehero.core.config import get_settings
from homehero.jobs.types import JobRecord, JobStatus, JobTransition

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class AddonType(str, Enum):
    LEAD_PACK = "LEAD_PACK"
    VERIFICATION_BADGE = "VERIFICATION_BADGE"
    FEATURED_ZIP = "FEATURED_ZIP"


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    UNKNOWN_INTENT = "unknown_intent"


@dataclass(slots=True)
class PurchaseRecord:
    id: str
    provider_id: int
    addon_type: AddonType
    amount_cents: int
    currency: str
    external_payment_intent_id: str
    status: PurchaseStatus
    metadata: dict[str, Any]
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class PurchaseSeed:
    """Enough of a purchase to create it from a processor event when no local record exists."""

    provider_id: int
    addon_type: AddonType
    amount_cents: int
    currency: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class EntitlementsRecord:
    provider_id: int
    verification_badge: bool = False
    featured_zip_codes: list[str] = field(default_factory=list)
    lead_credits: int = 0
    updated_at: datetime | None = None


@dataclass(slots=True)
class EntitlementGrant:
    addon_type: AddonType
    lead_credits: int = 0
    zip_codes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReconcileOutcome:
    result: ReconcileResult
    purchase: PurchaseRecord | None = None
    previous_status: PurchaseStatus | None = None
    entitlements: EntitlementsRecord | None = None


@dataclass(slots=True)
class ProviderStatsInputs:
    provider_id: int
    avg_rating: float | None
    rating_count: int
    jobs_completed_all_time: int
    jobs_completed_30d: int
    jobs_finished_30d: int
    jobs_cancelled_30d: int


@dataclass(slots=True)
class ProviderStatsSnapshot:
    provider_id: int
    avg_rating: float | None
    rating_count: int
    jobs_completed_all_time: int
    jobs_completed_30d: int
    cancellation_rate_30d: float


MAX_LEAD_PACK_SIZE = 100_000

_JOB_COLUMNS = """
  id,
  type,
  payload,
  run_at,
  status::text as status,
  attempts,
  max_attempts,
  locked_at,
  locked_by,
  last_error,
  created_at,
  updated_at
"""

_PURCHASE_COLUMNS = """
  id::text as id,
  provider_id,
  addon_type::text as addon_type,
  amount_cents,
  currency,
  external_payment_intent_id,
  status::text as status,
  metadata,
  created_at,
  updated_at
"""

_ENTITLEMENT_COLUMNS = """
  provider_id,
  verification_badge,
  featured_zip_codes,
  lead_credits,
  updated_at
"""


def grant_for_purchase(addon_type: AddonType, metadata: dict[str, Any]) -> EntitlementGrant:
    """Entitlement delta a successful purchase of ``addon_type`` applies."""
    if addon_type is AddonType.LEAD_PACK:
        raw_size = metadata.get("pack_size")
        try:
            pack_size = int(raw_size)
        except (TypeError, ValueError):
            raise RepositoryValidationError("lead pack purchase is missing pack_size") from None
        return EntitlementGrant(addon_type=addon_type, lead_credits=max(1, min(pack_size, MAX_LEAD_PACK_SIZE)))

    if addon_type is AddonType.FEATURED_ZIP:
        raw_zips = metadata.get("zip_codes")
        zip_codes = sorted(
            {item.strip().upper() for item in raw_zips if isinstance(item, str) and item.strip()}
            if isinstance(raw_zips, list)
            else set()
        )
        if not zip_codes:
            raise RepositoryValidationError("featured zip purchase is missing zip_codes")
        return EntitlementGrant(addon_type=addon_type, zip_codes=zip_codes)

    return EntitlementGrant(addon_type=addon_type)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Jobs

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        run_at: datetime,
        max_attempts: int,
    ) -> int:
        pool = await self._get_pool()
        try:
            job_id = await pool.fetchval(
                """
                insert into background_jobs (type, payload, run_at, status, attempts, max_attempts)
                values ($1, $2::jsonb, $3, 'PENDING', 0, $4)
                returning id
                """,
                job_type,
                json.dumps(payload),
                run_at,
                max_attempts,
            )
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError("job violates table constraints") from exc
        return int(job_id)

    async def enqueue_singleton_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        run_at: datetime,
        max_attempts: int,
        reschedule_existing: bool = True,
    ) -> tuple[int, bool]:
        """Insert the one non-terminal row for ``job_type`` or reschedule the existing one.

        Returns ``(job_id, created)``. The partial unique index on
        ``singleton_key`` makes the insert-or-reschedule a single statement, so
        concurrent producers converge on one row.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    insert into background_jobs (
                      type, payload, run_at, status, attempts, max_attempts, singleton_key
                    )
                    values ($1, $2::jsonb, $3, 'PENDING', 0, $4, $1)
                    on conflict (singleton_key) where status in ('PENDING', 'PROCESSING')
                    do update set
                      payload = excluded.payload,
                      run_at = excluded.run_at,
                      status = 'PENDING',
                      attempts = 0,
                      max_attempts = excluded.max_attempts,
                      locked_at = null,
                      locked_by = null,
                      last_error = null,
                      updated_at = now()
                    where $5::boolean
                    returning id, (xmax = 0) as inserted
                    """,
                    job_type,
                    json.dumps(payload),
                    run_at,
                    max_attempts,
                    reschedule_existing,
                )
                if row is not None:
                    return int(row["id"]), bool(row["inserted"])

                existing_id = await conn.fetchval(
                    """
                    select id
                    from background_jobs
                    where singleton_key = $1 and status in ('PENDING', 'PROCESSING')
                    """,
                    job_type,
                )
                if existing_id is None:
                    raise RepositoryConflictError("singleton job disappeared during enqueue")
                return int(existing_id), False

    async def claim_job(self, *, worker_id: str, now: datetime, stale_before: datetime) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            with candidate as (
              select id
              from background_jobs
              where (status = 'PENDING' and run_at <= $2)
                 or (status = 'PROCESSING' and locked_at < $3)
              order by run_at asc, id asc
              limit 1
              for update skip locked
            )
            update background_jobs j
            set
              status = 'PROCESSING',
              locked_at = $2,
              locked_by = $1,
              last_attempt_at = $2,
              updated_at = now()
            from candidate c
            where j.id = c.id
              and (
                (j.status = 'PENDING' and j.run_at <= $2)
                or (j.status = 'PROCESSING' and j.locked_at < $3)
              )
            returning
              j.id,
              j.type,
              j.payload,
              j.run_at,
              j.status::text as status,
              j.attempts,
              j.max_attempts,
              j.locked_at,
              j.locked_by,
              j.last_error,
              j.created_at,
              j.updated_at
            """,
            worker_id,
            now,
            stale_before,
        )
        if row is None:
            return None
        return self._job_row_to_record(row)

    async def complete_job(
        self,
        *,
        job_id: int,
        worker_id: str,
        locked_at: datetime | None,
        transition: JobTransition,
    ) -> JobRecord | None:
        """Apply ``transition`` only if this worker still holds the claim.

        ``None`` means the lock was lost (stale reclaim by another worker or a
        singleton reschedule) and nothing was written.
        """
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update background_jobs
            set
              status = $4::job_status,
              attempts = $5,
              run_at = coalesce($6::timestamptz, run_at),
              last_error = $7,
              locked_at = null,
              locked_by = null,
              updated_at = now()
            where id = $1
              and status = 'PROCESSING'
              and locked_by = $2
              and locked_at is not distinct from $3::timestamptz
            returning {_JOB_COLUMNS}
            """,
            job_id,
            worker_id,
            locked_at,
            transition.status.value,
            transition.attempts,
            transition.run_at,
            transition.last_error,
        )
        if row is None:
            return None
        return self._job_row_to_record(row)

    async def touch_job_lock(
        self,
        *,
        job_id: int,
        worker_id: str,
        locked_at: datetime | None,
        now: datetime,
    ) -> datetime | None:
        """Move ``locked_at`` forward while the claim is still ours; ``None`` if it was lost."""
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            update background_jobs
            set locked_at = $4, updated_at = now()
            where id = $1
              and status = 'PROCESSING'
              and locked_by = $2
              and locked_at is not distinct from $3::timestamptz
            returning locked_at
            """,
            job_id,
            worker_id,
            locked_at,
            now,
        )

    async def release_stale_jobs(self, *, stale_before: datetime, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from background_jobs
                      where status = 'PROCESSING' and locked_at < $1
                      order by locked_at asc
                      limit $2
                      for update skip locked
                    )
                    update background_jobs j
                    set
                      status = 'PENDING',
                      locked_at = null,
                      locked_by = null,
                      updated_at = now()
                    from stale s
                    where j.id = s.id
                    returning j.id
                    """,
                    stale_before,
                    bounded_limit,
                )
        return len(rows)

    async def get_job(self, job_id: int) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_JOB_COLUMNS} from background_jobs where id = $1",
            job_id,
        )
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(
        self,
        *,
        status: str | None,
        job_type: str | None,
        limit: int,
        offset: int,
    ) -> list[JobRecord]:
        pool = await self._get_pool()

        normalized_status = self._coerce_text(status)
        if normalized_status:
            normalized_status = normalized_status.upper()
            if normalized_status not in {item.value for item in JobStatus}:
                raise RepositoryValidationError("status must be one of: PENDING, PROCESSING, SUCCEEDED, FAILED")
        normalized_type = self._coerce_text(job_type)

        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from background_jobs
            where ($1::text is null or status::text = $1)
              and ($2::text is null or type = $2)
            order by updated_at desc, id desc
            limit $3
            offset $4
            """,
            normalized_status,
            normalized_type.upper() if normalized_type else None,
            limit,
            offset,
        )
        return [self._job_row_to_record(row) for row in rows]

    # Purchases and entitlements

    async def create_purchase(
        self,
        *,
        provider_id: int,
        addon_type: AddonType,
        amount_cents: int,
        currency: str,
        external_payment_intent_id: str,
        metadata: dict[str, Any],
    ) -> PurchaseRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into addon_purchases (
                  provider_id, addon_type, amount_cents, currency,
                  external_payment_intent_id, status, metadata
                )
                values ($1, $2::addon_type, $3, $4, $5, 'PENDING', $6::jsonb)
                returning {_PURCHASE_COLUMNS}
                """,
                provider_id,
                addon_type.value,
                amount_cents,
                currency,
                external_payment_intent_id,
                json.dumps(metadata),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("payment intent already has a purchase record") from exc
        return self._purchase_row_to_record(row)

    async def get_purchase_by_intent(self, external_payment_intent_id: str) -> PurchaseRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_PURCHASE_COLUMNS} from addon_purchases where external_payment_intent_id = $1",
            external_payment_intent_id,
        )
        if row is None:
            return None
        return self._purchase_row_to_record(row)

    async def reconcile_purchase(
        self,
        *,
        external_payment_intent_id: str,
        succeeded: bool,
        seed: PurchaseSeed | None = None,
    ) -> ReconcileOutcome:
        """Move a purchase out of PENDING and grant its entitlement, at most once.

        The conditional update's row count decides which caller owns the
        transition; the grant runs in the same transaction so it commits or
        rolls back together with the status change.
        """
        target = PurchaseStatus.SUCCEEDED if succeeded else PurchaseStatus.FAILED
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                purchase = await self._transition_purchase(conn, external_payment_intent_id, target)
                if purchase is not None:
                    entitlements = None
                    if target is PurchaseStatus.SUCCEEDED:
                        entitlements = await self._apply_grant(conn, purchase)
                    return ReconcileOutcome(
                        result=ReconcileResult.APPLIED,
                        purchase=purchase,
                        previous_status=PurchaseStatus.PENDING,
                        entitlements=entitlements,
                    )

                existing = await conn.fetchrow(
                    f"select {_PURCHASE_COLUMNS} from addon_purchases where external_payment_intent_id = $1",
                    external_payment_intent_id,
                )
                if existing is not None:
                    record = self._purchase_row_to_record(existing)
                    return ReconcileOutcome(
                        result=ReconcileResult.ALREADY_PROCESSED,
                        purchase=record,
                        previous_status=record.status,
                    )

                if not succeeded or seed is None:
                    return ReconcileOutcome(result=ReconcileResult.UNKNOWN_INTENT)

                inserted = await conn.fetchrow(
                    f"""
                    insert into addon_purchases (
                      provider_id, addon_type, amount_cents, currency,
                      external_payment_intent_id, status, metadata
                    )
                    values ($1, $2::addon_type, $3, $4, $5, 'SUCCEEDED', $6::jsonb)
                    on conflict (external_payment_intent_id) do nothing
                    returning {_PURCHASE_COLUMNS}
                    """,
                    seed.provider_id,
                    seed.addon_type.value,
                    seed.amount_cents,
                    seed.currency,
                    external_payment_intent_id,
                    json.dumps(seed.metadata),
                )
                if inserted is not None:
                    purchase = self._purchase_row_to_record(inserted)
                    logger.warning(
                        "purchase record created from processor event intent_id=%s provider_id=%s",
                        external_payment_intent_id,
                        purchase.provider_id,
                    )
                    entitlements = await self._apply_grant(conn, purchase)
                    return ReconcileOutcome(
                        result=ReconcileResult.APPLIED,
                        purchase=purchase,
                        entitlements=entitlements,
                    )

                # A concurrent writer created the row between our checks; retry the
                # conditional transition once against it.
                purchase = await self._transition_purchase(conn, external_payment_intent_id, target)
                if purchase is not None:
                    entitlements = await self._apply_grant(conn, purchase)
                    return ReconcileOutcome(
                        result=ReconcileResult.APPLIED,
                        purchase=purchase,
                        previous_status=PurchaseStatus.PENDING,
                        entitlements=entitlements,
                    )
                return ReconcileOutcome(result=ReconcileResult.ALREADY_PROCESSED)

    async def get_entitlements(self, provider_id: int) -> EntitlementsRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_ENTITLEMENT_COLUMNS} from provider_entitlements where provider_id = $1",
            provider_id,
        )
        if row is None:
            return EntitlementsRecord(provider_id=provider_id)
        return self._entitlements_row_to_record(row)

    async def has_webhook_event(self, event_id: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval("select 1 from payment_webhook_events where event_id = $1", event_id)
        return found is not None

    async def record_webhook_event(
        self,
        *,
        event_id: str,
        event_type: str,
        payment_intent_id: str | None,
        payload_hash: str,
    ) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into payment_webhook_events (event_id, event_type, payment_intent_id, payload_hash)
            values ($1, $2, $3, $4)
            on conflict (event_id) do nothing
            returning event_id
            """,
            event_id,
            event_type,
            payment_intent_id,
            payload_hash,
        )
        return row is not None

    # Provider stats

    async def fetch_provider_stats_inputs(
        self,
        *,
        provider_id: int | None,
        since: datetime,
    ) -> list[ProviderStatsInputs]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with providers as (
              select u.id as provider_id
              from users u
              where u.role = 'PROVIDER'
                and ($1::bigint is null or u.id = $1)
            ),
            accepted as (
              select b.provider_id, j.status::text as status, j.created_at
              from bids b
              join marketplace_jobs j on j.id = b.job_id
              where b.status = 'ACCEPTED'
            )
            select
              p.provider_id,
              (select avg(r.rating)::float8 from reviews r where r.reviewee_user_id = p.provider_id) as avg_rating,
              (select count(r.rating) from reviews r where r.reviewee_user_id = p.provider_id) as rating_count,
              count(*) filter (where a.status = 'COMPLETED') as jobs_completed_all_time,
              count(*) filter (where a.status = 'COMPLETED' and a.created_at >= $2) as jobs_completed_30d,
              count(*) filter (where a.status in ('COMPLETED', 'CANCELLED') and a.created_at >= $2)
                as jobs_finished_30d,
              count(*) filter (where a.status = 'CANCELLED' and a.created_at >= $2) as jobs_cancelled_30d
            from providers p
            left join accepted a on a.provider_id = p.provider_id
            group by p.provider_id
            order by p.provider_id
            """,
            provider_id,
            since,
        )
        return [
            ProviderStatsInputs(
                provider_id=int(row["provider_id"]),
                avg_rating=self._coerce_float(row["avg_rating"]),
                rating_count=int(row["rating_count"] or 0),
                jobs_completed_all_time=int(row["jobs_completed_all_time"] or 0),
                jobs_completed_30d=int(row["jobs_completed_30d"] or 0),
                jobs_finished_30d=int(row["jobs_finished_30d"] or 0),
                jobs_cancelled_30d=int(row["jobs_cancelled_30d"] or 0),
            )
            for row in rows
        ]

    async def upsert_provider_stats(self, snapshots: list[ProviderStatsSnapshot]) -> int:
        if not snapshots:
            return 0
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    insert into provider_stats (
                      provider_id, avg_rating, rating_count, jobs_completed_all_time,
                      jobs_completed_30d, cancellation_rate_30d, updated_at
                    )
                    values ($1, $2, $3, $4, $5, $6, now())
                    on conflict (provider_id) do update set
                      avg_rating = excluded.avg_rating,
                      rating_count = excluded.rating_count,
                      jobs_completed_all_time = excluded.jobs_completed_all_time,
                      jobs_completed_30d = excluded.jobs_completed_30d,
                      cancellation_rate_30d = excluded.cancellation_rate_30d,
                      updated_at = now()
                    """,
                    [
                        (
                            snapshot.provider_id,
                            snapshot.avg_rating,
                            snapshot.rating_count,
                            snapshot.jobs_completed_all_time,
                            snapshot.jobs_completed_30d,
                            snapshot.cancellation_rate_30d,
                        )
                        for snapshot in snapshots
                    ],
                )
        return len(snapshots)

    async def _transition_purchase(
        self,
        conn: asyncpg.Connection,
        external_payment_intent_id: str,
        target: PurchaseStatus,
    ) -> PurchaseRecord | None:
        row = await conn.fetchrow(
            f"""
            update addon_purchases
            set status = $2::purchase_status, updated_at = now()
            where external_payment_intent_id = $1
              and status <> $2::purchase_status
              and status = 'PENDING'
            returning {_PURCHASE_COLUMNS}
            """,
            external_payment_intent_id,
            target.value,
        )
        if row is None:
            return None
        return self._purchase_row_to_record(row)

    async def _apply_grant(self, conn: asyncpg.Connection, purchase: PurchaseRecord) -> EntitlementsRecord:
        grant = grant_for_purchase(purchase.addon_type, purchase.metadata)
        await conn.execute(
            """
            insert into provider_entitlements (provider_id)
            values ($1)
            on conflict (provider_id) do nothing
            """,
            purchase.provider_id,
        )

        if grant.addon_type is AddonType.LEAD_PACK:
            row = await conn.fetchrow(
                f"""
                update provider_entitlements
                set lead_credits = lead_credits + $2, updated_at = now()
                where provider_id = $1
                returning {_ENTITLEMENT_COLUMNS}
                """,
                purchase.provider_id,
                grant.lead_credits,
            )
        elif grant.addon_type is AddonType.FEATURED_ZIP:
            row = await conn.fetchrow(
                f"""
                update provider_entitlements
                set
                  featured_zip_codes = array(
                    select distinct zip
                    from unnest(featured_zip_codes || $2::text[]) as zip
                    order by zip
                  ),
                  updated_at = now()
                where provider_id = $1
                returning {_ENTITLEMENT_COLUMNS}
                """,
                purchase.provider_id,
                grant.zip_codes,
            )
        else:
            row = await conn.fetchrow(
                f"""
                update provider_entitlements
                set verification_badge = true, updated_at = now()
                where provider_id = $1
                returning {_ENTITLEMENT_COLUMNS}
                """,
                purchase.provider_id,
            )
        return self._entitlements_row_to_record(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("HH_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_record(cls, row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=int(row["id"]),
            type=row["type"],
            payload=cls._coerce_json_dict(row["payload"]),
            run_at=row["run_at"],
            status=JobStatus(row["status"]),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            locked_at=row["locked_at"],
            locked_by=row["locked_by"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _purchase_row_to_record(cls, row: asyncpg.Record) -> PurchaseRecord:
        return PurchaseRecord(
            id=row["id"],
            provider_id=int(row["provider_id"]),
            addon_type=AddonType(row["addon_type"]),
            amount_cents=int(row["amount_cents"]),
            currency=row["currency"],
            external_payment_intent_id=row["external_payment_intent_id"],
            status=PurchaseStatus(row["status"]),
            metadata=cls._coerce_json_dict(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _entitlements_row_to_record(row: asyncpg.Record) -> EntitlementsRecord:
        return EntitlementsRecord(
            provider_id=int(row["provider_id"]),
            verification_badge=bool(row["verification_badge"]),
            featured_zip_codes=sorted(row["featured_zip_codes"] or []),
            lead_credits=int(row["lead_credits"] or 0),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
