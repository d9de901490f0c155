"""
Quota management service.

Tracks metered monthly usage per organization and resource against the
limits of the organization's plan tier. Consumption is an atomic
conditional increment: concurrent consumers never push usage past the
limit, and a rejected consume leaves the ledger untouched.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from search_gateway.config import Settings, get_settings
from search_gateway.db.manager import DatabaseManager
from search_gateway.db.models import OrgPlan, OrgQuota

logger = logging.getLogger(__name__)


class QuotaResource(str, Enum):
    """Metered resources."""

    SEARCH = "search"
    AI = "ai"
    RECORDING = "recording"
    CONNECTOR = "connector"
    STORAGE = "storage"


class PlanTier(str, Enum):
    """Subscription plans."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


PLAN_LIMITS: dict[PlanTier, dict[QuotaResource, int]] = {
    PlanTier.FREE: {
        QuotaResource.SEARCH: 100,
        QuotaResource.AI: 50,
        QuotaResource.RECORDING: 10,
        QuotaResource.CONNECTOR: 1,
        QuotaResource.STORAGE: 1,
    },
    PlanTier.STARTER: {
        QuotaResource.SEARCH: 1000,
        QuotaResource.AI: 500,
        QuotaResource.RECORDING: 100,
        QuotaResource.CONNECTOR: 3,
        QuotaResource.STORAGE: 10,
    },
    PlanTier.PROFESSIONAL: {
        QuotaResource.SEARCH: 10000,
        QuotaResource.AI: 5000,
        QuotaResource.RECORDING: 1000,
        QuotaResource.CONNECTOR: 10,
        QuotaResource.STORAGE: 100,
    },
    PlanTier.ENTERPRISE: {
        QuotaResource.SEARCH: 100000,
        QuotaResource.AI: 50000,
        QuotaResource.RECORDING: 10000,
        QuotaResource.CONNECTOR: 50,
        QuotaResource.STORAGE: 1000,
    },
}


def billing_period(now: datetime) -> tuple[datetime, datetime]:
    """
    Get the monthly billing period containing ``now``.

    Returns:
        Tuple of (period_start, reset_at) where reset_at is midnight UTC
        on the first day of the following month
    """
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        reset_at = start.replace(year=start.year + 1, month=1)
    else:
        reset_at = start.replace(month=start.month + 1)
    return start, reset_at


@dataclass
class QuotaRecord:
    """Usage of one resource by one organization in the current period."""

    org_id: str
    resource: str
    plan_tier: str
    used: int
    limit: int
    period_start: datetime
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return self.limit - self.used

    def rolled_over(self, now: datetime) -> QuotaRecord:
        """Return this record, or a zero-usage copy if its period has ended."""
        if now < self.reset_at:
            return self
        period_start, reset_at = billing_period(now)
        return replace(self, used=0, period_start=period_start, reset_at=reset_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "org_id": self.org_id,
            "resource": self.resource,
            "plan_tier": self.plan_tier,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "period_start": self.period_start.isoformat(),
            "reset_at": self.reset_at.isoformat(),
        }


@dataclass
class QuotaCheck:
    """Result of a read-only quota check."""

    available: bool
    used: int
    limit: int
    remaining: int
    """May be negative when a limit was lowered below current usage."""

    reset_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


@dataclass
class QuotaConsumption:
    """Result of a consume attempt."""

    success: bool
    remaining: int
    used: int
    limit: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "remaining": self.remaining,
            "used": self.used,
            "limit": self.limit,
        }


class QuotaStore(ABC):
    """
    Abstract base class for quota ledgers.

    Implementations must make ``consume`` atomic per (org, resource) and
    apply period rollover inside the same atomic step.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Store backend name."""
        ...

    @abstractmethod
    async def get_plan(self, org_id: str) -> str | None:
        """Get an organization's plan tier, or None if never set."""
        ...

    @abstractmethod
    async def set_plan(
        self,
        org_id: str,
        plan_tier: str,
        limits: dict[str, int],
    ) -> None:
        """Record a plan change and apply its limits to existing records."""
        ...

    @abstractmethod
    async def get_or_create(
        self,
        org_id: str,
        resource: str,
        plan_tier: str,
        limit: int,
        now: datetime,
    ) -> QuotaRecord:
        """
        Load the record for (org, resource), creating a zero-usage one.

        A record whose period has ended is returned (and stored) rolled over.
        """
        ...

    @abstractmethod
    async def consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        now: datetime,
    ) -> QuotaConsumption:
        """Atomically add ``amount`` to usage unless it would exceed the limit."""
        ...

    @abstractmethod
    async def list_records(self, org_id: str) -> list[QuotaRecord]:
        ...

    @abstractmethod
    async def reset(self, org_id: str, resource: str | None = None) -> int:
        """Zero usage for one resource or all of an org's resources."""
        ...

    async def close(self) -> None:
        return None


class InMemoryQuotaStore(QuotaStore):
    """Quota ledger for a single process, one asyncio lock per record."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], QuotaRecord] = {}
        self._plans: dict[str, str] = {}
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def name(self) -> str:
        return "memory"

    async def get_plan(self, org_id: str) -> str | None:
        return self._plans.get(org_id)

    async def set_plan(
        self,
        org_id: str,
        plan_tier: str,
        limits: dict[str, int],
    ) -> None:
        self._plans[org_id] = plan_tier
        for key in [k for k in self._records if k[0] == org_id]:
            async with self._locks[key]:
                # Re-read under the lock so a consume that landed meanwhile is kept
                record = self._records[key]
                self._records[key] = replace(
                    record,
                    plan_tier=plan_tier,
                    limit=limits.get(key[1], record.limit),
                )

    async def get_or_create(
        self,
        org_id: str,
        resource: str,
        plan_tier: str,
        limit: int,
        now: datetime,
    ) -> QuotaRecord:
        key = (org_id, resource)
        async with self._locks[key]:
            record = self._records.get(key)
            if record is None:
                period_start, reset_at = billing_period(now)
                record = QuotaRecord(
                    org_id=org_id,
                    resource=resource,
                    plan_tier=plan_tier,
                    used=0,
                    limit=limit,
                    period_start=period_start,
                    reset_at=reset_at,
                )
            else:
                record = record.rolled_over(now)
            self._records[key] = record
            return record

    async def consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        now: datetime,
    ) -> QuotaConsumption:
        key = (org_id, resource)
        async with self._locks[key]:
            record = self._records.get(key)
            if record is None:
                raise KeyError(f"No quota record for {org_id}/{resource}")

            record = record.rolled_over(now)
            self._records[key] = record

            if record.used + amount > record.limit:
                return QuotaConsumption(
                    success=False,
                    remaining=record.remaining,
                    used=record.used,
                    limit=record.limit,
                )

            record = replace(record, used=record.used + amount)
            self._records[key] = record
            return QuotaConsumption(
                success=True,
                remaining=record.remaining,
                used=record.used,
                limit=record.limit,
            )

    async def list_records(self, org_id: str) -> list[QuotaRecord]:
        return [r for (o, _), r in self._records.items() if o == org_id]

    async def reset(self, org_id: str, resource: str | None = None) -> int:
        count = 0
        for key in list(self._records):
            if key[0] != org_id or (resource is not None and key[1] != resource):
                continue
            async with self._locks[key]:
                self._records[key] = replace(self._records[key], used=0)
            count += 1
        return count


def _naive(ts: datetime) -> datetime:
    """Convert to naive UTC for storage in SQL DateTime columns."""
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _aware(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _to_record(row: OrgQuota) -> QuotaRecord:
    return QuotaRecord(
        org_id=row.org_id,
        resource=row.resource,
        plan_tier=row.plan_tier,
        used=row.used,
        limit=row.limit,
        period_start=_aware(row.period_start),
        reset_at=_aware(row.reset_at),
    )


class SqlQuotaStore(QuotaStore):
    """
    Quota ledger in the ``org_quotas`` table.

    Consumption is a single conditional UPDATE; the database serializes
    concurrent writers, so no in-process lock is held. Blocking session
    work runs in a worker thread.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @property
    def name(self) -> str:
        return "sql"

    def _select(self, org_id: str, resource: str):
        return select(OrgQuota).where(
            OrgQuota.org_id == org_id,
            OrgQuota.resource == resource,
        )

    async def get_plan(self, org_id: str) -> str | None:
        return await asyncio.to_thread(self._get_plan_sync, org_id)

    def _get_plan_sync(self, org_id: str) -> str | None:
        with self._db.get_session() as session:
            return session.execute(
                select(OrgPlan.plan_tier).where(OrgPlan.org_id == org_id)
            ).scalar_one_or_none()

    async def set_plan(
        self,
        org_id: str,
        plan_tier: str,
        limits: dict[str, int],
    ) -> None:
        await asyncio.to_thread(self._set_plan_sync, org_id, plan_tier, limits)

    def _set_plan_sync(self, org_id: str, plan_tier: str, limits: dict[str, int]) -> None:
        with self._db.get_session() as session:
            plan = session.execute(
                select(OrgPlan).where(OrgPlan.org_id == org_id)
            ).scalar_one_or_none()
            if plan is None:
                session.add(OrgPlan(org_id=org_id, plan_tier=plan_tier))
            else:
                plan.plan_tier = plan_tier

            rows = session.execute(
                select(OrgQuota).where(OrgQuota.org_id == org_id)
            ).scalars().all()
            for row in rows:
                row.plan_tier = plan_tier
                row.limit = limits.get(row.resource, row.limit)

    async def get_or_create(
        self,
        org_id: str,
        resource: str,
        plan_tier: str,
        limit: int,
        now: datetime,
    ) -> QuotaRecord:
        return await asyncio.to_thread(
            self._get_or_create_sync, org_id, resource, plan_tier, limit, _naive(now)
        )

    def _get_or_create_sync(
        self,
        org_id: str,
        resource: str,
        plan_tier: str,
        limit: int,
        now: datetime,
    ) -> QuotaRecord:
        with self._db.get_session() as session:
            row = session.execute(self._select(org_id, resource)).scalar_one_or_none()

            if row is None:
                period_start, reset_at = billing_period(now)
                row = OrgQuota(
                    org_id=org_id,
                    resource=resource,
                    plan_tier=plan_tier,
                    used=0,
                    limit=limit,
                    period_start=period_start,
                    reset_at=reset_at,
                )
                session.add(row)
                try:
                    session.flush()
                except IntegrityError:
                    # Another writer created it first
                    session.rollback()
                    row = session.execute(self._select(org_id, resource)).scalar_one()

            # Read-only rollover; the conditional UPDATE in consume owns the write
            return _to_record(row).rolled_over(_aware(now))

    async def consume(
        self,
        org_id: str,
        resource: str,
        amount: int,
        now: datetime,
    ) -> QuotaConsumption:
        return await asyncio.to_thread(
            self._consume_sync, org_id, resource, amount, _naive(now)
        )

    def _consume_sync(
        self,
        org_id: str,
        resource: str,
        amount: int,
        now: datetime,
    ) -> QuotaConsumption:
        period_start, reset_at = billing_period(now)
        expired = OrgQuota.reset_at <= now

        with self._db.get_session() as session:
            result = session.execute(
                update(OrgQuota)
                .where(
                    OrgQuota.org_id == org_id,
                    OrgQuota.resource == resource,
                    case((expired, 0), else_=OrgQuota.used) + amount <= OrgQuota.limit,
                )
                .values(
                    used=case((expired, amount), else_=OrgQuota.used + amount),
                    period_start=case((expired, period_start), else_=OrgQuota.period_start),
                    reset_at=case((expired, reset_at), else_=OrgQuota.reset_at),
                )
                .execution_options(synchronize_session=False)
            )

            row = session.execute(self._select(org_id, resource)).scalar_one_or_none()
            if row is None:
                raise KeyError(f"No quota record for {org_id}/{resource}")

            return QuotaConsumption(
                success=result.rowcount == 1,
                remaining=row.limit - row.used,
                used=row.used,
                limit=row.limit,
            )

    async def list_records(self, org_id: str) -> list[QuotaRecord]:
        return await asyncio.to_thread(self._list_records_sync, org_id)

    def _list_records_sync(self, org_id: str) -> list[QuotaRecord]:
        with self._db.get_session() as session:
            rows = session.execute(
                select(OrgQuota).where(OrgQuota.org_id == org_id)
            ).scalars().all()
            return [_to_record(row) for row in rows]

    async def reset(self, org_id: str, resource: str | None = None) -> int:
        return await asyncio.to_thread(self._reset_sync, org_id, resource)

    def _reset_sync(self, org_id: str, resource: str | None) -> int:
        stmt = update(OrgQuota).where(OrgQuota.org_id == org_id)
        if resource is not None:
            stmt = stmt.where(OrgQuota.resource == resource)

        with self._db.get_session() as session:
            result = session.execute(
                stmt.values(used=0).execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def close(self) -> None:
        self._db.close()


class QuotaManager:
    """
    Manages metered quotas per organization.

    Example:
        manager = QuotaManager()
        check = await manager.check_quota("org_1", "search")
        if check.available:
            await manager.consume_quota("org_1", "search")
    """

    def __init__(
        self,
        store: QuotaStore | None = None,
        default_plan: str = PlanTier.FREE.value,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize quota manager.

        Args:
            store: Quota ledger (in-memory if None)
            default_plan: Plan tier for organizations without one
            clock: Returns the current aware UTC time, injectable for tests
        """
        self._store = store or InMemoryQuotaStore()
        self._default_plan = PlanTier(default_plan)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> QuotaStore:
        return self._store

    async def get_plan(self, org_id: str) -> PlanTier:
        plan = await self._store.get_plan(org_id)
        return PlanTier(plan) if plan else self._default_plan

    async def _get_record(self, org_id: str, resource: QuotaResource) -> QuotaRecord:
        plan = await self.get_plan(org_id)
        return await self._store.get_or_create(
            org_id,
            resource.value,
            plan.value,
            PLAN_LIMITS[plan][resource],
            self._clock(),
        )

    async def check_quota(self, org_id: str, resource: str = "search") -> QuotaCheck:
        """
        Check whether an organization has quota left, without consuming it.

        Args:
            org_id: Organization identifier
            resource: Metered resource name

        Returns:
            QuotaCheck with current usage

        Raises:
            ValueError: If the resource is unknown
        """
        record = await self._get_record(org_id, QuotaResource(resource))
        return QuotaCheck(
            available=record.used < record.limit,
            used=record.used,
            limit=record.limit,
            remaining=record.remaining,
            reset_at=record.reset_at,
        )

    async def consume_quota(
        self,
        org_id: str,
        resource: str = "search",
        amount: int = 1,
    ) -> QuotaConsumption:
        """
        Consume quota for an organization.

        Fails without mutation when usage plus ``amount`` would exceed
        the limit.

        Args:
            org_id: Organization identifier
            resource: Metered resource name
            amount: Units to consume (positive)

        Returns:
            QuotaConsumption describing the outcome
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        quota_resource = QuotaResource(resource)
        await self._get_record(org_id, quota_resource)
        result = await self._store.consume(
            org_id, quota_resource.value, amount, self._clock()
        )

        if not result.success:
            logger.info(
                f"Quota consume rejected for {org_id}/{resource}: "
                f"{result.used}+{amount} > {result.limit}"
            )
        return result

    async def get_usage(self, org_id: str) -> dict[str, QuotaRecord]:
        """Get current usage for every resource of an organization."""
        usage = {}
        for resource in QuotaResource:
            usage[resource.value] = await self._get_record(org_id, resource)
        return usage

    async def set_plan(self, org_id: str, plan_tier: str) -> None:
        """
        Move an organization to another plan tier.

        New limits apply to the current period immediately.
        """
        plan = PlanTier(plan_tier)
        limits = {resource.value: limit for resource, limit in PLAN_LIMITS[plan].items()}
        await self._store.set_plan(org_id, plan.value, limits)
        logger.info(f"Organization {org_id} moved to {plan.value} plan")

    async def reset_quota(self, org_id: str, resource: str | None = None) -> int:
        """Clear usage for one resource, or all resources when None."""
        if resource is not None:
            resource = QuotaResource(resource).value
        count = await self._store.reset(org_id, resource)
        logger.info(f"Reset {count} quota record(s) for {org_id}")
        return count

    async def close(self) -> None:
        await self._store.close()


def create_quota_manager(config: Settings | None = None) -> QuotaManager:
    """Create a quota manager with the configured ledger."""
    config = config or get_settings()

    if config.quota_backend == "sql":
        db = DatabaseManager(config.database_url)
        db.init_db()
        store: QuotaStore = SqlQuotaStore(db)
    elif config.quota_backend == "memory":
        store = InMemoryQuotaStore()
    else:
        raise ValueError(f"Unknown quota backend: {config.quota_backend}")

    logger.info(f"Quota manager using {store.name} store")
    return QuotaManager(store=store, default_plan=config.default_plan_tier)
