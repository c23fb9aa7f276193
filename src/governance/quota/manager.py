"""
Organization quota management service.

Tracks monthly API call, storage and recording usage per organization
against limits fixed by the subscription tier. Consumption goes through
a single store-side increment-and-check so concurrent consumers cannot
both pass the limit. Read failures fail closed.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, TypeVar

from governance.db.store import (
    NotFoundError,
    UniqueConstraintViolation,
    UsageRecord,
    UsageStore,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

GIB = 1024**3


class ResourceKind(str, Enum):
    """Metered resource kinds."""

    API_CALLS = "api_calls"
    STORAGE = "storage"  # bytes
    RECORDINGS = "recordings"


class PlanTier(str, Enum):
    """Subscription tiers."""

    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class TierLimits:
    """Monthly limits granted by a tier."""

    api_calls: int
    storage_bytes: int
    recordings: int


TIER_LIMITS: dict[PlanTier, TierLimits] = {
    PlanTier.STARTER: TierLimits(api_calls=1_000, storage_bytes=1 * GIB, recordings=10),
    PlanTier.PRO: TierLimits(api_calls=10_000, storage_bytes=10 * GIB, recordings=100),
    PlanTier.ENTERPRISE: TierLimits(api_calls=100_000, storage_bytes=100 * GIB, recordings=1_000),
}


class QuotaValidationError(ValueError):
    """Raised for malformed quota requests, before any store access."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_reset_at(now: datetime | None = None) -> datetime:
    """
    First instant of the calendar month after ``now`` (UTC).

    Args:
        now: Reference instant, defaults to the current time

    Returns:
        Aware datetime on day 1, 00:00:00.000 UTC
    """
    now = (now or _utcnow()).astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def usage_percentage(used: int, limit: int) -> int:
    """Whole-number percentage of limit used; 0 when the limit is 0."""
    if limit <= 0:
        return 0
    # Round half up
    return math.floor(used / limit * 100 + 0.5)


def parse_resource_kind(value: ResourceKind | str) -> ResourceKind:
    try:
        return ResourceKind(value)
    except ValueError:
        raise QuotaValidationError(f"Unknown resource kind: {value!r}") from None


def parse_tier(value: PlanTier | str) -> PlanTier:
    try:
        return PlanTier(value)
    except ValueError:
        raise QuotaValidationError(f"Unknown plan tier: {value!r}") from None


def _reset_fields(now: datetime) -> dict[str, Any]:
    # Limits are never part of a reset
    return {
        "api_calls_used": 0,
        "storage_used_bytes": 0,
        "recordings_used": 0,
        "reset_at": next_reset_at(now),
    }


def build_initial_record(org_id: str, tier: PlanTier, now: datetime | None = None) -> UsageRecord:
    """Fresh usage row for an organization on the given tier."""
    limits = TIER_LIMITS[tier]
    return UsageRecord(
        org_id=org_id,
        plan_tier=tier.value,
        api_calls_used=0,
        api_calls_limit=limits.api_calls,
        storage_used_bytes=0,
        storage_limit_bytes=limits.storage_bytes,
        recordings_used=0,
        recordings_limit=limits.recordings,
        reset_at=next_reset_at(now),
    )


@dataclass
class QuotaStatus:
    """Availability of one resource for an organization."""

    available: bool
    used: int
    limit: int
    remaining: int
    """May be negative when usage has overshot the limit."""

    @classmethod
    def evaluate(cls, used: int, limit: int) -> QuotaStatus:
        remaining = limit - used
        # A zero limit disables the resource
        available = limit > 0 and remaining > 0
        return cls(available=available, used=used, limit=limit, remaining=remaining)

    @classmethod
    def unavailable(cls) -> QuotaStatus:
        """Fail-closed default used when usage cannot be read."""
        return cls(available=False, used=0, limit=0, remaining=0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConsumeResult:
    """Result of consuming quota."""

    success: bool
    remaining: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.remaining is not None:
            data["remaining"] = self.remaining
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ResourceUsage:
    used: int
    limit: int
    percentage: int

    @classmethod
    def from_counter(cls, used: int, limit: int) -> ResourceUsage:
        return cls(used=used, limit=limit, percentage=usage_percentage(used, limit))


@dataclass
class UsageSummary:
    """Usage of every metered resource for an organization."""

    api_calls: ResourceUsage
    storage: ResourceUsage
    recordings: ResourceUsage

    @classmethod
    def empty(cls) -> UsageSummary:
        return cls(
            api_calls=ResourceUsage(0, 0, 0),
            storage=ResourceUsage(0, 0, 0),
            recordings=ResourceUsage(0, 0, 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QuotaManager:
    """
    Per-organization quota accounting.

    Store calls are blocking and run in worker threads, so many requests
    may be awaiting the store at once. No process-local locking is used;
    atomicity comes from the store.
    """

    def __init__(
        self,
        store: UsageStore,
        default_tier: PlanTier | str = PlanTier.STARTER,
    ) -> None:
        """
        Initialize the quota manager.

        Args:
            store: Persistent usage store
            default_tier: Tier used when a missing row is created lazily
        """
        self._store = store
        self._default_tier = parse_tier(default_tier)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    async def _load_or_create(self, org_id: str) -> UsageRecord:
        """Read the org's row, creating it with default-tier limits if missing."""
        try:
            return await self._run(self._store.find_usage_counters, org_id)
        except NotFoundError:
            pass

        record = build_initial_record(org_id, self._default_tier, _utcnow())
        try:
            await self._run(self._store.insert_usage_counters, record)
            logger.info(
                f"Created missing {self._default_tier.value} usage counters for org {org_id}"
            )
        except UniqueConstraintViolation:
            # A concurrent first access created it
            logger.debug(f"Usage counters for org {org_id} created concurrently")

        return await self._run(self._store.find_usage_counters, org_id)

    async def check_quota(
        self,
        org_id: str,
        resource_kind: ResourceKind | str,
    ) -> QuotaStatus:
        """
        Check remaining quota for one resource.

        Args:
            org_id: Organization identifier
            resource_kind: One of api_calls, storage, recordings

        Returns:
            QuotaStatus; fail-closed defaults if usage cannot be read

        Raises:
            QuotaValidationError: If the resource kind is unknown
        """
        kind = parse_resource_kind(resource_kind)

        try:
            record = await self._load_or_create(org_id)
        except Exception as e:
            logger.error(f"Quota check failed for org {org_id} ({kind.value}): {e}")
            return QuotaStatus.unavailable()

        used, limit = record.counter(kind.value)
        return QuotaStatus.evaluate(used, limit)

    async def check_quota_batch(
        self,
        org_id: str,
        resource_kinds: Iterable[ResourceKind | str],
    ) -> dict[str, QuotaStatus]:
        """Check several resources from a single row read."""
        kinds = [parse_resource_kind(k) for k in resource_kinds]

        try:
            record = await self._load_or_create(org_id)
        except Exception as e:
            logger.error(f"Batch quota check failed for org {org_id}: {e}")
            return {kind.value: QuotaStatus.unavailable() for kind in kinds}

        return {kind.value: QuotaStatus.evaluate(*record.counter(kind.value)) for kind in kinds}

    async def consume_quota(
        self,
        org_id: str,
        resource_kind: ResourceKind | str,
        amount: int = 1,
    ) -> ConsumeResult:
        """
        Atomically consume quota.

        Usage past the limit is still recorded, but ``success`` is False
        once the limit is crossed. Store failures are not retried.

        Args:
            org_id: Organization identifier
            resource_kind: One of api_calls, storage, recordings
            amount: Calls, bytes or recordings to consume

        Raises:
            QuotaValidationError: For an unknown kind or a negative amount
        """
        kind = parse_resource_kind(resource_kind)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise QuotaValidationError(f"Amount must be a non-negative integer, got {amount!r}")

        try:
            outcome = await self._run(
                self._store.atomic_consume_quota, org_id, kind.value, amount
            )
        except Exception as e:
            logger.error(f"Failed to consume {amount} {kind.value} for org {org_id}: {e}")
            return ConsumeResult(success=False, error=str(e))

        if outcome.success and amount > 0:
            try:
                await self._run(self._store.record_usage_event, org_id, kind.value, amount)
            except Exception as e:
                logger.warning(f"Failed to record usage event for org {org_id}: {e}")

        if not outcome.success:
            logger.info(f"Quota exceeded for org {org_id}: {kind.value} remaining {outcome.remaining}")

        return ConsumeResult(success=outcome.success, remaining=outcome.remaining)

    async def initialize_quota(
        self,
        org_id: str,
        tier: PlanTier | str = PlanTier.STARTER,
    ) -> None:
        """
        Create an organization's usage row with the tier's limits.

        Calling it again for the same organization is a no-op and leaves
        the existing row untouched.

        Raises:
            QuotaValidationError: If the tier is unknown
        """
        plan = parse_tier(tier)
        record = build_initial_record(org_id, plan, _utcnow())

        try:
            await self._run(self._store.insert_usage_counters, record)
        except UniqueConstraintViolation:
            logger.info(f"Quota already initialized for org {org_id}")
            return
        except Exception as e:
            logger.error(f"Failed to initialize quota for org {org_id}: {e}")
            return

        logger.info(f"Initialized {plan.value} quota for org {org_id}")

    async def reset_quota(self, org_id: str) -> None:
        """Zero all usage and move the reset date to the start of next month."""
        try:
            await self._run(self._store.update_usage_counters, org_id, _reset_fields(_utcnow()))
        except NotFoundError:
            logger.warning(f"Cannot reset quota for org {org_id}: no usage counters")
            return
        except Exception as e:
            logger.error(f"Failed to reset quota for org {org_id}: {e}")
            return

        logger.info(f"Reset quota for org {org_id}")

    async def reset_expired_quotas(self, now: datetime | None = None) -> int:
        """
        Reset every organization whose reset date has passed.

        Returns:
            Number of organizations reset
        """
        now = (now or _utcnow()).astimezone(timezone.utc)
        try:
            org_ids = await self._run(self._store.find_orgs_due_for_reset, now)
        except Exception as e:
            logger.error(f"Failed to list organizations due for reset: {e}")
            return 0

        reset = 0
        for org_id in org_ids:
            try:
                await self._run(self._store.update_usage_counters, org_id, _reset_fields(now))
                reset += 1
            except Exception as e:
                logger.error(f"Failed to reset quota for org {org_id}: {e}")

        if org_ids:
            logger.info(f"Reset {reset}/{len(org_ids)} expired quotas")
        return reset

    async def update_storage_usage(self, org_id: str) -> None:
        """Overwrite storage usage with the store's current content total."""
        try:
            total = await self._run(self._store.aggregate_storage_for_org, org_id)
            await self._run(
                self._store.update_usage_counters,
                org_id,
                {"storage_used_bytes": total},
            )
        except NotFoundError:
            logger.warning(f"Cannot reconcile storage for org {org_id}: no usage counters")
            return
        except Exception as e:
            logger.error(f"Failed to update storage usage for org {org_id}: {e}")
            return

        logger.info(f"Reconciled storage usage for org {org_id}: {total} bytes")

    async def get_usage(self, org_id: str) -> UsageSummary:
        """Usage, limit and percentage used for every resource."""
        try:
            record = await self._run(self._store.find_usage_counters, org_id)
        except NotFoundError:
            logger.warning(f"No usage counters for org {org_id}")
            return UsageSummary.empty()
        except Exception as e:
            logger.error(f"Failed to read usage for org {org_id}: {e}")
            return UsageSummary.empty()

        return UsageSummary(
            api_calls=ResourceUsage.from_counter(*record.counter(ResourceKind.API_CALLS.value)),
            storage=ResourceUsage.from_counter(*record.counter(ResourceKind.STORAGE.value)),
            recordings=ResourceUsage.from_counter(*record.counter(ResourceKind.RECORDINGS.value)),
        )
