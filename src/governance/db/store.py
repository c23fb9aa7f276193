"""
Row-level interface to the usage accounting tables.

Every method is a single short transaction. The consume path is one
UPDATE ... RETURNING statement so the increment and the limit check can
never be split across round-trips.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from governance.db.manager import DatabaseManager
from governance.db.models import ContentObject, QuotaUsageEvent, UsageCounters

logger = logging.getLogger(__name__)


# resource kind -> (used column, limit column)
RESOURCE_COLUMNS: dict[str, tuple[str, str]] = {
    "api_calls": ("api_calls_used", "api_calls_limit"),
    "storage": ("storage_used_bytes", "storage_limit_bytes"),
    "recordings": ("recordings_used", "recordings_limit"),
}


class StoreError(Exception):
    """The persistent store could not complete an operation."""


class NotFoundError(StoreError):
    """No usage counters row exists for the organization."""


class UniqueConstraintViolation(StoreError):
    """A usage counters row already exists for the organization."""


def _as_utc(value: datetime) -> datetime:
    # Stored without an offset: naive values are UTC, aware ones are converted
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _columns_for(resource_kind: str) -> tuple[str, str]:
    try:
        return RESOURCE_COLUMNS[resource_kind]
    except KeyError:
        raise ValueError(f"Unknown resource kind: {resource_kind}") from None


@dataclass
class UsageRecord:
    """Detached snapshot of a usage_counters row."""

    org_id: str
    api_calls_used: int
    api_calls_limit: int
    storage_used_bytes: int
    storage_limit_bytes: int
    recordings_used: int
    recordings_limit: int
    reset_at: datetime
    plan_tier: str = "starter"

    @classmethod
    def from_model(cls, row: UsageCounters) -> UsageRecord:
        return cls(
            org_id=row.org_id,
            plan_tier=row.plan_tier,
            api_calls_used=row.api_calls_used,
            api_calls_limit=row.api_calls_limit,
            storage_used_bytes=row.storage_used_bytes,
            storage_limit_bytes=row.storage_limit_bytes,
            recordings_used=row.recordings_used,
            recordings_limit=row.recordings_limit,
            reset_at=_as_utc(row.reset_at),
        )

    def counter(self, resource_kind: str) -> tuple[int, int]:
        """Return the (used, limit) pair for a resource kind."""
        used_col, limit_col = _columns_for(resource_kind)
        return getattr(self, used_col), getattr(self, limit_col)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["reset_at"] = self.reset_at.isoformat()
        return data


@dataclass
class AtomicConsumeResult:
    """Outcome of the store-side increment-and-check."""

    success: bool
    remaining: int


class UsageStore:
    """Persistent store operations used by the quota manager."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def find_usage_counters(self, org_id: str) -> UsageRecord:
        """
        Read the usage counters row for an organization.

        Raises:
            NotFoundError: If the organization has no row
            StoreError: On any other database failure
        """
        try:
            with self._db.get_session() as session:
                row = session.scalars(
                    select(UsageCounters).where(UsageCounters.org_id == org_id)
                ).first()
                if row is None:
                    raise NotFoundError(f"No usage counters for org {org_id}")
                return UsageRecord.from_model(row)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read usage counters for {org_id}: {e}") from e

    def insert_usage_counters(self, record: UsageRecord) -> None:
        """
        Insert a new usage counters row.

        Raises:
            UniqueConstraintViolation: If the organization already has a row
            StoreError: On any other database failure
        """
        row = UsageCounters(
            org_id=record.org_id,
            plan_tier=record.plan_tier,
            api_calls_used=record.api_calls_used,
            api_calls_limit=record.api_calls_limit,
            storage_used_bytes=record.storage_used_bytes,
            storage_limit_bytes=record.storage_limit_bytes,
            recordings_used=record.recordings_used,
            recordings_limit=record.recordings_limit,
            reset_at=_as_utc(record.reset_at),
        )
        try:
            with self._db.get_session() as session:
                session.add(row)
        except IntegrityError as e:
            raise UniqueConstraintViolation(
                f"Usage counters already exist for org {record.org_id}"
            ) from e
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert usage counters for {record.org_id}: {e}") from e

    def update_usage_counters(self, org_id: str, fields: dict[str, Any]) -> None:
        """
        Overwrite the given columns on an organization's row.

        Raises:
            NotFoundError: If no row was updated
            StoreError: On any other database failure
        """
        if "reset_at" in fields:
            fields = {**fields, "reset_at": _as_utc(fields["reset_at"])}
        try:
            with self._db.get_session() as session:
                result = session.execute(
                    update(UsageCounters)
                    .where(UsageCounters.org_id == org_id)
                    .values(**fields)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"No usage counters for org {org_id}")
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update usage counters for {org_id}: {e}") from e

    def atomic_consume_quota(
        self,
        org_id: str,
        resource_kind: str,
        amount: int,
    ) -> AtomicConsumeResult:
        """
        Increment usage and evaluate the limit in one statement.

        The usage is recorded even when it crosses the limit; ``success``
        reports whether the post-increment value is still within it.
        """
        used_col, limit_col = _columns_for(resource_kind)
        used_attr = getattr(UsageCounters, used_col)
        limit_attr = getattr(UsageCounters, limit_col)

        stmt = (
            update(UsageCounters)
            .where(UsageCounters.org_id == org_id)
            .values({used_attr: used_attr + amount})
            .returning(used_attr, limit_attr)
            .execution_options(synchronize_session=False)
        )

        try:
            with self._db.get_session() as session:
                row = session.execute(stmt).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to consume {resource_kind} for {org_id}: {e}") from e

        if row is None:
            return AtomicConsumeResult(success=False, remaining=0)

        used, limit = row
        return AtomicConsumeResult(success=used <= limit, remaining=limit - used)

    def aggregate_storage_for_org(self, org_id: str) -> int:
        """Sum the sizes of all content stored by an organization."""
        try:
            with self._db.get_session() as session:
                total = session.scalar(
                    select(func.coalesce(func.sum(ContentObject.size_bytes), 0)).where(
                        ContentObject.org_id == org_id
                    )
                )
                return int(total or 0)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to aggregate storage for {org_id}: {e}") from e

    def record_usage_event(self, org_id: str, resource_kind: str, amount: int) -> None:
        """Append a consumption to the usage audit trail."""
        try:
            with self._db.get_session() as session:
                session.add(
                    QuotaUsageEvent(org_id=org_id, resource_kind=resource_kind, amount=amount)
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to record usage event for {org_id}: {e}") from e

    def find_orgs_due_for_reset(self, now: datetime) -> list[str]:
        """List organizations whose reset instant is at or before ``now``."""
        now = _as_utc(now)
        try:
            with self._db.get_session() as session:
                return list(
                    session.scalars(
                        select(UsageCounters.org_id)
                        .where(UsageCounters.reset_at <= now)
                        .order_by(UsageCounters.org_id)
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list organizations due for reset: {e}") from e
