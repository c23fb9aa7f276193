"""Persistent store for organization usage accounting."""

from governance.db.base import Base
from governance.db.manager import DatabaseManager
from governance.db.models import ContentObject, QuotaUsageEvent, UsageCounters
from governance.db.store import (
    AtomicConsumeResult,
    NotFoundError,
    StoreError,
    UniqueConstraintViolation,
    UsageRecord,
    UsageStore,
)

__all__ = [
    "AtomicConsumeResult",
    "Base",
    "ContentObject",
    "DatabaseManager",
    "NotFoundError",
    "QuotaUsageEvent",
    "StoreError",
    "UniqueConstraintViolation",
    "UsageCounters",
    "UsageRecord",
    "UsageStore",
]
