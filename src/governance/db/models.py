"""SQLAlchemy models for organization resource accounting."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from governance.db.base import Base


class UsageCounters(Base):
    """Per-organization usage and limits for the current billing month."""

    __tablename__ = "usage_counters"

    org_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    plan_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="starter")

    api_calls_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    api_calls_limit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    storage_used_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    storage_limit_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    recordings_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    recordings_limit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Always the first instant of a calendar month, UTC
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class QuotaUsageEvent(Base):
    """Audit trail of successful quota consumptions."""

    __tablename__ = "quota_usage_events"

    org_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_quota_usage_events_org_kind", "org_id", "resource_kind"),
    )


class ContentObject(Base):
    """A stored piece of organization content counted against storage."""

    __tablename__ = "content_objects"

    org_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(1024), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
