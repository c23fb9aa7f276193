"""
Organization-scoped resource governance.

Monthly per-organization quotas (API calls, storage, recordings) and
short-horizon sliding window rate limiting per identifier.
"""

from governance.quota.limiter import (
    LimitResult,
    RateLimiter,
    RateLimitTier,
)
from governance.quota.manager import (
    TIER_LIMITS,
    ConsumeResult,
    PlanTier,
    QuotaManager,
    QuotaStatus,
    QuotaValidationError,
    ResourceKind,
    ResourceUsage,
    TierLimits,
    UsageSummary,
    next_reset_at,
)

__all__ = [
    "ConsumeResult",
    "LimitResult",
    "PlanTier",
    "QuotaManager",
    "QuotaStatus",
    "QuotaValidationError",
    "RateLimitTier",
    "RateLimiter",
    "ResourceKind",
    "ResourceUsage",
    "TIER_LIMITS",
    "TierLimits",
    "UsageSummary",
    "next_reset_at",
]
