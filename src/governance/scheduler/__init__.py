"""Background scheduling of quota resets."""

from governance.scheduler.service import RESET_JOB_ID, QuotaResetScheduler

__all__ = ["RESET_JOB_ID", "QuotaResetScheduler"]
