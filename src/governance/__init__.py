"""Organization resource governance: quotas and rate limits."""

__version__ = "0.1.0"
