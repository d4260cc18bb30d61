"""Interval batch runners and database claim helpers for background workers."""

from src.crm.scheduling.claims import claim_rows, claimable
from src.crm.scheduling.runner import IntervalBatchRunner

__all__ = ["IntervalBatchRunner", "claim_rows", "claimable"]
