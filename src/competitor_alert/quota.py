"""Monthly search-call budget.

Usage is written once per run (batched): ``admit`` snapshots the remaining
budget before any call, the alert loop stops itself when it has spent that
snapshot, and ``record_usage`` books the calls actually made.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from competitor_alert.errors import QuotaExceededError
from competitor_alert.models.schemas import QuotaUsage
from competitor_alert.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_LIMIT = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaManager:
    def __init__(
        self,
        gateway: PersistenceGateway,
        monthly_limit: int = DEFAULT_MONTHLY_LIMIT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.gateway = gateway
        self.monthly_limit = monthly_limit
        self._clock = clock

    def current_month(self) -> str:
        return self._clock().strftime("%Y-%m")

    def snapshot(self) -> QuotaUsage:
        month = self.current_month()
        usage = self.gateway.get_quota_usage(month)
        if usage is None:
            return QuotaUsage(
                month=month,
                total_api_calls=0,
                remaining_calls=self.monthly_limit,
            )
        return usage

    def remaining_calls(self) -> int:
        return self.snapshot().remaining_calls

    def admit(self) -> int:
        """Return the remaining budget, or raise when nothing is left."""
        remaining = self.remaining_calls()
        if remaining <= 0:
            raise QuotaExceededError(
                f"Monthly API quota exceeded for {self.current_month()}"
            )
        return remaining

    def record_usage(self, calls_used: int) -> None:
        if calls_used <= 0:
            return
        month = self.current_month()
        usage = self.gateway.update_quota_usage(
            month, calls_used, self.monthly_limit, self._clock()
        )
        logger.info(
            "Quota %s: %d calls used this month, %d remaining",
            month,
            usage.total_api_calls,
            usage.remaining_calls,
        )
