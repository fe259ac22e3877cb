from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from competitor_alert.errors import InvalidRunTransitionError, PersistenceError
from competitor_alert.models.schemas import (
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    Alert,
    AlertRun,
)
from competitor_alert.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunTracker:
    """Lifecycle of one alert execution: running -> completed | failed."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.gateway = gateway
        self._clock = clock
        self.run: Optional[AlertRun] = None
        self.api_calls_used = 0
        self.new_presences_found = 0

    def start(self, alert: Alert) -> AlertRun:
        if self.run is not None:
            raise InvalidRunTransitionError(
                f"Run {self.run.run_id} already started for alert {alert.alert_id}"
            )
        run = AlertRun(
            run_id=str(uuid.uuid4()),
            alert_id=alert.alert_id,
            status=RUN_RUNNING,
            start_time=self._clock(),
        )
        self.run = self.gateway.create_alert_run(run)
        return self.run

    def record_call(self) -> None:
        self._require_running()
        self.api_calls_used += 1

    def record_presence(self) -> None:
        self._require_running()
        self.new_presences_found += 1

    def complete(self) -> AlertRun:
        return self._finalize(RUN_COMPLETED, "")

    def fail(self, message: str) -> AlertRun:
        return self._finalize(RUN_FAILED, message or "Unknown error")

    def _require_running(self) -> AlertRun:
        if self.run is None:
            raise InvalidRunTransitionError("Run has not been started")
        if self.run.is_finalized:
            raise InvalidRunTransitionError(
                f"Run {self.run.run_id} is already {self.run.status}"
            )
        return self.run

    def _finalize(self, status: str, error_message: str) -> AlertRun:
        run = self._require_running()
        updated = self.gateway.update_alert_run(
            run.run_id,
            status=status,
            end_time=self._clock(),
            api_calls_used=self.api_calls_used,
            new_presences_found=self.new_presences_found,
            error_message=error_message,
        )
        if updated is None:
            raise PersistenceError(f"Alert run {run.run_id} disappeared from storage")
        self.run = updated
        return updated
