from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from competitor_alert.models.schemas import AlertRun
from competitor_alert.pipeline import AlertProcessor
from competitor_alert.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AlertScheduler:
    """Fixed-interval loop that runs every due alert, one at a time.

    Ticks are single-flight: a tick that starts while the previous batch is
    still running returns immediately without touching any alert.
    """

    def __init__(
        self,
        processor: AlertProcessor,
        gateway: PersistenceGateway,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.processor = processor
        self.gateway = gateway
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="competitor-alert-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            "Competitor alert scheduler started (interval=%ss)", self.interval_seconds
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Competitor alert scheduler stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until ``stop`` is called; returns True once stopped."""
        return self._stop_event.wait(timeout)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.tick()

    def tick(self) -> Optional[list[AlertRun]]:
        """Process all due alerts; returns None when a batch is already in flight."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Previous batch still in flight, skipping tick")
            return None
        try:
            return self._run_batch()
        finally:
            self._tick_lock.release()

    def _run_batch(self) -> list[AlertRun]:
        try:
            due_alerts = self.gateway.list_due_alerts(self._clock())
        except Exception:  # noqa: BLE001 - abandon the tick, the next one retries
            logger.exception("Error listing due alerts")
            return []

        logger.info("Found %d due alerts to process", len(due_alerts))
        runs: list[AlertRun] = []
        for alert in due_alerts:
            if self._stop_event.is_set():
                logger.info("Scheduler stopping, %d due alerts left for later", len(due_alerts) - len(runs))
                break
            try:
                runs.append(self.processor.process_alert(alert))
            except Exception:  # noqa: BLE001 - one broken alert must not stop the batch
                logger.exception("Alert %s could not be recorded", alert.alert_id)
        return runs
