from __future__ import annotations

import calendar
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from competitor_alert.alerts.dispatcher import dispatch_notifications
from competitor_alert.config import AppConfig
from competitor_alert.errors import AlertNotFoundError, PersistenceError, QuotaExceededError
from competitor_alert.matching.dedupe import DedupEngine
from competitor_alert.matching.detector import match_hits
from competitor_alert.models.schemas import (
    FREQUENCY_HOURLY,
    FREQUENCY_MONTHLY,
    FREQUENCY_WEEKLY,
    Alert,
    AlertRun,
)
from competitor_alert.quota import QuotaManager
from competitor_alert.runs import RunTracker
from competitor_alert.search.client import SearchClient
from competitor_alert.search.query_builder import build_competitor_query
from competitor_alert.storage.csv_gateway import CsvGateway
from competitor_alert.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

SLOW_RUN_SECONDS = 60.0

Notifier = Callable[[Alert, int, AppConfig, Optional[datetime]], set]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _add_month(value: datetime) -> datetime:
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_run_time(frequency: str, now: datetime) -> datetime:
    if frequency == FREQUENCY_HOURLY:
        return now + timedelta(hours=1)
    if frequency == FREQUENCY_WEEKLY:
        return now + timedelta(weeks=1)
    if frequency == FREQUENCY_MONTHLY:
        return _add_month(now)
    return now + timedelta(days=1)


class AlertProcessor:
    """Runs one alert end to end: admission, search, match, dedupe, notify, bookkeeping.

    Executions of the same alert are serialized by a per-alert lock, so a
    manual trigger that races a scheduled tick waits for it instead of
    spending the same quota snapshot twice.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        search_client: SearchClient,
        config: AppConfig,
        *,
        quota: Optional[QuotaManager] = None,
        notifier: Notifier = dispatch_notifications,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.search_client = search_client
        self.config = config
        self.quota = quota or QuotaManager(gateway, config.monthly_quota, clock)
        self.dedupe = DedupEngine(gateway, clock)
        self._notifier = notifier
        self._clock = clock
        self._sleep = sleep
        self._alert_locks: dict[str, threading.Lock] = {}
        self._alert_locks_guard = threading.Lock()

    def _alert_lock(self, alert_id: str) -> threading.Lock:
        with self._alert_locks_guard:
            lock = self._alert_locks.get(alert_id)
            if lock is None:
                lock = threading.Lock()
                self._alert_locks[alert_id] = lock
            return lock

    def trigger_alert(self, alert_id: str) -> AlertRun:
        """Run one alert now, ignoring its due time but not its quota."""
        alert = self.gateway.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        logger.info("Manually triggering alert: %s", alert.name)
        return self.process_alert(alert)

    def process_alert(self, alert: Alert) -> AlertRun:
        with self._alert_lock(alert.alert_id):
            return self._process_locked(alert)

    def _process_locked(self, alert: Alert) -> AlertRun:
        started = time.monotonic()
        logger.info("Processing alert: %s (ID: %s)", alert.name, alert.alert_id)

        tracker = RunTracker(self.gateway, self._clock)
        try:
            run = tracker.start(alert)
        except Exception:
            self._advance_schedule_quietly(alert)
            raise

        usage_booked = False
        try:
            self._search_all(alert, run, tracker)
            self.quota.record_usage(tracker.api_calls_used)
            usage_booked = True

            if tracker.new_presences_found > 0:
                self._notify_quietly(alert, tracker.new_presences_found)

            now = self._clock()
            self.gateway.update_alert(
                alert.alert_id,
                last_run=now,
                next_run_time=calculate_next_run_time(alert.frequency, now),
            )
            run = tracker.complete()
        except Exception as exc:  # noqa: BLE001 - the alert boundary records every failure
            message = str(exc).strip() or exc.__class__.__name__
            if isinstance(exc, QuotaExceededError):
                logger.warning("Alert %s skipped: %s", alert.name, message)
            else:
                logger.exception("Alert %s failed", alert.name)
            if not usage_booked:
                self._book_usage_quietly(tracker.api_calls_used)
            self._advance_schedule_quietly(alert)
            return tracker.fail(message)

        elapsed = time.monotonic() - started
        logger.info(
            "Alert %s completed: %d new presences, %d API calls, %.0fms",
            alert.name,
            run.new_presences_found,
            run.api_calls_used,
            elapsed * 1000,
        )
        self._warn_on_anomalies(alert, run, elapsed)
        return run

    def _search_all(self, alert: Alert, run: AlertRun, tracker: RunTracker) -> None:
        remaining = self.quota.admit()
        logger.info(
            "Processing %d competitors across %d platforms",
            len(alert.competitors),
            len(alert.platforms),
        )

        for competitor in alert.competitors:
            for platform in alert.platforms:
                if tracker.api_calls_used >= remaining:
                    logger.warning(
                        "API quota limit reached for alert %s, stopping after %d calls",
                        alert.name,
                        tracker.api_calls_used,
                    )
                    return

                if tracker.api_calls_used > 0 and self.config.pacing_delay_seconds > 0:
                    self._sleep(self.config.pacing_delay_seconds)

                logger.info("Searching for %s on %s", competitor.canonical_name, platform)
                query = build_competitor_query(competitor, platform)
                hits = self.search_client.search(query, alert.max_results)
                tracker.record_call()

                matches = match_hits(hits, competitor, alert.fuzzy_matching_enabled)
                logger.info(
                    "Found %d matches for %s on %s",
                    len(matches),
                    competitor.canonical_name,
                    platform,
                )
                for match in matches:
                    record = self.dedupe.record_if_new(
                        alert, run, competitor, platform, match
                    )
                    if record is not None:
                        tracker.record_presence()

    def _notify_quietly(self, alert: Alert, new_presences: int) -> None:
        try:
            self._notifier(alert, new_presences, self.config, self._clock())
        except Exception:  # noqa: BLE001 - notification failures never fail the run
            logger.exception("Notifications for alert %s failed", alert.name)

    def _book_usage_quietly(self, calls_used: int) -> None:
        try:
            self.quota.record_usage(calls_used)
        except PersistenceError as exc:
            logger.error("Could not record quota usage of %d calls: %s", calls_used, exc)

    def _advance_schedule_quietly(self, alert: Alert) -> None:
        next_run = calculate_next_run_time(alert.frequency, self._clock())
        try:
            self.gateway.update_alert(alert.alert_id, next_run_time=next_run)
        except PersistenceError as exc:
            logger.error(
                "Could not advance next run time for alert %s: %s", alert.alert_id, exc
            )

    def _warn_on_anomalies(self, alert: Alert, run: AlertRun, elapsed: float) -> None:
        if elapsed > SLOW_RUN_SECONDS:
            logger.warning(
                "[PERFORMANCE] Alert %s took %.0fms to process", alert.name, elapsed * 1000
            )
        expected_calls = alert.max_results * len(alert.platforms) * len(alert.competitors)
        if run.api_calls_used > expected_calls:
            logger.warning(
                "[QUOTA] Alert %s used more API calls than expected: %d",
                alert.name,
                run.api_calls_used,
            )


def build_gateway(config: AppConfig) -> CsvGateway:
    return CsvGateway(config.data_dir)


def build_processor(
    config: AppConfig,
    gateway: Optional[PersistenceGateway] = None,
) -> AlertProcessor:
    gateway = gateway or build_gateway(config)
    if not config.serper_api_key:
        logger.warning("SERPER_API_KEY is not set; searches will fail and return no results")
    client = SearchClient(
        config.serper_api_key,
        config.search_endpoint,
        retries=config.search_retries,
        timeout=config.search_timeout_seconds,
        locale=config.search_locale,
        country=config.search_country,
    )
    return AlertProcessor(gateway, client, config)
