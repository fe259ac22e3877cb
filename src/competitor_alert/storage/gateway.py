"""Record store contract used by the pipeline, plus an in-process store."""
from __future__ import annotations

import copy
import threading
from dataclasses import fields, replace
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, TypeVar

from competitor_alert.errors import InvalidRunTransitionError, PersistenceError
from competitor_alert.models.schemas import (
    Alert,
    AlertRun,
    PresenceRecord,
    QuotaUsage,
)

T = TypeVar("T")


class PersistenceGateway(Protocol):
    def list_alerts(self) -> list[Alert]: ...

    def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    def create_alert(self, alert: Alert) -> Alert: ...

    def list_due_alerts(self, now: datetime) -> list[Alert]: ...

    def update_alert(self, alert_id: str, **patch: Any) -> Optional[Alert]: ...

    def create_alert_run(self, run: AlertRun) -> AlertRun: ...

    def update_alert_run(self, run_id: str, **patch: Any) -> Optional[AlertRun]: ...

    def list_alert_runs(self, alert_id: Optional[str] = None) -> list[AlertRun]: ...

    def check_duplicate_presence(
        self,
        dedupe_key: str,
        competitor_name: str,
        window_days: int,
        now: datetime,
    ) -> bool: ...

    def create_presence_record(self, record: PresenceRecord) -> PresenceRecord: ...

    def list_presence_records(
        self,
        alert_id: Optional[str] = None,
        competitor_name: Optional[str] = None,
    ) -> list[PresenceRecord]: ...

    def get_quota_usage(self, month: str) -> Optional[QuotaUsage]: ...

    def update_quota_usage(
        self,
        month: str,
        calls_used: int,
        monthly_limit: int,
        now: datetime,
    ) -> QuotaUsage: ...


def apply_patch(record: T, patch: dict[str, Any]) -> T:
    known = {item.name for item in fields(record)}
    unknown = set(patch) - known
    if unknown:
        raise PersistenceError(
            f"Unknown fields for {type(record).__name__}: {sorted(unknown)}"
        )
    return replace(record, **patch)


def patch_run(run: AlertRun, patch: dict[str, Any]) -> AlertRun:
    if run.is_finalized:
        raise InvalidRunTransitionError(
            f"Alert run {run.run_id} is already {run.status} and cannot be updated"
        )
    return apply_patch(run, patch)


def is_due(alert: Alert, now: datetime) -> bool:
    return (
        alert.is_active
        and alert.next_run_time is not None
        and alert.next_run_time <= now
    )


def is_duplicate(
    record: PresenceRecord,
    dedupe_key: str,
    competitor_name: str,
    window_days: int,
    now: datetime,
) -> bool:
    window_start = now - timedelta(days=window_days)
    return (
        record.dedupe_key == dedupe_key
        and record.competitor_name == competitor_name
        and record.created_at >= window_start
    )


def next_quota_usage(
    existing: Optional[QuotaUsage],
    month: str,
    calls_used: int,
    monthly_limit: int,
    now: datetime,
) -> QuotaUsage:
    if existing is None:
        return QuotaUsage(
            month=month,
            total_api_calls=calls_used,
            remaining_calls=max(0, monthly_limit - calls_used),
            last_updated=now,
        )
    return QuotaUsage(
        month=month,
        total_api_calls=existing.total_api_calls + calls_used,
        remaining_calls=max(0, existing.remaining_calls - calls_used),
        last_updated=now,
    )


class InMemoryGateway:
    """Thread-safe dict-backed store; returns copies so callers never alias state."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._alerts: dict[str, Alert] = {}
        self._runs: dict[str, AlertRun] = {}
        self._presences: list[PresenceRecord] = []
        self._quota: dict[str, QuotaUsage] = {}

    def list_alerts(self) -> list[Alert]:
        with self._lock:
            return [copy.deepcopy(alert) for alert in self._alerts.values()]

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return copy.deepcopy(alert) if alert else None

    def create_alert(self, alert: Alert) -> Alert:
        with self._lock:
            self._alerts[alert.alert_id] = copy.deepcopy(alert)
            return copy.deepcopy(alert)

    def list_due_alerts(self, now: datetime) -> list[Alert]:
        with self._lock:
            return [
                copy.deepcopy(alert)
                for alert in self._alerts.values()
                if is_due(alert, now)
            ]

    def update_alert(self, alert_id: str, **patch: Any) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            updated = apply_patch(alert, patch)
            self._alerts[alert_id] = updated
            return copy.deepcopy(updated)

    def create_alert_run(self, run: AlertRun) -> AlertRun:
        with self._lock:
            self._runs[run.run_id] = replace(run)
            return replace(run)

    def update_alert_run(self, run_id: str, **patch: Any) -> Optional[AlertRun]:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            updated = patch_run(run, patch)
            self._runs[run_id] = updated
            return replace(updated)

    def list_alert_runs(self, alert_id: Optional[str] = None) -> list[AlertRun]:
        with self._lock:
            runs = [
                replace(run)
                for run in self._runs.values()
                if alert_id is None or run.alert_id == alert_id
            ]
        return sorted(runs, key=lambda run: run.start_time, reverse=True)

    def check_duplicate_presence(
        self,
        dedupe_key: str,
        competitor_name: str,
        window_days: int,
        now: datetime,
    ) -> bool:
        with self._lock:
            return any(
                is_duplicate(record, dedupe_key, competitor_name, window_days, now)
                for record in self._presences
            )

    def create_presence_record(self, record: PresenceRecord) -> PresenceRecord:
        with self._lock:
            self._presences.append(replace(record))
            return replace(record)

    def list_presence_records(
        self,
        alert_id: Optional[str] = None,
        competitor_name: Optional[str] = None,
    ) -> list[PresenceRecord]:
        with self._lock:
            records = [
                replace(record)
                for record in self._presences
                if (alert_id is None or record.alert_id == alert_id)
                and (
                    competitor_name is None
                    or record.competitor_name == competitor_name
                )
            ]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def get_quota_usage(self, month: str) -> Optional[QuotaUsage]:
        with self._lock:
            usage = self._quota.get(month)
            return replace(usage) if usage else None

    def update_quota_usage(
        self,
        month: str,
        calls_used: int,
        monthly_limit: int,
        now: datetime,
    ) -> QuotaUsage:
        with self._lock:
            usage = next_quota_usage(
                self._quota.get(month), month, calls_used, monthly_limit, now
            )
            self._quota[month] = usage
            return replace(usage)
