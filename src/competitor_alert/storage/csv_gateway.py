from __future__ import annotations

import csv
import json
import logging
import threading
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from competitor_alert.errors import PersistenceError
from competitor_alert.models.schemas import (
    Alert,
    AlertRun,
    Competitor,
    PresenceRecord,
    QuotaUsage,
)
from competitor_alert.storage.csv_store import join_list, read_csv, split_list, write_csv
from competitor_alert.storage.gateway import (
    apply_patch,
    is_due,
    is_duplicate,
    next_quota_usage,
    patch_run,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALERTS_FILE = "alerts.csv"
RUNS_FILE = "alert_runs.csv"
PRESENCES_FILE = "presence_records.csv"
QUOTA_FILE = "quota_usage.csv"

ROW_ERRORS = (ValueError, TypeError, AttributeError, KeyError)


def _format_dt(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str) -> Optional[datetime]:
    if not value:
        return None
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_bool(value: str, default: bool) -> bool:
    if not value:
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False

    return default


def _parse_int(value: str, default: int) -> int:
    if not value:
        return default
    return int(value)


def _fieldnames(cls: type) -> list[str]:
    return [item.name for item in fields(cls)]


def _competitors_to_json(competitors: list[Competitor]) -> str:
    return json.dumps([asdict(competitor) for competitor in competitors])


def _competitors_from_json(value: str) -> list[Competitor]:
    if not value:
        return []
    competitors: list[Competitor] = []
    for item in json.loads(value):
        competitors.append(
            Competitor(
                canonical_name=item.get("canonical_name", ""),
                aliases=list(item.get("aliases") or []),
                domains=list(item.get("domains") or []),
            )
        )
    return competitors


def alert_to_row(alert: Alert) -> dict[str, str]:
    return {
        "alert_id": alert.alert_id,
        "name": alert.name,
        "competitors": _competitors_to_json(alert.competitors),
        "platforms": join_list(alert.platforms),
        "frequency": alert.frequency,
        "max_results": str(alert.max_results),
        "dedupe_window_days": str(alert.dedupe_window_days),
        "fuzzy_matching_enabled": str(alert.fuzzy_matching_enabled).lower(),
        "email_notifications": str(alert.email_notifications).lower(),
        "email": alert.email,
        "webhook_url": alert.webhook_url,
        "is_active": str(alert.is_active).lower(),
        "next_run_time": _format_dt(alert.next_run_time),
        "last_run": _format_dt(alert.last_run),
    }


def alert_from_row(row: dict[str, str]) -> Alert:
    defaults = Alert(alert_id="", name="", competitors=[], platforms=[])
    return Alert(
        alert_id=row.get("alert_id", ""),
        name=row.get("name", ""),
        competitors=_competitors_from_json(row.get("competitors", "")),
        platforms=split_list(row.get("platforms", "")),
        frequency=row.get("frequency") or defaults.frequency,
        max_results=_parse_int(row.get("max_results", ""), defaults.max_results),
        dedupe_window_days=_parse_int(
            row.get("dedupe_window_days", ""), defaults.dedupe_window_days
        ),
        fuzzy_matching_enabled=_parse_bool(
            row.get("fuzzy_matching_enabled", ""), defaults.fuzzy_matching_enabled
        ),
        email_notifications=_parse_bool(
            row.get("email_notifications", ""), defaults.email_notifications
        ),
        email=row.get("email", ""),
        webhook_url=row.get("webhook_url", ""),
        is_active=_parse_bool(row.get("is_active", ""), defaults.is_active),
        next_run_time=_parse_dt(row.get("next_run_time", "")),
        last_run=_parse_dt(row.get("last_run", "")),
    )


def run_to_row(run: AlertRun) -> dict[str, str]:
    return {
        "run_id": run.run_id,
        "alert_id": run.alert_id,
        "status": run.status,
        "start_time": _format_dt(run.start_time),
        "end_time": _format_dt(run.end_time),
        "api_calls_used": str(run.api_calls_used),
        "new_presences_found": str(run.new_presences_found),
        "error_message": run.error_message,
    }


def run_from_row(row: dict[str, str]) -> AlertRun:
    start_time = _parse_dt(row.get("start_time", ""))
    if start_time is None:
        raise ValueError(f"Alert run {row.get('run_id')} has no start_time")
    return AlertRun(
        run_id=row.get("run_id", ""),
        alert_id=row.get("alert_id", ""),
        status=row.get("status", ""),
        start_time=start_time,
        end_time=_parse_dt(row.get("end_time", "")),
        api_calls_used=_parse_int(row.get("api_calls_used", ""), 0),
        new_presences_found=_parse_int(row.get("new_presences_found", ""), 0),
        error_message=row.get("error_message", ""),
    )


def presence_to_row(record: PresenceRecord) -> dict[str, str]:
    row = asdict(record)
    row["created_at"] = _format_dt(record.created_at)
    return row


def presence_from_row(row: dict[str, str]) -> PresenceRecord:
    created_at = _parse_dt(row.get("created_at", ""))
    if created_at is None:
        raise ValueError(f"Presence record {row.get('record_id')} has no created_at")
    return PresenceRecord(
        record_id=row.get("record_id", ""),
        alert_id=row.get("alert_id", ""),
        run_id=row.get("run_id", ""),
        competitor_name=row.get("competitor_name", ""),
        platform=row.get("platform", ""),
        title=row.get("title", ""),
        url=row.get("url", ""),
        snippet=row.get("snippet", ""),
        dedupe_key=row.get("dedupe_key", ""),
        detection_method=row.get("detection_method", ""),
        created_at=created_at,
    )


def quota_to_row(usage: QuotaUsage) -> dict[str, str]:
    return {
        "month": usage.month,
        "total_api_calls": str(usage.total_api_calls),
        "remaining_calls": str(usage.remaining_calls),
        "last_updated": _format_dt(usage.last_updated),
    }


def quota_from_row(row: dict[str, str]) -> QuotaUsage:
    return QuotaUsage(
        month=row.get("month", ""),
        total_api_calls=_parse_int(row.get("total_api_calls", ""), 0),
        remaining_calls=_parse_int(row.get("remaining_calls", ""), 0),
        last_updated=_parse_dt(row.get("last_updated", "")),
    )


class CsvGateway:
    """Record store over one CSV file per record type under ``data_dir``.

    Every call re-reads the file so several processes sharing a directory see
    each other's writes; writers inside this process serialize on one lock.
    Read and write failures surface as ``PersistenceError``, except that a
    malformed alert row is logged and skipped so the other alerts keep running.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()

    def _path(self, filename: str) -> Path:
        return self.data_dir / filename

    def _read_rows(self, filename: str) -> list[dict[str, str]]:
        path = self._path(filename)
        try:
            return read_csv(path)
        except (OSError, csv.Error) as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc

    def _load(self, filename: str, parse: Callable[[dict[str, str]], T]) -> list[T]:
        rows = self._read_rows(filename)
        try:
            return [parse(row) for row in rows]
        except ROW_ERRORS as exc:
            raise PersistenceError(f"Failed to read {self._path(filename)}: {exc}") from exc

    def _load_alerts(self) -> list[Alert]:
        """Parse alert rows one by one; a malformed row is logged and skipped."""
        alerts: list[Alert] = []
        for line_number, row in enumerate(self._read_rows(ALERTS_FILE), start=2):
            try:
                alerts.append(alert_from_row(row))
            except ROW_ERRORS as exc:
                logger.warning(
                    "Skipping malformed alert row %d (%s) in %s: %s",
                    line_number,
                    row.get("alert_id") or "no id",
                    self._path(ALERTS_FILE),
                    exc,
                )
        return alerts

    def _save(
        self,
        filename: str,
        rows: list[dict[str, str]],
        fieldnames: list[str],
        append: bool = False,
    ) -> None:
        path = self._path(filename)
        try:
            write_csv(path, rows, fieldnames, append=append)
        except (OSError, csv.Error) as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc

    def list_alerts(self) -> list[Alert]:
        with self._lock:
            return self._load_alerts()

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        for alert in self.list_alerts():
            if alert.alert_id == alert_id:
                return alert
        return None

    def create_alert(self, alert: Alert) -> Alert:
        with self._lock:
            self._save(
                ALERTS_FILE, [alert_to_row(alert)], _fieldnames(Alert), append=True
            )
        logger.info("Created alert %s (%s)", alert.alert_id, alert.name)
        return alert

    def list_due_alerts(self, now: datetime) -> list[Alert]:
        return [alert for alert in self.list_alerts() if is_due(alert, now)]

    def update_alert(self, alert_id: str, **patch: Any) -> Optional[Alert]:
        with self._lock:
            fieldnames = _fieldnames(Alert)
            rows = [
                {name: row.get(name) or "" for name in fieldnames}
                for row in self._read_rows(ALERTS_FILE)
            ]
            updated: Optional[Alert] = None
            for index, row in enumerate(rows):
                if row["alert_id"] != alert_id:
                    continue
                try:
                    alert = alert_from_row(row)
                except ROW_ERRORS as exc:
                    raise PersistenceError(f"Alert {alert_id} row is malformed: {exc}") from exc
                updated = apply_patch(alert, patch)
                rows[index] = alert_to_row(updated)
            if updated is None:
                return None
            # Rows that fail to parse are written back untouched.
            self._save(ALERTS_FILE, rows, fieldnames)
            return updated

    def create_alert_run(self, run: AlertRun) -> AlertRun:
        with self._lock:
            self._save(RUNS_FILE, [run_to_row(run)], _fieldnames(AlertRun), append=True)
        return run

    def update_alert_run(self, run_id: str, **patch: Any) -> Optional[AlertRun]:
        with self._lock:
            runs = self._load(RUNS_FILE, run_from_row)
            updated: Optional[AlertRun] = None
            for index, run in enumerate(runs):
                if run.run_id == run_id:
                    updated = patch_run(run, patch)
                    runs[index] = updated
            if updated is None:
                return None
            self._save(RUNS_FILE, [run_to_row(run) for run in runs], _fieldnames(AlertRun))
            return updated

    def list_alert_runs(self, alert_id: Optional[str] = None) -> list[AlertRun]:
        with self._lock:
            runs = self._load(RUNS_FILE, run_from_row)
        if alert_id is not None:
            runs = [run for run in runs if run.alert_id == alert_id]
        return sorted(runs, key=lambda run: run.start_time, reverse=True)

    def check_duplicate_presence(
        self,
        dedupe_key: str,
        competitor_name: str,
        window_days: int,
        now: datetime,
    ) -> bool:
        with self._lock:
            records = self._load(PRESENCES_FILE, presence_from_row)
        return any(
            is_duplicate(record, dedupe_key, competitor_name, window_days, now)
            for record in records
        )

    def create_presence_record(self, record: PresenceRecord) -> PresenceRecord:
        with self._lock:
            self._save(
                PRESENCES_FILE,
                [presence_to_row(record)],
                _fieldnames(PresenceRecord),
                append=True,
            )
        return record

    def list_presence_records(
        self,
        alert_id: Optional[str] = None,
        competitor_name: Optional[str] = None,
    ) -> list[PresenceRecord]:
        with self._lock:
            records = self._load(PRESENCES_FILE, presence_from_row)
        records = [
            record
            for record in records
            if (alert_id is None or record.alert_id == alert_id)
            and (competitor_name is None or record.competitor_name == competitor_name)
        ]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def get_quota_usage(self, month: str) -> Optional[QuotaUsage]:
        with self._lock:
            for usage in self._load(QUOTA_FILE, quota_from_row):
                if usage.month == month:
                    return usage
        return None

    def update_quota_usage(
        self,
        month: str,
        calls_used: int,
        monthly_limit: int,
        now: datetime,
    ) -> QuotaUsage:
        with self._lock:
            rows = self._load(QUOTA_FILE, quota_from_row)
            existing = next((usage for usage in rows if usage.month == month), None)
            usage = next_quota_usage(existing, month, calls_used, monthly_limit, now)
            rows = [row for row in rows if row.month != month] + [usage]
            rows.sort(key=lambda row: row.month)
            self._save(
                QUOTA_FILE, [quota_to_row(row) for row in rows], _fieldnames(QuotaUsage)
            )
            return usage
