"""Import competitor watch lists from an xlsx workbook into the alert store.

One row per (alert, competitor). Rows sharing an alert name are merged into a
single alert; settings are taken from the first row of each alert. Rows that
cannot be used are written to a drop report with a reason.
"""
from __future__ import annotations

import argparse
import csv
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from openpyxl import load_workbook

from competitor_alert.models.schemas import (
    FREQUENCY_DAILY,
    FREQUENCY_HOURLY,
    FREQUENCY_MONTHLY,
    FREQUENCY_WEEKLY,
    Alert,
    Competitor,
)
from competitor_alert.storage.csv_gateway import CsvGateway

HEADERS = {
    "alert": "alert_name",
    "alert name": "alert_name",
    "competitor": "competitor",
    "aliases": "aliases",
    "website": "website",
    "domains": "website",
    "platforms": "platforms",
    "frequency": "frequency",
    "max results": "max_results",
    "dedupe window days": "dedupe_window_days",
    "fuzzy": "fuzzy",
    "fuzzy matching": "fuzzy",
    "email": "email",
    "webhook url": "webhook_url",
}

REQUIRED_KEYS = {"alert_name", "competitor", "platforms"}

FREQUENCIES = {FREQUENCY_HOURLY, FREQUENCY_DAILY, FREQUENCY_WEEKLY, FREQUENCY_MONTHLY}

LEGAL_SUFFIXES = ["Inc.", "Inc", "Ltd.", "Ltd", "LLC", "GmbH", "Corp.", "Corp"]


def _normalize_header(value: Any) -> str:
    text = "" if value is None else str(value)
    collapsed = " ".join(text.split())
    return collapsed.strip().lower()


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _split_cell(value: Any) -> list[str]:
    text = _to_str(value).replace(",", ";")
    return [item.strip() for item in text.split(";") if item.strip()]


def _parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    normalized = _to_str(value).lower()
    if normalized in {"1", "true", "yes", "y", "on", "x"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_int(value: Any, default: int) -> int:
    text = _to_str(value)
    if not text:
        return default
    try:
        return int(float(text))
    except ValueError:
        return default


def _extract_domain(website: str) -> str:
    if not website:
        return ""
    normalized = website.strip()
    if not normalized.startswith(("http://", "https://")):
        normalized = f"https://{normalized}"
    domain = urlparse(normalized).netloc.lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def _base_name(name: str) -> str:
    cleaned = name.strip()
    for suffix in LEGAL_SUFFIXES:
        if cleaned.lower().endswith(" " + suffix.lower()):
            return cleaned[: -len(suffix)].strip().rstrip(",")
    return cleaned


def _build_aliases(name: str, explicit: list[str]) -> list[str]:
    aliases: list[str] = []
    seen = {name.strip().lower()}
    candidates = list(explicit)
    base = _base_name(name)
    if base:
        candidates.append(base)
    for candidate in candidates:
        cleaned = candidate.strip()
        key = cleaned.lower()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        aliases.append(cleaned)
    return aliases


def _find_header_row(sheet, max_rows: int = 50) -> tuple[int, dict[str, int]]:
    for idx, row in enumerate(
        sheet.iter_rows(min_row=1, max_row=max_rows, values_only=True),
        start=1,
    ):
        resolved: dict[str, int] = {}
        for col_idx, cell in enumerate(row):
            key = HEADERS.get(_normalize_header(cell))
            if key and key not in resolved:
                resolved[key] = col_idx
        if REQUIRED_KEYS.issubset(resolved):
            return idx, resolved
    raise ValueError(
        "Missing required headers: " + ", ".join(sorted(REQUIRED_KEYS))
    )


def _cell(row: tuple, columns: dict[str, int], key: str) -> Any:
    index = columns.get(key)
    if index is None or index >= len(row):
        return None
    return row[index]


def import_alerts_xlsx(
    input_path: Path,
    data_dir: Path,
    report_path: Path,
    sheet_name: str | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")
    workbook = load_workbook(filename=input_path, read_only=True, data_only=True)
    sheet = workbook[sheet_name] if sheet_name else workbook.worksheets[0]
    header_row_idx, columns = _find_header_row(sheet)

    now = now or datetime.now(timezone.utc)
    alerts: dict[str, Alert] = {}
    rows_in = 0
    dropped: list[dict[str, str]] = []

    for row_number, row in enumerate(
        sheet.iter_rows(min_row=header_row_idx + 1, values_only=True),
        start=header_row_idx + 1,
    ):
        if row is None or not any(_to_str(cell) for cell in row):
            continue
        rows_in += 1

        alert_name = _to_str(_cell(row, columns, "alert_name"))
        competitor_name = _to_str(_cell(row, columns, "competitor"))
        platforms = _split_cell(_cell(row, columns, "platforms"))
        frequency = _to_str(_cell(row, columns, "frequency")).lower() or FREQUENCY_DAILY

        reason = ""
        if not alert_name:
            reason = "missing_alert_name"
        elif not competitor_name:
            reason = "missing_competitor"
        elif not platforms and alert_name not in alerts:
            reason = "missing_platforms"
        elif frequency not in FREQUENCIES:
            reason = "invalid_frequency"
        if reason:
            dropped.append(
                {
                    "row": str(row_number),
                    "alert_name": alert_name,
                    "competitor": competitor_name,
                    "reason": reason,
                }
            )
            continue

        domains = [
            domain
            for domain in (
                _extract_domain(site) for site in _split_cell(_cell(row, columns, "website"))
            )
            if domain
        ]
        competitor = Competitor(
            canonical_name=competitor_name,
            aliases=_build_aliases(competitor_name, _split_cell(_cell(row, columns, "aliases"))),
            domains=domains,
        )

        alert = alerts.get(alert_name)
        if alert is None:
            alerts[alert_name] = Alert(
                alert_id=str(uuid.uuid4()),
                name=alert_name,
                competitors=[competitor],
                platforms=platforms,
                frequency=frequency,
                max_results=_parse_int(_cell(row, columns, "max_results"), 10),
                dedupe_window_days=_parse_int(
                    _cell(row, columns, "dedupe_window_days"), 30
                ),
                fuzzy_matching_enabled=_parse_bool(_cell(row, columns, "fuzzy"), False),
                email_notifications=bool(_to_str(_cell(row, columns, "email"))),
                email=_to_str(_cell(row, columns, "email")),
                webhook_url=_to_str(_cell(row, columns, "webhook_url")),
                next_run_time=now,
            )
            continue

        alert.competitors.append(competitor)
        for platform in platforms:
            if platform not in alert.platforms:
                alert.platforms.append(platform)
    workbook.close()

    gateway = CsvGateway(data_dir)
    for alert in alerts.values():
        gateway.create_alert(alert)

    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(
            handle, fieldnames=["row", "alert_name", "competitor", "reason"]
        )
        writer.writeheader()
        writer.writerows(dropped)

    return {
        "rows_in": rows_in,
        "alerts_written": len(alerts),
        "competitors_written": sum(len(alert.competitors) for alert in alerts.values()),
        "rows_dropped": len(dropped),
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("input", type=Path, help="xlsx workbook to import")
    parser.add_argument("--data-dir", type=Path, default=Path("data"))
    parser.add_argument(
        "--report", type=Path, default=Path("data") / "alerts_import_dropped.csv"
    )
    parser.add_argument("--sheet")
    args = parser.parse_args(argv)

    try:
        summary = import_alerts_xlsx(args.input, args.data_dir, args.report, args.sheet)
    except (FileNotFoundError, ValueError) as exc:
        print(f"ERROR: {exc}")
        return 1

    print(
        f"Rows read: {summary['rows_in']} | Alerts written: {summary['alerts_written']} | "
        f"Competitors: {summary['competitors_written']} | Dropped: {summary['rows_dropped']}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
