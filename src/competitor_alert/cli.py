from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from competitor_alert.config import AppConfig, load_config
from competitor_alert.errors import AlertNotFoundError
from competitor_alert.models.schemas import AlertRun
from competitor_alert.pipeline import build_gateway, build_processor
from competitor_alert.quota import QuotaManager
from competitor_alert.scheduler import AlertScheduler


def _configure_logging(config: AppConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _format_run(run: AlertRun) -> str:
    end_time = run.end_time.isoformat() if run.end_time else "-"
    line = (
        f"RUN | {run.run_id} | alert={run.alert_id} | {run.status} | "
        f"start={run.start_time.isoformat()} | end={end_time} | "
        f"calls={run.api_calls_used} | new={run.new_presences_found}"
    )
    if run.error_message:
        line += f" | error={run.error_message}"
    return line


def _cmd_run(config: AppConfig) -> int:
    gateway = build_gateway(config)
    scheduler = AlertScheduler(
        build_processor(config, gateway),
        gateway,
        interval_seconds=config.scheduler_interval_seconds,
    )
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        print("Stopping scheduler...")
    finally:
        scheduler.stop()
    return 0


def _cmd_tick(config: AppConfig) -> int:
    gateway = build_gateway(config)
    scheduler = AlertScheduler(build_processor(config, gateway), gateway)
    runs = scheduler.tick() or []
    print(f"Alerts processed: {len(runs)}")
    for run in runs:
        print(_format_run(run))
    return 0


def _cmd_trigger(config: AppConfig, alert_id: str) -> int:
    processor = build_processor(config)
    try:
        run = processor.trigger_alert(alert_id)
    except AlertNotFoundError as exc:
        print(f"ERROR: {exc}")
        return 1
    print(_format_run(run))
    return 0 if run.status == "completed" else 2


def _cmd_runs(config: AppConfig, alert_id: Optional[str]) -> int:
    runs = build_gateway(config).list_alert_runs(alert_id)
    if not runs:
        print("No alert runs recorded.")
    for run in runs:
        print(_format_run(run))
    return 0


def _cmd_presences(
    config: AppConfig,
    alert_id: Optional[str],
    competitor: Optional[str],
) -> int:
    records = build_gateway(config).list_presence_records(alert_id, competitor)
    if not records:
        print("No presence records found.")
    for record in records:
        print(
            "PRESENCE | "
            f"{record.created_at.isoformat()} | "
            f"{record.competitor_name} | "
            f"{record.platform} | "
            f"{record.detection_method} | "
            f"{record.url}"
        )
    return 0


def _cmd_status(config: AppConfig) -> int:
    quota = QuotaManager(build_gateway(config), config.monthly_quota)
    usage = quota.snapshot()
    print(
        f"Quota {usage.month}: used={usage.total_api_calls} "
        f"remaining={usage.remaining_calls} limit={config.monthly_quota}"
    )
    search_status = "configured" if config.serper_api_key else "missing"
    smtp_status = "configured" if config.smtp_configured else "not configured"
    print(f"Search API key: {search_status}")
    print(f"SMTP: {smtp_status}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="competitor-alert",
        description="Scan social platforms for competitor mentions and notify on new ones.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the scheduler until interrupted.")
    subparsers.add_parser("tick", help="Process all due alerts once and exit.")

    trigger = subparsers.add_parser("trigger", help="Run one alert now.")
    trigger.add_argument("alert_id")

    runs = subparsers.add_parser("runs", help="List alert runs, newest first.")
    runs.add_argument("--alert-id")

    presences = subparsers.add_parser("presences", help="List stored presence records.")
    presences.add_argument("--alert-id")
    presences.add_argument("--competitor")

    subparsers.add_parser("status", help="Show quota and integration status.")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    _configure_logging(config)

    if args.command == "run":
        return _cmd_run(config)
    if args.command == "tick":
        return _cmd_tick(config)
    if args.command == "trigger":
        return _cmd_trigger(config, args.alert_id)
    if args.command == "runs":
        return _cmd_runs(config, args.alert_id)
    if args.command == "presences":
        return _cmd_presences(config, args.alert_id, args.competitor)
    return _cmd_status(config)


if __name__ == "__main__":
    sys.exit(main())
