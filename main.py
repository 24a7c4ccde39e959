#!/usr/bin/env python3
"""
main.py — pi-pulse entry point

Usage:
  python main.py --once                          # One scheduler tick
  python main.py --heartbeat                     # Run continuously (default)
  python main.py --generate executive_weekly     # Generate one report now
  python main.py --upcoming                      # List upcoming reports
  python main.py --once --dry-run                # Log notifications instead of sending
  python main.py --once --templates configs/report_templates.json --rules configs/alert_rules.json
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pi-pulse")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pi-pulse",
        description="Scheduled business reports and threshold alerts.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single scheduler tick and exit.",
    )
    mode.add_argument(
        "--heartbeat",
        action="store_true",
        default=False,
        help="Run the scheduler continuously (the default when no mode is given).",
    )
    mode.add_argument(
        "--generate",
        metavar="TEMPLATE_ID",
        default=None,
        help="Generate the report for TEMPLATE_ID now, whatever its schedule.",
    )
    mode.add_argument(
        "--upcoming",
        action="store_true",
        default=False,
        help="List active templates by their next generation time.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Log notifications instead of sending them.",
    )
    parser.add_argument(
        "--templates",
        default=None,
        help="Path to the report templates JSON (default: REPORT_TEMPLATES_PATH).",
    )
    parser.add_argument(
        "--rules",
        default=None,
        help="Path to the alert rules JSON (default: ALERT_RULES_PATH).",
    )
    parser.add_argument(
        "--notifications",
        default=None,
        help="Path to the notification templates JSON (default: NOTIFICATION_TEMPLATES_PATH).",
    )
    return parser


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_scheduler(args: argparse.Namespace):
    from src.alerts.engine import AlertEngine  # noqa: PLC0415
    from src.alerts.limiter import FrequencyLimiter  # noqa: PLC0415
    from src.core.settings import EngineSettings  # noqa: PLC0415
    from src.metrics.sources import build_metric_source  # noqa: PLC0415
    from src.notifications.transports import default_registry  # noqa: PLC0415
    from src.reports.exporters import default_exporters  # noqa: PLC0415
    from src.reports.generator import ReportGenerator  # noqa: PLC0415
    from src.reports.models import ReportStore  # noqa: PLC0415
    from src.scheduler.config_store import JsonConfigStore  # noqa: PLC0415
    from src.scheduler.loop import ReportScheduler  # noqa: PLC0415

    settings = EngineSettings.from_env()
    limiter = FrequencyLimiter()
    store = JsonConfigStore(
        templates_path=args.templates or settings.templates_path,
        rules_path=args.rules or settings.rules_path,
        notifications_path=args.notifications or settings.notification_templates_path,
        limiter=limiter,
        state_path=settings.state_path,
    )
    metric_source = build_metric_source(settings.metric_source, settings.metric_queries_path)
    transports = default_registry(dry_run=args.dry_run)

    generator = ReportGenerator(
        metric_source=metric_source,
        exporters=default_exporters(settings.reports_dir),
        transports=transports,
        store=ReportStore(settings.history_path),
        settings=settings,
    )
    alert_engine = AlertEngine(
        metric_source=metric_source,
        limiter=limiter,
        transports=transports,
        settings=settings,
    )
    return ReportScheduler(store, generator, alert_engine, settings=settings)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

def run_once(scheduler) -> None:
    stats = scheduler.run_once()
    print("\n" + "=" * 60)
    print("TICK REPORT")
    print("=" * 60)
    print(stats.summary())


def run_heartbeat(scheduler) -> None:
    logger.info("Starting scheduler in heartbeat mode.")
    try:
        scheduler.start(blocking=True)
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted. Shutting down.")
        scheduler.stop()


def run_generate(scheduler, template_id: str) -> None:
    store = scheduler.config_store
    store.refresh()
    report = asyncio.run(
        scheduler.generator.generate_on_demand(
            template_id, store.all_templates(), datetime.now(timezone.utc)
        )
    )
    store.save_state()
    print("\n" + "=" * 60)
    print(f"REPORT {report.report_id}")
    print("=" * 60)
    print(f"Status     : {report.status}")
    print(f"Period     : {report.period_start.isoformat()} - {report.period_end.isoformat()}")
    for fmt, path in report.file_paths.items():
        print(f"Artifact   : [{fmt}] {path}")
    for fmt, error in report.format_errors.items():
        print(f"Failed     : [{fmt}] {error}")
    if report.recipients_notified:
        print(f"Notified   : {', '.join(report.recipients_notified)}")
    if report.error_message:
        print(f"Error      : {report.error_message}")
    if report.status != "completed":
        sys.exit(1)


def run_upcoming(scheduler) -> None:
    from src.scheduling.schedule import upcoming_reports  # noqa: PLC0415

    store = scheduler.config_store
    store.refresh()
    upcoming = upcoming_reports(store.active_templates(), datetime.now(timezone.utc))
    print("\n" + "=" * 60)
    print("UPCOMING REPORTS")
    print("=" * 60)
    if not upcoming:
        print("No scheduled reports.")
    for item in upcoming:
        print(f"{item.next_run.isoformat():<28} {item.time_until:<10} "
              f"{item.template.template_id} ({item.template.frequency})")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    try:
        scheduler = build_scheduler(args)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Startup failed: %s", exc)
        sys.exit(1)

    if args.upcoming or args.generate:
        try:
            if args.upcoming:
                run_upcoming(scheduler)
            else:
                run_generate(scheduler, args.generate)
        except (FileNotFoundError, ValueError) as exc:
            logger.error("Failed: %s", exc)
            sys.exit(1)
    elif args.once:
        run_once(scheduler)
    else:
        run_heartbeat(scheduler)


if __name__ == "__main__":
    main()
