"""
Report Scheduler (src/scheduler/loop.py)

Drives the engine on a fixed tick (SCHEDULER_TICK_SECONDS, default 60).
Each tick:

  1. re-reads the config store; if that fails the tick is skipped
  2. report sweep: every active template with next_generation <= now
  3. alert sweep: every active rule
  (2 and 3 run concurrently)
  4. logs the tick's TickStats and keeps it in a bounded history

Nothing raised inside a tick escapes it.

Usage:
    scheduler = ReportScheduler(store, generator, alert_engine)
    scheduler.start()              # blocking, runs forever

    # Or non-blocking:
    scheduler.start(blocking=False)
    # ... later ...
    scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any

from src.alerts.engine import AlertEngine
from src.core.settings import EngineSettings
from src.core.stats import TickStats
from src.reports.generator import ReportGenerator
from src.reports.models import COMPLETED
from src.reports.report_config import ReportTemplate
from src.scheduler.config_store import JsonConfigStore

logger = logging.getLogger(__name__)


class ReportScheduler:
    """Runs report generation and alert evaluation on a periodic tick.

    Args:
        config_store: Source of templates, rules and notification templates.
        generator: Report generator.
        alert_engine: Alert engine.
        settings: Tick length and stats history size.
        reload_config: Re-read the config files at the start of every tick.
    """

    def __init__(
        self,
        config_store: JsonConfigStore,
        generator: ReportGenerator,
        alert_engine: AlertEngine,
        settings: EngineSettings | None = None,
        reload_config: bool = True,
    ):
        self.config_store = config_store
        self.generator = generator
        self.alert_engine = alert_engine
        self.settings = settings or EngineSettings()
        self.reload_config = reload_config
        self._history: deque[TickStats] = deque(maxlen=self.settings.stats_history_size)
        self._history_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self, now: datetime | None = None) -> TickStats:
        """Run one tick and return its stats."""
        now = now or datetime.now(timezone.utc)
        stats = TickStats(started_at=now)

        try:
            if self.reload_config:
                self.config_store.refresh(now)
            snapshot = self.config_store.snapshot()
        except Exception as exc:  # noqa: BLE001
            logger.error("Config store unreadable; skipping tick: %s", exc, exc_info=True)
            stats.skipped = True
            stats.errors.append(f"config: {exc}")
            return self._finish(stats)

        self.generator.notification_templates = snapshot.notification_templates
        self.alert_engine.notification_templates = snapshot.notification_templates

        stats.templates_evaluated = len(snapshot.templates)
        due = [
            t for t in snapshot.templates
            if t.next_generation is not None and t.next_generation <= now
        ]
        if due:
            logger.info("%d report(s) due: %s", len(due), ", ".join(t.template_id for t in due))

        results = await asyncio.gather(
            self._report_sweep(due, now, stats),
            self.alert_engine.evaluate_all(snapshot.rules, now, stats),
            return_exceptions=True,
        )
        for sweep, result in zip(("report", "alert"), results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("%s sweep failed: %s", sweep.capitalize(), result, exc_info=result)
                stats.errors.append(f"{sweep} sweep: {result}")

        return self._finish(stats)

    async def _report_sweep(
        self, due: list[ReportTemplate], now: datetime, stats: TickStats
    ) -> None:
        results = await asyncio.gather(
            *(self.generator.generate(t, now, stats) for t in due),
            return_exceptions=True,
        )
        for template, result in zip(due, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Generation of '%s' raised: %s", template.template_id, result, exc_info=result
                )
                stats.generation_failures += 1
                stats.errors.append(f"{template.template_id}: {result}")

    def _finish(self, stats: TickStats) -> TickStats:
        if not stats.skipped:
            try:
                self.config_store.save_state()
            except Exception as exc:  # noqa: BLE001
                logger.error("Could not save runtime state: %s", exc, exc_info=True)
                stats.errors.append(f"state: {exc}")
        stats.finished_at = datetime.now(timezone.utc)
        logger.info("Tick complete.\n%s", stats.summary())
        with self._history_lock:
            self._history.append(stats)
        return stats

    def run_once(self, now: datetime | None = None) -> TickStats:
        """Run a single tick on a fresh event loop (CLI one-shot mode)."""
        return asyncio.run(self.run_tick(now))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        """Main loop: tick immediately, then wait one interval between ticks."""
        logger.info(
            "ReportScheduler started. Tick: %gs. Templates: %s. Rules: %s.",
            self.settings.tick_seconds,
            self.config_store.templates_path,
            self.config_store.rules_path,
        )
        loop = asyncio.new_event_loop()
        try:
            while not self._stop_event.is_set():
                try:
                    loop.run_until_complete(self.run_tick())
                except Exception as exc:  # noqa: BLE001
                    logger.error("Scheduler tick crashed: %s", exc, exc_info=True)
                self._stop_event.wait(timeout=self.settings.tick_seconds)
        finally:
            loop.close()
        logger.info("ReportScheduler stopped.")

    def start(self, blocking: bool = True) -> None:
        """Start the scheduler.

        Args:
            blocking: If True, run in the current thread (forever).
                      If False, run in a daemon background thread.
        """
        self._stop_event.clear()
        if blocking:
            self._loop()
        else:
            self._thread = threading.Thread(
                target=self._loop, daemon=True, name="pi-pulse-scheduler"
            )
            self._thread.start()
            logger.info("ReportScheduler running in background thread.")

    def stop(self) -> None:
        """Signal the scheduler to stop after the current tick."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=30)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def recent_stats(self, limit: int | None = None) -> list[TickStats]:
        """Most recent tick stats, oldest first."""
        with self._history_lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def system_stats(self, now: datetime | None = None) -> dict[str, Any]:
        """Totals across templates, rules, reports and alerts."""
        now = now or datetime.now(timezone.utc)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        templates = self.config_store.all_templates()
        rules = self.config_store.all_rules()
        reports = self.generator.store.history()
        today = [r for r in reports if r.generated_at >= day_start]
        return {
            "total_templates": len(templates),
            "active_templates": sum(1 for t in templates if t.is_active),
            "total_rules": len(rules),
            "active_rules": sum(1 for r in rules if r.is_active),
            "reports_generated_today": sum(1 for r in today if r.status == COMPLETED),
            "reports_failed_today": sum(1 for r in today if r.status != COMPLETED and r.is_terminal),
            "alerts_fired_today": len(self.alert_engine.firings(since=day_start)),
            "alerts_fired_last_hour": len(self.alert_engine.firings(since=now - timedelta(hours=1))),
            "ticks_recorded": len(self.recent_stats()),
        }
