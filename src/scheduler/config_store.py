"""
JSON Config Store (src/scheduler/config_store.py)

Holds the report templates, alert rules and notification templates the
scheduler works from, loaded from JSON files:

    store = JsonConfigStore("configs/report_templates.json",
                            "configs/alert_rules.json",
                            "configs/notification_templates.json")
    store.refresh()
    snapshot = store.snapshot()      # one consistent view for a tick

refresh() re-reads the files. Runtime fields the engine owns
(last_generated / next_generation on templates, last_triggered /
trigger_count on rules) survive a refresh for ids that still exist.
Given a state_path, save_state() writes those fields to disk and the next
process picks them up on its first refresh.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from src.alerts.alert_config import AlertRule, load_rules
from src.alerts.limiter import FrequencyLimiter
from src.core.errors import ConfigurationError
from src.notifications.templates import NotificationTemplate, load_notification_templates
from src.reports.report_config import ReportTemplate, load_templates, parse_timestamp
from src.scheduling.schedule import next_run_for

logger = logging.getLogger(__name__)


@dataclass
class ConfigSnapshot:
    """Everything one tick reads, captured at the same moment."""
    templates: list[ReportTemplate] = field(default_factory=list)
    rules: list[AlertRule] = field(default_factory=list)
    notification_templates: dict[str, NotificationTemplate] = field(default_factory=dict)


class JsonConfigStore:
    """Thread-safe in-memory view over the JSON config files.

    Args:
        templates_path: Report templates JSON.
        rules_path: Alert rules JSON.
        notifications_path: Notification templates JSON. Optional; when the
            file does not exist only the built-in templates are used.
        limiter: If given, each rule's cooldown is seeded from its
            ``last_triggered`` when the rule is first seen.
        state_path: JSON file for the runtime fields. Without one they live
            in memory only.
    """

    def __init__(
        self,
        templates_path: str,
        rules_path: str,
        notifications_path: str | None = None,
        limiter: FrequencyLimiter | None = None,
        state_path: str | None = None,
    ):
        self.templates_path = templates_path
        self.rules_path = rules_path
        self.notifications_path = notifications_path
        self.limiter = limiter
        self.state_path = state_path
        self._lock = threading.RLock()
        self._templates: dict[str, ReportTemplate] = {}
        self._rules: dict[str, AlertRule] = {}
        self._notifications: dict[str, NotificationTemplate] = {}
        self._loaded = False
        self._saved: dict | None = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, now: datetime | None = None) -> "JsonConfigStore":
        """Load the files once if they have not been loaded yet."""
        with self._lock:
            if not self._loaded:
                self.refresh(now)
        return self

    def refresh(self, now: datetime | None = None) -> None:
        """Re-read all config files.

        Raises:
            FileNotFoundError: If the templates or rules file is missing.
            ConfigurationError: If a file is not valid JSON.
        """
        now = now or datetime.now(timezone.utc)
        templates = load_templates(self.templates_path)
        rules = load_rules(self.rules_path)
        notifications = self._load_notifications()

        with self._lock:
            saved = self._saved_state()
            fresh_templates: dict[str, ReportTemplate] = {}
            for template in templates:
                self._carry_over_template(
                    template,
                    self._templates.get(template.template_id),
                    saved["templates"].get(template.template_id),
                    now,
                )
                fresh_templates[template.template_id] = template

            fresh_rules: dict[str, AlertRule] = {}
            for rule in rules:
                previous = self._rules.get(rule.rule_id)
                if previous is not None:
                    rule.last_triggered = previous.last_triggered
                    rule.trigger_count = previous.trigger_count
                    fresh_rules[rule.rule_id] = rule
                    continue
                state = saved["rules"].get(rule.rule_id)
                if state:
                    rule.last_triggered = parse_timestamp(state.get("last_triggered"))
                    rule.trigger_count = int(state.get("trigger_count", 0))
                if self.limiter is not None:
                    self.limiter.seed(rule.rule_id, rule.last_triggered)
                fresh_rules[rule.rule_id] = rule

            self._templates = fresh_templates
            self._rules = fresh_rules
            self._notifications = notifications
            self._loaded = True

        logger.info(
            "Config refreshed: %d template(s), %d rule(s), %d notification template(s).",
            len(fresh_templates),
            len(fresh_rules),
            len(notifications),
        )

    def _load_notifications(self) -> dict[str, NotificationTemplate]:
        if not self.notifications_path:
            return {}
        if not Path(self.notifications_path).exists():
            logger.warning(
                "Notification templates file '%s' not found; using built-in templates only.",
                self.notifications_path,
            )
            return {}
        return load_notification_templates(self.notifications_path)

    def _carry_over_template(
        self,
        template: ReportTemplate,
        previous: ReportTemplate | None,
        state: dict | None,
        now: datetime,
    ) -> None:
        if previous is not None:
            template.last_generated = previous.last_generated
            unchanged = (
                previous.frequency == template.frequency
                and previous.schedule == template.schedule
            )
            if unchanged:
                template.next_generation = previous.next_generation
        elif state:
            template.last_generated = parse_timestamp(state.get("last_generated"))
            unchanged = (
                state.get("frequency") == template.frequency
                and state.get("schedule") == asdict(template.schedule)
            )
            if unchanged:
                template.next_generation = parse_timestamp(state.get("next_generation"))

        if template.next_generation is None:
            base = template.last_generated or template.created_at or now
            try:
                template.next_generation = next_run_for(template, base)
            except ConfigurationError as exc:
                logger.error(
                    "Template '%s' has an invalid schedule (%s); it will not be scheduled.",
                    template.template_id,
                    exc,
                )

    # ------------------------------------------------------------------
    # Runtime state
    # ------------------------------------------------------------------

    def _saved_state(self) -> dict:
        """The state file's contents, read once on the first refresh."""
        if self._saved is None:
            self._saved = {"templates": {}, "rules": {}}
            if self.state_path and Path(self.state_path).exists():
                try:
                    data = json.loads(Path(self.state_path).read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError) as exc:
                    logger.warning(
                        "Ignoring unreadable state file '%s': %s", self.state_path, exc
                    )
                else:
                    self._saved["templates"] = dict(data.get("templates") or {})
                    self._saved["rules"] = dict(data.get("rules") or {})
                    logger.info(
                        "Loaded runtime state for %d template(s), %d rule(s) from %s.",
                        len(self._saved["templates"]),
                        len(self._saved["rules"]),
                        self.state_path,
                    )
        return self._saved

    def save_state(self) -> None:
        """Write every template's and rule's runtime fields to ``state_path``.

        The file is replaced atomically. Does nothing without a state_path.
        """
        if not self.state_path:
            return
        with self._lock:
            data = {
                "templates": {
                    t.template_id: {
                        "last_generated": _iso(t.last_generated),
                        "next_generation": _iso(t.next_generation),
                        "frequency": t.frequency,
                        "schedule": asdict(t.schedule),
                    }
                    for t in self._templates.values()
                },
                "rules": {
                    r.rule_id: {
                        "last_triggered": _iso(r.last_triggered),
                        "trigger_count": r.trigger_count,
                    }
                    for r in self._rules.values()
                },
            }
        path = Path(self.state_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, path)
        logger.debug("Runtime state saved to %s.", path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> ConfigSnapshot:
        """Active templates, active rules and notification templates, read together."""
        with self._lock:
            return ConfigSnapshot(
                templates=[t for t in self._templates.values() if t.is_active],
                rules=[r for r in self._rules.values() if r.is_active],
                notification_templates=dict(self._notifications),
            )

    def active_templates(self) -> list[ReportTemplate]:
        with self._lock:
            return [t for t in self._templates.values() if t.is_active]

    def active_rules(self) -> list[AlertRule]:
        with self._lock:
            return [r for r in self._rules.values() if r.is_active]

    def all_templates(self) -> list[ReportTemplate]:
        with self._lock:
            return list(self._templates.values())

    def all_rules(self) -> list[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def notification_templates(self) -> dict[str, NotificationTemplate]:
        with self._lock:
            return dict(self._notifications)

    def get_template(self, template_id: str) -> ReportTemplate | None:
        with self._lock:
            return self._templates.get(template_id)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None
