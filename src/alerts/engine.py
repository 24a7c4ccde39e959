"""
Alert Engine (src/alerts/engine.py)

Evaluates every active AlertRule once per tick:

  business-hours gate → fetch current (and baseline) → Condition.evaluate
  → FrequencyLimiter.admit → render + send per notification channel

Rules are evaluated concurrently. Channels of one firing are attempted
independently, each with its own timeout, so one failing transport never
stops the others. A rule's trigger_count / last_triggered are updated once
per admitted firing, however many channels succeed.

Not triggered and triggered-but-denied evaluations leave no record;
admitted firings are kept in a bounded in-memory log.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.alerts.alert_config import AlertRule, NotificationChannel, as_number
from src.alerts.limiter import FrequencyLimiter
from src.core.errors import ConfigurationError
from src.core.settings import EngineSettings
from src.core.stats import TickStats
from src.metrics.sources import MetricSource
from src.notifications.templates import (
    DEFAULT_ALERT_TEMPLATE,
    AlertVariables,
    NotificationTemplate,
    render_notification,
)
from src.notifications.transports import TransportRegistry
from src.reports.models import DeliveryOutcome
from src.scheduling.schedule import comparison_window

logger = logging.getLogger(__name__)

DISPATCHING = "dispatching"
DISPATCHED = "dispatched"


# ---------------------------------------------------------------------------
# Business hours
# ---------------------------------------------------------------------------

@dataclass
class BusinessHours:
    """Local-time window [start_hour, end_hour) in which gated rules run."""
    start_hour: int = 8
    end_hour: int = 20
    timezone: str = "UTC"

    def __post_init__(self):
        try:
            self._tz = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown business timezone '{self.timezone}'") from exc

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "BusinessHours":
        return cls(
            start_hour=settings.business_hours_start,
            end_hour=settings.business_hours_end,
            timezone=settings.business_timezone,
        )

    def contains(self, now: datetime) -> bool:
        return self.start_hour <= now.astimezone(self._tz).hour < self.end_hour


# ---------------------------------------------------------------------------
# AlertFiring
# ---------------------------------------------------------------------------

@dataclass
class AlertFiring:
    """An admitted firing of a rule and what happened on each channel."""
    firing_id: str
    rule_id: str
    rule_name: str
    severity: str
    fired_at: datetime
    metric_value: Any
    baseline_value: Any
    threshold: dict[str, Any]
    channels_attempted: list[str] = field(default_factory=list)
    outcomes: list[DeliveryOutcome] = field(default_factory=list)
    status: str = DISPATCHING

    @property
    def delivered_count(self) -> int:
        return sum(1 for o in self.outcomes if o.delivered)


def percentage_change(current: float, reference: float | None) -> float | None:
    if reference is None or reference == 0:
        return None
    return (current - reference) / abs(reference) * 100


# ---------------------------------------------------------------------------
# AlertEngine
# ---------------------------------------------------------------------------

class AlertEngine:
    """Evaluates alert rules and dispatches notifications for admitted firings.

    Args:
        metric_source: Where current and baseline values come from.
        limiter: Shared frequency limiter (one per process).
        transports: Channel type → transport registry.
        notification_templates: template_id → NotificationTemplate.
        settings: Timeouts, business hours, dashboard URL, branding.
        history_size: How many admitted firings to keep in memory.
    """

    def __init__(
        self,
        metric_source: MetricSource,
        limiter: FrequencyLimiter | None = None,
        transports: TransportRegistry | None = None,
        notification_templates: dict[str, NotificationTemplate] | None = None,
        settings: EngineSettings | None = None,
        history_size: int = 500,
    ):
        self.metric_source = metric_source
        self.limiter = limiter or FrequencyLimiter()
        self.transports = transports or TransportRegistry()
        self.notification_templates = notification_templates or {}
        self.settings = settings or EngineSettings()
        self.business_hours = BusinessHours.from_settings(self.settings)
        self._firings: deque[AlertFiring] = deque(maxlen=history_size)
        self._firings_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def evaluate_all(
        self, rules: Iterable[AlertRule], now: datetime, stats: TickStats | None = None
    ) -> list[AlertFiring]:
        """Evaluate all rules concurrently and return the admitted firings."""
        rules = list(rules)
        results = await asyncio.gather(
            *(self.evaluate_rule(rule, now, stats) for rule in rules),
            return_exceptions=True,
        )

        firings: list[AlertFiring] = []
        for rule, result in zip(rules, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Error evaluating rule '%s': %s", rule.rule_id, result, exc_info=result
                )
                if stats is not None:
                    stats.errors.append(f"rule {rule.rule_id}: {result}")
            elif result is not None:
                firings.append(result)
        return firings

    async def evaluate_rule(
        self, rule: AlertRule, now: datetime, stats: TickStats | None = None
    ) -> AlertFiring | None:
        """Evaluate one rule; returns the firing if one was admitted."""
        if not rule.is_active:
            return None

        problems = rule.condition.problems()
        if problems:
            logger.error("Rule '%s' is misconfigured (%s); skipping.", rule.rule_id, "; ".join(problems))
            if stats is not None:
                stats.rules_skipped += 1
                stats.errors.append(f"rule {rule.rule_id}: {'; '.join(problems)}")
            return None

        if rule.business_hours_only and not self.business_hours.contains(now):
            logger.debug("Rule '%s' skipped: outside business hours.", rule.rule_id)
            if stats is not None:
                stats.rules_skipped += 1
            return None

        if stats is not None:
            stats.rules_evaluated += 1

        start = now - timedelta(minutes=rule.window_minutes)
        current = await self._fetch(rule, start, now)
        if current is None:
            return None

        baseline = None
        if rule.condition.needs_baseline:
            window = comparison_window(rule.condition.comparison_basis, start, now)
            if window is not None:
                baseline = await self._fetch(rule, *window)

        if not rule.condition.evaluate(current, baseline):
            return None

        if not self.limiter.admit(rule.rule_id, rule.frequency_limit, now):
            logger.info("Rule '%s' triggered but suppressed by frequency limits.", rule.rule_id)
            if stats is not None:
                stats.alerts_suppressed += 1
            return None

        rule.trigger_count += 1
        rule.last_triggered = now
        if stats is not None:
            stats.alerts_fired += 1

        firing = AlertFiring(
            firing_id=f"alert_{rule.rule_id}_{uuid.uuid4().hex[:12]}",
            rule_id=rule.rule_id,
            rule_name=rule.name,
            severity=rule.severity,
            fired_at=now,
            metric_value=current,
            baseline_value=baseline,
            threshold=rule.condition.snapshot(),
            channels_attempted=[c.type for c in rule.channels],
        )
        with self._firings_lock:
            self._firings.append(firing)
        logger.warning(
            "ALERT [%s] %s: %s = %s (%s %s)",
            rule.severity.upper(),
            rule.name,
            rule.metric_name,
            current,
            rule.condition.operator,
            rule.condition.threshold,
        )

        variables = self.build_variables(rule, current, baseline, now).as_dict()
        firing.outcomes = list(
            await asyncio.gather(*(self._dispatch(rule, c, variables, stats) for c in rule.channels))
        )
        firing.status = DISPATCHED
        return firing

    def firings(self, since: datetime | None = None) -> list[AlertFiring]:
        with self._firings_lock:
            return [f for f in self._firings if since is None or f.fired_at >= since]

    def build_variables(
        self, rule: AlertRule, current: Any, baseline: Any, now: datetime
    ) -> AlertVariables:
        """Template variables for a firing of ``rule``."""
        current_num = as_number(current)
        baseline_num = as_number(baseline)
        threshold = rule.condition.threshold

        change = None
        excess = None
        if current_num is not None:
            if baseline_num is not None:
                change = percentage_change(current_num, baseline_num)
            else:
                change = percentage_change(current_num, threshold)
            compared = rule.condition.compared_value(current, baseline)
            if compared is not None:
                excess = percentage_change(compared, threshold)

        return AlertVariables(
            metric_name=rule.metric_name,
            current_value=current,
            threshold_value=threshold,
            percentage_change=change,
            timestamp=now,
            rule_name=rule.name,
            severity=rule.severity,
            previous_value=baseline,
            threshold_value_2=rule.condition.threshold_2,
            excess_percentage=excess,
            dashboard_url=self.settings.dashboard_url,
            extras=dict(rule.variables),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _fetch(self, rule: AlertRule, start: datetime, end: datetime) -> Any:
        timeout = self.settings.metric_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.metric_source.get_value(rule.metric_name, start, end, rule.aggregation),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Metric '%s' for rule '%s' timed out after %gs.",
                           rule.metric_name, rule.rule_id, timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Metric '%s' for rule '%s' unavailable: %s",
                           rule.metric_name, rule.rule_id, exc)
        return None

    def _template_for(self, rule: AlertRule, channel: NotificationChannel) -> NotificationTemplate:
        if channel.template_id:
            template = self.notification_templates.get(channel.template_id)
            if template is not None:
                return template
            logger.warning(
                "Rule '%s' channel '%s' references unknown template '%s'; using the default alert body.",
                rule.rule_id,
                channel.type,
                channel.template_id,
            )
        return DEFAULT_ALERT_TEMPLATE

    async def _dispatch(
        self,
        rule: AlertRule,
        channel: NotificationChannel,
        variables: dict[str, Any],
        stats: TickStats | None,
    ) -> DeliveryOutcome:
        message = render_notification(
            self._template_for(rule, channel),
            variables,
            company_name=self.settings.company_name,
        )
        outcome = DeliveryOutcome(
            target=channel.target,
            channel=channel.type,
            delivered=False,
            missing_variables=message.missing,
        )

        if channel.type not in self.transports:
            outcome.error = f"no transport registered for '{channel.type}'"
        else:
            timeout = self.settings.dispatch_timeout_seconds
            try:
                outcome.delivered = await asyncio.wait_for(
                    self.transports.send(channel.type, channel.target, message.subject, message.body),
                    timeout=timeout,
                )
                if not outcome.delivered:
                    outcome.error = "transport reported not delivered"
            except asyncio.TimeoutError:
                outcome.error = f"timed out after {timeout:g}s"
            except Exception as exc:  # noqa: BLE001
                outcome.error = str(exc) or exc.__class__.__name__

        if outcome.error:
            logger.warning(
                "Alert '%s' delivery via %s to '%s' failed: %s",
                rule.rule_id,
                channel.type,
                channel.target,
                outcome.error,
            )
        if stats is not None:
            stats.record_delivery(outcome.delivered)
        return outcome
