"""
Alert Configuration (src/alerts/alert_config.py)

Defines the AlertRule dataclass (with Condition, NotificationChannel and
FrequencyLimit) and the load_rules() loader. Rules are stored in a JSON
config file (e.g. configs/alert_rules.json).

Rule shape:
{
    "rule_id": "revenue_drop_critical",
    "name": "Critical Revenue Drop",
    "metric_name": "daily_revenue",
    "condition": {
        "operator": "less_than",        # greater_than | less_than | equals | not_equals
                                        # between | outside_range
        "threshold": 0.7,
        "threshold_2": null,            # required for between / outside_range
        "comparison_basis": "previous_period"   # current | previous_period
                                                # same_period_last_year
    },
    "severity": "critical",             # low | medium | high | critical
    "notification_channels": [
        {"type": "email", "target": "cfo@example.com", "template_id": "critical_revenue_drop"}
    ],
    "frequency_limit": {"max_per_hour": 2, "max_per_day": 6, "cooldown_minutes": 30},
    "business_hours_only": false,
    "is_active": true
}
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from src.core.errors import ConfigurationError
from src.reports.report_config import AGGREGATIONS, parse_timestamp

logger = logging.getLogger(__name__)

OPERATORS = {"greater_than", "less_than", "equals", "not_equals", "between", "outside_range"}
RANGE_OPERATORS = {"between", "outside_range"}
COMPARISON_BASES = {"current", "previous_period", "same_period_last_year"}
SEVERITIES = {"low", "medium", "high", "critical"}

EPSILON = 1e-9


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Condition
# ---------------------------------------------------------------------------

@dataclass
class Condition:
    """Describes when an alert should fire."""
    operator: str                          # see OPERATORS
    threshold: float
    threshold_2: float | None = None       # upper bound for between / outside_range
    comparison_basis: str = "current"      # current | previous_period | same_period_last_year

    @property
    def needs_baseline(self) -> bool:
        return self.comparison_basis != "current"

    def problems(self) -> list[str]:
        """Return configuration problems; an empty list means the condition is usable."""
        issues = []
        if self.operator not in OPERATORS:
            issues.append(f"unknown operator '{self.operator}'")
        if self.operator in RANGE_OPERATORS and self.threshold_2 is None:
            issues.append(f"operator '{self.operator}' requires threshold_2")
        if self.comparison_basis not in COMPARISON_BASES:
            issues.append(f"unknown comparison_basis '{self.comparison_basis}'")
        return issues

    def compared_value(self, current: Any, baseline: Any = None) -> float | None:
        """The number actually compared to the threshold.

        For the ``current`` basis this is the current value; for the
        period bases it is the ratio current / baseline.
        """
        current_num = as_number(current)
        if current_num is None:
            return None
        if not self.needs_baseline:
            return current_num
        baseline_num = as_number(baseline)
        if baseline_num is None or baseline_num == 0:
            return None
        return current_num / baseline_num

    def evaluate(self, current: Any, baseline: Any = None) -> bool:
        """Return True if ``current`` (against ``baseline``) satisfies this condition.

        Never raises: unusable input or configuration evaluates to False and
        the caller is expected to report it.
        """
        if self.operator in RANGE_OPERATORS and self.threshold_2 is None:
            return False

        value = self.compared_value(current, baseline)
        if value is None:
            return False

        if self.operator == "greater_than":
            return value > self.threshold
        elif self.operator == "less_than":
            return value < self.threshold
        elif self.operator == "equals":
            return math.isclose(value, self.threshold, rel_tol=0.0, abs_tol=EPSILON)
        elif self.operator == "not_equals":
            return not math.isclose(value, self.threshold, rel_tol=0.0, abs_tol=EPSILON)
        elif self.operator == "between":
            low, high = sorted((self.threshold, self.threshold_2))
            return low <= value <= high
        elif self.operator == "outside_range":
            low, high = sorted((self.threshold, self.threshold_2))
            return value < low or value > high
        else:
            logger.warning("Unknown operator '%s'; defaulting to False.", self.operator)
            return False

    def snapshot(self) -> dict[str, Any]:
        return {
            "operator": self.operator,
            "threshold": self.threshold,
            "threshold_2": self.threshold_2,
            "comparison_basis": self.comparison_basis,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        threshold_2 = data.get("threshold_2", data.get("threshold_value_2"))
        return cls(
            operator=data.get("operator", "greater_than"),
            threshold=float(data.get("threshold", data.get("threshold_value", 0))),
            threshold_2=float(threshold_2) if threshold_2 is not None else None,
            comparison_basis=data.get(
                "comparison_basis", data.get("comparison_period", "current")
            ),
        )


# ---------------------------------------------------------------------------
# NotificationChannel / FrequencyLimit
# ---------------------------------------------------------------------------

@dataclass
class NotificationChannel:
    """One place an alert is sent: a transport type, a target and a template."""
    type: str            # email | sms | push | slack | webhook
    target: str
    template_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationChannel":
        return cls(
            type=data["type"],
            target=data.get("target", ""),
            template_id=data.get("template_id", data.get("template", "")),
        )


@dataclass
class FrequencyLimit:
    """Rate limits applied to a rule's firings."""
    max_per_hour: int = 1
    max_per_day: int = 10
    cooldown_minutes: int = 30

    @classmethod
    def from_dict(cls, data: dict) -> "FrequencyLimit":
        return cls(
            max_per_hour=int(data.get("max_per_hour", data.get("max_alerts_per_hour", 1))),
            max_per_day=int(data.get("max_per_day", data.get("max_alerts_per_day", 10))),
            cooldown_minutes=int(data.get("cooldown_minutes", 30)),
        )


# ---------------------------------------------------------------------------
# AlertRule
# ---------------------------------------------------------------------------

@dataclass
class AlertRule:
    """A configured threshold condition on a named metric.

    ``last_triggered`` and ``trigger_count`` are only touched by the alert
    engine on a firing admitted by the frequency limiter.
    """
    rule_id: str
    name: str
    metric_name: str
    condition: Condition
    severity: str = "medium"
    description: str = ""
    channels: list[NotificationChannel] = field(default_factory=list)
    frequency_limit: FrequencyLimit = field(default_factory=FrequencyLimit)
    business_hours_only: bool = False
    is_active: bool = True
    window_minutes: int = 60
    aggregation: str = "avg"
    variables: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    last_triggered: datetime | None = None
    trigger_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "AlertRule":
        """Construct an AlertRule from a raw config dict."""
        severity = data.get("severity", "medium")
        if severity not in SEVERITIES:
            raise ConfigurationError(f"invalid severity '{severity}'")
        aggregation = data.get("aggregation", "avg")
        if aggregation not in AGGREGATIONS:
            raise ConfigurationError(f"invalid aggregation '{aggregation}'")
        raw_channels = data.get("notification_channels", data.get("channels", []))
        return cls(
            rule_id=data["rule_id"],
            name=data.get("name", data["rule_id"]),
            description=data.get("description", ""),
            metric_name=data["metric_name"],
            condition=Condition.from_dict(data.get("condition", {})),
            severity=severity,
            channels=[NotificationChannel.from_dict(c) for c in raw_channels],
            frequency_limit=FrequencyLimit.from_dict(data.get("frequency_limit", {})),
            business_hours_only=bool(data.get("business_hours_only", False)),
            is_active=bool(data.get("is_active", True)),
            window_minutes=int(data.get("window_minutes", 60)),
            aggregation=aggregation,
            variables=dict(data.get("variables", {})),
            created_at=parse_timestamp(data.get("created_at")),
            last_triggered=parse_timestamp(data.get("last_triggered")),
            trigger_count=int(data.get("trigger_count", 0)),
        )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_rules(path: str = "configs/alert_rules.json") -> list[AlertRule]:
    """Load and parse alert rules from a JSON config file.

    Args:
        path: Path to the alert rules JSON file.

    Returns:
        List of AlertRule objects, active and inactive.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If the file is not valid JSON.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Alert rules config not found: '{path}'. "
            "Create one from configs/alert_rules.example.json."
        )

    try:
        raw = json.loads(config_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Malformed JSON in '{path}': {exc}") from exc
    rules_raw: list[dict] = raw if isinstance(raw, list) else raw.get("rules", [])

    rules: list[AlertRule] = []
    for i, entry in enumerate(rules_raw):
        try:
            rules.append(AlertRule.from_dict(entry))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed rule at index %d: %s", i, exc)

    logger.info("Loaded %d alert rule(s) from '%s'.", len(rules), path)
    return rules
