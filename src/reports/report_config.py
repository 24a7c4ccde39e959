"""
Report Template Configuration (src/reports/report_config.py)

Defines the ReportTemplate dataclass (plus Schedule, Recipient, MetricSpec)
and the load_templates() loader. Templates are stored in a JSON config file
(e.g. configs/report_templates.json).

Template shape:
{
    "template_id": "executive_weekly",
    "name": "Weekly Executive Report",
    "report_type": "executive",   # executive | financial | operational | marketing | customer
    "frequency": "weekly",        # daily | weekly | monthly | quarterly | on_demand
    "schedule": {"time": "08:00", "day_of_week": 1, "timezone": "UTC"},
    "recipients": [{"address": "ceo@example.com", "name": "CEO",
                    "role": "executive", "delivery_mode": "both"}],
    "metrics": [{"metric_name": "total_revenue", "display_name": "Total Revenue",
                 "format": "currency", "aggregation": "sum",
                 "comparison_period": "previous_period"}],
    "export_formats": ["csv", "json"],
    "is_active": true
}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

REPORT_TYPES = {"executive", "financial", "operational", "marketing", "customer"}
FREQUENCIES = {"daily", "weekly", "monthly", "quarterly", "on_demand"}
DELIVERY_MODES = {"channel", "dashboard", "both"}
METRIC_FORMATS = {"number", "currency", "percentage", "text"}
AGGREGATIONS = {"sum", "avg", "count", "max", "min"}
COMPARISON_PERIODS = {"previous_period", "same_period_last_year", "none"}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _choice(raw: dict, key: str, allowed: set[str], default: str) -> str:
    value = raw.get(key, default)
    if value not in allowed:
        raise ConfigurationError(f"invalid {key} '{value}' (expected one of {sorted(allowed)})")
    return value


# ---------------------------------------------------------------------------
# Schedule / Recipient / MetricSpec
# ---------------------------------------------------------------------------

@dataclass
class Schedule:
    """When a template runs, in wall-clock terms of ``timezone``."""
    time: str = "00:00"              # HH:MM
    day_of_week: int | None = None   # 0-6, Sunday-Saturday
    day_of_month: int | None = None  # 1-31; rolls to the last day in short months
    timezone: str = "UTC"
    anchor_month: int | None = None  # 1-12; quarterly only

    @classmethod
    def from_dict(cls, data: dict) -> "Schedule":
        day_of_week = data.get("day_of_week")
        day_of_month = data.get("day_of_month")
        anchor_month = data.get("anchor_month")
        schedule = cls(
            time=str(data.get("time", "00:00")),
            day_of_week=int(day_of_week) if day_of_week is not None else None,
            day_of_month=int(day_of_month) if day_of_month is not None else None,
            timezone=data.get("timezone", "UTC"),
            anchor_month=int(anchor_month) if anchor_month is not None else None,
        )
        if schedule.day_of_week is not None and not 0 <= schedule.day_of_week <= 6:
            raise ConfigurationError(f"day_of_week must be 0-6, got {schedule.day_of_week}")
        if schedule.day_of_month is not None and not 1 <= schedule.day_of_month <= 31:
            raise ConfigurationError(f"day_of_month must be 1-31, got {schedule.day_of_month}")
        if schedule.anchor_month is not None and not 1 <= schedule.anchor_month <= 12:
            raise ConfigurationError(f"anchor_month must be 1-12, got {schedule.anchor_month}")
        return schedule


@dataclass
class Recipient:
    """Someone who receives a generated report."""
    address: str
    name: str = ""
    role: str = ""
    delivery_mode: str = "channel"   # channel | dashboard | both
    channel_type: str = "email"      # transport used for channel delivery

    @classmethod
    def from_dict(cls, data: dict) -> "Recipient":
        mode = data.get("delivery_mode", data.get("delivery_method", "channel"))
        if mode == "email":
            mode = "channel"
        if mode not in DELIVERY_MODES:
            raise ConfigurationError(f"invalid delivery_mode '{mode}'")
        return cls(
            address=data.get("address", data.get("email", "")),
            name=data.get("name", ""),
            role=data.get("role", ""),
            delivery_mode=mode,
            channel_type=data.get("channel_type", "email"),
        )

    @property
    def wants_channel(self) -> bool:
        return self.delivery_mode in ("channel", "both")

    @property
    def wants_dashboard(self) -> bool:
        return self.delivery_mode in ("dashboard", "both")


@dataclass
class MetricSpec:
    """One metric a report pulls from the metric data source."""
    metric_name: str
    display_name: str = ""
    format: str = "number"                  # number | currency | percentage | text
    aggregation: str = "sum"                # sum | avg | count | max | min
    comparison_period: str = "none"         # previous_period | same_period_last_year | none

    @classmethod
    def from_dict(cls, data: dict) -> "MetricSpec":
        comparison = data.get("comparison_period") or "none"
        if comparison not in COMPARISON_PERIODS:
            raise ConfigurationError(f"invalid comparison_period '{comparison}'")
        return cls(
            metric_name=data["metric_name"],
            display_name=data.get("display_name", data["metric_name"]),
            format=_choice(data, "format", METRIC_FORMATS, "number"),
            aggregation=_choice(data, "aggregation", AGGREGATIONS, "sum"),
            comparison_period=comparison,
        )

    @property
    def has_comparison(self) -> bool:
        return self.comparison_period != "none"


# ---------------------------------------------------------------------------
# ReportTemplate
# ---------------------------------------------------------------------------

@dataclass
class ReportTemplate:
    """A reusable definition of what a report contains and when it runs.

    Only ``last_generated`` and ``next_generation`` are mutated by the engine;
    everything else is owned by configuration.
    """
    template_id: str
    name: str
    report_type: str
    frequency: str
    schedule: Schedule
    description: str = ""
    recipients: list[Recipient] = field(default_factory=list)
    data_sources: list[str] = field(default_factory=list)
    metrics: list[MetricSpec] = field(default_factory=list)
    visualizations: list[dict[str, Any]] = field(default_factory=list)
    filters: dict[str, Any] = field(default_factory=dict)
    export_formats: list[str] = field(default_factory=list)
    notification_template_id: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_generated: datetime | None = None
    next_generation: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ReportTemplate":
        """Construct a ReportTemplate from a raw config dict."""
        formats: list[str] = []
        for fmt in data.get("export_formats", []):
            if fmt not in formats:
                formats.append(fmt)
        return cls(
            template_id=data["template_id"],
            name=data.get("name", data["template_id"]),
            description=data.get("description", ""),
            report_type=_choice(data, "report_type", REPORT_TYPES, "operational"),
            frequency=_choice(data, "frequency", FREQUENCIES, "daily"),
            schedule=Schedule.from_dict(data.get("schedule", {})),
            recipients=[Recipient.from_dict(r) for r in data.get("recipients", [])],
            data_sources=list(data.get("data_sources", [])),
            metrics=[MetricSpec.from_dict(m) for m in data.get("metrics", [])],
            visualizations=list(data.get("visualizations", [])),
            filters=dict(data.get("filters", {})),
            export_formats=formats,
            notification_template_id=data.get("notification_template_id"),
            is_active=bool(data.get("is_active", True)),
            created_at=parse_timestamp(data.get("created_at")),
            last_generated=parse_timestamp(data.get("last_generated")),
            next_generation=parse_timestamp(data.get("next_generation")),
        )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_templates(path: str = "configs/report_templates.json") -> list[ReportTemplate]:
    """Load and parse report templates from a JSON config file.

    Inactive templates are returned too; deactivation is a flag, not removal.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If the file is not valid JSON.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Report templates config not found: '{path}'. "
            "Create one from configs/report_templates.example.json."
        )

    try:
        raw = json.loads(config_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Malformed JSON in '{path}': {exc}") from exc
    entries: list[dict] = raw if isinstance(raw, list) else raw.get("templates", [])

    templates: list[ReportTemplate] = []
    for i, entry in enumerate(entries):
        try:
            templates.append(ReportTemplate.from_dict(entry))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed report template at index %d: %s", i, exc)

    logger.info("Loaded %d report template(s) from '%s'.", len(templates), path)
    return templates
