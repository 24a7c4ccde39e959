"""
Engine Settings (src/core/settings.py)

All tunables are read from environment variables (optionally loaded from a
.env file by main.py). Transport credentials are NOT held here; the
transports read them at call time so tests can monkeypatch os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class EngineSettings:
    """Runtime configuration for the scheduler, generator and alert engine."""
    tick_seconds: float = 60.0
    generation_timeout_seconds: float = 300.0
    metric_timeout_seconds: float = 30.0
    export_timeout_seconds: float = 120.0
    dispatch_timeout_seconds: float = 15.0
    business_hours_start: int = 8      # inclusive, local hour
    business_hours_end: int = 20       # exclusive, local hour
    business_timezone: str = "UTC"
    reports_dir: str = "reports"
    history_path: str = "reports/history.jsonl"
    state_path: str = "reports/state.json"
    templates_path: str = "configs/report_templates.json"
    rules_path: str = "configs/alert_rules.json"
    notification_templates_path: str = "configs/notification_templates.json"
    metric_source: str = "sql"         # sql | cloudwatch
    metric_queries_path: str = "configs/metric_queries.json"
    dashboard_url: str = ""
    company_name: str = ""
    stats_history_size: int = 100

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from the current environment, falling back to defaults."""
        return cls(
            tick_seconds=_env_float("SCHEDULER_TICK_SECONDS", 60.0),
            generation_timeout_seconds=_env_float("GENERATION_TIMEOUT_SECONDS", 300.0),
            metric_timeout_seconds=_env_float("METRIC_TIMEOUT_SECONDS", 30.0),
            export_timeout_seconds=_env_float("EXPORT_TIMEOUT_SECONDS", 120.0),
            dispatch_timeout_seconds=_env_float("DISPATCH_TIMEOUT_SECONDS", 15.0),
            business_hours_start=_env_int("BUSINESS_HOURS_START", 8),
            business_hours_end=_env_int("BUSINESS_HOURS_END", 20),
            business_timezone=os.getenv("BUSINESS_TIMEZONE", "UTC"),
            reports_dir=os.getenv("REPORTS_DIR", "reports"),
            history_path=os.getenv("REPORT_HISTORY_PATH", "reports/history.jsonl"),
            state_path=os.getenv("ENGINE_STATE_PATH", "reports/state.json"),
            templates_path=os.getenv("REPORT_TEMPLATES_PATH", "configs/report_templates.json"),
            rules_path=os.getenv("ALERT_RULES_PATH", "configs/alert_rules.json"),
            notification_templates_path=os.getenv(
                "NOTIFICATION_TEMPLATES_PATH", "configs/notification_templates.json"
            ),
            metric_source=os.getenv("METRIC_SOURCE", "sql"),
            metric_queries_path=os.getenv("METRIC_QUERIES_PATH", "configs/metric_queries.json"),
            dashboard_url=os.getenv("DASHBOARD_URL", ""),
            company_name=os.getenv("COMPANY_NAME", ""),
            stats_history_size=_env_int("STATS_HISTORY_SIZE", 100),
        )
