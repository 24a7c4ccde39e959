"""
Report Records (src/reports/models.py)

GeneratedReport is created in ``generating`` state and moves exactly once
to a terminal state (completed | failed | cancelled). Terminal records are
audit facts: ReportStore only appends, and a re-generation of the same
period produces a new record.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from src.core.errors import ReportStateError
from src.reports.report_config import parse_timestamp

logger = logging.getLogger(__name__)

GENERATING = "generating"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}


@dataclass
class MetricValue:
    """One metric's value in a report snapshot."""
    metric_name: str
    display_name: str
    format: str
    aggregation: str
    value: float | str | None = None
    formatted: str = "n/a"
    comparison_period: str = "none"
    comparison_value: float | str | None = None
    delta_absolute: float | None = None
    delta_percentage: float | None = None
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.error is None and self.value is not None


@dataclass
class ReportSnapshot:
    """Everything an export renderer gets to see."""
    report_id: str
    template_id: str
    title: str
    period_start: datetime
    period_end: datetime
    metrics: list[MetricValue]
    partial_data: bool = False


@dataclass
class DeliveryOutcome:
    """Result of delivering a report (or alert) to one recipient/target."""
    target: str
    channel: str
    delivered: bool
    error: str | None = None
    missing_variables: list[str] = field(default_factory=list)


@dataclass
class GeneratedReport:
    """One run of a ReportTemplate."""
    report_id: str
    template_id: str
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    status: str = GENERATING
    file_paths: dict[str, str] = field(default_factory=dict)
    format_errors: dict[str, str] = field(default_factory=dict)
    metrics_summary: dict[str, Any] = field(default_factory=dict)
    recipients_notified: list[str] = field(default_factory=list)
    deliveries: list[DeliveryOutcome] = field(default_factory=list)
    generation_time_ms: int = 0
    file_size_bytes: int = 0
    error_message: str | None = None

    @classmethod
    def start(
        cls, template_id: str, now: datetime, period_start: datetime, period_end: datetime
    ) -> "GeneratedReport":
        return cls(
            report_id=f"report_{template_id}_{uuid.uuid4().hex[:12]}",
            template_id=template_id,
            generated_at=now,
            period_start=period_start,
            period_end=period_end,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: str, **fields: Any) -> None:
        """Move to a terminal state, setting the given fields at the same time.

        Raises:
            ReportStateError: If the report is already terminal or ``status``
                is not a terminal status.
        """
        if status not in TERMINAL_STATUSES:
            raise ReportStateError(f"'{status}' is not a terminal report status")
        if self.is_terminal:
            raise ReportStateError(
                f"Report '{self.report_id}' is already '{self.status}'; cannot move to '{status}'"
            )
        for name, value in fields.items():
            if not hasattr(self, name):
                raise AttributeError(f"GeneratedReport has no field '{name}'")
            setattr(self, name, value)
        self.status = status

    def as_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "template_id": self.template_id,
            "generated_at": self.generated_at.isoformat(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "status": self.status,
            "file_paths": dict(self.file_paths),
            "format_errors": dict(self.format_errors),
            "metrics_summary": self.metrics_summary,
            "recipients_notified": list(self.recipients_notified),
            "deliveries": [asdict(d) for d in self.deliveries],
            "generation_time_ms": self.generation_time_ms,
            "file_size_bytes": self.file_size_bytes,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GeneratedReport":
        """Rebuild a report from ``as_dict()`` output (e.g. a history line)."""
        return cls(
            report_id=data["report_id"],
            template_id=data["template_id"],
            generated_at=parse_timestamp(data["generated_at"]),
            period_start=parse_timestamp(data["period_start"]),
            period_end=parse_timestamp(data["period_end"]),
            status=data.get("status", GENERATING),
            file_paths=dict(data.get("file_paths", {})),
            format_errors=dict(data.get("format_errors", {})),
            metrics_summary=dict(data.get("metrics_summary", {})),
            recipients_notified=list(data.get("recipients_notified", [])),
            deliveries=[DeliveryOutcome(**d) for d in data.get("deliveries", [])],
            generation_time_ms=int(data.get("generation_time_ms", 0)),
            file_size_bytes=int(data.get("file_size_bytes", 0)),
            error_message=data.get("error_message"),
        )


class ReportStore:
    """Append-only, thread-safe history of GeneratedReports.

    With a ``path`` the history is durable: every terminal report is appended
    to the file as one JSON line, and the file is read back on construction,
    so a restarted engine still sees the periods it already completed.
    Without one the history lives in memory only.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._reports: list[GeneratedReport] = []
        self._lock = threading.Lock()
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        for i, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                self._reports.append(GeneratedReport.from_dict(json.loads(line)))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed report history line %d in '%s': %s", i, self.path, exc)
        logger.info("Loaded %d report(s) from '%s'.", len(self._reports), self.path)

    def add(self, report: GeneratedReport) -> None:
        """Track a report; it is written to the history file once terminal (see ``record``)."""
        with self._lock:
            self._reports.append(report)
            if report.is_terminal:
                self._append_line(report)

    def record(self, report: GeneratedReport) -> None:
        """Persist a report that has reached its terminal state."""
        if not report.is_terminal:
            raise ReportStateError(f"Report '{report.report_id}' is not terminal yet")
        with self._lock:
            self._append_line(report)

    def _append_line(self, report: GeneratedReport) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(report.as_dict(), default=str) + "\n")

    def latest_for_period(
        self, template_id: str, period_start: datetime, period_end: datetime
    ) -> GeneratedReport | None:
        """Most recent attempt for exactly this template and period."""
        with self._lock:
            for report in reversed(self._reports):
                if (
                    report.template_id == template_id
                    and report.period_start == period_start
                    and report.period_end == period_end
                ):
                    return report
        return None

    def history(self, template_id: str | None = None) -> list[GeneratedReport]:
        with self._lock:
            if template_id is None:
                return list(self._reports)
            return [r for r in self._reports if r.template_id == template_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._reports)
