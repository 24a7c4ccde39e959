"""
Tick Statistics (src/core/stats.py)

A TickStats instance is created fresh for every scheduler tick and passed
down to the report generator and the alert engine, which increment it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime


@dataclass
class TickStats:
    """Counters for one scheduler tick."""
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False                  # True if the tick could not read config
    templates_evaluated: int = 0
    templates_generated: int = 0
    generation_failures: int = 0
    rules_evaluated: int = 0
    rules_skipped: int = 0                 # outside business hours / config errors
    alerts_fired: int = 0
    alerts_suppressed: int = 0             # denied by the frequency limiter
    deliveries_succeeded: int = 0
    deliveries_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def record_delivery(self, delivered: bool) -> None:
        if delivered:
            self.deliveries_succeeded += 1
        else:
            self.deliveries_failed += 1

    def as_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data

    def summary(self) -> str:
        """Plain-text cycle report, one counter per line."""
        lines = [
            "=== Pi-Pulse Tick Report ===",
            f"Started              : {self.started_at.isoformat()}",
            f"Templates evaluated  : {self.templates_evaluated}",
            f"Templates generated  : {self.templates_generated}",
            f"Generation failures  : {self.generation_failures}",
            f"Rules evaluated      : {self.rules_evaluated}",
            f"Rules skipped        : {self.rules_skipped}",
            f"Alerts fired         : {self.alerts_fired}",
            f"Alerts suppressed    : {self.alerts_suppressed}",
            f"Deliveries succeeded : {self.deliveries_succeeded}",
            f"Deliveries failed    : {self.deliveries_failed}",
        ]
        if self.skipped:
            lines.append("Tick skipped         : yes")
        if self.errors:
            lines.append("")
            lines.append("Errors:")
            for err in self.errors:
                lines.append(f"  • {err}")
        return "\n".join(lines)
