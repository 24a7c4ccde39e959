"""
Export Renderers (src/reports/exporters.py)

Turn a report's metric snapshot into an artifact on disk:
  - FileExportRenderer  → csv | json | markdown, written to REPORTS_DIR
  - ChartExportRenderer → png bar chart of the numeric KPIs (Matplotlib)

Other formats (pdf, excel, ...) are provided by registering an external
renderer on the ExportRegistry; a format with no renderer fails on its own
without affecting the others.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from src.reports.models import ReportSnapshot

logger = logging.getLogger(__name__)


class ExportError(RuntimeError):
    """Raised when a format cannot be rendered."""


@dataclass
class RenderedArtifact:
    path: str
    size_bytes: int


class ExportRenderer:
    """Base class: ``render`` runs the blocking ``_render`` in a worker thread."""

    formats: tuple[str, ...] = ()

    def __init__(self, reports_dir: str | Path = "reports"):
        self.reports_dir = Path(reports_dir)

    async def render(
        self, fmt: str, snapshot: ReportSnapshot, visualizations: list[dict[str, Any]]
    ) -> RenderedArtifact:
        return await asyncio.to_thread(self._render, fmt, snapshot, visualizations)

    def _render(
        self, fmt: str, snapshot: ReportSnapshot, visualizations: list[dict[str, Any]]
    ) -> RenderedArtifact:
        raise NotImplementedError

    def _out_path(self, snapshot: ReportSnapshot, ext: str) -> Path:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        return self.reports_dir / f"{snapshot.report_id}.{ext}"


# ---------------------------------------------------------------------------
# Text formats
# ---------------------------------------------------------------------------

class FileExportRenderer(ExportRenderer):
    formats = ("csv", "json", "markdown")

    def _render(self, fmt, snapshot, visualizations):
        if fmt == "csv":
            out_path = self._out_path(snapshot, "csv")
            out_path.write_text(self._to_csv(snapshot))
        elif fmt == "json":
            out_path = self._out_path(snapshot, "json")
            out_path.write_text(self._to_json(snapshot, visualizations))
        elif fmt == "markdown":
            out_path = self._out_path(snapshot, "md")
            out_path.write_text(self._to_markdown(snapshot))
        else:
            raise ExportError(f"FileExportRenderer cannot render '{fmt}'")

        logger.info("Report artifact saved to %s", out_path)
        return RenderedArtifact(path=str(out_path), size_bytes=out_path.stat().st_size)

    def _to_csv(self, snapshot: ReportSnapshot) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(["metric", "display_name", "value", "comparison_value",
                         "delta_absolute", "delta_percentage", "error"])
        for m in snapshot.metrics:
            writer.writerow([m.metric_name, m.display_name, m.value, m.comparison_value,
                             m.delta_absolute, m.delta_percentage, m.error or ""])
        return buf.getvalue()

    def _to_json(self, snapshot: ReportSnapshot, visualizations: list[dict[str, Any]]) -> str:
        payload = {
            "report_id": snapshot.report_id,
            "template_id": snapshot.template_id,
            "title": snapshot.title,
            "period_start": snapshot.period_start.isoformat(),
            "period_end": snapshot.period_end.isoformat(),
            "partial_data": snapshot.partial_data,
            "metrics": [asdict(m) for m in snapshot.metrics],
            "visualizations": visualizations,
        }
        return json.dumps(payload, indent=2, default=str)

    def _to_markdown(self, snapshot: ReportSnapshot) -> str:
        lines = [
            f"# {snapshot.title}",
            "",
            f"Period: {snapshot.period_start.isoformat()} - {snapshot.period_end.isoformat()}",
            "",
            "| Metric | Value | Change |",
            "|---|---|---|",
        ]
        for m in snapshot.metrics:
            change = f"{m.delta_percentage:+.2f}%" if m.delta_percentage is not None else ""
            lines.append(f"| {m.display_name} | {m.formatted} | {change} |")
        if snapshot.partial_data:
            lines += ["", "_Some metrics were unavailable for this period._"]
        return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Chart
# ---------------------------------------------------------------------------

class ChartExportRenderer(ExportRenderer):
    formats = ("png",)

    def _render(self, fmt, snapshot, visualizations):
        if fmt != "png":
            raise ExportError(f"ChartExportRenderer cannot render '{fmt}'")

        try:
            import matplotlib
            matplotlib.use("Agg")  # Non-interactive backend  # noqa: E402
            import matplotlib.pyplot as plt  # type: ignore
        except ImportError as exc:
            raise ExportError("matplotlib is not installed. Run: pip install matplotlib") from exc

        points = [(m.display_name, float(m.value)) for m in snapshot.metrics
                  if m.available and isinstance(m.value, (int, float))]
        if not points:
            raise ExportError("No numeric metrics to chart.")

        title = next((v.get("title") for v in visualizations if v.get("chart_type") == "bar"),
                     snapshot.title)
        out_path = self._out_path(snapshot, "png")

        # Work on this figure only; renders for several reports run in parallel threads.
        fig, ax = plt.subplots(figsize=(10, 5))
        try:
            ax.bar([p[0] for p in points], [p[1] for p in points])
            ax.set_title(title, fontsize=14, fontweight="bold")
            plt.setp(ax.get_xticklabels(), rotation=45, ha="right")
            fig.tight_layout()
            fig.savefig(out_path, dpi=150)
        finally:
            plt.close(fig)

        logger.info("Chart saved to %s", out_path)
        return RenderedArtifact(path=str(out_path), size_bytes=out_path.stat().st_size)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExportRegistry:
    """Maps export formats to renderers."""

    def __init__(self):
        self._renderers: dict[str, ExportRenderer] = {}

    def register(self, fmt: str, renderer: ExportRenderer) -> "ExportRegistry":
        self._renderers[fmt] = renderer
        return self

    def supports(self, fmt: str) -> bool:
        return fmt in self._renderers

    async def render(
        self, fmt: str, snapshot: ReportSnapshot, visualizations: list[dict[str, Any]]
    ) -> RenderedArtifact:
        renderer = self._renderers.get(fmt)
        if renderer is None:
            raise ExportError(f"No export renderer registered for format '{fmt}'")
        return await renderer.render(fmt, snapshot, visualizations)


def default_exporters(reports_dir: str | Path = "reports") -> ExportRegistry:
    registry = ExportRegistry()
    files = FileExportRenderer(reports_dir)
    for fmt in files.formats:
        registry.register(fmt, files)
    registry.register("png", ChartExportRenderer(reports_dir))
    return registry
