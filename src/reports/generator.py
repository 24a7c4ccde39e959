"""
Report Generator (src/reports/generator.py)

Materializes one GeneratedReport for a template's due period:

  1. create the record (generating) for the period from period_for()
  2. fetch every metric (and its comparison window) concurrently
  3. render every export format concurrently
  4. deliver the summary to each recipient
  5. finish the record and advance the template's schedule

A metric that cannot be fetched is recorded as unavailable and the report
completes with partial_data set. If every requested export format fails the
report is failed. Delivery failures are tracked per recipient and never
change the report's own status.

Generation is idempotent per (template_id, period_start, period_end): a
completed (or still running) attempt is returned as is, a failed or
cancelled one is retried as a new record. Give the generator a durable
ReportStore and that holds across restarts too.

GENERATION_TIMEOUT_SECONDS bounds steps 2-3 only; once delivery starts the
report can no longer fail on the overall timeout, and each delivery has
its own DISPATCH_TIMEOUT_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Iterable, NamedTuple

from src.core.errors import ConfigurationError
from src.core.settings import EngineSettings
from src.core.stats import TickStats
from src.metrics.sources import MetricSource
from src.notifications.templates import (
    DEFAULT_REPORT_TEMPLATE,
    NotificationTemplate,
    render_notification,
)
from src.notifications.transports import TransportRegistry
from src.reports.exporters import ExportRegistry, RenderedArtifact
from src.reports.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    GENERATING,
    DeliveryOutcome,
    GeneratedReport,
    MetricValue,
    ReportSnapshot,
    ReportStore,
)
from src.reports.report_config import MetricSpec, Recipient, ReportTemplate
from src.scheduling.schedule import (
    comparison_window,
    next_run_for,
    on_demand_period,
    period_for,
)

logger = logging.getLogger(__name__)

_COMPARISON_LABELS = {
    "previous_period": "previous period",
    "same_period_last_year": "same period last year",
}


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------

def format_metric_value(value: Any, fmt: str) -> str:
    """Format a metric value for display: $1,234.50 | 12.50% | 1,234 | 12.35."""
    if value is None:
        return "n/a"
    if fmt == "text" or not isinstance(value, (int, float)):
        return str(value)
    if fmt == "currency":
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value):,.2f}"
    if fmt == "percentage":
        return f"{value:.2f}%"
    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.2f}"


def compute_delta(current: Any, previous: Any) -> tuple[float | None, float | None]:
    """Return ``(delta_absolute, delta_percentage)``; percentage is None for a zero base."""
    if not isinstance(current, (int, float)) or not isinstance(previous, (int, float)):
        return None, None
    delta = float(current) - float(previous)
    if previous == 0:
        return delta, None
    return delta, delta / abs(float(previous)) * 100


def metrics_table(metrics: Iterable[MetricValue]) -> str:
    lines = []
    for m in metrics:
        line = f"{m.display_name}: {m.formatted}"
        if m.delta_percentage is not None:
            line += f" ({m.delta_percentage:+.2f}% vs {_COMPARISON_LABELS.get(m.comparison_period, m.comparison_period)})"
        if m.error:
            line += " (unavailable)"
        lines.append(line)
    return "\n".join(lines)


class _Prepared(NamedTuple):
    metrics: list[MetricValue]
    summary: dict[str, Any]
    artifacts: dict[str, RenderedArtifact]
    format_errors: dict[str, str]


# ---------------------------------------------------------------------------
# ReportGenerator
# ---------------------------------------------------------------------------

class ReportGenerator:
    """Generates reports for templates.

    Args:
        metric_source: Where metric values come from.
        exporters: Format → export renderer registry.
        transports: Channel type → transport registry, for recipient delivery.
        store: Append-only report history. A fresh one is created if omitted.
        settings: Timeouts, dashboard URL and branding.
        notification_templates: template_id → NotificationTemplate for summaries.
    """

    def __init__(
        self,
        metric_source: MetricSource,
        exporters: ExportRegistry,
        transports: TransportRegistry,
        store: ReportStore | None = None,
        settings: EngineSettings | None = None,
        notification_templates: dict[str, NotificationTemplate] | None = None,
    ):
        self.metric_source = metric_source
        self.exporters = exporters
        self.transports = transports
        self.store = store if store is not None else ReportStore()
        self.settings = settings or EngineSettings()
        self.notification_templates = notification_templates or {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, template_id: str) -> asyncio.Lock:
        lock = self._locks.get(template_id)
        if lock is None:
            lock = self._locks[template_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        template: ReportTemplate,
        now: datetime,
        stats: TickStats | None = None,
        on_demand: bool = False,
    ) -> GeneratedReport:
        """Generate (or return the existing) report for the template's due period.

        With ``on_demand`` the period is [last_generated, now) instead of the
        latest scheduled slot, and the template's schedule is not advanced.
        """
        async with self._lock_for(template.template_id):
            if on_demand:
                period_start, period_end = on_demand_period(template, now)
            else:
                period_start, period_end = period_for(template, now)

            prior = self.store.latest_for_period(template.template_id, period_start, period_end)
            if prior is not None and prior.status in (COMPLETED, GENERATING):
                logger.info(
                    "Report for '%s' period %s - %s already %s (%s); skipping.",
                    template.template_id,
                    period_start.isoformat(),
                    period_end.isoformat(),
                    prior.status,
                    prior.report_id,
                )
                if prior.status == COMPLETED and not on_demand and _is_due(template, now):
                    # Completed before a restart that lost the schedule state.
                    template.last_generated = prior.generated_at
                    template.next_generation = next_run_for(template, now)
                return prior
            if prior is not None:
                logger.info(
                    "Retrying '%s' period %s - %s after a %s attempt (%s).",
                    template.template_id,
                    period_start.isoformat(),
                    period_end.isoformat(),
                    prior.status,
                    prior.report_id,
                )

            report = GeneratedReport.start(template.template_id, now, period_start, period_end)
            self.store.add(report)
            started = time.monotonic()

            try:
                prepared = await asyncio.wait_for(
                    self._prepare(template, report, started),
                    timeout=self.settings.generation_timeout_seconds,
                )
                if prepared is not None:
                    await self._complete(template, report, prepared, stats, started)
            except asyncio.TimeoutError:
                self._fail(
                    report,
                    f"Generation timed out after {self.settings.generation_timeout_seconds:g}s",
                    started,
                )
            except asyncio.CancelledError:
                if not report.is_terminal:
                    report.finish(
                        CANCELLED,
                        error_message="Generation cancelled",
                        generation_time_ms=_elapsed_ms(started),
                    )
                    self.store.record(report)
                    if stats is not None:
                        stats.generation_failures += 1
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Report generation for '%s' failed: %s", template.template_id, exc, exc_info=True
                )
                self._fail(report, str(exc) or exc.__class__.__name__, started)

            self.store.record(report)
            if report.status == COMPLETED:
                # Schedule bookkeeping happens once, under the template lock.
                template.last_generated = now
                if not on_demand:
                    template.next_generation = next_run_for(template, now)
                if stats is not None:
                    stats.templates_generated += 1
                logger.info(
                    "Report '%s' completed in %dms (%d artifact(s)). Next generation: %s.",
                    report.report_id,
                    report.generation_time_ms,
                    len(report.file_paths),
                    template.next_generation.isoformat() if template.next_generation else "unscheduled",
                )
            elif stats is not None:
                stats.generation_failures += 1
                stats.errors.append(f"{template.template_id}: {report.error_message}")

            return report

    async def generate_on_demand(
        self,
        template_id: str,
        templates: Iterable[ReportTemplate],
        now: datetime,
        stats: TickStats | None = None,
    ) -> GeneratedReport:
        """Generate a report for any template (active or not) right now.

        The report covers [last_generated, now) (or the last day) and does
        not move the template's schedule.

        Raises:
            ConfigurationError: If no template has ``template_id``.
        """
        template = next((t for t in templates if t.template_id == template_id), None)
        if template is None:
            raise ConfigurationError(f"Unknown report template '{template_id}'")
        logger.info("On-demand generation requested for '%s'.", template_id)
        return await self.generate(template, now, stats, on_demand=True)

    # ------------------------------------------------------------------
    # Generation steps
    # ------------------------------------------------------------------

    async def _prepare(
        self, template: ReportTemplate, report: GeneratedReport, started: float
    ) -> _Prepared | None:
        """Steps 2-3: metrics, summary and exports. Returns None if the report failed."""
        metrics = await self._collect_metrics(template, report.period_start, report.period_end)
        partial = any(not m.available for m in metrics)
        summary = self._summarize(template, report, metrics, partial)

        snapshot = ReportSnapshot(
            report_id=report.report_id,
            template_id=template.template_id,
            title=template.name,
            period_start=report.period_start,
            period_end=report.period_end,
            metrics=metrics,
            partial_data=partial,
        )
        artifacts, format_errors = await self._render_exports(template, snapshot)

        if template.export_formats and not artifacts:
            errors = "; ".join(f"{fmt}: {err}" for fmt, err in format_errors.items())
            report.finish(
                FAILED,
                format_errors=format_errors,
                metrics_summary=summary,
                error_message=f"All export formats failed ({errors})",
                generation_time_ms=_elapsed_ms(started),
            )
            return None
        return _Prepared(metrics, summary, artifacts, format_errors)

    async def _complete(
        self,
        template: ReportTemplate,
        report: GeneratedReport,
        prepared: _Prepared,
        stats: TickStats | None,
        started: float,
    ) -> None:
        """Steps 4-5: deliver, then finish. Each delivery carries its own timeout."""
        file_paths = {fmt: a.path for fmt, a in prepared.artifacts.items()}
        summary = prepared.summary
        summary["artifacts"] = list(file_paths.values())
        deliveries = await self._deliver(template, report, prepared.metrics, summary, stats)
        notified: list[str] = []
        for outcome in deliveries:
            if outcome.delivered and outcome.target not in notified:
                notified.append(outcome.target)

        report.finish(
            COMPLETED,
            file_paths=file_paths,
            format_errors=prepared.format_errors,
            metrics_summary=summary,
            recipients_notified=notified,
            deliveries=deliveries,
            file_size_bytes=sum(a.size_bytes for a in prepared.artifacts.values()),
            generation_time_ms=_elapsed_ms(started),
        )

    def _fail(self, report: GeneratedReport, message: str, started: float) -> None:
        if report.is_terminal:
            return
        report.finish(FAILED, error_message=message, generation_time_ms=_elapsed_ms(started))

    # -- metrics ---------------------------------------------------------

    async def _collect_metrics(
        self, template: ReportTemplate, start: datetime, end: datetime
    ) -> list[MetricValue]:
        return list(
            await asyncio.gather(*(self._fetch_metric(spec, start, end) for spec in template.metrics))
        )

    async def _fetch_value(
        self, metric_name: str, aggregation: str, start: datetime, end: datetime
    ) -> tuple[Any, str | None]:
        timeout = self.settings.metric_timeout_seconds
        try:
            value = await asyncio.wait_for(
                self.metric_source.get_value(metric_name, start, end, aggregation),
                timeout=timeout,
            )
            return value, None
        except asyncio.TimeoutError:
            error = f"timed out after {timeout:g}s"
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or exc.__class__.__name__
        logger.warning("Metric '%s' unavailable for %s - %s: %s",
                       metric_name, start.isoformat(), end.isoformat(), error)
        return None, error

    async def _fetch_metric(self, spec: MetricSpec, start: datetime, end: datetime) -> MetricValue:
        value, error = await self._fetch_value(spec.metric_name, spec.aggregation, start, end)
        mv = MetricValue(
            metric_name=spec.metric_name,
            display_name=spec.display_name or spec.metric_name,
            format=spec.format,
            aggregation=spec.aggregation,
            value=value,
            formatted=format_metric_value(value, spec.format),
            comparison_period=spec.comparison_period,
            error=error,
        )
        if error is not None:
            mv.formatted = "n/a"
            return mv
        if value is None:
            mv.error = "no value"
            return mv

        window = comparison_window(spec.comparison_period, start, end)
        if window is not None:
            previous, _ = await self._fetch_value(spec.metric_name, spec.aggregation, *window)
            mv.comparison_value = previous
            mv.delta_absolute, mv.delta_percentage = compute_delta(value, previous)
        return mv

    def _summarize(
        self,
        template: ReportTemplate,
        report: GeneratedReport,
        metrics: list[MetricValue],
        partial: bool,
    ) -> dict[str, Any]:
        highlights: list[str] = []
        attention: list[str] = []
        for m in metrics:
            label = _COMPARISON_LABELS.get(m.comparison_period, m.comparison_period)
            if m.error:
                attention.append(f"{m.display_name} unavailable ({m.error})")
            elif m.delta_percentage is not None and m.delta_percentage > 0:
                highlights.append(f"{m.display_name} up {m.delta_percentage:.1f}% vs {label}")
            elif m.delta_percentage is not None and m.delta_percentage < 0:
                attention.append(f"{m.display_name} down {abs(m.delta_percentage):.1f}% vs {label}")

        return {
            "title": template.name,
            "report_type": template.report_type,
            "period_start": report.period_start.isoformat(),
            "period_end": report.period_end.isoformat(),
            "partial_data": partial,
            "metrics": {
                m.metric_name: {
                    "display_name": m.display_name,
                    "value": m.value,
                    "formatted": m.formatted,
                    "comparison_period": m.comparison_period,
                    "comparison_value": m.comparison_value,
                    "delta_absolute": m.delta_absolute,
                    "delta_percentage": m.delta_percentage,
                    "error": m.error,
                }
                for m in metrics
            },
            "highlights": highlights,
            "attention_areas": attention,
        }

    # -- exports ---------------------------------------------------------

    async def _render_exports(
        self, template: ReportTemplate, snapshot: ReportSnapshot
    ) -> tuple[dict[str, RenderedArtifact], dict[str, str]]:
        formats = list(template.export_formats)
        results = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self.exporters.render(fmt, snapshot, template.visualizations),
                    timeout=self.settings.export_timeout_seconds,
                )
                for fmt in formats
            ),
            return_exceptions=True,
        )

        artifacts: dict[str, RenderedArtifact] = {}
        errors: dict[str, str] = {}
        for fmt, result in zip(formats, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, asyncio.TimeoutError):
                errors[fmt] = f"timed out after {self.settings.export_timeout_seconds:g}s"
            elif isinstance(result, BaseException):
                errors[fmt] = str(result) or result.__class__.__name__
            else:
                artifacts[fmt] = result
                continue
            logger.warning("Export '%s' for '%s' failed: %s", fmt, template.template_id, errors[fmt])
        return artifacts, errors

    # -- delivery --------------------------------------------------------

    def _summary_template(self, template: ReportTemplate) -> NotificationTemplate:
        template_id = template.notification_template_id
        if not template_id:
            return DEFAULT_REPORT_TEMPLATE
        found = self.notification_templates.get(template_id)
        if found is None:
            logger.warning(
                "Report template '%s' references unknown notification template '%s'; "
                "using the default summary.",
                template.template_id,
                template_id,
            )
            return DEFAULT_REPORT_TEMPLATE
        return found

    async def _deliver(
        self,
        template: ReportTemplate,
        report: GeneratedReport,
        metrics: list[MetricValue],
        summary: dict[str, Any],
        stats: TickStats | None,
    ) -> list[DeliveryOutcome]:
        notification = self._summary_template(template)
        variables: dict[str, Any] = {}
        for m in metrics:
            variables[m.metric_name] = m.formatted
            if m.delta_percentage is not None:
                variables[f"{m.metric_name}_change"] = round(m.delta_percentage, 2)
        variables.update({
            "report_name": template.name,
            "report_type": template.report_type,
            "report_id": report.report_id,
            "period_start": report.period_start,
            "period_end": report.period_end,
            "metrics_table": metrics_table(metrics),
            "highlights": summary["highlights"],
            "attention_areas": summary["attention_areas"],
            "partial_data": summary["partial_data"],
            "artifacts": summary.get("artifacts", []),
        })
        if self.settings.dashboard_url:
            variables["dashboard_url"] = self.settings.dashboard_url

        per_recipient = await asyncio.gather(
            *(self._deliver_to(r, notification, variables, stats) for r in template.recipients)
        )
        return [outcome for outcomes in per_recipient for outcome in outcomes]

    async def _deliver_to(
        self,
        recipient: Recipient,
        notification: NotificationTemplate,
        variables: dict[str, Any],
        stats: TickStats | None,
    ) -> list[DeliveryOutcome]:
        outcomes: list[DeliveryOutcome] = []
        if recipient.wants_dashboard:
            # The store is the dashboard's source; nothing to send.
            outcomes.append(DeliveryOutcome(target=recipient.address, channel="dashboard", delivered=True))

        if recipient.wants_channel:
            message = render_notification(
                notification,
                variables,
                recipient_name=recipient.name,
                recipient_role=recipient.role,
                company_name=self.settings.company_name,
            )
            outcome = DeliveryOutcome(
                target=recipient.address,
                channel=recipient.channel_type,
                delivered=False,
                missing_variables=message.missing,
            )
            try:
                outcome.delivered = await asyncio.wait_for(
                    self.transports.send(
                        recipient.channel_type, recipient.address, message.subject, message.body
                    ),
                    timeout=self.settings.dispatch_timeout_seconds,
                )
                if not outcome.delivered:
                    outcome.error = "transport reported not delivered"
            except asyncio.TimeoutError:
                outcome.error = f"timed out after {self.settings.dispatch_timeout_seconds:g}s"
            except Exception as exc:  # noqa: BLE001
                outcome.error = str(exc) or exc.__class__.__name__
            if outcome.error:
                logger.warning(
                    "Report delivery to '%s' via %s failed: %s",
                    recipient.address,
                    recipient.channel_type,
                    outcome.error,
                )
            if stats is not None:
                stats.record_delivery(outcome.delivered)
            outcomes.append(outcome)
        return outcomes


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _is_due(template: ReportTemplate, now: datetime) -> bool:
    return template.next_generation is None or template.next_generation <= now
