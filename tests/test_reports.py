"""
tests/test_reports.py — Unit tests for report templates, exporters and the report generator.

Metric values come from an in-memory source; artifacts are written to a
pytest tmp_path; notifications go to a dry-run transport.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.core.errors import ConfigurationError, ReportStateError
from src.core.settings import EngineSettings
from src.core.stats import TickStats
from src.metrics.sources import MetricSource
from src.notifications.templates import NotificationTemplate
from src.notifications.transports import DryRunTransport, TransportRegistry
from src.reports.exporters import (
    ChartExportRenderer,
    ExportError,
    ExportRegistry,
    ExportRenderer,
    FileExportRenderer,
    RenderedArtifact,
    default_exporters,
)
from src.reports.generator import ReportGenerator, compute_delta, format_metric_value
from src.reports.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    DeliveryOutcome,
    GeneratedReport,
    MetricValue,
    ReportSnapshot,
    ReportStore,
)
from src.reports.report_config import (
    MetricSpec,
    Recipient,
    ReportTemplate,
    Schedule,
    load_templates,
)

# Monday 2024-07-22 08:05 UTC: just after the weekly Monday 08:00 slot.
NOW = datetime(2024, 7, 22, 8, 5, tzinfo=timezone.utc)
PERIOD = (datetime(2024, 7, 15, 8, 0, tzinfo=timezone.utc), datetime(2024, 7, 22, 8, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Helpers / fakes
# ---------------------------------------------------------------------------

class FakeMetricSource(MetricSource):
    """Current-period values by metric name; comparison windows get ``previous``."""

    def __init__(self, values: dict, previous: dict | None = None):
        self.values = values
        self.previous = previous or {}

    async def get_value(self, metric_name, start, end, aggregation="sum"):
        table = self.values if end == PERIOD[1] else self.previous
        value = table[metric_name]
        if isinstance(value, Exception):
            raise value
        return value


class BrokenRenderer(ExportRenderer):
    async def render(self, fmt, snapshot, visualizations):
        raise RuntimeError(f"{fmt} renderer crashed")


class SlowRenderer(ExportRenderer):
    async def render(self, fmt, snapshot, visualizations):
        await asyncio.sleep(5)
        return RenderedArtifact(path="never", size_bytes=0)


def _make_template(**kwargs) -> ReportTemplate:
    defaults = dict(
        template_id="executive_weekly",
        name="Weekly Executive Report",
        report_type="executive",
        frequency="weekly",
        schedule=Schedule(time="08:00", day_of_week=1, timezone="UTC"),
        recipients=[
            Recipient("ceo@example.com", "CEO", "executive", "both"),
            Recipient("cmo@example.com", "CMO", "marketing", "channel"),
            Recipient("board@example.com", "Board", "board", "dashboard"),
        ],
        metrics=[
            MetricSpec("total_revenue", "Total Revenue", "currency", "sum", "previous_period"),
            MetricSpec("new_bookings", "New Bookings", "number", "count", "previous_period"),
        ],
        export_formats=["csv", "json"],
        created_at=datetime(2024, 7, 1, tzinfo=timezone.utc),
        next_generation=PERIOD[1],
    )
    defaults.update(kwargs)
    return ReportTemplate(**defaults)


def _generator(tmp_path, source=None, exporters=None, transports=None, store=None, **settings_kwargs):
    source = source or FakeMetricSource(
        {"total_revenue": 1250.0, "new_bookings": 40.0},
        {"total_revenue": 1000.0, "new_bookings": 50.0},
    )
    settings = EngineSettings(reports_dir=str(tmp_path), **settings_kwargs)
    return ReportGenerator(
        metric_source=source,
        exporters=exporters or default_exporters(tmp_path),
        transports=transports or TransportRegistry({"email": DryRunTransport()}),
        store=store,
        settings=settings,
    )


# ===========================================================================
# Template config
# ===========================================================================

class TestReportTemplateConfig:
    def test_source_style_recipient(self):
        r = Recipient.from_dict({"email": "cfo@example.com", "name": "CFO", "delivery_method": "email"})
        assert r.address == "cfo@example.com"
        assert r.delivery_mode == "channel"
        assert r.wants_channel and not r.wants_dashboard

    def test_invalid_frequency_raises(self):
        with pytest.raises(ConfigurationError):
            ReportTemplate.from_dict({"template_id": "x", "frequency": "hourly"})

    def test_export_formats_deduplicated(self):
        t = ReportTemplate.from_dict({"template_id": "x", "export_formats": ["csv", "csv", "json"]})
        assert t.export_formats == ["csv", "json"]

    def test_example_config_loads(self):
        example = Path(__file__).parent.parent / "configs" / "report_templates.example.json"
        templates = load_templates(str(example))
        ids = [t.template_id for t in templates]
        assert ids == ["executive_weekly", "financial_monthly", "operational_daily", "customer_adhoc"]
        assert templates[0].schedule.day_of_week == 1


# ===========================================================================
# Report record
# ===========================================================================

class TestGeneratedReport:
    def test_single_terminal_transition(self):
        report = GeneratedReport.start("t", NOW, *PERIOD)
        report.finish(COMPLETED, file_paths={"csv": "a.csv"})
        assert report.file_paths == {"csv": "a.csv"}
        with pytest.raises(ReportStateError):
            report.finish(FAILED)

    def test_non_terminal_status_rejected(self):
        with pytest.raises(ReportStateError):
            GeneratedReport.start("t", NOW, *PERIOD).finish("generating")

    def test_store_latest_for_period(self):
        store = ReportStore()
        first = GeneratedReport.start("t", NOW, *PERIOD)
        second = GeneratedReport.start("t", NOW, *PERIOD)
        store.add(first)
        store.add(second)
        assert store.latest_for_period("t", *PERIOD) is second
        assert store.latest_for_period("other", *PERIOD) is None
        assert len(store) == 2

    def test_durable_store_reloads_terminal_reports(self, tmp_path):
        path = tmp_path / "history" / "reports.jsonl"
        store = ReportStore(path)
        done = GeneratedReport.start("t", NOW, *PERIOD)
        store.add(done)
        running = GeneratedReport.start("t", NOW, *PERIOD)
        store.add(running)
        done.finish(
            COMPLETED,
            file_paths={"csv": "a.csv"},
            recipients_notified=["ceo@example.com"],
            deliveries=[DeliveryOutcome("ceo@example.com", "email", True)],
        )
        store.record(done)
        with pytest.raises(ReportStateError):
            store.record(running)

        reloaded = ReportStore(path)

        assert len(reloaded) == 1
        again = reloaded.latest_for_period("t", *PERIOD)
        assert again.report_id == done.report_id
        assert again.status == COMPLETED
        assert again.period_start == PERIOD[0]
        assert again.deliveries == done.deliveries

    def test_durable_store_skips_malformed_lines(self, tmp_path):
        path = tmp_path / "reports.jsonl"
        report = GeneratedReport.start("t", NOW, *PERIOD)
        report.finish(FAILED, error_message="boom")
        path.write_text("not json\n" + json.dumps(report.as_dict()) + "\n")

        store = ReportStore(path)

        assert [r.error_message for r in store.history()] == ["boom"]


# ===========================================================================
# Formatting
# ===========================================================================

class TestFormatting:
    def test_formats(self):
        assert format_metric_value(1234.5, "currency") == "$1,234.50"
        assert format_metric_value(-5, "currency") == "-$5.00"
        assert format_metric_value(12.5, "percentage") == "12.50%"
        assert format_metric_value(1234.0, "number") == "1,234"
        assert format_metric_value(12.345, "number") == "12.35"
        assert format_metric_value("gold", "text") == "gold"
        assert format_metric_value(None, "number") == "n/a"

    def test_delta(self):
        assert compute_delta(120.0, 100.0) == (20.0, 20.0)
        assert compute_delta(5.0, 0.0) == (5.0, None)
        assert compute_delta("a", 1.0) == (None, None)
        assert compute_delta(1.0, None) == (None, None)


# ===========================================================================
# Exporters
# ===========================================================================

class TestExporters:
    def _snapshot(self) -> ReportSnapshot:
        return ReportSnapshot(
            report_id="report_x",
            template_id="x",
            title="X",
            period_start=PERIOD[0],
            period_end=PERIOD[1],
            metrics=[MetricValue("rev", "Revenue", "currency", "sum", value=10.0, formatted="$10.00")],
        )

    @pytest.mark.asyncio
    async def test_file_formats(self, tmp_path):
        renderer = FileExportRenderer(tmp_path)
        for fmt, ext in (("csv", "csv"), ("json", "json"), ("markdown", "md")):
            artifact = await renderer.render(fmt, self._snapshot(), [])
            assert artifact.path.endswith(f"report_x.{ext}")
            assert artifact.size_bytes == Path(artifact.path).stat().st_size

        payload = json.loads((tmp_path / "report_x.json").read_text())
        assert payload["metrics"][0]["metric_name"] == "rev"
        assert "| Revenue | $10.00 |" in (tmp_path / "report_x.md").read_text()

    @pytest.mark.asyncio
    async def test_png_chart(self, tmp_path):
        artifact = await ChartExportRenderer(tmp_path).render(
            "png", self._snapshot(), [{"chart_type": "bar", "title": "Revenue"}]
        )
        out = tmp_path / "report_x.png"
        assert artifact.path == str(out)
        assert out.exists()
        assert artifact.size_bytes == out.stat().st_size > 0

    @pytest.mark.asyncio
    async def test_png_without_numeric_metrics(self, tmp_path):
        snapshot = self._snapshot()
        snapshot.metrics = [
            MetricValue("tier", "Tier", "text", "last", value="gold", formatted="gold"),
            MetricValue("rev", "Revenue", "currency", "sum", value=None, formatted="n/a", error="db down"),
        ]
        with pytest.raises(ExportError, match="No numeric metrics to chart"):
            await ChartExportRenderer(tmp_path).render("png", snapshot, [])
        assert not (tmp_path / "report_x.png").exists()

    @pytest.mark.asyncio
    async def test_unregistered_format_fails(self, tmp_path):
        with pytest.raises(RuntimeError):
            await ExportRegistry().render("pdf", self._snapshot(), [])


# ===========================================================================
# ReportGenerator
# ===========================================================================

class TestReportGenerator:
    @pytest.mark.asyncio
    async def test_completes_with_metrics_and_artifacts(self, tmp_path):
        gen = _generator(tmp_path)
        template = _make_template()
        stats = TickStats(started_at=NOW)

        report = await gen.generate(template, NOW, stats)

        assert report.status == COMPLETED
        assert (report.period_start, report.period_end) == PERIOD
        assert set(report.file_paths) == {"csv", "json"}
        assert report.file_size_bytes > 0
        revenue = report.metrics_summary["metrics"]["total_revenue"]
        assert revenue["formatted"] == "$1,250.00"
        assert revenue["delta_percentage"] == pytest.approx(25.0)
        assert report.metrics_summary["partial_data"] is False
        assert report.metrics_summary["highlights"] == ["Total Revenue up 25.0% vs previous period"]
        assert report.metrics_summary["attention_areas"] == ["New Bookings down 20.0% vs previous period"]
        assert stats.templates_generated == 1

    @pytest.mark.asyncio
    async def test_bookkeeping_on_completion(self, tmp_path):
        template = _make_template()
        await _generator(tmp_path).generate(template, NOW)
        assert template.last_generated == NOW
        assert template.next_generation == datetime(2024, 7, 29, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_idempotent_after_completion(self, tmp_path):
        gen = _generator(tmp_path)
        template = _make_template()

        first = await gen.generate(template, NOW)
        second = await gen.generate(template, NOW + timedelta(minutes=1))

        assert second is first
        assert len(gen.store) == 1

    @pytest.mark.asyncio
    async def test_failed_attempt_is_retried_as_new_record(self, tmp_path):
        broken = ExportRegistry().register("csv", BrokenRenderer())
        gen = _generator(tmp_path, exporters=broken)
        template = _make_template(export_formats=["csv"])

        first = await gen.generate(template, NOW)
        assert first.status == FAILED
        assert "csv renderer crashed" in first.error_message
        assert template.last_generated is None
        assert template.next_generation == PERIOD[1]

        gen.exporters = default_exporters(tmp_path)
        second = await gen.generate(template, NOW + timedelta(minutes=1))

        assert second is not first
        assert second.status == COMPLETED
        assert first.status == FAILED
        assert len(gen.store) == 2

    @pytest.mark.asyncio
    async def test_one_of_three_formats_failing_still_completes(self, tmp_path):
        exporters = default_exporters(tmp_path).register("pdf", BrokenRenderer())
        gen = _generator(tmp_path, exporters=exporters)
        template = _make_template(export_formats=["csv", "pdf", "json"])

        report = await gen.generate(template, NOW)

        assert report.status == COMPLETED
        assert set(report.file_paths) == {"csv", "json"}
        assert all(Path(p).exists() for p in report.file_paths.values())
        assert "pdf" in report.format_errors

    @pytest.mark.asyncio
    async def test_unregistered_format_is_a_format_failure(self, tmp_path):
        report = await _generator(tmp_path).generate(_make_template(export_formats=["csv", "excel"]), NOW)
        assert report.status == COMPLETED
        assert "excel" in report.format_errors

    @pytest.mark.asyncio
    async def test_export_timeout(self, tmp_path):
        exporters = default_exporters(tmp_path).register("pdf", SlowRenderer())
        gen = _generator(tmp_path, exporters=exporters, export_timeout_seconds=0.05)
        report = await gen.generate(_make_template(export_formats=["pdf", "csv"]), NOW)
        assert report.status == COMPLETED
        assert "timed out" in report.format_errors["pdf"]

    @pytest.mark.asyncio
    async def test_partial_data_when_one_metric_fails(self, tmp_path):
        source = FakeMetricSource(
            {"total_revenue": 1234.5, "new_bookings": RuntimeError("bookings db down")},
            {"total_revenue": 1000.0},
        )
        report = await _generator(tmp_path, source=source).generate(_make_template(), NOW)

        assert report.status == COMPLETED
        assert report.metrics_summary["partial_data"] is True
        bookings = report.metrics_summary["metrics"]["new_bookings"]
        assert bookings["formatted"] == "n/a"
        assert "bookings db down" in bookings["error"]
        assert any("New Bookings unavailable" in a for a in report.metrics_summary["attention_areas"])

    @pytest.mark.asyncio
    async def test_comparison_failure_keeps_current_value(self, tmp_path):
        source = FakeMetricSource(
            {"total_revenue": 1250.0, "new_bookings": 40.0},
            {"total_revenue": RuntimeError("archive offline"), "new_bookings": 50.0},
        )
        report = await _generator(tmp_path, source=source).generate(_make_template(), NOW)
        revenue = report.metrics_summary["metrics"]["total_revenue"]
        assert revenue["value"] == 1250.0
        assert revenue["delta_percentage"] is None
        assert report.metrics_summary["partial_data"] is False

    @pytest.mark.asyncio
    async def test_deliveries_per_recipient(self, tmp_path):
        dry = DryRunTransport()
        gen = _generator(tmp_path, transports=TransportRegistry({"email": dry}))
        stats = TickStats(started_at=NOW)

        report = await gen.generate(_make_template(), NOW, stats)

        channels = sorted((d.target, d.channel) for d in report.deliveries)
        assert channels == [
            ("board@example.com", "dashboard"),
            ("ceo@example.com", "dashboard"),
            ("ceo@example.com", "email"),
            ("cmo@example.com", "email"),
        ]
        assert sorted(t for _, t, _, _ in dry.sent) == ["ceo@example.com", "cmo@example.com"]
        assert sorted(report.recipients_notified) == ["board@example.com", "ceo@example.com", "cmo@example.com"]
        assert stats.deliveries_succeeded == 2

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_fail_report(self, tmp_path):
        gen = _generator(tmp_path, transports=TransportRegistry())
        template = _make_template(recipients=[Recipient("cfo@example.com", delivery_mode="channel")])

        report = await gen.generate(template, NOW)

        assert report.status == COMPLETED
        assert report.deliveries[0].delivered is False
        assert report.recipients_notified == []
        assert template.last_generated == NOW

    @pytest.mark.asyncio
    async def test_summary_uses_configured_notification_template(self, tmp_path):
        dry = DryRunTransport()
        gen = _generator(tmp_path, transports=TransportRegistry({"email": dry}), company_name="Acme")
        gen.notification_templates = {
            "weekly": NotificationTemplate(
                template_id="weekly",
                channel="email",
                kind="report",
                subject_template="{{company_name}} weekly",
                body_template="Hi {{recipient_name}}: {{total_revenue}} ({{total_revenue_change}}%)",
                use_recipient_name=True,
                use_company_branding=True,
            )
        }
        template = _make_template(
            notification_template_id="weekly",
            recipients=[Recipient("ceo@example.com", "Dana", "executive", "channel")],
        )

        await gen.generate(template, NOW)

        _, _, subject, body = dry.sent[0]
        assert subject == "Acme weekly"
        assert body == "Hi Dana: $1,250.00 (25.00%)"

    @pytest.mark.asyncio
    async def test_generation_timeout_fails_report(self, tmp_path):
        exporters = ExportRegistry().register("csv", SlowRenderer())
        gen = _generator(tmp_path, exporters=exporters, generation_timeout_seconds=0.05)
        template = _make_template(export_formats=["csv"])
        stats = TickStats(started_at=NOW)

        report = await gen.generate(template, NOW, stats)

        assert report.status == FAILED
        assert "timed out" in report.error_message
        assert stats.generation_failures == 1
        assert template.last_generated is None

    @pytest.mark.asyncio
    async def test_cancellation_marks_report_cancelled(self, tmp_path):
        exporters = ExportRegistry().register("csv", SlowRenderer())
        gen = _generator(tmp_path, exporters=exporters)
        task = asyncio.create_task(gen.generate(_make_template(export_formats=["csv"]), NOW))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert gen.store.history()[0].status == CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_calls_generate_once(self, tmp_path):
        gen = _generator(tmp_path)
        template = _make_template()
        first, second = await asyncio.gather(gen.generate(template, NOW), gen.generate(template, NOW))
        assert first is second
        assert len(gen.store) == 1

    @pytest.mark.asyncio
    async def test_on_demand_generation(self, tmp_path):
        gen = _generator(tmp_path)
        adhoc = _make_template(template_id="adhoc", frequency="on_demand", is_active=False,
                               next_generation=None, export_formats=["csv"])

        report = await gen.generate_on_demand("adhoc", [adhoc], NOW)

        assert report.status == COMPLETED
        assert report.period_end == NOW
        assert adhoc.last_generated == NOW
        with pytest.raises(ConfigurationError):
            await gen.generate_on_demand("missing", [adhoc], NOW)

    @pytest.mark.asyncio
    async def test_on_demand_after_scheduled_run_covers_new_period(self, tmp_path):
        gen = _generator(tmp_path)
        template = _make_template()
        scheduled = await gen.generate(template, NOW)
        later = NOW + timedelta(days=2)

        report = await gen.generate_on_demand(template.template_id, [template], later)

        assert report is not scheduled
        assert report.report_id != scheduled.report_id
        assert report.status == COMPLETED
        assert (report.period_start, report.period_end) == (NOW, later)
        assert template.last_generated == later
        assert template.next_generation == datetime(2024, 7, 29, 8, 0, tzinfo=timezone.utc)
        assert len(gen.store) == 2

    @pytest.mark.asyncio
    async def test_restarted_generator_does_not_resend_completed_period(self, tmp_path):
        history = tmp_path / "history.jsonl"
        first_sent = DryRunTransport()
        first = _generator(
            tmp_path, transports=TransportRegistry({"email": first_sent}), store=ReportStore(history)
        )
        original = await first.generate(_make_template(), NOW)

        # A new process: fresh generator, fresh template state, same history file.
        second_sent = DryRunTransport()
        second = _generator(
            tmp_path, transports=TransportRegistry({"email": second_sent}), store=ReportStore(history)
        )
        template = _make_template()
        report = await second.generate(template, NOW + timedelta(minutes=5))

        assert report.report_id == original.report_id
        assert report.status == COMPLETED
        assert len(first_sent.sent) == 2
        assert second_sent.sent == []
        assert len(second.store) == 1
        assert template.last_generated == NOW
        assert template.next_generation == datetime(2024, 7, 29, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_slow_delivery_is_not_bounded_by_generation_timeout(self, tmp_path):
        class SlowTransport(DryRunTransport):
            async def send(self, channel_type, target, subject, body):
                await asyncio.sleep(1.0)
                return await super().send(channel_type, target, subject, body)

        slow = SlowTransport()
        gen = _generator(
            tmp_path,
            transports=TransportRegistry({"email": slow}),
            generation_timeout_seconds=0.5,
            dispatch_timeout_seconds=5,
        )
        template = _make_template(recipients=[Recipient("ceo@example.com", delivery_mode="channel")])

        report = await gen.generate(template, NOW)

        assert report.status == COMPLETED
        assert report.recipients_notified == ["ceo@example.com"]
        assert len(slow.sent) == 1
        assert template.last_generated == NOW
