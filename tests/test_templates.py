"""
tests/test_templates.py — Unit tests for notification template rendering.
"""

from __future__ import annotations

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.core.errors import ConfigurationError
from src.notifications.templates import (
    DEFAULT_REPORT_TEMPLATE,
    AlertVariables,
    NotificationTemplate,
    load_notification_templates,
    render,
    render_notification,
    stringify,
)


class TestRender:
    def test_substitutes_known_names(self):
        result = render("{{metric_name}} is {{ current_value }}", {"metric_name": "revenue", "current_value": 12})
        assert result.text == "revenue is 12"
        assert result.missing == []

    def test_unknown_names_left_in_place(self):
        result = render("Hello {{name}}, see {{url}} and {{name}}", {})
        assert result.text == "Hello {{name}}, see {{url}} and {{name}}"
        assert result.missing == ["name", "url"]

    def test_each_block(self):
        result = render("{{#each items}}- {{this}}\n{{/each}}", {"items": ["a", "b"]})
        assert result.text == "- a\n- b\n"

    def test_each_block_empty_list(self):
        assert render("x{{#each items}}- {{this}}{{/each}}y", {"items": []}).text == "xy"

    def test_each_block_missing_list(self):
        result = render("{{#each items}}{{this}}{{/each}}", {})
        assert result.missing == ["items"]

    def test_never_raises_on_odd_input(self):
        result = render("{{ }} {{#each}} {{/each}} {{", {"x": 1})
        assert result.text == "{{ }} {{#each}} {{/each}} {{"

    def test_stringify(self):
        assert stringify(None) == ""
        assert stringify(True) == "yes"
        assert stringify(3.14159) == "3.14"
        assert stringify(7) == "7"
        assert stringify(["a", 1.5]) == "a, 1.50"
        assert stringify(datetime(2024, 7, 1, tzinfo=timezone.utc)) == "2024-07-01T00:00:00+00:00"


class TestRenderNotification:
    def _template(self, **kwargs) -> NotificationTemplate:
        defaults = dict(
            template_id="t",
            channel="email",
            subject_template="Hi {{recipient_name}}",
            body_template="{{company_name}}: {{metric_name}} for {{recipient_role}}",
        )
        defaults.update(kwargs)
        return NotificationTemplate(**defaults)

    def test_personalization_flags(self):
        template = self._template(use_recipient_name=True, use_recipient_role=True, use_company_branding=True)
        message = render_notification(template, {"metric_name": "revenue"},
                                      recipient_name="Ana", recipient_role="CFO", company_name="Acme")
        assert message.subject == "Hi Ana"
        assert message.body == "Acme: revenue for CFO"
        assert message.missing == []

    def test_personalization_off_leaves_placeholders(self):
        message = render_notification(self._template(), {"metric_name": "revenue"}, recipient_name="Ana")
        assert message.subject == "Hi {{recipient_name}}"
        assert message.missing == ["recipient_name", "company_name", "recipient_role"]

    def test_declared_but_unsupplied_variable_is_missing(self, caplog):
        template = self._template(body_template="{{metric_name}}", subject_template="",
                                  variables=["metric_name", "dashboard_url"])
        message = render_notification(template, {"metric_name": "revenue"})
        assert message.body == "revenue"
        assert message.missing == ["dashboard_url"]
        assert "dashboard_url" in caplog.text

    def test_default_report_template(self):
        message = render_notification(DEFAULT_REPORT_TEMPLATE, {
            "report_name": "Weekly",
            "period_start": "2024-07-15",
            "period_end": "2024-07-22",
            "metrics_table": "Revenue: $10.00",
            "highlights": ["Revenue up 5.0%"],
            "attention_areas": [],
            "artifacts": ["reports/a.csv"],
        })
        assert message.subject == "Weekly (2024-07-15 - 2024-07-22)"
        assert "  - Revenue up 5.0%" in message.body
        assert message.missing == []


class TestAlertVariables:
    def test_optional_values_only_when_known(self):
        variables = AlertVariables(
            metric_name="m",
            current_value=1.0,
            threshold_value=2.0,
            percentage_change=None,
            timestamp=datetime(2024, 7, 1, tzinfo=timezone.utc),
            extras={"team": "ops", "metric_name": "ignored"},
        ).as_dict()
        assert variables["metric_name"] == "m"
        assert variables["team"] == "ops"
        assert "previous_value" not in variables
        assert "dashboard_url" not in variables
        assert variables["percentage_change"] is None


class TestLoadNotificationTemplates:
    def test_example_config_loads(self):
        example = Path(__file__).parent.parent / "configs" / "notification_templates.example.json"
        templates = load_notification_templates(str(example))
        assert "critical_sms" in templates
        assert templates["critical_revenue_drop"].use_company_branding is True
        assert templates["weekly_executive_report"].kind == "report"

    def test_invalid_kind_skipped(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            json.dump([
                {"template_id": "a", "channel": "sms", "body_template": "x"},
                {"template_id": "b", "channel": "sms", "body_template": "x", "kind": "poem"},
            ], f)
        try:
            templates = load_notification_templates(f.name)
        finally:
            Path(f.name).unlink()
        assert list(templates) == ["a"]

    def test_malformed_json_raises(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            f.write("[")
        try:
            with pytest.raises(ConfigurationError):
                load_notification_templates(f.name)
        finally:
            Path(f.name).unlink()
