"""
Notification Templates (src/notifications/templates.py)

  - NotificationTemplate + load_notification_templates(): JSON-configured
    subject/body templates per channel.
  - render(): substitutes {{name}} placeholders. Unknown names are left in
    place and reported back as missing; rendering never raises.
  - render_notification(): applies personalization (recipient name/role,
    company branding) and checks the template's declared variables.
  - AlertVariables: the fixed variable set every alert notification gets.

Supported syntax:
    {{metric_name}}                         → value substitution
    {{#each highlights}}- {{this}}{{/each}} → one copy of the block per list item
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from src.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_EACH_BLOCK = re.compile(
    r"\{\{#each\s+([A-Za-z_][A-Za-z0-9_]*)\s*\}\}(.*?)\{\{/each\}\}", re.DOTALL
)
_THIS = re.compile(r"\{\{\s*this\s*\}\}")

TEMPLATE_KINDS = {"alert", "report", "milestone", "reminder"}


# ---------------------------------------------------------------------------
# NotificationTemplate
# ---------------------------------------------------------------------------

@dataclass
class NotificationTemplate:
    """Subject/body templates for one channel type."""
    template_id: str
    channel: str                         # email | sms | push | slack | webhook
    body_template: str
    subject_template: str = ""
    name: str = ""
    kind: str = "alert"                  # alert | report | milestone | reminder
    variables: list[str] = field(default_factory=list)
    priority_color: str = ""
    icon: str = ""
    sound: str | None = None
    use_recipient_name: bool = False
    use_recipient_role: bool = False
    use_company_branding: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationTemplate":
        kind = data.get("kind", data.get("type", "alert"))
        if kind not in TEMPLATE_KINDS:
            raise ConfigurationError(f"invalid template kind '{kind}'")
        styling = data.get("styling", {})
        personalization = data.get("personalization", {})
        return cls(
            template_id=data["template_id"],
            name=data.get("name", data["template_id"]),
            kind=kind,
            channel=data["channel"],
            subject_template=data.get("subject_template", ""),
            body_template=data["body_template"],
            variables=list(data.get("variables", [])),
            priority_color=styling.get("priority_color", ""),
            icon=styling.get("icon", ""),
            sound=styling.get("sound"),
            use_recipient_name=bool(personalization.get("use_recipient_name", False)),
            use_recipient_role=bool(personalization.get("use_recipient_role", False)),
            use_company_branding=bool(personalization.get("use_company_branding", False)),
        )


DEFAULT_ALERT_TEMPLATE = NotificationTemplate(
    template_id="_default_alert",
    name="Default alert",
    kind="alert",
    channel="any",
    subject_template="[{{severity}}] {{rule_name}}",
    body_template=(
        "Alert: {{rule_name}}\n"
        "Metric: {{metric_name}}\n"
        "Current value: {{current_value}}\n"
        "Threshold: {{threshold_value}}\n"
        "Change: {{percentage_change}}%\n"
        "Time: {{timestamp}}"
    ),
    variables=["rule_name", "metric_name", "current_value", "threshold_value", "timestamp"],
)

DEFAULT_REPORT_TEMPLATE = NotificationTemplate(
    template_id="_default_report",
    name="Default report summary",
    kind="report",
    channel="any",
    subject_template="{{report_name}} ({{period_start}} - {{period_end}})",
    body_template=(
        "{{report_name}}\n"
        "Period: {{period_start}} - {{period_end}}\n\n"
        "{{metrics_table}}\n\n"
        "Highlights:\n{{#each highlights}}  - {{this}}\n{{/each}}\n"
        "Attention areas:\n{{#each attention_areas}}  - {{this}}\n{{/each}}\n"
        "Artifacts: {{artifacts}}"
    ),
    variables=["report_name", "period_start", "period_end", "metrics_table"],
)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

@dataclass
class RenderResult:
    text: str
    missing: list[str] = field(default_factory=list)


def stringify(value: Any) -> str:
    """Turn a variable value into template text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(stringify(v) for v in value)
    return str(value)


def render(template_text: str, variables: Mapping[str, Any]) -> RenderResult:
    """Replace every {{name}} with ``variables[name]``.

    Placeholders with no matching variable are left untouched and listed in
    ``RenderResult.missing`` (in order of first appearance).
    """
    missing: list[str] = []

    def _note_missing(name: str) -> None:
        if name not in missing:
            missing.append(name)

    def _expand_each(match: re.Match) -> str:
        name, block = match.group(1), match.group(2)
        if name not in variables:
            _note_missing(name)
            return match.group(0)
        items = variables[name]
        if not isinstance(items, (list, tuple)):
            items = [items]
        return "".join(_THIS.sub(lambda _m, item=item: stringify(item), block) for item in items)

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables:
            _note_missing(name)
            return match.group(0)
        return stringify(variables[name])

    text = _EACH_BLOCK.sub(_expand_each, template_text)
    text = _PLACEHOLDER.sub(_substitute, text)
    return RenderResult(text=text, missing=missing)


# ---------------------------------------------------------------------------
# Personalized messages
# ---------------------------------------------------------------------------

@dataclass
class RenderedMessage:
    subject: str
    body: str
    missing: list[str] = field(default_factory=list)


@dataclass
class AlertVariables:
    """Variables every alert notification is rendered with."""
    metric_name: str
    current_value: Any
    threshold_value: float
    percentage_change: float | None
    timestamp: datetime
    rule_name: str = ""
    severity: str = ""
    previous_value: Any = None
    threshold_value_2: float | None = None
    excess_percentage: float | None = None
    dashboard_url: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data = dict(self.extras)
        data.update({
            "metric_name": self.metric_name,
            "current_value": self.current_value,
            "threshold_value": self.threshold_value,
            "percentage_change": self.percentage_change,
            "timestamp": self.timestamp,
            "rule_name": self.rule_name,
            "severity": self.severity,
        })
        # Optional values are only offered when known, so templates that
        # reference them surface as missing rather than rendering blanks.
        optional = {
            "previous_value": self.previous_value,
            "threshold_value_2": self.threshold_value_2,
            "excess_percentage": self.excess_percentage,
            "dashboard_url": self.dashboard_url or None,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


def render_notification(
    template: NotificationTemplate,
    variables: Mapping[str, Any],
    recipient_name: str = "",
    recipient_role: str = "",
    company_name: str = "",
) -> RenderedMessage:
    """Render subject and body with personalization applied.

    Missing variables are the union of unresolved placeholders and declared
    template variables that were not supplied.
    """
    values = dict(variables)
    if template.use_recipient_name:
        values.setdefault("recipient_name", recipient_name)
    if template.use_recipient_role:
        values.setdefault("recipient_role", recipient_role)
    if template.use_company_branding:
        values.setdefault("company_name", company_name)

    subject = render(template.subject_template, values)
    body = render(template.body_template, values)

    missing: list[str] = []
    for name in subject.missing + body.missing + template.variables:
        if name not in values and name not in missing:
            missing.append(name)

    if missing:
        logger.warning(
            "Template '%s' rendered with missing variable(s): %s",
            template.template_id,
            ", ".join(missing),
        )
    return RenderedMessage(subject=subject.text, body=body.text, missing=missing)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_notification_templates(
    path: str = "configs/notification_templates.json",
) -> dict[str, NotificationTemplate]:
    """Load notification templates keyed by template_id.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If the file is not valid JSON.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Notification templates config not found: '{path}'. "
            "Create one from configs/notification_templates.example.json."
        )

    try:
        raw = json.loads(config_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Malformed JSON in '{path}': {exc}") from exc
    entries: list[dict] = raw if isinstance(raw, list) else raw.get("templates", [])

    templates: dict[str, NotificationTemplate] = {}
    for i, entry in enumerate(entries):
        try:
            template = NotificationTemplate.from_dict(entry)
            templates[template.template_id] = template
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed notification template at index %d: %s", i, exc)

    logger.info("Loaded %d notification template(s) from '%s'.", len(templates), path)
    return templates
