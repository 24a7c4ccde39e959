"""
Error taxonomy (src/core/errors.py)

  ConfigurationError     → a template/rule is malformed; skip it for this cycle
  ScheduleError          → a schedule cannot be computed (bad time, tz, missing day)
  MetricUnavailableError → the metric data source could not supply a value
  ReportStateError       → an illegal GeneratedReport state transition
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when a template, rule or notification template is malformed."""


class ScheduleError(ConfigurationError):
    """Raised when a schedule definition cannot produce a next run."""


class MetricUnavailableError(RuntimeError):
    """Raised by a metric source when a value cannot be produced."""


class ReportStateError(RuntimeError):
    """Raised on a second terminal transition of a GeneratedReport."""
