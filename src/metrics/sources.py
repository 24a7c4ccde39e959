"""
Metric Data Sources (src/metrics/sources.py)

A metric source supplies one aggregated value for a metric over a period:

    await source.get_value("total_revenue", start, end, aggregation="sum")

Call sites never assume success: any exception (MetricUnavailableError in
particular) is treated as "value unavailable".

  - SqlMetricSource        → one read-only SQL query per metric (SQLAlchemy)
  - CloudWatchMetricSource → AWS CloudWatch get_metric_statistics (boto3)

Both are configured from a JSON metric map (configs/metric_queries.json).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import boto3  # type: ignore
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore
from sqlalchemy import create_engine, text  # type: ignore
from sqlalchemy.exc import SQLAlchemyError  # type: ignore

from src.core.errors import ConfigurationError, MetricUnavailableError

logger = logging.getLogger(__name__)

_SQL_AGGREGATES = {"sum": "SUM", "avg": "AVG", "count": "COUNT", "max": "MAX", "min": "MIN"}
_CLOUDWATCH_STATISTICS = {
    "sum": "Sum",
    "avg": "Average",
    "count": "SampleCount",
    "max": "Maximum",
    "min": "Minimum",
}


class MetricSource:
    """Base class for metric sources.

    Subclasses implement the blocking ``_get_value``; ``get_value`` runs it
    in a worker thread.
    """

    async def get_value(
        self,
        metric_name: str,
        start: datetime,
        end: datetime,
        aggregation: str = "sum",
    ) -> float | str:
        return await asyncio.to_thread(self._get_value, metric_name, start, end, aggregation)

    def _get_value(self, metric_name: str, start: datetime, end: datetime, aggregation: str) -> float | str:
        raise NotImplementedError


def load_metric_map(path: str = "configs/metric_queries.json") -> dict[str, Any]:
    """Load the metric name → source-specific definition map."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Metric map not found: '{path}'. Create one from configs/metric_queries.example.json."
        )
    try:
        raw = json.loads(config_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Malformed JSON in '{path}': {exc}") from exc
    metrics = raw.get("metrics", raw)
    logger.info("Loaded %d metric definition(s) from '%s'.", len(metrics), path)
    return metrics


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

class SqlMetricSource(MetricSource):
    """Reads metric values with read-only SQL queries.

    Each metric maps to ``{"sql": "...", "value_key": "value"}`` (or just the
    SQL string). Queries are bound with ``:start`` and ``:end``; the token
    ``{agg}`` is replaced by the SQL aggregate for the requested aggregation.

    Args:
        queries: metric name → query definition.
        database_url: SQLAlchemy URL. Reads ``DATABASE_URL`` env var if not provided.
    """

    def __init__(self, queries: dict[str, Any], database_url: str | None = None):
        self.queries = queries
        self.database_url = database_url or os.getenv("DATABASE_URL", "sqlite:///dev.db")
        self._engine = None

    def _get_engine(self):
        if self._engine is None:
            self._engine = create_engine(self.database_url)
        return self._engine

    def _get_value(self, metric_name: str, start: datetime, end: datetime, aggregation: str) -> float | str:
        definition = self.queries.get(metric_name)
        if definition is None:
            raise MetricUnavailableError(f"No SQL query configured for metric '{metric_name}'")
        if isinstance(definition, str):
            definition = {"sql": definition}

        sql = definition["sql"].replace("{agg}", _SQL_AGGREGATES.get(aggregation, "SUM"))
        sql_upper = sql.strip().upper()
        if not sql_upper.startswith("SELECT") and not sql_upper.startswith("WITH"):
            raise ConfigurationError(
                f"Query for metric '{metric_name}' must be a SELECT (or WITH ... SELECT)."
            )

        value_key = definition.get("value_key", "value")
        try:
            with self._get_engine().connect() as conn:
                row = conn.execute(text(sql), {"start": start, "end": end}).mappings().first()
        except SQLAlchemyError as exc:
            raise MetricUnavailableError(f"Query for metric '{metric_name}' failed: {exc}") from exc

        if row is None or row.get(value_key) is None:
            raise MetricUnavailableError(f"Query for metric '{metric_name}' returned no value")
        value = row[value_key]
        try:
            return float(value)
        except (TypeError, ValueError):
            return str(value)


# ---------------------------------------------------------------------------
# CloudWatch
# ---------------------------------------------------------------------------

class CloudWatchMetricSource(MetricSource):
    """Reads metric values from AWS CloudWatch.

    Each metric maps to ``{"namespace": "...", "metric_name": "...",
    "dimensions": {"Name": "Value"}}``. Datapoints across the period are
    folded into one value using the requested aggregation.
    """

    def __init__(self, metrics: dict[str, Any], client=None):
        self.metrics = metrics
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("cloudwatch")
        return self._client

    def _get_value(self, metric_name: str, start: datetime, end: datetime, aggregation: str) -> float | str:
        definition = self.metrics.get(metric_name)
        if definition is None:
            raise MetricUnavailableError(f"No CloudWatch mapping configured for metric '{metric_name}'")

        statistic = _CLOUDWATCH_STATISTICS.get(aggregation, "Average")
        seconds = max(60, int((end - start).total_seconds()))
        period = ((seconds + 59) // 60) * 60

        kwargs: dict[str, Any] = {
            "Namespace": definition["namespace"],
            "MetricName": definition.get("metric_name", metric_name),
            "StartTime": start,
            "EndTime": end,
            "Period": period,
            "Statistics": [statistic],
        }
        dimensions = definition.get("dimensions") or {}
        if dimensions:
            kwargs["Dimensions"] = [{"Name": k, "Value": v} for k, v in dimensions.items()]

        try:
            resp = self._get_client().get_metric_statistics(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise MetricUnavailableError(f"CloudWatch fetch for '{metric_name}' failed: {exc}") from exc

        values = [dp[statistic] for dp in resp.get("Datapoints", []) if statistic in dp]
        if not values:
            raise MetricUnavailableError(f"No CloudWatch datapoints for '{metric_name}'")

        if aggregation in ("sum", "count"):
            return float(sum(values))
        if aggregation == "max":
            return float(max(values))
        if aggregation == "min":
            return float(min(values))
        return float(sum(values) / len(values))


def build_metric_source(kind: str, metric_map_path: str) -> MetricSource:
    """Build the configured metric source (``sql`` or ``cloudwatch``)."""
    metric_map = load_metric_map(metric_map_path)
    if kind == "sql":
        return SqlMetricSource(metric_map)
    if kind == "cloudwatch":
        return CloudWatchMetricSource(metric_map)
    raise ConfigurationError(f"Unknown metric source '{kind}' (expected 'sql' or 'cloudwatch')")
