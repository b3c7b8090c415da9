"""Unified metric store writes and read-side precedence.

One row per (user_id, metric_name, measurement_date, source). A repeated write
for the same key replaces the row (last write wins per source). Different
sources for the same metric/date coexist; precedence is resolved when reading,
via priority (lower = more trusted), never by deleting rows.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import psycopg
from psycopg.rows import dict_row
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .metric_catalog import DEFAULT_UNIT, category_for_metric, normalize_source

logger = logging.getLogger(__name__)

# Neutral score until the confidence engine has run for the row.
DEFAULT_CONFIDENCE = 50.0

ObservationKey = tuple[str, str, date, str]


class MetricObservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    metric_name: str
    category: str = Field(default="", validate_default=True)
    value: float
    unit: str = DEFAULT_UNIT
    measurement_date: date
    source: str
    provider: str | None = None
    external_id: str | None = None
    priority: int = Field(default=5, ge=1)
    confidence_score: float = Field(default=DEFAULT_CONFIDENCE, ge=0, le=100)

    @field_validator("user_id", "metric_name")
    @classmethod
    def non_empty(cls, value: str, info: Any) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(f"{info.field_name} must not be empty")
        return cleaned

    @field_validator("source")
    @classmethod
    def lower_source(cls, value: str) -> str:
        cleaned = normalize_source(value)
        if not cleaned:
            raise ValueError("source must not be empty")
        return cleaned

    @field_validator("value")
    @classmethod
    def finite_value(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("value must be finite")
        return value

    @field_validator("category")
    @classmethod
    def default_category(cls, value: str, info: Any) -> str:
        return value.strip() or category_for_metric(info.data.get("metric_name", ""))

    @property
    def key(self) -> ObservationKey:
        return (self.user_id, self.metric_name, self.measurement_date, self.source)


@dataclass(frozen=True)
class ObservationWriteError:
    metric_name: str
    measurement_date: str | None
    source: str | None
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "measurement_date": self.measurement_date,
            "source": self.source,
            "error": self.message,
        }


@dataclass
class BatchWriteResult:
    written: int = 0
    errors: list[ObservationWriteError] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


_UPSERT_SQL = """
    INSERT INTO unified_metrics (
        user_id, metric_name, category, value, unit, measurement_date,
        source, provider, external_id, priority, confidence_score,
        confidence_factors, created_at, updated_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NULL, NOW(), NOW())
    ON CONFLICT (user_id, metric_name, measurement_date, source) DO UPDATE SET
        category = EXCLUDED.category,
        value = EXCLUDED.value,
        unit = EXCLUDED.unit,
        provider = EXCLUDED.provider,
        external_id = EXCLUDED.external_id,
        priority = EXCLUDED.priority,
        confidence_score = EXCLUDED.confidence_score,
        confidence_factors = NULL,
        updated_at = NOW()
"""


async def write_observation(
    conn: psycopg.AsyncConnection[Any], observation: MetricObservation
) -> None:
    """Upsert one observation. Confidence is reset to the neutral default."""
    async with conn.cursor() as cur:
        await cur.execute(
            _UPSERT_SQL,
            (
                observation.user_id,
                observation.metric_name,
                observation.category,
                observation.value,
                observation.unit,
                observation.measurement_date,
                observation.source,
                observation.provider,
                observation.external_id,
                observation.priority,
                DEFAULT_CONFIDENCE,
            ),
        )


def dedupe_observations(
    observations: Iterable[MetricObservation],
) -> list[MetricObservation]:
    """Collapse duplicate keys within one batch, keeping the last occurrence."""
    latest: dict[ObservationKey, MetricObservation] = {}
    for observation in observations:
        latest.pop(observation.key, None)
        latest[observation.key] = observation
    return list(latest.values())


def _error_for(item: Any, message: str) -> ObservationWriteError:
    if isinstance(item, MetricObservation):
        return ObservationWriteError(
            metric_name=item.metric_name,
            measurement_date=item.measurement_date.isoformat(),
            source=item.source,
            message=message,
        )
    raw = item if isinstance(item, dict) else {}
    raw_date = raw.get("measurement_date")
    return ObservationWriteError(
        metric_name=str(raw.get("metric_name") or "unknown"),
        measurement_date=str(raw_date) if raw_date is not None else None,
        source=str(raw["source"]) if raw.get("source") is not None else None,
        message=message,
    )


async def write_observations(
    conn: psycopg.AsyncConnection[Any],
    observations: Sequence[MetricObservation | dict[str, Any]],
) -> BatchWriteResult:
    """Validate, dedupe and upsert a batch.

    Each item is written in its own savepoint, so one failing row never aborts
    its siblings. Failures are collected in the result, not raised.
    """
    result = BatchWriteResult()
    valid: list[MetricObservation] = []
    for item in observations:
        if isinstance(item, MetricObservation):
            valid.append(item)
            continue
        try:
            valid.append(MetricObservation.model_validate(item))
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            result.errors.append(_error_for(item, str(first.get("msg", "invalid observation"))))

    for observation in dedupe_observations(valid):
        try:
            async with conn.transaction():
                await write_observation(conn, observation)
        except Exception as exc:
            logger.warning(
                "Failed to write %s for %s on %s: %s",
                observation.metric_name,
                observation.source,
                observation.measurement_date,
                exc,
            )
            result.errors.append(_error_for(observation, str(exc)))
        else:
            result.written += 1

    return result


async def fetch_observations(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    metric_name: str,
    start: date,
    end: date,
    source: str | None = None,
) -> list[MetricObservation]:
    """Observations for one user/metric in [start, end], oldest first."""
    source_filter = "AND source = %s" if source is not None else ""
    params: tuple[Any, ...] = (user_id, metric_name, start, end)
    if source is not None:
        params += (normalize_source(source),)

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            f"""
            SELECT user_id, metric_name, category, value, unit, measurement_date,
                   source, provider, external_id, priority, confidence_score
            FROM unified_metrics
            WHERE user_id = %s AND metric_name = %s
              AND measurement_date BETWEEN %s AND %s
              {source_filter}
            ORDER BY measurement_date, source
            """,
            params,
        )
        rows = await cur.fetchall()

    return [
        MetricObservation(
            user_id=str(row["user_id"]),
            metric_name=row["metric_name"],
            category=row["category"] or "",
            value=float(row["value"]),
            unit=row["unit"] or DEFAULT_UNIT,
            measurement_date=row["measurement_date"],
            source=row["source"],
            provider=row["provider"],
            external_id=row["external_id"],
            priority=int(row["priority"] or 5),
            confidence_score=float(
                row["confidence_score"] if row["confidence_score"] is not None else DEFAULT_CONFIDENCE
            ),
        )
        for row in rows
    ]


def _precedence(observation: MetricObservation) -> tuple[int, float, str]:
    return (observation.priority, -observation.confidence_score, observation.source)


def select_preferred(
    observations: Iterable[MetricObservation],
) -> dict[tuple[str, date], MetricObservation]:
    """Most trusted observation per (metric_name, measurement_date).

    Lower priority wins; ties go to higher confidence, then source name.
    """
    preferred: dict[tuple[str, date], MetricObservation] = {}
    for observation in observations:
        key = (observation.metric_name, observation.measurement_date)
        current = preferred.get(key)
        if current is None or _precedence(observation) < _precedence(current):
            preferred[key] = observation
    return preferred
