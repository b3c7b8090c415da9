"""Confidence scoring for unified metric observations.

Score = source reliability (0-40) + data freshness (0-20)
      + measurement frequency (0-20) + cross-validation (0-20), capped at 100.

Everything here is a pure function of the observation set and a reference
time, so recomputing with unchanged inputs yields identical scores.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from .metric_catalog import MAX_RELIABILITY_RANK, category_for_metric, reliability_rank
from .metric_writer import MetricObservation

MAX_SCORE = 100
MAX_RELIABILITY_POINTS = 40
DEFAULT_WINDOW_DAYS = 30

# (upper bound exclusive, points), checked in order.
FRESHNESS_BANDS: tuple[tuple[float, int], ...] = (
    (1, 20),
    (24, 18),
    (72, 15),
    (168, 10),
    (720, 5),
)
# (minimum count, points), checked in order.
FREQUENCY_BANDS: tuple[tuple[int, int], ...] = (
    (28, 20),
    (12, 15),
    (4, 10),
    (1, 5),
)
# (deviation percent upper bound exclusive, points), checked in order.
AGREEMENT_BANDS: tuple[tuple[float, int], ...] = (
    (2, 20),
    (5, 15),
    (10, 10),
    (20, 5),
)
NO_PEER_SCORE = 10


@dataclass(frozen=True)
class ConfidenceFactors:
    source_reliability: float
    data_freshness: float
    measurement_frequency: float
    cross_validation: float

    @property
    def total(self) -> float:
        raw = (
            self.source_reliability
            + self.data_freshness
            + self.measurement_frequency
            + self.cross_validation
        )
        return max(0.0, min(float(MAX_SCORE), raw))

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_reliability": self.source_reliability,
            "data_freshness": self.data_freshness,
            "measurement_frequency": self.measurement_frequency,
            "cross_validation": self.cross_validation,
            "total": self.total,
        }


def reliability_score(source: str, category: str) -> float:
    rank = reliability_rank(source, category)
    return round(rank / MAX_RELIABILITY_RANK * MAX_RELIABILITY_POINTS, 2)


def freshness_score(hours_since: float) -> int:
    hours = max(0.0, hours_since)
    for bound, points in FRESHNESS_BANDS:
        if hours < bound:
            return points
    return 0


def frequency_score(count: int) -> int:
    for minimum, points in FREQUENCY_BANDS:
        if count >= minimum:
            return points
    return 0


def mean_deviation_percent(values: Sequence[float]) -> float | None:
    """Mean absolute deviation from the mean, as a percent of the mean.

    None when there is nothing to compare. A zero mean with any spread is
    treated as unbounded disagreement.
    """
    if len(values) < 2:
        return None
    mean = sum(values) / len(values)
    deviation = sum(abs(v - mean) for v in values) / len(values)
    if mean == 0:
        return 0.0 if deviation == 0 else float("inf")
    return deviation / abs(mean) * 100


def cross_validation_score(values_on_date: Sequence[float]) -> int:
    """Agreement of all sources reporting the metric on one date."""
    deviation = mean_deviation_percent(values_on_date)
    if deviation is None:
        return NO_PEER_SCORE
    for bound, points in AGREEMENT_BANDS:
        if deviation < bound:
            return points
    return 0


def hours_since(measurement_date: date, now: datetime) -> float:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    measured_at = datetime.combine(measurement_date, time.min, tzinfo=timezone.utc)
    return (now - measured_at).total_seconds() / 3600


def compute_confidence(
    observations: Iterable[MetricObservation],
    now: datetime,
    *,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> dict[tuple[str, date], ConfidenceFactors]:
    """Factors per (source, measurement_date) for one user's metric.

    Frequency counts same-source observations in the trailing window ending at
    ``now``, plus the next UTC day since vendors date readings in the wearer's
    local time. Cross-validation compares sources on the same date only.
    """
    rows = list(observations)
    today = (now if now.tzinfo else now.replace(tzinfo=timezone.utc)).astimezone(timezone.utc).date()
    window_start = today - timedelta(days=window_days)
    window_end = today + timedelta(days=1)

    values_by_date: dict[date, list[float]] = defaultdict(list)
    recent_count: dict[str, int] = defaultdict(int)
    for obs in rows:
        values_by_date[obs.measurement_date].append(obs.value)
        if window_start < obs.measurement_date <= window_end:
            recent_count[obs.source] += 1

    factors: dict[tuple[str, date], ConfidenceFactors] = {}
    for obs in rows:
        category = obs.category or category_for_metric(obs.metric_name)
        factors[(obs.source, obs.measurement_date)] = ConfidenceFactors(
            source_reliability=reliability_score(obs.source, category),
            data_freshness=freshness_score(hours_since(obs.measurement_date, now)),
            measurement_frequency=frequency_score(recent_count[obs.source]),
            cross_validation=cross_validation_score(values_by_date[obs.measurement_date]),
        )
    return factors
