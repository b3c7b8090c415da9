"""Terra webhook payload normalization.

Maps one raw vendor payload (event type + data items) to canonical metric
observations. Vendors routed through Terra disagree on shapes for the same
event type, so each event type has an ordered tuple of shape matchers: the
richer nested shape is tried first, then flatter fallbacks. The first matcher
that extracts anything wins for that item.

An item that matches no shape produces zero observations. Missing optional
fields are routine and never raise.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from .metric_catalog import category_for_metric, normalize_source, unit_for_metric
from .pace import best_1km_pace_minutes

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0

# Terra activity types treated as running for split extraction.
RUNNING_ACTIVITY_TYPES = frozenset({1, 8})

_INDEXED_KEY = re.compile(r"^(?P<key>[^\[]+)\[(?P<index>\d+)\]$")


@dataclass(frozen=True)
class NormalizedMetric:
    metric_name: str
    category: str
    value: float
    unit: str
    measurement_date: date
    external_id: str


@dataclass(frozen=True)
class _FieldSpec:
    metric_name: str
    paths: tuple[str, ...]
    transform: Callable[[float], float] | None = None


# --- Path helpers ---


def get_path(obj: Any, path: str) -> Any:
    """Resolve a dotted path like 'measurements_data.measurements[0].weight_kg'."""
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        match = _INDEXED_KEY.match(part)
        if match:
            current = current.get(match["key"]) if isinstance(current, dict) else None
            index = int(match["index"])
            if not isinstance(current, list) or index >= len(current):
                return None
            current = current[index]
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def first_number(obj: Any, *paths: str) -> float | None:
    for path in paths:
        value = _as_number(get_path(obj, path))
        if value is not None:
            return value
    return None


def parse_measurement_date(value: Any) -> date | None:
    """Vendor-local calendar date of an ISO timestamp or date string."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if len(raw) < 10:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def first_date(obj: Any, *paths: str) -> date | None:
    for path in paths:
        parsed = parse_measurement_date(get_path(obj, path))
        if parsed is not None:
            return parsed
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _seconds_between(start: Any, end: Any) -> float | None:
    start_ts = _parse_timestamp(start)
    end_ts = _parse_timestamp(end)
    if start_ts is None or end_ts is None:
        return None
    seconds = (end_ts - start_ts).total_seconds()
    return seconds if seconds > 0 else None


def _hours(seconds: float) -> float:
    return round(seconds / SECONDS_PER_HOUR, 2)


def _metric_slug(metric_name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", metric_name.lower()).strip("_")


def build_external_id(
    provider: str,
    metric_name: str,
    measurement_date: date,
    sub_id: str | None = None,
) -> str:
    """Deterministic dedup id from vendor identifiers; never derived from wall-clock time."""
    parts = [
        "terra",
        normalize_source(provider) or "unknown",
        _metric_slug(metric_name),
        measurement_date.isoformat(),
    ]
    if sub_id:
        parts.append(re.sub(r"\s+", "", str(sub_id)))
    return "_".join(parts)


class _Emitter:
    """Collects observations for one data item."""

    def __init__(self, provider: str, measurement_date: date, sub_id: str | None = None) -> None:
        self.provider = provider
        self.measurement_date = measurement_date
        self.sub_id = sub_id
        self.metrics: list[NormalizedMetric] = []

    def emit(self, metric_name: str, value: float | None, *, on: date | None = None) -> None:
        if value is None or not math.isfinite(value):
            return
        measurement_date = on or self.measurement_date
        self.metrics.append(
            NormalizedMetric(
                metric_name=metric_name,
                category=category_for_metric(metric_name),
                value=value,
                unit=unit_for_metric(metric_name),
                measurement_date=measurement_date,
                external_id=build_external_id(
                    self.provider, metric_name, measurement_date, self.sub_id
                ),
            )
        )

    def emit_fields(self, item: dict[str, Any], specs: tuple[_FieldSpec, ...]) -> None:
        for spec in specs:
            value = first_number(item, *spec.paths)
            if value is not None and spec.transform is not None:
                value = spec.transform(value)
            self.emit(spec.metric_name, value)


# --- daily ---

_DAILY_FIELDS: tuple[_FieldSpec, ...] = (
    _FieldSpec("Steps", ("distance_data.steps", "steps_data.steps", "steps")),
    _FieldSpec(
        "Active Calories",
        (
            "calories_data.active_burned_calories",
            "calories_data.total_burned_calories",
            "total_burned_calories",
        ),
    ),
    _FieldSpec(
        "Recovery Score",
        (
            "scores.recovery",
            "recovery_score",
            "recovery.score",
            "recovery_score_percentage",
            "recovery_percentage",
        ),
    ),
    _FieldSpec(
        "Training Readiness",
        ("training_readiness", "readiness_score", "training_readiness_score"),
    ),
    _FieldSpec("Body Battery", ("body_battery.score", "body_battery")),
    _FieldSpec(
        "Day Strain",
        ("strain_data.strain_level", "scores.strain", "day_strain", "score.strain", "strain"),
    ),
    _FieldSpec("Sleep Efficiency", ("sleep_efficiency_percentage", "sleep.efficiency_percentage")),
    _FieldSpec("Sleep Performance", ("sleep_performance_percentage", "sleep.performance_percentage")),
    _FieldSpec(
        "Sleep Need Fulfillment",
        ("sleep_need_fulfillment_percentage", "sleep.need_fulfillment_percentage"),
    ),
    _FieldSpec(
        "Resting Heart Rate",
        (
            "heart_rate_data.summary.resting_hr_bpm",
            "heart_rate_data.hr_resting_bpm",
            "resting_hr_bpm",
            "resting_heart_rate_bpm",
            "resting_hr",
            "resting_heart_rate",
        ),
    ),
    _FieldSpec(
        "HRV RMSSD",
        (
            "heart_rate_data.summary.avg_hrv_rmssd",
            "hrv_rmssd_ms",
            "hrv.rmssd_ms",
            "hrv.rmssd_milli",
        ),
    ),
    _FieldSpec(
        "VO2Max",
        ("oxygen_data.vo2max_ml_per_min_per_kg", "vo2max_ml_per_min_per_kg"),
    ),
)


def _daily_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    measurement_date = first_date(
        item, "metadata.start_time", "day_start", "start_time", "timestamp", "date"
    ) or default_date
    if measurement_date is None:
        return []
    emitter = _Emitter(provider, measurement_date)
    emitter.emit_fields(item, _DAILY_FIELDS)
    return emitter.metrics


# --- sleep ---

_DEEP_PATHS = (
    "sleep_durations_data.asleep.duration_deep_sleep_state_seconds",
    "sleep_durations_data.asleep.duration_asleep_state_deep_sleep_seconds",
)
_LIGHT_PATHS = (
    "sleep_durations_data.asleep.duration_light_sleep_state_seconds",
    "sleep_durations_data.asleep.duration_asleep_state_light_sleep_seconds",
)
_REM_PATHS = (
    "sleep_durations_data.asleep.duration_REM_sleep_state_seconds",
    "sleep_durations_data.asleep.duration_rem_sleep_state_seconds",
    "sleep_durations_data.asleep.duration_asleep_state_rem_sleep_seconds",
)
_AWAKE_PATHS = ("sleep_durations_data.awake.duration_awake_state_seconds",)

_SLEEP_DATE_PATHS = (
    "metadata.end_time",
    "end_time",
    "sleep_end_time",
    "metadata.start_time",
    "start_time",
    "sleep_start_time",
    "timestamp",
)


def total_sleep_hours(
    deep: float | None, light: float | None, rem: float | None, awake: float | None
) -> float | None:
    """Sum of phase durations (seconds) as hours, 2 decimals. None if no phase data."""
    phases = [p for p in (deep, light, rem, awake) if p is not None and p > 0]
    if not phases:
        return None
    return _hours(sum(phases))


def sleep_efficiency_percent(asleep_seconds: float | None, in_bed_seconds: float | None) -> float | None:
    """(asleep / in bed) * 100, clamped to 100. Only when both are positive and asleep <= in bed."""
    if asleep_seconds is None or in_bed_seconds is None:
        return None
    if asleep_seconds <= 0 or in_bed_seconds <= 0 or asleep_seconds > in_bed_seconds:
        return None
    return round(min(100.0, asleep_seconds / in_bed_seconds * 100), 2)


def _reported_efficiency(value: float | None) -> float | None:
    """Vendors report efficiency either as a 0-1 fraction or as a percentage."""
    if value is None or value < 0:
        return None
    percent = value * 100 if value <= 1 else value
    return round(min(100.0, percent), 2)


def _sleep_sub_id(item: dict[str, Any]) -> str | None:
    summary_id = get_path(item, "metadata.summary_id")
    if isinstance(summary_id, str) and summary_id.strip():
        return summary_id.strip()
    return None


def _sleep_durations_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    if not isinstance(item.get("sleep_durations_data"), dict):
        return []
    measurement_date = first_date(item, *_SLEEP_DATE_PATHS) or default_date
    if measurement_date is None:
        return []

    deep = first_number(item, *_DEEP_PATHS)
    light = first_number(item, *_LIGHT_PATHS)
    rem = first_number(item, *_REM_PATHS)
    awake = first_number(item, *_AWAKE_PATHS)

    emitter = _Emitter(provider, measurement_date, _sleep_sub_id(item))

    total = total_sleep_hours(deep, light, rem, awake)
    if total is None:
        asleep_total = first_number(item, "sleep_durations_data.asleep.duration_asleep_state_seconds")
        if asleep_total is not None and asleep_total > 0:
            total = _hours(asleep_total)
    emitter.emit("Sleep Duration", total)

    for metric_name, seconds in (
        ("Deep Sleep Duration", deep),
        ("Light Sleep Duration", light),
        ("REM Sleep Duration", rem),
        ("Awake Duration", awake),
    ):
        if seconds is not None and seconds >= 0:
            emitter.emit(metric_name, _hours(seconds))

    efficiency = _reported_efficiency(first_number(item, "sleep_durations_data.sleep_efficiency"))
    if efficiency is None:
        asleep = first_number(item, "sleep_durations_data.asleep.duration_asleep_state_seconds")
        if asleep is None:
            phase_sum = sum(p for p in (deep, light, rem) if p is not None and p > 0)
            asleep = phase_sum or None
        in_bed = first_number(item, "sleep_durations_data.other.duration_in_bed_seconds")
        efficiency = sleep_efficiency_percent(asleep, in_bed)
    emitter.emit("Sleep Efficiency", efficiency)

    emitter.emit("HRV RMSSD", first_number(item, "heart_rate_data.summary.avg_hrv_rmssd"))
    emitter.emit(
        "Resting Heart Rate",
        first_number(item, "heart_rate_data.summary.resting_hr_bpm", "heart_rate_data.summary.min_hr_bpm"),
    )
    return emitter.metrics


def _sleep_flat_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    measurement_date = first_date(item, *_SLEEP_DATE_PATHS) or default_date
    if measurement_date is None:
        return []
    emitter = _Emitter(provider, measurement_date, _sleep_sub_id(item))

    duration = first_number(
        item, "duration_seconds", "duration_sec", "duration", "sleep_duration_seconds"
    )
    if duration is None:
        duration = _seconds_between(
            item.get("start_time") or item.get("sleep_start_time"),
            item.get("end_time") or item.get("sleep_end_time"),
        )
    if duration is not None and duration > 0:
        emitter.emit("Sleep Duration", _hours(duration))

    for metric_name, path in (
        ("Deep Sleep Duration", "deep_sleep_duration_seconds"),
        ("Light Sleep Duration", "light_sleep_duration_seconds"),
        ("REM Sleep Duration", "rem_sleep_duration_seconds"),
        ("Awake Duration", "awake_duration_seconds"),
    ):
        seconds = first_number(item, path)
        if seconds is not None and seconds >= 0:
            emitter.emit(metric_name, _hours(seconds))

    efficiency = _reported_efficiency(
        first_number(item, "sleep_efficiency_percentage", "sleep_efficiency")
    )
    if efficiency is None:
        efficiency = sleep_efficiency_percent(
            duration, first_number(item, "time_in_bed_seconds", "duration_in_bed_seconds")
        )
    emitter.emit("Sleep Efficiency", efficiency)
    emitter.emit("Sleep Performance", first_number(item, "sleep_performance_percentage"))
    emitter.emit("HRV RMSSD", first_number(item, "hrv_rmssd_ms", "avg_hrv_rmssd"))
    return emitter.metrics


# --- body ---


def _emit_body_values(emitter: _Emitter, values: dict[str, Any], on: date) -> None:
    emitter.emit("Weight", first_number(values, "weight_kg", "body_mass_kg"), on=on)
    emitter.emit(
        "Body Fat Percentage",
        first_number(values, "bodyfat_percentage", "body_fat_percentage"),
        on=on,
    )
    muscle_kg = first_number(values, "muscle_mass_kg")
    if muscle_kg is None:
        muscle_g = first_number(values, "muscle_mass_g")
        muscle_kg = round(muscle_g / 1000, 3) if muscle_g is not None else None
    emitter.emit("Muscle Mass", muscle_kg, on=on)
    emitter.emit("BMI", first_number(values, "bmi"), on=on)


def _body_measurements_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    measurements = get_path(item, "measurements_data.measurements")
    if not isinstance(measurements, list) or not measurements:
        return []
    item_date = first_date(item, "metadata.start_time", "metadata.end_time", "timestamp") or default_date
    metrics: list[NormalizedMetric] = []
    for measurement in measurements:
        if not isinstance(measurement, dict):
            continue
        on = first_date(measurement, "measurement_time", "timestamp") or item_date
        if on is None:
            logger.debug("Skipping body measurement without date (provider=%s)", provider)
            continue
        emitter = _Emitter(provider, on)
        _emit_body_values(emitter, measurement, on)
        metrics.extend(emitter.metrics)
    return metrics


def _body_flat_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    on = first_date(item, "timestamp", "metadata.start_time", "metadata.end_time", "date") or default_date
    if on is None:
        return []
    emitter = _Emitter(provider, on)
    _emit_body_values(emitter, item, on)
    return emitter.metrics


# --- activity ---


def _is_running(item: dict[str, Any]) -> bool:
    activity_type = get_path(item, "metadata.type")
    if activity_type is None:
        return True
    return activity_type in RUNNING_ACTIVITY_TYPES


def _activity_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    start_time = get_path(item, "metadata.start_time") or item.get("start_time")
    measurement_date = parse_measurement_date(start_time) or first_date(item, "timestamp") or default_date
    if measurement_date is None:
        return []

    summary_id = get_path(item, "metadata.summary_id")
    sub_id = summary_id if isinstance(summary_id, str) and summary_id.strip() else start_time
    emitter = _Emitter(provider, measurement_date, sub_id if isinstance(sub_id, str) else None)

    emitter.emit("Workout Calories", first_number(item, "calories_data.total_burned_calories"))

    distance_m = first_number(
        item, "distance_data.summary.distance_meters", "distance_data.distance_meters", "distance_meters"
    )
    if distance_m is not None and distance_m > 0:
        emitter.emit("Distance", round(distance_m / 1000, 3))

    emitter.emit(
        "Average Heart Rate",
        first_number(item, "heart_rate_data.summary.avg_hr_bpm", "heart_rate_data.avg_hr_bpm"),
    )
    emitter.emit(
        "Max Heart Rate",
        first_number(item, "heart_rate_data.summary.max_hr_bpm", "heart_rate_data.max_hr_bpm"),
    )
    emitter.emit("Workout Strain", first_number(item, "score.strain", "strain_score", "strain_data.strain_level"))

    duration = first_number(item, "active_durations_data.activity_seconds")
    if duration is None:
        duration = _seconds_between(start_time, get_path(item, "metadata.end_time") or item.get("end_time"))
    if duration is not None and duration > 0:
        emitter.emit("Workout Duration", round(duration / 60, 1))

    if _is_running(item):
        emitter.emit("Best 1km Pace", best_1km_pace_minutes(item))
    return emitter.metrics


# --- nutrition ---


def _nutrition_shape(
    item: dict[str, Any], provider: str, default_date: date | None = None
) -> list[NormalizedMetric]:
    measurement_date = first_date(item, "metadata.start_time", "metadata.end_time", "timestamp") or default_date
    if measurement_date is None:
        return []
    emitter = _Emitter(provider, measurement_date)
    emitter.emit(
        "Blood Glucose",
        first_number(
            item,
            "blood_glucose_data_mg_per_dL",
            "glucose_data.day_avg_blood_glucose_mg_per_dL",
        ),
    )
    emitter.emit("Calories Consumed", first_number(item, "summary.macros.calories"))
    emitter.emit("Protein Intake", first_number(item, "summary.macros.protein_g"))
    return emitter.metrics


ShapeMatcher = Callable[[dict[str, Any], str, date | None], list[NormalizedMetric]]

SHAPE_MATCHERS: dict[str, tuple[ShapeMatcher, ...]] = {
    "daily": (_daily_shape,),
    "sleep": (_sleep_durations_shape, _sleep_flat_shape),
    "body": (_body_measurements_shape, _body_flat_shape),
    "activity": (_activity_shape,),
    "nutrition": (_nutrition_shape,),
}


def normalize_items(
    provider: str,
    event_type: str,
    items: list[Any],
    default_date: date | None = None,
) -> list[NormalizedMetric]:
    """Normalize a list of Terra data items for one event type.

    Unknown event types and unmatched item shapes yield no observations.
    Items that carry no date of their own are dated `default_date` (the day
    the event was received); without it they are skipped.
    """
    matchers = SHAPE_MATCHERS.get(event_type.strip().lower())
    if matchers is None:
        logger.info("No normalizer for event_type=%s (provider=%s)", event_type, provider)
        return []

    metrics: list[NormalizedMetric] = []
    unmatched = 0
    for item in items:
        if not isinstance(item, dict):
            unmatched += 1
            continue
        for matcher in matchers:
            extracted = matcher(item, provider, default_date)
            if extracted:
                metrics.extend(extracted)
                break
        else:
            unmatched += 1

    if unmatched:
        logger.debug(
            "%d %s item(s) from %s matched no known shape", unmatched, event_type, provider
        )
    return metrics


def normalize_webhook(
    provider: str, event_type: str, payload: dict[str, Any], default_date: date | None = None
) -> list[NormalizedMetric]:
    """Normalize a full Terra webhook body ({type, user, data})."""
    data = payload.get("data")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    return normalize_items(provider, event_type, data, default_date)
