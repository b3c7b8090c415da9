"""Best 1km split extraction from activity payloads.

Tries the high-resolution distance samples first (sliding window over the
cumulative distance curve), then falls back to ~1km laps. Returns None when
neither method yields a plausible pace.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

SPLIT_METERS = 1000.0

# Slower than 20 min/km is walking or a paused GPS track, not a split.
MIN_PLAUSIBLE_SPEED_MPS = SPLIT_METERS / (20 * 60)
# Faster than 2 min/km is a GPS jump.
MAX_PLAUSIBLE_SPEED_MPS = SPLIT_METERS / (2 * 60)

LAP_MIN_METERS = 900.0
LAP_MAX_METERS = 1100.0


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _sample_seconds(sample: dict[str, Any], origin: datetime | None) -> float | None:
    offset = _number(sample.get("timer_duration_seconds"))
    if offset is not None:
        return offset
    raw = sample.get("timestamp")
    if not isinstance(raw, str) or origin is None:
        return None
    parsed = _parse_ts(raw)
    if parsed is None:
        return None
    return (parsed - origin).total_seconds()


def _parse_ts(raw: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sample_origin(samples: list[dict[str, Any]]) -> datetime | None:
    for sample in samples:
        raw = sample.get("timestamp")
        if isinstance(raw, str):
            parsed = _parse_ts(raw)
            if parsed is not None:
                return parsed
    return None


def _distance_curve(samples: list[Any]) -> list[tuple[float, float]]:
    """(elapsed_seconds, cumulative_meters) points, time-ordered, distance non-decreasing."""
    dict_samples = [s for s in samples if isinstance(s, dict)]
    origin = _sample_origin(dict_samples)
    points: list[tuple[float, float]] = []
    for sample in dict_samples:
        seconds = _sample_seconds(sample, origin)
        meters = _number(sample.get("distance_meters"))
        if seconds is None or meters is None:
            continue
        points.append((seconds, meters))
    points.sort(key=lambda p: p[0])

    curve: list[tuple[float, float]] = []
    for seconds, meters in points:
        if curve and (seconds <= curve[-1][0] or meters < curve[-1][1]):
            continue
        curve.append((seconds, meters))
    return curve


def _plausible(pace_seconds: float) -> bool:
    if pace_seconds <= 0:
        return False
    speed = SPLIT_METERS / pace_seconds
    return MIN_PLAUSIBLE_SPEED_MPS < speed <= MAX_PLAUSIBLE_SPEED_MPS


def best_split_from_samples(samples: list[Any]) -> float | None:
    """Fastest 1km split in seconds from cumulative distance samples."""
    curve = _distance_curve(samples)
    if len(curve) < 2 or curve[-1][1] - curve[0][1] < SPLIT_METERS:
        return None

    best: float | None = None
    start = 0
    for end in range(1, len(curve)):
        end_t, end_d = curve[end]
        # Shrink the window while it still covers a full split.
        while start + 1 < end and end_d - curve[start + 1][1] >= SPLIT_METERS:
            start += 1
        start_t, start_d = curve[start]
        covered = end_d - start_d
        if covered < SPLIT_METERS:
            continue
        pace = (end_t - start_t) * SPLIT_METERS / covered
        if _plausible(pace) and (best is None or pace < best):
            best = pace
    return best


def best_split_from_laps(laps: list[Any]) -> float | None:
    """Fastest ~1km lap in seconds, from lap average speed."""
    best: float | None = None
    for lap in laps:
        if not isinstance(lap, dict):
            continue
        distance = _number(lap.get("distance_meters"))
        speed = _number(lap.get("avg_speed_meters_per_second"))
        if distance is None or speed is None or speed <= 0:
            continue
        if not LAP_MIN_METERS <= distance <= LAP_MAX_METERS:
            continue
        pace = SPLIT_METERS / speed
        if _plausible(pace) and (best is None or pace < best):
            best = pace
    return best


def best_1km_pace_minutes(activity: dict[str, Any]) -> float | None:
    """Best 1km pace in min/km, or None when no plausible split exists."""
    distance_data = activity.get("distance_data")
    samples: Any = None
    if isinstance(distance_data, dict):
        detailed = distance_data.get("detailed")
        if isinstance(detailed, dict):
            samples = detailed.get("distance_samples")

    pace_seconds: float | None = None
    if isinstance(samples, list) and samples:
        pace_seconds = best_split_from_samples(samples)

    if pace_seconds is None:
        lap_data = activity.get("lap_data")
        laps = lap_data.get("laps") if isinstance(lap_data, dict) else None
        if isinstance(laps, list) and laps:
            pace_seconds = best_split_from_laps(laps)

    if pace_seconds is None:
        return None
    return round(pace_seconds / 60, 2)
