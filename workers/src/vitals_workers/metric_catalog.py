"""Static metric catalog: canonical units, categories, and source priority.

Pure lookup data. Canonical metric names are the unified, vendor-independent
names stored in unified_metrics.metric_name.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_UNIT = "unit"
DEFAULT_CATEGORY = "health"

# Reliability rank per (category, source) on a 1-10 scale, higher = more trusted.
MAX_RELIABILITY_RANK = 10
DEFAULT_RELIABILITY_RANK = 5


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    unit: str
    category: str


_DEFINITIONS: tuple[MetricDefinition, ...] = (
    # Body composition
    MetricDefinition("Weight", "kg", "body"),
    MetricDefinition("Body Fat Percentage", "%", "body"),
    MetricDefinition("Muscle Mass", "kg", "body"),
    MetricDefinition("BMI", "kg/m2", "body"),
    # Daily activity
    MetricDefinition("Steps", "steps", "activity"),
    MetricDefinition("Active Calories", "kcal", "activity"),
    MetricDefinition("Day Strain", "strain", "activity"),
    # Workouts
    MetricDefinition("Workout Calories", "kcal", "workout"),
    MetricDefinition("Workout Strain", "strain", "workout"),
    MetricDefinition("Workout Duration", "min", "workout"),
    MetricDefinition("Distance", "km", "workout"),
    MetricDefinition("Best 1km Pace", "min/km", "workout"),
    # Cardio
    MetricDefinition("Heart Rate", "bpm", "cardio"),
    MetricDefinition("Resting Heart Rate", "bpm", "cardio"),
    MetricDefinition("Average Heart Rate", "bpm", "cardio"),
    MetricDefinition("Max Heart Rate", "bpm", "cardio"),
    MetricDefinition("VO2Max", "ml/kg/min", "cardio"),
    # Recovery
    MetricDefinition("HRV RMSSD", "ms", "recovery"),
    MetricDefinition("Recovery Score", "%", "recovery"),
    MetricDefinition("Training Readiness", "%", "recovery"),
    MetricDefinition("Body Battery", "%", "recovery"),
    # Sleep
    MetricDefinition("Sleep Duration", "hours", "sleep"),
    MetricDefinition("Deep Sleep Duration", "hours", "sleep"),
    MetricDefinition("Light Sleep Duration", "hours", "sleep"),
    MetricDefinition("REM Sleep Duration", "hours", "sleep"),
    MetricDefinition("Awake Duration", "hours", "sleep"),
    MetricDefinition("Sleep Efficiency", "%", "sleep"),
    MetricDefinition("Sleep Performance", "%", "sleep"),
    MetricDefinition("Sleep Need Fulfillment", "%", "sleep"),
    # Nutrition / health
    MetricDefinition("Calories Consumed", "kcal", "nutrition"),
    MetricDefinition("Protein Intake", "g", "nutrition"),
    MetricDefinition("Blood Glucose", "mg/dL", "health"),
)

METRIC_DEFINITIONS: dict[str, MetricDefinition] = {d.name: d for d in _DEFINITIONS}

SOURCE_RELIABILITY: dict[str, dict[str, int]] = {
    "body": {
        "inbody": 10,
        "withings": 8,
        "garmin": 6,
        "manual": 6,
        "terra": 5,
        "apple_health": 5,
    },
    "activity": {
        "whoop": 9,
        "garmin": 9,
        "apple_health": 8,
        "terra": 8,
        "polar": 8,
        "oura": 7,
        "manual": 5,
    },
    "workout": {
        "garmin": 9,
        "polar": 9,
        "whoop": 8,
        "apple_health": 8,
        "terra": 7,
        "manual": 5,
    },
    "sleep": {
        "whoop": 9,
        "oura": 9,
        "ultrahuman": 8,
        "garmin": 8,
        "apple_health": 7,
        "terra": 7,
    },
    "recovery": {
        "whoop": 10,
        "oura": 9,
        "garmin": 8,
        "ultrahuman": 8,
        "apple_health": 6,
    },
    "cardio": {
        "whoop": 9,
        "garmin": 9,
        "polar": 9,
        "oura": 8,
        "apple_health": 8,
        "terra": 7,
    },
    "health": {
        "ultrahuman": 8,
        "apple_health": 8,
        "terra": 7,
        "manual": 6,
    },
}


def normalize_source(source: str | None) -> str:
    """Lowercase, trimmed source key (e.g. 'WITHINGS ' -> 'withings')."""
    return str(source or "").strip().lower()


def unit_for_metric(metric_name: str) -> str:
    definition = METRIC_DEFINITIONS.get(metric_name)
    return definition.unit if definition is not None else DEFAULT_UNIT


def category_for_metric(metric_name: str) -> str:
    """Category of a canonical metric; falls back to a name heuristic for unknown names."""
    definition = METRIC_DEFINITIONS.get(metric_name)
    if definition is not None:
        return definition.category

    name = metric_name.lower()
    if any(token in name for token in ("weight", "fat", "muscle", "bmr", "bmi")):
        return "body"
    if any(token in name for token in ("step", "calories", "active")):
        return "activity"
    if "recovery" in name or "hrv" in name:
        return "recovery"
    if "heart" in name or "hr" in name.split():
        return "cardio"
    if "sleep" in name:
        return "sleep"
    return DEFAULT_CATEGORY


def reliability_rank(source: str, category: str) -> int:
    """1-10 rank of a source for a category; unranked sources get a mid-tier rank."""
    table = SOURCE_RELIABILITY.get(category) or SOURCE_RELIABILITY[DEFAULT_CATEGORY]
    return table.get(normalize_source(source), DEFAULT_RELIABILITY_RANK)


def source_priority(source: str, category: str) -> int:
    """Priority for read-time precedence: lower number = more trusted (1 is best)."""
    return MAX_RELIABILITY_RANK + 1 - reliability_rank(source, category)
