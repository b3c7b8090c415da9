import pytest

from vitals_workers.metric_catalog import (
    DEFAULT_RELIABILITY_RANK,
    category_for_metric,
    normalize_source,
    reliability_rank,
    source_priority,
    unit_for_metric,
)


@pytest.mark.parametrize(
    "metric,unit",
    [
        ("Weight", "kg"),
        ("Sleep Efficiency", "%"),
        ("HRV RMSSD", "ms"),
        ("Sleep Duration", "hours"),
        ("Best 1km Pace", "min/km"),
        ("Something Vendor Specific", "unit"),
    ],
)
def test_unit_for_metric(metric, unit):
    assert unit_for_metric(metric) == unit


@pytest.mark.parametrize(
    "metric,category",
    [
        ("Weight", "body"),
        ("Resting Heart Rate", "cardio"),
        ("Recovery Score", "recovery"),
        ("Visceral Fat Level", "body"),
        ("Daily Active Minutes", "activity"),
        ("Nightly HRV Balance", "recovery"),
        ("Sleep Latency", "sleep"),
        ("Skin Temperature", "health"),
    ],
)
def test_category_for_metric(metric, category):
    assert category_for_metric(metric) == category


def test_normalize_source():
    assert normalize_source(" WITHINGS ") == "withings"
    assert normalize_source(None) == ""


def test_reliability_rank_by_category():
    assert reliability_rank("INBODY", "body") == 10
    assert reliability_rank("whoop", "recovery") == 10
    assert reliability_rank("garmin", "body") < reliability_rank("withings", "body")


def test_unranked_source_gets_mid_tier():
    assert reliability_rank("fitbit", "sleep") == DEFAULT_RELIABILITY_RANK


def test_unknown_category_uses_health_table():
    assert reliability_rank("ultrahuman", "mood") == 8


def test_priority_lower_is_more_trusted():
    assert source_priority("inbody", "body") == 1
    assert source_priority("inbody", "body") < source_priority("withings", "body")
    assert source_priority("fitbit", "body") == 6
