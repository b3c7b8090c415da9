"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts are safe without locking.
"""

import time

_start_time = time.monotonic()

_COUNTERS = (
    "jobs_processed",
    "jobs_failed",
    "jobs_dead",
    "jobs_empty_polls",
    "observations_written",
    "observations_rejected",
    "recovered_jobs",
    "recovered_webhooks",
)

_metrics: dict = {name: 0 for name in _COUNTERS}
_metrics["handlers"] = {}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    """Record a single handler invocation with timing."""
    h = _metrics["handlers"].setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    if success:
        h["successes"] += 1
    else:
        h["failures"] += 1


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def record_empty_poll() -> None:
    _metrics["jobs_empty_polls"] += 1


def record_observations(written: int, rejected: int = 0) -> None:
    _metrics["observations_written"] += written
    _metrics["observations_rejected"] += rejected


def record_recovery(jobs: int, webhooks: int) -> None:
    _metrics["recovered_jobs"] += jobs
    _metrics["recovered_webhooks"] += webhooks


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    snapshot: dict = {"uptime_seconds": round(time.monotonic() - _start_time, 1)}
    for name in _COUNTERS:
        snapshot[name] = _metrics[name]
    snapshot["handlers"] = {
        name: dict(stats)
        for name, stats in _metrics["handlers"].items()
    }
    return snapshot


def reset_metrics() -> None:
    """Zero all counters (used by tests and on worker restart)."""
    for name in _COUNTERS:
        _metrics[name] = 0
    _metrics["handlers"].clear()
