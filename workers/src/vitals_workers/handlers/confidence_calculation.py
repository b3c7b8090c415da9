"""Recompute confidence scores for one user's metric.

Runs as a follow-up job after writes. The cache table is a materialized view
of unified_metrics and can be dropped and rebuilt from it at any time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
from psycopg.types.json import Json

from ..confidence import compute_confidence
from ..config import confidence_window_days
from ..job_contracts import (
    JOB_TYPE_CONFIDENCE_CALCULATION,
    ConfidenceCalculationPayload,
    parse_job_payload,
)
from ..metric_writer import fetch_observations
from ..registry import register

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@register(JOB_TYPE_CONFIDENCE_CALCULATION)
async def handle_confidence_calculation(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> dict[str, Any]:
    job = parse_job_payload(
        ConfidenceCalculationPayload, payload, job_type=JOB_TYPE_CONFIDENCE_CALCULATION
    )
    now = _utcnow()
    window_days = confidence_window_days()
    today = now.date()
    start = today - timedelta(days=window_days)
    # Vendor dates are local: east of UTC a reading can be dated tomorrow.
    end = today + timedelta(days=1)
    if job.measurement_date is not None:
        start = min(start, job.measurement_date)
        end = max(end, job.measurement_date)

    observations = await fetch_observations(conn, job.user_id, job.metric_name, start, end)
    factors = compute_confidence(observations, now, window_days=window_days)

    scored = 0
    for (source, measurement_date), breakdown in sorted(factors.items()):
        if job.measurement_date is not None and measurement_date != job.measurement_date:
            continue
        await conn.execute(
            """
            INSERT INTO metric_confidence_cache (
                user_id, metric_name, source, measurement_date, confidence_score,
                source_reliability, data_freshness, measurement_frequency,
                cross_validation, calculated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, metric_name, source, measurement_date) DO UPDATE SET
                confidence_score = EXCLUDED.confidence_score,
                source_reliability = EXCLUDED.source_reliability,
                data_freshness = EXCLUDED.data_freshness,
                measurement_frequency = EXCLUDED.measurement_frequency,
                cross_validation = EXCLUDED.cross_validation,
                calculated_at = NOW()
            """,
            (
                job.user_id,
                job.metric_name,
                source,
                measurement_date,
                breakdown.total,
                breakdown.source_reliability,
                breakdown.data_freshness,
                breakdown.measurement_frequency,
                breakdown.cross_validation,
            ),
        )
        await conn.execute(
            """
            UPDATE unified_metrics
            SET confidence_score = %s, confidence_factors = %s
            WHERE user_id = %s AND metric_name = %s AND source = %s AND measurement_date = %s
            """,
            (
                breakdown.total,
                Json(breakdown.as_dict()),
                job.user_id,
                job.metric_name,
                source,
                measurement_date,
            ),
        )
        scored += 1

    logger.info(
        "Confidence recomputed for %s/%s: %d score(s)",
        job.user_id,
        job.metric_name,
        scored,
        extra={"vitals_user_id": job.user_id},
    )
    return {
        "user_id": job.user_id,
        "metric_name": job.metric_name,
        "scored": scored,
    }
