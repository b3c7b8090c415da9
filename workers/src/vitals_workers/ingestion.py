"""Shared normalize -> write -> follow-up path for webhook and backfill jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import max_job_attempts
from .job_contracts import JOB_TYPE_CONFIDENCE_CALCULATION
from .job_queue import JobQueue
from .metric_catalog import normalize_source, source_priority
from .metric_writer import BatchWriteResult, MetricObservation, write_observations
from .metrics import record_observations
from .webhook_normalizer import NormalizedMetric, normalize_items

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    extracted: int = 0
    write: BatchWriteResult = field(default_factory=BatchWriteResult)
    metric_dates: dict[str, set[date]] = field(default_factory=dict)

    @property
    def all_failed(self) -> bool:
        return self.extracted > 0 and self.write.written == 0


def to_observations(
    user_id: str, provider: str, metrics: list[NormalizedMetric]
) -> list[MetricObservation]:
    source = normalize_source(provider)
    return [
        MetricObservation(
            user_id=user_id,
            metric_name=m.metric_name,
            category=m.category,
            value=m.value,
            unit=m.unit,
            measurement_date=m.measurement_date,
            source=source,
            provider=provider.strip().upper(),
            external_id=m.external_id,
            priority=source_priority(source, m.category),
        )
        for m in metrics
    ]


async def ingest_items(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    provider: str,
    event_type: str,
    items: list[Any],
    *,
    default_date: date | None = None,
) -> IngestOutcome:
    """Normalize vendor items and upsert the resulting observations.

    `default_date` dates items that carry no date of their own.
    """
    metrics = normalize_items(provider, event_type, items, default_date)
    observations = to_observations(user_id, provider, metrics)
    outcome = IngestOutcome(extracted=len(observations))
    if not observations:
        return outcome

    outcome.write = await write_observations(conn, observations)
    record_observations(outcome.write.written, outcome.write.failed)

    failed_keys = {(e.metric_name, e.measurement_date) for e in outcome.write.errors}
    for obs in observations:
        if (obs.metric_name, obs.measurement_date.isoformat()) in failed_keys:
            continue
        outcome.metric_dates.setdefault(obs.metric_name, set()).add(obs.measurement_date)
    return outcome


async def enqueue_confidence_followups(
    conn: psycopg.AsyncConnection[Any], user_id: str, metric_dates: dict[str, set[date]]
) -> int:
    """One confidence_calculation job per metric. Best effort: failures are logged."""
    queue = JobQueue(conn)
    enqueued = 0
    for metric_name in sorted(metric_dates):
        dates = metric_dates[metric_name]
        payload: dict[str, Any] = {"user_id": user_id, "metric_name": metric_name}
        if len(dates) == 1:
            payload["measurement_date"] = next(iter(dates)).isoformat()
        try:
            async with conn.transaction():
                await queue.enqueue(
                    JOB_TYPE_CONFIDENCE_CALCULATION,
                    payload,
                    max_attempts=max_job_attempts(),
                )
            enqueued += 1
        except Exception as exc:
            logger.warning(
                "Could not enqueue confidence recalculation for %s/%s: %s",
                user_id,
                metric_name,
                exc,
            )
    return enqueued


async def touch_freshness(
    conn: psycopg.AsyncConnection[Any], user_id: str, provider: str, records: int
) -> None:
    """Record the last successful sync per vendor. Best effort."""
    source = normalize_source(provider)
    try:
        async with conn.transaction():
            await conn.execute(
                """
                INSERT INTO data_freshness_tracking (
                    user_id, source, provider, last_sync_at, last_record_count, updated_at
                )
                VALUES (%s, %s, %s, NOW(), %s, NOW())
                ON CONFLICT (user_id, source, provider) DO UPDATE SET
                    last_sync_at = NOW(),
                    last_record_count = EXCLUDED.last_record_count,
                    updated_at = NOW()
                """,
                (user_id, source, provider.strip().upper(), records),
            )
    except Exception as exc:
        logger.warning("Freshness tracking update failed for %s/%s: %s", user_id, source, exc)


async def resolve_app_user(
    conn: psycopg.AsyncConnection[Any], terra_user_id: str, reference_id: str | None
) -> str | None:
    """Map a Terra user to the app user via terra_tokens, then reference_id."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT user_id FROM terra_tokens
            WHERE terra_user_id = %s AND is_active
            ORDER BY updated_at DESC NULLS LAST
            LIMIT 1
            """,
            (terra_user_id,),
        )
        row = await cur.fetchone()
    if row is not None and row["user_id"]:
        return str(row["user_id"])
    if reference_id and reference_id.strip():
        return reference_id.strip()
    return None
