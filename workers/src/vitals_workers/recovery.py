"""Stuck-work recovery and operator retry triggers.

The sweep only ever moves rows backward (processing -> pending), so it is
idempotent and safe to run concurrently with workers claiming jobs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import max_job_attempts
from .job_contracts import JOB_TYPE_WEBHOOK_PROCESSING
from .job_queue import JobQueue
from .metrics import record_recovery

logger = logging.getLogger(__name__)

DEFAULT_STUCK_TIMEOUT_MINUTES = 60
# Webhooks persisted but never enqueued are picked up after this grace period.
UNQUEUED_WEBHOOK_GRACE_MINUTES = 5
RETRY_WEBHOOK_LIMIT = 100


@dataclass(frozen=True)
class RecoveryReport:
    jobs: int
    webhooks: int

    def as_dict(self) -> dict[str, int]:
        return {"reset_jobs": self.jobs, "reset_webhooks": self.webhooks}


async def reset_stuck_jobs(
    conn: psycopg.AsyncConnection[Any], timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES
) -> int:
    """Return jobs abandoned in 'processing' to their pre-claim state.

    The claim's attempt increment is undone, so a crashed worker does not
    consume one of the job's attempts.
    """
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE background_jobs
            SET status = 'pending',
                started_at = NULL,
                attempts = GREATEST(attempts - 1, 0)
            WHERE status = 'processing'
              AND started_at < NOW() - make_interval(mins => %s)
            """,
            (timeout_minutes,),
        )
        count = cur.rowcount
    if count:
        logger.warning("Reset %d stuck job(s) older than %d min", count, timeout_minutes)
    return count


async def reset_stuck_webhooks(
    conn: psycopg.AsyncConnection[Any], timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES
) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE terra_webhooks_raw
            SET status = 'pending', started_at = NULL
            WHERE status = 'processing'
              AND started_at < NOW() - make_interval(mins => %s)
            """,
            (timeout_minutes,),
        )
        count = cur.rowcount
    if count:
        logger.warning("Reset %d stuck webhook(s) older than %d min", count, timeout_minutes)
    return count


async def recover_stuck_work(
    conn: psycopg.AsyncConnection[Any], timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES
) -> RecoveryReport:
    """Full sweep over jobs and raw webhooks."""
    report = RecoveryReport(
        jobs=await reset_stuck_jobs(conn, timeout_minutes),
        webhooks=await reset_stuck_webhooks(conn, timeout_minutes),
    )
    record_recovery(report.jobs, report.webhooks)
    return report


async def retry_failed_jobs(
    conn: psycopg.AsyncConnection[Any],
    *,
    job_type: str | None = None,
    job_id: int | None = None,
) -> int:
    """Manually requeue terminally failed jobs with a fresh attempt budget."""
    conditions = ["status = 'failed'"]
    params: list[Any] = []
    if job_type is not None:
        conditions.append("job_type = %s")
        params.append(job_type)
    if job_id is not None:
        conditions.append("id = %s")
        params.append(job_id)

    async with conn.cursor() as cur:
        await cur.execute(
            f"""
            UPDATE background_jobs
            SET status = 'pending',
                attempts = 0,
                scheduled_at = NOW(),
                started_at = NULL,
                completed_at = NULL,
                error_message = NULL
            WHERE {' AND '.join(conditions)}
            """,
            tuple(params),
        )
        count = cur.rowcount
    logger.info("Requeued %d failed job(s) (type=%s, id=%s)", count, job_type, job_id)
    return count


async def retry_stuck_webhooks(
    conn: psycopg.AsyncConnection[Any], *, limit: int = RETRY_WEBHOOK_LIMIT
) -> int:
    """Re-enqueue raw webhooks that never got a job or whose processing failed."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT webhook_id, payload
            FROM terra_webhooks_raw
            WHERE status = 'failed'
               OR (status = 'pending' AND job_id IS NULL
                   AND created_at < NOW() - make_interval(mins => %s))
            ORDER BY created_at
            LIMIT %s
            """,
            (UNQUEUED_WEBHOOK_GRACE_MINUTES, limit),
        )
        rows = await cur.fetchall()

    queue = JobQueue(conn)
    requeued = 0
    for row in rows:
        job_id = await queue.enqueue(
            JOB_TYPE_WEBHOOK_PROCESSING,
            {"webhookId": row["webhook_id"], "payload": row["payload"]},
            max_attempts=max_job_attempts(),
        )
        await conn.execute(
            """
            UPDATE terra_webhooks_raw
            SET status = 'enqueued', job_id = %s, error_message = NULL
            WHERE webhook_id = %s
            """,
            (job_id, row["webhook_id"]),
        )
        requeued += 1

    if requeued:
        logger.info("Re-enqueued %d stuck webhook(s)", requeued)
    return requeued
