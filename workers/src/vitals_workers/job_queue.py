"""Durable job queue on the background_jobs table.

Claiming is an explicit compare-and-set: the oldest eligible job is selected,
then moved to 'processing' only if it is still 'pending' at update time. Two
workers racing for the same row can never both claim it; the loser gets None.

Callers own transaction boundaries. Commit right after dequeue() so a claim
survives a worker crash (the recovery sweep reclaims it later).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")

_JOB_COLUMNS = """
    id, job_type, payload, status, attempts, max_attempts, scheduled_at,
    started_at, completed_at, error_message, result, created_at
"""


@dataclass(frozen=True)
class Job:
    id: int
    job_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Job":
        payload = row.get("payload")
        return cls(
            id=int(row["id"]),
            job_type=str(row["job_type"]),
            payload=payload if isinstance(payload, dict) else {},
            status=str(row["status"]),
            attempts=int(row.get("attempts") or 0),
            max_attempts=int(row.get("max_attempts") or DEFAULT_MAX_ATTEMPTS),
            scheduled_at=row.get("scheduled_at"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            error_message=row.get("error_message"),
            result=row.get("result"),
            created_at=row.get("created_at"),
        )

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts


def backoff_delay(attempts: int) -> timedelta:
    """Exponential retry delay: 2^attempts minutes (2, 4, 8, ...)."""
    return timedelta(minutes=2 ** max(0, attempts))


class JobQueue:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        scheduled_at: datetime | None = None,
    ) -> int:
        """Insert a pending job and return its id. Database errors propagate."""
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO background_jobs (job_type, payload, status, max_attempts, scheduled_at)
                VALUES (%s, %s, 'pending', %s, COALESCE(%s, NOW()))
                RETURNING id
                """,
                (job_type, Json(payload), max_attempts, scheduled_at),
            )
            row = await cur.fetchone()
        if row is None:
            raise RuntimeError(f"enqueue of {job_type} returned no id")
        job_id = int(row[0])
        logger.debug(
            "Enqueued job %d (type=%s)",
            job_id,
            job_type,
            extra={"vitals_job_id": job_id, "vitals_job_type": job_type},
        )
        return job_id

    async def dequeue(self, job_type: str | None = None) -> Job | None:
        """Claim the oldest eligible pending job, or return None.

        None covers both an empty queue and a lost claim race.
        """
        type_filter = "AND job_type = %s" if job_type is not None else ""
        params: tuple[Any, ...] = (job_type,) if job_type is not None else ()

        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"""
                SELECT id FROM background_jobs
                WHERE status = 'pending'
                  AND (scheduled_at IS NULL OR scheduled_at <= NOW())
                  {type_filter}
                ORDER BY created_at, id
                LIMIT 1
                """,
                params,
            )
            candidate = await cur.fetchone()
            if candidate is None:
                return None

            await cur.execute(
                f"""
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempts = attempts + 1
                WHERE id = %s AND status = 'pending'
                RETURNING {_JOB_COLUMNS}
                """,
                (candidate["id"],),
            )
            claimed = await cur.fetchone()

        if claimed is None:
            logger.debug("Lost claim race for job %s", candidate["id"])
            return None
        return Job.from_row(claimed)

    async def complete(self, job_id: int, result: dict[str, Any] | None = None) -> None:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'completed', result = %s, completed_at = NOW(), error_message = NULL
                WHERE id = %s
                """,
                (Json(result) if result is not None else None, job_id),
            )

    async def fail(self, job_id: int, error: str, *, retry: bool = True) -> Job | None:
        """Reschedule with backoff while attempts remain, otherwise fail terminally.

        attempts is never reset here; it was incremented by the claim.
        """
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT attempts, max_attempts FROM background_jobs WHERE id = %s FOR UPDATE",
                (job_id,),
            )
            current = await cur.fetchone()
            if current is None:
                logger.warning("Cannot fail job %d: not found", job_id)
                return None

            attempts = int(current["attempts"] or 0)
            max_attempts = int(current["max_attempts"] or DEFAULT_MAX_ATTEMPTS)

            if retry and attempts < max_attempts:
                delay = backoff_delay(attempts)
                await cur.execute(
                    f"""
                    UPDATE background_jobs
                    SET status = 'pending',
                        error_message = %s,
                        started_at = NULL,
                        scheduled_at = NOW() + make_interval(secs => %s)
                    WHERE id = %s
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (error, delay.total_seconds(), job_id),
                )
                logger.info(
                    "Job %d retrying in %ds (attempts=%d/%d)",
                    job_id,
                    int(delay.total_seconds()),
                    attempts,
                    max_attempts,
                    extra={"vitals_job_id": job_id},
                )
            else:
                await cur.execute(
                    f"""
                    UPDATE background_jobs
                    SET status = 'failed', error_message = %s, completed_at = NOW()
                    WHERE id = %s
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (error, job_id),
                )
                logger.error(
                    "Job %d failed terminally (attempts=%d/%d): %s",
                    job_id,
                    attempts,
                    max_attempts,
                    error,
                    extra={"vitals_job_id": job_id},
                )
            row = await cur.fetchone()
        return Job.from_row(row) if row is not None else None

    async def get_status(self, job_id: int) -> Job | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"SELECT {_JOB_COLUMNS} FROM background_jobs WHERE id = %s",
                (job_id,),
            )
            row = await cur.fetchone()
        return Job.from_row(row) if row is not None else None
