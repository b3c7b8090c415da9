import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any

import psycopg

from .config import Config
from .errors import is_retryable
from .job_queue import Job, JobQueue
from .metrics import (
    record_empty_poll,
    record_handler_invocation,
    record_job_completed,
    record_job_dead,
    record_job_failed,
)
from .recovery import recover_stuck_work
from .registry import get_failure_hook, get_handler

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "vitals_jobs"


@dataclass
class BatchReport:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
        }


async def _run_failure_hook(
    conn: psycopg.AsyncConnection[Any], job: Job, error: str, terminal: bool
) -> None:
    hook = get_failure_hook(job.job_type)
    if hook is None:
        return
    try:
        async with conn.transaction():
            await hook(conn, job.payload, error, terminal)
    except Exception:
        logger.exception("Failure hook for job %d (type=%s) raised", job.id, job.job_type)


async def process_job(
    conn: psycopg.AsyncConnection[Any], queue: JobQueue, job: Job, report: BatchReport
) -> None:
    """Run one claimed job. Handler work and completion share a transaction."""
    log_extra = {"vitals_job_id": job.id, "vitals_job_type": job.job_type}

    handler = get_handler(job.job_type)
    if handler is None:
        logger.warning("No handler for job_type=%s (job_id=%d)", job.job_type, job.id, extra=log_extra)
        await queue.fail(job.id, f"No handler for job_type={job.job_type}", retry=False)
        await conn.commit()
        record_job_dead()
        report.failed += 1
        return

    started = time.monotonic()
    try:
        async with conn.transaction():
            result = await handler(conn, job.payload)
            await queue.complete(job.id, result)
    except Exception as exc:
        # conn.transaction() already rolled back the handler's writes
        duration_ms = (time.monotonic() - started) * 1000
        record_handler_invocation(job.job_type, duration_ms, success=False)
        logger.exception(
            "Job %d failed (type=%s, attempts=%d/%d)",
            job.id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            extra=log_extra,
        )
        error = str(exc) or type(exc).__name__
        updated = await queue.fail(job.id, error, retry=is_retryable(exc))
        terminal = updated is None or updated.status == "failed"
        await _run_failure_hook(conn, job, error, terminal)
        await conn.commit()
        if terminal:
            record_job_dead()
            report.failed += 1
        else:
            record_job_failed()
            report.retried += 1
        return

    duration_ms = (time.monotonic() - started) * 1000
    record_handler_invocation(job.job_type, duration_ms, success=True)
    record_job_completed()
    report.completed += 1
    logger.info(
        "Job %d completed (type=%s, %.0fms)",
        job.id,
        job.job_type,
        duration_ms,
        extra={**log_extra, "vitals_duration_ms": round(duration_ms, 1)},
    )


async def run_once(
    conn: psycopg.AsyncConnection[Any],
    batch_size: int,
    *,
    job_type: str | None = None,
) -> BatchReport:
    """Claim and process up to batch_size jobs, one at a time.

    Safe to run from any number of processes at once: each claim is a
    compare-and-set, so a job is processed by at most one invocation. An empty
    queue is a normal outcome.
    """
    queue = JobQueue(conn)
    report = BatchReport()
    for _ in range(batch_size):
        job = await queue.dequeue(job_type)
        # Commit the claim immediately so it survives a crash.
        await conn.commit()
        if job is None:
            break
        report.claimed += 1
        await process_job(conn, queue, job, report)

    if report.claimed == 0:
        record_empty_poll()
    return report


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Main entry point: run listen + poll + recovery loops until shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, stuck_timeout=%dmin)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            self.config.stuck_timeout_minutes,
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("Worker LISTEN uses dedicated database URL")

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())
            tg.create_task(self._recovery_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def _wait_or_shutdown(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    async def _listen_loop(self) -> None:
        """LISTEN on the jobs channel for instant wake-up on new jobs."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {NOTIFY_CHANNEL}")
                    logger.info("Listening on %s channel", NOTIFY_CHANNEL)

                    # Keep the connection across timeouts; reconnect only on loss.
                    while not self._shutdown.is_set():
                        gen = conn.notifies(timeout=self.config.poll_interval_seconds)
                        async for notify in gen:
                            logger.debug("NOTIFY received: %s", notify.payload)
                            await self._process_batch()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")

    async def _poll_loop(self) -> None:
        """Fallback polling loop; catches anything LISTEN misses and retries backed-off jobs."""
        while not self._shutdown.is_set():
            if await self._wait_or_shutdown(self.config.poll_interval_seconds):
                break
            await self._process_batch()

        logger.info("Poll loop stopped")

    async def _recovery_loop(self) -> None:
        """Periodic stuck-work sweep."""
        while not self._shutdown.is_set():
            await self._recover()
            if await self._wait_or_shutdown(self.config.recovery_interval_seconds):
                break

        logger.info("Recovery loop stopped")

    async def _recover(self) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                report = await recover_stuck_work(conn, self.config.stuck_timeout_minutes)
                await conn.commit()
            if report.jobs or report.webhooks:
                logger.info("Recovery sweep: %s", report.as_dict())
        except Exception:
            logger.exception("Error in recovery sweep")

    async def _process_batch(self) -> None:
        """Claim and process a batch of pending jobs."""
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                report = await run_once(conn, self.config.batch_size)
            if report.claimed:
                logger.info("Batch done: %s", report.as_dict())
        except Exception:
            logger.exception("Error in process_batch")
