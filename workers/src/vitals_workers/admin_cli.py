"""Operator CLI: schema setup, one-shot worker runs and recovery triggers."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from importlib import resources
from pathlib import Path
from typing import Any, Sequence

import psycopg

from .config import Config
from .intake import receive_webhook
from .job_contracts import JOB_TYPE_TERRA_BACKFILL, TerraBackfillPayload, parse_job_payload
from .job_queue import JobQueue
from .logging import setup_logging
from .recovery import recover_stuck_work, reset_stuck_jobs, retry_failed_jobs, retry_stuck_webhooks
from .worker import run_once

# Import handlers to register them
from . import handlers  # noqa: F401

MIGRATIONS_PACKAGE = "vitals_workers.migrations"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vitals-admin",
        description="Administrative triggers for the vitals ingestion pipeline.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Apply the bundled SQL migrations (idempotent).")

    run = sub.add_parser("run-once", help="Claim and process one bounded batch of jobs.")
    run.add_argument("--batch-size", type=int, default=None, help="Defaults to VITALS_BATCH_SIZE.")
    run.add_argument("--type", dest="job_type", default=None, help="Only claim jobs of this type.")

    stuck = sub.add_parser("reset-stuck-jobs", help="Reset jobs stuck in processing.")
    stuck.add_argument("--timeout-minutes", type=int, default=None)

    retry = sub.add_parser("retry-jobs", help="Requeue terminally failed jobs.")
    retry.add_argument("--type", dest="job_type", default=None)
    retry.add_argument("--job-id", type=int, default=None)

    webhooks = sub.add_parser("retry-stuck-webhooks", help="Re-enqueue failed or never-enqueued webhooks.")
    webhooks.add_argument("--limit", type=int, default=100)

    recover = sub.add_parser("recover", help="Full stuck-work sweep over jobs and webhooks.")
    recover.add_argument("--timeout-minutes", type=int, default=None)

    status = sub.add_parser("job-status", help="Show one job.")
    status.add_argument("job_id", type=int)

    ingest = sub.add_parser("ingest-webhook", help="Verify and ingest a raw Terra webhook body.")
    ingest.add_argument("path", help="File with the raw request body, or '-' for stdin.")
    ingest.add_argument("--signature", default=None, help="Value of the terra-signature header.")

    backfill = sub.add_parser("backfill", help="Enqueue a Terra historical backfill job.")
    backfill.add_argument("--user-id", required=True)
    backfill.add_argument("--provider", required=True)
    backfill.add_argument(
        "--data-type",
        action="append",
        dest="data_types",
        choices=("activity", "sleep", "body", "daily", "nutrition"),
        required=True,
    )
    backfill.add_argument("--start-date", required=True)
    backfill.add_argument("--end-date", required=True)
    return parser


async def init_db(conn: psycopg.AsyncConnection[Any]) -> list[str]:
    applied: list[str] = []
    files = sorted(
        (f for f in resources.files(MIGRATIONS_PACKAGE).iterdir() if f.name.endswith(".sql")),
        key=lambda f: f.name,
    )
    for migration in files:
        await conn.execute(migration.read_text(encoding="utf-8"))
        applied.append(migration.name)
    return applied


def _read_body(path: str) -> bytes:
    if path == "-":
        return sys.stdin.buffer.read()
    return Path(path).read_bytes()


async def _dispatch(conn: psycopg.AsyncConnection[Any], args: argparse.Namespace, config: Config) -> dict[str, Any]:
    command = args.command
    if command == "init-db":
        return {"applied": await init_db(conn)}
    if command == "run-once":
        report = await run_once(conn, args.batch_size or config.batch_size, job_type=args.job_type)
        return report.as_dict()
    if command == "reset-stuck-jobs":
        return {"count": await reset_stuck_jobs(conn, args.timeout_minutes or config.stuck_timeout_minutes)}
    if command == "retry-jobs":
        return {"count": await retry_failed_jobs(conn, job_type=args.job_type, job_id=args.job_id)}
    if command == "retry-stuck-webhooks":
        return {"processed": await retry_stuck_webhooks(conn, limit=args.limit)}
    if command == "recover":
        report = await recover_stuck_work(conn, args.timeout_minutes or config.stuck_timeout_minutes)
        return report.as_dict()
    if command == "job-status":
        job = await JobQueue(conn).get_status(args.job_id)
        if job is None:
            return {"job_id": args.job_id, "found": False}
        return {
            "job_id": job.id,
            "found": True,
            "job_type": job.job_type,
            "status": job.status,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "scheduled_at": job.scheduled_at,
            "error_message": job.error_message,
            "result": job.result,
        }
    if command == "ingest-webhook":
        result = await receive_webhook(
            conn, _read_body(args.path), args.signature, config.terra_signing_secret
        )
        return result.as_dict()
    if command == "backfill":
        payload = {
            "userId": args.user_id,
            "provider": args.provider,
            "dataTypes": args.data_types,
            "startDate": args.start_date,
            "endDate": args.end_date,
        }
        parse_job_payload(TerraBackfillPayload, payload, job_type=JOB_TYPE_TERRA_BACKFILL)
        job_id = await JobQueue(conn).enqueue(JOB_TYPE_TERRA_BACKFILL, payload, max_attempts=config.max_attempts)
        return {"job_id": job_id}
    raise ValueError(f"Unknown command: {command}")


async def _run(args: argparse.Namespace) -> int:
    config = Config.from_env()
    setup_logging(config.log_format)

    async with await psycopg.AsyncConnection.connect(config.database_url) as conn:
        result = await _dispatch(conn, args, config)
        await conn.commit()

    print(json.dumps(result, indent=2, sort_keys=True, default=str))
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
