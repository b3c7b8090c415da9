"""Scheduled or on-demand stuck-work sweep as a job."""

from __future__ import annotations

from typing import Any

import psycopg

from ..config import stuck_timeout_minutes
from ..job_contracts import JOB_TYPE_RECOVER_STUCK, RecoverStuckPayload, parse_job_payload
from ..recovery import recover_stuck_work
from ..registry import register


@register(JOB_TYPE_RECOVER_STUCK)
async def handle_recover_stuck(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> dict[str, Any]:
    job = parse_job_payload(RecoverStuckPayload, payload, job_type=JOB_TYPE_RECOVER_STUCK)
    report = await recover_stuck_work(conn, job.timeout_minutes or stuck_timeout_minutes())
    return report.as_dict()
