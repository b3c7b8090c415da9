"""Historical pull from the Terra API for one user/provider."""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from ..config import Config
from ..errors import JobValidationError
from ..ingestion import enqueue_confidence_followups, ingest_items, touch_freshness
from ..job_contracts import JOB_TYPE_TERRA_BACKFILL, TerraBackfillPayload, parse_job_payload
from ..registry import register
from ..terra_client import TerraClient

logger = logging.getLogger(__name__)


def _make_client() -> TerraClient:
    try:
        return TerraClient.from_config(Config.from_env())
    except RuntimeError as exc:
        raise JobValidationError(str(exc), code="terra_not_configured") from exc


async def _terra_user_for(
    conn: psycopg.AsyncConnection[Any], user_id: str, provider: str
) -> str | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT terra_user_id FROM terra_tokens
            WHERE user_id = %s AND provider = %s AND is_active
            ORDER BY updated_at DESC NULLS LAST
            LIMIT 1
            """,
            (user_id, provider.strip().upper()),
        )
        row = await cur.fetchone()
    return row["terra_user_id"] if row is not None else None


@register(JOB_TYPE_TERRA_BACKFILL)
async def handle_terra_backfill(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> dict[str, Any]:
    job = parse_job_payload(TerraBackfillPayload, payload, job_type=JOB_TYPE_TERRA_BACKFILL)

    terra_user_id = await _terra_user_for(conn, job.user_id, job.provider)
    if terra_user_id is None:
        raise JobValidationError(
            f"No active Terra connection for user {job.user_id} ({job.provider})",
            code="no_terra_connection",
        )

    per_type: dict[str, dict[str, int]] = {}
    metric_dates: dict[str, set] = {}
    written = 0

    async with _make_client() as client:
        for data_type in job.data_types:
            body = await client.fetch_data(data_type, terra_user_id, job.start_date, job.end_date)
            items = body.get("data")
            if isinstance(items, dict):
                items = [items]
            if not isinstance(items, list):
                items = []

            outcome = await ingest_items(
                conn, job.user_id, job.provider, data_type, items, default_date=job.end_date
            )
            per_type[data_type] = {
                "items": len(items),
                "written": outcome.write.written,
                "failed": outcome.write.failed,
            }
            written += outcome.write.written
            for metric_name, dates in outcome.metric_dates.items():
                metric_dates.setdefault(metric_name, set()).update(dates)

    await conn.execute(
        """
        UPDATE terra_tokens SET last_sync_date = NOW(), updated_at = NOW()
        WHERE user_id = %s AND provider = %s
        """,
        (job.user_id, job.provider.strip().upper()),
    )
    if written:
        await touch_freshness(conn, job.user_id, job.provider, written)
        await enqueue_confidence_followups(conn, job.user_id, metric_dates)

    logger.info(
        "Terra backfill for %s (%s) %s..%s: %d written",
        job.user_id,
        job.provider,
        job.start_date,
        job.end_date,
        written,
        extra={"vitals_user_id": job.user_id},
    )
    return {"user_id": job.user_id, "provider": job.provider, "written": written, "types": per_type}
