"""Turn one stored Terra webhook into unified metric observations."""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from ..ingestion import enqueue_confidence_followups, ingest_items, resolve_app_user, touch_freshness
from ..job_contracts import JOB_TYPE_WEBHOOK_PROCESSING, WebhookProcessingPayload, parse_job_payload
from ..registry import register, register_failure_hook

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 20


class UnresolvedUserError(LookupError):
    """No app user linked to the Terra user yet. Retryable: the auth webhook may still arrive."""


@register(JOB_TYPE_WEBHOOK_PROCESSING)
async def handle_webhook_processing(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> dict[str, Any]:
    job = parse_job_payload(WebhookProcessingPayload, payload, job_type=JOB_TYPE_WEBHOOK_PROCESSING)
    body = job.payload
    provider = body.user.provider

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE terra_webhooks_raw
            SET status = 'processing', started_at = NOW()
            WHERE webhook_id = %s
            RETURNING (created_at AT TIME ZONE 'UTC')::date AS received_on
            """,
            (job.webhook_id,),
        )
        row = await cur.fetchone()
    # Flat body scans carry no date: they count for the day Terra delivered them.
    received_on = row["received_on"] if row is not None else None

    user_id = await resolve_app_user(conn, body.user.user_id, body.user.reference_id)
    if user_id is None:
        raise UnresolvedUserError(
            f"No app user for Terra user {body.user.user_id} ({provider})"
        )

    outcome = await ingest_items(
        conn, user_id, provider, body.type, body.data, default_date=received_on
    )
    errors = [e.as_dict() for e in outcome.write.errors]

    if outcome.all_failed:
        raise RuntimeError(
            f"All {outcome.extracted} observations failed for webhook {job.webhook_id}: "
            f"{errors[0]['error'] if errors else 'unknown error'}"
        )

    await conn.execute(
        """
        UPDATE terra_webhooks_raw
        SET status = 'completed',
            processed_count = %s,
            processed_at = NOW(),
            error_message = %s
        WHERE webhook_id = %s
        """,
        (
            outcome.write.written,
            f"{outcome.write.failed} observation(s) failed" if errors else None,
            job.webhook_id,
        ),
    )

    if outcome.write.written:
        await touch_freshness(conn, user_id, provider, outcome.write.written)
        await enqueue_confidence_followups(conn, user_id, outcome.metric_dates)

    logger.info(
        "Webhook %s processed: %d written, %d failed (type=%s, provider=%s)",
        job.webhook_id,
        outcome.write.written,
        outcome.write.failed,
        body.type,
        provider,
        extra={"vitals_webhook_id": job.webhook_id, "vitals_user_id": user_id},
    )
    return {
        "processed_count": outcome.write.written,
        "failed_count": outcome.write.failed,
        "errors": errors[:MAX_STORED_ERRORS],
        "type": body.type,
        "user_id": user_id,
    }


@register_failure_hook(JOB_TYPE_WEBHOOK_PROCESSING)
async def mark_webhook_failed(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any], error: str, terminal: bool
) -> None:
    """Mirror the job outcome onto the raw webhook row."""
    webhook_id = payload.get("webhookId") if isinstance(payload, dict) else None
    if not webhook_id:
        return
    await conn.execute(
        """
        UPDATE terra_webhooks_raw
        SET status = %s, started_at = NULL, error_message = %s
        WHERE webhook_id = %s
        """,
        ("failed" if terminal else "enqueued", error, webhook_id),
    )
