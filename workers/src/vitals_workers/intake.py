"""Inbound Terra webhook intake: signature check, dedup id, persist + enqueue.

Data events are stored verbatim in terra_webhooks_raw and handed to the job
queue; duplicate deliveries of the same webhook id are no-ops. Auth events
maintain the terra_tokens mapping directly.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.types.json import Json

from .errors import SignatureError
from .config import max_job_attempts
from .job_contracts import EVENT_TYPES, JOB_TYPE_WEBHOOK_PROCESSING
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

AUTH_EVENT_TYPES = frozenset({"auth", "reauth"})
DEAUTH_EVENT_TYPES = frozenset({"deauth", "access_revoked"})


@dataclass(frozen=True)
class IntakeResult:
    webhook_id: str
    event_type: str
    status: str
    job_id: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "webhook_id": self.webhook_id,
            "type": self.event_type,
            "status": self.status,
            "job_id": self.job_id,
        }


def _parse_signature_header(header: str) -> tuple[str, str]:
    parts: dict[str, str] = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key] = value
    timestamp = parts.get("t")
    signature = parts.get("v1")
    if not timestamp or not signature:
        raise SignatureError("Malformed signature header")
    return timestamp, signature


def verify_terra_signature(raw_body: bytes, header: str | None, secret: str | None) -> None:
    """Raise SignatureError unless the HMAC-SHA256 signature matches.

    Terra signs either "<t>.<body>" or "<t><body>"; both are accepted.
    """
    if not secret:
        raise SignatureError("Signing secret is not configured")
    if not header:
        raise SignatureError("Missing signature header")

    timestamp, received = _parse_signature_header(header)
    for separator in (b".", b""):
        message = timestamp.encode() + separator + raw_body
        expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
        if hmac.compare_digest(expected, received.lower()):
            return
    raise SignatureError("Signature mismatch")


def derive_webhook_id(payload: dict[str, Any]) -> str:
    """Idempotency key for a delivery. Deterministic for identical payloads."""
    event_type = str(payload.get("type") or "unknown").lower()
    user = payload.get("user") if isinstance(payload.get("user"), dict) else {}

    if event_type in AUTH_EVENT_TYPES:
        reference = user.get("reference_id") or payload.get("reference_id") or "unknown"
        provider = str(user.get("provider") or "unknown").upper()
        return f"{event_type}_{reference}_{provider}_{user.get('user_id') or 'unknown'}"

    reference_id = payload.get("reference_id")
    if isinstance(reference_id, str) and reference_id.strip():
        return reference_id.strip()

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"{event_type}_{hashlib.sha256(canonical.encode()).hexdigest()[:32]}"


async def _store_auth(conn: psycopg.AsyncConnection[Any], event_type: str, payload: dict[str, Any]) -> str:
    user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
    provider = str(user.get("provider") or "").upper()
    terra_user_id = user.get("user_id")
    reference_id = user.get("reference_id") or payload.get("reference_id")

    if event_type in DEAUTH_EVENT_TYPES:
        if terra_user_id:
            await conn.execute(
                "UPDATE terra_tokens SET is_active = FALSE, updated_at = NOW() WHERE terra_user_id = %s",
                (terra_user_id,),
            )
        return "deauthorized"

    if not provider or not terra_user_id or not reference_id:
        raise ValueError(f"{event_type} webhook missing provider, user_id or reference_id")

    await conn.execute(
        """
        INSERT INTO terra_tokens (user_id, provider, terra_user_id, is_active, created_at, updated_at)
        VALUES (%s, %s, %s, TRUE, NOW(), NOW())
        ON CONFLICT (user_id, provider) DO UPDATE SET
            terra_user_id = EXCLUDED.terra_user_id,
            is_active = TRUE,
            updated_at = NOW()
        """,
        (reference_id, provider, terra_user_id),
    )
    logger.info("Linked Terra user %s (%s) to %s", terra_user_id, provider, reference_id)
    return "linked"


async def ingest_webhook(conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]) -> IntakeResult:
    """Persist one verified webhook and enqueue its processing job."""
    event_type = str(payload.get("type") or "").strip().lower()
    webhook_id = derive_webhook_id(payload)

    if event_type in AUTH_EVENT_TYPES or event_type in DEAUTH_EVENT_TYPES:
        status = await _store_auth(conn, event_type, payload)
        return IntakeResult(webhook_id, event_type, status)

    if event_type not in EVENT_TYPES:
        logger.info("Ignoring Terra webhook type=%s (webhook_id=%s)", event_type, webhook_id)
        return IntakeResult(webhook_id, event_type, "ignored")

    user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO terra_webhooks_raw (webhook_id, type, terra_user_id, provider, payload, status)
            VALUES (%s, %s, %s, %s, %s, 'pending')
            ON CONFLICT (webhook_id) DO NOTHING
            """,
            (webhook_id, event_type, user.get("user_id"), user.get("provider"), Json(payload)),
        )
        inserted = cur.rowcount

    if not inserted:
        logger.info("Duplicate webhook ignored (webhook_id=%s)", webhook_id)
        return IntakeResult(webhook_id, event_type, "duplicate")

    job_id = await JobQueue(conn).enqueue(
        JOB_TYPE_WEBHOOK_PROCESSING,
        {"webhookId": webhook_id, "payload": payload},
        max_attempts=max_job_attempts(),
    )
    await conn.execute(
        "UPDATE terra_webhooks_raw SET status = 'enqueued', job_id = %s WHERE webhook_id = %s",
        (job_id, webhook_id),
    )
    logger.info(
        "Webhook stored and enqueued (webhook_id=%s, type=%s, job_id=%d)",
        webhook_id,
        event_type,
        job_id,
        extra={"vitals_webhook_id": webhook_id, "vitals_job_id": job_id},
    )
    return IntakeResult(webhook_id, event_type, "enqueued", job_id)


async def receive_webhook(
    conn: psycopg.AsyncConnection[Any],
    raw_body: bytes,
    signature_header: str | None,
    signing_secret: str | None,
) -> IntakeResult:
    """Verify, decode and ingest a raw HTTP webhook body."""
    verify_terra_signature(raw_body, signature_header, signing_secret)
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise ValueError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("Webhook body must be a JSON object")
    return await ingest_webhook(conn, payload)
