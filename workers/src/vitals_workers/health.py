"""Minimal async HTTP endpoints for the worker container.

GET /health   -> DB probe + queue depth + in-memory metrics (503 when DB is down)
GET /metrics  -> in-memory metrics only

Uses raw asyncio.start_server, no web framework.
"""

import asyncio
import json
import logging
from typing import Any

import psycopg

from .metrics import get_metrics

logger = logging.getLogger(__name__)

_STATUS_LINES = {
    200: "HTTP/1.1 200 OK",
    404: "HTTP/1.1 404 Not Found",
    503: "HTTP/1.1 503 Service Unavailable",
}


async def _probe_db(db_url: str) -> tuple[str, dict[str, int]]:
    """SELECT 1 plus job counts by status, within 2s. Returns ('ok'|'error', counts)."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                await conn.execute("SELECT 1")
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT status, COUNT(*) FROM background_jobs
                        WHERE status IN ('pending', 'processing', 'failed')
                        GROUP BY status
                        """
                    )
                    rows = await cur.fetchall()
        return "ok", {str(status): int(count) for status, count in rows}
    except Exception:
        logger.debug("Health DB probe failed", exc_info=True)
        return "error", {}


def _response(status: int, body: dict[str, Any]) -> bytes:
    payload = json.dumps(body)
    return (
        f"{_STATUS_LINES[status]}\r\nContent-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n\r\n{payload}"
    ).encode()


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        if path == "/health":
            db_status, queue = await _probe_db(db_url)
            metrics = get_metrics()
            healthy = db_status == "ok"
            response = _response(
                200 if healthy else 503,
                {
                    "status": "ok" if healthy else "degraded",
                    "uptime_seconds": metrics["uptime_seconds"],
                    "db": db_status,
                    "queue": queue,
                    "metrics": metrics,
                },
            )
        elif path == "/metrics":
            response = _response(200, get_metrics())
        else:
            response = _response(404, {"error": "not_found"})

        writer.write(response)
        await writer.drain()
    except Exception:
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    """Start the health HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
