"""Thin async client for the Terra data API (historical pulls for backfill)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any

import httpx

from .config import Config
from .errors import TerraApiError

logger = logging.getLogger(__name__)

# Sleep before each retry; len() is the retry count.
RETRY_DELAYS_SECONDS: tuple[float, ...] = (2.0, 5.0)

DATA_TYPE_ENDPOINTS = {
    "activity": "activity",
    "sleep": "sleep",
    "body": "body",
    "daily": "daily",
    "nutrition": "nutrition",
}


def _is_transient(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class TerraClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        dev_id: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "dev-id": dev_id,
                "x-api-key": api_key,
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Config) -> "TerraClient":
        if not config.terra_api_key or not config.terra_dev_id:
            raise RuntimeError("TERRA_API_KEY and TERRA_DEV_ID must be set for Terra API access")
        return cls(
            config.terra_api_url,
            config.terra_api_key,
            config.terra_dev_id,
            timeout=config.terra_timeout_seconds,
        )

    async def __aenter__(self) -> "TerraClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, path: str, params: dict[str, Any]) -> httpx.Response:
        """GET with bounded retries on transport errors, 429 and 5xx."""
        last_error = TerraApiError(f"Terra {path} request was not attempted")
        for attempt in range(len(RETRY_DELAYS_SECONDS) + 1):
            if attempt:
                delay = RETRY_DELAYS_SECONDS[attempt - 1]
                logger.info("Retrying Terra %s in %.0fs (%s)", path, delay, last_error)
                await self._sleep(delay)
            try:
                resp = await self._client.get(path, params=params)
            except httpx.HTTPError as exc:
                last_error = TerraApiError(f"Terra {path} request failed: {exc}")
                continue

            if resp.is_success:
                return resp
            error = TerraApiError(
                f"Terra {path} returned HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
            if not _is_transient(resp.status_code):
                raise error
            last_error = error

        raise last_error

    async def fetch_data(
        self,
        data_type: str,
        terra_user_id: str,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Fetch one data type for a Terra user; returns the webhook-shaped body."""
        endpoint = DATA_TYPE_ENDPOINTS.get(data_type)
        if endpoint is None:
            raise ValueError(f"Unsupported Terra data type: {data_type}")

        resp = await self._get_with_retry(
            f"/{endpoint}",
            {
                "user_id": terra_user_id,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "to_webhook": "false",
            },
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise TerraApiError(
                f"Terra /{endpoint} returned invalid JSON", status_code=resp.status_code
            ) from exc
        if not isinstance(body, dict):
            raise TerraApiError(f"Terra /{endpoint} returned unexpected body", status_code=resp.status_code)
        return body
