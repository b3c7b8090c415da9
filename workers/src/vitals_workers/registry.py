import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

# Handler signature: async def handler(conn: AsyncConnection, payload: dict) -> dict | None
# The returned dict (if any) is stored as the job result.
HandlerFn = Callable[
    [psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[dict[str, Any] | None]
]

# One handler per job_type
_registry: dict[str, HandlerFn] = {}


def register(job_type: str) -> Callable[[HandlerFn], HandlerFn]:
    """Register a handler for a job_type (e.g. 'webhook_processing')."""

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = fn
        logger.info("Registered handler for job_type=%s", job_type)
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def registered_types() -> list[str]:
    return list(_registry.keys())


# Failure hook signature: async def hook(conn, payload, error: str, terminal: bool) -> None
# Runs after the job's own transaction has rolled back.
FailureHookFn = Callable[
    [psycopg.AsyncConnection[Any], dict[str, Any], str, bool], Awaitable[None]
]

_failure_hooks: dict[str, FailureHookFn] = {}


def register_failure_hook(job_type: str) -> Callable[[FailureHookFn], FailureHookFn]:
    """Register a callback run when a job of this type fails (retry or terminal)."""

    def decorator(fn: FailureHookFn) -> FailureHookFn:
        if job_type in _failure_hooks:
            raise ValueError(f"Duplicate failure hook for job_type={job_type!r}")
        _failure_hooks[job_type] = fn
        return fn

    return decorator


def get_failure_hook(job_type: str) -> FailureHookFn | None:
    return _failure_hooks.get(job_type)
