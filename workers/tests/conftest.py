"""Fake psycopg async connection shared by the unit tests.

Records every statement and replays scripted fetch results, so tests can
assert on the SQL a function issues without a database.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from vitals_workers.metrics import reset_metrics


class FakeTransaction:
    """Mimics psycopg's async transaction context manager (savepoint)."""

    def __init__(self, conn: "FakeConn") -> None:
        self._conn = conn

    async def __aenter__(self):
        self._conn.transactions_opened += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._conn.rollbacks += 1
        return False  # don't suppress exceptions


class FakeCursor:
    """Mimics psycopg's async cursor; shares scripted results with its connection."""

    def __init__(self, conn: "FakeConn") -> None:
        self._conn = conn
        self.rowcount = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def execute(self, sql: str, params: Any = None) -> None:
        await self._conn._record(sql, params)
        self.rowcount = self._conn.rowcounts.pop(0) if self._conn.rowcounts else 0

    async def fetchone(self) -> Any:
        return self._conn.fetchone_results.pop(0) if self._conn.fetchone_results else None

    async def fetchall(self) -> list[Any]:
        return self._conn.fetchall_results.pop(0) if self._conn.fetchall_results else []


class FakeConn:
    def __init__(self) -> None:
        self.executed: list[tuple[str, Any]] = []
        self.fetchone_results: list[Any] = []
        self.fetchall_results: list[list[Any]] = []
        self.rowcounts: list[int] = []
        self.fail_when: Callable[[str, Any], Exception | None] | None = None
        self.transactions_opened = 0
        self.rollbacks = 0
        self.commit = AsyncMock()
        self.rollback = AsyncMock()
        self.transaction = MagicMock(side_effect=lambda: FakeTransaction(self))
        self.cursor = MagicMock(side_effect=lambda **kwargs: FakeCursor(self))

    async def _record(self, sql: str, params: Any) -> None:
        self.executed.append((sql, params))
        if self.fail_when is not None:
            error = self.fail_when(sql, params)
            if error is not None:
                raise error

    async def execute(self, sql: str, params: Any = None) -> None:
        await self._record(sql, params)

    def statements(self, fragment: str) -> list[tuple[str, Any]]:
        """All recorded (sql, params) whose SQL contains `fragment`."""
        return [(sql, params) for sql, params in self.executed if fragment in sql]


@pytest.fixture
def fake_conn() -> FakeConn:
    return FakeConn()


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()
