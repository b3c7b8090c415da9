"""Unit tests for worker dispatch: completion, retry classification and failure hooks."""

from unittest.mock import AsyncMock

import pytest

from vitals_workers import registry
from vitals_workers.errors import JobValidationError, TerraApiError
from vitals_workers.job_queue import Job
from vitals_workers.metrics import get_metrics
from vitals_workers.worker import BatchReport, process_job, run_once


def _job(job_type="test.job", attempts=1, max_attempts=3, payload=None):
    return Job(
        id=11,
        job_type=job_type,
        payload=payload if payload is not None else {"k": "v"},
        status="processing",
        attempts=attempts,
        max_attempts=max_attempts,
    )


def _queue(fail_status="pending"):
    queue = AsyncMock()
    queue.fail = AsyncMock(
        return_value=Job(id=11, job_type="test.job", payload={}, status=fail_status, attempts=1, max_attempts=3)
    )
    return queue


@pytest.fixture
def handlers(monkeypatch):
    """Temporarily register test handlers/hooks."""
    registered = {}

    def add(job_type, fn, hook=None):
        monkeypatch.setitem(registry._registry, job_type, fn)
        if hook is not None:
            monkeypatch.setitem(registry._failure_hooks, job_type, hook)
        registered[job_type] = fn

    return add


class TestProcessJob:
    @pytest.mark.asyncio
    async def test_success_completes_inside_transaction(self, fake_conn, handlers):
        handler = AsyncMock(return_value={"processed_count": 2})
        handlers("test.job", handler)
        queue = _queue()
        report = BatchReport()

        await process_job(fake_conn, queue, _job(), report)

        handler.assert_awaited_once_with(fake_conn, {"k": "v"})
        queue.complete.assert_awaited_once_with(11, {"processed_count": 2})
        queue.fail.assert_not_called()
        assert fake_conn.transactions_opened == 1
        assert report.completed == 1
        metrics = get_metrics()
        assert metrics["jobs_processed"] == 1
        assert metrics["handlers"]["test.job"]["successes"] == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, fake_conn, handlers):
        handlers("test.job", AsyncMock(side_effect=RuntimeError("connection reset")))
        queue = _queue(fail_status="pending")
        report = BatchReport()

        await process_job(fake_conn, queue, _job(), report)

        queue.complete.assert_not_called()
        queue.fail.assert_awaited_once_with(11, "connection reset", retry=True)
        fake_conn.commit.assert_awaited()
        assert fake_conn.rollbacks == 1
        assert report.retried == 1
        assert get_metrics()["jobs_failed"] == 1

    @pytest.mark.asyncio
    async def test_validation_error_is_not_retried(self, fake_conn, handlers):
        handlers("test.job", AsyncMock(side_effect=JobValidationError("missing user_id")))
        queue = _queue(fail_status="failed")
        report = BatchReport()

        await process_job(fake_conn, queue, _job(), report)

        queue.fail.assert_awaited_once_with(11, "missing user_id", retry=False)
        assert report.failed == 1
        assert get_metrics()["jobs_dead"] == 1

    @pytest.mark.asyncio
    async def test_vendor_client_error_is_not_retried(self, fake_conn, handlers):
        handlers("test.job", AsyncMock(side_effect=TerraApiError("forbidden", status_code=403)))
        queue = _queue(fail_status="failed")

        await process_job(fake_conn, queue, _job(), BatchReport())

        assert queue.fail.await_args.kwargs["retry"] is False

    @pytest.mark.asyncio
    async def test_vendor_server_error_is_retried(self, fake_conn, handlers):
        handlers("test.job", AsyncMock(side_effect=TerraApiError("bad gateway", status_code=502)))
        queue = _queue()

        await process_job(fake_conn, queue, _job(), BatchReport())

        assert queue.fail.await_args.kwargs["retry"] is True

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_without_retry(self, fake_conn):
        queue = _queue(fail_status="failed")
        report = BatchReport()

        await process_job(fake_conn, queue, _job(job_type="no.such.type"), report)

        queue.fail.assert_awaited_once()
        assert queue.fail.await_args.kwargs["retry"] is False
        assert "No handler" in queue.fail.await_args.args[1]
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_failure_hook_sees_terminal_flag(self, fake_conn, handlers):
        hook = AsyncMock()
        handlers("test.job", AsyncMock(side_effect=RuntimeError("boom")), hook)
        queue = _queue(fail_status="failed")

        await process_job(fake_conn, queue, _job(payload={"webhookId": "wh-1"}), BatchReport())

        hook.assert_awaited_once_with(fake_conn, {"webhookId": "wh-1"}, "boom", True)

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_escape(self, fake_conn, handlers):
        hook = AsyncMock(side_effect=RuntimeError("hook broke"))
        handlers("test.job", AsyncMock(side_effect=RuntimeError("boom")), hook)
        report = BatchReport()

        await process_job(fake_conn, _queue(), _job(), report)

        assert report.retried == 1


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_empty_queue_is_a_normal_outcome(self, fake_conn):
        report = await run_once(fake_conn, batch_size=10)

        assert report.as_dict() == {"claimed": 0, "completed": 0, "retried": 0, "failed": 0}
        fake_conn.commit.assert_awaited()
        assert get_metrics()["jobs_empty_polls"] == 1

    @pytest.mark.asyncio
    async def test_processes_claimed_jobs_until_queue_is_empty(self, fake_conn, handlers):
        handlers("test.job", AsyncMock(return_value=None))
        row = {
            "id": 11,
            "job_type": "test.job",
            "payload": {},
            "status": "processing",
            "attempts": 1,
            "max_attempts": 3,
        }
        # select -> claim for the first job, then an empty select.
        fake_conn.fetchone_results = [{"id": 11}, row, None]

        report = await run_once(fake_conn, batch_size=10)

        assert report.claimed == 1
        assert report.completed == 1
        assert fake_conn.statements("status = 'completed'")

    @pytest.mark.asyncio
    async def test_batch_size_bounds_claims(self, fake_conn, handlers):
        handlers("test.job", AsyncMock(return_value=None))
        row = {"id": 11, "job_type": "test.job", "payload": {}, "status": "processing", "attempts": 1, "max_attempts": 3}
        fake_conn.fetchone_results = [{"id": 11}, row, {"id": 11}, row, {"id": 11}, row]

        report = await run_once(fake_conn, batch_size=2)

        assert report.claimed == 2
        assert len(fake_conn.statements("SET status = 'processing'")) == 2
