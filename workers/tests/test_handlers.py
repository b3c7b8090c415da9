"""Job handler tests against the fake connection (no database)."""

from datetime import date, datetime, timezone

import httpx
import pytest

from vitals_workers.errors import JobValidationError, is_retryable
from vitals_workers.handlers import confidence_calculation, terra_backfill
from vitals_workers.handlers.confidence_calculation import handle_confidence_calculation
from vitals_workers.handlers.maintenance import handle_recover_stuck
from vitals_workers.handlers.terra_backfill import handle_terra_backfill
from vitals_workers.handlers.webhook_processing import (
    UnresolvedUserError,
    handle_webhook_processing,
    mark_webhook_failed,
)
from vitals_workers.metrics import get_metrics
from vitals_workers.terra_client import TerraClient

BODY_ITEM = {"timestamp": "2026-03-01T07:00:00Z", "weight_kg": 80.5, "bmi": 24.1}
# RETURNING row of the status update that claims the stored webhook.
RECEIVED = {"received_on": date(2026, 3, 1)}


def _webhook_job(items=None, reference_id=None):
    user = {"user_id": "tu-1", "provider": "WITHINGS"}
    if reference_id is not None:
        user["reference_id"] = reference_id
    return {
        "webhookId": "wh-1",
        "payload": {"type": "body", "user": user, "data": [BODY_ITEM] if items is None else items},
    }


class TestWebhookProcessing:
    @pytest.mark.asyncio
    async def test_happy_path(self, fake_conn):
        fake_conn.fetchone_results = [RECEIVED, {"user_id": "user-1"}, (11,), (12,)]

        result = await handle_webhook_processing(fake_conn, _webhook_job())

        assert result["processed_count"] == 2
        assert result["failed_count"] == 0
        assert result["user_id"] == "user-1"
        assert result["type"] == "body"

        assert "SET status = 'processing'" in fake_conn.executed[0][0]
        upserts = fake_conn.statements("INSERT INTO unified_metrics")
        assert sorted(p[1] for _, p in upserts) == ["BMI", "Weight"]
        weight = next(p for _, p in upserts if p[1] == "Weight")
        assert weight[6] == "withings"
        assert weight[7] == "WITHINGS"
        assert weight[8] == "terra_withings_weight_2026-03-01"

        completed = fake_conn.statements("SET status = 'completed'")[0][1]
        assert completed == (2, None, "wh-1")
        assert fake_conn.statements("INSERT INTO data_freshness_tracking")

        followups = fake_conn.statements("INSERT INTO background_jobs")
        assert [p[1].obj for _, p in followups] == [
            {"user_id": "user-1", "metric_name": "BMI", "measurement_date": "2026-03-01"},
            {"user_id": "user-1", "metric_name": "Weight", "measurement_date": "2026-03-01"},
        ]
        assert get_metrics()["observations_written"] == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_reference_id(self, fake_conn):
        result = await handle_webhook_processing(fake_conn, _webhook_job(reference_id="user-9"))

        assert result["user_id"] == "user-9"

    @pytest.mark.asyncio
    async def test_unresolved_user_is_retryable_error(self, fake_conn):
        with pytest.raises(UnresolvedUserError):
            await handle_webhook_processing(fake_conn, _webhook_job())

        assert not fake_conn.statements("INSERT INTO unified_metrics")

    @pytest.mark.asyncio
    async def test_empty_extraction_completes_with_zero(self, fake_conn):
        fake_conn.fetchone_results = [RECEIVED, {"user_id": "user-1"}]

        result = await handle_webhook_processing(fake_conn, _webhook_job(items=[{"unrelated": True}]))

        assert result["processed_count"] == 0
        assert not fake_conn.statements("INSERT INTO background_jobs")
        assert fake_conn.statements("SET status = 'completed'")[0][1] == (0, None, "wh-1")

    @pytest.mark.asyncio
    async def test_all_observations_failing_raises(self, fake_conn):
        fake_conn.fetchone_results = [RECEIVED, {"user_id": "user-1"}]
        fake_conn.fail_when = (
            lambda sql, params: RuntimeError("check violation") if "unified_metrics" in sql else None
        )

        with pytest.raises(RuntimeError, match="All 2 observations failed"):
            await handle_webhook_processing(fake_conn, _webhook_job())

        assert not fake_conn.statements("SET status = 'completed'")

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, fake_conn):
        fake_conn.fetchone_results = [RECEIVED, {"user_id": "user-1"}, (11,)]
        fake_conn.fail_when = (
            lambda sql, params: RuntimeError("bad bmi")
            if "unified_metrics" in sql and params[1] == "BMI"
            else None
        )

        result = await handle_webhook_processing(fake_conn, _webhook_job())

        assert result["processed_count"] == 1
        assert result["failed_count"] == 1
        assert result["errors"][0]["metric_name"] == "BMI"
        completed = fake_conn.statements("SET status = 'completed'")[0][1]
        assert completed == (1, "1 observation(s) failed", "wh-1")

    @pytest.mark.asyncio
    async def test_undated_item_uses_delivery_day(self, fake_conn):
        fake_conn.fetchone_results = [{"received_on": date(2026, 3, 4)}, {"user_id": "user-1"}, (11,)]

        result = await handle_webhook_processing(fake_conn, _webhook_job(items=[{"weight_kg": 82.0}]))

        assert result["processed_count"] == 1
        assert "RETURNING" in fake_conn.executed[0][0]
        (_, weight), = fake_conn.statements("INSERT INTO unified_metrics")
        assert weight[1] == "Weight"
        assert weight[5] == date(2026, 3, 4)
        assert weight[8] == "terra_withings_weight_2026-03-04"

    @pytest.mark.asyncio
    async def test_failure_hook_mirrors_terminal_state(self, fake_conn):
        await mark_webhook_failed(fake_conn, {"webhookId": "wh-1"}, "boom", True)
        await mark_webhook_failed(fake_conn, {"webhookId": "wh-2"}, "try again", False)

        assert [p for _, p in fake_conn.executed] == [
            ("failed", "boom", "wh-1"),
            ("enqueued", "try again", "wh-2"),
        ]

    @pytest.mark.asyncio
    async def test_failure_hook_ignores_payload_without_id(self, fake_conn):
        await mark_webhook_failed(fake_conn, {}, "boom", True)

        assert fake_conn.executed == []


class TestConfidenceCalculation:
    def _row(self, source, value, day=date(2026, 3, 10)):
        return {
            "user_id": "user-1",
            "metric_name": "Weight",
            "category": "body",
            "value": value,
            "unit": "kg",
            "measurement_date": day,
            "source": source,
            "provider": source.upper(),
            "external_id": None,
            "priority": 2,
            "confidence_score": 50,
        }

    @pytest.fixture(autouse=True)
    def _fixed_clock(self, monkeypatch):
        monkeypatch.setattr(
            confidence_calculation,
            "_utcnow",
            lambda: datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_scores_and_caches_each_source(self, fake_conn):
        fake_conn.fetchall_results = [[self._row("garmin", 80.5), self._row("withings", 80.0)]]

        result = await handle_confidence_calculation(
            fake_conn, {"user_id": "user-1", "metric_name": "Weight", "measurement_date": "2026-03-10"}
        )

        assert result == {"user_id": "user-1", "metric_name": "Weight", "scored": 2}
        cache = fake_conn.statements("INSERT INTO metric_confidence_cache")
        assert [p[2] for _, p in cache] == ["garmin", "withings"]
        # 32 reliability + 18 freshness (12h) + 5 frequency + 20 agreement
        withings = cache[1][1]
        assert withings[4:9] == (75, 32, 18, 5, 20)

        updates = fake_conn.statements("UPDATE unified_metrics")
        assert updates[1][1][0] == 75
        assert updates[1][1][1].obj["total"] == 75

    @pytest.mark.asyncio
    async def test_filters_to_requested_date(self, fake_conn):
        fake_conn.fetchall_results = [[
            self._row("withings", 80.0, date(2026, 3, 9)),
            self._row("withings", 80.2, date(2026, 3, 10)),
        ]]

        result = await handle_confidence_calculation(
            fake_conn, {"user_id": "user-1", "metric_name": "Weight", "measurement_date": "2026-03-09"}
        )

        assert result["scored"] == 1
        assert fake_conn.statements("INSERT INTO metric_confidence_cache")[0][1][3] == date(2026, 3, 9)

    @pytest.mark.asyncio
    async def test_window_query_bounds(self, fake_conn, monkeypatch):
        monkeypatch.setenv("VITALS_CONFIDENCE_WINDOW_DAYS", "7")

        await handle_confidence_calculation(fake_conn, {"user_id": "user-1", "metric_name": "Weight"})

        _, params = fake_conn.statements("FROM unified_metrics")[0]
        assert params == ("user-1", "Weight", date(2026, 3, 3), date(2026, 3, 11))

    @pytest.mark.asyncio
    async def test_scores_reading_dated_ahead_of_utc(self, fake_conn, monkeypatch):
        # 20:00 UTC is already the next morning for a wearer in UTC+10.
        monkeypatch.setattr(
            confidence_calculation,
            "_utcnow",
            lambda: datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc),
        )
        fake_conn.fetchall_results = [[self._row("oura", 7.5, date(2026, 3, 11))]]

        result = await handle_confidence_calculation(
            fake_conn, {"user_id": "user-1", "metric_name": "Weight", "measurement_date": "2026-03-11"}
        )

        _, params = fake_conn.statements("FROM unified_metrics")[0]
        assert params[3] >= date(2026, 3, 11)
        assert result["scored"] == 1
        cached = fake_conn.statements("INSERT INTO metric_confidence_cache")[0][1]
        assert cached[3] == date(2026, 3, 11)
        assert cached[7] == 5

    @pytest.mark.asyncio
    async def test_invalid_payload_is_validation_error(self, fake_conn):
        with pytest.raises(JobValidationError):
            await handle_confidence_calculation(fake_conn, {"metric_name": "Weight"})


class TestTerraBackfill:
    PAYLOAD = {
        "userId": "user-1",
        "provider": "withings",
        "dataTypes": ["body"],
        "startDate": "2026-03-01",
        "endDate": "2026-03-07",
    }

    def _install_client(self, monkeypatch, handler):
        async def _no_sleep(seconds):
            return None

        client = TerraClient(
            "https://api.example.test/v2/",
            "key",
            "dev",
            transport=httpx.MockTransport(handler),
            sleep=_no_sleep,
        )
        monkeypatch.setattr(terra_backfill, "_make_client", lambda: client)

    @pytest.mark.asyncio
    async def test_fetches_and_writes(self, fake_conn, monkeypatch):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"data": [BODY_ITEM]})

        self._install_client(monkeypatch, handler)
        fake_conn.fetchone_results = [{"terra_user_id": "tu-1"}, (21,), (22,)]

        result = await handle_terra_backfill(fake_conn, dict(self.PAYLOAD))

        assert result["written"] == 2
        assert result["types"] == {"body": {"items": 1, "written": 2, "failed": 0}}
        assert requests[0].url.params["user_id"] == "tu-1"
        lookup = fake_conn.statements("FROM terra_tokens")[0][1]
        assert lookup == ("user-1", "WITHINGS")
        assert fake_conn.statements("SET last_sync_date = NOW()")
        assert len(fake_conn.statements("INSERT INTO background_jobs")) == 2

    @pytest.mark.asyncio
    async def test_undated_items_land_on_end_date(self, fake_conn, monkeypatch):
        self._install_client(monkeypatch, lambda request: httpx.Response(200, json={"data": [{"weight_kg": 79.0}]}))
        fake_conn.fetchone_results = [{"terra_user_id": "tu-1"}, (21,)]

        result = await handle_terra_backfill(fake_conn, dict(self.PAYLOAD))

        assert result["written"] == 1
        (_, weight), = fake_conn.statements("INSERT INTO unified_metrics")
        assert weight[5] == date(2026, 3, 7)

    @pytest.mark.asyncio
    async def test_no_connection_is_not_retryable(self, fake_conn, monkeypatch):
        self._install_client(monkeypatch, lambda request: httpx.Response(500))

        with pytest.raises(JobValidationError) as excinfo:
            await handle_terra_backfill(fake_conn, dict(self.PAYLOAD))

        assert excinfo.value.code == "no_terra_connection"

    @pytest.mark.asyncio
    async def test_missing_terra_credentials_fail_terminally(self, fake_conn, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://unused")
        monkeypatch.delenv("TERRA_API_KEY", raising=False)
        monkeypatch.delenv("TERRA_DEV_ID", raising=False)
        fake_conn.fetchone_results = [{"terra_user_id": "tu-1"}]

        with pytest.raises(JobValidationError) as excinfo:
            await handle_terra_backfill(fake_conn, dict(self.PAYLOAD))

        assert excinfo.value.code == "terra_not_configured"
        assert not is_retryable(excinfo.value)
        assert not fake_conn.statements("INSERT INTO unified_metrics")


@pytest.mark.asyncio
async def test_recover_stuck_handler_reports_counts(fake_conn):
    fake_conn.rowcounts = [1, 0]

    result = await handle_recover_stuck(fake_conn, {"timeout_minutes": 5})

    assert result == {"reset_jobs": 1, "reset_webhooks": 0}
    assert fake_conn.executed[0][1] == (5,)
