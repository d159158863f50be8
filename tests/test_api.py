"""HTTP layer through FastAPI's TestClient."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from klinestore.api.deps import get_backfill_service, get_store
from klinestore.app_factory import create_app
from klinestore.data.backfill import BackfillService
from klinestore.errors import TransportError

from fakes import FIVE_MIN, candles_between, ts

SYM = "BTCUSDT"
T0  = ts(2024, 3, 1)


@pytest.fixture
def archive() -> AsyncMock:
    fetcher = AsyncMock()
    fetcher.fetch.return_value = None
    return fetcher


@pytest.fixture
def service(store, archive) -> BackfillService:
    live = AsyncMock()
    live.fetch.return_value = 0
    return BackfillService(store=store, archive=archive, live=live)


@pytest.fixture
def client(store, service):
    app = create_app()
    app.dependency_overrides[get_store]            = lambda: store
    app.dependency_overrides[get_backfill_service] = lambda: service
    with TestClient(app) as c:
        yield c


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["service"] == "klinestore"


class TestPriceKlines:
    def test_returns_inclusive_range(self, client, store):
        store.upsert_many(SYM, "5m", candles_between(T0, T0 + 12 * FIVE_MIN))

        resp = client.get("/api/price-klines", params={
            "symbol": "btcusdt", "timeframe": "5m",
            "start": "2024-03-01T00:05:00Z", "end": "2024-03-01T00:15:00+00:00",
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["symbol"] == SYM
        assert body["count"] == 3
        assert [k["time"] for k in body["klines"]] == [T0 + 300, T0 + 600, T0 + 900]
        assert body["klines"][0]["timestamp"] == "2024-03-01T00:05:00+00:00"

    def test_unknown_timeframe_is_400(self, client):
        resp = client.get("/api/price-klines", params={
            "symbol": SYM, "timeframe": "7m",
            "start": "2024-03-01T00:00:00Z", "end": "2024-03-02T00:00:00Z",
        })
        assert resp.status_code == 400

    def test_naive_datetime_is_400(self, client):
        resp = client.get("/api/price-klines", params={
            "symbol": SYM, "start": "2024-03-01T00:00:00", "end": "2024-03-02T00:00:00Z",
        })
        assert resp.status_code == 400
        assert "timezone" in resp.json()["detail"]

    def test_missing_parameter_is_400(self, client):
        resp = client.get("/api/price-klines", params={"symbol": SYM})
        assert resp.status_code == 400


class TestBackfillEndpoints:
    def test_successful_run_returns_progress(self, client):
        resp = client.post("/api/backfill", json={
            "symbol": "btcusdt", "start": "2024-03-01T00:00:00Z",
            "end": "2024-03-11T00:00:00Z", "batchSize": 5,
        })

        assert resp.status_code == 200
        progress = resp.json()["progress"]
        assert progress["symbol"] == SYM
        assert progress["status"] == "completed"
        assert progress["total"] == 2
        assert progress["gaps_remaining"] == 1

    def test_empty_symbol_is_400(self, client):
        resp = client.post("/api/backfill", json={
            "symbol": "", "start": "2024-03-01T00:00:00Z", "end": "2024-03-02T00:00:00Z",
        })
        assert resp.status_code == 400

    def test_inverted_window_is_400(self, client):
        resp = client.post("/api/backfill", json={
            "symbol": SYM, "start": "2024-03-02T00:00:00Z", "end": "2024-03-01T00:00:00Z",
        })
        assert resp.status_code == 400

    def test_transport_failure_is_502_and_recorded(self, client, archive):
        archive.fetch.side_effect = TransportError("Archive download failed: HTTP 503", status_code=503)

        resp = client.post("/api/backfill", json={
            "symbol": SYM, "start": "2024-03-01T00:00:00Z", "end": "2024-03-02T00:00:00Z",
        })

        assert resp.status_code == 502
        runs = client.get("/api/backfill/status").json()["runs"]
        assert runs[0]["status"] == "failed"
        assert "503" in runs[0]["last_error"]

    def test_running_symbol_is_409(self):
        busy = MagicMock(spec=BackfillService)
        busy.is_running.return_value = True
        app = create_app()
        app.dependency_overrides[get_backfill_service] = lambda: busy

        with TestClient(app) as c:
            resp = c.post("/api/backfill", json={
                "symbol": SYM, "start": "2024-03-01T00:00:00Z", "end": "2024-03-02T00:00:00Z",
            })

        assert resp.status_code == 409
        busy.start_backfill.assert_not_called()

    def test_gaps_reports_missing_candles(self, client, store):
        store.upsert_many(SYM, "5m", candles_between(T0, T0 + 6 * FIVE_MIN))

        body = client.get("/api/backfill/gaps", params={
            "symbol": SYM, "start": "2024-03-01T00:00:00Z", "end": "2024-03-01T01:00:00Z",
        }).json()

        assert body["count"] == 1
        assert body["missing_candles"] == 6
        assert body["gaps"][0]["start"] == T0 + 6 * FIVE_MIN

    def test_status_lists_runs_newest_first(self, client):
        for day in (1, 5):
            client.post("/api/backfill", json={
                "symbol": SYM, "start": f"2024-03-0{day}T00:00:00Z", "end": f"2024-03-0{day + 1}T00:00:00Z",
            })

        runs = client.get("/api/backfill/status", params={"limit": 5}).json()["runs"]

        assert len(runs) == 2
        assert runs[0]["range_start"] == "2024-03-05T00:00:00+00:00"
