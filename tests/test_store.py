"""TimeSeriesStore against a real SQLite file."""
from __future__ import annotations

import pytest
from sqlalchemy import text

from klinestore.data.store import Gap, TimeSeriesStore
from klinestore.data.timeframes import Kline
from klinestore.errors import StorageError, ValidationError

from fakes import FIVE_MIN, candles_between, make_kline, ts

SYM = "BTCUSDT"
T0  = ts(2024, 3, 1)


class TestUpsert:
    """Writes are validated, idempotent and last-write-wins."""

    def test_same_batch_twice_stores_identical_rows(self, store: TimeSeriesStore):
        batch = candles_between(T0, T0 + 12 * FIVE_MIN)

        assert store.upsert_many(SYM, "5m", batch) == 12
        first = store.get_range(SYM, "5m", T0, T0 + 11 * FIVE_MIN)
        assert store.upsert_many(SYM, "5m", batch) == 12
        second = store.get_range(SYM, "5m", T0, T0 + 11 * FIVE_MIN)

        assert first == second == batch
        assert store.get_stats(SYM, "5m")["candle_count"] == 12

    def test_reinsert_replaces_values(self, store):
        store.upsert_many(SYM, "5m", [make_kline(T0, price=100.0)])
        store.upsert_many(SYM, "5m", [make_kline(T0, price=200.0, volume=7.0)])

        rows = store.get_range(SYM, "5m", T0, T0)
        assert rows == [make_kline(T0, price=200.0, volume=7.0)]

    def test_large_batch_is_sharded_but_complete(self, store):
        batch = candles_between(T0, T0 + 250 * FIVE_MIN)

        assert store.upsert_many(SYM, "5m", batch) == 250
        assert store.get_stats(SYM, "5m")["candle_count"] == 250

    def test_empty_batch_rejected(self, store):
        with pytest.raises(ValidationError):
            store.upsert_many(SYM, "5m", [])

    def test_unknown_timeframe_rejected(self, store):
        with pytest.raises(ValidationError):
            store.upsert_many(SYM, "2m", [make_kline(T0)])

    def test_misaligned_timestamp_rejects_whole_batch(self, store):
        batch = [make_kline(T0), make_kline(T0 + 60)]

        with pytest.raises(ValidationError, match="not aligned"):
            store.upsert_many(SYM, "5m", batch)
        assert store.get_range(SYM, "5m", T0, T0 + FIVE_MIN) == []

    def test_inconsistent_ohlc_rejected(self, store):
        bad = Kline(open_time=T0, open=100.0, high=99.0, low=98.0, close=100.0, volume=1.0)
        with pytest.raises(ValidationError, match="Inconsistent OHLC"):
            store.upsert_many(SYM, "5m", [bad])

    def test_negative_volume_rejected(self, store):
        bad = Kline(open_time=T0, open=100.0, high=101.0, low=99.0, close=100.0, volume=-1.0)
        with pytest.raises(ValidationError, match="Negative volume"):
            store.upsert_many(SYM, "5m", [bad])

    def test_partitions_are_independent(self, store):
        store.upsert_many(SYM, "5m", [make_kline(T0)])
        store.upsert_many("ETHUSDT", "5m", [make_kline(T0, price=5.0)])

        assert store.get_range(SYM, "5m", T0, T0)[0].open == 100.0
        assert store.get_range("ETHUSDT", "5m", T0, T0)[0].open == 5.0


class TestReadDelete:
    def test_get_range_inclusive_and_ascending(self, store):
        batch = candles_between(T0, T0 + 10 * FIVE_MIN)
        store.upsert_many(SYM, "5m", list(reversed(batch)))

        rows = store.get_range(SYM, "5m", T0 + FIVE_MIN, T0 + 3 * FIVE_MIN)
        assert [r.open_time for r in rows] == [T0 + FIVE_MIN, T0 + 2 * FIVE_MIN, T0 + 3 * FIVE_MIN]

    def test_get_range_empty(self, store):
        assert store.get_range(SYM, "5m", T0, T0 + 3600) == []

    def test_get_klines_validates(self, store):
        with pytest.raises(ValidationError):
            store.get_klines(SYM, "7m", T0, T0 + 3600)
        with pytest.raises(ValidationError):
            store.get_klines(SYM, "5m", T0 + 3600, T0)
        with pytest.raises(ValidationError):
            store.get_klines("", "5m", T0, T0 + 3600)

    def test_delete_range_counts_rows(self, store):
        store.upsert_many(SYM, "5m", candles_between(T0, T0 + 10 * FIVE_MIN))

        assert store.delete_range(SYM, "5m", T0 + 2 * FIVE_MIN, T0 + 4 * FIVE_MIN) == 3
        assert store.get_stats(SYM, "5m")["candle_count"] == 7

    def test_get_stats_empty_partition(self, store):
        stats = store.get_stats(SYM, "5m")
        assert stats["candle_count"] == 0
        assert stats["oldest_candle"] is None


class TestFindGaps:
    def test_odd_slots_stored_even_slots_reported(self, store):
        slots = 20
        odd   = [make_kline(T0 + i * FIVE_MIN) for i in range(1, slots, 2)]
        store.upsert_many(SYM, "5m", odd)

        gaps = store.find_gaps(SYM, "5m", T0, T0 + slots * FIVE_MIN)

        expected = [
            Gap(T0 + i * FIVE_MIN, T0 + (i + 1) * FIVE_MIN, FIVE_MIN)
            for i in range(0, slots, 2)
        ]
        assert gaps == expected
        assert all(g.missing_candles == 1 for g in gaps)

    def test_contiguous_misses_are_coalesced(self, store):
        stored = [make_kline(T0 + i * FIVE_MIN) for i in (0, 1, 5, 9)]
        store.upsert_many(SYM, "5m", stored)

        gaps = store.find_gaps(SYM, "5m", T0, T0 + 10 * FIVE_MIN)

        assert gaps == [
            Gap(T0 + 2 * FIVE_MIN, T0 + 5 * FIVE_MIN, FIVE_MIN),
            Gap(T0 + 6 * FIVE_MIN, T0 + 9 * FIVE_MIN, FIVE_MIN),
        ]
        assert [g.missing_candles for g in gaps] == [3, 3]

    def test_complete_window_has_no_gaps(self, store):
        store.upsert_many(SYM, "5m", candles_between(T0, T0 + 288 * FIVE_MIN))
        assert store.find_gaps(SYM, "5m", T0, T0 + 288 * FIVE_MIN) == []

    def test_empty_store_is_one_gap(self, store):
        gaps = store.find_gaps(SYM, "1h", T0, T0 + 24 * 3600)
        assert gaps == [Gap(T0, T0 + 24 * 3600, 3600)]
        assert gaps[0].missing_candles == 24

    def test_unaligned_start_uses_next_boundary(self, store):
        gaps = store.find_gaps(SYM, "5m", T0 + 10, T0 + 3 * FIVE_MIN)
        assert gaps == [Gap(T0 + FIVE_MIN, T0 + 3 * FIVE_MIN, FIVE_MIN)]

    def test_inverted_window_rejected(self, store):
        with pytest.raises(ValidationError):
            store.find_gaps(SYM, "5m", T0 + 3600, T0)


class TestRefreshAggregates:
    @pytest.fixture
    def hour_of_base(self, store):
        # price 100, 101, ... and volume 1, 2, ... per 5m candle
        batch = [make_kline(T0 + i * FIVE_MIN, price=100.0 + i, volume=i + 1.0) for i in range(12)]
        store.upsert_many(SYM, "5m", batch)
        return batch

    def test_buckets_first_open_extremes_last_close_sum_volume(self, store, hour_of_base):
        written = store.refresh_aggregates(SYM, ["15m", "1h"], T0, T0 + 3600)

        assert written == {"15m": 4, "1h": 1}
        first_15m = store.get_range(SYM, "15m", T0, T0)[0]
        assert first_15m == Kline(T0, open=100.0, high=103.0, low=99.0, close=102.5, volume=6.0)

        hour = store.get_range(SYM, "1h", T0, T0)[0]
        assert hour == Kline(T0, open=100.0, high=112.0, low=99.0, close=111.5, volume=78.0)

    def test_stale_daily_row_is_rebuilt(self, store, hour_of_base):
        store.upsert_many(SYM, "1d", [make_kline(T0, price=1.0, volume=999.0)])

        store.refresh_aggregates(SYM, ["1d"], T0 + 1800, T0 + 3600)

        day = store.get_range(SYM, "1d", T0, T0)
        assert day == [Kline(T0, open=100.0, high=112.0, low=99.0, close=111.5, volume=78.0)]

    def test_refresh_is_repeatable(self, store, hour_of_base):
        store.refresh_aggregates(SYM, ["15m"], T0, T0 + 3600)
        store.refresh_aggregates(SYM, ["15m"], T0, T0 + 3600)
        assert store.get_stats(SYM, "15m")["candle_count"] == 4

    def test_base_timeframe_cannot_be_refreshed(self, store):
        with pytest.raises(ValidationError):
            store.refresh_aggregates(SYM, ["5m"], T0, T0 + 3600)


class TestStorageErrors:
    def test_driver_error_is_wrapped(self, store, db):
        with db.begin() as conn:
            conn.execute(text("DROP TABLE candle"))

        with pytest.raises(StorageError) as excinfo:
            store.get_range(SYM, "5m", T0, T0 + 3600)
        assert excinfo.value.__cause__ is not None
