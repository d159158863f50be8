"""ArchiveFetcher with httpx.MockTransport."""
from __future__ import annotations

import gzip
import tempfile

import pytest

from klinestore.data.archive import ArchiveFetcher, archive_url, month_ranges, parse_archive_row
from klinestore.errors import ParseError, TransportError

from fakes import ARCHIVE_BASE, FIVE_MIN, candles_between, make_kline, ts

SYM = "BTCUSDT"


class TestHelpers:
    def test_month_ranges_spans_year_boundary(self):
        assert month_ranges(ts(2023, 11, 15), ts(2024, 2, 1)) == [
            (2023, 11), (2023, 12), (2024, 1),
        ]

    def test_month_ranges_end_is_exclusive(self):
        assert month_ranges(ts(2024, 3, 1), ts(2024, 4, 1)) == [(2024, 3)]
        assert month_ranges(ts(2024, 3, 1), ts(2024, 4, 1, 0, 5)) == [(2024, 3), (2024, 4)]

    def test_archive_url_uses_last_day_of_month(self):
        assert archive_url("btcusdt", 2024, 2, "https://public.bybit.com/kline_for_metatrader4") == (
            "https://public.bybit.com/kline_for_metatrader4/BTCUSDT/2024/"
            "BTCUSDT_5_2024-02-01_2024-02-29.csv.gz"
        )

    def test_parse_row(self):
        k = parse_archive_row(["2024.03.01 00:05", "1", "2", "0.5", "1.5", "10"], "f.csv.gz", 1)
        assert k.open_time == ts(2024, 3, 1, 0, 5)
        assert (k.open, k.high, k.low, k.close, k.volume) == (1.0, 2.0, 0.5, 1.5, 10.0)

    @pytest.mark.parametrize(
        "row, reason",
        [
            (["2024.03.01 00:05", "1", "2", "0.5"], "expected 6 fields"),
            (["2024-03-01 00:05", "1", "2", "0.5", "1.5", "10"], "does not match format"),
            (["2024.03.01 00:05", "x", "2", "0.5", "1.5", "10"], "could not convert"),
            (["2024.03.01 00:07", "1", "2", "0.5", "1.5", "10"], "not aligned"),
            (["2024.03.01 00:05", "1", "0.9", "0.5", "1.5", "10"], "Inconsistent OHLC"),
        ],
    )
    def test_bad_rows_raise_parse_error(self, row, reason):
        with pytest.raises(ParseError, match=reason) as excinfo:
            parse_archive_row(row, "f.csv.gz", 42)
        assert excinfo.value.line == 42


class TestFetchMonth:
    async def test_stores_rows_inside_window(self, store, fake_bybit):
        month = candles_between(ts(2024, 3, 1), ts(2024, 3, 2))
        fake_bybit.add_archive(SYM, 2024, 3, month)
        start, end = ts(2024, 3, 1, 6), ts(2024, 3, 1, 12)

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE, batch_size=7)
            last = await fetcher.fetch_month(SYM, (2024, 3), start, end)

        assert last == end - FIVE_MIN
        rows = store.get_range(SYM, "5m", ts(2024, 3, 1), ts(2024, 3, 2))
        assert len(rows) == 72
        assert rows[0].open_time == start

    async def test_missing_archive_returns_none(self, store, fake_bybit):
        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            assert await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 1), ts(2024, 3, 2)) is None
        assert store.get_stats(SYM, "5m")["candle_count"] == 0

    async def test_no_rows_in_window_returns_none(self, store, fake_bybit):
        fake_bybit.add_archive(SYM, 2024, 3, candles_between(ts(2024, 3, 1), ts(2024, 3, 2)))

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            assert await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 5), ts(2024, 3, 6)) is None

    async def test_server_error_raises_transport_error(self, store, fake_bybit):
        url = archive_url(SYM, 2024, 3, ARCHIVE_BASE)
        fake_bybit.archive_status[url] = 503

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            with pytest.raises(TransportError) as excinfo:
                await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 1), ts(2024, 3, 2))
        assert excinfo.value.status_code == 503

    async def test_malformed_row_aborts_month_with_line_number(self, store, fake_bybit):
        good = "2024.03.01 00:00,1,2,0.5,1.5,10\n"
        bad  = "2024.03.01 00:05,1,2,0.5\n"
        fake_bybit.add_raw_archive(SYM, 2024, 3, gzip.compress((good + bad).encode()))

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            with pytest.raises(ParseError) as excinfo:
                await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 1), ts(2024, 3, 2))
        assert excinfo.value.line == 2
        assert "BTCUSDT_5_2024-03-01_2024-03-31.csv.gz" in excinfo.value.source

    async def test_corrupt_gzip_raises_parse_error(self, store, fake_bybit):
        fake_bybit.add_raw_archive(SYM, 2024, 3, b"definitely not gzip")

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            with pytest.raises(ParseError, match="corrupt archive"):
                await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 1), ts(2024, 3, 2))

    async def test_invalid_utf8_raises_parse_error(self, store, fake_bybit):
        body = b"\xff\xfe,1,2,0.5,1.5,10\n"
        fake_bybit.add_raw_archive(SYM, 2024, 3, gzip.compress(body))

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            with pytest.raises(ParseError, match="unreadable row") as excinfo:
                await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 1), ts(2024, 3, 2))
        assert excinfo.value.line == 1
        assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)

    async def test_temp_files_removed_on_success_and_failure(self, store, fake_bybit, tmp_path, monkeypatch):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch))
        fake_bybit.add_archive(SYM, 2024, 3, [make_kline(ts(2024, 3, 1))])
        fake_bybit.add_raw_archive(SYM, 2024, 4, b"broken")

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            await fetcher.fetch_month(SYM, (2024, 3), ts(2024, 3, 1), ts(2024, 4, 1))
            with pytest.raises(ParseError):
                await fetcher.fetch_month(SYM, (2024, 4), ts(2024, 4, 1), ts(2024, 5, 1))

        assert list(scratch.iterdir()) == []


class TestFetch:
    async def test_spans_months_and_returns_latest(self, store, fake_bybit):
        fake_bybit.add_archive(SYM, 2024, 2, candles_between(ts(2024, 2, 29), ts(2024, 3, 1)))
        fake_bybit.add_archive(SYM, 2024, 3, candles_between(ts(2024, 3, 1), ts(2024, 3, 1, 2)))

        async with fake_bybit.client() as client:
            fetcher = ArchiveFetcher(store, client=client, base_url=ARCHIVE_BASE)
            latest = await fetcher.fetch(SYM, ts(2024, 2, 29, 23), ts(2024, 3, 2))

        assert latest == ts(2024, 3, 1, 1, 55)
        assert len(fake_bybit.archive_calls) == 2
        assert store.get_stats(SYM, "5m")["candle_count"] == 12 + 24
