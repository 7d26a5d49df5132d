#!/usr/bin/env python3
"""Market snapshot cache, ticker parsing and the refresh feed."""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import market_cache
from arena_config import MarketConfig
from market_cache import MarketDataFeed, MarketSnapshotCache, parse_ticker_rows, trend_label
from models import MarketTicker


def test_parse_ticker_rows_keeps_usdt_pairs_with_prices() -> None:
    rows = [
        {"symbol": "BTCUSDT", "lastPrice": "70000.5", "priceChangePercent": "1.25"},
        {"symbol": "ETHBTC", "lastPrice": "0.05", "priceChangePercent": "0"},
        {"symbol": "DEADUSDT", "lastPrice": "0", "priceChangePercent": "0"},
        {"symbol": "BADUSDT", "lastPrice": "abc"},
        "junk",
    ]

    tickers = parse_ticker_rows(rows)

    assert tickers == [MarketTicker(symbol="BTCUSDT", price=70000.5, change_24h=1.25)]
    assert parse_ticker_rows({"not": "a list"}) == []


def test_trend_labels() -> None:
    assert trend_label(1.5) == "Strong Bullish"
    assert trend_label(0.5) == "Bullish"
    assert trend_label(0.0) == "Neutral"
    assert trend_label(-0.5) == "Bearish"
    assert trend_label(-2.0) == "Strong Bearish"


def test_snapshot_is_replaced_wholesale() -> None:
    cache = MarketSnapshotCache()
    cache.replace([MarketTicker("BTCUSDT", 1.0), MarketTicker("ETHUSDT", 2.0)], now=10.0)
    before = cache.snapshot

    cache.replace([MarketTicker("SOLUSDT", 3.0)], now=20.0)

    assert len(before) == 2
    assert cache.price("btcusdt") is None
    assert cache.price("SOLUSDT") == 3.0
    assert cache.updated_at == 20.0
    assert cache.price_map() == {"SOLUSDT": 3.0}


def test_filter_empty_means_everything_sorted() -> None:
    cache = MarketSnapshotCache()
    cache.replace([MarketTicker("XRPUSDT", 1.0), MarketTicker("BTCUSDT", 2.0)])

    assert [t.symbol for t in cache.filter([])] == ["BTCUSDT", "XRPUSDT"]
    assert [t.symbol for t in cache.filter(["xrpusdt", "NOPEUSDT"])] == ["XRPUSDT"]


def test_failed_refresh_keeps_previous_snapshot(monkeypatch) -> None:
    cache = MarketSnapshotCache()
    cache.replace([MarketTicker("BTCUSDT", 1.0)], now=1.0)
    feed = MarketDataFeed(MarketConfig(), cache)

    async def _fail():
        raise RuntimeError("ticker feed HTTP 502")

    async def _empty():
        return []

    async def _fresh():
        return [MarketTicker("BTCUSDT", 2.0)]

    monkeypatch.setattr(feed, "fetch_tickers", _fail)
    assert asyncio.run(feed.refresh()) is False
    monkeypatch.setattr(feed, "fetch_tickers", _empty)
    assert asyncio.run(feed.refresh()) is False
    assert cache.price("BTCUSDT") == 1.0

    monkeypatch.setattr(feed, "fetch_tickers", _fresh)
    assert asyncio.run(feed.refresh()) is True
    assert cache.price("BTCUSDT") == 2.0


def test_symbol_precisions_from_exchange_info(monkeypatch) -> None:
    class _Resp:
        def raise_for_status(self):
            return None

        def json(self):
            return {
                "symbols": [
                    {"symbol": "BTCUSDT", "quantityPrecision": 3},
                    {"symbol": "DOGEUSDT", "filters": [{"filterType": "LOT_SIZE", "stepSize": "1"}]},
                    {"symbol": "SOLUSDT", "filters": [{"filterType": "LOT_SIZE", "stepSize": "0.01"}]},
                ]
            }

    monkeypatch.setattr(market_cache.requests, "get", lambda url, timeout: _Resp())

    precisions = market_cache.load_symbol_precisions_sync(MarketConfig())

    assert precisions == {"BTCUSDT": 3, "DOGEUSDT": 0, "SOLUSDT": 2}


def test_symbol_precisions_failure_returns_empty(monkeypatch) -> None:
    def _boom(url, timeout):
        raise market_cache.requests.ConnectionError("offline")

    monkeypatch.setattr(market_cache.requests, "get", _boom)

    assert market_cache.load_symbol_precisions_sync(MarketConfig()) == {}
