#!/usr/bin/env python3
"""
Market snapshot cache and the periodic market-data feed.

The cache holds the latest pull of tradable-symbol prices. Each refresh
replaces the whole snapshot at once; readers never see a partial update.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

import aiohttp
import requests

from arena_config import MarketConfig
from logging_utils import get_logger
from models import MarketTicker

log = get_logger("market_cache")

QUOTE_SUFFIX = "USDT"


def trend_label(change_24h: float) -> str:
    if change_24h > 1:
        return "Strong Bullish"
    if change_24h > 0.2:
        return "Bullish"
    if change_24h < -1:
        return "Strong Bearish"
    if change_24h < -0.2:
        return "Bearish"
    return "Neutral"


@dataclass(frozen=True)
class MarketSnapshot:
    tickers: Mapping[str, MarketTicker] = field(default_factory=dict)
    updated_at: float = 0.0

    def __len__(self) -> int:
        return len(self.tickers)


class MarketSnapshotCache:
    """Latest market snapshot; replaced wholesale, read-only in between."""

    def __init__(self) -> None:
        self._snapshot = MarketSnapshot()

    @property
    def snapshot(self) -> MarketSnapshot:
        return self._snapshot

    @property
    def updated_at(self) -> float:
        return self._snapshot.updated_at

    def replace(self, tickers: Iterable[MarketTicker], now: Optional[float] = None) -> MarketSnapshot:
        by_symbol = {t.symbol.upper(): t for t in tickers if t.price > 0}
        snap = MarketSnapshot(tickers=dict(by_symbol), updated_at=time.time() if now is None else now)
        self._snapshot = snap
        return snap

    def get(self, symbol: str) -> Optional[MarketTicker]:
        return self._snapshot.tickers.get(str(symbol or "").upper())

    def price(self, symbol: str) -> Optional[float]:
        ticker = self.get(symbol)
        return ticker.price if ticker else None

    def price_map(self) -> Dict[str, float]:
        return {sym: t.price for sym, t in self._snapshot.tickers.items()}

    def filter(self, symbols: Optional[Iterable[str]]) -> List[MarketTicker]:
        """Tickers for the permitted symbols; an empty list permits everything."""
        tickers = self._snapshot.tickers
        wanted = [str(s).upper() for s in (symbols or []) if s]
        if not wanted:
            return [tickers[s] for s in sorted(tickers)]
        return [tickers[s] for s in wanted if s in tickers]


def parse_ticker_rows(rows: object) -> List[MarketTicker]:
    """Map 24hr ticker rows ({symbol, lastPrice, priceChangePercent}) to tickers."""
    out: List[MarketTicker] = []
    if not isinstance(rows, list):
        return out
    for row in rows:
        if not isinstance(row, dict):
            continue
        symbol = str(row.get("symbol") or "").upper()
        if not symbol.endswith(QUOTE_SUFFIX):
            continue
        try:
            price = float(row.get("lastPrice") or 0.0)
            change = float(row.get("priceChangePercent") or 0.0)
        except (TypeError, ValueError):
            continue
        if price <= 0:
            continue
        out.append(MarketTicker(symbol=symbol, price=price, change_24h=change))
    return out


class MarketDataFeed:
    """Pulls 24hr tickers over HTTP and refreshes a MarketSnapshotCache."""

    def __init__(
        self,
        config: MarketConfig,
        cache: MarketSnapshotCache,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.cache = cache
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def fetch_tickers(self) -> List[MarketTicker]:
        session = await self._get_session()
        url = f"{self.config.base_url}{self.config.ticker_path}"
        async with session.get(
            url, timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec)
        ) as resp:
            if resp.status != 200:
                raise RuntimeError(f"ticker feed HTTP {resp.status}")
            data = await resp.json(content_type=None)
        return parse_ticker_rows(data)

    async def refresh(self) -> bool:
        """Replace the snapshot. On any failure the previous snapshot stays."""
        try:
            tickers = await self.fetch_tickers()
        except Exception as exc:
            log.warning(f"Market refresh failed, keeping previous snapshot: {exc}")
            return False
        if not tickers:
            log.warning("Market refresh returned no tickers, keeping previous snapshot")
            return False
        self.cache.replace(tickers)
        log.debug(f"Market snapshot refreshed: {len(tickers)} symbols")
        return True


def _step_precision(step: str) -> int:
    """'0.001' -> 3, '1' -> 0."""
    try:
        value = float(step)
    except (TypeError, ValueError):
        return 0
    if value <= 0 or value >= 1:
        return 0
    return max(0, int(round(-math.log10(value))))


def load_symbol_precisions_sync(config: MarketConfig) -> Dict[str, int]:
    """Quantity precision per symbol from exchangeInfo (startup, blocking).

    Safe to call before the event loop starts; returns {} on failure.
    """
    url = f"{config.base_url}{config.exchange_info_path}"
    try:
        resp = requests.get(url, timeout=config.request_timeout_sec)
        resp.raise_for_status()
        data = resp.json()
    except Exception as exc:
        log.warning(f"exchangeInfo fetch failed: {exc}")
        return {}

    precisions: Dict[str, int] = {}
    for sym in data.get("symbols", []) if isinstance(data, dict) else []:
        if not isinstance(sym, dict) or not sym.get("symbol"):
            continue
        precision = sym.get("quantityPrecision")
        if precision is None:
            for flt in sym.get("filters") or []:
                if isinstance(flt, dict) and flt.get("filterType") == "LOT_SIZE":
                    precision = _step_precision(str(flt.get("stepSize") or "1"))
                    break
        precisions[str(sym["symbol"]).upper()] = int(precision or 0)
    log.info(f"Loaded quantity precision for {len(precisions)} symbols")
    return precisions
