#!/usr/bin/env python3
"""Real-mode execution against a fake exchange gateway."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from arena_config import TradingConfig
from decision_parser import Decision
from errors import ExchangeError
from exchanges import AccountBalance, ExchangeAdapter, ExchangePosition, OrderResult
from logging_utils import get_logger
from market_cache import MarketSnapshotCache
from models import Bot, MarketTicker
from trade_executor import TradeExecutor

NOW = 1_700_000_000.0


class _FakeExchange(ExchangeAdapter):
    def __init__(self) -> None:
        super().__init__(get_logger("fake_exchange"))
        self.orders: List[Dict[str, Any]] = []
        self.leverage: Dict[str, int] = {}
        self.remote: Dict[str, ExchangePosition] = {}
        self.fail_orders = False
        self.fail_account = False
        self.balance = AccountBalance(asset="USDT", balance=1000.0, available=800.0, unrealized_pnl=12.5)

    async def initialize(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def get_account_balance(self) -> AccountBalance:
        if self.fail_account:
            raise ExchangeError("account endpoint down", kind="http_error")
        return self.balance

    async def get_position_risk(self) -> Dict[str, ExchangePosition]:
        return dict(self.remote)

    async def get_account_trades(self, symbol: Optional[str] = None, limit: int = 50):
        return []

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self.leverage[symbol] = leverage

    async def place_market_order(self, symbol, side, quantity, reduce_only=False) -> OrderResult:
        if self.fail_orders:
            raise ExchangeError("insufficient margin", kind="http_error")
        self.orders.append({"symbol": symbol, "side": side, "quantity": quantity, "reduce_only": reduce_only})
        return OrderResult(order_id=f"ord{len(self.orders)}", filled_quantity=quantity, avg_price=101.0, status="FILLED")

    async def place_stop_order(self, symbol, side, quantity, trigger_price, order_type="sl") -> OrderResult:
        self.orders.append({"symbol": symbol, "side": side, "quantity": quantity, "trigger": trigger_price, "type": order_type})
        return OrderResult(order_id=f"stop{len(self.orders)}")

    def quantity_precision(self, symbol: str) -> int:
        return 2


def _setup():
    market = MarketSnapshotCache()
    market.replace([MarketTicker(symbol="SOLUSDT", price=100.0)], now=NOW)
    exchange = _FakeExchange()
    executor = TradeExecutor(TradingConfig(minimum_trade_size_usd=50.0), market, exchange_for=lambda bot: exchange)
    bot = Bot(
        id="bot_live",
        owner_id="alice",
        name="Live",
        prompt="trade",
        provider_id="grok",
        trading_mode="real",
        balance=950.0,
        initial_balance=950.0,
    )
    return market, exchange, executor, bot


def test_real_open_places_orders_and_uses_fill_price() -> None:
    _, exchange, executor, bot = _setup()

    report = asyncio.run(
        executor.apply(
            bot,
            [Decision(action="LONG", symbol="SOLUSDT", size=100, leverage=3, stop_loss=95, take_profit=120)],
            now=NOW,
        )
    )

    assert report.executed == 1
    assert exchange.leverage == {"SOLUSDT": 3}
    market_order = exchange.orders[0]
    assert market_order["side"] == "BUY"
    assert market_order["quantity"] == 3.0
    assert [o.get("type") for o in exchange.orders[1:]] == ["sl", "tp"]
    assert all(o["side"] == "SELL" for o in exchange.orders[1:])
    pos = bot.open_positions[0]
    assert pos.entry_price == 101.0
    assert pos.exchange_order_id == "ord1"


def test_exchange_failure_rejects_decision_without_state_change() -> None:
    _, exchange, executor, bot = _setup()
    exchange.fail_orders = True

    report = asyncio.run(
        executor.apply(bot, [Decision(action="SHORT", symbol="SOLUSDT", size=100, leverage=2)], now=NOW)
    )

    assert report.executed == 0
    assert "exchange error: insufficient margin" in report.notes[0]
    assert bot.balance == 950.0
    assert bot.positions == []


def test_real_close_is_reduce_only() -> None:
    _, exchange, executor, bot = _setup()
    asyncio.run(executor.apply(bot, [Decision(action="SHORT", symbol="SOLUSDT", size=100, leverage=2)], now=NOW))

    report = asyncio.run(executor.apply(bot, [Decision(action="CLOSE", symbol="SOLUSDT")], now=NOW + 5))

    close_order = exchange.orders[-1]
    assert close_order["side"] == "BUY"
    assert close_order["reduce_only"] is True
    assert report.trades[0].action == "close"
    assert report.trades[0].fee == pytest.approx(100 * 0.0004)


def test_sync_takes_balance_from_exchange_and_settles_vanished_position() -> None:
    market, exchange, executor, bot = _setup()
    asyncio.run(executor.apply(bot, [Decision(action="LONG", symbol="SOLUSDT", size=100, leverage=2)], now=NOW))
    market.replace([MarketTicker(symbol="SOLUSDT", price=90.0)], now=NOW + 10)
    exchange.remote = {}

    report = asyncio.run(executor.sync_real_account(bot, now=NOW + 10))

    assert bot.open_positions == []
    assert len(report.trades) == 1
    assert report.trades[0].price == 90.0
    assert "no longer open on the exchange" in report.notes[0]
    assert bot.balance == 800.0
    assert bot.total_value == pytest.approx(1012.5)
    assert "SOLUSDT" in bot.cooldowns


def test_sync_updates_unrealized_from_position_risk() -> None:
    _, exchange, executor, bot = _setup()
    asyncio.run(executor.apply(bot, [Decision(action="LONG", symbol="SOLUSDT", size=100, leverage=2)], now=NOW))
    exchange.remote = {
        "SOLUSDT": ExchangePosition(symbol="SOLUSDT", side="LONG", quantity=1.98, entry_price=101.0, unrealized_pnl=7.0)
    }

    report = asyncio.run(executor.sync_real_account(bot, now=NOW + 10))

    assert report.trades == []
    assert bot.open_positions[0].unrealized_pnl == 7.0
    assert bot.unrealized_pnl == 7.0


def test_sync_failure_raises_and_keeps_state() -> None:
    _, exchange, executor, bot = _setup()
    exchange.fail_account = True

    with pytest.raises(ExchangeError):
        asyncio.run(executor.sync_real_account(bot, now=NOW))
    assert bot.balance == 950.0

    no_gateway = TradeExecutor(TradingConfig(), MarketSnapshotCache())
    with pytest.raises(ExchangeError) as excinfo:
        asyncio.run(no_gateway.sync_real_account(bot, now=NOW))
    assert excinfo.value.kind == "missing_exchange"
