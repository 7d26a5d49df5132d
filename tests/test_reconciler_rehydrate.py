#!/usr/bin/env python3
"""Rehydration from stored rows and best-effort writes."""

import asyncio
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from arena_config import TradingConfig
from arena_db import ArenaDB
from market_cache import MarketSnapshotCache
from models import Bot, DecisionLogEntry, Position, Trade
from reconciler import BotRows, PersistenceReconciler, rehydrate_bot
from trade_executor import ExecutionReport, TradeExecutor


def _db() -> ArenaDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return ArenaDB(db_path)


def _seed_ledger(db: ArenaDB) -> None:
    db.upsert_bot({"id": "bot_a", "owner_id": "alice", "name": "A", "prompt": "p", "provider_id": "grok"})
    for trade in (
        Trade(id="t1", bot_id="bot_a", position_id="p1", symbol="BTCUSDT", side="LONG",
              action="open", price=69_500.0, size=2000.0, leverage=10, timestamp=50.0),
        Trade(id="t2", bot_id="bot_a", position_id="p1", symbol="BTCUSDT", side="LONG",
              action="close", price=70_500.0, size=2000.0, leverage=10, fee=60.0, pnl=227.77, timestamp=100.0),
        Trade(id="t3", bot_id="bot_a", position_id="p2", symbol="ETHUSDT", side="SHORT",
              action="open", price=2000.0, size=100.0, leverage=5, timestamp=120.0),
    ):
        db.insert_trade(trade, "alice")
    db.upsert_position(
        Position(id="p2", bot_id="bot_a", symbol="ETHUSDT", side="SHORT", entry_price=2000.0,
                 size=100.0, leverage=5, opened_at=120.0, unrealized_pnl=-2.5),
        "alice",
    )
    db.insert_decision(DecisionLogEntry(bot_id="bot_a", prompt="turn", timestamp=130.0), "alice")


def test_balance_and_cooldowns_are_rebuilt_from_the_ledger() -> None:
    db = _db()
    _seed_ledger(db)
    trading = TradingConfig(symbol_cooldown_ms=1_800_000)
    reconciler = PersistenceReconciler(db, trading)

    bot = asyncio.run(reconciler.load_bot(db.get_bot("bot_a")))

    assert bot.initial_balance == 10_000.0
    assert bot.balance == pytest.approx(10_000.0 - 2100.0 + 2227.77)
    assert [p.id for p in bot.open_positions] == ["p2"]
    assert bot.unrealized_pnl == -2.5
    assert bot.total_value == pytest.approx(bot.balance + 100.0 - 2.5)
    assert bot.trade_count == 1
    assert bot.win_rate == 1.0
    assert bot.cooldowns == {"BTCUSDT": 100.0 + 1800.0}
    assert bot.last_decision_at == 130.0
    assert [t.id for t in bot.recent_trades] == ["t3", "t2", "t1"]


def test_loading_twice_is_idempotent() -> None:
    db = _db()
    _seed_ledger(db)
    reconciler = PersistenceReconciler(db, TradingConfig())

    first = asyncio.run(reconciler.load_bots())
    second = asyncio.run(reconciler.load_bots())

    assert [b.to_state() for b in first] == [b.to_state() for b in second]


def test_snapshot_fallback_only_without_ledger_rows() -> None:
    trading = TradingConfig()
    config = {"id": "bot_b", "owner_id": "bob", "provider_id": "grok", "trading_mode": "paper"}
    fallback = {
        "balance": 4_321.0,
        "positions": [
            {"id": "px", "bot_id": "bot_b", "symbol": "SOLUSDT", "side": "LONG", "entry_price": 100.0,
             "size": 60.0, "leverage": 2, "status": "open"},
            {"id": "py", "bot_id": "bot_b", "symbol": "SOLUSDT", "side": "LONG", "entry_price": 100.0,
             "size": 60.0, "leverage": 2, "status": "closed"},
        ],
        "cooldowns": {"solusdt": 999.0},
        "trade_count": 3,
        "win_rate": 2 / 3,
    }

    restored = rehydrate_bot(BotRows(config=config), trading, fallback)
    assert restored.balance == 4_321.0
    assert [p.id for p in restored.open_positions] == ["px"]
    assert restored.cooldowns == {"SOLUSDT": 999.0}
    assert restored.trade_count == 3

    ledger = BotRows(
        config=config,
        recent_trades=[Trade(id="t1", bot_id="bot_b", position_id="p", symbol="SOLUSDT", side="LONG",
                             action="open", price=100.0, size=60.0, leverage=2)],
        aggregates={"opened_margin": 60.0, "close_credits": 0.0, "closes": 0, "wins": 0},
    )
    from_ledger = rehydrate_bot(ledger, trading, fallback)
    assert from_ledger.balance == 10_000.0 - 60.0

    fresh = rehydrate_bot(BotRows(config=dict(config, trading_mode="real")), trading, None)
    assert fresh.balance == trading.live_initial_balance


def test_record_execution_survives_a_failed_write(monkeypatch) -> None:
    db = _db()
    reconciler = PersistenceReconciler(db, TradingConfig())
    bot = Bot(id="bot_a", owner_id="alice", name="A", prompt="", provider_id="grok")
    report = ExecutionReport(bot_id="bot_a")
    report.positions.append(
        Position(id="p1", bot_id="bot_a", symbol="BTCUSDT", side="LONG", entry_price=1.0, size=50.0, leverage=1)
    )
    report.trades.append(
        Trade(id="t1", bot_id="bot_a", position_id="p1", symbol="BTCUSDT", side="LONG",
              action="open", price=1.0, size=50.0, leverage=1)
    )

    def _boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "upsert_position", _boom)
    asyncio.run(reconciler.record_execution(bot, report))

    assert [t.id for t in db.get_recent_trades("bot_a")] == ["t1"]


def test_record_decision_assigns_store_id_and_reset_clears_rows() -> None:
    db = _db()
    _seed_ledger(db)
    reconciler = PersistenceReconciler(db, TradingConfig())
    bot = asyncio.run(reconciler.load_bot(db.get_bot("bot_a")))
    entry = DecisionLogEntry(bot_id="bot_a", prompt="next", timestamp=200.0)

    asyncio.run(reconciler.record_decision(bot, entry))
    assert entry.id == 2

    TradeExecutor(TradingConfig(), MarketSnapshotCache()).reset_bot(bot)
    asyncio.run(reconciler.record_reset(bot))
    reloaded = asyncio.run(reconciler.load_bot(db.get_bot("bot_a"), db.load_arena_state()))

    assert reloaded.balance == 10_000.0
    assert reloaded.open_positions == []
    assert reloaded.cooldowns == {}


def test_snapshot_cleanup_is_best_effort(monkeypatch) -> None:
    db = _db()
    reconciler = PersistenceReconciler(db, TradingConfig())
    bot = Bot(id="bot_a", owner_id="alice", name="A", prompt="", provider_id="grok")
    now = 200 * 86400.0
    asyncio.run(reconciler.record_snapshots([bot], now - 100 * 86400.0))

    assert asyncio.run(reconciler.prune_snapshots(now))["old"] == 1
    assert db.get_snapshots("bot_a") == []

    def _locked(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(db, "prune_snapshots", _locked)
    assert asyncio.run(reconciler.prune_snapshots(now)) is None
