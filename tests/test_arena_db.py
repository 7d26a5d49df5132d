#!/usr/bin/env python3
"""ArenaDB storage regressions."""

import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from arena_db import ArenaDB
from models import DecisionLogEntry, HistorySummary, PortfolioSnapshot, Position, ProviderConfig, Trade


def _db() -> ArenaDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return ArenaDB(db_path)


def _bot_row(bot_id: str = "bot_a", owner: str = "alice", **kw) -> dict:
    row = {"id": bot_id, "owner_id": owner, "name": bot_id, "prompt": "p", "provider_id": "grok"}
    row.update(kw)
    return row


def test_provider_rows_keep_env_reference_not_key() -> None:
    db = _db()
    db.upsert_provider(
        ProviderConfig(
            id="grok",
            name="Grok",
            provider_type="grok",
            endpoint="https://api.x.ai/v1/chat/completions",
            model="grok-4",
            api_key_env="XAI_API_KEY",
            extra={"temperature": 0.2},
        )
    )

    providers = db.get_providers()

    assert providers["grok"].api_key_env == "XAI_API_KEY"
    assert providers["grok"].extra == {"temperature": 0.2}


def test_bot_rows_round_trip_flags_and_symbols() -> None:
    db = _db()
    db.upsert_bot(_bot_row(trading_symbols=["btcusdt", "ethusdt"], iterative=True))
    db.upsert_bot(_bot_row("bot_off", is_active=False))

    rows = db.get_bots()
    assert [r["id"] for r in rows] == ["bot_a"]
    assert rows[0]["trading_symbols"] == ["BTCUSDT", "ETHUSDT"]
    assert rows[0]["iterative"] is True
    assert len(db.get_bots(active_only=False)) == 2

    assert db.set_bot_paused("bot_a", True) is True
    assert db.get_bot("bot_a")["is_paused"] is True
    assert db.set_bot_paused("ghost", True) is False


def test_position_upsert_transitions_to_closed() -> None:
    db = _db()
    pos = Position(id="pos_1", bot_id="bot_a", symbol="BTCUSDT", side="LONG", entry_price=100.0, size=50.0, leverage=2)
    db.upsert_position(pos, "alice")
    assert db.update_unrealized_pnl({"pos_1": 4.5}) == 1
    assert db.get_open_positions("bot_a")[0].unrealized_pnl == 4.5

    pos.status = "closed"
    pos.exit_price = 110.0
    pos.realized_pnl = 10.0
    db.upsert_position(pos, "alice")

    assert db.get_open_positions("bot_a") == []
    assert db.update_unrealized_pnl({"pos_1": 1.0}) == 0


def test_trade_insert_is_idempotent_and_aggregates_ledger() -> None:
    db = _db()
    opened = Trade(id="t1", bot_id="bot_a", position_id="p1", symbol="BTCUSDT", side="LONG",
                   action="open", price=100.0, size=200.0, leverage=5, timestamp=10.0)
    closed = Trade(id="t2", bot_id="bot_a", position_id="p1", symbol="BTCUSDT", side="LONG",
                   action="close", price=110.0, size=200.0, leverage=5, fee=6.0, pnl=94.0, timestamp=20.0)
    loser = Trade(id="t3", bot_id="bot_a", position_id="p2", symbol="ethusdt", side="SHORT",
                  action="close", price=10.0, size=100.0, leverage=1, pnl=-3.0, timestamp=30.0)
    for trade in (opened, closed, closed, loser):
        db.insert_trade(trade, "alice")

    agg = db.get_trade_aggregates("bot_a")

    assert agg["trade_rows"] == 3
    assert agg["opened_margin"] == 200.0
    assert agg["close_credits"] == 200.0 + 94.0 + 100.0 - 3.0
    assert agg["closes"] == 2
    assert agg["wins"] == 1
    assert [t.id for t in db.get_recent_trades("bot_a")] == ["t3", "t2", "t1"]
    assert db.get_last_close_times("bot_a") == {"BTCUSDT": 20.0, "ETHUSDT": 30.0}


def test_decision_log_ordering_and_counts() -> None:
    db = _db()
    ids = [
        db.insert_decision(
            DecisionLogEntry(bot_id="bot_a", prompt=f"p{i}", decisions=[{"action": "LONG"}], notes=[f"n{i}"], timestamp=float(i)),
            "alice",
        )
        for i in range(1, 6)
    ]

    assert db.count_decisions("bot_a") == 5
    assert [e.prompt for e in db.get_decisions_after("bot_a", ids[1])] == ["p3", "p4", "p5"]
    assert [e.prompt for e in db.get_decisions_after("bot_a", 0, limit=2)] == ["p1", "p2"]
    assert [e.prompt for e in db.get_recent_decisions("bot_a", 2)] == ["p5", "p4"]
    assert db.get_recent_decisions("bot_a", 1)[0].notes == ["n5"]
    assert db.latest_decision_timestamp() == 5.0


def test_history_summary_is_superseded_not_appended() -> None:
    db = _db()
    for count in (10, 25):
        db.upsert_history_summary(
            HistorySummary(bot_id="bot_a", text=f"covers {count}", count=count, first_timestamp=1.0,
                           last_timestamp=2.0, last_decision_id=count)
        )

    summary = db.get_history_summary("bot_a")
    assert summary.count == 25
    assert summary.text == "covers 25"
    assert db.get_history_summary("bot_b") is None


def test_reset_bot_data_clears_ledger_but_keeps_config() -> None:
    db = _db()
    db.upsert_bot(_bot_row())
    db.insert_trade(Trade(id="t1", bot_id="bot_a", position_id="p1", symbol="BTCUSDT", side="LONG",
                          action="open", price=1.0, size=50.0, leverage=1), "alice")
    db.insert_decision(DecisionLogEntry(bot_id="bot_a", prompt="x"), "alice")

    db.reset_bot_data("bot_a")

    assert db.get_recent_trades("bot_a") == []
    assert db.count_decisions("bot_a") == 0
    assert db.get_bot("bot_a") is not None


def test_settings_and_arena_state() -> None:
    db = _db()
    assert db.load_arena_state() is None
    db.save_arena_state({"bots": {"bot_a": {"balance": 1.0}}})
    db.set_system_setting("turn_interval_ms", 60000)

    assert db.load_arena_state() == {"bots": {"bot_a": {"balance": 1.0}}}
    assert db.get_system_settings() == {"turn_interval_ms": "60000"}


def _snap(db: ArenaDB, bot_id: str, ts: float) -> None:
    db.insert_snapshot(
        PortfolioSnapshot(bot_id=bot_id, balance=1.0, total_value=1.0, unrealized_pnl=0.0, realized_pnl=0.0,
                          trade_count=0, win_rate=0.0, position_count=0, timestamp=ts),
        "alice",
    )


def test_snapshot_retention_thins_by_age() -> None:
    db = _db()
    day, hour = 86400.0, 3600.0
    now = 200 * day
    recent = [now - 60, now - 120, now - 2 * day]
    hourly_bucket = now - 10 * day
    hourly = [hourly_bucket + 60, hourly_bucket + 120, hourly_bucket + 1800, hourly_bucket + hour + 10]
    daily_bucket = now - 40 * day
    daily = [daily_bucket + 100, daily_bucket + 5 * hour, daily_bucket + 20 * hour]
    for ts in recent + hourly + daily + [now - 100 * day]:
        _snap(db, "bot_a", ts)
    _snap(db, "bot_b", hourly_bucket + 300)

    deleted = db.prune_snapshots(now)

    assert deleted == {"old": 1, "daily": 2, "hourly": 2, "total": 5}
    kept = [s["timestamp"] for s in db.get_snapshots("bot_a")]
    assert kept == sorted([daily_bucket + 100, hourly_bucket + 60, hourly_bucket + hour + 10] + recent)
    assert [s["timestamp"] for s in db.get_snapshots("bot_b")] == [hourly_bucket + 300]
    assert db.prune_snapshots(now)["total"] == 0
