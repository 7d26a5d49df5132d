#!/usr/bin/env python3
"""
Persistence reconciler.

The durable store is the system of record; in-memory Bot objects are a
rehydrated cache. `rehydrate_bot` is a pure function of stored rows, so
loading the same rows twice yields identical state.

Writes during operation are best-effort: a failed write is logged as a
PersistenceError and never rolls back the in-memory trade or turn.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from arena_config import TradingConfig
from arena_db import ArenaDB
from errors import PersistenceError
from logging_utils import get_logger
from models import (
    Bot,
    DecisionLogEntry,
    HistorySummary,
    Position,
    Trade,
)
from trade_executor import ExecutionReport

log = get_logger("reconciler")


@dataclass
class BotRows:
    """Everything the store holds for one bot, as loaded."""
    config: Dict[str, Any]
    positions: List[Position] = field(default_factory=list)
    recent_trades: List[Trade] = field(default_factory=list)
    aggregates: Dict[str, Any] = field(default_factory=dict)
    last_close_times: Dict[str, float] = field(default_factory=dict)
    recent_decisions: List[DecisionLogEntry] = field(default_factory=list)
    summary: Optional[HistorySummary] = None
    snapshots: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_ledger(self) -> bool:
        return bool(self.positions or self.recent_trades or self.recent_decisions)


def load_bot_rows(db: ArenaDB, config_row: Dict[str, Any], trading: TradingConfig) -> BotRows:
    bot_id = config_row["id"]
    return BotRows(
        config=dict(config_row),
        positions=db.get_open_positions(bot_id),
        recent_trades=db.get_recent_trades(bot_id, trading.max_recent_trades),
        aggregates=db.get_trade_aggregates(bot_id),
        last_close_times=db.get_last_close_times(bot_id),
        recent_decisions=db.get_recent_decisions(bot_id, trading.max_bot_logs),
        summary=db.get_history_summary(bot_id),
        snapshots=db.get_snapshots(bot_id, trading.max_value_history),
    )


def _base_bot(cfg: Dict[str, Any], trading: TradingConfig) -> Bot:
    mode = str(cfg.get("trading_mode") or "paper").lower()
    initial = cfg.get("initial_balance")
    initial_balance = float(initial) if initial is not None else trading.initial_balance_for(mode)
    return Bot(
        id=str(cfg["id"]),
        owner_id=str(cfg["owner_id"]),
        name=str(cfg.get("name") or cfg["id"]),
        prompt=str(cfg.get("prompt") or ""),
        provider_id=str(cfg.get("provider_id") or ""),
        trading_mode=mode,
        is_paused=bool(cfg.get("is_paused", False)),
        is_active=bool(cfg.get("is_active", True)),
        iterative=bool(cfg.get("iterative", False)),
        trading_symbols=[str(s).upper() for s in (cfg.get("trading_symbols") or [])],
        exchange_key_env=cfg.get("exchange_key_env"),
        exchange_secret_env=cfg.get("exchange_secret_env"),
        balance=initial_balance,
        initial_balance=initial_balance,
    )


def _apply_fallback_state(bot: Bot, state: Dict[str, Any]) -> None:
    bot.balance = float(state.get("balance", bot.balance))
    bot.positions = [Position.from_dict(p) for p in state.get("positions") or [] if p.get("status", "open") == "open"]
    bot.recent_trades = [Trade.from_dict(t) for t in state.get("recent_trades") or []]
    bot.cooldowns = {str(k).upper(): float(v) for k, v in (state.get("cooldowns") or {}).items()}
    bot.value_history = list(state.get("value_history") or [])
    bot.trade_count = int(state.get("trade_count") or 0)
    bot.win_rate = float(state.get("win_rate") or 0.0)
    bot.realized_pnl = float(state.get("realized_pnl") or 0.0)


def rehydrate_bot(
    rows: BotRows,
    trading: TradingConfig,
    fallback_state: Optional[Dict[str, Any]] = None,
) -> Bot:
    """Rebuild a bot's working state from stored rows. Pure and deterministic."""
    bot = _base_bot(rows.config, trading)

    if rows.has_ledger:
        agg = rows.aggregates or {}
        opened = float(agg.get("opened_margin") or 0.0)
        credits = float(agg.get("close_credits") or 0.0)
        closes = int(agg.get("closes") or 0)
        wins = int(agg.get("wins") or 0)
        bot.balance = bot.initial_balance - opened + credits
        bot.trade_count = closes
        bot.win_rate = (wins / closes) if closes else 0.0
        bot.realized_pnl = float(agg.get("realized_pnl") or 0.0)
        bot.positions = [Position.from_dict(p.to_dict()) for p in rows.positions]
        bot.recent_trades = [Trade.from_dict(t.to_dict()) for t in rows.recent_trades]
        cooldown_sec = trading.symbol_cooldown_ms / 1000.0
        bot.cooldowns = {sym: ts + cooldown_sec for sym, ts in sorted(rows.last_close_times.items())}
    elif fallback_state:
        _apply_fallback_state(bot, fallback_state)

    bot.bot_logs = [DecisionLogEntry.from_dict(e.to_dict()) for e in rows.recent_decisions]
    if rows.recent_decisions:
        bot.last_decision_at = max(e.timestamp for e in rows.recent_decisions)
    if rows.snapshots:
        bot.value_history = [
            {"timestamp": float(s["timestamp"]), "value": float(s["total_value"])} for s in rows.snapshots
        ]
    bot.history_summary = HistorySummary.from_dict(rows.summary.to_dict()) if rows.summary else None
    bot.recompute_totals()
    return bot


class PersistenceReconciler:
    def __init__(self, db: ArenaDB, trading: TradingConfig) -> None:
        self.db = db
        self.trading = trading

    async def _best_effort(self, label: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as exc:
            err = PersistenceError(f"{label} failed: {exc}")
            log.warning(err.as_note())
            return None

    # ------------------------------------------------------------ startup
    async def load_bot(self, config_row: Dict[str, Any], arena_state: Optional[Dict[str, Any]] = None) -> Bot:
        rows = await asyncio.to_thread(load_bot_rows, self.db, config_row, self.trading)
        fallback = None
        if arena_state:
            fallback = (arena_state.get("bots") or {}).get(config_row["id"])
        bot = rehydrate_bot(rows, self.trading, fallback)
        source = "ledger" if rows.has_ledger else ("snapshot" if fallback else "fresh")
        log.info(
            f"Rehydrated bot {bot.id} ({bot.name}) from {source}: balance=${bot.balance:.2f} "
            f"open={len(bot.open_positions)} trades={bot.trade_count}"
        )
        return bot

    async def load_bots(self) -> List[Bot]:
        rows = await asyncio.to_thread(self.db.get_bots, True)
        arena_state = await asyncio.to_thread(self.db.load_arena_state)
        bots = []
        for row in rows:
            bots.append(await self.load_bot(row, arena_state))
        return bots

    # ------------------------------------------------------------ writes
    async def record_execution(self, bot: Bot, report: ExecutionReport) -> None:
        """Write positions then trades; each write stands alone."""
        for position in report.positions:
            await self._best_effort(f"position write {position.id}", self.db.upsert_position, position, bot.owner_id)
        for trade in report.trades:
            await self._best_effort(f"trade write {trade.id}", self.db.insert_trade, trade, bot.owner_id)

    async def record_decision(self, bot: Bot, entry: DecisionLogEntry) -> Optional[int]:
        entry_id = await self._best_effort(f"decision write for {bot.id}", self.db.insert_decision, entry, bot.owner_id)
        if entry_id is not None:
            entry.id = int(entry_id)
        return entry_id

    async def record_mark_to_market(self, updates: Dict[str, float]) -> None:
        if updates:
            await self._best_effort("mark-to-market write", self.db.update_unrealized_pnl, updates)

    async def record_snapshots(self, bots: Iterable[Bot], now: float) -> None:
        """Portfolio snapshot rows for analytics plus the serialized arena state."""
        state: Dict[str, Any] = {"saved_at": now, "bots": {}}
        for bot in bots:
            await self._best_effort(f"snapshot write for {bot.id}", self.db.insert_snapshot, bot.snapshot(now), bot.owner_id)
            state["bots"][bot.id] = bot.to_state()
        await self._best_effort("arena state write", self.db.save_arena_state, state)

    async def prune_snapshots(self, now: float) -> Optional[Dict[str, int]]:
        deleted = await self._best_effort("snapshot cleanup", self.db.prune_snapshots, now)
        if deleted:
            log.info(
                f"Snapshot cleanup: deleted {deleted['total']} rows "
                f"({deleted['old']} expired, {deleted['daily']} daily, {deleted['hourly']} hourly)"
            )
        return deleted

    async def record_pause(self, bot: Bot) -> None:
        await self._best_effort(f"pause flag for {bot.id}", self.db.set_bot_paused, bot.id, bot.is_paused)

    async def record_reset(self, bot: Bot) -> None:
        await self._best_effort(f"reset of {bot.id}", self.db.reset_bot_data, bot.id)
        # Keep the snapshot fallback from resurrecting pre-reset state.
        state = await self._best_effort("arena state read", self.db.load_arena_state) or {"bots": {}}
        state.setdefault("bots", {})[bot.id] = bot.to_state()
        await self._best_effort("arena state write", self.db.save_arena_state, state)
