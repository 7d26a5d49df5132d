#!/usr/bin/env python3
"""
Trade executor and position state machine.

Positions move open -> closed and nothing else. Opening debits exactly the
margin from the bot balance and writes one `open` trade; closing credits
margin + PnL - fee, writes one `close` trade and starts the symbol cooldown.

Guardrail violations come back as notes on the ExecutionReport; the executor
never raises for a rejected decision.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from arena_config import TradingConfig
from decision_parser import ACTION_CLOSE, ACTION_LONG, Decision
from errors import ExchangeError, ValidationError
from exchanges import ExchangeAdapter, floor_quantity
from logging_utils import bot_logger, get_logger
from market_cache import MarketSnapshotCache
from models import (
    ACTION_CLOSE as TRADE_CLOSE,
    ACTION_OPEN as TRADE_OPEN,
    SIDE_LONG,
    SIDE_SHORT,
    STATUS_CLOSED,
    Bot,
    Position,
    Trade,
    liquidation_price,
    new_id,
)

log = get_logger("trade_executor")


@dataclass
class ExecutionReport:
    """What one batch of decisions did; the reconciler persists from this."""
    bot_id: str
    notes: List[str] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    rejected: List[ValidationError] = field(default_factory=list)
    executed: int = 0

    def reject(self, error: ValidationError) -> None:
        self.rejected.append(error)
        self.notes.append(error.as_note())


class TradeExecutor:
    def __init__(
        self,
        config: TradingConfig,
        market: MarketSnapshotCache,
        exchange_for: Optional[Callable[[Bot], Optional[ExchangeAdapter]]] = None,
    ) -> None:
        self.config = config
        self.market = market
        self.exchange_for = exchange_for

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_open(
        self,
        bot: Bot,
        decision: Decision,
        permitted: Sequence[str],
        now: float,
        notes: List[str],
    ) -> Optional[ValidationError]:
        """Check guardrails; may clamp leverage/size in place when configured to."""
        action = decision.action
        symbol = decision.symbol or ""
        label = f"REJECTED {action} {symbol}"

        if permitted and symbol not in permitted:
            return ValidationError(f"{label}: symbol is not in this bot's permitted trading symbols.")
        if self.market.price(symbol) is None:
            return ValidationError(f"{label}: no market price available.")

        remaining = bot.cooldown_remaining(symbol, now)
        if remaining > 0:
            minutes = math.ceil(remaining / 60.0)
            return ValidationError(
                f"{label}: symbol is on cooldown for {minutes} more minute(s) after a recent close."
            )

        size = float(decision.size or 0.0)
        minimum = float(self.config.minimum_trade_size_usd)
        if size < minimum:
            return ValidationError(f"{label}: Margin ${size:.2f} is below minimum of ${minimum:.2f}.")

        max_lev = self.config.max_leverage_for(symbol)
        leverage = float(decision.leverage or 1.0)
        if leverage > max_lev:
            if not self.config.clamp_to_limits:
                return ValidationError(f"{label}: leverage {leverage:g}x exceeds the {max_lev}x limit for {symbol}.")
            notes.append(f"NOTE: leverage for {symbol} reduced from {leverage:g}x to the {max_lev}x symbol limit.")
            decision.leverage = float(max_lev)

        balance = float(bot.balance)
        if balance < minimum:
            return ValidationError(
                f"{label}: available balance ${balance:.2f} is below the minimum trade size of ${minimum:.2f}."
            )
        if size > balance:
            if not self.config.clamp_to_limits:
                return ValidationError(f"{label}: Margin ${size:.2f} exceeds available balance ${balance:.2f}.")
            notes.append(f"NOTE: margin for {symbol} reduced from ${size:.2f} to available balance ${balance:.2f}.")
            decision.size = balance
        return None

    # ------------------------------------------------------------------
    # Decision batch
    # ------------------------------------------------------------------

    async def apply(
        self,
        bot: Bot,
        decisions: Sequence[Decision],
        permitted: Sequence[str] = (),
        now: Optional[float] = None,
    ) -> ExecutionReport:
        ts = time.time() if now is None else now
        report = ExecutionReport(bot_id=bot.id)
        allowed = [s.upper() for s in permitted]
        for decision in decisions:
            if decision.is_open:
                error = self.validate_open(bot, decision, allowed, ts, report.notes)
                if error is not None:
                    report.reject(error)
                    continue
                await self.open_position(bot, decision, report, ts)
            elif decision.action == ACTION_CLOSE:
                await self.close_position(
                    bot,
                    report,
                    position_id=decision.close_position_id,
                    symbol=decision.symbol,
                    now=ts,
                )
        bot.recompute_totals()
        return report

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_position(self, bot: Bot, decision: Decision, report: ExecutionReport, now: float) -> Optional[Position]:
        blog = bot_logger(log, bot.id, bot.owner_id)
        symbol = decision.symbol or ""
        side = SIDE_LONG if decision.action == ACTION_LONG else SIDE_SHORT
        size = float(decision.size or 0.0)
        leverage = float(decision.leverage or 1.0)
        price = float(self.market.price(symbol) or 0.0)
        order_id = None

        if bot.is_real:
            try:
                price, order_id = await self._open_on_exchange(bot, symbol, side, size, leverage, price, decision, report)
            except ExchangeError as exc:
                blog.warning(f"Exchange open failed for {symbol}: {exc.message}")
                report.reject(ValidationError(f"REJECTED {decision.action} {symbol}: exchange error: {exc.message}"))
                return None

        position = Position(
            id=new_id("pos"),
            bot_id=bot.id,
            symbol=symbol,
            side=side,
            entry_price=price,
            size=size,
            leverage=leverage,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
            liquidation_price=liquidation_price(side, price, leverage),
            opened_at=now,
            exchange_order_id=order_id,
        )
        trade = Trade(
            id=new_id("trd"),
            bot_id=bot.id,
            position_id=position.id,
            symbol=symbol,
            side=side,
            action=TRADE_OPEN,
            price=price,
            size=size,
            leverage=leverage,
            fee=0.0,
            pnl=0.0,
            timestamp=now,
        )
        bot.balance -= size
        bot.positions.append(position)
        bot.remember_trade(trade, self.config.max_recent_trades)

        report.positions.append(position)
        report.trades.append(trade)
        report.executed += 1
        report.notes.append(
            f"OPENED {side} {symbol}: ${size:.2f} margin at {leverage:g}x, entry ${price:g} (position {position.id})"
        )
        blog.info(f"Opened {side} {symbol} size=${size:.2f} lev={leverage:g}x entry={price:g}")
        return position

    async def _open_on_exchange(
        self,
        bot: Bot,
        symbol: str,
        side: str,
        size: float,
        leverage: float,
        price: float,
        decision: Decision,
        report: ExecutionReport,
    ):
        exchange = self.exchange_for(bot) if self.exchange_for else None
        if exchange is None:
            raise ExchangeError("no exchange gateway configured for this bot", kind="missing_exchange")
        await exchange.set_leverage(symbol, int(leverage))
        quantity = floor_quantity(size * leverage / price, exchange.quantity_precision(symbol))
        order_side = "BUY" if side == SIDE_LONG else "SELL"
        result = await exchange.place_market_order(symbol, order_side, quantity)
        fill_price = result.avg_price or price

        exit_side = "SELL" if side == SIDE_LONG else "BUY"
        for trigger, kind in ((decision.stop_loss, "sl"), (decision.take_profit, "tp")):
            if not trigger:
                continue
            try:
                await exchange.place_stop_order(symbol, exit_side, quantity, float(trigger), order_type=kind)
            except ExchangeError as exc:
                report.notes.append(f"NOTE: {kind.upper()} order for {symbol} failed: {exc.message}")
        return fill_price, result.order_id

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def _find_position(self, bot: Bot, position_id: Optional[str], symbol: Optional[str]) -> Optional[Position]:
        if position_id:
            found = bot.find_open_position(position_id)
            if found is not None:
                return found
        if symbol:
            for p in bot.open_positions:
                if p.symbol == symbol.upper():
                    return p
        return None

    async def close_position(
        self,
        bot: Bot,
        report: ExecutionReport,
        position_id: Optional[str] = None,
        symbol: Optional[str] = None,
        now: Optional[float] = None,
        reason: str = "",
    ) -> Optional[Trade]:
        ts = time.time() if now is None else now
        blog = bot_logger(log, bot.id, bot.owner_id)
        target = position_id or symbol or "?"
        position = self._find_position(bot, position_id, symbol)
        if position is None:
            report.reject(ValidationError(f"REJECTED CLOSE {target}: no open position found."))
            return None

        price = self.market.price(position.symbol)
        if bot.is_real:
            try:
                price = await self._close_on_exchange(bot, position, price)
            except ExchangeError as exc:
                blog.warning(f"Exchange close failed for {position.symbol}: {exc.message}")
                report.reject(ValidationError(f"REJECTED CLOSE {target}: exchange error: {exc.message}"))
                return None
        if price is None:
            report.reject(ValidationError(f"REJECTED CLOSE {target}: no market price for {position.symbol}."))
            return None

        trade = self._settle_close(bot, position, float(price), ts)
        report.positions.append(position)
        report.trades.append(trade)
        report.executed += 1
        suffix = f" ({reason})" if reason else ""
        report.notes.append(
            f"CLOSED {position.side} {position.symbol} at ${trade.price:g}: "
            f"PnL ${trade.pnl:.2f} after ${trade.fee:.2f} fee{suffix}"
        )
        blog.info(f"Closed {position.side} {position.symbol} pnl={trade.pnl:.2f} fee={trade.fee:.2f}{suffix}")
        return trade

    async def _close_on_exchange(self, bot: Bot, position: Position, price: Optional[float]) -> Optional[float]:
        exchange = self.exchange_for(bot) if self.exchange_for else None
        if exchange is None:
            raise ExchangeError("no exchange gateway configured for this bot", kind="missing_exchange")
        quantity = floor_quantity(position.quantity, exchange.quantity_precision(position.symbol))
        side = "SELL" if position.side == SIDE_LONG else "BUY"
        result = await exchange.place_market_order(position.symbol, side, quantity, reduce_only=True)
        return result.avg_price or price

    def _settle_close(self, bot: Bot, position: Position, price: float, now: float) -> Trade:
        gross = position.pnl_at(price)
        fee = float(position.size) * self.config.fee_rate_for(bot.trading_mode)
        net = gross - fee

        position.status = STATUS_CLOSED
        position.closed_at = now
        position.exit_price = price
        position.realized_pnl = net
        position.unrealized_pnl = 0.0
        bot.positions = [p for p in bot.positions if p.id != position.id]

        bot.balance += position.size + net
        bot.cooldowns[position.symbol] = now + self.config.symbol_cooldown_ms / 1000.0

        previous_wins = round(bot.trade_count * bot.win_rate)
        bot.trade_count += 1
        bot.win_rate = (previous_wins + (1 if net > 0 else 0)) / bot.trade_count
        bot.realized_pnl += net

        trade = Trade(
            id=new_id("trd"),
            bot_id=bot.id,
            position_id=position.id,
            symbol=position.symbol,
            side=position.side,
            action=TRADE_CLOSE,
            price=price,
            size=position.size,
            leverage=position.leverage,
            fee=fee,
            pnl=net,
            timestamp=now,
        )
        bot.remember_trade(trade, self.config.max_recent_trades)
        bot.recompute_totals()
        return trade

    # ------------------------------------------------------------------
    # Refresh tick
    # ------------------------------------------------------------------

    def mark_to_market(self, bot: Bot, now: Optional[float] = None) -> Dict[str, float]:
        """Recompute unrealized PnL from the snapshot. Creates no trades."""
        ts = time.time() if now is None else now
        updates: Dict[str, float] = {}
        for position in bot.open_positions:
            price = self.market.price(position.symbol)
            if price is None:
                continue
            position.unrealized_pnl = position.pnl_at(price)
            updates[position.id] = position.unrealized_pnl
        bot.recompute_totals()
        bot.record_value(ts, self.config.max_value_history)
        return updates

    async def sync_real_account(self, bot: Bot, now: Optional[float] = None) -> ExecutionReport:
        """Reconcile a real bot against exchange account state.

        Raises ExchangeError; the caller keeps the prior state and aborts the turn.
        """
        ts = time.time() if now is None else now
        report = ExecutionReport(bot_id=bot.id)
        exchange = self.exchange_for(bot) if self.exchange_for else None
        if exchange is None:
            raise ExchangeError("no exchange gateway configured for this bot", kind="missing_exchange")

        balance = await exchange.get_account_balance()
        risk = await exchange.get_position_risk()

        for position in list(bot.open_positions):
            remote = risk.get(position.symbol)
            if remote is None:
                price = self.market.price(position.symbol) or position.entry_price
                trade = self._settle_close(bot, position, float(price), ts)
                report.positions.append(position)
                report.trades.append(trade)
                report.notes.append(
                    f"NOTE: {position.side} {position.symbol} is no longer open on the exchange "
                    f"(stop-loss/take-profit or liquidation); recorded close at ${trade.price:g}."
                )
                continue
            position.unrealized_pnl = remote.unrealized_pnl

        bot.balance = balance.available
        bot.recompute_totals()
        bot.total_value = balance.balance + balance.unrealized_pnl
        bot.record_value(ts, self.config.max_value_history)
        return report

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def reset_bot(self, bot: Bot) -> None:
        """Return a paper bot to its initial balance with an empty ledger."""
        if bot.is_real:
            raise ValidationError("Reset is not available for real-mode bots.")
        bot.balance = bot.initial_balance
        bot.positions = []
        bot.recent_trades = []
        bot.cooldowns = {}
        bot.bot_logs = []
        bot.value_history = []
        bot.history_summary = None
        bot.trade_count = 0
        bot.win_rate = 0.0
        bot.realized_pnl = 0.0
        bot.last_decision_at = None
        bot.recompute_totals()
