#!/usr/bin/env python3
"""
Arena records shared by the scheduler, pipeline, executor and store.

All timestamps are epoch seconds (float). Sizes are margin in USD; notional
is size * leverage.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SIDE_LONG = "LONG"
SIDE_SHORT = "SHORT"
STATUS_OPEN = "open"
STATUS_CLOSED = "closed"
ACTION_OPEN = "open"
ACTION_CLOSE = "close"
MODE_PAPER = "paper"
MODE_REAL = "real"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def liquidation_price(side: str, entry_price: float, leverage: float) -> float:
    lev = max(float(leverage or 1), 1.0)
    if side == SIDE_LONG:
        return float(entry_price) * (1.0 - 1.0 / lev)
    return float(entry_price) * (1.0 + 1.0 / lev)


def position_pnl(side: str, entry_price: float, price: float, size: float, leverage: float) -> float:
    """PnL = (price - entry) * (size * leverage / entry), sign flipped for shorts."""
    if entry_price <= 0:
        return 0.0
    quantity = float(size) * float(leverage) / float(entry_price)
    direction = 1.0 if side == SIDE_LONG else -1.0
    return (float(price) - float(entry_price)) * quantity * direction


@dataclass
class MarketTicker:
    symbol: str
    price: float
    change_24h: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "price": self.price, "change_24h": self.change_24h}


@dataclass
class Position:
    """A leveraged position; status moves open -> closed exactly once."""
    id: str
    bot_id: str
    symbol: str
    side: str  # LONG | SHORT
    entry_price: float
    size: float  # margin (USD)
    leverage: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    liquidation_price: float = 0.0
    status: str = STATUS_OPEN
    opened_at: float = field(default_factory=time.time)
    closed_at: Optional[float] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    unrealized_pnl: float = 0.0
    exchange_order_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    @property
    def notional(self) -> float:
        return float(self.size) * float(self.leverage)

    @property
    def quantity(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return self.notional / float(self.entry_price)

    def pnl_at(self, price: float) -> float:
        return position_pnl(self.side, self.entry_price, price, self.size, self.leverage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "symbol": self.symbol,
            "side": self.side,
            "entry_price": self.entry_price,
            "size": self.size,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "liquidation_price": self.liquidation_price,
            "status": self.status,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "exit_price": self.exit_price,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "exchange_order_id": self.exchange_order_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=str(data.get("id") or new_id("pos")),
            bot_id=str(data.get("bot_id") or ""),
            symbol=str(data.get("symbol") or ""),
            side=str(data.get("side") or SIDE_LONG).upper(),
            entry_price=float(data.get("entry_price") or 0.0),
            size=float(data.get("size") or 0.0),
            leverage=float(data.get("leverage") or 1.0),
            stop_loss=_opt_float(data.get("stop_loss")),
            take_profit=_opt_float(data.get("take_profit")),
            liquidation_price=float(data.get("liquidation_price") or 0.0),
            status=str(data.get("status") or STATUS_OPEN),
            opened_at=float(data.get("opened_at") or 0.0),
            closed_at=_opt_float(data.get("closed_at")),
            exit_price=_opt_float(data.get("exit_price")),
            realized_pnl=_opt_float(data.get("realized_pnl")),
            unrealized_pnl=float(data.get("unrealized_pnl") or 0.0),
            exchange_order_id=data.get("exchange_order_id"),
        )


@dataclass
class Trade:
    """One executor action. Append-only."""
    id: str
    bot_id: str
    position_id: str
    symbol: str
    side: str
    action: str  # open | close
    price: float
    size: float
    leverage: float
    fee: float = 0.0
    pnl: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "position_id": self.position_id,
            "symbol": self.symbol,
            "side": self.side,
            "action": self.action,
            "price": self.price,
            "size": self.size,
            "leverage": self.leverage,
            "fee": self.fee,
            "pnl": self.pnl,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            id=str(data.get("id") or new_id("trd")),
            bot_id=str(data.get("bot_id") or ""),
            position_id=str(data.get("position_id") or ""),
            symbol=str(data.get("symbol") or ""),
            side=str(data.get("side") or "").upper(),
            action=str(data.get("action") or ACTION_OPEN),
            price=float(data.get("price") or 0.0),
            size=float(data.get("size") or 0.0),
            leverage=float(data.get("leverage") or 1.0),
            fee=float(data.get("fee") or 0.0),
            pnl=float(data.get("pnl") or 0.0),
            timestamp=float(data.get("timestamp") or 0.0),
        )


@dataclass
class DecisionLogEntry:
    """A completed turn: the base prompt sent, the decisions returned, notes."""
    bot_id: str
    prompt: str
    decisions: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    success: bool = True
    timestamp: float = field(default_factory=time.time)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "prompt": self.prompt,
            "decisions": list(self.decisions),
            "notes": list(self.notes),
            "success": self.success,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionLogEntry":
        raw_id = data.get("id")
        return cls(
            id=int(raw_id) if raw_id is not None else None,
            bot_id=str(data.get("bot_id") or ""),
            prompt=str(data.get("prompt") or ""),
            decisions=list(data.get("decisions") or []),
            notes=[str(n) for n in (data.get("notes") or [])],
            success=bool(data.get("success", True)),
            timestamp=float(data.get("timestamp") or 0.0),
        )


@dataclass
class HistorySummary:
    """The single live narrative summary for a bot."""
    bot_id: str
    text: str
    count: int
    first_timestamp: float
    last_timestamp: float
    last_decision_id: int
    token_estimate: int = 0
    generated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "text": self.text,
            "count": self.count,
            "first_timestamp": self.first_timestamp,
            "last_timestamp": self.last_timestamp,
            "last_decision_id": self.last_decision_id,
            "token_estimate": self.token_estimate,
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistorySummary":
        return cls(
            bot_id=str(data.get("bot_id") or ""),
            text=str(data.get("text") or ""),
            count=int(data.get("count") or 0),
            first_timestamp=float(data.get("first_timestamp") or 0.0),
            last_timestamp=float(data.get("last_timestamp") or 0.0),
            last_decision_id=int(data.get("last_decision_id") or 0),
            token_estimate=int(data.get("token_estimate") or 0),
            generated_at=float(data.get("generated_at") or 0.0),
        )


@dataclass
class ProviderConfig:
    """A language-model provider row. The API key is referenced by env-var name."""
    id: str
    name: str
    provider_type: str  # openai | grok | local | gemini | anthropic | custom
    endpoint: str
    model: str
    api_key_env: Optional[str] = None
    owner_id: Optional[str] = None
    max_tokens: int = 4096
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or data.get("id") or ""),
            provider_type=str(data.get("provider_type") or "openai").lower(),
            endpoint=str(data.get("endpoint") or ""),
            model=str(data.get("model") or ""),
            api_key_env=data.get("api_key_env"),
            owner_id=data.get("owner_id"),
            max_tokens=int(data.get("max_tokens") or 4096),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class PortfolioSnapshot:
    bot_id: str
    balance: float
    total_value: float
    unrealized_pnl: float
    realized_pnl: float
    trade_count: int
    win_rate: float
    position_count: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "balance": self.balance,
            "total_value": self.total_value,
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "trade_count": self.trade_count,
            "win_rate": self.win_rate,
            "position_count": self.position_count,
            "timestamp": self.timestamp,
        }


@dataclass
class Bot:
    """In-memory working state for one bot (a rehydrated cache of the store)."""
    id: str
    owner_id: str
    name: str
    prompt: str
    provider_id: str
    trading_mode: str = MODE_PAPER
    is_paused: bool = False
    is_active: bool = True
    iterative: bool = False
    trading_symbols: List[str] = field(default_factory=list)
    exchange_key_env: Optional[str] = None
    exchange_secret_env: Optional[str] = None
    balance: float = 0.0
    initial_balance: float = 0.0
    positions: List[Position] = field(default_factory=list)
    recent_trades: List[Trade] = field(default_factory=list)
    cooldowns: Dict[str, float] = field(default_factory=dict)
    history_summary: Optional[HistorySummary] = None
    value_history: List[Dict[str, float]] = field(default_factory=list)
    bot_logs: List[DecisionLogEntry] = field(default_factory=list)
    trade_count: int = 0
    win_rate: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_value: float = 0.0
    is_busy: bool = False
    last_decision_at: Optional[float] = None

    @property
    def is_real(self) -> bool:
        return self.trading_mode == MODE_REAL

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    @property
    def margin_in_use(self) -> float:
        return sum(p.size for p in self.open_positions)

    def find_open_position(self, position_id: str) -> Optional[Position]:
        for p in self.open_positions:
            if p.id == position_id:
                return p
        return None

    def cooldown_remaining(self, symbol: str, now: Optional[float] = None) -> float:
        until = self.cooldowns.get(str(symbol).upper())
        if until is None:
            return 0.0
        return max(0.0, float(until) - (time.time() if now is None else now))

    def active_cooldowns(self, now: Optional[float] = None) -> Dict[str, float]:
        ts = time.time() if now is None else now
        return {s: until - ts for s, until in self.cooldowns.items() if until > ts}

    def recompute_totals(self) -> None:
        self.unrealized_pnl = sum(p.unrealized_pnl for p in self.open_positions)
        self.total_value = self.balance + self.margin_in_use + self.unrealized_pnl

    def remember_trade(self, trade: Trade, limit: int) -> None:
        self.recent_trades.insert(0, trade)
        del self.recent_trades[max(1, int(limit)):]

    def remember_log(self, entry: DecisionLogEntry, limit: int) -> None:
        self.bot_logs.insert(0, entry)
        del self.bot_logs[max(1, int(limit)):]

    def record_value(self, ts: float, limit: int) -> None:
        self.value_history.append({"timestamp": ts, "value": self.total_value})
        overflow = len(self.value_history) - max(1, int(limit))
        if overflow > 0:
            del self.value_history[:overflow]

    def snapshot(self, now: Optional[float] = None) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            bot_id=self.id,
            balance=self.balance,
            total_value=self.total_value,
            unrealized_pnl=self.unrealized_pnl,
            realized_pnl=self.realized_pnl,
            trade_count=self.trade_count,
            win_rate=self.win_rate,
            position_count=len(self.open_positions),
            timestamp=time.time() if now is None else now,
        )

    def to_state(self) -> Dict[str, Any]:
        """Serializable working state (snapshots and broadcast payloads)."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "trading_mode": self.trading_mode,
            "is_paused": self.is_paused,
            "balance": self.balance,
            "initial_balance": self.initial_balance,
            "total_value": self.total_value,
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "trade_count": self.trade_count,
            "win_rate": self.win_rate,
            "positions": [p.to_dict() for p in self.open_positions],
            "recent_trades": [t.to_dict() for t in self.recent_trades],
            "cooldowns": dict(self.cooldowns),
            "value_history": list(self.value_history),
            "bot_logs": [e.to_dict() for e in self.bot_logs],
            "last_decision_at": self.last_decision_at,
        }


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
