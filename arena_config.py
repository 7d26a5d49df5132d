#!/usr/bin/env python3
"""Arena configuration: arena.yaml + env overrides + system_settings rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from config_env import apply_env_overrides
from env_utils import ARENA_CONFIG_PATH, ARENA_DB_PATH
from logging_utils import get_logger

# Defaults mirror arena.yaml so a missing file still yields a runnable engine.
DEFAULT_TURN_INTERVAL_MS = 300_000
DEFAULT_REFRESH_INTERVAL_MS = 5_000
DEFAULT_TURN_TIMEOUT_SEC = 120.0
DEFAULT_SNAPSHOT_INTERVAL_SEC = 60.0
DEFAULT_SNAPSHOT_CLEANUP_INTERVAL_SEC = 3600.0
DEFAULT_MIN_TRADE_SIZE_USD = 50.0
DEFAULT_SYMBOL_COOLDOWN_MS = 1_800_000
DEFAULT_MAX_LEVERAGE = 25
DEFAULT_PAPER_INITIAL_BALANCE = 10_000.0
DEFAULT_LIVE_INITIAL_BALANCE = 950.0
DEFAULT_PAPER_FEE_RATE = 0.03
DEFAULT_REAL_FEE_RATE = 0.0004
MAX_VALUE_HISTORY = 300
MAX_BOT_LOGS = 50
MAX_RECENT_TRADES = 50

log = get_logger("arena_config")


def load_config(path: Path) -> Dict[str, Any]:
    """Load YAML config from path."""
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def get_nested(config: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Get nested config value with fallback."""
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    if current is None:
        return default
    return current


@dataclass
class SchedulerConfig:
    turn_interval_ms: int = DEFAULT_TURN_INTERVAL_MS
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    turn_timeout_sec: float = DEFAULT_TURN_TIMEOUT_SEC
    max_turns_per_tick: int = 0
    snapshot_interval_sec: float = DEFAULT_SNAPSHOT_INTERVAL_SEC
    snapshot_cleanup_interval_sec: float = DEFAULT_SNAPSHOT_CLEANUP_INTERVAL_SEC


@dataclass
class TradingConfig:
    minimum_trade_size_usd: float = DEFAULT_MIN_TRADE_SIZE_USD
    symbol_cooldown_ms: int = DEFAULT_SYMBOL_COOLDOWN_MS
    default_max_leverage: int = DEFAULT_MAX_LEVERAGE
    leverage_limits: Dict[str, int] = field(default_factory=dict)
    # False: leverage/balance violations reject the decision.
    # True: clamp to the limit and attach a NOTE instead.
    clamp_to_limits: bool = False
    paper_initial_balance: float = DEFAULT_PAPER_INITIAL_BALANCE
    live_initial_balance: float = DEFAULT_LIVE_INITIAL_BALANCE
    paper_fee_rate: float = DEFAULT_PAPER_FEE_RATE
    real_fee_rate: float = DEFAULT_REAL_FEE_RATE
    trading_symbols: List[str] = field(default_factory=list)
    max_value_history: int = MAX_VALUE_HISTORY
    max_bot_logs: int = MAX_BOT_LOGS
    max_recent_trades: int = MAX_RECENT_TRADES

    def max_leverage_for(self, symbol: str) -> int:
        limit = self.leverage_limits.get(str(symbol or "").upper())
        if limit is None:
            return int(self.default_max_leverage)
        return int(limit)

    def fee_rate_for(self, trading_mode: str) -> float:
        if str(trading_mode).lower() == "real":
            return float(self.real_fee_rate)
        return float(self.paper_fee_rate)

    def initial_balance_for(self, trading_mode: str) -> float:
        if str(trading_mode).lower() == "real":
            return float(self.live_initial_balance)
        return float(self.paper_initial_balance)


@dataclass
class DecisionConfig:
    decision_timeout_sec: float = 30.0
    max_iterations: int = 5
    iteration_timeout_sec: float = 10.0
    tool_timeout_sec: float = 5.0
    max_prompt_chars: int = 500_000


@dataclass
class HistoryConfig:
    token_budget: int = 25_000
    keep_recent: int = 15
    min_batch: int = 10
    context_entries: int = 5
    summary_timeout_sec: float = 300.0
    personality_chars: int = 2000


@dataclass
class MarketConfig:
    base_url: str = "https://fapi.asterdex.com"
    ticker_path: str = "/fapi/v1/ticker/24hr"
    exchange_info_path: str = "/fapi/v1/exchangeInfo"
    request_timeout_sec: float = 10.0


@dataclass
class ExchangeConfig:
    base_url: str = "https://fapi.asterdex.com"
    recv_window_ms: int = 5000
    request_timeout_sec: float = 10.0


@dataclass
class ArenaSettings:
    db_path: str = ARENA_DB_PATH
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ArenaSettings":
        c = config or {}
        sched = SchedulerConfig(
            turn_interval_ms=int(get_nested(c, "config", "scheduler", "turn_interval_ms", default=DEFAULT_TURN_INTERVAL_MS)),
            refresh_interval_ms=int(get_nested(c, "config", "scheduler", "refresh_interval_ms", default=DEFAULT_REFRESH_INTERVAL_MS)),
            turn_timeout_sec=float(get_nested(c, "config", "scheduler", "turn_timeout_sec", default=DEFAULT_TURN_TIMEOUT_SEC)),
            max_turns_per_tick=int(get_nested(c, "config", "scheduler", "max_turns_per_tick", default=0)),
            snapshot_interval_sec=float(get_nested(c, "config", "scheduler", "snapshot_interval_sec", default=DEFAULT_SNAPSHOT_INTERVAL_SEC)),
            snapshot_cleanup_interval_sec=float(
                get_nested(c, "config", "scheduler", "snapshot_cleanup_interval_sec", default=DEFAULT_SNAPSHOT_CLEANUP_INTERVAL_SEC)
            ),
        )
        limits_raw = get_nested(c, "config", "trading", "leverage_limits", default={}) or {}
        trading = TradingConfig(
            minimum_trade_size_usd=float(get_nested(c, "config", "trading", "minimum_trade_size_usd", default=DEFAULT_MIN_TRADE_SIZE_USD)),
            symbol_cooldown_ms=int(get_nested(c, "config", "trading", "symbol_cooldown_ms", default=DEFAULT_SYMBOL_COOLDOWN_MS)),
            default_max_leverage=int(get_nested(c, "config", "trading", "default_max_leverage", default=DEFAULT_MAX_LEVERAGE)),
            leverage_limits={str(k).upper(): int(v) for k, v in dict(limits_raw).items()},
            clamp_to_limits=bool(get_nested(c, "config", "trading", "clamp_to_limits", default=False)),
            paper_initial_balance=float(get_nested(c, "config", "trading", "paper_initial_balance", default=DEFAULT_PAPER_INITIAL_BALANCE)),
            live_initial_balance=float(get_nested(c, "config", "trading", "live_initial_balance", default=DEFAULT_LIVE_INITIAL_BALANCE)),
            paper_fee_rate=float(get_nested(c, "config", "mode_fees", "paper", default=DEFAULT_PAPER_FEE_RATE)),
            real_fee_rate=float(get_nested(c, "config", "mode_fees", "real", default=DEFAULT_REAL_FEE_RATE)),
            trading_symbols=[str(s).upper() for s in (get_nested(c, "config", "trading", "trading_symbols", default=[]) or [])],
            max_value_history=int(get_nested(c, "config", "trading", "max_value_history", default=MAX_VALUE_HISTORY)),
            max_bot_logs=int(get_nested(c, "config", "trading", "max_bot_logs", default=MAX_BOT_LOGS)),
            max_recent_trades=int(get_nested(c, "config", "trading", "max_recent_trades", default=MAX_RECENT_TRADES)),
        )
        decision = DecisionConfig(
            decision_timeout_sec=float(get_nested(c, "config", "decision", "decision_timeout_sec", default=30.0)),
            max_iterations=max(1, int(get_nested(c, "config", "decision", "max_iterations", default=5))),
            iteration_timeout_sec=float(get_nested(c, "config", "decision", "iteration_timeout_sec", default=10.0)),
            tool_timeout_sec=float(get_nested(c, "config", "decision", "tool_timeout_sec", default=5.0)),
            max_prompt_chars=int(get_nested(c, "config", "decision", "max_prompt_chars", default=500_000)),
        )
        history = HistoryConfig(
            token_budget=int(get_nested(c, "config", "history", "token_budget", default=25_000)),
            keep_recent=int(get_nested(c, "config", "history", "keep_recent", default=15)),
            min_batch=int(get_nested(c, "config", "history", "min_batch", default=10)),
            context_entries=int(get_nested(c, "config", "history", "context_entries", default=5)),
            summary_timeout_sec=float(get_nested(c, "config", "history", "summary_timeout_sec", default=300.0)),
            personality_chars=int(get_nested(c, "config", "history", "personality_chars", default=2000)),
        )
        market = MarketConfig(
            base_url=str(get_nested(c, "config", "market", "base_url", default=MarketConfig.base_url)).rstrip("/"),
            ticker_path=str(get_nested(c, "config", "market", "ticker_path", default=MarketConfig.ticker_path)),
            exchange_info_path=str(get_nested(c, "config", "market", "exchange_info_path", default=MarketConfig.exchange_info_path)),
            request_timeout_sec=float(get_nested(c, "config", "market", "request_timeout_sec", default=10.0)),
        )
        exchange = ExchangeConfig(
            base_url=str(get_nested(c, "config", "exchange", "base_url", default=ExchangeConfig.base_url)).rstrip("/"),
            recv_window_ms=int(get_nested(c, "config", "exchange", "recv_window_ms", default=5000)),
            request_timeout_sec=float(get_nested(c, "config", "exchange", "request_timeout_sec", default=10.0)),
        )
        return cls(
            db_path=str(get_nested(c, "config", "db_path", default=ARENA_DB_PATH)),
            scheduler=sched,
            trading=trading,
            decision=decision,
            history=history,
            market=market,
            exchange=exchange,
        )

    def apply_system_settings(self, rows: Dict[str, Any]) -> None:
        """Overlay admin-tunable values stored in the system_settings table."""
        if not rows:
            return
        int_keys = {
            "turn_interval_ms": (self.scheduler, "turn_interval_ms"),
            "refresh_interval_ms": (self.scheduler, "refresh_interval_ms"),
            "symbol_cooldown_ms": (self.trading, "symbol_cooldown_ms"),
            "default_max_leverage": (self.trading, "default_max_leverage"),
        }
        float_keys = {
            "minimum_trade_size_usd": (self.trading, "minimum_trade_size_usd"),
            "paper_initial_balance": (self.trading, "paper_initial_balance"),
            "live_initial_balance": (self.trading, "live_initial_balance"),
            "paper_fee_rate": (self.trading, "paper_fee_rate"),
            "real_fee_rate": (self.trading, "real_fee_rate"),
        }
        for key, raw in rows.items():
            try:
                if key in int_keys:
                    target, attr = int_keys[key]
                    setattr(target, attr, int(float(raw)))
                elif key in float_keys:
                    target, attr = float_keys[key]
                    setattr(target, attr, float(raw))
            except (TypeError, ValueError):
                log.warning(f"Ignoring invalid system setting {key}={raw!r}")


def load_settings(path: Optional[str] = None) -> ArenaSettings:
    """Load arena.yaml (if present), apply env overrides, build settings."""
    cfg_path = Path(path or ARENA_CONFIG_PATH)
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        raw = load_config(cfg_path)
    else:
        log.warning(f"Config not found at {cfg_path}; using built-in defaults")
    settings = ArenaSettings.from_config(apply_env_overrides(raw))
    db_path = Path(settings.db_path).expanduser()
    if not db_path.is_absolute():
        settings.db_path = str((cfg_path.resolve().parent / db_path).resolve())
    return settings
