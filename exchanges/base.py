#!/usr/bin/env python3
"""
Shared exchange gateway interface and dataclasses (real-mode bots only).

Adapters raise ExchangeError on any failed account or order call; the trade
executor turns that into an aborted turn or a rejected decision.
"""

from __future__ import annotations

import abc
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class OrderResult:
    """Result of an order placement."""
    order_id: Optional[str] = None
    filled_quantity: float = 0.0
    avg_price: float = 0.0
    status: str = ""


@dataclass
class AccountBalance:
    asset: str
    balance: float
    available: float
    unrealized_pnl: float = 0.0


@dataclass
class ExchangePosition:
    """Open-position risk row as reported by the exchange."""
    symbol: str
    side: str  # LONG | SHORT
    quantity: float
    entry_price: float
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: float = 1.0
    liquidation_price: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)


def floor_quantity(quantity: float, precision: int) -> float:
    """Floor to the symbol's quantity precision (never round up past margin)."""
    factor = 10 ** max(0, int(precision))
    return math.floor(float(quantity) * factor) / factor


class ExchangeAdapter(abc.ABC):
    """Base class for exchange adapters."""

    def __init__(self, log):
        self.log = log
        self._initialized = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def initialize(self) -> bool:
        """Initialize the exchange connection."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_account_balance(self) -> AccountBalance:
        """Wallet balance for the settlement asset."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_position_risk(self) -> Dict[str, ExchangePosition]:
        """Non-empty open positions keyed by symbol."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_account_trades(self, symbol: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent account fills."""
        raise NotImplementedError

    @abc.abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: str,  # 'BUY' or 'SELL'
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        raise NotImplementedError

    @abc.abstractmethod
    async def place_stop_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        trigger_price: float,
        order_type: str = "sl",  # 'sl' or 'tp'
    ) -> OrderResult:
        """Place a reduce-only stop-loss / take-profit trigger order."""
        raise NotImplementedError

    @abc.abstractmethod
    def quantity_precision(self, symbol: str) -> int:
        raise NotImplementedError
