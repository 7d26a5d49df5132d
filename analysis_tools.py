#!/usr/bin/env python3
"""Built-in analytical tools for the iterative decision mode.

Each tool takes the model's `parameters` dict and returns a JSON-friendly
dict. Bad input raises ValueError; the registry turns that into an error
payload for the next iteration prompt.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List

from market_cache import MarketSnapshotCache, trend_label
from tool_registry import ToolRegistry


def _num(params: Dict[str, Any], key: str) -> float:
    if key not in params:
        raise ValueError(f"missing parameter '{key}'")
    try:
        value = float(params[key])
    except (TypeError, ValueError):
        raise ValueError(f"parameter '{key}' must be a number")
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"parameter '{key}' must be finite")
    return value


def _series(params: Dict[str, Any], key: str = "data") -> List[float]:
    raw = params.get(key)
    if not isinstance(raw, list) or not raw:
        raise ValueError(f"parameter '{key}' must be a non-empty list of numbers")
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError):
        raise ValueError(f"parameter '{key}' must contain only numbers")


def statistics(params: Dict[str, Any]) -> Dict[str, Any]:
    data = _series(params)
    ordered = sorted(data)
    n = len(data)
    mean = sum(data) / n
    mid = n // 2
    median = ordered[mid] if n % 2 else (ordered[mid - 1] + ordered[mid]) / 2
    variance = sum((v - mean) ** 2 for v in data) / n
    return {
        "mean": mean,
        "median": median,
        "std_dev": math.sqrt(variance),
        "variance": variance,
        "min": ordered[0],
        "max": ordered[-1],
        "count": n,
    }


def volatility(params: Dict[str, Any]) -> Dict[str, Any]:
    """Standard deviation of simple returns, in percent."""
    prices = _series(params, "prices")
    if len(prices) < 2:
        raise ValueError("need at least two prices")
    returns = [(b - a) / a for a, b in zip(prices, prices[1:]) if a]
    if not returns:
        raise ValueError("prices must be non-zero")
    mean = sum(returns) / len(returns)
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
    return {"volatility_pct": std * 100.0, "periods": len(returns)}


def risk_reward(params: Dict[str, Any]) -> Dict[str, Any]:
    entry = _num(params, "entry")
    stop = _num(params, "stop")
    target = _num(params, "target")
    risk = abs(entry - stop)
    reward = abs(target - entry)
    if risk == 0:
        raise ValueError("entry and stop must differ")
    return {
        "risk": risk,
        "reward": reward,
        "ratio": reward / risk,
        "risk_pct": risk / entry * 100.0 if entry else 0.0,
        "reward_pct": reward / entry * 100.0 if entry else 0.0,
    }


def position_size(params: Dict[str, Any]) -> Dict[str, Any]:
    """Notional size that loses `risk_percent` of balance at the stop distance."""
    balance = _num(params, "balance")
    risk_pct = _num(params, "risk_percent")
    stop_pct = _num(params, "stop_distance_percent")
    if stop_pct <= 0:
        raise ValueError("stop_distance_percent must be positive")
    risk_amount = balance * risk_pct / 100.0
    return {"risk_amount": risk_amount, "position_size": risk_amount / (stop_pct / 100.0)}


def kelly(params: Dict[str, Any]) -> Dict[str, Any]:
    win_rate = _num(params, "win_rate")
    avg_win = _num(params, "avg_win")
    avg_loss = abs(_num(params, "avg_loss"))
    if avg_loss == 0:
        raise ValueError("avg_loss must be non-zero")
    ratio = avg_win / avg_loss
    if ratio == 0:
        raise ValueError("avg_win must be non-zero")
    fraction = win_rate - (1.0 - win_rate) / ratio
    return {"kelly_fraction": fraction, "half_kelly": fraction / 2.0, "recommended": max(0.0, fraction / 2.0)}


class MarketTools:
    """Tools that read the live market snapshot."""

    def __init__(self, market: MarketSnapshotCache) -> None:
        self.market = market

    def _ticker(self, params: Dict[str, Any]):
        symbol = str(params.get("symbol") or "").upper()
        ticker = self.market.get(symbol)
        if ticker is None:
            raise ValueError(f"no market data for '{symbol}'")
        return ticker

    def current_price(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ticker = self._ticker(params)
        return {"symbol": ticker.symbol, "price": ticker.price}

    def price_change(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ticker = self._ticker(params)
        return {
            "symbol": ticker.symbol,
            "change_24h_pct": ticker.change_24h,
            "trend": trend_label(ticker.change_24h),
        }


def build_default_tools(market: MarketSnapshotCache, timeout_sec: float = 5.0) -> ToolRegistry:
    market_tools = MarketTools(market)
    return ToolRegistry(
        {
            "statistics": statistics,
            "volatility": volatility,
            "risk_reward": risk_reward,
            "position_size": position_size,
            "kelly": kelly,
            "current_price": market_tools.current_price,
            "price_change": market_tools.price_change,
        },
        timeout_sec=timeout_sec,
    )
