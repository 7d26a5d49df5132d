#!/usr/bin/env python3
"""Asterdex adapter: request signing and response parsing (no network)."""

import asyncio
import hashlib
import hmac
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from arena_config import ExchangeConfig
from errors import ExchangeError
from exchanges.asterdex_adapter import AsterdexAdapter
from exchanges.base import floor_quantity


def _adapter(key: str = "key", secret: str = "secret") -> AsterdexAdapter:
    return AsterdexAdapter(key, secret, ExchangeConfig(), precisions={"btcusdt": 3, "DOGEUSDT": 0})


def test_sign_appends_hmac_sha256_of_query() -> None:
    adapter = _adapter()

    signed = adapter.sign({"symbol": "BTCUSDT", "timestamp": 1700000000000})

    query = "symbol=BTCUSDT&timestamp=1700000000000&recvWindow=5000"
    expected = hmac.new(b"secret", query.encode("utf-8"), hashlib.sha256).hexdigest()
    assert signed == f"{query}&signature={expected}"


def test_missing_credentials_fail_initialize() -> None:
    with pytest.raises(ExchangeError) as exc_info:
        asyncio.run(_adapter(secret="").initialize())

    assert exc_info.value.kind == "credentials"


def test_quantity_precision_and_floor() -> None:
    adapter = _adapter()

    assert adapter.quantity_precision("BTCUSDT") == 3
    assert adapter.quantity_precision("DOGEUSDT") == 0
    assert adapter.quantity_precision("NEWUSDT") == 3
    assert floor_quantity(0.0289, 3) == 0.028
    assert floor_quantity(12.9, 0) == 12.0


def test_zero_quantity_order_is_refused_before_any_request() -> None:
    adapter = _adapter()

    with pytest.raises(ExchangeError) as exc_info:
        asyncio.run(adapter.place_market_order("BTCUSDT", "BUY", 0.0))

    assert exc_info.value.kind == "bad_quantity"


def test_positions_and_balance_parsing(monkeypatch) -> None:
    adapter = _adapter()
    responses = {
        "/fapi/v2/positionRisk": [
            {"symbol": "BTCUSDT", "positionAmt": "-0.010", "entryPrice": "70000", "markPrice": "69000",
             "unRealizedProfit": "10", "leverage": "10"},
            {"symbol": "ETHUSDT", "positionAmt": "0"},
        ],
        "/fapi/v2/balance": [
            {"asset": "BNB", "balance": "1"},
            {"asset": "USDT", "balance": "950.5", "availableBalance": "900", "crossUnPnl": "10"},
        ],
    }
    sent = []

    async def _fake_request(method, path, params=None):
        sent.append((method, path, params))
        if path == "/fapi/v1/order":
            return {"orderId": 42, "executedQty": "0.010", "avgPrice": "69010.5", "status": "FILLED"}
        return responses[path]

    monkeypatch.setattr(adapter, "_signed_request", _fake_request)

    positions = asyncio.run(adapter.get_position_risk())
    balance = asyncio.run(adapter.get_account_balance())
    order = asyncio.run(adapter.place_market_order("btcusdt", "buy", 0.01, reduce_only=True))

    assert list(positions) == ["BTCUSDT"]
    assert positions["BTCUSDT"].side == "SHORT"
    assert positions["BTCUSDT"].quantity == pytest.approx(0.01)
    assert balance.balance == 950.5
    assert balance.available == 900.0
    assert order.order_id == "42"
    assert order.avg_price == 69010.5
    assert sent[-1][2] == {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": 0.01,
                           "reduceOnly": "true"}


def test_balance_without_settlement_row_is_bad_response(monkeypatch) -> None:
    adapter = _adapter()

    async def _fake_request(method, path, params=None):
        return [{"asset": "BNB", "balance": "1"}]

    monkeypatch.setattr(adapter, "_signed_request", _fake_request)

    with pytest.raises(ExchangeError) as exc_info:
        asyncio.run(adapter.get_account_balance())

    assert exc_info.value.kind == "bad_response"
