#!/usr/bin/env python3
"""Binance-style futures REST adapter (Aster DEX) with HMAC-SHA256 signing."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from arena_config import ExchangeConfig
from errors import ExchangeError

from .base import AccountBalance, ExchangeAdapter, ExchangePosition, OrderResult

SETTLEMENT_ASSET = "USDT"
_ERROR_BODY_PREVIEW = 300


class AsterdexAdapter(ExchangeAdapter):
    """Signed /fapi calls for one bot's API key pair."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        config: ExchangeConfig,
        precisions: Optional[Dict[str, int]] = None,
        log=None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__(log)
        self._api_key = api_key
        self._api_secret = api_secret
        self.config = config
        self._precisions = {k.upper(): int(v) for k, v in (precisions or {}).items()}
        self._session = session
        self._owns_session = session is None

    @property
    def name(self) -> str:
        return "Asterdex"

    async def initialize(self) -> bool:
        if not self._api_key or not self._api_secret:
            raise ExchangeError("missing exchange API credentials", kind="credentials")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec)
            )
            self._owns_session = True
        self._initialized = True
        return True

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._initialized = False

    # ------------------------------------------------------------ signing
    def sign(self, params: Dict[str, Any]) -> str:
        """Return the signed query string for params (timestamp added)."""
        query = dict(params)
        query.setdefault("timestamp", int(time.time() * 1000))
        query.setdefault("recvWindow", int(self.config.recv_window_ms))
        encoded = urlencode(query)
        signature = hmac.new(
            self._api_secret.encode("utf-8"),
            encoded.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"{encoded}&signature={signature}"

    async def _signed_request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self._initialized:
            await self.initialize()
        url = f"{self.config.base_url}{path}?{self.sign(params or {})}"
        headers = {"X-MBX-APIKEY": self._api_key}
        try:
            async with self._session.request(
                method,
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_sec),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise ExchangeError(
                        f"{method} {path} HTTP {resp.status}: {body[:_ERROR_BODY_PREVIEW]}",
                        kind="http_error",
                    )
                return await resp.json(content_type=None)
        except ExchangeError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ExchangeError(f"{method} {path} failed: {exc}", kind="transport") from exc

    # ------------------------------------------------------------ account
    async def get_account_balance(self) -> AccountBalance:
        rows = await self._signed_request("GET", "/fapi/v2/balance")
        for row in rows if isinstance(rows, list) else []:
            if str(row.get("asset") or "").upper() != SETTLEMENT_ASSET:
                continue
            return AccountBalance(
                asset=SETTLEMENT_ASSET,
                balance=float(row.get("balance") or 0.0),
                available=float(row.get("availableBalance") or 0.0),
                unrealized_pnl=float(row.get("crossUnPnl") or 0.0),
            )
        raise ExchangeError(f"no {SETTLEMENT_ASSET} balance row returned", kind="bad_response")

    async def get_position_risk(self) -> Dict[str, ExchangePosition]:
        rows = await self._signed_request("GET", "/fapi/v2/positionRisk")
        out: Dict[str, ExchangePosition] = {}
        for row in rows if isinstance(rows, list) else []:
            amt = float(row.get("positionAmt") or 0.0)
            if amt == 0:
                continue
            symbol = str(row.get("symbol") or "").upper()
            out[symbol] = ExchangePosition(
                symbol=symbol,
                side="LONG" if amt > 0 else "SHORT",
                quantity=abs(amt),
                entry_price=float(row.get("entryPrice") or 0.0),
                mark_price=float(row.get("markPrice") or 0.0),
                unrealized_pnl=float(row.get("unRealizedProfit") or 0.0),
                leverage=float(row.get("leverage") or 1.0),
                liquidation_price=float(row.get("liquidationPrice") or 0.0),
                raw=dict(row),
            )
        return out

    async def get_account_trades(self, symbol: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": int(limit)}
        if symbol:
            params["symbol"] = symbol.upper()
        rows = await self._signed_request("GET", "/fapi/v1/userTrades", params)
        return list(rows) if isinstance(rows, list) else []

    # ------------------------------------------------------------ orders
    def quantity_precision(self, symbol: str) -> int:
        return self._precisions.get(symbol.upper(), 3)

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._signed_request("POST", "/fapi/v1/leverage", {"symbol": symbol.upper(), "leverage": int(leverage)})

    def _order_result(self, data: Any) -> OrderResult:
        if not isinstance(data, dict):
            raise ExchangeError("order response is not an object", kind="bad_response")
        return OrderResult(
            order_id=str(data.get("orderId")) if data.get("orderId") is not None else None,
            filled_quantity=float(data.get("executedQty") or 0.0),
            avg_price=float(data.get("avgPrice") or 0.0),
            status=str(data.get("status") or ""),
        )

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        if quantity <= 0:
            raise ExchangeError(f"quantity for {symbol} rounds to zero", kind="bad_quantity")
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": quantity,
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        data = await self._signed_request("POST", "/fapi/v1/order", params)
        return self._order_result(data)

    async def place_stop_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        trigger_price: float,
        order_type: str = "sl",
    ) -> OrderResult:
        params = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": "STOP_MARKET" if order_type == "sl" else "TAKE_PROFIT_MARKET",
            "stopPrice": trigger_price,
            "quantity": quantity,
            "reduceOnly": "true",
        }
        data = await self._signed_request("POST", "/fapi/v1/order", params)
        return self._order_result(data)
