from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

import requests
from loguru import logger

from adapters.base import ExchangeGateway, PositionSide, Side
from engine.errors import ExchangeError, ExchangeOrderFailed
from engine.models import Candle, SymbolFilters, timeframe_delta

BASE_URL = "https://api.bybit.com"
RECV_WINDOW = "5000"

_INTERVALS = {
    "1m": "1",
    "3m": "3",
    "5m": "5",
    "15m": "15",
    "30m": "30",
    "1h": "60",
    "2h": "120",
    "4h": "240",
    "6h": "360",
    "12h": "720",
    "1d": "D",
    "1w": "W",
}


def sign(secret: str, timestamp: str, api_key: str, recv_window: str, payload: str) -> str:
    """v5 signature: hex HMAC-SHA256 over timestamp + key + recv window + query or body."""
    prehash = f"{timestamp}{api_key}{recv_window}{payload}"
    return hmac.new(secret.encode("utf-8"), prehash.encode("utf-8"), hashlib.sha256).hexdigest()


class BybitFuturesGateway(ExchangeGateway):
    """Bybit v5 linear perpetuals (USDT), one-way position mode."""

    name = "bybit"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        proxy_url: str | None = None,
        base_url: str = BASE_URL,
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        if proxy_url:
            self.session.proxies = {"http": proxy_url, "https": proxy_url}
        self._filters_cache: dict[str, SymbolFilters] = {}

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        r = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        return self._unwrap(r)

    def _signed_post(self, path: str, body: dict[str, Any]) -> Any:
        if not self.api_key or not self.api_secret:
            raise ExchangeOrderFailed("Bybit API keys missing for live order")
        payload = json.dumps(body, separators=(",", ":"))
        ts = str(int(time.time() * 1000))
        headers = {
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-SIGN": sign(self.api_secret, ts, self.api_key, RECV_WINDOW, payload),
            "X-BAPI-TIMESTAMP": ts,
            "X-BAPI-RECV-WINDOW": RECV_WINDOW,
            "Content-Type": "application/json",
        }
        r = self.session.post(f"{self.base_url}{path}", headers=headers, data=payload, timeout=self.timeout)
        return self._unwrap(r)

    @staticmethod
    def _unwrap(r: requests.Response) -> Any:
        if r.status_code >= 400:
            raise ExchangeError(f"Bybit HTTP {r.status_code}: {r.text}")
        payload = r.json()
        if str(payload.get("retCode")) != "0":
            raise ExchangeError(f"Bybit error {payload.get('retCode')}: {payload.get('retMsg')}")
        return payload.get("result") or {}

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        interval = _INTERVALS.get(timeframe.lower())
        if not interval:
            raise ValueError(f"Unsupported timeframe: {timeframe}")
        span = timeframe_delta(timeframe)
        params = {"category": "linear", "symbol": symbol, "interval": interval, "limit": limit}
        try:
            result = await asyncio.to_thread(self._get, "/v5/market/kline", params)
        except requests.RequestException as exc:
            raise ExchangeError(f"Bybit klines failed for {symbol}: {exc}") from exc
        candles = []
        # newest first: [startTime, open, high, low, close, volume, turnover]
        for k in result.get("list") or []:
            opened = datetime.fromtimestamp(int(k[0]) / 1000, tz=timezone.utc)
            candles.append(
                Candle(
                    open_time=opened,
                    close_time=opened + span,
                    open=Decimal(k[1]),
                    high=Decimal(k[2]),
                    low=Decimal(k[3]),
                    close=Decimal(k[4]),
                    volume=Decimal(k[5]),
                )
            )
        return sorted(candles, key=lambda c: c.open_time)

    async def get_last_price(self, symbol: str) -> Decimal | None:
        try:
            result = await asyncio.to_thread(self._get, "/v5/market/tickers", {"category": "linear", "symbol": symbol})
        except (ExchangeError, requests.RequestException) as exc:
            logger.warning("Bybit ticker failed for {}: {}", symbol, exc)
            return None
        tickers = result.get("list") or []
        price = tickers[0].get("lastPrice") if tickers else None
        return Decimal(price) if price else None

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        cached = self._filters_cache.get(symbol)
        if cached:
            return cached
        params = {"category": "linear", "symbol": symbol}
        try:
            result = await asyncio.to_thread(self._get, "/v5/market/instruments-info", params)
        except requests.RequestException as exc:
            raise ExchangeError(f"Bybit instruments failed for {symbol}: {exc}") from exc
        instruments = result.get("list") or []
        if not instruments:
            raise ExchangeError(f"Symbol not found: {symbol}")
        lot = instruments[0].get("lotSizeFilter") or {}
        filters = SymbolFilters(
            step=Decimal(lot.get("qtyStep") or "0.001"),
            min_qty=Decimal(lot.get("minOrderQty") or "0"),
        )
        self._filters_cache[symbol] = filters
        return filters

    async def _place_market_order(
        self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal
    ) -> str | None:
        body: dict[str, Any] = {
            "category": "linear",
            "symbol": symbol,
            "side": "Buy" if side == "BUY" else "Sell",
            "orderType": "Market",
            "qty": format(quantity.normalize(), "f"),
            "positionIdx": 0,
        }
        if (side == "SELL") == (position_side == "LONG"):
            body["reduceOnly"] = True
        try:
            result = await asyncio.to_thread(self._signed_post, "/v5/order/create", body)
        except ExchangeOrderFailed:
            raise
        except (ExchangeError, requests.RequestException) as exc:
            raise ExchangeOrderFailed(f"Bybit order failed: {exc}") from exc
        order_id = result.get("orderId")
        return str(order_id) if order_id else None

    async def aclose(self) -> None:
        self.session.close()
