from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import requests
from loguru import logger

from adapters.base import ExchangeGateway, PositionSide, Side
from engine.errors import ExchangeError, ExchangeOrderFailed
from engine.models import Candle, SymbolFilters, timeframe_delta

BASE_URL = "https://api.bitget.com"
PRODUCT_TYPE = "USDT-FUTURES"

_GRANULARITY = {
    "1m": "1m",
    "3m": "3m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1H",
    "2h": "2H",
    "4h": "4H",
    "6h": "6H",
    "12h": "12H",
    "1d": "1D",
    "1w": "1W",
}


def sign(secret: str, timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """Base64 HMAC-SHA256 over timestamp + METHOD + path (with query) + body."""
    prehash = f"{timestamp}{method.upper()}{request_path}{body}"
    digest = hmac.new(secret.encode("utf-8"), prehash.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class BitgetFuturesGateway(ExchangeGateway):
    """Bitget v2 USDT-M futures, crossed margin. Private calls need the API passphrase."""

    name = "bitget"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        passphrase: str | None = None,
        proxy_url: str | None = None,
        hedge_mode: bool = True,
        base_url: str = BASE_URL,
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase or ""
        self.hedge_mode = hedge_mode
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
        if not self.api_key or not self.api_secret or not self.passphrase:
            raise ExchangeOrderFailed("Bitget API key, secret and passphrase are required for live orders")
        payload = json.dumps(body, separators=(",", ":"))
        ts = str(int(time.time() * 1000))
        headers = {
            "ACCESS-KEY": self.api_key,
            "ACCESS-SIGN": sign(self.api_secret, ts, "POST", path, payload),
            "ACCESS-TIMESTAMP": ts,
            "ACCESS-PASSPHRASE": self.passphrase,
            "Content-Type": "application/json",
            "locale": "en-US",
        }
        r = self.session.post(f"{self.base_url}{path}", headers=headers, data=payload, timeout=self.timeout)
        return self._unwrap(r)

    @staticmethod
    def _unwrap(r: requests.Response) -> Any:
        if r.status_code >= 400:
            raise ExchangeError(f"Bitget HTTP {r.status_code}: {r.text}")
        payload = r.json()
        if payload.get("code") != "00000":
            raise ExchangeError(f"Bitget error {payload.get('code')}: {payload.get('msg')}")
        return payload.get("data")

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        granularity = _GRANULARITY.get(timeframe.lower())
        if not granularity:
            raise ValueError(f"Unsupported timeframe: {timeframe}")
        span = timeframe_delta(timeframe)
        params = {"symbol": symbol, "productType": PRODUCT_TYPE, "granularity": granularity, "limit": limit}
        try:
            rows = await asyncio.to_thread(self._get, "/api/v2/mix/market/candles", params)
        except requests.RequestException as exc:
            raise ExchangeError(f"Bitget candles failed for {symbol}: {exc}") from exc
        candles = []
        for k in rows or []:
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
        params = {"symbol": symbol, "productType": PRODUCT_TYPE}
        try:
            tickers = await asyncio.to_thread(self._get, "/api/v2/mix/market/ticker", params)
        except (ExchangeError, requests.RequestException) as exc:
            logger.warning("Bitget ticker failed for {}: {}", symbol, exc)
            return None
        ticker = next((t for t in tickers or [] if t.get("symbol") == symbol), None)
        price = ticker.get("lastPr") if ticker else None
        return Decimal(price) if price else None

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        cached = self._filters_cache.get(symbol)
        if cached:
            return cached
        params = {"symbol": symbol, "productType": PRODUCT_TYPE}
        try:
            contracts = await asyncio.to_thread(self._get, "/api/v2/mix/market/contracts", params)
        except requests.RequestException as exc:
            raise ExchangeError(f"Bitget contracts failed for {symbol}: {exc}") from exc
        contract = next((c for c in contracts or [] if c.get("symbol") == symbol), None)
        if contract is None:
            raise ExchangeError(f"Symbol not found: {symbol}")
        filters = SymbolFilters(
            step=Decimal(contract.get("sizeMultiplier") or "0.001"),
            min_qty=Decimal(contract.get("minTradeNum") or "0"),
        )
        self._filters_cache[symbol] = filters
        return filters

    def _order_body(self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal) -> dict[str, Any]:
        closing = (side == "SELL") == (position_side == "LONG")
        body: dict[str, Any] = {
            "symbol": symbol,
            "productType": PRODUCT_TYPE,
            "marginMode": "crossed",
            "marginCoin": "USDT",
            "size": format(quantity.normalize(), "f"),
            "orderType": "market",
        }
        if self.hedge_mode:
            # hedge mode names the position, not the order direction
            body["side"] = "buy" if position_side == "LONG" else "sell"
            body["tradeSide"] = "close" if closing else "open"
        else:
            body["side"] = "buy" if side == "BUY" else "sell"
            if closing:
                body["reduceOnly"] = "YES"
        return body

    async def _place_market_order(
        self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal
    ) -> str | None:
        body = self._order_body(symbol, side, position_side, quantity)
        try:
            data = await asyncio.to_thread(self._signed_post, "/api/v2/mix/order/place-order", body)
        except ExchangeOrderFailed:
            raise
        except (ExchangeError, requests.RequestException) as exc:
            raise ExchangeOrderFailed(f"Bitget order failed: {exc}") from exc
        order_id = (data or {}).get("orderId")
        return str(order_id) if order_id else None

    async def aclose(self) -> None:
        self.session.close()
