from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

import requests
from loguru import logger

from adapters.base import ExchangeGateway, PositionSide, Side
from adapters.symbols import to_hyphenated
from engine.errors import ExchangeError, ExchangeOrderFailed
from engine.models import Candle, SymbolFilters, timeframe_delta

BASE_URL = "https://open-api.bingx.com"


def sign(secret: str, query_string: str) -> str:
    return hmac.new(secret.encode("utf-8"), query_string.encode("utf-8"), hashlib.sha256).hexdigest()


class BingXFuturesGateway(ExchangeGateway):
    """BingX perpetual swap (USDT-M). Exchange symbols are hyphenated: BTC-USDT."""

    name = "bingx"

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

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        r = self.session.get(f"{self.base_url}{path}", params=params or {}, timeout=self.timeout)
        return self._unwrap(r)

    def _signed_post(self, path: str, params: dict[str, Any]) -> Any:
        if not self.api_key or not self.api_secret:
            raise ExchangeOrderFailed("BingX API keys missing for live order")
        params = dict(params, timestamp=int(time.time() * 1000))
        query = urlencode(params)
        url = f"{self.base_url}{path}?{query}&signature={sign(self.api_secret, query)}"
        r = self.session.post(url, headers={"X-BX-APIKEY": self.api_key}, timeout=self.timeout)
        return self._unwrap(r)

    @staticmethod
    def _unwrap(r: requests.Response) -> Any:
        if r.status_code >= 400:
            raise ExchangeError(f"BingX HTTP {r.status_code}: {r.text}")
        payload = r.json()
        if payload.get("code") not in (0, "0"):
            raise ExchangeError(f"BingX error {payload.get('code')}: {payload.get('msg')}")
        return payload.get("data")

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        span = timeframe_delta(timeframe)
        data = await asyncio.to_thread(
            self._get,
            "/openApi/swap/v3/quote/klines",
            {"symbol": to_hyphenated(symbol), "interval": timeframe.lower(), "limit": limit},
        )
        candles = []
        for k in data or []:
            opened = datetime.fromtimestamp(int(k["time"]) / 1000, tz=timezone.utc)
            candles.append(
                Candle(
                    open_time=opened,
                    close_time=opened + span,
                    open=Decimal(str(k["open"])),
                    high=Decimal(str(k["high"])),
                    low=Decimal(str(k["low"])),
                    close=Decimal(str(k["close"])),
                    volume=Decimal(str(k.get("volume", "0"))),
                )
            )
        return sorted(candles, key=lambda c: c.open_time)

    async def get_last_price(self, symbol: str) -> Decimal | None:
        try:
            data = await asyncio.to_thread(self._get, "/openApi/swap/v2/quote/price", {"symbol": to_hyphenated(symbol)})
        except (ExchangeError, requests.RequestException) as exc:
            logger.warning("BingX ticker failed for {}: {}", symbol, exc)
            return None
        price = (data or {}).get("price")
        return Decimal(str(price)) if price else None

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        cached = self._filters_cache.get(symbol)
        if cached:
            return cached
        contracts = await asyncio.to_thread(self._get, "/openApi/swap/v2/quote/contracts")
        wanted = to_hyphenated(symbol)
        contract = next((c for c in contracts or [] if c.get("symbol") == wanted), None)
        if contract is None:
            logger.warning("BingX contract {} not found, using default lot step", wanted)
            filters = SymbolFilters(step=Decimal("0.001"), min_qty=Decimal(0))
        else:
            step = Decimal(1).scaleb(-int(contract.get("quantityPrecision", 3)))
            filters = SymbolFilters(step=step, min_qty=Decimal(str(contract.get("tradeMinQuantity", "0"))))
        self._filters_cache[symbol] = filters
        return filters

    async def _place_market_order(
        self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal
    ) -> str | None:
        params = {
            "symbol": to_hyphenated(symbol),
            "side": side,
            "positionSide": position_side,
            "type": "MARKET",
            "quantity": format(quantity.normalize(), "f"),
        }
        try:
            data = await asyncio.to_thread(self._signed_post, "/openApi/swap/v2/trade/order", params)
        except ExchangeOrderFailed:
            raise
        except (ExchangeError, requests.RequestException) as exc:
            raise ExchangeOrderFailed(f"BingX order failed: {exc}") from exc
        order = (data or {}).get("order") or {}
        order_id = order.get("orderId")
        return str(order_id) if order_id is not None else None

    async def aclose(self) -> None:
        self.session.close()
