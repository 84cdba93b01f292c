from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException
from loguru import logger

from adapters.base import ExchangeGateway, PositionSide, Side
from engine.errors import ExchangeError, ExchangeOrderFailed
from engine.models import Candle, SymbolFilters, timeframe_delta


_TIMEFRAME_MAP = {
    "1m": Client.KLINE_INTERVAL_1MINUTE,
    "3m": Client.KLINE_INTERVAL_3MINUTE,
    "5m": Client.KLINE_INTERVAL_5MINUTE,
    "15m": Client.KLINE_INTERVAL_15MINUTE,
    "30m": Client.KLINE_INTERVAL_30MINUTE,
    "1h": Client.KLINE_INTERVAL_1HOUR,
    "2h": Client.KLINE_INTERVAL_2HOUR,
    "4h": Client.KLINE_INTERVAL_4HOUR,
    "6h": Client.KLINE_INTERVAL_6HOUR,
    "12h": Client.KLINE_INTERVAL_12HOUR,
    "1d": Client.KLINE_INTERVAL_1DAY,
    "1w": Client.KLINE_INTERVAL_1WEEK,
}


def _qty_str(quantity: Decimal) -> str:
    return format(quantity.normalize(), "f")


class BinanceFuturesGateway(ExchangeGateway):
    """USDT-M perpetual futures. Assumes hedge mode unless told otherwise."""

    name = "binance"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        proxy_url: str | None = None,
        testnet: bool = False,
        hedge_mode: bool = True,
    ) -> None:
        requests_params = {"proxies": {"http": proxy_url, "https": proxy_url}} if proxy_url else None
        self.client = Client(api_key, api_secret, requests_params=requests_params, testnet=testnet)
        self.hedge_mode = hedge_mode
        self._filters_cache: dict[str, SymbolFilters] = {}
        self._has_keys = bool(api_key and api_secret)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        interval = _TIMEFRAME_MAP.get(timeframe.lower())
        if not interval:
            raise ValueError(f"Unsupported timeframe: {timeframe}")
        span = timeframe_delta(timeframe)
        try:
            klines = await asyncio.to_thread(self.client.futures_klines, symbol=symbol, interval=interval, limit=limit)
        except (BinanceAPIException, BinanceRequestException) as exc:
            raise ExchangeError(f"Binance klines failed for {symbol}: {exc}") from exc
        candles = []
        for k in klines:
            opened = datetime.fromtimestamp(k[0] / 1000, tz=timezone.utc)
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
            ticker = await asyncio.to_thread(self.client.futures_symbol_ticker, symbol=symbol)
        except (BinanceAPIException, BinanceRequestException) as exc:
            logger.warning("Binance ticker failed for {}: {}", symbol, exc)
            return None
        price = ticker.get("price") if isinstance(ticker, dict) else None
        return Decimal(price) if price else None

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        cached = self._filters_cache.get(symbol)
        if cached:
            return cached
        try:
            info = await asyncio.to_thread(self.client.futures_exchange_info)
        except (BinanceAPIException, BinanceRequestException) as exc:
            raise ExchangeError(f"Binance exchange info failed for {symbol}: {exc}") from exc
        filters = _extract_filters(info, symbol)
        self._filters_cache[symbol] = filters
        return filters

    async def _place_market_order(
        self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal
    ) -> str | None:
        if not self._has_keys:
            raise ExchangeOrderFailed("Binance API keys missing for live order")
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": Client.SIDE_BUY if side == "BUY" else Client.SIDE_SELL,
            "type": "MARKET",
            "quantity": _qty_str(quantity),
        }
        if self.hedge_mode:
            params["positionSide"] = position_side
        elif (side == "SELL") == (position_side == "LONG"):
            params["reduceOnly"] = "true"
        try:
            resp = await asyncio.to_thread(self.client.futures_create_order, **params)
        except BinanceAPIException as exc:
            raise ExchangeOrderFailed(f"Binance order failed: {exc.message}") from exc
        except BinanceRequestException as exc:
            raise ExchangeOrderFailed(f"Binance order failed: {exc}") from exc
        order_id = resp.get("orderId")
        return str(order_id) if order_id is not None else None

    async def aclose(self) -> None:
        await asyncio.to_thread(self.client.close_connection)


def _extract_filters(exchange_info: dict, symbol: str) -> SymbolFilters:
    for s in exchange_info.get("symbols", []):
        if s.get("symbol") != symbol:
            continue
        lot = next((f for f in s.get("filters", []) if f.get("filterType") == "MARKET_LOT_SIZE"), None)
        lot = lot or next((f for f in s.get("filters", []) if f.get("filterType") == "LOT_SIZE"), None)
        if not lot:
            raise ExchangeError(f"LOT_SIZE filter not found for {symbol}")
        return SymbolFilters(step=Decimal(lot["stepSize"]), min_qty=Decimal(lot["minQty"]))
    raise ExchangeError(f"Symbol not found: {symbol}")
