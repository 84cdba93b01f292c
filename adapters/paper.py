from __future__ import annotations

import time
from decimal import Decimal

from loguru import logger

from adapters.base import ExchangeGateway, PositionSide, Side
from engine.models import Candle, OrderResult, SymbolFilters


class PaperGateway(ExchangeGateway):
    """Real market data from `data_provider`, simulated market fills."""

    name = "paper"

    def __init__(self, data_provider: ExchangeGateway, slippage_bps: float = 0.0) -> None:
        self.data_provider = data_provider
        self.slippage = Decimal(str(slippage_bps)) / Decimal(10000)
        self._positions: dict[tuple[str, PositionSide], Decimal] = {}

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        return await self.data_provider.fetch_candles(symbol, timeframe, limit=limit)

    async def get_last_price(self, symbol: str) -> Decimal | None:
        return await self.data_provider.get_last_price(symbol)

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        return await self.data_provider.get_symbol_filters(symbol)

    def positions(self) -> dict[tuple[str, PositionSide], Decimal]:
        return dict(self._positions)

    async def _open(self, symbol: str, quote_amount: Decimal, side: Side, position_side: PositionSide) -> OrderResult:
        price, quantity = await self.quantity_for(symbol, quote_amount)
        order_id = await self._place_market_order(symbol, side, position_side, quantity)
        return OrderResult(order_id=order_id, filled_price=self._slipped(price, side), filled_quantity=quantity)

    def _slipped(self, price: Decimal, side: Side) -> Decimal:
        slip = price * self.slippage
        return price + slip if side == "BUY" else price - slip

    async def _place_market_order(
        self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal
    ) -> str | None:
        opening = (side == "BUY") == (position_side == "LONG")
        key = (symbol, position_side)
        held = self._positions.get(key, Decimal(0))
        held = held + quantity if opening else held - quantity
        if held > 0:
            self._positions[key] = held
        else:
            self._positions.pop(key, None)
        order_id = f"paper-{int(time.time() * 1000)}"
        logger.info("Paper fill: {} {} {} qty={} id={}", symbol, side, position_side, quantity, order_id)
        return order_id

    async def aclose(self) -> None:
        await self.data_provider.aclose()
