from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import ROUND_FLOOR, Decimal
from typing import Literal

from loguru import logger

from engine.errors import BelowMinimumQuantity, PriceUnavailable
from engine.models import Candle, OrderResult, SymbolFilters

Side = Literal["BUY", "SELL"]
PositionSide = Literal["LONG", "SHORT"]


def floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=ROUND_FLOOR) * step


class OrderSink(ABC):
    """Where the state machine sends its market orders."""

    @abstractmethod
    async def open_long(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        raise NotImplementedError

    @abstractmethod
    async def open_short(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        raise NotImplementedError

    @abstractmethod
    async def close_long(self, symbol: str, quantity: Decimal) -> OrderResult:
        raise NotImplementedError

    @abstractmethod
    async def close_short(self, symbol: str, quantity: Decimal) -> OrderResult:
        raise NotImplementedError


class ExchangeGateway(OrderSink):
    """Normalized futures exchange. Symbols are canonical (BTCUSDT) at this boundary."""

    name = "exchange"

    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        raise NotImplementedError

    @abstractmethod
    async def get_last_price(self, symbol: str) -> Decimal | None:
        raise NotImplementedError

    @abstractmethod
    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        raise NotImplementedError

    @abstractmethod
    async def _place_market_order(
        self, symbol: str, side: Side, position_side: PositionSide, quantity: Decimal
    ) -> str | None:
        """Submit a market order and return the exchange order id.

        Implementations raise ExchangeOrderFailed with the exchange's message.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    async def open_long(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        return await self._open(symbol, quote_amount, "BUY", "LONG")

    async def open_short(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        return await self._open(symbol, quote_amount, "SELL", "SHORT")

    async def close_long(self, symbol: str, quantity: Decimal) -> OrderResult:
        order_id = await self._place_market_order(symbol, "SELL", "LONG", quantity)
        return OrderResult(order_id=order_id, filled_price=None, filled_quantity=quantity)

    async def close_short(self, symbol: str, quantity: Decimal) -> OrderResult:
        order_id = await self._place_market_order(symbol, "BUY", "SHORT", quantity)
        return OrderResult(order_id=order_id, filled_price=None, filled_quantity=quantity)

    async def quantity_for(self, symbol: str, quote_amount: Decimal) -> tuple[Decimal, Decimal]:
        price = await self.get_last_price(symbol)
        if not price:
            raise PriceUnavailable(f"Failed to get ticker price for {symbol}")
        filters = await self.get_symbol_filters(symbol)
        quantity = floor_to_step(quote_amount / price, filters.step)
        if quantity < filters.min_qty or quantity <= 0:
            raise BelowMinimumQuantity(symbol, quantity, filters.min_qty)
        return price, quantity

    async def _open(self, symbol: str, quote_amount: Decimal, side: Side, position_side: PositionSide) -> OrderResult:
        price, quantity = await self.quantity_for(symbol, quote_amount)
        logger.info("{} {} {} qty={} (quote={} @ {})", self.name, side, symbol, quantity, quote_amount, price)
        order_id = await self._place_market_order(symbol, side, position_side, quantity)
        return OrderResult(order_id=order_id, filled_price=price, filled_quantity=quantity)
