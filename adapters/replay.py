from __future__ import annotations

from decimal import Decimal

from adapters.base import OrderSink
from engine.errors import PriceUnavailable
from engine.models import OrderResult


class ReplayOrderSink(OrderSink):
    """Fills every order at the price the replay engine last set."""

    def __init__(self) -> None:
        self.price: Decimal | None = None
        self.orders: list[tuple[str, str, Decimal]] = []

    def _fill(self, action: str, symbol: str, quantity: Decimal) -> OrderResult:
        if self.price is None:
            raise PriceUnavailable(f"No replay price set for {symbol}")
        self.orders.append((action, symbol, quantity))
        return OrderResult(order_id=f"replay-{len(self.orders)}", filled_price=self.price, filled_quantity=quantity)

    async def open_long(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        return self._fill("open_long", symbol, self._quantity(quote_amount))

    async def open_short(self, symbol: str, quote_amount: Decimal) -> OrderResult:
        return self._fill("open_short", symbol, self._quantity(quote_amount))

    async def close_long(self, symbol: str, quantity: Decimal) -> OrderResult:
        return self._fill("close_long", symbol, quantity)

    async def close_short(self, symbol: str, quantity: Decimal) -> OrderResult:
        return self._fill("close_short", symbol, quantity)

    def _quantity(self, quote_amount: Decimal) -> Decimal:
        if not self.price:
            raise PriceUnavailable("No replay price set")
        return quote_amount / self.price
