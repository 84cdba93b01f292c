from __future__ import annotations


class TradingError(Exception):
    """Recoverable failure scoped to a single strategy tick."""


class PriceUnavailable(TradingError):
    pass


class BelowMinimumQuantity(TradingError):
    def __init__(self, symbol: str, quantity, min_qty) -> None:
        super().__init__(f"Qty {quantity} < min {min_qty} for {symbol}")
        self.symbol = symbol
        self.quantity = quantity
        self.min_qty = min_qty


class ExchangeError(TradingError):
    """An exchange request was rejected or could not be completed."""


class ExchangeOrderFailed(ExchangeError):
    pass


class InvalidConfig(TradingError):
    pass


class InsufficientHistory(TradingError):
    def __init__(self, have: int, need: int) -> None:
        super().__init__(f"Not enough candles ({have}/{need})")
        self.have = have
        self.need = need


class StoreUnavailable(Exception):
    """The persistence layer cannot be reached; the scheduler must halt."""
