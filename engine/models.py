from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def label(self) -> str:
        return "Long" if self is Direction.LONG else "Short"


class TradeReason(str, Enum):
    FILLED = "Filled"
    TAKE_PROFIT = "TakeProfit"
    STOP_LOSS = "StopLoss"
    MANUAL = "Manual"


_TIMEFRAMES = {
    "1m": timedelta(minutes=1),
    "3m": timedelta(minutes=3),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "2h": timedelta(hours=2),
    "4h": timedelta(hours=4),
    "6h": timedelta(hours=6),
    "12h": timedelta(hours=12),
    "1d": timedelta(days=1),
    "1w": timedelta(days=7),
}


def timeframe_delta(tf: str) -> timedelta:
    key = tf.lower()
    if key not in _TIMEFRAMES:
        raise ValueError(f"Unsupported timeframe: {tf}")
    return _TIMEFRAMES[key]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Candle:
    open_time: datetime
    close_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal(0)


@dataclass(frozen=True)
class SymbolFilters:
    step: Decimal
    min_qty: Decimal


@dataclass
class OrderResult:
    order_id: str | None
    filled_price: Decimal | None
    filled_quantity: Decimal | None


@dataclass
class Trade:
    strategy_id: str
    symbol: str
    side: Literal["Buy", "Sell"]
    quantity: Decimal
    price: Decimal
    status: TradeReason
    executed_at: datetime
    order_id: str | None = None
    pnl_dollar: Decimal | None = None
    commission: Decimal | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class LogLine:
    strategy_id: str
    level: Literal["Info", "Warning", "Error"]
    message: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ExecutionEvent:
    """A position opened or closed by the decision routine."""

    direction: Direction
    action: Literal["Open", "Close"]
    price: Decimal
    quantity: Decimal
    order_size: Decimal
    reason: TradeReason
    at: datetime
    order_id: str | None = None
    pnl_percent: Decimal | None = None
    pnl_dollar: Decimal | None = None
    commission: Decimal | None = None

    def to_trade(self, strategy_id: str, symbol: str) -> Trade:
        buy = (self.direction is Direction.LONG) == (self.action == "Open")
        net = None
        if self.pnl_dollar is not None:
            net = self.pnl_dollar - (self.commission or Decimal(0))
        return Trade(
            strategy_id=strategy_id,
            symbol=symbol,
            side="Buy" if buy else "Sell",
            quantity=self.quantity,
            price=self.price,
            status=self.reason,
            executed_at=self.at,
            order_id=self.order_id,
            pnl_dollar=net,
            commission=self.commission,
        )
