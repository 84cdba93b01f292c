from __future__ import annotations

from decimal import Decimal
from typing import Sequence

ZERO = Decimal(0)


def sma(prices: Sequence[Decimal], period: int) -> list[Decimal]:
    values = [ZERO] * len(prices)
    if period <= 0 or len(prices) < period:
        return values
    total = sum(prices[:period], ZERO)
    values[period - 1] = total / period
    for i in range(period, len(prices)):
        total = total - prices[i - period] + prices[i]
        values[i] = total / period
    return values


def ema(prices: Sequence[Decimal], period: int) -> list[Decimal]:
    """EMA seeded with the SMA of the first `period` closes."""
    values = [ZERO] * len(prices)
    if period <= 0 or len(prices) < period:
        return values
    values[period - 1] = sum(prices[:period], ZERO) / period
    multiplier = Decimal(2) / Decimal(period + 1)
    for i in range(period, len(prices)):
        values[i] = (prices[i] - values[i - 1]) * multiplier + values[i - 1]
    return values


def moving_average(prices: Sequence[Decimal], kind: str, period: int) -> list[Decimal]:
    if kind.upper() == "SMA":
        return sma(prices, period)
    return ema(prices, period)


def current_value(prices: Sequence[Decimal], kind: str, period: int) -> Decimal | None:
    if len(prices) < period:
        return None
    return moving_average(prices, kind, period)[-1]


def trailing_value(prices: Sequence[Decimal], kind: str, period: int, window: int) -> Decimal:
    """MA of the last price, computed over at most `window` trailing prices."""
    chunk = prices[max(0, len(prices) - window) :]
    if len(chunk) < period:
        return ZERO
    return moving_average(chunk, kind, period)[-1]


def trailing_moving_average(prices: Sequence[Decimal], kind: str, period: int, window: int) -> list[Decimal]:
    """Per-index `trailing_value`, so every value depends on the same span of history.

    An EMA over the full series drifts with how much history happens to be loaded;
    bounding it to `window` prices makes a value reproducible from a fixed fetch.
    """
    if kind.upper() == "SMA" and window >= period:
        return sma(prices, period)
    return [trailing_value(prices[: i + 1], kind, period, window) for i in range(len(prices))]
