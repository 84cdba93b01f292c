from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal

import pandas as pd

from adapters.replay import ReplayOrderSink
from backtest.metrics import ReplaySummary, summarize
from engine.core import StrategyRunner
from engine.errors import InsufficientHistory
from engine.machine import PriceProbe
from engine.models import Candle, ExecutionEvent, TradeReason, timeframe_delta
from engine.state import StrategyState
from services.config_service import StrategyConfig
from strategies.indicators import trailing_moving_average


@dataclass(frozen=True)
class ReplayOptions:
    # "close": TP/SL checked against the candle close and filled there.
    # "intrabar": checked against high/low and filled at the level hit.
    exit_fill: Literal["close", "intrabar"] = "close"
    both_hit: TradeReason = TradeReason.STOP_LOSS


@dataclass(frozen=True)
class ReplayTrade:
    side: str
    action: str
    price: Decimal
    time: datetime
    reason: str
    order_size: Decimal
    pnl_percent: Decimal | None = None
    pnl_dollar: Decimal | None = None


@dataclass(frozen=True)
class IndicatorPoint:
    time: datetime
    value: Decimal


@dataclass
class ReplayResult:
    trades: list[ReplayTrade] = field(default_factory=list)
    indicator: list[IndicatorPoint] = field(default_factory=list)
    summary: ReplaySummary = field(default_factory=ReplaySummary)
    final_state: StrategyState = field(default_factory=StrategyState)


def _replay_trade(event: ExecutionEvent) -> ReplayTrade:
    closing = event.action == "Close"
    return ReplayTrade(
        side=event.direction.label,
        action=event.action,
        price=event.price,
        time=event.at,
        reason=event.reason.value if closing else "Entry",
        order_size=event.order_size,
        pnl_percent=round(event.pnl_percent, 4) if closing else None,
        pnl_dollar=round(event.pnl_dollar, 2) if closing else None,
    )


async def replay(
    candles: list[Candle],
    config: StrategyConfig,
    options: ReplayOptions | None = None,
    strategy_id: str = "replay",
) -> ReplayResult:
    """Feed closed candles, oldest first, through the same runner the live tick uses."""
    options = options or ReplayOptions()
    n = config.indicator_length
    if len(candles) < n:
        raise InsufficientHistory(len(candles), n)

    closes = [c.close for c in candles]
    ma_values = trailing_moving_average(closes, config.indicator_type, n, config.ma_window)
    result = ReplayResult()
    result.indicator = [
        IndicatorPoint(time=candles[i].open_time, value=round(ma_values[i], 8))
        for i in range(n - 1, len(candles))
        if ma_values[i] != 0
    ]

    # Trades carry the candle open time, like the indicator points.
    now: list[datetime] = [candles[0].open_time]
    sink = ReplayOrderSink()
    runner = StrategyRunner(
        strategy_id,
        config,
        StrategyState(),
        sink,
        clock=lambda: now[0],
        both_hit=options.both_hit,
    )

    for i in range(n - 1, len(candles)):
        candle = candles[i]
        ma = ma_values[i]
        if ma == 0:
            continue
        now[0] = candle.open_time
        sink.price = candle.close
        probe = PriceProbe.candle_range(candle) if options.exit_fill == "intrabar" else PriceProbe.at(candle.close)
        await runner.check_exits(probe)
        runner.begin_candle(candle)
        await runner.on_candle(candle, ma)
        runner.refresh_preview()

    events, _ = runner.drain()
    result.trades = [_replay_trade(e) for e in events]
    result.final_state = runner.state
    result.summary = summarize(result.trades, runner.state)
    return result


def run_replay(candles: list[Candle], config: StrategyConfig, options: ReplayOptions | None = None) -> ReplayResult:
    return asyncio.run(replay(candles, config, options))


def load_candles_csv(csv_path: str, timeframe: str) -> list[Candle]:
    """Read candles from a CSV with `timestamp,open,high,low,close[,volume]` columns.

    `timestamp` is the candle open time, epoch milliseconds or an ISO string.
    """
    df = pd.read_csv(csv_path, dtype=str)
    raw_ts = df["timestamp"]
    if raw_ts.str.fullmatch(r"\d+").all():
        opened = pd.to_datetime(raw_ts.astype("int64"), unit="ms", utc=True)
    else:
        opened = pd.to_datetime(raw_ts, utc=True)
    span = timeframe_delta(timeframe)
    candles = []
    for ts, (_, row) in zip(opened, df.iterrows()):
        open_time = ts.to_pydatetime()
        volume = row.get("volume")
        candles.append(
            Candle(
                open_time=open_time,
                close_time=open_time + span,
                open=Decimal(row["open"]),
                high=Decimal(row["high"]),
                low=Decimal(row["low"]),
                close=Decimal(row["close"]),
                volume=Decimal(volume) if isinstance(volume, str) and volume else Decimal(0),
            )
        )
    return sorted(candles, key=lambda c: c.open_time)
