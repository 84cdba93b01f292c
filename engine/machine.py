"""Pure transitions of the MA-bounce state machine.

Every function takes a StrategyState and returns a new one; nothing here talks
to an exchange. The async runner in engine.core sequences these calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal, Sequence

from engine.models import Candle, Direction, TradeReason
from engine.state import OpenPosition, StrategyState
from risk.sizing import record_outcome
from services.config_service import StrategyConfig

HUNDRED = Decimal(100)

CounterAction = Literal["skip", "frozen", "hold", "increment", "reset"]


@dataclass(frozen=True)
class CounterUpdate:
    direction: Direction
    action: CounterAction
    before: int
    after: int


@dataclass(frozen=True)
class PriceProbe:
    """Prices an exit check is evaluated against.

    A live tick sees one price. An intrabar probe carries the candle range and
    fills exits at the take-profit / stop-loss level itself.
    """

    last: Decimal
    high: Decimal
    low: Decimal
    intrabar: bool = False

    @classmethod
    def at(cls, price: Decimal) -> "PriceProbe":
        return cls(last=price, high=price, low=price)

    @classmethod
    def candle_range(cls, candle: Candle) -> "PriceProbe":
        return cls(last=candle.close, high=candle.high, low=candle.low, intrabar=True)


@dataclass(frozen=True)
class ExitSignal:
    direction: Direction
    reason: TradeReason
    price: Decimal


@dataclass(frozen=True)
class ClosedPosition:
    position: OpenPosition
    exit_price: Decimal
    pnl_percent: Decimal
    pnl_dollar: Decimal


def evolve(state: StrategyState, **changes) -> StrategyState:
    new = state.model_copy(update=changes)
    if new.open_long is not None and new.open_short is not None:
        raise ValueError("a strategy cannot hold a long and a short position at once")
    return new


def counter(state: StrategyState, direction: Direction) -> int:
    return state.long_counter if direction is Direction.LONG else state.short_counter


def _counter_field(direction: Direction) -> str:
    return "long_counter" if direction is Direction.LONG else "short_counter"


def _skip_field(direction: Direction) -> str:
    return "skip_next_long" if direction is Direction.LONG else "skip_next_short"


def _position_field(direction: Direction) -> str:
    return "open_long" if direction is Direction.LONG else "open_short"


def offset_line(config: StrategyConfig, ma: Decimal, direction: Direction) -> Decimal:
    shift = ma * config.offset_percent / HUNDRED
    return ma + shift if direction is Direction.LONG else ma - shift


def touches_offset_line(config: StrategyConfig, candle: Candle, ma: Decimal, direction: Direction) -> bool:
    line = offset_line(config, ma, direction)
    if direction is Direction.LONG:
        return candle.low <= line
    return candle.high >= line


def on_trend_side(candle: Candle, ma: Decimal, direction: Direction) -> bool:
    if direction is Direction.LONG:
        return candle.low > ma
    return candle.high < ma


def advance_counter(
    config: StrategyConfig,
    state: StrategyState,
    candle: Candle,
    ma: Decimal,
    direction: Direction,
) -> tuple[StrategyState, CounterUpdate]:
    before = counter(state, direction)

    if getattr(state, _skip_field(direction)):
        # the cooldown candle after a close is consumed without counting
        return evolve(state, **{_skip_field(direction): False}), CounterUpdate(direction, "skip", before, before)

    if state.position is not None:
        return state, CounterUpdate(direction, "frozen", before, before)

    if before >= config.candle_count and touches_offset_line(config, candle, ma, direction):
        return state, CounterUpdate(direction, "hold", before, before)

    if on_trend_side(candle, ma, direction):
        after = before + 1
        return evolve(state, **{_counter_field(direction): after}), CounterUpdate(direction, "increment", before, after)
    return evolve(state, **{_counter_field(direction): 0}), CounterUpdate(direction, "reset", before, 0)


def should_enter(
    config: StrategyConfig,
    state: StrategyState,
    candle: Candle,
    ma: Decimal,
    direction: Direction,
) -> bool:
    if state.position is not None:
        return False
    if counter(state, direction) < config.candle_count:
        return False
    return touches_offset_line(config, candle, ma, direction)


def detect_exit(
    state: StrategyState,
    probe: PriceProbe,
    both_hit: TradeReason = TradeReason.STOP_LOSS,
) -> ExitSignal | None:
    position = state.position
    if position is None:
        return None

    if position.direction is Direction.LONG:
        tp_hit = probe.high >= position.take_profit
        sl_hit = probe.low <= position.stop_loss
    else:
        tp_hit = probe.low <= position.take_profit
        sl_hit = probe.high >= position.stop_loss

    if not probe.intrabar:
        if tp_hit:
            return ExitSignal(position.direction, TradeReason.TAKE_PROFIT, probe.last)
        if sl_hit:
            return ExitSignal(position.direction, TradeReason.STOP_LOSS, probe.last)
        return None

    if tp_hit and sl_hit:
        reason = both_hit
    elif tp_hit:
        reason = TradeReason.TAKE_PROFIT
    elif sl_hit:
        reason = TradeReason.STOP_LOSS
    else:
        return None
    level = position.take_profit if reason is TradeReason.TAKE_PROFIT else position.stop_loss
    return ExitSignal(position.direction, reason, level)


def open_position(
    config: StrategyConfig,
    state: StrategyState,
    direction: Direction,
    entry_price: Decimal,
    quantity: Decimal,
    order_size: Decimal,
    opened_at: datetime,
    order_id: str | None = None,
) -> StrategyState:
    tp = config.take_profit_percent / HUNDRED
    sl = config.stop_loss_percent / HUNDRED
    if direction is Direction.LONG:
        take_profit, stop_loss = entry_price * (1 + tp), entry_price * (1 - sl)
    else:
        take_profit, stop_loss = entry_price * (1 - tp), entry_price * (1 + sl)
    position = OpenPosition(
        direction=direction,
        entry_price=entry_price,
        quantity=quantity,
        opened_at=opened_at,
        take_profit=take_profit,
        stop_loss=stop_loss,
        exchange_order_id=order_id,
        order_size=order_size,
    )
    return evolve(state, **{_position_field(direction): position, _counter_field(direction): 0})


def pnl_percent(position: OpenPosition, exit_price: Decimal) -> Decimal:
    move = exit_price - position.entry_price
    if position.direction is Direction.SHORT:
        move = -move
    return move / position.entry_price * HUNDRED


def close_position(
    config: StrategyConfig,
    state: StrategyState,
    exit_price: Decimal,
) -> tuple[StrategyState, ClosedPosition]:
    position = state.position
    if position is None:
        raise ValueError("no open position to close")
    pnl_pct = pnl_percent(position, exit_price)
    closed = ClosedPosition(
        position=position,
        exit_price=exit_price,
        pnl_percent=pnl_pct,
        pnl_dollar=position.order_size * pnl_pct / HUNDRED,
    )
    state = record_outcome(config, state, pnl_pct, position.order_size)
    direction = position.direction
    state = evolve(
        state,
        **{
            _position_field(direction): None,
            _counter_field(direction): 0,
            _skip_field(direction): True,
            "last_price": None,
        },
    )
    return state, closed


def drop_position(state: StrategyState) -> StrategyState:
    """Forget the open position without touching loss-recovery state."""
    return evolve(state, open_long=None, open_short=None, skip_next_long=False, skip_next_short=False, last_price=None)


def seed_counters(candles: Sequence[Candle], ma_values: Sequence[Decimal], last_closed: int) -> tuple[int, int]:
    """Length of the unbroken trend runs ending just before `last_closed`."""
    long_run = short_run = 0
    long_open = short_open = True
    for i in range(last_closed - 1, -1, -1):
        ma = ma_values[i]
        if ma == 0:
            break
        if long_open and on_trend_side(candles[i], ma, Direction.LONG):
            long_run += 1
        else:
            long_open = False
        if short_open and on_trend_side(candles[i], ma, Direction.SHORT):
            short_run += 1
        else:
            short_open = False
        if not long_open and not short_open:
            break
    return long_run, short_run
