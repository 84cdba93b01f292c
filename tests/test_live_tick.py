import asyncio
import math
from decimal import Decimal

import pytest

from backtest.runner import run_replay
from engine.core import LiveTick
from engine.errors import InsufficientHistory
from engine.machine import open_position
from engine.models import Direction, TradeReason
from engine.state import StrategyState
from fakes import START, FakeGateway, bounce_candles, bounce_config, make_candle
from services.config_service import parse_strategy_config


class Recorder:
    def __init__(self):
        self.commits = []

    def __call__(self, state, trades, logs):
        self.commits.append((state, trades, logs))

    @property
    def trades(self):
        return [t for _, trades, _ in self.commits for t in trades]

    @property
    def messages(self):
        return [line.message for _, _, logs in self.commits for line in logs]


def _tick(config, state, gateway, recorder, now):
    tick = LiveTick("s1", config, state, gateway, recorder, clock=lambda: now)
    asyncio.run(tick.run())
    return tick


def _feed(candles, config, gateway=None):
    """Run one live tick per closed candle, price = that candle's close."""
    gateway = gateway or FakeGateway()
    recorder = Recorder()
    state = StrategyState()
    events = []
    for i in range(config.indicator_length - 1, len(candles)):
        gateway.candles = candles[: i + 1]
        gateway.price = candles[i].close
        tick = _tick(config, state, gateway, recorder, candles[i].close_time)
        state = tick.state
        events.extend(tick.runner.events)
    return state, events, recorder, gateway


def _event_key(e):
    pnl = round(e.pnl_percent, 4) if e.action == "Close" else None
    return (e.direction.label, e.action, e.price, e.order_size, pnl)


def _replay_key(t):
    return (t.side, t.action, t.price, t.order_size, t.pnl_percent)


def test_live_ticks_match_replay_trade_for_trade():
    config = parse_strategy_config(bounce_config(useMartingale=True, martingaleCoeff=2))
    candles = bounce_candles()

    state, events, _, _ = _feed(candles, config)
    result = run_replay(candles, config)

    assert [_event_key(e) for e in events] == [_replay_key(t) for t in result.trades]
    assert [t.reason for t in result.trades] == ["Entry", "TakeProfit", "Entry", "StopLoss"]
    assert state.position is None
    assert state.long_counter == result.final_state.long_counter
    assert state.short_counter == result.final_state.short_counter
    assert state.consecutive_losses == result.final_state.consecutive_losses == 1
    assert state.running_pnl_dollar == result.final_state.running_pnl_dollar
    assert state.next_order_size == result.final_state.next_order_size == Decimal("200.00")


def test_live_ticks_match_replay_on_ema_wave():
    closes = [100 + (i % 12 - 6) * (1 if (i // 12) % 2 else -1) * 0.8 + i * 0.05 for i in range(90)]
    candles = [make_candle(i, c, c + 0.9, c - 0.9, c + 0.3) for i, c in enumerate(closes)]
    config = parse_strategy_config(
        bounce_config(indicatorType="EMA", indicatorLength=8, candleCount=3, offsetPercent="0.2", takeProfitPercent=1, stopLossPercent=1)
    )
    _, events, _, _ = _feed(candles, config)
    result = run_replay(candles, config)
    assert [_event_key(e) for e in events] == [_replay_key(t) for t in result.trades]


@pytest.mark.parametrize("length", [10, 20, 30])
@pytest.mark.parametrize("candle_count", [2, 4])
@pytest.mark.parametrize("offset", ["0", "0.3"])
def test_live_ema_uses_the_replay_window(length, candle_count, offset):
    closes = [100 + 4 * math.sin(i / 7) + 1.5 * math.sin(i / 2.3) for i in range(250)]
    candles = [make_candle(i, round(c, 4), round(c + 0.6, 4), round(c - 0.6, 4), round(c + 0.1, 4)) for i, c in enumerate(closes)]
    config = parse_strategy_config(
        bounce_config(indicatorType="EMA", indicatorLength=length, candleCount=candle_count, offsetPercent=offset)
    )
    _, events, _, gateway = _feed(candles, config)
    result = run_replay(candles, config)

    assert max(gateway.fetch_limits) < len(candles)
    assert [_event_key(e) for e in events] == [_replay_key(t) for t in result.trades]


def test_first_tick_fetches_extra_history_and_seeds_counters():
    config = parse_strategy_config(bounce_config())
    candles = bounce_candles()
    gateway = FakeGateway(candles=candles[:5], price=candles[4].close)
    recorder = Recorder()

    tick = _tick(config, StrategyState(), gateway, recorder, candles[4].close_time)
    assert gateway.fetch_limits == [3 + 10 + 1 + 2]
    assert tick.state.last_processed_candle_time == candles[4].close_time
    # #3 is above its SMA, seeding counts it; #4 itself is then counted by the tick
    assert tick.state.long_counter == 2
    assert any("seeded" in m for m in recorder.messages)

    _tick(config, tick.state, gateway, recorder, candles[4].close_time)
    assert gateway.fetch_limits[-1] == 3 + 10 + 1


def test_same_candle_is_processed_once():
    config = parse_strategy_config(bounce_config())
    candles = bounce_candles()
    gateway = FakeGateway(candles=candles[:4], price=candles[3].close)
    recorder = Recorder()
    first = _tick(config, StrategyState(), gateway, recorder, candles[3].close_time)
    second = _tick(config, first.state, gateway, recorder, candles[3].close_time)
    assert second.state == first.state


def test_forming_candle_is_ignored():
    config = parse_strategy_config(bounce_config())
    candles = bounce_candles()
    gateway = FakeGateway(candles=candles[:5], price=candles[4].close)
    tick = _tick(config, StrategyState(), gateway, Recorder(), candles[3].close_time)
    assert tick.state.last_processed_candle_time == candles[3].close_time


def test_insufficient_history_raises():
    config = parse_strategy_config(bounce_config())
    gateway = FakeGateway(candles=bounce_candles()[:2], price=100)
    with pytest.raises(InsufficientHistory):
        _tick(config, StrategyState(), gateway, Recorder(), START)


def test_close_is_checkpointed_before_later_failure():
    config = parse_strategy_config(bounce_config())
    state = open_position(config, StrategyState(), Direction.LONG, Decimal(100), Decimal(1), Decimal(100), START)
    gateway = FakeGateway(candles=[], price=103)
    recorder = Recorder()

    with pytest.raises(InsufficientHistory):
        _tick(config, state, gateway, recorder, START)

    assert len(recorder.commits) == 1
    saved, trades, _ = recorder.commits[0]
    assert saved.position is None and saved.skip_next_long
    [trade] = trades
    assert trade.side == "Sell"
    assert trade.status is TradeReason.TAKE_PROFIT
    assert trade.commission == Decimal("0.1")
    assert trade.pnl_dollar == Decimal("2.9")


def test_missing_ticker_skips_exit_check():
    config = parse_strategy_config(bounce_config())
    state = open_position(config, StrategyState(), Direction.LONG, Decimal(100), Decimal(1), Decimal(100), START)
    candles = bounce_candles()[:3]
    recorder = Recorder()
    tick = _tick(config, state, FakeGateway(candles=candles), recorder, candles[2].close_time)
    assert tick.state.open_long == state.open_long
    assert any("price unavailable" in m for m in recorder.messages)


def test_failed_entry_leaves_state_unchanged():
    config = parse_strategy_config(bounce_config())
    candles = bounce_candles()[:6]
    state, events, recorder, gateway = _feed(candles, config, FakeGateway(fail_orders=True))
    assert events == []
    assert state.position is None
    assert state.long_counter == 2
    assert any("open failed" in m for m in recorder.messages)
    assert recorder.trades == []
