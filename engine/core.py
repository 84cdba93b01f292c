from __future__ import annotations

from decimal import Decimal
from typing import Callable, Sequence

from loguru import logger

from adapters.base import ExchangeGateway, OrderSink
from engine.errors import InsufficientHistory, TradingError
from engine.machine import (
    CounterUpdate,
    PriceProbe,
    advance_counter,
    close_position,
    detect_exit,
    drop_position,
    evolve,
    offset_line,
    open_position,
    pnl_percent,
    seed_counters,
    should_enter,
)
from engine.models import Candle, Direction, ExecutionEvent, LogLine, Trade, TradeReason, utcnow
from engine.state import StrategyState
from risk.sizing import next_order_size
from services.config_service import StrategyConfig
from strategies.indicators import trailing_moving_average, trailing_value

CommitFn = Callable[[StrategyState, list[Trade], list[LogLine]], None]


def _r(value: Decimal, places: int = 6) -> Decimal:
    return round(value, places)


class StrategyRunner:
    """Decision routine shared by the live tick and the replay engine.

    `check_exits` and `on_candle` are the only places positions are opened or
    closed; callers differ only in where prices come from and which order sink
    receives the orders.
    """

    def __init__(
        self,
        strategy_id: str,
        config: StrategyConfig,
        state: StrategyState,
        sink: OrderSink,
        clock: Callable = utcnow,
        both_hit: TradeReason = TradeReason.STOP_LOSS,
    ) -> None:
        self.strategy_id = strategy_id
        self.config = config
        self.state = state
        self.sink = sink
        self.clock = clock
        self.both_hit = both_hit
        self.events: list[ExecutionEvent] = []
        self.logs: list[LogLine] = []
        self._drained = 0

    def log(self, level: str, message: str) -> None:
        self.logs.append(LogLine(strategy_id=self.strategy_id, level=level, message=message, created_at=self.clock()))

    def drain(self) -> tuple[list[ExecutionEvent], list[LogLine]]:
        events = self.events[self._drained :]
        logs = self.logs
        self._drained = len(self.events)
        self.logs = []
        return events, logs

    async def check_exits(self, probe: PriceProbe) -> bool:
        if self.state.position is None:
            return False
        self.state = evolve(self.state, last_price=probe.last)
        signal = detect_exit(self.state, probe, self.both_hit)
        if signal is None:
            return False
        logger.info(
            "Strategy {}: {} {} hit at {}",
            self.strategy_id,
            signal.direction.label.upper(),
            signal.reason.value,
            signal.price,
        )
        return await self._close(signal.price, signal.reason)

    async def _close(self, price: Decimal, reason: TradeReason) -> bool:
        position = self.state.position
        label = position.direction.label.upper()
        close = self.sink.close_long if position.direction is Direction.LONG else self.sink.close_short
        try:
            result = await close(self.config.symbol, position.quantity)
        except TradingError as exc:
            self.log("Error", f"{label} close failed: {exc}")
            logger.error("Strategy {}: failed to close {}: {}", self.strategy_id, label, exc)
            return False

        self.state, closed = close_position(self.config, self.state, price)
        commission = position.order_size * 2 * self.config.taker_fee_percent / 100
        self.events.append(
            ExecutionEvent(
                direction=position.direction,
                action="Close",
                price=price,
                quantity=position.quantity,
                order_size=position.order_size,
                reason=reason,
                at=self.clock(),
                order_id=result.order_id,
                pnl_percent=closed.pnl_percent,
                pnl_dollar=closed.pnl_dollar,
                commission=commission,
            )
        )
        net = closed.pnl_dollar - commission
        self.log(
            "Info" if reason is TradeReason.TAKE_PROFIT else "Warning",
            f"{label} closed ({reason.value}): price={price}, entry={position.entry_price}, "
            f"PnL={_r(closed.pnl_percent, 4)}% (${_r(net, 2)}, commission=${_r(commission, 2)})",
        )
        if self.config.use_martingale:
            preview = next_order_size(self.config, self.state)
            self.log(
                "Info",
                f"Martingale: losses={self.state.consecutive_losses}, "
                f"runningPnl=${_r(self.state.running_pnl_dollar, 2)}, next size={preview.size} ({preview.reason})",
            )
        return True

    async def force_close(self, price: Decimal | None) -> bool:
        """Operator close at market: no cooldown, loss-recovery state untouched."""
        position = self.state.position
        if position is None:
            return False
        close = self.sink.close_long if position.direction is Direction.LONG else self.sink.close_short
        result = await close(self.config.symbol, position.quantity)
        exit_price = price or result.filled_price or position.entry_price
        pnl_pct = pnl_percent(position, exit_price)
        self.state = drop_position(self.state)
        self.events.append(
            ExecutionEvent(
                direction=position.direction,
                action="Close",
                price=exit_price,
                quantity=position.quantity,
                order_size=position.order_size,
                reason=TradeReason.MANUAL,
                at=self.clock(),
                order_id=result.order_id,
                pnl_percent=pnl_pct,
                pnl_dollar=position.order_size * pnl_pct / 100,
            )
        )
        self.log("Warning", f"{position.direction.label.upper()} closed manually at market: qty={position.quantity}")
        return True

    def begin_candle(self, candle: Candle) -> None:
        self.state = evolve(self.state, last_processed_candle_time=candle.close_time)

    def seed_from_history(self, candles: Sequence[Candle], ma_values: Sequence[Decimal], last_closed: int) -> None:
        long_run, short_run = seed_counters(candles, ma_values, last_closed)
        self.state = evolve(self.state, long_counter=long_run, short_counter=short_run)
        self.log(
            "Info",
            f"Counters seeded from history: Long={long_run}/{self.config.candle_count}, "
            f"Short={short_run}/{self.config.candle_count}",
        )

    async def on_candle(self, candle: Candle, ma: Decimal) -> None:
        config = self.config
        self.log(
            "Info",
            f"New candle: O={candle.open} H={candle.high} L={candle.low} C={candle.close} | "
            f"{config.indicator_type}{config.indicator_length}={_r(ma)} | "
            f"OffsetL={_r(offset_line(config, ma, Direction.LONG))} OffsetS={_r(offset_line(config, ma, Direction.SHORT))}",
        )
        cooling: set[Direction] = set()
        for direction in config.directions:
            self.state, update = advance_counter(config, self.state, candle, ma, direction)
            self._log_counter(update, candle, ma)
            if update.action == "skip":
                cooling.add(direction)
        for direction in config.directions:
            if direction not in cooling and should_enter(config, self.state, candle, ma, direction):
                await self._open(direction, candle, ma)

    def _log_counter(self, update: CounterUpdate, candle: Candle, ma: Decimal) -> None:
        label = update.direction.label
        extreme = candle.low if update.direction is Direction.LONG else candle.high
        name = "Low" if update.direction is Direction.LONG else "High"
        if update.action == "skip":
            self.log("Info", f"{label}: candle skipped after position close")
        elif update.action == "hold":
            self.log(
                "Info",
                f"{label} entry: {name}={extreme} crossed offset line at counter {update.before}/{self.config.candle_count}",
            )
        elif update.action == "increment":
            self.log("Info", f"{label} counter: {update.before} -> {update.after}/{self.config.candle_count} ({name}={extreme}, MA={_r(ma)})")
        elif update.action == "reset" and update.before > 0:
            self.log("Info", f"{label} counter reset: {update.before} -> 0 ({name}={extreme}, MA={_r(ma)})")

    async def _open(self, direction: Direction, candle: Candle, ma: Decimal) -> None:
        label = direction.label.upper()
        sizing = next_order_size(self.config, self.state)
        self.log(
            "Info",
            f"Opening {label}: {self.config.symbol}, orderSize={sizing.size} ({sizing.reason}), "
            f"base={self.config.order_size}, MA={_r(ma)}",
        )
        open_ = self.sink.open_long if direction is Direction.LONG else self.sink.open_short
        try:
            result = await open_(self.config.symbol, sizing.size)
        except TradingError as exc:
            self.log("Error", f"{label} open failed: {exc}")
            logger.error("Strategy {}: failed to open {}: {}", self.strategy_id, label, exc)
            return

        entry_price = result.filled_price or candle.close
        quantity = result.filled_quantity or Decimal(0)
        self.state = open_position(
            self.config,
            sizing.state,
            direction,
            entry_price,
            quantity,
            sizing.size,
            self.clock(),
            result.order_id,
        )
        position = self.state.position
        self.events.append(
            ExecutionEvent(
                direction=direction,
                action="Open",
                price=entry_price,
                quantity=quantity,
                order_size=sizing.size,
                reason=TradeReason.FILLED,
                at=self.clock(),
                order_id=result.order_id,
            )
        )
        self.log(
            "Info",
            f"{label} opened: price={entry_price}, qty={quantity}, TP={_r(position.take_profit)}, SL={_r(position.stop_loss)}",
        )
        logger.info(
            "Strategy {}: {} opened at {}, TP={}, SL={}, orderSize={}",
            self.strategy_id,
            label,
            entry_price,
            _r(position.take_profit),
            _r(position.stop_loss),
            sizing.size,
        )

    def refresh_preview(self) -> None:
        self.state = evolve(self.state, next_order_size=next_order_size(self.config, self.state).size)


def last_closed_index(candles: Sequence[Candle], now) -> int | None:
    for i in range(len(candles) - 1, -1, -1):
        if candles[i].close_time <= now:
            return i
    return None


class LiveTick:
    """One scheduler tick for one strategy against a live gateway.

    Order is fixed: TP/SL check, candle-closure check, counters, entries.
    State is committed after a close in the TP/SL step and at the end.
    """

    def __init__(
        self,
        strategy_id: str,
        config: StrategyConfig,
        state: StrategyState,
        gateway: ExchangeGateway,
        commit: CommitFn,
        clock: Callable = utcnow,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.commit = commit
        self.clock = clock
        self.runner = StrategyRunner(strategy_id, config, state, gateway, clock=clock)

    @property
    def state(self) -> StrategyState:
        return self.runner.state

    def _commit(self) -> None:
        events, logs = self.runner.drain()
        trades = [e.to_trade(self.runner.strategy_id, self.config.symbol) for e in events]
        self.commit(self.runner.state, trades, logs)

    async def run(self) -> StrategyState:
        config = self.config
        runner = self.runner

        if runner.state.position is not None:
            price = await self.gateway.get_last_price(config.symbol)
            if price is None:
                runner.log("Warning", "Ticker price unavailable, TP/SL check skipped")
            elif await runner.check_exits(PriceProbe.at(price)):
                self._commit()

        first_run = runner.state.last_processed_candle_time is None
        # One extra candle for the one still forming.
        limit = config.ma_window + 1 + (config.candle_count if first_run else 0)
        candles = await self.gateway.fetch_candles(config.symbol, config.timeframe, limit)
        if len(candles) < config.indicator_length:
            raise InsufficientHistory(len(candles), config.indicator_length)

        idx = last_closed_index(candles, self.clock())
        last_time = runner.state.last_processed_candle_time
        if idx is None or (last_time is not None and candles[idx].close_time <= last_time):
            self._commit()
            return runner.state

        candle = candles[idx]
        runner.begin_candle(candle)
        closes = [c.close for c in candles[: idx + 1]]
        ma = trailing_value(closes, config.indicator_type, config.indicator_length, config.ma_window)
        if ma == 0:
            self._commit()
            return runner.state

        if first_run:
            ma_values = trailing_moving_average(
                closes, config.indicator_type, config.indicator_length, config.ma_window
            )
            runner.seed_from_history(candles[: idx + 1], ma_values, idx)

        await runner.on_candle(candle, ma)
        runner.refresh_preview()
        self._commit()
        return runner.state
