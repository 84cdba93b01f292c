from __future__ import annotations

from typing import Callable

from adapters.base import ExchangeGateway
from data.store import BaseStore, StrategyRecord
from engine.core import LiveTick
from engine.models import LogLine, Trade, utcnow
from engine.state import StrategyState, dump_state, load_state
from services.config_service import parse_strategy_config
from strategies.base import StrategyHandler


class MaBounceHandler(StrategyHandler):
    """Trend counter on one side of the MA, entry on a touch of the offset line."""

    strategy_type = "ma_bounce"

    def __init__(self, clock: Callable = utcnow) -> None:
        self.clock = clock

    async def process(self, record: StrategyRecord, gateway: ExchangeGateway, store: BaseStore) -> StrategyState:
        config = parse_strategy_config(record.config_json)
        state = load_state(record.state_json)

        def commit(new_state: StrategyState, trades: list[Trade], logs: list[LogLine]) -> None:
            store.commit_tick(record.id, dump_state(new_state), trades, logs)

        tick = LiveTick(record.id, config, state, gateway, commit, clock=self.clock)
        return await tick.run()
