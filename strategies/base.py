from __future__ import annotations

from abc import ABC, abstractmethod

from adapters.base import ExchangeGateway
from data.store import BaseStore, StrategyRecord
from engine.state import StrategyState


class StrategyHandler(ABC):
    strategy_type: str

    @abstractmethod
    async def process(self, record: StrategyRecord, gateway: ExchangeGateway, store: BaseStore) -> StrategyState:
        """Run one tick for `record` and persist what it produced."""
        raise NotImplementedError
