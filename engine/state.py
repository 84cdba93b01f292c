from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, model_validator

from engine.models import Direction


class OpenPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    direction: Direction
    entry_price: Decimal
    quantity: Decimal
    opened_at: datetime
    take_profit: Decimal
    stop_loss: Decimal
    exchange_order_id: str | None = None
    order_size: Decimal


class StrategyState(BaseModel):
    """Persisted snapshot of one strategy. Updated only by replacement."""

    model_config = ConfigDict(frozen=True)

    long_counter: int = 0
    short_counter: int = 0
    open_long: OpenPosition | None = None
    open_short: OpenPosition | None = None
    last_processed_candle_time: datetime | None = None
    skip_next_long: bool = False
    skip_next_short: bool = False
    consecutive_losses: int = 0
    running_pnl_dollar: Decimal = Decimal(0)
    last_price: Decimal | None = None
    next_order_size: Decimal | None = None

    @model_validator(mode="after")
    def _single_position(self) -> "StrategyState":
        if self.open_long is not None and self.open_short is not None:
            raise ValueError("open_long and open_short cannot both be set")
        return self

    @property
    def position(self) -> OpenPosition | None:
        return self.open_long or self.open_short


def load_state(blob: str | None) -> StrategyState:
    if not blob or blob.strip() in ("", "{}"):
        return StrategyState()
    return StrategyState.model_validate_json(blob)


def dump_state(state: StrategyState) -> str:
    return state.model_dump_json()


def fresh_state(previous: StrategyState | None = None) -> StrategyState:
    """State for a (re)started strategy; loss-recovery memory survives restarts."""
    if previous is None:
        return StrategyState()
    return StrategyState(
        consecutive_losses=previous.consecutive_losses,
        running_pnl_dollar=previous.running_pnl_dollar,
    )
