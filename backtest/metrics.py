from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from engine.state import StrategyState

if TYPE_CHECKING:
    from backtest.runner import ReplayTrade


@dataclass(frozen=True)
class ReplaySummary:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: Decimal = Decimal(0)
    total_pnl_percent: Decimal = Decimal(0)
    total_pnl_dollar: Decimal = Decimal(0)
    average_pnl_percent: Decimal = Decimal(0)
    open_positions: int = 0
    max_order_size: Decimal = Decimal(0)


def summarize(trades: list["ReplayTrade"], final_state: StrategyState) -> ReplaySummary:
    closed = [t for t in trades if t.action == "Close"]
    wins = sum(1 for t in closed if (t.pnl_percent or 0) > 0)
    total_pct = sum((t.pnl_percent or Decimal(0) for t in closed), Decimal(0))
    total_usd = sum((t.pnl_dollar or Decimal(0) for t in closed), Decimal(0))
    count = len(closed)
    return ReplaySummary(
        total_trades=count,
        winning_trades=wins,
        losing_trades=count - wins,
        win_rate=round(Decimal(wins) / count * 100, 2) if count else Decimal(0),
        total_pnl_percent=round(total_pct, 4),
        total_pnl_dollar=round(total_usd, 2),
        average_pnl_percent=round(total_pct / count, 4) if count else Decimal(0),
        open_positions=1 if final_state.position is not None else 0,
        max_order_size=max((t.order_size for t in trades), default=Decimal(0)),
    )
