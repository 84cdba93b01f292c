from __future__ import annotations

from dataclasses import asdict

import pandas as pd

from backtest.metrics import ReplaySummary
from backtest.runner import ReplayResult, ReplayTrade


def render_report(summary: ReplaySummary) -> str:
    return "\n".join(
        [
            f"Closed trades: {summary.total_trades}",
            f"Wins/losses: {summary.winning_trades}/{summary.losing_trades} (win rate {summary.win_rate}%)",
            f"Total PnL: {summary.total_pnl_percent}% (${summary.total_pnl_dollar})",
            f"Average PnL: {summary.average_pnl_percent}%",
            f"Open positions: {summary.open_positions}",
            f"Max order size: {summary.max_order_size}",
        ]
    )


def trades_frame(trades: list[ReplayTrade]) -> pd.DataFrame:
    columns = ["time", "side", "action", "price", "reason", "order_size", "pnl_percent", "pnl_dollar"]
    return pd.DataFrame([asdict(t) for t in trades], columns=columns)


def write_trades_csv(result: ReplayResult, path: str) -> None:
    trades_frame(result.trades).to_csv(path, index=False)
