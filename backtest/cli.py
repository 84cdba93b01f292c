from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger

from backtest.report import render_report, write_trades_csv
from backtest.runner import ReplayOptions, load_candles_csv, run_replay
from engine.errors import TradingError
from engine.models import TradeReason
from services.config_service import parse_strategy_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay an MA-bounce strategy over historical candles")
    parser.add_argument("--csv", required=True, help="candles CSV: timestamp,open,high,low,close[,volume]")
    parser.add_argument("--config", required=True, help="strategy config JSON file")
    parser.add_argument("--exit-fill", choices=["close", "intrabar"], default="close")
    parser.add_argument("--both-hit", choices=["stop_loss", "take_profit"], default="stop_loss")
    parser.add_argument("--trades-out", help="write the trade list to this CSV path")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = parse_strategy_config(Path(args.config).read_text())
        candles = load_candles_csv(args.csv, config.timeframe)
        options = ReplayOptions(
            exit_fill=args.exit_fill,
            both_hit=TradeReason.STOP_LOSS if args.both_hit == "stop_loss" else TradeReason.TAKE_PROFIT,
        )
        result = run_replay(candles, config, options)
    except TradingError as exc:
        logger.error("Replay failed: {}", exc)
        return 1

    print(render_report(result.summary))
    if args.trades_out:
        write_trades_csv(result, args.trades_out)
        logger.info("Trades written to {}", args.trades_out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
