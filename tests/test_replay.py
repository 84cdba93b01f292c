from decimal import Decimal

import pytest

from backtest.cli import main as cli_main
from backtest.report import render_report, trades_frame
from backtest.runner import ReplayOptions, load_candles_csv, run_replay
from engine.errors import InsufficientHistory
from engine.models import TradeReason
from fakes import BOUNCE_ROWS, START, bounce_candles, bounce_config, make_candle
from services.config_service import parse_strategy_config


def test_replay_trades_and_summary():
    result = run_replay(bounce_candles(), parse_strategy_config(bounce_config()))

    opens = [t for t in result.trades if t.action == "Open"]
    closes = [t for t in result.trades if t.action == "Close"]
    assert [t.price for t in opens] == [Decimal(108), Decimal(111)]
    assert [(t.reason, t.price) for t in closes] == [("TakeProfit", Decimal(111)), ("StopLoss", Decimal(108))]
    assert closes[0].pnl_percent == Decimal("2.7778")
    assert closes[1].pnl_percent == Decimal("-2.7027")

    summary = result.summary
    assert summary.total_trades == 2
    assert summary.winning_trades == 1 and summary.losing_trades == 1
    assert summary.win_rate == Decimal("50.00")
    assert summary.total_pnl_dollar == Decimal("0.08")
    assert summary.open_positions == 0
    assert summary.max_order_size == Decimal(100)
    assert result.indicator[0].value == Decimal(102)
    assert len(result.indicator) == len(BOUNCE_ROWS) - 2


def test_trades_share_the_indicator_time_axis():
    candles = bounce_candles()
    result = run_replay(candles, parse_strategy_config(bounce_config()))

    assert [t.time for t in result.trades] == [candles[i].open_time for i in (5, 6, 9, 10)]
    indicator_times = {p.time for p in result.indicator}
    assert all(t.time in indicator_times for t in result.trades)


def test_intrabar_exits_fill_at_levels():
    config = parse_strategy_config(bounce_config())
    result = run_replay(bounce_candles(), config, ReplayOptions(exit_fill="intrabar"))
    closes = [t for t in result.trades if t.action == "Close"]
    assert [(t.reason, t.price) for t in closes] == [("TakeProfit", Decimal("110.16")), ("StopLoss", Decimal("108.78"))]
    assert closes[0].pnl_percent == Decimal(2)
    assert closes[1].pnl_percent == Decimal(-2)


def test_intrabar_tie_break_is_configurable():
    rows = bounce_candles()
    # widen the candle after the first entry so both levels are inside its range
    rows[6] = make_candle(6, 108, 112, 105, 109)
    config = parse_strategy_config(bounce_config())
    sl = run_replay(rows, config, ReplayOptions(exit_fill="intrabar"))
    tp = run_replay(rows, config, ReplayOptions(exit_fill="intrabar", both_hit=TradeReason.TAKE_PROFIT))
    assert [t.reason for t in sl.trades if t.action == "Close"][0] == "StopLoss"
    assert [t.reason for t in tp.trades if t.action == "Close"][0] == "TakeProfit"


def test_only_short_filter_blocks_long_entries():
    result = run_replay(bounce_candles(), parse_strategy_config(bounce_config(onlyShort=True)))
    assert result.trades == []
    assert result.summary.total_trades == 0
    assert result.summary.win_rate == Decimal(0)


def test_replay_needs_indicator_window():
    with pytest.raises(InsufficientHistory):
        run_replay(bounce_candles()[:2], parse_strategy_config(bounce_config()))


def _write_csv(path):
    lines = ["timestamp,open,high,low,close,volume"]
    for i, (o, h, l, c) in enumerate(BOUNCE_ROWS):
        ts = int((START.timestamp() + i * 3600) * 1000)
        lines.append(f"{ts},{o},{h},{l},{c},1")
    path.write_text("\n".join(lines) + "\n")


def test_load_candles_csv(tmp_path):
    csv_path = tmp_path / "candles.csv"
    _write_csv(csv_path)
    candles = load_candles_csv(str(csv_path), "1h")
    assert [c.close for c in candles] == [c.close for c in bounce_candles()]
    assert candles[0].open_time == START
    assert candles[7].low == Decimal("110.5")
    assert candles[0].volume == Decimal(1)


def test_report_and_cli(tmp_path, capsys):
    result = run_replay(bounce_candles(), parse_strategy_config(bounce_config()))
    assert "Closed trades: 2" in render_report(result.summary)
    frame = trades_frame(result.trades)
    assert list(frame["action"]) == ["Open", "Close", "Open", "Close"]

    csv_path = tmp_path / "candles.csv"
    _write_csv(csv_path)
    config_path = tmp_path / "config.json"
    config_path.write_text('{"symbol": "BTCUSDT", "indicatorType": "SMA", "indicatorLength": 3, "candleCount": 2, '
                           '"takeProfitPercent": 2, "stopLossPercent": 2, "orderSize": 100}')
    out_path = tmp_path / "trades.csv"
    assert cli_main(["--csv", str(csv_path), "--config", str(config_path), "--trades-out", str(out_path)]) == 0
    assert "Win" in capsys.readouterr().out
    assert out_path.read_text().count("\n") == 5
