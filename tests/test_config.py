from decimal import Decimal

import pytest

from engine.errors import InvalidConfig
from engine.models import Direction
from services.config_service import WorkerSettings, parse_strategy_config


def test_camel_case_config_with_defaults():
    config = parse_strategy_config('{"symbol": " btcusdt ", "indicatorType": "sma", "orderSize": "12.5"}')
    assert config.symbol == "BTCUSDT"
    assert config.indicator_type == "SMA"
    assert config.indicator_length == 50
    assert config.candle_count == 50
    assert config.order_size == Decimal("12.5")
    assert config.taker_fee_percent == Decimal("0.05")
    assert config.directions == [Direction.LONG, Direction.SHORT]


def test_direction_filter():
    config = parse_strategy_config({"symbol": "BTCUSDT", "onlyLong": True})
    assert config.directions == [Direction.LONG]


@pytest.mark.parametrize(
    "raw",
    [
        "{}",
        '{"symbol": ""}',
        '{"symbol": "BTCUSDT", "indicatorLength": 0}',
        '{"symbol": "BTCUSDT", "onlyLong": true, "onlyShort": true}',
        '{"symbol": "BTCUSDT", "timeframe": "7m"}',
        "not json",
    ],
)
def test_invalid_config(raw):
    with pytest.raises(InvalidConfig):
        parse_strategy_config(raw)


def test_worker_settings_from_env(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENCY", "4")
    monkeypatch.setenv("PAPER_TRADING", "true")
    settings = WorkerSettings(_env_file=None)
    assert settings.MAX_CONCURRENCY == 4
    assert settings.PAPER_TRADING
    assert settings.TICK_INTERVAL_SECONDS == 5.0
