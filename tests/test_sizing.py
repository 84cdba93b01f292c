from decimal import Decimal

from engine.state import StrategyState
from risk.sizing import next_order_size, record_outcome
from services.config_service import parse_strategy_config


def _config(**overrides):
    raw = {"symbol": "BTCUSDT", "orderSize": 100, "useMartingale": True, "martingaleCoeff": 2}
    raw.update(overrides)
    return parse_strategy_config(raw)


def test_martingale_off_uses_base_size():
    config = _config(useMartingale=False, orderSize="123.456")
    sizing = next_order_size(config, StrategyState(consecutive_losses=5))
    assert sizing.size == Decimal("123.456")


def test_classic_martingale_after_three_losses():
    sizing = next_order_size(_config(), StrategyState(consecutive_losses=3))
    assert sizing.size == Decimal("800.00")


def test_stepped_martingale_counts_completed_steps():
    config = _config(useSteppedMartingale=True, martingaleStep=3)
    assert next_order_size(config, StrategyState(consecutive_losses=2)).size == Decimal("100.00")
    assert next_order_size(config, StrategyState(consecutive_losses=3)).size == Decimal("200.00")
    assert next_order_size(config, StrategyState(consecutive_losses=7)).size == Decimal("400.00")


def test_drawdown_levels():
    config = _config(useDrawdownScale=True, drawdownBalance=1000, drawdownPercent=10, drawdownTarget=5)
    sizing = next_order_size(config, StrategyState(running_pnl_dollar=Decimal(-250)))
    assert sizing.size == Decimal("400.00")
    assert sizing.state.running_pnl_dollar == Decimal(-250)


def test_drawdown_target_resets_running_pnl_in_returned_state():
    config = _config(useDrawdownScale=True, drawdownBalance=1000, drawdownPercent=10, drawdownTarget=5)
    state = StrategyState(running_pnl_dollar=Decimal(60))
    sizing = next_order_size(config, state)
    assert sizing.size == Decimal("100.00")
    assert sizing.state.running_pnl_dollar == Decimal(0)
    assert state.running_pnl_dollar == Decimal(60)


def test_sizing_is_idempotent():
    config = _config()
    state = StrategyState(consecutive_losses=2, running_pnl_dollar=Decimal(-30))
    assert next_order_size(config, state) == next_order_size(config, state)


def test_record_outcome_counts_losses_and_resets_on_win():
    config = _config()
    state = record_outcome(config, StrategyState(), Decimal(-2), Decimal(100))
    state = record_outcome(config, state, Decimal(0), Decimal(200))
    assert state.consecutive_losses == 2
    assert state.running_pnl_dollar == Decimal(-2)
    state = record_outcome(config, state, Decimal(3), Decimal(400))
    assert state.consecutive_losses == 0
    assert state.running_pnl_dollar == Decimal(10)


def test_record_outcome_is_noop_without_martingale():
    state = StrategyState(consecutive_losses=1)
    assert record_outcome(_config(useMartingale=False), state, Decimal(-5), Decimal(100)) is state
