from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_EVEN, Decimal

from engine.state import StrategyState
from services.config_service import StrategyConfig

CENT = Decimal("0.01")


@dataclass(frozen=True)
class OrderSizing:
    size: Decimal
    reason: str
    state: StrategyState


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def next_order_size(config: StrategyConfig, state: StrategyState) -> OrderSizing:
    """Quote amount for the next entry.

    The returned state differs from the input only when drawdown scaling has
    reached its profit target, which resets the running P&L to zero.
    """
    if not config.use_martingale:
        return OrderSizing(config.order_size, "martingale=OFF", state)

    base = config.order_size
    coeff = config.martingale_coeff

    if config.use_drawdown_scale and config.drawdown_balance > 0:
        drawdown_threshold = config.drawdown_balance * config.drawdown_percent / 100
        target_threshold = config.drawdown_balance * config.drawdown_target / 100
        pnl = state.running_pnl_dollar
        if drawdown_threshold > 0 and pnl <= -drawdown_threshold:
            levels = int((-pnl / drawdown_threshold).to_integral_value(rounding=ROUND_FLOOR))
            return OrderSizing(
                _cents(base * coeff**levels),
                f"drawdown: pnl=${_cents(pnl)}, threshold=${_cents(drawdown_threshold)}, levels={levels}, coeff={coeff}",
                state,
            )
        if pnl >= target_threshold:
            state = state.model_copy(update={"running_pnl_dollar": Decimal(0)})
            return OrderSizing(_cents(base), f"drawdown: target ${_cents(target_threshold)} reached, pnl reset", state)
        return OrderSizing(
            _cents(base),
            f"drawdown: pnl=${_cents(pnl)}, threshold=${_cents(drawdown_threshold)} not reached",
            state,
        )

    losses = state.consecutive_losses
    if losses > 0:
        if config.use_stepped_martingale and config.martingale_step > 0:
            steps = losses // config.martingale_step
            size = base * coeff**steps if steps > 0 else base
            return OrderSizing(
                _cents(size),
                f"stepped: losses={losses}, step={config.martingale_step}, steps={steps}, coeff={coeff}",
                state,
            )
        return OrderSizing(_cents(base * coeff**losses), f"classic: losses={losses}, coeff={coeff}", state)

    return OrderSizing(_cents(base), "base: losses=0", state)


def record_outcome(
    config: StrategyConfig,
    state: StrategyState,
    pnl_percent: Decimal,
    order_size: Decimal,
) -> StrategyState:
    if not config.use_martingale:
        return state
    losses = 0 if pnl_percent > 0 else state.consecutive_losses + 1
    return state.model_copy(
        update={
            "running_pnl_dollar": state.running_pnl_dollar + order_size * pnl_percent / 100,
            "consecutive_losses": losses,
        }
    )
