from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from engine.errors import InvalidConfig
from engine.models import Direction, timeframe_delta


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_PATH: str = "./bot.db"
    DATABASE_URL: str = ""
    CREDENTIAL_ENCRYPTION_KEY: str = ""
    TICK_INTERVAL_SECONDS: float = 5.0
    TICK_TIMEOUT_SECONDS: float = 30.0
    MAX_CONCURRENCY: int = 1
    PAPER_TRADING: bool = False
    PAPER_SLIPPAGE_BPS: float = 0.0
    BINANCE_TESTNET: bool = False
    LOG_LEVEL: str = "INFO"


class StrategyConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore")

    symbol: str
    timeframe: str = "1h"
    indicator_type: Literal["EMA", "SMA"] = "EMA"
    indicator_length: int = 50
    candle_count: int = 50
    offset_percent: Decimal = Decimal(0)
    take_profit_percent: Decimal = Decimal(3)
    stop_loss_percent: Decimal = Decimal(3)
    order_size: Decimal = Decimal(0)
    only_long: bool = False
    only_short: bool = False

    use_martingale: bool = False
    martingale_coeff: Decimal = Decimal(2)
    use_stepped_martingale: bool = False
    martingale_step: int = 3

    use_drawdown_scale: bool = False
    drawdown_balance: Decimal = Decimal(0)
    drawdown_percent: Decimal = Decimal(10)
    drawdown_target: Decimal = Decimal(5)

    taker_fee_percent: Decimal = Decimal("0.05")

    @field_validator("indicator_type", mode="before")
    @classmethod
    def _upper_kind(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("symbol")
    @classmethod
    def _symbol_present(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("symbol is empty")
        return value

    @field_validator("timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        timeframe_delta(value)
        return value.lower()

    @model_validator(mode="after")
    def _check(self) -> "StrategyConfig":
        if self.indicator_length <= 0:
            raise ValueError("indicatorLength must be positive")
        if self.candle_count < 0:
            raise ValueError("candleCount must not be negative")
        if self.only_long and self.only_short:
            raise ValueError("onlyLong and onlyShort are mutually exclusive")
        return self

    def trades(self, direction: Direction) -> bool:
        if direction is Direction.LONG:
            return not self.only_short
        return not self.only_long

    @property
    def directions(self) -> list[Direction]:
        return [d for d in (Direction.LONG, Direction.SHORT) if self.trades(d)]

    @property
    def ma_window(self) -> int:
        """Closed candles each MA value is computed over, live and in replay."""
        return self.indicator_length + 10


def parse_strategy_config(raw: str | dict[str, Any] | None) -> StrategyConfig:
    try:
        data = json.loads(raw) if isinstance(raw, str) else (raw or {})
        return StrategyConfig.model_validate(data)
    except (ValidationError, json.JSONDecodeError) as exc:
        raise InvalidConfig(f"Invalid config: {exc}") from exc


# Workspace-level overrides applied when a strategy is started.
_WORKSPACE_FIELDS = {
    "betAmount": "orderSize",
    "useMartingale": "useMartingale",
    "martingaleCoeff": "martingaleCoeff",
    "useSteppedMartingale": "useSteppedMartingale",
    "martingaleStep": "martingaleStep",
    "onlyLong": "onlyLong",
    "onlyShort": "onlyShort",
    "useDrawdownScale": "useDrawdownScale",
    "drawdownBalance": "drawdownBalance",
    "drawdownPercent": "drawdownPercent",
    "drawdownTarget": "drawdownTarget",
}


def merge_workspace_config(config_json: str, workspace_json: str | None) -> str:
    if not workspace_json:
        return config_json
    overrides = json.loads(workspace_json) or {}
    if not overrides:
        return config_json
    merged = json.loads(config_json or "{}")
    for source, target in _WORKSPACE_FIELDS.items():
        if source in overrides:
            merged[target] = overrides[source]
    return json.dumps(merged)
