from __future__ import annotations

import asyncio
import time

from loguru import logger

from adapters.base import ExchangeGateway
from adapters.binance_futures import BinanceFuturesGateway
from adapters.bingx_futures import BingXFuturesGateway
from adapters.bitget_futures import BitgetFuturesGateway
from adapters.bybit_futures import BybitFuturesGateway
from adapters.paper import PaperGateway
from data.store import AccountRecord, BaseStore, StrategyRecord
from engine.core import StrategyRunner
from engine.errors import InvalidConfig
from engine.machine import evolve
from engine.models import Trade
from engine.state import StrategyState, dump_state, fresh_state, load_state
from services.config_service import WorkerSettings, merge_workspace_config, parse_strategy_config
from services.crypto import account_credentials, build_fernet
from strategies.base import StrategyHandler
from strategies.ma_bounce import MaBounceHandler


class GatewayFactory:
    def __init__(self, settings: WorkerSettings) -> None:
        self.settings = settings
        self._fernet = build_fernet(settings.CREDENTIAL_ENCRYPTION_KEY)

    def build(self, account: AccountRecord) -> ExchangeGateway:
        creds = account_credentials(self._fernet, account)
        if creds.exchange == "binance":
            gateway: ExchangeGateway = BinanceFuturesGateway(
                creds.api_key,
                creds.api_secret,
                proxy_url=creds.proxy_url,
                testnet=self.settings.BINANCE_TESTNET,
            )
        elif creds.exchange == "bingx":
            gateway = BingXFuturesGateway(creds.api_key, creds.api_secret, proxy_url=creds.proxy_url)
        elif creds.exchange == "bybit":
            gateway = BybitFuturesGateway(creds.api_key, creds.api_secret, proxy_url=creds.proxy_url)
        elif creds.exchange == "bitget":
            gateway = BitgetFuturesGateway(
                creds.api_key, creds.api_secret, passphrase=creds.passphrase, proxy_url=creds.proxy_url
            )
        else:
            raise InvalidConfig(f"Unknown exchange: {account.exchange}")
        if self.settings.PAPER_TRADING:
            return PaperGateway(gateway, slippage_bps=self.settings.PAPER_SLIPPAGE_BPS)
        return gateway


def default_handlers() -> dict[str, StrategyHandler]:
    handlers: list[StrategyHandler] = [MaBounceHandler()]
    return {h.strategy_type: h for h in handlers}


class StrategyLocks:
    """Per-strategy locks shared by the scheduler and operator actions.

    Whoever holds a strategy's lock owns its state blob: it reads the stored
    state after acquiring and commits before releasing.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_strategy(self, strategy_id: str) -> asyncio.Lock:
        return self._locks.setdefault(strategy_id, asyncio.Lock())


class StrategyService:
    """Operator lifecycle actions on stored strategies.

    Pass the scheduler's `StrategyLocks` so an action never interleaves with a
    tick of the same strategy.
    """

    def __init__(self, store: BaseStore, gateways: GatewayFactory, locks: StrategyLocks | None = None) -> None:
        self.store = store
        self.gateways = gateways
        self.locks = locks or StrategyLocks()

    def _require(self, strategy_id: str) -> StrategyRecord:
        record = self.store.get_strategy(strategy_id)
        if record is None:
            raise KeyError(f"Strategy not found: {strategy_id}")
        return record

    async def start(self, strategy_id: str) -> StrategyState:
        async with self.locks.for_strategy(strategy_id):
            record = self._require(strategy_id)
            config_json = merge_workspace_config(record.config_json, record.workspace_json)
            parse_strategy_config(config_json)
            previous = load_state(record.state_json)
            if previous.position is not None:
                logger.warning(
                    "Strategy {}: starting with a stored {} position, it is no longer tracked",
                    strategy_id,
                    previous.position.direction.label,
                )
            state = fresh_state(previous)
            self.store.update_strategy(
                strategy_id,
                config_json=config_json,
                state_json=dump_state(state),
                is_running=True,
                started_at=int(time.time()),
            )
        self.store.add_log(strategy_id, "Info", "Strategy started")
        logger.info("Strategy {} started", strategy_id)
        return state

    async def stop(self, strategy_id: str) -> None:
        async with self.locks.for_strategy(strategy_id):
            self._require(strategy_id)
            self.store.update_strategy(strategy_id, is_running=False)
        self.store.add_log(strategy_id, "Info", "Strategy stopped")
        logger.info("Strategy {} stopped", strategy_id)

    async def delete(self, strategy_id: str) -> None:
        async with self.locks.for_strategy(strategy_id):
            self._require(strategy_id)
            self.store.delete_strategy(strategy_id)
        logger.info("Strategy {} deleted", strategy_id)

    async def reset_losses(self, strategy_id: str) -> StrategyState:
        async with self.locks.for_strategy(strategy_id):
            record = self._require(strategy_id)
            state = evolve(load_state(record.state_json), consecutive_losses=0)
            self.store.update_strategy(strategy_id, state_json=dump_state(state))
        self.store.add_log(strategy_id, "Info", "Consecutive losses reset")
        return state

    async def force_close_position(self, strategy_id: str) -> bool:
        async with self.locks.for_strategy(strategy_id):
            record = self._require(strategy_id)
            state = load_state(record.state_json)
            if state.position is None:
                return False
            config = parse_strategy_config(record.config_json)
            account = self.store.get_account(record.account_id)
            if account is None:
                raise InvalidConfig(f"Account not found: {record.account_id}")
            gateway = await asyncio.to_thread(self.gateways.build, account)
            try:
                runner = StrategyRunner(record.id, config, state, gateway)
                price = await gateway.get_last_price(config.symbol)
                await runner.force_close(price)
            finally:
                await gateway.aclose()
            events, logs = runner.drain()
            trades: list[Trade] = [e.to_trade(record.id, config.symbol) for e in events]
            self.store.commit_tick(record.id, dump_state(runner.state), trades, logs)
        logger.warning("Strategy {}: position closed at market by operator", strategy_id)
        return True
