from __future__ import annotations

import asyncio
import time
from contextlib import suppress

from loguru import logger

from adapters.base import ExchangeGateway
from data.store import AccountRecord, BaseStore, StrategyRecord
from engine.errors import InvalidConfig, StoreUnavailable
from services.orchestrator import GatewayFactory, StrategyLocks
from strategies.base import StrategyHandler


async def wait_next_interval(seconds: float, shutdown: asyncio.Event | None = None) -> None:
    """Sleep until the next multiple of `seconds` on the wall clock, or until shutdown."""
    now = time.time()
    delay = max(0.0, (int(now // seconds) + 1) * seconds - now)
    if shutdown is None:
        await asyncio.sleep(delay)
        return
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(shutdown.wait(), timeout=delay)


class TickScheduler:
    """Drives every running strategy one tick per interval.

    A failing strategy is logged and retried on the next interval; only
    StoreUnavailable stops the loop. Ticks of one strategy never overlap, and
    never overlap an operator action that shares the same `locks`.
    """

    def __init__(
        self,
        store: BaseStore,
        gateways: GatewayFactory,
        handlers: dict[str, StrategyHandler],
        interval_seconds: float = 5.0,
        tick_timeout: float = 30.0,
        max_concurrency: int = 1,
        shutdown: asyncio.Event | None = None,
        locks: StrategyLocks | None = None,
    ) -> None:
        self.store = store
        self.gateways = gateways
        self.handlers = handlers
        self.interval_seconds = interval_seconds
        self.tick_timeout = tick_timeout
        self.max_concurrency = max(1, max_concurrency)
        self.shutdown = shutdown or asyncio.Event()
        self._pool = asyncio.Semaphore(self.max_concurrency)
        self.locks = locks or StrategyLocks()
        self._account_locks: dict[str, asyncio.Lock] = {}
        self._gateways: dict[str, tuple[AccountRecord, ExchangeGateway]] = {}
        self._retired: list[tuple[str, ExchangeGateway]] = []

    def stop(self) -> None:
        self.shutdown.set()

    async def run_forever(self) -> None:
        logger.info(
            "Scheduler started: interval={}s, timeout={}s, concurrency={}",
            self.interval_seconds,
            self.tick_timeout,
            self.max_concurrency,
        )
        try:
            while not self.shutdown.is_set():
                await self._cycle_until_shutdown()
                if self.shutdown.is_set():
                    break
                await wait_next_interval(self.interval_seconds, self.shutdown)
        finally:
            await self.close_gateways()
            logger.info("Scheduler stopped")

    async def _cycle_until_shutdown(self) -> None:
        cycle = asyncio.create_task(self.run_cycle())
        stopper = asyncio.create_task(self.shutdown.wait())
        done, _ = await asyncio.wait({cycle, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if cycle in done:
            stopper.cancel()
            with suppress(asyncio.CancelledError):
                await stopper
            cycle.result()
            return
        cycle.cancel()
        with suppress(asyncio.CancelledError):
            await cycle
        logger.warning("Shutdown requested, in-flight ticks cancelled")

    async def run_cycle(self) -> None:
        await self._close_retired()
        records = self.store.list_running_strategies()
        if self.max_concurrency == 1:
            for record in records:
                if self.shutdown.is_set():
                    return
                await self.process(record)
            return
        results = await asyncio.gather(*(self.process(r) for r in records), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def process(self, record: StrategyRecord) -> None:
        async with self._pool, self.locks.for_strategy(record.id):
            # Re-read under the lock: an operator action may have run since the cycle listed it.
            current = self.store.get_strategy(record.id)
            if current is None or not current.is_running:
                logger.debug("Strategy {}: stopped or deleted before its tick, skipped", record.id)
                return
            record = current
            handler = self.handlers.get(record.strategy_type)
            if handler is None:
                logger.warning("Strategy {}: no handler for type {}", record.id, record.strategy_type)
                return
            try:
                gateway = await self._gateway_for(record)
                await asyncio.wait_for(handler.process(record, gateway, self.store), timeout=self.tick_timeout)
            except StoreUnavailable:
                raise
            except asyncio.TimeoutError:
                logger.error("Strategy {}: tick exceeded {}s and was cancelled", record.id, self.tick_timeout)
                self.store.add_log(record.id, "Error", f"Tick timed out after {self.tick_timeout}s")
            except Exception as exc:
                logger.exception("Strategy {}: tick failed", record.id)
                self.store.add_log(record.id, "Error", f"Tick failed: {exc}")

    async def _gateway_for(self, record: StrategyRecord) -> ExchangeGateway:
        lock = self._account_locks.setdefault(record.account_id, asyncio.Lock())
        async with lock:
            account = self.store.get_account(record.account_id)
            if account is None:
                raise InvalidConfig(f"Account not found: {record.account_id}")
            cached = self._gateways.get(record.account_id)
            if cached is not None and cached[0] == account:
                return cached[1]
            gateway = await asyncio.to_thread(self.gateways.build, account)
            self._gateways[record.account_id] = (account, gateway)
            if cached is not None:
                # Other strategies may still be mid-tick on the old gateway.
                logger.info("Account {} changed, gateway rebuilt", record.account_id)
                self._retired.append((record.account_id, cached[1]))
            return gateway

    async def _close(self, account_id: str, gateway: ExchangeGateway) -> None:
        try:
            await gateway.aclose()
        except Exception:
            logger.exception("Failed to close gateway for account {}", account_id)

    async def _close_retired(self) -> None:
        retired, self._retired = self._retired, []
        for account_id, gateway in retired:
            await self._close(account_id, gateway)

    async def close_gateways(self) -> None:
        await self._close_retired()
        cached, self._gateways = self._gateways, {}
        for account_id, (_, gateway) in cached.items():
            await self._close(account_id, gateway)
