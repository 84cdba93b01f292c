import asyncio
import time

import pytest

from data.store import SQLiteStore
from engine.errors import StoreUnavailable
from fakes import FakeGateway
from services.scheduler import TickScheduler
from strategies.base import StrategyHandler


class FakeFactory:
    def __init__(self):
        self.gateway = FakeGateway()

    def build(self, account):
        return self.gateway


class RecordingHandler(StrategyHandler):
    strategy_type = "ma_bounce"

    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.cancelled = False

    async def process(self, record, gateway, store):
        self.calls.append(record.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        finally:
            self.active -= 1
        if self.error is not None:
            raise self.error


def _store(tmp_path, *types):
    store = SQLiteStore(str(tmp_path / "bot.db"))
    account_id = store.add_account("binance", "k", "s")
    ids = []
    for strategy_type in types:
        strategy_id = store.create_strategy(account_id, strategy_type, "{}")
        store.update_strategy(strategy_id, is_running=True)
        ids.append(strategy_id)
    return store, ids


def _scheduler(store, handlers, **kwargs):
    return TickScheduler(store, FakeFactory(), handlers, **kwargs)


def test_failing_strategy_does_not_stop_the_others(tmp_path):
    store, (bad, good) = _store(tmp_path, "broken", "ma_bounce")
    ok = RecordingHandler()
    broken = RecordingHandler(error=RuntimeError("boom"))
    broken.strategy_type = "broken"

    async def scenario():
        await _scheduler(store, {"ma_bounce": ok, "broken": broken}).run_cycle()

    asyncio.run(scenario())
    assert ok.calls == [good]
    assert broken.calls == [bad]
    assert [r["message"] for r in store.list_logs(bad)] == ["Tick failed: boom"]
    assert store.list_logs(good) == []


def test_stopped_and_unknown_strategies_are_skipped(tmp_path):
    store, (running, unknown) = _store(tmp_path, "ma_bounce", "grid")
    stopped = store.create_strategy(store.get_strategy(running).account_id, "ma_bounce", "{}")
    handler = RecordingHandler()

    asyncio.run(_scheduler(store, {"ma_bounce": handler}).run_cycle())
    assert handler.calls == [running]
    assert stopped not in handler.calls


def test_store_failure_halts_the_cycle(tmp_path):
    store, _ = _store(tmp_path, "ma_bounce")
    handler = RecordingHandler(error=StoreUnavailable("db down"))

    with pytest.raises(StoreUnavailable):
        asyncio.run(_scheduler(store, {"ma_bounce": handler}).run_cycle())


def test_tick_timeout_is_logged(tmp_path):
    store, (strategy_id,) = _store(tmp_path, "ma_bounce")
    handler = RecordingHandler(delay=5)

    asyncio.run(_scheduler(store, {"ma_bounce": handler}, tick_timeout=0.05).run_cycle())
    assert handler.cancelled
    assert store.list_logs(strategy_id)[0]["message"].startswith("Tick timed out")


def test_ticks_of_one_strategy_never_overlap(tmp_path):
    store, (strategy_id,) = _store(tmp_path, "ma_bounce")
    handler = RecordingHandler(delay=0.02)

    async def scenario():
        scheduler = _scheduler(store, {"ma_bounce": handler}, max_concurrency=4)
        record = store.get_strategy(strategy_id)
        await asyncio.gather(scheduler.process(record), scheduler.process(record))

    asyncio.run(scenario())
    assert handler.calls == [strategy_id, strategy_id]
    assert handler.max_active == 1


def test_pool_runs_strategies_concurrently(tmp_path):
    store, ids = _store(tmp_path, "ma_bounce", "ma_bounce", "ma_bounce")
    handler = RecordingHandler(delay=0.05)

    asyncio.run(_scheduler(store, {"ma_bounce": handler}, max_concurrency=2).run_cycle())
    assert sorted(handler.calls) == sorted(ids)
    assert handler.max_active == 2


def test_shutdown_cancels_in_flight_ticks(tmp_path):
    store, _ = _store(tmp_path, "ma_bounce")
    handler = RecordingHandler(delay=5)

    async def scenario():
        scheduler = _scheduler(store, {"ma_bounce": handler}, interval_seconds=0.01, tick_timeout=10)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, scheduler.stop)
        await asyncio.wait_for(scheduler.run_forever(), timeout=2)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert handler.cancelled
    assert scheduler.gateways.gateway.closed


class CountingFactory:
    def __init__(self, build_delay=0.0):
        self.build_delay = build_delay
        self.built = []

    def build(self, account):
        time.sleep(self.build_delay)
        gateway = FakeGateway()
        self.built.append((account.proxy_url, gateway))
        return gateway


def test_pooled_strategies_share_one_gateway_per_account(tmp_path):
    store, ids = _store(tmp_path, "ma_bounce", "ma_bounce", "ma_bounce")
    factory = CountingFactory(build_delay=0.05)
    handler = RecordingHandler()

    asyncio.run(TickScheduler(store, factory, {"ma_bounce": handler}, max_concurrency=3).run_cycle())
    assert sorted(handler.calls) == sorted(ids)
    assert len(factory.built) == 1


def test_gateway_is_rebuilt_when_account_changes(tmp_path):
    store, (strategy_id,) = _store(tmp_path, "ma_bounce")
    account_id = store.get_strategy(strategy_id).account_id
    factory = CountingFactory()
    scheduler = TickScheduler(store, factory, {"ma_bounce": RecordingHandler()})

    async def scenario():
        await scheduler.run_cycle()
        await scheduler.run_cycle()
        store.update_account(account_id, proxy_url="http://10.0.0.1:3128")
        await scheduler.run_cycle()
        await scheduler.run_cycle()
        await scheduler.close_gateways()

    asyncio.run(scenario())
    assert [proxy for proxy, _ in factory.built] == [None, "http://10.0.0.1:3128"]
    assert all(gateway.closed for _, gateway in factory.built)
