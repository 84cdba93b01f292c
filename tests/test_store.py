from decimal import Decimal

import pytest

from data.store import SQLiteStore, create_store
from engine.errors import StoreUnavailable
from engine.models import LogLine, Trade, TradeReason
from fakes import START


def _store(tmp_path):
    return SQLiteStore(str(tmp_path / "bot.db"))


def test_strategy_round_trip(tmp_path):
    store = _store(tmp_path)
    account_id = store.add_account("binance", "k", "s", proxy_url="http://proxy:8080")
    strategy_id = store.create_strategy(account_id, "ma_bounce", '{"symbol": "BTCUSDT"}', name="btc")

    record = store.get_strategy(strategy_id)
    assert record.state_json == "{}"
    assert not record.is_running
    assert store.list_running_strategies() == []

    store.update_strategy(strategy_id, is_running=True, started_at=1)
    assert [r.id for r in store.list_running_strategies()] == [strategy_id]
    assert store.get_account(account_id).proxy_url == "http://proxy:8080"
    assert store.get_account("missing") is None

    with pytest.raises(ValueError):
        store.update_strategy(strategy_id, is_paused=True)


def test_update_account_changes_credentials(tmp_path):
    store = _store(tmp_path)
    account_id = store.add_account("bitget", "k", "s")
    before = store.get_account(account_id)

    store.update_account(account_id, passphrase_encrypted="p", proxy_url="http://proxy:8080")
    after = store.get_account(account_id)
    assert after != before
    assert (after.passphrase_encrypted, after.proxy_url) == ("p", "http://proxy:8080")

    with pytest.raises(ValueError):
        store.update_account(account_id, exchange="bybit")


def test_commit_tick_writes_state_trades_and_logs(tmp_path):
    store = _store(tmp_path)
    strategy_id = store.create_strategy(store.add_account("bingx", "k", "s"), "ma_bounce", "{}")
    trade = Trade(
        strategy_id=strategy_id,
        symbol="BTCUSDT",
        side="Sell",
        quantity=Decimal("0.002"),
        price=Decimal("51000.5"),
        status=TradeReason.TAKE_PROFIT,
        executed_at=START,
        order_id="42",
        pnl_dollar=Decimal("1.9"),
        commission=Decimal("0.1"),
    )
    store.commit_tick(strategy_id, '{"long_counter": 3}', [trade], [LogLine(strategy_id, "Info", "closed")])

    assert store.get_strategy(strategy_id).state_json == '{"long_counter": 3}'
    [row] = store.list_trades(strategy_id)
    assert row["status"] == "TakeProfit"
    assert Decimal(row["price"]) == Decimal("51000.5")
    assert Decimal(row["pnl_dollar"]) == Decimal("1.9")
    assert [r["message"] for r in store.list_logs(strategy_id)] == ["closed"]


def test_delete_removes_strategy_and_logs_but_keeps_ledger(tmp_path):
    store = _store(tmp_path)
    strategy_id = store.create_strategy(store.add_account("binance", "k", "s"), "ma_bounce", "{}")
    trade = Trade(strategy_id, "BTCUSDT", "Buy", Decimal(1), Decimal(100), TradeReason.FILLED, START)
    store.commit_tick(strategy_id, "{}", [trade], [])
    store.add_log(strategy_id, "Info", "hello")

    store.delete_strategy(strategy_id)
    assert store.get_strategy(strategy_id) is None
    assert store.list_logs(strategy_id) == []
    assert len(store.list_trades(strategy_id)) == 1


def test_unreachable_database_is_store_unavailable(tmp_path):
    with pytest.raises(StoreUnavailable):
        create_store(None, str(tmp_path / "missing" / "dir" / "bot.db"))
