from __future__ import annotations

import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import psycopg
from psycopg.rows import dict_row

from engine.errors import StoreUnavailable
from engine.models import LogLine, Trade


@dataclass
class AccountRecord:
    id: str
    exchange: str
    api_key_encrypted: str
    api_secret_encrypted: str
    passphrase_encrypted: str | None = None
    proxy_url: str | None = None
    name: str = ""


@dataclass
class StrategyRecord:
    id: str
    account_id: str
    strategy_type: str
    config_json: str
    state_json: str
    is_running: bool
    name: str = ""
    workspace_json: str | None = None
    started_at: int | None = None


def _strategy(row: dict[str, Any]) -> StrategyRecord:
    return StrategyRecord(
        id=row["id"],
        account_id=row["account_id"],
        strategy_type=row["strategy_type"],
        config_json=row["config_json"],
        state_json=row["state_json"],
        is_running=bool(row["is_running"]),
        name=row["name"],
        workspace_json=row["workspace_json"],
        started_at=row["started_at"],
    )


def _opt(value: Any) -> str | None:
    return None if value is None else str(value)


class BaseStore:
    def add_account(
        self,
        exchange: str,
        api_key_encrypted: str,
        api_secret_encrypted: str,
        passphrase_encrypted: str | None = None,
        proxy_url: str | None = None,
        name: str = "",
    ) -> str:
        raise NotImplementedError

    def get_account(self, account_id: str) -> AccountRecord | None:
        raise NotImplementedError

    def update_account(self, account_id: str, **fields: Any) -> None:
        raise NotImplementedError

    def create_strategy(
        self,
        account_id: str,
        strategy_type: str,
        config_json: str,
        name: str = "",
        workspace_json: str | None = None,
    ) -> str:
        raise NotImplementedError

    def get_strategy(self, strategy_id: str) -> StrategyRecord | None:
        raise NotImplementedError

    def list_running_strategies(self) -> list[StrategyRecord]:
        raise NotImplementedError

    def update_strategy(self, strategy_id: str, **fields: Any) -> None:
        raise NotImplementedError

    def delete_strategy(self, strategy_id: str) -> None:
        raise NotImplementedError

    def commit_tick(self, strategy_id: str, state_json: str, trades: list[Trade], logs: list[LogLine]) -> None:
        """Persist a state blob with its trades and log lines in one transaction."""
        raise NotImplementedError

    def add_log(self, strategy_id: str, level: str, message: str) -> None:
        raise NotImplementedError

    def list_trades(self, strategy_id: str, limit: int = 50) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_logs(self, strategy_id: str, limit: int = 50) -> list[dict[str, Any]]:
        raise NotImplementedError


class _SqlStore(BaseStore):
    placeholder = "?"
    _unavailable: tuple[type[BaseException], ...] = ()

    def _connect(self):
        raise NotImplementedError

    def _sql(self, query: str) -> str:
        return query if self.placeholder == "?" else query.replace("?", self.placeholder)

    @contextmanager
    def _tx(self) -> Iterator[Any]:
        try:
            with self._connect() as conn:
                yield conn
        except self._unavailable as exc:
            raise StoreUnavailable(str(exc)) from exc

    def _execute(self, conn, query: str, params: tuple = ()) -> Any:
        return conn.execute(self._sql(query), params)

    def add_account(
        self,
        exchange: str,
        api_key_encrypted: str,
        api_secret_encrypted: str,
        passphrase_encrypted: str | None = None,
        proxy_url: str | None = None,
        name: str = "",
    ) -> str:
        account_id = str(uuid.uuid4())
        with self._tx() as conn:
            self._execute(
                conn,
                "INSERT INTO exchange_accounts (id, name, exchange, api_key_encrypted, api_secret_encrypted, "
                "passphrase_encrypted, proxy_url, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (account_id, name, exchange, api_key_encrypted, api_secret_encrypted, passphrase_encrypted, proxy_url, int(time.time())),
            )
        return account_id

    def get_account(self, account_id: str) -> AccountRecord | None:
        with self._tx() as conn:
            row = self._execute(conn, "SELECT * FROM exchange_accounts WHERE id=?", (account_id,)).fetchone()
            if not row:
                return None
            row = dict(row)
            return AccountRecord(
                id=row["id"],
                exchange=row["exchange"],
                api_key_encrypted=row["api_key_encrypted"],
                api_secret_encrypted=row["api_secret_encrypted"],
                passphrase_encrypted=row["passphrase_encrypted"],
                proxy_url=row["proxy_url"],
                name=row["name"],
            )

    def update_account(self, account_id: str, **fields: Any) -> None:
        allowed = {"name", "api_key_encrypted", "api_secret_encrypted", "passphrase_encrypted", "proxy_url"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        with self._tx() as conn:
            self._execute(
                conn,
                f"UPDATE exchange_accounts SET {', '.join(f'{k}=?' for k in fields)} WHERE id=?",
                tuple(fields.values()) + (account_id,),
            )

    def create_strategy(
        self,
        account_id: str,
        strategy_type: str,
        config_json: str,
        name: str = "",
        workspace_json: str | None = None,
    ) -> str:
        strategy_id = str(uuid.uuid4())
        with self._tx() as conn:
            self._execute(
                conn,
                "INSERT INTO strategies (id, account_id, name, strategy_type, config_json, state_json, workspace_json, "
                "is_running, created_at) VALUES (?, ?, ?, ?, ?, '{}', ?, 0, ?)",
                (strategy_id, account_id, name, strategy_type, config_json, workspace_json, int(time.time())),
            )
        return strategy_id

    def get_strategy(self, strategy_id: str) -> StrategyRecord | None:
        with self._tx() as conn:
            row = self._execute(conn, "SELECT * FROM strategies WHERE id=?", (strategy_id,)).fetchone()
            return _strategy(dict(row)) if row else None

    def list_running_strategies(self) -> list[StrategyRecord]:
        with self._tx() as conn:
            rows = self._execute(conn, "SELECT * FROM strategies WHERE is_running=1 ORDER BY created_at").fetchall()
            return [_strategy(dict(r)) for r in rows]

    def update_strategy(self, strategy_id: str, **fields: Any) -> None:
        allowed = {"config_json", "state_json", "is_running", "started_at", "name", "workspace_json"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown strategy fields: {sorted(unknown)}")
        if "is_running" in fields:
            fields["is_running"] = int(bool(fields["is_running"]))
        with self._tx() as conn:
            self._execute(
                conn,
                f"UPDATE strategies SET {', '.join(f'{k}=?' for k in fields)} WHERE id=?",
                tuple(fields.values()) + (strategy_id,),
            )

    def delete_strategy(self, strategy_id: str) -> None:
        with self._tx() as conn:
            self._execute(conn, "DELETE FROM strategy_logs WHERE strategy_id=?", (strategy_id,))
            self._execute(conn, "DELETE FROM strategies WHERE id=?", (strategy_id,))

    def commit_tick(self, strategy_id: str, state_json: str, trades: list[Trade], logs: list[LogLine]) -> None:
        with self._tx() as conn:
            self._execute(conn, "UPDATE strategies SET state_json=? WHERE id=?", (state_json, strategy_id))
            for t in trades:
                self._execute(
                    conn,
                    "INSERT INTO trades (id, strategy_id, symbol, side, quantity, price, status, order_id, "
                    "pnl_dollar, commission, executed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        t.id,
                        t.strategy_id,
                        t.symbol,
                        t.side,
                        str(t.quantity),
                        str(t.price),
                        t.status.value,
                        t.order_id,
                        _opt(t.pnl_dollar),
                        _opt(t.commission),
                        t.executed_at.isoformat(),
                    ),
                )
            for line in logs:
                self._insert_log(conn, line.strategy_id, line.level, line.message, line.created_at.isoformat())

    def _insert_log(self, conn, strategy_id: str, level: str, message: str, created_at: str) -> None:
        self._execute(
            conn,
            "INSERT INTO strategy_logs (id, strategy_id, level, message, created_at) VALUES (?, ?, ?, ?, ?)",
            (str(uuid.uuid4()), strategy_id, level, message, created_at),
        )

    def add_log(self, strategy_id: str, level: str, message: str) -> None:
        line = LogLine(strategy_id=strategy_id, level=level, message=message)
        with self._tx() as conn:
            self._insert_log(conn, strategy_id, level, message, line.created_at.isoformat())

    def list_trades(self, strategy_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM trades WHERE strategy_id=? ORDER BY executed_at DESC LIMIT ?",
                (strategy_id, limit),
            ).fetchall()
            return [dict(r) for r in rows]

    def list_logs(self, strategy_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._tx() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM strategy_logs WHERE strategy_id=? ORDER BY created_at DESC LIMIT ?",
                (strategy_id, limit),
            ).fetchall()
            return [dict(r) for r in rows]


class SQLiteStore(_SqlStore):
    _unavailable = (sqlite3.OperationalError,)

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        with self._tx() as conn:
            conn.executescript(schema_path.read_text())


class PostgresStore(_SqlStore):
    placeholder = "%s"
    _unavailable = (psycopg.OperationalError,)

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self._ensure_schema()

    def _connect(self):
        return psycopg.connect(self.dsn, row_factory=dict_row)

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        with self._tx() as conn:
            statements = [s.strip() for s in schema_path.read_text().split(";") if s.strip()]
            for stmt in statements:
                conn.execute(stmt)


def create_store(database_url: str | None, sqlite_path: str) -> BaseStore:
    if database_url:
        return PostgresStore(database_url)
    return SQLiteStore(sqlite_path)
