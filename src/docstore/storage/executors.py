"""
SQL executors for the analytical backend.

Every executor implements the same surface:

    query(sql, params)     → list[dict]   rows
    command(sql, params)   → None         DDL / mutations
    insert(table, rows)    → None         batch append
    ping()                 → bool         connectivity check

SQL is written once, with ClickHouse-style `{name:Type}` placeholders.
ClickHouseExecutor sends them as server-side parameters; SQLiteExecutor
rewrites them to `:name`. Statements that differ between dialects go
through the helpers below (create_table, delete_rows).
"""

import json
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import httpx

from docstore.core.config import settings, get_logger
from docstore.core.errors import BackendError

logger = get_logger("storage.executors")

_PLACEHOLDER = re.compile(r"\{(\w+):[^}]+\}")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Column types used by the analytical schema, mapped per dialect
_SQLITE_TYPES = {
    "String": "TEXT",
    "Nullable(String)": "TEXT",
    "Int64": "INTEGER",
    "UInt32": "INTEGER",
    "UInt8": "INTEGER",
}


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise BackendError(f"Invalid SQL identifier: {name!r}")
    return name


class Executor(ABC):
    """
    Minimal SQL executor.

    Subclasses must implement query, command, insert, ping and create_table.
    Dialect helpers have portable defaults and are overridden where the
    syntax diverges.
    """

    dialect: str = "abstract"

    # ── Required ──────────────────────────────────────────────

    @abstractmethod
    def query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a read query and return rows as dicts. [] when nothing matches."""
        ...

    @abstractmethod
    def command(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Run a statement that returns no rows."""
        ...

    @abstractmethod
    def insert(self, table: str, rows: list[dict[str, Any]]) -> None:
        """Append rows. Every row must carry the same keys."""
        ...

    @abstractmethod
    def ping(self) -> bool:
        """True if the database is reachable. Never raises."""
        ...

    @abstractmethod
    def create_table(self, table: str, columns: list[tuple[str, str]], order_by: list[str]) -> None:
        """Create an append-only table if it does not exist. Column types use ClickHouse names."""
        ...

    # ── Dialect helpers ───────────────────────────────────────

    def delete_rows(self, table: str, where: str, params: dict[str, Any] | None = None) -> None:
        """Physically remove rows matching where."""
        self.command(f"DELETE FROM {_check_identifier(table)} WHERE {where}", params)

    def close(self) -> None:
        """Release connections."""

    def __repr__(self):
        return f"<{self.__class__.__name__}>"


# ============================================
# ClickHouse (HTTP interface)
# ============================================

class ClickHouseExecutor(Executor):
    """
    ClickHouse over its HTTP interface.

    Reads use JSONEachRow output; inserts POST a JSONEachRow body;
    parameters travel as `param_<name>` query-string values.
    """

    dialect = "clickhouse"

    def __init__(
        self,
        url: str | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.url = url or settings.clickhouse_url
        self.database = database or settings.clickhouse_database
        self._owns_client = client is None
        if client is None:
            client = httpx.Client(
                base_url=self.url,
                auth=(user or settings.clickhouse_user, password if password is not None else settings.clickhouse_password),
                timeout=timeout if timeout is not None else settings.http_timeout,
            )
        self._client = client

    def _params(self, params: dict[str, Any] | None, **extra) -> dict[str, Any]:
        query_params: dict[str, Any] = {"database": self.database, **extra}
        for key, value in (params or {}).items():
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            elif isinstance(value, bool):
                value = int(value)
            query_params[f"param_{key}"] = "" if value is None else str(value)
        return query_params

    def _post(self, query_params: dict[str, Any], body: str) -> httpx.Response:
        try:
            response = self._client.post("/", params=query_params, content=body.encode("utf-8"))
        except httpx.HTTPError as e:
            raise BackendError(f"ClickHouse request failed: {e}") from e
        if not response.is_success:
            raise BackendError(f"ClickHouse error: {response.text.strip()}", response.status_code)
        return response

    def query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        query_params = self._params(
            params,
            default_format="JSONEachRow",
            output_format_json_quote_64bit_integers=0,
        )
        response = self._post(query_params, sql)
        return [json.loads(line) for line in response.text.splitlines() if line.strip()]

    def command(self, sql: str, params: dict[str, Any] | None = None) -> None:
        self._post(self._params(params), sql)

    def insert(self, table: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        query_params = self._params(None, query=f"INSERT INTO {_check_identifier(table)} FORMAT JSONEachRow")
        body = "\n".join(json.dumps(row, default=str) for row in rows)
        self._post(query_params, body)
        logger.debug(f"Inserted {len(rows)} rows into {table}")

    def ping(self) -> bool:
        try:
            response = self._client.get("/ping")
        except httpx.HTTPError:
            return False
        return response.is_success

    def create_table(self, table: str, columns: list[tuple[str, str]], order_by: list[str]) -> None:
        cols = ",\n    ".join(f"{_check_identifier(name)} {col_type}" for name, col_type in columns)
        self.command(
            f"CREATE TABLE IF NOT EXISTS {_check_identifier(table)} (\n    {cols}\n) "
            f"ENGINE = MergeTree ORDER BY ({', '.join(order_by)})"
        )

    def delete_rows(self, table: str, where: str, params: dict[str, Any] | None = None) -> None:
        # Lightweight deletes are asynchronous; wait so reads see the result
        self.command(
            f"ALTER TABLE {_check_identifier(table)} DELETE WHERE {where} SETTINGS mutations_sync = 1",
            params,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


# ============================================
# SQLite (embedded)
# ============================================

class SQLiteExecutor(Executor):
    """Embedded executor over a local SQLite file, same SQL subset."""

    dialect = "sqlite"

    def __init__(self, db_path: Path | None = None, timeout: float | None = None):
        self.db_path = Path(db_path or settings.analytical_db)
        self.timeout = timeout if timeout is not None else settings.sqlite_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise BackendError(f"SQLite error on {self.db_path}: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _rewrite(sql: str) -> str:
        return _PLACEHOLDER.sub(r":\1", sql)

    def query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(self._rewrite(sql), params or {}).fetchall()
            return [dict(row) for row in rows]

    def command(self, sql: str, params: dict[str, Any] | None = None) -> None:
        with self._get_connection() as conn:
            conn.execute(self._rewrite(sql), params or {})

    def insert(self, table: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        columns = [_check_identifier(c) for c in rows[0]]
        sql = (
            f"INSERT INTO {_check_identifier(table)} ({', '.join(columns)}) "
            f"VALUES ({', '.join(':' + c for c in columns)})"
        )
        with self._get_connection() as conn:
            conn.executemany(sql, rows)
        logger.debug(f"Inserted {len(rows)} rows into {table}")

    def ping(self) -> bool:
        try:
            self.query("SELECT 1 AS ok")
        except BackendError:
            return False
        return True

    def create_table(self, table: str, columns: list[tuple[str, str]], order_by: list[str]) -> None:
        cols = ", ".join(f"{_check_identifier(name)} {_SQLITE_TYPES[col_type]}" for name, col_type in columns)
        with self._get_connection() as conn:
            conn.execute(f"CREATE TABLE IF NOT EXISTS {_check_identifier(table)} ({cols})")
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_key ON {table} ({', '.join(order_by)})"
            )


def create_executor(url: str | None = None, db_path: Path | None = None) -> Executor:
    """ClickHouse when a URL is configured, otherwise the embedded executor."""
    url = url if url is not None else settings.clickhouse_url
    if url:
        return ClickHouseExecutor(url=url)
    return SQLiteExecutor(db_path=db_path)
