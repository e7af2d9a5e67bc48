"""SQLite storage for the identity tables, with transactions and simple CRUD helpers."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union

from identsvc.models import ServiceError

_INT = "INTEGER NOT NULL DEFAULT 0"
_TEXT = "TEXT NOT NULL DEFAULT ''"
_TIME = "DATETIME"
_SERIAL_KEY = "INTEGER PRIMARY KEY AUTOINCREMENT"
_TEXT_KEY = "TEXT PRIMARY KEY"

_TIME_COLUMNS = frozenset({"created_at", "updated_at", "login_time", "oper_time"})


class DuplicateEntryError(ServiceError):
    """Raised when a row would break a primary key or unique constraint."""


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


@dataclass(frozen=True)
class Table:
    """Name, column declarations and unique keys of one table."""

    name: str
    columns: tuple[tuple[str, str], ...]
    unique: tuple[str, ...] = ()
    primary_key: str = "id"

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.columns)

    def has(self, column: str) -> bool:
        return column in self.column_names

    def create_statement(self) -> str:
        parts = [f"{_quote(name)} {decl}" for name, decl in self.columns]
        parts.extend(f"UNIQUE ({_quote(col)})" for col in self.unique)
        return f"CREATE TABLE IF NOT EXISTS {_quote(self.name)} ({', '.join(parts)})"


AUTH_RULE_TABLE = Table(
    name="t_auth_rule",
    columns=(
        ("id", _SERIAL_KEY),
        ("pid", _INT),
        ("name", _TEXT),
        ("type", _INT),
        ("path", _TEXT),
        ("component", _TEXT),
        ("title", _TEXT),
        ("icon", _TEXT),
        ("active_icon", _TEXT),
        ("keep_alive", _INT),
        ("hide_in_menu", _INT),
        ("hide_in_tab", _INT),
        ("hide_in_breadcrumb", _INT),
        ("hide_children_in_menu", _INT),
        ("authority", _TEXT),
        ("badge", _TEXT),
        ("badge_type", _TEXT),
        ("badge_variants", _TEXT),
        ("full_path_key", _INT),
        ("active_path", _TEXT),
        ("affix_tab", _INT),
        ("affix_tab_order", _INT),
        ("iframe_src", _TEXT),
        ("ignore_access", _INT),
        ("link", _TEXT),
        ("max_num_of_open_tab", _INT),
        ("menu_visible_with_forbidden", _INT),
        ("open_in_new_window", _INT),
        ("order", _INT),
        ("query", _TEXT),
        ("no_basic_layout", _INT),
        ("created_at", _TIME),
        ("updated_at", _TIME),
    ),
    unique=("name",),
)

LOGIN_LOG_TABLE = Table(
    name="t_login_log",
    columns=(
        ("id", _SERIAL_KEY),
        ("org_id", _TEXT),
        ("login_name", _TEXT),
        ("ip", _TEXT),
        ("browser", _TEXT),
        ("status", _INT),
        ("message", _TEXT),
        ("login_time", _TIME),
        ("created_at", _TIME),
    ),
)

OPER_LOG_TABLE = Table(
    name="t_oper_log",
    columns=(
        ("id", _SERIAL_KEY),
        ("org_id", _TEXT),
        ("oper_name", _TEXT),
        ("oper_url", _TEXT),
        ("oper_method", _TEXT),
        ("oper_ip", _TEXT),
        ("oper_time", _TIME),
        ("created_at", _TIME),
    ),
)

ORG_TABLE = Table(
    name="t_org",
    columns=(
        ("id", _TEXT_KEY),
        ("pid", _TEXT),
        ("name", _TEXT),
        ("manager_id", _TEXT),
        ("manager_name", _TEXT),
        ("status", _INT),
        ("created_at", _TIME),
        ("updated_at", _TIME),
    ),
)

ROLE_TABLE = Table(
    name="t_role",
    columns=(
        ("id", _SERIAL_KEY),
        ("org_id", _TEXT),
        ("pid", _INT),
        ("name", _TEXT),
        ("status", _INT),
        ("creator_id", _TEXT),
        ("created_at", _TIME),
        ("updated_at", _TIME),
    ),
)

USER_TABLE = Table(
    name="t_user",
    columns=(
        ("id", _TEXT_KEY),
        ("name", _TEXT),
        ("nickname", _TEXT),
        ("password", _TEXT),
        ("salt", _TEXT),
        ("status", _INT),
        ("org_id", _TEXT),
        ("sex", _INT),
        ("email", _TEXT),
        ("avatar", _TEXT),
        ("mobile", _TEXT),
        ("address", _TEXT),
        ("describe", _TEXT),
        ("is_admin", _INT),
        ("created_at", _TIME),
        ("updated_at", _TIME),
    ),
    unique=("name",),
)

TABLES: tuple[Table, ...] = (
    AUTH_RULE_TABLE,
    LOGIN_LOG_TABLE,
    OPER_LOG_TABLE,
    ORG_TABLE,
    ROLE_TABLE,
    USER_TABLE,
)

TableRef = Union[Table, str]


def _to_sql(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat(sep=" ", timespec="microseconds")
    return value


def _from_sql(column: str, value: Any) -> Any:
    if column in _TIME_COLUMNS and isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def _table_name(table: TableRef) -> str:
    return table.name if isinstance(table, Table) else table


def _check_columns(table: TableRef, columns: Sequence[str]) -> None:
    if not isinstance(table, Table):
        return
    unknown = [c for c in columns if not table.has(c)]
    if unknown:
        raise ValueError(f"unknown column(s) for {table.name}: {', '.join(unknown)}")


def _where_clause(table: TableRef, where: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not where:
        raise ValueError("a WHERE condition is required")
    _check_columns(table, list(where))
    parts: list[str] = []
    params: list[Any] = []
    for column, value in where.items():
        name = _quote(column)
        if isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                parts.append("0")
                continue
            parts.append(f"{name} IN ({', '.join('?' for _ in values)})")
            params.extend(_to_sql(v) for v in values)
        elif value is None:
            parts.append(f"{name} IS NULL")
        else:
            parts.append(f"{name} = ?")
            params.append(_to_sql(value))
    return " AND ".join(parts), params


class Database:
    """A thread-safe SQLite connection holding the identity tables."""

    def __init__(self, path: str = ":memory:", tables: Sequence[Table] = TABLES) -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self.tables = {table.name: table for table in tables}
        with self._lock:
            for table in tables:
                self._conn.execute(table.create_statement())

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self, sql: str, params: Sequence[Any]) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, [_to_sql(p) for p in params])
        except sqlite3.IntegrityError as exc:
            message = str(exc)
            if "UNIQUE constraint failed" in message:
                raise DuplicateEntryError(f"Duplicate entry: {message}") from exc
            raise

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """Run the block atomically; nested blocks become savepoints."""
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            self._conn.execute("BEGIN" if depth == 0 else f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO {savepoint}")
                    self._conn.execute(f"RELEASE {savepoint}")
                raise
            self._depth -= 1
            self._conn.execute("COMMIT" if depth == 0 else f"RELEASE {savepoint}")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the number of rows it changed."""
        with self._lock:
            return self._run(sql, params).rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a query and return its rows as dictionaries."""
        with self._lock:
            rows = self._run(sql, params).fetchall()
        return [{key: _from_sql(key, row[key]) for key in row.keys()} for row in rows]

    def insert(self, table: TableRef, data: Mapping[str, Any]) -> int:
        """Insert one row and return its row id; fills creation and update times."""
        row = dict(data)
        if isinstance(table, Table):
            now = datetime.now()
            for column in ("created_at", "updated_at"):
                if table.has(column) and row.get(column) is None:
                    row[column] = now
        _check_columns(table, list(row))
        name = _quote(_table_name(table))
        if row:
            columns = ", ".join(_quote(c) for c in row)
            marks = ", ".join("?" for _ in row)
            sql = f"INSERT INTO {name} ({columns}) VALUES ({marks})"
        else:
            sql = f"INSERT INTO {name} DEFAULT VALUES"
        with self._lock:
            cursor = self._run(sql, list(row.values()))
            return int(cursor.lastrowid or 0)

    def update(self, table: TableRef, data: Mapping[str, Any], where: Mapping[str, Any]) -> int:
        """Update the matching rows and return how many were changed."""
        row = dict(data)
        if isinstance(table, Table) and table.has("updated_at") and "updated_at" not in row:
            row["updated_at"] = datetime.now()
        if not row:
            raise ValueError("no data to update")
        _check_columns(table, list(row))
        condition, where_params = _where_clause(table, where)
        assignments = ", ".join(f"{_quote(c)} = ?" for c in row)
        sql = f"UPDATE {_quote(_table_name(table))} SET {assignments} WHERE {condition}"
        with self._lock:
            return self._run(sql, [*row.values(), *where_params]).rowcount

    def delete(self, table: TableRef, where: Mapping[str, Any]) -> int:
        """Delete the matching rows and return how many were removed."""
        condition, params = _where_clause(table, where)
        sql = f"DELETE FROM {_quote(_table_name(table))} WHERE {condition}"
        with self._lock:
            return self._run(sql, params).rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()