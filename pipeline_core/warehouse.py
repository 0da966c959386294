import copy
import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Protocol, Sequence

from .models import Record

logger = logging.getLogger(__name__)


class Warehouse(Protocol):
    """Load target for ETL jobs.

    Writes are expected to happen inside ``transaction()``: the block commits
    on normal exit and rolls back when an exception escapes it.
    """

    def transaction(self) -> Iterator["Warehouse"]:
        ...

    def insert(self, table: str, record: Record) -> None:
        ...

    def update(self, table: str, record: Record, key_columns: Sequence[str]) -> int:
        ...

    def exists(self, table: str, record: Record, key_columns: Sequence[str]) -> bool:
        ...

    def delete_all(self, table: str) -> int:
        ...

    def snapshot(self, table: str, limit: int = 50) -> List[Record]:
        ...

    def count(self, table: str) -> int:
        ...

    def metrics(self) -> Dict[str, Any]:
        ...


def _matches(row: Record, record: Record, key_columns: Sequence[str]) -> bool:
    return all(row.get(column) == record.get(column) for column in key_columns)


class InMemoryWarehouse:
    """Dict-of-lists warehouse; a transaction snapshots every table and restores it on rollback."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Record]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["InMemoryWarehouse"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            saved = copy.deepcopy(self.tables)
            self._depth = 1
            try:
                yield self
            except BaseException:
                self.tables = saved
                logger.warning("In-memory transaction rolled back")
                raise
            finally:
                self._depth = 0

    def insert(self, table: str, record: Record) -> None:
        with self._lock:
            self.tables.setdefault(table, []).append(dict(record))

    def update(self, table: str, record: Record, key_columns: Sequence[str]) -> int:
        updated = 0
        with self._lock:
            for row in self.tables.get(table, []):
                if _matches(row, record, key_columns):
                    row.update(record)
                    updated += 1
        return updated

    def exists(self, table: str, record: Record, key_columns: Sequence[str]) -> bool:
        with self._lock:
            return any(_matches(row, record, key_columns) for row in self.tables.get(table, []))

    def delete_all(self, table: str) -> int:
        with self._lock:
            rows = self.tables.get(table, [])
            deleted = len(rows)
            self.tables[table] = []
        return deleted

    def snapshot(self, table: str, limit: int = 50) -> List[Record]:
        with self._lock:
            return [dict(row) for row in self.tables.get(table, [])[-limit:]]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self.tables.get(table, []))

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            counts = {name: len(rows) for name, rows in self.tables.items()}
        return {"backend": "memory", "tables": counts, "total_rows": sum(counts.values())}


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _to_sql_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class SQLiteWarehouse:
    """SQLite-backed warehouse with schemaless tables.

    Tables are created on first insert from the record's keys and widened with
    ``ALTER TABLE ... ADD COLUMN`` when later records carry new fields. Nested
    values are stored as JSON text.
    """

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["SQLiteWarehouse"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.conn.execute("BEGIN")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                logger.warning("SQLite transaction rolled back on %s", self.db_path)
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _table_exists(self, table: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ).fetchone()
        return row is not None

    def _columns(self, table: str) -> List[str]:
        rows = self.conn.execute(f"PRAGMA table_info({quote_ident(table)})").fetchall()
        return [row["name"] for row in rows]

    def _ensure_table(self, table: str, columns: Sequence[str]) -> None:
        if not columns:
            raise ValueError(f"Cannot load an empty record into {table}")
        if not self._table_exists(table):
            column_sql = ", ".join(quote_ident(c) for c in columns)
            self.conn.execute(f"CREATE TABLE {quote_ident(table)} ({column_sql})")
            return
        existing = set(self._columns(table))
        for column in columns:
            if column not in existing:
                self.conn.execute(
                    f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(column)}"
                )

    def insert(self, table: str, record: Record) -> None:
        columns = list(record)
        with self._lock:
            self._ensure_table(table, columns)
            placeholders = ", ".join("?" for _ in columns)
            self.conn.execute(
                f"INSERT INTO {quote_ident(table)} "
                f"({', '.join(quote_ident(c) for c in columns)}) VALUES ({placeholders})",
                [_to_sql_value(record[c]) for c in columns],
            )

    def _where(self, record: Record, key_columns: Sequence[str]):
        clause = " AND ".join(f"{quote_ident(c)} IS ?" for c in key_columns)
        return clause, [_to_sql_value(record.get(c)) for c in key_columns]

    def update(self, table: str, record: Record, key_columns: Sequence[str]) -> int:
        with self._lock:
            if not self._table_exists(table):
                return 0
            self._ensure_table(table, list(record))
            columns = [c for c in record if c not in key_columns]
            if not columns:
                return 1 if self.exists(table, record, key_columns) else 0
            where, params = self._where(record, key_columns)
            assignments = ", ".join(f"{quote_ident(c)} = ?" for c in columns)
            cursor = self.conn.execute(
                f"UPDATE {quote_ident(table)} SET {assignments} WHERE {where}",
                [_to_sql_value(record[c]) for c in columns] + params,
            )
            return cursor.rowcount

    def exists(self, table: str, record: Record, key_columns: Sequence[str]) -> bool:
        with self._lock:
            if not self._table_exists(table):
                return False
            if not set(key_columns) <= set(self._columns(table)):
                return False
            where, params = self._where(record, key_columns)
            row = self.conn.execute(
                f"SELECT 1 FROM {quote_ident(table)} WHERE {where} LIMIT 1", params
            ).fetchone()
            return row is not None

    def delete_all(self, table: str) -> int:
        with self._lock:
            if not self._table_exists(table):
                return 0
            cursor = self.conn.execute(f"DELETE FROM {quote_ident(table)}")
            return cursor.rowcount

    def snapshot(self, table: str, limit: int = 50) -> List[Record]:
        with self._lock:
            if not self._table_exists(table):
                return []
            rows = self.conn.execute(
                f"SELECT * FROM {quote_ident(table)} ORDER BY rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in reversed(rows)]

    def count(self, table: str) -> int:
        with self._lock:
            if not self._table_exists(table):
                return 0
            row = self.conn.execute(f"SELECT COUNT(*) AS c FROM {quote_ident(table)}").fetchone()
            return row["c"]

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            names = [
                row["name"]
                for row in self.conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
                ).fetchall()
            ]
            counts = {name: self.count(name) for name in names}
        return {"backend": "sqlite", "tables": counts, "total_rows": sum(counts.values())}

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def create_warehouse(backend: str, path: str) -> Warehouse:
    backend = backend.lower()
    if backend == "sqlite":
        return SQLiteWarehouse(path)
    return InMemoryWarehouse()
