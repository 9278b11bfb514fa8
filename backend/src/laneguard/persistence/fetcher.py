"""Row fetchers used to resolve polymorphic parents, and role row loading."""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class RowFetcher(Protocol):
    """Loads one row by table name and primary key value."""

    def __call__(self, table: str, id: Any) -> dict[str, Any] | None: ...


class MappingRowFetcher:
    """In-memory fetcher over ``{table: {id: row}}``.

    Example:
        fetch = MappingRowFetcher({"work_orders": {42: {"id": 42, "assigned_technician_id": 3}}})
        fetch("work_orders", "42")  # ids match as int or str
    """

    def __init__(self, tables: Mapping[str, Mapping[Any, dict[str, Any]]] | None = None):
        self.tables: dict[str, dict[Any, dict[str, Any]]] = {
            name: dict(rows) for name, rows in (tables or {}).items()
        }

    def add(self, table: str, row: dict[str, Any], primary_key: str = "id") -> None:
        self.tables.setdefault(table, {})[row[primary_key]] = row

    def __call__(self, table: str, id: Any) -> dict[str, Any] | None:
        rows = self.tables.get(table, {})
        if id in rows:
            return rows[id]
        for key, row in rows.items():
            if str(key) == str(id):
                return row
        return None


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class SQLiteRowFetcher:
    """Read-only fetcher over a SQLite database."""

    def __init__(self, db_path: Path | str = ":memory:", primary_key: str = "id"):
        self.db_path = str(db_path)
        self.primary_key = _check_identifier(primary_key)
        self.conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Establish database connection."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __call__(self, table: str, id: Any) -> dict[str, Any] | None:
        if not self.conn:
            raise RuntimeError("Database not connected")
        sql = f"SELECT * FROM {_check_identifier(table)} WHERE {self.primary_key} = ?"
        row = self.conn.execute(sql, (id,)).fetchone()
        return dict(row) if row else None


def load_role_rows(conn: sqlite3.Connection, table: str = "roles") -> list[dict[str, Any]]:
    """Read role rows (name, priority, description, is_system_role) for RoleHierarchy.from_rows."""
    sql = (
        "SELECT name, priority, description, is_system_role "
        f"FROM {_check_identifier(table)} WHERE is_active IS NULL OR is_active = 1 "
        "ORDER BY priority"
    )
    cursor = conn.execute(sql)
    columns = [c[0] for c in cursor.description]
    rows = [dict(zip(columns, values)) for values in cursor.fetchall()]
    logger.debug("Loaded %d role rows from %s", len(rows), table)
    return rows
