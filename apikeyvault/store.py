"""
API Key Vault - Storage Module

SQLite persistence with owner-scoped rows.

The store plays the part of a hosted relational backend with row-level
security: it is opened for one owner, and every statement it issues is
bound to that owner. Callers never filter by owner themselves and can't
read, change or delete another owner's rows.

Operations (the contract the credential manager relies on):
- select(table, filter, order) -> rows
- insert(table, rows)          -> inserted rows
- update(table, id, patch)     -> updated row
- delete(table, id)            -> None

Rows are plain dicts. Errors from SQLite are raised as PersistenceError.
"""

import json
import sqlite3
import uuid
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import PersistenceError, RecordNotFound

logger = logging.getLogger(__name__)


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    service_name TEXT NOT NULL,
    email_username TEXT NOT NULL DEFAULT '',
    encrypted_password TEXT NOT NULL DEFAULT '',   -- '' means no password
    encrypted_api_key TEXT NOT NULL,
    notes TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',              -- JSON array
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_api_keys_user_id ON api_keys(user_id);
CREATE INDEX IF NOT EXISTS idx_api_keys_service ON api_keys(user_id, service_name);

-- Keep updated_at current on every change
CREATE TRIGGER IF NOT EXISTS api_keys_touch_updated_at
AFTER UPDATE ON api_keys
FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
BEGIN
    UPDATE api_keys SET updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
    WHERE id = NEW.id;
END;
"""

PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
PRAGMA foreign_keys=ON;
PRAGMA secure_delete=ON;
"""

TABLES: Dict[str, Tuple[str, ...]] = {
    "api_keys": (
        "id", "user_id", "service_name", "email_username", "encrypted_password",
        "encrypted_api_key", "notes", "tags", "created_at", "updated_at",
    ),
}

JSON_COLUMNS = {"tags"}
READ_ONLY_COLUMNS = {"created_at", "updated_at"}
IMMUTABLE_COLUMNS = {"id", "user_id"} | READ_ONLY_COLUMNS


# =============================================================================
# STORE CLASS
# =============================================================================

class SQLiteStore:
    """
    Owner-scoped SQLite store.

    Usage:
        store = SQLiteStore("vault.db", owner_id="alice")
        rows = store.insert("api_keys", [{"service_name": "OpenAI", ...}])
        rows = store.select("api_keys", {"service_name": "OpenAI"},
                            order=[("created_at", False)])
        store.delete("api_keys", rows[0]["id"])
        store.close()
    """

    def __init__(self, db_path: str, owner_id: str, timeout: float = 5.0):
        if not owner_id:
            raise PersistenceError("Owner id is required")
        self.db_path = db_path
        self.owner_id = owner_id
        self.conn: Optional[sqlite3.Connection] = None
        with self._translate_errors("open"):
            self.conn = sqlite3.connect(db_path, timeout=timeout)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(PRAGMAS)
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def select(self, table: str, filter: Optional[Dict[str, Any]] = None,
               order: Optional[Sequence[Tuple[str, bool]]] = None) -> List[Dict[str, Any]]:
        """
        Select the owner's rows.

        Args:
            table: Table name
            filter: Column -> value equality conditions
            order: List of (column, ascending) pairs; ties are broken by
                   insertion order in the direction of the last pair

        Returns:
            List of row dicts
        """
        columns = self._columns(table)
        where, params = self._where(table, filter or {})

        order_terms = []
        last_ascending = True
        for column, ascending in order or []:
            self._check_column(table, column)
            order_terms.append(f"{column} {'ASC' if ascending else 'DESC'}")
            last_ascending = ascending
        order_terms.append(f"rowid {'ASC' if last_ascending else 'DESC'}")

        sql = f"SELECT {', '.join(columns)} FROM {table} WHERE {where} ORDER BY {', '.join(order_terms)}"
        with self._translate_errors(f"select from {table}"):
            rows = self._require_open().execute(sql, params).fetchall()
        return [self._decode(row) for row in rows]

    def insert(self, table: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Insert rows for the owner in one transaction.

        `user_id` is filled in when missing; a row naming another owner is
        rejected, as is any attempt to set created_at/updated_at.

        Returns:
            The inserted rows as stored, in input order
        """
        self._columns(table)
        prepared = [self._prepare_insert(table, row) for row in rows]
        if not prepared:
            return []

        conn = self._require_open()
        with self._translate_errors(f"insert into {table}"):
            with conn:
                for row in prepared:
                    names = list(row)
                    placeholders = ", ".join("?" for _ in names)
                    conn.execute(
                        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                        [row[n] for n in names],
                    )

        logger.debug(f"Inserted {len(prepared)} row(s) into {table}")
        ids = [row["id"] for row in prepared]
        by_id = {r["id"]: r for r in self._select_ids(table, ids)}
        return [by_id[i] for i in ids]

    def update(self, table: str, id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply `patch` to one of the owner's rows.

        Raises:
            RecordNotFound: no such row for this owner
        """
        self._columns(table)
        for column in patch:
            self._check_column(table, column)
            if column in IMMUTABLE_COLUMNS:
                raise PersistenceError(f"Column '{column}' cannot be updated")

        if patch:
            names = list(patch)
            assignments = ", ".join(f"{n} = ?" for n in names)
            params = [self._encode(n, patch[n]) for n in names] + [id, self.owner_id]
            conn = self._require_open()
            with self._translate_errors(f"update {table}"):
                with conn:
                    cursor = conn.execute(
                        f"UPDATE {table} SET {assignments} WHERE id = ? AND user_id = ?",
                        params,
                    )
            if cursor.rowcount == 0:
                raise RecordNotFound(f"No {table} row with id {id}")
            logger.debug(f"Updated {table} row {id} ({', '.join(names)})")

        rows = self._select_ids(table, [id])
        if not rows:
            raise RecordNotFound(f"No {table} row with id {id}")
        return rows[0]

    def delete(self, table: str, id: str) -> None:
        """
        Delete one of the owner's rows.

        Raises:
            RecordNotFound: no such row for this owner
        """
        self._columns(table)
        conn = self._require_open()
        with self._translate_errors(f"delete from {table}"):
            with conn:
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE id = ? AND user_id = ?",
                    (id, self.owner_id),
                )
        if cursor.rowcount == 0:
            raise RecordNotFound(f"No {table} row with id {id}")
        logger.debug(f"Deleted {table} row {id}")

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _require_open(self) -> sqlite3.Connection:
        if not self.conn:
            raise PersistenceError("Store is closed")
        return self.conn

    @staticmethod
    def _columns(table: str) -> Tuple[str, ...]:
        if table not in TABLES:
            raise PersistenceError(f"Unknown table: {table}")
        return TABLES[table]

    def _check_column(self, table: str, column: str) -> None:
        if column not in self._columns(table):
            raise PersistenceError(f"Unknown column {table}.{column}")

    def _where(self, table: str, filter: Dict[str, Any]) -> Tuple[str, list]:
        clauses = ["user_id = ?"]
        params: list = [self.owner_id]
        for column, value in filter.items():
            self._check_column(table, column)
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(self._encode(column, value))
        return " AND ".join(clauses), params

    def _prepare_insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        prepared = {}
        for column, value in row.items():
            self._check_column(table, column)
            if column in READ_ONLY_COLUMNS:
                raise PersistenceError(f"Column '{column}' is assigned by the store")
            prepared[column] = self._encode(column, value)

        owner = prepared.setdefault("user_id", self.owner_id)
        if owner != self.owner_id:
            raise PersistenceError("Row-level security: cannot insert rows for another owner")
        prepared.setdefault("id", str(uuid.uuid4()))
        return prepared

    def _select_ids(self, table: str, ids: List[str]) -> List[Dict[str, Any]]:
        columns = self._columns(table)
        placeholders = ", ".join("?" for _ in ids)
        with self._translate_errors(f"select from {table}"):
            rows = self._require_open().execute(
                f"SELECT {', '.join(columns)} FROM {table} "
                f"WHERE user_id = ? AND id IN ({placeholders})",
                [self.owner_id] + list(ids),
            ).fetchall()
        return [self._decode(row) for row in rows]

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS:
            return json.dumps(list(value or []))
        return value

    @staticmethod
    def _decode(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        for column in JSON_COLUMNS:
            if column in data and isinstance(data[column], str):
                data[column] = json.loads(data[column])
        return data

    @contextmanager
    def _translate_errors(self, action: str):
        try:
            yield
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            retryable = "locked" in message or "busy" in message
            logger.error(f"Store failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}", retryable=retryable) from e
        except sqlite3.Error as e:
            logger.error(f"Store failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}") from e
