"""
Storage Drivers

The storage driver is the only component that talks to a concrete backend.
Everything above it (schema manager, repository, lifecycle manager) speaks
parameterized SQL through the ``StorageDriver`` contract.

Bundled drivers:
    SQLiteDriver: embedded binary file (``<name>.db``), WAL journal
    JsonDocumentDriver: embedded JSON file (``<name>.json``) backed by an
        in-memory SQLite engine that is written out atomically as part of
        every commit

Remote backends (document and relational stores) ship no driver; a factory
for them must be registered with the lifecycle manager.

Usage:
    driver = SQLiteDriver("StatTracker", "profile/StatTracker/Databases/StatTracker/StatTracker.db")
    driver.connect()
    driver.begin_transaction()
    driver.execute_query("UPDATE player_stats SET kills = ? WHERE player_uid = ?", (5, uid))
    driver.commit()
"""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .connection_info import BackendType, ConnectionInfo
from .errors import (
    ConnectionFailedError,
    DatabaseErrorKind,
    PersistenceError,
    QueryFailedError,
    TransactionFailedError,
    classify_driver_error,
)
from stat_tracker.utils.atomic_json import atomic_write_json, read_json


JSON_DOCUMENT_FORMAT = "stat_tracker.json_document"
JSON_DOCUMENT_VERSION = 1

READ_ONLY_KEYWORDS = ("SELECT", "PRAGMA", "EXPLAIN", "WITH")


@dataclass
class QueryResult:
    """Rows (as dicts) and write metadata returned by ``execute_query``."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0
    lastrowid: Optional[int] = None

    @property
    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first
        if not row:
            return None
        return next(iter(row.values()))


@dataclass
class DriverStats:
    """Statistics for driver monitoring."""

    queries: int = 0
    failed_queries: int = 0
    transactions_started: int = 0
    commits: int = 0
    rollbacks: int = 0
    documents_written: int = 0


def _short(query: str, limit: int = 120) -> str:
    text = " ".join(query.split())
    return text if len(text) <= limit else text[:limit] + "..."


def _is_read_only(query: str) -> bool:
    words = query.lstrip().split(None, 1)
    return bool(words) and words[0].upper() in READ_ONLY_KEYWORDS


class StorageDriver(ABC):
    """
    Abstract storage driver contract.

    Attributes:
        name: Database name the driver serves
        stats: DriverStats counters
        corrupted: Set once the backend reports a corrupted store
    """

    backend_type: BackendType

    def __init__(self, name: str):
        self.name = name
        self.stats = DriverStats()
        self.corrupted = False
        self.logger = logging.getLogger(f"{__name__}.{name}")

    @abstractmethod
    def connect(self) -> None:
        """
        Open the backend connection.

        Raises:
            ConnectionFailedError: If the backend cannot be opened
        """

    @abstractmethod
    def execute_query(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        """
        Execute a single parameterized statement.

        Raises:
            QueryFailedError: On any backend failure (``kind`` is classified)
        """

    async def execute_query_async(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        """
        Asynchronous find/execute primitive.

        Embedded backends yield to the event loop once, then run the
        statement synchronously.
        """
        await asyncio.sleep(0)
        return self.execute_query(query, params)

    @abstractmethod
    def begin_transaction(self) -> None:
        """Begin a transaction. Nested transactions are not supported."""

    @abstractmethod
    def commit(self) -> None:
        """Commit the active transaction."""

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the active transaction."""

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether a transaction is currently open."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Cheap liveness check; never raises."""

    @abstractmethod
    def optimize_storage(self) -> bool:
        """Compact/optimize the store. Returns True when work was done."""

    def flush(self) -> None:
        """Make on-disk files self-contained before they are copied."""

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Safe to call more than once."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, connected={self.is_connected()})"


class EmbeddedSQLDriver(StorageDriver):
    """
    Shared implementation for drivers backed by a ``sqlite3`` connection.

    Connections run with ``isolation_level=None`` so transactions are
    explicit (``BEGIN IMMEDIATE`` / ``COMMIT`` / ``ROLLBACK``) and statements
    outside a transaction autocommit.
    """

    persists_before_commit = False

    def __init__(self, name: str, timeout: float = 10.0):
        super().__init__(name)
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    def _open_connection(self, database: str) -> sqlite3.Connection:
        conn = sqlite3.connect(database, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _wrap_error(self, error: Exception, operation: str, query: str = "") -> QueryFailedError:
        kind = classify_driver_error(error)
        if kind == DatabaseErrorKind.DATABASE_CORRUPTED:
            self.corrupted = True
        state_info = {"database": self.name}
        if query:
            state_info["query"] = _short(query)
        return QueryFailedError(
            f"{operation} failed: {error}",
            kind=kind,
            operation=operation,
            state_info=state_info
        )

    def _require_connection(self, operation: str) -> sqlite3.Connection:
        if self._conn is None:
            raise QueryFailedError(
                "Driver is not connected",
                kind=DatabaseErrorKind.CONNECTION_LOST,
                operation=operation,
                state_info={"database": self.name}
            )
        return self._conn

    def execute_query(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        conn = self._require_connection("execute_query")
        if self.persists_before_commit and not conn.in_transaction and not _is_read_only(query):
            return self._execute_standalone_write(conn, query, params)
        return self._execute(conn, query, params)

    def _execute(self, conn: sqlite3.Connection, query: str, params: Sequence[Any]) -> QueryResult:
        try:
            cursor = conn.execute(query, tuple(params))
            rows = [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            self.stats.failed_queries += 1
            self.logger.debug(f"Query failed: {_short(query)}: {e}")
            raise self._wrap_error(e, "execute_query", query) from e

        self.stats.queries += 1
        return QueryResult(rows=rows, rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)

    def _execute_standalone_write(
        self,
        conn: sqlite3.Connection,
        query: str,
        params: Sequence[Any]
    ) -> QueryResult:
        """Run a write outside a caller transaction in its own, so a failed persist undoes it."""
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise self._wrap_error(e, "execute_query", query) from e

        try:
            result = self._execute(conn, query, params)
            self._before_commit()
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._discard_transaction(conn)
            raise self._wrap_error(e, "execute_query", query) from e
        except PersistenceError:
            self._discard_transaction(conn)
            raise
        return result

    def _discard_transaction(self, conn: sqlite3.Connection) -> None:
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            self.logger.error(f"Rollback of standalone write failed: {e}")

    def begin_transaction(self) -> None:
        conn = self._require_connection("begin_transaction")
        if conn.in_transaction:
            raise TransactionFailedError(
                "A transaction is already active",
                kind=DatabaseErrorKind.INVALID_OPERATION,
                operation="begin_transaction",
                state_info={"database": self.name}
            )
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise TransactionFailedError(
                f"Could not begin transaction: {e}",
                kind=classify_driver_error(e),
                operation="begin_transaction",
                state_info={"database": self.name}
            ) from e
        self.stats.transactions_started += 1

    def commit(self) -> None:
        conn = self._require_connection("commit")
        if not conn.in_transaction:
            raise TransactionFailedError(
                "No active transaction to commit",
                kind=DatabaseErrorKind.INVALID_OPERATION,
                operation="commit",
                state_info={"database": self.name}
            )
        try:
            self._before_commit()
        except PersistenceError as e:
            # transaction stays open so the caller can roll it back
            raise TransactionFailedError(
                f"Commit failed: {e.message}",
                kind=e.kind,
                operation="commit",
                state_info={"database": self.name}
            ) from e
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise TransactionFailedError(
                f"Commit failed: {e}",
                kind=classify_driver_error(e),
                operation="commit",
                state_info={"database": self.name}
            ) from e
        self.stats.commits += 1

    def rollback(self) -> None:
        conn = self._require_connection("rollback")
        if not conn.in_transaction:
            raise TransactionFailedError(
                "No active transaction to roll back",
                kind=DatabaseErrorKind.INVALID_OPERATION,
                operation="rollback",
                state_info={"database": self.name}
            )
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise TransactionFailedError(
                f"Rollback failed: {e}",
                kind=classify_driver_error(e),
                operation="rollback",
                state_info={"database": self.name}
            ) from e
        self.stats.rollbacks += 1

    @property
    def in_transaction(self) -> bool:
        return self._conn is not None and self._conn.in_transaction

    def is_connected(self) -> bool:
        if self._conn is None:
            return False
        try:
            self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            if conn.in_transaction:
                self.logger.warning("Closing driver with an open transaction, rolling back")
                conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            self.logger.error(f"Rollback during close failed: {e}")
        finally:
            conn.close()
        self.logger.debug(f"Driver closed for database '{self.name}'")

    def _before_commit(self) -> None:
        """Hook run while a transaction is still open, right before COMMIT."""


class SQLiteDriver(EmbeddedSQLDriver):
    """
    Embedded binary-file backend.

    Example:
        >>> driver = SQLiteDriver("test", ":memory:")
        >>> driver.connect()
        >>> driver.execute_query("SELECT 1 AS ok").scalar()
        1
    """

    backend_type = BackendType.BINARY_FILE

    def __init__(self, name: str, database_path: Union[str, Path], timeout: float = 10.0):
        super().__init__(name, timeout=timeout)
        self.database_path = str(database_path)

    @property
    def is_memory(self) -> bool:
        return self.database_path == ":memory:"

    def connect(self) -> None:
        if self._conn is not None:
            return
        try:
            if not self.is_memory:
                Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
            conn = self._open_connection(self.database_path)
        except (OSError, sqlite3.Error) as e:
            raise ConnectionFailedError(
                f"Could not open database file: {e}",
                kind=classify_driver_error(e),
                operation="connect",
                state_info={"database": self.name, "path": self.database_path}
            ) from e

        try:
            if not self.is_memory:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            conn.close()
            kind = classify_driver_error(e)
            if kind == DatabaseErrorKind.DATABASE_CORRUPTED:
                self.corrupted = True
            raise ConnectionFailedError(
                f"Could not configure database: {e}",
                kind=kind,
                operation="connect",
                state_info={"database": self.name, "path": self.database_path}
            ) from e

        self._conn = conn
        self.logger.info(f"Opened SQLite database: {self.database_path}")

    def optimize_storage(self) -> bool:
        conn = self._require_connection("optimize_storage")
        if conn.in_transaction:
            self.logger.debug("Skipping optimize: transaction in progress")
            return False
        try:
            conn.execute("PRAGMA optimize")
            conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise self._wrap_error(e, "optimize_storage") from e
        return True

    def flush(self) -> None:
        if self._conn is None or self.is_memory:
            return
        try:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            raise self._wrap_error(e, "flush") from e


class JsonDocumentDriver(EmbeddedSQLDriver):
    """
    Embedded JSON-file backend.

    Tables live in an in-memory SQLite engine. The whole database is written
    to a single JSON document while each transaction is still open, right
    before COMMIT. Writes outside a transaction get one of their own. A
    failed document write leaves the transaction open for rollback, so the
    engine never holds changes the file does not.

    Document layout::

        {
          "format": "stat_tracker.json_document",
          "version": 1,
          "tables": {
            "<table>": {"sql": "CREATE TABLE ...", "rows": [{...}, ...]}
          },
          "indexes": ["CREATE INDEX ...", ...]
        }
    """

    backend_type = BackendType.JSON_FILE
    persists_before_commit = True

    def __init__(self, name: str, document_path: Union[str, Path], timeout: float = 10.0):
        super().__init__(name, timeout=timeout)
        self.document_path = Path(document_path)

    def connect(self) -> None:
        if self._conn is not None:
            return
        conn = self._open_connection(":memory:")
        try:
            if self.document_path.exists():
                self._load_document(conn)
            else:
                self.document_path.parent.mkdir(parents=True, exist_ok=True)
        except ConnectionFailedError:
            conn.close()
            raise
        except (OSError, sqlite3.Error) as e:
            conn.close()
            raise ConnectionFailedError(
                f"Could not open JSON document: {e}",
                kind=classify_driver_error(e),
                operation="connect",
                state_info={"database": self.name, "path": str(self.document_path)}
            ) from e

        self._conn = conn
        self.logger.info(f"Opened JSON document database: {self.document_path}")

    def _load_document(self, conn: sqlite3.Connection) -> None:
        try:
            document = read_json(self.document_path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.corrupted = True
            raise ConnectionFailedError(
                f"JSON document is corrupted: {e}",
                kind=DatabaseErrorKind.DATABASE_CORRUPTED,
                operation="connect",
                state_info={"database": self.name, "path": str(self.document_path)}
            ) from e

        if not isinstance(document, dict) or document.get("format") != JSON_DOCUMENT_FORMAT:
            self.corrupted = True
            raise ConnectionFailedError(
                "File is not a stat tracker JSON document",
                kind=DatabaseErrorKind.DATABASE_CORRUPTED,
                operation="connect",
                state_info={"database": self.name, "path": str(self.document_path)}
            )

        try:
            tables = self._restore_tables(conn, document)
        except (KeyError, TypeError, AttributeError, ValueError, sqlite3.Error) as e:
            self.corrupted = True
            raise ConnectionFailedError(
                f"JSON document has an invalid structure: {e!r}",
                kind=DatabaseErrorKind.DATABASE_CORRUPTED,
                operation="connect",
                state_info={"database": self.name, "path": str(self.document_path)}
            ) from e

        self.logger.debug(f"Loaded {tables} tables from {self.document_path}")

    @staticmethod
    def _restore_tables(conn: sqlite3.Connection, document: Dict[str, Any]) -> int:
        tables = document.get("tables", {})
        for table, content in tables.items():
            conn.execute(content["sql"])
            rows = content.get("rows", [])
            if not rows:
                continue
            columns = list(rows[0].keys())
            placeholders = ", ".join("?" for _ in columns)
            column_list = ", ".join(f'"{c}"' for c in columns)
            conn.executemany(
                f'INSERT INTO "{table}" ({column_list}) VALUES ({placeholders})',
                [tuple(row.get(c) for c in columns) for row in rows]
            )

        for index_sql in document.get("indexes", []):
            conn.execute(index_sql)
        return len(tables)

    def export_document(self) -> Dict[str, Any]:
        """Snapshot every table into the JSON document structure."""
        conn = self._require_connection("export_document")
        tables: Dict[str, Any] = {}
        for entry in conn.execute(
            "SELECT name, sql FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall():
            rows = conn.execute(f'SELECT * FROM "{entry["name"]}"').fetchall()
            tables[entry["name"]] = {
                "sql": entry["sql"],
                "rows": [dict(row) for row in rows],
            }

        indexes = [
            row["sql"] for row in conn.execute(
                "SELECT sql FROM sqlite_master WHERE type = 'index' AND sql IS NOT NULL ORDER BY name"
            ).fetchall()
        ]

        return {
            "format": JSON_DOCUMENT_FORMAT,
            "version": JSON_DOCUMENT_VERSION,
            "tables": tables,
            "indexes": indexes,
        }

    def _write_document(self, indent: Optional[int] = 2) -> None:
        try:
            atomic_write_json(self.document_path, self.export_document(), indent=indent)
        except OSError as e:
            raise self._wrap_error(e, "write_document") from e
        self.stats.documents_written += 1

    def _before_commit(self) -> None:
        # the open transaction is visible to this connection, so the
        # document holds exactly what COMMIT is about to make permanent
        self._write_document()

    def optimize_storage(self) -> bool:
        conn = self._require_connection("optimize_storage")
        if conn.in_transaction:
            self.logger.debug("Skipping optimize: transaction in progress")
            return False
        try:
            conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise self._wrap_error(e, "optimize_storage") from e
        # compact form
        self._write_document(indent=None)
        return True


DriverFactory = Callable[[ConnectionInfo, Any], StorageDriver]


def _sqlite_factory(info: ConnectionInfo, settings: Any) -> StorageDriver:
    return SQLiteDriver(
        info.database_name,
        info.file_path,
        timeout=settings.query_timeout_ms / 1000.0
    )


def _json_factory(info: ConnectionInfo, settings: Any) -> StorageDriver:
    return JsonDocumentDriver(
        info.database_name,
        info.file_path,
        timeout=settings.query_timeout_ms / 1000.0
    )


def default_driver_factories() -> Dict[BackendType, DriverFactory]:
    """Factories for the bundled embedded backends."""
    return {
        BackendType.BINARY_FILE: _sqlite_factory,
        BackendType.JSON_FILE: _json_factory,
    }
