"""
Schema Management

Creates and upgrades the statistics schema. The stored version lives in the
``schema_info`` table and is compared against ``CURRENT_SCHEMA_VERSION``
when a connection is established:

    stored == 0         -> create tables, insert current version
    stored <  expected  -> run registered migrations in order, update version
    stored >  expected  -> log a compatibility warning and carry on
    stored == expected  -> nothing is written

Migrations are plain callables keyed by the version they upgrade *to*:

    def add_headshots(driver):
        driver.execute_query("ALTER TABLE player_stats ADD COLUMN headshots INTEGER NOT NULL DEFAULT 0")

    SchemaManager(driver, migrations={2: add_headshots}, expected_version=2)
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from .drivers import StorageDriver
from .errors import PersistenceError, SchemaMismatchError
from .transaction_context import TransactionContext


CURRENT_SCHEMA_VERSION = 1

Migration = Callable[[StorageDriver], None]

SCHEMA_INFO_DDL = """
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
)
"""

PLAYER_STATS_DDL = """
CREATE TABLE IF NOT EXISTS player_stats (
    player_uid TEXT PRIMARY KEY,
    player_name TEXT NOT NULL,
    kills INTEGER NOT NULL DEFAULT 0,
    deaths INTEGER NOT NULL DEFAULT 0,
    bases_captured INTEGER NOT NULL DEFAULT 0,
    bases_lost INTEGER NOT NULL DEFAULT 0,
    total_xp INTEGER NOT NULL DEFAULT 0,
    rank INTEGER NOT NULL DEFAULT 0,
    supplies_delivered INTEGER NOT NULL DEFAULT 0,
    supply_delivery_count INTEGER NOT NULL DEFAULT 0,
    ai_kills INTEGER NOT NULL DEFAULT 0,
    vehicle_kills INTEGER NOT NULL DEFAULT 0,
    air_kills INTEGER NOT NULL DEFAULT 0,
    connection_time REAL NOT NULL DEFAULT 0,
    last_session_duration REAL NOT NULL DEFAULT 0,
    total_playtime REAL NOT NULL DEFAULT 0,
    killed_by TEXT NOT NULL DEFAULT '[]',
    killed_by_weapon TEXT NOT NULL DEFAULT '[]',
    killed_by_team TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

PLAYER_STATS_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_player_stats_total_xp ON player_stats(total_xp)",
    "CREATE INDEX IF NOT EXISTS idx_player_stats_kills ON player_stats(kills)",
)


class SchemaManager:
    """
    Reads and upgrades the schema version for one driver.

    Attributes:
        driver: Connected storage driver
        expected_version: Version this code expects
        migrations: Upgrade callables keyed by target version
        last_action: What the last ``ensure_schema`` did ("created",
            "migrated", "newer", "current")
    """

    def __init__(
        self,
        driver: StorageDriver,
        migrations: Optional[Dict[int, Migration]] = None,
        expected_version: int = CURRENT_SCHEMA_VERSION
    ):
        self.driver = driver
        self.migrations: Dict[int, Migration] = dict(migrations or {})
        self.expected_version = expected_version
        self.last_action: Optional[str] = None
        self.logger = logging.getLogger(__name__)

    def register_migration(self, version: int, migration: Migration) -> None:
        if version <= 1:
            raise ValueError("Version 1 is the initial schema; migrations start at 2")
        self.migrations[version] = migration

    def read_version(self) -> int:
        """
        Return the stored schema version, 0 when missing or empty.

        Raises:
            SchemaMismatchError: If the version cannot be read
        """
        try:
            exists = self.driver.execute_query(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_info'"
            )
            if not exists.rows:
                return 0
            version = self.driver.execute_query(
                "SELECT MAX(version) AS version FROM schema_info"
            ).scalar()
        except PersistenceError as e:
            raise SchemaMismatchError(
                f"Could not read schema version: {e.message}",
                expected_version=self.expected_version,
                operation="read_schema_version",
                state_info={"cause": e.kind.value}
            ) from e

        return int(version or 0)

    def ensure_schema(self) -> int:
        """
        Bring the stored schema up to the expected version.

        Returns:
            The stored version found before any change

        Raises:
            SchemaMismatchError: On creation or migration failure
        """
        stored = self.read_version()

        if stored == 0:
            self._run("create_schema", stored, self._create_schema)
            self.last_action = "created"
            self.logger.info(f"Created schema version {self.expected_version} for '{self.driver.name}'")
        elif stored < self.expected_version:
            self._run("migrate_schema", stored, lambda: self._migrate(stored))
            self.last_action = "migrated"
            self.logger.info(
                f"Migrated '{self.driver.name}' schema from version {stored} to {self.expected_version}"
            )
        elif stored > self.expected_version:
            self.last_action = "newer"
            self.logger.warning(
                f"Database '{self.driver.name}' schema version {stored} is newer than "
                f"supported version {self.expected_version}; continuing in compatibility mode"
            )
        else:
            self.last_action = "current"
            self.logger.debug(f"Schema version {stored} is current")

        return stored

    def is_current(self) -> bool:
        """Whether the stored version is at least the expected version."""
        return self.read_version() >= self.expected_version

    def _run(self, operation: str, stored: int, work: Callable[[], None]) -> None:
        try:
            with TransactionContext(self.driver, operation):
                work()
        except PersistenceError as e:
            raise SchemaMismatchError(
                f"Schema {operation.replace('_', ' ')} failed: {e.message}",
                stored_version=stored,
                expected_version=self.expected_version,
                operation=operation,
                state_info={"cause": e.kind.value}
            ) from e

    def _create_schema(self) -> None:
        self.driver.execute_query(SCHEMA_INFO_DDL)
        self.driver.execute_query(PLAYER_STATS_DDL)
        for ddl in PLAYER_STATS_INDEXES:
            self.driver.execute_query(ddl)
        self.driver.execute_query(
            "INSERT INTO schema_info (version, applied_at) VALUES (?, ?)",
            (self.expected_version, datetime.now().isoformat())
        )

    def _migrate(self, stored: int) -> None:
        for version in range(stored + 1, self.expected_version + 1):
            migration = self.migrations.get(version)
            if migration is None:
                self.logger.debug(f"No migration registered for version {version}")
                continue
            self.logger.info(f"Applying schema migration to version {version}")
            migration(self.driver)

        self.driver.execute_query(
            "UPDATE schema_info SET version = ?, applied_at = ?",
            (self.expected_version, datetime.now().isoformat())
        )
