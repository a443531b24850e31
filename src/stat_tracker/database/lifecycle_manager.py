"""
Database Lifecycle Manager

Owns the connection to the statistics store and everything that keeps it
healthy:

- Backend selection and connection establishment (with verification retries
  under a wall-clock ceiling)
- Schema verification/migration
- Periodic health checks, storage maintenance and backups
- The recovery state machine
- Operation rate limiting
- The pending operation queue (drained on a timer and after recovery)

All work runs on a single asyncio event loop. Only this class changes the
ConnectionState; the repository and queue read it before touching the
backend.

Usage Example:
    settings = PersistenceSettings.load("config/persistence.json")
    manager = DatabaseLifecycleManager(settings)
    persister = StatsPersister(manager)

    if await manager.initialize(BackendType.BINARY_FILE, "StatTracker"):
        await persister.save_player_stats(uid, name, stats)

    await manager.shutdown()
"""

import asyncio
import logging
import re
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from stat_tracker.config.persistence_settings import PersistenceSettings
from stat_tracker.logging_config import setup_database_logging
from stat_tracker.persistence.pending_operations import PendingOperationQueue
from stat_tracker.persistence.stats_repository import PlayerStatsRepository

from .backup_manager import BackupDescriptor, BackupManager
from .connection_info import BackendType, ConnectionInfo
from .connection_state import ConnectionState
from .drivers import DriverFactory, StorageDriver, default_driver_factories
from .errors import (
    BackupError,
    ConnectionFailedError,
    ConnectionTimeoutError,
    DatabaseErrorKind,
    ErrorTracker,
    InvalidConfigError,
    NotReadyError,
    PersistenceError,
    RateLimitExceededError,
    RecoveryFailedError,
    SchemaMismatchError,
    classify_driver_error,
)
from .periodic import PeriodicTask
from .rate_limiter import SlidingWindowRateLimiter
from .retry import RetryPolicy, SleepFunc
from .schema import Migration, SchemaManager


DEFAULT_DATABASE_NAME = "StatTracker"
DEFAULT_SERVER_MAX_PLAYERS = 50
FALLBACK_PLAYER_COUNT = 25
MAX_ERROR_CONTEXTS = 10

SMALL_SERVER_PLAYERS = 10
MEDIUM_SERVER_PLAYERS = 50

VALID_DATABASE_NAME = re.compile(r"^[A-Za-z0-9_-]+$")

WRITE_PROBE_NAME = ".write_probe"

RecoveryConfig = Tuple[BackendType, str, str]


class DatabaseLifecycleManager:
    """
    Connection and lifecycle manager for the statistics store.

    Attributes:
        settings: PersistenceSettings in effect
        state: Current ConnectionState
        initialized: True between a successful initialize and shutdown
        driver: Active StorageDriver (None when disconnected)
        repository: PlayerStatsRepository bound to the active driver
        pending_queue: PendingOperationQueue shared across reconnects
        errors: ErrorTracker with per-kind counts and recent contexts
        last_error: Most recent PersistenceError recorded
    """

    def __init__(
        self,
        settings: Optional[PersistenceSettings] = None,
        driver_factories: Optional[Dict[BackendType, DriverFactory]] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        player_count_provider: Optional[Callable[[], Optional[int]]] = None,
        server_max_players: Optional[int] = DEFAULT_SERVER_MAX_PLAYERS,
        migrations: Optional[Dict[int, Migration]] = None,
        background_tasks: bool = True
    ):
        """
        Initialize the manager (no connection is opened here).

        Args:
            settings: Tunables (defaults when omitted)
            driver_factories: Extra or replacement driver factories keyed by
                backend; remote backends need one registered here
            sleep: Coroutine used for every backoff wait
            clock: Monotonic clock for timeouts, rate limiting and due checks
            player_count_provider: Estimated player count for
                ``initialize_with_best_settings``
            server_max_players: Fallback when no provider is given
            migrations: Schema migrations keyed by target version
            background_tasks: Start periodic timers after initialize
        """
        self.settings = settings or PersistenceSettings()
        self._driver_factories: Dict[BackendType, DriverFactory] = default_driver_factories()
        self._driver_factories.update(driver_factories or {})
        self._sleep = sleep
        self._clock = clock
        self._player_count_provider = player_count_provider
        self._server_max_players = server_max_players
        self._migrations = dict(migrations or {})
        self._background_tasks = background_tasks

        self._state = ConnectionState.UNINITIALIZED
        self.initialized = False
        self.driver: Optional[StorageDriver] = None
        self.repository: Optional[PlayerStatsRepository] = None
        self.schema: Optional[SchemaManager] = None
        self.backups: Optional[BackupManager] = None
        self.connection_info: Optional[ConnectionInfo] = None

        self.pending_queue = PendingOperationQueue(
            capacity=self.settings.max_pending_operations,
            max_attempts=self.settings.max_operation_attempts,
            state_provider=lambda: self._state
        )
        self.rate_limiter = SlidingWindowRateLimiter(self.settings.operation_rate_limit, clock=clock)
        self.errors = ErrorTracker(MAX_ERROR_CONTEXTS)
        self.last_error: Optional[PersistenceError] = None

        self.consecutive_failures = 0
        self.recovery_attempts = 0
        self.recovery_armed = False
        self.recovery_abandoned = False
        self._recovery_config: Optional[RecoveryConfig] = None
        self._health_check_running = False
        self._recovery_running = False

        self.last_backup_time: Optional[datetime] = None
        self._last_backup_tick: Optional[float] = None
        self._last_maintenance_tick: Optional[float] = None

        self._timers: Dict[str, PeriodicTask] = {}
        self._shutting_down = False
        self._snapshot_restored = False

        self.logger = logging.getLogger(__name__)

        if self.settings.database_log_level:
            setup_database_logging(self.settings.database_log_level)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return
        self.logger.info(f"Database state: {self._state.value} -> {new_state.value}")
        self._state = new_state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def backend_type(self) -> Optional[BackendType]:
        return self._recovery_config[0] if self._recovery_config else None

    @property
    def database_name(self) -> Optional[str]:
        return self._recovery_config[1] if self._recovery_config else None

    def register_driver_factory(self, backend_type: BackendType, factory: DriverFactory) -> None:
        """Provide (or replace) the driver factory for a backend."""
        self._driver_factories[backend_type] = factory

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(
        self,
        backend_type: Union[BackendType, str, None] = None,
        database_name: Optional[str] = None,
        connection_string: Optional[str] = None
    ) -> bool:
        """
        Connect, verify, check the schema and enter READY.

        Arguments left as None come from settings.

        Returns:
            True once READY; False on any failure (see ``last_error``)
        """
        if self._state is ConnectionState.READY:
            self.logger.warning("initialize() called while already ready; ignoring")
            return True

        name = self.settings.database_name if database_name is None else database_name
        conn_str = self.settings.connection_string if connection_string is None else connection_string

        try:
            backend = BackendType.parse(self.settings.backend_type if backend_type is None else backend_type)
        except ValueError as e:
            self._fail_initialization(InvalidConfigError(str(e), operation="initialize"))
            return False

        self._recovery_config = (backend, name, conn_str)
        self.recovery_abandoned = False
        self.recovery_armed = False
        self.recovery_attempts = 0

        self.logger.info(f"Initializing {backend.value} database '{name}'")

        try:
            await self._establish(backend, name, conn_str)
        except PersistenceError as e:
            self._fail_initialization(e)
            return False
        except Exception as e:
            self.logger.error(f"Unexpected error while initializing '{name}': {e}", exc_info=True)
            error = PersistenceError(
                f"Unexpected initialization error: {e}",
                kind=DatabaseErrorKind.INITIALIZATION_FAILED,
                operation="initialize",
                state_info={"database": name, "backend": backend.value}
            )
            self._fail_initialization(error)
            self._arm_recovery()
            return False

        self._on_connected()

        self._restore_pending_snapshot()

        self.logger.info(f"Database '{name}' ready ({self.connection_info.describe()})")
        return True

    async def initialize_with_best_settings(self) -> bool:
        """
        Pick a backend from the expected player count and initialize it.

        Falls back to the JSON backend with the default name if detection fails.
        """
        try:
            backend = self.select_best_backend()
        except Exception as e:
            self.logger.warning(f"Backend auto-detection failed ({e}); using JSON file storage")
            return await self.initialize(BackendType.JSON_FILE, DEFAULT_DATABASE_NAME, "")

        return await self.initialize(backend, self.settings.database_name, self.settings.connection_string)

    def select_best_backend(self) -> BackendType:
        """
        Backend for the expected player count:
        < 10 JSON, < 50 binary, otherwise the document store when a
        connection string is configured, else binary.
        """
        players = self._player_count_provider() if self._player_count_provider else None
        if players is None:
            players = self._server_max_players if self._server_max_players is not None else FALLBACK_PLAYER_COUNT

        if players < SMALL_SERVER_PLAYERS:
            backend = BackendType.JSON_FILE
        elif players < MEDIUM_SERVER_PLAYERS:
            backend = BackendType.BINARY_FILE
        elif self.settings.connection_string:
            backend = BackendType.MONGODB
        else:
            backend = BackendType.BINARY_FILE

        self.logger.info(f"Selected {backend.value} backend for {players} expected players")
        return backend

    async def _establish(self, backend: BackendType, name: str, connection_string: str) -> None:
        """Open, verify and schema-check a connection, ending in READY."""
        self._close_driver()

        if not isinstance(name, str) or not VALID_DATABASE_NAME.match(name):
            raise InvalidConfigError(
                f"Invalid database name {name!r}: use letters, digits, '_' or '-'",
                operation="initialize",
                state_info={"database": name}
            )
        if not backend.is_file_based and not connection_string:
            raise InvalidConfigError(
                f"Backend {backend.value} requires a connection string",
                operation="initialize",
                state_info={"database": name}
            )

        info = ConnectionInfo.build(backend, name, self.settings.data_root, connection_string)
        self._set_state(ConnectionState.CONNECTING)

        if backend.is_file_based:
            self._check_directory(info.directory)

        factory = self._driver_factories.get(backend)
        if factory is None:
            raise InvalidConfigError(
                f"No storage driver registered for backend {backend.value}",
                operation="initialize",
                state_info={"database": name}
            )

        driver = factory(info, self.settings)
        self.driver = driver
        driver.connect()

        self._set_state(ConnectionState.VERIFYING)
        await self._verify_connection(driver)

        self._set_state(ConnectionState.SCHEMA_CHECK)
        schema = SchemaManager(driver, migrations=self._migrations)
        schema.ensure_schema()

        self.schema = schema
        self.connection_info = info
        self.repository = PlayerStatsRepository(
            driver,
            self.check_operation_allowed,
            retry_policy=RetryPolicy(
                attempts=self.settings.query_retry_attempts,
                base_delay_ms=self.settings.query_retry_delay_ms
            ),
            sleep=self._sleep,
            on_error=self._on_repository_error
        )
        self.backups = BackupManager(
            self.settings.backups_dir,
            name,
            backend,
            max_backups=self.settings.max_backups
        ) if backend.is_file_based else None

        self._set_state(ConnectionState.READY)

    def _check_directory(self, directory: Path) -> None:
        """Ensure the data directory is writable and has free space."""
        try:
            directory.mkdir(parents=True, exist_ok=True)
            probe = directory / WRITE_PROBE_NAME
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as e:
            kind = classify_driver_error(e)
            if kind is DatabaseErrorKind.UNKNOWN:
                kind = DatabaseErrorKind.PERMISSION_DENIED
            raise ConnectionFailedError(
                f"Data directory is not writable: {e}",
                kind=kind,
                operation="initialize",
                state_info={"directory": str(directory)}
            ) from e

        free = shutil.disk_usage(directory).free
        if free < self.settings.min_free_disk_bytes:
            raise ConnectionFailedError(
                f"Insufficient disk space: {free} bytes free",
                kind=DatabaseErrorKind.DISK_FULL,
                operation="initialize",
                state_info={"directory": str(directory), "required": self.settings.min_free_disk_bytes}
            )

    async def _verify_connection(self, driver: StorageDriver) -> None:
        """
        Run ``SELECT 1`` with linear backoff under the connection timeout.

        Raises:
            ConnectionTimeoutError: If the wall-clock ceiling is reached
            ConnectionFailedError: If every attempt fails
        """
        attempts = self.settings.max_retry_attempts
        timeout = self.settings.connection_timeout_ms / 1000.0
        deadline = self._clock() + timeout
        last_error: Optional[PersistenceError] = None

        for attempt in range(1, attempts + 1):
            if self._clock() > deadline:
                break
            try:
                driver.execute_query("SELECT 1")
                if attempt > 1:
                    self.logger.info(f"Connection verified on attempt {attempt}")
                return
            except PersistenceError as e:
                last_error = e
                self.logger.warning(f"Connection verification attempt {attempt}/{attempts} failed: {e.message}")

            if attempt < attempts:
                delay = self.settings.retry_delay_ms * attempt / 1000.0
                if self._clock() + delay > deadline:
                    break
                await self._sleep(delay)
        else:
            raise ConnectionFailedError(
                f"Connection verification failed after {attempts} attempts",
                operation="verify_connection",
                state_info={
                    "database": driver.name,
                    "cause": last_error.message if last_error else "unknown"
                }
            )

        raise ConnectionTimeoutError(
            f"Connection verification exceeded {self.settings.connection_timeout_ms} ms",
            operation="verify_connection",
            state_info={"database": driver.name}
        )

    def _on_connected(self) -> None:
        self.initialized = True
        self.consecutive_failures = 0
        self.recovery_attempts = 0
        self.recovery_armed = False
        now = self._clock()
        self._last_maintenance_tick = now
        self._last_backup_tick = now
        self._start_timers()

    def _restore_pending_snapshot(self) -> None:
        """Merge the previous session's queue snapshot once per manager."""
        if self._snapshot_restored:
            return
        self._snapshot_restored = True
        restored = self.pending_queue.load_snapshot(self.settings.pending_snapshot_path)
        if restored:
            self.logger.info(f"{restored} pending operations restored from the previous session")

    def _fail_initialization(self, error: PersistenceError) -> None:
        self._close_driver()
        self._clear_references()
        self.initialized = False
        self._set_state(ConnectionState.UNINITIALIZED)
        self._record_error(error, f"initialize: {error.message}")
        self.logger.error(f"Database initialization failed: {error.summary()}")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> bool:
        """
        Stop timers, flush and snapshot the pending queue, release the driver.

        Idempotent. Always ends with ``initialized == False`` and state
        SHUT_DOWN, even if a step fails.

        Returns:
            True if every step succeeded
        """
        if self._state is ConnectionState.SHUT_DOWN and not self.initialized:
            return True

        self.logger.info("Shutting down database lifecycle manager")
        clean = True

        try:
            self._shutting_down = True
            await self._stop_timers()

            if self._state is ConnectionState.READY and len(self.pending_queue):
                await self.pending_queue.drain_tick()

            try:
                self._restore_pending_snapshot()
                self.pending_queue.save_snapshot(self.settings.pending_snapshot_path)
                # the snapshot now owns the entries until the next initialize
                self.pending_queue.clear()
                self._snapshot_restored = False
            except OSError as e:
                clean = False
                self.logger.error(f"Could not save pending operations: {e}")
        finally:
            try:
                self._close_driver()
            except PersistenceError as e:
                clean = False
                self.logger.error(f"Error closing driver: {e.message}")
            self._clear_references()
            self.initialized = False
            self.recovery_armed = False
            self._set_state(ConnectionState.SHUT_DOWN)
            self._shutting_down = False

        self.logger.info("Database shutdown complete")
        return clean

    def _close_driver(self) -> None:
        driver, self.driver = self.driver, None
        if driver is not None:
            driver.close()

    def _clear_references(self) -> None:
        self.repository = None
        self.schema = None
        self.backups = None

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _start_timers(self) -> None:
        if not self._background_tasks or self._shutting_down:
            return
        settings = self.settings
        self._start_timer("health_check", settings.health_check_interval_ms / 1000.0, self.perform_health_check)
        self._start_timer("drain", settings.drain_interval_ms / 1000.0, self.pending_queue.drain_tick)
        if self.backups is not None:
            self._start_timer("backup", settings.backup_interval_minutes * 60.0, self._backup_if_due)

    def _start_timer(self, name: str, interval: float, callback) -> None:
        if not self._background_tasks or self._shutting_down:
            return
        timer = self._timers.get(name)
        if timer is None:
            timer = PeriodicTask(name, interval, callback)
            self._timers[name] = timer
        timer.start()

    async def _stop_timer(self, name: str) -> None:
        timer = self._timers.get(name)
        if timer is not None:
            await timer.stop()

    async def _stop_timers(self) -> None:
        for timer in list(self._timers.values()):
            await timer.stop()

    @property
    def active_timers(self) -> List[str]:
        """Names of background timers currently scheduled."""
        return sorted(name for name, timer in self._timers.items() if timer.running)

    # ------------------------------------------------------------------
    # Health checks and recovery
    # ------------------------------------------------------------------

    async def perform_health_check(self) -> bool:
        """
        Probe the connection and drive the DEGRADED/RECOVERING transitions.

        Returns:
            True if the probe succeeded
        """
        if not self.initialized or self._health_check_running:
            return False
        if self._state is ConnectionState.RECOVERING:
            return False

        self._health_check_running = True
        try:
            if not self._probe():
                self.consecutive_failures += 1
                if self._state is ConnectionState.READY:
                    self._set_state(ConnectionState.DEGRADED)
                self.logger.warning(
                    f"Health check failed ({self.consecutive_failures}/"
                    f"{self.settings.auto_recovery_threshold} before recovery)"
                )
                if self.consecutive_failures >= self.settings.auto_recovery_threshold:
                    self._begin_recovery()
                return False

            if self.consecutive_failures:
                self.logger.info(f"Health check passed after {self.consecutive_failures} failures")
            self.consecutive_failures = 0
            if self._state is ConnectionState.DEGRADED:
                self._set_state(ConnectionState.READY)

            if self._maintenance_due():
                self.run_maintenance()
            self._backup_if_due_sync()
            return True
        finally:
            self._health_check_running = False

    def _probe(self) -> bool:
        if self.driver is None:
            return False
        if self.driver.corrupted:
            self.logger.error(f"Database '{self.driver.name}' is flagged as corrupted")
            return False
        try:
            self.driver.execute_query("SELECT 1")
        except PersistenceError as e:
            self._record_error(e, f"health_check: {e.message}")
            return False
        return True

    def _begin_recovery(self) -> None:
        if self.recovery_abandoned:
            self.logger.debug("Recovery previously abandoned; waiting for re-initialization")
            return
        self.logger.warning("Starting automatic recovery")
        self._set_state(ConnectionState.RECOVERING)
        self._start_timer(
            "recovery",
            self.settings.recovery_check_interval_ms / 1000.0,
            self.check_recovery
        )

    def _arm_recovery(self) -> None:
        """Schedule recovery with the last-known configuration without leaving UNINITIALIZED."""
        if self._recovery_config is None:
            return
        self.recovery_armed = True
        try:
            self._start_timer(
                "recovery",
                self.settings.recovery_check_interval_ms / 1000.0,
                self.check_recovery
            )
        except RuntimeError:
            # no running loop; check_recovery() can still be driven manually
            self.logger.debug("No event loop for the recovery timer")

    async def check_recovery(self) -> bool:
        """
        Make one recovery attempt when recovery is in progress or armed.

        Returns:
            True if the attempt restored READY
        """
        if self._recovery_running or self.recovery_abandoned or self._recovery_config is None:
            return False
        if not (self._state is ConnectionState.RECOVERING or self.recovery_armed):
            return False

        self._recovery_running = True
        try:
            self.recovery_attempts += 1
            self._set_state(ConnectionState.RECOVERING)
            self.logger.info(
                f"Recovery attempt {self.recovery_attempts}/{self.settings.max_recovery_attempts}"
            )

            backend, name, connection_string = self._recovery_config
            try:
                await self._establish(backend, name, connection_string)
                self._verify_integrity()
            except Exception as e:
                error = e if isinstance(e, PersistenceError) else PersistenceError(
                    f"Unexpected recovery error: {e}",
                    kind=DatabaseErrorKind.RECOVERY_FAILED,
                    operation="recovery"
                )
                self._record_error(error, f"recovery attempt {self.recovery_attempts}: {error.message}")
                self.logger.error(f"Recovery attempt {self.recovery_attempts} failed: {error.summary()}")
                self._close_driver()
                self._clear_references()
                self._set_state(ConnectionState.RECOVERING)
                if self.recovery_attempts >= self.settings.max_recovery_attempts:
                    await self._abandon_recovery()
                return False

            attempts = self.recovery_attempts
            self._on_connected()
            await self._stop_timer("recovery")
            self.logger.info(f"Recovery succeeded after {attempts} attempt(s)")

            # no-op unless startup failed before merging the previous session's queue
            self._restore_pending_snapshot()

            report = await self.pending_queue.drain_tick()
            if report.attempted:
                self.logger.info(f"Replayed {report.executed} pending operations after recovery")
            return True
        finally:
            self._recovery_running = False

    def _verify_integrity(self) -> None:
        if self.driver is None or not self.driver.is_connected():
            raise ConnectionFailedError(
                "Connection lost during integrity check",
                kind=DatabaseErrorKind.CONNECTION_LOST,
                operation="verify_integrity"
            )
        if self.driver.corrupted:
            raise PersistenceError(
                "Database is flagged as corrupted",
                kind=DatabaseErrorKind.DATABASE_CORRUPTED,
                operation="verify_integrity"
            )
        stored = self.schema.read_version()
        if stored < self.schema.expected_version:
            raise SchemaMismatchError(
                "Schema version is behind after reconnect",
                stored_version=stored,
                expected_version=self.schema.expected_version,
                operation="verify_integrity"
            )

    async def _abandon_recovery(self) -> None:
        self.recovery_abandoned = True
        self.recovery_armed = False
        error = RecoveryFailedError(self.recovery_attempts)
        self._record_error(error, error.message)
        self.logger.critical(
            f"Automatic recovery abandoned after {self.recovery_attempts} attempts; "
            f"operator intervention required"
        )
        self._set_state(ConnectionState.DEGRADED)
        await self._stop_timer("recovery")

    # ------------------------------------------------------------------
    # Maintenance and backups
    # ------------------------------------------------------------------

    def _maintenance_due(self) -> bool:
        if self._last_maintenance_tick is None:
            return False
        interval = self.settings.maintenance_interval_minutes * 60.0
        return self._clock() - self._last_maintenance_tick >= interval

    def run_maintenance(self) -> bool:
        """
        Optimize/compact the store. Failures are recorded, never raised.

        Returns:
            True if the driver performed maintenance
        """
        if self.driver is None:
            return False
        started = time.perf_counter()
        try:
            done = self.driver.optimize_storage()
        except PersistenceError as e:
            self._record_error(e, f"maintenance: {e.message}")
            self.logger.error(f"Storage maintenance failed: {e.message}")
            return False

        self._last_maintenance_tick = self._clock()
        if done:
            self.logger.info(f"Storage maintenance completed in {time.perf_counter() - started:.3f}s")
        return done

    def _backup_due(self) -> bool:
        if self.backups is None or self._last_backup_tick is None:
            return False
        interval = self.settings.backup_interval_minutes * 60.0
        return self._clock() - self._last_backup_tick >= interval

    def _backup_if_due_sync(self) -> None:
        if self.driver is not None and self.driver.in_transaction:
            return
        if self._backup_due():
            self.create_backup()

    async def _backup_if_due(self) -> None:
        if self._state is ConnectionState.READY:
            self._backup_if_due_sync()

    def create_backup(self) -> Optional[BackupDescriptor]:
        """
        Snapshot the database directory (file backends only).

        Failures are logged and recorded, never raised.

        Returns:
            The new BackupDescriptor, or None
        """
        if self.backups is None or self.connection_info is None:
            self.logger.debug("Backups are only available for file-based backends")
            return None

        try:
            if self.driver is not None:
                self.driver.flush()
            descriptor = self.backups.create_backup(self.connection_info.directory)
        except PersistenceError as e:
            error = e if isinstance(e, BackupError) else BackupError(
                f"Backup failed: {e.message}", operation="create_backup"
            )
            self._record_error(error, f"backup: {error.message}")
            self.logger.error(f"Backup failed: {error.message}")
            return None

        self.last_backup_time = datetime.now()
        self._last_backup_tick = self._clock()
        return descriptor

    def list_backups(self) -> List[BackupDescriptor]:
        """Backups for the current database, newest first."""
        if self.backups is None:
            return []
        return self.backups.list_backups()

    async def restore_backup(self, backup_name: str) -> bool:
        """
        Replace the database with a backup and reconnect.

        The connection is shut down first; the database is re-initialized
        with the same configuration whether or not the restore succeeded.

        Returns:
            True if the restore and the re-initialization both succeeded
        """
        backups, info, config = self.backups, self.connection_info, self._recovery_config
        if backups is None or info is None or config is None:
            error = BackupError(
                "Restore requires an initialized file-based database",
                kind=DatabaseErrorKind.BACKUP_RESTORE_FAILED,
                operation="restore_backup"
            )
            self._record_error(error, error.message)
            return False

        self.logger.warning(f"Restoring database '{info.database_name}' from backup {backup_name}")
        await self.shutdown()

        restored = True
        try:
            backups.restore_backup(backup_name, info.directory)
        except BackupError as e:
            restored = False
            self._record_error(e, f"restore: {e.message}")
            self.logger.error(f"Restore from {backup_name} failed: {e.message}")

        reconnected = await self.initialize(*config)
        return restored and reconnected

    # ------------------------------------------------------------------
    # Operation gate
    # ------------------------------------------------------------------

    def check_operation_allowed(self, operation: str = "operation") -> None:
        """
        Gate every repository operation.

        Raises:
            NotReadyError: Outside the READY state
            RateLimitExceededError: Beyond ``operation_rate_limit`` per second
        """
        if self._state is not ConnectionState.READY:
            raise NotReadyError(operation, self._state.value)

        if not self.rate_limiter.try_acquire():
            error = RateLimitExceededError(operation, self.settings.operation_rate_limit)
            self.errors.record(error.kind, f"{operation}: {error.message}")
            self.logger.warning(f"Rate limit exceeded for {operation}")
            raise error

    # ------------------------------------------------------------------
    # Errors and status
    # ------------------------------------------------------------------

    def _record_error(self, error: PersistenceError, context: str) -> None:
        self.last_error = error
        self.errors.record(error.kind, context)

    def _on_repository_error(self, error: PersistenceError) -> None:
        self._record_error(error, f"{error.operation}: {error.message}")

    def get_error_count(self, kind: DatabaseErrorKind) -> int:
        return self.errors.count(kind)

    def get_error_contexts(self, kind: DatabaseErrorKind) -> List[str]:
        return self.errors.contexts(kind)

    def get_status(self) -> Dict[str, Any]:
        """Human-readable status summary for admin commands."""
        repo_stats = self.repository.stats if self.repository else None
        return {
            "initialized": self.initialized,
            "state": self._state.value,
            "backend_type": self.backend_type.value if self.backend_type else None,
            "database_name": self.database_name,
            "target": self.connection_info.describe() if self.connection_info else None,
            "successful_operations": repo_stats.successes if repo_stats else 0,
            "failed_operations": repo_stats.failures if repo_stats else 0,
            "last_error": self.last_error.summary() if self.last_error else None,
            "consecutive_failures": self.consecutive_failures,
            "recovery_attempts": self.recovery_attempts,
            "recovery_abandoned": self.recovery_abandoned,
            "pending_operations": len(self.pending_queue),
            "dead_letters": len(self.pending_queue.dead_letters()),
            "last_backup_time": self.last_backup_time.isoformat() if self.last_backup_time else None,
            "errors": self.errors.to_dict(),
        }
