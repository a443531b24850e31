"""
Player Statistics Repository

Validated CRUD over the ``player_stats`` table. Every public operation first
asks the access guard (normally ``DatabaseLifecycleManager.check_operation_allowed``)
for permission, which raises ``NotReadyError`` outside the READY state and
``RateLimitExceededError`` over the per-second cap.

Writes run inside a transaction. Row lookups are retried with linear
backoff (``query_retry_delay_ms * attempt``) awaited on the event loop;
only the final failure surfaces.

Usage Example:
    repository = PlayerStatsRepository(driver, manager.check_operation_allowed)

    ok = await repository.save("76561198000000001", "Rook", stats)
    stats = await repository.load("76561198000000001")
    leaders = repository.get_top_n(10, sort_field="kills")
"""

import asyncio
import inspect
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from stat_tracker.database.drivers import StorageDriver
from stat_tracker.database.errors import PersistenceError
from stat_tracker.database.retry import LookupResult, RetryPolicy, SleepFunc, retry_async
from stat_tracker.database.transaction_context import TransactionContext

from .player_statistics import SORTABLE_FIELDS, PlayerStatistics
from .stats_validator import validate_statistics


UNKNOWN_PLAYER_NAME = "Unknown Player"

SLOW_SAVE_SECONDS = 0.5
SLOW_LOAD_SECONDS = 0.1

# change thresholds worth an info line
KILL_JUMP = 10
SCORE_JUMP = 500

STAT_COLUMNS = (
    "player_name",
    "kills",
    "deaths",
    "bases_captured",
    "bases_lost",
    "total_xp",
    "rank",
    "supplies_delivered",
    "supply_delivery_count",
    "ai_kills",
    "vehicle_kills",
    "air_kills",
    "connection_time",
    "last_session_duration",
    "total_playtime",
    "killed_by",
    "killed_by_weapon",
    "killed_by_team",
)

AccessGuard = Callable[[str], None]
ErrorListener = Callable[[PersistenceError], None]
LoadCallback = Callable[[PlayerStatistics], Any]


@dataclass
class RepositoryStats:
    """Operation counters for status reporting."""
    saves: int = 0
    failed_saves: int = 0
    rejected_saves: int = 0
    loads: int = 0
    failed_loads: int = 0
    corrupted_rows: int = 0
    deletes: int = 0
    failed_deletes: int = 0

    @property
    def successes(self) -> int:
        return self.saves + self.loads + self.deletes

    @property
    def failures(self) -> int:
        return self.failed_saves + self.failed_loads + self.failed_deletes

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def significant_changes(previous: PlayerStatistics, current: PlayerStatistics) -> List[str]:
    """Describe kill, score and rank jumps between two records."""
    changes = []
    kill_delta = current.kills - previous.kills
    if kill_delta >= KILL_JUMP:
        changes.append(f"kills +{kill_delta}")
    score_delta = current.score - previous.score
    if abs(score_delta) >= SCORE_JUMP:
        changes.append(f"score {score_delta:+d}")
    if current.rank > previous.rank:
        changes.append(f"rank {previous.rank} -> {current.rank}")
    return changes


class PlayerStatsRepository:
    """
    Validated, retried, transactional access to player statistics.

    Attributes:
        driver: Connected storage driver
        retry_policy: Lookup retry policy
        stats: RepositoryStats counters
    """

    def __init__(
        self,
        driver: StorageDriver,
        access_guard: AccessGuard,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
        on_error: Optional[ErrorListener] = None
    ):
        self.driver = driver
        self._access_guard = access_guard
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._on_error = on_error
        self._write_lock = asyncio.Lock()
        self.stats = RepositoryStats()
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, player_uid: str, player_name: str, stats: PlayerStatistics) -> bool:
        """
        Insert or replace the statistics for one player.

        Args:
            player_uid: External player id (required)
            player_name: Display name; empty becomes "Unknown Player"
            stats: Record to store

        Returns:
            True only if the transaction committed

        Raises:
            NotReadyError: If the database is not READY
            RateLimitExceededError: If the operation cap is exceeded
        """
        self._access_guard("save")

        if not player_uid or stats is None:
            self.logger.warning("Refusing to save statistics without a player id or record")
            self.stats.rejected_saves += 1
            return False

        validation = validate_statistics(stats)
        if not validation:
            self.logger.warning(
                f"Refusing to save invalid statistics for {player_uid}: {validation.summary()}"
            )
            self.stats.rejected_saves += 1
            return False

        record = stats.copy()
        record.player_uid = player_uid
        record.player_name = player_name or UNKNOWN_PLAYER_NAME

        started = time.perf_counter()
        previous: Optional[PlayerStatistics] = None

        async with self._write_lock:
            try:
                with TransactionContext(self.driver, "save"):
                    lookup = await self._lookup(player_uid, "save")
                    if lookup.is_failed:
                        raise lookup.error

                    now = datetime.now().isoformat()
                    if lookup.is_found:
                        previous = self._convert_row(lookup.row, log=False)
                        self._update_row(record, now)
                    else:
                        self._insert_row(record, now)
            except PersistenceError as e:
                self.stats.failed_saves += 1
                self.logger.error(f"Failed to save statistics for {player_uid}: {e.message}")
                self._report(e)
                return False

        self.stats.saves += 1
        elapsed = time.perf_counter() - started
        if elapsed > SLOW_SAVE_SECONDS:
            self.logger.warning(f"Slow save for {player_uid}: {elapsed:.3f}s")

        if previous is not None:
            changes = significant_changes(previous, record)
            if changes:
                self.logger.info(f"Significant change for {record.player_name} ({player_uid}): {', '.join(changes)}")

        self.logger.debug(f"Saved statistics for {player_uid}")
        return True

    async def delete(self, player_uid: str) -> bool:
        """
        Delete the stored statistics for one player.

        Returns:
            True if a row existed and the delete committed

        Raises:
            NotReadyError: If the database is not READY
            RateLimitExceededError: If the operation cap is exceeded
        """
        self._access_guard("delete")

        if not player_uid:
            return False

        async with self._write_lock:
            try:
                with TransactionContext(self.driver, "delete"):
                    lookup = await self._lookup(player_uid, "delete")
                    if lookup.is_failed:
                        raise lookup.error
                    if lookup.is_found:
                        self.driver.execute_query(
                            "DELETE FROM player_stats WHERE player_uid = ?", (player_uid,)
                        )
            except PersistenceError as e:
                self.stats.failed_deletes += 1
                self.logger.error(f"Failed to delete statistics for {player_uid}: {e.message}")
                self._report(e)
                return False

        if not lookup.is_found:
            self.logger.debug(f"No statistics to delete for {player_uid}")
            return False

        self.stats.deletes += 1
        self.logger.info(f"Deleted statistics for {player_uid}")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self, player_uid: str) -> PlayerStatistics:
        """
        Load statistics for one player.

        Missing, unreadable or invalid rows, and exhausted retries, all yield
        a fresh empty record.

        Raises:
            NotReadyError: If the database is not READY
            RateLimitExceededError: If the operation cap is exceeded
        """
        self._access_guard("load")

        if not player_uid:
            return PlayerStatistics.fresh()

        started = time.perf_counter()
        lookup = await self._lookup(player_uid, "load")
        record = self._record_from_lookup(player_uid, lookup)

        elapsed = time.perf_counter() - started
        if elapsed > SLOW_LOAD_SECONDS:
            self.logger.warning(f"Slow load for {player_uid}: {elapsed:.3f}s")
        return record

    async def load_async(self, player_uid: str, callback: LoadCallback) -> None:
        """
        Load through the driver's asynchronous primitive and hand the record
        to ``callback``.

        The callback is invoked exactly once. When the database is not
        available it receives a fresh record. Exceptions raised by the
        callback (or by the awaitable it returns) are logged.
        """
        try:
            self._access_guard("load_async")
        except PersistenceError as e:
            self.logger.warning(f"Async load for {player_uid} served a fresh record: {e.message}")
            record = PlayerStatistics.fresh(player_uid)
        else:
            if not player_uid:
                record = PlayerStatistics.fresh()
            else:
                lookup = await self._lookup(player_uid, "load_async", use_async=True)
                record = self._record_from_lookup(player_uid, lookup)

        try:
            result = callback(record)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Load callback for {player_uid} raised: {e}", exc_info=True)

    def get_all(self) -> List[PlayerStatistics]:
        """
        All valid stored records. Backend failures yield an empty list.

        Raises:
            NotReadyError: If the database is not READY
            RateLimitExceededError: If the operation cap is exceeded
        """
        self._access_guard("get_all")
        return self._select_many("SELECT * FROM player_stats ORDER BY player_uid", (), "get_all")

    def get_top_n(self, limit: int = 10, sort_field: str = "total_xp") -> List[PlayerStatistics]:
        """
        Leaderboard sorted descending by ``sort_field``.

        Args:
            limit: Maximum number of records
            sort_field: One of ``SORTABLE_FIELDS``

        Raises:
            ValueError: If ``sort_field`` is not sortable
            NotReadyError: If the database is not READY
            RateLimitExceededError: If the operation cap is exceeded
        """
        if sort_field not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort player statistics by '{sort_field}'")

        self._access_guard("get_top_n")

        if limit < 1:
            return []

        return self._select_many(
            f"SELECT * FROM player_stats ORDER BY {sort_field} DESC, player_uid ASC LIMIT ?",
            (limit,),
            "get_top_n"
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _lookup(self, player_uid: str, operation: str, use_async: bool = False) -> LookupResult:
        query = "SELECT * FROM player_stats WHERE player_uid = ?"

        if use_async:
            async def attempt():
                return (await self.driver.execute_query_async(query, (player_uid,))).first
        else:
            def attempt():
                return self.driver.execute_query(query, (player_uid,)).first

        try:
            row = await retry_async(
                attempt,
                self.retry_policy,
                f"{operation} lookup for {player_uid}",
                sleep=self._sleep
            )
        except PersistenceError as e:
            return LookupResult.failed(e)

        return LookupResult.found(row) if row else LookupResult.not_found()

    def _record_from_lookup(self, player_uid: str, lookup: LookupResult) -> PlayerStatistics:
        if lookup.is_failed:
            self.stats.failed_loads += 1
            self.logger.error(
                f"Failed to load statistics for {player_uid}, serving a fresh record: {lookup.error.message}"
            )
            self._report(lookup.error)
            return PlayerStatistics.fresh(player_uid)

        self.stats.loads += 1
        if not lookup.is_found:
            return PlayerStatistics.fresh(player_uid)

        record = self._convert_row(lookup.row)
        if record is None:
            return PlayerStatistics.fresh(player_uid, lookup.row.get("player_name") or "")
        return record

    def _convert_row(self, row: Mapping[str, Any], log: bool = True) -> Optional[PlayerStatistics]:
        """Row to record, or None (logged once) when unreadable or invalid."""
        player_uid = row.get("player_uid")
        try:
            record = PlayerStatistics.from_row(row)
        except (TypeError, ValueError) as e:
            if log:
                self.stats.corrupted_rows += 1
                self.logger.error(f"Unreadable statistics row for {player_uid}: {e}")
            return None

        validation = validate_statistics(record)
        if not validation:
            if log:
                self.stats.corrupted_rows += 1
                self.logger.warning(
                    f"Stored statistics for {player_uid} failed validation: {validation.summary()}"
                )
            return None

        return record

    def _select_many(self, query: str, params: tuple, operation: str) -> List[PlayerStatistics]:
        try:
            rows = self.driver.execute_query(query, params).rows
        except PersistenceError as e:
            self.logger.error(f"{operation} failed: {e.message}")
            self._report(e)
            return []

        records = []
        for row in rows:
            record = self._convert_row(row)
            if record is not None:
                records.append(record)
        return records

    def _update_row(self, record: PlayerStatistics, now: str) -> None:
        row = record.to_row()
        assignments = ", ".join(f"{column} = ?" for column in STAT_COLUMNS)
        self.driver.execute_query(
            f"UPDATE player_stats SET {assignments}, updated_at = ? WHERE player_uid = ?",
            tuple(row[column] for column in STAT_COLUMNS) + (now, record.player_uid)
        )

    def _insert_row(self, record: PlayerStatistics, now: str) -> None:
        row = record.to_row()
        columns = ("player_uid",) + STAT_COLUMNS + ("created_at", "updated_at")
        placeholders = ", ".join("?" for _ in columns)
        self.driver.execute_query(
            f"INSERT INTO player_stats ({', '.join(columns)}) VALUES ({placeholders})",
            (record.player_uid,) + tuple(row[column] for column in STAT_COLUMNS) + (now, now)
        )

    def _report(self, error: PersistenceError) -> None:
        if self._on_error is not None:
            self._on_error(error)
