"""
Stats Persister

Player-facing entry point used by the event layer. Wraps the repository of
the lifecycle manager and makes sure a save is never silently lost: when the
database is not ready, or the immediate write fails, the save is queued on
the manager's pending operation queue and replayed later.

Rate-limited operations are rejected outright and never queued.

Usage Example:
    persister = StatsPersister(manager)
    outcome = await persister.save_player_stats(uid, name, stats, disconnecting=True)
    if outcome is SaveOutcome.QUEUED:
        ...
"""

import logging
from enum import Enum
from typing import List

from stat_tracker.database.errors import NotReadyError, PersistenceError, RateLimitExceededError

from .pending_operations import (
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    DeleteStatsOperation,
    SaveStatsOperation,
)
from .player_statistics import PlayerStatistics
from .stats_repository import PlayerStatsRepository
from .stats_validator import validate_statistics


class SaveOutcome(Enum):
    """What happened to a save or delete request."""
    SAVED = "saved"
    QUEUED = "queued"
    REJECTED = "rejected"
    DROPPED = "dropped"

    @property
    def accepted(self) -> bool:
        """True when the write either happened or is waiting in the queue."""
        return self in (SaveOutcome.SAVED, SaveOutcome.QUEUED)


class StatsPersister:
    """
    Saves, loads and deletes player statistics through the lifecycle manager.

    Registers the pending queue handlers for save and delete operations on
    construction. The handlers look the repository up on every call because
    the manager builds a new one after each reconnect.
    """

    def __init__(self, manager):
        """
        Initialize the persister.

        Args:
            manager: DatabaseLifecycleManager owning the connection and queue
        """
        self.manager = manager
        self.queue = manager.pending_queue
        self.logger = logging.getLogger(__name__)

        self.total_saved = 0
        self.total_queued = 0
        self.total_rejected = 0

        self.queue.register_handler(SaveStatsOperation, self.execute_save)
        self.queue.register_handler(DeleteStatsOperation, self.execute_delete)

    # ------------------------------------------------------------------
    # Queue handlers
    # ------------------------------------------------------------------

    async def execute_save(self, operation: SaveStatsOperation) -> bool:
        repository = self._repository("save")
        return await repository.save(operation.player_uid, operation.player_name, operation.stats)

    async def execute_delete(self, operation: DeleteStatsOperation) -> bool:
        repository = self._repository("delete")
        failures_before = repository.stats.failed_deletes
        deleted = await repository.delete(operation.player_uid)
        # an absent row is already the desired end state
        return deleted or repository.stats.failed_deletes == failures_before

    # ------------------------------------------------------------------
    # Player operations
    # ------------------------------------------------------------------

    async def save_player_stats(
        self,
        player_uid: str,
        player_name: str,
        stats: PlayerStatistics,
        disconnecting: bool = False
    ) -> SaveOutcome:
        """
        Save a player's statistics, queueing the save if it cannot happen now.

        Args:
            player_uid: External player id
            player_name: Display name
            stats: Record to store
            disconnecting: Queue with high priority (player is leaving)

        Returns:
            SaveOutcome describing whether the record was written, queued,
            rejected (invalid input or rate limited) or dropped (queue full)
        """
        if not player_uid or stats is None:
            self.logger.warning("Cannot save statistics without a player id and record")
            self.total_rejected += 1
            return SaveOutcome.REJECTED

        validation = validate_statistics(stats)
        if not validation:
            self.logger.warning(f"Not saving invalid statistics for {player_uid}: {validation.summary()}")
            self.total_rejected += 1
            return SaveOutcome.REJECTED

        priority = PRIORITY_HIGH if disconnecting else PRIORITY_NORMAL

        try:
            repository = self._repository("save")
            if await repository.save(player_uid, player_name, stats):
                self.total_saved += 1
                return SaveOutcome.SAVED
            reason = "save failed"
        except RateLimitExceededError as e:
            self.logger.warning(f"Rejected save for {player_uid}: {e.message}")
            self.total_rejected += 1
            return SaveOutcome.REJECTED
        except NotReadyError as e:
            reason = f"database {e.state}"

        operation = SaveStatsOperation(player_uid, player_name, stats.copy())
        return self._enqueue(operation, priority, reason)

    async def load_player_stats(self, player_uid: str) -> PlayerStatistics:
        """
        Load a player's statistics.

        Returns:
            The stored record, or a fresh one when the database is unavailable
        """
        try:
            return await self._repository("load").load(player_uid)
        except PersistenceError as e:
            self.logger.warning(f"Serving fresh statistics for {player_uid}: {e.message}")
            return PlayerStatistics.fresh(player_uid)

    async def delete_player_stats(self, player_uid: str) -> SaveOutcome:
        """
        Delete a player's statistics, queueing the delete if the database is
        not ready.

        Returns:
            SAVED when the row was deleted, REJECTED when there was nothing
            to delete or the operation was rate limited, QUEUED or DROPPED
            when deferred
        """
        if not player_uid:
            return SaveOutcome.REJECTED

        try:
            deleted = await self._repository("delete").delete(player_uid)
        except RateLimitExceededError as e:
            self.logger.warning(f"Rejected delete for {player_uid}: {e.message}")
            self.total_rejected += 1
            return SaveOutcome.REJECTED
        except NotReadyError as e:
            return self._enqueue(DeleteStatsOperation(player_uid), PRIORITY_NORMAL, f"database {e.state}")

        return SaveOutcome.SAVED if deleted else SaveOutcome.REJECTED

    def get_all_player_stats(self) -> List[PlayerStatistics]:
        try:
            return self._repository("get_all").get_all()
        except PersistenceError as e:
            self.logger.warning(f"Cannot list player statistics: {e.message}")
            return []

    def get_top_players(self, limit: int = 10, sort_field: str = "total_xp") -> List[PlayerStatistics]:
        """
        Leaderboard by ``sort_field``; empty while the database is unavailable.

        Raises:
            ValueError: If ``sort_field`` is not a sortable statistic
        """
        try:
            return self._repository("get_top_n").get_top_n(limit, sort_field)
        except PersistenceError as e:
            self.logger.warning(f"Cannot build leaderboard: {e.message}")
            return []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _repository(self, operation: str) -> PlayerStatsRepository:
        repository = self.manager.repository
        if repository is None:
            raise NotReadyError(operation, self.manager.state.value)
        return repository

    def _enqueue(self, operation, priority: int, reason: str) -> SaveOutcome:
        if self.queue.enqueue(operation, priority):
            self.total_queued += 1
            self.logger.info(f"Queued {operation.describe()} ({reason})")
            return SaveOutcome.QUEUED
        return SaveOutcome.DROPPED
