"""
Pending Operation Queue

Write-behind durability buffer. When an immediate save or delete cannot be
guaranteed (database not ready, backend failure) the operation is queued
here and replayed on later drain ticks.

Ordering:
    Entries are stable-sorted by priority (highest first, ties in insertion
    order). Every tick executes all entries at or above
    HIGH_PRIORITY_THRESHOLD before the rest.

Failure handling:
    A failed execution bumps the entry's attempt count and keeps it queued.
    After ``max_attempts`` failures the entry moves to the dead-letter list,
    from which it can be requeued explicitly.

Durability:
    ``save_snapshot`` writes the queue to JSON on shutdown and
    ``load_snapshot`` restores it on the next start.

Usage Example:
    queue = PendingOperationQueue(capacity=1000, state_provider=lambda: manager.state)
    queue.register_handler(SaveStatsOperation, persister.execute_save)
    queue.enqueue(SaveStatsOperation(uid, name, stats), priority=PRIORITY_HIGH)
    report = await queue.drain_tick()
"""

import itertools
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, ClassVar, Deque, Dict, List, Optional, Type, Union

from stat_tracker.database.connection_state import ConnectionState
from stat_tracker.database.errors import NotReadyError, PersistenceError, RateLimitExceededError
from stat_tracker.utils.atomic_json import atomic_write_json, read_json

from .player_statistics import PlayerStatistics


HIGH_PRIORITY_THRESHOLD = 3
PRIORITY_NORMAL = 1
PRIORITY_HIGH = 3

SNAPSHOT_VERSION = 1


# ----------------------------------------------------------------------
# Operation payloads
# ----------------------------------------------------------------------

@dataclass
class SaveStatsOperation:
    """Deferred save of one player's statistics."""
    kind: ClassVar[str] = "SavePlayerStats"

    player_uid: str
    player_name: str
    stats: PlayerStatistics

    def to_payload(self) -> Dict[str, Any]:
        return {
            "playerUID": self.player_uid,
            "playerName": self.player_name,
            "statsJson": json.dumps(self.stats.to_dict()),
        }

    @classmethod
    def from_payload(cls, params: Dict[str, Any]) -> "SaveStatsOperation":
        return cls(
            player_uid=params["playerUID"],
            player_name=params.get("playerName", ""),
            stats=PlayerStatistics.from_dict(json.loads(params["statsJson"])),
        )

    def describe(self) -> str:
        return f"{self.kind}({self.player_uid})"


@dataclass
class DeleteStatsOperation:
    """Deferred delete of one player's statistics."""
    kind: ClassVar[str] = "DeletePlayerStats"

    player_uid: str

    def to_payload(self) -> Dict[str, Any]:
        return {"playerUID": self.player_uid}

    @classmethod
    def from_payload(cls, params: Dict[str, Any]) -> "DeleteStatsOperation":
        return cls(player_uid=params["playerUID"])

    def describe(self) -> str:
        return f"{self.kind}({self.player_uid})"


OPERATION_TYPES: Dict[str, Type] = {
    SaveStatsOperation.kind: SaveStatsOperation,
    DeleteStatsOperation.kind: DeleteStatsOperation,
}

OperationHandler = Callable[[Any], Awaitable[bool]]


@dataclass(eq=False)
class PendingOperation:
    """
    One queued unit of work.

    Attributes:
        operation: Typed payload (SaveStatsOperation, DeleteStatsOperation)
        priority: Higher runs sooner
        attempts: Failed executions so far
        last_attempt: ISO timestamp of the last execution attempt
        last_error: Error text from the last failed attempt
        sequence: Insertion order, breaks priority ties
        created_at: ISO timestamp of enqueue
    """
    operation: Any
    priority: int = PRIORITY_NORMAL
    attempts: int = 0
    last_attempt: Optional[str] = None
    last_error: str = ""
    sequence: int = 0
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def is_high_priority(self) -> bool:
        return self.priority >= HIGH_PRIORITY_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.operation.kind,
            "params": self.operation.to_payload(),
            "priority": self.priority,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt,
            "last_error": self.last_error,
            "sequence": self.sequence,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingOperation":
        """
        Raises:
            KeyError: If the operation kind is unknown or a field is missing
            TypeError / ValueError: If the payload cannot be decoded
        """
        operation_type = OPERATION_TYPES[data["kind"]]
        return cls(
            operation=operation_type.from_payload(data["params"]),
            priority=int(data.get("priority", PRIORITY_NORMAL)),
            attempts=int(data.get("attempts", 0)),
            last_attempt=data.get("last_attempt"),
            last_error=data.get("last_error", ""),
            sequence=int(data.get("sequence", 0)),
            created_at=data.get("created_at") or datetime.now().isoformat(),
        )


@dataclass
class DrainReport:
    """Outcome of one drain tick."""
    executed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    dropped: int = 0
    skipped: bool = False
    interrupted: bool = False

    @property
    def attempted(self) -> int:
        return self.executed + self.failed + self.dead_lettered


class PendingOperationQueue:
    """
    Bounded, priority-ordered queue of deferred writes.

    Attributes:
        capacity: Maximum queued entries
        max_attempts: Failed executions before an entry is dead-lettered
        dead_letter_capacity: Maximum dead-lettered entries kept
    """

    def __init__(
        self,
        capacity: int = 1000,
        max_attempts: int = 10,
        state_provider: Optional[Callable[[], ConnectionState]] = None,
        dead_letter_capacity: Optional[int] = None
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.capacity = capacity
        self.max_attempts = max_attempts
        self.dead_letter_capacity = dead_letter_capacity or capacity
        self._state_provider = state_provider or (lambda: ConnectionState.READY)
        self._entries: List[PendingOperation] = []
        self._dead_letters: Deque[PendingOperation] = deque(maxlen=self.dead_letter_capacity)
        self._handlers: Dict[Type, OperationHandler] = {}
        self._sequence = itertools.count(1)
        self._draining = False
        self.dropped_on_full = 0
        self.logger = logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_full(self) -> bool:
        return len(self._entries) >= self.capacity

    def register_handler(self, operation_type: Type, handler: OperationHandler) -> None:
        """Route payloads of ``operation_type`` to ``handler`` (a coroutine function returning bool)."""
        self._handlers[operation_type] = handler

    def enqueue(self, operation: Any, priority: int = PRIORITY_NORMAL) -> bool:
        """
        Queue an operation.

        Returns:
            False (and logs an error) if the queue is full; the operation is dropped
        """
        if operation is None:
            self.logger.warning("Ignoring attempt to queue an empty operation")
            return False

        if self.is_full:
            self.dropped_on_full += 1
            self.logger.error(
                f"Pending operation queue full ({self.capacity}); dropping {_describe(operation)}"
            )
            return False

        entry = PendingOperation(operation=operation, priority=priority, sequence=next(self._sequence))
        self._entries.append(entry)
        self.logger.debug(
            f"Queued {_describe(operation)} with priority {priority} ({len(self._entries)} pending)"
        )
        return True

    def pending(self) -> List[PendingOperation]:
        """Queued entries in execution order."""
        ordered = sorted(self._entries, key=lambda entry: -entry.priority)
        high = [entry for entry in ordered if entry.is_high_priority]
        rest = [entry for entry in ordered if not entry.is_high_priority]
        return high + rest

    def dead_letters(self) -> List[PendingOperation]:
        return list(self._dead_letters)

    def requeue_dead_letters(self) -> int:
        """
        Move dead-lettered entries back into the queue with attempts reset.

        Returns:
            Number of entries requeued (limited by free capacity)
        """
        requeued = 0
        while self._dead_letters and not self.is_full:
            entry = self._dead_letters.popleft()
            entry.attempts = 0
            entry.last_error = ""
            entry.sequence = next(self._sequence)
            self._entries.append(entry)
            requeued += 1
        if requeued:
            self.logger.info(f"Requeued {requeued} dead-lettered operations")
        return requeued

    def clear(self) -> None:
        """Drop all queued and dead-lettered entries."""
        self._entries.clear()
        self._dead_letters.clear()

    async def drain_tick(self) -> DrainReport:
        """
        Execute queued operations once, in priority order.

        Skipped entirely unless the state provider reports READY. Stops early
        if a handler reports the database is no longer ready.

        Returns:
            DrainReport with executed / failed / dead-lettered counts
        """
        report = DrainReport()

        if self._draining or self._state_provider() != ConnectionState.READY:
            report.skipped = True
            return report

        if not self._entries:
            return report

        self._draining = True
        try:
            for entry in self.pending():
                if self._state_provider() != ConnectionState.READY:
                    report.interrupted = True
                    break

                handler = self._handlers.get(type(entry.operation))
                if handler is None:
                    self.logger.error(f"No handler for {_describe(entry.operation)}; dropping it")
                    self._entries.remove(entry)
                    report.dropped += 1
                    continue

                try:
                    succeeded = await handler(entry.operation)
                    error_text = "" if succeeded else "operation reported failure"
                except (NotReadyError, RateLimitExceededError) as e:
                    self.logger.info(f"Stopping drain: {e.message}")
                    report.interrupted = True
                    break
                except PersistenceError as e:
                    succeeded, error_text = False, e.message
                except Exception as e:
                    self.logger.error(f"Handler for {_describe(entry.operation)} raised: {e}", exc_info=True)
                    succeeded, error_text = False, str(e)

                if succeeded:
                    self._entries.remove(entry)
                    report.executed += 1
                    continue

                entry.attempts += 1
                entry.last_attempt = datetime.now().isoformat()
                entry.last_error = error_text

                if entry.attempts >= self.max_attempts:
                    self._entries.remove(entry)
                    self._dead_letter(entry)
                    report.dead_lettered += 1
                else:
                    report.failed += 1
        finally:
            self._draining = False

        if report.attempted:
            self.logger.info(
                f"Drained pending operations: {report.executed} executed, {report.failed} failed, "
                f"{report.dead_lettered} dead-lettered, {len(self._entries)} remaining"
            )
        return report

    def _dead_letter(self, entry: PendingOperation) -> None:
        if len(self._dead_letters) == self._dead_letters.maxlen:
            evicted = self._dead_letters[0]
            self.logger.warning(f"Dead-letter list full; discarding {_describe(evicted.operation)}")
        self._dead_letters.append(entry)
        self.logger.error(
            f"Giving up on {_describe(entry.operation)} after {entry.attempts} attempts: {entry.last_error}"
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, path: Union[str, Path]) -> int:
        """
        Write queued and dead-lettered entries to ``path`` atomically.

        An empty queue removes any existing snapshot instead.

        Returns:
            Number of queued entries written

        Raises:
            OSError: If the file cannot be written
        """
        path = Path(path)
        entries = self.pending()

        if not entries and not self._dead_letters:
            if path.exists():
                path.unlink()
            return 0

        atomic_write_json(path, {
            "version": SNAPSHOT_VERSION,
            "saved_at": datetime.now().isoformat(),
            "operations": [entry.to_dict() for entry in entries],
            "dead_letters": [entry.to_dict() for entry in self._dead_letters],
        }, indent=2)
        self.logger.info(f"Saved {len(entries)} pending operations to {path}")
        return len(entries)

    def load_snapshot(self, path: Union[str, Path]) -> int:
        """
        Restore entries written by ``save_snapshot`` and remove the file.

        Unreadable snapshots are renamed with a ``.corrupt`` suffix.

        Returns:
            Number of entries restored into the queue
        """
        path = Path(path)
        if not path.exists():
            return 0

        try:
            document = read_json(path)
            stored = sorted(document["operations"], key=lambda item: item.get("sequence", 0))
            stored_dead = document.get("dead_letters", [])
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            corrupt = path.with_name(path.name + ".corrupt")
            self.logger.error(f"Pending operation snapshot {path} is unreadable ({e}); moved to {corrupt}")
            path.replace(corrupt)
            return 0

        restored = 0
        for item in stored:
            entry = self._restore_entry(item)
            if entry is None:
                continue
            if self.is_full:
                self.dropped_on_full += 1
                self.logger.error(f"Queue full while restoring snapshot; dropping {_describe(entry.operation)}")
                continue
            entry.sequence = next(self._sequence)
            self._entries.append(entry)
            restored += 1

        for item in stored_dead:
            entry = self._restore_entry(item)
            if entry is not None:
                self._dead_letters.append(entry)

        path.unlink()
        self.logger.info(f"Restored {restored} pending operations from {path}")
        return restored

    def _restore_entry(self, item: Dict[str, Any]) -> Optional[PendingOperation]:
        try:
            return PendingOperation.from_dict(item)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.warning(f"Skipping unreadable pending operation in snapshot: {e}")
            return None


def _describe(operation: Any) -> str:
    describe = getattr(operation, "describe", None)
    return describe() if callable(describe) else type(operation).__name__
