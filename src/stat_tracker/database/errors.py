"""
Persistence Exception Hierarchy

This module defines the error kinds and exceptions raised by the statistics
persistence subsystem (lifecycle manager, repository, pending operation queue).

Exception Hierarchy:
    PersistenceError (base)
    ├── InvalidConfigError
    ├── ConnectionFailedError
    │   └── ConnectionTimeoutError
    ├── NotReadyError
    ├── RateLimitExceededError
    ├── QueryFailedError
    ├── TransactionFailedError
    ├── SchemaMismatchError
    ├── DataValidationError
    ├── BackupError
    └── RecoveryFailedError

All exceptions track:
- Error kind (what went wrong, from DatabaseErrorKind)
- Operation (where the failure occurred)
- State information (database name, backend, attempts, etc.)
- User recoverability (can an operator fix this?)
- Recovery action (what to do next)
"""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional
import sqlite3


class DatabaseErrorKind(Enum):
    """Kinds of persistence failures (not exception types)."""
    NONE = "none"
    CONNECTION_FAILED = "connection_failed"
    INITIALIZATION_FAILED = "initialization_failed"
    INVALID_CONFIG = "invalid_config"
    QUERY_FAILED = "query_failed"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    DATABASE_CORRUPTED = "database_corrupted"
    DISK_FULL = "disk_full"
    INVALID_OPERATION = "invalid_operation"
    CONNECTION_LOST = "connection_lost"
    RECOVERY_FAILED = "recovery_failed"
    BACKUP_FAILED = "backup_failed"
    SCHEMA_MISMATCH = "schema_mismatch"
    DATA_VALIDATION_FAILED = "data_validation_failed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TRANSACTION_FAILED = "transaction_failed"
    NOT_READY = "not_ready"
    FILE_LOCK_ERROR = "file_lock_error"
    BACKUP_RESTORE_FAILED = "backup_restore_failed"
    UNKNOWN = "unknown"


class PersistenceError(Exception):
    """
    Base exception for statistics persistence failures.

    Attributes:
        message: Human-readable error message
        kind: DatabaseErrorKind classifying the failure
        operation: Where the failure occurred (e.g., "initialize", "save")
        error_code: Unique error code for this failure
        state_info: State information (database name, backend, attempts, etc.)
        user_recoverable: Can an operator recover from this error?
        recovery_action: What action should be taken
        timestamp: When the exception was raised
    """

    default_kind = DatabaseErrorKind.UNKNOWN
    default_code = "DB_000"

    def __init__(
        self,
        message: str,
        kind: Optional[DatabaseErrorKind] = None,
        operation: str = "unknown",
        error_code: Optional[str] = None,
        state_info: Optional[Dict[str, Any]] = None,
        user_recoverable: bool = False,
        recovery_action: Optional[str] = None
    ):
        self.message = message
        self.kind = kind or self.default_kind
        self.operation = operation
        self.error_code = error_code or self.default_code
        self.state_info = state_info or {}
        self.user_recoverable = user_recoverable
        self.recovery_action = recovery_action
        self.timestamp = datetime.now().isoformat()

        super().__init__(self._build_error_message())

    def _build_error_message(self) -> str:
        """Build comprehensive error message with all context"""
        lines = [
            f"[{self.error_code}] {self.message}",
            f"Operation: {self.operation} ({self.kind.value})",
        ]

        if self.state_info:
            lines.append("State Information:")
            for key, value in self.state_info.items():
                lines.append(f"  {key}: {value}")

        if self.recovery_action:
            lines.append(f"Recovery Action: {self.recovery_action}")

        return "\n".join(lines)

    def summary(self) -> str:
        """One-line summary suitable for admin command output."""
        text = f"{self.kind.value}: {self.message}"
        if self.recovery_action:
            text += f" ({self.recovery_action})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_code": self.error_code,
            "kind": self.kind.value,
            "message": self.message,
            "operation": self.operation,
            "state_info": self.state_info,
            "user_recoverable": self.user_recoverable,
            "recovery_action": self.recovery_action,
            "timestamp": self.timestamp
        }


class InvalidConfigError(PersistenceError):
    """
    Raised when configuration or initialization inputs are invalid.

    Examples:
    - Empty or unsafe database name
    - Remote backend without a connection string
    - Non-positive intervals or limits in settings
    """

    default_kind = DatabaseErrorKind.INVALID_CONFIG
    default_code = "DB_CONFIG_001"

    def __init__(self, message: str, kind: Optional[DatabaseErrorKind] = None, **kwargs):
        kwargs.setdefault("user_recoverable", True)
        kwargs.setdefault("recovery_action", "Fix the persistence configuration and re-initialize")
        super().__init__(message, kind=kind, **kwargs)


class ConnectionFailedError(PersistenceError):
    """Raised when a backend connection cannot be opened or verified."""

    default_kind = DatabaseErrorKind.CONNECTION_FAILED
    default_code = "DB_CONN_002"

    def __init__(self, message: str, kind: Optional[DatabaseErrorKind] = None, **kwargs):
        kwargs.setdefault("user_recoverable", True)
        kwargs.setdefault("recovery_action", "Check that the data store is reachable")
        super().__init__(message, kind=kind, **kwargs)


class ConnectionTimeoutError(ConnectionFailedError):
    """Raised when connection verification exceeds the wall-clock ceiling."""

    default_kind = DatabaseErrorKind.TIMEOUT
    default_code = "DB_CONN_003"


class NotReadyError(PersistenceError):
    """
    Raised when an operation is requested outside the READY state.

    Callers on player-facing paths queue the operation instead of
    surfacing this error.
    """

    default_kind = DatabaseErrorKind.NOT_READY
    default_code = "DB_STATE_004"

    def __init__(self, operation: str, state: str, **kwargs):
        super().__init__(
            f"Database is not ready (state: {state})",
            operation=operation,
            state_info={"state": state, **kwargs.pop("state_info", {})},
            user_recoverable=True,
            recovery_action="Retry once the database has recovered",
            **kwargs
        )
        self.state = state


class RateLimitExceededError(PersistenceError):
    """Raised when more operations are attempted than the per-second cap allows."""

    default_kind = DatabaseErrorKind.RATE_LIMIT_EXCEEDED
    default_code = "DB_RATE_005"

    def __init__(self, operation: str, limit: int, **kwargs):
        super().__init__(
            f"Operation rate limit of {limit}/s exceeded",
            operation=operation,
            state_info={"limit": limit},
            user_recoverable=True,
            recovery_action="Retry the operation later",
            **kwargs
        )
        self.limit = limit


class QueryFailedError(PersistenceError):
    """Raised by drivers when a query or command fails."""

    default_kind = DatabaseErrorKind.QUERY_FAILED
    default_code = "DB_QUERY_006"


class TransactionFailedError(PersistenceError):
    """Raised when a transaction cannot begin or commit."""

    default_kind = DatabaseErrorKind.TRANSACTION_FAILED
    default_code = "DB_TX_007"


class SchemaMismatchError(PersistenceError):
    """Raised when the stored schema cannot be created, read or upgraded."""

    default_kind = DatabaseErrorKind.SCHEMA_MISMATCH
    default_code = "DB_SCHEMA_008"

    def __init__(self, message: str, stored_version: int = 0, expected_version: int = 0, **kwargs):
        state_info = {
            "stored_version": stored_version,
            "expected_version": expected_version,
            **kwargs.pop("state_info", {})
        }
        super().__init__(message, state_info=state_info, **kwargs)
        self.stored_version = stored_version
        self.expected_version = expected_version


class DataValidationError(PersistenceError):
    """Raised when a statistics record fails validation."""

    default_kind = DatabaseErrorKind.DATA_VALIDATION_FAILED
    default_code = "DB_DATA_009"


class BackupError(PersistenceError):
    """Raised when a backup cannot be created, pruned or restored."""

    default_kind = DatabaseErrorKind.BACKUP_FAILED
    default_code = "DB_BACKUP_010"


class RecoveryFailedError(PersistenceError):
    """Raised (and recorded) when automatic recovery is abandoned."""

    default_kind = DatabaseErrorKind.RECOVERY_FAILED
    default_code = "DB_RECOVERY_011"

    def __init__(self, attempts: int, **kwargs):
        super().__init__(
            f"Automatic recovery abandoned after {attempts} attempts",
            operation="recovery",
            state_info={"attempts": attempts, **kwargs.pop("state_info", {})},
            user_recoverable=False,
            recovery_action="Operator intervention required: check the data store and re-initialize",
            **kwargs
        )
        self.attempts = attempts


def classify_driver_error(error: BaseException) -> DatabaseErrorKind:
    """
    Map a raw driver exception onto an error kind.

    Args:
        error: Exception raised by a storage driver

    Returns:
        DatabaseErrorKind best describing the failure
    """
    if isinstance(error, PersistenceError):
        return error.kind

    text = str(error).lower()

    if isinstance(error, sqlite3.DatabaseError):
        if "locked" in text or "busy" in text:
            return DatabaseErrorKind.FILE_LOCK_ERROR
        if "full" in text:
            return DatabaseErrorKind.DISK_FULL
        if "not a database" in text or "malformed" in text or "corrupt" in text:
            return DatabaseErrorKind.DATABASE_CORRUPTED
        if "closed" in text:
            return DatabaseErrorKind.CONNECTION_LOST
        return DatabaseErrorKind.QUERY_FAILED

    if isinstance(error, PermissionError):
        return DatabaseErrorKind.PERMISSION_DENIED
    if isinstance(error, TimeoutError):
        return DatabaseErrorKind.TIMEOUT
    if isinstance(error, OSError) and "no space" in text:
        return DatabaseErrorKind.DISK_FULL

    return DatabaseErrorKind.UNKNOWN


class ErrorTracker:
    """
    Per-kind error counters with a bounded history of recent contexts.

    Attributes:
        max_contexts: Number of recent context strings retained per kind
    """

    def __init__(self, max_contexts: int = 10):
        self.max_contexts = max_contexts
        self._counts: Dict[DatabaseErrorKind, int] = {}
        self._contexts: Dict[DatabaseErrorKind, Deque[str]] = {}

    def record(self, kind: DatabaseErrorKind, context: str) -> None:
        """Count an error and remember its context."""
        if kind == DatabaseErrorKind.NONE:
            return
        self._counts[kind] = self._counts.get(kind, 0) + 1
        contexts = self._contexts.setdefault(kind, deque(maxlen=self.max_contexts))
        contexts.append(f"{datetime.now().isoformat()} {context}")

    def count(self, kind: DatabaseErrorKind) -> int:
        return self._counts.get(kind, 0)

    def contexts(self, kind: DatabaseErrorKind) -> List[str]:
        return list(self._contexts.get(kind, ()))

    def clear(self) -> None:
        self._counts.clear()
        self._contexts.clear()

    def to_dict(self) -> Dict[str, int]:
        return {kind.value: count for kind, count in self._counts.items()}
