"""
Transaction Context Module

Provides a context manager for atomic multi-statement work on a storage
driver, with automatic commit/rollback handling.

Usage:
    Basic transaction:
        with TransactionContext(driver) as tx:
            driver.execute_query("UPDATE player_stats ...")
            driver.execute_query("INSERT INTO player_stats ...")
            # Auto-commits on success, auto-rolls back on exception

    Explicit commit:
        with TransactionContext(driver) as tx:
            driver.execute_query("INSERT ...")
            tx.commit()

Commit failures are raised as ``TransactionFailedError`` after the
transaction has been rolled back. Rollback failures are logged and never
replace the exception that caused the rollback.
"""

import logging
from enum import Enum

from .drivers import StorageDriver
from .errors import DatabaseErrorKind, PersistenceError, TransactionFailedError


class TransactionState(Enum):
    """Transaction lifecycle states."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionContext:
    """
    Context manager for atomic driver transactions.

    Features:
    - BEGIN on enter, COMMIT on success, ROLLBACK on exception
    - Rollback when COMMIT itself fails
    - Transaction state tracking and validation
    - Detailed logging for debugging

    Attributes:
        driver: Storage driver the transaction runs on
        state: Current transaction state
        operation: Label used in log lines and errors (e.g. "save")
    """

    def __init__(self, driver: StorageDriver, operation: str = "transaction"):
        """
        Initialize transaction context.

        Args:
            driver: Connected storage driver
            operation: Label for logs and errors

        Raises:
            ValueError: If driver is None
            TransactionFailedError: If the driver already has an open transaction
        """
        if driver is None:
            raise ValueError("Driver cannot be None")

        if driver.in_transaction:
            raise TransactionFailedError(
                "Nested transactions are not supported",
                kind=DatabaseErrorKind.INVALID_OPERATION,
                operation=operation,
                state_info={"database": driver.name}
            )

        self.driver = driver
        self.operation = operation
        self.state = TransactionState.INACTIVE
        self.logger = logging.getLogger(__name__)

    def __enter__(self) -> "TransactionContext":
        """
        Begin the transaction.

        Raises:
            TransactionFailedError: If unable to begin transaction
        """
        try:
            self.logger.debug(f"Beginning transaction for {self.operation}")
            self.driver.begin_transaction()
        except PersistenceError as e:
            self.logger.error(f"Failed to begin transaction for {self.operation}: {e.message}")
            self.state = TransactionState.INACTIVE
            if isinstance(e, TransactionFailedError):
                raise
            raise TransactionFailedError(
                f"Could not begin transaction: {e.message}",
                kind=e.kind,
                operation=self.operation,
                state_info={"database": self.driver.name}
            ) from e

        self.state = TransactionState.ACTIVE
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """
        Commit on success, roll back on exception.

        Returns:
            False to propagate exceptions
        """
        if self.state != TransactionState.ACTIVE:
            self.logger.debug(f"Transaction already {self.state.value}, skipping auto-action")
            return False

        if exc_type is None:
            # raises TransactionFailedError after rolling back
            self._commit_internal()
        else:
            self.logger.warning(
                f"Exception in {self.operation} transaction: {exc_type.__name__}: {exc_val}. Rolling back."
            )
            self._safe_rollback()

        return False

    def _commit_internal(self) -> None:
        try:
            self.driver.commit()
        except PersistenceError as e:
            self.logger.error(f"Commit failed for {self.operation}: {e.message}")
            self._safe_rollback()
            raise TransactionFailedError(
                f"Commit failed: {e.message}",
                kind=DatabaseErrorKind.TRANSACTION_FAILED,
                operation=self.operation,
                state_info={"database": self.driver.name, "cause": e.kind.value}
            ) from e

        self.state = TransactionState.COMMITTED
        self.logger.debug(f"Transaction committed for {self.operation}")

    def _safe_rollback(self) -> None:
        """Roll back, logging (never raising) rollback failures."""
        if not self.driver.in_transaction:
            self.state = TransactionState.ROLLED_BACK
            return
        try:
            self.driver.rollback()
            self.logger.debug(f"Transaction rolled back for {self.operation}")
        except PersistenceError as rollback_error:
            self.logger.critical(
                f"Rollback failed for {self.operation}: {rollback_error.message}"
            )
        self.state = TransactionState.ROLLED_BACK

    def commit(self) -> None:
        """
        Explicitly commit the transaction.

        Raises:
            TransactionFailedError: If commit fails
            RuntimeError: If transaction is not active
        """
        if self.state != TransactionState.ACTIVE:
            raise RuntimeError(f"Cannot commit transaction in state: {self.state.value}")

        self._commit_internal()

    def rollback(self) -> None:
        """
        Explicitly rollback the transaction.

        Raises:
            RuntimeError: If transaction is not active
        """
        if self.state != TransactionState.ACTIVE:
            raise RuntimeError(f"Cannot rollback transaction in state: {self.state.value}")

        self._safe_rollback()

    @property
    def is_active(self) -> bool:
        """Check if transaction is currently active."""
        return self.state == TransactionState.ACTIVE

    @property
    def is_committed(self) -> bool:
        """Check if transaction has been committed."""
        return self.state == TransactionState.COMMITTED

    @property
    def is_rolled_back(self) -> bool:
        """Check if transaction has been rolled back."""
        return self.state == TransactionState.ROLLED_BACK

    def __repr__(self) -> str:
        return f"TransactionContext(operation={self.operation}, state={self.state.value})"


def transaction(driver: StorageDriver, operation: str = "transaction") -> TransactionContext:
    """
    Create a transaction context.

    Example:
        with transaction(driver, "delete") as tx:
            driver.execute_query("DELETE FROM player_stats WHERE player_uid = ?", (uid,))
    """
    return TransactionContext(driver, operation)
