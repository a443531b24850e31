"""
Tests for TransactionContext

Validates atomic multi-statement driver transactions with:
- Auto-commit on success
- Auto-rollback on exception
- Rollback when COMMIT fails
- Nested transaction rejection
- Transaction state tracking
"""

import pytest

from stat_tracker.database.drivers import SQLiteDriver
from stat_tracker.database.errors import DatabaseErrorKind, TransactionFailedError
from stat_tracker.database.transaction_context import (
    TransactionContext,
    TransactionState,
    transaction
)

from mocks.mock_storage_driver import FaultPlan, FlakySQLiteDriver


CREATE_TABLE = """
    CREATE TABLE test_players (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        score INTEGER DEFAULT 0
    )
"""


def _count(driver):
    return driver.execute_query("SELECT COUNT(*) AS n FROM test_players").scalar()


@pytest.fixture
def test_driver():
    """In-memory driver with a small test table."""
    driver = SQLiteDriver("test", ":memory:")
    driver.connect()
    driver.execute_query(CREATE_TABLE)
    yield driver
    driver.close()


@pytest.fixture
def flaky_driver():
    driver = FlakySQLiteDriver("flaky", ":memory:", FaultPlan())
    driver.connect()
    driver.execute_query(CREATE_TABLE)
    yield driver
    driver.close()


class TestBasicTransactionContext:
    """Test basic transaction context functionality."""

    def test_auto_commit_on_success(self, test_driver):
        """Test that transaction auto-commits on successful completion."""
        with TransactionContext(test_driver) as tx:
            test_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))
            test_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 2",))
            assert tx.is_active

        assert tx.is_committed
        assert _count(test_driver) == 2
        assert not test_driver.in_transaction

    def test_auto_rollback_on_exception(self, test_driver):
        """Test that transaction auto-rolls back on exception."""
        with pytest.raises(ValueError):
            with TransactionContext(test_driver) as tx:
                test_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))
                raise ValueError("Simulated error")

        assert tx.is_rolled_back
        assert _count(test_driver) == 0

    def test_explicit_commit(self, test_driver):
        """Explicit commit ends the transaction; the context does nothing more on exit."""
        with TransactionContext(test_driver) as tx:
            test_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))
            tx.commit()
            assert tx.is_committed

        assert _count(test_driver) == 1

    def test_explicit_rollback(self, test_driver):
        """Test explicit rollback within transaction."""
        with TransactionContext(test_driver) as tx:
            test_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))
            tx.rollback()
            assert tx.is_rolled_back

        assert _count(test_driver) == 0

    def test_transaction_state_tracking(self, test_driver):
        """Test transaction state changes throughout lifecycle."""
        tx = TransactionContext(test_driver)
        assert tx.state == TransactionState.INACTIVE

        with tx:
            assert tx.state == TransactionState.ACTIVE

        assert tx.state == TransactionState.COMMITTED

    def test_commit_outside_transaction_raises(self, test_driver):
        tx = TransactionContext(test_driver)
        with pytest.raises(RuntimeError):
            tx.commit()
        with pytest.raises(RuntimeError):
            tx.rollback()

    def test_transaction_helper(self, test_driver):
        with transaction(test_driver, "helper") as tx:
            test_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))
        assert tx.operation == "helper"
        assert _count(test_driver) == 1


class TestTransactionFailures:
    """Commit failures, nesting and invalid drivers."""

    def test_none_driver_rejected(self):
        with pytest.raises(ValueError):
            TransactionContext(None)

    def test_nested_transaction_rejected(self, test_driver):
        with TransactionContext(test_driver):
            with pytest.raises(TransactionFailedError) as exc_info:
                TransactionContext(test_driver, "inner")
        assert exc_info.value.kind == DatabaseErrorKind.INVALID_OPERATION

    def test_commit_failure_rolls_back(self, flaky_driver):
        """A failed COMMIT leaves no partial state and surfaces TransactionFailedError."""
        flaky_driver.plan.commit_failures = 1

        with pytest.raises(TransactionFailedError) as exc_info:
            with TransactionContext(flaky_driver, "save") as tx:
                flaky_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))

        assert exc_info.value.kind == DatabaseErrorKind.TRANSACTION_FAILED
        assert exc_info.value.operation == "save"
        assert tx.is_rolled_back
        assert not flaky_driver.in_transaction
        assert _count(flaky_driver) == 0

    def test_original_exception_survives_rollback(self, flaky_driver):
        """The error that caused the rollback is the one the caller sees."""
        with pytest.raises(KeyError):
            with TransactionContext(flaky_driver):
                flaky_driver.execute_query("INSERT INTO test_players (name) VALUES (?)", ("Player 1",))
                raise KeyError("boom")

        assert flaky_driver.stats.rollbacks == 1
