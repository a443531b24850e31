"""
Mock Storage Driver

SQLite-backed driver with fault injection, for testing retry, rollback,
health-check and recovery paths without a broken real database.
"""

from typing import Dict, List, Sequence, Any

from stat_tracker.database.drivers import QueryResult, SQLiteDriver
from stat_tracker.database.errors import (
    ConnectionFailedError,
    DatabaseErrorKind,
    QueryFailedError,
    TransactionFailedError,
)


class FaultPlan:
    """
    Failures shared by every driver a factory creates.

    Attributes:
        offline: Connect and every query fail as if the store were unreachable
        query_failures: Remaining failures per query substring (-1 = forever)
        commit_failures: Remaining commit failures
        calls: Number of executions seen per registered substring
    """

    def __init__(self):
        self.offline = False
        self.query_failures: Dict[str, int] = {}
        self.commit_failures = 0
        self.calls: Dict[str, int] = {}

    def fail_query(self, fragment: str, times: int = 1) -> None:
        """Fail the next ``times`` queries containing ``fragment``."""
        self.query_failures[fragment] = times
        self.calls.setdefault(fragment, 0)

    def fail_query_always(self, fragment: str) -> None:
        self.fail_query(fragment, -1)

    def check_query(self, query: str) -> None:
        if self.offline:
            raise QueryFailedError(
                "Store unreachable",
                kind=DatabaseErrorKind.CONNECTION_LOST,
                operation="execute_query"
            )
        for fragment, remaining in self.query_failures.items():
            if fragment not in query:
                continue
            self.calls[fragment] += 1
            if remaining == 0:
                continue
            if remaining > 0:
                self.query_failures[fragment] = remaining - 1
            raise QueryFailedError(
                f"Injected failure for '{fragment}'",
                operation="execute_query"
            )


class FlakySQLiteDriver(SQLiteDriver):
    """
    SQLiteDriver that consults a FaultPlan before every operation.

    Keeps a log of executed statements for assertions.
    """

    def __init__(self, name: str, database_path, plan: FaultPlan = None):
        super().__init__(name, database_path)
        self.plan = plan or FaultPlan()
        self.executed: List[str] = []

    def connect(self) -> None:
        if self.plan.offline:
            raise ConnectionFailedError("Store unreachable", operation="connect")
        super().connect()

    def execute_query(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        self.executed.append(" ".join(query.split()))
        self.plan.check_query(query)
        return super().execute_query(query, params)

    def commit(self) -> None:
        if self.plan.commit_failures:
            self.plan.commit_failures -= 1
            # leave the transaction open so the caller has to roll back
            raise TransactionFailedError("Injected commit failure", operation="commit")
        super().commit()

    def is_connected(self) -> bool:
        return not self.plan.offline and super().is_connected()

    def writes(self, fragment: str) -> List[str]:
        """Executed statements containing ``fragment``."""
        return [query for query in self.executed if fragment in query]


class FlakyDriverFactory:
    """
    Driver factory for DatabaseLifecycleManager that builds FlakySQLiteDrivers.

    Attributes:
        plan: FaultPlan shared by all created drivers
        created: Drivers in creation order
    """

    def __init__(self, plan: FaultPlan = None):
        self.plan = plan or FaultPlan()
        self.created: List[FlakySQLiteDriver] = []

    def __call__(self, info, settings) -> FlakySQLiteDriver:
        # remote backends have no file; keep them in memory
        driver = FlakySQLiteDriver(info.database_name, info.file_path or ":memory:", self.plan)
        self.created.append(driver)
        return driver

    @property
    def latest(self) -> FlakySQLiteDriver:
        return self.created[-1]
