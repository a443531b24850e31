"""
Tests for retry_async and RetryPolicy

Linear backoff awaited through an injected sleep; only the final failure
surfaces.
"""

import asyncio

import pytest

from stat_tracker.database.errors import QueryFailedError, SchemaMismatchError
from stat_tracker.database.retry import LookupResult, LookupStatus, RetryPolicy, retry_async


class Flaky:
    """Callable that fails a fixed number of times before succeeding."""

    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise QueryFailedError(f"failure {self.calls}")
        return self.result


class TestRetryPolicy:
    """Policy validation and delay schedule."""

    def test_linear_delays(self):
        policy = RetryPolicy(attempts=3, base_delay_ms=50)
        assert policy.delay_for(1) == pytest.approx(0.05)
        assert policy.delay_for(2) == pytest.approx(0.10)

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=-1)


class TestRetryAsync:
    """Attempt counting and error propagation."""

    def test_succeeds_after_two_failures(self, fake_sleep):
        func = Flaky(failures=2)

        result = asyncio.run(retry_async(func, RetryPolicy(3, 50), "lookup", sleep=fake_sleep))

        assert result == "ok"
        assert func.calls == 3
        assert fake_sleep.delays == pytest.approx([0.05, 0.10])

    def test_exhaustion_raises_last_error(self, fake_sleep):
        func = Flaky(failures=10)

        with pytest.raises(QueryFailedError) as exc_info:
            asyncio.run(retry_async(func, RetryPolicy(4, 10), "lookup", sleep=fake_sleep))

        assert func.calls == 4
        assert "failure 4" in exc_info.value.message
        # no sleep after the final attempt
        assert len(fake_sleep.delays) == 3

    def test_non_transient_error_is_not_retried(self, fake_sleep):
        calls = []

        def func():
            calls.append(1)
            raise SchemaMismatchError("broken")

        with pytest.raises(SchemaMismatchError):
            asyncio.run(retry_async(func, RetryPolicy(3, 50), "lookup", sleep=fake_sleep))

        assert len(calls) == 1
        assert fake_sleep.delays == []

    def test_awaitable_attempts(self, fake_sleep):
        func = Flaky(failures=1, result=7)

        async def attempt():
            await asyncio.sleep(0)
            return func()

        assert asyncio.run(retry_async(attempt, RetryPolicy(2, 5), "async", sleep=fake_sleep)) == 7


class TestLookupResult:
    """Explicit found / not found / failed outcomes."""

    def test_constructors(self):
        found = LookupResult.found({"player_uid": "a"})
        assert found.is_found and not found.is_failed

        missing = LookupResult.not_found()
        assert missing.status == LookupStatus.NOT_FOUND
        assert not missing.is_found and not missing.is_failed

        failed = LookupResult.failed(QueryFailedError("x"))
        assert failed.is_failed
        assert failed.error.message == "x"
