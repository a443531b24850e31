"""
Tests for PlayerStatsRepository

Covers validated writes, transactional rollback, lookup retries with
backoff, corrupted-row handling and leaderboard queries. Drivers are real
SQLite files wrapped with fault injection.
"""

import asyncio
from datetime import datetime

import pytest

from mocks.mock_storage_driver import FaultPlan, FlakySQLiteDriver

from stat_tracker.database import drivers
from stat_tracker.database.drivers import JsonDocumentDriver
from stat_tracker.database.errors import NotReadyError, RateLimitExceededError
from stat_tracker.database.retry import RetryPolicy
from stat_tracker.database.schema import SchemaManager
from stat_tracker.persistence.player_statistics import PlayerStatistics
from stat_tracker.persistence.stats_repository import (
    UNKNOWN_PLAYER_NAME,
    PlayerStatsRepository,
    significant_changes,
)


LOOKUP = "SELECT * FROM player_stats WHERE"
UID = "76561198000000001"


@pytest.fixture
def plan():
    return FaultPlan()


@pytest.fixture
def driver(tmp_path, plan):
    driver = FlakySQLiteDriver("StatTracker", tmp_path / "StatTracker.db", plan)
    driver.connect()
    SchemaManager(driver).ensure_schema()
    yield driver
    driver.close()


def run_with_repository(driver, fake_sleep, scenario, guard=None, attempts=3, on_error=None):
    """Build the repository inside the event loop and run ``scenario(repository)``."""
    async def main():
        repository = PlayerStatsRepository(
            driver,
            guard or (lambda operation: None),
            RetryPolicy(attempts=attempts, base_delay_ms=50),
            sleep=fake_sleep,
            on_error=on_error
        )
        return await scenario(repository)

    return asyncio.run(main())


def insert_raw_row(driver, uid, **columns):
    now = datetime.now().isoformat()
    values = {"player_name": "Rook", **columns}
    names = ["player_uid"] + list(values) + ["created_at", "updated_at"]
    driver.execute_query(
        f"INSERT INTO player_stats ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
        (uid,) + tuple(values.values()) + (now, now)
    )


class TestSaveAndLoad:
    """Round trips through the player_stats table."""

    def test_round_trip(self, driver, fake_sleep, sample_stats):
        async def scenario(repository):
            assert await repository.save(UID, "Rook", sample_stats)
            return await repository.load(UID)

        loaded = run_with_repository(driver, fake_sleep, scenario)

        assert loaded.kills == 42
        assert loaded.killed_by == ["Bishop", "Knight"]
        assert loaded.killed_by_team == [2, 2]
        assert loaded.total_playtime == 86400.0
        assert loaded.created_at is not None
        assert fake_sleep.delays == []

    def test_second_save_replaces_row(self, driver, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            updated = sample_stats.copy()
            updated.kills = 43
            await repository.save(UID, "Rook II", updated)
            return await repository.load(UID)

        loaded = run_with_repository(driver, fake_sleep, scenario)

        assert loaded.kills == 43
        assert loaded.player_name == "Rook II"
        assert driver.execute_query("SELECT COUNT(*) FROM player_stats").scalar() == 1
        assert len(driver.writes("UPDATE player_stats")) == 1

    def test_missing_player_gets_fresh_record(self, driver, fake_sleep):
        async def scenario(repository):
            return await repository.load("nobody")

        loaded = run_with_repository(driver, fake_sleep, scenario)

        assert loaded == PlayerStatistics.fresh("nobody")

    def test_empty_name_becomes_unknown_player(self, driver, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save(UID, "", sample_stats)
            return await repository.load(UID)

        assert run_with_repository(driver, fake_sleep, scenario).player_name == UNKNOWN_PLAYER_NAME

    def test_save_does_not_modify_callers_record(self, driver, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save("someone-else", "Other", sample_stats)

        run_with_repository(driver, fake_sleep, scenario)

        assert sample_stats.player_uid == UID
        assert sample_stats.created_at is None

    def test_significant_change_is_logged(self, driver, fake_sleep, sample_stats, caplog):
        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            improved = sample_stats.copy()
            improved.kills += 15
            improved.rank += 1
            await repository.save(UID, "Rook", improved)

        with caplog.at_level("INFO"):
            run_with_repository(driver, fake_sleep, scenario)

        assert "kills +15" in caplog.text
        assert "rank 4 -> 5" in caplog.text


class TestRejectedSaves:
    """Invalid input never reaches the table."""

    def test_invalid_stats_rejected(self, driver, fake_sleep, sample_stats):
        sample_stats.kills = -1

        async def scenario(repository):
            saved = await repository.save(UID, "Rook", sample_stats)
            return saved, repository.stats

        saved, stats = run_with_repository(driver, fake_sleep, scenario)

        assert saved is False
        assert stats.rejected_saves == 1
        assert driver.writes("INSERT INTO player_stats") == []

    @pytest.mark.parametrize("uid, record", [("", "stats"), (UID, None)])
    def test_missing_uid_or_record(self, driver, fake_sleep, sample_stats, uid, record):
        async def scenario(repository):
            return await repository.save(uid, "Rook", sample_stats if record else None)

        assert run_with_repository(driver, fake_sleep, scenario) is False


class TestTransactions:
    """A failed commit leaves no partial state."""

    def test_commit_failure_rolls_back(self, driver, plan, fake_sleep, sample_stats):
        plan.commit_failures = 1
        errors = []

        async def scenario(repository):
            saved = await repository.save(UID, "Rook", sample_stats)
            return saved, await repository.load(UID), repository.stats

        saved, loaded, stats = run_with_repository(driver, fake_sleep, scenario, on_error=errors.append)

        assert saved is False
        assert loaded == PlayerStatistics.fresh(UID)
        assert stats.failed_saves == 1
        assert not driver.in_transaction
        assert len(errors) == 1

    def test_failed_update_keeps_previous_row(self, driver, plan, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            plan.fail_query("UPDATE player_stats")
            changed = sample_stats.copy()
            changed.kills = 99
            saved = await repository.save(UID, "Rook", changed)
            return saved, await repository.load(UID)

        saved, loaded = run_with_repository(driver, fake_sleep, scenario)

        assert saved is False
        assert loaded.kills == 42

    def test_failed_document_write_leaves_no_row(self, tmp_path, fake_sleep, sample_stats, monkeypatch):
        """On the JSON backend a save whose document write fails is not visible afterwards."""
        json_driver = JsonDocumentDriver("StatTracker", tmp_path / "StatTracker.json")
        json_driver.connect()
        SchemaManager(json_driver).ensure_schema()

        def disk_full(*args, **kwargs):
            raise OSError(28, "No space left on device")

        async def scenario(repository):
            monkeypatch.setattr(drivers, "atomic_write_json", disk_full)
            saved = await repository.save(UID, "Rook", sample_stats)
            monkeypatch.undo()
            return saved, await repository.load(UID)

        try:
            saved, loaded = run_with_repository(json_driver, fake_sleep, scenario)
            assert saved is False
            assert loaded == PlayerStatistics.fresh(UID)
            assert not json_driver.in_transaction
        finally:
            json_driver.close()

        reopened = JsonDocumentDriver("StatTracker", tmp_path / "StatTracker.json")
        reopened.connect()
        try:
            assert reopened.execute_query("SELECT COUNT(*) FROM player_stats").scalar() == 0
        finally:
            reopened.close()


class TestLookupRetries:
    """Lookups retry with linear backoff; only the final failure surfaces."""

    def test_transient_failures_then_success(self, driver, plan, fake_sleep, sample_stats):
        plan.fail_query(LOOKUP, times=2)

        async def scenario(repository):
            return await repository.save(UID, "Rook", sample_stats)

        assert run_with_repository(driver, fake_sleep, scenario) is True
        assert plan.calls[LOOKUP] == 3
        assert fake_sleep.delays == pytest.approx([0.05, 0.10])

    def test_persistent_failure_gives_up_after_policy(self, driver, plan, fake_sleep, sample_stats):
        plan.fail_query_always(LOOKUP)

        async def scenario(repository):
            return await repository.save(UID, "Rook", sample_stats), repository.stats

        saved, stats = run_with_repository(driver, fake_sleep, scenario, attempts=4)

        assert saved is False
        assert plan.calls[LOOKUP] == 4
        assert len(fake_sleep.delays) == 3
        assert stats.failed_saves == 1
        assert driver.writes("INSERT INTO player_stats") == []

    def test_failed_load_serves_fresh_record(self, driver, plan, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            plan.fail_query_always(LOOKUP)
            return await repository.load(UID), repository.stats

        loaded, stats = run_with_repository(driver, fake_sleep, scenario)

        assert loaded == PlayerStatistics.fresh(UID)
        assert stats.failed_loads == 1


class TestCorruptedRows:
    """Unreadable or invalid stored rows are replaced by fresh records."""

    def test_invalid_row_serves_fresh_record(self, driver, fake_sleep, caplog):
        insert_raw_row(driver, UID, kills=-5)

        async def scenario(repository):
            return await repository.load(UID), repository.stats

        with caplog.at_level("WARNING"):
            loaded, stats = run_with_repository(driver, fake_sleep, scenario)

        assert loaded == PlayerStatistics.fresh(UID, "Rook")
        assert stats.corrupted_rows == 1
        assert caplog.text.count("failed validation") == 1

    def test_unreadable_history_serves_fresh_record(self, driver, fake_sleep):
        insert_raw_row(driver, UID, killed_by="{not json")

        async def scenario(repository):
            return await repository.load(UID)

        assert run_with_repository(driver, fake_sleep, scenario).killed_by == []

    def test_save_overwrites_corrupted_row(self, driver, fake_sleep, sample_stats, caplog):
        insert_raw_row(driver, UID, kills=-5)

        async def scenario(repository):
            await repository.load(UID)
            assert await repository.save(UID, "Rook", sample_stats)
            return await repository.load(UID), repository.stats

        with caplog.at_level("WARNING"):
            loaded, stats = run_with_repository(driver, fake_sleep, scenario)

        assert loaded.kills == 42
        assert stats.corrupted_rows == 1
        assert caplog.text.count("failed validation") == 1


class TestQueries:
    """get_all and leaderboards."""

    def save_players(self, repository):
        async def save_all():
            for uid, xp, kills in (("a", 100, 9), ("b", 900, 1), ("c", 500, 5)):
                await repository.save(uid, uid.upper(), PlayerStatistics(total_xp=xp, kills=kills))
        return save_all()

    def test_top_n_by_xp(self, driver, fake_sleep):
        async def scenario(repository):
            await self.save_players(repository)
            return repository.get_top_n(2)

        leaders = run_with_repository(driver, fake_sleep, scenario)

        assert [p.player_uid for p in leaders] == ["b", "c"]

    def test_top_n_by_kills(self, driver, fake_sleep):
        async def scenario(repository):
            await self.save_players(repository)
            return repository.get_top_n(10, sort_field="kills")

        assert [p.player_uid for p in run_with_repository(driver, fake_sleep, scenario)] == ["a", "c", "b"]

    def test_sort_field_whitelist(self, driver, fake_sleep):
        async def scenario(repository):
            with pytest.raises(ValueError):
                repository.get_top_n(5, sort_field="kills; DROP TABLE player_stats")
            with pytest.raises(ValueError):
                repository.get_top_n(5, sort_field="player_name")

        run_with_repository(driver, fake_sleep, scenario)

    def test_non_positive_limit(self, driver, fake_sleep):
        async def scenario(repository):
            await self.save_players(repository)
            return repository.get_top_n(0)

        assert run_with_repository(driver, fake_sleep, scenario) == []

    def test_get_all_skips_corrupted_rows(self, driver, fake_sleep):
        insert_raw_row(driver, "zz", deaths=-1)

        async def scenario(repository):
            await self.save_players(repository)
            return repository.get_all()

        assert [p.player_uid for p in run_with_repository(driver, fake_sleep, scenario)] == ["a", "b", "c"]

    def test_backend_failure_gives_empty_list(self, driver, plan, fake_sleep):
        plan.fail_query("SELECT * FROM player_stats ORDER BY")

        async def scenario(repository):
            return repository.get_all()

        assert run_with_repository(driver, fake_sleep, scenario) == []


class TestDelete:

    def test_delete_existing_then_missing(self, driver, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            first = await repository.delete(UID)
            second = await repository.delete(UID)
            return first, second, await repository.load(UID), repository.stats

        first, second, loaded, stats = run_with_repository(driver, fake_sleep, scenario)

        assert (first, second) == (True, False)
        assert loaded == PlayerStatistics.fresh(UID)
        assert stats.deletes == 1
        assert stats.failed_deletes == 0

    def test_failed_delete(self, driver, plan, fake_sleep, sample_stats):
        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            plan.fail_query("DELETE FROM player_stats")
            return await repository.delete(UID), await repository.load(UID), repository.stats

        deleted, loaded, stats = run_with_repository(driver, fake_sleep, scenario)

        assert deleted is False
        assert loaded.kills == 42
        assert stats.failed_deletes == 1


class TestLoadAsync:
    """Callback-based loading through the driver's async primitive."""

    def test_callback_receives_record_once(self, driver, fake_sleep, sample_stats):
        received = []

        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            await repository.load_async(UID, received.append)

        run_with_repository(driver, fake_sleep, scenario)

        assert len(received) == 1
        assert received[0].kills == 42

    def test_async_callback_is_awaited(self, driver, fake_sleep):
        received = []

        async def callback(record):
            await asyncio.sleep(0)
            received.append(record)

        async def scenario(repository):
            await repository.load_async("nobody", callback)

        run_with_repository(driver, fake_sleep, scenario)

        assert received == [PlayerStatistics.fresh("nobody")]

    def test_raising_callback_is_logged(self, driver, fake_sleep, caplog):
        calls = []

        def callback(record):
            calls.append(record)
            raise RuntimeError("handler broke")

        async def scenario(repository):
            await repository.load_async("nobody", callback)

        with caplog.at_level("ERROR"):
            run_with_repository(driver, fake_sleep, scenario)

        assert len(calls) == 1
        assert "handler broke" in caplog.text

    def test_not_ready_serves_fresh_record(self, driver, fake_sleep):
        received = []

        def guard(operation):
            raise NotReadyError(operation, "recovering")

        async def scenario(repository):
            await repository.load_async(UID, received.append)

        run_with_repository(driver, fake_sleep, scenario, guard=guard)

        assert received == [PlayerStatistics.fresh(UID)]


class TestAccessGuard:
    """Guard errors propagate from the direct operations."""

    @pytest.mark.parametrize("error", [
        NotReadyError("save", "recovering"),
        RateLimitExceededError("save", 100),
    ])
    def test_guard_errors_propagate(self, driver, fake_sleep, sample_stats, error):
        def guard(operation):
            raise error

        async def scenario(repository):
            with pytest.raises(type(error)):
                await repository.save(UID, "Rook", sample_stats)
            with pytest.raises(type(error)):
                await repository.load(UID)
            with pytest.raises(type(error)):
                repository.get_all()

        run_with_repository(driver, fake_sleep, scenario, guard=guard)

        assert driver.writes("INSERT INTO player_stats") == []

    def test_guard_sees_operation_names(self, driver, fake_sleep, sample_stats):
        seen = []

        async def scenario(repository):
            await repository.save(UID, "Rook", sample_stats)
            await repository.load(UID)
            await repository.delete(UID)
            repository.get_top_n(3)

        run_with_repository(driver, fake_sleep, scenario, guard=seen.append)

        assert seen == ["save", "load", "delete", "get_top_n"]


class TestSignificantChanges:

    def test_detects_jumps(self):
        before = PlayerStatistics(kills=10, rank=1)
        after = PlayerStatistics(kills=25, rank=2, bases_captured=10)

        changes = significant_changes(before, after)

        assert "kills +15" in changes
        assert "rank 1 -> 2" in changes
        assert any(change.startswith("score +") for change in changes)

    def test_quiet_when_small(self):
        assert significant_changes(PlayerStatistics(kills=1), PlayerStatistics(kills=2)) == []
