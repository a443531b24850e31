"""
Pytest configuration for test discovery and imports.

Provides fixtures for testing including:
- Persistence settings rooted in a temporary profile directory
- A recording sleep and a manual clock for backoff/timing assertions
- A populated statistics record
"""

import sys
from pathlib import Path

import pytest


# Determine paths
project_root = Path(__file__).parent.parent
src_path = project_root / "src"
tests_path = project_root / "tests"


def _prepend_paths():
    for path in [str(tests_path), str(src_path)]:
        if path in sys.path:
            sys.path.remove(path)
        sys.path.insert(0, path)


def pytest_configure(config):
    """Put src/ and tests/ (for the mocks package) at the front of sys.path."""
    _prepend_paths()


_prepend_paths()

from stat_tracker.config.persistence_settings import PersistenceSettings  # noqa: E402
from stat_tracker.database.connection_info import BackendType  # noqa: E402
from stat_tracker.persistence.player_statistics import PlayerStatistics  # noqa: E402


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns immediately."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class ManualClock:
    """Monotonic clock the test advances explicitly."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# SETTINGS / TIMING FIXTURES
# ============================================================================

@pytest.fixture
def data_root(tmp_path):
    """Profile directory for one test."""
    return tmp_path / "profile"


@pytest.fixture
def settings(data_root):
    """
    Binary-file settings under a temporary profile.

    The free-space floor is disabled so tests do not depend on the host disk.
    """
    return PersistenceSettings(
        backend_type=BackendType.BINARY_FILE,
        database_name="StatTracker",
        data_root=data_root,
        min_free_disk_bytes=0
    )


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return ManualClock()


# ============================================================================
# RECORD FIXTURES
# ============================================================================

@pytest.fixture
def sample_stats():
    """A valid, non-trivial statistics record."""
    stats = PlayerStatistics(
        player_uid="76561198000000001",
        player_name="Rook",
        kills=42,
        bases_captured=3,
        total_xp=5400,
        rank=4,
        supplies_delivered=120,
        supply_delivery_count=6,
        ai_kills=11,
        vehicle_kills=2,
        air_kills=1,
        connection_time=1700000000.0,
        last_session_duration=3600.0,
        total_playtime=86400.0,
    )
    stats.record_death("Bishop", "M4A1", 2)
    stats.record_death("Knight", "RPG-7", 2)
    return stats
