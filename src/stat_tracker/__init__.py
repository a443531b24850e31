"""
Stat Tracker Persistence

Resilient storage for per-player game statistics: connection lifecycle,
validated repository, write-behind queue, schema versioning, health checks
and backups.
"""

from .config.persistence_settings import PersistenceSettings
from .database.connection_info import BackendType
from .database.connection_state import ConnectionState
from .database.lifecycle_manager import DatabaseLifecycleManager
from .persistence.player_statistics import PlayerStatistics
from .persistence.stats_persister import SaveOutcome, StatsPersister

__version__ = "1.0.0"

__all__ = [
    'BackendType',
    'ConnectionState',
    'DatabaseLifecycleManager',
    'PersistenceSettings',
    'PlayerStatistics',
    'SaveOutcome',
    'StatsPersister',
]
