"""
Persistence Module

Player statistics records, validation, the repository, the pending
operation queue and the player-facing persister.
"""

from .pending_operations import DeleteStatsOperation, PendingOperationQueue, SaveStatsOperation
from .player_statistics import PlayerStatistics
from .stats_persister import SaveOutcome, StatsPersister
from .stats_repository import PlayerStatsRepository
from .stats_validator import ValidationResult, validate_statistics

__all__ = [
    'DeleteStatsOperation',
    'PendingOperationQueue',
    'PlayerStatistics',
    'PlayerStatsRepository',
    'SaveOutcome',
    'SaveStatsOperation',
    'StatsPersister',
    'ValidationResult',
    'validate_statistics',
]
