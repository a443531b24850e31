"""
Configuration Module

Persistence tunables loaded from defaults, a JSON file and STATTRACKER_*
environment variables.
"""

from .persistence_settings import ENV_PREFIX, PersistenceSettings

__all__ = ['ENV_PREFIX', 'PersistenceSettings']
