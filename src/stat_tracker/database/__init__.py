"""
Database Module

Storage drivers, transactions, schema management and the connection
lifecycle for the statistics store. Supports embedded SQLite and JSON
document backends; remote backends plug in through driver factories.

The lifecycle manager is imported from its own module
(``stat_tracker.database.lifecycle_manager``).
"""

from .connection_info import BackendType, ConnectionInfo
from .connection_state import ConnectionState
from .drivers import JsonDocumentDriver, QueryResult, SQLiteDriver, StorageDriver
from .errors import DatabaseErrorKind, PersistenceError
from .transaction_context import TransactionContext, TransactionState, transaction

__all__ = [
    'BackendType',
    'ConnectionInfo',
    'ConnectionState',
    'DatabaseErrorKind',
    'JsonDocumentDriver',
    'PersistenceError',
    'QueryResult',
    'SQLiteDriver',
    'StorageDriver',
    'TransactionContext',
    'TransactionState',
    'transaction',
]
