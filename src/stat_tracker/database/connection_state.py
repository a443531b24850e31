"""
Connection lifecycle states.

    UNINITIALIZED -> CONNECTING -> VERIFYING -> SCHEMA_CHECK -> READY
    READY <-> DEGRADED -> RECOVERING -> READY
    any -> SHUT_DOWN

Only the lifecycle manager changes the state; everything else reads it.
"""

from enum import Enum


class ConnectionState(Enum):
    """Lifecycle phase of the database connection."""
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    VERIFYING = "verifying"
    SCHEMA_CHECK = "schema_check"
    READY = "ready"
    DEGRADED = "degraded"
    RECOVERING = "recovering"
    SHUT_DOWN = "shut_down"

    @property
    def accepts_operations(self) -> bool:
        return self is ConnectionState.READY
