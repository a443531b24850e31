"""
Backend types and per-backend connection parameters.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class BackendType(Enum):
    """Supported storage backends."""
    JSON_FILE = "json_file"
    BINARY_FILE = "binary_file"
    MONGODB = "mongodb"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"

    @property
    def is_file_based(self) -> bool:
        return self in (BackendType.JSON_FILE, BackendType.BINARY_FILE)

    @classmethod
    def parse(cls, value: Any) -> "BackendType":
        """Accept an enum member or its string value (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown backend type '{value}' (expected one of: {valid})")


# host, port, database, user, password
REMOTE_DEFAULTS: Dict[BackendType, Dict[str, Any]] = {
    BackendType.MONGODB: {"host": "localhost", "port": 27017, "user": "", "password": ""},
    BackendType.MYSQL: {"host": "localhost", "port": 3306, "user": "stattracker", "password": "stattracker"},
    BackendType.POSTGRESQL: {"host": "localhost", "port": 5432, "user": "stattracker", "password": "stattracker"},
}

FILE_EXTENSIONS = {
    BackendType.JSON_FILE: ".json",
    BackendType.BINARY_FILE: ".db",
}


@dataclass
class ConnectionInfo:
    """
    Connection parameters for one database.

    File backends fill in ``directory`` and ``file_path``; remote backends
    fill in either ``connection_string`` or the host/port defaults.
    """
    backend_type: BackendType
    database_name: str
    connection_string: str = ""
    directory: Optional[Path] = None
    file_path: Optional[Path] = None
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = field(default="", repr=False)

    @classmethod
    def build(
        cls,
        backend_type: BackendType,
        database_name: str,
        data_root: Path,
        connection_string: str = ""
    ) -> "ConnectionInfo":
        """
        Build backend-specific connection parameters.

        Args:
            backend_type: Selected backend
            database_name: Validated database name
            data_root: Profile-scoped data directory
            connection_string: Remote connection string (may be empty)

        Returns:
            ConnectionInfo for the backend
        """
        if backend_type.is_file_based:
            directory = Path(data_root) / "Databases" / database_name
            return cls(
                backend_type=backend_type,
                database_name=database_name,
                directory=directory,
                file_path=directory / f"{database_name}{FILE_EXTENSIONS[backend_type]}",
            )

        defaults = REMOTE_DEFAULTS[backend_type]
        return cls(
            backend_type=backend_type,
            database_name=database_name,
            connection_string=connection_string,
            host=defaults["host"],
            port=defaults["port"],
            user=defaults["user"],
            password=defaults["password"],
        )

    def describe(self) -> str:
        """Human-readable target without credentials."""
        if self.file_path is not None:
            return str(self.file_path)
        if self.connection_string:
            # strip user:password@ from URLs
            scheme, sep, rest = self.connection_string.partition("://")
            if sep and "@" in rest:
                rest = rest.split("@", 1)[1]
            return f"{scheme}{sep}{rest}"
        return f"{self.host}:{self.port}/{self.database_name}"
