"""
Persistence Settings

Tunables for the statistics persistence subsystem. Settings are resolved in
three layers, later layers overriding earlier ones:

1. Built-in defaults (the dataclass field defaults below)
2. An optional JSON settings file
3. ``STATTRACKER_*`` environment variables (a ``.env`` file is honoured)

Usage:
    settings = PersistenceSettings.load("config/persistence.json")
    manager = DatabaseLifecycleManager(settings)
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import load_dotenv

from stat_tracker.database.connection_info import BackendType
from stat_tracker.database.errors import InvalidConfigError


logger = logging.getLogger(__name__)

ENV_PREFIX = "STATTRACKER_"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class PersistenceSettings:
    """
    Persistence tunables.

    Times suffixed ``_ms`` are milliseconds, ``_minutes`` minutes.
    """

    backend_type: BackendType = BackendType.JSON_FILE
    database_name: str = "StatTracker"
    connection_string: str = ""
    data_root: Path = Path("./profile/StatTracker")

    # Connection establishment
    connection_timeout_ms: int = 30000
    query_timeout_ms: int = 10000
    max_retry_attempts: int = 3
    retry_delay_ms: int = 1000

    # Repository retries
    query_retry_attempts: int = 3
    query_retry_delay_ms: int = 50

    # Backups
    backup_interval_minutes: int = 60
    max_backups: int = 5

    # Pending operation queue
    max_pending_operations: int = 1000
    max_operation_attempts: int = 10
    drain_interval_ms: int = 5000

    # Health and recovery
    health_check_interval_ms: int = 300000
    auto_recovery_threshold: int = 3
    recovery_check_interval_ms: int = 300000
    max_recovery_attempts: int = 3
    maintenance_interval_minutes: int = 1440

    operation_rate_limit: int = 100
    min_free_disk_bytes: int = 1024 * 1024

    # Level for the driver and transaction loggers; empty leaves them alone
    database_log_level: str = ""

    def __post_init__(self):
        try:
            self.backend_type = BackendType.parse(self.backend_type)
        except ValueError as e:
            raise InvalidConfigError(str(e), operation="load_settings")
        self.data_root = Path(self.data_root)
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            InvalidConfigError: If any tunable is out of range
        """
        problems = []

        if not isinstance(self.database_name, str) or not self.database_name.strip():
            problems.append("database_name must be a non-empty string")

        level = self.database_log_level
        if level and (not isinstance(level, str) or level.upper() not in LOG_LEVELS):
            problems.append(f"database_log_level must be one of {', '.join(LOG_LEVELS)} (got {level!r})")

        for f in fields(self):
            if f.type is not int:
                continue
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int):
                problems.append(f"{f.name} must be an integer (got {value!r})")
            elif f.name == "min_free_disk_bytes":
                if value < 0:
                    problems.append(f"{f.name} must be >= 0")
            elif value <= 0:
                problems.append(f"{f.name} must be > 0 (got {value})")

        if problems:
            raise InvalidConfigError(
                "Invalid persistence settings",
                operation="load_settings",
                state_info={"problems": problems}
            )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "PersistenceSettings":
        """
        Build settings from a mapping, ignoring unknown keys with a warning.

        Raises:
            InvalidConfigError: If a value cannot be converted or is out of range
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}

        for key, raw in values.items():
            f = known.get(key)
            if f is None:
                logger.warning(f"Ignoring unknown persistence setting '{key}'")
                continue
            kwargs[key] = _coerce(key, f.type, raw)

        return cls(**kwargs)

    @classmethod
    def from_env(
        cls,
        base: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None
    ) -> "PersistenceSettings":
        """
        Build settings from ``STATTRACKER_*`` environment variables.

        Args:
            base: Values the environment overrides (e.g. from a JSON file)
            environ: Environment mapping (defaults to ``os.environ`` after
                loading ``.env``)
            dotenv_path: Explicit ``.env`` file to load

        Returns:
            PersistenceSettings
        """
        if environ is None:
            load_dotenv(dotenv_path=dotenv_path)
            environ = os.environ

        values: Dict[str, Any] = dict(base or {})
        names = {f.name for f in fields(cls)}

        for key, raw in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            name = key[len(ENV_PREFIX):].lower()
            if name in names:
                values[name] = raw

        return cls.from_dict(values)

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None
    ) -> "PersistenceSettings":
        """
        Resolve defaults, then the JSON file at ``path`` (if it exists), then
        the environment.

        Raises:
            InvalidConfigError: If the file is not valid JSON or values are invalid
        """
        file_values: Dict[str, Any] = {}

        if path is not None and Path(path).exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    file_values = json.load(fh)
            except (OSError, json.JSONDecodeError) as e:
                raise InvalidConfigError(
                    f"Could not read settings file: {e}",
                    operation="load_settings",
                    state_info={"path": str(path)}
                )
            if not isinstance(file_values, dict):
                raise InvalidConfigError(
                    "Settings file must contain a JSON object",
                    operation="load_settings",
                    state_info={"path": str(path)}
                )
            logger.info(f"Loaded persistence settings from {path}")

        return cls.from_env(base=file_values, environ=environ)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["backend_type"] = self.backend_type.value
        data["data_root"] = str(self.data_root)
        return data

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def databases_dir(self) -> Path:
        return self.data_root / "Databases"

    @property
    def backups_dir(self) -> Path:
        return self.data_root / "Backups"

    @property
    def pending_snapshot_path(self) -> Path:
        return self.data_root / "pending_operations.json"


def _coerce(name: str, target: Any, raw: Any) -> Any:
    """Convert a raw file/env value into the field's type."""
    if target is int:
        if isinstance(raw, bool):
            raise InvalidConfigError(f"{name} must be an integer", operation="load_settings")
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise InvalidConfigError(
                f"{name} must be an integer (got {raw!r})",
                operation="load_settings"
            )
    if target is Path:
        return Path(str(raw))
    if target is BackendType:
        return raw
    return str(raw)
