"""
Database Backup Manager

Timestamped directory snapshots for file-based backends.

Layout:
    <backup_root>/<database_name>_<YYYYmmdd_HHMMSS_ffffff>/
        <database_name>.db | <database_name>.json
        backup_info.json

Retention keeps the newest ``max_backups`` snapshots, ordered by the
timestamp embedded in the directory name (not file modification times).

Usage Example:
    manager = BackupManager(Path("profile/StatTracker/Backups"), "StatTracker",
                            BackendType.BINARY_FILE, max_backups=5)
    descriptor = manager.create_backup(Path("profile/StatTracker/Databases/StatTracker"))
    manager.restore_backup(descriptor.name, Path("profile/StatTracker/Databases/StatTracker"))
"""

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .connection_info import BackendType
from .errors import BackupError, DatabaseErrorKind
from stat_tracker.utils.atomic_json import atomic_write_json, read_json


TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
MANIFEST_NAME = "backup_info.json"

# WAL side files are checkpointed into the main file before a backup
SKIPPED_FILES = ("*-wal", "*-shm", "*.tmp", ".write_probe")


@dataclass
class BackupDescriptor:
    """
    Metadata for one backup snapshot.

    Attributes:
        name: Snapshot directory name
        path: Snapshot directory
        database_name: Database that produced the snapshot
        created_at: Timestamp parsed from the directory name
        backend_type: Backend recorded in the manifest (None if missing)
    """
    name: str
    path: Path
    database_name: str
    created_at: datetime
    backend_type: Optional[BackendType] = None

    @classmethod
    def from_path(cls, path: Path, database_name: str) -> Optional["BackupDescriptor"]:
        """Parse a snapshot directory; None if the name does not match."""
        prefix = f"{database_name}_"
        if not path.is_dir() or not path.name.startswith(prefix):
            return None
        try:
            created_at = datetime.strptime(path.name[len(prefix):], TIMESTAMP_FORMAT)
        except ValueError:
            return None

        backend_type = None
        manifest = path / MANIFEST_NAME
        if manifest.exists():
            try:
                backend_type = BackendType.parse(read_json(manifest).get("backend_type"))
            except (OSError, ValueError, AttributeError):
                backend_type = None

        return cls(
            name=path.name,
            path=path,
            database_name=database_name,
            created_at=created_at,
            backend_type=backend_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert backup descriptor to dictionary for serialization"""
        return {
            "name": self.name,
            "path": str(self.path),
            "database_name": self.database_name,
            "created_at": self.created_at.isoformat(),
            "backend_type": self.backend_type.value if self.backend_type else None,
        }


class BackupManager:
    """
    Creates, prunes and restores snapshots of one database directory.

    Attributes:
        backup_root: Directory holding all snapshots
        database_name: Database whose snapshots are managed
        backend_type: Backend recorded in new snapshot manifests
        max_backups: Retention limit
    """

    def __init__(
        self,
        backup_root: Path,
        database_name: str,
        backend_type: BackendType,
        max_backups: int = 5,
        clock: Callable[[], datetime] = datetime.now
    ):
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        self.backup_root = Path(backup_root)
        self.database_name = database_name
        self.backend_type = backend_type
        self.max_backups = max_backups
        self._clock = clock
        self._logger = logging.getLogger(__name__)

    def create_backup(self, source_dir: Path) -> BackupDescriptor:
        """
        Copy ``source_dir`` into a new timestamped snapshot and prune.

        Args:
            source_dir: Database directory to snapshot

        Returns:
            Descriptor for the new snapshot

        Raises:
            BackupError: If the source is missing or the copy fails
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise BackupError(
                f"Database directory does not exist: {source_dir}",
                operation="create_backup",
                state_info={"database": self.database_name}
            )

        created_at = self._clock()
        name = f"{self.database_name}_{created_at.strftime(TIMESTAMP_FORMAT)}"
        destination = self.backup_root / name

        if destination.exists():
            raise BackupError(
                f"Backup already exists: {destination}",
                operation="create_backup",
                state_info={"database": self.database_name}
            )

        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source_dir, destination, ignore=shutil.ignore_patterns(*SKIPPED_FILES))
            atomic_write_json(destination / MANIFEST_NAME, {
                "database_name": self.database_name,
                "backend_type": self.backend_type.value,
                "created_at": created_at.isoformat(),
                "source": str(source_dir),
            }, indent=2)
        except (OSError, shutil.Error) as e:
            shutil.rmtree(destination, ignore_errors=True)
            raise BackupError(
                f"Backup copy failed: {e}",
                operation="create_backup",
                state_info={"database": self.database_name, "destination": str(destination)}
            ) from e

        descriptor = BackupDescriptor(
            name=name,
            path=destination,
            database_name=self.database_name,
            created_at=created_at,
            backend_type=self.backend_type,
        )
        self._logger.info(f"Created backup {name}")

        self.prune()
        return descriptor

    def list_backups(self) -> List[BackupDescriptor]:
        """Snapshots for this database, newest first."""
        if not self.backup_root.is_dir():
            return []
        descriptors = [
            descriptor
            for descriptor in (
                BackupDescriptor.from_path(path, self.database_name)
                for path in self.backup_root.iterdir()
            )
            if descriptor is not None
        ]
        descriptors.sort(key=lambda d: d.created_at, reverse=True)
        return descriptors

    def prune(self) -> List[BackupDescriptor]:
        """
        Delete snapshots beyond ``max_backups``.

        Returns:
            Descriptors of the removed snapshots
        """
        removed = []
        for descriptor in self.list_backups()[self.max_backups:]:
            try:
                shutil.rmtree(descriptor.path)
                removed.append(descriptor)
                self._logger.info(f"Pruned old backup {descriptor.name}")
            except OSError as e:
                self._logger.warning(f"Could not prune backup {descriptor.name}: {e}")
        return removed

    def get_backup(self, name: str) -> Optional[BackupDescriptor]:
        return BackupDescriptor.from_path(self.backup_root / name, self.database_name)

    def restore_backup(self, name: str, target_dir: Path) -> BackupDescriptor:
        """
        Replace ``target_dir`` with the contents of snapshot ``name``.

        The current directory is moved aside as a safety copy and only
        removed once the snapshot has been copied in full; on failure it is
        moved back.

        Raises:
            BackupError: (kind BACKUP_RESTORE_FAILED) if the snapshot is
                unknown or the copy fails
        """
        descriptor = self.get_backup(name)
        if descriptor is None:
            raise BackupError(
                f"Unknown backup: {name}",
                kind=DatabaseErrorKind.BACKUP_RESTORE_FAILED,
                operation="restore_backup",
                state_info={"database": self.database_name}
            )

        target_dir = Path(target_dir)
        safety_dir = target_dir.with_name(f"{target_dir.name}.pre_restore")

        try:
            if safety_dir.exists():
                shutil.rmtree(safety_dir)
            if target_dir.exists():
                target_dir.rename(safety_dir)
            shutil.copytree(
                descriptor.path,
                target_dir,
                ignore=shutil.ignore_patterns(MANIFEST_NAME)
            )
        except (OSError, shutil.Error) as e:
            shutil.rmtree(target_dir, ignore_errors=True)
            if safety_dir.exists():
                safety_dir.rename(target_dir)
            raise BackupError(
                f"Restore failed: {e}",
                kind=DatabaseErrorKind.BACKUP_RESTORE_FAILED,
                operation="restore_backup",
                state_info={"database": self.database_name, "backup": name}
            ) from e

        shutil.rmtree(safety_dir, ignore_errors=True)
        self._logger.info(f"Restored backup {name} into {target_dir}")
        return descriptor
