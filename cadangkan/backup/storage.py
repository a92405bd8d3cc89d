"""
Local filesystem storage for backup artifacts and their metadata.

Layout:
    {base_path}/{database}/{backup_id}.sql.gz     (artifact, extension per codec)
    {base_path}/{database}/{backup_id}.meta.json  (metadata sidecar)

The base path is fixed at construction; nothing here reads process-wide
configuration.
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .compression import get_extension
from .errors import BackupError, BackupNotFoundError, MetadataError
from .metadata import STATUS_FAILED, BackupMetadata


logger = logging.getLogger(__name__)

METADATA_SUFFIX = '.meta.json'

# Free space must exceed the estimate by this factor
SPACE_SAFETY_MARGIN = 1.2


class StorageError(BackupError):
    """Raised when a storage operation fails."""

    def __init__(self, path: str, op: str, message: str):
        self.path = str(path)
        self.op = op
        self.message = message
        super().__init__(f"storage error during {op} at {path}: {message}")


@dataclass
class BackupListEntry:
    """A backup found on disk."""
    backup_id: str
    database: str
    metadata: BackupMetadata
    file_path: str
    size: int

    @property
    def created_at(self) -> Optional[datetime]:
        return self.metadata.created_at


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def backup_sort_key(entry: BackupListEntry):
    return (entry.created_at or _EPOCH, entry.backup_id)


class LocalStorage:
    """
    Handler for backups stored in a local directory tree.

    Args:
        base_path: Root directory for backups (e.g. ~/.cadangkan/backups)
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).expanduser()

    def get_database_path(self, database: str) -> str:
        return str(self.base_path / database)

    def get_backup_path(self, database: str, backup_id: str, compression: str) -> str:
        return str(self.base_path / database / f"{backup_id}{get_extension(compression)}")

    def get_metadata_path(self, database: str, backup_id: str) -> str:
        return str(self.base_path / database / f"{backup_id}{METADATA_SUFFIX}")

    def ensure_database_dir(self, database: str) -> str:
        """
        Create the directory for a database if needed.

        Safe to call repeatedly and from concurrent callers.

        Returns:
            The directory path

        Raises:
            StorageError: If the directory cannot be created
        """
        path = self.base_path / database
        try:
            path.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(path, 'mkdir', str(e)) from e
        return str(path)

    def list_databases(self) -> List[str]:
        """Names of all database directories under the base path, sorted."""
        if not self.base_path.exists():
            return []
        try:
            return sorted(p.name for p in self.base_path.iterdir() if p.is_dir())
        except OSError as e:
            raise StorageError(self.base_path, 'list', str(e)) from e

    def list_backups(self, database: str, include_failed: bool = False) -> List[BackupListEntry]:
        """
        List the backups of a database, newest first.

        Sidecars that cannot be parsed are skipped, as are sidecars whose
        artifact is missing. With include_failed, failed records are kept
        even without an artifact so they can be reported.

        Args:
            database: Storage directory name
            include_failed: Also return failed records that have no artifact

        Returns:
            List of BackupListEntry sorted by created_at, newest first

        Raises:
            StorageError: If the directory cannot be read
        """
        db_path = self.base_path / database
        if not db_path.exists():
            return []

        try:
            sidecars = sorted(db_path.glob(f"*{METADATA_SUFFIX}"))
        except OSError as e:
            raise StorageError(db_path, 'list', str(e)) from e

        entries = []
        for sidecar in sidecars:
            backup_id = sidecar.name[:-len(METADATA_SUFFIX)]
            try:
                metadata = self.load_metadata(database, backup_id)
            except (MetadataError, BackupNotFoundError, StorageError) as e:
                logger.debug(f"Skipping unreadable metadata {sidecar}: {e}")
                continue

            artifact = self.get_backup_path(
                database, backup_id, metadata.backup.compression
            )
            if os.path.exists(artifact):
                size = os.path.getsize(artifact)
            elif include_failed and metadata.status == STATUS_FAILED:
                size = 0
            else:
                continue

            entries.append(BackupListEntry(
                backup_id=backup_id,
                database=database,
                metadata=metadata,
                file_path=artifact,
                size=size
            ))

        entries.sort(key=backup_sort_key, reverse=True)
        return entries

    def get_latest_backup(self, database: str) -> BackupListEntry:
        """
        Get the newest backup of a database.

        Raises:
            BackupNotFoundError: If the database has no backups
        """
        backups = self.list_backups(database)
        if not backups:
            raise BackupNotFoundError('latest', database)
        return backups[0]

    def backup_exists(self, database: str, backup_id: str) -> bool:
        """True if a sidecar exists for backup_id."""
        return os.path.exists(self.get_metadata_path(database, backup_id))

    def save_metadata(self, metadata: BackupMetadata, database: Optional[str] = None):
        """
        Write a metadata sidecar atomically (temp file then rename).

        The sidecar goes to the directory of database, which defaults to the
        database recorded in the metadata.

        Raises:
            StorageError: If the sidecar cannot be written
        """
        database = database or metadata.database.database
        self.ensure_database_dir(database)
        path = self.get_metadata_path(database, metadata.backup_id)
        directory = os.path.dirname(path)

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{metadata.backup_id}.", suffix='.tmp', dir=directory
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(metadata.to_dict(), f, indent=2)
                f.write('\n')
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    logger.warning(f"Could not remove temp file {tmp_path}")
            raise StorageError(path, 'write', str(e)) from e

    def load_metadata(self, database: str, backup_id: str) -> BackupMetadata:
        """
        Read a metadata sidecar.

        Raises:
            BackupNotFoundError: If the sidecar does not exist
            MetadataError: If it cannot be parsed
            StorageError: For other read errors
        """
        path = self.get_metadata_path(database, backup_id)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise BackupNotFoundError(backup_id, database) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MetadataError(backup_id, f"failed to parse metadata: {e}") from e
        except OSError as e:
            raise StorageError(path, 'read', str(e)) from e

        metadata = BackupMetadata.from_dict(data)
        if not metadata.backup_id:
            metadata.backup_id = backup_id
        if not metadata.database.database:
            metadata.database.database = database
        return metadata

    def delete_backup(self, database: str, backup_id: str):
        """
        Delete a backup's artifact and sidecar.

        Either file being absent is tolerated.

        Raises:
            StorageError: If a file exists but cannot be removed
        """
        compression = None
        try:
            compression = self.load_metadata(database, backup_id).backup.compression
        except BackupNotFoundError:
            pass
        except (MetadataError, StorageError) as e:
            logger.warning(f"Deleting backup {backup_id} with unreadable metadata: {e}")

        if compression:
            candidates = [self.get_backup_path(database, backup_id, compression)]
        else:
            # Unknown codec, try every artifact name
            candidates = [
                str(self.base_path / database / f"{backup_id}{ext}")
                for ext in ('.sql.gz', '.sql.zst', '.sql')
            ]
        candidates.append(self.get_metadata_path(database, backup_id))

        for path in candidates:
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(path, 'delete', str(e)) from e

        logger.info(f"Deleted backup {database}/{backup_id}")

    def cleanup_partial_backup(self, database: str, backup_id: str, compression: str):
        """Best-effort removal of a partial artifact and sidecar. Never raises."""
        for path in (
            self.get_backup_path(database, backup_id, compression),
            self.get_metadata_path(database, backup_id),
        ):
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to clean up partial backup file {path}: {e}")

    def check_disk_space(self) -> int:
        """
        Free bytes on the filesystem holding the base path.

        Uses the nearest existing ancestor when the base path does not exist.

        Raises:
            StorageError: If the free space cannot be determined
        """
        path = self.base_path
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            return shutil.disk_usage(path).free
        except OSError as e:
            raise StorageError(path, 'statfs', str(e)) from e

    def has_enough_space(self, estimated_size: int) -> bool:
        """True if free space covers the estimate plus a 20% margin."""
        return self.check_disk_space() >= int(estimated_size * SPACE_SAFETY_MARGIN)

    def get_database_usage(self, database: str) -> int:
        """Total bytes of all files under a database directory."""
        db_path = self.base_path / database
        if not db_path.exists():
            return 0
        total = 0
        for path in db_path.iterdir():
            if path.is_file():
                total += path.stat().st_size
        return total
