"""
Restore executor - loads a stored backup back into a database.

Workflow:
1. Resolve the backup record (latest completed, or a given id)
2. Check the artifact exists and matches its recorded checksum
3. Check the target database exists, creating it when asked
4. Optionally back up the target before overwriting it
5. Stream artifact -> decompressor -> mysql client

External dumps (.sql or .sql.gz from any mysqldump-compatible tool) are
imported through the same target checks and mysql client.

Validation failures never start a subprocess.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

from .compression import (
    COMPRESSION_GZIP, COMPRESSION_NONE, CompressionError, Decompressor, calculate_checksum
)
from .errors import (
    BackupError, BackupNotFoundError, ChecksumMismatchError, DumpError, RestoreError,
    ValidationError
)
from .executor import BackupExecutor, BackupOptions, BackupResult
from .metadata import STATUS_COMPLETED, BackupMetadata, now_local
from .mysql_cli import DEFAULT_TIMEOUT, MySQLDumper, MySQLRestorer
from .sources import ConnectionSettings, MySQLSource, SourceError
from .storage import LocalStorage


logger = logging.getLogger(__name__)


@dataclass
class RestoreOptions:
    """What to restore and where."""
    database: str
    config_name: Optional[str] = None
    target_database: Optional[str] = None
    backup_id: Optional[str] = None
    create_database: bool = False
    dry_run: bool = False
    backup_first: bool = False

    @property
    def storage_name(self) -> str:
        return self.config_name or self.database

    @property
    def target(self) -> str:
        return self.target_database or self.database


@dataclass
class RestoreResult:
    """Outcome of a restore (or a dry run)."""
    backup_id: str
    target_database: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    dry_run: bool = False
    database_created: bool = False
    would_create: bool = False
    bytes_restored: int = 0
    pre_restore_backup: Optional[BackupResult] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'backup_id': self.backup_id,
            'target_database': self.target_database,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat(),
            'duration_seconds': round(self.duration_seconds, 3),
            'dry_run': self.dry_run,
            'database_created': self.database_created,
            'would_create': self.would_create,
            'bytes_restored': self.bytes_restored,
            'pre_restore_backup': (
                self.pre_restore_backup.backup_id if self.pre_restore_backup else None
            ),
            'logs': list(self.logs),
        }


@dataclass
class ImportResult:
    """Outcome of importing an external dump file."""
    file_path: str
    target_database: str
    compression: str
    size_bytes: int
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    database_created: bool = False
    bytes_imported: int = 0
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'file_path': self.file_path,
            'target_database': self.target_database,
            'compression': self.compression,
            'size_bytes': self.size_bytes,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat(),
            'duration_seconds': round(self.duration_seconds, 3),
            'database_created': self.database_created,
            'bytes_imported': self.bytes_imported,
            'logs': list(self.logs),
        }


def detect_compression(file_path: str) -> str:
    """gzip for *.gz files, otherwise plain SQL."""
    if file_path.lower().endswith('.gz'):
        return COMPRESSION_GZIP
    return COMPRESSION_NONE


class RestoreExecutor:
    """
    Orchestrates the restore workflow for one server.
    """

    def __init__(
        self,
        storage: LocalStorage,
        settings: ConnectionSettings,
        source: MySQLSource,
        restorer: Optional[MySQLRestorer] = None,
        backup_executor: Optional[BackupExecutor] = None
    ):
        """
        Initialize restore executor.

        Args:
            storage: Storage holding the backups
            settings: Connection settings of the target server
            source: Connected source for the target server
            restorer: mysql client wrapper (built from settings if omitted)
            backup_executor: Used for backup-first (built from settings if omitted)
        """
        self.storage = storage
        self.settings = settings
        self.source = source
        self.restorer = restorer or MySQLRestorer(
            settings, timeout=settings.command_timeout or DEFAULT_TIMEOUT
        )
        self.backup_executor = backup_executor
        self.logs = []

    def restore(self, options: RestoreOptions) -> RestoreResult:
        """
        Restore a backup.

        Args:
            options: Restore options

        Returns:
            RestoreResult

        Raises:
            RestoreError: If the target is missing or the load fails
            BackupNotFoundError: If no matching backup or artifact exists
            ChecksumMismatchError: If the artifact was modified
        """
        started_at = now_local()
        target = options.target
        if not target:
            raise RestoreError('', 'target database is required')

        name = options.storage_name
        metadata = self._resolve_backup(name, options.backup_id)
        backup_id = metadata.backup_id
        compression = metadata.backup.compression or COMPRESSION_GZIP
        path = self.storage.get_backup_path(name, backup_id, compression)
        self._log(f"Restoring backup {name}/{backup_id} into {target}")

        if not os.path.exists(path):
            raise BackupNotFoundError(backup_id, name)

        if metadata.backup.checksum:
            try:
                actual = calculate_checksum(path)
            except CompressionError as e:
                raise RestoreError(target, f"failed to verify checksum: {e}") from e
            if actual != metadata.backup.checksum:
                raise ChecksumMismatchError(backup_id, metadata.backup.checksum, actual)
            self._log('Checksum verified')

        exists = self._check_target(target, options.create_database)

        result = RestoreResult(
            backup_id=backup_id,
            target_database=target,
            started_at=started_at,
            completed_at=started_at,
            duration_seconds=0,
            dry_run=options.dry_run
        )

        if not exists:
            if options.dry_run:
                result.would_create = True
                self._log(f"Dry run: would create database {target}")
            else:
                self._create_target(target)
                result.database_created = True

        if options.dry_run:
            self._log('Dry run: validation passed, nothing restored')
            return self._finish(result)

        if options.backup_first and exists:
            result.pre_restore_backup = self._backup_target(options)

        try:
            with open(path, 'rb') as artifact:
                reader = Decompressor(compression).decompress_to_reader(artifact)
                result.bytes_restored = self.restorer.restore(target, reader, log=self._log)
        except (DumpError, CompressionError) as e:
            raise RestoreError(target, f"restore failed: {e}") from e
        except OSError as e:
            raise RestoreError(target, f"failed to open backup file: {e}") from e

        self._log(f"Restore completed ({result.bytes_restored} bytes of SQL loaded)")
        return self._finish(result)

    def import_file(self, file_path: str, target: str, create_database: bool = False) -> ImportResult:
        """
        Load an external SQL dump into a database.

        The codec is chosen from the file extension: *.gz is gunzipped,
        anything else is sent as plain SQL.

        Args:
            file_path: Dump file on this host
            target: Database to load into
            create_database: Create the target if it does not exist

        Returns:
            ImportResult

        Raises:
            ValidationError: If the file is missing or is a directory
            RestoreError: If the target is missing or the load fails
        """
        started_at = now_local()
        if not target:
            raise RestoreError('', 'target database is required')
        if not os.path.exists(file_path):
            raise ValidationError('file', f"file not found: {file_path}")
        if os.path.isdir(file_path):
            raise ValidationError('file', f"path is a directory, not a file: {file_path}")

        compression = detect_compression(file_path)
        result = ImportResult(
            file_path=file_path,
            target_database=target,
            compression=compression,
            size_bytes=os.path.getsize(file_path),
            started_at=started_at,
            completed_at=started_at,
            duration_seconds=0
        )
        self._log(f"Importing {file_path} ({compression}) into {target}")

        if not self._check_target(target, create_database):
            self._create_target(target)
            result.database_created = True

        try:
            with open(file_path, 'rb') as dump:
                reader = Decompressor(compression).decompress_to_reader(dump)
                result.bytes_imported = self.restorer.restore(target, reader, log=self._log)
        except (DumpError, CompressionError) as e:
            raise RestoreError(target, f"import failed: {e}") from e
        except OSError as e:
            raise RestoreError(target, f"failed to open dump file: {e}") from e

        self._log(f"Import completed ({result.bytes_imported} bytes of SQL loaded)")
        return self._finish(result)

    def _check_target(self, target: str, create_database: bool) -> bool:
        """Whether target exists; a missing target is an error unless it may be created."""
        try:
            exists = self.source.database_exists(target)
        except SourceError as e:
            raise RestoreError(target, f"failed to check if database exists: {e}") from e
        if not exists and not create_database:
            raise RestoreError(
                target, 'database does not exist (set create_database to create it)'
            )
        return exists

    def _create_target(self, target: str):
        try:
            self.source.create_database(target)
        except SourceError as e:
            raise RestoreError(target, f"failed to create database: {e}") from e
        self._log(f"Created database {target}")

    def _resolve_backup(self, name: str, backup_id: Optional[str]) -> BackupMetadata:
        """Find the requested record, or the newest completed one."""
        backups = self.storage.list_backups(name)
        if backup_id:
            for entry in backups:
                if entry.backup_id == backup_id:
                    return entry.metadata
            raise BackupNotFoundError(backup_id, name)

        for entry in backups:
            if entry.metadata.status == STATUS_COMPLETED:
                return entry.metadata
        raise BackupNotFoundError('latest', name)

    def _backup_target(self, options: RestoreOptions) -> BackupResult:
        target = options.target
        storage_name = options.storage_name if target == options.database else target
        self._log(f"Backing up {target} before restore")

        executor = self.backup_executor or BackupExecutor(
            self.storage, self.settings, source=self.source
        )
        try:
            backup = executor.execute(BackupOptions(database=target, config_name=storage_name))
        except BackupError as e:
            raise RestoreError(target, f"pre-restore backup failed: {e}") from e
        self._log(f"Pre-restore backup created: {backup.backup_id}")
        return backup

    def _finish(self, result):
        result.completed_at = now_local()
        result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        result.logs = list(self.logs)
        return result

    def _log(self, message: str):
        timestamp = now_local().strftime('%Y-%m-%d %H:%M:%S %z')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def _restore_executor(services, settings, source) -> RestoreExecutor:
    return RestoreExecutor(
        services.storage,
        settings,
        source,
        restorer=MySQLRestorer(settings, binary=services.mysql_binary, timeout=services.dump_timeout),
        backup_executor=BackupExecutor(
            services.storage,
            settings,
            source=source,
            dumper=MySQLDumper(settings, binary=services.mysqldump_binary, timeout=services.dump_timeout),
            locks=services.locks
        )
    )


def _server_source(settings: ConnectionSettings) -> MySQLSource:
    """Connect to the server itself; the target schema may not exist yet."""
    source = MySQLSource(replace(settings, database=''))
    source.connect()
    return source


def execute_restore_job(name: str, services, options: RestoreOptions) -> RestoreResult:
    """
    Restore a backup of a configured database.

    The connection settings of the configured database are used for the
    target server.

    Raises:
        DatabaseNotFoundError: If name is not configured
        SourceError: If the server cannot be reached
    """
    db_config = services.config_manager.get_database(name)
    settings = db_config.to_connection_settings(
        services.encryptor,
        timeout=services.connect_timeout,
        command_timeout=services.dump_timeout
    )
    options.config_name = name
    if not options.database:
        options.database = db_config.database

    source = _server_source(settings)
    try:
        return _restore_executor(services, settings, source).restore(options)
    finally:
        source.close()


def execute_import_job(
    name: str,
    services,
    file_path: str,
    target_database: Optional[str] = None,
    create_database: bool = False
) -> ImportResult:
    """
    Import an external dump into a configured server.

    Args:
        name: Configured database name
        services: Application services
        file_path: Dump file (.sql or .sql.gz)
        target_database: Database to load into; defaults to the configured one
        create_database: Create the target if it does not exist

    Raises:
        DatabaseNotFoundError: If name is not configured
        SourceError: If the server cannot be reached
    """
    db_config = services.config_manager.get_database(name)
    settings = db_config.to_connection_settings(
        services.encryptor,
        timeout=services.connect_timeout,
        command_timeout=services.dump_timeout
    )
    target = target_database or db_config.database

    source = _server_source(settings)
    try:
        executor = _restore_executor(services, settings, source)
        return executor.import_file(file_path, target, create_database=create_database)
    finally:
        source.close()
