"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate options
2. Take the per-database lock
3. Ensure the database directory and check free space
4. Create the backup record (status: running, in memory only)
5. Stream mysqldump output through the compressor into the artifact
6. Persist the record (status: completed or failed)
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .compression import (
    COMPRESSION_GZIP, COMPRESSION_ZSTD, Compressor, estimate_compressed_size,
    is_supported, verify_checksum
)
from .errors import (
    BackupError, BackupInProgressError, BackupNotFoundError,
    InsufficientSpaceError, MetadataError, ValidationError
)
from .metadata import BackupMetadata, create_initial_metadata, format_backup_id, now_local
from .mysql_cli import DEFAULT_TIMEOUT, MySQLDumper
from .sources import ConnectionSettings, MySQLSource, SourceError
from .storage import SPACE_SAFETY_MARGIN, LocalStorage


logger = logging.getLogger(__name__)

# Assumed dump size when the server cannot be asked
DEFAULT_SIZE_ESTIMATE = 1024 * 1024 * 1024

# Attempts at finding an unused backup id within the same second
ID_COLLISION_RETRIES = 3


class BackupLockRegistry:
    """
    In-process registry of per-database backup locks.

    Locks are keyed by storage name. Acquisition never blocks: a second
    attempt while the lock is held raises BackupInProgressError.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def is_locked(self, name: str) -> bool:
        return self._lock_for(name).locked()

    @contextmanager
    def hold(self, name: str):
        """
        Hold the lock for name for the duration of a block.

        Raises:
            BackupInProgressError: If the lock is already held
        """
        lock = self._lock_for(name)
        if not lock.acquire(blocking=False):
            raise BackupInProgressError(name)
        try:
            yield
        finally:
            lock.release()


# Shared by every executor and retention run in this process
backup_locks = BackupLockRegistry()


@dataclass
class BackupOptions:
    """What to back up and how."""
    database: str
    config_name: Optional[str] = None
    tables: List[str] = field(default_factory=list)
    exclude_tables: List[str] = field(default_factory=list)
    schema_only: bool = False
    compression: str = COMPRESSION_GZIP

    @property
    def storage_name(self) -> str:
        return self.config_name or self.database

    def validate(self):
        """
        Raises:
            ValidationError: If the options are inconsistent
        """
        if not self.database:
            raise ValidationError('database', 'database name is required')
        if self.compression == COMPRESSION_ZSTD:
            raise ValidationError('compression', 'zstd compression not yet implemented')
        if not is_supported(self.compression):
            raise ValidationError('compression', f"unsupported compression type: {self.compression}")
        if self.tables and self.exclude_tables:
            raise ValidationError('tables', 'cannot use both tables and exclude_tables')


@dataclass
class BackupResult:
    """Outcome of a successful backup."""
    backup_id: str
    database: str
    storage_name: str
    file_path: str
    metadata_path: str
    size_bytes: int
    checksum: str
    compression: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    metadata: BackupMetadata
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'backup_id': self.backup_id,
            'database': self.database,
            'storage_name': self.storage_name,
            'file_path': self.file_path,
            'size_bytes': self.size_bytes,
            'size_human': self.metadata.backup.size_human,
            'checksum': self.checksum,
            'compression': self.compression,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat(),
            'duration_seconds': round(self.duration_seconds, 3),
            'logs': list(self.logs),
        }


class BackupExecutor:
    """
    Orchestrates the backup workflow for one server.
    """

    def __init__(
        self,
        storage: LocalStorage,
        settings: ConnectionSettings,
        source: Optional[MySQLSource] = None,
        dumper: Optional[MySQLDumper] = None,
        locks: Optional[BackupLockRegistry] = None
    ):
        """
        Initialize backup executor.

        Args:
            storage: Storage the artifact and record go to
            settings: Connection settings of the source server
            source: Connected source used for the size estimate and version;
                optional, a 1 GiB estimate is used without it
            dumper: mysqldump wrapper (built from settings if omitted)
            locks: Lock registry (defaults to the process-wide one)
        """
        self.storage = storage
        self.settings = settings
        self.source = source
        self.dumper = dumper or MySQLDumper(settings, timeout=settings.command_timeout or DEFAULT_TIMEOUT)
        self.locks = locks or backup_locks
        self.logs = []
        self._sleep = time.sleep

    def execute(self, options: BackupOptions) -> BackupResult:
        """
        Run a backup.

        Args:
            options: Backup options

        Returns:
            BackupResult describing the stored artifact

        Raises:
            ValidationError: If options are invalid (nothing is started)
            BackupInProgressError: If a backup for the same name is running
            InsufficientSpaceError: If the disk is too full
            DumpError: If mysqldump fails
            CompressionError: If writing the artifact fails
        """
        options.validate()
        name = options.storage_name

        with self.locks.hold(name):
            self._log(f"Starting backup of database {options.database} (storage: {name})")
            self.storage.ensure_database_dir(name)
            self._check_disk_space(options)
            return self._run(options)

    def _run(self, options: BackupOptions) -> BackupResult:
        name = options.storage_name
        backup_id, created_at = self._next_backup_id(name, options.compression)
        file_path = self.storage.get_backup_path(name, backup_id, options.compression)
        metadata_path = self.storage.get_metadata_path(name, backup_id)

        metadata = create_initial_metadata(
            backup_id=backup_id,
            database=options.database,
            host=self.settings.host,
            port=self.settings.port,
            file_name=os.path.basename(file_path),
            compression=options.compression,
            schema_only=options.schema_only,
            tables=options.tables,
            exclude_tables=options.exclude_tables,
            created_at=created_at,
        )
        started_at = metadata.created_at
        self._log(f"Backup ID: {backup_id}")

        try:
            compressor = Compressor(options.compression)
            compress_result = self.dumper.dump(
                options.database,
                lambda stdout: compressor.stream_compress(stdout, file_path),
                tables=options.tables,
                exclude_tables=options.exclude_tables,
                schema_only=options.schema_only,
                log=self._log
            )
        except Exception as e:
            self._log(f"Backup failed: {e}")
            self.storage.cleanup_partial_backup(name, backup_id, options.compression)
            metadata.mark_failed(e)
            try:
                self.storage.save_metadata(metadata, name)
            except Exception as save_error:
                logger.error(f"Failed to save failed backup record {backup_id}: {save_error}")
            raise

        size = os.path.getsize(file_path)
        metadata.mark_completed(size, compress_result.checksum)
        metadata.tool.mysqldump_version = self.dumper.get_version()
        if self.source is not None and self.source.is_connected():
            try:
                metadata.database.version = self.source.get_version()
            except SourceError as e:
                self._log(f"Warning: could not read server version: {e}")

        try:
            self.storage.save_metadata(metadata, name)
        except Exception as e:
            self._log(f"Failed to save backup record: {e}")
            self.storage.cleanup_partial_backup(name, backup_id, options.compression)
            raise

        self._log(
            f"Backup completed: {metadata.backup.file} "
            f"({metadata.backup.size_human}, {compress_result.bytes_read} bytes dumped)"
        )

        return BackupResult(
            backup_id=backup_id,
            database=options.database,
            storage_name=name,
            file_path=file_path,
            metadata_path=metadata_path,
            size_bytes=size,
            checksum=compress_result.checksum,
            compression=options.compression,
            started_at=started_at,
            completed_at=metadata.completed_at,
            duration_seconds=(metadata.completed_at - started_at).total_seconds(),
            metadata=metadata,
            logs=list(self.logs)
        )

    def _check_disk_space(self, options: BackupOptions):
        estimate = DEFAULT_SIZE_ESTIMATE
        if self.source is not None and self.source.is_connected():
            try:
                raw_size = self.source.get_database_size(options.database)
                estimate = estimate_compressed_size(raw_size, options.compression)
            except SourceError as e:
                self._log(f"Could not estimate database size, assuming 1 GiB: {e}")

        available = self.storage.check_disk_space()
        required = int(estimate * SPACE_SAFETY_MARGIN)
        if available < required:
            raise InsufficientSpaceError(str(self.storage.base_path), required, available)

    def _next_backup_id(self, name: str, compression: str) -> Tuple[str, datetime]:
        """Pick a free id; the id and the record's created_at share one clock reading."""
        for _ in range(ID_COLLISION_RETRIES):
            created_at = now_local()
            backup_id = format_backup_id(created_at)
            taken = (
                self.storage.backup_exists(name, backup_id)
                or os.path.exists(self.storage.get_backup_path(name, backup_id, compression))
            )
            if not taken:
                return backup_id, created_at
            self._log(f"Backup ID {backup_id} already in use, waiting for the next second")
            self._sleep(1)
        raise BackupError(f"could not allocate a unique backup ID for {name}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = now_local().strftime('%Y-%m-%d %H:%M:%S %z')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def verify_backup(storage: LocalStorage, database: str, backup_id: str) -> bool:
    """
    Check a stored artifact against its recorded checksum.

    Returns:
        True if the checksums match

    Raises:
        BackupNotFoundError: If the record or artifact does not exist
        MetadataError: If the record has no checksum
    """
    metadata = storage.load_metadata(database, backup_id)
    path = storage.get_backup_path(database, backup_id, metadata.backup.compression)
    if not os.path.exists(path):
        raise BackupNotFoundError(backup_id, database)
    if not metadata.backup.checksum:
        raise MetadataError(backup_id, 'backup has no recorded checksum')
    return verify_checksum(path, metadata.backup.checksum)


def execute_backup_job(name: str, services, options: Optional[BackupOptions] = None) -> BackupResult:
    """
    Run a backup for a configured database.

    Args:
        name: Configured database name
        services: Application services (config manager, storage, encryptor, settings)
        options: Overrides; defaults to a full backup with the default codec

    Returns:
        BackupResult

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

    if options is None:
        options = BackupOptions(database=db_config.database, compression=services.default_compression)
    options.config_name = name
    if not options.database:
        options.database = db_config.database

    source = MySQLSource(settings)
    source.connect()
    try:
        executor = BackupExecutor(
            services.storage,
            settings,
            source=source,
            dumper=MySQLDumper(settings, binary=services.mysqldump_binary, timeout=services.dump_timeout),
            locks=services.locks
        )
        return executor.execute(options)
    finally:
        source.close()
