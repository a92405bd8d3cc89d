"""
Backup module for Cadangkan.

This module handles the core backup lifecycle including:
- Storage layout (artifacts and metadata sidecars)
- Compression and checksums
- Backup and restore orchestration
- Retention policy enforcement
- Health scoring
"""

from .errors import (
    BackupError, BackupInProgressError, BackupNotFoundError, ChecksumMismatchError,
    DumpError, InsufficientSpaceError, MetadataError, RestoreError, ValidationError
)
from .compression import Compressor, Decompressor, CompressionError, UnsupportedCompressionError
from .storage import LocalStorage, StorageError
from .sources import ConnectionSettings, MySQLSource, SourceError
from .executor import BackupExecutor, BackupOptions, BackupResult, backup_locks
from .restore import RestoreExecutor, RestoreOptions, RestoreResult
from .retention import RetentionManager, RetentionPolicy
from .health import HealthScore, calculate_health_score

__all__ = [
    'BackupError',
    'BackupInProgressError',
    'BackupNotFoundError',
    'ChecksumMismatchError',
    'DumpError',
    'InsufficientSpaceError',
    'MetadataError',
    'RestoreError',
    'ValidationError',
    'Compressor',
    'Decompressor',
    'CompressionError',
    'UnsupportedCompressionError',
    'LocalStorage',
    'StorageError',
    'ConnectionSettings',
    'MySQLSource',
    'SourceError',
    'BackupExecutor',
    'BackupOptions',
    'BackupResult',
    'backup_locks',
    'RestoreExecutor',
    'RestoreOptions',
    'RestoreResult',
    'RetentionManager',
    'RetentionPolicy',
    'HealthScore',
    'calculate_health_score'
]
