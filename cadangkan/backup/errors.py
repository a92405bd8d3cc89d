"""
Error kinds raised by the backup, restore and retention pipelines.

Every error derives from BackupError so callers can catch the whole family,
and each carries the structured fields a caller needs to explain what failed
without parsing the message text.
"""

from typing import Optional

from cadangkan.utils.formatting import format_bytes


class BackupError(Exception):
    """Base class for all backup lifecycle failures."""
    pass


class ValidationError(BackupError):
    """Raised when backup or restore options are invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"validation error: {field}: {message}")


class InsufficientSpaceError(BackupError):
    """Raised when the backup root does not have room for the estimated dump."""

    def __init__(self, path: str, required: int, available: int):
        self.path = path
        self.required = required
        self.available = available
        super().__init__(
            f"insufficient disk space at {path}: "
            f"need ~{format_bytes(required)}, have {format_bytes(available)}"
        )


class DumpError(BackupError):
    """Raised when the dump or load utility fails or reports problems."""

    def __init__(
        self,
        database: str,
        command: str,
        stderr: str = '',
        exit_code: int = 0,
        message: Optional[str] = None
    ):
        self.database = database
        self.command = command
        self.stderr = stderr or ''
        self.exit_code = exit_code
        self.message = message

        text = f"{command} error for database {database} (exit code {exit_code})"
        if message:
            text += f": {message}"
        if self.stderr:
            stderr_text = self.stderr.strip()
            if len(stderr_text) > 500:
                stderr_text = stderr_text[:500] + '... (truncated)'
            text += f": {stderr_text}"
        super().__init__(text)


class MetadataError(BackupError):
    """Raised when a metadata sidecar is malformed or incomplete."""

    def __init__(self, backup_id: str, message: str):
        self.backup_id = backup_id
        self.message = message
        super().__init__(f"metadata error for backup {backup_id}: {message}")


class BackupNotFoundError(BackupError):
    """Raised when a backup (metadata or artifact) does not exist."""

    def __init__(self, backup_id: str, database: str = ''):
        self.backup_id = backup_id
        self.database = database
        if database:
            super().__init__(f"backup {backup_id} not found for database {database}")
        else:
            super().__init__(f"backup {backup_id} not found")


class ChecksumMismatchError(BackupError):
    """Raised when an artifact's digest differs from the recorded one."""

    def __init__(self, backup_id: str, expected: str, actual: str):
        self.backup_id = backup_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"checksum mismatch for backup {backup_id}: expected {expected}, got {actual}"
        )


class RestoreError(BackupError):
    """Raised when a restore cannot be carried out."""

    def __init__(self, database: str, message: str):
        self.database = database
        self.message = message
        super().__init__(f"restore error for database {database}: {message}")


class BackupInProgressError(BackupError):
    """Raised when another backup already holds the lock for a database."""

    def __init__(self, database: str):
        self.database = database
        super().__init__(f"a backup is already in progress for database {database}")
