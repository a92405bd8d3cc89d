"""
Backup metadata model.

Each backup is described by one JSON sidecar ({backup_id}.meta.json) next to
its artifact. The record is created in the 'running' state before the dump
starts, moved to 'completed' or 'failed' exactly once, and never changed
afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from cadangkan.utils.formatting import format_bytes
from .errors import MetadataError


METADATA_VERSION = '1.0'
TOOL_NAME = 'cadangkan'
TOOL_VERSION = '0.1.0'

STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'

BACKUP_ID_FORMAT = '%Y-%m-%d-%H%M%S'


def format_backup_id(moment: datetime) -> str:
    """
    Build a backup identifier from a timestamp.

    Format: YYYY-MM-DD-HHMMSS (e.g. "2025-01-02-143022"). Lexicographic order
    of identifiers equals chronological order.
    """
    return moment.strftime(BACKUP_ID_FORMAT)


def parse_backup_id(backup_id: str) -> datetime:
    """
    Parse a backup identifier back into a naive local datetime.

    Raises:
        ValueError: If the identifier is not in YYYY-MM-DD-HHMMSS form
    """
    try:
        return datetime.strptime(backup_id, BACKUP_ID_FORMAT)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid backup ID format: {backup_id!r}") from e


def now_local() -> datetime:
    """Current time as a timezone-aware local datetime."""
    return datetime.now().astimezone()


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp from a sidecar.

    Accepts a trailing 'Z' and fractional seconds longer than microseconds.
    The zero time written by older tools for unset fields maps to None.
    Naive values are interpreted as local time.
    """
    if not value:
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    # Trim nanosecond fractions down to microseconds
    if '.' in text:
        head, _, rest = text.partition('.')
        digits = ''
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"

    parsed = datetime.fromisoformat(text)
    if parsed.year <= 1:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


@dataclass
class DatabaseInfo:
    """The database a backup was taken from."""
    type: str = 'mysql'
    host: str = ''
    port: int = 3306
    database: str = ''
    version: str = ''


@dataclass
class BackupFileInfo:
    """The stored artifact."""
    file: str = ''
    size_bytes: int = 0
    size_human: str = ''
    compression: str = ''
    checksum: str = ''


@dataclass
class BackupOptionsInfo:
    """Options the backup was taken with."""
    schema_only: bool = False
    tables: List[str] = field(default_factory=list)
    exclude_tables: List[str] = field(default_factory=list)


@dataclass
class ToolInfo:
    """Provenance of the tool that wrote the backup."""
    name: str = TOOL_NAME
    version: str = TOOL_VERSION
    mysqldump_version: str = ''


@dataclass
class BackupMetadata:
    """Persisted record describing one backup."""
    backup_id: str
    database: DatabaseInfo = field(default_factory=DatabaseInfo)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: int = 0
    status: str = STATUS_RUNNING
    backup: BackupFileInfo = field(default_factory=BackupFileInfo)
    options: BackupOptionsInfo = field(default_factory=BackupOptionsInfo)
    tool: ToolInfo = field(default_factory=ToolInfo)
    error: str = ''
    version: str = METADATA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the sidecar JSON layout."""
        tool = {
            'name': self.tool.name,
            'version': self.tool.version,
        }
        if self.tool.mysqldump_version:
            tool['mysqldump_version'] = self.tool.mysqldump_version

        data = {
            'version': self.version,
            'backup_id': self.backup_id,
            'database': {
                'type': self.database.type,
                'host': self.database.host,
                'port': self.database.port,
                'database': self.database.database,
                'version': self.database.version,
            },
            'created_at': format_timestamp(self.created_at),
            'completed_at': format_timestamp(self.completed_at),
            'duration_seconds': self.duration_seconds,
            'status': self.status,
            'backup': {
                'file': self.backup.file,
                'size_bytes': self.backup.size_bytes,
                'size_human': self.backup.size_human,
                'compression': self.backup.compression,
                'checksum': self.backup.checksum,
            },
            'options': {
                'schema_only': self.options.schema_only,
                'tables': list(self.options.tables),
                'exclude_tables': list(self.options.exclude_tables),
            },
            'tool': tool,
        }
        if self.error:
            data['error'] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupMetadata':
        """
        Build a record from parsed sidecar JSON.

        Raises:
            MetadataError: If the payload is not a JSON object or has bad values
        """
        if not isinstance(data, dict):
            raise MetadataError('', 'metadata must be a JSON object')

        backup_id = data.get('backup_id') or ''
        try:
            database = data.get('database') or {}
            backup = data.get('backup') or {}
            options = data.get('options') or {}
            tool = data.get('tool') or {}

            return cls(
                version=data.get('version') or METADATA_VERSION,
                backup_id=backup_id,
                database=DatabaseInfo(
                    type=database.get('type') or 'mysql',
                    host=database.get('host') or '',
                    port=int(database.get('port') or 0),
                    database=database.get('database') or '',
                    version=database.get('version') or '',
                ),
                created_at=parse_timestamp(data.get('created_at')),
                completed_at=parse_timestamp(data.get('completed_at')),
                duration_seconds=int(data.get('duration_seconds') or 0),
                status=data.get('status') or '',
                backup=BackupFileInfo(
                    file=backup.get('file') or '',
                    size_bytes=int(backup.get('size_bytes') or 0),
                    size_human=backup.get('size_human') or '',
                    compression=backup.get('compression') or '',
                    checksum=backup.get('checksum') or '',
                ),
                options=BackupOptionsInfo(
                    schema_only=bool(options.get('schema_only', False)),
                    tables=list(options.get('tables') or []),
                    exclude_tables=list(options.get('exclude_tables') or []),
                ),
                tool=ToolInfo(
                    name=tool.get('name') or TOOL_NAME,
                    version=tool.get('version') or '',
                    mysqldump_version=tool.get('mysqldump_version') or '',
                ),
                error=data.get('error') or '',
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise MetadataError(backup_id, f"invalid metadata field: {e}") from e

    def mark_failed(self, error: BaseException, completed_at: Optional[datetime] = None):
        """Move a running record to 'failed' with the error text."""
        self.status = STATUS_FAILED
        self.completed_at = completed_at or now_local()
        self.duration_seconds = _elapsed_seconds(self.created_at, self.completed_at)
        self.error = str(error) or error.__class__.__name__

    def mark_completed(
        self,
        size_bytes: int,
        checksum: str,
        completed_at: Optional[datetime] = None
    ):
        """Move a running record to 'completed' with the artifact details."""
        self.status = STATUS_COMPLETED
        self.completed_at = completed_at or now_local()
        self.duration_seconds = _elapsed_seconds(self.created_at, self.completed_at)
        self.backup.size_bytes = size_bytes
        self.backup.size_human = format_bytes(size_bytes)
        self.backup.checksum = checksum

    def validate(self):
        """
        Check the structural invariants of the record.

        Raises:
            MetadataError: If a required field is missing or the status
                invariants do not hold
        """
        if not self.backup_id:
            raise MetadataError('', 'backup ID is required')
        if not self.database.database:
            raise MetadataError(self.backup_id, 'database name is required')
        if not self.status:
            raise MetadataError(self.backup_id, 'status is required')
        if self.status == STATUS_FAILED:
            if not self.error:
                raise MetadataError(self.backup_id, 'failed backup must carry an error')
            if self.completed_at is None:
                raise MetadataError(self.backup_id, 'failed backup must have completed_at')
        if self.status == STATUS_COMPLETED and not self.backup.checksum:
            raise MetadataError(self.backup_id, 'completed backup must carry a checksum')


def create_initial_metadata(
    backup_id: str,
    database: str,
    host: str,
    port: int,
    file_name: str,
    compression: str,
    schema_only: bool = False,
    tables: Optional[List[str]] = None,
    exclude_tables: Optional[List[str]] = None,
    created_at: Optional[datetime] = None
) -> BackupMetadata:
    """Create the 'running' record at the start of a backup."""
    return BackupMetadata(
        backup_id=backup_id,
        database=DatabaseInfo(host=host, port=port, database=database),
        created_at=created_at or now_local(),
        status=STATUS_RUNNING,
        backup=BackupFileInfo(file=file_name, compression=compression),
        options=BackupOptionsInfo(
            schema_only=schema_only,
            tables=list(tables or []),
            exclude_tables=list(exclude_tables or []),
        ),
    )


def _elapsed_seconds(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds()))
