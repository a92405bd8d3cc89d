"""
Status reporting across all configured databases.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from cadangkan.backup.health import calculate_health_score, get_health_status, STATUS_CRITICAL
from cadangkan.backup.metadata import STATUS_COMPLETED, STATUS_FAILED
from cadangkan.backup.storage import BackupListEntry, LocalStorage, StorageError
from cadangkan.database_config import ConfigManager
from cadangkan.utils.formatting import format_bytes, format_duration


logger = logging.getLogger(__name__)

RECENT_BACKUPS_LIMIT = 5
LARGEST_BACKUPS_LIMIT = 5


def backup_entry_to_dict(entry: BackupListEntry) -> Dict[str, Any]:
    metadata = entry.metadata
    return {
        'backup_id': entry.backup_id,
        'database': entry.database,
        'status': metadata.status,
        'created_at': metadata.created_at.isoformat() if metadata.created_at else None,
        'completed_at': metadata.completed_at.isoformat() if metadata.completed_at else None,
        'duration_seconds': metadata.duration_seconds,
        'duration_human': format_duration(metadata.duration_seconds),
        'size_bytes': entry.size,
        'size_human': format_bytes(entry.size),
        'compression': metadata.backup.compression,
        'checksum': metadata.backup.checksum,
        'error': metadata.error or None,
    }


class StatusService:
    """
    Builds status reports from the registry and the stored backups.

    Args:
        config_manager: Database registry
        storage: Backup storage
        next_run_lookup: Optional callable returning the next scheduled run of a
            database (a datetime or None)
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        storage: LocalStorage,
        next_run_lookup: Optional[Callable[[str], Any]] = None
    ):
        self.config_manager = config_manager
        self.storage = storage
        self.next_run_lookup = next_run_lookup

    def get_database_status(self, name: str) -> Dict[str, Any]:
        """
        Status of one configured database.

        Raises:
            DatabaseNotFoundError: If name is not configured
        """
        db_config = self.config_manager.get_database(name)

        status = {
            'name': name,
            'type': db_config.type,
            'status': STATUS_CRITICAL,
            'last_backup': None,
            'last_backup_id': None,
            'next_backup': self._next_backup(name),
            'backup_count': 0,
            'successful_count': 0,
            'failed_count': 0,
            'storage_used': 0,
            'storage_used_human': format_bytes(0),
            'recent_backups': [],
        }

        try:
            backups = self.storage.list_backups(name, include_failed=True)
        except StorageError as e:
            logger.warning(f"Could not list backups for {name}: {e}")
            return status

        status['successful_count'] = sum(
            1 for b in backups if b.metadata.status in (STATUS_COMPLETED, '')
        )
        status['failed_count'] = sum(1 for b in backups if b.metadata.status == STATUS_FAILED)
        status['backup_count'] = status['successful_count']
        status['storage_used'] = sum(b.size for b in backups)
        status['storage_used_human'] = format_bytes(status['storage_used'])

        if backups:
            latest = backups[0]
            status['last_backup'] = latest.created_at.isoformat() if latest.created_at else None
            status['last_backup_id'] = latest.backup_id
            status['recent_backups'] = [
                backup_entry_to_dict(b) for b in backups[:RECENT_BACKUPS_LIMIT]
            ]

        score = calculate_health_score(backups)
        status['status'] = get_health_status(score.total_score)
        status['health_score'] = round(score.total_score, 2)
        return status

    def get_overall_status(self) -> Dict[str, Any]:
        """Totals and per-database status for every configured database."""
        databases = []
        for name in self.config_manager.list_databases():
            try:
                databases.append(self.get_database_status(name))
            except Exception as e:
                logger.warning(f"Skipping status of {name}: {e}")

        latest = None
        for db in databases:
            if db['last_backup'] and (latest is None or db['last_backup'] > latest):
                latest = db['last_backup']

        storage_used = sum(db['storage_used'] for db in databases)
        return {
            'database_count': len(databases),
            'active_count': sum(1 for db in databases if db['backup_count'] > 0),
            'total_backups': sum(db['backup_count'] for db in databases),
            'storage_used': storage_used,
            'storage_used_human': format_bytes(storage_used),
            'storage_available': self._available_space(),
            'last_backup': latest,
            'databases': databases,
            'health_summary': generate_health_summary(databases),
        }

    def get_storage_usage(self) -> Dict[str, Any]:
        """Disk usage per database and the largest backups."""
        by_database = []
        all_backups: List[BackupListEntry] = []

        for name in self.config_manager.list_databases():
            try:
                backups = self.storage.list_backups(name)
            except StorageError as e:
                logger.warning(f"Could not list backups for {name}: {e}")
                continue
            all_backups.extend(backups)
            size = sum(b.size for b in backups)
            by_database.append({
                'database': name,
                'backup_count': len(backups),
                'size_bytes': size,
                'size_human': format_bytes(size),
                'percentage': 0.0,
            })

        total = sum(db['size_bytes'] for db in by_database)
        if total > 0:
            for db in by_database:
                db['percentage'] = round(db['size_bytes'] / total * 100.0, 2)
        by_database.sort(key=lambda db: db['size_bytes'], reverse=True)

        largest = sorted(all_backups, key=lambda b: b.size, reverse=True)[:LARGEST_BACKUPS_LIMIT]
        return {
            'total_used': total,
            'total_used_human': format_bytes(total),
            'total_available': self._available_space(),
            'by_database': by_database,
            'largest_backups': [backup_entry_to_dict(b) for b in largest],
        }

    def _available_space(self) -> Optional[int]:
        try:
            return self.storage.check_disk_space()
        except StorageError as e:
            logger.warning(f"Could not read free disk space: {e}")
            return None

    def _next_backup(self, name: str) -> Optional[str]:
        if self.next_run_lookup is None:
            return None
        next_run = self.next_run_lookup(name)
        return next_run.isoformat() if next_run else None


def generate_health_summary(databases: List[Dict[str, Any]]) -> List[str]:
    """Human-readable summary lines for an overall status report."""
    counts = {'healthy': 0, 'warning': 0, 'critical': 0}
    for db in databases:
        if db['status'] in counts:
            counts[db['status']] += 1
    never_backed_up = sum(1 for db in databases if db['backup_count'] == 0)
    total_failed = sum(db['failed_count'] for db in databases)

    summary = []
    if counts['healthy'] and not counts['warning'] and not counts['critical']:
        summary.append('All databases backed up successfully')
    elif counts['healthy']:
        summary.append(f"{counts['healthy']} database(s) healthy")
    if counts['warning']:
        summary.append(f"{counts['warning']} database(s) need attention")
    if counts['critical']:
        summary.append(f"{counts['critical']} database(s) have critical issues")
    if never_backed_up:
        summary.append(f"{never_backed_up} database(s) never backed up")
    if total_failed:
        summary.append(f"{total_failed} failed backup(s) recorded")

    if not summary:
        summary.append('No databases configured')
    return summary
