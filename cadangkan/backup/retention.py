"""
Retention policy enforcement for backups.

Keeps the newest backup of each of the most recent N calendar months, ISO
weeks and days that have backups, and deletes the rest. A backup counts
toward exactly one bucket, checked in the order monthly, weekly, daily.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .executor import BackupLockRegistry, backup_locks
from .metadata import now_local, parse_backup_id
from .storage import BackupListEntry, LocalStorage, backup_sort_key


logger = logging.getLogger(__name__)

CATEGORY_DAILY = 'daily'
CATEGORY_WEEKLY = 'weekly'
CATEGORY_MONTHLY = 'monthly'
CATEGORY_KEEP = 'keep'
CATEGORY_DELETE = 'delete'


@dataclass
class RetentionPolicy:
    """How many daily, weekly and monthly backups to keep."""
    daily: int = 7
    weekly: int = 4
    monthly: int = 12
    keep_all: bool = False

    def validate(self):
        """
        Raises:
            ValidationError: If a cap is negative or not an integer
        """
        for name in ('daily', 'weekly', 'monthly'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(name, f"retention must be a non-negative integer, got {value!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'daily': self.daily,
            'weekly': self.weekly,
            'monthly': self.monthly,
            'keep_all': self.keep_all,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RetentionPolicy':
        data = data or {}
        default = cls()
        return cls(
            daily=data.get('daily', default.daily),
            weekly=data.get('weekly', default.weekly),
            monthly=data.get('monthly', default.monthly),
            keep_all=bool(data.get('keep_all', False)),
        )


@dataclass
class CategorizedBackup:
    """A backup and the single bucket it was assigned to."""
    backup: BackupListEntry
    category: str


@dataclass
class RetentionResult:
    """Outcome of applying a policy to one database."""
    database: str
    policy: RetentionPolicy
    dry_run: bool
    to_keep: List[CategorizedBackup] = field(default_factory=list)
    to_delete: List[BackupListEntry] = field(default_factory=list)
    space_reclaimed: int = 0
    deleted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'database': self.database,
            'policy': self.policy.to_dict(),
            'dry_run': self.dry_run,
            'keep': [
                {'backup_id': cb.backup.backup_id, 'category': cb.category}
                for cb in self.to_keep
            ],
            'delete': [entry.backup_id for entry in self.to_delete],
            'space_reclaimed': self.space_reclaimed,
            'deleted': self.deleted,
        }


def _backup_time(entry: BackupListEntry) -> Optional[datetime]:
    if entry.created_at is not None:
        return entry.created_at
    try:
        return parse_backup_id(entry.backup_id)
    except ValueError:
        return None


def categorize_backups(
    backups: List[BackupListEntry],
    policy: RetentionPolicy
) -> List[CategorizedBackup]:
    """
    Assign every backup exactly one retention category.

    Args:
        backups: Backup history of one database, in any order
        policy: Retention policy

    Returns:
        CategorizedBackup list, newest first
    """
    ordered = sorted(backups, key=backup_sort_key, reverse=True)
    if policy.keep_all:
        return [CategorizedBackup(entry, CATEGORY_KEEP) for entry in ordered]

    seen_months, seen_weeks, seen_days = set(), set(), set()
    monthly = weekly = daily = 0
    result = []

    for entry in ordered:
        moment = _backup_time(entry)
        if moment is None:
            # Undatable backups are never deleted automatically
            result.append(CategorizedBackup(entry, CATEGORY_KEEP))
            continue

        iso_year, iso_week, _ = moment.isocalendar()
        month_key = moment.strftime('%Y-%m')
        week_key = f"{iso_year}-W{iso_week:02d}"
        day_key = moment.strftime('%Y-%m-%d')

        if monthly < policy.monthly and month_key not in seen_months:
            category = CATEGORY_MONTHLY
            seen_months.add(month_key)
            monthly += 1
        elif weekly < policy.weekly and week_key not in seen_weeks:
            category = CATEGORY_WEEKLY
            seen_weeks.add(week_key)
            weekly += 1
        elif daily < policy.daily and day_key not in seen_days:
            category = CATEGORY_DAILY
            seen_days.add(day_key)
            daily += 1
        else:
            category = CATEGORY_DELETE

        result.append(CategorizedBackup(entry, category))

    return result


class RetentionManager:
    """
    Applies retention policies to the backups in a storage.
    """

    def __init__(self, storage: LocalStorage, locks: Optional[BackupLockRegistry] = None):
        """
        Initialize retention manager.

        Args:
            storage: Storage holding the backups
            locks: Lock registry shared with the backup executor
        """
        self.storage = storage
        self.locks = locks or backup_locks
        self.logs = []

    def apply_policy(
        self,
        database: str,
        policy: RetentionPolicy,
        dry_run: bool = False
    ) -> RetentionResult:
        """
        Apply a retention policy to one database.

        Args:
            database: Storage name of the database
            policy: Retention policy
            dry_run: Only compute what would be deleted

        Returns:
            RetentionResult

        Raises:
            BackupInProgressError: If a backup for the database is running
            StorageError: If a deletion fails (remaining deletions are skipped)
        """
        policy.validate()

        with self.locks.hold(database):
            backups = self.storage.list_backups(database)
            result = RetentionResult(database=database, policy=policy, dry_run=dry_run)

            for cb in categorize_backups(backups, policy):
                if cb.category == CATEGORY_DELETE:
                    result.to_delete.append(cb.backup)
                    result.space_reclaimed += cb.backup.size
                else:
                    result.to_keep.append(cb)

            self._log(
                f"Retention for {database}: keeping {len(result.to_keep)}, "
                f"deleting {len(result.to_delete)}"
                + (' (dry run)' if dry_run else '')
            )

            if not dry_run:
                for entry in result.to_delete:
                    self.storage.delete_backup(database, entry.backup_id)
                    result.deleted += 1
                    self._log(f"Deleted backup {database}/{entry.backup_id}")

        return result

    def enforce_all_policies(self, config_manager) -> Dict[str, Any]:
        """
        Enforce the retention policy of every configured database.

        Errors for one database are collected and do not stop the others.

        Returns:
            Dict with summary of cleanup operations:
            {
                'databases_processed': int,
                'deleted': int,
                'space_reclaimed': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all databases")

        summary = {
            'databases_processed': 0,
            'deleted': 0,
            'space_reclaimed': 0,
            'errors': []
        }

        for name in config_manager.list_databases():
            try:
                policy = config_manager.get_effective_retention(name)
                if policy.keep_all:
                    self._log(f"Retention for {name}: keep_all set, skipping")
                    summary['databases_processed'] += 1
                    continue
                result = self.apply_policy(name, policy)
                summary['databases_processed'] += 1
                summary['deleted'] += result.deleted
                summary['space_reclaimed'] += result.space_reclaimed
            except Exception as e:
                error_msg = f"Failed to enforce policy for database {name}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Databases: {summary['databases_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str):
        timestamp = now_local().strftime('%Y-%m-%d %H:%M:%S %z')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def enforce_retention_policies(services) -> Dict[str, Any]:
    """
    Enforce retention policies for all databases.

    This function should be called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager(services.storage, locks=services.locks)
    return manager.enforce_all_policies(services.config_manager)
