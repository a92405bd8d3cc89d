"""
Unit tests for status reporting (cadangkan/status.py).
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from cadangkan.backup.storage import StorageError
from cadangkan.database_config import ConfigManager, DatabaseConfig, DatabaseNotFoundError
from cadangkan.status import StatusService, backup_entry_to_dict, generate_health_summary


@pytest.fixture
def config_manager(tmp_path):
    manager = ConfigManager(str(tmp_path / 'config.yaml'))
    manager.add_database('shop', DatabaseConfig(host='h', database='shop', user='u'))
    manager.add_database('crm', DatabaseConfig(host='h', database='crm', user='u'))
    return manager


def _db_status(status, backup_count=1, failed_count=0):
    return {'status': status, 'backup_count': backup_count, 'failed_count': failed_count}


class TestBackupEntryToDict:
    """Test backup list entry serialization."""

    def test_completed_entry(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 2, 2, 0))
        entry = storage.list_backups('shop')[0]

        data = backup_entry_to_dict(entry)

        assert data['backup_id'] == '2025-01-02-020000'
        assert data['status'] == 'completed'
        assert data['duration_seconds'] == 5
        assert data['duration_human'] == '5s'
        assert data['size_bytes'] == entry.size
        assert data['checksum'].startswith('sha256:')
        assert data['error'] is None

    def test_failed_entry(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 2, 2, 0), status='failed', error='access denied')
        entry = storage.list_backups('shop', include_failed=True)[0]

        data = backup_entry_to_dict(entry)

        assert data['status'] == 'failed'
        assert data['error'] == 'access denied'
        assert data['size_bytes'] == 0


class TestStatusService:
    """Test StatusService class."""

    def test_database_status_with_history(self, config_manager, storage, daily_history, make_backup):
        make_backup('shop', datetime.now() - timedelta(days=20), status='failed')
        service = StatusService(config_manager, storage)

        status = service.get_database_status('shop')

        assert status['name'] == 'shop'
        assert status['backup_count'] == 10
        assert status['successful_count'] == 10
        assert status['failed_count'] == 1
        assert status['last_backup_id'] == daily_history[0].backup_id
        assert len(status['recent_backups']) == 5
        assert status['storage_used'] > 0
        assert status['next_backup'] is None
        assert 0 < status['health_score'] <= 100

    def test_database_status_without_backups(self, config_manager, storage):
        status = StatusService(config_manager, storage).get_database_status('crm')

        assert status['status'] == 'critical'
        assert status['backup_count'] == 0
        assert status['last_backup'] is None
        assert status['recent_backups'] == []

    def test_unknown_database(self, config_manager, storage):
        with pytest.raises(DatabaseNotFoundError):
            StatusService(config_manager, storage).get_database_status('ghost')

    def test_next_backup_from_lookup(self, config_manager, storage):
        next_run = datetime(2025, 1, 3, 2, 0).astimezone()
        lookup = MagicMock(return_value=next_run)

        status = StatusService(config_manager, storage, next_run_lookup=lookup).get_database_status('shop')

        lookup.assert_called_once_with('shop')
        assert status['next_backup'] == next_run.isoformat()

    def test_storage_error_reported_as_empty(self, config_manager, storage):
        with patch.object(storage, 'list_backups', side_effect=StorageError('/x', 'list', 'denied')):
            status = StatusService(config_manager, storage).get_database_status('shop')

        assert status['backup_count'] == 0
        assert status['status'] == 'critical'

    def test_overall_status(self, config_manager, storage, daily_history):
        overall = StatusService(config_manager, storage).get_overall_status()

        assert overall['database_count'] == 2
        assert overall['active_count'] == 1
        assert overall['total_backups'] == 10
        assert overall['last_backup'] == daily_history[0].created_at.isoformat()
        assert overall['storage_available'] > 0
        assert [db['name'] for db in overall['databases']] == ['crm', 'shop']
        assert '1 database(s) never backed up' in overall['health_summary']

    def test_storage_usage(self, config_manager, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 1, 2, 0), content=b'x' * 50000)
        make_backup('crm', datetime(2025, 1, 1, 3, 0))
        make_backup('crm', datetime(2025, 1, 2, 3, 0))

        usage = StatusService(config_manager, storage).get_storage_usage()

        by_name = {db['database']: db for db in usage['by_database']}
        assert by_name['crm']['backup_count'] == 2
        assert by_name['shop']['backup_count'] == 1
        assert usage['total_used'] == by_name['crm']['size_bytes'] + by_name['shop']['size_bytes']
        assert sum(db['percentage'] for db in usage['by_database']) == pytest.approx(100.0, abs=0.05)
        assert len(usage['largest_backups']) == 3
        sizes = [b['size_bytes'] for b in usage['largest_backups']]
        assert sizes == sorted(sizes, reverse=True)

    def test_storage_usage_empty(self, config_manager, storage):
        usage = StatusService(config_manager, storage).get_storage_usage()

        assert usage['total_used'] == 0
        assert all(db['percentage'] == 0.0 for db in usage['by_database'])
        assert usage['largest_backups'] == []


class TestGenerateHealthSummary:
    """Test generate_health_summary function."""

    def test_all_healthy(self):
        summary = generate_health_summary([_db_status('healthy'), _db_status('healthy')])
        assert summary == ['All databases backed up successfully']

    def test_mixed(self):
        summary = generate_health_summary([
            _db_status('healthy'),
            _db_status('warning', failed_count=2),
            _db_status('critical', backup_count=0),
        ])

        assert summary == [
            '1 database(s) healthy',
            '1 database(s) need attention',
            '1 database(s) have critical issues',
            '1 database(s) never backed up',
            '2 failed backup(s) recorded',
        ]

    def test_no_databases(self):
        assert generate_health_summary([]) == ['No databases configured']
