"""
Unit tests for local storage (cadangkan/backup/storage.py).

Tests artifact and metadata sidecar layout, listing and deletion.
"""

import json
import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from cadangkan.backup.errors import BackupNotFoundError, MetadataError
from cadangkan.backup.metadata import STATUS_FAILED, create_initial_metadata
from cadangkan.backup.storage import LocalStorage, StorageError


class TestStoragePaths:
    """Test path layout."""

    def test_backup_path_uses_codec_extension(self, storage):
        """Test artifact names carry the codec extension."""
        gz = storage.get_backup_path('shop', '2025-01-02-143022', 'gzip')
        raw = storage.get_backup_path('shop', '2025-01-02-143022', 'none')

        assert gz.endswith(os.path.join('shop', '2025-01-02-143022.sql.gz'))
        assert raw.endswith(os.path.join('shop', '2025-01-02-143022.sql'))

    def test_metadata_path(self, storage):
        """Test sidecar sits next to the artifact."""
        path = storage.get_metadata_path('shop', '2025-01-02-143022')
        assert path.endswith(os.path.join('shop', '2025-01-02-143022.meta.json'))

    def test_ensure_database_dir_creates_directory(self, storage):
        path = storage.ensure_database_dir('shop')
        assert os.path.isdir(path)

    def test_list_databases(self, storage):
        storage.ensure_database_dir('shop')
        storage.ensure_database_dir('crm')

        assert storage.list_databases() == ['crm', 'shop']

    def test_list_databases_empty_root(self, tmp_path):
        """Test listing when the base path does not exist yet."""
        storage = LocalStorage(str(tmp_path / 'missing'))
        assert storage.list_databases() == []


class TestMetadataPersistence:
    """Test saving and loading sidecars."""

    def test_save_and_load_metadata(self, storage):
        """Test a saved record reads back with the same fields."""
        metadata = create_initial_metadata(
            backup_id='2025-01-02-143022',
            database='shop',
            host='db.example.com',
            port=3306,
            file_name='2025-01-02-143022.sql.gz',
            compression='gzip',
            tables=['users'],
        )
        metadata.mark_completed(1234, 'sha256:' + 'a' * 64)

        storage.save_metadata(metadata)
        loaded = storage.load_metadata('shop', '2025-01-02-143022')

        assert loaded.backup_id == '2025-01-02-143022'
        assert loaded.database.database == 'shop'
        assert loaded.backup.size_bytes == 1234
        assert loaded.backup.checksum == 'sha256:' + 'a' * 64
        assert loaded.options.tables == ['users']
        assert loaded.status == 'completed'

    def test_save_metadata_to_other_directory(self, storage):
        """Test the storage name may differ from the dumped database name."""
        metadata = create_initial_metadata(
            backup_id='2025-01-02-143022',
            database='shop_db',
            host='localhost',
            port=3306,
            file_name='2025-01-02-143022.sql.gz',
            compression='gzip',
        )

        storage.save_metadata(metadata, 'production')

        assert os.path.exists(storage.get_metadata_path('production', '2025-01-02-143022'))
        assert storage.load_metadata('production', '2025-01-02-143022').database.database == 'shop_db'

    def test_save_metadata_leaves_no_temp_files(self, storage):
        metadata = create_initial_metadata(
            backup_id='2025-01-02-143022', database='shop', host='h', port=3306,
            file_name='x.sql.gz', compression='gzip',
        )

        storage.save_metadata(metadata)

        files = os.listdir(storage.get_database_path('shop'))
        assert files == ['2025-01-02-143022.meta.json']

    def test_sidecar_is_indented_json(self, storage):
        metadata = create_initial_metadata(
            backup_id='2025-01-02-143022', database='shop', host='h', port=3306,
            file_name='x.sql.gz', compression='gzip',
        )
        storage.save_metadata(metadata)

        with open(storage.get_metadata_path('shop', '2025-01-02-143022')) as f:
            text = f.read()

        assert text.startswith('{\n  "version": "1.0"')
        assert json.loads(text)['backup_id'] == '2025-01-02-143022'

    def test_load_missing_metadata(self, storage):
        with pytest.raises(BackupNotFoundError):
            storage.load_metadata('shop', '2025-01-02-143022')

    def test_load_corrupt_metadata(self, storage):
        """Test unparsable JSON raises MetadataError."""
        storage.ensure_database_dir('shop')
        with open(storage.get_metadata_path('shop', '2025-01-02-143022'), 'w') as f:
            f.write('{not json')

        with pytest.raises(MetadataError):
            storage.load_metadata('shop', '2025-01-02-143022')

    def test_load_fills_missing_identity(self, storage):
        """Test records without backup_id/database get them from the path."""
        storage.ensure_database_dir('shop')
        with open(storage.get_metadata_path('shop', '2025-01-02-143022'), 'w') as f:
            json.dump({'status': 'completed'}, f)

        loaded = storage.load_metadata('shop', '2025-01-02-143022')

        assert loaded.backup_id == '2025-01-02-143022'
        assert loaded.database.database == 'shop'


class TestListBackups:
    """Test listing backups."""

    def test_list_backups_newest_first(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 1, 2, 0))
        make_backup('shop', datetime(2025, 1, 3, 2, 0))
        make_backup('shop', datetime(2025, 1, 2, 2, 0))

        ids = [b.backup_id for b in storage.list_backups('shop')]

        assert ids == ['2025-01-03-020000', '2025-01-02-020000', '2025-01-01-020000']

    def test_list_backups_unknown_database(self, storage):
        assert storage.list_backups('nothing') == []

    def test_list_backups_reports_artifact_size(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 1, 2, 0))

        entry = storage.list_backups('shop')[0]

        assert entry.size == os.path.getsize(entry.file_path)
        assert entry.size > 0

    def test_list_backups_skips_corrupt_sidecar(self, storage, make_backup):
        """Test a bad sidecar does not hide the other backups."""
        make_backup('shop', datetime(2025, 1, 1, 2, 0))
        with open(storage.get_metadata_path('shop', '2025-01-02-020000'), 'w') as f:
            f.write('garbage')

        ids = [b.backup_id for b in storage.list_backups('shop')]

        assert ids == ['2025-01-01-020000']

    def test_list_backups_skips_missing_artifact(self, storage, make_backup):
        metadata = make_backup('shop', datetime(2025, 1, 1, 2, 0))
        os.remove(storage.get_backup_path('shop', metadata.backup_id, 'gzip'))

        assert storage.list_backups('shop') == []

    def test_list_backups_include_failed(self, storage, make_backup):
        """Test failed records without artifact are listed only on request."""
        make_backup('shop', datetime(2025, 1, 1, 2, 0))
        make_backup('shop', datetime(2025, 1, 2, 2, 0), status=STATUS_FAILED)

        assert len(storage.list_backups('shop')) == 1

        with_failed = storage.list_backups('shop', include_failed=True)
        assert [b.metadata.status for b in with_failed] == ['failed', 'completed']
        assert with_failed[0].size == 0

    def test_get_latest_backup(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 1, 2, 0))
        make_backup('shop', datetime(2025, 1, 2, 2, 0))

        assert storage.get_latest_backup('shop').backup_id == '2025-01-02-020000'

    def test_get_latest_backup_none(self, storage):
        with pytest.raises(BackupNotFoundError):
            storage.get_latest_backup('shop')

    def test_backup_exists(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 1, 2, 0))

        assert storage.backup_exists('shop', '2025-01-01-020000')
        assert not storage.backup_exists('shop', '2025-01-02-020000')

    def test_get_database_usage(self, storage, make_backup):
        make_backup('shop', datetime(2025, 1, 1, 2, 0))
        make_backup('shop', datetime(2025, 1, 2, 2, 0))

        db_path = storage.get_database_path('shop')
        expected = sum(os.path.getsize(os.path.join(db_path, f)) for f in os.listdir(db_path))
        assert storage.get_database_usage('shop') == expected


class TestDeleteBackup:
    """Test deletion."""

    def test_delete_backup_removes_both_files(self, storage, make_backup):
        metadata = make_backup('shop', datetime(2025, 1, 1, 2, 0))

        storage.delete_backup('shop', metadata.backup_id)

        assert not os.path.exists(storage.get_backup_path('shop', metadata.backup_id, 'gzip'))
        assert not os.path.exists(storage.get_metadata_path('shop', metadata.backup_id))

    def test_delete_missing_backup_is_tolerated(self, storage):
        storage.ensure_database_dir('shop')
        storage.delete_backup('shop', '2025-01-01-020000')

    def test_delete_backup_with_unreadable_sidecar(self, storage):
        """Test every artifact name is tried when the codec is unknown."""
        storage.ensure_database_dir('shop')
        artifact = os.path.join(storage.get_database_path('shop'), '2025-01-01-020000.sql')
        with open(artifact, 'wb') as f:
            f.write(b'SELECT 1;')
        with open(storage.get_metadata_path('shop', '2025-01-01-020000'), 'w') as f:
            f.write('garbage')

        storage.delete_backup('shop', '2025-01-01-020000')

        assert os.listdir(storage.get_database_path('shop')) == []

    def test_cleanup_partial_backup_never_raises(self, storage):
        storage.cleanup_partial_backup('shop', '2025-01-01-020000', 'gzip')


class TestDiskSpace:
    """Test free space checks."""

    def test_check_disk_space_before_root_exists(self, tmp_path):
        """Test the nearest existing ancestor is measured."""
        storage = LocalStorage(str(tmp_path / 'not' / 'yet'))
        assert storage.check_disk_space() > 0

    @patch('cadangkan.backup.storage.shutil.disk_usage')
    def test_has_enough_space_applies_margin(self, mock_usage, storage):
        """Test the 20% safety margin."""
        mock_usage.return_value = MagicMock(free=1000)

        assert storage.has_enough_space(800)
        assert not storage.has_enough_space(900)

    @patch('cadangkan.backup.storage.shutil.disk_usage')
    def test_check_disk_space_error(self, mock_usage, storage):
        mock_usage.side_effect = OSError('boom')

        with pytest.raises(StorageError):
            storage.check_disk_space()
