"""
Unit tests for the database registry (cadangkan/database_config.py).
"""

import os
import stat

import pytest
import yaml

from cadangkan.backup.retention import RetentionPolicy
from cadangkan.database_config import (
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    DatabaseConfig,
    DatabaseNotFoundError,
    ScheduleConfig,
    sanitize_name,
)
from cadangkan.utils.crypto import PasswordEncryptor


@pytest.fixture
def manager(tmp_path):
    return ConfigManager(str(tmp_path / 'cadangkan' / 'config.yaml'))


def _config(**overrides):
    values = dict(host='db.example.com', database='shop', user='backup')
    values.update(overrides)
    return DatabaseConfig(**values)


class TestSanitizeName:
    """Test registry key normalization."""

    @pytest.mark.parametrize('raw, expected', [
        ('Production', 'production'),
        ('  my-db.v2 ', 'my_db_v2'),
        ('staging db', 'staging_db'),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_name(raw) == expected


class TestDatabaseConfigValidation:
    """Test DatabaseConfig.validate."""

    def test_valid(self):
        _config(schedule=ScheduleConfig(enabled=True, cron='0 2 * * *')).validate()

    @pytest.mark.parametrize('overrides, field', [
        ({'type': 'postgres'}, 'type'),
        ({'host': ''}, 'host'),
        ({'port': 0}, 'port'),
        ({'port': 70000}, 'port'),
        ({'user': ''}, 'user'),
        ({'database': ''}, 'database'),
    ])
    def test_invalid_fields(self, overrides, field):
        with pytest.raises(ConfigValidationError) as exc_info:
            _config(**overrides).validate()
        assert exc_info.value.field == field

    def test_enabled_schedule_requires_cron(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            _config(schedule=ScheduleConfig(enabled=True)).validate()
        assert exc_info.value.field == 'schedule.cron'

    def test_invalid_cron(self):
        with pytest.raises(ConfigValidationError, match='invalid cron'):
            _config(schedule=ScheduleConfig(enabled=True, cron='not a cron')).validate()

    def test_disabled_schedule_not_checked(self):
        _config(schedule=ScheduleConfig(enabled=False, cron='garbage')).validate()

    def test_invalid_retention(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            _config(retention=RetentionPolicy(weekly=-1)).validate()
        assert exc_info.value.field == 'retention.weekly'


class TestDatabaseConfigSerialization:
    """Test dict conversion."""

    def test_public_dict_hides_password(self):
        data = _config(name='shop', password_encrypted='abc').to_public_dict()

        assert 'password_encrypted' not in data
        assert data['has_password'] is True
        assert data['name'] == 'shop'

    def test_from_dict_defaults(self):
        db = DatabaseConfig.from_dict('shop', {'host': 'h', 'database': 'shop', 'user': 'u'})

        assert db.type == 'mysql'
        assert db.port == 3306
        assert db.schedule is None
        assert db.retention is None

    def test_from_dict_bad_port(self):
        with pytest.raises(ConfigValidationError):
            DatabaseConfig.from_dict('shop', {'port': 'abc'})

    def test_from_dict_not_mapping(self):
        with pytest.raises(ConfigValidationError):
            DatabaseConfig.from_dict('shop', ['not', 'a', 'mapping'])

    def test_to_connection_settings_decrypts(self, tmp_path):
        encryptor = PasswordEncryptor(str(tmp_path / '.key'))
        db = _config(port=3307, password_encrypted=encryptor.encrypt_password('s3cret'))

        settings = db.to_connection_settings(encryptor, timeout=5, command_timeout=60)

        assert settings.password == 's3cret'
        assert settings.port == 3307
        assert settings.database == 'shop'
        assert settings.timeout == 5
        assert settings.command_timeout == 60


class TestConfigManager:
    """Test ConfigManager class."""

    def test_missing_file_is_empty(self, manager):
        assert manager.load() == {}
        assert manager.list_databases() == []

    def test_add_and_get(self, manager):
        manager.add_database('shop', _config(
            schedule=ScheduleConfig(enabled=True, cron='0 2 * * *'),
            retention=RetentionPolicy(daily=3),
        ))

        db = manager.get_database('shop')

        assert db.name == 'shop'
        assert db.host == 'db.example.com'
        assert db.schedule.cron == '0 2 * * *'
        assert db.retention.daily == 3

    def test_file_layout_and_mode(self, manager):
        manager.add_database('shop', _config())

        with open(manager.path) as f:
            document = yaml.safe_load(f)

        assert document['version'] == '1.0'
        assert document['databases']['shop']['host'] == 'db.example.com'
        assert stat.S_IMODE(os.stat(manager.path).st_mode) == 0o600

    def test_duplicate_rejected(self, manager):
        manager.add_database('shop', _config())

        with pytest.raises(ConfigValidationError, match='already exists'):
            manager.add_database('shop', _config())

    def test_replace(self, manager):
        manager.add_database('shop', _config())

        manager.add_database('shop', _config(host='new.example.com'), replace=True)

        assert manager.get_database('shop').host == 'new.example.com'

    def test_invalid_entry_not_saved(self, manager):
        with pytest.raises(ConfigValidationError):
            manager.add_database('shop', _config(user=''))

        assert not manager.path.exists()

    def test_empty_name_rejected(self, manager):
        with pytest.raises(ConfigValidationError):
            manager.add_database('', _config())

    def test_remove(self, manager):
        manager.add_database('shop', _config())
        manager.add_database('crm', _config(database='crm'))

        manager.remove_database('shop')

        assert manager.list_databases() == ['crm']
        assert not manager.database_exists('shop')

    def test_remove_unknown(self, manager):
        with pytest.raises(DatabaseNotFoundError):
            manager.remove_database('ghost')

    def test_get_unknown(self, manager):
        with pytest.raises(DatabaseNotFoundError):
            manager.get_database('ghost')

    def test_effective_retention_default(self, manager):
        manager.add_database('shop', _config())
        assert manager.get_effective_retention('shop') == RetentionPolicy()

    def test_external_edits_picked_up(self, manager):
        manager.add_database('shop', _config())
        with open(manager.path) as f:
            document = yaml.safe_load(f)
        document['databases']['shop']['port'] = 3310
        with open(manager.path, 'w') as f:
            yaml.safe_dump(document, f)

        assert manager.get_database('shop').port == 3310

    def test_unparseable_file(self, manager):
        manager.path.parent.mkdir(parents=True)
        manager.path.write_text('databases: [unclosed\n')

        with pytest.raises(ConfigError, match='Failed to parse'):
            manager.load()

    def test_non_mapping_file(self, manager):
        manager.path.parent.mkdir(parents=True)
        manager.path.write_text('- just\n- a list\n')

        with pytest.raises(ConfigError, match='must contain a mapping'):
            manager.load()
