"""
Shared application services, built once per Flask app from its config.
"""

from dataclasses import dataclass, field

from flask import current_app

from cadangkan.backup.executor import BackupLockRegistry, backup_locks
from cadangkan.backup.storage import LocalStorage
from cadangkan.database_config import ConfigManager
from cadangkan.utils.crypto import PasswordEncryptor


EXTENSION_KEY = 'cadangkan'


@dataclass
class Services:
    """Everything the backup jobs need, resolved from configuration."""
    config_manager: ConfigManager
    storage: LocalStorage
    encryptor: PasswordEncryptor
    dump_timeout: int = 1800
    connect_timeout: int = 10
    default_compression: str = 'gzip'
    mysqldump_binary: str = 'mysqldump'
    mysql_binary: str = 'mysql'
    import_dir: str = 'imports'
    locks: BackupLockRegistry = field(default_factory=lambda: backup_locks)

    @classmethod
    def from_config(cls, config) -> 'Services':
        return cls(
            config_manager=ConfigManager(config['CONFIG_PATH']),
            storage=LocalStorage(config['BACKUP_ROOT']),
            encryptor=PasswordEncryptor(config['KEY_PATH']),
            dump_timeout=config['DUMP_TIMEOUT_SECONDS'],
            connect_timeout=config['CONNECT_TIMEOUT_SECONDS'],
            default_compression=config['DEFAULT_COMPRESSION'],
            mysqldump_binary=config['MYSQLDUMP_BINARY'],
            mysql_binary=config['MYSQL_BINARY'],
            import_dir=config['IMPORT_DIR'],
        )


def init_services(app) -> Services:
    services = Services.from_config(app.config)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services(app=None) -> Services:
    """Services of the given app, or of the current app."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
