import os
import secrets


def _env_bool(name, default):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)
    JSON_SORT_KEYS = False

    # Paths
    CADANGKAN_HOME = os.path.expanduser(os.environ.get('CADANGKAN_HOME') or '~/.cadangkan')
    BACKUP_ROOT = os.environ.get('BACKUP_ROOT') or os.path.join(CADANGKAN_HOME, 'backups')
    CONFIG_PATH = os.environ.get('CONFIG_PATH') or os.path.join(CADANGKAN_HOME, 'config.yaml')
    KEY_PATH = os.environ.get('KEY_PATH') or os.path.join(CADANGKAN_HOME, '.key')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(CADANGKAN_HOME, 'logs')
    IMPORT_DIR = os.environ.get('IMPORT_DIR') or os.path.join(CADANGKAN_HOME, 'imports')

    # Backup
    DUMP_TIMEOUT_SECONDS = int(os.environ.get('DUMP_TIMEOUT_SECONDS', 1800))
    CONNECT_TIMEOUT_SECONDS = int(os.environ.get('CONNECT_TIMEOUT_SECONDS', 10))
    DEFAULT_COMPRESSION = os.environ.get('DEFAULT_COMPRESSION') or 'gzip'
    MYSQLDUMP_BINARY = os.environ.get('MYSQLDUMP_BINARY') or 'mysqldump'
    MYSQL_BINARY = os.environ.get('MYSQL_BINARY') or 'mysql'

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'true')
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_ROOT = os.path.join(DATA_DIR, 'backups')
    CONFIG_PATH = os.path.join(DATA_DIR, 'config.yaml')
    KEY_PATH = os.path.join(DATA_DIR, '.key')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    IMPORT_DIR = os.path.join(DATA_DIR, 'imports')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration; paths are overridden per test"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
