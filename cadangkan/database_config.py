"""
Registry of configured databases, stored as a YAML file.

Layout:
    version: "1.0"
    databases:
      production:
        type: mysql
        host: db.example.com
        port: 3306
        database: app
        user: backup
        password_encrypted: ...
        schedule:
          enabled: true
          cron: "0 2 * * *"
        retention:
          daily: 7
          weekly: 4
          monthly: 12
          keep_all: false
"""

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from apscheduler.triggers.cron import CronTrigger

from cadangkan.backup.errors import ValidationError
from cadangkan.backup.retention import RetentionPolicy
from cadangkan.backup.sources import ConnectionSettings
from cadangkan.utils.crypto import PasswordEncryptor


logger = logging.getLogger(__name__)

CONFIG_VERSION = '1.0'


class ConfigError(Exception):
    """Raised when the registry file cannot be read or written."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when a configuration value is invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        if field:
            super().__init__(f"validation error [{field}]: {message}")
        else:
            super().__init__(f"validation error: {message}")


class DatabaseNotFoundError(ConfigError):
    """Raised when a database name is not in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"database '{name}' not found in config")


def sanitize_name(name: str) -> str:
    """Normalize a name for use as a registry key."""
    name = name.strip().lower()
    for ch in (' ', '-', '.'):
        name = name.replace(ch, '_')
    return name


@dataclass
class ScheduleConfig:
    enabled: bool = False
    cron: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {'enabled': self.enabled, 'cron': self.cron}


@dataclass
class DatabaseConfig:
    """One configured database."""
    name: str = ''
    type: str = 'mysql'
    host: str = 'localhost'
    port: int = 3306
    database: str = ''
    user: str = ''
    password_encrypted: str = ''
    schedule: Optional[ScheduleConfig] = None
    retention: Optional[RetentionPolicy] = None

    def validate(self):
        """
        Raises:
            ConfigValidationError: If a field is missing or out of range
        """
        if not self.type:
            raise ConfigValidationError('type', 'database type is required')
        if self.type != 'mysql':
            raise ConfigValidationError('type', "only 'mysql' type is supported")
        if not self.host:
            raise ConfigValidationError('host', 'host is required')
        if not isinstance(self.port, int) or self.port <= 0 or self.port > 65535:
            raise ConfigValidationError('port', 'port must be between 1 and 65535')
        if not self.user:
            raise ConfigValidationError('user', 'user is required')
        if not self.database:
            raise ConfigValidationError('database', 'database name is required')

        if self.schedule and self.schedule.enabled:
            if not self.schedule.cron:
                raise ConfigValidationError('schedule.cron', 'cron expression is required')
            try:
                CronTrigger.from_crontab(self.schedule.cron)
            except ValueError as e:
                raise ConfigValidationError('schedule.cron', f"invalid cron expression: {e}") from e

        if self.retention:
            try:
                self.retention.validate()
            except ValidationError as e:
                raise ConfigValidationError(f"retention.{e.field}", e.message) from e

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'type': self.type,
            'host': self.host,
            'port': self.port,
            'database': self.database,
            'user': self.user,
        }
        if self.password_encrypted:
            data['password_encrypted'] = self.password_encrypted
        if self.schedule:
            data['schedule'] = self.schedule.to_dict()
        if self.retention:
            data['retention'] = self.retention.to_dict()
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """Dict for API responses, without the encrypted password."""
        data = self.to_dict()
        data.pop('password_encrypted', None)
        data['name'] = self.name
        data['has_password'] = bool(self.password_encrypted)
        return data

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'DatabaseConfig':
        if not isinstance(data, dict):
            raise ConfigValidationError(name, 'database entry must be a mapping')

        schedule = None
        if data.get('schedule'):
            schedule = ScheduleConfig(
                enabled=bool(data['schedule'].get('enabled', False)),
                cron=str(data['schedule'].get('cron') or ''),
            )

        retention = None
        if data.get('retention'):
            retention = RetentionPolicy.from_dict(data['retention'])

        try:
            port = int(data.get('port') or 3306)
        except (TypeError, ValueError) as e:
            raise ConfigValidationError('port', 'port must be a number') from e

        return cls(
            name=name,
            type=data.get('type') or 'mysql',
            host=data.get('host') or '',
            port=port,
            database=data.get('database') or '',
            user=data.get('user') or '',
            password_encrypted=data.get('password_encrypted') or '',
            schedule=schedule,
            retention=retention,
        )

    def to_connection_settings(
        self,
        encryptor: PasswordEncryptor,
        timeout: int = 10,
        command_timeout: int = 1800
    ) -> ConnectionSettings:
        """
        Build connection settings, decrypting the stored password.

        Raises:
            EncryptionError: If the password cannot be decrypted
        """
        password = ''
        if self.password_encrypted:
            password = encryptor.decrypt_password(self.password_encrypted)
        return ConnectionSettings(
            host=self.host,
            port=self.port,
            user=self.user,
            password=password,
            database=self.database,
            timeout=timeout,
            command_timeout=command_timeout,
        )


class ConfigManager:
    """
    Loads and saves the database registry.

    Every call re-reads the file, so edits made outside the process are
    picked up without a restart.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()

    def load(self) -> Dict[str, DatabaseConfig]:
        """
        Read the registry.

        Returns:
            Mapping of name to DatabaseConfig; empty if the file does not exist

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        with self._lock:
            if not self.path.exists():
                return {}
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse config file {self.path}: {e}") from e
            except OSError as e:
                raise ConfigError(f"Failed to read config file {self.path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {self.path} must contain a mapping")

        databases = raw.get('databases') or {}
        return {
            name: DatabaseConfig.from_dict(name, data)
            for name, data in databases.items()
        }

    def save(self, databases: Dict[str, DatabaseConfig]):
        """
        Validate and write the registry (mode 0600).

        Raises:
            ConfigValidationError: If any entry is invalid
            ConfigError: If the file cannot be written
        """
        for name, db_config in databases.items():
            db_config.name = name
            db_config.validate()

        document = {
            'version': CONFIG_VERSION,
            'databases': {name: db.to_dict() for name, db in sorted(databases.items())},
        }

        with self._lock:
            tmp_path = None
            try:
                self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix='.config.', dir=str(self.path.parent))
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except OSError as e:
                if tmp_path and os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise ConfigError(f"Failed to write config file {self.path}: {e}") from e

    def get_database(self, name: str) -> DatabaseConfig:
        """
        Raises:
            DatabaseNotFoundError: If name is not configured
        """
        databases = self.load()
        if name not in databases:
            raise DatabaseNotFoundError(name)
        return databases[name]

    def add_database(self, name: str, db_config: DatabaseConfig, replace: bool = False):
        """
        Add (or with replace, update) a database.

        Raises:
            ConfigValidationError: If the entry is invalid or the name is taken
        """
        if not name:
            raise ConfigValidationError('name', 'name is required')
        with self._lock:
            databases = self.load()
            if name in databases and not replace:
                raise ConfigValidationError('name', f"database '{name}' already exists")
            db_config.name = name
            databases[name] = db_config
            self.save(databases)
        logger.info(f"Saved database config: {name}")

    def remove_database(self, name: str):
        """
        Raises:
            DatabaseNotFoundError: If name is not configured
        """
        with self._lock:
            databases = self.load()
            if name not in databases:
                raise DatabaseNotFoundError(name)
            del databases[name]
            self.save(databases)
        logger.info(f"Removed database config: {name}")

    def list_databases(self) -> List[str]:
        return sorted(self.load())

    def database_exists(self, name: str) -> bool:
        return name in self.load()

    def get_effective_retention(self, name: str) -> RetentionPolicy:
        """The database's retention policy, or the default policy."""
        return self.get_database(name).retention or RetentionPolicy()
