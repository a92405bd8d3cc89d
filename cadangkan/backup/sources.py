"""
Source handlers for backup operations.

Supports:
- MySQLSource: Introspect a MySQL/MariaDB server over SQLAlchemy + PyMySQL

The source answers the questions the backup and restore pipelines ask the
server (version, size estimate, existence of a database) and creates target
databases for restores. The dump and load themselves run through the
command-line utilities in mysql_cli.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from .errors import BackupError


logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306
DEFAULT_CONNECT_TIMEOUT = 10


class SourceError(BackupError):
    """Raised when talking to the database server fails."""
    pass


@dataclass
class ConnectionSettings:
    """Everything needed to reach a MySQL server."""
    host: str = 'localhost'
    port: int = DEFAULT_PORT
    user: str = ''
    password: str = ''
    database: str = ''
    timeout: int = DEFAULT_CONNECT_TIMEOUT
    command_timeout: int = 1800

    def to_url(self) -> URL:
        return URL.create(
            'mysql+pymysql',
            username=self.user or None,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database or None,
        )


def quote_identifier(name: str) -> str:
    """Quote a MySQL identifier with backticks."""
    return '`' + name.replace('`', '``') + '`'


class MySQLSource:
    """
    Handler for a MySQL server used as a backup source or restore target.

    Call connect() before any query; close() releases the connection pool.
    """

    def __init__(self, settings: ConnectionSettings, engine: Optional[Engine] = None):
        """
        Initialize the source.

        Args:
            settings: Connection settings
            engine: Pre-built engine (tests inject one); built on connect() if omitted
        """
        self.settings = settings
        self.engine = engine
        self._connected = False

    def connect(self):
        """
        Open the pool and check the server answers.

        Raises:
            SourceError: If the connection fails
        """
        if self.engine is None:
            try:
                self.engine = create_engine(
                    self.settings.to_url(),
                    poolclass=QueuePool,
                    pool_size=2,
                    max_overflow=2,
                    pool_pre_ping=True,
                    pool_recycle=300,
                    connect_args={
                        'connect_timeout': self.settings.timeout,
                        'charset': 'utf8mb4',
                    },
                )
            except (SQLAlchemyError, ImportError) as e:
                raise SourceError(f"Failed to create database engine: {e}") from e

        self.ping()
        self._connected = True
        logger.debug(f"Connected to MySQL at {self.settings.host}:{self.settings.port}")

    def is_connected(self) -> bool:
        return self._connected and self.engine is not None

    def ping(self):
        """
        Run a trivial query.

        Raises:
            SourceError: If the server cannot be reached
        """
        self._scalar('SELECT 1', 'ping')

    def close(self):
        """Dispose of the connection pool."""
        if self.engine is not None:
            self.engine.dispose()
        self._connected = False

    def get_version(self) -> str:
        """Server version string, e.g. '8.0.36'."""
        return str(self._scalar('SELECT VERSION()', 'get version'))

    def get_database_size(self, database: str) -> int:
        """Data plus index bytes of all tables in a database."""
        size = self._scalar(
            'SELECT COALESCE(SUM(data_length + index_length), 0) '
            'FROM information_schema.TABLES WHERE table_schema = :db',
            'get database size',
            db=database
        )
        return int(size or 0)

    def database_exists(self, database: str) -> bool:
        count = self._scalar(
            'SELECT COUNT(*) FROM information_schema.SCHEMATA '
            'WHERE schema_name = :db',
            'check database',
            db=database
        )
        return int(count or 0) > 0

    def create_database(self, database: str):
        """
        Create a database with the utf8mb4 character set.

        Raises:
            SourceError: If creation fails
        """
        statement = (
            f"CREATE DATABASE IF NOT EXISTS {quote_identifier(database)} "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        self._require_engine()
        try:
            with self.engine.begin() as conn:
                conn.execute(text(statement))
        except SQLAlchemyError as e:
            raise SourceError(f"Failed to create database {database}: {e}") from e
        logger.info(f"Created database {database}")

    def get_tables(self, database: str) -> List[str]:
        """Names of the tables in a database."""
        self._require_engine()
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(f"SHOW TABLES FROM {quote_identifier(database)}"))
                return [row[0] for row in rows]
        except SQLAlchemyError as e:
            raise SourceError(f"Failed to list tables of {database}: {e}") from e

    def _require_engine(self):
        if self.engine is None:
            raise SourceError('Not connected to database')

    def _scalar(self, query: str, action: str, **params):
        self._require_engine()
        try:
            with self.engine.connect() as conn:
                return conn.execute(text(query), params).scalar()
        except SQLAlchemyError as e:
            raise SourceError(f"Failed to {action}: {e}") from e


@contextmanager
def open_source(settings: ConnectionSettings):
    """
    Connect to a server for the duration of a block.

    The pool is always disposed, whether the block succeeds or not.

    Raises:
        SourceError: If the connection fails
    """
    source = MySQLSource(settings)
    try:
        source.connect()
        yield source
    finally:
        source.close()
