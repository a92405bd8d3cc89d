"""
Shared pytest fixtures for Cadangkan tests.

This module provides fixtures for:
- Flask app and test client with isolated paths
- Backup storage in a temporary directory
- Stored backup factories (artifact + metadata sidecar)
- Fake mysqldump/mysql executables for subprocess paths
- Mock source (database server) fixtures
"""

import io
import os
import stat
import textwrap
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from cadangkan import create_app
from cadangkan.backup.compression import Compressor
from cadangkan.backup.metadata import (
    STATUS_COMPLETED, STATUS_FAILED, create_initial_metadata, format_backup_id
)
from cadangkan.backup.sources import ConnectionSettings
from cadangkan.backup.storage import LocalStorage
from cadangkan.services import get_services


SAMPLE_SQL = b"-- MySQL dump\nCREATE TABLE users (id INT PRIMARY KEY);\nINSERT INTO users VALUES (1),(2),(3);\n"


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    All paths live under tmp_path; the scheduler is disabled.
    """
    home = tmp_path / 'home'
    app = create_app('testing', {
        'SECRET_KEY': 'test-secret-key',
        'CADANGKAN_HOME': str(home),
        'BACKUP_ROOT': str(home / 'backups'),
        'CONFIG_PATH': str(home / 'config.yaml'),
        'KEY_PATH': str(home / '.key'),
        'LOG_DIR': str(home / 'logs'),
        'IMPORT_DIR': str(home / 'imports'),
        'SCHEDULER_ENABLED': False,
    })
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def services(app):
    """Services of the test app."""
    return get_services(app)


@pytest.fixture(scope='function')
def storage(tmp_path):
    """Backup storage rooted in a temporary directory."""
    return LocalStorage(str(tmp_path / 'backups'))


@pytest.fixture(scope='function')
def settings():
    """Connection settings for a fake server."""
    return ConnectionSettings(
        host='db.example.com',
        port=3306,
        user='backup',
        password='s3cret',
        database='shop'
    )


@pytest.fixture(scope='function')
def mock_source():
    """
    Connected source double.

    Reports a small database so disk space checks pass.
    """
    source = MagicMock()
    source.is_connected.return_value = True
    source.get_version.return_value = '8.0.36'
    source.get_database_size.return_value = 4096
    source.database_exists.return_value = True
    return source


@pytest.fixture(scope='function')
def make_backup(storage):
    """
    Factory writing a stored backup (artifact and sidecar) to storage.

    Usage:
        make_backup('shop', datetime(2025, 1, 5, 2, 0))
    """
    def _make(
        database,
        created_at,
        status=STATUS_COMPLETED,
        content=SAMPLE_SQL,
        compression='gzip',
        error='dump failed'
    ):
        if created_at.tzinfo is None:
            created_at = created_at.astimezone()
        backup_id = format_backup_id(created_at)
        storage.ensure_database_dir(database)
        path = storage.get_backup_path(database, backup_id, compression)

        metadata = create_initial_metadata(
            backup_id=backup_id,
            database=database,
            host='db.example.com',
            port=3306,
            file_name=os.path.basename(path),
            compression=compression,
            created_at=created_at,
        )

        if status == STATUS_FAILED:
            metadata.mark_failed(RuntimeError(error), completed_at=created_at + timedelta(seconds=5))
        else:
            result = Compressor(compression).stream_compress(io.BytesIO(content), path)
            metadata.mark_completed(
                os.path.getsize(path),
                result.checksum,
                completed_at=created_at + timedelta(seconds=5)
            )
        storage.save_metadata(metadata, database)
        return metadata

    return _make


def _write_script(path, body):
    path.write_text('#!/bin/sh\n' + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture(scope='function')
def fake_mysqldump(tmp_path):
    """
    Factory creating an executable standing in for mysqldump.

    The script prints stdout, then stderr, then exits with exit_code. Its
    arguments are written to <tmp_path>/mysqldump.args.
    """
    def _make(stdout=SAMPLE_SQL.decode(), stderr='', exit_code=0, sleep=0):
        stdout_file = tmp_path / 'mysqldump.out'
        stdout_file.write_text(stdout)
        stderr_file = tmp_path / 'mysqldump.err'
        stderr_file.write_text(stderr)
        args_file = tmp_path / 'mysqldump.args'
        # exec so that a kill reaches the process holding stdout open
        hang = f"exec sleep {sleep}" if sleep else ''
        return _write_script(tmp_path / 'mysqldump', f"""\
            if [ "$1" = "--version" ]; then
                echo "mysqldump  Ver 8.0.36 for Linux on x86_64"
                exit 0
            fi
            echo "$@" > "{args_file}"
            cat "{stdout_file}"
            cat "{stderr_file}" >&2
            {hang}
            exit {exit_code}
        """)

    return _make


@pytest.fixture(scope='function')
def fake_mysql(tmp_path):
    """
    Factory creating an executable standing in for the mysql client.

    The script copies stdin to <tmp_path>/mysql.stdin. Returns the script
    path and the capture path.
    """
    def _make(stderr='', exit_code=0):
        capture = tmp_path / 'mysql.stdin'
        stderr_file = tmp_path / 'mysql.err'
        stderr_file.write_text(stderr)
        script = _write_script(tmp_path / 'mysql', f"""\
            if [ "$1" = "--version" ]; then
                echo "mysql  Ver 8.0.36 for Linux on x86_64"
                exit 0
            fi
            cat > "{capture}"
            cat "{stderr_file}" >&2
            exit {exit_code}
        """)
        return script, capture

    return _make


@pytest.fixture(scope='function')
def daily_history(make_backup):
    """Ten completed backups of 'shop', one per day, newest one hour ago."""
    now = datetime.now().astimezone().replace(microsecond=0)
    newest = now - timedelta(hours=1)
    return [
        make_backup('shop', newest - timedelta(days=i))
        for i in range(10)
    ]
