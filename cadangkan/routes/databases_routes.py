"""
Database routes - manage the registry of databases to back up.
"""

import logging
from flask import Blueprint, jsonify, request

from cadangkan.backup.retention import RetentionPolicy
from cadangkan.backup.sources import SourceError, open_source
from cadangkan.database_config import (
    ConfigValidationError, DatabaseConfig, ScheduleConfig, sanitize_name
)
from cadangkan.scheduler import is_scheduler_running, sync_backup_jobs
from cadangkan.services import get_services
from cadangkan.utils.formatting import format_bytes


bp = Blueprint('databases', __name__, url_prefix='/api/databases')
logger = logging.getLogger(__name__)


def _sync_schedule():
    if is_scheduler_running():
        sync_backup_jobs()


def _build_config(data, existing=None):
    """Build a DatabaseConfig from a request body, keeping unset fields of existing."""
    services = get_services()
    base = existing or DatabaseConfig()

    password_encrypted = base.password_encrypted
    if data.get('password'):
        password_encrypted = services.encryptor.encrypt_password(data['password'])

    schedule = base.schedule
    if 'schedule' in data:
        schedule = None
        if data['schedule']:
            schedule = ScheduleConfig(
                enabled=bool(data['schedule'].get('enabled', True)),
                cron=data['schedule'].get('cron') or ''
            )

    retention = base.retention
    if 'retention' in data:
        retention = RetentionPolicy.from_dict(data['retention']) if data['retention'] else None

    try:
        port = int(data.get('port', base.port))
    except (TypeError, ValueError) as e:
        raise ConfigValidationError('port', 'port must be a number') from e

    return DatabaseConfig(
        type=data.get('type', base.type),
        host=data.get('host', base.host),
        port=port,
        database=data.get('database', base.database),
        user=data.get('user', base.user),
        password_encrypted=password_encrypted,
        schedule=schedule,
        retention=retention
    )


@bp.route('/', methods=['GET'])
def list_databases():
    """
    Get list of all configured databases.

    Returns:
        JSON array of databases (passwords are never returned)
    """
    databases = get_services().config_manager.load()
    return jsonify([databases[name].to_public_dict() for name in sorted(databases)])


@bp.route('/<name>', methods=['GET'])
def get_database(name):
    db_config = get_services().config_manager.get_database(name)
    return jsonify(db_config.to_public_dict())


@bp.route('/', methods=['POST'])
def add_database():
    """
    Add a database to the registry.

    Request body:
        - name: Registry name (required, normalized to lower case)
        - host, port, database, user: Connection details
        - password: Plain text password (stored encrypted)
        - schedule: {enabled, cron} (optional)
        - retention: {daily, weekly, monthly, keep_all} (optional)

    Returns:
        JSON with created database
    """
    data = request.get_json() or {}

    if not data.get('name'):
        return jsonify({'error': 'Database name is required'}), 400

    name = sanitize_name(data['name'])
    db_config = _build_config(data)

    get_services().config_manager.add_database(name, db_config)
    _sync_schedule()

    return jsonify({
        'name': name,
        'message': 'Database added successfully'
    }), 201


@bp.route('/<name>', methods=['PUT'])
def update_database(name):
    """
    Update a configured database. All fields are optional; the password is
    kept unless a new one is given.
    """
    config_manager = get_services().config_manager
    existing = config_manager.get_database(name)
    data = request.get_json() or {}

    config_manager.add_database(name, _build_config(data, existing), replace=True)
    _sync_schedule()

    return jsonify({'message': 'Database updated successfully'})


@bp.route('/<name>', methods=['DELETE'])
def delete_database(name):
    """
    Remove a database from the registry. Stored backups are left on disk.
    """
    get_services().config_manager.remove_database(name)
    _sync_schedule()

    return jsonify({'message': 'Database removed successfully'})


@bp.route('/<name>/test', methods=['POST'])
def test_connection(name):
    """
    Test the connection to a configured database.

    Returns:
        JSON with server version and database size
    """
    services = get_services()
    db_config = services.config_manager.get_database(name)
    settings = db_config.to_connection_settings(
        services.encryptor,
        timeout=services.connect_timeout
    )

    try:
        with open_source(settings) as source:
            version = source.get_version()
            exists = source.database_exists(db_config.database)
            size = source.get_database_size(db_config.database) if exists else 0
    except SourceError as e:
        logger.warning(f"Connection test failed for {name}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 200

    return jsonify({
        'success': True,
        'version': version,
        'database_exists': exists,
        'size_bytes': size,
        'size_human': format_bytes(size)
    })
