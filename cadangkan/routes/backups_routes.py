"""
Backup routes - run, inspect, verify, restore and clean up backups of a
configured database.
"""

import logging
import os
from flask import Blueprint, jsonify, request

from cadangkan.backup.errors import BackupNotFoundError, ValidationError
from cadangkan.backup.executor import BackupOptions, execute_backup_job, verify_backup
from cadangkan.backup.metadata import parse_backup_id
from cadangkan.backup.restore import RestoreOptions, execute_import_job, execute_restore_job
from cadangkan.backup.retention import RetentionManager, RetentionPolicy
from cadangkan.scheduler import is_scheduler_running, trigger_backup_now
from cadangkan.services import get_services
from cadangkan.status import backup_entry_to_dict


bp = Blueprint('backups', __name__, url_prefix='/api/backups')
logger = logging.getLogger(__name__)


def _arg_flag(name: str) -> bool:
    return request.args.get(name, 'false').lower() in ('1', 'true', 'yes')


def _check_backup_id(backup_id: str):
    """Reject ids that are not backup ids (they become file names)."""
    try:
        parse_backup_id(backup_id)
    except ValueError as e:
        raise ValidationError('backup_id', f"invalid backup id: {backup_id}") from e


def _import_path(import_dir: str, file_name: str) -> str:
    """Resolve a dump file name; only files under the import directory are accepted."""
    root = os.path.realpath(import_dir)
    path = os.path.realpath(os.path.join(root, file_name))
    if os.path.commonpath([root, path]) != root:
        raise ValidationError('file', f"file must be inside the import directory {root}")
    return path


@bp.route('/<name>', methods=['GET'])
def list_backups(name):
    """
    Get the backups of a configured database, newest first.

    Query params:
        - include_failed: Also list failed backups (default: false)
        - limit: Max number of records (default: 50, max: 500)

    Returns:
        JSON array of backups
    """
    services = get_services()
    services.config_manager.get_database(name)

    limit = request.args.get('limit', 50, type=int)
    if limit > 500:
        limit = 500

    backups = services.storage.list_backups(name, include_failed=_arg_flag('include_failed'))
    return jsonify([backup_entry_to_dict(b) for b in backups[:limit]])


@bp.route('/<name>/<backup_id>', methods=['GET'])
def get_backup(name, backup_id):
    """Full metadata of one backup."""
    _check_backup_id(backup_id)
    services = get_services()
    services.config_manager.get_database(name)

    metadata = services.storage.load_metadata(name, backup_id)
    return jsonify(metadata.to_dict())


@bp.route('/<name>', methods=['POST'])
def create_backup(name):
    """
    Back up a configured database.

    Request body (all optional):
        - tables: Only these tables
        - exclude_tables: Skip these tables
        - schema_only: Dump structure without data
        - compression: 'gzip' or 'none' (default from config)
        - background: Queue the backup on the scheduler instead of waiting

    Returns:
        JSON with backup result (201), or a queued message (202)
    """
    services = get_services()
    db_config = services.config_manager.get_database(name)
    data = request.get_json(silent=True) or {}

    if data.get('background'):
        if not is_scheduler_running():
            return jsonify({'error': 'Scheduler is not running'}), 409
        trigger_backup_now(name)
        return jsonify({
            'message': f"Backup of '{name}' has been queued for immediate execution"
        }), 202

    options = BackupOptions(
        database=db_config.database,
        tables=data.get('tables') or [],
        exclude_tables=data.get('exclude_tables') or [],
        schema_only=bool(data.get('schema_only', False)),
        compression=data.get('compression') or services.default_compression
    )

    result = execute_backup_job(name, services, options)
    return jsonify(result.to_dict()), 201


@bp.route('/<name>/<backup_id>/verify', methods=['POST'])
def verify(name, backup_id):
    """Recompute an artifact's checksum and compare it to the recorded one."""
    _check_backup_id(backup_id)
    services = get_services()
    services.config_manager.get_database(name)

    valid = verify_backup(services.storage, name, backup_id)
    if not valid:
        logger.warning(f"Checksum verification failed for {name}/{backup_id}")
    return jsonify({'backup_id': backup_id, 'valid': valid})


@bp.route('/<name>/<backup_id>', methods=['DELETE'])
def delete_backup(name, backup_id):
    _check_backup_id(backup_id)
    services = get_services()
    services.config_manager.get_database(name)

    if not services.storage.backup_exists(name, backup_id):
        raise BackupNotFoundError(backup_id, name)

    with services.locks.hold(name):
        services.storage.delete_backup(name, backup_id)

    return jsonify({'message': 'Backup deleted successfully'})


@bp.route('/<name>/restore', methods=['POST'])
def restore_backup(name):
    """
    Restore a backup of a configured database.

    Request body (all optional):
        - backup_id: Backup to restore (default: latest completed)
        - target_database: Restore into another database
        - create_database: Create the target if it does not exist
        - backup_first: Back up the target before overwriting it
        - dry_run: Only check what would happen

    Returns:
        JSON with restore result
    """
    services = get_services()
    services.config_manager.get_database(name)
    data = request.get_json(silent=True) or {}

    backup_id = data.get('backup_id')
    if backup_id:
        _check_backup_id(backup_id)

    options = RestoreOptions(
        database='',
        backup_id=backup_id,
        target_database=data.get('target_database'),
        create_database=bool(data.get('create_database', False)),
        dry_run=bool(data.get('dry_run', False)),
        backup_first=bool(data.get('backup_first', False))
    )

    result = execute_restore_job(name, services, options)
    return jsonify(result.to_dict())


@bp.route('/<name>/import', methods=['POST'])
def import_dump(name):
    """
    Load an external SQL dump (.sql or .sql.gz) into a configured server.

    Request body:
        - file: Dump file, relative to the import directory (required)
        - target_database: Load into another database (default: configured one)
        - create_database: Create the target if it does not exist

    Returns:
        JSON with import result
    """
    services = get_services()
    services.config_manager.get_database(name)
    data = request.get_json(silent=True) or {}

    file_name = data.get('file')
    if not file_name or not isinstance(file_name, str):
        raise ValidationError('file', 'file is required')

    result = execute_import_job(
        name,
        services,
        _import_path(services.import_dir, file_name),
        target_database=data.get('target_database'),
        create_database=bool(data.get('create_database', False))
    )
    return jsonify(result.to_dict())


@bp.route('/<name>/cleanup', methods=['POST'])
def cleanup(name):
    """
    Apply the retention policy of a configured database.

    Query params:
        - dry_run: Only report what would be deleted (default: false)

    Request body (optional): daily, weekly, monthly, keep_all overriding the
    configured policy for this run.

    Returns:
        JSON with kept and deleted backups
    """
    services = get_services()
    policy = services.config_manager.get_effective_retention(name)
    data = request.get_json(silent=True) or {}

    overrides = {k: data[k] for k in ('daily', 'weekly', 'monthly', 'keep_all') if k in data}
    if overrides:
        policy = RetentionPolicy.from_dict({**policy.to_dict(), **overrides})

    manager = RetentionManager(services.storage, locks=services.locks)
    result = manager.apply_policy(name, policy, dry_run=_arg_flag('dry_run'))
    return jsonify(result.to_dict())
