"""
Status routes - backup health and storage overview.
"""

from flask import Blueprint, jsonify

from cadangkan.backup.health import calculate_health_score
from cadangkan.scheduler import get_next_run, get_scheduled_jobs, is_scheduler_running
from cadangkan.services import get_services
from cadangkan.status import StatusService


bp = Blueprint('status', __name__, url_prefix='/api/status')


def _status_service():
    services = get_services()
    return StatusService(services.config_manager, services.storage, next_run_lookup=get_next_run)


@bp.route('/', methods=['GET'])
def overall_status():
    """
    Get status of all configured databases.

    Returns:
        JSON with totals, per-database status and health summary lines
    """
    return jsonify(_status_service().get_overall_status())


@bp.route('/databases/<name>', methods=['GET'])
def database_status(name):
    return jsonify(_status_service().get_database_status(name))


@bp.route('/databases/<name>/health', methods=['GET'])
def database_health(name):
    """
    Health score of a configured database.

    Returns:
        JSON with success, recency and consistency components and recommendations
    """
    services = get_services()
    services.config_manager.get_database(name)

    backups = services.storage.list_backups(name, include_failed=True)
    score = calculate_health_score(backups)

    response = score.to_dict()
    response['database'] = name
    return jsonify(response)


@bp.route('/storage', methods=['GET'])
def storage_usage():
    return jsonify(_status_service().get_storage_usage())


@bp.route('/jobs', methods=['GET'])
def scheduled_jobs():
    """Scheduler state and its jobs."""
    return jsonify({
        'running': is_scheduler_running(),
        'jobs': get_scheduled_jobs()
    })
