import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify


LOG_FILE_NAME = 'cadangkan.log'
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 10

# Structured attributes copied from error instances into JSON error bodies
ERROR_FIELDS = (
    'field', 'database', 'backup_id', 'expected', 'actual',
    'path', 'required', 'available', 'exit_code', 'op', 'name'
)


def configure_logging(app):
    """Send application and library logs to the console and a rotating file"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))

    handlers = [console_handler, file_handler]
    for handler in handlers:
        handler.setLevel(log_level)

    # cadangkan.* module loggers propagate to the root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(
        f"Logging to {os.path.join(log_dir, LOG_FILE_NAME)} "
        f"(level: {logging.getLevelName(log_level)})"
    )


def register_error_handlers(app):
    """Map domain errors to JSON responses"""
    from cadangkan.backup.errors import (
        BackupError, BackupInProgressError, BackupNotFoundError, ChecksumMismatchError,
        InsufficientSpaceError, ValidationError
    )
    from cadangkan.backup.sources import SourceError
    from cadangkan.database_config import ConfigError, ConfigValidationError, DatabaseNotFoundError
    from cadangkan.utils.crypto import EncryptionError

    def _error(e, status):
        body = {'error': str(e), 'kind': type(e).__name__}
        for attr in ERROR_FIELDS:
            value = getattr(e, attr, None)
            if value not in (None, ''):
                body[attr] = value
        return jsonify(body), status

    @app.errorhandler(ValidationError)
    @app.errorhandler(ConfigValidationError)
    def handle_validation(e):
        return _error(e, 400)

    @app.errorhandler(SourceError)
    def handle_source(e):
        return _error(e, 502)

    @app.errorhandler(BackupError)
    @app.errorhandler(ConfigError)
    @app.errorhandler(EncryptionError)
    def handle_internal(e):
        app.logger.error(f"Request failed: {e}")
        return _error(e, 500)

    @app.errorhandler(DatabaseNotFoundError)
    @app.errorhandler(BackupNotFoundError)
    def handle_not_found(e):
        return _error(e, 404)

    @app.errorhandler(BackupInProgressError)
    def handle_in_progress(e):
        return _error(e, 409)

    @app.errorhandler(ChecksumMismatchError)
    def handle_checksum(e):
        return _error(e, 422)

    @app.errorhandler(InsufficientSpaceError)
    def handle_space(e):
        return _error(e, 507)


def owns_scheduler(app):
    """
    Whether this process should run scheduled backups.

    With the development server only the reloader child qualifies; under
    gunicorn only the worker that post_fork marked with SCHEDULER_WORKER=true.
    Either way exactly one process runs each backup.
    """
    if app.config.get('DEBUG', False):
        return os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    return os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'


def start_background_jobs(app):
    """Start the scheduler and load one job per scheduled database"""
    from cadangkan.scheduler import init_scheduler, start_scheduler, sync_backup_jobs, stop_scheduler
    import atexit

    init_scheduler(app)
    start_scheduler()

    with app.app_context():
        sync_backup_jobs()

    atexit.register(stop_scheduler)
    app.logger.info(f"Scheduler running in process {os.getpid()}")


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from cadangkan.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    os.makedirs(app.config['BACKUP_ROOT'], exist_ok=True)

    # Registry, storage and password encryption shared by routes and jobs
    from cadangkan.services import init_services
    init_services(app)

    from cadangkan.routes import databases_routes, backups_routes, status_routes
    app.register_blueprint(databases_routes.bp)
    app.register_blueprint(backups_routes.bp)
    app.register_blueprint(status_routes.bp)

    register_error_handlers(app)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
    elif owns_scheduler(app):
        start_background_jobs(app)
    else:
        app.logger.info(f"Process {os.getpid()} serves HTTP only; scheduler runs elsewhere")

    return app
