# Gunicorn configuration for Cadangkan
# Only one worker may own the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

# create_app() runs in each worker after fork
preload_app = False


def post_fork(worker):
    """
    Called in the worker process right after it is forked, before the app
    is loaded.

    The first worker (worker.age == 1 after the first fork) becomes the
    scheduler owner; every other worker serves HTTP only, so scheduled
    backups never run twice.

    Args:
        worker: Gunicorn worker instance
    """
    is_owner = worker.age == 1
    os.environ['SCHEDULER_WORKER'] = 'true' if is_owner else 'false'
    if is_owner:
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): backup scheduler owner")
    else:
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only, scheduler disabled")
