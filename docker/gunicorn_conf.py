# Gunicorn configuration for mer-de-glace
# Serves the status API; exactly one worker runs the backup loop

import os
import fcntl
import logging

logger = logging.getLogger('gunicorn.error')

bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"
workers = int(os.environ.get('GUNICORN_WORKERS', '1'))

# A backup cycle finishes its current stage before the worker exits
graceful_timeout = int(os.environ.get('GRACEFUL_TIMEOUT', '3600'))

SCHEDULER_LOCK = os.environ.get('SCHEDULER_LOCK', '/tmp/merdeglace-scheduler.lock')


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the app is loaded.

    The worker that wins an exclusive lock on SCHEDULER_LOCK becomes the
    scheduler owner. The lock is held for the worker's lifetime, so a
    replacement worker takes over when the owner dies and backup cycles never
    run in two workers at once.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance
    """
    lock_file = open(SCHEDULER_LOCK, 'a')
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        lock_file.close()
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
        return

    worker.scheduler_lock = lock_file
    os.environ['SCHEDULER_WORKER'] = 'true'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
