# Gunicorn configuration for dbvault
#   gunicorn -c docker/gunicorn_conf.py
# Only one worker may own the APScheduler instance, otherwise every
# scheduled backup would run once per worker.

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'dbvault:create_app()'
bind = os.environ.get('BIND', '0.0.0.0:5000')
workers = int(os.environ.get('WEB_CONCURRENCY', 2))
# Backups triggered over HTTP without a scheduler run inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 3600))


def post_fork(server, worker):
    """
    Designate the first worker (worker.age == 0) as the scheduler owner.

    Runs in the worker before the app is loaded; create_app() reads
    SCHEDULER_WORKER to decide whether to start APScheduler.
    """
    is_owner = worker.age == 0
    os.environ['SCHEDULER_WORKER'] = 'true' if is_owner else 'false'
    role = 'scheduler owner' if is_owner else 'HTTP worker (scheduler disabled)'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): {role}")
