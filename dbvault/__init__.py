import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config.get('LOG_DIR') or os.path.join(os.path.dirname(os.path.dirname(__file__)), 'data', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'dbvault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _sqlite_directory(uri):
    if not uri.startswith('sqlite:///') or uri.endswith(':memory:'):
        return None
    return os.path.dirname(uri.replace('sqlite:///', '', 1)) or None


def create_app(config_name=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dbvault.config import config
    app.config.from_object(config[config_name])

    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    db_dir = _sqlite_directory(app.config['SQLALCHEMY_DATABASE_URI'])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    db.init_app(app)

    from dbvault.routes import runs_routes
    app.register_blueprint(runs_routes.bp)

    from dbvault.cli import register_cli
    register_cli(app)

    @app.route('/health')
    def health():
        from dbvault.scheduler import is_scheduler_running
        return {'status': 'healthy', 'scheduler_running': is_scheduler_running()}, 200

    # Initialize database schema and run migrations
    from dbvault import models  # noqa: F401
    from dbvault.migrations import init_database_schema

    init_database_schema(app)

    # Derive the password encryption key from SECRET_KEY and the stored salt
    with app.app_context():
        from dbvault.utils.crypto import init_crypto
        try:
            init_crypto(app)
        except Exception as e:
            app.logger.error(f"Failed to initialize crypto manager: {e}")
            app.logger.warning("Backups of password-protected data sources will fail")

    if app.config.get('SCHEDULER_ENABLED', True) and _owns_scheduler(app):
        _start_background_jobs(app)

    return app


def _owns_scheduler(app):
    """
    Only one process may run APScheduler.

    In development that is the Flask reloader child; behind gunicorn it is
    the worker that docker/gunicorn_conf.py marked with SCHEDULER_WORKER.
    """
    if app.config.get('DEBUG', False):
        return os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    return os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'


def _start_background_jobs(app):
    import atexit
    from dbvault.scheduler import init_scheduler, start_scheduler, stop_scheduler, sync_backup_schedules

    init_scheduler(app)
    start_scheduler()

    with app.app_context():
        summary = sync_backup_schedules()

    atexit.register(stop_scheduler)
    app.logger.info(
        f"Scheduler started: {summary['added']} backup job(s) added, {summary['removed']} removed"
    )
