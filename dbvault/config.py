import json
import os
import sys
import tempfile


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        print(f"WARNING: Ignoring non-integer {name}={value!r}", file=sys.stderr)
        return default


def _default_destinations(local_dir):
    return json.dumps([{'type': 'local', 'id': 'local', 'path': local_dir}])


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or from a persistent file in /data
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Stored passwords cannot be decrypted after a restart with a random key
            import secrets
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.", file=sys.stderr)

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dbvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    PASSWORD_KDF_ITERATIONS = 480000

    # Dump workspace and default local destination
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    BACKUP_DESTINATIONS = os.environ.get('BACKUP_DESTINATIONS') or _default_destinations(LOCAL_BACKUP_DIR)

    # Dump
    DUMP_COMPRESSION_METHOD = os.environ.get('DUMP_COMPRESSION_METHOD') or 'gzip'
    DUMP_COMPRESSION_LEVEL = _env_int('DUMP_COMPRESSION_LEVEL', 6)

    # Delivery
    DESTINATION_MAX_ATTEMPTS = _env_int('DESTINATION_MAX_ATTEMPTS', 3)
    DESTINATION_RETRY_BASE_DELAY = _env_int('DESTINATION_RETRY_BASE_DELAY', 60)
    DESTINATION_RETRY_MAX_DELAY = _env_int('DESTINATION_RETRY_MAX_DELAY', 900)
    DELIVERY_PARALLEL = _env_bool('DELIVERY_PARALLEL', False)
    DELIVERY_MAX_WORKERS = _env_int('DELIVERY_MAX_WORKERS', 4)
    ORPHAN_CLEANUP_BEFORE_RETRY = _env_bool('ORPHAN_CLEANUP_BEFORE_RETRY', True)

    # Retention
    RETENTION_KEEP_ALL_DAYS = _env_int('RETENTION_KEEP_ALL_DAYS', 7)
    RETENTION_DAILY_DAYS = _env_int('RETENTION_DAILY_DAYS', 16)
    RETENTION_WEEKLY_WEEKS = _env_int('RETENTION_WEEKLY_WEEKS', 8)
    RETENTION_MONTHLY_MONTHS = _env_int('RETENTION_MONTHLY_MONTHS', 4)
    RETENTION_YEARLY_YEARS = _env_int('RETENTION_YEARLY_YEARS', 2)

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'
    CLEANUP_CRON = os.environ.get('CLEANUP_CRON') or '0 3 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "dbvault.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    BACKUP_DESTINATIONS = os.environ.get('BACKUP_DESTINATIONS') or _default_destinations(LOCAL_BACKUP_DIR)

    # Retry quickly while developing
    DESTINATION_RETRY_BASE_DELAY = _env_int('DESTINATION_RETRY_BASE_DELAY', 1)


class TestingConfig(Config):
    """Test configuration: in-memory database, no scheduler, no backoff"""
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'dbvault_test', 'temp')
    LOCAL_BACKUP_DIR = os.path.join(tempfile.gettempdir(), 'dbvault_test', 'local_backups')
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'dbvault_test', 'logs')
    PASSWORD_KDF_ITERATIONS = 1000
    BACKUP_DESTINATIONS = '[]'
    DESTINATION_RETRY_BASE_DELAY = 0
    DESTINATION_RETRY_MAX_DELAY = 0
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
