"""
Shared pytest fixtures for dbvault tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Data source and backup run factories
- A file-based SQLite source database to dump
- Fake destinations and a recording event sink
- Mock fixtures for external services (S3, SFTP, scheduler)
"""

import os
import sqlite3
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from dbvault import create_app, db as _db
from dbvault.backup.artifact import ArtifactHandle, TemporaryWorkspace
from dbvault.backup.destinations.base import BackupDestination
from dbvault.backup.errors import DestinationStoreError
from dbvault.backup.events import EventSink
from dbvault.models import BackupRun, DataSource, RunStatus, utcnow
from dbvault.utils.crypto import CryptoManager


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
    })
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app, db):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def crypto_manager_initialized():
    """
    Create and initialize a CryptoManager instance.

    Passphrase: test_password_123
    """
    cm = CryptoManager()
    salt = cm.initialize('test_password_123', iterations=1000)
    return cm, salt


@pytest.fixture
def source_db_path(tmp_path):
    """
    Create a SQLite source database to back up.

    Tables:
    - users (3 rows) with an active_users view on top
    - logs (2 rows)
    - sessions (2 rows)
    """
    path = tmp_path / 'source.db'
    conn = sqlite3.connect(str(path))
    conn.executescript("""
        CREATE TABLE users (id INTEGER PRIMARY KEY, name VARCHAR(50) NOT NULL, active INTEGER NOT NULL);
        CREATE TABLE logs (id INTEGER PRIMARY KEY, message TEXT);
        CREATE TABLE sessions (id INTEGER PRIMARY KEY, token VARCHAR(64));
        INSERT INTO users (name, active) VALUES ('alice', 1), ('bob', 0), ('o''brien', 1);
        INSERT INTO logs (message) VALUES ('log-entry-one'), ('log-entry-two');
        INSERT INTO sessions (token) VALUES ('session-token-1'), ('session-token-2');
        CREATE VIEW active_users AS SELECT id, name FROM users WHERE active = 1;
    """)
    conn.commit()
    conn.close()
    return str(path)


@pytest.fixture
def data_source_factory(db, source_db_path):
    """Create DataSource rows pointing at the SQLite source database."""
    counter = {'n': 0}

    def factory(**overrides):
        counter['n'] += 1
        values = {
            'name': f"source_{counter['n']}",
            'host': 'localhost',
            'port': 1,
            'database': source_db_path,
            'username': 'backup',
            'driver': 'sqlite',
            'compression': True,
            'is_active': True,
        }
        values.update(overrides)
        data_source = DataSource(**values)
        db.session.add(data_source)
        db.session.commit()
        return data_source

    return factory


@pytest.fixture
def data_source(data_source_factory):
    return data_source_factory(name='app_db')


@pytest.fixture
def run_factory(db):
    """Create BackupRun rows."""
    def factory(data_source, **overrides):
        values = {
            'data_source_id': data_source.id,
            'status': RunStatus.PENDING.value,
            'run_type': 'manual',
        }
        values.update(overrides)
        run = BackupRun(**values)
        db.session.add(run)
        db.session.commit()
        return run

    return factory


@pytest.fixture
def pending_run(run_factory, data_source):
    return run_factory(data_source)


@pytest.fixture
def running_run(run_factory, data_source):
    return run_factory(data_source, status=RunStatus.RUNNING.value, started_at=utcnow())


@pytest.fixture
def artifact(tmp_path):
    """An ArtifactHandle wrapping a small dump file in its own workspace."""
    workspace = TemporaryWorkspace.create(str(tmp_path / 'workspaces'))
    path = workspace.file_path('app_20240115_120000.sql')
    path.write_text('-- dump\nCREATE TABLE t (id INTEGER);\n')
    return ArtifactHandle.create(workspace, str(path))


class RecordingEventSink(EventSink):
    """Collects emitted events in order."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def names(self):
        return [e.name for e in self.events]


@pytest.fixture
def sink():
    return RecordingEventSink()


class FakeDestination(BackupDestination):
    """
    In-memory destination for orchestrator tests.

    store_results / record_results are consumed one per attempt: an
    exception instance is raised, anything else is returned.
    """

    type_name = 'fake'

    def __init__(self, destination_id, store_results=None, record_results=None, enabled=True, on_store=None):
        super().__init__(destination_id)
        self.store_results = list(store_results or [])
        self.record_results = list(record_results or [])
        self.enabled = enabled
        self.on_store = on_store
        self.store_calls = []
        self.record_calls = []
        self.deleted = []
        self.stored = {}

    def is_enabled(self, run):
        return self.enabled

    def store(self, run, temp_path, filename, metadata):
        self.store_calls.append({'temp_path': temp_path, 'filename': filename, 'metadata': metadata})
        if self.on_store:
            self.on_store(self, temp_path)
        result = self.store_results.pop(0) if self.store_results else f"{self.identifier}/{filename}"
        if isinstance(result, Exception):
            raise result
        if result:
            with open(temp_path, 'rb') as f:
                self.stored[result] = f.read()
        return result

    def create_file_record(self, run, filename, stored_path, size_bytes, metadata):
        self.record_calls.append({'stored_path': stored_path, 'size_bytes': size_bytes})
        result = self.record_results.pop(0) if self.record_results else len(self.record_calls)
        if isinstance(result, Exception):
            raise result
        return result

    def delete_stored_file(self, stored_path):
        self.deleted.append(stored_path)
        self.stored.pop(stored_path, None)

    def download(self, record):
        raise FileNotFoundError(record.path)


@pytest.fixture
def fake_destination_factory():
    return FakeDestination


@pytest.fixture
def always_failing_destination():
    return FakeDestination('broken', store_results=[DestinationStoreError('disk full')] * 10)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient used by the SFTP destination.

    Returns the patched class; its return_value.open_sftp() is a MagicMock.
    """
    with patch('dbvault.backup.destinations.sftp.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import dbvault.scheduler as scheduler_module

    with patch('dbvault.scheduler.BackgroundScheduler') as mock_sched, \
            patch('dbvault.scheduler.SQLAlchemyJobStore'):
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
