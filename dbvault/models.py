import uuid
from datetime import datetime, timezone
from enum import Enum

from dbvault import db


class RunStatus(str, Enum):
    """Lifecycle states of a backup run."""
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    PARTIALLY_FAILED = 'partially_failed'
    FAILED = 'failed'

    @classmethod
    def active(cls):
        return (cls.PENDING.value, cls.RUNNING.value)

    @classmethod
    def terminal(cls):
        return (cls.COMPLETED.value, cls.PARTIALLY_FAILED.value, cls.FAILED.value)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class EncryptionKey(db.Model):
    """Salt for the key that encrypts data source passwords"""
    __tablename__ = 'encryption_key'

    id = db.Column(db.Integer, primary_key=True)
    salt = db.Column(db.Text, nullable=False)  # base64
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<EncryptionKey id={self.id}>'


class DataSource(db.Model):
    """Source database configuration"""
    __tablename__ = 'data_sources'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    host = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, nullable=False, default=3306)
    database = db.Column(db.String(255), nullable=False)
    username = db.Column(db.String(255), nullable=False)
    password_encrypted = db.Column(db.Text)
    driver = db.Column(db.String(50), nullable=False, default='mysql+pymysql')
    driver_options = db.Column(db.JSON)
    compression = db.Column(db.Boolean, default=True, nullable=False)
    skipped_tables = db.Column(db.JSON)  # list of table names
    structure_only = db.Column(db.JSON)  # list of table names
    destination_ids = db.Column(db.JSON)  # null = every configured destination
    schedule_cron = db.Column(db.String(100))  # Cron expression
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    runs = db.relationship('BackupRun', back_populates='data_source', cascade='all, delete-orphan', lazy='dynamic')

    def __repr__(self):
        return f'<DataSource {self.name} active={self.is_active}>'


class BackupRun(db.Model):
    """One backup attempt for one data source"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    data_source_id = db.Column(db.Integer, db.ForeignKey('data_sources.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=RunStatus.PENDING.value)
    run_type = db.Column(db.String(20), nullable=False, default='manual')  # manual, scheduled
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    file_size_bytes = db.Column(db.BigInteger)
    destination_outcomes = db.Column(db.JSON)  # destination_id -> outcome dict
    run_metadata = db.Column('metadata', db.JSON)
    warnings = db.Column(db.JSON)
    errors = db.Column(db.JSON)
    cancellation_requested = db.Column(db.Boolean, default=False, nullable=False)
    locked = db.Column(db.Boolean, default=False, nullable=False)  # kept out of retention cleanup
    files_deleted_at = db.Column(db.DateTime)

    data_source = db.relationship('DataSource', back_populates='runs')
    timelines = db.relationship(
        'BackupRunTimeline', back_populates='run', cascade='all, delete-orphan',
        order_by='BackupRunTimeline.id', lazy='dynamic'
    )
    files = db.relationship('BackupFile', back_populates='run', cascade='all, delete-orphan', lazy='dynamic')

    @property
    def is_terminal(self) -> bool:
        return self.status in RunStatus.terminal()

    def add_warning(self, warning):
        warnings = list(self.warnings or [])
        warnings.append({'message': warning} if isinstance(warning, str) else warning)
        self.warnings = warnings

    def available_files(self):
        return self.files.filter(BackupFile.deleted_at.is_(None))

    def destination_counts(self) -> dict:
        outcomes = self.destination_outcomes or {}
        successful = sum(1 for outcome in outcomes.values() if outcome.get('success'))
        return {
            'successful': successful,
            'failed': len(outcomes) - successful,
            'total': len(outcomes)
        }

    def duration_seconds(self):
        if not self.started_at or not self.completed_at:
            return None
        return int((self.completed_at - self.started_at).total_seconds())

    def __repr__(self):
        return f'<BackupRun {self.id} data_source_id={self.data_source_id} status={self.status}>'


class BackupRunTimeline(db.Model):
    """Append-only lifecycle entries for a run"""
    __tablename__ = 'backup_run_timelines'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), db.ForeignKey('backup_runs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)
    event = db.Column(db.String(50), nullable=False)
    destination_id = db.Column(db.String(100))
    entry_metadata = db.Column('metadata', db.JSON)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    run = db.relationship('BackupRun', back_populates='timelines')

    def __repr__(self):
        return f'<BackupRunTimeline run_id={self.run_id} event={self.event}>'


class BackupFile(db.Model):
    """A stored copy of a run's dump on one destination"""
    __tablename__ = 'backup_files'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), db.ForeignKey('backup_runs.id'), nullable=False)
    destination_id = db.Column(db.String(100), nullable=False)
    filename = db.Column(db.String(255), nullable=False)
    path = db.Column(db.String(1000), nullable=False)
    disk = db.Column(db.String(255))  # base dir, bucket or host
    size_bytes = db.Column(db.BigInteger, nullable=False)
    checksum = db.Column(db.String(128))
    file_metadata = db.Column('metadata', db.JSON)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    deleted_at = db.Column(db.DateTime)

    run = db.relationship('BackupRun', back_populates='files')

    def __repr__(self):
        return f'<BackupFile {self.destination_id}:{self.path}>'
