"""
Backup module for dbvault.

This module handles the core backup pipeline including:
- Database dumps (DumpProducer, ConnectionSpec)
- Artifact and temporary workspace ownership
- Storage destinations (local, S3-compatible, SFTP)
- Delivery with per-destination retry
- Run state and lifecycle events
- Retention policy enforcement
"""

from .artifact import ArtifactHandle, TemporaryWorkspace
from .connection import ConnectionSpec
from .destinations import DestinationRegistry
from .errors import BackupError
from .events import EventSink
from .executor import BackupExecutor
from .orchestrator import DeliveryOrchestrator
from .producer import DumpProducer
from .retention import RetentionManager
from .retry import RetryPolicy
from .runs import DestinationOutcome, RunContext, RunRepository

__all__ = [
    'ArtifactHandle',
    'TemporaryWorkspace',
    'ConnectionSpec',
    'DestinationRegistry',
    'BackupError',
    'EventSink',
    'BackupExecutor',
    'DeliveryOrchestrator',
    'DumpProducer',
    'RetentionManager',
    'RetryPolicy',
    'DestinationOutcome',
    'RunContext',
    'RunRepository',
]
