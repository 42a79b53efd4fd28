"""
Exceptions raised by the backup pipeline.

Pre-delivery errors (configuration, connection, estimation, dump) are fatal
to a run. Destination errors are caught by the orchestrator and retried.
"""

from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base class for backup pipeline errors."""

    error_code = 'BACKUP_FAILED'

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form stored in a run's error list."""
        return {
            'message': self.message,
            'error_code': self.error_code,
            'error_type': type(self).__name__,
            'context': self.context,
        }


class InvalidConfigurationError(BackupError, ValueError):
    """Raised when connection or destination settings are invalid."""
    error_code = 'INVALID_CONFIGURATION'

    def __init__(self, field: str, reason: str):
        super().__init__(
            f"Invalid configuration for field '{field}': {reason}",
            {'field': field, 'reason': reason}
        )


class DatabaseConnectionError(BackupError):
    """Raised when the source database cannot be reached or rejects credentials."""
    error_code = 'CONNECTION_FAILED'


class EstimationError(BackupError):
    """Raised when the source database size cannot be determined."""
    error_code = 'ESTIMATION_FAILED'


class DumpError(BackupError):
    """Raised when the dump fails or produces no output."""
    error_code = 'DUMP_FAILED'


class DestinationError(BackupError):
    """Base class for per-destination failures."""
    error_code = 'DESTINATION_FAILED'


class DestinationStoreError(DestinationError):
    """Raised when a destination fails to store the artifact."""
    error_code = 'DESTINATION_STORE_FAILED'


class DestinationRecordError(DestinationError):
    """Raised when the file record for a stored copy cannot be created."""
    error_code = 'DESTINATION_RECORD_FAILED'


class DestinationConfigError(DestinationError):
    """Raised when a destination definition cannot be turned into a destination."""
    error_code = 'DESTINATION_CONFIG_INVALID'


class OrphanCleanupError(DestinationError):
    """Raised when an orphaned stored copy cannot be removed. Never fatal."""
    error_code = 'ORPHAN_CLEANUP_FAILED'


class RunStateError(BackupError):
    """Raised on an illegal run status transition."""
    error_code = 'INVALID_RUN_STATE'
