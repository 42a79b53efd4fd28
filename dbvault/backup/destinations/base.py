"""
Common capability contract for backup destinations.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from dbvault import db
from dbvault.models import BackupFile, utcnow
from ..errors import DestinationError, DestinationRecordError

logger = logging.getLogger(__name__)


class BackupDestination(ABC):
    """
    A storage backend that can receive a copy of a dump.

    Subclasses implement the physical operations (store, delete_stored_file,
    download). File records are shared and live in the backup_files table.
    """

    type_name = 'base'
    # download() hands back a temporary local copy the caller must remove
    download_is_temporary = False

    def __init__(self, destination_id: str):
        self._destination_id = destination_id

    @property
    def identifier(self) -> str:
        """Stable key used in outcome maps and file records."""
        return self._destination_id

    @property
    def disk(self) -> str:
        """Human readable location label stored on file records."""
        return self.type_name

    def is_enabled(self, run) -> bool:
        """
        Check whether this destination should receive the given run.

        Args:
            run: RunContext (or anything exposing destination_ids)
        """
        allowed = getattr(run, 'destination_ids', None)
        if allowed is None:
            return True
        return self.identifier in allowed

    @abstractmethod
    def store(self, run, temp_path: str, filename: str, metadata: Dict[str, Any]) -> Optional[str]:
        """
        Copy the dump to this destination.

        Args:
            run: RunContext for the current run
            temp_path: Path of the dump in the run workspace (read-only)
            filename: Dump filename
            metadata: Filename, size, checksum and run details

        Returns:
            Path of the stored copy within this destination

        Raises:
            DestinationStoreError: If the copy cannot be stored
        """

    @abstractmethod
    def delete_stored_file(self, stored_path: str) -> None:
        """
        Remove a stored copy. Missing files are not an error.

        Raises:
            DestinationStoreError: If deletion fails
        """

    @abstractmethod
    def download(self, record: BackupFile) -> str:
        """
        Make a stored copy available to a user.

        Returns:
            A local filesystem path or a URL

        Raises:
            FileNotFoundError: If the stored copy no longer exists
        """

    def create_file_record(
        self,
        run,
        filename: str,
        stored_path: str,
        size_bytes: int,
        metadata: Dict[str, Any]
    ) -> int:
        """
        Persist a file record pairing the stored path with size and metadata.

        Returns:
            ID of the new BackupFile row

        Raises:
            DestinationRecordError: If the record cannot be written
        """
        try:
            record = BackupFile(
                run_id=run.run_id,
                destination_id=self.identifier,
                filename=filename,
                path=stored_path,
                disk=self.disk,
                size_bytes=size_bytes,
                checksum=metadata.get('checksum'),
                file_metadata=dict(metadata)
            )
            db.session.add(record)
            db.session.commit()
            return record.id
        except Exception as e:
            db.session.rollback()
            raise DestinationRecordError(
                f"Failed to create file record for {self.identifier}: {e}",
                {'destination_id': self.identifier, 'path': stored_path}
            )

    def delete_file_record(self, record: Union[int, BackupFile]) -> bool:
        """
        Delete the stored copy behind a file record and mark the record deleted.

        Args:
            record: BackupFile or its ID

        Returns:
            True if the record existed and is now deleted. False when it was
            missing, already deleted, or the stored copy could not be removed;
            in the last case the record is left untouched.
        """
        if not isinstance(record, BackupFile):
            record = db.session.get(BackupFile, record)

        if record is None or record.deleted_at is not None:
            return False

        try:
            self.delete_stored_file(record.path)
        except DestinationError as e:
            logger.error(f"Failed to delete {record.path} from {self.identifier}: {e}")
            return False

        record.deleted_at = utcnow()
        db.session.commit()
        logger.info(f"Deleted {record.path} from {self.identifier}")
        return True

    def test_connection(self) -> bool:
        """Check the destination is reachable. Overridden by remote destinations."""
        return True

    def __repr__(self):
        return f'<{type(self).__name__} {self.identifier}>'
