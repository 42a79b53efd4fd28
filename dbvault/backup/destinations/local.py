"""
Local filesystem destination.

Stores copies under {base_path}/{data_source}/{YYYY}/{MM}/{run_id}/{filename}.
"""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path

from .base import BackupDestination
from ..errors import DestinationConfigError, DestinationStoreError

logger = logging.getLogger(__name__)


class LocalDestination(BackupDestination):
    """Copies dumps into a directory on the local filesystem."""

    type_name = 'local'

    def __init__(self, destination_id: str, base_path: str):
        super().__init__(destination_id)
        if not base_path:
            raise DestinationConfigError(f"Local destination {destination_id} needs a path")
        self.base_path = Path(base_path)

    @property
    def disk(self) -> str:
        return str(self.base_path)

    def _resolve(self, relative_path: str) -> Path:
        full_path = (self.base_path / relative_path).resolve()
        base = self.base_path.resolve()
        if full_path != base and base not in full_path.parents:
            raise DestinationStoreError(f"Path escapes destination root: {relative_path}")
        return full_path

    def store(self, run, temp_path, filename, metadata):
        if not os.path.exists(temp_path):
            raise DestinationStoreError(f"Source file not found: {temp_path}")

        relative_path = stored_relative_path(run, filename)
        dest_path = self._resolve(relative_path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(temp_path, dest_path)
        except PermissionError as e:
            raise DestinationStoreError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise DestinationStoreError(f"Failed to store locally: {e}")

        logger.debug(f"Stored {filename} at {dest_path}")
        return relative_path

    def delete_stored_file(self, stored_path):
        full_path = self._resolve(stored_path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise DestinationStoreError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise DestinationStoreError(f"Failed to delete local file: {e}")

    def download(self, record):
        full_path = self._resolve(record.path)
        if not full_path.is_file():
            raise FileNotFoundError(f"Backup file not found: {full_path}")
        return str(full_path)

    def test_connection(self) -> bool:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DestinationStoreError(f"Failed to create local storage directory: {e}")
        return os.access(self.base_path, os.W_OK)


def _folder_name(run) -> str:
    name = getattr(run, 'data_source_name', None) or f"source_{getattr(run, 'data_source_id', 'unknown')}"
    return _path_segment(name)


def _path_segment(name: str) -> str:
    return ''.join(c if c.isalnum() or c in '-_.' else '_' for c in name).strip('.') or 'backup'


def stored_relative_path(run, filename: str) -> str:
    """
    Path of a stored copy relative to a destination root.

    The run id keeps copies of runs started within the same second apart.
    """
    now = datetime.now()
    run_id = _path_segment(str(getattr(run, 'run_id', '') or 'run'))
    return f"{_folder_name(run)}/{now.year}/{now.month:02d}/{run_id}/{filename}"
