"""
Temporary workspace and dump artifact ownership.

A TemporaryWorkspace is created per run and removed exactly once. The
ArtifactHandle wraps the dump file inside it; destinations only read it.
"""

import hashlib
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Optional

from .errors import DumpError

logger = logging.getLogger(__name__)


class TemporaryWorkspace:
    """
    Scoped temporary directory with idempotent, thread-safe release.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._released = False
        self._lock = threading.Lock()

    @classmethod
    def create(cls, base_dir: Optional[str] = None, prefix: str = 'dbvault_') -> 'TemporaryWorkspace':
        """
        Create a new workspace directory.

        Args:
            base_dir: Parent directory (system temp dir if None)
            prefix: Directory name prefix
        """
        if base_dir:
            os.makedirs(base_dir, exist_ok=True)
        return cls(tempfile.mkdtemp(prefix=prefix, dir=base_dir))

    @property
    def released(self) -> bool:
        return self._released

    def exists(self) -> bool:
        return self.path.exists()

    def file_path(self, filename: str) -> Path:
        return self.path / filename

    def release(self) -> bool:
        """
        Remove the workspace directory.

        Returns:
            True if this call removed the workspace, False if it was already released
        """
        with self._lock:
            if self._released:
                return False
            self._released = True

        if self.path.exists():
            try:
                shutil.rmtree(self.path)
                logger.debug(f"Removed temporary workspace {self.path}")
            except OSError as e:
                logger.warning(f"Failed to remove temporary workspace {self.path}: {e}")
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return f'<TemporaryWorkspace {self.path} released={self._released}>'


class ArtifactHandle:
    """
    A produced dump file plus the workspace that contains it.

    size_bytes, filename and checksum are computed once at creation.
    """

    def __init__(self, workspace: TemporaryWorkspace, path: str, size_bytes: int, checksum: str):
        self._workspace = workspace
        self._path = os.path.abspath(str(path))
        self._size_bytes = size_bytes
        self._checksum = checksum

    @classmethod
    def create(cls, workspace: TemporaryWorkspace, path: str) -> 'ArtifactHandle':
        """
        Wrap a finished dump file.

        Raises:
            DumpError: If the file is missing or empty
        """
        if not os.path.isfile(path):
            raise DumpError(f"Dump file was not created: {path}", {'path': str(path)})

        size_bytes = os.path.getsize(path)
        if size_bytes == 0:
            raise DumpError(f"Dump file is empty: {path}", {'path': str(path)})

        return cls(workspace, path, size_bytes, _sha256(path))

    @property
    def path(self) -> str:
        return self._path

    @property
    def filename(self) -> str:
        return os.path.basename(self._path)

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    @property
    def checksum(self) -> str:
        return self._checksum

    @property
    def workspace(self) -> TemporaryWorkspace:
        return self._workspace

    @property
    def released(self) -> bool:
        return self._workspace.released

    def exists(self) -> bool:
        return not self._workspace.released and os.path.isfile(self._path)

    def release(self) -> bool:
        return self._workspace.release()

    def metadata(self) -> dict:
        return {
            'original_filename': self.filename,
            'size_bytes': self.size_bytes,
            'checksum': self.checksum,
            'checksum_algorithm': 'sha256',
        }

    def __repr__(self):
        return f'<ArtifactHandle {self.filename} size={self.size_bytes}>'


def _sha256(path: str, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()
