"""
Unit tests for temporary workspaces and artifacts (dbvault/backup/artifact.py).
"""

import hashlib
import threading

import pytest

from dbvault.backup.artifact import ArtifactHandle, TemporaryWorkspace
from dbvault.backup.errors import DumpError


class TestTemporaryWorkspace:
    """Test TemporaryWorkspace lifecycle."""

    def test_create_makes_directory(self, tmp_path):
        """Test a new workspace directory is created under the base dir."""
        workspace = TemporaryWorkspace.create(str(tmp_path / "base"))

        assert workspace.exists()
        assert workspace.path.parent == tmp_path / "base"
        assert workspace.released is False

    def test_release_removes_directory_once(self, tmp_path):
        """Test release removes contents and later calls are no-ops."""
        workspace = TemporaryWorkspace.create(str(tmp_path))
        workspace.file_path("dump.sql").write_text("x")

        assert workspace.release() is True
        assert not workspace.exists()
        assert workspace.release() is False

    def test_concurrent_release_happens_once(self, tmp_path):
        """Test only one of many concurrent release calls reports the removal."""
        workspace = TemporaryWorkspace.create(str(tmp_path))
        results = []

        threads = [threading.Thread(target=lambda: results.append(workspace.release())) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert not workspace.exists()

    def test_context_manager_releases(self, tmp_path):
        """Test leaving the with-block releases the workspace."""
        with TemporaryWorkspace.create(str(tmp_path)) as workspace:
            assert workspace.exists()

        assert not workspace.exists()


class TestArtifactHandle:
    """Test ArtifactHandle creation and metadata."""

    def test_create_computes_size_and_checksum(self, tmp_path):
        """Test size and sha256 are computed from the file."""
        workspace = TemporaryWorkspace.create(str(tmp_path))
        path = workspace.file_path("shop_20240115_120000.sql")
        path.write_bytes(b"-- dump\n")

        artifact = ArtifactHandle.create(workspace, str(path))

        assert artifact.size_bytes == 8
        assert artifact.checksum == hashlib.sha256(b"-- dump\n").hexdigest()
        assert artifact.filename == "shop_20240115_120000.sql"
        assert artifact.exists()

    def test_missing_file_raises_dump_error(self, tmp_path):
        """Test wrapping a missing file raises DumpError."""
        workspace = TemporaryWorkspace.create(str(tmp_path))

        with pytest.raises(DumpError, match="not created"):
            ArtifactHandle.create(workspace, str(workspace.file_path("missing.sql")))

    def test_empty_file_raises_dump_error(self, tmp_path):
        """Test an empty dump is rejected."""
        workspace = TemporaryWorkspace.create(str(tmp_path))
        path = workspace.file_path("empty.sql")
        path.write_bytes(b"")

        with pytest.raises(DumpError, match="empty"):
            ArtifactHandle.create(workspace, str(path))

    def test_release_removes_workspace(self, artifact):
        """Test releasing the artifact removes its workspace."""
        assert artifact.release() is True

        assert artifact.released is True
        assert artifact.exists() is False
        assert not artifact.workspace.exists()

    def test_metadata(self, artifact):
        """Test metadata describes filename, size and checksum."""
        metadata = artifact.metadata()

        assert metadata == {
            'original_filename': 'app_20240115_120000.sql',
            'size_bytes': artifact.size_bytes,
            'checksum': artifact.checksum,
            'checksum_algorithm': 'sha256',
        }
