"""
Unit tests for compression module (dbvault/backup/compression.py).

Tests dump streams for all supported methods (gzip, bzip2, xz, none).
"""

import bz2
import gzip
import lzma
from datetime import datetime

import pytest

from dbvault.backup.compression import (
    CompressionError,
    generate_dump_filename,
    open_dump_stream,
    read_dump_text,
    validate_compression_method,
)


class TestOpenDumpStream:
    """Test open_dump_stream with different methods."""

    @pytest.mark.parametrize("method,opener", [
        ("gzip", gzip.open),
        ("bzip2", bz2.open),
        ("xz", lzma.open),
        ("none", open),
    ])
    def test_written_text_is_compressed_with_method(self, tmp_path, method, opener):
        """Test every method writes a file its own decompressor can read."""
        path = str(tmp_path / f"dump.{method}")

        with open_dump_stream(path, method) as out:
            out.write("CREATE TABLE t (id INTEGER);\n")

        with opener(path, 'rt', encoding='utf-8') as f:
            assert f.read() == "CREATE TABLE t (id INTEGER);\n"

    def test_gzip_output_is_smaller_for_repetitive_input(self, tmp_path):
        """Test compression actually shrinks repetitive dumps."""
        plain = str(tmp_path / "plain.sql")
        packed = str(tmp_path / "packed.sql.gz")
        content = "INSERT INTO t VALUES (1, 'aaaaaaaaaa');\n" * 1000

        with open_dump_stream(plain, 'none') as out:
            out.write(content)
        with open_dump_stream(packed, 'gzip') as out:
            out.write(content)

        assert (tmp_path / "packed.sql.gz").stat().st_size < (tmp_path / "plain.sql").stat().st_size

    def test_out_of_range_level_is_clamped(self, tmp_path):
        """Test levels outside the method's range do not raise."""
        path = str(tmp_path / "dump.sql.bz2")

        with open_dump_stream(path, 'bzip2', level=0) as out:
            out.write("x")

        assert read_dump_text(path) == "x"

    def test_invalid_method(self, tmp_path):
        """Test unknown compression method raises ValueError."""
        with pytest.raises(ValueError, match="Invalid compression method"):
            open_dump_stream(str(tmp_path / "dump"), 'rar')

    def test_unwritable_path_raises_compression_error(self, tmp_path):
        """Test a missing parent directory raises CompressionError."""
        with pytest.raises(CompressionError):
            open_dump_stream(str(tmp_path / "missing" / "dump.sql.gz"), 'gzip')


class TestReadDumpText:
    """Test reading dumps back."""

    def test_detects_compression_from_extension(self, tmp_path):
        """Test .xz files are decompressed transparently."""
        path = str(tmp_path / "dump.sql.xz")
        with lzma.open(path, 'wt', encoding='utf-8') as f:
            f.write("-- dump\n")

        assert read_dump_text(path) == "-- dump\n"

    def test_missing_file(self, tmp_path):
        """Test missing dump raises CompressionError."""
        with pytest.raises(CompressionError, match="not found"):
            read_dump_text(str(tmp_path / "nope.sql"))

    def test_corrupt_archive(self, tmp_path):
        """Test a file that is not gzip raises CompressionError."""
        path = tmp_path / "broken.sql.gz"
        path.write_bytes(b"not gzip at all")

        with pytest.raises(CompressionError):
            read_dump_text(str(path))


class TestGenerateDumpFilename:
    """Test generate_dump_filename function."""

    @pytest.mark.parametrize("method,extension", [
        ("gzip", "sql.gz"),
        ("bzip2", "sql.bz2"),
        ("xz", "sql.xz"),
        ("none", "sql"),
    ])
    def test_extension_per_method(self, method, extension):
        """Test the extension matches the compression method."""
        filename = generate_dump_filename("shop", method, now=datetime(2024, 1, 15, 12, 30, 45))

        assert filename == f"shop_20240115_123045.{extension}"

    def test_sanitizes_database_name(self):
        """Test special characters become underscores."""
        filename = generate_dump_filename("my db/prod", "none", now=datetime(2024, 1, 15))

        assert filename.startswith("my_db_prod_")

    def test_validate_compression_method(self):
        """Test valid methods are returned unchanged."""
        assert validate_compression_method('xz') == 'xz'
        with pytest.raises(ValueError):
            validate_compression_method('zip')
