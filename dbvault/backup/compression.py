"""
Compression handlers for database dumps.

Dumps are compressed while they are written, so only the compressed file
ever exists on disk.

Supports multiple methods:
- gzip: .sql.gz
- bzip2: .sql.bz2
- xz: .sql.xz (LZMA)
- none: plain .sql
"""

import bz2
import gzip
import lzma
import os
from datetime import datetime
from typing import IO


class CompressionError(Exception):
    """Raised when a dump stream cannot be opened or read."""
    pass


COMPRESSION_METHODS = ('gzip', 'bzip2', 'xz', 'none')

EXTENSION_MAP = {
    'gzip': 'sql.gz',
    'bzip2': 'sql.bz2',
    'xz': 'sql.xz',
    'none': 'sql'
}


def validate_compression_method(compression_method: str) -> str:
    """
    Check a compression method name.

    Raises:
        ValueError: If compression_method is invalid
    """
    if compression_method not in EXTENSION_MAP:
        raise ValueError(
            f"Invalid compression method: {compression_method}. "
            f"Valid options: {list(COMPRESSION_METHODS)}"
        )
    return compression_method


def open_dump_stream(path: str, compression_method: str = 'gzip', level: int = 6) -> IO[str]:
    """
    Open a text stream that compresses everything written to it.

    Args:
        path: Output file path (extension is not added)
        compression_method: One of gzip, bzip2, xz, none
        level: Compression level (clamped to what the method accepts)

    Returns:
        Writable text file object

    Raises:
        ValueError: If compression_method is invalid
        CompressionError: If the file cannot be opened
    """
    validate_compression_method(compression_method)

    try:
        if compression_method == 'gzip':
            return gzip.open(path, 'wt', compresslevel=_clamp(level, 0, 9), encoding='utf-8')
        if compression_method == 'bzip2':
            return bz2.open(path, 'wt', compresslevel=_clamp(level, 1, 9), encoding='utf-8')
        if compression_method == 'xz':
            return lzma.open(path, 'wt', preset=_clamp(level, 0, 9), encoding='utf-8')
        return open(path, 'w', encoding='utf-8')
    except OSError as e:
        raise CompressionError(f"Failed to open dump stream {path}: {e}")


def read_dump_text(path: str) -> str:
    """
    Read a dump back as text, detecting the compression from its extension.

    Args:
        path: Path to a .sql, .sql.gz, .sql.bz2 or .sql.xz file

    Returns:
        Decompressed dump contents
    """
    openers = {
        '.gz': gzip.open,
        '.bz2': bz2.open,
        '.xz': lzma.open,
    }
    opener = openers.get(os.path.splitext(path)[1], open)

    try:
        with opener(path, 'rt', encoding='utf-8') as f:
            return f.read()
    except FileNotFoundError:
        raise CompressionError(f"Dump not found: {path}")
    except (OSError, EOFError, lzma.LZMAError) as e:
        raise CompressionError(f"Failed to read dump {path}: {e}")


def generate_dump_filename(database: str, compression_method: str, now: datetime = None) -> str:
    """
    Generate a standardized dump filename.

    Format: {database}_{YYYYMMDD_HHMMSS}.{ext}

    Args:
        database: Source database name
        compression_method: Compression method

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')

    extension = EXTENSION_MAP.get(compression_method, 'sql.gz')

    # Sanitize database name (replace spaces and special chars with underscores)
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in database
    )

    return f"{safe_name}_{timestamp}.{extension}"


def _clamp(value: int, lowest: int, highest: int) -> int:
    return max(lowest, min(highest, int(value)))
