"""
Stream compression for database dumps.

Supports multiple formats:
- gzip: .gz
- bzip2: .bz2
- xz: LZMA compressed .xz
- none: plain file
"""

import os
import bz2
import gzip
import lzma
import shutil
from datetime import datetime
from typing import BinaryIO


class CompressionError(Exception):
    """Raised when a compressed stream cannot be written."""
    pass


CHUNK_SIZE = 1024 * 1024

# Map format to file extension and opener
FORMAT_MAP = {
    'gzip': ('.gz', gzip.open),
    'bzip2': ('.bz2', bz2.open),
    'xz': ('.xz', lzma.open),
    'none': ('', open),
}


def _lookup(compression_format: str):
    if compression_format not in FORMAT_MAP:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_MAP.keys())}"
        )
    return FORMAT_MAP[compression_format]


def compression_extension(compression_format: str) -> str:
    return _lookup(compression_format)[0]


def compress_stream(source: BinaryIO, output_path: str, compression_format: str = 'gzip') -> int:
    """
    Compress a byte stream into a file while it is being read.

    The source is consumed in fixed-size chunks, so peak disk usage is the
    compressed size only.

    Args:
        source: Readable binary stream (e.g. a dump process's stdout)
        output_path: Destination file
        compression_format: Format to use ('gzip', 'bzip2', 'xz', 'none')

    Returns:
        Size of the written file in bytes

    Raises:
        CompressionError: If writing fails; the partial file is removed
        ValueError: If compression_format is invalid
    """
    _, opener = _lookup(compression_format)

    try:
        with opener(output_path, 'wb') as out:
            shutil.copyfileobj(source, out, CHUNK_SIZE)
        return os.path.getsize(output_path)
    except (OSError, EOFError, lzma.LZMAError) as e:
        remove_quietly(output_path)
        raise CompressionError(f"Failed to write {output_path}: {e}")
    except BaseException:
        remove_quietly(output_path)
        raise


def generate_dump_filename(database_name: str, timestamp: datetime, compression_format: str) -> str:
    """
    Generate a dump filename.

    Format: {database}-{YYYY-MM-DDTHHMM}.sql{ext}

    Args:
        database_name: Name of the dumped database
        timestamp: Time of the run (minute resolution is kept)
        compression_format: Compression format

    Returns:
        Filename (without path)
    """
    # Keep the name readable but never let it escape the staging directory
    safe_name = database_name.replace(os.sep, '_')
    if os.altsep:
        safe_name = safe_name.replace(os.altsep, '_')

    return f"{safe_name}-{timestamp.strftime('%Y-%m-%dT%H%M')}.sql{compression_extension(compression_format)}"


def remove_quietly(path: str) -> bool:
    """Delete a file if present. Returns True if something was removed."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
