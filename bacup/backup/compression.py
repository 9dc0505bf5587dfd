"""
Compression handlers for backup content.

Supports:
- gzip: a single file (database dump, container output, file named by a pattern)
- tar.gz: a directory tree or a set of matched paths

Archive names are deterministic: YYYY-MM-DD-hh:mm-<name>.gz or
YYYY-MM-DD-hh:mm-<name>.tar.gz, with the timestamp taken in UTC.
"""

import gzip
import os
import re
import shutil
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


TIMESTAMP_FORMAT = '%Y-%m-%d-%H:%M'

GZIP_EXTENSION = '.gz'
TAR_GZ_EXTENSION = '.tar.gz'

_ARCHIVE_NAME_RE = re.compile(
    r'^(?P<stamp>\d{4}-\d{2}-\d{2}-\d{2}:\d{2})-(?P<name>.+?)(?P<ext>\.tar\.gz|\.gz)$'
)


def generate_archive_filename(name: str, instant: datetime, is_archive: bool) -> str:
    """
    Generate the remote object name for compressed content.

    Args:
        name: Original content name (e.g. service1, db-dump.sql)
        instant: Pipeline start time; naive values are taken as UTC
        is_archive: True when a tar step occurred (directory or path set)

    Returns:
        Filename, e.g. 2024-03-05-01:00-service1.tar.gz
    """
    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
    extension = TAR_GZ_EXTENSION if is_archive else GZIP_EXTENSION
    return f"{instant.strftime(TIMESTAMP_FORMAT)}-{name}{extension}"


def parse_archive_filename(filename: str) -> Optional[Tuple[datetime, str, str]]:
    """
    Split an archive name into its timestamp, original name and extension.

    Args:
        filename: Object basename

    Returns:
        (timestamp, name, extension) or None if the name was not produced by
        generate_archive_filename
    """
    match = _ARCHIVE_NAME_RE.match(filename)
    if not match:
        return None

    try:
        stamp = datetime.strptime(match.group('stamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return stamp.replace(tzinfo=timezone.utc), match.group('name'), match.group('ext')


def compress_file(source_path: str, output_path: str) -> str:
    """
    Gzip a single file.

    Args:
        source_path: File to compress
        output_path: Destination path of the .gz file

    Returns:
        output_path

    Raises:
        CompressionError: If the source cannot be read or the output written
    """
    source = Path(source_path)
    if not source.is_file():
        raise CompressionError(f"Not a regular file: {source_path}")

    try:
        with open(source, 'rb') as src, gzip.open(output_path, 'wb') as dst:
            shutil.copyfileobj(src, dst)
        return output_path
    except OSError as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to compress {source_path}: {e}") from e


def create_archive(source_paths: List[str], root: str, output_path: str) -> str:
    """
    Create a tar.gz archive from a directory tree or a set of paths.

    Members are stored relative to `root`, so extracting the archive
    recreates the tree below the pattern's root directory.

    Args:
        source_paths: Files/directories to include
        root: Common root of source_paths
        output_path: Destination path of the .tar.gz file

    Returns:
        output_path

    Raises:
        CompressionError: If archive creation fails
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    root_path = Path(root)
    parents = {os.path.dirname(path) for path in source_paths}

    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            for source_path in source_paths:
                source = Path(source_path)

                if not source.exists():
                    raise CompressionError(f"Path does not exist: {source_path}")

                try:
                    arcname = str(source.relative_to(root_path))
                except ValueError:
                    arcname = source.name

                # Directories whose children are matched too are added as
                # plain entries, the children follow on their own
                tar.add(source, arcname=arcname, recursive=source_path not in parents)
        return output_path
    except CompressionError:
        _remove_partial(output_path)
        raise
    except (OSError, tarfile.TarError) as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to create archive: {e}") from e


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass
