"""
Archive container and naming.

A backup archive is a gzip compressed tar holding two members:
- database.sql: the logical database dump
- content.tar: the deterministic export of the content directory

Archives are named from their creation time:
    backup-{YYYYmmddTHHMMSSZ}.tar.gz
"""

import os
import re
import tarfile
from datetime import datetime, timezone
from typing import List, Optional, Tuple


ARCHIVE_PREFIX = 'backup-'
ARCHIVE_EXTENSION = '.tar.gz'
TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'

DATABASE_MEMBER = 'database.sql'
CONTENT_MEMBER = 'content.tar'

_ARCHIVE_NAME_RE = re.compile(r'^(backup-(\d{8}T\d{6}Z))\.tar\.gz$')


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def create_archive(members: List[Tuple[str, str]], archive_path: str) -> str:
    """
    Create a gzip compressed tar from a list of files.

    Args:
        members: List of (path on disk, name inside the archive) tuples
        archive_path: Full output path, including extension

    Returns:
        archive_path

    Raises:
        CompressionError: If archive creation fails. The partial output is
            removed and the original exception is chained as __cause__.
    """
    if not members:
        raise CompressionError("No archive members provided")

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            for source_path, arcname in members:
                if not os.path.isfile(source_path):
                    raise CompressionError(f"Archive member does not exist: {source_path}")
                tar.add(source_path, arcname=arcname, recursive=False)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}") from e


def generate_archive_id(created_at: datetime) -> str:
    """
    Build the archive id from its creation time.

    Args:
        created_at: Timezone-aware creation time (converted to UTC)

    Returns:
        Archive id, e.g. backup-20240115T120000Z
    """
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    timestamp = created_at.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
    return f"{ARCHIVE_PREFIX}{timestamp}"


def archive_filename(archive_id: str) -> str:
    return f"{archive_id}{ARCHIVE_EXTENSION}"


def parse_archive_filename(filename: str) -> Optional[Tuple[str, datetime]]:
    """
    Recover archive id and creation time from a file name.

    Args:
        filename: Base name of a file in the backups directory

    Returns:
        (archive_id, created_at) or None if the name is not an archive name
    """
    match = _ARCHIVE_NAME_RE.match(filename)
    if not match:
        return None

    try:
        created_at = datetime.strptime(match.group(2), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None

    return match.group(1), created_at


def parse_archive_id(archive_id: str) -> Optional[datetime]:
    parsed = parse_archive_filename(archive_filename(archive_id))
    return parsed[1] if parsed else None


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
    except Exception as e:
        raise CompressionError(f"Failed to get archive size: {e}")
