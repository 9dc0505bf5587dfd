"""
Retention policy enforcement for backups.

Keeps the newest `keep_last` archives of a job under its remote path and
deletes the older ones. Only objects whose names were produced by the
archive naming scheme, for this job's content name, are ever considered.
"""

import logging
import posixpath
from typing import List, Optional

from bacup.models import RetainedObject
from .compression import generate_archive_filename, parse_archive_filename
from .remotes import Remote, RemoteError


logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when old backups cannot be listed or deleted."""

    def __init__(self, message: str, deleted: Optional[List[str]] = None):
        super().__init__(message)
        self.deleted = deleted or []


def retained_objects(locations: List[str], name: str) -> List[RetainedObject]:
    """
    Build the retention view of a remote listing.

    Args:
        locations: Locations returned by Remote.list()
        name: Original content name the archives were created from

    Returns:
        RetainedObject for every location that is an archive of `name`
    """
    objects = []
    for location in locations:
        basename = posixpath.basename(location.rstrip('/'))
        parsed = parse_archive_filename(basename)
        if parsed is None:
            continue
        timestamp = parsed[0]
        # Whole-name match, since content named x.tar gzips to x.tar.gz
        expected = {generate_archive_filename(name, timestamp, is_archive)
                    for is_archive in (True, False)}
        if basename not in expected:
            continue
        objects.append(RetainedObject(location=location, timestamp=timestamp, name=name))
    return objects


def select_expired(objects: List[RetainedObject], keep_last: int) -> List[RetainedObject]:
    """
    Pick the objects beyond the newest `keep_last`.

    Args:
        objects: Retained objects, in any order
        keep_last: Number of newest objects to keep

    Returns:
        Objects to delete, newest first
    """
    newest_first = sorted(objects, key=lambda obj: obj.timestamp, reverse=True)
    return newest_first[keep_last:]


class RetentionManager:
    """
    Enforces `keep_last` on one remote.
    """

    def __init__(self, remote: Remote):
        """
        Initialize retention manager.

        Args:
            remote: Remote handler with listing and deletion support
        """
        self.remote = remote

    def enforce(self, remote_dir: str, name: str, keep_last: int) -> List[str]:
        """
        Delete all but the newest `keep_last` archives of `name`.

        Every expired object is attempted, even after a failed deletion.

        Args:
            remote_dir: Remote directory holding the archives
            name: Original content name
            keep_last: Number of archives to keep

        Returns:
            Locations deleted

        Raises:
            RetentionError: If listing fails or any deletion fails
        """
        try:
            locations = self.remote.list(remote_dir)
        except RemoteError as e:
            raise RetentionError(f"Failed to list {remote_dir} on {self.remote.name}: {e}") from e

        expired = select_expired(retained_objects(locations, name), keep_last)
        if not expired:
            logger.debug(f"[{self.remote.name}] Nothing to prune under {remote_dir}")
            return []

        deleted = []
        failures = []
        for obj in expired:
            try:
                self.remote.delete(obj.location)
                deleted.append(obj.location)
                logger.info(f"[{self.remote.name}] Deleted old backup {obj.location}")
            except RemoteError as e:
                logger.warning(f"[{self.remote.name}] Failed to delete {obj.location}: {e}")
                failures.append(f"{obj.location}: {e}")

        if failures:
            raise RetentionError(
                f"Failed to delete {len(failures)} old backup(s): " + '; '.join(failures),
                deleted=deleted
            )

        return deleted
