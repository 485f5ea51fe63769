"""
Retention policy enforcement for backups.

Keeps the most recent backups, up to a fixed count, in both the local
output directory and the remote Box folder. Entries are ordered by the
millisecond timestamp embedded in their name, compared as numbers.
"""

import re
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple


logger = logging.getLogger(__name__)

ARCHIVE_NAME_PATTERN = re.compile(r'^(\d+)\.tar\.gz$')


@dataclass(frozen=True)
class BackupEntry:
    """One stored backup, local or remote."""
    identifier: str
    name: str
    created_ordinal: int


class RetentionError(Exception):
    """Raised when one or more backups could not be deleted."""

    def __init__(self, message: str, failures: List[Tuple[BackupEntry, Exception]]):
        self.failures = failures
        super().__init__(message)


def parse_created_ordinal(name: str) -> Optional[int]:
    """
    Extract the creation timestamp from an archive name.

    Returns:
        Milliseconds since the epoch, or None if name is not an archive name
    """
    match = ARCHIVE_NAME_PATTERN.match(name)
    if not match:
        return None
    return int(match.group(1))


def order_newest_first(entries: Iterable[BackupEntry]) -> List[BackupEntry]:
    """Sort entries by creation time, newest first; ties by name, descending."""
    return sorted(entries, key=lambda e: (e.created_ordinal, e.name), reverse=True)


class RetentionManager:
    """
    Applies a count-based retention limit to a store.
    """

    def __init__(self, limit: int):
        """
        Args:
            limit: Number of most recent backups to keep (at least 1)
        """
        if limit is None or limit < 1:
            raise ValueError(f"Retention limit must be at least 1, got {limit}")

        self.limit = limit
        self.logs = []

    def select_for_deletion(self, entries: Iterable[BackupEntry]) -> List[BackupEntry]:
        """
        Pick the entries beyond the limit most recent ones.

        Args:
            entries: Backups in any order

        Returns:
            Entries to delete, newest first
        """
        ordered = order_newest_first(entries)
        if len(ordered) <= self.limit:
            return []
        return ordered[self.limit:]

    def prune(self, entries: Iterable[BackupEntry], delete: Callable[[str], None],
              store_name: str = 'backup') -> List[str]:
        """
        Delete the entries beyond the limit.

        Every selected entry is attempted even if an earlier deletion fails;
        deleted entries stay deleted.

        Args:
            entries: Backups currently in the store
            delete: Called with each entry's identifier
            store_name: Label used in log messages

        Returns:
            Identifiers that were deleted

        Raises:
            RetentionError: If any deletion failed
        """
        to_delete = self.select_for_deletion(entries)

        if not to_delete:
            self._log(f"No files to remove for {store_name} backups")
            return []

        deleted = []
        failures = []

        for entry in to_delete:
            try:
                delete(entry.identifier)
                deleted.append(entry.identifier)
                self._log(f"Removed {store_name} backup: {entry.name}")
            except Exception as e:
                self._log(f"Failed to remove {store_name} backup {entry.name}: {e}")
                failures.append((entry, e))

        if failures:
            names = ', '.join(entry.name for entry, _ in failures)
            raise RetentionError(
                f"Failed to remove {len(failures)} {store_name} backup(s): {names}",
                failures
            )

        return deleted

    def enforce_local(self, local_storage) -> List[str]:
        """
        Prune the local output directory.

        Args:
            local_storage: LocalStorage instance

        Returns:
            Paths that were deleted
        """
        entries = local_storage.list_backups()
        self._log(f"Local retention: {len(entries)} backups, keeping {self.limit}")
        return self.prune(entries, local_storage.delete, 'local')

    def enforce_remote(self, box_storage, folder) -> List[str]:
        """
        Prune the remote backup folder.

        Args:
            box_storage: BoxStorage instance
            folder: Box folder holding the backups

        Returns:
            File IDs that were deleted
        """
        entries = box_storage.list_backups(folder)
        self._log(f"Remote retention: {len(entries)} backups, keeping {self.limit}")
        return self.prune(entries, box_storage.delete, 'remote')

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
