"""
Archive builder for backup runs.

Expands file, directory and glob inputs into an ordered file list and
streams the files into a single gzip compressed tar archive:
- every input must resolve to at least one regular file
- directories are expanded recursively, depth-first, children by name
- hidden files are matched by patterns the same as other files
- entries appear in traversal order, one entry per file
"""

import os
import glob
import logging
import tarfile
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple


logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = 'tar.gz'


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class InputNotFoundError(CompressionError):
    """Raised when an input path or glob pattern matches no files."""
    pass


def expand_inputs(inputs: List[str]) -> List[str]:
    """
    Resolve inputs into the ordered list of files to archive.

    Args:
        inputs: Literal paths or glob patterns, in the order given by the user

    Returns:
        File paths in archive order

    Raises:
        InputNotFoundError: If an input resolves to zero files
        CompressionError: If a directory cannot be read or contains a symlink cycle
    """
    if not inputs:
        raise InputNotFoundError("No files found for backup: no inputs given")

    filenames = []

    for pattern in inputs:
        matches = sorted(glob.glob(os.path.expanduser(pattern), recursive=True, include_hidden=True))

        files = []
        for match in _drop_nested_matches(matches):
            _collect_files(match, files, set())

        if not files:
            raise InputNotFoundError(f"No files found for backup: {pattern}")

        filenames.extend(files)

    return filenames


def _drop_nested_matches(matches: List[str]) -> List[str]:
    """
    Drop matches that lie below another matched directory.

    A ** pattern matches a directory and everything under it; the
    directory's recursive expansion already covers the rest.

    Args:
        matches: Glob matches in sorted order, parents before children
    """
    directories = set()
    kept = []

    for match in matches:
        normalized = os.path.normpath(match)
        parent = os.path.dirname(normalized)
        covered = False
        while parent and parent != normalized:
            if parent in directories:
                covered = True
                break
            normalized, parent = parent, os.path.dirname(parent)

        if covered:
            continue

        kept.append(match)
        if os.path.isdir(match):
            directories.add(os.path.normpath(match))

    return kept


def _collect_files(path: str, files: List[str], ancestors: Set[Tuple[int, int]]):
    """
    Append path, or the files below it, to files.

    Args:
        path: File or directory path
        files: Accumulator in traversal order
        ancestors: (st_dev, st_ino) of the directories on the current recursion path
    """
    try:
        info = os.stat(path)
    except OSError as e:
        raise CompressionError(f"Cannot access {path}: {e}") from e

    if not os.path.isdir(path):
        files.append(path)
        return

    identity = (info.st_dev, info.st_ino)
    if identity in ancestors:
        raise CompressionError(f"Symlink cycle detected at {path}")

    try:
        children = sorted(os.listdir(path))
    except OSError as e:
        raise CompressionError(f"Cannot read directory {path}: {e}") from e

    ancestors.add(identity)
    for child in children:
        _collect_files(os.path.join(path, child), files, ancestors)
    ancestors.discard(identity)


def create_archive(inputs: List[str], output_path: str) -> str:
    """
    Create a gzip compressed tar archive from inputs.

    Inputs are fully expanded before the archive is opened, so a bad
    pattern never leaves bytes behind.

    Args:
        inputs: Literal paths or glob patterns
        output_path: Full path of the archive to write

    Returns:
        output_path

    Raises:
        InputNotFoundError: If an input matches no files
        CompressionError: If reading a file or writing the archive fails
    """
    return write_archive(expand_inputs(inputs), output_path)


def write_archive(filenames: List[str], output_path: str) -> str:
    """
    Stream already expanded files into a gzip compressed tar archive.

    Args:
        filenames: Files in archive order (see expand_inputs)
        output_path: Full path of the archive to write

    Returns:
        output_path

    Raises:
        CompressionError: If reading a file or writing the archive fails
    """
    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            for filename in filenames:
                _add_to_archive(tar, filename)
        return output_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(output_path):
            try:
                os.remove(output_path)
            except OSError as cleanup_error:
                logger.warning(f"Failed to remove partial archive {output_path}: {cleanup_error}")
        raise CompressionError(f"Failed to create archive: {e}") from e


def _add_to_archive(tar: tarfile.TarFile, filename: str):
    """Append one file, with its own stat metadata, to the archive."""
    logger.debug(f"Adding {filename}")

    # Follow symlinks so the entry carries the target's content
    with open(filename, 'rb') as f:
        tarinfo = tar.gettarinfo(filename, arcname=filename, fileobj=f)
        tar.addfile(tarinfo, f)


def generate_archive_filename(now: Optional[datetime] = None) -> str:
    """
    Generate the archive filename for a backup created now.

    Format: {unix_ms}.tar.gz

    Args:
        now: Creation time (default: current UTC time)

    Returns:
        Filename (without path)
    """
    if now is None:
        now = datetime.now(timezone.utc)

    timestamp_ms = int(now.timestamp() * 1000)
    return f"{timestamp_ms}.{ARCHIVE_EXTENSION}"


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
