"""
Storage handlers for backup archives.

Supports:
- BoxStorage: Upload to a Box folder (single request or chunked session)
- LocalStorage: Keep archives in the local output directory
"""

import os
import time
import queue
import shutil
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional

from boxbackup.box.client import BoxAPIError, BoxClient, RemoteError
from boxbackup.box.types import Folder, SessionState, UploadPart, UploadSession
from .chunking import FilePart, count_parts, file_digest, iter_parts
from .retention import BackupEntry, parse_created_ordinal


logger = logging.getLogger(__name__)

# Archives of at least this size go through an upload session
DEFAULT_CHUNKED_THRESHOLD = 20 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class SessionTimeoutError(StorageError):
    """Raised when an upload session does not finish processing in time."""
    pass


def _conflicting_folder(error: RemoteError, name: str) -> Optional[Folder]:
    """Existing folder named in a 409 item_name_in_use answer, if any."""
    if error.status != 409 or error.code != 'item_name_in_use':
        return None
    if not isinstance(error.context_info, dict):
        return None

    conflicts = error.context_info.get('conflicts')
    if isinstance(conflicts, dict):
        conflicts = [conflicts]

    for conflict in conflicts or []:
        if isinstance(conflict, dict) and conflict.get('type') == 'folder' and conflict.get('id'):
            if conflict.get('name', name) == name:
                return Folder.from_dict(conflict)
    return None


class BoxStorage:
    """
    Handler for uploading backups to a Box folder.

    Archives below the chunked threshold are sent in one multipart request.
    Larger archives go through an upload session: parts are uploaded
    concurrently by a bounded worker pool, the session is polled until every
    part is processed, then committed with the digest of the whole archive.
    """

    def __init__(
        self,
        client: BoxClient,
        chunked_threshold: int = DEFAULT_CHUNKED_THRESHOLD,
        max_workers: int = 4,
        poll_interval: float = 2.0,
        poll_timeout: float = 600.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize Box storage handler.

        Args:
            client: BoxClient used for every request
            chunked_threshold: Smallest archive size sent through an upload session
            max_workers: Maximum number of parts uploading at once
            poll_interval: Seconds between session status checks
            poll_timeout: Seconds to wait for the session to process and commit
            sleep: Sleep function (replaced in tests)
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")

        self.client = client
        self.chunked_threshold = chunked_threshold
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep

    @classmethod
    def from_config(cls, client: BoxClient, config) -> 'BoxStorage':
        return cls(
            client,
            chunked_threshold=config.CHUNKED_UPLOAD_THRESHOLD,
            max_workers=config.UPLOAD_MAX_WORKERS,
            poll_interval=config.SESSION_POLL_INTERVAL,
            poll_timeout=config.SESSION_POLL_TIMEOUT
        )

    def get_or_create_folder(self, name: str) -> Folder:
        """
        Find the backup folder by exact name, creating it under the root if missing.
        """
        logger.info(f"Looking for backup folder: {name}")
        for folder in self.client.search_folders(name):
            if folder.name == name:
                logger.info("Found backup folder")
                return folder

        logger.info(f"No backup folder found. Creating {name}")
        try:
            return self.client.create_folder(name)
        except RemoteError as e:
            existing = _conflicting_folder(e, name)
            if existing is None:
                raise
            # Search index lags behind folder creation
            logger.info(f"Backup folder {name} already exists as {existing.id}")
            return existing

    def upload(self, folder: Folder, local_path: str) -> str:
        """
        Upload archive to Box.

        Args:
            folder: Destination folder
            local_path: Path to local archive file

        Returns:
            ID of the uploaded Box file

        Raises:
            StorageError: If the archive cannot be read
            TransportError: If Box cannot be reached
            RemoteError: If Box rejects a request
            SessionTimeoutError: If the upload session does not finish processing
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        file_name = os.path.basename(local_path)
        file_size = os.path.getsize(local_path)

        if file_size < self.chunked_threshold:
            return self._simple_upload(folder, local_path, file_name)
        return self._chunked_upload(folder, local_path, file_name, file_size)

    def _simple_upload(self, folder: Folder, local_path: str, file_name: str) -> str:
        logger.info(f"Uploading {file_name} in a single request")
        try:
            entry = self.client.upload_file(folder.id, local_path, file_name)
        except OSError as e:
            raise StorageError(f"Failed to read archive {local_path}: {e}") from e
        return entry.id

    def _chunked_upload(self, folder: Folder, local_path: str, file_name: str, file_size: int) -> str:
        if file_size == 0:
            raise StorageError(f"Cannot upload empty archive {local_path} in parts")

        session = self.client.create_upload_session(folder.id, file_name, file_size)
        logger.info(
            f"Created upload session {session.id} "
            f"(part size {session.part_size}, {session.total_parts} parts, expires {session.expires_at})"
        )

        try:
            if session.part_size < 1:
                raise StorageError(f"Upload session {session.id} has no usable part size")

            self._set_state(session, SessionState.PARTS_UPLOADING)
            parts = self._upload_parts(session, local_path, file_size)

            self._set_state(session, SessionState.PARTS_PROCESSING)
            deadline = time.monotonic() + self.poll_timeout
            self._wait_for_processing(session, deadline)

            digest = file_digest(local_path)
            entries = self._commit(session, parts, digest, deadline)
            self._set_state(session, SessionState.COMMITTED)

        except OSError as e:
            self._fail(session)
            raise StorageError(f"Failed to read archive {local_path}: {e}") from e
        except Exception:
            self._fail(session)
            raise

        if not entries:
            raise StorageError(f"Commit of upload session {session.id} returned no file entry")
        return entries[0].id

    def _upload_parts(self, session: UploadSession, local_path: str, file_size: int) -> List[UploadPart]:
        """
        Upload every part of the archive with a bounded worker pool.

        Each task reports exactly one outcome through a queue; confirmed
        parts land in the slot of their part index. The first failure wins:
        no further parts are dispatched and the results of tasks still in
        flight are discarded once they finish.
        """
        expected = count_parts(file_size, session.part_size)
        if session.total_parts and session.total_parts != expected:
            logger.warning(
                f"Session {session.id} expects {session.total_parts} parts, archive splits into {expected}"
            )

        slots: List[Optional[UploadPart]] = [None] * expected
        outcomes: "queue.Queue[tuple]" = queue.Queue()
        in_flight = threading.BoundedSemaphore(self.max_workers)
        failed = threading.Event()
        dispatched = 0

        def on_done(index: int, future: Future):
            if future.exception() is not None:
                failed.set()
            in_flight.release()
            outcomes.put((index, future))

        first_error = None

        with open(local_path, 'rb') as f, \
                ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='box-part') as pool:
            for part in iter_parts(f, session.part_size):
                if part.index >= expected:
                    first_error = StorageError(f"Archive {local_path} grew while uploading")
                    break

                in_flight.acquire()
                if failed.is_set():
                    in_flight.release()
                    break

                future = pool.submit(self._upload_part, session.id, part, file_size)
                future.add_done_callback(partial(on_done, part.index))
                dispatched += 1

            for _ in range(dispatched):
                index, future = outcomes.get()
                error = future.exception()
                if error is not None:
                    if first_error is None:
                        first_error = error
                        logger.error(f"Part {index} of session {session.id} failed: {error}")
                    continue
                slots[index] = future.result()

        if first_error is not None:
            raise first_error

        missing = [index for index, slot in enumerate(slots) if slot is None]
        if missing:
            raise StorageError(f"Upload session {session.id} is missing parts {missing}")

        logger.info(f"Uploaded {len(slots)} parts for session {session.id}")
        return slots

    def _upload_part(self, session_id: str, part: FilePart, file_size: int) -> UploadPart:
        confirmed = self.client.upload_part(
            session_id, part.data, part.begin, part.end, file_size, part.digest
        )
        if confirmed.offset != part.begin:
            raise StorageError(
                f"Box confirmed part at offset {confirmed.offset}, expected {part.begin}"
            )
        logger.debug(f"Uploaded part {part.index} (bytes {part.begin}-{part.end})")
        return confirmed

    def _wait_for_processing(self, session: UploadSession, deadline: float):
        """Poll the session until every part is processed or the deadline passes."""
        while True:
            status = self.client.get_upload_session(session.id)
            session.num_parts_processed = status.num_parts_processed
            if status.total_parts:
                session.total_parts = status.total_parts

            if session.is_processed:
                return

            if time.monotonic() >= deadline:
                raise SessionTimeoutError(
                    f"Upload session {session.id} processed {session.num_parts_processed} of "
                    f"{session.total_parts} parts within {self.poll_timeout}s"
                )

            logger.debug(
                f"Session {session.id}: {session.num_parts_processed}/{session.total_parts} parts processed"
            )
            self._sleep(self.poll_interval)

    def _commit(self, session: UploadSession, parts: List[UploadPart], digest: str, deadline: float):
        """Commit parts ordered by offset, retrying while Box is still processing."""
        ordered = sorted(parts, key=lambda part: part.offset)

        while True:
            result = self.client.commit_upload_session(session.id, ordered, digest)
            if not result.pending:
                logger.info(f"Committed upload session {session.id}")
                return result.entries

            if time.monotonic() >= deadline:
                raise SessionTimeoutError(
                    f"Upload session {session.id} was not ready to commit within {self.poll_timeout}s"
                )
            self._sleep(result.retry_after or self.poll_interval)

    def _fail(self, session: UploadSession):
        self._set_state(session, SessionState.FAILED)
        try:
            self.client.abort_upload_session(session.id)
            logger.info(f"Aborted upload session {session.id}")
        except BoxAPIError as e:
            logger.warning(f"Failed to abort upload session {session.id}: {e}")

    def _set_state(self, session: UploadSession, state: SessionState):
        logger.debug(f"Session {session.id}: {session.state.value} -> {state.value}")
        session.state = state

    def list_backups(self, folder: Folder) -> List[BackupEntry]:
        """
        List the archives in the backup folder.

        Items that are not files named like an archive are ignored.
        """
        entries = []
        for item in self.client.iter_folder_items(folder.id):
            if item.get('type') != 'file':
                continue

            name = item.get('name') or ''
            created = parse_created_ordinal(name)
            if created is None:
                logger.debug(f"Ignoring non-backup item in backup folder: {name}")
                continue

            entries.append(BackupEntry(identifier=str(item['id']), name=name, created_ordinal=created))

        return entries

    def delete(self, file_id: str):
        """Delete a file from Box."""
        self.client.delete_file(file_id)


class LocalStorage:
    """
    Handler for storing backups in the local output directory.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Output directory for local backups
        """
        self.base_path = Path(base_path)

        # Create base directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def store(self, source_path: str) -> str:
        """
        Move an archive into the output directory.

        The archive is copied next to its final name and renamed into place,
        so the output directory never holds a partial archive.

        Args:
            source_path: Path to the archive in the temporary directory

        Returns:
            Full path of the stored archive

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        dest_path = self.base_path / os.path.basename(source_path)
        partial_path = dest_path.with_name(dest_path.name + '.part')

        try:
            shutil.copy2(source_path, partial_path)
            os.replace(partial_path, dest_path)
            os.remove(source_path)
            return str(dest_path)

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")
        finally:
            if partial_path.exists():
                try:
                    partial_path.unlink()
                except OSError as cleanup_error:
                    logger.warning(f"Failed to remove partial archive {partial_path}: {cleanup_error}")

    def list_backups(self) -> List[BackupEntry]:
        """
        List the archives in the output directory.

        Raises:
            StorageError: If listing fails
        """
        try:
            entries = []
            for file_path in self.base_path.iterdir():
                created = parse_created_ordinal(file_path.name)
                if created is None or not file_path.is_file():
                    continue
                entries.append(BackupEntry(identifier=str(file_path), name=file_path.name, created_ordinal=created))
            return entries

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def delete(self, path: str):
        """
        Delete an archive from the output directory.

        Raises:
            StorageError: If deletion fails
        """
        full_path = Path(path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")
