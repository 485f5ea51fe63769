"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate settings and resolve inputs (nothing written yet)
2. Create compressed archive in a temporary directory
3. Move the archive into the output directory
4. Upload to Box (single request or chunked session)
5. Enforce retention locally and in the Box folder
6. Cleanup temporary files
"""

import os
import shutil
import logging
import tempfile
from datetime import datetime
from typing import List, Optional

from boxbackup.config import validate_settings
from boxbackup.models import BackupJob, BackupResult
from boxbackup.box.auth import build_box_client
from boxbackup.box.client import BoxClient
from .compression import expand_inputs, generate_archive_filename, get_archive_size, write_archive
from .retention import RetentionManager
from .storage import BoxStorage, LocalStorage


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(self, job: BackupJob, settings, config, box_client: Optional[BoxClient] = None):
        """
        Initialize backup executor.

        Args:
            job: BackupJob to execute
            settings: BackupSettings with Box credentials
            config: Config class
            box_client: BoxClient to use (default: built from settings)
        """
        self.job = job
        self.settings = settings
        self.config = config
        self.box_client = box_client
        self._owns_client = box_client is None
        self.result = None
        self.temp_dir = None
        self.archive_path = None
        self.logs = []

    def execute(self) -> BackupResult:
        """
        Execute the backup job.

        Failures do not raise; they are recorded on the returned result
        together with the exception that stopped the run.

        Returns:
            BackupResult with execution results
        """
        self.result = BackupResult(started_at=datetime.utcnow())
        self._log(f"Starting backup of {len(self.job.inputs)} input(s) to {self.job.output_directory}")

        try:
            self._execute_workflow()

            self.result.status = 'success'
            self.result.completed_at = datetime.utcnow()
            self._log("Backup completed successfully")

        except Exception as e:
            self.result.status = 'failed'
            self.result.completed_at = datetime.utcnow()
            self.result.error_message = str(e)
            self.result.error = e
            self._log(f"Backup failed: {e}")

        finally:
            self._cleanup()
            self.result.logs = '\n'.join(self.logs)

        return self.result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Validate before any disk or network I/O
        validate_settings(self.settings)
        retention = RetentionManager(self.job.backup_limit)

        filenames = expand_inputs(self.job.inputs)
        self._log(f"Resolved {len(filenames)} files")

        # Step 2: Create archive in a temporary directory
        os.makedirs(self.config.TEMP_DIR, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix='boxbackup_', dir=self.config.TEMP_DIR)
        self._log(f"Temporary directory: {self.temp_dir}")

        self.archive_path = self._create_archive(filenames)

        # Step 3: Move into the output directory
        local_storage = LocalStorage(self.job.output_directory)
        self.archive_path = local_storage.store(self.archive_path)
        self.result.archive_path = self.archive_path

        file_size = get_archive_size(self.archive_path)
        self.result.file_size_bytes = file_size
        self._log(f"Archive created: {self.archive_path} ({file_size / 1024 / 1024:.2f} MB)")

        # Step 4: Upload to Box
        box_storage = self._box_storage()
        folder = box_storage.get_or_create_folder(self.job.folder_name)

        self._log(f"Uploading backup file to Box folder {folder.name or folder.id}")
        self.result.remote_file_id = box_storage.upload(folder, self.archive_path)
        self._log(f"Finished backing up file to Box (file id {self.result.remote_file_id})")

        # Step 5: Retention, only after a successful upload
        self._log("Cleaning up old backups")
        self._enforce_retention(retention, local_storage, box_storage, folder)
        self._log("Finished cleaning old backups")

    def _create_archive(self, filenames: List[str]) -> str:
        """
        Create compressed archive in the temporary directory.

        Returns:
            Path to created archive file

        Raises:
            CompressionError: If archive creation fails
        """
        filename = generate_archive_filename()
        archive_path = os.path.join(self.temp_dir, filename)

        self._log(f"Creating archive {filename}")
        return write_archive(filenames, archive_path)

    def _box_storage(self) -> BoxStorage:
        if self.box_client is None:
            self.box_client = build_box_client(self.settings, self.config)
        return BoxStorage.from_config(self.box_client, self.config)

    def _enforce_retention(self, retention: RetentionManager, local_storage: LocalStorage,
                           box_storage: BoxStorage, folder):
        """
        Prune both stores; a failure in one does not skip the other.

        Raises:
            The first retention failure, after both stores were attempted
        """
        errors = []

        try:
            self.result.local_deleted = retention.enforce_local(local_storage)
        except Exception as e:
            errors.append(e)

        try:
            self.result.remote_deleted = retention.enforce_remote(box_storage, folder)
        except Exception as e:
            errors.append(e)

        self.logs.extend(retention.logs)

        if errors:
            raise errors[0]

    def _cleanup(self):
        """Remove temporary directory and release the Box client."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

        if self._owns_client and self.box_client is not None:
            self.box_client.close()
            self.box_client = None

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def execute_backup_job(job: BackupJob, settings, config, box_client: Optional[BoxClient] = None) -> BackupResult:
    """
    Execute a backup job.

    Args:
        job: BackupJob to execute
        settings: BackupSettings with Box credentials
        config: Config class
        box_client: Optional BoxClient (default: built from settings)

    Returns:
        BackupResult with execution results
    """
    executor = BackupExecutor(job, settings, config, box_client=box_client)
    return executor.execute()
