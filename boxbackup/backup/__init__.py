"""
Backup module for box-backup.

This module handles the core backup functionality including:
- Archive creation from files, directories and glob patterns
- Chunk planning for large uploads
- Storage (Box and local output directory)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, execute_backup_job
from .compression import create_archive, expand_inputs, CompressionError, InputNotFoundError
from .chunking import FilePart, plan_parts
from .storage import BoxStorage, LocalStorage, StorageError, SessionTimeoutError
from .retention import RetentionManager, RetentionError

__all__ = [
    'BackupExecutor',
    'execute_backup_job',
    'create_archive',
    'expand_inputs',
    'CompressionError',
    'InputNotFoundError',
    'FilePart',
    'plan_parts',
    'BoxStorage',
    'LocalStorage',
    'StorageError',
    'SessionTimeoutError',
    'RetentionManager',
    'RetentionError'
]
