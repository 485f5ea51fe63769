from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class BackupJob:
    """What to back up and where the archives go"""
    inputs: List[str]
    output_directory: str
    backup_limit: int
    folder_name: str
    schedule_cron: Optional[str] = None

    def __repr__(self):
        return f'<BackupJob inputs={len(self.inputs)} output={self.output_directory} limit={self.backup_limit}>'


@dataclass
class BackupResult:
    """Outcome and logs of one backup run"""
    status: str = 'running'  # 'running', 'success' or 'failed'
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    archive_path: Optional[str] = None
    file_size_bytes: Optional[int] = None
    remote_file_id: Optional[str] = None
    local_deleted: List[str] = field(default_factory=list)
    remote_deleted: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    error: Optional[BaseException] = field(default=None, repr=False)
    logs: str = ''

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self):
        return f'<BackupResult status={self.status} archive={self.archive_path}>'
