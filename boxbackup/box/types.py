"""
Shapes of the Box API objects the backup pipeline reads and writes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


ROOT_FOLDER_ID = '0'


class SessionState(str, Enum):
    """Local view of an upload session's progress."""

    CREATED = "created"
    PARTS_UPLOADING = "parts_uploading"
    PARTS_PROCESSING = "parts_processing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class Folder:
    id: str
    name: str = ''
    type: str = 'folder'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Folder':
        return cls(
            id=str(data.get('id', '')),
            name=data.get('name') or '',
            type=data.get('type') or 'folder'
        )


@dataclass
class FileEntry:
    id: str
    name: str = ''
    type: str = 'file'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileEntry':
        return cls(
            id=str(data.get('id', '')),
            name=data.get('name') or '',
            type=data.get('type') or 'file'
        )


@dataclass
class ItemPage:
    """One page of a folder listing or search."""
    entries: List[Dict[str, Any]]
    total_count: int
    limit: int
    offset: int


@dataclass
class UploadPart:
    """A part as confirmed by the server."""
    part_id: str
    offset: int
    size: int
    sha1: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UploadPart':
        return cls(
            part_id=str(data['part_id']),
            offset=int(data['offset']),
            size=int(data.get('size', 0)),
            sha1=data.get('sha1') or ''
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'part_id': self.part_id,
            'offset': self.offset,
            'size': self.size,
            'sha1': self.sha1,
        }


@dataclass
class UploadSession:
    """Server-side state of a chunked upload."""
    id: str
    part_size: int
    total_parts: int
    num_parts_processed: int = 0
    expires_at: Optional[str] = None
    state: SessionState = SessionState.CREATED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UploadSession':
        return cls(
            id=str(data['id']),
            part_size=int(data.get('part_size') or 0),
            total_parts=int(data.get('total_parts') or 0),
            num_parts_processed=int(data.get('num_parts_processed') or 0),
            expires_at=data.get('session_expires_at')
        )

    @property
    def is_processed(self) -> bool:
        return self.num_parts_processed >= self.total_parts
