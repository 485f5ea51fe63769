"""
Box API client.

Thin wrapper over an authenticated httpx.Client. Every call either returns
the decoded payload or raises:
- TransportError: the request never got an HTTP answer
- RemoteError: the answer was outside 200-299
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import httpx

from .types import (
    ROOT_FOLDER_ID, FileEntry, Folder, ItemPage, UploadPart, UploadSession
)


logger = logging.getLogger(__name__)

API_URL = 'https://api.box.com/2.0'
UPLOAD_URL = 'https://upload.box.com/api/2.0'

# Largest page the folder listing endpoint accepts
MAX_PAGE_SIZE = 1000


def sha_digest_header(digest: str) -> str:
    """Value of the Digest header for a base64 SHA-1 digest."""
    return f"sha={digest}"


def content_range_header(begin: int, end: int, total_size: int) -> str:
    """Value of the Content-Range header; begin and end are inclusive."""
    return f"bytes {begin}-{end}/{total_size}"


class BoxAPIError(Exception):
    """Base class for failures talking to Box."""
    pass


class TransportError(BoxAPIError):
    """Raised when a request fails before an HTTP response is received."""
    pass


class RemoteError(BoxAPIError):
    """
    Raised for non-2xx responses.

    Keeps the structured error body for diagnostics.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        request_id: Optional[str] = None,
        help_url: Optional[str] = None,
        context_info: Any = None
    ):
        self.message = message
        self.status = status
        self.code = code
        self.request_id = request_id
        self.help_url = help_url
        self.context_info = context_info
        super().__init__(message)

    def __str__(self) -> str:
        details = []
        if self.status is not None:
            details.append(f"status={self.status}")
        if self.code:
            details.append(f"code={self.code}")
        if self.request_id:
            details.append(f"request_id={self.request_id}")
        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message

    @classmethod
    def from_response(cls, response: httpx.Response) -> 'RemoteError':
        """Decode a Box error body, falling back to the bare status."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            return cls(
                f"Box request failed with HTTP {response.status_code}",
                status=response.status_code
            )

        return cls(
            body.get('message') or f"Box request failed with HTTP {response.status_code}",
            status=body.get('status') or response.status_code,
            code=body.get('code'),
            request_id=body.get('request_id'),
            help_url=body.get('help_url'),
            context_info=body.get('context_info')
        )


class CommitResult:
    """Answer to a commit call; pending when the server still processes parts."""

    def __init__(self, entries: List[FileEntry], pending: bool = False, retry_after: Optional[float] = None):
        self.entries = entries
        self.pending = pending
        self.retry_after = retry_after


class BoxClient:
    """
    Box REST endpoints used by the backup pipeline.
    """

    def __init__(self, http_client: httpx.Client, api_url: str = API_URL, upload_url: str = UPLOAD_URL):
        """
        Args:
            http_client: httpx.Client that authenticates its requests
            api_url: Base URL of the metadata API
            upload_url: Base URL of the upload API
        """
        self.http_client = http_client
        self.api_url = api_url.rstrip('/')
        self.upload_url = upload_url.rstrip('/')

    def close(self):
        self.http_client.close()

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self.http_client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def _handle_response(self, response: httpx.Response) -> Optional[Dict[str, Any]]:
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteError.from_response(response)

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            raise RemoteError(
                f"Invalid JSON in Box response to {response.request.method} {response.request.url}",
                status=response.status_code
            )

    def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        return self._handle_response(self._request(method, url, **kwargs)) or {}

    # Folders and files

    def search_folders(self, name: str) -> List[Folder]:
        """Search for folders whose name matches name."""
        data = self._call(
            'GET',
            f"{self.api_url}/search",
            params={
                'query': name,
                'type': 'folder',
                'content_types': 'name',
            }
        )
        return [
            Folder.from_dict(entry)
            for entry in data.get('entries', [])
            if entry.get('type', 'folder') == 'folder'
        ]

    def create_folder(self, name: str, parent_id: str = ROOT_FOLDER_ID) -> Folder:
        data = self._call(
            'POST',
            f"{self.api_url}/folders",
            json={'name': name, 'parent': {'id': parent_id}}
        )
        return Folder.from_dict(data)

    def list_folder_items(self, folder_id: str, limit: int = MAX_PAGE_SIZE, offset: int = 0) -> ItemPage:
        """
        List one page of a folder, sorted by name descending.
        """
        data = self._call(
            'GET',
            f"{self.api_url}/folders/{folder_id}/items",
            params={
                'limit': limit,
                'offset': offset,
                'sort': 'name',
                'direction': 'DESC',
            }
        )
        entries = data.get('entries', [])
        return ItemPage(
            entries=entries,
            total_count=int(data.get('total_count', len(entries))),
            limit=int(data.get('limit', limit)),
            offset=int(data.get('offset', offset))
        )

    def iter_folder_items(self, folder_id: str, page_size: int = MAX_PAGE_SIZE) -> Iterator[Dict[str, Any]]:
        """Yield every item of a folder, following offset pagination."""
        offset = 0
        while True:
            page = self.list_folder_items(folder_id, limit=page_size, offset=offset)
            yield from page.entries

            offset += len(page.entries)
            if not page.entries or offset >= page.total_count:
                return

    def delete_file(self, file_id: str):
        self._call('DELETE', f"{self.api_url}/files/{file_id}")

    def upload_file(self, folder_id: str, path: str, name: str) -> FileEntry:
        """
        Upload a whole file in one multipart request.
        """
        now = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        attributes = {
            'name': name,
            'parent': {'id': folder_id},
            'content_created_at': now,
            'content_modified_at': now,
        }

        with open(path, 'rb') as f:
            data = self._call(
                'POST',
                f"{self.upload_url}/files/content",
                data={'attributes': json.dumps(attributes)},
                files={'file': (name, f, 'application/octet-stream')}
            )

        entries = data.get('entries') or []
        if not entries:
            raise RemoteError("Upload response contained no file entry")
        return FileEntry.from_dict(entries[0])

    # Upload sessions

    def create_upload_session(self, folder_id: str, file_name: str, file_size: int) -> UploadSession:
        data = self._call(
            'POST',
            f"{self.upload_url}/files/upload_sessions",
            json={
                'folder_id': folder_id,
                'file_name': file_name,
                'file_size': file_size,
            }
        )
        return UploadSession.from_dict(data)

    def upload_part(self, session_id: str, data: bytes, begin: int, end: int,
                    total_size: int, digest: str) -> UploadPart:
        """
        Send one part; returns the part as the server confirmed it.

        Args:
            session_id: Upload session ID
            data: Raw bytes of the part
            begin: Offset of the first byte
            end: Offset of the last byte (inclusive)
            total_size: Size of the whole file
            digest: Base64 SHA-1 of data
        """
        body = self._call(
            'PUT',
            f"{self.upload_url}/files/upload_sessions/{session_id}",
            content=data,
            headers={
                'Content-Type': 'application/octet-stream',
                'Content-Range': content_range_header(begin, end, total_size),
                'Digest': sha_digest_header(digest),
            }
        )
        if 'part' not in body:
            raise RemoteError(f"Upload of bytes {begin}-{end} returned no part descriptor")
        return UploadPart.from_dict(body['part'])

    def get_upload_session(self, session_id: str) -> UploadSession:
        data = self._call('GET', f"{self.upload_url}/files/upload_sessions/{session_id}")
        return UploadSession.from_dict(data)

    def commit_upload_session(self, session_id: str, parts: List[UploadPart], digest: str) -> CommitResult:
        """
        Commit a session.

        Args:
            session_id: Upload session ID
            parts: Confirmed parts, ordered by offset
            digest: Base64 SHA-1 of the whole file
        """
        response = self._request(
            'POST',
            f"{self.upload_url}/files/upload_sessions/{session_id}/commit",
            json={'parts': [part.to_dict() for part in parts]},
            headers={'Digest': sha_digest_header(digest)}
        )

        if response.status_code == 202:
            return CommitResult([], pending=True, retry_after=_parse_retry_after(response))

        data = self._handle_response(response) or {}
        return CommitResult([FileEntry.from_dict(entry) for entry in data.get('entries', [])])

    def abort_upload_session(self, session_id: str):
        self._call('DELETE', f"{self.upload_url}/files/upload_sessions/{session_id}")


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get('Retry-After')
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
