"""
Shared pytest fixtures for box-backup tests.

This module provides fixtures for:
- Configuration and settings pointing at temporary directories
- An in-memory Box API served through httpx.MockTransport
- BoxClient / BoxStorage wired to the fake API
- Temporary file fixtures
"""

import re
import json
import time
import logging
import base64
import hashlib
import threading
from logging.handlers import RotatingFileHandler
from urllib.parse import parse_qs
from unittest.mock import MagicMock, patch

import httpx
import pytest

from boxbackup.config import Config, BackupSettings, BoxSettings
from boxbackup.box.auth import ClientCredentialsAuth
from boxbackup.box.client import BoxClient
from boxbackup.backup.storage import BoxStorage


def sha1_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha1(data).digest()).decode('ascii')


def box_error(status, code, message, context_info=None):
    body = {
        'type': 'error',
        'status': status,
        'code': code,
        'message': message,
        'request_id': f'req-{code}',
        'help_url': 'https://developer.box.com/guides/api-calls/permissions-and-errors/common-errors/',
    }
    if context_info is not None:
        body['context_info'] = context_info
    return httpx.Response(status, json=body)


class FakeBoxAPI:
    """
    In-memory stand-in for the Box endpoints the pipeline calls.

    Knobs for failure injection:
    - fail_part_offsets: part uploads starting at these offsets answer 500
    - drop_part_offsets: part uploads starting at these offsets lose the connection
    - fail_deletes: file ids whose deletion answers 403
    - unsearchable_folders: folder ids not yet visible to search
    - stall_processing: sessions never report processed parts
    - commit_pending: number of commits answered with 202 before accepting
    - reject_tokens: access tokens answered with 401
    - upload_delay: seconds each part upload takes
    """

    def __init__(self, part_size=20480):
        self.part_size = part_size
        self.lock = threading.Lock()
        self.requests = []

        self.folders = {}
        self.files = {}
        self.sessions = {}
        self.commits = []
        self.aborted = []
        self.deleted = []
        self.tokens_issued = 0

        self.fail_part_offsets = set()
        self.drop_part_offsets = set()
        self.fail_deletes = set()
        self.unsearchable_folders = set()
        self.stall_processing = False
        self.commit_pending = 0
        self.reject_tokens = set()
        self.upload_delay = 0.0

        self.active_uploads = 0
        self.max_active_uploads = 0
        self._next_id = 1000

    # Test helpers

    def add_folder(self, name, parent_id='0'):
        folder_id = self._new_id()
        self.folders[folder_id] = {'id': folder_id, 'name': name, 'parent_id': parent_id}
        return folder_id

    def add_file(self, folder_id, name, content=b'archive'):
        file_id = self._new_id()
        self.files[file_id] = {'id': file_id, 'name': name, 'folder_id': folder_id, 'content': content}
        return file_id

    def add_item(self, folder_id, name, item_type):
        item_id = self._new_id()
        self.files[item_id] = {'id': item_id, 'name': name, 'folder_id': folder_id, 'content': b'', 'type': item_type}
        return item_id

    def file_names(self, folder_id):
        return sorted(f['name'] for f in self.files.values() if f['folder_id'] == folder_id)

    def paths(self, method=None):
        return [path for m, _, path in self.requests if method is None or m == method]

    def _new_id(self):
        with self.lock:
            self._next_id += 1
            return str(self._next_id)

    # Transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        host = request.url.host
        path = request.url.path

        with self.lock:
            self.requests.append((method, host, path))

        if path == '/oauth2/token':
            return self._token(request)

        token = request.headers.get('Authorization', '')[len('Bearer '):]
        if not token or token in self.reject_tokens:
            return box_error(401, 'unauthorized', 'Unauthorized')

        if host == 'api.box.com':
            return self._api(request, method, path[len('/2.0'):])
        if host == 'upload.box.com':
            return self._upload(request, method, path[len('/api/2.0'):])
        return box_error(404, 'not_found', f'Unknown host {host}')

    def _token(self, request):
        form = parse_qs(request.content.decode())
        if form.get('grant_type') != ['client_credentials'] or form.get('client_secret') != ['secret']:
            return httpx.Response(400, json={'error': 'invalid_client', 'error_description': 'bad credentials'})

        with self.lock:
            self.tokens_issued += 1
            token = f'token-{self.tokens_issued}'
        return httpx.Response(200, json={'access_token': token, 'expires_in': 3600, 'token_type': 'bearer'})

    def _api(self, request, method, path):
        if method == 'GET' and path == '/search':
            query = request.url.params['query']
            entries = [
                {'type': 'folder', 'id': f['id'], 'name': f['name']}
                for f in self.folders.values()
                if query.lower() in f['name'].lower() and f['id'] not in self.unsearchable_folders
            ]
            return httpx.Response(200, json={'entries': entries, 'total_count': len(entries)})

        if method == 'POST' and path == '/folders':
            body = json.loads(request.content)
            parent_id = body['parent']['id']
            for f in self.folders.values():
                if f['name'] == body['name'] and f['parent_id'] == parent_id:
                    return box_error(409, 'item_name_in_use', 'Item with the same name already exists', {
                        'conflicts': [{'type': 'folder', 'id': f['id'], 'name': f['name']}]
                    })
            folder_id = self.add_folder(body['name'], parent_id)
            return httpx.Response(201, json={'type': 'folder', 'id': folder_id, 'name': body['name']})

        match = re.fullmatch(r'/folders/(\w+)/items', path)
        if method == 'GET' and match:
            folder_id = match.group(1)
            if folder_id not in self.folders:
                return box_error(404, 'not_found', 'Not Found')
            params = request.url.params
            limit = int(params.get('limit', 100))
            offset = int(params.get('offset', 0))
            items = sorted(
                (f for f in self.files.values() if f['folder_id'] == folder_id),
                key=lambda f: f['name'],
                reverse=params.get('direction') == 'DESC'
            )
            page = [
                {'type': f.get('type', 'file'), 'id': f['id'], 'name': f['name']}
                for f in items[offset:offset + limit]
            ]
            return httpx.Response(200, json={
                'entries': page, 'total_count': len(items), 'limit': limit, 'offset': offset
            })

        match = re.fullmatch(r'/files/(\w+)', path)
        if method == 'DELETE' and match:
            file_id = match.group(1)
            if file_id in self.fail_deletes:
                return box_error(403, 'access_denied_insufficient_permissions', 'Access denied')
            if file_id not in self.files:
                return box_error(404, 'not_found', 'Not Found')
            with self.lock:
                del self.files[file_id]
                self.deleted.append(file_id)
            return httpx.Response(204)

        return box_error(404, 'not_found', f'No route for {method} {path}')

    def _upload(self, request, method, path):
        if method == 'POST' and path == '/files/content':
            fields = self._multipart_fields(request)
            attributes = json.loads(fields['attributes'])
            file_id = self.add_file(attributes['parent']['id'], attributes['name'], fields['file'])
            return httpx.Response(201, json={
                'total_count': 1,
                'entries': [{'type': 'file', 'id': file_id, 'name': attributes['name']}]
            })

        if method == 'POST' and path == '/files/upload_sessions':
            body = json.loads(request.content)
            session_id = f"S{self._new_id()}"
            total_parts = -(-body['file_size'] // self.part_size)
            self.sessions[session_id] = {
                'folder_id': body['folder_id'],
                'file_name': body['file_name'],
                'file_size': body['file_size'],
                'total_parts': total_parts,
                'parts': {},
            }
            return httpx.Response(201, json=self._session_body(session_id))

        match = re.fullmatch(r'/files/upload_sessions/(\w+)', path)
        if match and method == 'PUT':
            return self._upload_part(request, match.group(1))
        if match and method == 'GET':
            return httpx.Response(200, json=self._session_body(match.group(1)))
        if match and method == 'DELETE':
            with self.lock:
                self.aborted.append(match.group(1))
            return httpx.Response(204)

        match = re.fullmatch(r'/files/upload_sessions/(\w+)/commit', path)
        if match and method == 'POST':
            return self._commit(request, match.group(1))

        return box_error(404, 'not_found', f'No route for {method} {path}')

    def _session_body(self, session_id):
        session = self.sessions[session_id]
        processed = 0 if self.stall_processing else len(session['parts'])
        return {
            'type': 'upload_session',
            'id': session_id,
            'part_size': self.part_size,
            'total_parts': session['total_parts'],
            'num_parts_processed': processed,
            'session_expires_at': '2030-01-01T00:00:00Z',
            'session_endpoints': {
                'commit': f'https://upload.box.com/api/2.0/files/upload_sessions/{session_id}/commit',
            },
        }

    def _upload_part(self, request, session_id):
        begin, end, total = map(int, re.fullmatch(
            r'bytes (\d+)-(\d+)/(\d+)', request.headers['Content-Range']
        ).groups())
        data = request.content

        with self.lock:
            self.active_uploads += 1
            self.max_active_uploads = max(self.max_active_uploads, self.active_uploads)
        try:
            if self.upload_delay:
                time.sleep(self.upload_delay)

            if begin in self.drop_part_offsets:
                raise httpx.ReadError("connection reset by peer", request=request)
            if begin in self.fail_part_offsets:
                return box_error(500, 'internal_server_error', 'Internal Server Error')
            if len(data) != end - begin + 1 or total != self.sessions[session_id]['file_size']:
                return box_error(416, 'range_not_satisfiable', 'Content-Range does not match body')
            if request.headers['Digest'] != f'sha={sha1_b64(data)}':
                return box_error(412, 'sha1_mismatch', 'Digest does not match body')

            part = {'part_id': f'{begin:08X}', 'offset': begin, 'size': len(data), 'sha1': sha1_b64(data)}
            with self.lock:
                self.sessions[session_id]['parts'][begin] = (part, data)
            return httpx.Response(200, json={'part': part})
        finally:
            with self.lock:
                self.active_uploads -= 1

    def _commit(self, request, session_id):
        session = self.sessions[session_id]
        parts = json.loads(request.content)['parts']
        offsets = [p['offset'] for p in parts]

        with self.lock:
            self.commits.append((session_id, offsets))
            if self.commit_pending > 0:
                self.commit_pending -= 1
                return httpx.Response(202, headers={'Retry-After': '0'})

        if offsets != sorted(session['parts']):
            return box_error(400, 'bad_request', 'Parts are missing or out of order')

        content = b''.join(session['parts'][offset][1] for offset in offsets)
        if request.headers['Digest'] != f'sha={sha1_b64(content)}':
            return box_error(422, 'sha1_mismatch', 'Digest does not match file')

        file_id = self.add_file(session['folder_id'], session['file_name'], content)
        return httpx.Response(201, json={
            'total_count': 1,
            'entries': [{'type': 'file', 'id': file_id, 'name': session['file_name']}]
        })

    @staticmethod
    def _multipart_fields(request):
        boundary = request.headers['Content-Type'].split('boundary=')[1].encode()
        fields = {}
        for section in request.content.split(b'--' + boundary):
            if not section.startswith(b'\r\n'):
                continue
            head, _, data = section[2:].partition(b'\r\n\r\n')
            name = re.search(rb'name="([^"]+)"', head).group(1).decode()
            fields[name] = data[:-2]
        return fields


@pytest.fixture
def test_config(tmp_path):
    """
    Config class with every directory under tmp_path and fast polling.
    """
    class TestConfig(Config):
        DEBUG = True
        CONFIG_DIR = str(tmp_path / 'config')
        LOG_DIR = str(tmp_path / 'logs')
        TEMP_DIR = str(tmp_path / 'temp')
        UPLOAD_MAX_WORKERS = 2
        SESSION_POLL_INTERVAL = 0.0
        SESSION_POLL_TIMEOUT = 5.0

    return TestConfig


@pytest.fixture
def settings():
    """Complete backup settings."""
    return BackupSettings(
        backup_limit=3,
        box=BoxSettings(
            backup_folder_name='minecraftBackups',
            client_id='client',
            client_secret='secret',
            subject_type='enterprise',
            subject_id='12345'
        )
    )


@pytest.fixture
def fake_box():
    """In-memory Box API with 20 KiB upload session parts."""
    return FakeBoxAPI(part_size=20480)


@pytest.fixture
def box_client(fake_box):
    """BoxClient authenticating against and talking to fake_box."""
    auth = ClientCredentialsAuth('client', 'secret', 'enterprise', '12345')
    http_client = httpx.Client(auth=auth, transport=httpx.MockTransport(fake_box.handler))
    client = BoxClient(http_client)
    yield client
    client.close()


@pytest.fixture
def box_storage(box_client):
    """
    BoxStorage over the fake API.

    Archives of 20000 bytes or more go through an upload session.
    """
    return BoxStorage(
        box_client,
        chunked_threshold=20000,
        max_workers=2,
        poll_interval=0.0,
        poll_timeout=5.0,
        sleep=MagicMock()
    )


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()

    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data_dir


@pytest.fixture
def sample_archive(tmp_path):
    """
    A 30000 byte file named like a backup archive.
    """
    archive_path = tmp_path / '1700000000000.tar.gz'
    archive_path.write_bytes(bytes(range(256)) * 117 + bytes(48))
    return archive_path


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('boxbackup.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def reset_logging():
    """
    Remove the handlers configure_logging attaches to the root logger.
    """
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, RotatingFileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
