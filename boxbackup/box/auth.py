"""
OAuth2 client-credentials authentication for the Box API.
"""

import time
import logging
import threading
from typing import Optional

import httpx

from boxbackup import __version__
from .client import BoxClient, RemoteError


logger = logging.getLogger(__name__)

TOKEN_URL = 'https://api.box.com/oauth2/token'

# Refresh this many seconds before the token actually expires
EXPIRY_MARGIN_SECONDS = 60


class ClientCredentialsAuth(httpx.Auth):
    """
    httpx auth flow that obtains and caches a client-credentials token.

    The token is fetched on first use, reused until shortly before it
    expires, and refreshed once when a request comes back 401.
    """

    requires_request_body = True
    requires_response_body = True

    def __init__(self, client_id: str, client_secret: str, subject_type: str, subject_id: str,
                 token_url: str = TOKEN_URL):
        self.client_id = client_id
        self.client_secret = client_secret
        self.subject_type = subject_type
        self.subject_id = subject_id
        self.token_url = token_url

        self._lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._expires_at = 0.0

    def auth_flow(self, request: httpx.Request):
        token = self._cached_token()
        if token is None:
            token_response = yield self._build_token_request()
            token = self._store_token(token_response)

        request.headers['Authorization'] = f'Bearer {token}'
        response = yield request

        if response.status_code == 401:
            logger.debug("Access token rejected, requesting a new one")
            token_response = yield self._build_token_request()
            token = self._store_token(token_response)
            request.headers['Authorization'] = f'Bearer {token}'
            yield request

    def _cached_token(self) -> Optional[str]:
        with self._lock:
            if self._access_token and time.monotonic() < self._expires_at:
                return self._access_token
            return None

    def _build_token_request(self) -> httpx.Request:
        return httpx.Request(
            'POST',
            self.token_url,
            data={
                'grant_type': 'client_credentials',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'box_subject_type': self.subject_type,
                'box_subject_id': self.subject_id,
            }
        )

    def _store_token(self, response: httpx.Response) -> str:
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteError.from_response(response)

        try:
            payload = response.json()
            token = payload['access_token']
        except (ValueError, KeyError):
            raise RemoteError("Token response contained no access_token", status=response.status_code)

        expires_in = float(payload.get('expires_in', 3600))

        with self._lock:
            self._access_token = token
            self._expires_at = time.monotonic() + max(expires_in - EXPIRY_MARGIN_SECONDS, 0)

        logger.debug(f"Obtained access token (expires in {expires_in:.0f}s)")
        return token


def build_http_client(settings, config) -> httpx.Client:
    """
    Create the authenticated request executor.

    Args:
        settings: BackupSettings with Box credentials
        config: Config class (timeouts and transport retries)
    """
    box = settings.box
    auth = ClientCredentialsAuth(
        client_id=box.client_id,
        client_secret=box.client_secret,
        subject_type=box.subject_type,
        subject_id=box.subject_id
    )

    return httpx.Client(
        auth=auth,
        timeout=httpx.Timeout(config.HTTP_TIMEOUT),
        transport=httpx.HTTPTransport(retries=config.HTTP_RETRIES),
        headers={'User-Agent': f'box-backup/{__version__}'}
    )


def build_box_client(settings, config) -> BoxClient:
    """Create a BoxClient over an authenticated httpx.Client."""
    return BoxClient(build_http_client(settings, config))
