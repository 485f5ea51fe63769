"""
Box API access for the backup pipeline.
"""

from .client import BoxClient, BoxAPIError, TransportError, RemoteError
from .auth import ClientCredentialsAuth, build_box_client
from .types import Folder, FileEntry, UploadPart, UploadSession, SessionState

__all__ = [
    'BoxClient',
    'BoxAPIError',
    'TransportError',
    'RemoteError',
    'ClientCredentialsAuth',
    'build_box_client',
    'Folder',
    'FileEntry',
    'UploadPart',
    'UploadSession',
    'SessionState'
]
