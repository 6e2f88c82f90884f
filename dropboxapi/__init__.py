from . import client, rest, session, streams
from .client import ChunkedUploader, DropboxClient, DropboxOAuth2Flow, UploadSessionCursor, normalize_path
from .rest import APIError, APIResponse, AuthError, RESTSocketError, TokenRefreshError
from .session import DropboxSession
