"""
The client API for Dropbox API v2.

:class:`DropboxClient` wraps the RPC and content endpoints, and can refresh
expired tokens and wait out rate limits. :class:`ChunkedUploader` sends large
files and pipes through an upload session, and :class:`DropboxOAuth2Flow`
authorizes users of a web app.
"""

import base64
import collections
import hmac
import json
import logging
import os
import re
import time

from . import rest
from .rest import APIError, TokenRefreshError
from .session import BaseSession, DropboxOAuth2Session
from .streams import ContentStream

log = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 150 * 1024 * 1024
UPLOAD_SESSION_START = 0
UPLOAD_SESSION_APPEND = 1

_PATH_ID_PATTERN = re.compile(r'^id:.*|^rev:.*|^(ns:[0-9]+(/.*)?)')


def normalize_path(path):
    """Normalize path for use with the Dropbox API.

    Path ids (``id:...``), revisions (``rev:...``) and namespace relative
    paths (``ns:1234/...``) are returned unchanged. Any other path loses its
    leading and trailing slashes and gets a single leading slash back, except
    for the root which is the empty string.
    """
    if _PATH_ID_PATTERN.match(path):
        return path

    path = path.strip('/')

    return '/' + path if path else ''


class UploadSessionCursor(collections.namedtuple('UploadSessionCursor', ['session_id', 'offset'])):
    """Position within an upload session.

    ``offset`` is the number of bytes the session has received. Cursors are
    immutable; :meth:`advance` returns the cursor for the next call.
    """
    __slots__ = ()

    def advance(self, nbytes):
        return self._replace(offset=self.offset + nbytes)

    def to_dict(self):
        return {'session_id': self.session_id, 'offset': self.offset}


class DropboxClient(object):
    """
    This class lets you make Dropbox API v2 calls. You'll need an OAuth 2
    access token, or a :class:`dropboxapi.session.DropboxSession` holding one.
    A session can be authorized with :class:`DropboxOAuth2Flow` or by calling
    its token methods directly.

    All of the API call methods can raise a :class:`dropboxapi.rest.APIError`
    exception if the server returns a non-2xx response, and a
    :class:`dropboxapi.rest.RESTSocketError` if Dropbox can't be reached.

    Two opt-in policies wrap every call:

    - ``auto_refresh``: when a call fails because the access token expired
      and the client was built with a session that can refresh, the token is
      refreshed and the call repeated. A failed refresh raises
      :class:`dropboxapi.rest.TokenRefreshError`.
    - ``auto_retry``: when a call is rate limited (HTTP 429) the client waits
      for the number of seconds given by the ``Retry-After`` header and
      repeats the call.

    A single call is repeated at most ``max_retries`` times.
    """

    def __init__(self, oauth2_access_token=None, auto_refresh=False, auto_retry=False,
                 max_retries=5, max_chunk_size=MAX_CHUNK_SIZE, max_chunk_retries=0,
                 team_member_id='', namespace_id='', rest_client=None):
        """Construct a ``DropboxClient`` instance.

        Parameters
          oauth2_access_token
            An OAuth 2 access token (string) or a :class:`dropboxapi.session.BaseSession`.
            Sessions are needed for ``auto_refresh``.
          auto_refresh
            Refresh expired access tokens and repeat the call. (Default ``False``.)
          auto_retry
            Wait and repeat calls that were rate limited. (Default ``False``.)
          max_retries
            The maximum number of times a single call is repeated by the
            two policies above. (Default 5.)
          max_chunk_size
            The largest number of bytes sent in one upload request. Files
            larger than this are uploaded through an upload session. Never
            more than 150 MiB.
          max_chunk_retries
            How many times a failed upload session chunk is sent again. Only
            applies to sources that can be rewound. (Default 0.)
          team_member_id
            Act as this team member (``Dropbox-API-Select-Admin`` or
            ``Dropbox-API-Select-User`` header).
          namespace_id
            Resolve paths relative to this namespace (``Dropbox-API-Path-Root`` header).
          rest_client
            Optional :class:`dropboxapi.rest.RESTClient`-like object to use for making
            requests.
        """
        if rest_client is None: rest_client = rest.RESTClient
        self.rest_client = rest_client
        self.set_session(oauth2_access_token)

        self.auto_refresh = auto_refresh
        self.auto_retry = auto_retry
        self.max_retries = max_retries
        self.set_max_chunk_size(max_chunk_size)
        self.set_max_chunk_retries(max_chunk_retries)
        self.set_team_member_id(team_member_id)
        self.set_namespace_id(namespace_id)

    # -------------
    # Configuration
    # -------------
    def set_session(self, session):
        """Use ``session`` (a session object or an access token string) for authorization."""
        if session is None:
            session = ''
        if isinstance(session, str):
            if session and not _OAUTH2_ACCESS_TOKEN_PATTERN.match(session):
                raise ValueError("invalid format for oauth2_access_token: %r" % (session,))
            session = DropboxOAuth2Session(session, rest_client=self.rest_client)
        elif not isinstance(session, BaseSession):
            raise ValueError("'oauth2_access_token' must either be a string or a session")
        self.session = session
        return self

    def set_access_token(self, access_token):
        self.session.access_token = access_token
        return self

    def set_team_member_id(self, team_member_id):
        self.team_member_id = team_member_id
        return self

    def set_namespace_id(self, namespace_id):
        self.namespace_id = namespace_id
        return self

    def set_max_chunk_size(self, max_chunk_size):
        """Set the upload chunk size, clamped to between one byte and 150 MiB."""
        self.max_chunk_size = max(1, min(max_chunk_size, MAX_CHUNK_SIZE))
        return self

    def set_max_chunk_retries(self, max_chunk_retries):
        self.max_chunk_retries = max(0, max_chunk_retries)
        return self

    # --------
    # Requests
    # --------
    def api_headers(self, member_type='admin'):
        """Build the team selection and path root headers for a call.

        Parameters
            member_type
              ``'admin'`` selects the team member with ``Dropbox-API-Select-Admin``,
              anything else with ``Dropbox-API-Select-User``.
        """
        headers = {}

        if self.team_member_id:
            key = 'Dropbox-API-Select-Admin' if member_type == 'admin' else 'Dropbox-API-Select-User'
            headers[key] = self.team_member_id

        if self.namespace_id:
            headers['Dropbox-API-Path-Root'] = json.dumps({
                '.tag': 'namespace_id',
                'namespace_id': self.namespace_id,
            })

        return headers

    def rpc_request(self, target, params=None, headers=None):
        """
        Make a call to an RPC endpoint. It is exposed if you need to make API calls
        not implemented in this library or if you need the status and headers of
        the response.

        Parameters
            target
              The endpoint path with leading slash (e.g. '/files/get_metadata').
            params
              A dictionary of arguments, sent as the JSON body of the request.
            headers
              Additional headers (see :meth:`api_headers()`).

        Returns
              A :class:`dropboxapi.rest.APIResponse`.
        """
        url = self.session.build_url(self.session.RPC_ENDPOINT, target)
        return self._send(url, headers, json_params=params or None)

    def content_request(self, target, arguments=None, contents=None, headers=None):
        """
        Make a call to a content (upload or download) endpoint.

        Parameters
            target
              The endpoint path with leading slash (e.g. '/files/upload').
            arguments
              A dictionary of arguments, sent JSON encoded in the ``Dropbox-API-Arg`` header.
            contents
              The request body: bytes, a string or a file-like object. ``None``
              sends no body.
            headers
              Additional headers (see :meth:`api_headers()`).

        Returns
              A :class:`dropboxapi.rest.APIResponse`. For downloads its body is a
              :class:`dropboxapi.rest.RESTResponse` which must be closed.
        """
        headers = dict(headers or {})
        headers['Dropbox-API-Arg'] = json.dumps(arguments if arguments is not None else {})
        if contents is not None:
            headers['Content-Type'] = 'application/octet-stream'

        url = self.session.build_url(self.session.CONTENT_ENDPOINT, target)
        return self._send(url, headers, body=contents)

    def _send(self, url, headers, **kw):
        body = kw.get('body')
        position = body.tell() if _is_rewindable(body) else None

        attempt = 0
        while True:
            try:
                return self.rest_client.request('POST', url,
                                                headers=self.session.build_access_headers(headers),
                                                **kw)
            except APIError as e:
                if attempt >= self.max_retries:
                    raise
                if self.auto_refresh and self.session.can_refresh and e.has_expired_token():
                    self._refresh_access_token()
                elif self.auto_retry and e.is_rate_limited():
                    wait = e.retry_after
                    if wait is None:
                        wait = 2 ** attempt
                    log.warning("rate limited on %s, retrying in %d seconds", url, wait)
                    time.sleep(wait)
                else:
                    raise

            attempt += 1
            if position is not None:
                body.seek(position)

    def _refresh_access_token(self):
        try:
            refreshed = self.session.refresh_access_token()
        except APIError as e:
            raise TokenRefreshError() from e
        if not refreshed:
            raise TokenRefreshError()

    # -----
    # Users
    # -----
    def get_user_account(self, account_id):
        """Get information about a user's account.

        https://www.dropbox.com/developers/documentation/http/documentation#users-get_account
        """
        return self.rpc_request('/users/get_account', {'account_id': account_id}).body

    def get_current_account(self):
        """Get information about the current user's account.

        Returns
              A dictionary containing account information.

              For a detailed description of what this call returns, visit:
              https://www.dropbox.com/developers/documentation/http/documentation#users-get_current_account
        """
        return self.rpc_request('/users/get_current_account', headers=self.api_headers()).body

    def revoke_token(self):
        """
        Revoke the access token that this ``DropboxClient`` is using. If this call
        succeeds, further API calls using this object will fail.

        Returns
              ``True`` when the token was revoked.
        """
        return self.rpc_request('/auth/token/revoke').status == 200

    # -------
    # Uploads
    # -------
    def should_upload_chunked(self, contents):
        """Whether ``contents`` has to go through an upload session.

        That is the case for pipes, whose size can't be known up front, and
        for anything larger than ``max_chunk_size``.
        """
        stream = ContentStream.wrap(contents)
        if stream.pipe:
            return True
        return stream.size > self.max_chunk_size

    def upload(self, path, contents, mode='add', autorename=False):
        """Upload a file.

        A typical use case would be as follows::

            with open('working-draft.txt', 'rb') as f:
                metadata = client.upload('/magnum-opus.txt', f)

        Sources larger than ``max_chunk_size`` and pipes are sent through an
        upload session (see :meth:`upload_chunked()`), everything else in a
        single request.

        Parameters
            path
              The full path to upload the file to, *including the file name*.
            contents
              Bytes, a string or a binary file-like object.
            mode
              ``'add'`` (default), ``'overwrite'`` or ``'update'``.
            autorename
              Whether Dropbox should rename the file when it conflicts with an
              existing one. (Default ``False``.)

        Returns
              A dictionary containing the metadata of the newly uploaded file.

              For a detailed description of what this call returns, visit:
              https://www.dropbox.com/developers/documentation/http/documentation#files-upload
        """
        stream = ContentStream.wrap(contents)
        if self.should_upload_chunked(stream):
            return self.upload_chunked(path, stream, mode, autorename)

        arguments = {
            'autorename': autorename,
            'mode': mode,
            'path': normalize_path(path),
        }

        return self.content_request('/files/upload', arguments, stream.read(), self.api_headers()).body

    def get_chunked_uploader(self, contents, chunk_size=None):
        """Creates a :class:`ChunkedUploader` to upload the given source.

        Parameters
            contents
              Bytes, a string or a file-like object (pipes included).
            chunk_size
              The number of bytes to put in each request. Defaults to, and
              never exceeds, ``max_chunk_size``.
        """
        return ChunkedUploader(self, contents, chunk_size)

    def upload_chunked(self, path, contents, mode='add', autorename=False, chunk_size=None):
        """Upload a source split in chunks through an upload session.

        The chunk size directly affects memory usage: exactly one chunk is
        held in memory at a time. Large chunks tend to speed up the upload,
        small ones keep memory usage low.

        Returns
              A dictionary containing the metadata of the newly uploaded file.
        """
        return self.get_chunked_uploader(contents, chunk_size).upload_chunked(path, mode, autorename)

    def upload_session_start(self, contents, close=False):
        """Start an upload session with a first piece of data.

        https://www.dropbox.com/developers/documentation/http/documentation#files-upload_session-start

        Returns
              An :class:`UploadSessionCursor` whose offset is the number of bytes sent.
        """
        data = ContentStream.wrap(contents).read()

        response = self.content_request('/files/upload_session/start', {'close': close},
                                        data, self.api_headers())

        return UploadSessionCursor(response.body['session_id'], len(data))

    def upload_session_append(self, contents, cursor, close=False):
        """Append more data to an upload session.

        When ``close`` is set, this call closes the session.
        A single request should not upload more than 150 MB.

        https://www.dropbox.com/developers/documentation/http/documentation#files-upload_session-append_v2

        Returns
              A new :class:`UploadSessionCursor` advanced by the number of bytes sent.
        """
        data = ContentStream.wrap(contents).read()

        arguments = {
            'cursor': cursor.to_dict(),
            'close': close,
        }
        self.content_request('/files/upload_session/append_v2', arguments, data, self.api_headers())

        return cursor.advance(len(data))

    def upload_session_finish(self, contents, cursor, path, mode='add', autorename=False, mute=False):
        """Finish an upload session and save the uploaded data to ``path``.

        ``contents`` may hold the last piece of the file, or be empty. The
        request is always sent as an upload, with an empty body in the latter case.

        https://www.dropbox.com/developers/documentation/http/documentation#files-upload_session-finish

        Returns
              A dictionary containing the metadata of the newly committed file.
        """
        data = ContentStream.wrap(contents).read() if contents is not None else b''

        arguments = {
            'cursor': cursor.to_dict(),
            'commit': {
                'path': normalize_path(path),
                'mode': mode,
                'autorename': autorename,
                'mute': mute,
            },
        }

        return self.content_request('/files/upload_session/finish', arguments,
                                    data, self.api_headers()).body

    # -----
    # Files
    # -----
    def create_folder(self, path, autorename=False):
        """Create a folder at a given path.

        https://www.dropbox.com/developers/documentation/http/documentation#files-create_folder
        """
        params = {
            'autorename': autorename,
            'path': normalize_path(path),
        }

        return self.rpc_request('/files/create_folder_v2', params, self.api_headers()).body

    def copy(self, from_path, to_path, autorename=False, allow_ownership_transfer=False):
        """Copy a file or folder to a different location in the user's Dropbox.

        If the source path is a folder all its contents will be copied.

        https://www.dropbox.com/developers/documentation/http/documentation#files-copy
        """
        params = {
            'allow_ownership_transfer': allow_ownership_transfer,
            'autorename': autorename,
            'from_path': normalize_path(from_path),
            'to_path': normalize_path(to_path),
        }

        return self.rpc_request('/files/copy_v2', params, self.api_headers()).body

    def move(self, from_path, to_path, autorename=False, allow_ownership_transfer=False):
        """Move a file or folder to a different location in the user's Dropbox.

        If the source path is a folder all its contents will be moved. Case-only
        renaming is not supported.

        https://www.dropbox.com/developers/documentation/http/documentation#files-move
        """
        params = {
            'allow_ownership_transfer': allow_ownership_transfer,
            'autorename': autorename,
            'from_path': normalize_path(from_path),
            'to_path': normalize_path(to_path),
        }

        return self.rpc_request('/files/move_v2', params, self.api_headers()).body

    def delete(self, path):
        """Delete the file or folder at a given path, including its contents."""
        params = {
            'path': normalize_path(path),
        }

        return self.rpc_request('/files/delete_v2', params, self.api_headers()).body

    def download(self, path):
        """Download a file.

        Example::

            with client.download('/magnum-opus.txt') as f, open('magnum-opus.txt', 'wb') as out:
                out.write(f.read())

        Returns
              A :class:`dropboxapi.rest.RESTResponse`. The file metadata is in its
              ``Dropbox-API-Result`` header.
        """
        arguments = {
            'path': normalize_path(path),
        }

        return self.content_request('/files/download', arguments, None, self.api_headers()).body

    def download_zip(self, path):
        """Download a folder as a zip file.

        The folder must be less than 20 GB in size and any single file within
        must be less than 4 GB in size. The input cannot be a single file.

        https://www.dropbox.com/developers/documentation/http/documentation#files-download_zip
        """
        arguments = {
            'path': normalize_path(path),
        }

        return self.content_request('/files/download_zip', arguments, None,
                                    self.api_headers('user')).body

    def list_folder(self, path, recursive=False, include_deleted=False,
                    include_has_explicit_shared_members=False, include_mounted_folders=True,
                    limit=0):
        """Start returning the contents of a folder.

        Use the ``cursor`` of the result with :meth:`list_folder_continue()`
        while ``has_more`` is true.

        https://www.dropbox.com/developers/documentation/http/documentation#files-list_folder
        """
        params = {
            'path': normalize_path(path),
            'recursive': recursive,
            'include_deleted': include_deleted,
            'include_has_explicit_shared_members': include_has_explicit_shared_members,
            'include_mounted_folders': include_mounted_folders,
        }

        if limit > 0:
            params['limit'] = limit

        return self.rpc_request('/files/list_folder', params, self.api_headers()).body

    def list_folder_continue(self, cursor):
        """Page through the results of :meth:`list_folder()`."""
        return self.rpc_request('/files/list_folder/continue', {'cursor': cursor},
                                self.api_headers()).body

    def get_metadata(self, path, include_media_info=False, include_deleted=False,
                     include_has_explicit_shared_members=False):
        """Return the metadata for a file or folder.

        Metadata for the root folder is unsupported.

        https://www.dropbox.com/developers/documentation/http/documentation#files-get_metadata
        """
        params = {
            'path': normalize_path(path),
            'include_media_info': include_media_info,
            'include_deleted': include_deleted,
            'include_has_explicit_shared_members': include_has_explicit_shared_members,
        }

        return self.rpc_request('/files/get_metadata', params, self.api_headers()).body

    # -------
    # Sharing
    # -------
    def create_shared_link(self, path, settings=None):
        """Create a shared link with custom settings.

        Parameters
            path
              The file or folder to share.
            settings
              An optional dictionary. The keys ``require_password``, ``expires``,
              ``audience``, ``access`` and ``allow_download`` are passed on;
              ``link_password`` only together with ``require_password``. Without
              settings the link is public.

        Returns
              A dictionary describing the link.

              For a detailed description of what this call returns, visit:
              https://www.dropbox.com/developers/documentation/http/documentation#sharing-create_shared_link_with_settings
        """
        settings = settings or {}
        params = {
            'path': path,
        }

        link_settings = {}
        for key in ('require_password', 'expires', 'audience', 'access', 'allow_download'):
            if key in settings:
                link_settings[key] = settings[key]
                if key == 'require_password' and 'link_password' in settings:
                    link_settings['link_password'] = settings['link_password']

        if link_settings:
            params['settings'] = link_settings

        return self.rpc_request('/sharing/create_shared_link_with_settings', params,
                                self.api_headers()).body

    def list_shared_links(self, path=None, cursor=None, direct_only=True):
        """List shared links of this user.

        If no path is given, returns all shared links of the current user.
        """
        params = {
            'direct_only': direct_only,
        }
        if path:
            params['path'] = path
        if cursor:
            params['cursor'] = cursor

        return self.rpc_request('/sharing/list_shared_links', params,
                                self.api_headers('user')).body

    # --------
    # Contacts
    # --------
    def delete_manual_contacts(self):
        """Remove all manually added contacts. Returns ``True`` on success."""
        return self.rpc_request('/contacts/delete_manual_contacts').status == 200

    def delete_manual_contacts_batch(self, email_addresses):
        """Remove the given manually added contacts. Returns ``True`` on success."""
        params = {
            'email_addresses': list(email_addresses),
        }

        return self.rpc_request('/contacts/delete_manual_contacts_batch', params).status == 200

    # ----
    # Team
    # ----
    def team_members(self, include_removed=False, limit=1000):
        """List members of a team.

        https://www.dropbox.com/developers/documentation/http/teams#team-members-list
        """
        params = {
            'limit': limit,
            'include_removed': include_removed,
        }

        return self.rpc_request('/team/members/list_v2', params).body

    def team_folders(self, limit=1000):
        """List all team folders."""
        return self.rpc_request('/team/team_folder/list', {'limit': limit}).body

    def create_team_folder(self, name, sync_setting='not_synced'):
        """Create a new, active, team folder with no members."""
        params = {
            'sync_setting': sync_setting,
            'name': name,
        }

        return self.rpc_request('/team/team_folder/create', params).body

    def rename_team_folder(self, team_folder_id, name):
        params = {
            'team_folder_id': team_folder_id,
            'name': name,
        }

        return self.rpc_request('/team/team_folder/rename', params).body

    def archive_team_folder(self, team_folder_id, force_async_off=False):
        """Archive an active team folder and remove all its folder and file members."""
        params = {
            'team_folder_id': team_folder_id,
            'force_async_off': force_async_off,
        }

        return self.rpc_request('/team/team_folder/archive', params).body

    def delete_team_folder(self, team_folder_id):
        """Permanently delete an archived team folder. Returns ``True`` on success."""
        params = {
            'team_folder_id': team_folder_id,
        }

        return self.rpc_request('/team/team_folder/permanently_delete', params).status == 200


class ChunkedUploader(object):
    """Contains the logic around a chunked upload, which uploads a
    large file or a pipe to Dropbox through an upload session.

    An uploader moves from ``NOT_STARTED`` to ``SESSION_OPEN`` once the
    session is started and to ``FINISHED`` once the file is committed. Use
    one uploader per file.
    """

    NOT_STARTED = 'not_started'
    SESSION_OPEN = 'session_open'
    FINISHED = 'finished'

    def __init__(self, client, contents, chunk_size=None, max_chunk_retries=None):
        self.client = client
        self.stream = ContentStream.wrap(contents)

        if chunk_size is None or chunk_size > client.max_chunk_size:
            chunk_size = client.max_chunk_size
        self.chunk_size = max(chunk_size, 1)

        if max_chunk_retries is None:
            max_chunk_retries = client.max_chunk_retries
        self.max_chunk_retries = max_chunk_retries

        self.state = self.NOT_STARTED

    def upload_chunked(self, path, mode='add', autorename=False, mute=False):
        """Upload all data of the source and commit it to ``path``.

        Throws the error of the first chunk that could not be uploaded; the
        session is abandoned in that case.

        Returns
            A dictionary containing the metadata of the newly committed file.
        """
        if self.state != self.NOT_STARTED:
            raise ValueError("uploader is %s; create a new one for each file" % self.state)

        cursor = self._upload_chunk(UPLOAD_SESSION_START, None)
        self.state = self.SESSION_OPEN

        while not self.stream.eof():
            cursor = self._upload_chunk(UPLOAD_SESSION_APPEND, cursor)

        result = self.client.upload_session_finish(None, cursor, path, mode, autorename, mute)
        self.state = self.FINISHED
        return result

    def _upload_chunk(self, chunk_type, cursor):
        if chunk_type == UPLOAD_SESSION_START:
            send = self.client.upload_session_start
        elif chunk_type == UPLOAD_SESSION_APPEND and cursor is not None:
            def send(chunk):
                return self.client.upload_session_append(chunk, cursor)
        else:
            raise ValueError("invalid upload chunk type: %r" % (chunk_type,))

        max_tries = 1 + (self.max_chunk_retries if self.stream.seekable else 0)
        position = self.stream.tell()

        tries = 0
        while True:
            tries += 1
            chunk = self.stream.read(self.chunk_size)
            log.debug("uploading %d byte chunk at offset %d", len(chunk), position)
            try:
                return send(chunk)
            except APIError as e:
                if tries >= max_tries:
                    raise
                log.warning("chunk at offset %d failed (%s), attempt %d of %d",
                            position, e, tries, max_tries)
                self.stream.seek(position)


class DropboxOAuth2Flow(object):
    """
    OAuth 2 authorization helper. Use this for web apps.

    OAuth 2 has a two-step authorization process. The first step is having the user authorize
    your app. The second involves getting an OAuth 2 access token from Dropbox.

    Example::

        from dropboxapi.client import DropboxOAuth2Flow, DropboxClient
        from dropboxapi.session import DropboxSession

        def get_dropbox_auth_flow(web_app_session):
            session = DropboxSession(APP_KEY, APP_SECRET,
                                     "https://my-web-server.org/dropbox-auth-finish")
            return DropboxOAuth2Flow(session, web_app_session, "dropbox-auth-csrf-token")

        # URL handler for /dropbox-auth-start
        def dropbox_auth_start(web_app_session, request):
            authorize_url = get_dropbox_auth_flow(web_app_session).start(
                token_access_type='offline')
            redirect_to(authorize_url)

        # URL handler for /dropbox-auth-finish
        def dropbox_auth_finish(web_app_session, request):
            flow = get_dropbox_auth_flow(web_app_session)
            try:
                url_state = flow.finish(request.query_params)
            except DropboxOAuth2Flow.BadRequestException:
                http_status(400)
            except DropboxOAuth2Flow.BadStateException:
                # Start the auth flow again.
                redirect_to("/dropbox-auth-start")
            except DropboxOAuth2Flow.CsrfException:
                http_status(403)
            except DropboxOAuth2Flow.NotApprovedException:
                flash('Not approved?  Why not?')
                return redirect_to("/home")
            except DropboxOAuth2Flow.ProviderException as e:
                logger.error("Auth error: %s", e)
                http_status(403)
            client = DropboxClient(flow.session, auto_refresh=True)

    """

    def __init__(self, session, web_app_session, csrf_token_session_key, use_pkce=False):
        """
        Construct an instance.

        Parameters
          session
            The :class:`dropboxapi.session.DropboxSession` to authorize. Its
            ``redirect_uri`` must be registered with Dropbox.
          web_app_session
            A dict-like object that represents the current user's web session (will be
            used to save the CSRF token and PKCE code verifier).
          csrf_token_session_key
            The key to use when storing the CSRF token in the web session (for
            example: "dropbox-auth-csrf-token").
          use_pkce
            Authorize with a PKCE code verifier instead of the client secret.
        """
        self.session = session
        self.web_app_session = web_app_session
        self.csrf_token_session_key = csrf_token_session_key
        self.use_pkce = use_pkce

    @property
    def code_verifier_session_key(self):
        return self.csrf_token_session_key + '-code-verifier'

    def start(self, url_state=None, **authorize_options):
        """
        Starts the OAuth 2 authorization process.

        This function builds an "authorization URL". You should redirect your user's browser to
        this URL, which will give them an opportunity to grant your app access to their Dropbox
        account. When the user completes this process, they will be automatically redirected to
        the session's ``redirect_uri``.

        This function will also save a CSRF token to ``web_app_session[csrf_token_session_key]``.
        This CSRF token will be checked on :meth:`finish()` to prevent request forgery.

        Parameters
          url_state
            Any data that you would like to keep in the URL through the
            authorization process. This exact value will be returned to you by :meth:`finish()`.
          authorize_options
            Passed on to :meth:`dropboxapi.session.DropboxSession.get_authorize_url()`
            (``scope``, ``token_access_type``, ...).

        Returns
            The URL for a page on Dropbox's website.
        """
        csrf_token = base64.urlsafe_b64encode(os.urandom(16)).decode('ascii')
        state = csrf_token
        if url_state is not None:
            state += "|" + url_state
        self.web_app_session[self.csrf_token_session_key] = csrf_token

        if self.use_pkce:
            code_verifier = self.session.generate_code_verifier()
            self.web_app_session[self.code_verifier_session_key] = code_verifier
            authorize_options['code_challenge'] = self.session.generate_code_challenge(code_verifier)

        return self.session.get_authorize_url(state=state, **authorize_options)

    def finish(self, query_params):
        """
        Call this after the user has visited the authorize URL (see :meth:`start()`), approved your
        app and was redirected to your redirect URI.

        Parameters
          query_params
            The query parameters on the GET request to your redirect URI.

        Returns
          The ``url_state`` you originally passed in to :meth:`start()`. The
          tokens are stored on the session.

        Raises
          :class:`BadRequestException`
            If the redirect URL was missing parameters or if the given parameters were not valid.
          :class:`BadStateException`
            If there's no CSRF token in the session.
          :class:`CsrfException`
            If the ``'state'`` query parameter doesn't contain the CSRF token from the user's
            session.
          :class:`NotApprovedException`
            If the user chose not to approve your app.
          :class:`ProviderException`
            If Dropbox redirected to your redirect URI with some unexpected error identifier
            and error message, or did not grant an access token.
        """
        csrf_token_from_session = self.web_app_session.get(self.csrf_token_session_key)

        # Check well-formedness of request.

        state = query_params.get('state')
        if state is None:
            raise self.BadRequestException("Missing query parameter 'state'.")

        error = query_params.get('error')
        error_description = query_params.get('error_description')
        code = query_params.get('code')

        if error is not None and code is not None:
            raise self.BadRequestException("Query parameters 'code' and 'error' are both set; "
                                           " only one must be set.")
        if error is None and code is None:
            raise self.BadRequestException("Neither query parameter 'code' or 'error' is set.")

        # Check CSRF token

        if csrf_token_from_session is None:
            raise self.BadStateException("Missing CSRF token in session.")
        if len(csrf_token_from_session) <= 20:
            raise AssertionError("CSRF token unexpectedly short: %r" % (csrf_token_from_session,))

        given_csrf_token, _, url_state = state.partition('|')
        if '|' not in state:
            url_state = None

        if not hmac.compare_digest(csrf_token_from_session, given_csrf_token):
            raise self.CsrfException("expected %r, got %r" % (csrf_token_from_session,
                                                              given_csrf_token))

        del self.web_app_session[self.csrf_token_session_key]
        code_verifier = self.web_app_session.pop(self.code_verifier_session_key, '')

        # Check for error identifier

        if error is not None:
            if error == 'access_denied':
                # The user clicked "Deny"
                if error_description is None:
                    raise self.NotApprovedException("No additional description from Dropbox")
                else:
                    raise self.NotApprovedException("Additional description from Dropbox: " +
                                                    error_description)
            else:
                # All other errors
                full_message = error
                if error_description is not None:
                    full_message += ": " + error_description
                raise self.ProviderException(full_message)

        # If everything went ok, make the network call to get an access token.

        if not self.session.request_access_token(code, code_verifier):
            raise self.ProviderException("Dropbox did not grant an access token.")
        return url_state

    class BadRequestException(Exception):
        """
        Thrown if the redirect URL was missing parameters or if the
        given parameters were not valid.

        The recommended action is to show an HTTP 400 error page.
        """
        pass

    class BadStateException(Exception):
        """
        Thrown if all the parameters are correct, but there's no CSRF token in the session. This
        probably means that the session expired.

        The recommended action is to redirect the user's browser to try the approval process again.
        """
        pass

    class CsrfException(Exception):
        """
        Thrown if the given 'state' parameter doesn't contain the CSRF
        token from the user's session.
        This is blocked to prevent CSRF attacks.

        The recommended action is to respond with an HTTP 403 error page.
        """
        pass

    class NotApprovedException(Exception):
        """
        The user chose not to approve your app.
        """
        pass

    class ProviderException(Exception):
        """
        Dropbox redirected to your redirect URI with some unexpected error identifier and error
        message.

        The recommended action is to log the error, tell the user something went wrong, and let
        them try again.
        """
        pass


def _is_rewindable(body):
    if isinstance(body, ContentStream):
        return body.seekable
    try:
        return hasattr(body, 'read') and body.seekable()
    except (AttributeError, ValueError, OSError):
        return False


_OAUTH2_ACCESS_TOKEN_PATTERN = re.compile(r'\A[-_~/A-Za-z0-9\.\+]+=*\Z')
# Bearer token syntax from RFC 6750.
