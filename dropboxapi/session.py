"""
dropboxapi.session.DropboxSession is responsible for holding OAuth 2
authentication info (client id/secret, redirect URI, access and refresh
tokens). It knows how to build authorization URLs, exchange authorization
codes and refresh tokens, and how to add the bearer token to requests.

A session (or a plain access token string) must be passed to a
dropboxapi.client.DropboxClient object upon initialization.

"""

import base64
import hashlib
import logging
import os
import time
import urllib.parse

from . import rest

log = logging.getLogger(__name__)


class BaseSession(object):
    AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
    TOKEN_URL = "https://api.dropbox.com/oauth2"
    RPC_ENDPOINT = "https://api.dropboxapi.com/2"
    CONTENT_ENDPOINT = "https://content.dropboxapi.com/2"

    can_refresh = False

    def __init__(self, rest_client=None):
        if rest_client is None: rest_client = rest.RESTClient
        self.access_token = ''
        self.rest_client = rest_client

    def is_linked(self):
        """Return whether the session has an access token attached."""
        return bool(self.access_token)

    def unlink(self):
        """Remove any attached access token from the session."""
        self.access_token = ''

    def build_url(self, base, target, params=None):
        """Build an API URL.

        Args:
            - ``base``: One of the endpoint base URLs (e.g. ``RPC_ENDPOINT``).
            - ``target``: A target path (e.g. '/files/delete_v2') to append.
            - ``params``: A dictionary of query parameters. [optional]

        Returns:
            - The full API URL.
        """
        url = base + target
        if params:
            url += '?' + urllib.parse.urlencode(params)
        return url

    def build_access_headers(self, headers=None):
        """Return a copy of ``headers`` with the bearer token added, if there is one."""
        headers = dict(headers or {})
        if self.access_token:
            headers['Authorization'] = 'Bearer ' + self.access_token
        return headers

    def refresh_access_token(self, refresh_token=None):
        raise NotImplementedError("%s cannot refresh access tokens" % type(self).__name__)


# Don't use this class directly.
class DropboxOAuth2Session(BaseSession):
    """A session around a fixed access token that cannot be refreshed."""

    def __init__(self, oauth2_access_token, rest_client=None):
        super(DropboxOAuth2Session, self).__init__(rest_client=rest_client)
        self.access_token = oauth2_access_token


class DropboxSession(BaseSession):
    """OAuth 2 credentials of an app plus the tokens of one linked user.

    Your client id (app key) and secret are available
    at https://www.dropbox.com/developers/apps
    """

    can_refresh = True

    def __init__(self, client_id, client_secret='', redirect_uri='', rest_client=None):
        """Initialize a DropboxSession object.

        Args:
            - ``client_id``: The app key.
            - ``client_secret``: The app secret. [optional] Not needed for PKCE.
            - ``redirect_uri``: Where Dropbox sends the user after authorizing. [optional]
            - ``rest_client``: A :class:`dropboxapi.rest.RESTClient`-like object. [optional]
        """
        super(DropboxSession, self).__init__(rest_client=rest_client)
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.refresh_token = ''
        self.expiration_time = 0
        self.scope = ''
        self.account_id = ''
        self.team_id = ''
        self.id_token = ''

    @property
    def scopes(self):
        """The scope of the current access token as a list."""
        return self.scope.split()

    def is_token_expired(self, leeway=0):
        """Whether the access token is past its known expiration time."""
        if not self.expiration_time:
            return False
        return time.time() + leeway >= self.expiration_time

    def unlink(self):
        super(DropboxSession, self).unlink()
        self.refresh_token = ''
        self.expiration_time = 0

    def generate_code_challenge(self, code_verifier, hash_algo='sha256'):
        """Derive the PKCE code challenge of ``code_verifier``.

        The digest is base64 encoded with the URL-safe alphabet and without
        padding.
        """
        digest = hashlib.new(hash_algo, code_verifier.encode('ascii')).digest()
        return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')

    def generate_code_verifier(self, length=128):
        """Generate a PKCE code verifier of ``length`` (43 to 128) characters."""
        if not 43 <= length <= 128:
            raise ValueError("code verifier length must be between 43 and 128, got %d" % length)
        return self.generate_state(length)

    def generate_state(self, length=16):
        """Generate a random hex string of ``length`` characters for CSRF protection."""
        # Two hex characters per random byte.
        return os.urandom((length + 1) // 2).hex()[:length]

    def get_authorize_url(self, state=None, scope=None, include_granted_scopes=None,
                          token_access_type=None, code_challenge=None,
                          code_challenge_method='S256'):
        """Build the URL of the page where the user authorizes the app.

        Args:
            - ``state``: A CSRF token echoed back on the redirect. [optional]
            - ``scope``: A list of scopes to request. [optional] Defaults to
              all scopes configured in the App Console.
            - ``include_granted_scopes``: ``'user'`` or ``'team'``. [optional]
            - ``token_access_type``: ``'online'`` or ``'offline'``. [optional]
              Offline access returns a refresh token.
            - ``code_challenge``: A PKCE code challenge. [optional]
            - ``code_challenge_method``: ``'S256'`` (default) or ``'plain'``.

        Returns:
            - The authorization URL.
        """
        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
        }

        if state is not None:
            params['state'] = state
        if scope is not None:
            params['scope'] = ' '.join(scope)
        if include_granted_scopes is not None:
            params['include_granted_scopes'] = include_granted_scopes
        if token_access_type is not None:
            params['token_access_type'] = token_access_type
        if code_challenge is not None:
            params['code_challenge'] = code_challenge
            params['code_challenge_method'] = code_challenge_method

        return self.AUTHORIZE_URL + '?' + urllib.parse.urlencode(params)

    def request_access_token(self, authorization_code, code_verifier=''):
        """Exchange an authorization code for an access token.

        Passing ``code_verifier`` assumes a PKCE flow; otherwise the client
        secret is sent.

        Returns:
            - ``True`` when an access token was granted, ``False`` otherwise.
              The tokens are stored on the session.

        Raises:
            - :class:`dropboxapi.rest.AuthError` if the token endpoint rejects the request.
        """
        params = {
            'client_id': self.client_id,
            'code': authorization_code,
            'grant_type': 'authorization_code',
            'redirect_uri': self.redirect_uri,
        }

        if code_verifier:
            params['code_verifier'] = code_verifier
        else:
            params['client_secret'] = self.client_secret

        body = self._token_request(params)
        if not body or 'access_token' not in body:
            return False

        self.access_token = body['access_token']
        self.refresh_token = body.get('refresh_token', '')
        self.expiration_time = self._expiration(body)
        self.scope = body.get('scope', '')
        self.account_id = body.get('account_id', '')
        self.team_id = body.get('team_id', '')
        self.id_token = body.get('id_token', '')
        return True

    def refresh_access_token(self, refresh_token=None):
        """Obtain a new access token with a refresh token.

        Args:
            - ``refresh_token``: The refresh token to use. [optional] Defaults
              to the one stored on the session.

        Returns:
            - ``True`` when the access token was refreshed, ``False`` otherwise.
        """
        params = {
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token or self.refresh_token,
            'client_id': self.client_id,
        }

        if self.client_secret:
            params['client_secret'] = self.client_secret

        body = self._token_request(params)
        if not body or 'access_token' not in body:
            return False

        self.access_token = body['access_token']
        self.expiration_time = self._expiration(body)
        self.scope = body.get('scope', self.scope)

        if not self.refresh_token and refresh_token:
            self.refresh_token = refresh_token

        log.info("refreshed access token for client %s", self.client_id)
        return True

    def _token_request(self, params):
        url = self.build_url(self.TOKEN_URL, '/token')
        return self.rest_client.POST(url, params=params).body

    @classmethod
    def _expiration(cls, body):
        expires_in = body.get('expires_in')
        if expires_in is None:
            return 0
        return int(time.time()) + int(expires_in)
