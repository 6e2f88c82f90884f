"""
A simple JSON REST request abstraction layer that is used by the
``dropboxapi.client`` and ``dropboxapi.session`` modules. It sends a single
HTTP request, normalizes the reply into an :class:`APIResponse` and turns
Dropbox error envelopes into :class:`APIError` exceptions. You shouldn't
need to use this directly.
"""

import io
import json
import logging
import socket
import urllib.parse

try:
    import urllib3
except ImportError:
    raise ImportError('Dropbox API client requires urllib3.')


SDK_VERSION = "1.0.0"

log = logging.getLogger(__name__)


class RESTResponse(io.IOBase):
    """
    Raw response bodies (file downloads) come in the form of ``RESTResponse``.
    These are thin wrappers around the socket file descriptor.
    :meth:`read()` and :meth:`close()` are implemented.
    It is important to call :meth:`close()` to return the connection
    back to the connection pool to be reused. The object makes a
    best-effort attempt upon destruction to call :meth:`close()`,
    but it's still best to explicitly call :meth:`close()`.
    """

    def __init__(self, resp):
        # arg: A urllib3.HTTPResponse object
        self.urllib3_response = resp
        self.status = resp.status
        self.reason = resp.reason
        self.is_closed = False

    def __del__(self):
        # Attempt to close when ref-count goes to zero.
        self.close()

    def __exit__(self, typ, value, traceback):
        # Allow this to be used in "with" blocks.
        self.close()

    # -----------------
    # Important methods
    # -----------------
    def read(self, amt=None):
        """
        Read data off the underlying socket.

        Parameters
            amt
              Amount of data to read. Defaults to ``None``, indicating to read
              everything.

        Returns
              Data off the socket. If ``amt`` is not ``None``, at most ``amt`` bytes are returned.
              An empty bytes object when the socket has no data.

        Raises
            ``ValueError``
              If the ``RESTResponse`` has already been closed.
        """
        if self.is_closed:
            raise ValueError('Response already closed')
        return self.urllib3_response.read(amt)

    BLOCKSIZE = 4 * 1024 * 1024 # 4MB at a time just because

    def close(self):
        """Closes the underlying socket."""

        # Double closing is harmless
        if self.is_closed:
            return

        # Read anything left on the socket before releasing the connection.
        while self.read(RESTResponse.BLOCKSIZE):
            pass

        # Mark as closed and release the connection (exactly once)
        self.is_closed = True
        self.urllib3_response.release_conn()

    @property
    def closed(self):
        return self.is_closed

    def readable(self):
        return True

    def getheaders(self):
        """Returns the response headers."""
        return self.urllib3_response.headers


class APIResponse(object):
    """The uniform result of a single Dropbox API call.

    ``body`` is the decoded JSON value for JSON responses and a
    :class:`RESTResponse` stream for everything else (file downloads).
    ``headers`` is a case-insensitive mapping.
    """

    def __init__(self, body, headers, status, url):
        self.body = body
        self.headers = headers
        self.status = status
        self.url = url

    def __repr__(self):
        return "APIResponse(status=%r, url=%r)" % (self.status, self.url)


def json_loadb(data):
    if isinstance(data, (bytes, bytearray)):
        data = data.decode('utf8')
    return json.loads(data)


def json_dumpb(data):
    return json.dumps(data).encode('utf8')


class RESTClientObject(object):
    def __init__(self, max_reusable_connections=8, mock_urlopen=None, timeout=60.0):
        """
        Parameters
            max_reusable_connections
                max connections to keep alive in the pool
            mock_urlopen
                an optional alternate urlopen function for testing
            timeout
                socket timeout in seconds passed on to urllib3

        This class uses ``urllib3`` to maintain a pool of connections. We attempt
        to grab an existing idle connection from the pool, otherwise we spin
        up a new connection. Once a connection is closed, it is reinserted
        into the pool (unless the pool is full).

        Certificates and hostnames are verified by urllib3's defaults.
        """
        self.mock_urlopen = mock_urlopen
        self.pool_manager = urllib3.PoolManager(
            num_pools=4, # the authorize, token, RPC and content hosts
            maxsize=max_reusable_connections,
            block=False,
            timeout=timeout,
        )

    def request(self, method, url, post_params=None, body=None, headers=None,
                json_params=None):
        """Performs a REST request. See :meth:`RESTClient.request()` for detailed description."""

        headers = dict(headers or {})
        headers['User-Agent'] = 'DropboxAPIPython/' + SDK_VERSION

        given = [x for x in (post_params, json_params) if x] + ([body] if body is not None else [])
        if len(given) > 1:
            raise ValueError("only one of body, post_params and json_params may be given")

        if post_params:
            body = params_to_urlencoded(post_params)
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        elif json_params:
            body = json_dumpb(json_params)
            headers["Content-Type"] = "application/json"

        if isinstance(body, str):
            body = body.encode('utf8')

        # Reject any headers containing newlines; the error from the server isn't pretty.
        for key, value in headers.items():
            if isinstance(value, str) and '\n' in value:
                raise ValueError("headers should not contain newlines (%s: %s)" %
                                 (key, value))

        log.debug("%s %s", method, url)

        try:
            # Grab a connection from the pool to make the request.
            # We return it to the pool when caller close() the response
            urlopen = self.mock_urlopen if self.mock_urlopen else self.pool_manager.urlopen
            r = urlopen(
                method=method,
                url=url,
                body=body,
                headers=headers,
                preload_content=False
            )
        except socket.error as e:
            raise RESTSocketError(url, e)
        except urllib3.exceptions.SSLError as e:
            raise RESTSocketError(url, "SSL certificate error: %s" % e)
        except urllib3.exceptions.HTTPError as e:
            raise RESTSocketError(url, e)

        r = RESTResponse(r) # wrap up the urllib3 response before proceeding
        response_headers = urllib3.HTTPHeaderDict(r.getheaders() or {})

        if not 200 <= r.status < 300:
            error_body = r.read()
            r.close()
            raise error_from_response(error_body, r.status, response_headers)

        return self.process_response(r, response_headers, url)

    def process_response(self, r, headers, url):
        if 'application/json' in headers.get('Content-Type', ''):
            s = r.read()
            r.close()
            body = json_loadb(s) if s else None
        else:
            body = r

        return APIResponse(body, headers, r.status, url)

    def POST(self, url, params=None, headers=None):
        return self.request("POST", url, post_params=params, headers=headers)


class RESTClient(object):
    """
    A class with all static methods to perform JSON REST requests that is used internally
    by the Dropbox API client. It provides just enough gear to make requests
    and get responses as JSON data (when applicable). All requests happen over SSL.
    """

    IMPL = RESTClientObject()

    @classmethod
    def request(cls, *n, **kw):
        """Perform a REST request and normalize the response.

        Parameters
            method
              An HTTP method (e.g. ``'POST'``).
            url
              The URL to make a request to.
            post_params
              A dictionary of parameters to form-encode into the body of the request.
            body
              The body of the request: bytes, a string or a file-like object.
            headers
              A dictionary of headers to send with the request.
            json_params
              A value to JSON-encode into the body of the request.

        At most one of ``post_params``, ``body`` and ``json_params`` may be given.

        Returns
              An :class:`APIResponse`. Its body is the JSON-decoded data when the
              server answers with a JSON content type, and a :class:`RESTResponse`
              otherwise.

        Raises
            :class:`APIError` or :class:`AuthError`
              The returned HTTP status is not 2xx.
            :class:`RESTSocketError`
              The connection to Dropbox failed.
        """
        return cls.IMPL.request(*n, **kw)

    @classmethod
    def POST(cls, *n, **kw):
        """Perform a form-encoded POST request using :meth:`RESTClient.request()`."""
        return cls.IMPL.POST(*n, **kw)


class RESTSocketError(socket.error):
    """A light wrapper for ``socket.error`` that adds some more information."""

    def __init__(self, host, e):
        msg = "Error connecting to \"%s\": %s" % (host, str(e))
        socket.error.__init__(self, msg)


class APIError(Exception):
    """
    Raised for RPC and content calls that return a non-2xx HTTP response.

    ``status`` holds the HTTP status code, ``headers`` the response headers
    and ``body`` the decoded error envelope (or the raw body when it was not
    JSON). :meth:`has_expired_token()` and :meth:`is_rate_limited()` let
    callers implement their own retry logic.
    """

    TOKEN_EXPIRED = 'The access token has expired.'
    RATE_LIMIT_STATUS = 429

    def __init__(self, message, status=None, headers=None, body=None):
        super(APIError, self).__init__(message)
        self.message = message
        self.status = status
        self.headers = headers if headers is not None else urllib3.HTTPHeaderDict()
        self.body = body

    def has_expired_token(self):
        """Whether the error was raised because of an expired access token."""
        return self.message == self.TOKEN_EXPIRED

    def is_rate_limited(self):
        """Whether the error was raised because of rate limiting."""
        return self.status == self.RATE_LIMIT_STATUS

    @property
    def retry_after(self):
        """Seconds to wait as announced by the ``Retry-After`` header, or ``None``."""
        value = self.headers.get('Retry-After')
        if value is None:
            return None
        try:
            return max(int(value), 0)
        except ValueError:
            return None

    def __str__(self):
        if self.status is None:
            return self.message
        return "[%d] %s" % (self.status, self.message)


class AuthError(APIError):
    """
    Raised for failures of the OAuth2 token and authorization endpoints.
    Derives from :class:`APIError`.
    """

    INVALID_CLIENT = 'Invalid client'
    INVALID_CLIENT_SECRET = 'Invalid client secret'
    INVALID_REFRESH_TOKEN = 'Invalid refresh token'

    def has_invalid_credentials(self):
        """Whether the client id or secret were rejected."""
        return self.message in (self.INVALID_CLIENT, self.INVALID_CLIENT_SECRET)

    def has_invalid_refresh_token(self):
        """Whether the refresh token was rejected."""
        return self.message == self.INVALID_REFRESH_TOKEN


class TokenRefreshError(APIError):
    """
    Raised when an expired access token could not be refreshed automatically.
    The error reported by the token endpoint, if any, is the ``__cause__``.
    """

    def __init__(self, message='Could not refresh access token.'):
        super(TokenRefreshError, self).__init__(message)


# Human readable messages for the tags of Dropbox's AuthError union.
ERROR_TAGS = {
    'invalid_access_token': 'The access token is invalid.',
    'invalid_select_user': "The user specified in 'Dropbox-API-Select-User' is no longer on the team.",
    'invalid_select_admin': "The user specified in 'Dropbox-API-Select-Admin' is not a Dropbox Business team admin.",
    'user_suspended': 'The user has been suspended.',
    'expired_access_token': APIError.TOKEN_EXPIRED,
    'missing_scope': 'The access token does not have the required scope to access the route.',
    'route_access_denied': 'The route is not available to public.',
}


def parse_error_tag(tag, summary=None):
    if tag in ERROR_TAGS:
        return ERROR_TAGS[tag]
    return summary if summary is not None else tag


def error_from_response(body, status, headers=None):
    """
    Classify the body of a failed response and return the matching exception.

    API call errors carry an ``error_summary`` (or ``user_message``) and are
    reported as :class:`APIError`. OAuth errors carry ``error_description`` or
    a plain string ``error`` and are reported as :class:`AuthError`.
    """
    try:
        parsed = json_loadb(body) if body else None
    except ValueError:
        parsed = None

    if not isinstance(parsed, dict):
        return APIError('An unknown error occurred.', status, headers, body)

    error = parsed.get('error')
    error_tag = error.get('.tag') if isinstance(error, dict) else None
    error_summary = parsed.get('error_summary')

    user_message = parsed.get('user_message')
    if user_message:
        if isinstance(user_message, dict):
            user_message = user_message.get('text')
        error_summary = user_message or error_summary

    if error_summary:
        return APIError(parse_error_tag(error_tag, error_summary), status, headers, parsed)
    elif isinstance(parsed.get('error_description'), str):
        return AuthError(parsed['error_description'], status, headers, parsed)
    elif isinstance(error, str):
        return AuthError(error, status, headers, parsed)
    else:
        return APIError('An unknown error occurred.', status, headers, parsed)


def params_to_urlencoded(params):
    """
    Returns a application/x-www-form-urlencoded 'str' representing the key/value pairs in 'params'.

    Booleans are sent as ``true``/``false``, everything else is str()'d.
    """
    def encode(o):
        if isinstance(o, bool):
            return 'true' if o else 'false'
        return str(o)
    return urllib.parse.urlencode([(encode(k), encode(v)) for k, v in params.items()])
