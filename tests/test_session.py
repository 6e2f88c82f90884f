import base64
import hashlib
import re
import time
import unittest
import urllib.parse
from unittest import mock

from dropboxapi.rest import APIResponse, AuthError
from dropboxapi.session import DropboxOAuth2Session, DropboxSession

TOKEN_URL = 'https://api.dropbox.com/oauth2/token'


def _create_generic_session(rest_client, client_id='a', client_secret='b',
                            redirect_uri='https://example.com/finish'):
    return DropboxSession(client_id, client_secret, redirect_uri, rest_client=rest_client)


def _token_response(body):
    return APIResponse(body, {'Content-Type': 'application/json'}, 200, TOKEN_URL)


class TestClientUsage(unittest.TestCase):
    def test_endpoints(self):
        a = _create_generic_session(None)
        self.assertEqual(a.AUTHORIZE_URL, 'https://www.dropbox.com/oauth2/authorize')
        self.assertEqual(a.TOKEN_URL, 'https://api.dropbox.com/oauth2')
        self.assertEqual(a.RPC_ENDPOINT, 'https://api.dropboxapi.com/2')
        self.assertEqual(a.CONTENT_ENDPOINT, 'https://content.dropboxapi.com/2')

    def test_build_url_simple(self):
        a = _create_generic_session(None)
        base = a.build_url(a.RPC_ENDPOINT, '/files/get_metadata')
        self.assertEqual(base, 'https://api.dropboxapi.com/2/files/get_metadata')

    def test_build_url_params(self):
        a = _create_generic_session(None)
        params = {'foo': 'bar', 'baz': '1 2'}
        base = a.build_url(a.TOKEN_URL, '/token', params)
        self.assertEqual(base, 'https://api.dropbox.com/oauth2/token?' + urllib.parse.urlencode(params))

    def test_is_linked(self):
        sess = _create_generic_session(None)
        self.assertFalse(sess.is_linked())
        sess.access_token = 'abc'
        self.assertTrue(sess.is_linked())
        sess.unlink()
        self.assertFalse(sess.is_linked())

    def test_build_access_headers(self):
        sess = DropboxOAuth2Session('abc')
        headers = {'Dropbox-API-Select-User': 'dbmid:1'}
        self.assertEqual(sess.build_access_headers(headers),
                         {'Dropbox-API-Select-User': 'dbmid:1', 'Authorization': 'Bearer abc'})
        # the passed headers are left alone
        self.assertEqual(headers, {'Dropbox-API-Select-User': 'dbmid:1'})

    def test_build_access_headers_without_token(self):
        self.assertEqual(DropboxOAuth2Session('').build_access_headers(), {})

    def test_static_session_cannot_refresh(self):
        sess = DropboxOAuth2Session('abc')
        self.assertFalse(sess.can_refresh)
        self.assertRaises(NotImplementedError, sess.refresh_access_token)

    def test_scopes(self):
        sess = _create_generic_session(None)
        self.assertEqual(sess.scopes, [])
        sess.scope = 'files.content.read files.content.write'
        self.assertEqual(sess.scopes, ['files.content.read', 'files.content.write'])


class TestPKCE(unittest.TestCase):
    def test_code_challenge(self):
        sess = _create_generic_session(None)
        verifier = 'dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk'

        challenge = sess.generate_code_challenge(verifier)

        # RFC 7636, appendix B
        self.assertEqual(challenge, 'E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM')
        self.assertEqual(challenge, sess.generate_code_challenge(verifier))

    def test_code_challenge_other_algorithm(self):
        sess = _create_generic_session(None)
        challenge = sess.generate_code_challenge('verifier', 'sha512')

        expected = base64.urlsafe_b64encode(hashlib.sha512(b'verifier').digest())
        self.assertEqual(challenge, expected.decode('ascii').rstrip('='))
        self.assertTrue(re.match(r'\A[-_A-Za-z0-9]+\Z', challenge))

    def test_code_verifier(self):
        sess = _create_generic_session(None)
        self.assertEqual(len(sess.generate_code_verifier()), 128)
        self.assertEqual(len(sess.generate_code_verifier(43)), 43)
        self.assertNotEqual(sess.generate_code_verifier(), sess.generate_code_verifier())

    def test_code_verifier_length_bounds(self):
        sess = _create_generic_session(None)
        self.assertRaises(ValueError, sess.generate_code_verifier, 42)
        self.assertRaises(ValueError, sess.generate_code_verifier, 129)

    def test_state(self):
        sess = _create_generic_session(None)
        state = sess.generate_state()
        self.assertEqual(len(state), 16)
        self.assertTrue(re.match(r'\A[0-9a-f]+\Z', state))


class TestAuthorizeUrl(unittest.TestCase):
    def parse(self, url):
        base, _, query = url.partition('?')
        return base, dict(urllib.parse.parse_qsl(query))

    def test_minimal(self):
        sess = _create_generic_session(None)

        base, params = self.parse(sess.get_authorize_url())

        self.assertEqual(base, 'https://www.dropbox.com/oauth2/authorize')
        self.assertEqual(params, {'client_id': 'a',
                                  'redirect_uri': 'https://example.com/finish',
                                  'response_type': 'code'})

    def test_all_options(self):
        sess = _create_generic_session(None)

        base, params = self.parse(sess.get_authorize_url(
            state='xyz', scope=['files.content.read', 'account_info.read'],
            include_granted_scopes='user', token_access_type='offline',
            code_challenge='challenge'))

        self.assertEqual(params['state'], 'xyz')
        self.assertEqual(params['scope'], 'files.content.read account_info.read')
        self.assertEqual(params['include_granted_scopes'], 'user')
        self.assertEqual(params['token_access_type'], 'offline')
        self.assertEqual(params['code_challenge'], 'challenge')
        self.assertEqual(params['code_challenge_method'], 'S256')

    def test_challenge_method_needs_challenge(self):
        sess = _create_generic_session(None)
        _, params = self.parse(sess.get_authorize_url(code_challenge_method='plain'))
        self.assertNotIn('code_challenge_method', params)


class TestSession(unittest.TestCase):
    def test_request_access_token(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.return_value = _token_response({
            'access_token': 'at', 'expires_in': 14400, 'refresh_token': 'rt',
            'scope': 'files.content.read', 'account_id': 'dbid:1', 'team_id': 'dbtid:2',
            'id_token': 'idt', 'token_type': 'bearer',
        })

        sess = _create_generic_session(mock_rest_client)
        before = int(time.time())
        self.assertTrue(sess.request_access_token('code'))

        mock_rest_client.POST.assert_called_once_with(TOKEN_URL, params={
            'client_id': 'a',
            'code': 'code',
            'grant_type': 'authorization_code',
            'redirect_uri': 'https://example.com/finish',
            'client_secret': 'b',
        })
        self.assertEqual(sess.access_token, 'at')
        self.assertEqual(sess.refresh_token, 'rt')
        self.assertEqual(sess.scope, 'files.content.read')
        self.assertEqual(sess.account_id, 'dbid:1')
        self.assertEqual(sess.team_id, 'dbtid:2')
        self.assertEqual(sess.id_token, 'idt')
        self.assertTrue(before + 14400 <= sess.expiration_time <= int(time.time()) + 14400)
        self.assertFalse(sess.is_token_expired())
        self.assertTrue(sess.is_token_expired(leeway=14401))

    def test_request_access_token_pkce(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.return_value = _token_response({'access_token': 'at', 'expires_in': 1})

        sess = _create_generic_session(mock_rest_client)
        self.assertTrue(sess.request_access_token('code', code_verifier='verifier'))

        _, kwargs = mock_rest_client.POST.call_args
        self.assertEqual(kwargs['params']['code_verifier'], 'verifier')
        self.assertNotIn('client_secret', kwargs['params'])
        self.assertEqual(sess.refresh_token, '')

    def test_request_access_token_no_token(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.return_value = _token_response({})

        sess = _create_generic_session(mock_rest_client)
        self.assertFalse(sess.request_access_token('code'))
        self.assertFalse(sess.is_linked())

    def test_request_access_token_error(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.side_effect = AuthError('Invalid client', 400)

        sess = _create_generic_session(mock_rest_client)
        with self.assertRaises(AuthError) as cm:
            sess.request_access_token('code')
        self.assertTrue(cm.exception.has_invalid_credentials())

    def test_refresh_access_token(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.return_value = _token_response({'access_token': 'new', 'expires_in': 60})

        sess = _create_generic_session(mock_rest_client)
        sess.access_token = 'old'
        sess.refresh_token = 'rt'
        sess.scope = 'files.content.read'
        self.assertTrue(sess.refresh_access_token())

        mock_rest_client.POST.assert_called_once_with(TOKEN_URL, params={
            'grant_type': 'refresh_token',
            'refresh_token': 'rt',
            'client_id': 'a',
            'client_secret': 'b',
        })
        self.assertEqual(sess.access_token, 'new')
        self.assertEqual(sess.scope, 'files.content.read')

    def test_refresh_access_token_with_given_token(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.return_value = _token_response(
            {'access_token': 'new', 'expires_in': 60, 'scope': 'account_info.read'})

        sess = _create_generic_session(mock_rest_client, client_secret='')
        self.assertTrue(sess.refresh_access_token('given'))

        _, kwargs = mock_rest_client.POST.call_args
        self.assertEqual(kwargs['params']['refresh_token'], 'given')
        self.assertNotIn('client_secret', kwargs['params'])
        self.assertEqual(sess.refresh_token, 'given')
        self.assertEqual(sess.scope, 'account_info.read')

    def test_refresh_access_token_failure(self):
        mock_rest_client = mock.Mock()
        mock_rest_client.POST.return_value = _token_response({'error': 'nope'})

        sess = _create_generic_session(mock_rest_client)
        sess.access_token = 'old'
        self.assertFalse(sess.refresh_access_token('rt'))
        self.assertEqual(sess.access_token, 'old')


if __name__ == '__main__':
    unittest.main()
