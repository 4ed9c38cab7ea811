from unittest.mock import MagicMock

import pytest
import requests

from admin_auth import (
    CredentialRejected,
    ProtocolContractViolation,
    RedirectBudgetExceeded,
    SessionCache,
    set_credentials,
)
from conftest import make_response
from monidenum_auth import (
    authenticate,
    extract_alert_message,
    follow_session_redirects,
    login,
)

KEYCLOAK_URL = 'https://auth.monidenum.fr/realms/monidenum/protocol/openid-connect/auth?client_id=web'
KEYCLOAK_PAGE = (
    '<html><body><form id="kc-form-login" '
    'action="https://auth.monidenum.fr/realms/monidenum/login-actions/authenticate?session_code=abc&amp;tab_id=xyz" '
    'method="post"></form></body></html>'
)
ACTION_URL = (
    'https://auth.monidenum.fr/realms/monidenum/login-actions/authenticate?session_code=abc&tab_id=xyz'
)


def redirect(location, cookies=None):
    return make_response(status_code=302, headers={'Location': location}, cookies=cookies)


def handshake_session(post_response=None, hops=None) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    session.get.side_effect = [
        redirect(KEYCLOAK_URL),
        make_response(
            text=KEYCLOAK_PAGE,
            cookies={'AUTH_SESSION_ID': 'auth-1', 'AUTH_SESSION_ID_LEGACY': 'auth-1', 'KC_RESTART': 'r'},
        ),
    ] + (hops or [
        redirect('/connect/keycloak/check?code=c', cookies={'lb': 'node2'}),
        redirect('/mon-espace/', cookies={'PHPSESSID': 'sess-42'}),
    ])
    session.post.side_effect = [post_response or redirect('https://monidenum.fr/connect/keycloak/callback')]
    return session


class TestLogin:
    def test_full_handshake(self):
        session = handshake_session()

        assert login('me@example.com', 'pw', session=session, verbose=False) == 'sess-42'

        post_call = session.post.call_args
        assert post_call.args[0] == ACTION_URL
        assert post_call.kwargs['data'] == {
            'username': 'me@example.com',
            'password': 'pw',
            'credentialId': '',
        }
        assert post_call.kwargs['headers']['Cookie'] == (
            'AUTH_SESSION_ID=auth-1; AUTH_SESSION_ID_LEGACY=auth-1'
        )
        assert post_call.kwargs['allow_redirects'] is False

        get_urls = [c.args[0] for c in session.get.call_args_list]
        assert get_urls == [
            'https://monidenum.fr/login',
            KEYCLOAK_URL,
            'https://monidenum.fr/connect/keycloak/callback',
            'https://monidenum.fr/connect/keycloak/check?code=c',
        ]

    def test_cookies_are_carried_between_hops(self):
        session = handshake_session()
        login('me@example.com', 'pw', session=session, verbose=False)

        first_hop, second_hop = session.get.call_args_list[2:]
        assert first_hop.kwargs['headers'] == {}
        assert second_hop.kwargs['headers'] == {'Cookie': 'lb=node2'}

    def test_rejected_credentials_raise_portal_message(self):
        session = handshake_session(post_response=make_response(
            status_code=200,
            text='<div class="alert alert-danger">Invalid password</div>',
        ))

        with pytest.raises(CredentialRejected, match='Invalid password'):
            login('me@example.com', 'bad', session=session, verbose=False)
        assert session.get.call_count == 2

    def test_foreign_redirect_is_refused(self):
        session = handshake_session(post_response=redirect('https://phishing.example/monidenum.fr'))

        with pytest.raises(ProtocolContractViolation, match='Unexpected redirect'):
            login('me@example.com', 'pw', session=session, verbose=False)
        assert session.get.call_count == 2

    def test_login_page_without_form(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [redirect(KEYCLOAK_URL), make_response(text='<html></html>')]

        with pytest.raises(ProtocolContractViolation, match='form action'):
            login('me@example.com', 'pw', session=session, verbose=False)

    def test_login_route_without_redirect(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [make_response(status_code=200)]

        with pytest.raises(ProtocolContractViolation):
            login('me@example.com', 'pw', session=session, verbose=False)


class TestAlertMessage:
    def test_apostrophe_entity_is_decoded(self):
        body = '<span class="alert-error" role="alert">Nom d&#39;utilisateur invalide.</span>'
        assert extract_alert_message(body) == "Nom d'utilisateur invalide."

    def test_unknown_error(self):
        assert extract_alert_message('<html></html>') == 'Unknown error'


class TestFollowSessionRedirects:
    def test_budget_exhausted_without_cookie(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [redirect(f'/hop{i}') for i in range(1, 7)]

        with pytest.raises(RedirectBudgetExceeded):
            follow_session_redirects(session, 'https://monidenum.fr/start', max_redirects=5)

        assert session.get.call_count == 5

    def test_budget_is_configurable(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [redirect(f'/hop{i}') for i in range(1, 7)]

        with pytest.raises(RedirectBudgetExceeded):
            follow_session_redirects(session, 'https://monidenum.fr/start', max_redirects=2)

        assert session.get.call_count == 2

    def test_chain_ending_without_cookie(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [redirect('/next'), make_response(status_code=200)]

        with pytest.raises(RedirectBudgetExceeded):
            follow_session_redirects(session, 'https://monidenum.fr/start')
        assert session.get.call_count == 2

    def test_cookie_on_first_hop(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [redirect('/next', cookies={'PHPSESSID': 'abc'})]

        assert follow_session_redirects(session, 'https://monidenum.fr/start') == 'abc'
        assert session.get.call_count == 1

    def test_absolute_location_is_kept(self):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = [
            redirect('https://www.monidenum.fr/next'),
            make_response(cookies={'PHPSESSID': 'abc'}),
        ]

        follow_session_redirects(session, 'https://monidenum.fr/start')
        assert session.get.call_args.args[0] == 'https://www.monidenum.fr/next'


class TestAuthenticate:
    def test_cached_session_skips_handshake(self, store, clock):
        cache = SessionCache(store, clock=clock, verbose=False)
        cache.set('kbis', 'cached-sess', ttl_minutes=30)
        session = MagicMock(spec=requests.Session)

        assert authenticate(store, cache=cache, session=session, verbose=False) == 'cached-sess'
        session.get.assert_not_called()
        session.post.assert_not_called()

    def test_fresh_login_is_cached(self, store, clock):
        set_credentials(store, 'kbis', 'me@example.com', 'pw')
        cache = SessionCache(store, clock=clock, verbose=False)
        session = handshake_session()

        assert authenticate(store, cache=cache, session=session, verbose=False) == 'sess-42'
        assert cache.get('kbis') == 'sess-42'

        clock.advance(30 * 60 + 1)
        assert cache.get('kbis') is None

    def test_expired_session_triggers_new_login(self, store, clock):
        set_credentials(store, 'kbis', 'me@example.com', 'pw')
        cache = SessionCache(store, clock=clock, verbose=False)
        cache.set('kbis', 'old-sess', ttl_minutes=30)
        clock.advance(31 * 60)
        session = handshake_session()

        assert authenticate(store, cache=cache, session=session, verbose=False) == 'sess-42'
        assert session.post.call_count == 1

    def test_rejected_login_is_not_cached_and_keeps_credentials(self, store, clock):
        set_credentials(store, 'kbis', 'me@example.com', 'pw')
        cache = SessionCache(store, clock=clock, verbose=False)
        session = handshake_session(post_response=make_response(
            status_code=200,
            text='<div class="alert alert-danger">Invalid password</div>',
        ))

        with pytest.raises(CredentialRejected):
            authenticate(store, cache=cache, session=session, verbose=False)
        assert cache.get('kbis') is None
        assert store.get('kbis') is not None
