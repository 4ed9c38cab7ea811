#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "keyring",
#   "python-dotenv",
# ]
# ///
"""
monidenum Authentication Module

Logs in to monidenum.fr and returns the PHP session id (PHPSESSID cookie).

monidenum fronts a Keycloak identity provider. The login is replayed by hand
because cookies set halfway through the redirect chain must be carried to the
next hop explicitly:

1. GET /login without following redirects -> Location of the Keycloak page
2. GET the Keycloak page -> login form action URL + AUTH_SESSION_ID cookie
3. POST username/password to the form action with that cookie
4. Walk the redirect chain back to monidenum.fr until PHPSESSID is set

The handshake is comparatively slow, so the resulting session id is cached in
the keyring for a limited time (30 minutes by default).

Usage:
    from monidenum_auth import authenticate

    phpsessid = authenticate(store)
"""

import html
import os
import re
from urllib.parse import urljoin, urlparse

import requests

from admin_auth import (
    CredentialRejected,
    ProtocolContractViolation,
    RedirectBudgetExceeded,
    SecretStore,
    SessionCache,
    cookie_header,
    create_session,
    debug_log,
    get_or_prompt_credentials,
    merge_cookies,
)

SERVICE_NAME = 'kbis'

BASE_URL = 'https://monidenum.fr'
LOGIN_URL = f'{BASE_URL}/login'

SESSION_COOKIE = 'PHPSESSID'
AUTH_SESSION_COOKIE_PREFIX = 'AUTH_SESSION_ID'

# Observed portal behavior, not guaranteed by monidenum
SESSION_TTL_MINUTES = float(os.environ.get('MONIDENUM_SESSION_TTL_MINUTES', '30'))
MAX_REDIRECTS = int(os.environ.get('MONIDENUM_MAX_REDIRECTS', '5'))

FORM_ACTION_RE = re.compile(r'action="([^"]+)"')
ALERT_RE = re.compile(r'class="alert[^"]*"[^>]*>([^<]+)')


def _is_monidenum_url(url: str) -> bool:
    host = urlparse(url).hostname or ''
    return host == 'monidenum.fr' or host.endswith('.monidenum.fr')


def _absolute(location: str) -> str:
    """Resolve a (possibly relative) Location against the monidenum origin."""
    return urljoin(BASE_URL, location)


def get_identity_provider_url(session: requests.Session) -> str:
    """Read the Keycloak authorization URL monidenum redirects /login to."""
    debug_log.log_section('MONIDENUM LOGIN REDIRECT')
    debug_log.log_request('GET', LOGIN_URL)

    response = session.get(LOGIN_URL, allow_redirects=False)

    debug_log.log_response(response)

    location = response.headers.get('Location')
    if not location:
        raise ProtocolContractViolation(
            f'No redirect to the identity provider from {LOGIN_URL} (HTTP {response.status_code})'
        )
    return _absolute(location)


def get_login_form(session: requests.Session, idp_url: str) -> tuple[str, dict[str, str]]:
    """
    Load the Keycloak login page.

    Returns (form action URL, cookie jar holding the auth-session cookies).
    """
    debug_log.log_section('KEYCLOAK LOGIN PAGE')
    debug_log.log_request('GET', idp_url)

    response = session.get(idp_url)

    debug_log.log_response(response)

    match = FORM_ACTION_RE.search(response.text)
    if not match:
        raise ProtocolContractViolation('Could not find the Keycloak login form action URL')
    action_url = html.unescape(match.group(1))

    jar = {
        name: value
        for name, value in merge_cookies({}, response).items()
        if name.startswith(AUTH_SESSION_COOKIE_PREFIX)
    }
    debug_log.log_cookies(jar, 'Auth session cookies')
    return action_url, jar


def extract_alert_message(body: str) -> str:
    """Pull the human-readable error out of the login page's alert element."""
    match = ALERT_RE.search(body)
    if not match:
        return 'Unknown error'
    return match.group(1).replace('&#39;', "'").strip()


def submit_credentials(
    session: requests.Session,
    action_url: str,
    jar: dict[str, str],
    email: str,
    password: str,
) -> str:
    """
    POST the credentials to the Keycloak form.

    Returns the absolute URL of the first redirect back to monidenum.
    """
    debug_log.log_section('KEYCLOAK SUBMIT CREDENTIALS')
    form = {'username': email, 'password': password, 'credentialId': ''}
    headers = {'Cookie': cookie_header(jar)}
    debug_log.log_request('POST', action_url, headers, form)

    response = session.post(action_url, data=form, headers=headers, allow_redirects=False)

    debug_log.log_response(response)

    if response.status_code != 302:
        raise CredentialRejected(f'Authentication: {extract_alert_message(response.text)}')

    location = response.headers.get('Location')
    if not location or not _is_monidenum_url(location):
        raise ProtocolContractViolation(
            f'Unexpected redirect after authentication: {location!r}'
        )
    return location


def follow_session_redirects(
    session: requests.Session,
    url: str,
    max_redirects: int = MAX_REDIRECTS,
) -> str:
    """
    Walk the redirect chain by hand until a hop sets the session cookie.

    At most ``max_redirects`` requests are made. Cookies picked up along the
    way are carried to the following monidenum hops.
    """
    debug_log.log_section('MONIDENUM SESSION REDIRECTS')
    jar: dict[str, str] = {}

    for hop in range(max_redirects):
        headers = {'Cookie': cookie_header(jar)} if jar and _is_monidenum_url(url) else {}
        debug_log.log_request('GET', url, headers)

        response = session.get(url, headers=headers, allow_redirects=False)

        debug_log.log_response(response)
        jar = merge_cookies(jar, response)

        if jar.get(SESSION_COOKIE):
            return jar[SESSION_COOKIE]

        location = response.headers.get('Location')
        if response.status_code != 302 or not location:
            raise RedirectBudgetExceeded(
                f'{SESSION_COOKIE} not found: redirect chain ended after {hop + 1} hop(s) '
                f'(HTTP {response.status_code})'
            )
        url = _absolute(location)

    raise RedirectBudgetExceeded(
        f'{SESSION_COOKIE} not found after {max_redirects} redirects'
    )


def login(
    email: str,
    password: str,
    session: requests.Session | None = None,
    max_redirects: int = MAX_REDIRECTS,
    verbose: bool = True,
) -> str:
    """Run the full monidenum handshake and return the PHPSESSID value."""
    session = session or create_session()

    if verbose:
        print('Authenticating to monidenum...')
        print('  Locating identity provider...')
    idp_url = get_identity_provider_url(session)

    if verbose:
        print('  Loading login form...')
    action_url, jar = get_login_form(session, idp_url)

    if verbose:
        print('  Submitting credentials...')
    redirect_url = submit_credentials(session, action_url, jar, email, password)

    if verbose:
        print('  Following session redirects...')
    phpsessid = follow_session_redirects(session, _absolute(redirect_url), max_redirects)

    if verbose:
        print('  Authentication successful!')
    return phpsessid


def authenticate(
    store: SecretStore,
    cache: SessionCache | None = None,
    session: requests.Session | None = None,
    ttl_minutes: float = SESSION_TTL_MINUTES,
    max_redirects: int = MAX_REDIRECTS,
    verbose: bool = True,
) -> str:
    """
    Return a usable PHPSESSID, reusing the cached one while it is still fresh.

    A cached session the portal has already invalidated is not detected here;
    callers clear the cache when a downstream call shows the session is dead.
    """
    cache = cache or SessionCache(store, verbose=verbose)

    cached = cache.get(SERVICE_NAME)
    if cached:
        if verbose:
            print('Using cached monidenum session')
        return cached

    email, password = get_or_prompt_credentials(
        store, SERVICE_NAME, 'monidenum.fr email: ', verbose=verbose
    )
    phpsessid = login(email, password, session=session, max_redirects=max_redirects, verbose=verbose)
    cache.set(SERVICE_NAME, phpsessid, ttl_minutes)
    if verbose:
        print(f'  Session cached for {ttl_minutes:g} minutes')
    return phpsessid
