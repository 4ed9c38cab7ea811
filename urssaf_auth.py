#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "keyring",
#   "python-dotenv",
# ]
# ///
"""
URSSAF Authentication Module

Logs in to mon.urssaf.fr with a SIRET and password and turns the resulting
portal session into an OAuth access token for api.urssaf.fr.

The portal has no public API. The browser flow is replayed by hand:

1. POST the login form to /cnx (no redirect following). The response sets a
   ``ctxUrssaf`` cookie (base64 JSON with the account context) and redirects
   to a URL carrying a ``tokenBds`` query parameter.
2. Fetch the public web app configuration to learn the OAuth client id.
3. Call the authorization endpoint silently (``prompt=none``) with PKCE,
   presenting ``tokenBds`` as the subject token of the previous login.
4. Exchange the authorization code and the PKCE verifier for an access token.

Access tokens are short-lived and never cached: every run performs the full
handshake with fresh PKCE material.

Usage:
    from urssaf_auth import authenticate

    auth = authenticate(identifiant, password, store)
    auth.compte['siret'], auth.access_token
"""

import base64
import hashlib
import json
import secrets
from dataclasses import dataclass
from urllib.parse import parse_qs, unquote, urlparse

import requests

from admin_auth import (
    CredentialRejected,
    ProtocolContractViolation,
    SecretStore,
    create_session,
    debug_log,
    delete_credentials,
    response_cookies,
)

SERVICE_NAME = 'urssaf'

LOGIN_URL = 'https://mon.urssaf.fr/cnx'
CONFIGURATION_URL = 'https://webti.urssaf.fr/assets/configuration/configuration.json'
AUTHORIZE_URL = 'https://login.urssaf.fr/api/oauth/v1/authorize'
TOKEN_URL = 'https://login.urssaf.fr/api/oauth/v1/token'
REDIRECT_URI = 'https://webti.urssaf.fr/callback'

CONTEXT_COOKIE = 'ctxUrssaf'
BAD_CREDENTIALS_MARKER = "Erreur d'identifiant ou de mot de passe"

SCOPE = 'openid webti.metier webti.metier.v2 deci.ti offline_access ods.cedito ods.session'
STATE_SUFFIX = '-0000000000-webti'
SUBJECT_TOKEN_TYPE = 'urn:oauth2:180035016:acoss:token-bds'


@dataclass
class PkceMaterial:
    """Per-attempt PKCE verifier/challenge plus the state and nonce values."""

    code_verifier: str
    code_challenge: str
    state: str
    nonce: str


@dataclass
class AuthResult:
    """Account context decoded from the login cookie and the API access token."""

    compte: dict
    access_token: str


def b64url(data: bytes) -> str:
    """Unpadded base64url encoding, as used by PKCE (RFC 7636)."""
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def generate_pkce() -> PkceMaterial:
    """Generate fresh PKCE material. Never reuse it across attempts."""
    code_verifier = b64url(secrets.token_bytes(32))
    code_challenge = b64url(hashlib.sha256(code_verifier.encode('ascii')).digest())
    return PkceMaterial(
        code_verifier=code_verifier,
        code_challenge=code_challenge,
        state=b64url(secrets.token_bytes(32)) + STATE_SUFFIX,
        nonce=b64url(secrets.token_bytes(32)),
    )


def decode_context_cookie(value: str) -> dict:
    """
    Decode the ``ctxUrssaf`` cookie into the account context.

    The cookie is URL-encoded base64 of a JSON document ``{"compte": {...}}``.
    It is not verified in any way; only transport security vouches for it.
    Padding may be missing and either base64 alphabet may be used.
    """
    blob = unquote(value).strip().replace('-', '+').replace('_', '/').rstrip('=')
    blob += '=' * (-len(blob) % 4)
    try:
        data = json.loads(base64.b64decode(blob, validate=True).decode('utf-8'))
        return data['compte']
    except (ValueError, KeyError, TypeError) as e:
        raise ProtocolContractViolation(
            f'Cookie {CONTEXT_COOKIE} could not be decoded - the URSSAF API may have changed: {e}'
        ) from e


def _query_param(url: str | None, name: str, step: str) -> str:
    """Read a query parameter out of a Location header, or fail loudly."""
    if not url:
        raise ProtocolContractViolation(f'No Location header after {step}')
    values = parse_qs(urlparse(url).query).get(name)
    if not values:
        raise ProtocolContractViolation(f'No {name} parameter in Location after {step}: {url}')
    return values[0]


def submit_login(
    session: requests.Session,
    identifiant: str,
    password: str,
    store: SecretStore,
) -> tuple[dict, str]:
    """
    POST the login form and read the account context and tokenBds.

    Returns (compte, token_bds). On rejected credentials the stored
    credentials are deleted so the next run prompts again.
    """
    debug_log.log_section('URSSAF LOGIN')
    form = {'identifiant': identifiant, 'Password': password}
    debug_log.log_request('POST', LOGIN_URL, body=form)

    response = session.post(LOGIN_URL, data=form, allow_redirects=False)

    debug_log.log_response(response)

    ctx_value = response_cookies(response).get(CONTEXT_COOKIE)
    if not ctx_value:
        if BAD_CREDENTIALS_MARKER in response.text:
            delete_credentials(store, SERVICE_NAME)
            raise CredentialRejected(
                'Authentication failed: wrong login or password.\n'
                'The stored credentials have been deleted from the keyring. Run the script again.'
            )
        raise ProtocolContractViolation(
            f'Cookie {CONTEXT_COOKIE} not found - the URSSAF API may have changed'
        )

    compte = decode_context_cookie(ctx_value)
    token_bds = _query_param(response.headers.get('Location'), 'tokenBds', 'login')
    return compte, token_bds


def fetch_client_id(session: requests.Session) -> str:
    """Read the OAuth client id from the web app's public configuration."""
    debug_log.log_section('URSSAF CONFIGURATION')
    debug_log.log_request('GET', CONFIGURATION_URL)

    response = session.get(CONFIGURATION_URL, headers={'Accept': 'application/json'})

    debug_log.log_response(response)
    response.raise_for_status()

    try:
        return response.json()['oidc']['annabel']['clientId']
    except (ValueError, KeyError, TypeError) as e:
        raise ProtocolContractViolation(
            f'oidc.annabel.clientId not found in {CONFIGURATION_URL}'
        ) from e


def authorize(session: requests.Session, client_id: str, token_bds: str, pkce: PkceMaterial) -> str:
    """Silent authorization request; returns the authorization code."""
    debug_log.log_section('URSSAF AUTHORIZE')
    params = {
        'response_type': 'code',
        'client_id': client_id,
        'state': pkce.state,
        'redirect_uri': REDIRECT_URI,
        'scope': SCOPE,
        'code_challenge': pkce.code_challenge,
        'code_challenge_method': 'S256',
        'nonce': pkce.nonce,
        'prompt': 'none',
        'subject_token': token_bds,
        'subject_token_type': SUBJECT_TOKEN_TYPE,
    }
    debug_log.log_request('GET', AUTHORIZE_URL, body=params)

    response = session.get(AUTHORIZE_URL, params=params, allow_redirects=False)

    debug_log.log_response(response)
    return _query_param(response.headers.get('Location'), 'code', 'authorization')


def exchange_code(session: requests.Session, client_id: str, code: str, code_verifier: str) -> str:
    """Exchange the authorization code for an access token."""
    debug_log.log_section('URSSAF TOKEN')
    form = {
        'grant_type': 'authorization_code',
        'code': code,
        'redirect_uri': REDIRECT_URI,
        'code_verifier': code_verifier,
        'client_id': client_id,
    }
    debug_log.log_request('POST', TOKEN_URL, body=form)

    response = session.post(TOKEN_URL, data=form)

    debug_log.log_response(response)
    response.raise_for_status()

    try:
        access_token = response.json().get('access_token')
    except ValueError as e:
        raise ProtocolContractViolation('Token endpoint did not return JSON') from e
    if not access_token:
        raise ProtocolContractViolation('No access_token in token response')
    return access_token


def authenticate(
    identifiant: str,
    password: str,
    store: SecretStore,
    session: requests.Session | None = None,
    verbose: bool = True,
) -> AuthResult:
    """
    Perform the full URSSAF handshake.

    Every step is a single sequential request; any failure aborts the whole
    handshake.
    """
    session = session or create_session()

    if verbose:
        print('Authenticating to URSSAF...')
        print('  Submitting credentials...')
    compte, token_bds = submit_login(session, identifiant, password, store)

    if verbose:
        print('  Fetching OAuth configuration...')
    client_id = fetch_client_id(session)

    pkce = generate_pkce()

    if verbose:
        print('  Requesting authorization code...')
    code = authorize(session, client_id, token_bds, pkce)

    if verbose:
        print('  Exchanging code for access token...')
    access_token = exchange_code(session, client_id, code, pkce.code_verifier)

    if verbose:
        print('  Authentication successful!')

    return AuthResult(compte=compte, access_token=access_token)
