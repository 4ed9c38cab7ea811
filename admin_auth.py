#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "keyring",
#   "python-dotenv",
# ]
# ///
"""
Administrative Portals - Shared Authentication Module

Building blocks shared by the URSSAF and monidenum scripts:

- configuration (environment variables, optionally loaded from a .env file)
- a debug logger that writes full HTTP traces to a file
- the error hierarchy raised by the login handshakes
- secret storage in the OS keyring (credentials and session tokens)
- interactive credential prompts
- a time-limited session cache on top of the keyring
- explicit cookie threading helpers for manual redirect handling

Usage:
    from admin_auth import SecretStore, get_or_prompt_credentials

    store = SecretStore()
    login, password = get_or_prompt_credentials(store, 'urssaf', 'Login (SIRET): ')
"""

import getpass
import json
import os
import time
from datetime import datetime
from http.cookiejar import DefaultCookiePolicy
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import keyring
import keyring.errors
import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

load_dotenv()


# Keyring namespace shared by every supported service
KEYRING_SERVICE = os.environ.get('CLI_ADMIN_KEYRING_SERVICE', 'cli-administratif')

# Retries are opt-in: every handshake step is a single attempt by default
HTTP_RETRIES = int(os.environ.get('CLI_ADMIN_HTTP_RETRIES', '0'))

USER_AGENT = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:143.0) Gecko/20100101 Firefox/143.0'
)

# Debug log file - captures full request/response details
DEBUG_LOG_FILE = Path('cli_admin_debug.log')

# Form fields, query parameters and JSON keys never written to the debug log in clear
SECRET_FIELDS = {
    'password',
    'Password',
    'code_verifier',
    'code',
    'subject_token',
    'tokenBds',
    'access_token',
    'refresh_token',
    'id_token',
}
MASK = '***MASKED***'


def mask_secrets(data):
    """Copy of a JSON-like value with every secret field masked, at any depth."""
    if isinstance(data, dict):
        return {k: (MASK if k in SECRET_FIELDS else mask_secrets(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [mask_secrets(v) for v in data]
    return data


def mask_url(url: str) -> str:
    """Mask secret query parameters (tokenBds, code, ...) in a URL."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [(k, MASK if k in SECRET_FIELDS else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunsplit(parts._replace(query=urlencode(query, safe='*')))


class DebugLogger:
    """Logs all HTTP request/response details to a file for debugging."""

    def __init__(self, filepath: Path = DEBUG_LOG_FILE):
        self.filepath = filepath
        self.enabled = False
        self._file = None

    def enable(self):
        self.enabled = True
        self._file = open(self.filepath, 'w', encoding='utf-8')
        self._write('=== Authentication Debug Log ===')
        self._write(f'Started: {datetime.now().isoformat()}')
        self._write('')

    def disable(self):
        if self._file:
            self._file.close()
            self._file = None
        self.enabled = False

    def _write(self, text: str):
        if self._file:
            self._file.write(text + '\n')
            self._file.flush()

    def log_section(self, title: str):
        if not self.enabled:
            return
        self._write('')
        self._write('=' * 80)
        self._write(f'  {title}')
        self._write('=' * 80)

    def log_cookies(self, jar: dict, label: str = 'Cookie jar'):
        if not self.enabled:
            return
        self._write(f'\n--- {label} ---')
        for name, value in jar.items():
            self._write(f'  {name}: {MASK} ({len(value)} chars)')

    def log_request(self, method: str, url: str, headers: dict | None = None, body=None):
        if not self.enabled:
            return
        self._write(f'\n>>> REQUEST: {method} {mask_url(url)}')
        if headers:
            self._write('--- Request Headers ---')
            for k, v in headers.items():
                v_str = str(v)
                if k.lower() == 'cookie':
                    v_str = '; '.join(c.split('=', 1)[0] + '=' + MASK for c in v_str.split('; '))
                elif k.lower() == 'authorization':
                    v_str = v_str.split(' ', 1)[0] + ' ' + MASK
                elif len(v_str) > 200:
                    v_str = v_str[:200] + '...'
                self._write(f'  {k}: {v_str}')
        if body:
            self._write('--- Request Body ---')
            if isinstance(body, dict):
                self._write(json.dumps(mask_secrets(body), indent=2, default=str))
            else:
                self._write(str(body)[:500])

    def log_response(self, response: requests.Response):
        if not self.enabled:
            return
        self._write(f'\n<<< RESPONSE: {response.status_code} {response.reason}')
        self._write(f'    URL: {mask_url(response.url or "")}')
        location = response.headers.get('Location')
        if location:
            self._write(f'    -> Location: {mask_url(location)}')
        self._write('--- Response Cookies ---')
        for name in response.cookies.keys():
            self._write(f'  {name}')
        content_type = response.headers.get('Content-Type', '')
        if 'html' in content_type:
            self._write(f'[HTML Response - {len(response.text)} chars]')
            self._write(response.text[:1000])
        elif 'json' in content_type:
            try:
                self._write(json.dumps(mask_secrets(response.json()), indent=2)[:2000])
            except ValueError:
                self._write('[unreadable JSON body]')


# Global debug logger instance
debug_log = DebugLogger()


# === ERRORS ===

class AdminAuthError(RuntimeError):
    """Base class for every failure raised by the login handshakes."""


class CredentialRejected(AdminAuthError):
    """The portal explicitly refused the login/password pair."""


class ProtocolContractViolation(AdminAuthError):
    """
    An expected artifact (cookie, header, HTML fragment, redirect target) is
    missing or has an unexpected shape. Usually means the portal changed.
    """


class RedirectBudgetExceeded(AdminAuthError):
    """The redirect chain ended or ran out of hops without a session cookie."""


class ResourceFetchFailed(AdminAuthError):
    """An authorized call after login did not succeed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# === SECRET STORE ===

class SecretStore:
    """
    Named secrets kept in the OS keyring (macOS Keychain, Windows Credential
    Manager, Secret Service on Linux), all under one keyring service namespace.

    Values are opaque strings; callers serialize structured data themselves.
    """

    def __init__(self, namespace: str = KEYRING_SERVICE):
        self.namespace = namespace

    def get(self, name: str) -> str | None:
        return keyring.get_password(self.namespace, name)

    def set(self, name: str, value: str) -> None:
        keyring.set_password(self.namespace, name, value)

    def delete(self, name: str) -> None:
        """Remove a secret. Deleting an absent secret is a no-op."""
        try:
            keyring.delete_password(self.namespace, name)
        except keyring.errors.PasswordDeleteError:
            pass


# === CREDENTIALS (permanent) ===

def get_credentials(store: SecretStore, service: str) -> tuple[str, str] | None:
    """Return the stored (login, password) pair for a service, if any."""
    stored = store.get(service)
    if not stored:
        return None
    data = json.loads(stored)
    return data['login'], data['password']


def set_credentials(store: SecretStore, service: str, login: str, password: str) -> None:
    store.set(service, json.dumps({'login': login, 'password': password}))


def delete_credentials(store: SecretStore, service: str) -> None:
    store.delete(service)


def get_credentials_from_prompt(login_prompt: str) -> tuple[str, str]:
    """
    Prompt the user to enter their credentials on the terminal.

    The password is read with getpass, which turns terminal echo off for the
    duration of the read and restores it however the read ends.
    """
    login = input(login_prompt).strip()
    password = getpass.getpass('Password: ')

    if not login or not password:
        raise ValueError('Login and password are required')

    return login, password


def get_or_prompt_credentials(
    store: SecretStore,
    service: str,
    login_prompt: str,
    verbose: bool = True,
) -> tuple[str, str]:
    """
    Get credentials from the keyring, prompting (and saving) them on first use.

    Stored credentials are returned as-is; a wrong password is only detected
    when the portal rejects the login.
    """
    stored = get_credentials(store, service)
    if stored:
        return stored

    login, password = get_credentials_from_prompt(login_prompt)
    set_credentials(store, service, login, password)
    if verbose:
        print('Credentials saved to the keyring.')
    return login, password


# === SESSION TOKENS (with TTL) ===

class SessionCache:
    """
    Session tokens stored in the keyring with an expiry timestamp.

    Expiry is checked lazily: reading an expired token deletes it and reports
    it as absent. There is no other eviction.
    """

    def __init__(self, store: SecretStore, clock=time.time, verbose: bool = True):
        self.store = store
        self.clock = clock
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message)

    @staticmethod
    def _key(service: str) -> str:
        return f'{service}-session'

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def get(self, service: str) -> str | None:
        stored = self.store.get(self._key(service))
        if not stored:
            return None

        try:
            data = json.loads(stored)
            token, expires_at = data['token'], data['expiresAt']
        except (json.JSONDecodeError, KeyError, TypeError):
            self._log('  Cached session unreadable, will re-authenticate')
            self.delete(service)
            return None

        if self._now_ms() > expires_at:
            self._log('  Cached session expired, will re-authenticate')
            self.delete(service)
            return None

        return token

    def set(self, service: str, token: str, ttl_minutes: float) -> None:
        data = {
            'token': token,
            'expiresAt': self._now_ms() + int(ttl_minutes * 60 * 1000),
        }
        self.store.set(self._key(service), json.dumps(data))

    def delete(self, service: str) -> None:
        self.store.delete(self._key(service))


# === HTTP HELPERS ===

def create_session() -> requests.Session:
    """
    Create a requests session for the login handshakes.

    The session never stores cookies on its own: every cookie a handshake
    needs is read from a response and passed to the next request explicitly,
    so nothing leaks between hosts.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=HTTP_RETRIES,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=['GET'],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount('https://', adapter)

    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    session.headers.update({
        'User-Agent': USER_AGENT,
        'Accept-Language': 'fr-FR,fr;q=0.9',
    })

    return session


def response_cookies(response: requests.Response) -> dict[str, str]:
    """Return the cookies set by a single response as a plain name -> value dict."""
    return {cookie.name: cookie.value for cookie in response.cookies}


def merge_cookies(jar: dict[str, str], response: requests.Response) -> dict[str, str]:
    """Return a new jar with the response's cookies layered over ``jar``."""
    return {**jar, **response_cookies(response)}


def cookie_header(jar: dict[str, str]) -> str:
    return '; '.join(f'{name}={value}' for name, value in jar.items())
