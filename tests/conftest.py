import http.client
import io
import json
from types import SimpleNamespace

import keyring
import keyring.errors
import pytest
import requests
import urllib3
from keyring.backend import KeyringBackend
from requests.adapters import HTTPAdapter

from admin_auth import SecretStore


class InMemoryKeyring(KeyringBackend):
    """Keyring backend keeping secrets in a dict for the duration of a test."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise keyring.errors.PasswordDeleteError('not found')


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def memory_keyring():
    previous = keyring.get_keyring()
    backend = InMemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def store():
    return SecretStore('cli-administratif-test')


@pytest.fixture
def clock():
    return FakeClock()


def make_response(
    status_code: int = 200,
    text: str = '',
    headers: dict | None = None,
    cookies: dict | None = None,
    json_data=None,
    content: bytes | None = None,
    url: str = 'https://example.invalid/',
) -> requests.Response:
    """Build a real requests.Response as returned with allow_redirects=False."""
    response = requests.Response()
    response.status_code = status_code
    response.reason = 'Found' if status_code == 302 else 'OK'
    response.url = url
    response.encoding = 'utf-8'
    response.headers.update(headers or {})
    if json_data is not None:
        text = json.dumps(json_data)
        response.headers.setdefault('Content-Type', 'application/json')
    response._content = content if content is not None else text.encode('utf-8')
    response.cookies = requests.cookies.cookiejar_from_dict(cookies or {})
    return response


def make_wire_response(
    status_code: int = 200,
    headers: list[tuple[str, str]] | None = None,
    body: bytes = b'',
    method: str = 'GET',
    url: str = 'https://example.invalid/',
) -> requests.Response:
    """
    Build a response the way HTTPAdapter does from raw headers, so Set-Cookie
    lines go through requests' own cookie extraction.
    """
    headers = headers or []
    msg = http.client.HTTPMessage()
    for name, value in headers:
        msg[name] = value
    raw = urllib3.HTTPResponse(
        body=io.BytesIO(body),
        headers=headers,
        status=status_code,
        reason='Found' if status_code == 302 else 'OK',
        preload_content=False,
        original_response=SimpleNamespace(msg=msg),
    )
    request = requests.Request(method, url).prepare()
    return HTTPAdapter().build_response(request, raw)
