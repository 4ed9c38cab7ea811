#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "keyring",
#   "python-dotenv",
# ]
# ///
"""
KBIS Download Script

Downloads the KBIS (company registration certificate) of one of the
companies attached to a monidenum.fr account.

Usage:
    uv run monidenum_kbis.py                  # Single company, or choose from a list
    uv run monidenum_kbis.py 123456789        # Company with this SIREN
    uv run monidenum_kbis.py logout           # Forget credentials and cached session
    uv run monidenum_kbis.py --output-dir out # Where to write kbis_<SIREN>.pdf
"""

from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urljoin

import requests

from admin_auth import (
    DEBUG_LOG_FILE,
    ResourceFetchFailed,
    SecretStore,
    SessionCache,
    create_session,
    debug_log,
    delete_credentials,
)
from monidenum_auth import BASE_URL, SERVICE_NAME, SESSION_COOKIE, authenticate

ENTREPRISES_URL = f"{BASE_URL}/mon-espace/gestion-kbis-scoring/"
KBIS_REQUEST_URL = f"{BASE_URL}/mon-espace/gestion-kbis-scoring/kbis/get"

ROW_RE = re.compile(r'<div class="row tr">([\s\S]*?)</div>\s*</div>\s*</div>')
IDENT_RE = re.compile(r'data-ident="(\d+)"')
DENOMINATION_RE = re.compile(r'title="([^"]+)">\s*([^<]+)\s*</div>\s*<div class="col-lg-1-5')
SIREN_RE = re.compile(r'title="([\d\s]+)">\s*([\d\s]+)\s*</div>\s*<div class="col-lg-2-5')
FORME_RE = re.compile(
    r'col-lg-2-5 td"[^>]*>\s*(?:<span[^>]*>[^<]*</span>\s*)?(SARL|SAS|SA|EURL|SCI|SASU|[^<\n]+)'
)

# Fragments only found on the monidenum / Keycloak login pages
LOGIN_PAGE_MARKERS = ("kc-form-login", "/login-actions/", 'type="password"')


@dataclass
class Entreprise:
    id: str
    denomination: str
    siren: str
    forme_juridique: str = ""


def parse_entreprises(html: str) -> list[Entreprise]:
    """
    Extract the companies listed on the KBIS management page.

    Rows missing an id, a name or a SIREN are skipped.
    """
    entreprises = []
    for row_match in ROW_RE.finditer(html):
        row = row_match.group(1)
        ident = IDENT_RE.search(row)
        denomination = DENOMINATION_RE.search(row)
        siren = SIREN_RE.search(row)
        forme = FORME_RE.search(row)

        if ident and denomination and siren:
            entreprises.append(Entreprise(
                id=ident.group(1),
                denomination=denomination.group(2).strip(),
                siren=re.sub(r"\s", "", siren.group(2)),
                forme_juridique=forme.group(1).strip() if forme else "",
            ))
    return entreprises


def is_login_page(html: str) -> bool:
    return any(marker in html for marker in LOGIN_PAGE_MARKERS)


class KbisDownloader:
    """
    Authorized calls to monidenum once a PHPSESSID is available.

    A response showing the session is no longer valid clears the cached
    session, so the next run logs in again.
    """

    def __init__(
        self,
        session: requests.Session,
        phpsessid: str,
        cache: SessionCache | None = None,
    ) -> None:
        self.session = session
        self.phpsessid = phpsessid
        self.cache = cache

    @property
    def _cookie(self) -> dict[str, str]:
        return {"Cookie": f"{SESSION_COOKIE}={self.phpsessid}"}

    def _session_expired(self, response: requests.Response, reason: str) -> ResourceFetchFailed:
        """Clear the cached session and return the error to raise."""
        if self.cache:
            self.cache.delete(SERVICE_NAME)
        return ResourceFetchFailed(
            f"monidenum session has expired ({reason}). The cached session was cleared, "
            "run the script again to log in.",
            status_code=response.status_code,
        )

    def _check_session_valid(self, response: requests.Response) -> None:
        """Raise an error if the session has expired."""
        if response.status_code == 401:
            raise self._session_expired(response, "HTTP 401")
        if response.status_code in (301, 302, 303):
            if "/login" in response.headers.get("Location", ""):
                raise self._session_expired(response, "redirected to login")
        elif is_login_page(response.text):
            raise self._session_expired(response, "received the login page")

    def list_entreprises(self) -> list[Entreprise]:
        debug_log.log_section("MONIDENUM ENTREPRISES")
        debug_log.log_request("GET", ENTREPRISES_URL, self._cookie)

        response = self.session.get(ENTREPRISES_URL, headers=self._cookie, allow_redirects=False)

        debug_log.log_response(response)
        self._check_session_valid(response)
        if response.status_code != 200:
            raise ResourceFetchFailed(
                f"Failed to list companies: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return parse_entreprises(response.text)

    def request_kbis_url(self, entreprise: Entreprise) -> str:
        """Ask the portal to generate the KBIS; returns the document URL."""
        headers = {**self._cookie, "X-Requested-With": "XMLHttpRequest"}
        form = {"idEntreprise": entreprise.id}

        debug_log.log_section("MONIDENUM KBIS REQUEST")
        debug_log.log_request("POST", KBIS_REQUEST_URL, headers, form)

        response = self.session.post(
            KBIS_REQUEST_URL, data=form, headers=headers, allow_redirects=False
        )

        debug_log.log_response(response)
        self._check_session_valid(response)

        try:
            data = response.json()
        except requests.exceptions.JSONDecodeError as e:
            # An HTML page instead of the AJAX answer means the session is gone
            raise self._session_expired(response, f"HTTP {response.status_code} without JSON") from e

        if not isinstance(data, dict) or not data.get("success") or not data.get("url"):
            message = data.get("message") if isinstance(data, dict) else data
            raise ResourceFetchFailed(f"KBIS request failed: {message}")
        return urljoin(BASE_URL, data["url"])

    def download(self, url: str) -> bytes:
        debug_log.log_section("MONIDENUM KBIS DOWNLOAD")
        debug_log.log_request("GET", url, self._cookie)

        response = self.session.get(url, headers=self._cookie)

        debug_log.log_response(response)
        if not response.ok:
            raise ResourceFetchFailed(
                f"PDF download failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.content


def normalize_siren(value: str) -> str | None:
    """Return the SIREN without spaces if ``value`` is a 9-digit SIREN."""
    siren = re.sub(r"\s", "", value)
    return siren if re.fullmatch(r"\d{9}", siren) else None


def select_entreprise(
    entreprises: list[Entreprise],
    siren: str | None = None,
    ask=input,
) -> Entreprise:
    """Pick the company by SIREN, automatically if alone, otherwise interactively."""
    if not entreprises:
        raise RuntimeError("No company found on this account")

    if siren:
        for entreprise in entreprises:
            if entreprise.siren == siren:
                return entreprise
        raise RuntimeError(f"SIREN {siren} not found on this account")

    if len(entreprises) == 1:
        return entreprises[0]

    print()
    print("Available companies:")
    for i, e in enumerate(entreprises, start=1):
        print(f"  {i}. {e.denomination} ({e.siren}) - {e.forme_juridique}")

    choice = ask("\nCompany number: ").strip()
    if not choice.isdigit() or not 1 <= int(choice) <= len(entreprises):
        raise RuntimeError("Invalid choice")
    return entreprises[int(choice) - 1]


def main(argv: list[str] | None = None, store: SecretStore | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Download a company KBIS from monidenum.fr",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "target",
        nargs="?",
        help="SIREN of the company (optional with a single company), or 'logout'",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("."),
        help="Directory for the downloaded PDF (default: current directory)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help=f"Write detailed HTTP trace to {DEBUG_LOG_FILE}",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress progress messages",
    )
    args = parser.parse_args(argv)

    siren = None
    if args.target and args.target != "logout":
        siren = normalize_siren(args.target)
        if not siren:
            parser.error(f"expected a 9-digit SIREN or 'logout', got {args.target!r}")

    store = store or SecretStore()
    verbose = not args.quiet
    cache = SessionCache(store, verbose=verbose)

    if args.target == "logout":
        delete_credentials(store, SERVICE_NAME)
        cache.delete(SERVICE_NAME)
        print("Credentials and session deleted from the keyring.")
        return 0

    if args.debug:
        debug_log.enable()
        print(f"Debug logging enabled: {DEBUG_LOG_FILE}")

    try:
        session = create_session()
        phpsessid = authenticate(store, cache=cache, session=session, verbose=verbose)

        downloader = KbisDownloader(session, phpsessid, cache=cache)
        entreprise = select_entreprise(downloader.list_entreprises(), siren)

        print(f"Downloading KBIS of {entreprise.denomination}...")
        pdf = downloader.download(downloader.request_kbis_url(entreprise))

        args.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = args.output_dir / f"kbis_{entreprise.siren}.pdf"
        output_path.write_bytes(pdf)
    except (RuntimeError, ValueError, requests.RequestException) as e:
        print(f"\nFailed: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 1
    finally:
        if args.debug:
            debug_log.disable()

    print(f"KBIS downloaded: {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
