#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "keyring",
#   "python-dotenv",
# ]
# ///
"""
URSSAF Payment Schedule

Shows the yearly payment schedule (échéancier) of an independent worker
account on URSSAF, with totals paid and still due.

Usage:
    uv run urssaf_echeances.py            # Current year
    uv run urssaf_echeances.py 2024       # A given year
    uv run urssaf_echeances.py logout     # Forget stored credentials
    uv run urssaf_echeances.py --debug    # Write HTTP trace to cli_admin_debug.log
"""

from __future__ import annotations

import argparse
import re
import sys
import uuid
from datetime import date
from typing import Any

import requests

from admin_auth import (
    DEBUG_LOG_FILE,
    ProtocolContractViolation,
    ResourceFetchFailed,
    SecretStore,
    create_session,
    debug_log,
    delete_credentials,
    get_or_prompt_credentials,
)
from urssaf_auth import SERVICE_NAME, AuthResult, authenticate

ECHEANCES_URL = "https://api.urssaf.fr/api-webti-be/v1/echeances"


def fetch_echeances(
    session: requests.Session,
    auth: AuthResult,
    year: int,
) -> list[dict[str, Any]]:
    """Fetch the yearly schedule for the authenticated account."""
    compte = auth.compte
    params = {
        "siret": compte["siret"],
        "categorie": "TIPL",
        "orga": compte["orga"],
        "numCot": compte["numc"],
        "view": "ECHEANCIER_ANNUEL",
        "annee": year,
    }
    headers = {
        "Authorization": f"Bearer {auth.access_token}",
        "Correlation-ID": str(uuid.uuid4()),
    }

    debug_log.log_section("URSSAF ECHEANCES")
    debug_log.log_request("GET", ECHEANCES_URL, headers, params)

    response = session.get(ECHEANCES_URL, params=params, headers=headers)

    debug_log.log_response(response)

    if response.status_code != 200:
        raise ResourceFetchFailed(
            f"Failed to fetch payment schedule: HTTP {response.status_code}",
            status_code=response.status_code,
        )

    try:
        echeances = response.json()
    except requests.exceptions.JSONDecodeError as e:
        raise ResourceFetchFailed(f"Invalid JSON in payment schedule: {e}") from e

    check_echeances(echeances)
    return echeances


# Fields read from every instalment, as (path, expected type)
REQUIRED_FIELDS = [
    (("montantTotal",), (int, float)),
    (("montantNonPaye",), (int, float)),
    (("paiement", "montantPaye"), (int, float)),
    (("exigibilite", "dateExigibilite"), str),
    (("etatEcheance",), str),
]


def check_echeances(echeances: Any) -> None:
    """Raise ProtocolContractViolation unless the schedule has the expected shape."""
    if not isinstance(echeances, list):
        raise ProtocolContractViolation(
            f"Payment schedule is not a list (got {type(echeances).__name__}): "
            f"{str(echeances)[:200]}"
        )
    for index, echeance in enumerate(echeances):
        for path, expected in REQUIRED_FIELDS:
            value = echeance
            for key in path:
                value = value.get(key) if isinstance(value, dict) else None
            if not isinstance(value, expected) or isinstance(value, bool):
                raise ProtocolContractViolation(
                    f"Payment schedule entry {index} has no valid {'.'.join(path)}"
                )


def compute_totals(echeances: list[dict[str, Any]]) -> dict[str, float]:
    """Sum the total, paid and remaining amounts across all instalments."""
    totals = {"total": 0, "paid": 0, "remaining": 0}
    for echeance in echeances:
        totals["total"] += echeance["montantTotal"]
        totals["paid"] += echeance["paiement"]["montantPaye"]
        totals["remaining"] += echeance["montantNonPaye"]
    return totals


def format_euro(amount: float) -> str:
    """Format an amount the French way: 1 234,56 €."""
    text = f"{amount:,.2f}".replace(",", " ").replace(".", ",")
    if text.endswith(",00"):
        text = text[:-3]
    return f"{text} €"


def format_date(iso_date: str) -> str:
    year, month, day = iso_date.split("-")
    return f"{day}/{month}/{year}"


def format_state(state: str) -> str:
    # EXIGEE -> exigée
    return re.sub(r"ee$", "ée", state.lower())


def print_echeances(echeances: list[dict[str, Any]]) -> None:
    """Print the schedule as a table followed by the totals."""
    headers = ["Date", "Montant total", "Payé", "Restant", "État"]
    rows = [
        [
            format_date(e["exigibilite"]["dateExigibilite"]),
            format_euro(e["montantTotal"]),
            format_euro(e["paiement"]["montantPaye"]),
            format_euro(e["montantNonPaye"]),
            format_state(e["etatEcheance"]),
        ]
        for e in echeances
    ]
    widths = [max(len(str(cell)) for cell in column) for column in zip(headers, *rows)]

    print()
    print("ÉCHÉANCES")
    print("-" * 50)
    print("  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    for row in rows:
        print("  ".join(cell.ljust(w) for cell, w in zip(row, widths)))

    totals = compute_totals(echeances)
    width = 12
    print()
    print("TOTAUX")
    print("-" * 50)
    print(f"  {'Total :'.ljust(width)} {format_euro(totals['total']).rjust(width)}")
    print(f"  {'Payé :'.ljust(width)} {format_euro(totals['paid']).rjust(width)}")
    print(f"  {'Restant dû :'.ljust(width)} {format_euro(totals['remaining']).rjust(width)}")


def parse_target(value: str | None) -> int | str:
    """Accept a four-digit year or the logout command."""
    if value is None:
        return date.today().year
    if value == "logout":
        return value
    if re.fullmatch(r"\d{4}", value):
        return int(value)
    raise argparse.ArgumentTypeError(f"expected a year (e.g. 2024) or 'logout', got {value!r}")


def main(argv: list[str] | None = None, store: SecretStore | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Fetch the URSSAF payment schedule for a year (default: current year)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "target",
        nargs="?",
        help="Year to show (e.g. 2024), or 'logout' to delete stored credentials",
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

    try:
        target = parse_target(args.target)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    store = store or SecretStore()
    verbose = not args.quiet

    if target == "logout":
        delete_credentials(store, SERVICE_NAME)
        print("Credentials deleted from the keyring.")
        return 0

    if args.debug:
        debug_log.enable()
        print(f"Debug logging enabled: {DEBUG_LOG_FILE}")

    try:
        identifiant, password = get_or_prompt_credentials(
            store, SERVICE_NAME, "Login (SIRET): ", verbose=verbose
        )
        session = create_session()
        auth = authenticate(identifiant, password, store, session=session, verbose=verbose)
        echeances = fetch_echeances(session, auth, target)
    except (RuntimeError, ValueError, requests.RequestException) as e:
        print(f"\nFailed: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 1
    finally:
        if args.debug:
            debug_log.disable()

    print_echeances(echeances)
    return 0


if __name__ == "__main__":
    sys.exit(main())
