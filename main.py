"""Command-line interface for the QA Toolsmith service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from getpass import getpass
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

try:
    import httpx
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The 'httpx' package is required. Execute `pip install -e .` to install dependencies."
    ) from exc

from toolsmith.config import Settings
from toolsmith.database import Database
from toolsmith.models import ROLE_ADMIN
from toolsmith.schemas import PASSWORD_STRENGTH_PATTERN

logger = logging.getLogger("toolsmith.main")

_DEFAULT_SERVICE_URL = "http://localhost:8000"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="QA Toolsmith utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the application database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    admin_parser = subparsers.add_parser(
        "admin", help="Launch the interactive administration console"
    )
    admin_parser.add_argument(
        "--service-url",
        default=None,
        help=f"Base URL of a running service (default: {_DEFAULT_SERVICE_URL})",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "admin", "init-db"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(
    *,
    database: Database,
    settings: Settings,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from toolsmith.service import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting QA Toolsmith API on %s://%s:%s", protocol, host, port)

    app = create_app(database=database, settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _run_admin_cli(database: Database, *, default_service_url: str | None = None) -> None:
    """Provide an interactive management console for administrators."""

    service_url = default_service_url or _DEFAULT_SERVICE_URL

    print("QA Toolsmith Administration Console")
    print("Press Ctrl+C at any time to exit.\n")

    try:
        while True:
            print("Select an option:")
            print("  1) List all profiles")
            print("  2) Add a new profile")
            print("  3) Grant administrator role")
            print("  4) Check service health")
            print("  5) Show recent login attempts")
            print("  6) Exit")

            choice = input("Enter choice [1-6]: ").strip()

            if choice == "1":
                _list_profiles(database)
            elif choice == "2":
                _add_profile(database)
            elif choice == "3":
                _promote_profile(database)
            elif choice == "4":
                _check_health(service_url)
            elif choice == "5":
                _show_login_attempts(database)
            elif choice == "6":
                print("Goodbye!")
                return
            else:
                print("Invalid selection. Please choose a number from the menu.\n")

            print()
    except KeyboardInterrupt:
        print("\nExiting administration console.")


def _list_profiles(database: Database) -> None:
    profiles = database.list_profiles()
    if not profiles:
        print("No profiles are currently registered.")
        return

    print(f"{len(profiles)} profile(s) found:")
    print(f"{'Email':<40}  {'Role':<6}  Created")
    print("-" * 80)
    for profile in profiles:
        created = profile.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        print(f"{profile.email:<40}  {profile.role:<6}  {created}")


def _add_profile(database: Database) -> None:
    print("\nCreate a new profile (leave the email blank to cancel).")
    email = input("Email address: ").strip()
    if not email:
        print("Profile creation cancelled.")
        return

    password = _prompt_for_password()
    if password is None:
        print("Aborted creating profile.")
        return

    try:
        profile = database.create_profile(email, password)
    except ValueError as exc:
        print(f"Failed to create profile: {exc}")
        return

    print(f"Created profile {profile.id}: {profile.email}")


def _promote_profile(database: Database) -> None:
    email = input("Email of the profile to promote: ").strip()
    if not email:
        print("Nothing to do.")
        return

    profile = database.get_profile_by_email(email)
    if profile is None:
        print(f"No profile registered for {email}.")
        return
    if profile.is_admin:
        print(f"{profile.email} is already an administrator.")
        return

    database.set_profile_role(profile.id, ROLE_ADMIN)
    print(f"{profile.email} is now an administrator.")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass("Password (8-72 characters, letters and digits): ")
        if not 8 <= len(password) <= 72 or not PASSWORD_STRENGTH_PATTERN.match(password):
            print("Password must be 8-72 characters and contain a letter and a digit.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _check_health(base_url: str) -> None:
    endpoint = base_url.rstrip("/") + "/api/health"

    try:
        response = httpx.get(endpoint, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"Failed to contact service: {exc}")
        return

    if response.status_code != 200:
        print(f"Service responded with {response.status_code}: {response.text.strip()}")
        return

    try:
        payload = response.json()
    except ValueError:
        print("Service returned an unexpected response format.")
        return

    print(f"Service at {base_url} reports status: {payload.get('status', 'unknown')}")


def _show_login_attempts(database: Database, *, limit: int = 20) -> None:
    events = database.list_usage_events(kind="auth")[-limit:]
    if not events:
        print("No login attempts have been recorded.")
        return

    print(f"Last {len(events)} login attempt(s):")
    for event in events:
        created = event.created_at.strftime("%Y-%m-%d %H:%M:%S")
        status = event.meta.get("status", "?")
        reason = event.meta.get("reason") or ""
        network = event.meta.get("ip_cidr", "unknown")
        print(f"{created}  {status:<8} {network:<20} {reason}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    settings = Settings.from_env()
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(
            database=database,
            settings=settings,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "admin":
        _run_admin_cli(database, default_service_url=args.service_url)
    elif args.command == "init-db":
        print("Database initialisation complete.")


if __name__ == "__main__":
    main()
