import argparse
import getpass
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from toolsmith.config import Settings
from toolsmith.database import Database, resolve_database_path
from toolsmith.models import ROLE_ADMIN, ROLE_USER
from toolsmith.schemas import PASSWORD_STRENGTH_PATTERN


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a QA Toolsmith account")
    parser.add_argument("email", help="Unique email address for login")
    parser.add_argument(
        "--admin",
        action="store_true",
        help="Grant the administrator role to the new account",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to TOOLSMITH_DB_PATH or data/toolsmith.sqlite3)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if not 8 <= len(password) <= 72:
            print("Password must be between 8 and 72 characters long.", file=sys.stderr)
            continue
        if not PASSWORD_STRENGTH_PATTERN.match(password):
            print("Password must contain at least one letter and one digit.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    args = parse_args()
    password = prompt_for_password()

    db_path = resolve_database_path(args.db_path) if args.db_path else Settings.from_env().database_path

    database = Database(db_path)
    database.initialize()

    try:
        profile = database.create_profile(
            args.email,
            password,
            role=ROLE_ADMIN if args.admin else ROLE_USER,
        )
    except ValueError as exc:  # duplicates, etc.
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created {profile.role} account {profile.id} <{profile.email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
