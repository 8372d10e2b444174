#!/usr/bin/env python3
"""
Auth service maintenance CLI.

Usage:
  python main.py init-db                 # create tables if missing
  python main.py sweep                   # purge expired sessions and lapsed reservations once
  python main.py create-account alice alice@x.com +15550100
                                         # prompts for the password

`sweep` is what an external scheduler (cron, systemd timer, k8s CronJob)
runs when the API's own maintenance loop is not enough, e.g. several API
replicas sharing one database.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default sqlite:///./authsvc.db)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AuthError
from auth.schema import make_engine
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("authsvc.cli")


def _cmd_init_db(args: argparse.Namespace) -> int:
    engine = make_engine(get_settings().database_url)
    engine.dispose()
    print("  [+] Schema ready.")
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = make_engine(settings.database_url)
    try:
        counts = AuthService.from_settings(settings, engine).run_maintenance()
    finally:
        engine.dispose()
    print(f"  [+] Removed {counts['sessions']} expired session(s), {counts['reservations']} stale reservation key(s).")
    return 0


def _cmd_create_account(args: argparse.Namespace) -> int:
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        return 1
    settings = get_settings()
    engine = make_engine(settings.database_url)
    try:
        account = AuthService.from_settings(settings, engine).register(
            args.username, args.email, args.phone_number, password
        )
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        for field, reason in getattr(exc, "field_errors", {}).items():
            print(f"      {field}: {reason}")
        return 1
    finally:
        engine.dispose()
    print(f"  [+] Created account {account.id} ({account.username}).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Auth service maintenance commands.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the auth tables if they do not exist.").set_defaults(func=_cmd_init_db)
    sub.add_parser("sweep", help="Purge expired sessions and lapsed reservations.").set_defaults(func=_cmd_sweep)

    create = sub.add_parser("create-account", help="Register an account from the command line.")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument("phone_number")
    create.set_defaults(func=_cmd_create_account)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
