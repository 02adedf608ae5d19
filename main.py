#!/usr/bin/env python3
"""
Auth service -- maintenance command line.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py purge
  python main.py revoke-sessions ann@x.com

Commands:
  serve            Run the HTTP API with uvicorn.
  purge            Delete expired pending registrations, reset requests and
                   refresh tokens once (the API also does this periodically).
  revoke-sessions  Revoke every refresh token of one user, e.g. after a
                   suspected credential leak. Access tokens already issued
                   stay valid until they expire.

Configuration comes from the environment / .env (see core/config.py).
"""

import argparse
import logging
import sys

from auth.store import CredentialStore
from core.config import get_settings

logger = logging.getLogger("authservice.cli")


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_purge(store: CredentialStore) -> int:
    removed = store.purge_expired()
    for table, count in removed.items():
        print(f"  {table:<24} {count} removed")
    return 0


def _cmd_revoke_sessions(store: CredentialStore, email: str) -> int:
    user = store.get_user_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'.")
        return 1
    revoked = store.delete_user_refresh_tokens(user.id)
    print(f"  Revoked {revoked} session(s) for {email}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Auth service maintenance commands.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="auto-reload on code changes (development)")

    sub.add_parser("purge", help="delete expired OTP records and refresh tokens")

    revoke = sub.add_parser("revoke-sessions", help="revoke all refresh tokens of a user")
    revoke.add_argument("email")
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _cmd_serve(args)

    store = CredentialStore(db_url=get_settings().database_url)
    try:
        if args.command == "purge":
            return _cmd_purge(store)
        return _cmd_revoke_sessions(store, args.email)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
