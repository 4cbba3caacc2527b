from __future__ import annotations

import argparse
import base64
import secrets
from datetime import timedelta

from tubebridge.config import ENCRYPTION_KEY_BYTES, load_settings
from tubebridge.repositories.session_repository import SessionRepository


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect and maintain TubeBridge session records.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="List sessions without their secrets.")
    subparsers.add_parser("purge", help="Delete every expired session once.")
    subparsers.add_parser(
        "generate-key",
        help="Print a fresh value for TUBEBRIDGE_ENCRYPTION_KEY.",
    )
    return parser.parse_args(argv)


def _print_session_list(repository: SessionRepository) -> None:
    summaries = repository.list_sessions()
    if not summaries:
        print("No sessions found.")
        return

    print("session_id\tcreated_at\tlast_accessed_at\texpires_at\tconfig_size")
    for summary in summaries:
        print(
            "\t".join(
                [
                    summary.session_id,
                    summary.created_at,
                    summary.last_accessed_at,
                    summary.expires_at,
                    str(summary.config_size),
                ]
            )
        )


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    if args.command == "generate-key":
        print(base64.b64encode(secrets.token_bytes(ENCRYPTION_KEY_BYTES)).decode("ascii"))
        return

    settings = load_settings()
    repository = SessionRepository(
        settings.sessions_dir,
        expiry=timedelta(days=settings.session_expiry_days),
    )

    if args.command == "purge":
        purged = repository.purge_expired()
        print(f"Purged {purged} expired session(s).")
        return

    _print_session_list(repository)


if __name__ == "__main__":
    main()
