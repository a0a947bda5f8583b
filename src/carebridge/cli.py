"""Summary: Command-line interface for CareBridge.

Importance: Provides local administration of accounts, profiles, keys, and the API server.
Alternatives: Build an admin web UI first.
"""

from __future__ import annotations

import argparse
import logging
import uuid

from carebridge.app import build_context
from carebridge.completeness import completion_gaps
from carebridge.config import AppConfig
from carebridge.models import Profile, ProfileType


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="CareBridge CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")

    create_account = subparsers.add_parser("create-account", help="Create an account")
    create_account.add_argument("email", type=str)
    create_account.add_argument("--name", type=str, default="")

    add_profile = subparsers.add_parser("add-profile", help="Add a profile to an account")
    add_profile.add_argument("account_id", type=int)
    add_profile.add_argument("type", choices=[item.value for item in ProfileType])
    add_profile.add_argument("display_name", type=str)
    add_profile.add_argument("--city", type=str, default=None)
    add_profile.add_argument("--state", type=str, default=None)
    add_profile.add_argument("--care-type", action="append", default=[], dest="care_types")
    add_profile.add_argument("--description", type=str, default=None)
    add_profile.add_argument("--phone", type=str, default=None)
    add_profile.add_argument("--email", type=str, default=None)
    add_profile.add_argument("--website", type=str, default=None)
    add_profile.add_argument("--activate", action="store_true")

    create_key = subparsers.add_parser("create-api-key", help="Issue an API key")
    create_key.add_argument("account_id", type=int)
    create_key.add_argument("--label", type=str, default=None)

    list_connections = subparsers.add_parser("list-connections", help="List an account's connections")
    list_connections.add_argument("account_id", type=int)
    list_connections.add_argument("--include-hidden", action="store_true")

    membership = subparsers.add_parser("membership", help="Show membership and free quota")
    membership.add_argument("account_id", type=int)

    subparsers.add_parser("serve", help="Run the HTTP API")
    return parser


def main() -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives local setup and inspection without the HTTP API.
    Alternatives: Invoke services via the HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args()
    config = AppConfig.from_env()

    if args.command == "serve":
        import uvicorn

        from carebridge.api import create_app

        uvicorn.run(create_app(config), host=config.api_host, port=config.api_port)
        return

    context = build_context(config)

    if args.command == "init-db":
        print(f"Initialized database at {config.db_path}.")
        return

    if args.command == "create-account":
        account_id = context.accounts.create_account(args.email, args.name or args.email)
        print(f"Account {account_id} ({args.email}).")
        return

    if args.command == "add-profile":
        profile = Profile(
            id=str(uuid.uuid4()),
            type=ProfileType(args.type),
            display_name=args.display_name,
            city=args.city,
            state=args.state,
            care_types=frozenset(args.care_types),
            description=args.description,
            phone=args.phone,
            email=args.email,
            website=args.website,
        )
        profile_id = context.accounts.add_profile(args.account_id, profile, make_active=args.activate)
        print(f"Created profile {profile_id}.")
        gaps = list(completion_gaps(profile))
        if gaps:
            print(f"Profile is not shareable yet. Missing: {', '.join(gaps)}")
        return

    if args.command == "create-api-key":
        key_id, token = context.api_keys.create_api_key(args.account_id, label=args.label)
        print(f"API key {key_id}: {token}")
        return

    if args.command == "list-connections":
        service = context.connections_for(args.account_id)
        for view in service.list_connections(include_hidden=args.include_hidden):
            connection = view.connection
            print(
                f"{connection.id}: {connection.type.value} {connection.from_profile_id} -> "
                f"{connection.to_profile_id} [{view.display_status}]"
            )
        return

    if args.command == "membership":
        summary = context.memberships.summary(args.account_id)
        remaining = summary["free_remaining"]
        print(
            f"Status: {summary['status']} Plan: {summary['plan']} "
            f"Free remaining: {'unlimited' if remaining is None else remaining}"
        )
        return


if __name__ == "__main__":
    main()
