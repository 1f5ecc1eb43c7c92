"""
cli.py
------

Command-line entry point.  Every subcommand builds the settings once, opens
the store and delegates to the sync engine, the store or the ledger
renderer.

Usage:

    clerk sync
    clerk print [--begin 2021-09-01] [--until 2021-09-30]
    clerk accounts [balance]
    clerk link token | exchange PUBLIC_TOKEN [--alias NAME] | status | delete ITEM_ID
    clerk recategorize [--include-posted]
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from typing import List, Optional

from clerk import database
from clerk.ledger import render_ledger
from clerk.plaid_integration import PlaidClient, UpstreamError
from clerk.rules import RuleSet, ScriptLoadError
from clerk.settings import ConfigError, Settings
from clerk.sync import SyncEngine, recategorize

logger = logging.getLogger(__name__)


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clerk",
        description="Pull transactions from Plaid and generate Ledger records from them.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="Pull new, modified and removed transactions for every link")

    print_cmd = sub.add_parser("print", help="Print synced transactions as Ledger records")
    print_cmd.add_argument("--begin", type=_date, help="First day to print (inclusive)")
    print_cmd.add_argument("--until", type=_date, help="Last day to print (inclusive)")

    accounts = sub.add_parser("accounts", help="List tracked accounts")
    accounts_sub = accounts.add_subparsers(dest="accounts_command")
    accounts_sub.add_parser("balance", help="Fetch live balances from Plaid")

    link = sub.add_parser("link", help="Manage Plaid links")
    link_sub = link.add_subparsers(dest="link_command", required=True)
    link_sub.add_parser("token", help="Create a Link token for Plaid Link")
    exchange = link_sub.add_parser("exchange", help="Save a link from a Plaid Link public token")
    exchange.add_argument("public_token")
    exchange.add_argument("--alias", help="Name to identify the link by")
    link_sub.add_parser("status", help="Show every link and its state")
    delete = link_sub.add_parser("delete", help="Delete a link and its accounts")
    delete.add_argument("item_id")

    recat = sub.add_parser("recategorize", help="Re-run the rules over stored transactions")
    recat.add_argument("--include-posted", action="store_true",
                       help="Also regenerate postings of settled transactions")
    return parser


def _open_store(settings: Settings) -> database.Store:
    store = database.Store(settings.database_url)
    store.init_db()
    return store


def cmd_sync(settings: Settings, store: database.Store) -> int:
    rules = RuleSet.from_settings(settings)
    engine = SyncEngine(store, PlaidClient(settings), rules, settings)
    status = 0
    for report in engine.sync_all():
        print(f"{report.item_id}: pages={report.pages} added={report.added} "
              f"modified={report.modified} removed={report.removed} "
              f"categorization_failures={report.categorization_failures}")
        if report.failed:
            print(f"  failed records: {', '.join(report.failed)}")
        if report.requires_verification:
            print("  link requires verification, run `clerk link token` to repair it")
        elif report.error:
            print(f"  error: {report.error}")
            if report.persistence_failed:
                status = 1
    return status


def cmd_print(settings: Settings, store: database.Store, begin: Optional[date], until: Optional[date]) -> int:
    with store.session() as db:
        sys.stdout.write(render_ledger(db, begin, until))
    return 0


def cmd_accounts(settings: Settings, store: database.Store) -> int:
    with store.session() as db:
        print("Link\tAccount\tAccount ID\tType")
        for link in database.list_links(db):
            for account in database.accounts_by_item(db, link.id):
                print(f"{link.alias}\t{account.name}\t{account.id}\t{account.type}")
    return 0


def cmd_balances(settings: Settings, store: database.Store) -> int:
    client = PlaidClient(settings)
    with store.session() as db:
        links = database.list_links(db)
    print("Name\tType\tAvailable\tCurrent")
    for link in links:
        for account in client.balances(link.access_token):
            print(f"{account['name']}\t{account['type']}\t"
                  f"{account['available'] or 0:.2f} {account['currency']}\t"
                  f"{account['current'] or 0:.2f} {account['currency']}")
    return 0


def cmd_link(settings: Settings, store: database.Store, args) -> int:
    if args.link_command == "token":
        print(PlaidClient(settings).create_link_token("clerk-user"))
    elif args.link_command == "exchange":
        client = PlaidClient(settings)
        item_id, access_token = client.exchange_public_token(args.public_token)
        with store.transaction() as db:
            link = database.upsert_link(db, item_id, access_token, alias=args.alias)
            for account in client.accounts(access_token):
                database.upsert_account(db, item_id, account["account_id"], account["name"],
                                        account["type"], account.get("mask"))
            print(f"Linked {link.alias} ({item_id})")
    elif args.link_command == "status":
        with store.session() as db:
            print("Name\tItem ID\tState\tLast synced")
            for link in database.list_links(db):
                print(f"{link.alias}\t{link.id}\t{link.link_state}\t{link.last_synced_at or '-'}")
    elif args.link_command == "delete":
        with store.transaction() as db:
            link = database.delete_link(db, args.item_id)
        if link is None:
            print(f"No link with item id {args.item_id}", file=sys.stderr)
            return 1
        print(f"Deleted link {args.item_id}")
    return 0


def cmd_recategorize(settings: Settings, store: database.Store, include_posted: bool) -> int:
    report = recategorize(store, RuleSet.from_settings(settings), include_posted=include_posted)
    print(f"updated={report.updated} skipped={report.skipped} "
          f"categorization_failures={report.categorization_failures}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = Settings.from_env(args.env_file)
        store = _open_store(settings)

        if args.command == "sync":
            return cmd_sync(settings, store)
        if args.command == "print":
            return cmd_print(settings, store, args.begin, args.until)
        if args.command == "accounts":
            if args.accounts_command == "balance":
                return cmd_balances(settings, store)
            return cmd_accounts(settings, store)
        if args.command == "link":
            return cmd_link(settings, store, args)
        if args.command == "recategorize":
            return cmd_recategorize(settings, store, args.include_posted)
    except (ConfigError, ScriptLoadError, UpstreamError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
