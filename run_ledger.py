#!/usr/bin/env python3
"""
Operator CLI for the crowdfunding ledger.

Commands:
  stats        - Show row counts per collection
  reconcile    - Recompute startup funding from investments
  resolve      - Resolve an id (or id prefix) to an entity
  delete-user  - Delete a user and everything they own

Examples:
  # Counts in the configured backend
  python run_ledger.py stats

  # Repair every startup's funding total
  python run_ledger.py reconcile

  # Audit one startup without writing
  python run_ledger.py reconcile --startup 65f1c2 --dry-run

  # What does this prefix point at?
  python run_ledger.py resolve startups 65f1c2

  # Delete a user (shows what would go without --yes)
  python run_ledger.py delete-user 65f1c2a9e4b0d3c8a1f0e2b7 --yes
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from dotenv import load_dotenv

from services.settings import LedgerConfig
from storage.factory import open_ledger_store
from storage.models import EntityKind
from utils.errors import LedgerError
from workflows.funding import FundingAggregator


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(verbose: bool = False):
    """Configure logging for the ledger CLI"""
    level = logging.DEBUG if verbose else logging.INFO

    # Format with colors if terminal supports it
    if sys.stdout.isatty():
        colors = {
            "DEBUG": "\033[36m",
            "INFO": "\033[32m",
            "WARNING": "\033[33m",
            "ERROR": "\033[31m",
            "CRITICAL": "\033[35m",
            "RESET": "\033[0m",
        }

        class ColoredFormatter(logging.Formatter):
            def format(self, record):
                levelname = record.levelname
                if levelname in colors:
                    record.levelname = f"{colors[levelname]}{levelname}{colors['RESET']}"
                return super().format(record)

        formatter = ColoredFormatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=[handler])

    # Driver chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def config_from_args(args) -> LedgerConfig:
    """Environment config with command-line overrides applied."""
    config = LedgerConfig.from_env()
    overrides = {}
    if getattr(args, "backend", None):
        overrides["backend"] = args.backend
    if getattr(args, "db_path", None):
        overrides["db_path"] = args.db_path
    if getattr(args, "prefix_policy", None):
        overrides["prefix_policy"] = args.prefix_policy
    return dataclasses.replace(config, **overrides) if overrides else config


def _describe(entity) -> str:
    return json.dumps(dataclasses.asdict(entity), default=str, indent=2)


# =============================================================================
# COMMAND HANDLERS
# =============================================================================

async def cmd_stats(args) -> int:
    """Show row counts"""
    print("=" * 70)
    print("LEDGER - STATISTICS")
    print("=" * 70)

    async with open_ledger_store(config_from_args(args)) as store:
        stats = await store.get_stats()
        print(f"Backend: {store.backend_name}")
        print()
        for collection, count in stats.items():
            print(f"  {collection}: {count}")

    return 0


async def cmd_reconcile(args) -> int:
    """Recompute funding totals"""
    print("=" * 70)
    print("LEDGER - FUNDING RECONCILIATION" + (" (DRY RUN)" if args.dry_run else ""))
    print("=" * 70)

    async with open_ledger_store(config_from_args(args)) as store:
        aggregator = FundingAggregator(store)

        if args.startup:
            if args.dry_run:
                reports = [await aggregator.audit(args.startup)]
            else:
                reports = [await aggregator.reconcile(args.startup)]
        elif args.dry_run:
            reports = [await aggregator.audit(s.id) for s in await store.list_startups()]
            reports = [r for r in reports if r.has_drift]
        else:
            reports = await aggregator.reconcile_all()

        drifted = [r for r in reports if r.has_drift]
        for report in reports:
            marker = "DRIFT" if report.has_drift else "ok"
            print(
                f"  [{marker}] startup {report.startup_id}: "
                f"stored={report.stored} computed={report.computed} drift={report.drift}"
            )

        print()
        print(f"Startups with drift: {len(drifted)}")

    return 0


async def cmd_resolve(args) -> int:
    """Resolve an id or id prefix"""
    kind = EntityKind(args.kind)

    async with open_ledger_store(config_from_args(args)) as store:
        entity = await store.get_by_id(kind, args.id)

    if entity is None:
        print(f"{kind.label} not found: {args.id}")
        return 1

    print(_describe(entity))
    return 0


async def cmd_delete_user(args) -> int:
    """Delete a user with their startup and investments"""
    async with open_ledger_store(config_from_args(args)) as store:
        user = await store.get_user(args.user_id)
        if user is None:
            print(f"User not found: {args.user_id}")
            return 1

        startup = await store.get_startup_by_user(user.id)
        investments = await store.list_user_investments(user.id)

        print(f"User:        {user.id} ({user.username}, {user.role.value})")
        print(f"Startup:     {startup.id + ' ' + startup.name if startup else '-'}")
        print(f"Investments: {len(investments)}")

        if not args.yes:
            print()
            print("Nothing deleted. Re-run with --yes to delete.")
            return 0

        await store.delete_user(user.id)
        print()
        print(f"Deleted user {user.id}")

    return 0


# =============================================================================
# MAIN
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""

    parser = argparse.ArgumentParser(
        description="Crowdfunding ledger operator tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  LEDGER_BACKEND             - sqlite | mongodb (default: sqlite)
  LEDGER_DB_PATH             - SQLite database path (default: :memory:)
  MONGODB_URI                - MongoDB connection string
  MONGODB_DATABASE           - MongoDB database name (default: crowdfund)
  LEDGER_PREFIX_POLICY       - reject | first (default: reject)
  WALLET_RPC_URL             - JSON-RPC endpoint for wallet transfers
        """,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--backend",
        choices=["sqlite", "mongodb"],
        help="Override LEDGER_BACKEND",
    )
    parser.add_argument(
        "--db-path",
        type=str,
        help="Override LEDGER_DB_PATH",
    )
    parser.add_argument(
        "--prefix-policy",
        choices=["reject", "first"],
        help="Override LEDGER_PREFIX_POLICY",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("stats", help="Show row counts per collection")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Recompute startup funding from investments",
    )
    reconcile_parser.add_argument(
        "--startup",
        type=str,
        help="Only this startup id",
    )
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report drift without writing",
    )

    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Resolve an id or id prefix",
    )
    resolve_parser.add_argument(
        "kind",
        choices=[kind.value for kind in EntityKind],
    )
    resolve_parser.add_argument("id")

    delete_parser = subparsers.add_parser(
        "delete-user",
        help="Delete a user with their startup and investments",
    )
    delete_parser.add_argument("user_id")
    delete_parser.add_argument(
        "--yes",
        action="store_true",
        help="Actually delete (default is to only show what would be deleted)",
    )

    return parser


COMMANDS = {
    "stats": cmd_stats,
    "reconcile": cmd_reconcile,
    "resolve": cmd_resolve,
    "delete-user": cmd_delete_user,
}


async def main(argv=None):
    """Main entry point"""
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        exit_code = await COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except LedgerError as e:
        print(f"\nError: {e}")
        sys.exit(2)
    except Exception as e:
        logging.exception("Fatal error")
        print(f"\nFatal error: {e}")
        sys.exit(1)

    if exit_code != 0:
        sys.exit(exit_code)


def run():
    """Console script entry point"""
    asyncio.run(main())


if __name__ == "__main__":
    run()
