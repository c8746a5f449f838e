"""
Command-line interface for the capital ledger.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from ..bootstrap import BootContext, bootstrap, shutdown
from ..core.config_manager import ConfigManager
from ..core.errors import CapitalLedgerError, HybridStateBlocked, StartupAborted
from ..core.logging_utils import setup_logging
from ..core.money import format_usd
from ..state.store import StateStore


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="capital-ledger",
        description="Capital Ledger - run-scoped capital accounting and crash recovery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: config/default.yaml or $CAPITAL_LEDGER_CONFIG)",
    )

    parser.add_argument(
        "--db",
        type=str,
        help="SQLite database path (overrides database.path)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override logging level",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    boot = subparsers.add_parser("boot", help="Run the boot sequence, print the reconciliation summary and exit")
    boot.add_argument(
        "--capital",
        type=float,
        help="Fresh starting capital (starts a new lineage; omit to continue the previous run)",
    )

    subparsers.add_parser("status", help="Show persisted capital state without modifying anything")

    audit = subparsers.add_parser("audit", help="Boot, then run the periodic PnL audit until interrupted")
    audit.add_argument("--capital", type=float, help="Fresh starting capital")
    audit.add_argument("--interval", type=float, help="Seconds between audits (overrides config)")
    audit.add_argument("--iterations", type=int, help="Stop after this many audits")

    return parser


def validate_arguments(args: argparse.Namespace) -> None:
    """Validate command line arguments.

    Args:
        args: Parsed command line arguments
    """
    if args.config and not Path(args.config).exists():
        print(f"Error: Configuration file not found: {args.config}")
        sys.exit(1)

    capital = getattr(args, "capital", None)
    if capital is not None and capital <= 0:
        print("Error: Capital must be positive")
        sys.exit(1)

    interval = getattr(args, "interval", None)
    if interval is not None and interval <= 0:
        print("Error: Interval must be positive")
        sys.exit(1)


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Load configuration and apply command line overrides."""
    config = ConfigManager(args.config)
    if args.db:
        config.set("database.path", args.db)
    if args.log_level:
        config.set("logging.level", args.log_level)

    logging_config = config.get_validated_config().logging
    setup_logging(level=logging_config.level, log_file=logging_config.file)
    return config


def print_boot_summary(context: BootContext) -> None:
    """Print the boot outcome."""
    summary = context.summary
    state = context.ledger.get_state()

    print("\n" + "=" * 60)
    print("CAPITAL LEDGER - BOOT SUMMARY")
    print("=" * 60)
    print(f"Run:                {context.run_id}")
    print(f"Mode:               {context.validation.mode}")
    print(f"Parent run:         {context.epoch.parent_run_id or '-'}")
    print(f"Starting capital:   {format_usd(context.epoch.starting_capital_usd)}")
    print(f"Positions recovered: {summary.positions_recovered} (trades {summary.trades_recovered})")
    print(f"Orphaned locks:     {summary.orphaned_locks_cleared}")
    print(f"Capital released:   {format_usd(summary.capital_released_usd)}")
    print(f"Total capital:      {format_usd(state.total_capital_usd)}")
    print(f"Deployed:           {format_usd(state.deployed_usd)}")
    print(f"Available:          {format_usd(state.available_usd)}")
    print(f"Locked:             {format_usd(state.locked_usd)}")
    print("=" * 60 + "\n")


def print_status(store: StateStore) -> None:
    """Print persisted state (read-only)."""
    capital_state = store.get_capital_state()
    epoch = store.get_latest_epoch()
    open_positions = store.get_open_positions()

    print("\n" + "=" * 60)
    print("CAPITAL LEDGER - STATUS")
    print("=" * 60)
    if epoch:
        print(f"Latest run:       {epoch['run_id']} ({epoch['status']})")
        print(f"Started:          {epoch['started_at']}")
        print(f"Starting capital: {format_usd(epoch['starting_capital'])}")
    else:
        print("Latest run:       none")
    if capital_state:
        print(f"Available:        {format_usd(capital_state['available_balance'])}")
        print(f"Locked:           {format_usd(capital_state['locked_balance'])}")
        print(f"Realized PnL:     {format_usd(capital_state['total_realized_pnl'])}")
        print(f"Updated:          {capital_state['updated_at']}")
    else:
        print("Capital state:    not initialized")
    print(f"Open positions:   {len(open_positions)}")
    print(f"Capital locks:    {format_usd(store.sum_capital_locks())}")
    print("=" * 60 + "\n")


async def run_audit(context: BootContext, interval: Optional[float], iterations: Optional[int]) -> int:
    """Run the periodic PnL audit until interrupted or the iteration limit."""
    return await context.pnl_service.run_periodic(interval_sec=interval, max_iterations=iterations)


def main(argv: Optional[list] = None) -> None:
    """Main CLI entry point."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    validate_arguments(args)

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.command == "status":
        with StateStore(config.get_validated_config().database.path) as store:
            print_status(store)
        return

    try:
        context = bootstrap(config, capital=args.capital)
    except HybridStateBlocked as e:
        print(f"\n❌ Startup blocked: {e}")
        sys.exit(1)
    except StartupAborted as e:
        print(f"\n❌ Startup aborted: {e.summary}")
        sys.exit(1)

    print_boot_summary(context)

    try:
        if args.command == "audit":
            asyncio.run(run_audit(context, args.interval, args.iterations))
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")
    except CapitalLedgerError as e:
        print(f"\n❌ Fatal error: {e}")
        sys.exit(1)
    finally:
        shutdown(context)


if __name__ == "__main__":
    main()
