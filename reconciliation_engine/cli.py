"""
Reconciliation Engine - Command Line Interface.

============================================================
USAGE
============================================================
    python -m reconciliation_engine.cli reconcile --lookback-hours 24
    python -m reconciliation_engine.cli emergency-sync --user-id u1
    python -m reconciliation_engine.cli analyze
    python -m reconciliation_engine.cli audit --lookback-hours 720
    python -m reconciliation_engine.cli schedule

Credentials and the database URL come from the environment
(BYBIT_API_KEY, BYBIT_API_SECRET, DATABASE_URL, ...).

============================================================
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import List, Optional

from .audit import LedgerAuditor
from .config import EngineConfig
from .errors import ReconciliationEngineError, ReconciliationFetchError
from .event_log import EventLogger
from .gateway.bybit import BybitGateway
from .gateway.resilient import ResilientGateway
from .ledger.engine import create_ledger_engine, create_session_factory, init_models
from .ledger.store import SqlEventSink, SqlLedgerStore
from .orchestrator import ReconciliationOrchestrator
from .resilience import CircuitBreakerRegistry, RetryPolicy
from .scheduler import ReconciliationScheduler


logger = logging.getLogger(__name__)


COMMANDS = ("reconcile", "emergency-sync", "analyze", "audit", "schedule")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """
    Create the CLI argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="reconciliation-engine",
        description="Reconcile the local trade ledger against Bybit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Regular pass over the last 72 hours
  python -m reconciliation_engine.cli reconcile

  # Full sync, no time filters
  python -m reconciliation_engine.cli emergency-sync

  # Report discrepancies without writing
  python -m reconciliation_engine.cli analyze --lookback-hours 24

  # Periodic passes until interrupted
  python -m reconciliation_engine.cli schedule
        """,
    )

    parser.add_argument(
        "command",
        choices=COMMANDS,
        help="Operation to run",
    )

    # --------------------------------------------------------
    # WINDOW
    # --------------------------------------------------------
    window_group = parser.add_argument_group("Window")

    window_group.add_argument(
        "--lookback-hours",
        type=float,
        default=None,
        help="Lookback window in hours (default: RECONCILIATION_LOOKBACK_HOURS or 72)",
    )

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------
    account_group = parser.add_argument_group("Account")

    account_group.add_argument(
        "--user-id",
        type=str,
        default=None,
        help="Ledger owner (default: RECONCILIATION_USER_ID)",
    )

    account_group.add_argument(
        "--testnet",
        action="store_true",
        default=None,
        help="Use the Bybit testnet",
    )

    account_group.add_argument(
        "--mainnet",
        dest="testnet",
        action="store_false",
        help="Use Bybit mainnet",
    )

    # --------------------------------------------------------
    # LOGGING
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []
    if args.lookback_hours is not None and args.lookback_hours <= 0:
        errors.append("--lookback-hours must be positive")
    if args.user_id is not None and not args.user_id.strip():
        errors.append("--user-id must not be empty")
    return errors


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> EngineConfig:
    """Environment configuration with CLI overrides applied."""
    config = EngineConfig.from_env()
    if args.user_id is not None:
        config.reconciliation.user_id = args.user_id
    if args.lookback_hours is not None:
        config.reconciliation.lookback_hours = args.lookback_hours
    if args.testnet is not None:
        config.exchange.testnet = args.testnet
    return config


# ============================================================
# COMMANDS
# ============================================================

async def run_command(args: argparse.Namespace, config: EngineConfig) -> int:
    """
    Wire the engine and run one command.

    Returns:
        Exit code
    """
    engine = create_ledger_engine(config.database)
    await init_models(engine)
    session_factory = create_session_factory(engine)

    store = SqlLedgerStore(session_factory)
    events = EventLogger(config.reconciliation.user_id, [SqlEventSink(session_factory)])

    gateway = ResilientGateway(
        BybitGateway(config.exchange),
        RetryPolicy(config.retry),
        CircuitBreakerRegistry(config.circuit_breaker),
    )
    orchestrator = ReconciliationOrchestrator(gateway, store, events, config)
    lookback = timedelta(hours=config.reconciliation.lookback_hours)

    try:
        async with gateway:
            if args.command in ("reconcile", "emergency-sync"):
                summary = await orchestrator.run_reconciliation(
                    lookback, emergency=args.command == "emergency-sync"
                )
                print(f"{summary.run_id}: {summary.describe()}")
                return 0 if summary.errors == 0 else 1

            if args.command == "analyze":
                report = await orchestrator.analyze(lookback)
                print(
                    f"{report.exchange_count} exchange orders, {report.local_count} local records, "
                    f"{report.matched_count} matched"
                )
                for recommendation in report.recommendations:
                    print(f"  [{recommendation.severity.value}] {recommendation.message}")
                return 1 if report.has_critical else 0

            if args.command == "audit":
                auditor = LedgerAuditor(store, events, orchestrator.user_id)
                audit_lookback = lookback if args.lookback_hours is not None else None
                audit_report = await auditor.audit(audit_lookback)
                print(
                    f"{audit_report.total_records} records audited, {len(audit_report.findings)} findings "
                    f"({audit_report.critical_count} critical, {audit_report.warning_count} warning)"
                )
                for finding in audit_report.findings:
                    print(f"  [{finding.severity.value}] {finding.issue_type}: {finding.description}")
                return 1 if audit_report.critical_count else 0

            scheduler = ReconciliationScheduler(orchestrator, config.reconciliation)
            stop_event = asyncio.Event()
            _install_stop_handlers(stop_event)
            await scheduler.run(stop_event)
            return 0

    except ReconciliationFetchError as e:
        print("0 processed, fetch failed", file=sys.stderr)
        logger.error(f"Exchange fetch failed: {e}")
        return 1
    except ReconciliationEngineError as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await engine.dispose()


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = build_config(args)
    if not config.reconciliation.user_id:
        print("Error: no user id (set RECONCILIATION_USER_ID or pass --user-id)", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
