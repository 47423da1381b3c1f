"""
Bourse - Main Entry Point

A simulated single-instrument securities market with macro regulation,
intraday patterns and frozen-order settlement.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Show market status
    python main.py --status

    # Run the market (paper ledger)
    python main.py --run

    # Dry-run 500 virtual ticks of 120 seconds on a scratch copy of the market
    python main.py --simulate 500 --step 120
"""

import argparse
import asyncio
import signal
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import structlog

from bourse.core.config import bourse_config, database_config
from bourse.core.engine import BourseEngine
from bourse.ledger.paper import InMemoryCashLedger, InMemoryDemandAccount
from bourse.storage.database import Database
from bourse.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class BourseApp:
    """
    Market application.

    Wires the engine to the database and, without an external ledger, to
    in-memory paper ledgers that fund each account on first use.
    """

    def __init__(self, enable_debug: bool = False):
        self.enable_debug = enable_debug or bourse_config.system.enable_debug

        # Components
        self.database: Optional[Database] = None
        self.ledger: Optional[InMemoryCashLedger] = None
        self.engine: Optional[BourseEngine] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Initialize all components based on configuration."""
        logger.info(
            "app.initializing",
            instrument=bourse_config.market.instrument_id,
            debug=self.enable_debug
        )

        ensure_database_dir(database_config.database_url)
        self.database = Database(instrument_id=bourse_config.market.instrument_id)
        await self.database.initialize()
        logger.info("app.database_initialized")

        self.ledger = InMemoryCashLedger(
            opening_balance=Decimal(str(bourse_config.paper.paper_initial_balance))
        )
        self.engine = BourseEngine(
            database=self.database,
            ledger=self.ledger,
            demand_account=InMemoryDemandAccount(),
            config=bourse_config.market,
            enable_debug=self.enable_debug
        )
        await self.engine.load_state()

        self._initialized = True
        logger.info("app.initialized")

    async def run(self):
        """Run the market until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.engine.start()
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error("app.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("app.shutting_down")

        if self.engine:
            await self.engine.stop()

        if self.database:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()


def ensure_database_dir(database_url: str):
    """Create the parent directory of a file-based SQLite database."""
    for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
        if database_url.startswith(prefix):
            path = database_url[len(prefix):]
            if path and path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            return


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = bourse_config.validate_configuration()
    market = bourse_config.market

    warnings = []
    if market.market_status != "auto":
        warnings.append(f"Market status is forced to '{market.market_status}'")
    if not market.freeze_enabled:
        warnings.append("Settlement freeze is disabled; orders settle immediately")
    if bourse_config.system.enable_debug:
        warnings.append("Debug commands are enabled")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "instrument": f"{market.instrument_name} ({market.instrument_id})",
        "trading_hours": f"{market.open_hour}:00-{market.close_hour}:00 {market.market_timezone}",
        "database_url": database_config.database_url,
    }


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("           BOURSE - MARKET STATUS")
    print("=" * 60)

    print(f"\nMarket Open: {'YES' if status.get('market_open') else 'NO'}")
    print(f"Override: {status.get('override', 'auto')}")
    if status.get("next_open"):
        print(f"Next Open: {status['next_open']}")
    print(f"Price: {status.get('price', 'N/A')}")
    print(f"Daily Open: {status.get('daily_open_price') or 'N/A'}")

    macro = status.get("macro")
    if macro:
        print("\nRegulation Cycle:")
        print(f"   Mode: {macro['mode']}")
        print(f"   Start: {macro['start_price']} -> Target: {macro['target_price']}")
        print(f"   Ends: {macro['end_time']} ({macro['progress']:.1%} elapsed)")
    else:
        print("\nRegulation Cycle: none (created on the next tick)")

    pattern = status.get("pattern")
    if pattern:
        print(f"\nPattern: {pattern['id']} until {pattern['next_switch']}")

    print(f"\nPending Orders: {status.get('pending_orders', 0)}")
    print("\n" + "=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Bourse - simulated single-instrument securities market"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--status", action="store_true", help="Show market status and exit"
    )
    parser.add_argument(
        "--run", action="store_true", help="Run the market tick loop"
    )
    parser.add_argument(
        "--simulate", type=int, metavar="TICKS",
        help="Run TICKS virtual-time ticks on a scratch copy of the market and exit"
    )
    parser.add_argument(
        "--step", type=float, default=120.0,
        help="Virtual seconds per simulated tick (default: 120)"
    )

    args = parser.parse_args()

    setup_logging()

    config_check = check_configuration()
    for warning in config_check["warnings"]:
        print(f"! {warning}")

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration issues:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nInstrument: {config_check['instrument']}")
        print(f"Trading Hours: {config_check['trading_hours']}")
        print(f"Database: {config_check['database_url']}")
        print("\n" + "=" * 60)
        return

    if args.init_db:
        print("\nInitializing database...")
        ensure_database_dir(database_config.database_url)
        db = Database(instrument_id=bourse_config.market.instrument_id)
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    app = BourseApp(enable_debug=args.simulate is not None)
    await app.initialize()

    if args.status:
        result = await app.engine.get_status()
        print_status(result.payload)
        await app.shutdown()
        return

    if args.simulate is not None:
        result = await app.engine.simulate(args.simulate, args.step)
        report = result.payload
        print(f"\nSimulated {report.ticks} ticks of {report.step_seconds:.0f}s")
        print(f"Start: {report.start_price}  End: {report.end_price}  Drift: {report.drift}")
        print(f"High: {report.high}  Low: {report.low}  Near limit: {report.clamp_hits}")
        await app.shutdown()
        return

    if args.run:
        await app.run()
        return

    parser.print_help()
    await app.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)
