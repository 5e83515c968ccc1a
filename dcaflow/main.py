"""DCAFlow main entrypoint."""

import argparse
import asyncio
import os
import signal
import sys
from collections.abc import Sequence
from decimal import Decimal
from pathlib import Path

from dcaflow import __version__
from dcaflow.config import DEFAULT_CONFIG_PATH, Settings, SettingsStore
from dcaflow.core.cycle import CycleSupervisor, build_ladder
from dcaflow.core.errors import DCAFlowError
from dcaflow.core.ledger import FillLedger
from dcaflow.core.logging import get_logger, setup_logging
from dcaflow.core.models import OrderLadder, to_decimal
from dcaflow.core.quantizer import PrecisionTable, Quantizer
from dcaflow.core.retry import RetryExecutor
from dcaflow.exchange import ExchangeAdapter, get_exchange_adapter
from dcaflow.exchange.orders import OrderLifecycle

logger = get_logger(__name__)


BANNER = """
  ┌──────────────────────────────────────────┐
  │  DCAFLOW  incremental DCA ladder trader  │
  └──────────────────────────────────────────┘
"""


class DCAFlow:
    """Main application class."""

    def __init__(self, store: SettingsStore, adapter: ExchangeAdapter | None = None):
        """Initialize the application.

        Args:
            store: Settings store shared by every cycle
            adapter: Exchange adapter, built from the settings if None
        """
        self.store = store
        self.adapter = adapter or get_exchange_adapter(store.settings)
        self.supervisor: CycleSupervisor | None = None

    @property
    def settings(self) -> Settings:
        """Current settings."""
        return self.store.settings

    async def startup(self) -> None:
        """Connect to the exchange."""
        settings = self.settings
        print(BANNER)
        print(f"  Version: {__version__}")
        print(f"  Mode: {settings.system.mode.upper()}")
        print(f"  Exchange: {settings.system.exchange}")
        print(f"  Pair: {settings.symbol_base}/{settings.system.quote_currency}")
        print()

        if not await self.adapter.connect():
            raise DCAFlowError(f"Failed to connect to {settings.system.exchange}")
        logger.info("dcaflow_started", mode=settings.system.mode, version=__version__)

    async def shutdown(self) -> None:
        """Disconnect from the exchange."""
        await self.adapter.disconnect()
        logger.info("dcaflow_stopped")

    async def run(self, once: bool = False) -> None:
        """Run the supervisor until it exits."""
        self.supervisor = CycleSupervisor(
            self.adapter, self.store, max_cycles=1 if once else None
        )
        try:
            await self.startup()
            await self.supervisor.run()
        except asyncio.CancelledError:
            logger.info("received_cancel")
        finally:
            await self.shutdown()

    async def plan(self, price: Decimal | None = None) -> OrderLadder:
        """Plan the configured ladder without submitting anything.

        Uses the live price unless ``price`` is given.
        """
        settings = self.settings
        quantizer = Quantizer(PrecisionTable.from_settings(settings))
        symbol = self.adapter.symbol_for(settings.symbol_base, settings.system.quote_currency)

        if price is None:
            await self.startup()
            try:
                ticker = await RetryExecutor().call(self.adapter.get_ticker, symbol)
            finally:
                await self.shutdown()
            price = ticker.last_price

        ladder = build_ladder(settings, symbol, price, quantizer)
        print(f"  Ladder for {symbol} at {price}")
        print("  " + "─" * 44)
        for index, order in enumerate(ladder):
            print(
                f"  {index + 1:>3}  {order.price:>14}  x {order.quantity:<12}"
                f"  = {order.amount:>10}"
            )
        print("  " + "─" * 44)
        print(f"  Total: {ladder.total_amount} of {ladder.requested_amount}")
        return ladder

    async def balances(self) -> None:
        """Log the account balance table."""
        settings = self.settings
        await self.startup()
        try:
            lifecycle = OrderLifecycle(
                self.adapter,
                RetryExecutor(),
                Quantizer(PrecisionTable.from_settings(settings)),
                FillLedger(),
            )
            await lifecycle.describe_balances(settings.system.quote_currency)
        finally:
            await self.shutdown()

    def handle_signal(self, sig: signal.Signals) -> None:
        """Handle OS signals."""
        logger.info("received_signal", signal=sig.name)
        if self.supervisor is not None:
            self.supervisor.stop()


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(prog="dcaflow", description="Incremental DCA ladder trader")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run trading cycles")
    run_parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    run_parser.add_argument("--once", action="store_true", help="Stop after one cycle")

    plan_parser = subparsers.add_parser("plan", help="Print the buy ladder without trading")
    plan_parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    plan_parser.add_argument("--price", type=str, default=None, help="Plan at this price")

    balances_parser = subparsers.add_parser("balances", help="Show account balances")
    balances_parser.add_argument("--config", type=Path, default=None, help="JSON config file")

    return parser


def _config_path(arg: Path | None) -> Path | None:
    if arg is not None:
        return arg
    if os.environ.get("DCAFLOW_CONFIG"):
        return Path(os.environ["DCAFLOW_CONFIG"])
    return DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None


async def async_main(args: argparse.Namespace, store: SettingsStore) -> None:
    """Async main function."""
    app = DCAFlow(store)

    if args.command == "plan":
        price = None if args.price is None else to_decimal(args.price)
        await app.plan(price)
        return
    if args.command == "balances":
        await app.balances()
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: app.handle_signal(s))

    await app.run(once=args.once)


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        store = SettingsStore(path=_config_path(args.config))
    except DCAFlowError as e:
        print(f"dcaflow: {e}", file=sys.stderr)
        return 2

    system = store.settings.system
    setup_logging(level=system.log_level, log_dir=system.log_dir, json_format=system.json_logs)

    try:
        asyncio.run(async_main(args, store))
    except KeyboardInterrupt:
        pass
    except DCAFlowError as e:
        logger.error("dcaflow_failed", error=str(e), error_type=type(e).__name__)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
