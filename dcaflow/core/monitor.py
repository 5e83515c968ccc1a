"""Take-profit monitor: polls a cycle's fills and exits the position on target.

One monitor runs per trading cycle. It keeps polling until the position is
sold, a no-fill restart is due, or ``stop()`` is called. Transient errors
never escape the loop.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from dcaflow.config import Settings, SettingsStore
from dcaflow.core.errors import (
    LiquidationIncomplete,
    OrderRejected,
    ReconciliationUnavailable,
    RetryExhausted,
)
from dcaflow.core.ledger import FillLedger
from dcaflow.core.logging import LogMessages, get_logger
from dcaflow.core.models import OrderSide, to_decimal
from dcaflow.exchange.orders import OrderLifecycle
from dcaflow.strategies.dca import price_increase_percentage, should_take_profit

logger = get_logger(__name__)

# Open buys priced below this fraction of the market are stale
STALE_PRICE_FACTOR = Decimal("0.99")
REQUOTE_PRICE_FACTOR = Decimal("0.99")
# A re-quote must beat the resting price by more than this factor
REQUOTE_MIN_IMPROVEMENT = Decimal("1.02")


class MonitorState(str, Enum):
    """State of a take-profit monitoring session."""

    MONITORING = "monitoring"  # Polling fills and price
    LIQUIDATING = "liquidating"  # Selling the position
    DONE = "done"  # Finished, see MonitorOutcome
    RESTARTING = "restarting"  # Handing back for a new cycle


class MonitorOutcome(str, Enum):
    """Terminal result of a monitoring session."""

    PROFIT_TAKEN = "profit_taken"
    CANCELED = "canceled"
    RESTART = "restart"


@dataclass
class MonitorSession:
    """Per-cycle monitoring state, discarded on restart."""

    script_start_time: datetime
    initial_start_time: datetime
    monitoring_attempts: int = 0
    last_order_check_time: datetime | None = None
    had_filled_orders: bool = False
    state: MonitorState = MonitorState.MONITORING
    outcome: MonitorOutcome | None = None
    requotes: int = 0
    errors: list[str] = field(default_factory=list)

    def elapsed(self, now: datetime) -> timedelta:
        """Time since the cycle started."""
        return now - self.script_start_time

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "script_start_time": self.script_start_time.isoformat(),
            "initial_start_time": self.initial_start_time.isoformat(),
            "monitoring_attempts": self.monitoring_attempts,
            "last_order_check_time": (
                self.last_order_check_time.isoformat() if self.last_order_check_time else None
            ),
            "had_filled_orders": self.had_filled_orders,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "requotes": self.requotes,
            "errors_count": len(self.errors),
        }


class TakeProfitMonitor:
    """Watches a ladder's fills and liquidates once the take-profit is reached.

    Each iteration:
    1. Reconciles the ledger against order history since the cycle start
    2. Restarts the cycle if nothing filled for too long (when enabled)
    3. Re-quotes stale open buys on a coarser interval
    4. Evaluates the take-profit and liquidates on trigger

    Settings are read from the store once per iteration and reloaded every
    ``advanced.config_reload_every`` iterations.

    Example:
        monitor = TakeProfitMonitor("SOL/USDC", "SOL", lifecycle, ledger, store)
        outcome = await monitor.run()
    """

    def __init__(
        self,
        symbol: str,
        asset: str,
        lifecycle: OrderLifecycle,
        ledger: FillLedger,
        store: SettingsStore,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cycle_start: datetime | None = None,
        initial_start_time: datetime | None = None,
    ):
        """Initialize the monitor.

        Args:
            symbol: Trading pair (e.g. "SOL/USDC")
            asset: Base asset of the position
            lifecycle: Order operations of the current cycle
            ledger: Fill ledger of the current cycle
            store: Settings store, read once per iteration
            clock: Returns the current time (defaults to UTC now)
            sleep: Awaitable sleep function (injectable for tests)
            cycle_start: Reconciliation cutoff (defaults to now)
            initial_start_time: When the process started its first cycle
        """
        self.symbol = symbol
        self.asset = asset
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._stop_requested = False

        start = cycle_start or self._clock()
        self._session = MonitorSession(
            script_start_time=start,
            initial_start_time=initial_start_time or start,
        )

    @property
    def session(self) -> MonitorSession:
        """Get the session state (read-only use)."""
        return self._session

    @property
    def state(self) -> MonitorState:
        """Get the current state."""
        return self._session.state

    def stop(self) -> None:
        """Request a cooperative stop; the session ends as canceled."""
        if not self._stop_requested:
            self._stop_requested = True
            logger.info("monitor_stop_requested", symbol=self.symbol)

    async def reconcile(self) -> bool:
        """Fold order history since the cycle start into the ledger.

        Falls back to the known ledger state when history is unavailable.

        Returns:
            Whether the ledger holds any fill
        """
        try:
            history = await self.lifecycle.fetch_order_history(self.symbol)
        except ReconciliationUnavailable as e:
            logger.warning("reconciliation_unavailable", symbol=self.symbol, error=str(e))
            has_fills = self.ledger.has_fills
        else:
            has_fills = self.ledger.reconcile(history, self._session.script_start_time)

        if has_fills and not self._session.had_filled_orders:
            self._session.had_filled_orders = True
            logger.info(
                "first_fill_detected",
                symbol=self.symbol,
                average_price=str(self.ledger.average_price),
            )
        return has_fills

    async def check_take_profit(self, take_profit_percentage: Any) -> bool:
        """Check whether the position has reached the take-profit threshold.

        Requires a position and a positive average entry price; reconciles
        once more when the ledger does not know the average yet.
        """
        position = await self.lifecycle.get_position(self.symbol, self.asset)
        if position is None:
            logger.debug("take_profit_no_position", symbol=self.symbol)
            return False

        current_price = await self.lifecycle.get_price(self.symbol)

        if self.ledger.average_price <= 0 or not self.ledger.has_fills:
            await self.reconcile()

        average_price = self.ledger.average_price
        if average_price <= 0:
            logger.info("take_profit_waiting", symbol=self.symbol, reason="no_average_price")
            return False

        target = to_decimal(take_profit_percentage)
        increase = price_increase_percentage(average_price, current_price)
        msg = LogMessages.take_profit_check(
            current_price, average_price, increase, float(take_profit_percentage)
        )
        msg.log(logger, position=str(position))

        return should_take_profit(average_price, current_price, target)

    async def requote_stale_orders(self, pacing_seconds: float = 1.0) -> int:
        """Move open buys that fell far below the market closer to it.

        Returns:
            Number of orders replaced
        """
        open_orders = await self.lifecycle.get_open_orders(self.symbol)
        buys = [o for o in open_orders if o.side == OrderSide.BUY and o.id is not None]
        if not buys:
            return 0

        current_price = await self.lifecycle.get_price(self.symbol)
        threshold = current_price * STALE_PRICE_FACTOR
        candidate = self.lifecycle.quantizer.quantize_price(
            current_price * REQUOTE_PRICE_FACTOR, self.asset
        )

        replaced = 0
        for order in buys:
            if order.price >= threshold:
                continue
            if candidate <= order.price * REQUOTE_MIN_IMPROVEMENT:
                logger.debug(
                    "requote_skipped",
                    order_id=order.id,
                    price=str(order.price),
                    candidate=str(candidate),
                )
                continue

            try:
                await self.lifecycle.reprice_buy(order, candidate, self.asset)
            except (OrderRejected, RetryExhausted) as e:
                logger.error("requote_failed", order_id=order.id, error=str(e))
            else:
                replaced += 1
            await self._sleep(pacing_seconds)

        self._session.requotes += replaced
        logger.info(
            "stale_orders_checked",
            symbol=self.symbol,
            open_buys=len(buys),
            replaced=replaced,
            current_price=str(current_price),
        )
        return replaced

    def _reload_settings(self) -> None:
        before = self.store.settings.trading.take_profit_percentage
        if self.store.reload():
            after = self.store.settings.trading.take_profit_percentage
            if after != before:
                logger.info("take_profit_percentage_changed", previous=before, current=after)

    def _no_fill_restart_due(self, settings: Settings, now: datetime) -> bool:
        if not settings.actions.auto_restart_no_fill:
            return False
        # Fills recorded at submission count even when history is unavailable
        if self._session.had_filled_orders or self.ledger.has_fills:
            return False
        limit = timedelta(minutes=settings.advanced.no_fill_restart_minutes)
        return self._session.elapsed(now) >= limit

    def _order_check_due(self, settings: Settings, now: datetime) -> bool:
        last = self._session.last_order_check_time or self._session.script_start_time
        interval = timedelta(minutes=settings.advanced.check_orders_interval_minutes)
        return now - last >= interval

    async def _liquidate(self) -> bool:
        self._session.state = MonitorState.LIQUIDATING
        try:
            await self.lifecycle.liquidate(self.symbol, self.asset)
        except LiquidationIncomplete as e:
            logger.warning(
                "liquidation_incomplete",
                symbol=self.symbol,
                residual=str(e.result.residual),
            )
        except Exception as e:
            self._session.state = MonitorState.MONITORING
            self._session.errors.append(str(e))
            logger.error("liquidation_failed", symbol=self.symbol, error=str(e))
            return False
        return True

    def _finish(self, outcome: MonitorOutcome) -> MonitorOutcome:
        self._session.outcome = outcome
        self._session.state = (
            MonitorState.RESTARTING if outcome == MonitorOutcome.RESTART else MonitorState.DONE
        )
        logger.info(
            "monitor_finished",
            symbol=self.symbol,
            outcome=outcome.value,
            **self.ledger.stats.to_dict(),
        )
        return outcome

    async def run(self) -> MonitorOutcome:
        """Run the monitoring loop until a terminal outcome.

        Returns:
            PROFIT_TAKEN after liquidation, RESTART after a no-fill restart,
            CANCELED after ``stop()``
        """
        logger.info(
            "monitor_started",
            symbol=self.symbol,
            take_profit_percentage=self.store.settings.trading.take_profit_percentage,
        )

        while not self._stop_requested:
            session = self._session
            session.monitoring_attempts += 1

            reload_every = self.store.settings.advanced.config_reload_every
            if session.monitoring_attempts % reload_every == 0:
                self._reload_settings()

            settings = self.store.settings
            now = self._clock()

            try:
                await self.reconcile()

                if self._no_fill_restart_due(settings, now):
                    logger.warning(
                        "no_fill_restart",
                        symbol=self.symbol,
                        elapsed_minutes=round(session.elapsed(now).total_seconds() / 60, 1),
                    )
                    await self.lifecycle.cancel_all(self.symbol)
                    return self._finish(MonitorOutcome.RESTART)

                if self._order_check_due(settings, now):
                    await self.requote_stale_orders(settings.advanced.order_pacing_seconds)
                    session.last_order_check_time = now

                triggered = await self.check_take_profit(
                    settings.trading.take_profit_percentage
                )
            except Exception as e:
                session.errors.append(str(e))
                logger.error(
                    "monitor_iteration_failed",
                    symbol=self.symbol,
                    attempt=session.monitoring_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._sleep(settings.advanced.error_cooldown_seconds)
                continue

            if triggered:
                logger.info("take_profit_triggered", symbol=self.symbol)
                if await self._liquidate():
                    return self._finish(MonitorOutcome.PROFIT_TAKEN)
                await self._sleep(settings.advanced.liquidation_retry_seconds)
                continue

            await self._sleep(settings.advanced.monitor_interval_seconds)

        return self._finish(MonitorOutcome.CANCELED)
