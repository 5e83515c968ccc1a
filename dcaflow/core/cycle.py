"""Trading cycle orchestration and the restarting supervisor."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from dcaflow.config import Settings, SettingsStore
from dcaflow.core.errors import DCAFlowError, OrderRejected
from dcaflow.core.ledger import FillLedger, LedgerStats
from dcaflow.core.logging import LogMessages, get_logger
from dcaflow.core.models import OrderLadder, SubmittedOrder, to_decimal
from dcaflow.core.monitor import MonitorOutcome, TakeProfitMonitor
from dcaflow.core.quantizer import PrecisionTable, Quantizer
from dcaflow.core.retry import RetryExecutor
from dcaflow.exchange.adapter import ExchangeAdapter
from dcaflow.exchange.orders import OrderLifecycle
from dcaflow.strategies.dca import DCAStrategy, effective_min_order_amount

logger = get_logger(__name__)


def strategy_from_settings(
    settings: Settings, current_price: Decimal, quantizer: Quantizer
) -> DCAStrategy:
    """Build the ladder strategy with the minimum order value at the current price."""
    trading = settings.trading
    asset = settings.symbol_base
    min_amount = effective_min_order_amount(
        to_decimal(settings.advanced.min_order_amount),
        current_price,
        quantizer.min_quantity(asset),
    )
    return DCAStrategy(
        max_drop_percentage=trading.max_drop_percentage,
        total_amount=trading.total_amount,
        order_count=trading.order_count,
        increment_percentage=trading.increment_percentage,
        min_order_amount=min_amount,
        take_profit_percentage=trading.take_profit_percentage,
    )


def build_ladder(
    settings: Settings, symbol: str, current_price: Decimal, quantizer: Quantizer
) -> OrderLadder:
    """Plan the configured ladder at ``current_price``.

    Raises:
        PlanningError: If the budget cannot fund every level or no order survives
    """
    strategy = strategy_from_settings(settings, current_price, quantizer)
    logger.info(
        "effective_min_order_amount",
        symbol=symbol,
        configured=settings.advanced.min_order_amount,
        effective=str(strategy.min_order_amount),
    )
    strategy.check_budget()
    return strategy.plan(symbol, current_price, settings.symbol_base, quantizer)


@dataclass
class CycleResult:
    """Summary of one finished trading cycle."""

    outcome: MonitorOutcome
    planned: OrderLadder
    submitted: list[SubmittedOrder] = field(default_factory=list)
    stats: LedgerStats = field(default_factory=LedgerStats)


class TradingCycle:
    """One plan, submit and monitor pass over the configured pair.

    Every run starts from the latest settings snapshot with a fresh ledger
    and monitor session.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        store: SettingsStore,
        retry: RetryExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        initial_start_time: datetime | None = None,
    ):
        self.adapter = adapter
        self.store = store
        self._sleep = sleep
        self.retry = retry or RetryExecutor(sleep=sleep)
        self._clock = clock or (lambda: datetime.now(UTC))
        self.initial_start_time = initial_start_time
        self._monitor: TakeProfitMonitor | None = None
        self._stop_requested = False

    @property
    def monitor(self) -> TakeProfitMonitor | None:
        """Monitor of the running cycle, if it got that far."""
        return self._monitor

    def stop(self) -> None:
        """Stop the running monitor cooperatively."""
        self._stop_requested = True
        if self._monitor is not None:
            self._monitor.stop()

    async def run(self) -> CycleResult:
        """Run a single trading cycle.

        Raises:
            PlanningError: If no viable ladder exists
            OrderRejected: If the exchange accepted none of the ladder
            RetryExhausted: If a required remote call kept failing
        """
        snapshot = self.store.current
        settings = snapshot.settings
        advanced = settings.advanced
        quote = settings.system.quote_currency.upper()
        asset = settings.symbol_base
        symbol = self.adapter.symbol_for(asset, quote)

        quantizer = Quantizer(PrecisionTable.from_settings(settings))
        ledger = FillLedger(clock=self._clock)
        cycle_start = self._clock()
        lifecycle = OrderLifecycle(
            self.adapter,
            self.retry,
            quantizer,
            ledger,
            sleep=self._sleep,
            pacing_seconds=advanced.order_pacing_seconds,
            settle_delay_seconds=advanced.settle_delay_seconds,
        )

        logger.info(
            "cycle_started",
            symbol=symbol,
            config_version=snapshot.version,
            total_amount=settings.trading.total_amount,
            order_count=settings.trading.order_count,
        )

        await lifecycle.describe_balances(quote)

        if settings.actions.sell_non_usdc_assets:
            await lifecycle.sell_non_quote_assets(
                quote, to_decimal(advanced.sell_non_usdc_min_value)
            )

        if settings.actions.cancel_all_orders:
            await lifecycle.cancel_all(symbol)

        current_price = await lifecycle.get_price(symbol)
        ladder = build_ladder(settings, symbol, current_price, quantizer)

        submitted = await lifecycle.submit_ladder(ladder)
        if not submitted:
            raise OrderRejected(f"{symbol}: no ladder order was accepted")

        self._monitor = TakeProfitMonitor(
            symbol,
            asset,
            lifecycle,
            ledger,
            self.store,
            clock=self._clock,
            sleep=self._sleep,
            cycle_start=cycle_start,
            initial_start_time=self.initial_start_time,
        )
        if self._stop_requested:
            self._monitor.stop()

        await self._monitor.reconcile()
        outcome = await self._monitor.run()

        return CycleResult(
            outcome=outcome, planned=ladder, submitted=submitted, stats=ledger.stats
        )


class CycleSupervisor:
    """Runs trading cycles back to back and decides when to restart.

    - ``RESTART`` outcomes always start a new cycle
    - ``PROFIT_TAKEN`` starts a new cycle when ``actions.restart_after_take_profit``
    - A cycle-aborting error waits and restarts unless ``actions.restart_on_error``
      is off, in which case it propagates

    Example:
        supervisor = CycleSupervisor(adapter, store)
        await supervisor.run()
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        store: SettingsStore,
        retry: RetryExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_cycles: int | None = None,
    ):
        self.adapter = adapter
        self.store = store
        self.retry = retry
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self.max_cycles = max_cycles
        self.started_at = self._clock()
        self.cycles_completed = 0
        self.results: list[CycleResult] = []
        self._current: TradingCycle | None = None
        self._stop_requested = False

    def stop(self) -> None:
        """Stop after the running cycle's monitor ends."""
        self._stop_requested = True
        if self._current is not None:
            self._current.stop()

    @property
    def _limit_reached(self) -> bool:
        return self.max_cycles is not None and self.cycles_completed >= self.max_cycles

    def _new_cycle(self) -> TradingCycle:
        return TradingCycle(
            self.adapter,
            self.store,
            retry=self.retry,
            clock=self._clock,
            sleep=self._sleep,
            initial_start_time=self.started_at,
        )

    async def _restart_in(self, reason: str, delay: float) -> None:
        LogMessages.cycle_restart(reason, delay).log(logger)
        await self._sleep(delay)

    async def run(self) -> list[CycleResult]:
        """Run cycles until one ends without a restart.

        Returns:
            Results of every completed cycle
        """
        while not self._stop_requested and not self._limit_reached:
            # Pick up config edits made while the previous cycle ran
            if self.cycles_completed > 0:
                self.store.reload()
            settings = self.store.settings
            self._current = self._new_cycle()

            try:
                result = await self._current.run()
            except DCAFlowError as e:
                self.cycles_completed += 1
                logger.error("cycle_aborted", error=str(e), error_type=type(e).__name__)
                if (
                    not settings.actions.restart_on_error
                    or self._stop_requested
                    or self._limit_reached
                ):
                    raise
                await self._restart_in("error", settings.advanced.error_restart_delay_seconds)
                continue
            finally:
                self._current = None

            self.cycles_completed += 1
            self.results.append(result)
            logger.info(
                "cycle_finished",
                outcome=result.outcome.value,
                planned=len(result.planned),
                submitted=len(result.submitted),
                **result.stats.to_dict(),
            )

            if result.outcome == MonitorOutcome.RESTART:
                await self._restart_in("no_fill", 0)
            elif (
                result.outcome == MonitorOutcome.PROFIT_TAKEN
                and settings.actions.restart_after_take_profit
            ):
                await self._restart_in("take_profit", settings.advanced.restart_delay_seconds)
            else:
                break

        logger.info("supervisor_stopped", cycles=self.cycles_completed)
        return self.results
