"""Order lifecycle operations: place, cancel, re-quote and liquidate.

Every remote call goes through the ``RetryExecutor``; every fill reaches the
``FillLedger`` through ``record_submission``. Nothing here keeps state of its
own beyond what the cycle hands in.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from dcaflow.core.errors import (
    LiquidationIncomplete,
    OrderRejected,
    ReconciliationUnavailable,
    RetryExhausted,
    is_insufficient_funds,
)
from dcaflow.core.ledger import FillLedger
from dcaflow.core.logging import LogMessages, get_logger
from dcaflow.core.models import (
    Balance,
    OrderLadder,
    OrderRequest,
    OrderSide,
    OrderStatus,
    SubmittedOrder,
    TimeInForce,
)
from dcaflow.core.quantizer import Quantizer
from dcaflow.core.retry import RetryExecutor
from dcaflow.exchange.adapter import ExchangeAdapter

logger = get_logger(__name__)

# Limit prices of the two IOC liquidation attempts, relative to the market
FIRST_SELL_FACTOR = Decimal("0.995")
SECOND_SELL_FACTOR = Decimal("0.99")

CANCEL_SPACING_SECONDS = 0.5


@dataclass
class CancelReport:
    """Outcome of a cancel-all sweep."""

    symbol: str
    strategy: str | None = None
    cancelled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Whether a strategy ran and no order failed to cancel."""
        return self.strategy is not None and not self.failed

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "symbol": self.symbol,
            "strategy": self.strategy,
            "cancelled": list(self.cancelled),
            "failed": dict(self.failed),
            "error": self.error,
        }


@dataclass
class LiquidationResult:
    """Outcome of a best-effort position liquidation."""

    symbol: str
    asset: str
    initial_quantity: Decimal
    quantity_sold: Decimal = Decimal("0")
    residual: Decimal = Decimal("0")
    orders: list[SubmittedOrder] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """Whether no sellable quantity is left."""
        return self.residual <= 0


@dataclass(frozen=True)
class AssetValue:
    """A balance valued in the quote currency."""

    asset: str
    balance: Balance
    price: Decimal
    value: Decimal


class OrderLifecycle:
    """Remote order operations of one trading cycle.

    Example:
        lifecycle = OrderLifecycle(adapter, RetryExecutor(), quantizer, FillLedger())
        order = await lifecycle.place_buy("SOL/USDC", Decimal("98.5"), Decimal("1.2"), "SOL")
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        retry: RetryExecutor,
        quantizer: Quantizer,
        ledger: FillLedger,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pacing_seconds: float = 1.0,
        settle_delay_seconds: float = 2.0,
    ):
        """Initialize the lifecycle operations.

        Args:
            adapter: Connected exchange adapter
            retry: Retry wrapper for every remote call
            quantizer: Instrument precision rules
            ledger: Fill ledger of the current cycle
            sleep: Awaitable sleep function (injectable for tests)
            pacing_seconds: Pause between consecutive submissions
            settle_delay_seconds: Pause after a cancel or IOC sell before re-checking
        """
        self.adapter = adapter
        self.retry = retry
        self.quantizer = quantizer
        self.ledger = ledger
        self._sleep = sleep
        self.pacing_seconds = pacing_seconds
        self.settle_delay_seconds = settle_delay_seconds

    async def get_price(self, symbol: str) -> Decimal:
        """Get the last traded price of a symbol."""
        ticker = await self.retry.call(self.adapter.get_ticker, symbol, name="get_ticker")
        return ticker.last_price

    async def get_open_orders(self, symbol: str) -> list[SubmittedOrder]:
        """Get the resting orders of a symbol."""
        return await self.retry.call(self.adapter.get_open_orders, symbol, name="get_open_orders")

    async def place_buy(
        self, symbol: str, price: Decimal, quantity: Decimal, asset: str
    ) -> SubmittedOrder:
        """Quantize and submit a Good-Till-Cancel limit buy.

        Returns:
            The accepted order, with fill values back-filled when the exchange
            omitted them

        Raises:
            OrderRejected: If the quantized order is empty or the response has no id
            RetryExhausted: If submission kept failing
        """
        price = self.quantizer.quantize_price(price, asset)
        quantity = self.quantizer.quantize_quantity(quantity, asset)
        if price <= 0 or quantity <= 0:
            raise OrderRejected(f"{symbol}: order quantizes to price={price} quantity={quantity}")

        request = OrderRequest(
            symbol=symbol,
            side=OrderSide.BUY,
            price=price,
            quantity=quantity,
            time_in_force=TimeInForce.GTC,
        )
        order = await self.retry.call(self.adapter.submit_order, request, name="submit_buy_order")

        if not order.id:
            raise OrderRejected(f"{symbol}: exchange returned no order id for {request.to_dict()}")

        # Exchanges that omit fill values on an executed order filled it in full
        if order.status.has_fill:
            if order.filled_amount is None:
                order.filled_amount = price * quantity
            if order.filled_quantity is None:
                order.filled_quantity = quantity

        self.ledger.record_submission(order)

        msg = LogMessages.order_placed(symbol, OrderSide.BUY.value, quantity, price)
        msg.log(logger, order_id=order.id, status=order.status.value)
        return order

    async def submit_ladder(self, ladder: OrderLadder) -> list[SubmittedOrder]:
        """Submit every planned order, pacing the submissions.

        A failed order is logged and skipped; an insufficient-funds failure
        aborts the remaining submissions.

        Returns:
            The orders the exchange accepted
        """
        submitted: list[SubmittedOrder] = []
        for index, planned in enumerate(ladder):
            if index > 0:
                await self._sleep(self.pacing_seconds)
            try:
                order = await self.place_buy(
                    ladder.symbol, planned.price, planned.quantity, ladder.asset
                )
            except (OrderRejected, RetryExhausted) as e:
                if is_insufficient_funds(e):
                    logger.error(
                        "ladder_submission_aborted",
                        symbol=ladder.symbol,
                        index=index,
                        remaining=len(ladder) - index,
                        error=str(e),
                    )
                    break
                logger.error("ladder_order_failed", symbol=ladder.symbol, index=index, error=str(e))
                continue
            submitted.append(order)

        logger.info(
            "ladder_submitted",
            symbol=ladder.symbol,
            planned=len(ladder),
            submitted=len(submitted),
        )
        return submitted

    async def cancel_all(self, symbol: str) -> CancelReport:
        """Cancel every open order of a symbol. Never raises.

        Tries the batch cancel first and falls back to cancelling open buys
        one by one.
        """
        report = CancelReport(symbol=symbol)

        async def batch() -> str:
            await self.adapter.cancel_all_orders(symbol)
            return "batch"

        async def per_order() -> str:
            await self._cancel_each(symbol, report)
            return "per_order"

        try:
            report.strategy = await self.retry.first_success(
                "cancel_all", [("batch", batch), ("per_order", per_order)]
            )
        except RetryExhausted as e:
            report.error = str(e)
            logger.error("cancel_all_failed", symbol=symbol, error=str(e))
            return report

        log = logger.warning if report.failed else logger.info
        log("cancel_all_finished", **report.to_dict())
        return report

    async def _cancel_each(self, symbol: str, report: CancelReport) -> None:
        # Runs inside first_success, which already retries this strategy
        open_orders = await self.adapter.get_open_orders(symbol)
        buys = [order for order in open_orders if order.side == OrderSide.BUY and order.id]
        for index, order in enumerate(buys):
            if index > 0:
                await self._sleep(CANCEL_SPACING_SECONDS)
            order_id = str(order.id)
            try:
                await self.retry.call(
                    self.adapter.cancel_order, symbol, order_id, name="cancel_order"
                )
            except RetryExhausted as e:
                report.failed[order_id] = str(e.last_error)
                logger.warning("order_cancel_failed", symbol=symbol, order_id=order_id)
                continue
            report.cancelled.append(order_id)

    async def get_position(self, symbol: str, asset: str) -> Decimal | None:
        """Available quantity of the base asset, or None when nothing is held."""
        balances = await self.retry.call(self.adapter.get_balances, name="get_balances")
        balance = balances.get(asset.upper())
        if balance is None or balance.available <= 0:
            logger.debug("no_position", symbol=symbol, asset=asset)
            return None
        return balance.available

    async def _sell_ioc(
        self,
        symbol: str,
        asset: str,
        quantity: Decimal,
        factor: Decimal,
        result: LiquidationResult,
    ) -> SubmittedOrder | None:
        current = await self.get_price(symbol)
        price = self.quantizer.quantize_price(current * factor, asset)
        quantity = self.quantizer.quantize_quantity(quantity, asset)
        if price <= 0 or quantity <= 0:
            logger.warning(
                "sell_skipped", symbol=symbol, price=str(price), quantity=str(quantity)
            )
            return None

        request = OrderRequest(
            symbol=symbol,
            side=OrderSide.SELL,
            price=price,
            quantity=quantity,
            time_in_force=TimeInForce.IOC,
        )
        order = await self.retry.call(self.adapter.submit_order, request, name="submit_sell_order")
        result.orders.append(order)

        msg = LogMessages.order_placed(symbol, OrderSide.SELL.value, quantity, price)
        msg.log(logger, order_id=order.id, status=order.status.value)
        return order

    async def liquidate(self, symbol: str, asset: str) -> LiquidationResult | None:
        """Sell the whole position with up to two IOC limit sells.

        The first sell is priced at 0.995 of the market. If it does not fill
        completely, the remaining position gets one more IOC sell at 0.99.

        Returns:
            The liquidation outcome, or None when there is no position

        Raises:
            LiquidationIncomplete: If sellable quantity is left afterwards
            RetryExhausted: If a remote call kept failing
        """
        initial = await self.get_position(symbol, asset)
        if initial is None:
            logger.info("liquidation_skipped", symbol=symbol, reason="no_position")
            return None

        result = LiquidationResult(symbol=symbol, asset=asset, initial_quantity=initial)
        first = await self._sell_ioc(symbol, asset, initial, FIRST_SELL_FACTOR, result)

        if first is None or first.status != OrderStatus.FILLED:
            await self._sleep(self.settle_delay_seconds)
            remaining = await self.get_position(symbol, asset)
            if remaining is not None:
                await self._sell_ioc(symbol, asset, remaining, SECOND_SELL_FACTOR, result)

        await self._sleep(self.settle_delay_seconds)
        left = await self.get_position(symbol, asset) or Decimal("0")
        result.quantity_sold = max(initial - left, Decimal("0"))
        # Dust below the step size cannot be sold and is not a residual
        result.residual = self.quantizer.quantize_quantity(left, asset)

        msg = LogMessages.liquidation(symbol, result.quantity_sold, result.residual)
        if not result.complete:
            msg.log(logger, "warning")
            raise LiquidationIncomplete(result)

        msg.log(logger)
        return result

    async def fetch_order_history(self, symbol: str) -> list[SubmittedOrder]:
        """Get the order history used for reconciliation.

        Raises:
            ReconciliationUnavailable: If the history cannot be fetched
        """
        try:
            return await self.retry.call(
                self.adapter.get_order_history, symbol, name="get_order_history"
            )
        except RetryExhausted as e:
            raise ReconciliationUnavailable(f"{symbol}: order history unavailable") from e

    async def reprice_buy(
        self, order: SubmittedOrder, new_price: Decimal, asset: str
    ) -> SubmittedOrder:
        """Replace a resting buy with one at ``new_price``.

        The replacement carries the order's unfilled quantity.
        """
        if order.id is None:
            raise OrderRejected(f"{order.symbol}: cannot re-quote an order without id")

        await self.retry.call(
            self.adapter.cancel_order, order.symbol, str(order.id), name="cancel_order"
        )
        logger.info(
            "order_requote_cancelled",
            order_id=order.id,
            old_price=str(order.price),
            new_price=str(new_price),
        )
        await self._sleep(self.settle_delay_seconds)

        remaining = order.quantity - (order.filled_quantity or Decimal("0"))
        return await self.place_buy(order.symbol, new_price, remaining, asset)

    async def describe_balances(self, quote: str) -> list[AssetValue]:
        """Value every non-empty balance in the quote currency and log the table.

        Assets whose ticker cannot be fetched are valued at 0.
        """
        quote = quote.upper()
        balances = await self.retry.call(self.adapter.get_balances, name="get_balances")

        rows: list[AssetValue] = []
        for asset, balance in balances.items():
            if balance.is_empty:
                continue
            if asset == quote:
                price = Decimal("1")
            else:
                symbol = self.adapter.symbol_for(asset, quote)
                try:
                    price = await self.get_price(symbol)
                except RetryExhausted as e:
                    logger.warning("asset_price_unavailable", asset=asset, error=str(e.last_error))
                    price = Decimal("0")
            rows.append(
                AssetValue(asset=asset, balance=balance, price=price, value=balance.total * price)
            )

        for row in rows:
            logger.info(
                "balance",
                asset=row.asset,
                available=str(row.balance.available),
                locked=str(row.balance.locked),
                staked=str(row.balance.staked),
                value=f"{row.value:.2f}",
            )
        total = sum((row.value for row in rows), Decimal("0"))
        logger.info("balances_total", quote=quote, total=f"{total:.2f}", assets=len(rows))
        return rows

    async def sell_non_quote_assets(
        self, quote: str, min_value: Decimal
    ) -> list[LiquidationResult]:
        """Liquidate every non-quote asset worth at least ``min_value``.

        A failing asset is logged and the sweep moves on.
        """
        quote = quote.upper()
        results: list[LiquidationResult] = []

        candidates = [
            row
            for row in await self.describe_balances(quote)
            if row.asset != quote and row.balance.available > 0
        ]
        for index, row in enumerate(candidates):
            available_value = row.balance.available * row.price
            if available_value < min_value:
                logger.info(
                    "asset_sweep_skipped",
                    asset=row.asset,
                    value=f"{available_value:.2f}",
                    min_value=str(min_value),
                )
                continue

            if index > 0:
                await self._sleep(self.pacing_seconds)

            symbol = self.adapter.symbol_for(row.asset, quote)
            try:
                result = await self.liquidate(symbol, row.asset)
            except LiquidationIncomplete as e:
                result = e.result
            except Exception as e:
                logger.error("asset_sweep_failed", asset=row.asset, error=str(e))
                continue
            if result is not None:
                results.append(result)

        logger.info("asset_sweep_finished", quote=quote, liquidated=len(results))
        return results
