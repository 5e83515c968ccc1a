"""Idempotent fill accounting for one trading cycle."""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from dcaflow.core.logging import LogMessages, get_logger
from dcaflow.core.models import OrderSide, SubmittedOrder, to_decimal

logger = get_logger(__name__)


@dataclass
class LedgerStats:
    """Running totals of a cycle's buy fills."""

    total_orders: int = 0
    filled_orders: int = 0
    total_filled_amount: Decimal = Decimal("0")
    total_filled_quantity: Decimal = Decimal("0")
    average_price: Decimal = Decimal("0")
    last_update_time: datetime | None = None

    @property
    def has_fills(self) -> bool:
        """Whether any order contributed filled quantity."""
        return self.filled_orders > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_orders": self.total_orders,
            "filled_orders": self.filled_orders,
            "total_filled_amount": str(self.total_filled_amount),
            "total_filled_quantity": str(self.total_filled_quantity),
            "average_price": str(self.average_price),
            "last_update_time": (
                self.last_update_time.isoformat() if self.last_update_time else None
            ),
        }


class FillLedger:
    """Accumulates filled amount and quantity per order id, at most once each.

    All mutation goes through ``record_submission``, ``record_fill`` and
    ``reconcile``; the set of processed ids is scoped to the cycle that owns
    this ledger and is discarded with it.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        """Initialize an empty ledger.

        Args:
            clock: Returns the current time (defaults to UTC now)
        """
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stats = LedgerStats()
        self._processed_ids: set[str] = set()

    @property
    def stats(self) -> LedgerStats:
        """Get a copy of the current totals."""
        return replace(self._stats)

    @property
    def average_price(self) -> Decimal:
        """Volume-weighted average entry price (0 before the first fill)."""
        return self._stats.average_price

    @property
    def has_fills(self) -> bool:
        """Whether any fill has been recorded."""
        return self._stats.has_fills

    @property
    def processed_order_ids(self) -> frozenset[str]:
        """Ids already counted."""
        return frozenset(self._processed_ids)

    def is_processed(self, order_id: str | None) -> bool:
        """Check whether an order id was already counted."""
        return order_id is not None and str(order_id) in self._processed_ids

    def record_submission(self, order: SubmittedOrder) -> bool:
        """Count a newly submitted order and record any fill it reports.

        Returns:
            True if the order's fill was counted
        """
        self._stats.total_orders += 1
        self._stats.last_update_time = self._clock()
        return self.record_fill(order)

    def record_fill(self, order: SubmittedOrder) -> bool:
        """Record an order's fill once.

        No-op unless the order is Filled or PartiallyFilled and its id has not
        been counted before. Missing or non-numeric fill values count as zero.

        Returns:
            True if the order was counted by this call
        """
        if not order.status.has_fill or order.id is None:
            return False

        order_id = str(order.id)
        if order_id in self._processed_ids:
            logger.debug("fill_already_recorded", order_id=order_id)
            return False

        self._processed_ids.add(order_id)

        amount = to_decimal(order.filled_amount)
        quantity = to_decimal(order.filled_quantity)
        stats = self._stats

        if amount > 0:
            stats.total_filled_amount += amount
        if quantity > 0:
            stats.total_filled_quantity += quantity
            stats.filled_orders += 1
        if stats.total_filled_quantity > 0:
            stats.average_price = stats.total_filled_amount / stats.total_filled_quantity
        stats.last_update_time = self._clock()

        msg = LogMessages.fill_recorded(order_id, quantity, amount, stats.average_price)
        msg.log(
            logger,
            filled_orders=stats.filled_orders,
            total_filled_amount=str(stats.total_filled_amount),
            total_filled_quantity=str(stats.total_filled_quantity),
        )
        return True

    def reconcile(self, order_history: Iterable[SubmittedOrder], cutoff_time: datetime) -> bool:
        """Fold authoritative order history into the ledger.

        Only buy orders that are Filled or PartiallyFilled, were created at or
        after ``cutoff_time`` and are not yet counted are recorded. Orders
        without a creation time are ignored.

        Args:
            order_history: Orders returned by the exchange
            cutoff_time: Start of the current trading cycle

        Returns:
            True if the ledger holds any fill (new or previously recorded)
        """
        new_fills = 0
        for order in order_history:
            if order.side != OrderSide.BUY or not order.status.has_fill:
                continue
            if order.create_time is None or order.create_time < cutoff_time:
                continue
            if self.is_processed(order.id):
                continue
            if self.record_fill(order):
                new_fills += 1

        logger.debug(
            "ledger_reconciled",
            new_fills=new_fills,
            filled_orders=self._stats.filled_orders,
            average_price=str(self._stats.average_price),
        )
        return self._stats.has_fills
