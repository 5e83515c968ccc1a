"""DCA (Dollar Cost Averaging) buy ladder strategy."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from dcaflow.core.errors import PlanningError
from dcaflow.core.logging import LogMessages, get_logger
from dcaflow.core.models import OrderLadder, PlannedOrder, to_decimal
from dcaflow.core.quantizer import Quantizer

logger = get_logger(__name__)

CENT = Decimal("0.01")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def effective_min_order_amount(
    min_order_amount: Decimal, current_price: Decimal, min_quantity: Decimal
) -> Decimal:
    """Smallest order value worth placing at the current price.

    An order must clear both the configured minimum value and the value of
    the asset's minimum tradable quantity.
    """
    return max(min_order_amount, current_price * min_quantity)


def order_value(price: Decimal, quantity: Decimal) -> Decimal:
    """Quote value of an order, rounded half-up to cents."""
    return (price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class DCAStrategy:
    """Incremental DCA buy ladder.

    Spreads ``order_count`` limit buys evenly from the current price down to
    ``max_drop_percentage`` below it. Order values grow geometrically by
    ``increment_percentage`` per level and sum to at most ``total_amount``.
    """

    max_drop_percentage: Decimal
    """Percentage below the current price of the deepest order."""

    total_amount: Decimal
    """Quote budget for the whole ladder."""

    order_count: int
    """Number of ladder levels (at least 2)."""

    increment_percentage: Decimal = Decimal("10")
    """Growth of each order's value over the previous one."""

    min_order_amount: Decimal = Decimal("10")
    """Orders worth less than this after quantization are dropped."""

    take_profit_percentage: Decimal = Decimal("5")
    """Rise above the average entry price that triggers the exit."""

    def __post_init__(self):
        self.max_drop_percentage = to_decimal(self.max_drop_percentage)
        self.total_amount = to_decimal(self.total_amount)
        self.increment_percentage = to_decimal(self.increment_percentage)
        self.min_order_amount = to_decimal(self.min_order_amount)
        self.take_profit_percentage = to_decimal(self.take_profit_percentage)

    @property
    def ratio(self) -> Decimal:
        """Geometric growth factor between consecutive order values."""
        return ONE + self.increment_percentage / HUNDRED

    def validate(self) -> None:
        """Reject parameters that cannot produce a ladder.

        Raises:
            PlanningError: On an invalid order count, drop or budget
        """
        if self.order_count < 2:
            raise PlanningError(f"order_count must be at least 2, got {self.order_count}")
        if not (0 < self.max_drop_percentage < 100):
            raise PlanningError(
                f"max_drop_percentage must be between 0 and 100, got {self.max_drop_percentage}"
            )
        if self.total_amount <= 0:
            raise PlanningError(f"total_amount must be positive, got {self.total_amount}")
        if self.increment_percentage < 0:
            raise PlanningError("increment_percentage cannot be negative")

    def check_budget(self, min_order_amount: Decimal | None = None) -> None:
        """Ensure the budget can fund every level at the minimum order value.

        Raises:
            PlanningError: If ``total_amount < min_order_amount * order_count``
        """
        minimum = self.min_order_amount if min_order_amount is None else min_order_amount
        if self.total_amount < minimum * self.order_count:
            raise PlanningError(
                f"Total amount {self.total_amount} is too small for {self.order_count} orders "
                f"of at least {minimum.quantize(CENT)}"
            )

    def base_amount(self) -> Decimal:
        """Value of the first (shallowest) order.

        Solves ``total = base * (r^n - 1) / (r - 1)`` for ``base`` and clamps
        it to ``min_order_amount``.
        """
        r = self.ratio
        n = self.order_count
        if r == ONE:
            base = self.total_amount / n
        else:
            base = self.total_amount * (r - ONE) / (r**n - ONE)
        return max(base, self.min_order_amount)

    def order_amounts(self) -> list[Decimal]:
        """Raw value of each order, scaled down if the clamp overshot the budget."""
        base = self.base_amount()
        r = self.ratio
        amounts = [base * r**i for i in range(self.order_count)]

        raw_total = sum(amounts, Decimal("0"))
        if raw_total > self.total_amount:
            scale = self.total_amount / raw_total
            amounts = [amount * scale for amount in amounts]
            logger.debug("ladder_amounts_scaled", raw_total=str(raw_total), scale=str(scale))

        return amounts

    def ladder_prices(
        self, current_price: Decimal, asset: str, quantizer: Quantizer
    ) -> list[Decimal]:
        """Evenly spaced prices from the current price down to the maximum drop.

        Prices are quantized to the asset's precision only; the tick-size
        floor is applied at submission.
        """
        lowest = current_price * (ONE - self.max_drop_percentage / HUNDRED)
        step = (current_price - lowest) / (self.order_count - 1)
        return [
            quantizer.quantize_price(current_price - step * i, asset, use_tick=False)
            for i in range(self.order_count)
        ]

    def plan(
        self,
        symbol: str,
        current_price: Decimal,
        asset: str,
        quantizer: Quantizer,
    ) -> OrderLadder:
        """Compute the buy ladder.

        Args:
            symbol: Trading pair (e.g. "SOL/USDC")
            current_price: Current market price
            asset: Base asset used for precision lookups
            quantizer: Instrument precision rules

        Returns:
            Ladder with strictly decreasing prices and total spend within budget

        Raises:
            PlanningError: On invalid parameters or if no order survives
        """
        self.validate()
        current_price = to_decimal(current_price)
        if current_price <= 0:
            raise PlanningError(f"current price must be positive, got {current_price}")

        prices = self.ladder_prices(current_price, asset, quantizer)
        amounts = self.order_amounts()
        step_size = quantizer.table.profile(asset).step_size

        ladder = OrderLadder(symbol=symbol, asset=asset, requested_amount=self.total_amount)
        previous_price: Decimal | None = None

        for index, (price, amount) in enumerate(zip(prices, amounts, strict=True)):
            if price <= 0:
                logger.warning("ladder_level_skipped", index=index, reason="non_positive_price")
                continue
            if previous_price is not None and price >= previous_price:
                # Precision collapsed two levels onto one price
                logger.warning(
                    "ladder_level_skipped", index=index, reason="duplicate_price", price=str(price)
                )
                continue

            quantity = quantizer.quantize_quantity(amount / price, asset)
            realized = order_value(price, quantity)
            if ladder.total_amount + realized > self.total_amount:
                # Half-up rounding may add a cent over budget
                quantity = quantizer.quantize_quantity(quantity - step_size, asset)
                realized = order_value(price, quantity)

            if quantity <= 0 or realized < self.min_order_amount:
                logger.debug(
                    "ladder_level_skipped",
                    index=index,
                    reason="below_min_order_amount",
                    amount=str(realized),
                )
                continue

            ladder.orders.append(PlannedOrder(price=price, quantity=quantity, amount=realized))
            previous_price = price

        if not ladder.orders:
            raise PlanningError("Unable to build any valid order, check the ladder parameters")

        msg = LogMessages.ladder_planned(
            symbol, len(ladder), self.total_amount, ladder.total_amount
        )
        msg.log(logger)
        return ladder


def price_increase_percentage(average_price: Decimal, current_price: Decimal) -> Decimal:
    """Percentage move of ``current_price`` over ``average_price``."""
    return (current_price - average_price) / average_price * HUNDRED


def should_take_profit(
    average_price: Decimal, current_price: Decimal, take_profit_percentage: Decimal
) -> bool:
    """Check whether the take-profit threshold is reached.

    Never triggers without a known, positive average price.
    """
    average_price = to_decimal(average_price)
    if average_price <= 0:
        return False
    increase = price_increase_percentage(average_price, to_decimal(current_price))
    return increase >= to_decimal(take_profit_percentage)


def plan_ladder(
    symbol: str,
    current_price: Decimal,
    max_drop_percentage: Decimal,
    total_amount: Decimal,
    order_count: int,
    increment_percentage: Decimal,
    min_order_amount: Decimal,
    asset: str,
    quantizer: Quantizer,
) -> OrderLadder:
    """Planning entry point: build a ladder from raw parameters.

    Raises:
        PlanningError: If no viable ladder exists
    """
    strategy = DCAStrategy(
        max_drop_percentage=max_drop_percentage,
        total_amount=total_amount,
        order_count=order_count,
        increment_percentage=increment_percentage,
        min_order_amount=min_order_amount,
    )
    return strategy.plan(symbol, to_decimal(current_price), asset, quantizer)
