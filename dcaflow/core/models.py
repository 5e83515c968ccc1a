"""Normalized order, balance and ladder models shared across the engine."""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class OrderSide(str, Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order type."""

    LIMIT = "limit"


class TimeInForce(str, Enum):
    """Time in force."""

    GTC = "GTC"  # Good-Till-Cancel
    IOC = "IOC"  # Immediate-or-Cancel


class OrderStatus(str, Enum):
    """Order status as reported by the exchange."""

    NEW = "New"
    PARTIALLY_FILLED = "PartiallyFilled"
    FILLED = "Filled"
    CANCELED = "Canceled"

    @property
    def has_fill(self) -> bool:
        """Whether orders in this status carry executed quantity."""
        return self in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED)


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Convert a raw numeric value to Decimal.

    Returns ``default`` for None, empty strings, non-numeric text, NaN and
    infinities.
    """
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return default
    return result if result.is_finite() else default


@dataclass(frozen=True)
class Ticker:
    """Current market price snapshot."""

    symbol: str
    last_price: Decimal
    bid: Decimal | None = None
    ask: Decimal | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class Balance:
    """Balance of one asset."""

    asset: str
    available: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")
    staked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        """Available plus locked plus staked."""
        return self.available + self.locked + self.staked

    @property
    def is_empty(self) -> bool:
        """Whether nothing at all is held."""
        return self.available <= 0 and self.locked <= 0 and self.staked <= 0


@dataclass(frozen=True)
class PlannedOrder:
    """A buy order produced by the planner, not yet submitted."""

    price: Decimal
    quantity: Decimal
    amount: Decimal


@dataclass
class OrderLadder:
    """Ordered planned buys, index 0 nearest the current price."""

    symbol: str
    asset: str
    orders: list[PlannedOrder] = field(default_factory=list)
    requested_amount: Decimal = Decimal("0")

    @property
    def total_amount(self) -> Decimal:
        """Realized spend of the whole ladder."""
        return sum((order.amount for order in self.orders), Decimal("0"))

    @property
    def prices(self) -> list[Decimal]:
        """Ladder prices in order."""
        return [order.price for order in self.orders]

    def __len__(self) -> int:
        return len(self.orders)

    def __iter__(self):
        return iter(self.orders)


def new_client_order_id() -> str:
    """Generate an idempotency key for one logical order submission."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class OrderRequest:
    """Parameters of a limit order submission.

    ``client_order_id`` is generated once per logical order so that a retried
    submission is recognized by the exchange instead of creating a duplicate.
    """

    symbol: str
    side: OrderSide
    price: Decimal
    quantity: Decimal
    order_type: OrderType = OrderType.LIMIT
    time_in_force: TimeInForce = TimeInForce.GTC
    client_order_id: str = field(default_factory=new_client_order_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for logging)."""
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.order_type.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "time_in_force": self.time_in_force.value,
            "client_order_id": self.client_order_id,
        }


@dataclass
class SubmittedOrder:
    """An order as returned by the exchange.

    ``filled_amount`` and ``filled_quantity`` are None when the exchange
    response does not report them.
    """

    id: str | None
    symbol: str
    side: OrderSide
    status: OrderStatus
    price: Decimal
    quantity: Decimal
    filled_amount: Decimal | None = None
    filled_quantity: Decimal | None = None
    create_time: datetime | None = None
    client_order_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "status": self.status.value,
            "price": str(self.price),
            "quantity": str(self.quantity),
            "filled_amount": None if self.filled_amount is None else str(self.filled_amount),
            "filled_quantity": (
                None if self.filled_quantity is None else str(self.filled_quantity)
            ),
            "create_time": self.create_time.isoformat() if self.create_time else None,
            "client_order_id": self.client_order_id,
        }
