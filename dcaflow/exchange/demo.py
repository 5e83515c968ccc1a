"""Demo exchange client with an in-memory order book for offline runs."""

import random
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from dcaflow.core.logging import get_logger
from dcaflow.core.models import (
    Balance,
    OrderRequest,
    OrderSide,
    OrderStatus,
    SubmittedOrder,
    Ticker,
    TimeInForce,
    to_decimal,
)
from dcaflow.exchange.adapter import ExchangeAdapter

logger = get_logger(__name__)

# Default seed prices for common symbols
_DEFAULT_PRICES: dict[str, Decimal] = {
    "BTC/USDC": Decimal("60000"),
    "ETH/USDC": Decimal("3000"),
    "SOL/USDC": Decimal("150"),
}

_DEFAULT_FALLBACK_PRICE = Decimal("100")


class DemoExchangeClient(ExchangeAdapter):
    """Exchange client that simulates a spot account without network calls.

    Resting limit buys fill in full once the price trades at or below their
    limit; IOC sells fill against the current price or are canceled. Prices
    follow a small random walk unless ``volatility`` is 0.
    """

    def __init__(
        self,
        quote_currency: str = "USDC",
        initial_quote_balance: Decimal = Decimal("10000"),
        volatility: float = 0.001,
        prices: dict[str, Decimal] | None = None,
        clock=None,
    ) -> None:
        self.quote_currency = quote_currency.upper()
        self.volatility = volatility
        self._clock = clock or (lambda: datetime.now(UTC))
        self._connected = False
        self._prices: dict[str, Decimal] = dict(_DEFAULT_PRICES)
        if prices:
            self._prices.update({k: to_decimal(v) for k, v in prices.items()})
        self._free: dict[str, Decimal] = {self.quote_currency: to_decimal(initial_quote_balance)}
        self._locked: dict[str, Decimal] = {}
        self._orders: dict[str, SubmittedOrder] = {}

    async def connect(self) -> bool:
        """Connect (always succeeds, no network needed)."""
        self._connected = True
        logger.info("demo_exchange_connected")
        return True

    async def disconnect(self) -> None:
        """Disconnect from the demo exchange."""
        self._connected = False
        logger.info("demo_exchange_disconnected")

    @property
    def is_connected(self) -> bool:
        """Check if connected."""
        return self._connected

    def set_price(self, symbol: str, price: Any) -> None:
        """Move the market price and fill any buy it crosses."""
        self._prices[symbol] = to_decimal(price)
        self._match(symbol)

    def set_balance(self, asset: str, available: Any) -> None:
        """Set the free balance of an asset."""
        self._free[asset.upper()] = to_decimal(available)

    def _get_price(self, symbol: str) -> Decimal:
        if symbol not in self._prices:
            self._prices[symbol] = _DEFAULT_FALLBACK_PRICE
        return self._prices[symbol]

    def _tick_price(self, symbol: str) -> Decimal:
        """Advance the price by a small random walk step."""
        price = self._get_price(symbol)
        if self.volatility > 0:
            step = Decimal(str(random.gauss(0, self.volatility)))
            price = max(price * (1 + step), Decimal("0.01")).quantize(Decimal("0.0001"))
            self._prices[symbol] = price
            self._match(symbol)
        return price

    @staticmethod
    def _split(symbol: str) -> tuple[str, str]:
        base, _, quote = symbol.partition("/")
        return base, quote

    def _add(self, book: dict[str, Decimal], asset: str, amount: Decimal) -> None:
        book[asset] = book.get(asset, Decimal("0")) + amount

    def _match(self, symbol: str) -> None:
        """Fill resting buys at or above the current price."""
        price = self._get_price(symbol)
        base, quote = self._split(symbol)
        for order in self._orders.values():
            if (
                order.symbol != symbol
                or order.side != OrderSide.BUY
                or order.status != OrderStatus.NEW
                or order.price < price
            ):
                continue
            cost = order.price * order.quantity
            self._add(self._locked, quote, -cost)
            self._add(self._free, base, order.quantity)
            order.status = OrderStatus.FILLED
            order.filled_quantity = order.quantity
            order.filled_amount = cost
            logger.info(
                "demo_order_filled", order_id=order.id, symbol=symbol, price=str(order.price)
            )

    async def get_ticker(self, symbol: str) -> Ticker:
        """Get synthetic ticker data."""
        self._ensure_connected()
        price = self._tick_price(symbol)
        spread = price * Decimal("0.0005")
        return Ticker(
            symbol=symbol,
            last_price=price,
            bid=price - spread,
            ask=price + spread,
            timestamp=self._clock(),
        )

    async def get_balances(self) -> dict[str, Balance]:
        """Return the simulated balances."""
        self._ensure_connected()
        assets = set(self._free) | set(self._locked)
        return {
            asset: Balance(
                asset=asset,
                available=self._free.get(asset, Decimal("0")),
                locked=self._locked.get(asset, Decimal("0")),
            )
            for asset in sorted(assets)
        }

    async def get_open_orders(self, symbol: str) -> list[SubmittedOrder]:
        """Get resting orders."""
        self._ensure_connected()
        return [
            order
            for order in self._orders.values()
            if order.symbol == symbol and order.status == OrderStatus.NEW
        ]

    async def get_order_history(self, symbol: str) -> list[SubmittedOrder]:
        """Get every order ever placed on a symbol."""
        self._ensure_connected()
        return [order for order in self._orders.values() if order.symbol == symbol]

    async def submit_order(self, request: OrderRequest) -> SubmittedOrder:
        """Simulate a limit order."""
        self._ensure_connected()

        # Idempotent on the client order id
        for existing in self._orders.values():
            if existing.client_order_id == request.client_order_id:
                return existing

        base, quote = self._split(request.symbol)
        price = self._get_price(request.symbol)
        order = SubmittedOrder(
            id=uuid.uuid4().hex[:12],
            symbol=request.symbol,
            side=request.side,
            status=OrderStatus.NEW,
            price=request.price,
            quantity=request.quantity,
            create_time=self._clock(),
            client_order_id=request.client_order_id,
        )

        if request.side == OrderSide.BUY:
            cost = request.price * request.quantity
            if self._free.get(quote, Decimal("0")) < cost:
                raise ValueError(f"Insufficient {quote} balance for order of {cost}")
            self._add(self._free, quote, -cost)
            self._add(self._locked, quote, cost)
            self._orders[order.id] = order
            self._match(request.symbol)
        else:
            available = self._free.get(base, Decimal("0"))
            quantity = min(request.quantity, available)
            if request.price <= price and quantity > 0:
                self._add(self._free, base, -quantity)
                self._add(self._free, quote, quantity * request.price)
                order.filled_quantity = quantity
                order.filled_amount = quantity * request.price
                order.status = (
                    OrderStatus.FILLED
                    if quantity == request.quantity
                    else OrderStatus.PARTIALLY_FILLED
                )
            elif request.time_in_force == TimeInForce.IOC:
                order.status = OrderStatus.CANCELED
            self._orders[order.id] = order

        logger.info(
            "demo_order_submitted",
            order_id=order.id,
            symbol=request.symbol,
            side=request.side.value,
            price=str(request.price),
            quantity=str(request.quantity),
            status=order.status.value,
        )
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> dict[str, Any]:
        """Cancel a demo order."""
        self._ensure_connected()
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise ValueError(f"Order not found: {order_id}")
        if order.status == OrderStatus.NEW:
            order.status = OrderStatus.CANCELED
            if order.side == OrderSide.BUY:
                _, quote = self._split(symbol)
                cost = order.price * order.quantity
                self._add(self._locked, quote, -cost)
                self._add(self._free, quote, cost)
        logger.info("demo_order_cancelled", order_id=order_id, symbol=symbol)
        return {"id": order_id, "status": order.status.value}

    async def cancel_all_orders(self, symbol: str) -> list[dict[str, Any]]:
        """Cancel every resting order of a symbol."""
        self._ensure_connected()
        return [
            await self.cancel_order(symbol, order.id)
            for order in await self.get_open_orders(symbol)
            if order.id is not None
        ]
