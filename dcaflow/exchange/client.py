"""CCXT async wrapper for live exchange connectivity."""

from datetime import UTC, datetime
from typing import Any

import ccxt.async_support as ccxt

from dcaflow.config import Settings
from dcaflow.core.logging import LogMessages, get_logger
from dcaflow.core.models import (
    Balance,
    OrderRequest,
    OrderSide,
    OrderStatus,
    SubmittedOrder,
    Ticker,
    to_decimal,
)
from dcaflow.exchange.adapter import ExchangeAdapter

logger = get_logger(__name__)


def _timestamp(value: Any) -> datetime | None:
    """Convert a CCXT millisecond timestamp to an aware datetime."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def normalize_status(status: str | None, filled: Any) -> OrderStatus:
    """Map a CCXT unified order status onto the engine's statuses.

    A closed-out order that executed anything counts as PartiallyFilled, so
    its fill still reaches the ledger.
    """
    has_filled = to_decimal(filled) > 0
    if status == "closed":
        return OrderStatus.FILLED
    if status == "open":
        return OrderStatus.PARTIALLY_FILLED if has_filled else OrderStatus.NEW
    if status in ("canceled", "cancelled", "expired", "rejected"):
        return OrderStatus.PARTIALLY_FILLED if has_filled else OrderStatus.CANCELED
    return OrderStatus.NEW


def normalize_order(order: dict[str, Any], symbol: str | None = None) -> SubmittedOrder:
    """Convert a CCXT unified order structure to a SubmittedOrder."""
    filled = order.get("filled")
    cost = order.get("cost")
    order_id = order.get("id")
    return SubmittedOrder(
        id=str(order_id) if order_id not in (None, "") else None,
        symbol=order.get("symbol") or symbol or "",
        side=OrderSide.SELL if order.get("side") == "sell" else OrderSide.BUY,
        status=normalize_status(order.get("status"), filled),
        price=to_decimal(order.get("price")),
        quantity=to_decimal(order.get("amount")),
        filled_amount=None if cost is None else to_decimal(cost),
        filled_quantity=None if filled is None else to_decimal(filled),
        create_time=_timestamp(order.get("timestamp")),
        client_order_id=order.get("clientOrderId"),
        raw=order,
    )


class ExchangeClient(ExchangeAdapter):
    """
    Async wrapper for any CCXT-supported spot exchange.

    Handles connection and normalizes market data, balances and orders into
    the engine's models. Failures propagate unchanged.
    """

    def __init__(self, settings: Settings, exchange_id: str | None = None):
        """Initialize the client.

        Args:
            settings: Application settings (credentials, exchange id)
            exchange_id: CCXT exchange id, defaults to ``settings.system.exchange``
        """
        self.settings = settings
        self.exchange_id = (exchange_id or settings.system.exchange).lower()
        self._exchange: ccxt.Exchange | None = None

    async def connect(self) -> bool:
        """Connect to the exchange.

        Returns:
            True if connection successful, False otherwise
        """
        exchange_class = getattr(ccxt, self.exchange_id, None)
        if exchange_class is None:
            logger.error("exchange_not_supported", exchange=self.exchange_id)
            return False

        try:
            config: dict[str, Any] = {
                "enableRateLimit": True,
                "options": {"defaultType": "spot"},
            }

            api = self.settings.api
            if api.has_credentials:
                config["apiKey"] = api.public_key.get_secret_value()
                config["secret"] = api.private_key.get_secret_value()

            self._exchange = exchange_class(config)
            await self._exchange.load_markets()

            LogMessages.Message(
                simple=f"Connected to {self.exchange_id}",
                technical=f"Exchange connection established: {self.exchange_id}",
            ).log(logger)
            return True

        except ccxt.NetworkError as e:
            logger.error("exchange_network_error", error=str(e))
        except ccxt.ExchangeError as e:
            logger.error("exchange_error", error=str(e))
        except Exception as e:
            logger.error("exchange_connection_failed", error=str(e))

        await self.disconnect()
        return False

    async def disconnect(self) -> None:
        """Disconnect from the exchange."""
        if self._exchange:
            await self._exchange.close()
            self._exchange = None
            logger.info("exchange_disconnected", exchange=self.exchange_id)

    @property
    def is_connected(self) -> bool:
        """Check if connected to exchange."""
        return self._exchange is not None

    @property
    def exchange(self) -> ccxt.Exchange:
        """Underlying CCXT exchange (requires a connection)."""
        self._ensure_connected()
        assert self._exchange is not None
        return self._exchange

    async def get_ticker(self, symbol: str) -> Ticker:
        """Get current ticker for a symbol."""
        ticker = await self.exchange.fetch_ticker(symbol)
        return Ticker(
            symbol=ticker.get("symbol") or symbol,
            last_price=to_decimal(ticker.get("last")),
            bid=None if ticker.get("bid") is None else to_decimal(ticker["bid"]),
            ask=None if ticker.get("ask") is None else to_decimal(ticker["ask"]),
            timestamp=_timestamp(ticker.get("timestamp")),
        )

    async def get_balances(self) -> dict[str, Balance]:
        """Get account balances (staked funds are not reported by CCXT)."""
        balance = await self.exchange.fetch_balance()
        free = balance.get("free") or {}
        used = balance.get("used") or {}
        assets = set(free) | set(used)
        return {
            asset: Balance(
                asset=asset,
                available=to_decimal(free.get(asset)),
                locked=to_decimal(used.get(asset)),
            )
            for asset in sorted(assets)
        }

    async def get_open_orders(self, symbol: str) -> list[SubmittedOrder]:
        """Get open orders for a symbol."""
        orders = await self.exchange.fetch_open_orders(symbol)
        return [normalize_order(order, symbol) for order in orders]

    async def get_order_history(self, symbol: str) -> list[SubmittedOrder]:
        """Get order history for a symbol."""
        orders = await self.exchange.fetch_orders(symbol)
        return [normalize_order(order, symbol) for order in orders]

    async def submit_order(self, request: OrderRequest) -> SubmittedOrder:
        """Submit a limit order."""
        params = {
            "timeInForce": request.time_in_force.value,
            "clientOrderId": request.client_order_id,
        }
        order = await self.exchange.create_order(
            request.symbol,
            request.order_type.value,
            request.side.value,
            float(request.quantity),
            float(request.price),
            params,
        )
        logger.info("order_submitted", **request.to_dict(), order_id=order.get("id"))
        return normalize_order(order, request.symbol)

    async def cancel_order(self, symbol: str, order_id: str) -> dict[str, Any]:
        """Cancel an order."""
        result = await self.exchange.cancel_order(order_id, symbol)
        logger.info("order_cancelled", order_id=order_id, symbol=symbol)
        return result or {}

    async def cancel_all_orders(self, symbol: str) -> Any:
        """Cancel every open order of a symbol."""
        result = await self.exchange.cancel_all_orders(symbol)
        logger.info("all_orders_cancelled", symbol=symbol)
        return result
