"""Abstract base class for exchange adapters."""

from abc import ABC, abstractmethod
from typing import Any

from dcaflow.core.models import Balance, OrderRequest, SubmittedOrder, Ticker


class ExchangeAdapter(ABC):
    """
    Abstract base class for exchange adapters.

    Defines the remote operations the trading engine consumes. Implementations
    normalize exchange payloads into the core models and raise on any failure;
    they never retry (callers go through ``RetryExecutor``).
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if connected to exchange."""
        ...

    @abstractmethod
    async def connect(self) -> bool:
        """
        Connect to the exchange.

        Returns:
            True if connection successful, False otherwise
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the exchange."""
        ...

    def symbol_for(self, base: str, quote: str) -> str:
        """
        Build the trading pair symbol for an asset pair.

        Args:
            base: Base asset (e.g., "SOL")
            quote: Quote asset (e.g., "USDC")

        Returns:
            Symbol in unified "BASE/QUOTE" form
        """
        return f"{base.upper()}/{quote.upper()}"

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        """
        Get current ticker for a symbol.

        Args:
            symbol: Trading pair (e.g., "SOL/USDC")

        Returns:
            Ticker with the last traded price
        """
        ...

    @abstractmethod
    async def get_balances(self) -> dict[str, Balance]:
        """
        Get account balances.

        Returns:
            Balance per asset
        """
        ...

    @abstractmethod
    async def get_open_orders(self, symbol: str) -> list[SubmittedOrder]:
        """
        Get open orders.

        Args:
            symbol: Trading pair

        Returns:
            List of open orders
        """
        ...

    @abstractmethod
    async def get_order_history(self, symbol: str) -> list[SubmittedOrder]:
        """
        Get historical orders, open and closed.

        Args:
            symbol: Trading pair

        Returns:
            List of orders
        """
        ...

    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> SubmittedOrder:
        """
        Submit a limit order.

        Args:
            request: Order parameters

        Returns:
            The order as accepted by the exchange
        """
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> dict[str, Any]:
        """
        Cancel an order.

        Args:
            symbol: Trading pair
            order_id: Order ID to cancel

        Returns:
            Cancellation acknowledgement
        """
        ...

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> Any:
        """
        Cancel every open order of a symbol in one call.

        Args:
            symbol: Trading pair

        Returns:
            Cancellation acknowledgement
        """
        ...

    def _ensure_connected(self) -> None:
        """Raise error if not connected."""
        if not self.is_connected:
            raise RuntimeError("Not connected to exchange. Call connect() first.")
