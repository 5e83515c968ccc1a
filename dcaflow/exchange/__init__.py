"""Exchange - Connectivity layer for live and demo exchanges."""

from dcaflow.config import Settings
from dcaflow.exchange.adapter import ExchangeAdapter
from dcaflow.exchange.client import ExchangeClient
from dcaflow.exchange.demo import DemoExchangeClient

__all__ = [
    "ExchangeAdapter",
    "ExchangeClient",
    "DemoExchangeClient",
    "get_exchange_adapter",
]


def get_exchange_adapter(settings: Settings) -> ExchangeAdapter:
    """Get the exchange adapter matching the settings.

    When mode is "demo", returns an in-memory demo client regardless of the
    exchange setting. Otherwise returns a CCXT client for
    ``settings.system.exchange``.

    Args:
        settings: Application settings

    Returns:
        An unconnected ExchangeAdapter instance.
    """
    if settings.is_demo_mode:
        return DemoExchangeClient(quote_currency=settings.system.quote_currency)
    return ExchangeClient(settings)
