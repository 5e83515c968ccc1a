"""Tests for the in-memory demo exchange."""

from decimal import Decimal

import pytest

from dcaflow.core.models import OrderRequest, OrderSide, OrderStatus, TimeInForce
from dcaflow.exchange.adapter import ExchangeAdapter
from dcaflow.exchange.demo import DemoExchangeClient

SYMBOL = "SOL/USDC"


@pytest.fixture
async def demo(clock):
    """Connected demo client with a fixed SOL price."""
    client = DemoExchangeClient(volatility=0, prices={SYMBOL: Decimal("100")}, clock=clock)
    await client.connect()
    return client


def buy(price, quantity, **kwargs):
    return OrderRequest(
        symbol=SYMBOL,
        side=OrderSide.BUY,
        price=Decimal(price),
        quantity=Decimal(quantity),
        **kwargs,
    )


def sell(price, quantity):
    return OrderRequest(
        symbol=SYMBOL,
        side=OrderSide.SELL,
        price=Decimal(price),
        quantity=Decimal(quantity),
        time_in_force=TimeInForce.IOC,
    )


class TestDemoInterface:
    """DemoExchangeClient implements ExchangeAdapter."""

    def test_is_subclass_of_exchange_adapter(self):
        assert issubclass(DemoExchangeClient, ExchangeAdapter)

    async def test_connect_disconnect(self):
        client = DemoExchangeClient()
        assert not client.is_connected
        assert await client.connect() is True
        await client.disconnect()
        assert not client.is_connected

    async def test_requires_connection(self):
        with pytest.raises(RuntimeError, match="Not connected"):
            await DemoExchangeClient().get_balances()


class TestDemoMarket:
    """Prices and balances."""

    async def test_fixed_price_without_volatility(self, demo):
        first = await demo.get_ticker(SYMBOL)
        second = await demo.get_ticker(SYMBOL)
        assert first.last_price == second.last_price == Decimal("100")

    async def test_random_walk_moves_price(self, clock):
        client = DemoExchangeClient(volatility=0.05, clock=clock)
        await client.connect()
        prices = {(await client.get_ticker("ETH/USDC")).last_price for _ in range(20)}
        assert len(prices) > 1

    async def test_initial_quote_balance(self, demo):
        balances = await demo.get_balances()
        assert balances["USDC"].available == Decimal("10000")


class TestDemoOrders:
    """Order matching."""

    async def test_resting_buy_locks_funds(self, demo):
        order = await demo.submit_order(buy("95", "2"))

        assert order.status == OrderStatus.NEW
        balances = await demo.get_balances()
        assert balances["USDC"].available == Decimal("9810")
        assert balances["USDC"].locked == Decimal("190")
        assert [o.id for o in await demo.get_open_orders(SYMBOL)] == [order.id]

    async def test_buy_fills_when_price_trades_through(self, demo):
        order = await demo.submit_order(buy("95", "2"))

        demo.set_price(SYMBOL, "94.5")

        assert order.status == OrderStatus.FILLED
        assert order.filled_quantity == Decimal("2")
        assert order.filled_amount == Decimal("190")
        balances = await demo.get_balances()
        assert balances["SOL"].available == Decimal("2")
        assert balances["USDC"].locked == 0
        assert await demo.get_open_orders(SYMBOL) == []

    async def test_marketable_buy_fills_immediately(self, demo):
        order = await demo.submit_order(buy("100", "1"))
        assert order.status == OrderStatus.FILLED

    async def test_insufficient_funds(self, demo):
        with pytest.raises(ValueError, match="Insufficient"):
            await demo.submit_order(buy("100", "1000"))

    async def test_same_client_order_id_is_idempotent(self, demo):
        request = buy("90", "1")
        first = await demo.submit_order(request)
        second = await demo.submit_order(request)
        assert first is second
        assert len(await demo.get_order_history(SYMBOL)) == 1

    async def test_ioc_sell_fills(self, demo):
        demo.set_balance("SOL", "3")

        order = await demo.submit_order(sell("99.5", "3"))

        assert order.status == OrderStatus.FILLED
        balances = await demo.get_balances()
        assert balances["SOL"].available == 0
        assert balances["USDC"].available == Decimal("10298.5")

    async def test_ioc_sell_above_market_cancels(self, demo):
        demo.set_balance("SOL", "3")

        order = await demo.submit_order(sell("101", "3"))

        assert order.status == OrderStatus.CANCELED
        assert (await demo.get_balances())["SOL"].available == Decimal("3")

    async def test_ioc_sell_partial(self, demo):
        demo.set_balance("SOL", "1")
        order = await demo.submit_order(sell("99", "3"))
        assert order.status == OrderStatus.PARTIALLY_FILLED
        assert order.filled_quantity == Decimal("1")

    async def test_cancel_releases_funds(self, demo):
        order = await demo.submit_order(buy("95", "2"))

        await demo.cancel_order(SYMBOL, order.id)

        assert order.status == OrderStatus.CANCELED
        assert (await demo.get_balances())["USDC"].available == Decimal("10000")

    async def test_cancel_unknown_order(self, demo):
        with pytest.raises(ValueError, match="not found"):
            await demo.cancel_order(SYMBOL, "missing")

    async def test_cancel_all(self, demo):
        await demo.submit_order(buy("95", "1"))
        await demo.submit_order(buy("90", "1"))

        result = await demo.cancel_all_orders(SYMBOL)

        assert len(result) == 2
        assert await demo.get_open_orders(SYMBOL) == []

    async def test_history_keeps_creation_time(self, demo, clock):
        order = await demo.submit_order(buy("95", "1"))
        history = await demo.get_order_history(SYMBOL)
        assert history == [order]
        assert order.create_time == clock.now
