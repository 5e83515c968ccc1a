"""Tests for order lifecycle operations."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt_async
import pytest

from dcaflow.core.errors import (
    LiquidationIncomplete,
    OrderRejected,
    ReconciliationUnavailable,
)
from dcaflow.core.ledger import FillLedger
from dcaflow.core.models import (
    Balance,
    OrderLadder,
    OrderSide,
    OrderStatus,
    PlannedOrder,
    SubmittedOrder,
    Ticker,
    TimeInForce,
)
from dcaflow.core.retry import RetryExecutor
from dcaflow.exchange.adapter import ExchangeAdapter
from dcaflow.exchange.demo import DemoExchangeClient
from dcaflow.exchange.orders import OrderLifecycle

SYMBOL = "SOL/USDC"


def make_order(order_id="1", status=OrderStatus.NEW, side=OrderSide.BUY, price="95", **kwargs):
    return SubmittedOrder(
        id=order_id,
        symbol=SYMBOL,
        side=side,
        status=status,
        price=Decimal(price),
        quantity=Decimal(kwargs.pop("quantity", "1")),
        **kwargs,
    )


def sol_balance(available):
    return {"SOL": Balance(asset="SOL", available=Decimal(available))}


@pytest.fixture
def adapter():
    """Mock exchange adapter."""
    mock = MagicMock(spec=ExchangeAdapter)
    mock.get_ticker.return_value = Ticker(symbol=SYMBOL, last_price=Decimal("100"))
    mock.symbol_for.side_effect = lambda base, quote: f"{base}/{quote}"
    return mock


@pytest.fixture
async def demo(clock):
    """Connected demo exchange at SOL = 100."""
    client = DemoExchangeClient(volatility=0, prices={SYMBOL: Decimal("100")}, clock=clock)
    await client.connect()
    return client


@pytest.fixture
def make_lifecycle(quantizer, clock, no_sleep):
    """Build a lifecycle over any adapter with instant retries."""

    def build(exchange):
        return OrderLifecycle(
            exchange,
            RetryExecutor(sleep=no_sleep),
            quantizer,
            FillLedger(clock=clock),
            sleep=no_sleep,
        )

    return build


class TestPlaceBuy:
    """Limit buy placement."""

    async def test_quantizes_and_records_submission(self, demo, make_lifecycle):
        lifecycle = make_lifecycle(demo)

        order = await lifecycle.place_buy(SYMBOL, Decimal("95.129"), Decimal("1.239"), "SOL")

        assert order.price == Decimal("95.12")
        assert order.quantity == Decimal("1.23")
        assert order.status == OrderStatus.NEW
        assert lifecycle.ledger.stats.total_orders == 1
        assert not lifecycle.ledger.has_fills

    async def test_immediate_fill_reaches_ledger(self, demo, make_lifecycle):
        lifecycle = make_lifecycle(demo)

        await lifecycle.place_buy(SYMBOL, Decimal("100"), Decimal("2"), "SOL")

        assert lifecycle.ledger.has_fills
        assert lifecycle.ledger.average_price == Decimal("100")

    async def test_back_fills_missing_fill_values(self, adapter, make_lifecycle):
        adapter.submit_order.return_value = make_order("42", status=OrderStatus.FILLED)
        lifecycle = make_lifecycle(adapter)

        order = await lifecycle.place_buy(SYMBOL, Decimal("95"), Decimal("2"), "SOL")

        assert order.filled_amount == Decimal("190")
        assert order.filled_quantity == Decimal("2")
        assert lifecycle.ledger.average_price == Decimal("95")

    async def test_resting_order_not_back_filled(self, adapter, make_lifecycle):
        adapter.submit_order.return_value = make_order("43", status=OrderStatus.NEW)
        lifecycle = make_lifecycle(adapter)

        order = await lifecycle.place_buy(SYMBOL, Decimal("95"), Decimal("2"), "SOL")

        assert order.filled_quantity is None
        assert not lifecycle.ledger.has_fills

    async def test_missing_id_rejected(self, adapter, make_lifecycle):
        adapter.submit_order.return_value = make_order(order_id=None)
        lifecycle = make_lifecycle(adapter)

        with pytest.raises(OrderRejected):
            await lifecycle.place_buy(SYMBOL, Decimal("95"), Decimal("1"), "SOL")
        assert lifecycle.ledger.stats.total_orders == 0

    async def test_zero_quantity_rejected_before_submission(self, adapter, make_lifecycle):
        lifecycle = make_lifecycle(adapter)

        with pytest.raises(OrderRejected):
            await lifecycle.place_buy(SYMBOL, Decimal("95"), Decimal("0.001"), "SOL")
        adapter.submit_order.assert_not_awaited()

    async def test_retry_reuses_client_order_id(self, adapter, make_lifecycle):
        adapter.submit_order.side_effect = [TimeoutError("timed out"), make_order("7")]
        lifecycle = make_lifecycle(adapter)

        await lifecycle.place_buy(SYMBOL, Decimal("95"), Decimal("1"), "SOL")

        requests = [call.args[0] for call in adapter.submit_order.await_args_list]
        assert len(requests) == 2
        assert requests[0].client_order_id == requests[1].client_order_id
        assert requests[0].time_in_force == TimeInForce.GTC


class TestSubmitLadder:
    """Ladder submission."""

    @pytest.fixture
    def ladder(self):
        return OrderLadder(
            symbol=SYMBOL,
            asset="SOL",
            orders=[
                PlannedOrder(price=Decimal("100"), quantity=Decimal("1"), amount=Decimal("100")),
                PlannedOrder(price=Decimal("95"), quantity=Decimal("1"), amount=Decimal("95")),
                PlannedOrder(price=Decimal("90"), quantity=Decimal("1"), amount=Decimal("90")),
            ],
        )

    async def test_submits_all_with_pacing(self, adapter, make_lifecycle, ladder, no_sleep):
        adapter.submit_order.side_effect = [make_order(str(i)) for i in range(3)]
        lifecycle = make_lifecycle(adapter)

        submitted = await lifecycle.submit_ladder(ladder)

        assert [o.id for o in submitted] == ["0", "1", "2"]
        assert no_sleep.calls == [1.0, 1.0]

    async def test_insufficient_funds_aborts(self, adapter, make_lifecycle, ladder):
        adapter.submit_order.side_effect = [
            make_order("0"),
            ccxt_async.InsufficientFunds("balance too low"),
            ccxt_async.InsufficientFunds("balance too low"),
            ccxt_async.InsufficientFunds("balance too low"),
        ]
        lifecycle = make_lifecycle(adapter)

        submitted = await lifecycle.submit_ladder(ladder)

        assert [o.id for o in submitted] == ["0"]
        # One success plus three attempts for the failing order; the third is never sent
        assert adapter.submit_order.await_count == 4

    async def test_other_failures_skip_order(self, adapter, make_lifecycle, ladder):
        adapter.submit_order.side_effect = [
            make_order("0"),
            make_order(order_id=None),
            make_order("2"),
        ]
        lifecycle = make_lifecycle(adapter)

        submitted = await lifecycle.submit_ladder(ladder)

        assert [o.id for o in submitted] == ["0", "2"]


class TestCancelAll:
    """Batch cancel with per-order fallback."""

    async def test_batch_success(self, adapter, make_lifecycle):
        lifecycle = make_lifecycle(adapter)

        report = await lifecycle.cancel_all(SYMBOL)

        assert report.strategy == "batch"
        assert report.ok
        adapter.get_open_orders.assert_not_awaited()

    async def test_falls_back_to_each_order(self, adapter, make_lifecycle, no_sleep):
        adapter.cancel_all_orders.side_effect = RuntimeError("batch cancel unsupported")
        adapter.get_open_orders.return_value = [
            make_order("a"),
            make_order("b"),
            make_order("s", side=OrderSide.SELL),
        ]

        async def cancel(symbol, order_id):
            if order_id == "b":
                raise RuntimeError("already gone")
            return {"id": order_id}

        adapter.cancel_order.side_effect = cancel
        lifecycle = make_lifecycle(adapter)

        report = await lifecycle.cancel_all(SYMBOL)

        assert report.strategy == "per_order"
        assert report.cancelled == ["a"]
        assert list(report.failed) == ["b"]
        assert not report.ok
        assert adapter.cancel_all_orders.await_count == 3
        cancelled_ids = {call.args[1] for call in adapter.cancel_order.await_args_list}
        assert "s" not in cancelled_ids
        assert 0.5 in no_sleep.calls

    async def test_never_raises(self, adapter, make_lifecycle):
        adapter.cancel_all_orders.side_effect = RuntimeError("down")
        adapter.get_open_orders.side_effect = RuntimeError("down")
        lifecycle = make_lifecycle(adapter)

        report = await lifecycle.cancel_all(SYMBOL)

        assert report.strategy is None
        assert report.error is not None
        assert not report.ok

    async def test_fallback_fetch_attempted_three_times(self, adapter, make_lifecycle, no_sleep):
        """The open-order fetch of the fallback is not retried inside its own retries."""
        adapter.cancel_all_orders.side_effect = RuntimeError("down")
        adapter.get_open_orders.side_effect = RuntimeError("down")
        lifecycle = make_lifecycle(adapter)

        await lifecycle.cancel_all(SYMBOL)

        assert adapter.cancel_all_orders.await_count == 3
        assert adapter.get_open_orders.await_count == 3
        assert no_sleep.calls == [1.0, 2.0, 1.0, 2.0]

    async def test_demo_cancel_all(self, demo, make_lifecycle):
        lifecycle = make_lifecycle(demo)
        await lifecycle.place_buy(SYMBOL, Decimal("90"), Decimal("1"), "SOL")

        report = await lifecycle.cancel_all(SYMBOL)

        assert report.ok
        assert await demo.get_open_orders(SYMBOL) == []


class TestLiquidate:
    """Two-step IOC liquidation."""

    async def test_no_position(self, adapter, make_lifecycle):
        adapter.get_balances.return_value = {}
        lifecycle = make_lifecycle(adapter)

        assert await lifecycle.liquidate(SYMBOL, "SOL") is None
        adapter.submit_order.assert_not_awaited()

    async def test_first_sell_fills(self, demo, make_lifecycle):
        demo.set_balance("SOL", "2")
        lifecycle = make_lifecycle(demo)

        result = await lifecycle.liquidate(SYMBOL, "SOL")

        assert result.complete
        assert result.quantity_sold == Decimal("2")
        assert len(result.orders) == 1
        assert result.orders[0].price == Decimal("99.50")

    async def test_second_sell_for_remainder(self, adapter, make_lifecycle):
        adapter.get_balances.side_effect = [sol_balance("2"), sol_balance("1"), {}]
        adapter.submit_order.side_effect = [
            make_order("s1", status=OrderStatus.PARTIALLY_FILLED, side=OrderSide.SELL),
            make_order("s2", status=OrderStatus.FILLED, side=OrderSide.SELL),
        ]
        lifecycle = make_lifecycle(adapter)

        result = await lifecycle.liquidate(SYMBOL, "SOL")

        requests = [call.args[0] for call in adapter.submit_order.await_args_list]
        assert [r.price for r in requests] == [Decimal("99.50"), Decimal("99.00")]
        assert [r.quantity for r in requests] == [Decimal("2"), Decimal("1")]
        assert all(r.time_in_force == TimeInForce.IOC for r in requests)
        assert all(r.side == OrderSide.SELL for r in requests)
        assert result.complete
        assert result.quantity_sold == Decimal("2")

    async def test_residual_raises_incomplete(self, adapter, make_lifecycle):
        adapter.get_balances.return_value = sol_balance("2")
        adapter.submit_order.return_value = make_order(
            "s", status=OrderStatus.CANCELED, side=OrderSide.SELL
        )
        lifecycle = make_lifecycle(adapter)

        with pytest.raises(LiquidationIncomplete) as exc_info:
            await lifecycle.liquidate(SYMBOL, "SOL")

        result = exc_info.value.result
        assert result.residual == Decimal("2")
        assert len(result.orders) == 2

    async def test_dust_is_not_residual(self, adapter, make_lifecycle):
        adapter.get_balances.side_effect = [sol_balance("2"), sol_balance("0.004")]
        adapter.submit_order.return_value = make_order(
            "s", status=OrderStatus.FILLED, side=OrderSide.SELL
        )
        lifecycle = make_lifecycle(adapter)

        result = await lifecycle.liquidate(SYMBOL, "SOL")

        assert result.complete


class TestHistoryAndRequote:
    """History fetch and re-quote."""

    async def test_history_failure(self, adapter, make_lifecycle):
        adapter.get_order_history.side_effect = RuntimeError("endpoint down")
        lifecycle = make_lifecycle(adapter)

        with pytest.raises(ReconciliationUnavailable):
            await lifecycle.fetch_order_history(SYMBOL)

    async def test_reprice_buy(self, demo, make_lifecycle, no_sleep):
        lifecycle = make_lifecycle(demo)
        old = await lifecycle.place_buy(SYMBOL, Decimal("90"), Decimal("1.5"), "SOL")

        new = await lifecycle.reprice_buy(old, Decimal("97.456"), "SOL")

        assert old.status == OrderStatus.CANCELED
        assert new.price == Decimal("97.45")
        assert new.quantity == Decimal("1.5")
        assert 2.0 in no_sleep.calls
        assert [o.id for o in await demo.get_open_orders(SYMBOL)] == [new.id]


class TestBalances:
    """Balance table and non-quote sweep."""

    async def test_describe_balances(self, demo, make_lifecycle):
        demo.set_balance("SOL", "2")
        demo.set_balance("ETH", "0")
        lifecycle = make_lifecycle(demo)

        rows = {row.asset: row for row in await lifecycle.describe_balances("USDC")}

        assert set(rows) == {"SOL", "USDC"}
        assert rows["SOL"].value == Decimal("200")
        assert rows["USDC"].value == Decimal("10000")

    async def test_unpriced_asset_valued_at_zero(self, adapter, make_lifecycle):
        adapter.get_balances.return_value = sol_balance("2")
        adapter.get_ticker.side_effect = RuntimeError("no market")
        lifecycle = make_lifecycle(adapter)

        rows = await lifecycle.describe_balances("USDC")

        assert rows[0].value == 0

    async def test_sell_non_quote_assets(self, demo, make_lifecycle):
        demo.set_balance("SOL", "2")
        demo.set_balance("ETH", "0.001")  # Worth 3 USDC
        lifecycle = make_lifecycle(demo)

        results = await lifecycle.sell_non_quote_assets("USDC", Decimal("10"))

        assert [r.asset for r in results] == ["SOL"]
        balances = await demo.get_balances()
        assert balances["SOL"].available == 0
        assert balances["ETH"].available == Decimal("0.001")

    async def test_sweep_continues_after_failure(self, adapter, make_lifecycle):
        adapter.get_balances.return_value = {
            "ETH": Balance(asset="ETH", available=Decimal("1")),
            "SOL": Balance(asset="SOL", available=Decimal("1")),
        }
        adapter.submit_order.side_effect = RuntimeError("rejected")
        lifecycle = make_lifecycle(adapter)

        results = await lifecycle.sell_non_quote_assets("USDC", Decimal("10"))

        assert results == []
        # Three attempts per asset
        assert adapter.submit_order.await_count == 6
