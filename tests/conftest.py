"""Shared pytest fixtures."""

import logging
import os
from datetime import UTC, datetime, timedelta

import pytest

from dcaflow.config import Settings, SettingsStore
from dcaflow.core.quantizer import PrecisionTable, Quantizer


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class SleepRecorder:
    """Awaitable sleep replacement that records delays and returns at once."""

    def __init__(self):
        self.calls: list[float] = []
        self.hooks: list = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        for hook in self.hooks:
            hook(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of settings."""
    for key in list(os.environ):
        if key.startswith("DCAFLOW_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def precision_table():
    """Precision table with BTC as the integer-priced asset."""
    return PrecisionTable.build(
        price_precisions={"BTC": 0, "ETH": 2, "SOL": 2, "DEFAULT": 2},
        quantity_precisions={"BTC": 8, "ETH": 4, "SOL": 2, "DEFAULT": 2},
        min_quantities={"BTC": "0.00001", "ETH": "0.001", "SOL": "0.01", "DEFAULT": "0.1"},
        tick_size="0.01",
        integer_priced_assets=["BTC"],
    )


@pytest.fixture
def quantizer(precision_table):
    """Quantizer over the test precision table."""
    return Quantizer(precision_table)


@pytest.fixture
def settings():
    """Demo settings trading SOL/USDC with short, testable timings."""
    return Settings(
        system={"mode": "demo", "logDir": None},
        trading={
            "tradingCoin": "SOL",
            "maxDropPercentage": 10,
            "totalAmount": 1000,
            "orderCount": 5,
            "incrementPercentage": 10,
            "takeProfitPercentage": 5,
        },
        actions={
            "sellNonUsdcAssets": False,
            "cancelAllOrders": True,
            "autoRestartNoFill": False,
            "restartAfterTakeProfit": False,
        },
        advanced={
            "priceTickSize": 0.01,
            "minOrderAmount": 10,
            "monitorIntervalSeconds": 30,
            "checkOrdersIntervalMinutes": 10,
            "noFillRestartMinutes": 60,
        },
    )


@pytest.fixture
def store(settings):
    """Settings store without a backing file."""
    return SettingsStore(settings=settings)


@pytest.fixture
def clock():
    """Controllable clock."""
    return FakeClock()


@pytest.fixture
def no_sleep():
    """Sleep replacement that records the requested delays."""
    return SleepRecorder()


@pytest.fixture
def restore_root_logger():
    """Put the root handlers back after a test reconfigures logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
