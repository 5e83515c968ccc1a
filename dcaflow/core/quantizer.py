"""Price and quantity quantization to instrument-valid values.

Every rule rounds down: an order built from quantized values never spends
more quote, or offers more base, than the caller asked for.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, Any

from dcaflow.core.models import to_decimal

if TYPE_CHECKING:
    from dcaflow.config import Settings

DEFAULT_KEY = "DEFAULT"

# Integer-priced assets never carry more quantity decimals than this
INTEGER_PRICED_MAX_QUANTITY_DECIMALS = 5


@dataclass(frozen=True)
class InstrumentProfile:
    """Precision constraints of one asset."""

    price_precision: int
    quantity_precision: int
    tick_size: Decimal
    min_quantity: Decimal

    @property
    def step_size(self) -> Decimal:
        """Minimum quantity increment, ``10^-quantity_precision``."""
        return Decimal(1).scaleb(-self.quantity_precision)


@dataclass(frozen=True)
class PrecisionTable:
    """Per-asset precision profiles with a DEFAULT fallback.

    A fallback applies only when the asset has no entry at all; an explicit
    zero precision is a real value.
    """

    price_precisions: Mapping[str, int]
    quantity_precisions: Mapping[str, int]
    min_quantities: Mapping[str, Decimal]
    tick_size: Decimal = Decimal("0.01")
    integer_priced_assets: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        for name, table in (
            ("price_precisions", self.price_precisions),
            ("quantity_precisions", self.quantity_precisions),
            ("min_quantities", self.min_quantities),
        ):
            if DEFAULT_KEY not in table:
                raise ValueError(f"{name} must define a {DEFAULT_KEY} entry")
        if self.tick_size <= 0:
            raise ValueError("tick_size must be positive")

    @classmethod
    def build(
        cls,
        price_precisions: Mapping[str, int],
        quantity_precisions: Mapping[str, int],
        min_quantities: Mapping[str, Any],
        tick_size: Any = "0.01",
        integer_priced_assets: Iterable[str] = ("BTC",),
    ) -> "PrecisionTable":
        """Build a table from raw config values."""
        return cls(
            price_precisions={k.upper(): int(v) for k, v in price_precisions.items()},
            quantity_precisions={k.upper(): int(v) for k, v in quantity_precisions.items()},
            min_quantities={k.upper(): to_decimal(v) for k, v in min_quantities.items()},
            tick_size=to_decimal(tick_size),
            integer_priced_assets=frozenset(a.upper() for a in integer_priced_assets),
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PrecisionTable":
        """Build a table from a settings snapshot."""
        return cls.build(
            price_precisions=settings.price_precisions,
            quantity_precisions=settings.quantity_precisions,
            min_quantities=settings.min_quantities,
            tick_size=settings.advanced.price_tick_size,
            integer_priced_assets=settings.advanced.integer_priced_assets,
        )

    @staticmethod
    def _lookup(table: Mapping[str, Any], asset: str) -> Any:
        key = asset.upper()
        return table[key] if key in table else table[DEFAULT_KEY]

    def profile(self, asset: str) -> InstrumentProfile:
        """Get the precision profile of an asset."""
        return InstrumentProfile(
            price_precision=self._lookup(self.price_precisions, asset),
            quantity_precision=self._lookup(self.quantity_precisions, asset),
            tick_size=self.tick_size,
            min_quantity=self._lookup(self.min_quantities, asset),
        )

    def is_integer_priced(self, asset: str) -> bool:
        """Whether the asset trades at whole quote units."""
        return asset.upper() in self.integer_priced_assets


def floor_to_multiple(value: Decimal, step: Decimal) -> Decimal:
    """Largest multiple of ``step`` that is <= ``value``."""
    return (value / step).to_integral_value(rounding=ROUND_DOWN) * step


def truncate(value: Decimal, decimals: int) -> Decimal:
    """Cut ``value`` to ``decimals`` fractional digits, rounding down."""
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


class Quantizer:
    """Turns raw prices and quantities into values an instrument accepts."""

    def __init__(self, table: PrecisionTable):
        self.table = table

    def quantize_price(self, price: Any, asset: str, *, use_tick: bool = True) -> Decimal:
        """Quantize a price for an asset.

        Floors to the tick size (unless ``use_tick`` is False, as for ladder
        planning), then truncates to the asset's price precision. Integer-priced
        assets are finally floored to a whole unit.

        Args:
            price: Raw price
            asset: Base asset (e.g. "SOL")
            use_tick: Whether to apply the tick-size floor

        Returns:
            Quantized price, never above ``price``
        """
        value = to_decimal(price)
        profile = self.table.profile(asset)

        if use_tick:
            value = floor_to_multiple(value, profile.tick_size)
        value = truncate(value, profile.price_precision)

        if self.table.is_integer_priced(asset):
            value = truncate(value, 0)

        return value

    def quantize_quantity(self, quantity: Any, asset: str) -> Decimal:
        """Quantize a quantity down to the asset's step size.

        Args:
            quantity: Raw quantity
            asset: Base asset

        Returns:
            Quantized quantity, never above ``quantity``
        """
        value = to_decimal(quantity)
        profile = self.table.profile(asset)
        decimals = profile.quantity_precision

        if self.table.is_integer_priced(asset):
            decimals = min(decimals, INTEGER_PRICED_MAX_QUANTITY_DECIMALS)

        value = floor_to_multiple(value, Decimal(1).scaleb(-decimals))
        return truncate(value, decimals)

    def min_quantity(self, asset: str) -> Decimal:
        """Smallest tradable quantity of an asset."""
        return self.table.profile(asset).min_quantity
