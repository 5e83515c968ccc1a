"""Trading strategy implementations.

This package contains the ladder planning math used by the trading cycle.
"""

from dcaflow.strategies.dca import DCAStrategy, plan_ladder, should_take_profit

__all__ = ["DCAStrategy", "plan_ladder", "should_take_profit"]
