"""Exception taxonomy for planning, execution and monitoring failures."""

import json
from typing import TYPE_CHECKING, Any

import ccxt.async_support as ccxt

if TYPE_CHECKING:
    from dcaflow.exchange.orders import LiquidationResult


class DCAFlowError(Exception):
    """Base class for all dcaflow errors."""


class ConfigError(DCAFlowError):
    """Configuration file is missing or invalid."""


class RetryExhausted(DCAFlowError):
    """A remote call kept failing after every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"{operation} failed after {attempts} attempts: {detail}")


class PlanningError(DCAFlowError):
    """No viable order ladder could be produced."""


class OrderRejected(DCAFlowError):
    """The exchange answered the submission without a usable order id."""


class LiquidationIncomplete(DCAFlowError):
    """Best-effort liquidation left part of the position unsold."""

    def __init__(self, result: "LiquidationResult"):
        self.result = result
        super().__init__(
            f"{result.symbol}: {result.residual} {result.asset} left after liquidation"
        )


class ReconciliationUnavailable(DCAFlowError):
    """Order history could not be fetched for reconciliation."""


def _error_chain(error: BaseException):
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if isinstance(current, RetryExhausted) and current.last_error is not None:
            current = current.last_error
        else:
            current = current.__cause__ or current.__context__


def is_insufficient_funds(error: BaseException) -> bool:
    """Check whether an error (or anything it wraps) reports insufficient funds."""
    for item in _error_chain(error):
        if isinstance(item, ccxt.InsufficientFunds):
            return True
        if "insufficient" in str(item).lower():
            return True
    return False


def error_body(error: BaseException) -> str | None:
    """Extract the structured error body of a remote failure, if any.

    Looks for ``error.response.body`` (HTTP client errors) and ``error.body``.
    Dicts and lists are rendered as JSON.
    """
    body: Any = None
    response = getattr(error, "response", None)
    if response is not None:
        body = getattr(response, "body", None)
    if body is None:
        body = getattr(error, "body", None)
    if body is None or body == "":
        return None
    if isinstance(body, (dict, list)):
        return json.dumps(body, default=str)
    return str(body)
