"""Bounded exponential-backoff retry for remote calls.

This is the only place in dcaflow that retries. Exchange clients fail fast;
callers wrap every call that is safe to repeat in ``RetryExecutor.call``.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dcaflow.core.errors import RetryExhausted, error_body
from dcaflow.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]

# An ordered fallback strategy: a name for the logs and a zero-argument call
NamedStrategy = tuple[str, Callable[[], Awaitable[Any]]]


def _operation_name(operation: Callable[..., Any]) -> str:
    return getattr(operation, "__name__", None) or repr(operation)


class RetryExecutor:
    """Runs remote calls with bounded exponential backoff.

    Attempt ``k`` (0-indexed) that fails is followed by a wait of
    ``base_delay * 2**k`` seconds, except after the final attempt.

    Example:
        executor = RetryExecutor(max_attempts=3)
        ticker = await executor.call(client.get_ticker, "SOL/USDC")
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: SleepFn = asyncio.sleep,
    ):
        """Initialize the executor.

        Args:
            max_attempts: Total attempts per call, including the first
            base_delay: Wait in seconds after the first failure
            max_delay: Upper bound for a single wait
            sleep: Awaitable sleep function (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def _log_failure(self, operation: str) -> Callable[[RetryCallState], None]:
        def after(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.error(
                "remote_call_failed",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error),
                error_type=type(error).__name__,
                body=error_body(error) if error is not None else None,
            )

        return after

    def _log_wait(self, operation: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.info("remote_call_retry_wait", operation=operation, wait_seconds=wait)

        return before_sleep

    async def call(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        name: str | None = None,
        **kwargs: Any,
    ) -> T:
        """Call ``operation(*args, **kwargs)`` with retries.

        Args:
            operation: Async callable to invoke
            name: Label for the logs (defaults to the callable's name)

        Returns:
            The operation's result

        Raises:
            RetryExhausted: If every attempt failed
        """
        label = name or _operation_name(operation)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay),
            retry=retry_if_exception_type(Exception),
            after=self._log_failure(label),
            before_sleep=self._log_wait(label),
            sleep=self._sleep,
        )

        try:
            return await retrying(operation, *args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise RetryExhausted(label, self.max_attempts, last_error) from last_error

    async def first_success(self, name: str, strategies: Sequence[NamedStrategy]) -> Any:
        """Try named strategies in order until one succeeds.

        Each strategy runs through ``call`` (so it gets its own retries) and
        each failure is logged under the strategy's name.

        Args:
            name: Logical operation (e.g. "cancel_all")
            strategies: Ordered (strategy_name, zero-argument coroutine factory)

        Returns:
            Result of the first successful strategy

        Raises:
            RetryExhausted: From the last strategy, if all of them failed
        """
        if not strategies:
            raise ValueError("at least one strategy is required")

        last: RetryExhausted | None = None
        for strategy_name, factory in strategies:
            try:
                result = await self.call(factory, name=f"{name}:{strategy_name}")
            except RetryExhausted as e:
                logger.warning(
                    "strategy_failed",
                    operation=name,
                    strategy=strategy_name,
                    error=str(e.last_error),
                )
                last = e
                continue
            logger.info("strategy_succeeded", operation=name, strategy=strategy_name)
            return result

        assert last is not None
        raise last
