"""Structured logging configuration using structlog."""

import logging
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import structlog
from structlog.types import Processor


def get_log_level(level: str) -> int:
    """Convert string log level to logging constant."""
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
    }
    return levels.get(level.upper(), logging.INFO)


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    json_format: bool = False,
) -> None:
    """
    Configure structlog for the application.

    Console output always goes to stdout. When ``log_dir`` is given, a daily
    ``trading_<date>.log`` receives every record and ``error_<date>.log``
    receives ERROR and above.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Optional directory for daily log files
        json_format: Whether to use JSON format (for production)
    """
    log_level = get_log_level(level)

    # Shared processors for all outputs
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )
    # Files never get ANSI colors
    file_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer()
            if json_format
            else structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(console_formatter)
    root.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        today = date.today().isoformat()

        trading_file = logging.FileHandler(log_dir / f"trading_{today}.log", encoding="utf-8")
        trading_file.setFormatter(file_formatter)
        root.addHandler(trading_file)

        error_file = logging.FileHandler(log_dir / f"error_{today}.log", encoding="utf-8")
        error_file.setLevel(logging.ERROR)
        error_file.setFormatter(file_formatter)
        root.addHandler(error_file)

    root.setLevel(log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("ccxt").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Optional logger name (module name)

    Returns:
        Configured structlog logger
    """
    logger = structlog.get_logger(name)
    return logger


class LogMessages:
    """
    Centralized log messages with operator-friendly and technical versions.

    Usage:
        msg = LogMessages.order_placed("SOL/USDC", "buy", Decimal("1.5"), Decimal("98.2"))
        msg.log(logger)  # simple at INFO, technical at DEBUG
    """

    class Message:
        """A log message with simple and technical versions."""

        def __init__(self, simple: str, technical: str):
            self.simple = simple
            self.technical = technical

        def __str__(self) -> str:
            return self.simple

        def log(self, logger: Any, level: str = "info", **fields: Any) -> None:
            """Log the operator text at ``level`` and the technical text at DEBUG."""
            getattr(logger, level)(self.simple, **fields)
            logger.debug(self.technical)

    @staticmethod
    def ladder_planned(
        symbol: str, order_count: int, requested: Decimal, realized: Decimal
    ) -> "LogMessages.Message":
        """Buy ladder planned message."""
        return LogMessages.Message(
            simple=(
                f"Planned {order_count} buy orders on {symbol} "
                f"for {realized:,.2f} of {requested:,.2f}"
            ),
            technical=(
                f"Ladder planned: {symbol} orders={order_count} "
                f"requested={requested} realized={realized}"
            ),
        )

    @staticmethod
    def order_placed(
        symbol: str, side: str, quantity: Decimal, price: Decimal
    ) -> "LogMessages.Message":
        """Order placed message."""
        action = "Buy" if side == "buy" else "Sell"
        return LogMessages.Message(
            simple=f"{action} order placed: {quantity} {symbol.split('/')[0]} at {price}",
            technical=f"Order placed: {side.upper()} {quantity} {symbol} @ {price}",
        )

    @staticmethod
    def fill_recorded(
        order_id: str, quantity: Decimal, amount: Decimal, average_price: Decimal
    ) -> "LogMessages.Message":
        """Fill recorded in the ledger message."""
        return LogMessages.Message(
            simple=(
                f"Fill recorded: {quantity} for {amount:,.2f} "
                f"(average now {average_price:,.2f})"
            ),
            technical=(
                f"Fill recorded: order={order_id} qty={quantity} amount={amount} "
                f"avg={average_price}"
            ),
        )

    @staticmethod
    def take_profit_check(
        current_price: Decimal, average_price: Decimal, increase_pct: Decimal, target_pct: float
    ) -> "LogMessages.Message":
        """Take-profit evaluation message."""
        return LogMessages.Message(
            simple=(
                f"Price {current_price:,.2f} vs average {average_price:,.2f}: "
                f"{increase_pct:+.2f}% (target {target_pct}%)"
            ),
            technical=(
                f"Take-profit check: current={current_price} avg={average_price} "
                f"increase={increase_pct:.4f}% target={target_pct}%"
            ),
        )

    @staticmethod
    def liquidation(
        symbol: str, quantity: Decimal, residual: Decimal
    ) -> "LogMessages.Message":
        """Liquidation finished message."""
        if residual > 0:
            simple = f"Sold {quantity} on {symbol}, {residual} could not be sold"
        else:
            simple = f"Sold the whole {symbol} position ({quantity})"
        return LogMessages.Message(
            simple=simple,
            technical=f"Liquidation: {symbol} sold={quantity} residual={residual}",
        )

    @staticmethod
    def cycle_restart(reason: str, delay_seconds: float) -> "LogMessages.Message":
        """Cycle restart message."""
        return LogMessages.Message(
            simple=f"Starting a new trading cycle in {delay_seconds:g}s ({reason})",
            technical=f"Cycle restart: reason={reason} delay={delay_seconds}",
        )
