"""Configuration management using Pydantic Settings.

Settings come from a JSON config file (camelCase keys, as written by
operators) layered over ``DCAFLOW_*`` environment variables and ``.env``.
Running components never read a global: they receive a ``SettingsStore``
whose snapshots are swapped whole between polling iterations.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from dcaflow.core.errors import ConfigError
from dcaflow.core.logging import get_logger
from dcaflow.core.quantizer import DEFAULT_KEY

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("dcaflow_config.json")


class _Section(BaseModel):
    """Config file section accepting camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ApiSettings(_Section):
    """Exchange API credentials."""

    private_key: SecretStr = Field(default=SecretStr(""))
    public_key: SecretStr = Field(default=SecretStr(""))

    @property
    def has_credentials(self) -> bool:
        """Check if both keys are configured."""
        return bool(self.private_key.get_secret_value() and self.public_key.get_secret_value())


class SystemSettings(_Section):
    """System configuration."""

    exchange: str = "backpack"
    mode: Literal["demo", "live"] = "demo"
    quote_currency: str = "USDC"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path | None = Path("logs")
    json_logs: bool = False


class TradingSettings(_Section):
    """Buy ladder and take-profit parameters."""

    trading_coin: str = "SOL"
    max_drop_percentage: float = Field(default=5.0, gt=0, lt=100)
    total_amount: float = Field(default=100.0, gt=0)
    order_count: int = Field(default=5, ge=2, le=100)
    increment_percentage: float = Field(default=10.0, ge=0, le=1000)
    take_profit_percentage: float = Field(default=5.0, gt=0, le=1000)


class ActionSettings(_Section):
    """Answers to the operator prompts of an unattended run."""

    sell_non_usdc_assets: bool = False
    cancel_all_orders: bool = True
    auto_restart_no_fill: bool = False
    restart_after_take_profit: bool = False
    restart_on_error: bool = True


class AdvancedSettings(_Section):
    """Exchange constraints, thresholds and timing."""

    price_tick_size: float = Field(default=0.01, gt=0)
    min_order_amount: float = Field(default=10.0, ge=0)
    sell_non_usdc_min_value: float = Field(default=10.0, ge=0)
    integer_priced_assets: list[str] = ["BTC"]

    no_fill_restart_minutes: float = Field(default=60.0, gt=0)
    check_orders_interval_minutes: float = Field(default=10.0, gt=0)
    monitor_interval_seconds: float = Field(default=30.0, gt=0)
    error_cooldown_seconds: float = Field(default=60.0, ge=0)
    liquidation_retry_seconds: float = Field(default=5.0, ge=0)
    config_reload_every: int = Field(default=10, ge=1)

    order_pacing_seconds: float = Field(default=1.0, ge=0)
    settle_delay_seconds: float = Field(default=2.0, ge=0)
    restart_delay_seconds: float = Field(default=10.0, ge=0)
    error_restart_delay_seconds: float = Field(default=300.0, ge=0)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="DCAFLOW_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api: ApiSettings = Field(default_factory=ApiSettings)
    system: SystemSettings = Field(default_factory=SystemSettings)
    trading: TradingSettings = Field(default_factory=TradingSettings)
    actions: ActionSettings = Field(default_factory=ActionSettings)
    advanced: AdvancedSettings = Field(default_factory=AdvancedSettings)

    quantity_precisions: dict[str, int] = Field(
        default={"BTC": 5, "ETH": 4, "SOL": 2, DEFAULT_KEY: 2},
        validation_alias=AliasChoices("quantityPrecisions", "quantity_precisions"),
    )
    price_precisions: dict[str, int] = Field(
        default={"BTC": 0, "ETH": 2, "SOL": 2, DEFAULT_KEY: 2},
        validation_alias=AliasChoices("pricePrecisions", "price_precisions"),
    )
    min_quantities: dict[str, float] = Field(
        default={"BTC": 0.00001, "ETH": 0.001, "SOL": 0.01, DEFAULT_KEY: 0.1},
        validation_alias=AliasChoices("minQuantities", "min_quantities"),
    )

    @property
    def symbol_base(self) -> str:
        """Upper-cased trading coin."""
        return self.trading.trading_coin.upper()

    @property
    def is_demo_mode(self) -> bool:
        """Check if running against the in-memory demo exchange."""
        return self.system.mode == "demo"


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from a JSON config file and the environment.

    Args:
        path: Config file path. ``None`` reads ``DCAFLOW_CONFIG`` and falls
            back to environment-only settings when that is unset too.

    Raises:
        ConfigError: If the file is missing, is not JSON, or fails validation.
    """
    if path is None:
        env_path = os.environ.get("DCAFLOW_CONFIG")
        if not env_path:
            try:
                return Settings()
            except ValidationError as e:
                raise ConfigError(f"Invalid settings: {e}") from e
        path = Path(env_path)

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    logger.info("config_loaded", path=str(path))
    return settings


@dataclass(frozen=True)
class SettingsSnapshot:
    """An immutable, versioned view of the settings."""

    version: int
    settings: Settings
    loaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class SettingsStore:
    """Holds the current settings snapshot and hot-reloads it on request.

    Readers take ``store.current`` once and keep using that snapshot for the
    whole computation; ``reload()`` replaces the reference, it never mutates
    a snapshot in place.
    """

    def __init__(self, settings: Settings | None = None, path: Path | None = None):
        self._path = path
        if settings is None:
            settings = load_settings(path)
        self._current = SettingsSnapshot(version=1, settings=settings)

    @property
    def current(self) -> SettingsSnapshot:
        """Get the current snapshot."""
        return self._current

    @property
    def settings(self) -> Settings:
        """Shortcut for ``current.settings``."""
        return self._current.settings

    @property
    def path(self) -> Path | None:
        """Config file backing this store, if any."""
        return self._path

    def reload(self) -> bool:
        """Re-read the config file and swap in a new snapshot if it changed.

        A file that fails to load is logged and the current snapshot is kept.

        Returns:
            True if a new snapshot was installed
        """
        if self._path is None:
            return False

        try:
            fresh = load_settings(self._path)
        except ConfigError as e:
            logger.error("config_reload_failed", path=str(self._path), error=str(e))
            return False

        if fresh.model_dump() == self._current.settings.model_dump():
            return False

        previous = self._current
        self._current = SettingsSnapshot(version=previous.version + 1, settings=fresh)
        logger.info("config_reloaded", version=self._current.version)
        return True
