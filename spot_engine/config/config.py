"""
Configuration models for the spot position engine.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_SCHEMA_VERSION = "2026-10-01"


class ExchangeConfig(BaseSettings):
    """Exchange connection and request-queue configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "binance"
    trading_mode: Literal["testnet", "live"] = "testnet"
    quote_asset: str = "USDT"

    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    # Token bucket for private (signed) endpoints
    rate_limit_capacity: int = Field(default=10, ge=1, le=100)
    rate_limit_refill_per_second: float = Field(default=5.0, gt=0.0, le=100.0)

    # Per-call timeouts
    order_timeout_seconds: float = Field(default=30.0, ge=5.0, le=120.0, description="Order submission timeout")
    balance_timeout_seconds: float = Field(default=5.0, ge=1.0, le=30.0, description="Balance read timeout")
    query_timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0, description="Order status / history timeout")
    balance_cache_seconds: float = Field(default=3.0, ge=0.0, le=60.0, description="Balance read cache TTL")

    filter_cache_ttl_seconds: int = Field(default=12 * 3600, ge=60, description="Exchange filter refresh interval")


class SizingConfig(BaseSettings):
    """Position sizing and capital caps."""
    model_config = SettingsConfigDict(extra="ignore")

    use_volatility_sizing: bool = True
    risk_per_trade_pct: float = Field(default=2.0, gt=0.0, le=100.0, description="Percent of balance risked per trade")
    default_position_size_usdt: float = Field(default=100.0, gt=0.0)
    minimum_trade_value_usdt: float = Field(default=10.0, ge=0.0)
    max_positions_per_strategy: int = Field(default=10, ge=1, le=1000)
    max_balance_invest_cap_usdt: float = Field(default=0.0, ge=0.0, description="0 = no absolute cap")
    invest_cap_buffer_usdt: float = Field(default=5.0, ge=0.0, description="Stop opening once cap headroom falls below this")
    balance_risk_factor_pct: float = Field(default=100.0, gt=0.0, le=100.0)


class ExitConfig(BaseSettings):
    """Exit parameter derivation and monitoring thresholds."""
    model_config = SettingsConfigDict(extra="ignore")

    default_sl_atr_multiplier: float = Field(default=2.5, gt=0.0)
    default_tp_atr_multiplier: float = Field(default=3.0, gt=0.0)
    min_stop_distance_pct: float = Field(default=1.5, gt=0.0, le=50.0)
    max_stop_distance_pct: float = Field(default=8.0, gt=0.0, le=50.0)
    max_atr_pct_of_price: float = Field(default=10.0, gt=0.0, le=100.0)
    min_time_exit_hours: float = Field(default=1.5, gt=0.0)

    max_position_age_hours: float = Field(default=12.0, gt=0.0, description="Hard safety ceiling")
    trailing_activation_fraction: float = Field(default=0.5, gt=0.0, le=1.0)
    trailing_buffer_pct: float = Field(default=2.0, gt=0.0, le=50.0)
    default_take_profit_pct: float = Field(default=5.0, gt=0.0)

    @model_validator(mode="after")
    def validate_stop_bounds(self) -> "ExitConfig":
        if self.min_stop_distance_pct > self.max_stop_distance_pct:
            raise ValueError("min_stop_distance_pct must be <= max_stop_distance_pct")
        return self


class RetryPolicyConfig(BaseSettings):
    """Close-path retry policy.

    Insufficient-balance / filter / 4xx rejections and transient network failures
    are retried separately.
    """
    model_config = SettingsConfigDict(extra="ignore")

    max_attempts: int = Field(default=1, ge=0, le=5, description="Retries after a classified rejection")
    backoff_seconds: float = Field(default=0.0, ge=0.0, le=30.0)
    transient_max_attempts: int = Field(default=1, ge=0, le=10, description="Retries after a network failure")
    transient_backoff_seconds: float = Field(default=1.0, ge=0.0, le=60.0)


class ExecutionConfig(BaseSettings):
    """Order execution configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    commission_rate: float = Field(default=0.001, ge=0.0, le=0.01)
    buy_confirmation_delay_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    order_history_window_hours: float = Field(default=2.0, gt=0.0, le=48.0)
    order_history_qty_tolerance: float = Field(default=0.20, ge=0.0, le=1.0)
    retry_policy: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)

    pending_order_check_seconds: int = Field(default=10, ge=1, le=600)
    pending_order_max_age_seconds: int = Field(default=300, ge=10, le=86400)
    pending_order_max_check_failures: int = Field(default=3, ge=1, le=20)


class ReconciliationConfig(BaseSettings):
    """Ledger vs exchange reconciliation."""
    model_config = SettingsConfigDict(extra="ignore")

    reconcile_enabled: bool = Field(default=True, description="Run reconciliation periodically and after dust/virtual closes")
    ghost_threshold: float = Field(default=0.99, gt=0.0, le=1.0, description="held/expected below this is a ghost")
    throttle_seconds: int = Field(default=300, ge=0, le=3600)
    max_attempts: int = Field(default=20, ge=1, le=200)
    alert_after_failures: int = Field(default=3, ge=1, le=50)
    stale_attempt_reset_seconds: int = Field(default=600, ge=0, le=86400)


class MonitoringConfig(BaseSettings):
    """Logging and alerting configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    monitor_interval_seconds: int = Field(default=30, ge=1, le=3600)

    alert_methods: List[str] = ["log"]
    alert_webhook_url: Optional[str] = None

    @field_validator("alert_methods")
    @classmethod
    def validate_alert_methods(cls, v):
        allowed = {"log", "webhook"}
        unknown = [m for m in v if m not in allowed]
        if unknown:
            raise ValueError(f"Unknown alert methods: {unknown}")
        return v


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    exits: ExitConfig = Field(default_factory=ExitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from a YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        data = config_dict.setdefault("data", {})
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            data["database_url"] = db_url
        elif str(data.get("database_url") or "").startswith("$"):
            data["database_url"] = None

        exchange = config_dict.setdefault("exchange", {})
        for key, env_name in (("api_key", "EXCHANGE_API_KEY"), ("api_secret", "EXCHANGE_API_SECRET")):
            value = exchange.get(key)
            if not value or str(value).startswith("$"):
                exchange[key] = os.getenv(env_name) or None
        if os.getenv("TRADING_MODE"):
            exchange["trading_mode"] = os.environ["TRADING_MODE"]

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Cross-section checks that a single field validator can't express."""
        if self.environment == "prod" and self.exchange.trading_mode == "live":
            if not self.exchange.api_key or not self.exchange.api_secret:
                raise ValueError("Live trading in prod requires exchange api_key and api_secret")
        if self.sizing.max_balance_invest_cap_usdt and (
            self.sizing.max_balance_invest_cap_usdt < self.sizing.minimum_trade_value_usdt
        ):
            raise ValueError("max_balance_invest_cap_usdt is below minimum_trade_value_usdt")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses spot_engine/config/config.yaml

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()
    return config
