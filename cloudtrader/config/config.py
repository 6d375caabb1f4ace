"""
Configuration models for the Ichimoku paper trading engine.

Uses Pydantic for validation and type safety.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

DEFAULT_SYMBOLS = [
    "BTC/USDT", "ETH/USDT",
    "LINK/USDT", "NEAR/USDT", "APT/USDT",
    "RNDR/USDT", "ARB/USDT", "SUI/USDT",
    "DOGE/USDT", "SHIB/USDT", "LDO/USDT",
    "SOL/USDT", "BTG/USDT", "ACH/USDT",
    "BEL/USDT",
]


class ExchangeConfig(BaseSettings):
    """Exchange configuration (market data only, no order placement)."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "binance"
    symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    quote_currency: str = "USDT"

    # Credentials (loaded from env or yaml); public endpoints work without them
    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    enable_rate_limit: bool = True
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)

    @field_validator("symbols")
    @classmethod
    def validate_symbols(cls, v):
        if not v:
            raise ValueError("At least one symbol must be configured")
        for symbol in v:
            if "/" not in symbol:
                raise ValueError(f"Symbol must be BASE/QUOTE, got {symbol!r}")
        return v

    @model_validator(mode="after")
    def validate_quote(self) -> "ExchangeConfig":
        for symbol in self.symbols:
            if symbol.split("/")[1] != self.quote_currency:
                raise ValueError(f"{symbol} is not quoted in {self.quote_currency}")
        return self


class IchimokuConfig(BaseSettings):
    """Ichimoku cloud periods."""
    model_config = SettingsConfigDict(extra="ignore")

    conversion_period: int = Field(default=9, ge=1)
    base_period: int = Field(default=26, ge=1)
    span_period: int = Field(default=52, ge=1)
    displacement: int = Field(default=26, ge=0)


class StrategyConfig(BaseSettings):
    """Signal generation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    timeframes: List[str] = Field(default_factory=lambda: ["15m", "1h", "4h", "1d"])
    execution_timeframe: str = "15m"  # current price, breakout, signal exits
    atr_timeframe: str = "1h"  # stop/target derivation and trailing updates
    trend_timeframe: str = "4h"  # ADX + cloud side trend filter
    candle_limit: int = Field(default=104, ge=10, le=1000)

    ichimoku: IchimokuConfig = Field(default_factory=IchimokuConfig)
    min_timeframe_votes: int = Field(default=2, ge=1)

    # Breakout detector
    breakout_enabled: bool = True
    breakout_lookback: int = Field(default=10, ge=2, le=200)
    breakout_min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)

    # Trend filter (anti-range)
    adx_period: int = Field(default=14, ge=2)
    adx_threshold: float = Field(default=20.0, ge=0.0, le=100.0)

    shorts_enabled: bool = True

    @model_validator(mode="after")
    def validate_timeframes(self) -> "StrategyConfig":
        for name in ("execution_timeframe", "atr_timeframe", "trend_timeframe"):
            tf = getattr(self, name)
            if tf not in self.timeframes:
                raise ValueError(f"{name}={tf!r} must be one of timeframes {self.timeframes}")
        if self.min_timeframe_votes > len(self.timeframes):
            raise ValueError("min_timeframe_votes cannot exceed the number of timeframes")
        return self


class RiskConfig(BaseSettings):
    """Risk management configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    initial_capital: float = Field(default=1000.0, gt=0)
    risk_percentage: float = Field(default=3.0, gt=0, le=100.0)
    max_positions: int = Field(default=10, ge=1, le=100)

    # Drawdown guard
    max_drawdown_pct: float = Field(default=20.0, gt=0, le=100.0)
    drawdown_reference: Literal["initial_capital", "high_water_mark"] = "initial_capital"

    # Stops
    atr_period: int = Field(default=14, ge=1)
    stop_loss_atr_multiplier: float = Field(default=2.0, gt=0)
    trailing_atr_multiplier: float = Field(default=1.5, gt=0)

    # Volatility throttle
    atr_threshold: float = Field(default=10.0, ge=0)
    risk_reduction_factor: float = Field(default=0.5, gt=0, le=1.0)

    # Targets
    min_profit_pct: float = Field(default=0.02, ge=0, le=1.0)
    big_profit_pct: float = Field(default=0.20, ge=0, le=5.0)
    tp1_close_fraction: float = Field(default=0.5, gt=0, lt=1.0)

    # Costs and floors
    fee_rate: float = Field(default=0.001, ge=0, le=0.05)
    min_trade_value: float = Field(default=10.0, ge=0)

    @model_validator(mode="after")
    def validate_targets(self) -> "RiskConfig":
        if self.big_profit_pct < self.min_profit_pct:
            raise ValueError("big_profit_pct must be >= min_profit_pct")
        return self


class ValidationConfig(BaseSettings):
    """Pre-trade ticker validation."""
    model_config = SettingsConfigDict(extra="ignore")

    max_spread_percent: float = Field(default=0.2, ge=0)
    min_quote_volume: float = Field(default=100000.0, ge=0)


class DataConfig(BaseSettings):
    """Market data fetch behaviour."""
    model_config = SettingsConfigDict(extra="ignore")

    retry_attempts: int = Field(default=5, ge=1, le=20)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    max_retry_delay_seconds: float = Field(default=30.0, ge=0)
    request_delay_ms: int = Field(default=250, ge=0)
    failure_cooldown_after: int = Field(default=3, ge=1)
    cooldown_minutes: int = Field(default=15, ge=0)


class EngineConfig(BaseSettings):
    """Cycle scheduling."""
    model_config = SettingsConfigDict(extra="ignore")

    cycle_interval_seconds: float = Field(default=60.0, gt=0)
    run_minutes: Optional[float] = Field(default=None, gt=0)
    max_cycles: Optional[int] = Field(default=None, ge=1)
    drawdown_state_path: Optional[str] = "data/drawdown_state.json"


class StorageConfig(BaseSettings):
    """Transaction log and exports."""
    model_config = SettingsConfigDict(extra="ignore")

    transaction_log_path: str = "data/transactions.jsonl"
    results_csv_path: str = "data/simulation_results.csv"


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/run.log"


class DashboardConfig(BaseSettings):
    """HTTP status surface."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    environment: Literal["dev", "paper", "prod"] = "paper"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Expand ${VAR} or $VAR; unknown variables are left untouched
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # Unexpanded credential placeholders mean "not set"
        exchange = config_dict.get("exchange") or {}
        for key in ("api_key", "api_secret"):
            value = exchange.get(key)
            if isinstance(value, str) and value.startswith("$"):
                exchange[key] = None

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        ichimoku = self.strategy.ichimoku
        if self.strategy.candle_limit < ichimoku.span_period + ichimoku.displacement:
            raise ValueError("candle_limit is shorter than the Ichimoku lookback (span_period + displacement)")
        if self.strategy.candle_limit < self.strategy.breakout_lookback + 1:
            raise ValueError("candle_limit must cover breakout_lookback plus the current candle")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses cloudtrader/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
