"""
Configuration models for the copy-follow engine.

Uses Pydantic for validation and type safety.
"""
from typing import Dict, Literal, Mapping, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

CONFIG_SCHEMA_VERSION = "2026-10-01"

_DEFAULT_PRECISION = {
    "BTC": 3,
    "ETH": 3,
    "BNB": 2,
    "XRP": 1,
    "ADA": 0,
    "DOGE": 0,
    "SOL": 2,
    "AVAX": 2,
    "MATIC": 1,
    "DOT": 2,
    "LINK": 2,
    "UNI": 2,
}


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Copy Follow Engine"
    version: str = "1.0.0"
    dry_run: bool = True  # If True, plans are risk-assessed but never sent to the venue


class ExchangeConfig(BaseSettings):
    """Broker (futures venue) configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "binanceusdm"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = False
    quote_asset: str = Field(default="USDT", description="Settlement asset appended to source symbols")
    request_timeout_ms: int = Field(default=30000, ge=1000, le=120000)


class FeedConfig(BaseSettings):
    """Source trader feed configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = "https://nof1.ai/api"
    account_totals_path: str = "/account-totals"
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)


class FollowConfig(BaseSettings):
    """Change detection and handler thresholds."""
    model_config = SettingsConfigDict(extra="ignore")

    # Duplicate detection (trust mode)
    margin_diff_threshold_pct: float = Field(default=10.0, gt=0.0, le=100.0, description="Skip when margin differs less than this")
    price_diff_threshold_pct: float = Field(default=5.0, gt=0.0, le=100.0, description="Skip when entry price differs less than this")
    oversize_ratio: float = Field(default=1.2, ge=1.0, le=5.0, description="Skip when existing margin exceeds target by this ratio")
    min_topup_margin: float = Field(default=1.0, ge=0.0, description="Smallest incremental margin (quote asset) worth an order")

    # Profit target sanity range (percent)
    max_profit_target_pct: float = Field(default=1000.0, gt=0.0)

    # Close settlement
    settlement_delay_seconds: float = Field(default=1.5, ge=0.0, le=30.0, description="Wait after close before re-reading balance")
    close_confirm_attempts: int = Field(default=3, ge=0, le=20, description="Polls until the venue reports the position flat")
    close_confirm_interval_seconds: float = Field(default=0.5, ge=0.0, le=10.0)

    # Polling (watch command)
    poll_interval_seconds: float = Field(default=60.0, ge=1.0, le=3600.0, description="Seconds between follow passes")


class ReconciliationConfig(BaseSettings):
    """History vs. source consistency thresholds."""
    model_config = SettingsConfigDict(extra="ignore")

    quantity_epsilon: float = Field(default=1e-6, gt=0.0)
    price_epsilon: float = Field(default=0.01, gt=0.0)
    critical_quantity_diff_pct: float = Field(default=10.0, gt=0.0, le=100.0)
    high_price_diff_pct: float = Field(default=5.0, gt=0.0, le=100.0)
    confirmation_ttl_seconds: int = Field(default=300, ge=10, le=3600, description="Lifetime of a user confirmation")


class CapitalConfig(BaseSettings):
    """Capital allocation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_total_margin: float = Field(default=10.0, gt=0.0, description="Margin to spread when the caller gives none")
    default_quantity_precision: int = Field(default=3, ge=0, le=8)
    quantity_precision: Dict[str, int] = Field(default_factory=lambda: dict(_DEFAULT_PRECISION))
    allocation_ratio_tolerance: float = Field(default=0.001, gt=0.0, le=0.1)


class RiskConfig(BaseSettings):
    """Risk assessment configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_price_tolerance_pct: float = Field(default=1.0, gt=0.0, le=100.0)
    symbol_tolerances: Dict[str, float] = Field(default_factory=dict)
    default_contract_size: float = Field(default=100.0, gt=0.0)
    contract_sizes: Dict[str, float] = Field(
        default_factory=lambda: {base: 100.0 for base in _DEFAULT_PRECISION}
    )
    reference_account_size: float = Field(default=10000.0, gt=0.0, description="Account size when no total margin is given")
    max_risk_score: float = Field(default=100.0, ge=0.0, le=100.0)

    # Warning thresholds
    high_leverage: float = 20.0
    medium_leverage: float = 10.0
    high_margin_pct: float = 50.0
    medium_margin_pct: float = 20.0
    high_risk_score: float = 80.0
    medium_risk_score: float = 60.0
    large_notional: float = 50000.0

    @field_validator("symbol_tolerances", "contract_sizes")
    @classmethod
    def validate_positive(cls, v):
        for key, value in v.items():
            if value <= 0:
                raise ValueError(f"{key} must be positive, got {value}")
        return v


class StorageConfig(BaseSettings):
    """Order history ledger storage."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///follow_history.db"


class MonitoringConfig(BaseSettings):
    """Monitoring configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    follow: FollowConfig = Field(default_factory=FollowConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    capital: CapitalConfig = Field(default_factory=CapitalConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("storage", {})["database_url"] = db_url

        return cls(**config_dict)


def apply_env_overrides(config: Config, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Apply price tolerance and contract size overrides from the environment.

    PRICE_TOLERANCE=0.8       -> default tolerance
    BTCUSDT_TOLERANCE=1.0     -> per-symbol tolerance
    BTC_CONTRACT_SIZE=100     -> per-asset contract size

    Unparseable or non-positive values are ignored.
    """
    env = os.environ if environ is None else environ

    default_tolerance = _positive_float(env.get("PRICE_TOLERANCE"))
    if default_tolerance is not None:
        config.risk.default_price_tolerance_pct = default_tolerance

    for key, raw in env.items():
        if key.endswith("_TOLERANCE") and key != "PRICE_TOLERANCE":
            value = _positive_float(raw)
            if value is not None:
                config.risk.symbol_tolerances[key[: -len("_TOLERANCE")]] = value
        elif key.endswith("_CONTRACT_SIZE"):
            value = _positive_float(raw)
            if value is not None:
                config.risk.contract_sizes[key[: -len("_CONTRACT_SIZE")]] = value

    return config


def _positive_float(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses src/config/config.yaml

    Returns:
        Validated Config object with environment overrides applied

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    return apply_env_overrides(config)
