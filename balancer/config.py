"""
Configuration for the treasury rebalancing engine.

Connection details and runtime switches come from the environment (a ``.env``
file is honoured). Engine settings (token catalogue, divisor, tolerance,
timing) come from a YAML file, ``config.yml`` by default.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

# Load environment variables from .env file
load_dotenv()

# Ledger / mirror node
NETWORK = os.getenv("HEDERA_NETWORK", "testnet")
MIRROR_NODE_URL = os.getenv("MIRROR_NODE_URL", f"https://{NETWORK}.mirrornode.hedera.com")
TREASURY_ACCOUNT_ID = os.getenv("TREASURY_ACCOUNT_ID", "")
GOVERNANCE_CONTRACT_ID = os.getenv("GOVERNANCE_CONTRACT_ID", "")
ALERT_TOPIC_ID = os.getenv("BALANCER_ALERT_TOPIC_ID", "")

# Transfer execution
TRANSFER_RELAY_URL = os.getenv("TRANSFER_RELAY_URL", "")
DRY_RUN = os.getenv("DRY_RUN", "true").lower() == "true"

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "logs/treasury_balancer.log")

CONFIG_PATH = os.getenv("BALANCER_CONFIG", "config.yml")

# Engine defaults
TOLERANCE_PERCENT = Decimal("5")      # deviation band before a correction
CACHE_MAX_AGE_SECONDS = 60            # passive snapshot reads
ALERT_MAX_AGE_SECONDS = 300           # alerts older than this are stale
RETRY_BASE_SECONDS = 1.0
RETRY_MULTIPLIER = 2.0
RETRY_CAP_SECONDS = 300.0
RETRY_MAX_ATTEMPTS = 5
RECHECK_INTERVAL_MINUTES = 60
ALERT_POLL_SECONDS = 30
REQUEST_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class TokenSettings:
    symbol: str
    ledger_id: Optional[str]
    decimals: int


@dataclass
class EngineSettings:
    """Validated engine settings loaded from YAML."""

    tokens: List[TokenSettings]
    governance_symbol: str
    divisor: int
    weight_order: List[str] = field(default_factory=list)
    weights_selector: str = ""
    tolerance_percent: Decimal = TOLERANCE_PERCENT
    cache_max_age_seconds: float = CACHE_MAX_AGE_SECONDS
    alert_max_age_seconds: float = ALERT_MAX_AGE_SECONDS
    alert_ledger_path: Optional[str] = None
    retry_base_seconds: float = RETRY_BASE_SECONDS
    retry_multiplier: float = RETRY_MULTIPLIER
    retry_cap_seconds: float = RETRY_CAP_SECONDS
    retry_max_attempts: int = RETRY_MAX_ATTEMPTS
    recheck_interval_minutes: int = RECHECK_INTERVAL_MINUTES
    alert_poll_seconds: int = ALERT_POLL_SECONDS


def load_yaml_config(file_path: str) -> dict:
    """Load YAML configuration from a file safely."""
    try:
        with open(file_path, "r", encoding="utf-8") as file:
            data = yaml.safe_load(file)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file {file_path} not found.")
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML file {file_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {file_path} must contain a mapping")
    return data


def _positive_number(raw, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _positive_int(raw, name: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {raw!r}")
    return raw


def settings_from_dict(data: dict) -> EngineSettings:
    """Build EngineSettings from a parsed YAML mapping, raising ConfigError on bad input."""
    raw_tokens = data.get("tokens")
    if not raw_tokens or not isinstance(raw_tokens, list):
        raise ConfigError("tokens must be a non-empty list")

    tokens = []
    for entry in raw_tokens:
        if not isinstance(entry, dict) or "symbol" not in entry:
            raise ConfigError(f"token entry must be a mapping with a symbol: {entry!r}")
        decimals = entry.get("decimals")
        if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
            raise ConfigError(f"decimals for {entry['symbol']} must be a non-negative integer")
        ledger_id = entry.get("ledger_id")
        tokens.append(TokenSettings(
            symbol=str(entry["symbol"]),
            ledger_id=str(ledger_id) if ledger_id is not None else None,
            decimals=decimals,
        ))

    governance_symbol = data.get("governance_symbol")
    if not governance_symbol:
        raise ConfigError("governance_symbol is required")

    # divisor never defaults: a wrong divisor silently scales every requirement
    if "divisor" not in data:
        raise ConfigError("divisor is required")
    divisor = _positive_int(data["divisor"], "divisor")

    try:
        tolerance = Decimal(str(data.get("tolerance_percent", TOLERANCE_PERCENT)))
    except InvalidOperation:
        raise ConfigError(f"tolerance_percent is not a number: {data.get('tolerance_percent')!r}")
    if tolerance < 0:
        raise ConfigError("tolerance_percent must not be negative")

    weight_order = data.get("weight_order") or []
    if not isinstance(weight_order, list):
        raise ConfigError("weight_order must be a list of symbols")

    settings = EngineSettings(
        tokens=tokens,
        governance_symbol=str(governance_symbol),
        divisor=divisor,
        weight_order=[str(s) for s in weight_order],
        weights_selector=str(data.get("weights_selector", "")),
        tolerance_percent=tolerance,
        cache_max_age_seconds=_positive_number(
            data.get("cache_max_age_seconds", CACHE_MAX_AGE_SECONDS), "cache_max_age_seconds"),
        alert_max_age_seconds=_positive_number(
            data.get("alert_max_age_seconds", ALERT_MAX_AGE_SECONDS), "alert_max_age_seconds"),
        alert_ledger_path=data.get("alert_ledger_path"),
        retry_base_seconds=_positive_number(
            data.get("retry_base_seconds", RETRY_BASE_SECONDS), "retry_base_seconds"),
        retry_multiplier=_positive_number(
            data.get("retry_multiplier", RETRY_MULTIPLIER), "retry_multiplier"),
        retry_cap_seconds=_positive_number(
            data.get("retry_cap_seconds", RETRY_CAP_SECONDS), "retry_cap_seconds"),
        retry_max_attempts=_positive_int(
            data.get("retry_max_attempts", RETRY_MAX_ATTEMPTS), "retry_max_attempts"),
        recheck_interval_minutes=_positive_int(
            data.get("recheck_interval_minutes", RECHECK_INTERVAL_MINUTES), "recheck_interval_minutes"),
        alert_poll_seconds=_positive_int(
            data.get("alert_poll_seconds", ALERT_POLL_SECONDS), "alert_poll_seconds"),
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: EngineSettings):
    """Cross-field checks on an EngineSettings instance."""
    symbols = [token.symbol for token in settings.tokens]
    if len(symbols) != len(set(symbols)):
        raise ConfigError("duplicate token symbols in catalogue")
    if settings.governance_symbol not in symbols:
        raise ConfigError(f"governance asset {settings.governance_symbol} is not in the token catalogue")
    unknown = [s for s in settings.weight_order if s not in symbols]
    if unknown:
        raise ConfigError(f"weight_order names unknown symbols: {', '.join(unknown)}")
    if settings.governance_symbol in settings.weight_order:
        raise ConfigError("the governance asset cannot carry a treasury weight")
    if settings.retry_cap_seconds < settings.retry_base_seconds:
        raise ConfigError("retry_cap_seconds must be at least retry_base_seconds")


def load_settings(path: Optional[str] = None) -> EngineSettings:
    """Load and validate engine settings from YAML."""
    return settings_from_dict(load_yaml_config(path or CONFIG_PATH))


def validate_config(settings: EngineSettings, dry_run: bool = DRY_RUN):
    """Validate runtime connection settings for the chosen mode."""
    missing = []
    if not TREASURY_ACCOUNT_ID:
        missing.append("TREASURY_ACCOUNT_ID")
    if not GOVERNANCE_CONTRACT_ID:
        missing.append("GOVERNANCE_CONTRACT_ID")
    if not dry_run and not TRANSFER_RELAY_URL:
        missing.append("TRANSFER_RELAY_URL")
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
    if not settings.weight_order or not settings.weights_selector:
        raise ConfigError("weight_order and weights_selector are required to read governance weights")
