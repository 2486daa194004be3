"""
Configuration management for the Solana context engine.

This module provides the settings dataclasses used by the runtime and the
helpers that load them from environment variables (and a ``.env`` file).
"""

import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

from solana_context.utils.errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

VALID_COMMITMENTS = ("processed", "confirmed", "finalized")
VALID_CLUSTERS = ("mainnet", "devnet", "testnet", "local")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_CLUSTER_URLS = {
    "mainnet": "https://api.mainnet-beta.solana.com",
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "local": "http://0.0.0.0:8899",
}


def get_env_var(key: str, default: Any = None, required: bool = False,
                validator: Optional[Callable[[str], Any]] = None) -> Any:
    """Get and validate environment variable.

    Args:
        key: Environment variable name
        default: Default value if not present
        required: If True, raises ConfigurationError when not found
        validator: Optional validation function

    Returns:
        The environment variable value or default

    Raises:
        ConfigurationError: If required and not found, or fails validation
    """
    value = os.environ.get(key)

    if value is None:
        if required:
            raise ConfigurationError(
                f"Required environment variable '{key}' not found",
                details={"setting": key}
            )
        return default

    if validator:
        try:
            return validator(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for environment variable '{key}': {str(e)}",
                details={"setting": key, "value": value}
            ) from e

    return value


def bool_validator(value: str) -> bool:
    """Validate and convert string to boolean."""
    return value.lower() in ("true", "1", "yes", "y", "on")


def int_validator(value: str) -> int:
    """Validate and convert string to integer.

    Raises:
        ValueError: If not a valid integer
    """
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid integer")


def float_validator(value: str) -> float:
    """Validate and convert string to float.

    Raises:
        ValueError: If not a valid number
    """
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid number")


def url_validator(value: str) -> str:
    """Validate URL format.

    Args:
        value: URL to validate

    Returns:
        The validated URL

    Raises:
        ValueError: If not a valid URL format
    """
    url_pattern = re.compile(
        r'^(https?):\/\/'  # http:// or https://
        r'(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+(?:[A-Z]{2,6}\.?|[A-Z0-9-]{2,}\.?)|'  # domain
        r'localhost|'  # localhost
        r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})'  # or IPv4
        r'(?::\d+)?'  # optional port
        r'(?:/?|[/?]\S+)$', re.IGNORECASE)

    if not url_pattern.match(value):
        raise ValueError(f"'{value}' is not a valid URL")
    return value


def commitment_validator(value: str) -> str:
    """Validate Solana commitment level.

    Raises:
        ValueError: If not a valid commitment level
    """
    if value.lower() not in VALID_COMMITMENTS:
        raise ValueError(f"Commitment must be one of: {', '.join(VALID_COMMITMENTS)}")
    return value.lower()


def cluster_validator(value: str) -> str:
    """Validate cluster name.

    Raises:
        ValueError: If not a known cluster
    """
    if value.lower() not in VALID_CLUSTERS:
        raise ValueError(f"Cluster must be one of: {', '.join(VALID_CLUSTERS)}")
    return value.lower()


def log_level_validator(value: str) -> str:
    """Validate log level.

    Raises:
        ValueError: If not a valid log level
    """
    upper_value = value.upper()
    if upper_value not in VALID_LOG_LEVELS:
        raise ValueError(f"Log level must be one of: {', '.join(VALID_LOG_LEVELS)}")
    return upper_value


@dataclass
class SolanaSettings:
    """Solana cluster connection settings."""

    RPC_URL: str
    CLUSTER: str = "mainnet"

    # Connection settings
    REQUEST_TIMEOUT: float = 30.0
    MAX_RETRIES: int = 3
    RETRY_DELAY: float = 1.0

    # Commitment level
    COMMITMENT: str = "confirmed"

    # Off-chain metadata feed
    METADATA_FEED_URL: Optional[str] = None

    def validate(self) -> None:
        """Validate Solana settings.

        Raises:
            ConfigurationError: If settings are invalid
        """
        if not self.RPC_URL:
            raise ConfigurationError(
                "Solana RPC URL is required",
                details={"setting": "RPC_URL"}
            )

        if self.REQUEST_TIMEOUT <= 0:
            raise ConfigurationError(
                "Request timeout must be positive",
                details={"setting": "REQUEST_TIMEOUT", "value": self.REQUEST_TIMEOUT}
            )

        if self.MAX_RETRIES < 0:
            raise ConfigurationError(
                "Max retries must be non-negative",
                details={"setting": "MAX_RETRIES", "value": self.MAX_RETRIES}
            )

        if self.COMMITMENT not in VALID_COMMITMENTS:
            raise ConfigurationError(
                f"Invalid commitment level: {self.COMMITMENT}",
                details={
                    "setting": "COMMITMENT",
                    "value": self.COMMITMENT,
                    "valid_values": list(VALID_COMMITMENTS)
                }
            )

        if self.CLUSTER not in VALID_CLUSTERS:
            raise ConfigurationError(
                f"Invalid cluster: {self.CLUSTER}",
                details={
                    "setting": "CLUSTER",
                    "value": self.CLUSTER,
                    "valid_values": list(VALID_CLUSTERS)
                }
            )


@dataclass
class LoggingSettings:
    """Logging configuration settings."""

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: Optional[str] = None
    LOG_TO_CONSOLE: bool = True

    def validate(self) -> None:
        """Validate logging settings.

        Raises:
            ConfigurationError: If settings are invalid
        """
        if self.LOG_LEVEL not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"Invalid log level: {self.LOG_LEVEL}",
                details={
                    "setting": "LOG_LEVEL",
                    "value": self.LOG_LEVEL,
                    "valid_values": list(VALID_LOG_LEVELS)
                }
            )


@dataclass
class RpcOptions:
    """Batching and caching knobs of the runtime access layer.

    Intervals and TTLs are in seconds.
    """

    account_deduplication_interval: float = 2.0
    account_cache_ttl: float = 10.0
    account_cache_max_size: int = 100
    account_batch_interval: float = 0.05
    account_batch_max_size: int = 100
    blockhash_cache_ttl: float = 0.25
    blockhash_batch_interval: float = 0.05
    blockhash_batch_max_size: int = 50

    def validate(self) -> None:
        """Validate RPC options.

        Raises:
            ConfigurationError: If any value is out of range
        """
        for name in ("account_batch_max_size", "blockhash_batch_max_size", "account_cache_max_size"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(
                    f"{name} must be positive",
                    details={"setting": name, "value": value}
                )
        for name in ("account_deduplication_interval", "account_cache_ttl", "account_batch_interval",
                     "blockhash_cache_ttl", "blockhash_batch_interval"):
            value = getattr(self, name)
            if value < 0:
                raise ConfigurationError(
                    f"{name} must be non-negative",
                    details={"setting": name, "value": value}
                )


@dataclass
class TransactionOptions:
    """Runtime-global transaction settings.

    ``fee_payer``, ``signers``, ``execution_hooks`` and ``compute_budget``
    hold the same kinds of values a transaction template accepts and sit
    between the template and per-call overrides in priority.
    """

    fee_payer: Any = None
    signers: List[Any] = field(default_factory=list)
    execution_hooks: Any = None
    compute_budget: Any = None
    confirmation_commitment: str = "confirmed"
    max_retries_on_block_errors: int = 0
    max_retries_on_not_found_error: int = 3
    retry_interval_ms_on_not_found_error: int = 1000
    confirmation_timeout_seconds: float = 60.0
    confirmation_poll_interval_ms: int = 500

    def validate(self) -> None:
        """Validate transaction options.

        Raises:
            ConfigurationError: If settings are invalid
        """
        if self.confirmation_commitment not in VALID_COMMITMENTS:
            raise ConfigurationError(
                f"Invalid confirmation commitment: {self.confirmation_commitment}",
                details={
                    "setting": "confirmation_commitment",
                    "value": self.confirmation_commitment,
                    "valid_values": list(VALID_COMMITMENTS)
                }
            )
        if self.max_retries_on_block_errors < 0 or self.max_retries_on_not_found_error < 0:
            raise ConfigurationError(
                "Retry counts must be non-negative",
                details={
                    "max_retries_on_block_errors": self.max_retries_on_block_errors,
                    "max_retries_on_not_found_error": self.max_retries_on_not_found_error,
                }
            )
        if self.confirmation_timeout_seconds <= 0:
            raise ConfigurationError(
                "Confirmation timeout must be positive",
                details={"setting": "confirmation_timeout_seconds", "value": self.confirmation_timeout_seconds}
            )


@dataclass
class RuntimeOptions:
    """All options of one runtime access instance."""

    rpc: RpcOptions = field(default_factory=RpcOptions)
    transaction: TransactionOptions = field(default_factory=TransactionOptions)
    debug: bool = False

    def validate(self) -> None:
        """Validate all nested options.

        Raises:
            ConfigurationError: If any settings are invalid
        """
        self.rpc.validate()
        self.transaction.validate()


@lru_cache()
def get_solana_settings() -> SolanaSettings:
    """Get Solana settings from environment variables.

    Uses cached values for efficiency.

    Raises:
        ConfigurationError: If environment variables fail validation
    """
    cluster = get_env_var("SOLANA_CLUSTER", "mainnet", validator=cluster_validator)
    settings = SolanaSettings(
        RPC_URL=get_env_var("SOLANA_RPC_URL", DEFAULT_CLUSTER_URLS[cluster], validator=url_validator),
        CLUSTER=cluster,
        REQUEST_TIMEOUT=get_env_var("SOLANA_REQUEST_TIMEOUT", 30.0, validator=float_validator),
        MAX_RETRIES=get_env_var("SOLANA_MAX_RETRIES", 3, validator=int_validator),
        RETRY_DELAY=get_env_var("SOLANA_RETRY_DELAY", 1.0, validator=float_validator),
        COMMITMENT=get_env_var("SOLANA_COMMITMENT", "confirmed", validator=commitment_validator),
        METADATA_FEED_URL=get_env_var("SOLANA_METADATA_FEED_URL", validator=url_validator),
    )
    settings.validate()
    return settings


@lru_cache()
def get_logging_settings() -> LoggingSettings:
    """Get logging settings from environment variables."""
    settings = LoggingSettings(
        LOG_LEVEL=get_env_var("LOG_LEVEL", "INFO", validator=log_level_validator),
        LOG_FORMAT=get_env_var("LOG_FORMAT", LoggingSettings.LOG_FORMAT),
        LOG_DATE_FORMAT=get_env_var("LOG_DATE_FORMAT", LoggingSettings.LOG_DATE_FORMAT),
        LOG_FILE=get_env_var("LOG_FILE"),
        LOG_TO_CONSOLE=get_env_var("LOG_TO_CONSOLE", True, validator=bool_validator),
    )
    settings.validate()
    return settings


def load_runtime_options_from_env() -> RuntimeOptions:
    """Load runtime options from environment variables.

    Millisecond variables are converted to seconds.

    Returns:
        Validated RuntimeOptions
    """
    rpc = RpcOptions()
    rpc.account_cache_ttl = get_env_var("SOLANA_ACCOUNT_CACHE_TTL", rpc.account_cache_ttl, validator=float_validator)
    batch_interval_ms = get_env_var("SOLANA_ACCOUNT_BATCH_INTERVAL_MS", None, validator=int_validator)
    if batch_interval_ms is not None:
        rpc.account_batch_interval = batch_interval_ms / 1000
    rpc.account_batch_max_size = get_env_var(
        "SOLANA_ACCOUNT_BATCH_MAX_SIZE", rpc.account_batch_max_size, validator=int_validator
    )
    blockhash_ttl_ms = get_env_var("SOLANA_BLOCKHASH_CACHE_TTL_MS", None, validator=int_validator)
    if blockhash_ttl_ms is not None:
        rpc.blockhash_cache_ttl = blockhash_ttl_ms / 1000

    transaction = TransactionOptions(
        confirmation_commitment=get_env_var(
            "SOLANA_CONFIRMATION_COMMITMENT", "confirmed", validator=commitment_validator
        ),
        max_retries_on_block_errors=get_env_var(
            "SOLANA_MAX_RETRIES_ON_BLOCK_ERRORS", 0, validator=int_validator
        ),
    )

    options = RuntimeOptions(
        rpc=rpc,
        transaction=transaction,
        debug=get_env_var("SOLANA_CONTEXT_DEBUG", False, validator=bool_validator),
    )
    try:
        options.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    return options
