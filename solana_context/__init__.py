"""Solana Context Package.

This package provides a client-side context graph over Solana accounts and a
transaction assembly engine: batched and cached account reads, program and
account contexts, transaction blueprints, execution and result parsing.
"""

import logging
import os
from typing import Any, Dict, Optional

from solana_context.version import __version__, __author__, __email__
from solana_context.logging_config import configure_logging_from_settings
from solana_context.utils.config import (
    RpcOptions,
    RuntimeOptions,
    TransactionOptions,
    get_logging_settings,
    get_solana_settings,
    load_runtime_options_from_env
)
from solana_context.utils.errors import (
    ConfigurationError,
    ReportedError,
    SolanaContextError,
    TransactionAssemblyError
)
from solana_context.context.runtime import AccountRecord, RuntimeAccess
from solana_context.context.program import ProgramContext, ProgramDerivedContext
from solana_context.context.account import (
    AccountContext,
    BaseAccountContext,
    CodecAccountContext,
    IterativeAccountContext
)
from solana_context.context.metadata import MetadataContext, MetadataRecord
from solana_context.transaction.blueprint import (
    ComputeBudget,
    DurableNonceAccount,
    EventDecoder,
    ExecutionHooks,
    TransactionBlueprint,
    TransactionOverrides,
    TransactionTemplateConfig
)
from solana_context.transaction.executor import TransactionExecutor
from solana_context.transaction.result import TransactionEvents, TransactionResult
from solana_context.transaction.signer import KeypairSigner, NoopSigner

logger = logging.getLogger(__name__)


def initialize_runtime(
    config_overrides: Optional[Dict[str, Any]] = None,
    options: Optional[RuntimeOptions] = None
) -> RuntimeAccess:
    """Initialize a runtime from the environment.

    This function:
    - Configures logging
    - Loads Solana settings and runtime options
    - Connects a ``RuntimeAccess`` to the configured cluster

    Args:
        config_overrides: Optional dictionary of environment values to override
        options: Runtime options; read from the environment when omitted

    Returns:
        Connected RuntimeAccess instance

    Raises:
        ConfigurationError: If there's an issue with the configuration
    """
    if config_overrides:
        for key, value in config_overrides.items():
            os.environ[key] = str(value)
        get_solana_settings.cache_clear()
        get_logging_settings.cache_clear()

    try:
        configure_logging_from_settings()
    except (OSError, ValueError) as e:
        raise ConfigurationError(
            f"Failed to configure logging: {str(e)}",
            details={"original_error": str(e)}
        ) from e

    logger.info(f"Initializing Solana context engine v{__version__}")

    try:
        settings = get_solana_settings()
        options = options or load_runtime_options_from_env()
    except ConfigurationError:
        logger.exception("Failed to load configuration")
        raise

    runtime = RuntimeAccess.connect(settings=settings, options=options)
    logger.info(f"Solana context engine connected to {settings.CLUSTER}")
    return runtime
