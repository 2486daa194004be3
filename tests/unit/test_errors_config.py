"""Unit tests for the error types and configuration helpers."""

import logging
from unittest.mock import patch

import pytest

import solana_context
from solana_context.context.runtime import RuntimeAccess
from solana_context.logging_config import configure_logging_from_settings
from solana_context.utils.config import (
    LoggingSettings,
    RpcOptions,
    RuntimeOptions,
    SolanaSettings,
    TransactionOptions,
    bool_validator,
    commitment_validator,
    get_env_var,
    get_solana_settings,
    int_validator,
    load_runtime_options_from_env,
    url_validator
)
from solana_context.utils.errors import (
    ConfigurationError,
    ErrorCode,
    ReportedError,
    RpcError,
    SimulationFailedError,
    TransactionAssemblyError,
    is_stale_ledger_view_error,
    message_with_cause
)


class TestErrors:
    """Test suite for the error hierarchy."""

    def test_to_dict(self):
        error = TransactionAssemblyError("failed to resolve fee payer", stage="fee_payer")

        assert error.to_dict() == {
            "code": ErrorCode.ASSEMBLY_FAILED,
            "message": "failed to resolve fee payer",
            "details": {"stage": "fee_payer"},
        }

    def test_rpc_code(self):
        error = SimulationFailedError("simulation failed", logs=["log"], rpc_error={"code": -32002})

        assert error.rpc_code == -32002
        assert error.code == ErrorCode.SIMULATION_FAILED
        assert RpcError("plain").rpc_code is None

    @pytest.mark.parametrize("message", [
        "Transaction simulation failed: Blockhash not found",
        "The network has progressed past the last valid block height",
        "This transaction has already been processed",
    ])
    def test_stale_ledger_view_messages(self, message):
        assert is_stale_ledger_view_error(RpcError(message))

    def test_stale_ledger_view_from_cause(self):
        try:
            try:
                raise ValueError("blockhash not found")
            except ValueError as e:
                raise RpcError("send failed") from e
        except RpcError as error:
            assert message_with_cause(error) == "send failed - blockhash not found"
            assert is_stale_ledger_view_error(error)

    def test_only_engine_errors_are_stale(self):
        assert not is_stale_ledger_view_error(ValueError("blockhash not found"))
        assert not is_stale_ledger_view_error(RpcError("insufficient funds"))

    def test_reported_error(self):
        cause = ValueError("boom")
        error = ReportedError(cause)

        assert error.cause is cause
        assert error.reported
        assert error.code == ErrorCode.UNKNOWN_ERROR
        assert error.details == {"error_type": "ValueError"}

    def test_reported_error_keeps_engine_code(self):
        error = ReportedError(RpcError("node unhealthy"), reported=False)

        assert error.code == ErrorCode.RPC_ERROR
        assert error.message == "node unhealthy"
        assert not error.reported


class TestConfig:
    """Test suite for configuration loading."""

    def test_validators(self):
        assert bool_validator("Yes")
        assert not bool_validator("off")
        assert int_validator("12") == 12
        assert commitment_validator("Finalized") == "finalized"
        assert url_validator("http://127.0.0.1:8899") == "http://127.0.0.1:8899"
        with pytest.raises(ValueError):
            int_validator("twelve")
        with pytest.raises(ValueError):
            url_validator("ftp://example.com")

    def test_get_env_var(self, monkeypatch):
        monkeypatch.setenv("SOLANA_MAX_RETRIES", "5")
        monkeypatch.delenv("SOLANA_MISSING", raising=False)

        assert get_env_var("SOLANA_MAX_RETRIES", 3, validator=int_validator) == 5
        assert get_env_var("SOLANA_MISSING", "fallback") == "fallback"
        with pytest.raises(ConfigurationError, match="not found"):
            get_env_var("SOLANA_MISSING", required=True)

    def test_get_env_var_invalid_value(self, monkeypatch):
        monkeypatch.setenv("SOLANA_MAX_RETRIES", "many")

        with pytest.raises(ConfigurationError) as exc_info:
            get_env_var("SOLANA_MAX_RETRIES", validator=int_validator)

        assert exc_info.value.details == {"setting": "SOLANA_MAX_RETRIES", "value": "many"}

    def test_solana_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("SOLANA_CLUSTER", "devnet")
        monkeypatch.delenv("SOLANA_RPC_URL", raising=False)
        monkeypatch.setenv("SOLANA_COMMITMENT", "finalized")
        get_solana_settings.cache_clear()
        try:
            settings = get_solana_settings()
        finally:
            get_solana_settings.cache_clear()

        assert settings.CLUSTER == "devnet"
        assert settings.RPC_URL == "https://api.devnet.solana.com"
        assert settings.COMMITMENT == "finalized"

    def test_solana_settings_validation(self):
        with pytest.raises(ConfigurationError, match="Invalid cluster"):
            SolanaSettings(RPC_URL="http://localhost:8899", CLUSTER="moonnet").validate()
        with pytest.raises(ConfigurationError, match="Request timeout"):
            SolanaSettings(RPC_URL="http://localhost:8899", REQUEST_TIMEOUT=0).validate()

    def test_runtime_options_from_env(self, monkeypatch):
        monkeypatch.setenv("SOLANA_ACCOUNT_BATCH_INTERVAL_MS", "20")
        monkeypatch.setenv("SOLANA_BLOCKHASH_CACHE_TTL_MS", "500")
        monkeypatch.setenv("SOLANA_MAX_RETRIES_ON_BLOCK_ERRORS", "2")
        monkeypatch.setenv("SOLANA_CONTEXT_DEBUG", "true")

        options = load_runtime_options_from_env()

        assert options.rpc.account_batch_interval == 0.02
        assert options.rpc.blockhash_cache_ttl == 0.5
        assert options.transaction.max_retries_on_block_errors == 2
        assert options.debug

    def test_runtime_options_from_env_invalid(self, monkeypatch):
        monkeypatch.setenv("SOLANA_ACCOUNT_BATCH_MAX_SIZE", "0")

        with pytest.raises(ConfigurationError, match="account_batch_max_size must be positive"):
            load_runtime_options_from_env()

    def test_runtime_options_validation(self):
        with pytest.raises(ConfigurationError, match="Invalid confirmation commitment"):
            RuntimeOptions(transaction=TransactionOptions(confirmation_commitment="recent")).validate()
        with pytest.raises(ConfigurationError, match="must be non-negative"):
            RuntimeOptions(rpc=RpcOptions(account_cache_ttl=-1)).validate()
        with pytest.raises(ConfigurationError, match="Retry counts"):
            TransactionOptions(max_retries_on_block_errors=-1).validate()


class TestInitializeRuntime:
    """Test suite for initialize_runtime."""

    @pytest.mark.asyncio
    async def test_initialize_runtime(self, monkeypatch):
        monkeypatch.setenv("SOLANA_CLUSTER", "devnet")
        monkeypatch.setenv("SOLANA_METADATA_FEED_URL", "https://feeds.example.com/v1?addresses=")
        monkeypatch.delenv("SOLANA_RPC_URL", raising=False)
        options = RuntimeOptions()
        get_solana_settings.cache_clear()

        with patch("solana_context.configure_logging_from_settings") as configure:
            runtime = solana_context.initialize_runtime(options=options)
        get_solana_settings.cache_clear()

        try:
            configure.assert_called_once()
            assert isinstance(runtime, RuntimeAccess)
            assert runtime.cluster == "devnet"
            assert runtime.rpc.rpc_url == "https://api.devnet.solana.com"
            assert runtime.confirmer is not None
            assert runtime.metadata_feeds.default_url == "https://feeds.example.com/v1?addresses="
        finally:
            await runtime.close()

    def test_initialize_runtime_configuration_error(self, monkeypatch):
        monkeypatch.setenv("SOLANA_CLUSTER", "moonnet")
        get_solana_settings.cache_clear()

        with patch("solana_context.configure_logging_from_settings"):
            with pytest.raises(ConfigurationError, match="SOLANA_CLUSTER"):
                solana_context.initialize_runtime()
        get_solana_settings.cache_clear()


class TestLoggingConfig:
    """Test suite for configure_logging_from_settings."""

    def test_handlers_are_replaced(self, tmp_path):
        root_logger = logging.getLogger()
        saved_handlers, saved_level = root_logger.handlers[:], root_logger.level
        log_file = tmp_path / "engine.log"
        try:
            configure_logging_from_settings(LoggingSettings(
                LOG_LEVEL="DEBUG",
                LOG_FILE=str(log_file),
                LOG_TO_CONSOLE=False,
            ))
            handlers = root_logger.handlers[:]
            logging.getLogger("solana_context.test").debug("written to file")
            for handler in handlers:
                handler.close()
        finally:
            root_logger.handlers[:] = saved_handlers
            root_logger.setLevel(saved_level)

        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.FileHandler)
        assert "written to file" in log_file.read_text()
        assert logging.getLogger("httpx").level == logging.WARNING
