"""Unit tests for BaseService.

This module tests the base service functionality.
"""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from solana_context.services.base_service import BaseService, handle_errors
from solana_context.utils.errors import RpcError, RpcTimeoutError, ValidationError


class TestBaseService:
    """Test suite for BaseService."""

    @pytest.fixture
    def base_service(self):
        """Create a BaseService instance for testing."""
        return BaseService(timeout=0.05)

    @pytest.mark.asyncio
    async def test_with_timeout_success(self, base_service):
        """Test with_timeout when the coroutine completes within the timeout."""
        async def fast_coro():
            return "success"

        result = await base_service.with_timeout(fast_coro())

        assert result == "success"

    @pytest.mark.asyncio
    async def test_with_timeout_timeout(self, base_service):
        """Test with_timeout when the coroutine times out."""
        async def slow_coro():
            await asyncio.sleep(1)
            return "success"

        with pytest.raises(RpcTimeoutError) as exc_info:
            await base_service.with_timeout(slow_coro())

        assert exc_info.value.details["timeout"] == 0.05

    @pytest.mark.asyncio
    async def test_with_timeout_custom_timeout(self, base_service):
        """Test with_timeout with a per-call timeout."""
        async def slow_coro():
            await asyncio.sleep(1)

        with pytest.raises(RpcTimeoutError, match="0.01s"):
            await base_service.with_timeout(slow_coro(), timeout=0.01)

    @pytest.mark.asyncio
    async def test_log_timing(self, base_service):
        """Test the timing context manager logs completion and failure."""
        base_service.logger = MagicMock()

        async with base_service.log_timing("fetch"):
            pass

        with pytest.raises(ValueError):
            async with base_service.log_timing("send"):
                raise ValueError("boom")

        messages = [call.args[0] for call in base_service.logger.debug.call_args_list]
        assert messages[0].startswith("fetch completed in")
        assert messages[1].startswith("send failed after")
        assert messages[1].endswith("boom")

    def test_default_logger_name(self):
        """Test the logger is named after the service class."""
        assert BaseService().logger.name == "BaseService"


class TestHandleErrors:
    """Test suite for the handle_errors decorator."""

    @pytest.mark.asyncio
    async def test_wraps_unexpected_errors(self, caplog):
        """Test unexpected exceptions are wrapped into the error type."""
        @handle_errors()
        async def get_balance():
            raise KeyError("result")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(RpcError, match="Error in get_balance") as exc_info:
                await get_balance()

        assert isinstance(exc_info.value.__cause__, KeyError)
        assert "Error in get_balance" in caplog.text

    @pytest.mark.asyncio
    async def test_engine_errors_propagate(self):
        """Test engine errors are re-raised unchanged."""
        error = ValidationError("bad address")

        @handle_errors()
        async def get_account_info():
            raise error

        with pytest.raises(ValidationError) as exc_info:
            await get_account_info()

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_timeouts_become_rpc_timeouts(self):
        """Test asyncio timeouts are reported as RpcTimeoutError."""
        @handle_errors()
        async def get_slot():
            raise asyncio.TimeoutError()

        with pytest.raises(RpcTimeoutError, match="get_slot"):
            await get_slot()

    @pytest.mark.asyncio
    async def test_returns_result(self):
        """Test the decorated function result passes through."""
        @handle_errors()
        async def get_slot():
            return 42

        assert await get_slot() == 42
