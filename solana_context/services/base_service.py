"""
Base service class for Solana context engine services.

This module provides a base class for the network-facing services, with
common functionality for error handling, timeouts, and logging.
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from solana_context.utils.errors import RpcError, RpcTimeoutError, SolanaContextError

T = TypeVar('T')

# Configure logger
logger = logging.getLogger(__name__)


def handle_errors(error_type: Type[RpcError] = RpcError):
    """
    Decorator to handle errors in service methods.

    Engine errors and cancellations propagate unchanged; anything else is
    wrapped into ``error_type``.

    Args:
        error_type: The type of error to raise if an exception occurs

    Returns:
        Decorated function
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except SolanaContextError:
                raise
            except asyncio.TimeoutError as e:
                logger.exception(f"Timeout in {func.__name__}: {str(e)}")
                raise RpcTimeoutError(f"Operation timed out: {func.__name__}", timeout=0.0) from e
            except Exception as e:
                logger.exception(f"Error in {func.__name__}: {str(e)}")
                raise error_type(f"Error in {func.__name__}: {str(e)}") from e
        return wrapper
    return decorator


class BaseService:
    """
    Base service class with common functionality.

    This class provides:
    - Timeout management
    - Logging
    - Performance tracking
    """

    def __init__(self, timeout: float = 30.0, logger: Optional[logging.Logger] = None):
        """
        Initialize the base service.

        Args:
            timeout: Default timeout for service operations in seconds
            logger: Optional logger instance
        """
        self.timeout = timeout
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def with_timeout(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await with a timeout.

        Args:
            awaitable: The awaitable to wait for
            timeout: Optional custom timeout in seconds

        Returns:
            The result of the awaitable

        Raises:
            RpcTimeoutError: If the operation times out
        """
        timeout_value = timeout or self.timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_value)
        except asyncio.TimeoutError as e:
            raise RpcTimeoutError(f"Operation timed out after {timeout_value}s", timeout=timeout_value) from e

    def log_timing(self, operation_name: str) -> "TimingContextManager":
        """
        Create a context manager to log timing information.

        Args:
            operation_name: Name of the operation

        Returns:
            Timing context manager
        """
        return TimingContextManager(operation_name, self.logger)


class TimingContextManager:
    """Async context manager to log timing information."""

    def __init__(self, operation_name: str, logger: logging.Logger):
        self.operation_name = operation_name
        self.logger = logger
        self.start_time = 0.0

    async def __aenter__(self) -> "TimingContextManager":
        self.start_time = time.time()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        elapsed = time.time() - self.start_time
        if exc_val is not None:
            self.logger.debug(
                f"{self.operation_name} failed after {elapsed:.2f}s: {str(exc_val)}"
            )
        else:
            self.logger.debug(f"{self.operation_name} completed in {elapsed:.2f}s")
