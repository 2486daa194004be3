"""
Error types for the Solana context engine.

This module defines the exception hierarchy shared by the context graph,
the runtime access layer and the transaction pipeline.
"""

import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class ErrorCode(str, Enum):
    """Error codes for the Solana context engine."""

    # General errors
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CANCELLED = "CANCELLED"

    # Solana RPC errors
    RPC_ERROR = "RPC_ERROR"
    RPC_TIMEOUT = "RPC_TIMEOUT"
    RPC_CONNECTION_ERROR = "RPC_CONNECTION_ERROR"
    SIMULATION_FAILED = "SIMULATION_FAILED"

    # Service errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

    # Transaction errors
    ASSEMBLY_FAILED = "ASSEMBLY_FAILED"
    MISSING_SIGNATURES = "MISSING_SIGNATURES"
    INVALID_NONCE = "INVALID_NONCE"
    BLOCK_HEIGHT_EXCEEDED = "BLOCK_HEIGHT_EXCEEDED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"


class SolanaContextError(Exception):
    """Base exception for all Solana context engine errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize a new error.

        Args:
            message: Error message
            code: Error code
            details: Additional error details
        """
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the error to a dictionary.

        Returns:
            Dictionary representation of the error
        """
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(SolanaContextError):
    """Exception for invalid or missing configuration."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.CONFIGURATION_ERROR,
            details=details
        )


class ValidationError(SolanaContextError):
    """Exception for arguments that do not match a declared schema."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            details=details
        )


class OperationCancelledError(SolanaContextError):
    """Raised when a cancellation token fires while a call is pending."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message=message, code=ErrorCode.CANCELLED)


class RpcError(SolanaContextError):
    """Exception for Solana RPC errors."""

    def __init__(
        self,
        message: str,
        rpc_error: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.RPC_ERROR
    ):
        super().__init__(
            message=message,
            code=code,
            details={"rpc_error": rpc_error or {}}
        )

    @property
    def rpc_code(self) -> Optional[int]:
        """JSON-RPC error code, if the node returned one."""
        return self.details["rpc_error"].get("code")


class SimulationFailedError(RpcError):
    """Preflight or simulation failure. Carries the program logs."""

    def __init__(
        self,
        message: str,
        logs: Optional[List[str]] = None,
        rpc_error: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            rpc_error=rpc_error,
            code=ErrorCode.SIMULATION_FAILED
        )
        self.logs = list(logs or [])
        self.details["logs"] = self.logs


class RpcTimeoutError(RpcError):
    """Exception for Solana RPC timeout errors."""

    def __init__(
        self,
        message: str,
        timeout: float,
        rpc_error: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            rpc_error=rpc_error,
            code=ErrorCode.RPC_TIMEOUT
        )
        self.details["timeout"] = timeout


class RpcConnectionError(RpcError):
    """Exception for Solana RPC connection errors."""

    def __init__(
        self,
        message: str,
        rpc_error: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            rpc_error=rpc_error,
            code=ErrorCode.RPC_CONNECTION_ERROR
        )


class ExternalServiceError(SolanaContextError):
    """Exception for errors from off-chain services."""

    def __init__(
        self,
        message: str,
        service_name: str,
        details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        error_details["service_name"] = service_name

        super().__init__(
            message=message,
            code=ErrorCode.EXTERNAL_SERVICE_ERROR,
            details=error_details
        )


class TransactionAssemblyError(SolanaContextError):
    """A blueprint stage could not be resolved; nothing was signed."""

    def __init__(self, message: str, stage: str):
        super().__init__(
            message=message,
            code=ErrorCode.ASSEMBLY_FAILED,
            details={"stage": stage}
        )
        self.stage = stage


class MissingSignaturesError(SolanaContextError):
    """Raised when a transaction is not fully signed."""

    def __init__(self, addresses: Iterable[str]):
        self.addresses = list(addresses)
        super().__init__(
            message=f"transaction is missing signatures for addresses: {', '.join(self.addresses)}",
            code=ErrorCode.MISSING_SIGNATURES,
            details={"addresses": self.addresses}
        )


class NonceInvalidError(SolanaContextError):
    """The durable nonce advanced before the transaction was observed."""

    def __init__(self, message: str, nonce_account_address: str, expected_nonce: str, actual_nonce: Optional[str]):
        super().__init__(
            message=message,
            code=ErrorCode.INVALID_NONCE,
            details={
                "nonce_account_address": nonce_account_address,
                "expected_nonce": expected_nonce,
                "actual_nonce": actual_nonce,
            }
        )


class BlockHeightExceededError(SolanaContextError):
    """The blockhash lifetime ended before the transaction was confirmed."""

    def __init__(self, signature: str, last_valid_block_height: int, block_height: int):
        super().__init__(
            message=f"block height exceeded: {block_height} > {last_valid_block_height} ({signature})",
            code=ErrorCode.BLOCK_HEIGHT_EXCEEDED,
            details={
                "signature": signature,
                "last_valid_block_height": last_valid_block_height,
                "block_height": block_height,
            }
        )


class TransactionFailedError(SolanaContextError):
    """The transaction landed but the ledger reported an error for it."""

    def __init__(self, signature: str, err: Any):
        super().__init__(
            message=f"transaction {signature} failed: {err}",
            code=ErrorCode.TRANSACTION_FAILED,
            details={"signature": signature, "err": err}
        )
        self.signature = signature
        self.err = err


class ReportedError(SolanaContextError):
    """
    Wrapper raised by ``TransactionExecutor.execute`` after the error hooks ran.

    The original exception is kept as ``cause`` (and chained as ``__cause__``);
    ``reported`` lets calling code skip reporting it a second time.
    """

    def __init__(self, cause: BaseException, reported: bool = True):
        message = cause.message if isinstance(cause, SolanaContextError) else str(cause)
        code = cause.code if isinstance(cause, SolanaContextError) else ErrorCode.UNKNOWN_ERROR
        super().__init__(
            message=message,
            code=code,
            details={"error_type": type(cause).__name__}
        )
        self.cause = cause
        self.reported = reported


STALE_LEDGER_VIEW_PATTERN = re.compile(
    r"network has progressed|blockhash not found|already been processed",
    re.IGNORECASE
)


def message_with_cause(err: BaseException) -> str:
    """Error message followed by the message of its cause, if any."""
    cause = err.__cause__
    message = str(err)
    if cause is not None and str(cause):
        message = f"{message} - {cause}"
    return message


def is_stale_ledger_view_error(err: BaseException) -> bool:
    """
    Check whether an error is one of the transient "stale ledger view" failures.

    Only engine errors are considered. The pattern is matched against the
    error message followed by the message of its cause, if any.

    Args:
        err: The error raised while sending a transaction

    Returns:
        True if the error may be retried with the same signed transaction
    """
    if not isinstance(err, SolanaContextError):
        return False
    return bool(STALE_LEDGER_VIEW_PATTERN.search(message_with_cause(err)))
