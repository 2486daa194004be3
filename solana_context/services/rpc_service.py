"""
RPC service for Solana cluster communication.

This module provides a JSON-RPC client over httpx covering the RPC surface
consumed by the runtime access layer, with retries on retriable HTTP
statuses and rate limits.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from solana.rpc.commitment import Commitment, Confirmed

from solana_context.services.base_service import BaseService, handle_errors
from solana_context.utils.config import SolanaSettings, get_solana_settings
from solana_context.utils.errors import (
    RpcConnectionError,
    RpcError,
    SimulationFailedError,
    ValidationError
)
from solana_context.utils.validation import validate_public_key, validate_transaction_signature

# JSON-RPC error codes
PREFLIGHT_FAILURE_CODE = -32002
RATE_LIMIT_CODE = -32005

RETRIABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

# Configure logger
logger = logging.getLogger(__name__)


class RPCService(BaseService):
    """Service for making JSON-RPC requests to a Solana cluster."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        commitment: Commitment = Confirmed,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the RPC service.

        Args:
            rpc_url: URL of the Solana RPC endpoint
            timeout: Default timeout for operations in seconds
            max_retries: Maximum number of retry attempts for failed requests
            retry_delay: Initial delay between retries in seconds
            commitment: Default commitment of read requests
            client: Optional preconfigured httpx client
            logger: Optional logger instance
        """
        super().__init__(timeout=timeout, logger=logger)
        self.rpc_url = rpc_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.commitment = commitment
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._request_ids = itertools.count(1)
        self.logger.debug(f"RPCService initialized with endpoint {self.rpc_url}")

    @classmethod
    def from_settings(cls, settings: Optional[SolanaSettings] = None) -> "RPCService":
        """Create a service from ``SolanaSettings`` (environment by default)."""
        settings = settings or get_solana_settings()
        return cls(
            rpc_url=settings.RPC_URL,
            timeout=settings.REQUEST_TIMEOUT,
            max_retries=settings.MAX_RETRIES,
            retry_delay=settings.RETRY_DELAY,
            commitment=Commitment(settings.COMMITMENT),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
        self.logger.debug("RPCService closed")

    def _retry_wait(self, retry_count: int) -> float:
        return min(self.retry_delay * (2 ** retry_count), 10.0)

    async def make_request(self, method: str, params: List[Any]) -> Any:
        """
        Make an RPC request to the Solana API.

        Args:
            method: RPC method name
            params: RPC method parameters

        Returns:
            The ``result`` member of the response

        Raises:
            RpcConnectionError: If there is a connection error
            SimulationFailedError: If preflight simulation failed
            RpcError: If the RPC request fails
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params
        }

        for retry_count in range(self.max_retries + 1):
            if retry_count > 0:
                self.logger.info(f"Retry attempt {retry_count}/{self.max_retries} for {method}")
            try:
                async with self.log_timing(f"rpc_request.{method}"):
                    response = await self.client.post(
                        self.rpc_url,
                        json=payload,
                        headers={"Content-Type": "application/json"}
                    )
            except httpx.RequestError as e:
                if retry_count < self.max_retries:
                    wait_time = self._retry_wait(retry_count)
                    self.logger.warning(f"Connection error, retrying in {wait_time}s: {str(e)}")
                    await asyncio.sleep(wait_time)
                    continue
                raise RpcConnectionError(
                    message=f"Connection error during RPC request: {str(e)}",
                    rpc_error={"method": method}
                ) from e

            if response.status_code in RETRIABLE_STATUS_CODES and retry_count < self.max_retries:
                wait_time = self._retry_wait(retry_count)
                self.logger.warning(f"HTTP status {response.status_code}, retrying in {wait_time}s: {method}")
                await asyncio.sleep(wait_time)
                continue

            if response.status_code >= 400:
                raise RpcError(
                    message=f"RPC request failed with status {response.status_code}",
                    rpc_error={"method": method, "status_code": response.status_code}
                )

            result = response.json()
            if "error" not in result:
                return result.get("result")

            error = result["error"]
            message = error.get("message", "Unknown error")
            if error.get("code") == RATE_LIMIT_CODE or "rate limited" in message.lower():
                if retry_count < self.max_retries:
                    wait_time = self._retry_wait(retry_count)
                    self.logger.warning(f"Rate limited, retrying in {wait_time}s: {method}")
                    await asyncio.sleep(wait_time)
                    continue

            raise self._to_error(method, error)

        raise RpcError(
            message=f"RPC request failed after {self.max_retries} retries",
            rpc_error={"method": method}
        )

    @staticmethod
    def _to_error(method: str, error: Dict[str, Any]) -> RpcError:
        message = error.get("message", "Unknown error")
        data = error.get("data")
        if error.get("code") == PREFLIGHT_FAILURE_CODE:
            logs = data.get("logs") if isinstance(data, dict) else None
            return SimulationFailedError(message=message, logs=logs, rpc_error=error)
        if data:
            message += f" - {json.dumps(data)}"
        return RpcError(message=f"Solana RPC error ({method}): {message}", rpc_error=error)

    def _require_address(self, address: str) -> None:
        if not validate_public_key(address):
            raise ValidationError(f"Invalid account address: {address}")

    # Solana RPC methods
    @handle_errors()
    async def get_account_info(self, address: str, commitment: Optional[Commitment] = None) -> Optional[Dict[str, Any]]:
        """
        Get account information.

        Returns:
            The account value, or None if the address holds no account
        """
        self._require_address(address)
        result = await self.make_request(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": commitment or self.commitment}]
        )
        return result["value"]

    @handle_errors()
    async def get_multiple_accounts(self, addresses: List[str], commitment: Optional[Commitment] = None) -> List[Optional[Dict[str, Any]]]:
        """Get several accounts in one request, in the order of ``addresses``."""
        for address in addresses:
            self._require_address(address)
        result = await self.make_request(
            "getMultipleAccounts",
            [addresses, {"encoding": "base64", "commitment": commitment or self.commitment}]
        )
        return result["value"]

    @handle_errors()
    async def get_latest_blockhash(self, commitment: Optional[Commitment] = None) -> Dict[str, Any]:
        """
        Get the latest blockhash.

        Returns:
            Dict with ``blockhash`` and ``lastValidBlockHeight``
        """
        result = await self.make_request(
            "getLatestBlockhash",
            [{"commitment": commitment or self.commitment}]
        )
        return result["value"]

    @handle_errors()
    async def get_transaction(self, signature: str, commitment: Optional[Commitment] = None) -> Optional[Dict[str, Any]]:
        """
        Get a transaction by signature, base64 encoded.

        Returns:
            The transaction response, or None if the node does not know it
        """
        if not validate_transaction_signature(signature):
            raise ValidationError(f"Invalid transaction signature: {signature}")
        return await self.make_request(
            "getTransaction",
            [signature, {
                "encoding": "base64",
                "commitment": commitment or self.commitment,
                "maxSupportedTransactionVersion": 0
            }]
        )

    @handle_errors()
    async def simulate_transaction(
        self,
        wire_transaction: str,
        sig_verify: bool = False,
        replace_recent_blockhash: bool = False,
        commitment: Optional[Commitment] = None
    ) -> Dict[str, Any]:
        """
        Simulate a base64 wire transaction.

        Returns:
            The simulation value (``err``, ``logs``, ``unitsConsumed``, ...)
        """
        result = await self.make_request(
            "simulateTransaction",
            [wire_transaction, {
                "encoding": "base64",
                "sigVerify": sig_verify,
                "replaceRecentBlockhash": replace_recent_blockhash,
                "commitment": commitment or self.commitment
            }]
        )
        return result["value"]

    @handle_errors()
    async def send_transaction(
        self,
        wire_transaction: str,
        skip_preflight: bool = False,
        preflight_commitment: Optional[Commitment] = None,
        max_retries: Optional[int] = None
    ) -> str:
        """
        Submit a base64 wire transaction.

        Returns:
            The transaction signature
        """
        config: Dict[str, Any] = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": preflight_commitment or self.commitment
        }
        if max_retries is not None:
            config["maxRetries"] = max_retries
        return await self.make_request("sendTransaction", [wire_transaction, config])

    @handle_errors()
    async def get_signature_statuses(self, signatures: List[str], search_transaction_history: bool = False) -> List[Optional[Dict[str, Any]]]:
        """Get the statuses of several signatures, in order."""
        result = await self.make_request(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": search_transaction_history}]
        )
        return result["value"]

    @handle_errors()
    async def get_epoch_info(self, commitment: Optional[Commitment] = None) -> Dict[str, Any]:
        """Get the current epoch info (includes ``blockHeight``)."""
        return await self.make_request("getEpochInfo", [{"commitment": commitment or self.commitment}])

    @handle_errors()
    async def get_slot(self, commitment: Optional[Commitment] = None) -> int:
        """Get the current slot."""
        return await self.make_request("getSlot", [{"commitment": commitment or self.commitment}])

    @handle_errors()
    async def get_minimum_balance_for_rent_exemption(self, data_length: int) -> int:
        """Get the lamports needed to keep an account of ``data_length`` bytes rent exempt."""
        return await self.make_request("getMinimumBalanceForRentExemption", [data_length])

    @handle_errors()
    async def request_airdrop(self, address: str, lamports: int) -> str:
        """Request an airdrop (test clusters only)."""
        self._require_address(address)
        return await self.make_request("requestAirdrop", [address, lamports])
