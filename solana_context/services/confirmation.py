"""
Transaction confirmation service.

Submits a signed wire transaction and polls its signature status until the
requested commitment is reached or the transaction lifetime runs out.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, Optional, Union

from solana.rpc.commitment import Commitment

from solana_context.services.base_service import BaseService
from solana_context.services.rpc_service import RPCService
from solana_context.transaction.blueprint import BlockhashLifetime, DurableNonceLifetime
from solana_context.transaction.message import decode_nonce_account
from solana_context.utils.config import TransactionOptions
from solana_context.utils.errors import BlockHeightExceededError, NonceInvalidError, TransactionFailedError

# Configure logger
logger = logging.getLogger(__name__)

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def commitment_reached(status: Dict[str, Any], commitment: str) -> bool:
    """Check a ``getSignatureStatuses`` entry against a commitment level."""
    confirmation_status = status.get("confirmationStatus")
    if confirmation_status is None:
        # older nodes report rooted transactions with confirmations=None
        confirmation_status = "finalized" if status.get("confirmations") is None else "processed"
    return COMMITMENT_RANK[confirmation_status] >= COMMITMENT_RANK[commitment]


class TransactionConfirmer(BaseService):
    """Sends transactions and waits for them by polling signature statuses."""

    def __init__(
        self,
        rpc: RPCService,
        options: Optional[TransactionOptions] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the confirmer.

        Args:
            rpc: RPC service used to send and poll
            options: Transaction options (timeout, poll interval, commitment)
            logger: Optional logger instance
        """
        options = options or TransactionOptions()
        super().__init__(timeout=options.confirmation_timeout_seconds, logger=logger)
        self.rpc = rpc
        self.options = options

    @property
    def poll_interval(self) -> float:
        return self.options.confirmation_poll_interval_ms / 1000

    async def send_and_confirm(
        self,
        wire_transaction: str,
        signature: str,
        lifetime: Union[BlockhashLifetime, DurableNonceLifetime],
        commitment: Optional[str] = None,
        skip_preflight: bool = False
    ) -> str:
        """
        Submit a base64 wire transaction and wait for ``commitment``.

        Returns:
            The transaction signature

        Raises:
            BlockHeightExceededError: If the blockhash expired first
            NonceInvalidError: If the durable nonce advanced without this transaction
            TransactionFailedError: If the transaction landed with an error
            RpcTimeoutError: If the commitment was not reached in time
        """
        commitment = commitment or self.options.confirmation_commitment
        await self.rpc.send_transaction(
            wire_transaction,
            skip_preflight=skip_preflight,
            preflight_commitment=Commitment(commitment),
        )
        await self.confirm(signature, lifetime, commitment)
        return signature

    async def confirm(
        self,
        signature: str,
        lifetime: Union[BlockhashLifetime, DurableNonceLifetime],
        commitment: Optional[str] = None
    ) -> None:
        commitment = commitment or self.options.confirmation_commitment
        async with self.log_timing(f"confirm.{signature[:8]}"):
            await self.with_timeout(self._poll(signature, lifetime, commitment))

    async def _poll(self, signature: str, lifetime: Union[BlockhashLifetime, DurableNonceLifetime], commitment: str) -> None:
        while True:
            [status] = await self.rpc.get_signature_statuses([signature])
            if status is not None:
                if status.get("err") is not None:
                    raise TransactionFailedError(signature, status["err"])
                if commitment_reached(status, commitment):
                    self.logger.debug(f"Transaction {signature} reached {commitment}")
                    return
            else:
                await self._check_lifetime(signature, lifetime)
            await asyncio.sleep(self.poll_interval)

    async def _check_lifetime(self, signature: str, lifetime: Union[BlockhashLifetime, DurableNonceLifetime]) -> None:
        if isinstance(lifetime, DurableNonceLifetime):
            value = await self.rpc.get_account_info(lifetime.nonce_account_address)
            state = decode_nonce_account(base64.b64decode(value["data"][0])) if value else None
            actual = state.nonce if state else None
            if actual != lifetime.nonce:
                raise NonceInvalidError(
                    f"durable nonce of {lifetime.nonce_account_address} advanced: {lifetime.nonce} -> {actual}",
                    nonce_account_address=lifetime.nonce_account_address,
                    expected_nonce=lifetime.nonce,
                    actual_nonce=actual,
                )
            return

        epoch_info = await self.rpc.get_epoch_info()
        block_height = int(epoch_info["blockHeight"])
        if block_height > lifetime.last_valid_block_height:
            raise BlockHeightExceededError(signature, lifetime.last_valid_block_height, block_height)
