"""
Runtime access layer.

``RuntimeAccess`` is the root of every context graph. It batches concurrent
account and blockhash reads into single RPC calls, caches the results with
a TTL, and owns the cancellation token shared by its pending calls.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar

from solana.rpc.commitment import Commitment

from solana_context.services.confirmation import TransactionConfirmer
from solana_context.services.rpc_service import RPCService
from solana_context.transaction.blueprint import BlockhashLifetime, DurableNonceLifetime
from solana_context.transaction.message import AddressLookupTableState, decode_address_lookup_table, decode_nonce_account
from solana_context.utils.batching import BatchLoader
from solana_context.utils.cancellation import CancellationToken
from solana_context.utils.config import DEFAULT_CLUSTER_URLS, RuntimeOptions, SolanaSettings

from solana_context.context.node import Context, ContextDescription

T = TypeVar('T')

BLOCKHASH_KEY = "latest"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountRecord:
    """Raw account as returned by the cluster. Replaced wholesale on refetch."""

    address: str
    data: bytes
    program_address: str
    lamports: int
    executable: bool
    space: int

    @classmethod
    def from_rpc(cls, address: str, value: Dict[str, Any]) -> "AccountRecord":
        encoded, encoding = value["data"]
        if encoding != "base64":
            raise ValueError(f"unsupported account data encoding: {encoding}")
        data = base64.b64decode(encoded)
        return cls(
            address=address,
            data=data,
            program_address=value["owner"],
            lamports=value["lamports"],
            executable=value["executable"],
            space=value.get("space", len(data)),
        )


class RuntimeAccess(Context):
    """Root context giving batched, cached access to one cluster."""

    def __init__(
        self,
        rpc: RPCService,
        cluster: str = "mainnet",
        options: Optional[RuntimeOptions] = None,
        confirmer: Optional[TransactionConfirmer] = None,
        runtime_type: str = "solana"
    ):
        super().__init__(parent=None)
        self.rpc = rpc
        self.cluster = cluster
        self.type = runtime_type
        self.confirmer = confirmer
        self.options = options or RuntimeOptions()
        self.options.validate()

        transaction = self.options.transaction
        if transaction.fee_payer is None and transaction.signers:
            self.options = replace(
                self.options,
                transaction=replace(transaction, fee_payer=transaction.signers[0]),
            )

        rpc_options = self.options.rpc
        self._account_loader: BatchLoader[str, Optional[AccountRecord]] = BatchLoader(
            self._fetch_batched_accounts,
            max_batch_size=rpc_options.account_batch_max_size,
            batch_interval=rpc_options.account_batch_interval,
            cache_ttl=rpc_options.account_cache_ttl,
            cache_max_size=rpc_options.account_cache_max_size,
            name="accounts",
        )
        self._blockhash_loader: BatchLoader[str, BlockhashLifetime] = BatchLoader(
            self._fetch_batched_latest_blockhash,
            max_batch_size=rpc_options.blockhash_batch_max_size,
            batch_interval=rpc_options.blockhash_batch_interval,
            cache_ttl=rpc_options.blockhash_cache_ttl if self.type == "solana" else 0.0,
            cache_max_size=1,
            name="blockhash",
        )
        self._cancellation_token = self._create_cancellation_token()

        # imported here: the metadata module depends on account contexts
        from solana_context.context.metadata import MetadataFeedRegistry
        self.metadata_feeds = MetadataFeedRegistry(self)

    @classmethod
    def connect(
        cls,
        rpc_url: Optional[str] = None,
        cluster: str = "mainnet",
        options: Optional[RuntimeOptions] = None,
        settings: Optional[SolanaSettings] = None
    ) -> "RuntimeAccess":
        """
        Create a runtime talking to ``rpc_url`` (or the cluster's public
        endpoint), with polling confirmation.
        """
        if settings is not None:
            rpc = RPCService.from_settings(settings)
            cluster = settings.CLUSTER
        else:
            rpc = RPCService(rpc_url or DEFAULT_CLUSTER_URLS[cluster])
        options = options or RuntimeOptions()
        confirmer = TransactionConfirmer(rpc, options.transaction)
        runtime = cls(rpc, cluster=cluster, options=options, confirmer=confirmer)
        if settings is not None and settings.METADATA_FEED_URL:
            runtime.metadata_feeds.default_url = settings.METADATA_FEED_URL
        return runtime

    async def close(self) -> None:
        await self.rpc.close()

    @property
    def debug(self) -> bool:
        return self.options.debug

    def describe(self) -> ContextDescription:
        desc = super().describe()
        desc.properties.update(type=self.type, cluster=self.cluster)
        return desc

    async def resolve(self, no_cache: bool = False) -> None:
        return None

    # Cancellation

    @property
    def cancellation_token(self) -> CancellationToken:
        return self._cancellation_token

    def _create_cancellation_token(self) -> CancellationToken:
        token = CancellationToken()
        token.on_cancel(self._replace_cancellation_token)
        return token

    def _replace_cancellation_token(self, _: CancellationToken) -> None:
        self._cancellation_token = self._create_cancellation_token()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel every pending call of this runtime; later calls are unaffected."""
        self._cancellation_token.cancel(reason)

    async def call(self, awaitable: Awaitable[T]) -> T:
        """Await a network call under the current cancellation token."""
        return await self.cancellation_token.run(awaitable)

    # Blockhash

    async def fetch_latest_blockhash(self) -> BlockhashLifetime:
        return await self._blockhash_loader.load(BLOCKHASH_KEY)

    async def _fetch_batched_latest_blockhash(self, keys: List[str]) -> List[Any]:
        if self.debug:
            logger.debug(f"fetching recent blockhash in a batch ({len(keys)})")
        value = await self.call(self.rpc.get_latest_blockhash())
        lifetime = BlockhashLifetime(
            blockhash=value["blockhash"],
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )
        return [lifetime for _ in keys]

    # Accounts

    async def fetch_account(self, address: str, no_cache: bool = False) -> Optional[AccountRecord]:
        """
        Fetch one account, or None if the address holds no account.

        With ``no_cache`` the account is fetched directly, outside the batch
        queue, and the cache is primed with the fresh record.
        """
        if not no_cache:
            return await self._account_loader.load(address)

        if self.debug:
            logger.debug(f"fetching an account (no cache): {address}")
        value = await self.call(self.rpc.get_account_info(address))
        record = AccountRecord.from_rpc(address, value) if value else None
        self._account_loader.clear(address)
        self._account_loader.prime(address, record)
        return record

    async def fetch_multiple_accounts(self, addresses: Sequence[str]) -> List[Optional[AccountRecord]]:
        """Fetch several accounts through the batch queue, in order."""
        return await self._account_loader.load_many(list(addresses))

    def invalidate_account(self, address: str) -> bool:
        """
        Drop the cached entry of an account.

        Returns:
            True if an entry was removed
        """
        removed = self._account_loader.clear(address)
        if removed and self.debug:
            logger.debug(f"invalidated an account: {address}")
        return removed

    async def _fetch_batched_accounts(self, addresses: List[str]) -> List[Optional[AccountRecord]]:
        if self.debug:
            logger.debug(f"fetching accounts in a batch ({len(addresses)}): {addresses}")
        if len(addresses) == 1:
            values = [await self.call(self.rpc.get_account_info(addresses[0]))]
        else:
            values = await self.call(self.rpc.get_multiple_accounts(addresses))
        return [
            AccountRecord.from_rpc(address, value) if value else None
            for address, value in zip(addresses, values)
        ]

    # Typed reads

    async def fetch_nonce_config(self, address: str) -> Optional[DurableNonceLifetime]:
        """Read the current nonce of a nonce account, always bypassing the cache."""
        record = await self.fetch_account(address, no_cache=True)
        if record is None:
            return None
        state = decode_nonce_account(record.data)
        if state is None:
            return None
        return DurableNonceLifetime(
            nonce=state.nonce,
            nonce_account_address=address,
            nonce_authority_address=state.authority,
        )

    async def fetch_address_lookup_table(self, address: str, no_cache: bool = False) -> Optional[AddressLookupTableState]:
        record = await self.fetch_account(address, no_cache)
        if record is None:
            return None
        return decode_address_lookup_table(record.data)

    async def fetch_multiple_address_lookup_tables(self, addresses: Sequence[str], no_cache: bool = False) -> Dict[str, List[str]]:
        """Map each existing table address to its addresses; missing tables are left out."""
        tables = await asyncio.gather(*[
            self.fetch_address_lookup_table(address, no_cache) for address in addresses
        ])
        return {
            address: list(table.addresses)
            for address, table in zip(addresses, tables)
            if table is not None
        }

    # Plain reads

    async def fetch_transaction(self, signature: str, commitment: Optional[Commitment] = None) -> Optional[Dict[str, Any]]:
        commitment = commitment or Commitment(self.options.transaction.confirmation_commitment)
        return await self.call(self.rpc.get_transaction(signature, commitment))

    async def fetch_slot(self, commitment: Optional[Commitment] = None) -> int:
        return await self.call(self.rpc.get_slot(commitment))

    async def fetch_epoch_info(self, commitment: Optional[Commitment] = None) -> Dict[str, Any]:
        return await self.call(self.rpc.get_epoch_info(commitment))
