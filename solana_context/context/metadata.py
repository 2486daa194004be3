"""
Off-chain metadata contexts.

A metadata context resolves the address of its parent account and reads the
market feed record of that address from the metadata HTTP API instead of the
ledger. Feed reads of one runtime are batched and cached per feed URL.
"""

import logging
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from solana_context.context.account import AccountContext
from solana_context.context.address import AddressResolverVariant
from solana_context.context.node import Context
from solana_context.utils.batching import BatchLoader, KeyedLoaderRegistry
from solana_context.utils.errors import ExternalServiceError

logger = logging.getLogger(__name__)

METADATA_SERVICE_NAME = "metadata feed"
METADATA_BATCH_MAX_SIZE = 100
METADATA_CACHE_MAX_SIZE = 100
METADATA_MIN_CACHE_TTL = 60.0
# from this many keys on, the whole feed is cheaper than a filtered query
FULL_FEED_THRESHOLD = 10


class MetadataFigures(BaseModel):
    """Computed valuation figures of a feed record. Feed-specific extras are kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    apy: float
    one_token_as_sol: float = Field(alias="oneTokenAsSOL")
    one_token_as_usd: float = Field(alias="oneTokenAsUSD")
    tvl_as_sol: float = Field(alias="tvlAsSOL")
    tvl_as_usd: float = Field(alias="tvlAsUSD")


class MetadataRecord(BaseModel):
    """One market feed record, keyed by token address."""

    model_config = ConfigDict(populate_by_name=True)

    address: str
    type: str
    symbol: str
    display_name: str = Field(alias="displayName")
    data: MetadataFigures
    updated_at: str = Field(alias="updatedAt")
    update_interval_seconds: int = Field(alias="updateIntervalSeconds")


def default_feed_url(cluster: str) -> str:
    return f"https://api{'.dev' if cluster == 'devnet' else ''}.fragmetric.xyz/v1/public/feeds?addresses="


class MetadataFeedRegistry:
    """
    Feed loaders of one runtime, one ``BatchLoader`` per feed URL.

    Cache TTL is the account cache TTL but at least 60 seconds; the batch
    window follows the account batch interval.
    """

    def __init__(
        self,
        runtime: Any,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        default_url: Optional[str] = None
    ):
        self.runtime = runtime
        self.default_url = default_url
        self.client = client
        self.timeout = timeout
        self._loaders: KeyedLoaderRegistry[str, Optional[MetadataRecord]] = KeyedLoaderRegistry(self._create_loader)

    def __len__(self) -> int:
        return len(self._loaders)

    def loader(self, feed_url: Optional[str] = None) -> BatchLoader:
        return self._loaders.get(feed_url or self.default_url or default_feed_url(self.runtime.cluster))

    def _create_loader(self, feed_url: str) -> BatchLoader:
        options = self.runtime.options.rpc
        if self.runtime.debug:
            logger.debug(f"created metadata feed loader: {feed_url}")

        async def fetch_batch(keys: List[str]) -> List[Optional[MetadataRecord]]:
            return await self.fetch_feed(feed_url, keys)

        return BatchLoader(
            fetch_batch,
            max_batch_size=METADATA_BATCH_MAX_SIZE,
            batch_interval=options.account_batch_interval,
            cache_ttl=max(options.account_cache_ttl, METADATA_MIN_CACHE_TTL),
            cache_max_size=METADATA_CACHE_MAX_SIZE,
            name="metadata",
        )

    async def fetch_feed(self, feed_url: str, keys: List[str]) -> List[Union[MetadataRecord, None, Exception]]:
        """
        Query the feed for ``keys``.

        Returns:
            One record (or None) per key; every key gets the same exception
            when the request itself fails
        """
        if self.runtime.debug:
            logger.debug(f"fetching metadata feed in a batch: {keys}")
        url = feed_url + (",".join(keys) if len(keys) < FULL_FEED_THRESHOLD else "")
        try:
            if self.client is not None:
                response = await self.client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            error = ExternalServiceError(f"metadata feed request failed: {str(e)}", service_name=METADATA_SERVICE_NAME)
            error.__cause__ = e
            return [error for _ in keys]

        if response.status_code >= 400:
            error = ExternalServiceError(
                f"{response.reason_phrase}: {response.text}",
                service_name=METADATA_SERVICE_NAME,
                details={"status_code": response.status_code, "url": url}
            )
            return [error for _ in keys]

        payload: Dict[str, Any] = response.json()
        results: List[Union[MetadataRecord, None, Exception]] = []
        for key in keys:
            item = payload.get(key)
            if item is None:
                results.append(None)
                continue
            try:
                results.append(MetadataRecord.model_validate(item))
            except PydanticValidationError as e:
                results.append(ExternalServiceError(
                    f"invalid metadata record for {key}",
                    service_name=METADATA_SERVICE_NAME,
                    details={"errors": e.errors()}
                ))
        return results


class MetadataContext(AccountContext[MetadataRecord]):
    """Market feed record of an address, read from the metadata API."""

    def __init__(self, parent: Context, address_resolver: AddressResolverVariant, feed_url: Optional[str] = None):
        if isinstance(parent, MetadataContext):
            raise ValueError("cannot create a circular metadata context")
        super().__init__(parent, address_resolver)
        self.feed_url = feed_url

    @classmethod
    def from_account(cls, parent: AccountContext, feed_url: Optional[str] = None) -> "MetadataContext":
        """Metadata of the address ``parent`` resolves to."""
        return cls(parent, lambda p: p.resolve_address(), feed_url)

    @property
    def feed(self) -> BatchLoader:
        return self.runtime.metadata_feeds.loader(self.feed_url)

    async def _fetch_account(self, no_cache: bool) -> Optional[MetadataRecord]:
        address = await self.resolve_address(no_cache)
        if not address:
            return None
        feed = self.feed
        if no_cache and feed.clear(address) and self.debug:
            logger.debug(f"invalidated metadata feed: {address}")
        return await feed.load(address)

    async def resolve(self, no_cache: bool = False) -> Optional[MetadataRecord]:
        return await self.resolve_account(no_cache)
