"""
Account contexts.

An account context owns an address resolver and the last resolved account
of that address. Resolution is deduplicated per node, and whole subtrees
can be resolved concurrently with ``resolve_account_tree``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterator, List, Optional, Sequence, TypeVar

from solana_context.context.address import AddressResolverVariant, normalize_address_resolver
from solana_context.context.node import Context, ContextDescription, ContextNode, ChildEntry, Reach, dedup_key
from solana_context.context.program import ProgramDerivedContext
from solana_context.context.runtime import AccountRecord

A = TypeVar('A')
T = TypeVar('T')

DEFAULT_MAX_TREE_DEPTH = 10

logger = logging.getLogger(__name__)


class _Unresolved:
    def __repr__(self) -> str:
        return "UNRESOLVED"


UNRESOLVED: Any = _Unresolved()


class AccountContext(ProgramDerivedContext, Generic[A]):
    """
    Base of every account node.

    ``account`` is UNRESOLVED until the first resolution, None when the
    address holds no account (or could not be computed), and the decoded
    account otherwise.
    """

    # resolve self first, then walk the children it created
    lazy_tree_resolve = False

    def __init__(self, parent: Context, address_resolver: AddressResolverVariant):
        super().__init__(parent=parent)
        self._address_resolver = normalize_address_resolver(address_resolver)
        self._address: Optional[str] = None
        self._account: Any = UNRESOLVED

    @property
    def address(self) -> Optional[str]:
        if self._address is None and self.debug:
            logger.warning(f"address is not computed yet: {self}")
        return self._address

    @property
    def account(self) -> Optional[A]:
        if self._account is UNRESOLVED:
            if self.debug:
                logger.warning(f"account is not resolved yet: {self}")
            return None
        return self._account

    @property
    def resolved(self) -> bool:
        return self._account is not UNRESOLVED

    def describe(self) -> ContextDescription:
        desc = super().describe()
        desc.properties["address"] = self._address
        desc.unresolved = self._account is UNRESOLVED
        desc.unused = self._account is None
        return desc

    def _deduplicated(self, method: str, resolver: Callable[[], Awaitable[T]], no_cache: bool, *params: Any) -> Awaitable[T]:
        options = self.runtime_options
        return self.deduplicate(
            dedup_key(method, no_cache, *params),
            resolver,
            alternate_key=None if no_cache else dedup_key(method, True, *params),
            ttl_seconds=0 if no_cache else (options.rpc.account_deduplication_interval if options else None),
        )

    # Address

    async def resolve_address(self, no_cache: bool = False) -> Optional[str]:
        return await self._deduplicated("resolve_address", self._resolve_address, no_cache)

    async def _resolve_address(self) -> Optional[str]:
        address = await self._address_resolver(self.parent)
        self._address = address
        if address:
            if self.debug:
                logger.debug(f"computed account address: {self}")
            return address
        if self.debug:
            logger.warning(f"failed to compute account address: {self}")
        return None

    # Account

    async def resolve_account(self, no_cache: bool = False) -> Optional[A]:
        """Resolve the address, then fetch and decode the account."""
        return await self._deduplicated_resolve_account(no_cache)

    async def _deduplicated_resolve_account(self, no_cache: bool = False) -> Optional[A]:
        return await self._deduplicated("resolve_account", lambda: self._resolve_account(no_cache), no_cache)

    async def _resolve_account(self, no_cache: bool) -> Optional[A]:
        record = await self._fetch_account(no_cache)
        self._account = self._decode_account(record) if record is not None else None
        return self._account

    async def _fetch_account(self, no_cache: bool) -> Any:
        address = await self._resolve_address()
        if not address:
            return None
        if no_cache:
            self.runtime.invalidate_account(address)
        return await self.runtime.fetch_account(address)

    def _decode_account(self, record: Any) -> A:
        return record

    # Tree

    async def resolve_account_tree(self, no_cache: bool = False, max_depth: int = DEFAULT_MAX_TREE_DEPTH) -> Optional[A]:
        """
        Resolve this account and every account context reachable below it,
        at most ``max_depth`` hops away.

        Returns:
            The account of this node
        """
        return await self._deduplicated(
            "resolve_account_tree",
            lambda: self._resolve_account_tree(no_cache, max_depth),
            no_cache,
            max_depth,
        )

    async def _resolve_account_tree(self, no_cache: bool, max_depth: int, recurring: bool = False) -> Any:
        pending: List[Awaitable[Any]] = []

        def visit(node: ContextNode) -> Reach:
            ctx = node.context
            if isinstance(ctx, AccountContext) and not (recurring and ctx is self):
                if ctx.lazy_tree_resolve:
                    pending.append(ctx._resolve_lazily(no_cache, max_depth - node.depth))
                else:
                    pending.append(ctx._deduplicated_resolve_account(no_cache))
            return Reach(inbound=0, outbound=min(max_depth, max_depth - node.depth))

        self.visit_graph(visit)
        results = await asyncio.gather(*pending)

        if recurring:
            return results
        return self._account if self._account is not UNRESOLVED else None

    async def _resolve_lazily(self, no_cache: bool, max_depth: int) -> Optional[A]:
        await self._deduplicated_resolve_account(no_cache)
        await self._resolve_account_tree(no_cache, max_depth, recurring=True)
        return self.account


class BaseAccountContext(AccountContext[AccountRecord]):
    """Account context that keeps the raw ``AccountRecord``."""

    async def resolve(self, no_cache: bool = False) -> Optional[AccountRecord]:
        return await self.resolve_account(no_cache)


@dataclass(frozen=True)
class DecodedAccount(Generic[T]):
    record: AccountRecord
    data: T


AccountCodec = Callable[[bytes, str], Any]


class CodecAccountContext(AccountContext[DecodedAccount]):
    """Account context decoding the account data with an injected codec."""

    def __init__(self, parent: Context, address_resolver: AddressResolverVariant, codec: AccountCodec):
        super().__init__(parent, address_resolver)
        self.codec = codec

    def _decode_account(self, record: AccountRecord) -> DecodedAccount:
        return DecodedAccount(record=record, data=self.codec(record.data, record.program_address))

    async def resolve(self, no_cache: bool = False) -> Any:
        account = await self.resolve_account(no_cache)
        return account.data if account is not None else None


AddressesResolver = Callable[[Any], Awaitable[Optional[Sequence[str]]]]
ChildResolver = Callable[[Any, str], Awaitable[Optional[AccountContext]]]


class IterativeAccountContext(AccountContext[List[Any]]):
    """
    A dynamic collection of account contexts.

    ``addresses_resolver(parent)`` lists the member addresses and
    ``account_resolver(parent, address)`` creates the context of one member.
    Members are siblings of this node: their parent is this node's parent.
    Existing members are reused when their address is listed again.
    """

    lazy_tree_resolve = True

    def __init__(self, parent: Context, addresses_resolver: AddressesResolver, account_resolver: ChildResolver):
        async def joined_addresses(parent: Any) -> Optional[str]:
            addresses = await addresses_resolver(parent)
            return ", ".join(addresses) if addresses is not None else None

        super().__init__(parent, joined_addresses)
        self.addresses_resolver = addresses_resolver
        self.account_resolver = account_resolver
        self._items: List[AccountContext] = []

    @property
    def children(self) -> List[AccountContext]:
        return self._items

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> AccountContext:
        return self._items[index]

    def __iter__(self) -> Iterator[AccountContext]:
        return iter(list(self._items))

    def child_entries(self) -> List[ChildEntry]:
        return [(str(i), child) for i, child in enumerate(self._items)]

    def describe(self) -> ContextDescription:
        desc = super().describe()
        desc.properties.pop("address", None)
        labels = list(dict.fromkeys(child.describe().label for child in self._items))
        desc.properties["length"] = len(self._account) if isinstance(self._account, list) else None
        desc.properties["types"] = ",".join(labels) or None
        desc.unused = all(child._account is None or child._account is UNRESOLVED for child in self._items)
        return desc

    async def resolve(self, no_cache: bool = False) -> List[Any]:
        await self.resolve_account(no_cache)
        return list(await asyncio.gather(*[child.resolve(no_cache) for child in self._items]))

    async def resolve_account(self, no_cache: bool = False) -> Optional[List[Any]]:
        return await self.resolve_account_tree(no_cache)

    async def _resolve_account(self, no_cache: bool) -> Optional[List[Any]]:
        addresses = await self.addresses_resolver(self.parent)
        if addresses is None:
            self._address = None
            self._account = None
            return None
        self._address = ", ".join(addresses)

        existing = {child._address: child for child in self._items if child._address}

        async def member(address: str) -> Optional[AccountContext]:
            if address in existing:
                return existing[address]
            return await self.account_resolver(self.parent, address)

        children = [child for child in await asyncio.gather(*[member(a) for a in addresses]) if child is not None]
        self._items[:] = children

        self._account = list(await asyncio.gather(*[child.resolve_account(no_cache) for child in children]))
        return self._account
