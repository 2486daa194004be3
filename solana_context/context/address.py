"""
Address resolution helpers.

An address can be given as a literal (base58 string or ``Pubkey``), as a
signer object (anything with an ``address``), or as an async resolver that
receives the parent context and returns one of those (or None).
"""

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from solders.pubkey import Pubkey

AddressResolver = Callable[[Any], Awaitable[Optional[str]]]
AddressResolverVariant = Union[str, Pubkey, Any, Callable[[Any], Awaitable[Any]]]


def to_address(value: Any) -> Optional[str]:
    """Turn an address literal or a signer into a base58 string."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Pubkey):
        return str(value)
    address = getattr(value, "address", None)
    if address is not None:
        return str(address)
    raise TypeError(f"cannot resolve an address from {value!r}")


def is_signer_like(value: Any) -> bool:
    return not isinstance(value, (str, Pubkey)) and hasattr(value, "address")


async def resolve_variant(variant: AddressResolverVariant, parent: Any) -> Any:
    """
    Evaluate a variant against ``parent``.

    Resolvers are called with the parent and awaited when they return an
    awaitable; literals and signers are returned unchanged.
    """
    if callable(variant) and not is_signer_like(variant):
        result = variant(parent)
        if inspect.isawaitable(result):
            result = await result
        return result
    return variant


def normalize_address_resolver(variant: AddressResolverVariant) -> AddressResolver:
    """Build a uniform ``async (parent) -> Optional[str]`` lookup."""

    async def resolver(parent: Any) -> Optional[str]:
        return to_address(await resolve_variant(variant, parent))

    return resolver
