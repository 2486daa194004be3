"""
Transaction signers.

Signers are identified by their base58 ``address``. A partial signer signs
message bytes; a sending signer signs and submits the transaction itself;
a hardware wallet resolver is an async factory that is only invoked when
the other signers cannot complete the signature set.
"""

import asyncio
import base64
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import base58
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from solana_context.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

SignatureDictionary = Dict[str, Signature]


class TransactionSigner(ABC):
    """Anything that stands for an address in the signer set."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Base58 address of the signer."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address})"


class TransactionPartialSigner(TransactionSigner):
    """Signs serialized messages without submitting them."""

    @abstractmethod
    async def sign_messages(self, messages: Sequence[bytes]) -> List[SignatureDictionary]:
        """Return one ``{address: signature}`` dict per message."""


class TransactionSendingSigner(TransactionSigner):
    """Signs and submits transactions itself, e.g. a browser wallet."""

    @abstractmethod
    async def sign_and_send_transactions(
        self,
        transactions: Sequence[VersionedTransaction],
        config: Optional[Dict[str, Any]] = None
    ) -> List[bytes]:
        """Return the raw signature bytes of every submitted transaction."""


class KeypairSigner(TransactionPartialSigner):
    """Partial signer backed by a local ``Keypair``."""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    async def sign_messages(self, messages: Sequence[bytes]) -> List[SignatureDictionary]:
        return [{self.address: self.keypair.sign_message(message)} for message in messages]

    @classmethod
    def generate(cls) -> "KeypairSigner":
        return cls(Keypair())

    @classmethod
    def from_bytes(cls, secret: Sequence[int]) -> "KeypairSigner":
        secret = bytes(secret)
        if len(secret) != 64:
            raise ConfigurationError("keypair bytes must have 64 length", details={"length": len(secret)})
        return cls(Keypair.from_bytes(secret))


class NoopSigner(TransactionPartialSigner):
    """Stands for an address without ever producing a signature."""

    def __init__(self, address: str):
        self._address = str(address)

    @property
    def address(self) -> str:
        return self._address

    async def sign_messages(self, messages: Sequence[bytes]) -> List[SignatureDictionary]:
        return [{} for _ in messages]


SignerFactory = Callable[[], Awaitable[TransactionSigner]]


class HardwareWalletSignerResolver:
    """
    Memoized async factory of a hardware wallet signer.

    The device connection is opened at most once; a failed attempt is
    forgotten so the next call tries again.
    """

    def __init__(self, factory: SignerFactory, name: str = "hardware wallet"):
        self.factory = factory
        self.name = name
        self._resolving: Optional[asyncio.Future] = None

    async def __call__(self) -> TransactionSigner:
        if self._resolving is None:
            self._resolving = asyncio.ensure_future(self.factory())
        future = self._resolving
        try:
            return await asyncio.shield(future)
        except Exception:
            if self._resolving is future:
                self._resolving = None
            raise

    def __repr__(self) -> str:
        return f"HardwareWalletSignerResolver({self.name})"


def is_hardware_wallet_signer_resolver(value: Any) -> bool:
    return isinstance(value, HardwareWalletSignerResolver)


def is_sending_signer(value: Any) -> bool:
    return isinstance(value, TransactionSendingSigner)


def is_partial_signer(value: Any) -> bool:
    return isinstance(value, TransactionPartialSigner)


async def resolve_signer(value: Any) -> TransactionSigner:
    """Invoke a signer resolver, or return a signer as is."""
    if isinstance(value, TransactionSigner):
        return value
    if callable(value):
        return await value()
    raise ConfigurationError(f"not a signer or signer resolver: {value!r}")


# Keypair loading

def load_signer_from_file(path: str) -> KeypairSigner:
    """Load a signer from a JSON keypair file (an array of 64 bytes)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return KeypairSigner.from_bytes(json.load(f))
    except (OSError, ValueError) as e:
        raise ConfigurationError(
            f"failed to create signer from file path: {path}",
            details={"path": path, "error": str(e)}
        ) from e


def load_signer_from_literal(literal: str) -> KeypairSigner:
    """Load a signer from a JSON byte array, base58 or base64 secret key literal."""
    literal = literal.strip()
    if literal.startswith("["):
        return KeypairSigner.from_bytes(json.loads(literal))
    errors = []
    for decode in (base58.b58decode, base64.b64decode):
        try:
            secret = decode(literal)
        except ValueError as e:
            errors.append(str(e))
            continue
        if len(secret) == 64:
            return KeypairSigner.from_bytes(secret)
        errors.append(f"decoded {len(secret)} bytes")
    raise ConfigurationError(
        "failed to create signer from literal",
        details={"errors": errors}
    )


def load_signers(keypairs: Sequence[str], root_dir: str = ".") -> Dict[str, KeypairSigner]:
    """
    Load signers from keypair file paths, directories of ``.json`` keypairs
    or secret key literals.

    Files are keyed by their path without the ``.json`` extension, literals
    as ``$literal0``, ``$literal1``, ...
    """
    signers: Dict[str, KeypairSigner] = {}
    literal_count = 0
    for item in keypairs:
        path = item if os.path.isabs(item) else os.path.join(root_dir, item)
        if os.path.isdir(path):
            for name in sorted(os.listdir(path)):
                if name.endswith(".json"):
                    file_path = os.path.join(path, name)
                    signers[file_path[:-5]] = load_signer_from_file(file_path)
        elif os.path.isfile(path) and path.endswith(".json"):
            signers[path[:-5]] = load_signer_from_file(path)
        else:
            signers[f"$literal{literal_count}"] = load_signer_from_literal(item)
            literal_count += 1
    return signers
