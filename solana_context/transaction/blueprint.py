"""
Transaction blueprint and configuration types.

A blueprint is the unsigned outcome of assembly: ordered instructions, fee
payer, exactly one lifetime, the lookup tables used for compression and the
deduplicated signer set.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from solders.instruction import Instruction
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from solana_context.transaction.message import (
    ZERO_BLOCKHASH,
    build_transaction,
    compile_message,
    message_bytes,
    missing_signer_addresses
)
from solana_context.transaction.signer import (
    SignatureDictionary,
    TransactionSendingSigner,
    TransactionSigner,
    is_partial_signer
)
from solana_context.utils.errors import MissingSignaturesError


@dataclass(frozen=True)
class BlockhashLifetime:
    blockhash: str
    last_valid_block_height: int


INSPECTION_ONLY_LIFETIME = BlockhashLifetime(blockhash=ZERO_BLOCKHASH, last_valid_block_height=0)


@dataclass(frozen=True)
class DurableNonceLifetime:
    nonce: str
    nonce_account_address: str
    nonce_authority_address: str


@dataclass(frozen=True)
class DurableNonceAccount:
    """Durable nonce given by its account; the nonce itself is fetched."""

    nonce_account_address: Any


Lifetime = Union[BlockhashLifetime, DurableNonceLifetime]


@dataclass(frozen=True)
class ComputeBudget:
    """
    Compute-budget directives.

    ``limit`` is in compute units (up to 1,400,000). Prices above
    1,000,000 micro-lamports per unit are ignored.
    """

    limit: Optional[int] = None
    price_in_micro_lamports: Optional[int] = None

    def merge(self, other: Optional["ComputeBudget"]) -> "ComputeBudget":
        """Return a budget where the set fields of ``other`` win."""
        if other is None:
            return self
        return ComputeBudget(
            limit=other.limit if other.limit is not None else self.limit,
            price_in_micro_lamports=(
                other.price_in_micro_lamports
                if other.price_in_micro_lamports is not None
                else self.price_in_micro_lamports
            ),
        )


@dataclass
class ExecutionHooks:
    """
    Callbacks of ``TransactionExecutor.execute``; each may be sync or async.

    on_signature(executor, signature, args)
        after signing and confirmation, before the result is fetched
    on_error(executor, error, args)
        when the pipeline raises (not for failed on-chain execution)
    on_result(executor, result, args)
        after the result is parsed, whether it succeeded on chain or not
    """

    on_signature: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None
    on_result: Optional[Callable[..., Any]] = None


@dataclass(frozen=True)
class EventDecoder:
    """Anchor event codec: an 8-byte discriminator and a ``decode(bytes)``."""

    discriminator: bytes
    decode: Callable[[bytes], Any]


@dataclass
class TransactionTemplateConfig:
    description: Optional[str] = None
    fee_payer: Any = None
    durable_nonce: Optional[DurableNonceAccount] = None
    address_lookup_tables: Sequence[Any] = ()
    instructions: Sequence[Any] = ()
    signers: Sequence[Any] = ()
    event_decoders: Mapping[str, EventDecoder] = field(default_factory=dict)
    execution_hooks: Optional[ExecutionHooks] = None
    compute_budget: Optional[ComputeBudget] = None


class _NotSet:
    def __repr__(self) -> str:
        return "NOT_SET"

    def __bool__(self) -> bool:
        return False


NOT_SET: Any = _NotSet()


@dataclass
class TransactionOverrides:
    """
    Per-call overrides of a transaction template.

    ``recent_blockhash`` is NOT_SET to fetch the latest blockhash, a
    ``BlockhashLifetime`` to use it as is, or None to skip fetching and
    build an inspection-only blueprint.
    """

    fee_payer: Any = None
    durable_nonce: Optional[Union[DurableNonceAccount, DurableNonceLifetime]] = None
    recent_blockhash: Any = NOT_SET
    address_lookup_tables: Sequence[Any] = ()
    prepended_instructions: Sequence[Any] = ()
    appended_instructions: Sequence[Any] = ()
    execution_hooks: Optional[ExecutionHooks] = None
    signers: Sequence[Any] = ()
    compute_budget: Optional[ComputeBudget] = None


@dataclass(frozen=True)
class TransactionBlueprint:
    instructions: Tuple[Instruction, ...]
    fee_payer: str
    lifetime: Lifetime
    address_lookup_tables: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    signers: Tuple[TransactionSigner, ...] = ()
    sending_signer: Optional[TransactionSendingSigner] = None

    @property
    def is_durable_nonce(self) -> bool:
        return isinstance(self.lifetime, DurableNonceLifetime)

    @property
    def lifetime_token(self) -> str:
        if isinstance(self.lifetime, DurableNonceLifetime):
            return self.lifetime.nonce
        return self.lifetime.blockhash

    @property
    def signer_addresses(self) -> List[str]:
        return [signer.address for signer in self.signers]

    def with_signers(self, signers: Sequence[TransactionSigner], sending_signer: Optional[TransactionSendingSigner]) -> "TransactionBlueprint":
        return replace(self, signers=tuple(signers), sending_signer=sending_signer)

    def compile(self) -> MessageV0:
        return compile_message(self.fee_payer, self.instructions, self.lifetime_token, self.address_lookup_tables)

    async def collect_signatures(self, message: MessageV0) -> SignatureDictionary:
        """Ask every partial signer for its signature over ``message``."""
        data = message_bytes(message)
        required = set(missing_signer_addresses(message, {}))
        signatures: SignatureDictionary = {}
        for signer in self.signers:
            if signer.address not in required or not is_partial_signer(signer):
                continue
            [signed] = await signer.sign_messages([data])
            signatures.update({k: v for k, v in signed.items() if k in required})
        return signatures

    async def sign(self, allow_partial: bool = False) -> VersionedTransaction:
        """
        Compile and sign with the attached partial signers.

        Raises:
            MissingSignaturesError: If a required signature is missing and
                ``allow_partial`` is False
        """
        message = self.compile()
        signatures = await self.collect_signatures(message)
        missing = missing_signer_addresses(message, signatures)
        if missing and not allow_partial:
            raise MissingSignaturesError(missing)
        return build_transaction(message, signatures)
