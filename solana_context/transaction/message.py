"""
Instruction and message helpers on top of solders.

This module builds the synthesized instructions (compute budget, nonce
advance), compiles and decompiles v0 messages, assembles signed wire
transactions and decodes the system account layouts the runtime reads
(nonce accounts and address lookup tables).
"""

import base64
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import AdvanceNonceAccountParams, advance_nonce_account
from solders.transaction import VersionedTransaction

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")

# ComputeBudget instruction tags
SET_COMPUTE_UNIT_LIMIT = 2
SET_COMPUTE_UNIT_PRICE = 3

MAX_COMPUTE_UNIT_PRICE = 1_000_000

# SystemInstruction::AdvanceNonceAccount
ADVANCE_NONCE_ACCOUNT_TAG = struct.pack("<I", 4)

ZERO_BLOCKHASH = str(Hash.default())

LOOKUP_TABLE_META_SIZE = 56
NONCE_ACCOUNT_SIZE = 80
NONCE_STATE_INITIALIZED = 1

AddressLike = Union[str, Pubkey]


def to_pubkey(address: AddressLike) -> Pubkey:
    return address if isinstance(address, Pubkey) else Pubkey.from_string(address)


@dataclass(frozen=True)
class SignerAccountMeta:
    """An instruction account entry that carries the signer for its address."""

    signer: Any
    is_writable: bool = False

    @property
    def pubkey(self) -> Pubkey:
        return to_pubkey(self.signer.address)


@dataclass
class DraftInstruction:
    """
    An instruction whose accounts may still carry signer objects.

    ``extract_signers`` reduces it to a plain ``Instruction`` and hands the
    attached signers back separately.
    """

    program_id: Pubkey
    accounts: List[Union[AccountMeta, SignerAccountMeta]] = field(default_factory=list)
    data: bytes = b""

    def extract_signers(self) -> Tuple[Instruction, List[Any]]:
        signers = []
        metas = []
        for account in self.accounts:
            if isinstance(account, SignerAccountMeta):
                signers.append(account.signer)
                metas.append(AccountMeta(account.pubkey, True, account.is_writable))
            else:
                metas.append(account)
        return Instruction(self.program_id, bytes(self.data), metas), signers


AnyInstruction = Union[Instruction, DraftInstruction]


def instruction_tag(instruction: AnyInstruction) -> Optional[int]:
    data = bytes(instruction.data)
    return data[0] if data else None


def is_compute_budget_instruction(instruction: AnyInstruction, tag: int) -> bool:
    return instruction.program_id == COMPUTE_BUDGET_PROGRAM_ID and instruction_tag(instruction) == tag


def compute_unit_limit_instruction(units: int) -> Instruction:
    return set_compute_unit_limit(units)


def compute_unit_price_instruction(micro_lamports: int) -> Instruction:
    return set_compute_unit_price(micro_lamports)


def advance_nonce_instruction(nonce_account_address: AddressLike, nonce_authority_address: AddressLike) -> Instruction:
    return advance_nonce_account(AdvanceNonceAccountParams(
        nonce_pubkey=to_pubkey(nonce_account_address),
        authorized_pubkey=to_pubkey(nonce_authority_address),
    ))


def is_advance_nonce_instruction(instruction: AnyInstruction, nonce_account_address: Optional[AddressLike] = None) -> bool:
    if instruction.program_id != SYSTEM_PROGRAM_ID or bytes(instruction.data)[:4] != ADVANCE_NONCE_ACCOUNT_TAG:
        return False
    if nonce_account_address is None:
        return True
    accounts = list(instruction.accounts)
    return bool(accounts) and accounts[0].pubkey == to_pubkey(nonce_account_address)


# Messages

def lookup_table_accounts(lookup_tables: Mapping[str, Sequence[str]]) -> List[AddressLookupTableAccount]:
    return [
        AddressLookupTableAccount(
            key=to_pubkey(table_address),
            addresses=[to_pubkey(address) for address in addresses],
        )
        for table_address, addresses in lookup_tables.items()
    ]


def compile_message(
    fee_payer: AddressLike,
    instructions: Sequence[Instruction],
    lifetime_token: str,
    lookup_tables: Optional[Mapping[str, Sequence[str]]] = None
) -> MessageV0:
    """
    Compile a v0 message.

    ``lifetime_token`` is the recent blockhash or the durable nonce value.
    Accounts covered by ``lookup_tables`` are referenced by table index.
    """
    return MessageV0.try_compile(
        to_pubkey(fee_payer),
        list(instructions),
        lookup_table_accounts(lookup_tables or {}),
        Hash.from_string(lifetime_token),
    )


@dataclass
class DecompiledMessage:
    fee_payer: str
    instructions: List[Instruction]
    lifetime_token: str
    account_keys: List[str]
    lookup_table_addresses: List[str]


def _table_lookups(message: Any) -> List[Any]:
    # legacy messages carry no lookups
    return list(getattr(message, "address_table_lookups", None) or [])


def lookup_table_addresses(message: Any) -> List[str]:
    return [str(lookup.account_key) for lookup in _table_lookups(message)]


def loaded_account_keys(message: MessageV0, lookup_tables: Mapping[str, Sequence[str]]) -> Tuple[List[str], List[str]]:
    """
    Resolve the table lookups of a message.

    Returns:
        (writable, readonly) addresses in lookup order
    """
    writable: List[str] = []
    readonly: List[str] = []
    for lookup in _table_lookups(message):
        table_address = str(lookup.account_key)
        if table_address not in lookup_tables:
            raise ValueError(f"address lookup table not available: {table_address}")
        addresses = lookup_tables[table_address]
        writable.extend(str(addresses[i]) for i in lookup.writable_indexes)
        readonly.extend(str(addresses[i]) for i in lookup.readonly_indexes)
    return writable, readonly


def message_account_keys(message: MessageV0, lookup_tables: Optional[Mapping[str, Sequence[str]]] = None) -> List[str]:
    """All account keys: static keys, then loaded writable, then loaded readonly."""
    writable, readonly = loaded_account_keys(message, lookup_tables or {})
    return [str(key) for key in message.account_keys] + writable + readonly


def decompile_message(message: MessageV0, lookup_tables: Optional[Mapping[str, Sequence[str]]] = None) -> DecompiledMessage:
    """Recover fee payer, instructions and lifetime token from a compiled message."""
    header = message.header
    static_keys = [str(key) for key in message.account_keys]
    writable, readonly = loaded_account_keys(message, lookup_tables or {})
    keys = static_keys + writable + readonly

    num_signers = header.num_required_signatures
    num_static = len(static_keys)

    def is_writable(index: int) -> bool:
        if index < num_signers:
            return index < num_signers - header.num_readonly_signed_accounts
        if index < num_static:
            return index < num_static - header.num_readonly_unsigned_accounts
        return index < num_static + len(writable)

    instructions = []
    for compiled in message.instructions:
        metas = [
            AccountMeta(Pubkey.from_string(keys[i]), i < num_signers, is_writable(i))
            for i in bytes(compiled.accounts)
        ]
        instructions.append(Instruction(Pubkey.from_string(keys[compiled.program_id_index]), bytes(compiled.data), metas))

    return DecompiledMessage(
        fee_payer=static_keys[0],
        instructions=instructions,
        lifetime_token=str(message.recent_blockhash),
        account_keys=keys,
        lookup_table_addresses=lookup_table_addresses(message),
    )


# Signing

def message_bytes(message: MessageV0) -> bytes:
    return to_bytes_versioned(message)


def required_signer_addresses(message: MessageV0) -> List[str]:
    return [str(key) for key in message.account_keys[:message.header.num_required_signatures]]


def missing_signer_addresses(message: MessageV0, signatures: Mapping[str, Signature]) -> List[str]:
    return [address for address in required_signer_addresses(message) if address not in signatures]


def build_transaction(message: MessageV0, signatures: Mapping[str, Signature]) -> VersionedTransaction:
    """Attach signatures in signer order; missing ones are left as the zero signature."""
    return VersionedTransaction.populate(
        message,
        [signatures.get(address, Signature.default()) for address in required_signer_addresses(message)],
    )


def transaction_signature(transaction: VersionedTransaction) -> str:
    return str(transaction.signatures[0])


def encode_wire_transaction(transaction: VersionedTransaction) -> str:
    return base64.b64encode(bytes(transaction)).decode("ascii")


def decode_wire_transaction(raw: Union[bytes, str]) -> VersionedTransaction:
    """Decode wire bytes (or their base64 form) into a transaction."""
    if isinstance(raw, str):
        raw = base64.b64decode(raw)
    return VersionedTransaction.from_bytes(raw)


# System account layouts

@dataclass(frozen=True)
class NonceState:
    authority: str
    nonce: str
    lamports_per_signature: int


def decode_nonce_account(data: bytes) -> Optional[NonceState]:
    """
    Decode a system nonce account.

    Returns:
        The stored nonce and authority, or None if the account is not an
        initialized nonce account
    """
    if len(data) < NONCE_ACCOUNT_SIZE:
        return None
    _version, state = struct.unpack_from("<II", data, 0)
    if state != NONCE_STATE_INITIALIZED:
        return None
    return NonceState(
        authority=str(Pubkey.from_bytes(data[8:40])),
        nonce=str(Hash.from_bytes(data[40:72])),
        lamports_per_signature=struct.unpack_from("<Q", data, 72)[0],
    )


@dataclass(frozen=True)
class AddressLookupTableState:
    deactivation_slot: int
    last_extended_slot: int
    authority: Optional[str]
    addresses: Tuple[str, ...]

    @property
    def active(self) -> bool:
        return self.deactivation_slot == 2 ** 64 - 1


def decode_address_lookup_table(data: bytes) -> AddressLookupTableState:
    """
    Decode an address lookup table account.

    Raises:
        ValueError: If the data is shorter than the table header
    """
    if len(data) < LOOKUP_TABLE_META_SIZE:
        raise ValueError(f"invalid address lookup table data length: {len(data)}")
    deactivation_slot, last_extended_slot = struct.unpack_from("<QQ", data, 4)
    authority = str(Pubkey.from_bytes(data[22:54])) if data[21] else None
    body = data[LOOKUP_TABLE_META_SIZE:]
    addresses = tuple(
        str(Pubkey.from_bytes(body[i:i + 32])) for i in range(0, len(body) - len(body) % 32, 32)
    )
    return AddressLookupTableState(
        deactivation_slot=deactivation_slot,
        last_extended_slot=last_extended_slot,
        authority=authority,
        addresses=addresses,
    )


def unique(items: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)
