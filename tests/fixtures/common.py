"""Common test fixtures for the Solana context engine tests.

This module provides an in-memory ledger standing in for the JSON-RPC
service, account data builders and runtime fixtures reused across the
test modules.
"""

import asyncio
import base64
import struct
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey

from solana_context.context.program import ProgramContext
from solana_context.context.runtime import RuntimeAccess
from solana_context.transaction.message import decode_wire_transaction, transaction_signature
from solana_context.transaction.signer import KeypairSigner
from solana_context.utils.config import RpcOptions, RuntimeOptions, TransactionOptions

SYSTEM_PROGRAM = "11111111111111111111111111111111"
LOOKUP_TABLE_PROGRAM = "AddressLookupTab1e1111111111111111111111111"


def account_value(data: bytes, owner: str = SYSTEM_PROGRAM, lamports: int = 1_000_000) -> Dict[str, Any]:
    """Build a ``getAccountInfo`` value for raw account data."""
    return {
        "data": [base64.b64encode(data).decode("ascii"), "base64"],
        "owner": owner,
        "lamports": lamports,
        "executable": False,
        "space": len(data),
    }


def nonce_account_data(authority: str, nonce: str, lamports_per_signature: int = 5000) -> bytes:
    """Serialize an initialized system nonce account."""
    return (
        struct.pack("<II", 1, 1)
        + bytes(Pubkey.from_string(authority))
        + bytes(Hash.from_string(nonce))
        + struct.pack("<Q", lamports_per_signature)
    )


def lookup_table_data(addresses: Sequence[str], authority: Optional[str] = None) -> bytes:
    """Serialize an active address lookup table holding ``addresses``."""
    header = struct.pack("<IQQBB", 1, 2 ** 64 - 1, 0, 0, 1 if authority else 0)
    header += bytes(Pubkey.from_string(authority)) if authority else bytes(32)
    header += bytes(2)
    return header + b"".join(bytes(Pubkey.from_string(address)) for address in addresses)


class FakeLedgerRPC:
    """In-memory stand-in for ``RPCService`` recording every call."""

    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.transactions: Dict[str, Any] = {}
        self.statuses: Dict[str, Any] = {}
        self.blockhash = str(Hash.new_unique())
        self.last_valid_block_height = 1000
        self.block_height = 10
        self.slot = 100
        self.calls: List[tuple] = []
        self.sent: List[str] = []
        self.send_errors: List[Exception] = []
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    def set_account(self, address: str, data: bytes, owner: str = SYSTEM_PROGRAM) -> None:
        self.accounts[str(address)] = account_value(data, owner)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def _wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()

    async def get_account_info(self, address: str, commitment: Any = None) -> Optional[Dict[str, Any]]:
        self.calls.append(("getAccountInfo", address))
        await self._wait()
        return self.accounts.get(address)

    async def get_multiple_accounts(self, addresses: List[str], commitment: Any = None) -> List[Optional[Dict[str, Any]]]:
        self.calls.append(("getMultipleAccounts", list(addresses)))
        await self._wait()
        return [self.accounts.get(address) for address in addresses]

    async def get_latest_blockhash(self, commitment: Any = None) -> Dict[str, Any]:
        self.calls.append(("getLatestBlockhash",))
        return {"blockhash": self.blockhash, "lastValidBlockHeight": self.last_valid_block_height}

    async def get_transaction(self, signature: str, commitment: Any = None) -> Optional[Dict[str, Any]]:
        self.calls.append(("getTransaction", signature))
        value = self.transactions.get(signature)
        if isinstance(value, list):
            return value.pop(0) if value else None
        return value

    async def simulate_transaction(self, wire_transaction: str, sig_verify: bool = False,
                                   replace_recent_blockhash: bool = False, commitment: Any = None) -> Dict[str, Any]:
        self.calls.append(("simulateTransaction", wire_transaction))
        return {"err": None, "logs": ["Program log: simulated"], "unitsConsumed": 1500}

    async def send_transaction(self, wire_transaction: str, skip_preflight: bool = False,
                               preflight_commitment: Any = None, max_retries: Optional[int] = None) -> str:
        self.calls.append(("sendTransaction", wire_transaction))
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(wire_transaction)
        return transaction_signature(decode_wire_transaction(wire_transaction))

    async def get_signature_statuses(self, signatures: List[str], search_transaction_history: bool = False) -> List[Optional[Dict[str, Any]]]:
        self.calls.append(("getSignatureStatuses", list(signatures)))
        return [self.statuses.get(signature) for signature in signatures]

    async def get_epoch_info(self, commitment: Any = None) -> Dict[str, Any]:
        self.calls.append(("getEpochInfo",))
        return {"epoch": 1, "slotIndex": 0, "slotsInEpoch": 432000, "absoluteSlot": self.slot,
                "blockHeight": self.block_height}

    async def get_slot(self, commitment: Any = None) -> int:
        self.calls.append(("getSlot",))
        return self.slot

    async def close(self) -> None:
        self.closed = True


class FakeConfirmer:
    """Stand-in for ``TransactionConfirmer`` that fails with queued errors first."""

    def __init__(self, on_send: Optional[Callable[[str, str], None]] = None):
        self.on_send = on_send
        self.errors: List[Exception] = []
        self.calls: List[str] = []

    async def send_and_confirm(self, wire_transaction: str, signature: str, lifetime: Any,
                               commitment: Optional[str] = None, skip_preflight: bool = False) -> str:
        self.calls.append(signature)
        if self.errors:
            raise self.errors.pop(0)
        if self.on_send is not None:
            self.on_send(wire_transaction, signature)
        return signature


@pytest.fixture
def fake_rpc():
    """Create an in-memory ledger RPC."""
    return FakeLedgerRPC()


@pytest.fixture
def payer():
    """Create a fee payer signer."""
    return KeypairSigner.generate()


@pytest.fixture
def runtime_options(payer):
    """Create runtime options with a short batch window and the payer as signer."""
    return RuntimeOptions(
        rpc=RpcOptions(account_batch_interval=0.01, blockhash_batch_interval=0.01),
        transaction=TransactionOptions(
            signers=[payer],
            retry_interval_ms_on_not_found_error=1,
            confirmation_poll_interval_ms=1,
        ),
    )


@pytest.fixture
def runtime(fake_rpc, runtime_options):
    """Create a runtime on top of the in-memory ledger."""
    return RuntimeAccess(fake_rpc, cluster="devnet", options=runtime_options)


@pytest.fixture
def program(runtime):
    """Create a program context with a random address."""
    return ProgramContext(runtime, program_address=str(Pubkey.new_unique()))
