"""Unit tests for the transaction signers."""

import json

import base58
import pytest
from solders.keypair import Keypair

from solana_context.transaction.signer import (
    HardwareWalletSignerResolver,
    KeypairSigner,
    NoopSigner,
    is_hardware_wallet_signer_resolver,
    is_partial_signer,
    load_signer_from_file,
    load_signer_from_literal,
    load_signers,
    resolve_signer
)
from solana_context.utils.errors import ConfigurationError


@pytest.mark.asyncio
async def test_keypair_signer_signs_messages():
    keypair = Keypair()
    signer = KeypairSigner(keypair)

    [signatures] = await signer.sign_messages([b"message"])

    assert signer.address == str(keypair.pubkey())
    assert signatures[signer.address].verify(keypair.pubkey(), b"message")


@pytest.mark.asyncio
async def test_noop_signer_never_signs():
    signer = NoopSigner("11111111111111111111111111111111")

    assert await signer.sign_messages([b"a", b"b"]) == [{}, {}]
    assert repr(signer) == "NoopSigner(11111111111111111111111111111111)"


def test_from_bytes_requires_64_bytes():
    with pytest.raises(ConfigurationError, match="64 length"):
        KeypairSigner.from_bytes([1, 2, 3])


def test_load_signer_from_literals():
    keypair = Keypair()
    secret = bytes(keypair)

    from_json = load_signer_from_literal(json.dumps(list(secret)))
    from_base58 = load_signer_from_literal(base58.b58encode(secret).decode())

    assert from_json.address == str(keypair.pubkey())
    assert from_base58.address == str(keypair.pubkey())


def test_load_signer_from_invalid_literal():
    with pytest.raises(ConfigurationError, match="failed to create signer from literal"):
        load_signer_from_literal("not-a-key")


def test_load_signers_from_files_and_directories(tmp_path):
    first, second = Keypair(), Keypair()
    keys = tmp_path / "keys"
    keys.mkdir()
    (keys / "admin.json").write_text(json.dumps(list(bytes(first))))
    (tmp_path / "payer.json").write_text(json.dumps(list(bytes(second))))

    signers = load_signers(["keys", "payer.json", base58.b58encode(bytes(first)).decode()], root_dir=str(tmp_path))

    assert signers[str(keys / "admin")].address == str(first.pubkey())
    assert signers[str(tmp_path / "payer")].address == str(second.pubkey())
    assert signers["$literal0"].address == str(first.pubkey())


def test_load_signer_from_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="failed to create signer from file path"):
        load_signer_from_file(str(tmp_path / "missing.json"))


@pytest.mark.asyncio
async def test_hardware_wallet_resolver_is_memoized():
    calls = []
    signer = KeypairSigner.generate()

    async def connect():
        calls.append(1)
        return signer

    resolver = HardwareWalletSignerResolver(connect, name="ledger")

    assert await resolver() is signer
    assert await resolver() is signer
    assert len(calls) == 1
    assert is_hardware_wallet_signer_resolver(resolver)


@pytest.mark.asyncio
async def test_hardware_wallet_resolver_retries_after_failure():
    attempts = []
    signer = KeypairSigner.generate()

    async def connect():
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("device locked")
        return signer

    resolver = HardwareWalletSignerResolver(connect)

    with pytest.raises(ConnectionError):
        await resolver()
    assert await resolver() is signer
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_resolve_signer():
    signer = KeypairSigner.generate()

    async def factory():
        return signer

    assert await resolve_signer(signer) is signer
    assert await resolve_signer(factory) is signer
    with pytest.raises(ConfigurationError):
        await resolve_signer("not a signer")


def test_is_partial_signer():
    assert is_partial_signer(KeypairSigner.generate())
    assert is_partial_signer(NoopSigner("11111111111111111111111111111111"))
    assert not is_partial_signer(HardwareWalletSignerResolver(KeypairSigner.generate, "ledger"))
