"""
Transaction blueprint assembly.

``TransactionBlueprintBuilder`` turns a template configuration, caller
arguments and per-call overrides into a ``TransactionBlueprint``. Assembly
runs in fixed stages:

    1. instructions          prepended + configured + appended, resolvers invoked
    2. compute budget        limit/price instructions synthesized when missing
    3. signer extraction     signers attached to instruction accounts set aside
    4. address tables        configured + override tables fetched for compression
    5. fee payer             override > runtime > template > owning account
    6. lifetime              durable nonce, inspection-only, given or latest blockhash
    7. signers               deduplicated by address, highest priority wins

Stages 5 and 6 fail closed with ``TransactionAssemblyError`` before anything
is signed.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from solders.instruction import Instruction

from solana_context.context.account import AccountContext
from solana_context.context.address import resolve_variant, to_address
from solana_context.context.node import Context
from solana_context.context.runtime import RuntimeAccess
from solana_context.transaction.blueprint import (
    INSPECTION_ONLY_LIFETIME,
    BlockhashLifetime,
    ComputeBudget,
    DurableNonceLifetime,
    Lifetime,
    TransactionBlueprint,
    TransactionOverrides,
    TransactionTemplateConfig
)
from solana_context.transaction.message import (
    MAX_COMPUTE_UNIT_PRICE,
    SET_COMPUTE_UNIT_LIMIT,
    SET_COMPUTE_UNIT_PRICE,
    DraftInstruction,
    advance_nonce_instruction,
    compute_unit_limit_instruction,
    compute_unit_price_instruction,
    is_advance_nonce_instruction,
    is_compute_budget_instruction,
    unique
)
from solana_context.transaction.signer import (
    TransactionSendingSigner,
    TransactionSigner,
    is_hardware_wallet_signer_resolver,
    is_sending_signer,
    resolve_signer
)
from solana_context.utils.errors import MissingSignaturesError, TransactionAssemblyError

logger = logging.getLogger(__name__)


@dataclass
class _Assembly:
    """Intermediate state of one assembly run."""

    instructions: List[Instruction] = field(default_factory=list)
    lowest_priority_signers: List[TransactionSigner] = field(default_factory=list)
    address_lookup_tables: Dict[str, List[str]] = field(default_factory=dict)
    fee_payer: Optional[str] = None
    lifetime: Optional[Lifetime] = None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TransactionBlueprintBuilder:
    """Assembles blueprints of one transaction template."""

    def __init__(self, parent: Context, config: TransactionTemplateConfig, runtime: RuntimeAccess):
        self.parent = parent
        self.config = config
        self.runtime = runtime

    @property
    def debug(self) -> bool:
        return self.runtime.debug

    async def build(self, args: Any = None, overrides: Optional[TransactionOverrides] = None) -> TransactionBlueprint:
        overrides = overrides or TransactionOverrides()
        state = _Assembly()

        instructions = await self._resolve_instructions(args, overrides)
        instructions = self._apply_compute_budget(instructions, overrides)
        state.instructions = self._extract_signers(instructions, state)
        state.address_lookup_tables = await self._resolve_address_lookup_tables(overrides)
        state.fee_payer = await self._resolve_fee_payer(overrides, state)
        state.lifetime = await self._resolve_lifetime(overrides)
        if isinstance(state.lifetime, DurableNonceLifetime):
            state.instructions = self._prepend_advance_nonce(state.instructions, state.lifetime)

        blueprint = TransactionBlueprint(
            instructions=tuple(state.instructions),
            fee_payer=state.fee_payer,
            lifetime=state.lifetime,
            address_lookup_tables={k: tuple(v) for k, v in state.address_lookup_tables.items()},
        )
        blueprint = await self._resolve_signers(blueprint, overrides, state)

        if self.debug:
            logger.debug(f"new transaction assembled: {blueprint}")
        return blueprint

    # 1. instructions

    async def _resolve_instructions(self, args: Any, overrides: TransactionOverrides) -> List[Any]:
        entries = [
            *overrides.prepended_instructions,
            *self.config.instructions,
            *overrides.appended_instructions,
        ]

        async def expand(entry: Any) -> List[Any]:
            if callable(entry):
                return list(await _maybe_await(entry(self.parent, args, overrides)) or [])
            return [entry]

        groups = await asyncio.gather(*[expand(entry) for entry in entries])
        return [ix for group in groups for ix in group if ix is not None]

    # 2. compute budget

    def _apply_compute_budget(self, instructions: List[Any], overrides: TransactionOverrides) -> List[Any]:
        budget = (
            ComputeBudget()
            .merge(self.runtime.options.transaction.compute_budget)
            .merge(self.config.compute_budget)
            .merge(overrides.compute_budget)
        )
        price = budget.price_in_micro_lamports
        if price and price <= MAX_COMPUTE_UNIT_PRICE and not any(
            is_compute_budget_instruction(ix, SET_COMPUTE_UNIT_PRICE) for ix in instructions
        ):
            instructions.insert(0, compute_unit_price_instruction(price))
        if budget.limit and not any(
            is_compute_budget_instruction(ix, SET_COMPUTE_UNIT_LIMIT) for ix in instructions
        ):
            instructions.insert(0, compute_unit_limit_instruction(budget.limit))
        return instructions

    # 3. signer extraction

    def _extract_signers(self, instructions: Sequence[Any], state: _Assembly) -> List[Instruction]:
        extracted = []
        for ix in instructions:
            if isinstance(ix, DraftInstruction):
                ix, signers = ix.extract_signers()
                state.lowest_priority_signers.extend(signers)
            extracted.append(ix)
        return extracted

    # 4. address lookup tables

    async def _resolve_address_lookup_tables(self, overrides: TransactionOverrides) -> Dict[str, List[str]]:
        variants = [*self.config.address_lookup_tables, *overrides.address_lookup_tables]
        resolved = await asyncio.gather(*[resolve_variant(variant, self.parent) for variant in variants])

        addresses = []
        for item in resolved:
            items = item if isinstance(item, (list, tuple)) else [item]
            addresses.extend(to_address(address) for address in items if address)
        addresses = unique(address for address in addresses if address)
        if not addresses:
            return {}
        return await self.runtime.fetch_multiple_address_lookup_tables(addresses)

    # 5. fee payer

    async def _resolve_fee_payer(self, overrides: TransactionOverrides, state: _Assembly) -> str:
        fee_payer = (
            overrides.fee_payer
            or self.runtime.options.transaction.fee_payer
            or self.config.fee_payer
        )
        if fee_payer is None and isinstance(self.parent, AccountContext):
            fee_payer = lambda parent: parent.resolve_address()

        resolved = await resolve_variant(fee_payer, self.parent) if fee_payer is not None else None
        if resolved:
            if isinstance(resolved, TransactionSigner):
                state.lowest_priority_signers.append(resolved)
            return to_address(resolved)

        raise TransactionAssemblyError("failed to resolve fee payer", stage="fee_payer")

    # 6. lifetime

    async def _resolve_lifetime(self, overrides: TransactionOverrides) -> Lifetime:
        durable_nonce = overrides.durable_nonce or self.config.durable_nonce
        if durable_nonce is not None:
            if isinstance(durable_nonce, DurableNonceLifetime):
                return durable_nonce
            nonce_account_address = to_address(
                await resolve_variant(durable_nonce.nonce_account_address, self.parent)
            )
            if nonce_account_address:
                nonce_config = await self.runtime.fetch_nonce_config(nonce_account_address)
                if nonce_config is not None:
                    return nonce_config
            raise TransactionAssemblyError("failed to resolve nonce account", stage="lifetime")

        if overrides.recent_blockhash is None:
            return INSPECTION_ONLY_LIFETIME
        if isinstance(overrides.recent_blockhash, BlockhashLifetime):
            return overrides.recent_blockhash

        recent_blockhash = await self.runtime.fetch_latest_blockhash()
        if not recent_blockhash:
            raise TransactionAssemblyError("failed to resolve recent blockhash", stage="lifetime")
        return recent_blockhash

    @staticmethod
    def _prepend_advance_nonce(instructions: List[Instruction], lifetime: DurableNonceLifetime) -> List[Instruction]:
        if instructions and is_advance_nonce_instruction(instructions[0], lifetime.nonce_account_address):
            return instructions
        return [
            advance_nonce_instruction(lifetime.nonce_account_address, lifetime.nonce_authority_address),
            *instructions,
        ]

    # 7. signers

    async def _resolve_signers(
        self,
        blueprint: TransactionBlueprint,
        overrides: TransactionOverrides,
        state: _Assembly
    ) -> TransactionBlueprint:
        sources = [
            *state.lowest_priority_signers,
            *self.config.signers,
            *self.runtime.options.transaction.signers,
            *overrides.signers,
        ]
        # hardware wallets are unlocked only when the other signers fall short
        hardware_resolvers = [s for s in sources if is_hardware_wallet_signer_resolver(s)]
        signers = await asyncio.gather(*[
            resolve_signer(s) for s in sources if not is_hardware_wallet_signer_resolver(s)
        ])

        signers_by_address: Dict[str, TransactionSigner] = {}
        sending_signer: Optional[TransactionSendingSigner] = None

        def attach(signer: TransactionSigner, kind: str = "") -> None:
            nonlocal sending_signer
            if signer.address in signers_by_address:
                if sending_signer is not None and sending_signer.address == signer.address:
                    sending_signer = None
                if self.debug:
                    logger.debug(f"overriding already attached signer{kind}: {signer.address}")
            if is_sending_signer(signer):
                sending_signer = signer
            signers_by_address[signer.address] = signer

        for signer in signers:
            attach(signer)
        blueprint = blueprint.with_signers(list(signers_by_address.values()), sending_signer)

        if hardware_resolvers:
            try:
                await blueprint.sign()
            except MissingSignaturesError:
                for signer in await asyncio.gather(*[resolver() for resolver in hardware_resolvers]):
                    attach(signer, " (hardware wallet)")
                blueprint = blueprint.with_signers(list(signers_by_address.values()), sending_signer)

        return blueprint
