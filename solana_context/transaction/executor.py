"""
Transaction executor.

A ``TransactionExecutor`` is the transaction template node of a context
graph: it owns an instruction configuration, an optional pydantic schema for
its arguments and optional anchor event decoders, and drives a blueprint
through signing, submission, confirmation and result parsing.
"""

import asyncio
import inspect
import logging
import random
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type

import base58
from pydantic import BaseModel, ValidationError as PydanticValidationError
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from solana_context.context.node import Context, ContextDescription
from solana_context.context.program import ProgramDerivedContext
from solana_context.transaction.blueprint import ExecutionHooks, TransactionBlueprint, TransactionOverrides, TransactionTemplateConfig
from solana_context.transaction.builder import TransactionBlueprintBuilder
from solana_context.transaction.message import (
    decode_wire_transaction,
    decompile_message,
    encode_wire_transaction,
    lookup_table_addresses,
    message_account_keys,
    transaction_signature
)
from solana_context.transaction.result import TransactionEvents, TransactionResult
from solana_context.utils.errors import (
    NonceInvalidError,
    ReportedError,
    SolanaContextError,
    ValidationError,
    is_stale_ledger_view_error,
    message_with_cause
)

logger = logging.getLogger(__name__)

# sha256("anchor:event")[:8], prefix of anchor's self-CPI event instructions
EVENT_INSTRUCTION_DISCRIMINATOR = bytes([228, 69, 165, 46, 81, 203, 154, 29])
EVENT_AUTHORITY_SEED = b"__event_authority"

ChainedArgsBuilder = Callable[[Any, Any, TransactionEvents], Awaitable[Optional[Any]]]


@lru_cache(maxsize=None)
def event_authority_address(program_address: str) -> str:
    """The PDA an anchor program signs its event instructions with."""
    address, _ = Pubkey.find_program_address([EVENT_AUTHORITY_SEED], Pubkey.from_string(program_address))
    return str(address)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TransactionExecutor(ProgramDerivedContext):
    """
    Transaction template bound to a context.

    Args:
        parent: Owning context; instruction resolvers receive it
        args_schema: pydantic model the caller arguments are validated into
        config: Template configuration
        chained_args_builder: ``(parent, args, events)`` returning the
            arguments of a follow-up transaction, or None to stop the chain
    """

    def __init__(
        self,
        parent: Context,
        args_schema: Optional[Type[BaseModel]],
        config: TransactionTemplateConfig,
        chained_args_builder: Optional[ChainedArgsBuilder] = None
    ):
        super().__init__(parent=parent)
        self.args_schema = args_schema
        self.config = config
        self.chained_args_builder = chained_args_builder

    def describe(self) -> ContextDescription:
        desc = super().describe()
        if self.chained_args_builder is not None:
            desc.label = f"{desc.label} (chained)"
        desc.mutable = True
        desc.properties.update(
            args=",".join(self.args_schema.model_fields) if self.args_schema is not None else None,
            events=",".join(self.config.event_decoders) or None,
            description=self.config.description,
        )
        return desc

    async def resolve(self, no_cache: bool = False) -> Dict[str, Any]:
        return {
            "description": self.config.description,
            "args": list(self.args_schema.model_fields) if self.args_schema is not None else None,
            "events": list(self.config.event_decoders),
        }

    @property
    def builder(self) -> TransactionBlueprintBuilder:
        return self.memoized("builder", lambda: TransactionBlueprintBuilder(self.parent, self.config, self.runtime))

    def validate_args(self, args: Any) -> Any:
        """
        Validate caller arguments against the schema.

        Raises:
            ValidationError: If the arguments do not match the schema
        """
        if self.args_schema is None:
            return None
        if isinstance(args, self.args_schema):
            return args
        try:
            return self.args_schema.model_validate(args)
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid transaction arguments: {self.args_schema.__name__}",
                details={"errors": e.errors()}
            ) from e

    # Assembly and signing

    async def assemble(self, args: Any = None, overrides: Optional[TransactionOverrides] = None) -> TransactionBlueprint:
        """Build the unsigned blueprint. Nothing is signed or sent."""
        return await self.builder.build(self.validate_args(args), overrides)

    async def sign(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        allow_partial: bool = False
    ) -> VersionedTransaction:
        blueprint = await self.assemble(args, overrides)
        return await blueprint.sign(allow_partial)

    async def serialize(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        allow_partial: bool = False
    ) -> bytes:
        """
        Sign and return the wire bytes.

        Raises:
            MissingSignaturesError: If a signature is missing and ``allow_partial`` is False
        """
        return bytes(await self.sign(args, overrides, allow_partial))

    async def serialize_to_base64(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        allow_partial: bool = False
    ) -> str:
        return encode_wire_transaction(await self.sign(args, overrides, allow_partial))

    # Network

    async def simulate(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        sig_verify: bool = False,
        replace_recent_blockhash: bool = False,
        commitment: Optional[str] = None
    ) -> Dict[str, Any]:
        """Dry-run the fully signed transaction; returns ``err``, ``logs``, ``unitsConsumed``, ..."""
        wire_transaction = await self.serialize_to_base64(args, overrides, allow_partial=False)
        return await self.runtime.call(self.runtime.rpc.simulate_transaction(
            wire_transaction,
            sig_verify=sig_verify,
            replace_recent_blockhash=replace_recent_blockhash,
            commitment=Commitment(commitment) if commitment else None,
        ))

    async def send(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        skip_preflight: bool = False,
        preflight_commitment: Optional[str] = None,
        max_retries: Optional[int] = None
    ) -> str:
        """
        Submit without waiting for confirmation.

        A sending signer, when present, signs and submits the transaction
        itself; otherwise the transaction is fully signed and sent over RPC.

        Returns:
            The transaction signature
        """
        blueprint = await self.assemble(args, overrides)

        if blueprint.sending_signer is not None:
            transaction = await blueprint.sign(allow_partial=True)
            signatures = await self.runtime.call(blueprint.sending_signer.sign_and_send_transactions(
                [transaction],
                {
                    "skip_preflight": skip_preflight,
                    "preflight_commitment": preflight_commitment,
                    "max_retries": max_retries,
                },
            ))
            return base58.b58encode(bytes(signatures[0])).decode("ascii")

        transaction = await blueprint.sign()
        return await self.runtime.call(self.runtime.rpc.send_transaction(
            encode_wire_transaction(transaction),
            skip_preflight=skip_preflight,
            preflight_commitment=Commitment(preflight_commitment) if preflight_commitment else None,
            max_retries=max_retries,
        ))

    async def send_and_confirm(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        commitment: Optional[str] = None,
        skip_preflight: bool = False
    ) -> str:
        """
        Sign, submit and wait for confirmation. Results are not fetched.

        With ``skip_preflight`` the signature is returned even when
        submission or confirmation fails after signing.

        Returns:
            The transaction signature
        """
        blueprint = await self.assemble(args, overrides)
        transaction = await blueprint.sign()
        return await self._submit_and_confirm(blueprint, transaction, commitment, skip_preflight)

    async def _submit_and_confirm(
        self,
        blueprint: TransactionBlueprint,
        transaction: VersionedTransaction,
        commitment: Optional[str],
        skip_preflight: bool
    ) -> str:
        """Submit an already signed transaction and wait for confirmation."""
        signature = transaction_signature(transaction)
        wire_transaction = encode_wire_transaction(transaction)
        try:
            confirmer = self.runtime.confirmer
            if confirmer is None:
                await self.runtime.call(self.runtime.rpc.send_transaction(wire_transaction, skip_preflight=skip_preflight))
                return signature

            try:
                await self.runtime.call(confirmer.send_and_confirm(
                    wire_transaction,
                    signature,
                    blueprint.lifetime,
                    commitment=commitment or self.runtime.options.transaction.confirmation_commitment,
                    skip_preflight=skip_preflight,
                ))
            except NonceInvalidError:
                # the nonce may have been advanced by this very transaction
                if not await self._has_landed(signature):
                    raise
            return signature
        except SolanaContextError as e:
            if skip_preflight:
                logger.debug(f"returning signature {signature} despite error: {str(e)}")
                return signature
            raise

    async def _has_landed(self, signature: str) -> bool:
        [status] = await self.runtime.call(self.runtime.rpc.get_signature_statuses([signature]))
        return bool(status and status.get("confirmationStatus"))

    # Execution

    def _hooks(self, overrides: Optional[TransactionOverrides]) -> List[ExecutionHooks]:
        candidates = [
            self.config.execution_hooks,
            overrides.execution_hooks if overrides is not None else None,
            self.runtime.options.transaction.execution_hooks,
        ]
        return [hooks for hooks in candidates if hooks is not None]

    async def _run_hooks(self, hooks: Sequence[ExecutionHooks], name: str, value: Any, args: Any) -> None:
        for hook in hooks:
            callback = getattr(hook, name)
            if callback is not None:
                await _maybe_await(callback(self, value, args))

    async def execute(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        commitment: Optional[str] = None,
        skip_preflight: bool = False
    ) -> TransactionResult:
        """
        Assemble, send, confirm, then fetch and parse the result.

        The transaction is assembled and signed once. Stale ledger view
        errors ("blockhash not found", ...) resubmit those same signed bytes
        up to ``max_retries_on_block_errors`` times with a 1-6 s random delay.
        Hooks run in template, override, runtime order.

        Raises:
            ReportedError: Wrapping any failure, after the ``on_error`` hooks ran
        """
        hooks = self._hooks(overrides)
        max_retries = self.runtime.options.transaction.max_retries_on_block_errors
        args_resolved = None
        try:
            args_resolved = self.validate_args(args)
            blueprint = await self.builder.build(args_resolved, overrides)
            transaction = await blueprint.sign()

            retries = 0
            while True:
                try:
                    signature = await self._submit_and_confirm(blueprint, transaction, commitment, skip_preflight)
                    break
                except SolanaContextError as e:
                    if retries < max_retries and is_stale_ledger_view_error(e):
                        logger.error(f"Dangerously retrying the same transaction ({retries}): {message_with_cause(e)}")
                        retries += 1
                        await asyncio.sleep(random.random() * 5 + 1)
                        continue
                    raise

            await self._run_hooks(hooks, "on_signature", signature, args_resolved)

            result = await self.parse(signature, args_resolved)
            await self._run_hooks(hooks, "on_result", result, args_resolved)

            if result.succeeded and self.chained_args_builder is not None:
                next_args = await _maybe_await(self.chained_args_builder(self.parent, args_resolved, result.events))
                if next_args is not None:
                    result.set_next_executor(
                        lambda: self.execute(next_args, overrides, commitment, skip_preflight)
                    )

            return result
        except ReportedError:
            raise
        except Exception as e:
            await self._run_hooks(hooks, "on_error", e, args_resolved)
            raise ReportedError(e) from e

    async def execute_chained(
        self,
        args: Any = None,
        overrides: Optional[TransactionOverrides] = None,
        commitment: Optional[str] = None,
        skip_preflight: bool = False,
        chaining_interval_seconds: float = 0
    ) -> TransactionResult:
        """
        Execute, then keep executing the chained follow-up transactions.

        Stops at the first failed transaction, when no follow-up is left, or
        when the runtime is cancelled.

        Returns:
            The result of the last executed transaction
        """
        token = self.runtime.cancellation_token
        result = await self.execute(args, overrides, commitment, skip_preflight)
        if not result.succeeded:
            return result
        while result.execute_chained_transaction is not None and not token.cancelled:
            if chaining_interval_seconds:
                await asyncio.sleep(chaining_interval_seconds)
            result = await result.execute_chained_transaction()
            if not result.succeeded:
                break
        return result

    # Parsing

    async def parse(self, signature: str, args: Any = None) -> TransactionResult:
        """
        Fetch a confirmed transaction and decode its events.

        A response without log messages is treated as not found yet and
        refetched up to ``max_retries_on_not_found_error`` times.
        """
        options = self.runtime.options.transaction
        commitment = Commitment(options.confirmation_commitment)

        raw = await self.runtime.fetch_transaction(signature, commitment)
        remaining = options.max_retries_on_not_found_error
        while self._log_messages(raw) is None and remaining > 0:
            remaining -= 1
            if self.debug:
                logger.error(f"retry getTransaction in {options.retry_interval_ms_on_not_found_error}ms")
            await asyncio.sleep(options.retry_interval_ms_on_not_found_error / 1000)
            raw = await self.runtime.fetch_transaction(signature, commitment)

        if raw is None:
            return TransactionResult(self, signature, args)

        transaction = decode_wire_transaction(raw["transaction"][0])
        message = transaction.message
        table_addresses = lookup_table_addresses(message)
        lookup_tables = (
            await self.runtime.fetch_multiple_address_lookup_tables(table_addresses)
            if table_addresses else {}
        )
        account_keys = message_account_keys(message, lookup_tables)

        events = TransactionEvents()
        raw_events = self._collect_raw_events(raw, account_keys)
        if raw_events:
            events = self.decode_events(raw_events)

        result = {key: value for key, value in raw.items() if key != "transaction"}
        result["transaction"] = decompile_message(message, lookup_tables)
        return TransactionResult(self, signature, args, events, result)

    @staticmethod
    def _log_messages(raw: Optional[Dict[str, Any]]) -> Optional[List[str]]:
        if not raw or not raw.get("meta"):
            return None
        return raw["meta"].get("logMessages")

    def _collect_raw_events(self, raw: Dict[str, Any], account_keys: List[str]) -> List[bytes]:
        program = self.program
        if not self.config.event_decoders or program is None or program.address not in account_keys:
            return []
        program_index = account_keys.index(program.address)

        authority = event_authority_address(program.address)
        if authority not in account_keys:
            return []
        authority_index = account_keys.index(authority)

        raw_events = []
        for group in raw["meta"].get("innerInstructions") or []:
            for instruction in group["instructions"]:
                if instruction["programIdIndex"] != program_index or authority_index not in instruction["accounts"]:
                    continue
                data = base58.b58decode(instruction["data"])
                if data[:8] == EVENT_INSTRUCTION_DISCRIMINATOR:
                    raw_events.append(data[8:])
        return raw_events

    def decode_events(self, raw_events: Sequence[bytes]) -> TransactionEvents:
        """Match each payload against the configured event discriminators."""
        events = TransactionEvents()
        for raw_event in raw_events:
            parsed = False
            for name, decoder in self.config.event_decoders.items():
                try:
                    if raw_event[:8] == bytes(decoder.discriminator):
                        value = decoder.decode(raw_event)
                        if isinstance(value, dict):
                            value.pop("discriminator", None)
                        events.add(name, value)
                        parsed = True
                        break
                except Exception as e:
                    logger.debug(f"failed to decode event {name}: {str(e)}")
            if not parsed:
                events.unknown.append(raw_event)
        return events
