"""
Executed transaction results.

A ``TransactionResult`` is created once per execution attempt from the
ledger's view of the transaction. It keeps the raw RPC result, the decoded
program events and, for chained templates, the executor of the follow-up
transaction.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel

from solana_context.context.node import Context, ContextDescription
from solana_context.context.program import ProgramDerivedContext


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


@dataclass
class TransactionEvents:
    """
    Decoded program events of one transaction.

    Events are stored by name. A name seen again in the same transaction is
    stored with a ``_`` appended per repetition (``deposited``,
    ``deposited_``, ...). Payloads no decoder accepted stay in ``unknown``.
    """

    named: Dict[str, Any] = field(default_factory=dict)
    unknown: List[bytes] = field(default_factory=list)

    def add(self, name: str, value: Any) -> str:
        """Store an event under the first free key and return that key."""
        key = name
        while key in self.named:
            key += "_"
        self.named[key] = value
        return key

    def __getitem__(self, name: str) -> Any:
        return self.named[name]

    def __contains__(self, name: object) -> bool:
        return name in self.named

    def __iter__(self) -> Iterator[str]:
        return iter(self.named)

    def __len__(self) -> int:
        return len(self.named)

    def get(self, name: str, default: Any = None) -> Any:
        return self.named.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: _plain(value) for name, value in self.named.items()}
        data["unknown"] = [bytes(raw).hex() for raw in self.unknown]
        return data


NextExecutor = Callable[[], Awaitable["TransactionResult"]]


class TransactionResult(ProgramDerivedContext):
    def __init__(
        self,
        parent: Context,
        signature: str,
        args: Any = None,
        events: Optional[TransactionEvents] = None,
        result: Optional[Dict[str, Any]] = None
    ):
        super().__init__(parent=parent)
        self.signature = signature
        self.args = args
        self.events = events
        self.result = result
        meta = (result or {}).get("meta")
        self.succeeded = bool(meta) and meta.get("err") is None
        self._next_executor: Optional[NextExecutor] = None

    @property
    def slot(self) -> Optional[int]:
        return (self.result or {}).get("slot")

    @property
    def logs(self) -> Optional[List[str]]:
        meta = (self.result or {}).get("meta") or {}
        return meta.get("logMessages")

    @property
    def execute_chained_transaction(self) -> Optional[NextExecutor]:
        """Executor of the follow-up transaction, if the template chains one."""
        return self._next_executor

    def set_next_executor(self, executor: NextExecutor) -> None:
        if self._next_executor is not None:
            raise RuntimeError("chained transaction executor is already set")
        self._next_executor = executor

    def describe(self) -> ContextDescription:
        desc = super().describe()
        desc.properties.update(signature=self.signature, succeeded=self.succeeded, slot=self.slot)
        return desc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "succeeded": self.succeeded,
            "slot": self.slot,
            "args": _plain(self.args),
            "events": self.events.to_dict() if self.events is not None else None,
        }

    async def resolve(self, no_cache: bool = False) -> Dict[str, Any]:
        return {**self.to_dict(), "logs": self.logs}
