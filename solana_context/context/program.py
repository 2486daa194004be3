"""
Program root contexts.

``ProgramContext`` anchors the contexts of one on-chain program below a
``RuntimeAccess``. ``ProgramDerivedContext`` is the base of every node that
lives under a runtime and needs to reach it.
"""

import logging
from typing import ClassVar, Dict, Optional

from solana_context.context.node import Context, ContextDescription
from solana_context.context.runtime import RuntimeAccess
from solana_context.utils.config import RuntimeOptions

logger = logging.getLogger(__name__)

UNKNOWN_PROGRAM_ADDRESS = "unknown"


class ProgramDerivedContext(Context):
    """A node that finds its runtime and program by walking up the graph."""

    @property
    def runtime(self) -> RuntimeAccess:
        runtime = self.find_ancestor(RuntimeAccess)
        if runtime is None:
            raise RuntimeError(f"{type(self).__name__} is not attached to a runtime")
        return runtime

    @property
    def program(self) -> Optional["ProgramContext"]:
        return self.find_ancestor(ProgramContext)

    @property
    def debug(self) -> bool:
        runtime = self.find_ancestor(RuntimeAccess)
        return runtime.debug if runtime is not None else False

    @property
    def runtime_options(self) -> Optional[RuntimeOptions]:
        runtime = self.find_ancestor(RuntimeAccess)
        return runtime.options if runtime is not None else None


class ProgramContext(ProgramDerivedContext):
    """
    Root context of one program.

    Subclasses list the program address per cluster in ``addresses``; an
    explicit ``program_address`` takes precedence. A program without an
    address on the runtime's cluster gets the address ``"unknown"``.
    """

    addresses: ClassVar[Dict[str, Optional[str]]] = {
        "mainnet": None,
        "devnet": None,
        "testnet": None,
        "local": None,
    }

    def __init__(self, runtime: RuntimeAccess, program_address: Optional[str] = None):
        super().__init__(parent=runtime)
        address = program_address or type(self).addresses.get(runtime.cluster)
        if not address and runtime.debug:
            logger.debug(f"program is not supported in cluster: {runtime.cluster}")
        self.address = address or UNKNOWN_PROGRAM_ADDRESS

    @property
    def runtime(self) -> RuntimeAccess:
        return self.parent

    @property
    def program(self) -> "ProgramContext":
        return self

    def describe(self) -> ContextDescription:
        desc = super().describe()
        desc.properties["address"] = self.address
        return desc

    async def resolve(self, no_cache: bool = False) -> None:
        return None

    # Factories

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        cluster: str,
        options: Optional[RuntimeOptions] = None,
        program_address: Optional[str] = None
    ) -> "ProgramContext":
        return cls(RuntimeAccess.connect(rpc_url, cluster, options), program_address)

    @classmethod
    def mainnet(cls, rpc_url: Optional[str] = None, options: Optional[RuntimeOptions] = None,
                program_address: Optional[str] = None) -> "ProgramContext":
        return cls.connect(rpc_url or "https://api.mainnet-beta.solana.com", "mainnet", options, program_address)

    @classmethod
    def devnet(cls, rpc_url: Optional[str] = None, options: Optional[RuntimeOptions] = None,
               program_address: Optional[str] = None) -> "ProgramContext":
        return cls.connect(rpc_url or "https://api.devnet.solana.com", "devnet", options, program_address)

    @classmethod
    def testnet(cls, rpc_url: Optional[str] = None, options: Optional[RuntimeOptions] = None,
                program_address: Optional[str] = None) -> "ProgramContext":
        return cls.connect(rpc_url or "https://api.testnet.solana.com", "testnet", options, program_address)

    @classmethod
    def local(cls, rpc_url: Optional[str] = None, options: Optional[RuntimeOptions] = None,
              program_address: Optional[str] = None) -> "ProgramContext":
        return cls.connect(rpc_url or "http://localhost:8899", "local", options, program_address)
