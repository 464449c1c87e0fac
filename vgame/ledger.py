"""
Interfaces of the collaborators of the dispute engine: the enforcer and verifier contracts of the ledger,
and the virtual machine that produces the execution traces.

The engine only depends on the abstract classes in this module; `vgame.local` implements them in-process,
`vgame.web3ledger` implements them on top of deployed contracts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Type, TypeVar

from .proof import ExecutionInput, ProofHashes, StepOutput
from .state import ExecutionState
from .utils import ZERO_HASH, keccak, to_hex

ZERO_ADDRESS = "0x" + "00" * 20


def address_bytes(addr: str) -> bytes:
    raw = bytes.fromhex(addr[2:] if addr.startswith("0x") else addr)
    if len(raw) != 20:
        raise ValueError(f"Invalid address: {addr}")
    return raw


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


def task_hash_of(code_addr: str, call_data: bytes) -> bytes:
    """Identifies a task by the code it runs and its call data."""
    return keccak(address_bytes(code_addr) + call_data)


def execution_id_of(task_hash: bytes, root: bytes) -> bytes:
    """Identifies one claimed (task, trace root) pair."""
    return keccak(task_hash + root)


@dataclass(frozen=True)
class TaskParams:
    code_addr: str
    data_hash: bytes
    code_hash: Optional[bytes] = None  # set if the code is not deployed at code_addr

    @property
    def code_on_chain(self) -> bool:
        return self.code_hash is None


@dataclass(frozen=True)
class Path:
    left: bytes = ZERO_HASH
    right: bytes = ZERO_HASH

    def __repr__(self):
        return f"Path(left={to_hex(self.left)}, right={to_hex(self.right)})"


ZERO_PATH = Path()


@dataclass(frozen=True)
class ExecutionRecord:
    start_block: int = 0
    end_hash: bytes = ZERO_HASH
    execution_depth: int = 0
    solver: str = ZERO_ADDRESS
    code_addr: str = ZERO_ADDRESS
    call_data: bytes = b""

    def exists(self) -> bool:
        return self.start_block != 0


class DisputeState(Enum):
    OPEN = 0
    READY_FOR_PROOF = 1
    RESOLVED = 2


@dataclass(frozen=True)
class DisputeRecord:
    solver: Path
    challenger: Path
    solver_addr: str
    challenger_addr: str
    solver_path: bytes
    challenger_path: bytes
    witness: bytes = ZERO_HASH
    timeout: int = 0
    execution_id: bytes = ZERO_HASH
    state: DisputeState = DisputeState.OPEN


@dataclass(frozen=True)
class Receipt:
    tx_from: str
    block_number: int
    events: List['Event'] = field(default_factory=list)


# Events. Each one carries the sender of the transaction that emitted it.

@dataclass(frozen=True)
class Event:
    tx_from: str


@dataclass(frozen=True)
class Requested(Event):
    task_hash: bytes
    params: TaskParams
    call_data: bytes


@dataclass(frozen=True)
class Registered(Event):
    task_hash: bytes
    solver_path_root: bytes
    execution_depth: int
    result_bytes: bytes
    execution_id: bytes
    solver: str


@dataclass(frozen=True)
class DisputeInitialised(Event):
    dispute_id: bytes
    execution_id: bytes


@dataclass(frozen=True)
class Slashed(Event):
    execution_id: bytes
    address: str


@dataclass(frozen=True)
class DisputeNewRound(Event):
    dispute_id: bytes
    timeout: int
    solver_path: bytes
    challenger_path: bytes


EventT = TypeVar('EventT', bound=Event)
Listener = Callable[[EventT], Awaitable[None]]


class Enforcer(ABC):
    """The ledger contract that holds the bonds and the registered executions."""

    address: str

    @abstractmethod
    def connect(self, sender: str) -> 'Enforcer':
        """Returns a view of the same contract whose transactions are sent by `sender`."""

    @abstractmethod
    def on(self, event_type: Type[EventT], listener: Listener) -> None:
        pass

    @abstractmethod
    async def request(self, params: TaskParams, call_data: bytes) -> Receipt:
        pass

    @abstractmethod
    async def register(self, code_addr: str, call_data: bytes, end_hash: bytes, execution_depth: int, result: bytes, *, value: int) -> Receipt:
        pass

    @abstractmethod
    async def dispute(self, code_addr: str, call_data: bytes, other_end_hash: bytes, execution_depth: int, *, value: int) -> Receipt:
        pass

    @abstractmethod
    async def result(self, execution_id: bytes, is_challenger_correct: bool, challenger_addr: str) -> Receipt:
        pass

    @abstractmethod
    async def bonds(self, addr: str) -> int:
        pass

    @abstractmethod
    async def executions(self, execution_id: bytes) -> ExecutionRecord:
        pass

    @abstractmethod
    async def verifier_address(self) -> str:
        pass

    @abstractmethod
    async def challenge_period(self) -> int:
        pass

    @abstractmethod
    async def bond_amount(self) -> int:
        pass

    @abstractmethod
    async def get_code(self, code_addr: str) -> bytes:
        pass


class Verifier(ABC):
    """The ledger contract that arbitrates the rounds of each dispute."""

    address: str

    @abstractmethod
    def connect(self, sender: str) -> 'Verifier':
        pass

    @abstractmethod
    def on(self, event_type: Type[EventT], listener: Listener) -> None:
        pass

    @abstractmethod
    async def respond(self, dispute_id: bytes, path: Path, witness: Path) -> Receipt:
        pass

    @abstractmethod
    async def submit_proof(self, dispute_id: bytes, proofs: ProofHashes, execution_input: ExecutionInput) -> Receipt:
        pass

    @abstractmethod
    async def claim_timeout(self, dispute_id: bytes) -> Receipt:
        pass

    @abstractmethod
    async def disputes(self, dispute_id: bytes) -> DisputeRecord:
        pass


class Runtime(ABC):
    """The virtual machine. Both methods must be deterministic."""

    @abstractmethod
    def run(self, code: bytes, data: bytes) -> List[ExecutionState]:
        """Executes the program, returning all its states in order, starting from the initial one."""

    @abstractmethod
    def step(self, code: bytes, execution_input: ExecutionInput) -> StepOutput:
        """Executes a single step from the partial state given in `execution_input`."""


# Builds the commitment to the code fragments, for code that is not deployed on the ledger
Fragmenter = Callable[[bytes], bytes]
