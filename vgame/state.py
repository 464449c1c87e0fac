"""
Execution states and traces.

An ExecutionState is the observable state of the virtual machine after one step. Its hash commits to:
- the hash of the stack (see `stack_hash`);
- the hash of the memory and of the call data;
- the hash of the return data;
- the program counter, the remaining gas, the stack size and the memory size.

The `compact_stack` and the two `is_*_required` flags describe the step that *produced* the state
(which part of the previous stack it consumed, and whether it touched memory or call data); they are
not part of the commitment.
"""

from dataclasses import dataclass, field
from typing import Iterable, Iterator, List

from .errors import InvalidResize
from .utils import ZERO_HASH, keccak, u256

MAX_STACK_DEPTH = 1024


def stack_hash(items: Iterable[int], start: bytes = ZERO_HASH) -> bytes:
    """
    Hash of a stack, from the bottom to the top. The hash is a left fold, therefore the hash of a stack
    can be computed from the hash of a prefix of it:

        stack_hash(a + b) == stack_hash(b, start=stack_hash(a))
    """
    h = start
    for item in items:
        h = keccak(h + u256(item))
    return h


def mem_hash(mem: bytes) -> bytes:
    return keccak(mem)


def data_hash(data: bytes) -> bytes:
    return keccak(data)


def hash_state(
    stack_hash: bytes,
    mem_hash: bytes,
    data_hash: bytes,
    return_data: bytes,
    pc: int,
    gas_remaining: int,
    stack_size: int,
    mem_size: int
) -> bytes:
    """Computes the commitment to an execution state from its (partially hashed) components."""
    return keccak(
        stack_hash + mem_hash + data_hash + keccak(return_data)
        + u256(pc) + u256(gas_remaining) + u256(stack_size) + u256(mem_size)
    )


@dataclass(frozen=True)
class StateDigest:
    """Everything that is committed in the hash of an ExecutionState, except the return data."""
    stack_hash: bytes
    mem_hash: bytes
    data_hash: bytes
    pc: int
    gas_remaining: int
    stack_size: int
    mem_size: int

    def hash_with(self, return_data: bytes) -> bytes:
        return hash_state(self.stack_hash, self.mem_hash, self.data_hash, return_data,
                          self.pc, self.gas_remaining, self.stack_size, self.mem_size)


@dataclass(frozen=True)
class ExecutionState:
    stack: tuple[int, ...] = ()
    mem: bytes = b""
    data: bytes = b""
    return_data: bytes = b""
    pc: int = 0
    gas_remaining: int = 0
    compact_stack: tuple[int, ...] = ()
    is_memory_required: bool = False
    is_call_data_required: bool = False
    _hash: bytes = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if len(self.stack) > MAX_STACK_DEPTH:
            raise ValueError(f"Stack too deep: {len(self.stack)} > {MAX_STACK_DEPTH}")
        if len(self.compact_stack) > MAX_STACK_DEPTH:
            raise ValueError("Compact stack too deep")
        # frozen dataclass: the hash is cached through object.__setattr__
        object.__setattr__(self, "_hash", self.digest().hash_with(self.return_data))

    @property
    def stack_size(self) -> int:
        return len(self.stack)

    @property
    def mem_size(self) -> int:
        return len(self.mem)

    @property
    def stack_hash(self) -> bytes:
        return stack_hash(self.stack)

    @property
    def mem_hash(self) -> bytes:
        return mem_hash(self.mem)

    @property
    def data_hash(self) -> bytes:
        return data_hash(self.data)

    @property
    def hash(self) -> bytes:
        return self._hash

    def digest(self) -> StateDigest:
        return StateDigest(
            stack_hash=self.stack_hash,
            mem_hash=self.mem_hash,
            data_hash=self.data_hash,
            pc=self.pc,
            gas_remaining=self.gas_remaining,
            stack_size=self.stack_size,
            mem_size=self.mem_size,
        )

    @property
    def output(self) -> bytes:
        """The externally visible output of the computation, if this is the final state."""
        return self.return_data


# sentinel state used to pad the trace to a power of 2
EMPTY_STATE = ExecutionState()


class Trace:
    """
    The ordered sequence of ExecutionStates produced for one task. Positions are 1-indexed, as in the
    protocol: `state_at(1)` is the first state. A trace can be truncated, but never extended.
    """

    def __init__(self, states: Iterable[ExecutionState]):
        self._states: List[ExecutionState] = list(states)

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[ExecutionState]:
        return iter(self._states)

    def state_at(self, i: int) -> ExecutionState:
        if not (1 <= i <= len(self._states)):
            raise IndexError(f"Step {i} out of range for a trace of length {len(self._states)}")
        return self._states[i - 1]

    @property
    def final_state(self) -> ExecutionState:
        return self.state_at(len(self._states))

    def truncate(self, new_len: int) -> None:
        if not 0 < new_len <= len(self._states):
            raise InvalidResize(f"Cannot truncate a trace of {len(self._states)} states to {new_len}")
        del self._states[new_len:]

    def __repr__(self):
        return f"Trace(len={len(self)})"
