"""
Construction of the proof for a single disputed step.

Once the bisection reaches the first disputed leaf, the two states `prev` (the last agreed one) and `cur`
around the disputed step are known. Only the part of `prev` that the step actually uses is revealed in the
clear; everything else is passed as a hash:

- the stack is split in the bottom part (only its hash is given), and the top part consumed by the step
  (`cur.compact_stack`, given in the clear);
- the memory is given in the clear if the step requires it (`cur.is_memory_required`), otherwise only its
  hash is given. In the first case, the memory hash is ZERO_HASH;
- the call data follows the same rule, according to `cur.is_call_data_required`.
"""

from dataclasses import dataclass

from .errors import NotALeafPair
from .merkle import TreeNode
from .state import ExecutionState, data_hash, hash_state, mem_hash, stack_hash
from .utils import ZERO_HASH


@dataclass(frozen=True)
class ProofHashes:
    stack_hash: bytes
    mem_hash: bytes
    data_hash: bytes


@dataclass(frozen=True)
class ExecutionInput:
    data: bytes
    stack: tuple[int, ...]
    mem: bytes
    return_data: bytes
    pc: int
    gas_remaining: int
    stack_size: int
    mem_size: int
    custom_environment_hash: bytes = ZERO_HASH


@dataclass(frozen=True)
class StepOutput:
    """The result of re-executing a single step, as returned by Runtime.step."""
    stack: tuple[int, ...]  # the items that replace the compact stack on top of the stack
    mem: bytes  # only meaningful if the memory was supplied
    return_data: bytes
    pc: int
    gas_remaining: int
    stack_size: int
    mem_size: int


@dataclass(frozen=True)
class StepProof:
    proofs: ProofHashes
    execution_input: ExecutionInput


def construct_proof(prev: TreeNode, cur: TreeNode) -> StepProof:
    """Builds the proof of the step from the state of the leaf `prev` to the state of the adjacent leaf `cur`."""
    if not (prev.is_leaf and cur.is_leaf):
        raise NotALeafPair(f"Cannot construct a step proof between {prev} and {cur}")

    return construct_step_proof(prev.state, cur.state)


def construct_step_proof(prev: ExecutionState, cur: ExecutionState) -> StepProof:
    proofs = ProofHashes(
        stack_hash=stack_hash(prev.stack[:len(prev.stack) - len(cur.compact_stack)]),
        mem_hash=ZERO_HASH if cur.is_memory_required else mem_hash(prev.mem),
        data_hash=ZERO_HASH if cur.is_call_data_required else data_hash(prev.data),
    )

    return StepProof(
        proofs=proofs,
        execution_input=ExecutionInput(
            data=prev.data if cur.is_call_data_required else b"",
            stack=cur.compact_stack,
            mem=prev.mem if cur.is_memory_required else b"",
            return_data=prev.return_data,
            pc=prev.pc,
            gas_remaining=prev.gas_remaining,
            stack_size=prev.stack_size,
            mem_size=prev.mem_size,
        )
    )


def _mem_hash(proofs: ProofHashes, inp: ExecutionInput) -> bytes:
    return mem_hash(inp.mem) if proofs.mem_hash == ZERO_HASH else proofs.mem_hash


def _data_hash(proofs: ProofHashes, inp: ExecutionInput) -> bytes:
    return data_hash(inp.data) if proofs.data_hash == ZERO_HASH else proofs.data_hash


def pre_state_hash(proofs: ProofHashes, inp: ExecutionInput) -> bytes:
    """Reconstructs the hash of the state before the step from the proof material."""
    return hash_state(
        stack_hash(inp.stack, start=proofs.stack_hash),
        _mem_hash(proofs, inp),
        _data_hash(proofs, inp),
        inp.return_data,
        inp.pc,
        inp.gas_remaining,
        inp.stack_size,
        inp.mem_size,
    )


def post_state_hash(proofs: ProofHashes, inp: ExecutionInput, out: StepOutput) -> bytes:
    """Computes the hash of the state after the step, given the output of its re-execution."""
    return hash_state(
        stack_hash(out.stack, start=proofs.stack_hash),
        mem_hash(out.mem) if proofs.mem_hash == ZERO_HASH else proofs.mem_hash,
        _data_hash(proofs, inp),
        out.return_data,
        out.pc,
        out.gas_remaining,
        out.stack_size,
        out.mem_size,
    )
