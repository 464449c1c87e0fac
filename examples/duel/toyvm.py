"""
A minimal deterministic stack machine, used as the Runtime of the duel example and of the tests.

Each instruction is one byte, except PUSH1 which is followed by a 1-byte immediate. Every step costs one unit of gas.
Words are unsigned 256-bit integers; memory is byte-addressed and grows in 32-byte words.

Stack effects (the rightmost item is the top of the stack):

    STOP                    ->              halts
    x y ADD                 -> x+y
    x y MUL                 -> x*y
    x y SUB                 -> x-y
    off CALLDATALOAD        -> data[off:off+32]
    x POP                   ->
    off MLOAD               -> mem[off:off+32]
    v off MSTORE            ->              mem[off:off+32] = v
    PUSH1 n                 -> n
    x DUP1                  -> x x
    off len RETURN          ->              return_data = mem[off:off+len], halts
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from vgame.ledger import Runtime
from vgame.merkle import combine_hashes
from vgame.proof import ExecutionInput, StepOutput
from vgame.state import MAX_STACK_DEPTH, ExecutionState
from vgame.utils import ZERO_HASH, keccak, u256

STOP = 0x00
ADD = 0x01
MUL = 0x02
SUB = 0x03
CALLDATALOAD = 0x35
POP = 0x50
MLOAD = 0x51
MSTORE = 0x52
PUSH1 = 0x60
DUP1 = 0x80
RETURN = 0xf3

WORD_MOD = 1 << 256
MAX_OFFSET = 1 << 16
GAS_LIMIT = 10_000
MAX_STEPS = 4096


@dataclass(frozen=True)
class OpInfo:
    name: str
    n_args: int
    uses_memory: bool = False
    uses_call_data: bool = False
    immediate_len: int = 0
    halts: bool = False


OPCODES: Dict[int, OpInfo] = {
    STOP: OpInfo("STOP", 0, halts=True),
    ADD: OpInfo("ADD", 2),
    MUL: OpInfo("MUL", 2),
    SUB: OpInfo("SUB", 2),
    CALLDATALOAD: OpInfo("CALLDATALOAD", 1, uses_call_data=True),
    POP: OpInfo("POP", 1),
    MLOAD: OpInfo("MLOAD", 1, uses_memory=True),
    MSTORE: OpInfo("MSTORE", 2, uses_memory=True),
    PUSH1: OpInfo("PUSH1", 0, immediate_len=1),
    DUP1: OpInfo("DUP1", 1),
    RETURN: OpInfo("RETURN", 2, uses_memory=True, halts=True),
}

OPCODES_BY_NAME = {info.name: op for op, info in OPCODES.items()}


def assemble(source: str) -> bytes:
    """
    Assembles a program from a whitespace-separated list of mnemonics, where each PUSH1 is followed by its
    immediate (decimal, or hex with the 0x prefix). For example: "PUSH1 2 PUSH1 3 ADD".
    """
    tokens = source.split()
    code = bytearray()
    i = 0
    while i < len(tokens):
        name = tokens[i].upper()
        if name not in OPCODES_BY_NAME:
            raise ValueError(f"Unknown instruction: {tokens[i]}")
        op = OPCODES_BY_NAME[name]
        code.append(op)
        if OPCODES[op].immediate_len > 0:
            if i + 1 >= len(tokens):
                raise ValueError(f"Missing immediate for {name}")
            code.append(int(tokens[i + 1], 0))
            i += 1
        i += 1
    return bytes(code)


def disassemble(code: bytes) -> List[str]:
    result = []
    pc = 0
    while pc < len(code):
        info = OPCODES.get(code[pc])
        if info is None:
            result.append(f"INVALID({code[pc]:#04x})")
            pc += 1
        elif info.immediate_len > 0:
            result.append(f"{info.name} {code[pc + 1] if pc + 1 < len(code) else '?'}")
            pc += 1 + info.immediate_len
        else:
            result.append(info.name)
            pc += 1
    return result


def fragment_commitment(code: bytes) -> bytes:
    """Commitment to code that is not deployed: the fold of the hashes of its 32-byte chunks."""
    h = ZERO_HASH
    for i in range(0, len(code), 32):
        h = combine_hashes(h, keccak(code[i:i + 32]))
    return h


def _read_word(buf: bytes, offset: int) -> int:
    if offset >= MAX_OFFSET:
        raise ValueError(f"Offset too large: {offset}")
    return int.from_bytes(buf[offset:offset + 32].ljust(32, b"\0"), byteorder="big")


def _write_word(mem: bytes, offset: int, value: int) -> bytes:
    if offset >= MAX_OFFSET:
        raise ValueError(f"Offset too large: {offset}")
    end = offset + 32
    if len(mem) < end:
        mem = mem + bytes(-(-end // 32) * 32 - len(mem))
    return mem[:offset] + u256(value) + mem[end:]


@dataclass(frozen=True)
class StepResult:
    outputs: tuple[int, ...]
    mem: bytes
    return_data: bytes
    pc: int
    gas_remaining: int
    halts: bool


class ToyVM(Runtime):
    def __init__(self, gas_limit: int = GAS_LIMIT):
        self.gas_limit = gas_limit

    @staticmethod
    def op_info(code: bytes, pc: int) -> OpInfo:
        if not (0 <= pc < len(code)):
            raise ValueError(f"Program counter out of range: {pc}")
        info = OPCODES.get(code[pc])
        if info is None:
            raise ValueError(f"Invalid opcode {code[pc]:#04x} at {pc}")
        return info

    def execute(self, code: bytes, pc: int, gas_remaining: int, args: tuple[int, ...], mem: bytes, data: bytes, return_data: bytes) -> StepResult:
        """
        Executes the instruction at `pc`, where `args` are the items it consumes from the top of the stack.
        This is the only place where the semantics of the instructions is defined; `run` and `step` both use it.
        """
        info = self.op_info(code, pc)
        op = code[pc]

        if len(args) != info.n_args:
            raise ValueError(f"{info.name} takes {info.n_args} stack items, got {len(args)}")
        if gas_remaining < 1:
            raise ValueError("Out of gas")

        next_pc = pc + 1 + info.immediate_len
        outputs: tuple[int, ...] = ()

        if op == ADD:
            outputs = ((args[0] + args[1]) % WORD_MOD,)
        elif op == MUL:
            outputs = ((args[0] * args[1]) % WORD_MOD,)
        elif op == SUB:
            outputs = ((args[0] - args[1]) % WORD_MOD,)
        elif op == CALLDATALOAD:
            outputs = (_read_word(data, args[0]),)
        elif op == MLOAD:
            outputs = (_read_word(mem, args[0]),)
        elif op == MSTORE:
            mem = _write_word(mem, args[1], args[0])
        elif op == PUSH1:
            if pc + 1 >= len(code):
                raise ValueError("Missing immediate for PUSH1")
            outputs = (code[pc + 1],)
        elif op == DUP1:
            outputs = (args[0], args[0])
        elif op == RETURN:
            offset, length = args
            if offset + length > MAX_OFFSET:
                raise ValueError("Return data out of range")
            return_data = mem[offset:offset + length].ljust(length, b"\0")
        # POP and STOP have no outputs

        return StepResult(outputs, mem, return_data, next_pc, gas_remaining - 1, info.halts)

    def next_state(self, n_step: int, prev: ExecutionState, info: OpInfo, res: StepResult) -> ExecutionState:
        args = prev.stack[len(prev.stack) - info.n_args:]
        return ExecutionState(
            stack=prev.stack[:len(prev.stack) - info.n_args] + res.outputs,
            mem=res.mem,
            data=prev.data,
            return_data=res.return_data,
            pc=res.pc,
            gas_remaining=res.gas_remaining,
            compact_stack=args,
            is_memory_required=info.uses_memory,
            is_call_data_required=info.uses_call_data,
        )

    def run(self, code: bytes, data: bytes) -> List[ExecutionState]:
        state = ExecutionState(data=data, gas_remaining=self.gas_limit)
        states = [state]

        halted = False
        while not halted and state.pc < len(code):
            if len(states) > MAX_STEPS:
                raise ValueError(f"Execution longer than {MAX_STEPS} steps")

            info = self.op_info(code, state.pc)
            if len(state.stack) < info.n_args:
                raise ValueError(f"Stack underflow at {state.pc}")

            args = state.stack[len(state.stack) - info.n_args:]
            res = self.execute(code, state.pc, state.gas_remaining, args, state.mem, state.data, state.return_data)
            state = self.next_state(len(states), state, info, res)
            states.append(state)
            halted = res.halts

        return states

    def step(self, code: bytes, execution_input: ExecutionInput) -> StepOutput:
        inp = execution_input
        info = self.op_info(code, inp.pc)
        if inp.stack_size < len(inp.stack):
            raise ValueError("Inconsistent stack size")

        res = self.execute(code, inp.pc, inp.gas_remaining, inp.stack, inp.mem, inp.data, inp.return_data)

        stack_size = inp.stack_size - len(inp.stack) + len(res.outputs)
        if stack_size > MAX_STACK_DEPTH:
            raise ValueError("Stack overflow")

        return StepOutput(
            stack=res.outputs,
            mem=res.mem,
            return_data=res.return_data,
            pc=res.pc,
            gas_remaining=res.gas_remaining,
            stack_size=stack_size,
            mem_size=len(res.mem) if info.uses_memory else inp.mem_size,
        )


class FaultyVM(ToyVM):
    """
    A ToyVM that miscomputes the gas of step `fault_step` (1-based); all the following states derive from the wrong
    one. Only its `run` is faulty: `step` is the honest one.
    """

    def __init__(self, fault_step: int, gas_limit: int = GAS_LIMIT):
        super().__init__(gas_limit)
        self.fault_step = fault_step

    def next_state(self, n_step: int, prev: ExecutionState, info: OpInfo, res: StepResult) -> ExecutionState:
        state = super().next_state(n_step, prev, info, res)
        if n_step == self.fault_step:
            state = replace(state, gas_remaining=state.gas_remaining - 1)
        return state


# stores the two words of the call data, and returns their sum followed by their product
SAMPLE_PROGRAM = assemble("""
    PUSH1 0 CALLDATALOAD
    PUSH1 32 CALLDATALOAD
    ADD
    PUSH1 0 MSTORE
    PUSH1 0 CALLDATALOAD
    PUSH1 32 CALLDATALOAD
    MUL
    PUSH1 32 MSTORE
    PUSH1 0 PUSH1 64 RETURN
""")


def sample_call_data(a: int, b: int) -> bytes:
    return u256(a) + u256(b)


def faulty_runtime(fault_step: Optional[int]) -> ToyVM:
    return ToyVM() if fault_step is None else FaultyVM(fault_step)
