"""
An in-process ledger implementing the Enforcer and the Verifier.

The LocalChain keeps the state of both contracts, mines one block for each successful transaction, and queues the
emitted events; `process_events()` delivers them to the listeners in order, awaiting each listener before moving
to the next one. Failed transactions raise LedgerRejected and do not change the state.

The verifier re-executes the disputed step with the Runtime it is given, which plays the role of the on-chain
step executor. The step must start from the witness: once the bisection reaches the leaves, it is the
last state both parties agree on.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple, Type

from .errors import LedgerRejected, VGameError
from .ledger import (
    ZERO_ADDRESS, DisputeInitialised, DisputeNewRound, DisputeRecord, DisputeState, Enforcer, Event, EventT,
    ExecutionRecord, Listener, Path, Receipt, Registered, Requested, Runtime, Slashed, TaskParams, Verifier,
    execution_id_of, same_address, task_hash_of
)
from .merkle import ceil_lg, combine_hashes
from .proof import ExecutionInput, ProofHashes, post_state_hash, pre_state_hash
from .state import data_hash
from .utils import ZERO_HASH, keccak, short_hex

logger = logging.getLogger(__name__)


def make_address(label: bytes) -> str:
    return "0x" + keccak(label)[-20:].hex()


@dataclass
class Game:
    """The verifier's state for one dispute."""
    execution_id: bytes
    solver_addr: str
    challenger_addr: str
    solver_path: bytes
    challenger_path: bytes
    rounds_left: int
    timeout: int
    solver: Path = field(default_factory=Path)
    challenger: Path = field(default_factory=Path)
    solver_responded: bool = False
    challenger_responded: bool = False
    witness: bytes = ZERO_HASH  # agreed node whose last leaf precedes the disputed range
    witness_children: Path = field(default_factory=Path)
    state: DisputeState = DisputeState.OPEN

    def to_record(self) -> DisputeRecord:
        return DisputeRecord(
            solver=self.solver,
            challenger=self.challenger,
            solver_addr=self.solver_addr,
            challenger_addr=self.challenger_addr,
            solver_path=self.solver_path,
            challenger_path=self.challenger_path,
            witness=self.witness,
            timeout=self.timeout,
            execution_id=self.execution_id,
            state=self.state,
        )


class LocalChain:
    def __init__(self, runtime: Runtime, *, bond_amount: int = 999, challenge_period: int = 3, timeout_duration: int = 0):
        self.runtime = runtime
        self.bond_amount = bond_amount
        self.challenge_period = challenge_period
        self.timeout_duration = timeout_duration

        self.block_number = 0
        self.code: Dict[str, bytes] = {}

        # enforcer storage
        self.bonds: Dict[str, int] = {}
        self.executions: Dict[bytes, ExecutionRecord] = {}
        self.task_executions: Dict[bytes, bytes] = {}

        # verifier storage
        self.games: Dict[bytes, Game] = {}

        self._queue: Deque[Event] = deque()
        self._listeners: List[Tuple[Type[Event], Listener]] = []
        self.log: List[Event] = []  # all the events ever emitted, in order

        self.enforcer = LocalEnforcer(self, make_address(b"enforcer"))
        self.verifier = LocalVerifier(self, make_address(b"verifier"))

    def deploy_code(self, code: bytes) -> str:
        addr = make_address(code)
        self.code[addr] = code
        return addr

    def mine_blocks(self, n_blocks: int = 1) -> int:
        self.block_number += n_blocks
        return self.block_number

    def next_block(self) -> int:
        """The height of the block that will include the next transaction."""
        return self.block_number + 1

    def commit(self, sender: str, block: int, events: List[Event]) -> Receipt:
        self.block_number = block
        for event in events:
            self.log.append(event)
            self._queue.append(event)
        return Receipt(tx_from=sender, block_number=block, events=events)

    def add_listener(self, event_type: Type[Event], listener: Listener) -> None:
        self._listeners.append((event_type, listener))

    def pending_events(self) -> int:
        return len(self._queue)

    async def process_events(self) -> int:
        """
        Delivers all the queued events, including the ones emitted while delivering, and returns the number of
        delivered events. Listeners failing with a VGameError do not prevent the delivery to the other listeners;
        once the queue is empty, their errors are raised together in an ExceptionGroup.
        """
        failures: List[VGameError] = []
        n_delivered = 0
        while self._queue:
            event = self._queue.popleft()
            n_delivered += 1
            for event_type, listener in list(self._listeners):
                if isinstance(event, event_type):
                    try:
                        await listener(event)
                    except VGameError as err:
                        logger.warning(f"listener failed on {type(event).__name__}: {err!r}")
                        failures.append(err)
        if failures:
            raise ExceptionGroup("event listeners failed", failures)
        return n_delivered


class LocalEnforcer(Enforcer):
    def __init__(self, chain: LocalChain, address: str, sender: Optional[str] = None):
        self.chain = chain
        self.address = address
        self.sender = sender

    def connect(self, sender: str) -> 'LocalEnforcer':
        return LocalEnforcer(self.chain, self.address, sender.lower())

    def on(self, event_type: Type[EventT], listener: Listener) -> None:
        self.chain.add_listener(event_type, listener)

    def _require_sender(self) -> str:
        if self.sender is None:
            raise ValueError("Transactions can only be sent after connect()")
        return self.sender

    async def request(self, params: TaskParams, call_data: bytes) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()

        if params.data_hash != data_hash(call_data):
            raise LedgerRejected("data hash does not match the call data")

        task_hash = task_hash_of(params.code_addr, call_data)
        return self.chain.commit(sender, block, [
            Requested(tx_from=sender, task_hash=task_hash, params=params, call_data=call_data)
        ])

    async def register(self, code_addr: str, call_data: bytes, end_hash: bytes, execution_depth: int, result: bytes, *, value: int) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()

        if value != self.chain.bond_amount:
            raise LedgerRejected(f"bond must be exactly {self.chain.bond_amount}, got {value}")
        if execution_depth < 1:
            raise LedgerRejected("invalid execution depth")

        task_hash = task_hash_of(code_addr, call_data)
        if task_hash in self.chain.task_executions:
            raise LedgerRejected("execution already registered")

        execution_id = execution_id_of(task_hash, end_hash)
        self.chain.executions[execution_id] = ExecutionRecord(
            start_block=block,
            end_hash=end_hash,
            execution_depth=execution_depth,
            solver=sender,
            code_addr=code_addr.lower(),
            call_data=call_data,
        )
        self.chain.task_executions[task_hash] = execution_id
        self.chain.bonds[sender] = self.chain.bonds.get(sender, 0) + value

        logger.debug(f"block {block}: registered execution {short_hex(execution_id)} by {sender}")

        return self.chain.commit(sender, block, [
            Registered(
                tx_from=sender,
                task_hash=task_hash,
                solver_path_root=end_hash,
                execution_depth=execution_depth,
                result_bytes=result,
                execution_id=execution_id,
                solver=sender,
            )
        ])

    async def dispute(self, code_addr: str, call_data: bytes, other_end_hash: bytes, execution_depth: int, *, value: int) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()

        execution_id = self.chain.task_executions.get(task_hash_of(code_addr, call_data))
        if execution_id is None:
            raise LedgerRejected("execution does not exist")
        execution = self.chain.executions[execution_id]

        if value != self.chain.bond_amount:
            raise LedgerRejected(f"bond must be exactly {self.chain.bond_amount}, got {value}")
        if block >= execution.start_block + self.chain.challenge_period:
            raise LedgerRejected("challenge period elapsed")
        if execution_depth != execution.execution_depth:
            raise LedgerRejected("execution depth does not match the registered one")

        dispute_id = self.chain.verifier.init_game(
            block, execution_id, execution.end_hash, other_end_hash, execution.execution_depth, execution.solver, sender)

        self.chain.bonds[sender] = self.chain.bonds.get(sender, 0) + value

        logger.debug(f"block {block}: dispute {short_hex(dispute_id)} on execution {short_hex(execution_id)} by {sender}")

        return self.chain.commit(sender, block, [
            DisputeInitialised(tx_from=sender, dispute_id=dispute_id, execution_id=execution_id)
        ])

    def apply_result(self, block: int, tx_from: str, execution_id: bytes, is_challenger_correct: bool, challenger_addr: str) -> List[Event]:
        """Resolves an execution in the given block. Only meant to be called by the verifier."""
        execution = self.chain.executions.get(execution_id)
        if execution is None:
            raise LedgerRejected("execution does not exist")
        if block >= execution.start_block + self.chain.challenge_period:
            raise LedgerRejected("challenge period elapsed")

        loser = execution.solver if is_challenger_correct else challenger_addr.lower()
        self.chain.bonds[loser] = self.chain.bonds.get(loser, 0) - self.chain.bond_amount

        del self.chain.executions[execution_id]
        for task_hash, exec_id in list(self.chain.task_executions.items()):
            if exec_id == execution_id:
                del self.chain.task_executions[task_hash]

        logger.debug(f"block {block}: execution {short_hex(execution_id)} resolved, slashed {loser}")

        return [Slashed(tx_from=tx_from, execution_id=execution_id, address=loser)]

    async def result(self, execution_id: bytes, is_challenger_correct: bool, challenger_addr: str) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()

        if not same_address(sender, self.chain.verifier.address):
            raise LedgerRejected("only the verifier can submit results")

        events = self.apply_result(block, sender, execution_id, is_challenger_correct, challenger_addr)
        return self.chain.commit(sender, block, events)

    async def bonds(self, addr: str) -> int:
        return self.chain.bonds.get(addr.lower(), 0)

    async def executions(self, execution_id: bytes) -> ExecutionRecord:
        return self.chain.executions.get(execution_id, ExecutionRecord())

    async def verifier_address(self) -> str:
        return self.chain.verifier.address

    async def challenge_period(self) -> int:
        return self.chain.challenge_period

    async def bond_amount(self) -> int:
        return self.chain.bond_amount

    async def get_code(self, code_addr: str) -> bytes:
        return self.chain.code.get(code_addr.lower(), b"")


class LocalVerifier(Verifier):
    def __init__(self, chain: LocalChain, address: str, sender: Optional[str] = None):
        self.chain = chain
        self.address = address
        self.sender = sender

    def connect(self, sender: str) -> 'LocalVerifier':
        return LocalVerifier(self.chain, self.address, sender.lower())

    def on(self, event_type: Type[EventT], listener: Listener) -> None:
        self.chain.add_listener(event_type, listener)

    def _require_sender(self) -> str:
        if self.sender is None:
            raise ValueError("Transactions can only be sent after connect()")
        return self.sender

    def _get_game(self, dispute_id: bytes) -> Game:
        game = self.chain.games.get(dispute_id)
        if game is None:
            raise LedgerRejected("dispute does not exist")
        if game.state == DisputeState.RESOLVED:
            raise LedgerRejected("dispute already resolved")
        return game

    def init_game(self, block: int, execution_id: bytes, solver_root: bytes, challenger_root: bytes, execution_depth: int, solver_addr: str, challenger_addr: str) -> bytes:
        """Starts a new dispute. Only meant to be called by the enforcer."""
        height = ceil_lg(execution_depth)
        if height < 1:
            raise LedgerRejected("nothing to bisect")

        dispute_id = keccak(execution_id + solver_root + challenger_root)
        if dispute_id in self.chain.games:
            raise LedgerRejected("dispute already exists")

        self.chain.games[dispute_id] = Game(
            execution_id=execution_id,
            solver_addr=solver_addr.lower(),
            challenger_addr=challenger_addr.lower(),
            solver_path=solver_root,
            challenger_path=challenger_root,
            rounds_left=height,
            timeout=block + self.chain.timeout_duration,
        )
        return dispute_id

    def _role(self, game: Game, sender: str, check_responded: bool) -> str:
        # the same address might play both roles
        if same_address(sender, game.challenger_addr) and not (check_responded and game.challenger_responded):
            return "challenger"
        if same_address(sender, game.solver_addr) and not (check_responded and game.solver_responded):
            return "solver"
        raise LedgerRejected("sender is not a party of the dispute, or already responded")

    async def respond(self, dispute_id: bytes, path: Path, witness: Path) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()
        game = self._get_game(dispute_id)

        if game.state != DisputeState.OPEN:
            raise LedgerRejected("dispute is not in the bisection phase")
        if block > game.timeout:
            raise LedgerRejected("round timed out")

        role = self._role(game, sender, check_responded=True)
        current = game.challenger_path if role == "challenger" else game.solver_path
        if combine_hashes(path.left, path.right) != current:
            raise LedgerRejected("children do not match the current path")
        if game.witness != ZERO_HASH and combine_hashes(witness.left, witness.right) != game.witness:
            raise LedgerRejected("witness children do not match the recorded witness")

        if role == "challenger":
            game.challenger = path
            game.challenger_responded = True
        else:
            game.solver = path
            game.solver_responded = True
        if game.witness != ZERO_HASH:
            game.witness_children = witness

        events: List[Event] = []
        if game.solver_responded and game.challenger_responded:
            if game.solver.left != game.challenger.left:
                game.solver_path, game.challenger_path = game.solver.left, game.challenger.left
                # same preceding state, one level down
                game.witness = game.witness_children.right
            else:
                game.solver_path, game.challenger_path = game.solver.right, game.challenger.right
                game.witness = game.solver.left
            game.solver_responded = game.challenger_responded = False
            game.witness_children = Path()
            game.rounds_left -= 1
            if game.rounds_left == 0:
                game.state = DisputeState.READY_FOR_PROOF
            game.timeout = block + self.chain.timeout_duration

            logger.debug(f"block {block}: dispute {short_hex(dispute_id)} new round ({game.rounds_left} left)")

            events.append(DisputeNewRound(
                tx_from=sender,
                dispute_id=dispute_id,
                timeout=game.timeout,
                solver_path=game.solver_path,
                challenger_path=game.challenger_path,
            ))

        return self.chain.commit(sender, block, events)

    async def submit_proof(self, dispute_id: bytes, proofs: ProofHashes, execution_input: ExecutionInput) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()
        game = self._get_game(dispute_id)

        if game.state != DisputeState.READY_FOR_PROOF:
            raise LedgerRejected("dispute is not ready for the final proof")
        if block > game.timeout:
            raise LedgerRejected("round timed out")

        execution = self.chain.executions.get(game.execution_id)
        if execution is None:
            raise LedgerRejected("execution does not exist")

        role = self._role(game, sender, check_responded=False)
        current = game.challenger_path if role == "challenger" else game.solver_path
        if game.witness == ZERO_HASH:
            raise LedgerRejected("the initial state is disputed, there is no step to prove")

        code = self.chain.code.get(execution.code_addr, b"")
        try:
            output = self.chain.runtime.step(code, execution_input)
        except (ValueError, IndexError) as err:
            raise LedgerRejected(f"step execution failed: {err}") from err

        pre = pre_state_hash(proofs, execution_input)
        post = post_state_hash(proofs, execution_input, output)
        if pre != game.witness:
            raise LedgerRejected("the step does not start from the last agreed state")
        if post != current:
            raise LedgerRejected("invalid step proof")

        events = self.chain.enforcer.connect(self.address).apply_result(
            block, sender, game.execution_id, role == "challenger", game.challenger_addr)
        game.state = DisputeState.RESOLVED

        logger.debug(f"block {block}: dispute {short_hex(dispute_id)} won by the {role}")

        return self.chain.commit(sender, block, events)

    async def claim_timeout(self, dispute_id: bytes) -> Receipt:
        sender = self._require_sender()
        block = self.chain.next_block()
        game = self._get_game(dispute_id)

        if block <= game.timeout:
            raise LedgerRejected("timeout not reached")

        # the challenger only wins if it moved in the open round, and the solver did not
        is_challenger_correct = game.challenger_responded and not game.solver_responded

        events = self.chain.enforcer.connect(self.address).apply_result(
            block, sender, game.execution_id, is_challenger_correct, game.challenger_addr)
        game.state = DisputeState.RESOLVED

        logger.debug(f"block {block}: timeout claimed on dispute {short_hex(dispute_id)}")

        return self.chain.commit(sender, block, events)

    async def disputes(self, dispute_id: bytes) -> DisputeRecord:
        game = self.chain.games.get(dispute_id)
        if game is None:
            return DisputeRecord(
                solver=Path(), challenger=Path(),
                solver_addr=ZERO_ADDRESS, challenger_addr=ZERO_ADDRESS,
                solver_path=ZERO_HASH, challenger_path=ZERO_HASH,
            )
        return game.to_record()
