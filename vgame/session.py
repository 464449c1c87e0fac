"""
The bisection game, as played by one party of one dispute.

Let the trace of the computation be the states x_1, ..., x_n, and let T be the Merkle tree built on their hashes.
Solver and challenger claim different roots t_S and t_C for the same task. At each round, each party reveals the
two children of its current node:

    t = H(t_left || t_right)

and the verifier compares them:
    - if the left children differ, both parties move to their left child;
    - otherwise (they agree on the left half), both move to their right child.

The verifier records the new node of each party (its "path"), and the game repeats until the path of each party
is a single leaf: the first state the two parties disagree on.

Along the way, the verifier also keeps the "witness": an agreed node, at the same level as the paths, whose last
leaf is the state right before the disputed range. It becomes the agreed left child when the parties move right;
when they move left, both reveal its children and it becomes its own right child. Once the paths are leaves, the
witness is the last agreed state, and the parties reveal the minimal data about the step from it to their
disputed state (see `vgame.proof`); the verifier re-executes it.

Each party runs exactly the same algorithm: it never decides who won a round, it just follows the hash that the
verifier recorded for its own role.
"""

import logging
from enum import Enum
from typing import Optional, TYPE_CHECKING

from .errors import Desynchronized
from .ledger import ZERO_PATH, DisputeRecord, DisputeState, Path, Verifier, same_address
from .merkle import TraceTree, TreeNode
from .proof import StepProof, construct_proof
from .utils import ZERO_HASH, short_hex, to_hex

if TYPE_CHECKING:
    from .coordinator import Solution

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    OPEN = 0
    DESCENDING = 1
    READY_FOR_PROOF = 2
    CLOSED = 3
    SUPERSEDED = 4  # the counter-party already moved past our last known position


class DisputeSession:
    """
    The state of one open dispute: the node of the local tree spanning the part of the trace that is still
    disputed (`computation_path`).
    """

    def __init__(self, dispute_id: bytes, execution_id: bytes, solution: 'Solution', log_tag: str = "unkn"):
        self.dispute_id = dispute_id
        self.execution_id = execution_id
        self.solution = solution
        self.computation_path: TreeNode = solution.tree.root_node
        self.status = SessionStatus.OPEN
        self.log_tag = log_tag

        self.last_proof: Optional[StepProof] = None

    @property
    def tree(self) -> TraceTree:
        return self.solution.tree

    @property
    def depth(self) -> int:
        """Number of rounds before the computation path reaches a leaf."""
        return self.computation_path.height

    @property
    def is_closed(self) -> bool:
        return self.status == SessionStatus.CLOSED

    def log(self, msg: str, level: int = logging.INFO):
        logger.log(level, f"{self.log_tag}: dispute({to_hex(self.dispute_id)}) {msg}")

    def _set_status(self, status: SessionStatus):
        if status != self.status:
            self.log(f"{self.status.name} -> {status.name}")
            self.status = status

    def _witness_path(self, dispute: DisputeRecord) -> Path:
        if dispute.witness == ZERO_HASH:
            return ZERO_PATH

        node = self.tree.lookup_by_hash(dispute.witness)
        if node is None:
            raise Desynchronized(f"witness {to_hex(dispute.witness)} is not in the local tree")
        if node.is_leaf:
            return ZERO_PATH
        return Path(node.left.hash, node.right.hash)

    async def run_round(self, verifier: Verifier, address: str) -> SessionStatus:
        """
        Plays one round of the dispute, as the party with the given address: either responds with the children of
        the new computation path, or submits the final proof if the path is a single leaf.
        The session is only changed once all the local checks passed.
        """

        if self.is_closed:
            raise ValueError("The session is already closed")

        dispute = await verifier.disputes(self.dispute_id)

        if dispute.state == DisputeState.RESOLVED:
            self.log("already resolved on the ledger")
            self._set_status(SessionStatus.CLOSED)
            return self.status

        # the role is derived again at every round, as the same process can be solver and challenger in different disputes
        is_challenger = same_address(address, dispute.challenger_addr)
        target_path = dispute.challenger_path if is_challenger else dispute.solver_path
        last_submitted = dispute.challenger if is_challenger else dispute.solver

        next_path = self._resolve(target_path)

        if next_path is None:
            self.log("submission already made by another party")
            parent = self.tree.lookup_pair(last_submitted.left, last_submitted.right)
            if parent is None:
                raise Desynchronized(
                    f"neither the target {to_hex(target_path)} nor the last submitted pair {last_submitted} are in the local tree")
            self.computation_path = parent
            self._set_status(SessionStatus.SUPERSEDED)
            return self.status

        if next_path.is_leaf:
            prev = next_path.preceding_leaf()
            self._move_to(next_path)
            self._set_status(SessionStatus.READY_FOR_PROOF)
            if prev is None:
                # nothing leads to the first state; the timeout settles the dispute
                self.log("the initial state is disputed, there is no step to prove", logging.WARNING)
                return self.status

            await self.submit_proof(verifier, prev)
            self._set_status(SessionStatus.CLOSED)
            return self.status

        witness = self._witness_path(dispute)
        self._move_to(next_path)
        self._set_status(SessionStatus.DESCENDING)

        receipt = await verifier.respond(
            self.dispute_id,
            Path(next_path.left.hash, next_path.right.hash),
            witness
        )

        self.log(f"responded l={short_hex(next_path.left.hash)} r={short_hex(next_path.right.hash)} "
                 f"in block {receipt.block_number}, {self.depth} levels left")
        return self.status

    def _resolve(self, target_path: bytes) -> Optional[TreeNode]:
        # the children of the current node come first, as several leaves can share the same hash
        current = self.computation_path
        for node in (current, current.left, current.right):
            if node is not None and node.hash == target_path:
                return node
        return self.tree.lookup_by_hash(target_path)

    def _move_to(self, node: TreeNode):
        current = self.computation_path
        if current.left is node:
            self.log(f"goes left from {short_hex(current.hash)} to {short_hex(node.hash)}", logging.DEBUG)
        elif current.right is node:
            self.log(f"goes right from {short_hex(current.hash)} to {short_hex(node.hash)}", logging.DEBUG)
        self.computation_path = node

    async def submit_proof(self, verifier: Verifier, prev: TreeNode):
        cur = self.computation_path
        self.log("reached the first disputed state")
        self.log(f"submitting the step from {to_hex(prev.hash)} to {to_hex(cur.hash)}")

        step_proof = construct_proof(prev, cur)
        self.last_proof = step_proof

        self.log(f"submitting proof - proofs {step_proof.proofs}", logging.DEBUG)
        self.log(f"submitting proof - execution input {step_proof.execution_input}", logging.DEBUG)

        receipt = await verifier.submit_proof(self.dispute_id, step_proof.proofs, step_proof.execution_input)

        self.log(f"proof submitted in block {receipt.block_number}")
        return receipt

    def __repr__(self):
        return f"DisputeSession(dispute_id={to_hex(self.dispute_id)}, status={self.status.name}, depth={self.depth}, computation_path={self.computation_path})"
