"""
This module drives the participation of one party (identified by its address) in the verification game.

The Coordinator subscribes to the events of the Enforcer and of the Verifier, and reacts to them:
- when this party requests a task, it computes the result and registers it, together with a bond;
- when another party registers the result of a task, it recomputes it and opens a dispute if the roots differ;
- when a dispute is opened against one of its registered executions, it starts playing the bisection game;
- at each new round of a dispute it takes part in, it plays the next move (see `vgame.session`).

It keeps track of:
- the parameters and call data of all the tasks it has seen;
- the solutions it computed, by execution id;
- the open disputes, by dispute id.

Solutions and disputes are removed once the ledger resolves the corresponding execution, and disputes are also
removed once the final proof is submitted.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Union

from .errors import InvalidResize
from .ledger import (
    DisputeInitialised, DisputeNewRound, Enforcer, Fragmenter, Registered, Requested, Runtime, Slashed, TaskParams,
    Verifier, execution_id_of, same_address
)
from .merkle import ResultProof, TraceTree
from .session import DisputeSession, SessionStatus
from .state import Trace, data_hash
from .utils import to_hex

logger = logging.getLogger(__name__)


@dataclass
class Solution:
    tree: TraceTree
    code_commitment: Optional[bytes] = None
    result_proof: Optional[ResultProof] = None

    @property
    def trace(self) -> Trace:
        return self.tree.trace

    @property
    def root(self) -> bytes:
        return self.tree.root


SlashedHook = Callable[[bytes], Union[None, Awaitable[None]]]


class Coordinator:
    """
    Manages the tasks, solutions and disputes of a single party. All the state is owned by this object, and only
    modified by the event listeners, which the ledger runs one at a time.
    """

    def __init__(
        self,
        enforcer: Enforcer,
        verifier: Verifier,
        address: str,
        runtime: Runtime,
        *,
        fragmenter: Optional[Fragmenter] = None,
        on_slashed: Optional[SlashedHook] = None,
        log_tag: str = "unkn",
        always_challenge: bool = False
    ):
        """
        Parameters:
            enforcer (Enforcer): The enforcer contract; it is connected to `address` for sending transactions.
            verifier (Verifier): The verifier contract; it is connected to `address` for sending transactions.
            address (str): The address of this party.
            runtime (Runtime): The virtual machine used to compute the traces.
            fragmenter (Optional[Fragmenter]): Computes the commitment to the code fragments, for tasks whose code
                is not deployed. Required only for such tasks.
            on_slashed (Optional[SlashedHook]): Called with the execution id whenever this party's bond is slashed.
            log_tag (str): A prefix for all the log records of this coordinator.
            always_challenge (bool): If True, disputes every execution registered by someone else, even if the
                result matches. Only meant for testing.
        """

        self.enforcer = enforcer.connect(address)
        self.verifier = verifier.connect(address)
        self.address = address.lower()
        self.runtime = runtime
        self.fragmenter = fragmenter
        self.on_slashed_hook = on_slashed
        self.log_tag = log_tag
        self.always_challenge = always_challenge

        self.task_params: Dict[bytes, TaskParams] = {}
        self.task_call_data: Dict[bytes, bytes] = {}
        self.solutions: Dict[bytes, Solution] = {}
        self.disputes: Dict[bytes, DisputeSession] = {}
        self.execution_tasks: Dict[bytes, bytes] = {}  # execution id -> task hash

        self.enforcer.on(Requested, self.on_requested)
        self.enforcer.on(Registered, self.on_registered)
        self.enforcer.on(Slashed, self.on_slashed)
        self.enforcer.on(DisputeInitialised, self.on_dispute_initialised)
        self.verifier.on(DisputeNewRound, self.on_new_round)

    def log(self, msg: str, level: int = logging.INFO):
        logger.log(level, f"{self.log_tag}: {msg}")

    def is_me(self, addr: Optional[str]) -> bool:
        return same_address(addr, self.address)

    # event listeners

    async def on_requested(self, evt: Requested):
        self.task_params[evt.task_hash] = evt.params
        self.task_call_data[evt.params.data_hash] = evt.call_data

        if self.is_me(evt.tx_from):
            self.log(f"task request {to_hex(evt.task_hash)}")
            await self.register_execution(evt.task_hash, evt.params)
        else:
            self.log(f"task requested {to_hex(evt.task_hash)}")

    async def on_registered(self, evt: Registered):
        self.execution_tasks[evt.execution_id] = evt.task_hash

        if self.is_me(evt.tx_from):
            self.log(f"execution result registered {to_hex(evt.task_hash)}")
        else:
            await self.validate_execution(evt.task_hash, evt.solver_path_root, evt.execution_depth, evt.result_bytes)

    async def on_slashed(self, evt: Slashed):
        # the execution is resolved on the ledger: nothing left to do for it
        self.solutions.pop(evt.execution_id, None)
        self.forget_task(self.execution_tasks.pop(evt.execution_id, None))
        for dispute_id, session in list(self.disputes.items()):
            if session.execution_id == evt.execution_id:
                self.log(f"dispute({to_hex(dispute_id)}) resolved")
                del self.disputes[dispute_id]

        if self.is_me(evt.address):
            self.log(f"slashed on execution {to_hex(evt.execution_id)}", logging.WARNING)
            if self.on_slashed_hook is not None:
                res = self.on_slashed_hook(evt.execution_id)
                if res is not None:
                    await res

    async def on_dispute_initialised(self, evt: DisputeInitialised):
        sol = self.solutions.get(evt.execution_id)

        if sol is not None:
            self.log(f"new dispute for {to_hex(evt.execution_id)}")
            await self.init_dispute(evt.dispute_id, evt.execution_id, sol)

    async def on_new_round(self, evt: DisputeNewRound):
        if evt.dispute_id in self.disputes:
            self.log(f"dispute({to_hex(evt.dispute_id)}) new round")
            await self.submit_round(evt.dispute_id)

    def forget_task(self, task_hash: Optional[bytes]):
        params = self.task_params.pop(task_hash, None)
        if params is None:
            return
        # the same call data can be shared by several tasks
        if all(p.data_hash != params.data_hash for p in self.task_params.values()):
            self.task_call_data.pop(params.data_hash, None)

    # actions

    async def request_execution(self, params: TaskParams, call_data: bytes) -> bytes:
        receipt = await self.enforcer.request(params, call_data)

        return receipt.events[0].task_hash

    async def register_execution(self, task_hash: bytes, params: TaskParams) -> bytes:
        sol = await self.compute_call(params)
        result_proof = sol.tree.checked_result_proof()  # raises SelfCheckFailed, never registers an unverified root
        sol.result_proof = result_proof
        bond_amount = await self.enforcer.bond_amount()

        self.log(f"registering execution: {len(sol.trace)} steps")

        receipt = await self.enforcer.register(
            params.code_addr,
            self.task_call_data[params.data_hash],
            sol.root,
            len(sol.trace),
            result_proof.final_output,
            value=bond_amount
        )

        evt = receipt.events[0]
        execution_id = execution_id_of(task_hash, evt.solver_path_root)

        self.solutions[execution_id] = sol
        self.log(f"registered execution {to_hex(execution_id)} in block {receipt.block_number}")
        return execution_id

    async def validate_execution(self, task_hash: bytes, solver_hash: bytes, execution_depth: int, result: bytes) -> Optional[bytes]:
        """
        Recomputes the execution of a task registered by another party, and disputes it if the result differs.
        Returns the id of the new dispute, if any.
        """
        execution_id = execution_id_of(task_hash, solver_hash)
        self.log(f"validating execution result {to_hex(execution_id)}")

        params = self.task_params.get(task_hash)
        if params is None:
            self.log(f"unknown task {to_hex(task_hash)}, skipping", logging.WARNING)
            return None

        sol = await self.compute_call(params)

        # TODO: define a policy for executions claimed to be longer than ours
        if execution_depth > len(sol.trace):
            raise InvalidResize(
                f"claimed execution depth {execution_depth} is larger than the computed one ({len(sol.trace)})")
        if execution_depth < len(sol.trace):
            self.log(f"scaling down from {len(sol.trace)} to {execution_depth} steps")
            sol.tree.truncate(execution_depth)

        challenger_hash = sol.root

        self.log(f"solverHash {to_hex(solver_hash)}")
        self.log(f"challengerHash {to_hex(challenger_hash)}")

        if solver_hash != challenger_hash or self.always_challenge:
            bond_amount = await self.enforcer.bond_amount()

            receipt = await self.enforcer.dispute(
                params.code_addr,
                self.task_call_data[params.data_hash],
                challenger_hash,
                execution_depth,
                value=bond_amount
            )

            dispute_id = receipt.events[0].dispute_id

            await self.init_dispute(dispute_id, execution_id, sol)
            return dispute_id

        self.log("same execution result")
        return None

    async def init_dispute(self, dispute_id: bytes, execution_id: bytes, sol: Solution) -> DisputeSession:
        self.log(f"initDispute {to_hex(dispute_id)}")

        session = DisputeSession(dispute_id, execution_id, sol, log_tag=self.log_tag)
        self.disputes[dispute_id] = session

        await self.submit_round(dispute_id)
        return session

    async def submit_round(self, dispute_id: bytes) -> SessionStatus:
        session = self.disputes[dispute_id]

        status = await session.run_round(self.verifier, self.address)

        if status == SessionStatus.CLOSED:
            del self.disputes[dispute_id]
        return status

    async def compute_call(self, params: TaskParams) -> Solution:
        code = await self.get_code_for_params(params)
        data = self.get_data_for_params(params)

        code_commitment = None
        # code is not on chain
        if not params.code_on_chain:
            if self.fragmenter is None:
                raise ValueError("A fragmenter is needed for tasks whose code is not on chain")
            code_commitment = self.fragmenter(code)

        steps = self.runtime.run(code, data)
        tree = TraceTree(steps)

        self.log(f"computed {len(tree)} steps, root {to_hex(tree.root)}", logging.DEBUG)

        return Solution(tree=tree, code_commitment=code_commitment)

    async def get_code_for_params(self, params: TaskParams) -> bytes:
        return await self.enforcer.get_code(params.code_addr)

    def get_data_for_params(self, params: TaskParams) -> bytes:
        data = self.task_call_data.get(params.data_hash)
        if data is None or data_hash(data) != params.data_hash:
            raise ValueError(f"Unknown call data for hash {to_hex(params.data_hash)}")
        return data
