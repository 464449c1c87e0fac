"""
Enforcer and Verifier backed by deployed contracts, through web3's AsyncWeb3.

Transactions are sent from accounts managed by the node (as in a development chain); the address given to
`connect()` must be one of them. Events are delivered by an EventPoller, which polls the logs of both contracts
and dispatches them in (block, log index) order.

We ignore the possibility of reorgs for simplicity.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError
from web3.logs import DISCARD

from .errors import LedgerRejected, VGameError
from .ledger import (
    DisputeInitialised, DisputeNewRound, DisputeRecord, DisputeState, Enforcer, Event, EventT, ExecutionRecord,
    Listener, Path, Receipt, Registered, Requested, Slashed, TaskParams, Verifier
)
from .proof import ExecutionInput, ProofHashes
from .utils import ZERO_HASH

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: List[Tuple[str, str]], outputs: Optional[List[Tuple[str, str]]] = None, mutability: str = "nonpayable", components: Optional[Dict[str, List[Tuple[str, str]]]] = None) -> dict:
    def param(name: str, type_: str) -> dict:
        p: Dict[str, Any] = {"name": name, "type": type_}
        if type_ == "tuple":
            p["components"] = [param(n, t) for n, t in (components or {})[name]]
        return p

    return {
        "type": "function",
        "name": name,
        "inputs": [param(n, t) for n, t in inputs],
        "outputs": [param(n, t) for n, t in (outputs or [])],
        "stateMutability": mutability,
    }


def _event(name: str, inputs: List[Tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


PATH_COMPONENTS = [("left", "bytes32"), ("right", "bytes32")]

ENFORCER_ABI = [
    _fn("request", [("codeAddr", "address"), ("dataHash", "bytes32"), ("codeHash", "bytes32"), ("callData", "bytes")]),
    _fn("register", [("codeAddr", "address"), ("callData", "bytes"), ("endHash", "bytes32"),
                     ("executionDepth", "uint256"), ("result", "bytes")], mutability="payable"),
    _fn("dispute", [("codeAddr", "address"), ("callData", "bytes"), ("otherEndHash", "bytes32"),
                    ("executionDepth", "uint256")], mutability="payable"),
    _fn("result", [("executionId", "bytes32"), ("isChallengerCorrect", "bool"), ("challenger", "address")]),
    _fn("bonds", [("addr", "address")], [("amount", "uint256")], "view"),
    _fn("executions", [("executionId", "bytes32")],
        [("startBlock", "uint256"), ("endHash", "bytes32"), ("executionDepth", "uint256"), ("solver", "address"),
         ("codeAddr", "address"), ("callData", "bytes")], "view"),
    _fn("verifier", [], [("addr", "address")], "view"),
    _fn("challengePeriod", [], [("blocks", "uint256")], "view"),
    _fn("bondAmount", [], [("amount", "uint256")], "view"),
    _event("Requested", [("taskHash", "bytes32", True), ("codeAddr", "address", False), ("dataHash", "bytes32", False),
                         ("codeHash", "bytes32", False), ("callData", "bytes", False)]),
    _event("Registered", [("taskHash", "bytes32", True), ("solverPathRoot", "bytes32", False),
                          ("executionDepth", "uint256", False), ("result", "bytes", False),
                          ("executionId", "bytes32", False), ("solver", "address", False)]),
    _event("DisputeInitialised", [("disputeId", "bytes32", True), ("executionId", "bytes32", True)]),
    _event("Slashed", [("executionId", "bytes32", True), ("_address", "address", True)]),
]

VERIFIER_ABI = [
    _fn("respond", [("disputeId", "bytes32"), ("computationPath", "tuple"), ("witnessPath", "tuple")],
        components={"computationPath": PATH_COMPONENTS, "witnessPath": PATH_COMPONENTS}),
    _fn("submitProof", [("disputeId", "bytes32"), ("proofs", "tuple"), ("executionInput", "tuple")],
        components={
            "proofs": [("stackHash", "bytes32"), ("memHash", "bytes32"), ("dataHash", "bytes32")],
            "executionInput": [("data", "bytes"), ("stack", "uint256[]"), ("mem", "bytes"),
                               ("customEnvironmentHash", "bytes32"), ("returnData", "bytes"), ("pc", "uint256"),
                               ("gasRemaining", "uint256"), ("stackSize", "uint256"), ("memSize", "uint256")],
        }),
    _fn("claimTimeout", [("disputeId", "bytes32")]),
    _fn("disputes", [("disputeId", "bytes32")],
        [("executionId", "bytes32"), ("solver", "tuple"), ("challenger", "tuple"), ("solverAddr", "address"),
         ("challengerAddr", "address"), ("solverPath", "bytes32"), ("challengerPath", "bytes32"),
         ("witness", "bytes32"), ("timeout", "uint256"), ("state", "uint8")],
        "view", components={"solver": PATH_COMPONENTS, "challenger": PATH_COMPONENTS}),
    _event("DisputeNewRound", [("disputeId", "bytes32", True), ("timeout", "uint256", False),
                               ("solverPath", "bytes32", False), ("challengerPath", "bytes32", False)]),
]


def _b(x: Any) -> bytes:
    return bytes(x)


def decode_requested(tx_from: str, args: Any) -> Requested:
    code_hash = _b(args["codeHash"])
    return Requested(
        tx_from=tx_from,
        task_hash=_b(args["taskHash"]),
        params=TaskParams(
            code_addr=args["codeAddr"],
            data_hash=_b(args["dataHash"]),
            code_hash=None if code_hash == ZERO_HASH else code_hash,
        ),
        call_data=_b(args["callData"]),
    )


def decode_registered(tx_from: str, args: Any) -> Registered:
    return Registered(
        tx_from=tx_from,
        task_hash=_b(args["taskHash"]),
        solver_path_root=_b(args["solverPathRoot"]),
        execution_depth=int(args["executionDepth"]),
        result_bytes=_b(args["result"]),
        execution_id=_b(args["executionId"]),
        solver=args["solver"],
    )


def decode_dispute_initialised(tx_from: str, args: Any) -> DisputeInitialised:
    return DisputeInitialised(tx_from=tx_from, dispute_id=_b(args["disputeId"]), execution_id=_b(args["executionId"]))


def decode_slashed(tx_from: str, args: Any) -> Slashed:
    return Slashed(tx_from=tx_from, execution_id=_b(args["executionId"]), address=args["_address"])


def decode_new_round(tx_from: str, args: Any) -> DisputeNewRound:
    return DisputeNewRound(
        tx_from=tx_from,
        dispute_id=_b(args["disputeId"]),
        timeout=int(args["timeout"]),
        solver_path=_b(args["solverPath"]),
        challenger_path=_b(args["challengerPath"]),
    )


# event type -> (solidity event name, decoder)
EVENT_DECODERS: Dict[Type[Event], Tuple[str, Callable[[str, Any], Event]]] = {
    Requested: ("Requested", decode_requested),
    Registered: ("Registered", decode_registered),
    DisputeInitialised: ("DisputeInitialised", decode_dispute_initialised),
    Slashed: ("Slashed", decode_slashed),
    DisputeNewRound: ("DisputeNewRound", decode_new_round),
}


def dispute_record_from_tuple(raw: Any) -> DisputeRecord:
    (execution_id, solver, challenger, solver_addr, challenger_addr,
     solver_path, challenger_path, witness, timeout, state) = raw
    return DisputeRecord(
        solver=Path(_b(solver[0]), _b(solver[1])),
        challenger=Path(_b(challenger[0]), _b(challenger[1])),
        solver_addr=solver_addr,
        challenger_addr=challenger_addr,
        solver_path=_b(solver_path),
        challenger_path=_b(challenger_path),
        witness=_b(witness),
        timeout=int(timeout),
        execution_id=_b(execution_id),
        state=DisputeState(int(state)),
    )


def execution_record_from_tuple(raw: Any) -> ExecutionRecord:
    start_block, end_hash, execution_depth, solver, code_addr, call_data = raw
    return ExecutionRecord(
        start_block=int(start_block),
        end_hash=_b(end_hash),
        execution_depth=int(execution_depth),
        solver=solver,
        code_addr=code_addr,
        call_data=_b(call_data),
    )


class EventPoller:
    """
    Polls the logs of the subscribed events, and delivers them to the listeners one at a time.

    Each (log, subscription) pair is delivered at most once: the position of the last delivered entry is recorded
    before the listener runs, and older entries are skipped when the same blocks are fetched again.
    """

    def __init__(self, w3: AsyncWeb3, *, poll_interval: float = 1, starting_block: Optional[int] = None):
        self.w3 = w3
        self.poll_interval = poll_interval
        self.next_block = starting_block
        self.last_delivered: Optional[Tuple[int, int, int]] = None  # (block, log index, subscription index)
        self._subscriptions: List[Tuple[Any, Type[Event], Listener]] = []

    def subscribe(self, contract: Any, event_type: Type[Event], listener: Listener) -> None:
        if event_type not in EVENT_DECODERS:
            raise ValueError(f"Unsupported event type: {event_type.__name__}")
        self._subscriptions.append((contract, event_type, listener))

    async def poll_once(self) -> int:
        """
        Fetches and delivers the events in the blocks mined since the last poll, and returns the number of delivered
        events. Listeners failing with a VGameError do not stop the delivery to the other listeners; their errors are
        raised together in an ExceptionGroup once the whole batch is delivered.
        """
        current_block = await self.w3.eth.block_number
        from_block = current_block if self.next_block is None else self.next_block
        if from_block > current_block:
            return 0

        entries = []
        for sub_index, (contract, event_type, listener) in enumerate(self._subscriptions):
            event_name, decoder = EVENT_DECODERS[event_type]
            logs = await getattr(contract.events, event_name)().get_logs(from_block=from_block, to_block=current_block)
            for log in logs:
                position = (log["blockNumber"], log["logIndex"], sub_index)
                if self.last_delivered is None or position > self.last_delivered:
                    entries.append((position, log, decoder, listener))

        entries.sort(key=lambda e: e[0])

        failures: List[VGameError] = []
        senders: Dict[bytes, str] = {}
        for position, log, decoder, listener in entries:
            tx_hash = _b(log["transactionHash"])
            if tx_hash not in senders:
                senders[tx_hash] = (await self.w3.eth.get_transaction(log["transactionHash"]))["from"]
            evt = decoder(senders[tx_hash], log["args"])

            self.last_delivered = position
            self.next_block = position[0]
            try:
                await listener(evt)
            except VGameError as err:
                logger.warning(f"listener failed on {type(evt).__name__} in block {position[0]}: {err!r}")
                failures.append(err)

        self.next_block = current_block + 1
        if failures:
            raise ExceptionGroup("event listeners failed", failures)
        return len(entries)

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except ExceptionGroup as group:
                # already logged one by one; the next poll goes on from the following event
                logger.info(f"{len(group.exceptions)} listener(s) failed during the last poll")
            await asyncio.sleep(self.poll_interval)


class Web3Contract:
    def __init__(self, w3: AsyncWeb3, poller: EventPoller, address: str, abi: list, sender: Optional[str] = None):
        self.w3 = w3
        self.poller = poller
        self.address = AsyncWeb3.to_checksum_address(address)
        self.abi = abi
        self.contract = w3.eth.contract(address=self.address, abi=abi)
        self.sender = sender

    def on(self, event_type: Type[EventT], listener: Listener) -> None:
        self.poller.subscribe(self.contract, event_type, listener)

    async def _call(self, fn_name: str, *args) -> Any:
        return await getattr(self.contract.functions, fn_name)(*args).call()

    async def _transact(self, fn_name: str, *args, value: int = 0) -> Receipt:
        if self.sender is None:
            raise ValueError("Transactions can only be sent after connect()")

        try:
            tx_hash = await getattr(self.contract.functions, fn_name)(*args).transact({"from": self.sender, "value": value})
        except ContractLogicError as err:
            raise LedgerRejected(f"{fn_name} reverted: {err}") from err

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise LedgerRejected(f"{fn_name} reverted in block {receipt['blockNumber']}")

        logger.debug(f"{fn_name} mined in block {receipt['blockNumber']}, gas used {receipt['gasUsed']}")

        events: List[Event] = []
        for event_type, (event_name, decoder) in EVENT_DECODERS.items():
            if not any(item.get("name") == event_name for item in self.abi):
                continue
            for log in getattr(self.contract.events, event_name)().process_receipt(receipt, errors=DISCARD):
                events.append(decoder(self.sender, log["args"]))

        return Receipt(tx_from=self.sender, block_number=receipt["blockNumber"], events=events)


class Web3Enforcer(Web3Contract, Enforcer):
    def __init__(self, w3: AsyncWeb3, poller: EventPoller, address: str, sender: Optional[str] = None):
        super().__init__(w3, poller, address, ENFORCER_ABI, sender)

    def connect(self, sender: str) -> 'Web3Enforcer':
        return Web3Enforcer(self.w3, self.poller, self.address, AsyncWeb3.to_checksum_address(sender))

    async def request(self, params: TaskParams, call_data: bytes) -> Receipt:
        return await self._transact(
            "request", AsyncWeb3.to_checksum_address(params.code_addr), params.data_hash,
            params.code_hash or ZERO_HASH, call_data)

    async def register(self, code_addr: str, call_data: bytes, end_hash: bytes, execution_depth: int, result: bytes, *, value: int) -> Receipt:
        return await self._transact(
            "register", AsyncWeb3.to_checksum_address(code_addr), call_data, end_hash, execution_depth, result,
            value=value)

    async def dispute(self, code_addr: str, call_data: bytes, other_end_hash: bytes, execution_depth: int, *, value: int) -> Receipt:
        return await self._transact(
            "dispute", AsyncWeb3.to_checksum_address(code_addr), call_data, other_end_hash, execution_depth,
            value=value)

    async def result(self, execution_id: bytes, is_challenger_correct: bool, challenger_addr: str) -> Receipt:
        return await self._transact(
            "result", execution_id, is_challenger_correct, AsyncWeb3.to_checksum_address(challenger_addr))

    async def bonds(self, addr: str) -> int:
        return int(await self._call("bonds", AsyncWeb3.to_checksum_address(addr)))

    async def executions(self, execution_id: bytes) -> ExecutionRecord:
        return execution_record_from_tuple(await self._call("executions", execution_id))

    async def verifier_address(self) -> str:
        return await self._call("verifier")

    async def challenge_period(self) -> int:
        return int(await self._call("challengePeriod"))

    async def bond_amount(self) -> int:
        return int(await self._call("bondAmount"))

    async def get_code(self, code_addr: str) -> bytes:
        return bytes(await self.w3.eth.get_code(AsyncWeb3.to_checksum_address(code_addr)))


class Web3Verifier(Web3Contract, Verifier):
    def __init__(self, w3: AsyncWeb3, poller: EventPoller, address: str, sender: Optional[str] = None):
        super().__init__(w3, poller, address, VERIFIER_ABI, sender)

    def connect(self, sender: str) -> 'Web3Verifier':
        return Web3Verifier(self.w3, self.poller, self.address, AsyncWeb3.to_checksum_address(sender))

    async def respond(self, dispute_id: bytes, path: Path, witness: Path) -> Receipt:
        return await self._transact(
            "respond", dispute_id, (path.left, path.right), (witness.left, witness.right))

    async def submit_proof(self, dispute_id: bytes, proofs: ProofHashes, execution_input: ExecutionInput) -> Receipt:
        inp = execution_input
        return await self._transact(
            "submitProof",
            dispute_id,
            (proofs.stack_hash, proofs.mem_hash, proofs.data_hash),
            (inp.data, list(inp.stack), inp.mem, inp.custom_environment_hash, inp.return_data, inp.pc,
             inp.gas_remaining, inp.stack_size, inp.mem_size),
        )

    async def claim_timeout(self, dispute_id: bytes) -> Receipt:
        return await self._transact("claimTimeout", dispute_id)

    async def disputes(self, dispute_id: bytes) -> DisputeRecord:
        return dispute_record_from_tuple(await self._call("disputes", dispute_id))


def connect(rpc_url: str, enforcer_address: str, verifier_address: str, *, poll_interval: float = 1) -> Tuple[Web3Enforcer, Web3Verifier, EventPoller]:
    """Returns the Enforcer and the Verifier at the given addresses, and the poller delivering their events."""
    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    poller = EventPoller(w3, poll_interval=poll_interval)
    return Web3Enforcer(w3, poller, enforcer_address), Web3Verifier(w3, poller, verifier_address), poller
