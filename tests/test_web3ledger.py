import pytest

from vgame.errors import LedgerRejected
from vgame.ledger import (
    DisputeInitialised, DisputeNewRound, DisputeState, Path, Registered, Requested, Slashed, TaskParams
)
from vgame.utils import ZERO_HASH, keccak
from vgame.web3ledger import (
    ENFORCER_ABI, EVENT_DECODERS, VERIFIER_ABI, EventPoller, decode_registered, decode_requested,
    dispute_record_from_tuple, execution_record_from_tuple
)

SOLVER = "0x" + "ab" * 20
CHALLENGER = "0x" + "cd" * 20


def abi_entry(abi, name):
    (entry,) = [item for item in abi if item["name"] == name]
    return entry


def test_abi_shape():
    register = abi_entry(ENFORCER_ABI, "register")
    assert register["stateMutability"] == "payable"
    assert [i["type"] for i in register["inputs"]] == ["address", "bytes", "bytes32", "uint256", "bytes"]

    respond = abi_entry(VERIFIER_ABI, "respond")
    assert [c["name"] for c in respond["inputs"][1]["components"]] == ["left", "right"]

    submit_proof = abi_entry(VERIFIER_ABI, "submitProof")
    assert len(submit_proof["inputs"][2]["components"]) == 9

    for event_name, _ in EVENT_DECODERS.values():
        assert abi_entry(ENFORCER_ABI + VERIFIER_ABI, event_name)["type"] == "event"


def test_decode_requested():
    args = {
        "taskHash": keccak(b"task"),
        "codeAddr": SOLVER,
        "dataHash": keccak(b"data"),
        "codeHash": ZERO_HASH,
        "callData": b"\xc0\xff\xee",
    }
    evt = decode_requested(SOLVER, args)
    assert evt == Requested(tx_from=SOLVER, task_hash=keccak(b"task"),
                            params=TaskParams(SOLVER, keccak(b"data")), call_data=b"\xc0\xff\xee")
    assert evt.params.code_on_chain

    evt = decode_requested(SOLVER, {**args, "codeHash": keccak(b"code")})
    assert evt.params.code_hash == keccak(b"code")
    assert not evt.params.code_on_chain


def test_decode_registered():
    evt = decode_registered(SOLVER, {
        "taskHash": keccak(b"task"),
        "solverPathRoot": keccak(b"root"),
        "executionDepth": 18,
        "result": b"\x01",
        "executionId": keccak(b"execution"),
        "solver": SOLVER,
    })
    assert isinstance(evt, Registered)
    assert evt.execution_depth == 18
    assert evt.solver_path_root == keccak(b"root")


def test_dispute_record_from_tuple():
    raw = (
        keccak(b"execution"),
        (keccak(b"sl"), keccak(b"sr")),
        (keccak(b"cl"), keccak(b"cr")),
        SOLVER,
        CHALLENGER,
        keccak(b"sp"),
        keccak(b"cp"),
        ZERO_HASH,
        42,
        1,
    )
    record = dispute_record_from_tuple(raw)
    assert record.solver == Path(keccak(b"sl"), keccak(b"sr"))
    assert record.challenger == Path(keccak(b"cl"), keccak(b"cr"))
    assert record.challenger_addr == CHALLENGER
    assert record.timeout == 42
    assert record.state == DisputeState.READY_FOR_PROOF


def test_execution_record_from_tuple():
    record = execution_record_from_tuple((0, ZERO_HASH, 0, "0x" + "00" * 20, "0x" + "00" * 20, b""))
    assert not record.exists()

    record = execution_record_from_tuple((7, keccak(b"root"), 18, SOLVER, CHALLENGER, b"\x01"))
    assert record.exists()
    assert record.execution_depth == 18


class FakeEventFilter:
    def __init__(self, logs):
        self.logs = logs

    async def get_logs(self, from_block, to_block):
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]


class FakeEvents:
    def __init__(self, logs_by_name):
        self.logs_by_name = logs_by_name

    def __getattr__(self, name):
        return lambda: FakeEventFilter(self.logs_by_name.get(name, []))


class FakeContract:
    def __init__(self, logs_by_name):
        self.events = FakeEvents(logs_by_name)


class FakeEth:
    def __init__(self, block_number, senders):
        self._block_number = block_number
        self.senders = senders

    @property
    def block_number(self):
        async def get():
            return self._block_number
        return get()

    async def get_transaction(self, tx_hash):
        return {"from": self.senders[bytes(tx_hash)]}


class FakeWeb3:
    def __init__(self, block_number, senders):
        self.eth = FakeEth(block_number, senders)


def make_log(block, index, tx, args):
    return {"blockNumber": block, "logIndex": index, "transactionHash": tx, "args": args}


@pytest.mark.asyncio
async def test_poller_delivers_in_order():
    dispute_id = keccak(b"dispute")
    execution_id = keccak(b"execution")
    tx1, tx2 = keccak(b"tx1"), keccak(b"tx2")

    enforcer = FakeContract({
        "DisputeInitialised": [make_log(5, 0, tx1, {"disputeId": dispute_id, "executionId": execution_id})],
        "Slashed": [make_log(7, 3, tx2, {"executionId": execution_id, "_address": SOLVER})],
    })
    verifier = FakeContract({
        "DisputeNewRound": [
            make_log(6, 1, tx2, {"disputeId": dispute_id, "timeout": 16, "solverPath": keccak(b"s"), "challengerPath": keccak(b"c")}),
            make_log(7, 0, tx2, {"disputeId": dispute_id, "timeout": 17, "solverPath": keccak(b"s2"), "challengerPath": keccak(b"c2")}),
        ],
    })

    w3 = FakeWeb3(7, {tx1: CHALLENGER, tx2: SOLVER})
    poller = EventPoller(w3, starting_block=5)

    received = []

    async def listener(evt):
        received.append(evt)

    poller.subscribe(enforcer, Slashed, listener)
    poller.subscribe(enforcer, DisputeInitialised, listener)
    poller.subscribe(verifier, DisputeNewRound, listener)

    assert await poller.poll_once() == 4
    assert [type(evt) for evt in received] == [DisputeInitialised, DisputeNewRound, DisputeNewRound, Slashed]
    assert received[0].tx_from == CHALLENGER
    assert received[1].timeout == 16
    assert received[3].address == SOLVER

    # nothing new
    assert await poller.poll_once() == 0
    assert poller.next_block == 8


def test_poller_rejects_unknown_event_types():
    poller = EventPoller(FakeWeb3(0, {}))

    class Custom(Requested):
        pass

    with pytest.raises(ValueError):
        poller.subscribe(FakeContract({}), Custom, lambda evt: None)


@pytest.mark.asyncio
async def test_poller_failing_listener_does_not_redeliver():
    dispute_id = keccak(b"dispute")
    execution_id = keccak(b"execution")
    tx = keccak(b"tx")

    enforcer = FakeContract({
        "DisputeInitialised": [make_log(5, 0, tx, {"disputeId": dispute_id, "executionId": execution_id})],
        "Slashed": [make_log(7, 0, tx, {"executionId": execution_id, "_address": SOLVER})],
    })
    verifier = FakeContract({
        "DisputeNewRound": [
            make_log(6, 1, tx, {"disputeId": dispute_id, "timeout": 16, "solverPath": keccak(b"s"), "challengerPath": keccak(b"c")}),
        ],
    })

    w3 = FakeWeb3(7, {tx: SOLVER})
    poller = EventPoller(w3, starting_block=5)

    delivered = []

    async def listener(evt):
        delivered.append(type(evt).__name__)

    async def failing_listener(evt):
        delivered.append(type(evt).__name__)
        raise LedgerRejected("proof rejected")

    poller.subscribe(enforcer, DisputeInitialised, listener)
    poller.subscribe(verifier, DisputeNewRound, failing_listener)
    poller.subscribe(enforcer, Slashed, listener)

    with pytest.raises(ExceptionGroup) as excinfo:
        await poller.poll_once()

    assert len(excinfo.value.exceptions) == 1
    assert isinstance(excinfo.value.exceptions[0], LedgerRejected)

    # the failure did not stop the delivery of the later events
    assert delivered == ["DisputeInitialised", "DisputeNewRound", "Slashed"]
    assert poller.next_block == 8

    # nothing is delivered twice
    assert await poller.poll_once() == 0
    assert delivered == ["DisputeInitialised", "DisputeNewRound", "Slashed"]


@pytest.mark.asyncio
async def test_poller_resumes_after_an_unexpected_error():
    dispute_id = keccak(b"dispute")
    tx = keccak(b"tx")

    verifier = FakeContract({
        "DisputeNewRound": [
            make_log(5, 0, tx, {"disputeId": dispute_id, "timeout": 15, "solverPath": keccak(b"s1"), "challengerPath": keccak(b"c1")}),
            make_log(6, 0, tx, {"disputeId": dispute_id, "timeout": 16, "solverPath": keccak(b"s2"), "challengerPath": keccak(b"c2")}),
        ],
    })

    w3 = FakeWeb3(6, {tx: SOLVER})
    poller = EventPoller(w3, starting_block=5)

    timeouts = []

    async def listener(evt):
        timeouts.append(evt.timeout)
        if evt.timeout == 15:
            raise RuntimeError("boom")

    poller.subscribe(verifier, DisputeNewRound, listener)

    with pytest.raises(RuntimeError):
        await poller.poll_once()
    assert timeouts == [15]
    assert poller.next_block == 5

    # the failed event is not delivered again, the following one is
    assert await poller.poll_once() == 1
    assert timeouts == [15, 16]
    assert poller.next_block == 7
