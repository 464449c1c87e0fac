from dataclasses import replace
from typing import Optional

import pytest
import pytest_asyncio

from examples.duel.toyvm import SAMPLE_PROGRAM, FaultyVM, ToyVM, sample_call_data

from vgame.errors import LedgerRejected
from vgame.ledger import ZERO_PATH, DisputeNewRound, DisputeState, Path, Slashed
from vgame.merkle import TraceTree, TreeNode
from vgame.proof import construct_proof
from vgame.utils import ZERO_HASH, format_round_markdown

from test_utils import events_of_type, mine_blocks

CALL_DATA = sample_call_data(2, 9)


def children(node: TreeNode) -> Path:
    return Path(node.left.hash, node.right.hash)


def witness_children(witness_node: Optional[TreeNode]) -> Path:
    return ZERO_PATH if witness_node is None else children(witness_node)


def next_nodes(solver_node: TreeNode, challenger_node: TreeNode, witness_node: Optional[TreeNode]):
    """The nodes of both parties, and the agreed witness, after a round played honestly by both."""
    if solver_node.left.hash != challenger_node.left.hash:
        return solver_node.left, challenger_node.left, None if witness_node is None else witness_node.right
    return solver_node.right, challenger_node.right, challenger_node.left


# the faulty state is either the left or the right leaf of its pair
@pytest.fixture(params=[4, 5])
def fault_step(request) -> int:
    return request.param


@pytest.fixture
def trees(fault_step):
    honest = TraceTree(ToyVM().run(SAMPLE_PROGRAM, CALL_DATA))
    faulty = TraceTree(FaultyVM(fault_step).run(SAMPLE_PROGRAM, CALL_DATA))
    return honest, faulty


@pytest_asyncio.fixture
async def game(duel_chain, addresses, trees):
    """A dispute between a faulty solver and an honest challenger."""
    honest, faulty = trees
    code_addr = duel_chain.deploy_code(SAMPLE_PROGRAM)

    solver_enforcer = duel_chain.enforcer.connect(addresses["solver"])
    await solver_enforcer.register(code_addr, CALL_DATA, faulty.root, len(faulty), b"", value=duel_chain.bond_amount)

    challenger_enforcer = duel_chain.enforcer.connect(addresses["challenger"])
    receipt = await challenger_enforcer.dispute(code_addr, CALL_DATA, honest.root, len(honest), value=duel_chain.bond_amount)

    return receipt.events[0].dispute_id


@pytest.mark.asyncio
async def test_respond_rejections(duel_chain, addresses, trees, game):
    honest, faulty = trees
    dispute_id = game
    as_solver = duel_chain.verifier.connect(addresses["solver"])
    as_challenger = duel_chain.verifier.connect(addresses["challenger"])

    # children not matching the current path
    with pytest.raises(LedgerRejected):
        await as_solver.respond(dispute_id, children(honest.root_node), ZERO_PATH)

    # not a party
    with pytest.raises(LedgerRejected):
        await duel_chain.verifier.connect(addresses["other"]).respond(dispute_id, children(faulty.root_node), ZERO_PATH)

    # unknown dispute
    with pytest.raises(LedgerRejected):
        await as_solver.respond(ZERO_HASH, children(faulty.root_node), ZERO_PATH)

    # proofs are not accepted during the bisection
    step_proof = construct_proof(honest.leaves[0], honest.leaves[1])
    with pytest.raises(LedgerRejected):
        await as_challenger.submit_proof(dispute_id, step_proof.proofs, step_proof.execution_input)

    await as_solver.respond(dispute_id, children(faulty.root_node), ZERO_PATH)

    # a party moves only once per round
    with pytest.raises(LedgerRejected):
        await as_solver.respond(dispute_id, children(faulty.root_node), ZERO_PATH)

    assert events_of_type(duel_chain, DisputeNewRound) == []


@pytest.mark.asyncio
async def test_bisection_finds_faulty_step(duel_chain, addresses, trees, fault_step, game, report):
    honest, faulty = trees
    dispute_id = game
    as_solver = duel_chain.verifier.connect(addresses["solver"])
    as_challenger = duel_chain.verifier.connect(addresses["challenger"])

    solver_node, challenger_node, witness_node = faulty.root_node, honest.root_node, None

    n_rounds = 0
    while (await as_solver.disputes(dispute_id)).state == DisputeState.OPEN:
        await as_solver.respond(dispute_id, children(solver_node), witness_children(witness_node))
        receipt = await as_challenger.respond(dispute_id, children(challenger_node), witness_children(witness_node))
        n_rounds += 1

        evt = receipt.events[0]
        assert isinstance(evt, DisputeNewRound)

        record = await as_solver.disputes(dispute_id)
        report.write("Bisection", format_round_markdown(f"Fault at {fault_step}, round {n_rounds}", {
            "solver_path": record.solver_path,
            "challenger_path": record.challenger_path,
            "witness": record.witness,
            "timeout": record.timeout,
        }))

        solver_node, challenger_node, witness_node = next_nodes(solver_node, challenger_node, witness_node)

        assert record.solver_path == evt.solver_path == solver_node.hash
        assert record.challenger_path == evt.challenger_path == challenger_node.hash
        assert record.witness == (ZERO_HASH if witness_node is None else witness_node.hash)

    assert n_rounds == honest.depth
    assert solver_node.is_leaf and challenger_node.is_leaf

    # the bisection ends on the first disputed state, right after the last agreed one
    assert challenger_node is honest.leaves[fault_step]
    assert solver_node is faulty.leaves[fault_step]
    assert witness_node is honest.leaves[fault_step - 1]
    assert (await as_solver.disputes(dispute_id)).state == DisputeState.READY_FOR_PROOF

    # the faulty party cannot prove the step into its state
    step_proof = construct_proof(faulty.leaves[fault_step - 1], solver_node)
    with pytest.raises(LedgerRejected):
        await as_solver.submit_proof(dispute_id, step_proof.proofs, step_proof.execution_input)

    # nor a valid step that starts from a state the parties do not agree on
    step_proof = construct_proof(faulty.leaves[fault_step], faulty.leaves[fault_step + 1])
    with pytest.raises(LedgerRejected):
        await as_solver.submit_proof(dispute_id, step_proof.proofs, step_proof.execution_input)

    step_proof = construct_proof(honest.leaves[fault_step - 1], challenger_node)
    receipt = await as_challenger.submit_proof(dispute_id, step_proof.proofs, step_proof.execution_input)

    slashed = receipt.events[0]
    assert isinstance(slashed, Slashed)
    assert slashed.address == addresses["solver"]
    assert await duel_chain.enforcer.bonds(addresses["solver"]) == 0
    assert await duel_chain.enforcer.bonds(addresses["challenger"]) == duel_chain.bond_amount
    assert (await as_solver.disputes(dispute_id)).state == DisputeState.RESOLVED


@pytest.mark.asyncio
async def test_witness_children_are_checked(duel_chain, addresses, trees, game):
    honest, faulty = trees
    dispute_id = game
    as_solver = duel_chain.verifier.connect(addresses["solver"])
    as_challenger = duel_chain.verifier.connect(addresses["challenger"])

    solver_node, challenger_node, witness_node = faulty.root_node, honest.root_node, None
    while witness_node is None:
        await as_solver.respond(dispute_id, children(solver_node), ZERO_PATH)
        await as_challenger.respond(dispute_id, children(challenger_node), ZERO_PATH)
        solver_node, challenger_node, witness_node = next_nodes(solver_node, challenger_node, witness_node)

    assert (await as_solver.disputes(dispute_id)).witness == witness_node.hash

    with pytest.raises(LedgerRejected):
        await as_solver.respond(dispute_id, children(solver_node), ZERO_PATH)
    with pytest.raises(LedgerRejected):
        await as_solver.respond(dispute_id, children(solver_node), children(honest.root_node))

    await as_solver.respond(dispute_id, children(solver_node), children(witness_node))


@pytest.mark.asyncio
async def test_initial_state_cannot_be_proven(duel_chain, addresses):
    states = ToyVM().run(SAMPLE_PROGRAM, CALL_DATA)
    honest = TraceTree(states)
    forged = TraceTree([replace(states[0], gas_remaining=states[0].gas_remaining + 1)] + states[1:])
    code_addr = duel_chain.deploy_code(SAMPLE_PROGRAM)

    await duel_chain.enforcer.connect(addresses["solver"]).register(
        code_addr, CALL_DATA, forged.root, len(forged), b"", value=duel_chain.bond_amount)
    receipt = await duel_chain.enforcer.connect(addresses["challenger"]).dispute(
        code_addr, CALL_DATA, honest.root, len(honest), value=duel_chain.bond_amount)
    dispute_id = receipt.events[0].dispute_id

    as_solver = duel_chain.verifier.connect(addresses["solver"])
    as_challenger = duel_chain.verifier.connect(addresses["challenger"])

    solver_node, challenger_node, witness_node = forged.root_node, honest.root_node, None
    while (await as_solver.disputes(dispute_id)).state == DisputeState.OPEN:
        await as_solver.respond(dispute_id, children(solver_node), ZERO_PATH)
        await as_challenger.respond(dispute_id, children(challenger_node), ZERO_PATH)
        solver_node, challenger_node, witness_node = next_nodes(solver_node, challenger_node, witness_node)

    assert challenger_node is honest.leaves[0]
    assert witness_node is None

    step_proof = construct_proof(honest.leaves[0], honest.leaves[1])
    with pytest.raises(LedgerRejected):
        await as_challenger.submit_proof(dispute_id, step_proof.proofs, step_proof.execution_input)

    # left to the timeout, which the solver wins
    mine_blocks(duel_chain, duel_chain.timeout_duration)
    receipt = await as_challenger.claim_timeout(dispute_id)
    assert receipt.events[0].address == addresses["challenger"]


@pytest.mark.asyncio
async def test_timeout_challenger_wins_if_solver_silent(duel_chain, addresses, trees, game):
    honest, _ = trees
    dispute_id = game
    as_challenger = duel_chain.verifier.connect(addresses["challenger"])

    await as_challenger.respond(dispute_id, children(honest.root_node), ZERO_PATH)

    # too early
    with pytest.raises(LedgerRejected):
        await as_challenger.claim_timeout(dispute_id)

    mine_blocks(duel_chain, duel_chain.timeout_duration)

    # too late to respond
    with pytest.raises(LedgerRejected):
        await duel_chain.verifier.connect(addresses["solver"]).respond(dispute_id, children(honest.root_node), ZERO_PATH)

    receipt = await as_challenger.claim_timeout(dispute_id)
    assert receipt.events[0].address == addresses["solver"]


@pytest.mark.asyncio
async def test_timeout_solver_wins_if_both_responded(duel_chain, addresses, trees, game):
    honest, faulty = trees
    dispute_id = game

    await duel_chain.verifier.connect(addresses["solver"]).respond(dispute_id, children(faulty.root_node), ZERO_PATH)
    await duel_chain.verifier.connect(addresses["challenger"]).respond(dispute_id, children(honest.root_node), ZERO_PATH)

    # a new round started, and nobody moved in it
    mine_blocks(duel_chain, duel_chain.timeout_duration)

    receipt = await duel_chain.verifier.connect(addresses["other"]).claim_timeout(dispute_id)
    assert receipt.events[0].address == addresses["challenger"]
