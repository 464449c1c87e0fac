from .coordinator import Coordinator, Solution
from .errors import Desynchronized, InvalidResize, LedgerRejected, NotALeafPair, SelfCheckFailed, VGameError
from .ledger import Enforcer, Runtime, TaskParams, Verifier
from .merkle import ResultProof, TraceTree, TreeNode
from .proof import ExecutionInput, ProofHashes, StepOutput, StepProof, construct_proof, construct_step_proof
from .session import DisputeSession, SessionStatus
from .state import EMPTY_STATE, ExecutionState, Trace
from .utils import ZERO_HASH
