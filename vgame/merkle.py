from typing import Dict, Iterable, List, Optional, Union

from .errors import InvalidResize, SelfCheckFailed
from .state import EMPTY_STATE, ExecutionState, StateDigest, Trace
from .utils import keccak, short_hex


def floor_lg(n: int) -> int:
    """Return floor(log_2(n)) for a positive integer `n`"""

    assert n > 0

    r = 0
    t = 1
    while 2 * t <= n:
        t = 2 * t
        r = r + 1
    return r


def ceil_lg(n: int) -> int:
    """Return ceiling(log_2(n)) for a positive integer `n`."""

    assert n > 0

    r = 0
    t = 1
    while t < n:
        t = 2 * t
        r = r + 1
    return r


def is_power_of_2(n: int) -> bool:
    """For a positive integer `n`, returns `True` is `n` is a perfect power of 2, `False` otherwise."""

    assert n >= 1

    return n & (n - 1) == 0


def next_power_of_2(n: int) -> int:
    """Returns the smallest power of 2 that is at least `n`, for a positive integer `n`."""

    return 1 << ceil_lg(n)


def combine_hashes(left: bytes, right: bytes) -> bytes:
    if len(left) != 32 or len(right) != 32:
        raise ValueError("The elements must be 32-bytes keccak256 outputs.")

    return keccak(left + right)


def get_directions(size: int, index: int) -> List[int]:
    """
    Returns a list of directions (0 for left, 1 for right) of the tree edges in the path from the root to the
    leaf with the given index, in a complete Merkle tree with `size` leaves (a power of 2).
    """

    assert size > 0 and is_power_of_2(size)
    assert 0 <= index < size

    directions = []
    mask = size >> 1
    while mask > 0:
        directions.append(1 if index & mask != 0 else 0)
        mask >>= 1
    return directions


class ResultProof:
    """
    Proof that the last state of a trace is committed in a given root, in a form that allows to verify the
    final output without knowing the whole trace.

    Attributes:
        hashes (list[bytes]): The sibling hashes (h_1, ..., h_n) in the path from the root to the last leaf.
        directions (list[int]): The directions (d_1, ..., d_n) of the same path; 0 (left) or 1 (right).
        digest (StateDigest): All the committed fields of the final state, except its output.
        final_output (bytes): The return data of the final state.
    """

    def __init__(self, hashes: list[bytes], directions: list[int], digest: StateDigest, final_output: bytes):
        if not all(isinstance(h, bytes) and len(h) == 32 for h in hashes):
            raise ValueError("All hashes must be bytes of length 32.")
        if not all(isinstance(d, int) and d in [0, 1] for d in directions):
            raise ValueError("All directions must be either 0 or 1.")
        if len(hashes) != len(directions):
            raise ValueError("There must be exactly one direction per hash.")
        if not isinstance(final_output, bytes):
            raise ValueError("final_output must be of type bytes.")

        self.hashes = hashes
        self.directions = directions
        self.digest = digest
        self.final_output = final_output

    def compute_root(self, output: bytes) -> bytes:
        """Recomputes the root from the path, assuming that the final state's output is `output`."""
        h = self.digest.hash_with(output)
        for sibling, direction in reversed(list(zip(self.hashes, self.directions))):
            h = combine_hashes(sibling, h) if direction == 1 else combine_hashes(h, sibling)
        return h

    def __repr__(self) -> str:
        return f"ResultProof(hashes={self.hashes}, directions={self.directions}, digest={self.digest}, final_output={self.final_output})"

    def __str__(self) -> str:
        return f"ResultProof(hashes=[{', '.join(map(lambda t: t.hex(), self.hashes))}], directions={self.directions}, final_output={self.final_output.hex()})"


# the root is the only node with parent == None
# leaves have left == right == None, and wrap exactly one state
class TreeNode:
    def __init__(self, left: Optional['TreeNode'], right: Optional['TreeNode'], parent: Optional['TreeNode'], value: Optional[bytes], state: Optional[ExecutionState] = None):
        self.left = left
        self.right = right
        self.parent = parent
        self.value = value
        self.state = state

    @staticmethod
    def leaf(state: ExecutionState) -> 'TreeNode':
        return TreeNode(None, None, None, state.hash, state)

    @property
    def hash(self) -> bytes:
        return self.value

    @property
    def is_leaf(self) -> bool:
        return self.left is None and self.right is None

    @property
    def height(self) -> int:
        """Number of levels below this node; 0 for a leaf."""
        node, h = self, 0
        while not node.is_leaf:
            node, h = node.left, h + 1
        return h

    def preceding_leaf(self) -> Optional['TreeNode']:
        """The leaf right before the first leaf under this node, or None if this node starts at the first leaf."""
        node = self
        while node.parent is not None and node.parent.left is node:
            node = node.parent
        if node.parent is None:
            return None

        node = node.parent.left
        while not node.is_leaf:
            node = node.right
        return node

    def recompute_value(self) -> None:
        assert self.left is not None
        assert self.right is not None
        self.value = combine_hashes(self.left.value, self.right.value)

    def sibling(self) -> 'TreeNode':
        if self.parent is None:
            raise IndexError("The root does not have a sibling.")

        if self.parent.left is self:
            return self.parent.right
        elif self.parent.right is self:
            return self.parent.left
        else:
            raise IndexError("Invalid state: not a child of his parent.")

    def __repr__(self):
        if self.is_leaf:
            return f"TreeNode(leaf, hash={short_hex(self.value)})"
        return f"TreeNode(hash={short_hex(self.value)}, left={short_hex(self.left.value)}, right={short_hex(self.right.value)})"


def make_parent(left: TreeNode, right: TreeNode) -> TreeNode:
    node = TreeNode(left, right, None, None)
    node.recompute_value()
    left.parent = right.parent = node
    return node


class TraceTree:
    """
    Maintains a trace and the complete Merkle tree built on top of it. The leaves are the hashes of the states of
    the trace, in order, followed by the hash of EMPTY_STATE repeated as many times as necessary to make the number
    of leaves a power of 2.
    The value of each internal node is the hash of the concatenation of:
    - the value of the left child;
    - the value of the right child.

    Nodes are indexed by their hash, since the bisection protocol only ever exchanges hashes.
    The trace can be truncated (but not extended): the hashes of all the nodes above the cut are recomputed.
    """

    def __init__(self, trace: Union[Trace, Iterable[ExecutionState]]):
        self.trace = trace if isinstance(trace, Trace) else Trace(trace)
        if len(self.trace) == 0:
            raise ValueError("Cannot build a tree for an empty trace")

        n_states = len(self.trace)
        leaves = [TreeNode.leaf(s) for s in self.trace]
        leaves += [TreeNode.leaf(EMPTY_STATE) for _ in range(n_states, next_power_of_2(n_states))]

        self.levels: List[List[TreeNode]] = [leaves]
        while len(self.levels[-1]) > 1:
            below = self.levels[-1]
            self.levels.append([make_parent(below[2 * i], below[2 * i + 1]) for i in range(len(below) // 2)])

        self._reindex()

    def _reindex(self):
        self._nodes: Dict[bytes, TreeNode] = {}
        # top-down, so that a hash shared by several nodes resolves to the first one met
        for level in reversed(self.levels):
            for node in level:
                self._nodes.setdefault(node.value, node)

    def __len__(self) -> int:
        """Return the number of states in the trace (padding excluded)."""
        return len(self.trace)

    @property
    def depth(self) -> int:
        return ceil_lg(len(self.trace))

    @property
    def width(self) -> int:
        """The number of leaves, padding included."""
        return len(self.levels[0])

    @property
    def root_node(self) -> TreeNode:
        return self.levels[-1][0]

    @property
    def root(self) -> bytes:
        return self.root_node.value

    @property
    def leaves(self) -> List[TreeNode]:
        return self.levels[0]

    def lookup_by_hash(self, h: bytes) -> Optional[TreeNode]:
        """Returns a node of the tree with hash `h`, or None if there is none."""
        return self._nodes.get(h)

    def lookup_pair(self, left_hash: bytes, right_hash: bytes) -> Optional[TreeNode]:
        """Returns the node whose children have exactly the given hashes, or None if there is none."""
        if len(left_hash) != 32 or len(right_hash) != 32:
            return None
        node = self._nodes.get(combine_hashes(left_hash, right_hash))
        if node is None or node.is_leaf:
            return None
        if node.left.value != left_hash or node.right.value != right_hash:
            return None
        return node

    def truncate(self, new_len: int) -> None:
        """
        Discards the states after position `new_len`, and recomputes the tree accordingly.
        Only the nodes whose subtree contains a changed leaf are recomputed; the others are kept.

        Cost: O(n) in the worst case, because of the reindexing.
        """

        if not (1 <= new_len <= len(self.trace)):
            raise InvalidResize(f"Cannot resize a trace of length {len(self.trace)} to {new_len}")

        if new_len == len(self.trace):
            return

        self.trace.truncate(new_len)

        width = next_power_of_2(new_len)
        leaves = self.levels[0][:width]
        for i in range(new_len, width):
            leaves[i] = TreeNode.leaf(EMPTY_STATE)

        levels = [leaves]
        dirty = new_len  # index of the first node whose subtree changed, at the current level
        while len(levels[-1]) > 1:
            below = levels[-1]
            old_level = self.levels[len(levels)]
            dirty //= 2
            level = []
            for i in range(len(below) // 2):
                if i < dirty:
                    level.append(old_level[i])
                else:
                    level.append(make_parent(below[2 * i], below[2 * i + 1]))
            levels.append(level)

        levels[-1][0].parent = None
        self.levels = levels
        self._reindex()

    def result_proof(self) -> ResultProof:
        """Produces the proof for the final output of the trace, that is, the path from the last real leaf to the root."""
        index = len(self.trace) - 1
        node = self.levels[0][index]
        final_state = node.state
        proof = []
        while node.parent is not None:
            proof.append(node.sibling().value)
            node = node.parent

        return ResultProof(list(reversed(proof)), get_directions(self.width, index), final_state.digest(), final_state.output)

    @staticmethod
    def verify_result_proof(proof: ResultProof, output: bytes, root: bytes) -> bool:
        return proof.compute_root(output) == root

    def checked_result_proof(self) -> ResultProof:
        """Like `result_proof`, but verifies the proof against the root before returning it."""
        proof = self.result_proof()
        if not self.verify_result_proof(proof, proof.final_output, self.root):
            raise SelfCheckFailed("Computed result proof is invalid. Please file a bug report.")
        return proof

    def __repr__(self):
        return f"TraceTree(len={len(self)}, depth={self.depth}, root={self.root.hex()})"
