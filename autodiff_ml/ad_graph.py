"""
Computation graph for reverse-mode autodiff.

Core pieces:
  - TensorId: process-unique, strictly increasing int given to every ADTensor
  - Op variants: one frozen dataclass per differentiable operation, holding
    exactly what its gradient rule needs
  - Node: immutable record (id, parents, op, shape, dtype) of one operation
  - NodeArena: TensorId -> Node, append-only, parents linked by id
  - reverse_topological: root-first ordering of the reachable nodes

Parents are always created before their children, so parent ids are smaller
than the child id and the graph is acyclic by construction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
import itertools
import threading
import weakref

TensorId = int
Shape = Tuple[int, ...]
Ranges = Tuple[Tuple[int, int], ...]


# ============================================================================
# Gradient mode
# ============================================================================

_mode = threading.local()


def is_grad_enabled() -> bool:
    """Whether operations on tracked tensors are recorded in this thread."""
    return getattr(_mode, "enabled", True)


def _set_grad_enabled(flag: bool) -> None:
    _mode.enabled = flag


class no_grad:
    """Context manager that stops graph recording in the current thread.

    Tensors created inside are untracked leaves; nesting is allowed.
    """

    def __enter__(self):
        self._prev = is_grad_enabled()
        _set_grad_enabled(False)
        return self

    def __exit__(self, exc_type, exc, tb):
        _set_grad_enabled(self._prev)


class enable_grad:
    """Context manager that turns graph recording back on."""

    def __enter__(self):
        self._prev = is_grad_enabled()
        _set_grad_enabled(True)
        return self

    def __exit__(self, exc_type, exc, tb):
        _set_grad_enabled(self._prev)


# ============================================================================
# Op variants
# ============================================================================

@dataclass(frozen=True)
class AddOp:
    lhs_shape: Shape
    rhs_shape: Shape


@dataclass(frozen=True)
class SubOp:
    lhs_shape: Shape
    rhs_shape: Shape


@dataclass(frozen=True, eq=False)
class MulOp:
    lhs: Any
    rhs: Any
    lhs_shape: Shape
    rhs_shape: Shape


@dataclass(frozen=True, eq=False)
class DivOp:
    lhs: Any
    rhs: Any
    lhs_shape: Shape
    rhs_shape: Shape


@dataclass(frozen=True)
class NegOp:
    pass


@dataclass(frozen=True)
class AddScalarOp:
    pass


@dataclass(frozen=True)
class CloneOp:
    pass


@dataclass(frozen=True)
class MulScalarOp:
    scalar: float


@dataclass(frozen=True)
class DivScalarOp:
    scalar: float


@dataclass(frozen=True, eq=False)
class PowfOp:
    input: Any
    exponent: float


@dataclass(frozen=True, eq=False)
class ExpOp:
    output: Any


@dataclass(frozen=True, eq=False)
class LogOp:
    input: Any


@dataclass(frozen=True, eq=False)
class TanhOp:
    output: Any


@dataclass(frozen=True, eq=False)
class ReluOp:
    input: Any


@dataclass(frozen=True, eq=False)
class MatmulOp:
    lhs: Any
    rhs: Any
    lhs_shape: Shape
    rhs_shape: Shape


@dataclass(frozen=True)
class ReshapeOp:
    input_shape: Shape


@dataclass(frozen=True)
class SwapDimsOp:
    dim1: int
    dim2: int


@dataclass(frozen=True)
class ExpandOp:
    input_shape: Shape


@dataclass(frozen=True)
class SliceOp:
    input_shape: Shape
    ranges: Ranges


@dataclass(frozen=True)
class SliceAssignOp:
    ranges: Ranges
    value_shape: Shape


@dataclass(frozen=True)
class CatOp:
    dim: int
    sizes: Tuple[int, ...]


@dataclass(frozen=True)
class SumOp:
    input_shape: Shape


@dataclass(frozen=True)
class SumDimOp:
    input_shape: Shape
    dim: int


@dataclass(frozen=True)
class MeanOp:
    input_shape: Shape


@dataclass(frozen=True)
class MeanDimOp:
    input_shape: Shape
    dim: int


@dataclass(frozen=True, eq=False)
class MaskFillOp:
    mask: Any


Op = Union[
    AddOp, SubOp, MulOp, DivOp, NegOp,
    AddScalarOp, MulScalarOp, DivScalarOp, PowfOp,
    ExpOp, LogOp, TanhOp, ReluOp,
    MatmulOp,
    ReshapeOp, SwapDimsOp, ExpandOp, SliceOp, SliceAssignOp, CatOp,
    SumOp, SumDimOp, MeanOp, MeanDimOp,
    MaskFillOp, CloneOp,
]


# ============================================================================
# Node & arena
# ============================================================================

@dataclass(frozen=True, eq=False)
class Node:
    """One recorded operation, or a leaf when ``op`` is None.

    ``parents`` is aligned with the operation's operands: the operand's
    TensorId, or None for an operand that is not tracked.
    """

    id: TensorId
    parents: Tuple[Optional[TensorId], ...]
    op: Optional[Op]
    shape: Shape
    dtype: str
    # Parent nodes, held strongly so ancestors stay in the arena while this node lives.
    _keepalive: Tuple["Node", ...] = field(default=(), repr=False)

    @property
    def is_leaf(self) -> bool:
        return self.op is None

    @property
    def op_name(self) -> str:
        return "leaf" if self.op is None else type(self.op).__name__


class NodeArena:
    """Append-only map from TensorId to Node.

    Ids come from one counter so they are unique and increasing across
    threads. Nodes are held weakly: a graph lives as long as some tensor
    (or descendant node) references it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._nodes: "weakref.WeakValueDictionary[TensorId, Node]" = weakref.WeakValueDictionary()

    def next_id(self) -> TensorId:
        with self._lock:
            return next(self._counter)

    def create(self, parents: Tuple[Optional["Node"], ...], op: Optional[Any],
               shape: Shape, dtype: str, node_id: Optional[TensorId] = None) -> Node:
        """Publish a new node; ``parents`` are the operand nodes (None if untracked)."""
        with self._lock:
            if node_id is None:
                node_id = next(self._counter)
            elif node_id in self._nodes:
                raise ValueError(f"Node {node_id} already exists")
            parent_ids = tuple(p.id if p is not None else None for p in parents)
            for pid in parent_ids:
                if pid is not None and pid >= node_id:
                    raise ValueError(f"Parent {pid} is not older than node {node_id}")
            node = Node(
                id=node_id,
                parents=parent_ids,
                op=op,
                shape=tuple(shape),
                dtype=dtype,
                _keepalive=tuple(p for p in parents if p is not None),
            )
            self._nodes[node_id] = node
            return node

    def get(self, node_id: TensorId) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(node_id)

    def __contains__(self, node_id: TensorId) -> bool:
        with self._lock:
            return node_id in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)


ARENA = NodeArena()


# ============================================================================
# Traversal
# ============================================================================

def reachable(root_id: TensorId, arena: NodeArena = ARENA) -> Dict[TensorId, Node]:
    """Nodes reachable from ``root_id`` through parent links (iterative DFS)."""
    found: Dict[TensorId, Node] = {}
    stack: List[TensorId] = [root_id]
    while stack:
        node_id = stack.pop()
        if node_id in found:
            continue
        node = arena.get(node_id)
        if node is None:
            raise KeyError(f"Node {node_id} is not in the arena")
        found[node_id] = node
        for pid in node.parents:
            if pid is not None and pid not in found:
                stack.append(pid)
    return found


def reverse_topological(root_id: TensorId, arena: NodeArena = ARENA) -> List[Node]:
    """Reachable nodes, root first, each after every node that depends on it.

    Parents always have smaller ids than their children, so sorting by id
    descending is a valid reverse topological order and is deterministic.
    """
    nodes = reachable(root_id, arena)
    return [nodes[i] for i in sorted(nodes, reverse=True)]


def iter_leaves(root_id: TensorId, arena: NodeArena = ARENA) -> Iterator[Node]:
    """Leaf nodes reachable from ``root_id``, oldest first."""
    nodes = reachable(root_id, arena)
    for node_id in sorted(nodes):
        if nodes[node_id].is_leaf:
            yield nodes[node_id]
