"""
Backward engine and Gradients.

backward(root) seeds a gradient of ones shaped like the root, walks the
reachable nodes in reverse topological order (descending TensorId), runs the
gradient rule registered for each node's op variant and adds every produced
input gradient into that parent's running sum. The sums are frozen into a
Gradients value only when the whole walk succeeded.
"""

from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple
import logging

from autodiff_ml.ad_graph import (
    ARENA, Node, NodeArena, TensorId, reverse_topological,
    AddOp, SubOp, MulOp, DivOp, NegOp,
    AddScalarOp, MulScalarOp, DivScalarOp, PowfOp,
    ExpOp, LogOp, TanhOp, ReluOp,
    MatmulOp,
    ReshapeOp, SwapDimsOp, ExpandOp, SliceOp, SliceAssignOp, CatOp,
    SumOp, SumDimOp, MeanOp, MeanDimOp,
    MaskFillOp, CloneOp,
)
from autodiff_ml.errors import AutodiffError, BackwardError, ShapeMismatchError

logger = logging.getLogger(__name__)

Grads = Tuple[Optional[Any], ...]


class Gradients:
    """Gradients of one backward call, keyed by TensorId. Read-only.

    ``wrt`` returns None for a tensor the backward pass never reached, and a
    (possibly all-zero) tensor for one it did. Every read is a fresh copy made
    by ``backend``, so callers may update it in place; entries can share
    storage internally.
    """

    def __init__(self, entries: Optional[Mapping[TensorId, Any]] = None, backend=None):
        entries = dict(entries or {})
        if entries and backend is None:
            raise ValueError("Gradients with entries need the backend that owns them")
        self._entries = MappingProxyType(entries)
        self._backend = backend

    def wrt(self, tensor) -> Optional[Any]:
        """Gradient for an ADTensor, or None if it was not reached."""
        return self.get(tensor.id)

    def get(self, tensor_id: TensorId) -> Optional[Any]:
        grad = self._entries.get(tensor_id)
        if grad is None:
            return None
        return self._backend.clone(grad)

    def ids(self) -> Tuple[TensorId, ...]:
        return tuple(self._entries)

    def __contains__(self, item) -> bool:
        key = item if isinstance(item, int) else getattr(item, "id", None)
        return key in self._entries

    def __iter__(self) -> Iterator[TensorId]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __repr__(self):
        return f"Gradients(n={len(self._entries)})"


# ============================================================================
# Broadcasting helper
# ============================================================================

def sum_to_shape(backend, grad, shape: Tuple[int, ...]):
    """Sum ``grad`` over the dimensions that broadcasting expanded to reach ``shape``."""
    shape = tuple(shape)
    grad_shape = backend.shape(grad)
    if grad_shape == shape:
        return grad

    # Leading dims added by broadcasting
    while len(grad_shape) > len(shape):
        grad = backend.sum_dim(grad, 0)
        grad_shape = backend.shape(grad)[1:]
        grad = backend.reshape(grad, grad_shape)

    if len(grad_shape) != len(shape):
        raise ShapeMismatchError(f"Cannot reduce gradient of shape {grad_shape} to {shape}")

    # Dims that were size 1 in the operand
    for axis, (g_dim, t_dim) in enumerate(zip(grad_shape, shape)):
        if t_dim == 1 and g_dim != 1:
            grad = backend.sum_dim(grad, axis)
        elif t_dim != g_dim:
            raise ShapeMismatchError(f"Cannot reduce gradient of shape {grad_shape} to {shape}")
    return grad


# ============================================================================
# Gradient rules
#
# Signature: rule(backend, op, grad, needs) -> tuple of input grads, one per
# operand; ``needs[i]`` is False for untracked operands, whose grad may be None.
# ============================================================================

def _add_backward(backend, op: AddOp, grad, needs) -> Grads:
    da = sum_to_shape(backend, grad, op.lhs_shape) if needs[0] else None
    db = sum_to_shape(backend, grad, op.rhs_shape) if needs[1] else None
    return da, db


def _sub_backward(backend, op: SubOp, grad, needs) -> Grads:
    da = sum_to_shape(backend, grad, op.lhs_shape) if needs[0] else None
    db = sum_to_shape(backend, backend.neg(grad), op.rhs_shape) if needs[1] else None
    return da, db


def _mul_backward(backend, op: MulOp, grad, needs) -> Grads:
    da = sum_to_shape(backend, backend.mul(grad, op.rhs), op.lhs_shape) if needs[0] else None
    db = sum_to_shape(backend, backend.mul(grad, op.lhs), op.rhs_shape) if needs[1] else None
    return da, db


def _div_backward(backend, op: DivOp, grad, needs) -> Grads:
    da = db = None
    if needs[0]:
        da = sum_to_shape(backend, backend.div(grad, op.rhs), op.lhs_shape)
    if needs[1]:
        # -grad * lhs / rhs^2
        num = backend.mul(grad, op.lhs)
        db = backend.neg(backend.div(num, backend.mul(op.rhs, op.rhs)))
        db = sum_to_shape(backend, db, op.rhs_shape)
    return da, db


def _neg_backward(backend, op: NegOp, grad, needs) -> Grads:
    return (backend.neg(grad),)


def _add_scalar_backward(backend, op: AddScalarOp, grad, needs) -> Grads:
    return (grad,)


def _clone_backward(backend, op: CloneOp, grad, needs) -> Grads:
    return (grad,)


def _mul_scalar_backward(backend, op: MulScalarOp, grad, needs) -> Grads:
    return (backend.mul_scalar(grad, op.scalar),)


def _div_scalar_backward(backend, op: DivScalarOp, grad, needs) -> Grads:
    return (backend.div_scalar(grad, op.scalar),)


def _powf_backward(backend, op: PowfOp, grad, needs) -> Grads:
    if op.exponent == 0.0:
        # x ** 0 is constant; 0 * x ** -1 would be NaN at x = 0
        return (backend.mul_scalar(grad, 0.0),)
    local = backend.mul_scalar(backend.powf(op.input, op.exponent - 1.0), op.exponent)
    return (backend.mul(grad, local),)


def _exp_backward(backend, op: ExpOp, grad, needs) -> Grads:
    return (backend.mul(grad, op.output),)


def _log_backward(backend, op: LogOp, grad, needs) -> Grads:
    return (backend.div(grad, op.input),)


def _tanh_backward(backend, op: TanhOp, grad, needs) -> Grads:
    # 1 - tanh(x)^2
    local = backend.add_scalar(backend.neg(backend.mul(op.output, op.output)), 1.0)
    return (backend.mul(grad, local),)


def _relu_backward(backend, op: ReluOp, grad, needs) -> Grads:
    return (backend.mask_fill(grad, backend.lower_equal_elem(op.input, 0.0), 0.0),)


def _mask_fill_backward(backend, op: MaskFillOp, grad, needs) -> Grads:
    return (backend.mask_fill(grad, op.mask, 0.0),)


def _matmul_backward(backend, op: MatmulOp, grad, needs) -> Grads:
    da = db = None
    if needs[0]:
        rhs_t = backend.swap_dims(op.rhs, -1, -2)
        da = sum_to_shape(backend, backend.matmul(grad, rhs_t), op.lhs_shape)
    if needs[1]:
        lhs_t = backend.swap_dims(op.lhs, -1, -2)
        db = sum_to_shape(backend, backend.matmul(lhs_t, grad), op.rhs_shape)
    return da, db


def _reshape_backward(backend, op: ReshapeOp, grad, needs) -> Grads:
    return (backend.reshape(grad, op.input_shape),)


def _swap_dims_backward(backend, op: SwapDimsOp, grad, needs) -> Grads:
    return (backend.swap_dims(grad, op.dim1, op.dim2),)


def _expand_backward(backend, op: ExpandOp, grad, needs) -> Grads:
    return (sum_to_shape(backend, grad, op.input_shape),)


def _slice_backward(backend, op: SliceOp, grad, needs) -> Grads:
    zeros = backend.zeros(op.input_shape, backend.device(grad))
    return (backend.slice_assign(zeros, op.ranges, grad),)


def _slice_assign_backward(backend, op: SliceAssignOp, grad, needs) -> Grads:
    dx = dv = None
    if needs[0]:
        hole = backend.zeros(op.value_shape, backend.device(grad))
        dx = backend.slice_assign(grad, op.ranges, hole)
    if needs[1]:
        dv = backend.slice(grad, op.ranges)
    return dx, dv


def _cat_backward(backend, op: CatOp, grad, needs) -> Grads:
    shape = backend.shape(grad)
    grads = []
    start = 0
    for size, need in zip(op.sizes, needs):
        if need:
            ranges = [(0, d) for d in shape[:op.dim]] + [(start, start + size)]
            grads.append(backend.slice(grad, ranges))
        else:
            grads.append(None)
        start += size
    return tuple(grads)


def _sum_backward(backend, op: SumOp, grad, needs) -> Grads:
    ones_shape = (1,) * len(op.input_shape)
    return (backend.expand(backend.reshape(grad, ones_shape), op.input_shape),)


def _sum_dim_backward(backend, op: SumDimOp, grad, needs) -> Grads:
    return (backend.expand(grad, op.input_shape),)


def _mean_backward(backend, op: MeanOp, grad, needs) -> Grads:
    numel = 1
    for d in op.input_shape:
        numel *= d
    ones_shape = (1,) * len(op.input_shape)
    expanded = backend.expand(backend.reshape(grad, ones_shape), op.input_shape)
    return (backend.div_scalar(expanded, float(numel)),)


def _mean_dim_backward(backend, op: MeanDimOp, grad, needs) -> Grads:
    expanded = backend.expand(grad, op.input_shape)
    return (backend.div_scalar(expanded, float(op.input_shape[op.dim])),)


_RULES: Dict[type, Callable[..., Grads]] = {
    AddOp: _add_backward,
    SubOp: _sub_backward,
    MulOp: _mul_backward,
    DivOp: _div_backward,
    NegOp: _neg_backward,
    AddScalarOp: _add_scalar_backward,
    CloneOp: _clone_backward,
    MulScalarOp: _mul_scalar_backward,
    DivScalarOp: _div_scalar_backward,
    PowfOp: _powf_backward,
    ExpOp: _exp_backward,
    LogOp: _log_backward,
    TanhOp: _tanh_backward,
    ReluOp: _relu_backward,
    MaskFillOp: _mask_fill_backward,
    MatmulOp: _matmul_backward,
    ReshapeOp: _reshape_backward,
    SwapDimsOp: _swap_dims_backward,
    ExpandOp: _expand_backward,
    SliceOp: _slice_backward,
    SliceAssignOp: _slice_assign_backward,
    CatOp: _cat_backward,
    SumOp: _sum_backward,
    SumDimOp: _sum_dim_backward,
    MeanOp: _mean_backward,
    MeanDimOp: _mean_dim_backward,
}


def local_backward(backend, node: Node, grad) -> Grads:
    """Apply the gradient rule of ``node``'s op to ``grad``."""
    rule = _RULES.get(type(node.op))
    if rule is None:
        raise BackwardError(f"No gradient rule for {node.op_name}")
    needs = tuple(pid is not None for pid in node.parents)
    grads = rule(backend, node.op, grad, needs)
    if len(grads) != len(node.parents):
        raise BackwardError(
            f"{node.op_name} returned {len(grads)} gradients for {len(node.parents)} operands"
        )
    return grads


# ============================================================================
# Backward pass
# ============================================================================

def backward(root, arena: NodeArena = ARENA) -> Gradients:
    """
    Reverse-mode autodiff from ``root``.

    Args:
        root: ADTensor to differentiate. An untracked tensor gives empty Gradients.
        arena: node arena the graph was recorded in.

    Returns:
        Gradients for every tracked tensor reached from ``root`` (root included).

    Raises:
        ShapeMismatchError: a rule produced a gradient of the wrong shape.
        BackwardError: a rule failed; no partial result is returned.
    """
    if root.node is None:
        logger.debug("backward on untracked tensor %d: no gradients", root.id)
        return Gradients()

    backend = root.backend
    order = reverse_topological(root.node.id, arena)
    shapes = {node.id: node.shape for node in order}
    logger.debug("backward from tensor %d over %d nodes", root.id, len(order))

    accum: Dict[TensorId, Any] = {
        root.node.id: backend.ones(root.shape, backend.device(root.tensor())),
    }

    for node in order:
        grad = accum.get(node.id)
        if grad is None or node.is_leaf:
            continue

        try:
            input_grads = local_backward(backend, node, grad)
        except AutodiffError:
            logger.error("backward failed at node %d (%s)", node.id, node.op_name)
            raise
        except Exception as exc:
            logger.error("backward failed at node %d (%s): %s", node.id, node.op_name, exc)
            raise BackwardError(f"Gradient rule for {node.op_name} (node {node.id}) failed") from exc

        for parent_id, input_grad in zip(node.parents, input_grads):
            if parent_id is None or input_grad is None:
                continue
            got = backend.shape(input_grad)
            if got != shapes[parent_id]:
                logger.error("backward: %s gave shape %s for node %d, expected %s",
                             node.op_name, got, parent_id, shapes[parent_id])
                raise ShapeMismatchError(
                    f"{node.op_name} (node {node.id}) produced gradient of shape {got} "
                    f"for node {parent_id} of shape {shapes[parent_id]}"
                )
            previous = accum.get(parent_id)
            accum[parent_id] = input_grad if previous is None else backend.add(previous, input_grad)

    logger.debug("backward from tensor %d produced %d gradients", root.id, len(accum))
    return Gradients(accum, backend)


def grads_for(gradients: Gradients, tensors: Sequence[Any]) -> Tuple[Optional[Any], ...]:
    """Gradients of several tensors at once (None where absent)."""
    return tuple(gradients.wrt(t) for t in tensors)
