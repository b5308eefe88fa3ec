"""
Differentiable tensor wrapper.

ADTensor pairs an inner backend tensor with an optional graph Node. Every
operation below computes its forward value on the inner backend and, when
gradient mode is on and at least one operand is tracked, records a Node whose
op variant carries what the matching gradient rule in ``ad_backward`` needs.
Untracked operands give untracked results.
"""

from typing import Any, Optional, Sequence, Tuple
import numbers

from autodiff_ml.ad_graph import (
    ARENA, Node, is_grad_enabled,
    AddOp, SubOp, MulOp, DivOp, NegOp,
    AddScalarOp, MulScalarOp, DivScalarOp, PowfOp,
    ExpOp, LogOp, TanhOp, ReluOp,
    MatmulOp,
    ReshapeOp, SwapDimsOp, ExpandOp, SliceOp, SliceAssignOp, CatOp,
    SumOp, SumDimOp, MeanOp, MeanDimOp,
    MaskFillOp, CloneOp,
)
from autodiff_ml.backend import normalize_dim
from autodiff_ml.errors import BackendMismatchError


class ADTensor:
    """Inner backend tensor plus an optional Node (None = untracked)."""

    def __init__(self, value: Any, backend, node: Optional[Node] = None):
        self._value = value
        self.backend = backend
        self.node = node
        self.id = node.id if node is not None else ARENA.next_id()

    @classmethod
    def from_tensor(cls, value: Any, backend, requires_grad: bool = True) -> "ADTensor":
        """Wrap an inner tensor as a fresh leaf.

        The leaf is tracked when ``requires_grad`` is set and gradient mode is
        enabled in this thread; otherwise it is a plain passthrough.
        """
        if requires_grad and is_grad_enabled():
            node = ARENA.create((), None, backend.shape(value), backend.dtype)
            return cls(value, backend, node)
        return cls(value, backend)

    # ---- Properties ----
    @property
    def shape(self) -> Tuple[int, ...]:
        return self.backend.shape(self._value)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def dtype(self) -> str:
        return self.backend.dtype

    @property
    def device(self):
        return self.backend.device(self._value)

    @property
    def requires_grad(self) -> bool:
        return self.node is not None

    @property
    def is_leaf(self) -> bool:
        return self.node is None or self.node.is_leaf

    # ---- Interop ----
    def tensor(self) -> Any:
        """The inner backend tensor, without differentiability."""
        return self._value

    def numpy(self):
        return self.backend.to_data(self._value)

    def detach(self) -> "ADTensor":
        """Untracked tensor sharing this tensor's value."""
        return ADTensor(self._value, self.backend)

    def backward(self):
        """Run the backward pass from this tensor and return its Gradients."""
        from autodiff_ml.ad_backward import backward
        return backward(self)

    def grad(self, gradients) -> Optional[Any]:
        return gradients.wrt(self)

    # ---- Operators ----
    def __add__(self, other):
        if isinstance(other, ADTensor):
            return add(self, other)
        return add_scalar(self, other)

    def __radd__(self, other):
        return add_scalar(self, other)

    def __sub__(self, other):
        if isinstance(other, ADTensor):
            return sub(self, other)
        return sub_scalar(self, other)

    def __rsub__(self, other):
        return add_scalar(neg(self), other)

    def __mul__(self, other):
        if isinstance(other, ADTensor):
            return mul(self, other)
        return mul_scalar(self, other)

    def __rmul__(self, other):
        return mul_scalar(self, other)

    def __truediv__(self, other):
        if isinstance(other, ADTensor):
            return div(self, other)
        return div_scalar(self, other)

    def __rtruediv__(self, other):
        return mul_scalar(powf(self, -1.0), other)

    def __pow__(self, exponent):
        if isinstance(exponent, ADTensor):
            return NotImplemented
        return powf(self, exponent)

    def __neg__(self):
        return neg(self)

    def __matmul__(self, other):
        return matmul(self, other)

    # ---- Named Operations ----
    def exp(self):
        return exp(self)

    def log(self):
        return log(self)

    def tanh(self):
        return tanh(self)

    def relu(self):
        return relu(self)

    def matmul(self, other):
        return matmul(self, other)

    def reshape(self, *shape):
        new_shape = shape[0] if len(shape) == 1 and isinstance(shape[0], (tuple, list)) else shape
        return reshape(self, new_shape)

    def swap_dims(self, dim1, dim2):
        return swap_dims(self, dim1, dim2)

    def expand(self, *shape):
        new_shape = shape[0] if len(shape) == 1 and isinstance(shape[0], (tuple, list)) else shape
        return expand(self, new_shape)

    def sum(self, dim=None):
        return sum(self) if dim is None else sum_dim(self, dim)

    def mean(self, dim=None):
        return mean(self) if dim is None else mean_dim(self, dim)

    def __repr__(self):
        return (f"ADTensor(shape={self.shape}, dtype={self.dtype}, "
                f"requires_grad={self.requires_grad}, backend={self.backend.name()})")


# ============================================================================
# Recording helpers
# ============================================================================

def _backend_of(*tensors: ADTensor):
    """Common inner backend of the operands."""
    for t in tensors:
        if not isinstance(t, ADTensor):
            raise TypeError(f"Expected ADTensor, got {type(t).__name__}")
    backend = tensors[0].backend
    for t in tensors[1:]:
        other = t.backend
        if other is not backend and (type(other) is not type(backend) or other.dtype != backend.dtype):
            raise BackendMismatchError(
                f"Operands on different backends: {backend.name()}/{backend.dtype} "
                f"vs {other.name()}/{other.dtype}"
            )
    return backend


def _record(op, inputs: Sequence[ADTensor], value: Any, backend) -> ADTensor:
    """Wrap ``value``; publish a Node for ``op`` if any input is tracked."""
    if not is_grad_enabled() or all(t.node is None for t in inputs):
        return ADTensor(value, backend)
    node = ARENA.create(
        tuple(t.node for t in inputs),
        op,
        backend.shape(value),
        backend.dtype,
    )
    return ADTensor(value, backend, node)


def _scalar(value) -> float:
    if not isinstance(value, numbers.Real):
        raise TypeError(f"Expected a real scalar, got {type(value).__name__}")
    return float(value)


def _ranges(ranges) -> Tuple[Tuple[int, int], ...]:
    return tuple((int(start), int(end)) for start, end in ranges)


# ============================================================================
# Elementwise (broadcasting)
# ============================================================================

def add(lhs: ADTensor, rhs: ADTensor) -> ADTensor:
    """lhs + rhs. Backward: upstream summed back to each operand's shape."""
    backend = _backend_of(lhs, rhs)
    value = backend.add(lhs.tensor(), rhs.tensor())
    return _record(AddOp(lhs.shape, rhs.shape), (lhs, rhs), value, backend)


def sub(lhs: ADTensor, rhs: ADTensor) -> ADTensor:
    """lhs - rhs. Backward: upstream and -upstream, summed to shape."""
    backend = _backend_of(lhs, rhs)
    value = backend.sub(lhs.tensor(), rhs.tensor())
    return _record(SubOp(lhs.shape, rhs.shape), (lhs, rhs), value, backend)


def mul(lhs: ADTensor, rhs: ADTensor) -> ADTensor:
    """lhs * rhs. Backward: upstream * rhs and upstream * lhs."""
    backend = _backend_of(lhs, rhs)
    a, b = lhs.tensor(), rhs.tensor()
    value = backend.mul(a, b)
    return _record(MulOp(a, b, lhs.shape, rhs.shape), (lhs, rhs), value, backend)


def div(lhs: ADTensor, rhs: ADTensor) -> ADTensor:
    """lhs / rhs. Backward: upstream / rhs and -upstream * lhs / rhs^2."""
    backend = _backend_of(lhs, rhs)
    a, b = lhs.tensor(), rhs.tensor()
    value = backend.div(a, b)
    return _record(DivOp(a, b, lhs.shape, rhs.shape), (lhs, rhs), value, backend)


def neg(x: ADTensor) -> ADTensor:
    backend = _backend_of(x)
    return _record(NegOp(), (x,), backend.neg(x.tensor()), backend)


# ============================================================================
# Scalar operations
# ============================================================================

def add_scalar(x: ADTensor, scalar) -> ADTensor:
    backend = _backend_of(x)
    value = backend.add_scalar(x.tensor(), _scalar(scalar))
    return _record(AddScalarOp(), (x,), value, backend)


def sub_scalar(x: ADTensor, scalar) -> ADTensor:
    backend = _backend_of(x)
    value = backend.sub_scalar(x.tensor(), _scalar(scalar))
    return _record(AddScalarOp(), (x,), value, backend)


def mul_scalar(x: ADTensor, scalar) -> ADTensor:
    backend = _backend_of(x)
    scalar = _scalar(scalar)
    value = backend.mul_scalar(x.tensor(), scalar)
    return _record(MulScalarOp(scalar), (x,), value, backend)


def div_scalar(x: ADTensor, scalar) -> ADTensor:
    backend = _backend_of(x)
    scalar = _scalar(scalar)
    value = backend.div_scalar(x.tensor(), scalar)
    return _record(DivScalarOp(scalar), (x,), value, backend)


def powf(x: ADTensor, exponent) -> ADTensor:
    """x ** exponent. Backward: upstream * exponent * x ** (exponent - 1)."""
    backend = _backend_of(x)
    exponent = _scalar(exponent)
    value = backend.powf(x.tensor(), exponent)
    return _record(PowfOp(x.tensor(), exponent), (x,), value, backend)


# ============================================================================
# Unary functions
# ============================================================================

def exp(x: ADTensor) -> ADTensor:
    """exp(x). Backward reuses the forward output."""
    backend = _backend_of(x)
    value = backend.exp(x.tensor())
    return _record(ExpOp(value), (x,), value, backend)


def log(x: ADTensor) -> ADTensor:
    backend = _backend_of(x)
    value = backend.log(x.tensor())
    return _record(LogOp(x.tensor()), (x,), value, backend)


def tanh(x: ADTensor) -> ADTensor:
    """tanh(x). Backward: upstream * (1 - tanh(x)^2)."""
    backend = _backend_of(x)
    value = backend.tanh(x.tensor())
    return _record(TanhOp(value), (x,), value, backend)


def relu(x: ADTensor) -> ADTensor:
    """max(x, 0). Backward: upstream where x > 0, else 0."""
    backend = _backend_of(x)
    value = backend.relu(x.tensor())
    return _record(ReluOp(x.tensor()), (x,), value, backend)


def clone(x: ADTensor) -> ADTensor:
    """Copy with independent storage. Backward passes the gradient through."""
    backend = _backend_of(x)
    return _record(CloneOp(), (x,), backend.clone(x.tensor()), backend)


def mask_fill(x: ADTensor, mask: Any, value: float) -> ADTensor:
    """Replace elements where the inner bool ``mask`` is set; no gradient flows there."""
    backend = _backend_of(x)
    out = backend.mask_fill(x.tensor(), mask, _scalar(value))
    return _record(MaskFillOp(mask), (x,), out, backend)


# ============================================================================
# Matrix
# ============================================================================

def matmul(lhs: ADTensor, rhs: ADTensor) -> ADTensor:
    """Batched lhs @ rhs on the last two dims.

    Backward: upstream @ rhs^T and lhs^T @ upstream, summed over broadcast batch dims.
    """
    backend = _backend_of(lhs, rhs)
    a, b = lhs.tensor(), rhs.tensor()
    value = backend.matmul(a, b)
    return _record(MatmulOp(a, b, lhs.shape, rhs.shape), (lhs, rhs), value, backend)


# ============================================================================
# Shape manipulation
# ============================================================================

def reshape(x: ADTensor, shape) -> ADTensor:
    backend = _backend_of(x)
    value = backend.reshape(x.tensor(), tuple(shape))
    return _record(ReshapeOp(x.shape), (x,), value, backend)


def swap_dims(x: ADTensor, dim1: int, dim2: int) -> ADTensor:
    backend = _backend_of(x)
    dim1 = normalize_dim(dim1, x.ndim)
    dim2 = normalize_dim(dim2, x.ndim)
    value = backend.swap_dims(x.tensor(), dim1, dim2)
    return _record(SwapDimsOp(dim1, dim2), (x,), value, backend)


def expand(x: ADTensor, shape) -> ADTensor:
    """Broadcast to ``shape``. Backward sums back to the input shape."""
    backend = _backend_of(x)
    value = backend.expand(x.tensor(), tuple(shape))
    return _record(ExpandOp(x.shape), (x,), value, backend)


def slice(x: ADTensor, ranges) -> ADTensor:
    """Slice leading dims by ``[(start, end), ...]``."""
    backend = _backend_of(x)
    ranges = _ranges(ranges)
    value = backend.slice(x.tensor(), ranges)
    return _record(SliceOp(x.shape, ranges), (x,), value, backend)


def slice_assign(x: ADTensor, ranges, value: ADTensor) -> ADTensor:
    """Copy of ``x`` with the region ``ranges`` replaced by ``value``."""
    backend = _backend_of(x, value)
    ranges = _ranges(ranges)
    out = backend.slice_assign(x.tensor(), ranges, value.tensor())
    return _record(SliceAssignOp(ranges, value.shape), (x, value), out, backend)


def cat(tensors: Sequence[ADTensor], dim: int) -> ADTensor:
    """Concatenate along ``dim``. Backward slices the upstream gradient apart."""
    if not tensors:
        raise ValueError("cat: empty tensor list")
    backend = _backend_of(*tensors)
    dim = normalize_dim(dim, tensors[0].ndim)
    value = backend.cat([t.tensor() for t in tensors], dim)
    sizes = tuple(t.shape[dim] for t in tensors)
    return _record(CatOp(dim, sizes), tuple(tensors), value, backend)


# ============================================================================
# Reductions
# ============================================================================

def sum(x: ADTensor) -> ADTensor:
    """Sum of all elements, shape (1,)."""
    backend = _backend_of(x)
    return _record(SumOp(x.shape), (x,), backend.sum(x.tensor()), backend)


def sum_dim(x: ADTensor, dim: int) -> ADTensor:
    """Sum along ``dim``, keeping it with size 1."""
    backend = _backend_of(x)
    dim = normalize_dim(dim, x.ndim)
    return _record(SumDimOp(x.shape, dim), (x,), backend.sum_dim(x.tensor(), dim), backend)


def mean(x: ADTensor) -> ADTensor:
    backend = _backend_of(x)
    return _record(MeanOp(x.shape), (x,), backend.mean(x.tensor()), backend)


def mean_dim(x: ADTensor, dim: int) -> ADTensor:
    backend = _backend_of(x)
    dim = normalize_dim(dim, x.ndim)
    return _record(MeanDimOp(x.shape, dim), (x,), backend.mean_dim(x.tensor(), dim), backend)
