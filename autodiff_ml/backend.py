"""
Backend capability contract and backend registry.

A backend is an object whose methods create and transform its own tensor
primitives. The autodiff layer only relies on the operations listed in
``CAPABILITY_OPS``; ``ADBackend`` wraps any backend that implements all of them.

Shapes are tuples of ints with rank >= 1. Full reductions return shape (1,),
``*_dim`` reductions keep the reduced dimension with size 1.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from autodiff_ml.config import get_settings
from autodiff_ml.distribution import Distribution
from autodiff_ml.errors import BackendError, ShapeMismatchError

logger = logging.getLogger(__name__)

Shape = Tuple[int, ...]
Ranges = Sequence[Tuple[int, int]]


@dataclass(frozen=True)
class Device:
    kind: str = "cpu"
    index: int = 0

    def __str__(self):
        if self.kind == "cpu":
            return "cpu"
        return f"{self.kind}:{self.index}"


CPU = Device("cpu", 0)


# Every operation a backend must implement for the autodiff layer to wrap it.
CAPABILITY_OPS = (
    # creation
    "from_data", "from_data_bool", "random", "zeros", "ones",
    # data / metadata
    "to_data", "bool_to_data", "shape", "device", "to_device", "clone",
    # elementwise
    "add", "sub", "mul", "div", "neg",
    "add_scalar", "sub_scalar", "mul_scalar", "div_scalar", "powf",
    "exp", "log", "tanh", "relu",
    # comparison / masking
    "equal", "greater_elem", "lower_equal_elem", "mask_fill",
    # matrix
    "matmul",
    # shape
    "reshape", "swap_dims", "expand", "slice", "slice_assign", "cat",
    # reductions
    "sum", "sum_dim", "mean", "mean_dim",
    # identity
    "name", "default_device", "full_precision",
)


class Backend:
    """Base class for numeric backends. Every capability raises until overridden."""

    dtype = "float32"

    # ---- identity ----
    def name(self) -> str:
        raise NotImplementedError

    def default_device(self) -> Device:
        raise NotImplementedError

    def ad_enabled(self) -> bool:
        return False

    def full_precision(self) -> "Backend":
        raise NotImplementedError

    # ---- creation ----
    def from_data(self, data: Any, device: Optional[Device] = None) -> Any:
        raise NotImplementedError

    def from_data_bool(self, data: Any, device: Optional[Device] = None) -> Any:
        raise NotImplementedError

    def random(self, shape: Shape, distribution: Distribution,
               device: Optional[Device] = None) -> Any:
        raise NotImplementedError

    def zeros(self, shape: Shape, device: Optional[Device] = None) -> Any:
        raise NotImplementedError

    def ones(self, shape: Shape, device: Optional[Device] = None) -> Any:
        raise NotImplementedError

    # ---- data / metadata ----
    def to_data(self, tensor: Any) -> np.ndarray:
        raise NotImplementedError

    def bool_to_data(self, tensor: Any) -> np.ndarray:
        raise NotImplementedError

    def shape(self, tensor: Any) -> Shape:
        raise NotImplementedError

    def device(self, tensor: Any) -> Device:
        raise NotImplementedError

    def to_device(self, tensor: Any, device: Device) -> Any:
        raise NotImplementedError

    def clone(self, tensor: Any) -> Any:
        """Independent copy of ``tensor``."""
        raise NotImplementedError

    # ---- elementwise ----
    def add(self, lhs, rhs):
        raise NotImplementedError

    def sub(self, lhs, rhs):
        raise NotImplementedError

    def mul(self, lhs, rhs):
        raise NotImplementedError

    def div(self, lhs, rhs):
        raise NotImplementedError

    def neg(self, tensor):
        raise NotImplementedError

    def add_scalar(self, tensor, scalar: float):
        raise NotImplementedError

    def sub_scalar(self, tensor, scalar: float):
        raise NotImplementedError

    def mul_scalar(self, tensor, scalar: float):
        raise NotImplementedError

    def div_scalar(self, tensor, scalar: float):
        raise NotImplementedError

    def powf(self, tensor, exponent: float):
        raise NotImplementedError

    def exp(self, tensor):
        raise NotImplementedError

    def log(self, tensor):
        raise NotImplementedError

    def tanh(self, tensor):
        raise NotImplementedError

    def relu(self, tensor):
        raise NotImplementedError

    # ---- comparison / masking (bool results) ----
    def equal(self, lhs, rhs):
        raise NotImplementedError

    def greater_elem(self, tensor, scalar: float):
        raise NotImplementedError

    def lower_equal_elem(self, tensor, scalar: float):
        raise NotImplementedError

    def mask_fill(self, tensor, mask, value: float):
        raise NotImplementedError

    # ---- matrix ----
    def matmul(self, lhs, rhs):
        raise NotImplementedError

    # ---- shape ----
    def reshape(self, tensor, shape: Shape):
        raise NotImplementedError

    def swap_dims(self, tensor, dim1: int, dim2: int):
        raise NotImplementedError

    def expand(self, tensor, shape: Shape):
        raise NotImplementedError

    def slice(self, tensor, ranges: Ranges):
        raise NotImplementedError

    def slice_assign(self, tensor, ranges: Ranges, value):
        raise NotImplementedError

    def cat(self, tensors: Sequence[Any], dim: int):
        raise NotImplementedError

    # ---- reductions ----
    def sum(self, tensor):
        raise NotImplementedError

    def sum_dim(self, tensor, dim: int):
        raise NotImplementedError

    def mean(self, tensor):
        raise NotImplementedError

    def mean_dim(self, tensor, dim: int):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name()!r}, dtype={self.dtype})"


def missing_operations(backend_cls: type) -> List[str]:
    """Capability operations ``backend_cls`` inherits unimplemented from ``Backend``."""
    missing = []
    for op in CAPABILITY_OPS:
        impl = getattr(backend_cls, op, None)
        if impl is None or impl is getattr(Backend, op):
            missing.append(op)
    return missing


# ============================================================================
# Shape helpers shared by backends
# ============================================================================

def broadcast_shape(lhs: Shape, rhs: Shape) -> Shape:
    """Numpy broadcasting of two shapes."""
    try:
        return tuple(np.broadcast_shapes(tuple(lhs), tuple(rhs)))
    except ValueError:
        raise ShapeMismatchError(f"Cannot broadcast shapes {tuple(lhs)} and {tuple(rhs)}") from None


def normalize_dim(dim: int, ndim: int) -> int:
    if dim < 0:
        dim += ndim
    if not 0 <= dim < ndim:
        raise IndexError(f"Dimension {dim} out of range for rank {ndim}")
    return dim


def slice_shape(shape: Shape, ranges: Ranges) -> Shape:
    """Output shape of slicing the leading dims of ``shape`` with ``ranges``."""
    if len(ranges) > len(shape):
        raise ShapeMismatchError(f"{len(ranges)} ranges for a tensor of rank {len(shape)}")
    out = list(shape)
    for i, (start, end) in enumerate(ranges):
        if not 0 <= start <= end <= shape[i]:
            raise ShapeMismatchError(f"Range {start}..{end} out of bounds for dim {i} of size {shape[i]}")
        out[i] = end - start
    return tuple(out)


def as_index(ranges: Ranges) -> Tuple[slice, ...]:
    return tuple(slice(start, end) for start, end in ranges)


# ============================================================================
# Registry
# ============================================================================

def _make_ndarray(**options) -> Backend:
    from autodiff_ml.ndarray_backend import NdArrayBackend
    return NdArrayBackend(**options)


def _make_wgpu(**options) -> Backend:
    from autodiff_ml.wgpu_backend import WgpuBackend
    return WgpuBackend(**options)


_REGISTRY: Dict[str, Callable[..., Backend]] = {
    "ndarray": _make_ndarray,
    "wgpu": _make_wgpu,
}


def register_backend(name: str, factory: Callable[..., Backend]) -> None:
    """Register a backend factory under ``name``."""
    _REGISTRY[name] = factory


def available_backends() -> List[str]:
    return sorted(_REGISTRY)


def get_backend(name: Optional[str] = None, autodiff: bool = True, **options) -> Backend:
    """Build a backend by name, wrapped for autodiff unless ``autodiff=False``.

    Args:
        name: registered backend name; defaults to AUTODIFF_ML_BACKEND.
        autodiff: wrap the backend in ``ADBackend``.
        **options: forwarded to the backend factory.
    """
    if name is None:
        name = get_settings().backend
    factory = _REGISTRY.get(name)
    if factory is None:
        raise BackendError(f"Unknown backend {name!r}; available: {available_backends()}")
    backend = factory(**options)
    logger.debug("Created backend %s", backend.name())
    if not autodiff:
        return backend
    from autodiff_ml.ad_backend import ADBackend
    return ADBackend(backend)
