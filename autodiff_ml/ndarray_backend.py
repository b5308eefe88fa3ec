"""CPU backend on numpy arrays."""

from typing import Optional, Sequence
import logging

import numpy as np

from autodiff_ml.backend import (
    CPU, Backend, Device, Ranges, Shape,
    as_index, broadcast_shape, normalize_dim, slice_shape,
)
from autodiff_ml.config import get_settings
from autodiff_ml.distribution import Distribution
from autodiff_ml.errors import BackendError, ShapeMismatchError

logger = logging.getLogger(__name__)

_DTYPES = {
    "float32": np.float32,
    "float64": np.float64,
}


class NdArrayBackend(Backend):
    """Array-on-CPU backend. Tensor primitives are ``np.ndarray`` of ``self.dtype``."""

    def __init__(self, dtype: Optional[str] = None, seed: Optional[int] = None):
        settings = get_settings()
        dtype = dtype or settings.dtype
        if dtype not in _DTYPES:
            raise BackendError(f"ndarray: unsupported dtype {dtype!r}")
        self.dtype = dtype
        self._np_dtype = _DTYPES[dtype]
        self.rng = np.random.default_rng(settings.seed if seed is None else seed)

    # ---- identity ----
    def name(self) -> str:
        return "ndarray"

    def default_device(self) -> Device:
        return CPU

    def full_precision(self) -> "NdArrayBackend":
        if self.dtype == "float32":
            return self
        return NdArrayBackend(dtype="float32")

    def _check_device(self, device: Optional[Device]) -> None:
        if device is not None and device != CPU:
            raise BackendError(f"ndarray: unsupported device {device}")

    # ---- creation ----
    def from_data(self, data, device=None):
        self._check_device(device)
        arr = np.array(data, dtype=self._np_dtype)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        return arr

    def from_data_bool(self, data, device=None):
        self._check_device(device)
        arr = np.array(data, dtype=np.bool_)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        return arr

    def random(self, shape: Shape, distribution: Distribution, device=None):
        return self.from_data(distribution.sample(shape, self.rng), device)

    def zeros(self, shape: Shape, device=None):
        self._check_device(device)
        return np.zeros(tuple(shape), dtype=self._np_dtype)

    def ones(self, shape: Shape, device=None):
        self._check_device(device)
        return np.ones(tuple(shape), dtype=self._np_dtype)

    # ---- data / metadata ----
    def to_data(self, tensor):
        return np.array(tensor, copy=True)

    def bool_to_data(self, tensor):
        return np.array(tensor, dtype=np.bool_, copy=True)

    def shape(self, tensor) -> Shape:
        return tuple(tensor.shape)

    def device(self, tensor) -> Device:
        return CPU

    def to_device(self, tensor, device: Device):
        self._check_device(device)
        return tensor

    def clone(self, tensor):
        return np.array(tensor, copy=True)

    # ---- elementwise ----
    def _cast(self, arr) -> np.ndarray:
        return np.asarray(arr, dtype=self._np_dtype)

    def add(self, lhs, rhs):
        broadcast_shape(lhs.shape, rhs.shape)
        return self._cast(lhs + rhs)

    def sub(self, lhs, rhs):
        broadcast_shape(lhs.shape, rhs.shape)
        return self._cast(lhs - rhs)

    def mul(self, lhs, rhs):
        broadcast_shape(lhs.shape, rhs.shape)
        return self._cast(lhs * rhs)

    def div(self, lhs, rhs):
        broadcast_shape(lhs.shape, rhs.shape)
        with np.errstate(divide="ignore", invalid="ignore"):
            return self._cast(lhs / rhs)

    def neg(self, tensor):
        return -tensor

    def add_scalar(self, tensor, scalar):
        return self._cast(tensor + scalar)

    def sub_scalar(self, tensor, scalar):
        return self._cast(tensor - scalar)

    def mul_scalar(self, tensor, scalar):
        return self._cast(tensor * scalar)

    def div_scalar(self, tensor, scalar):
        with np.errstate(divide="ignore", invalid="ignore"):
            return self._cast(tensor / scalar)

    def powf(self, tensor, exponent):
        with np.errstate(divide="ignore", invalid="ignore"):
            return self._cast(np.power(tensor, exponent))

    def exp(self, tensor):
        return np.exp(tensor)

    def log(self, tensor):
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log(tensor)

    def tanh(self, tensor):
        return np.tanh(tensor)

    def relu(self, tensor):
        return np.maximum(tensor, 0).astype(self._np_dtype)

    # ---- comparison / masking ----
    def equal(self, lhs, rhs):
        broadcast_shape(lhs.shape, rhs.shape)
        return np.equal(lhs, rhs)

    def greater_elem(self, tensor, scalar):
        return tensor > scalar

    def lower_equal_elem(self, tensor, scalar):
        return tensor <= scalar

    def mask_fill(self, tensor, mask, value):
        if broadcast_shape(tensor.shape, mask.shape) != tuple(tensor.shape):
            raise ShapeMismatchError(f"mask_fill: mask {mask.shape} does not fit {tensor.shape}")
        return np.where(mask, value, tensor).astype(self._np_dtype)

    # ---- matrix ----
    def matmul(self, lhs, rhs):
        if lhs.ndim < 2 or rhs.ndim < 2:
            raise ShapeMismatchError(f"matmul requires rank >= 2, got {lhs.shape} @ {rhs.shape}")
        if lhs.shape[-1] != rhs.shape[-2]:
            raise ShapeMismatchError(f"matmul: inner dims differ, {lhs.shape} @ {rhs.shape}")
        broadcast_shape(lhs.shape[:-2], rhs.shape[:-2])
        return self._cast(np.matmul(lhs, rhs))

    # ---- shape ----
    def reshape(self, tensor, shape):
        try:
            return np.reshape(tensor, tuple(shape))
        except ValueError:
            raise ShapeMismatchError(f"Cannot reshape {tensor.shape} to {tuple(shape)}") from None

    def swap_dims(self, tensor, dim1, dim2):
        return np.ascontiguousarray(np.swapaxes(tensor, dim1, dim2))

    def expand(self, tensor, shape):
        shape = tuple(shape)
        if broadcast_shape(tensor.shape, shape) != shape:
            raise ShapeMismatchError(f"Cannot expand {tensor.shape} to {shape}")
        return np.array(np.broadcast_to(tensor, shape))

    def slice(self, tensor, ranges: Ranges):
        slice_shape(tensor.shape, ranges)
        return np.array(tensor[as_index(ranges)])

    def slice_assign(self, tensor, ranges: Ranges, value):
        target = slice_shape(tensor.shape, ranges)
        if tuple(value.shape) != target:
            raise ShapeMismatchError(f"slice_assign: value shape {value.shape} != slice shape {target}")
        out = np.array(tensor, copy=True)
        out[as_index(ranges)] = value
        return out

    def cat(self, tensors: Sequence[np.ndarray], dim: int):
        if not tensors:
            raise ValueError("cat: empty tensor list")
        dim = normalize_dim(dim, tensors[0].ndim)
        try:
            return np.concatenate(tensors, axis=dim)
        except ValueError as exc:
            raise ShapeMismatchError(f"cat: {exc}") from None

    # ---- reductions ----
    def sum(self, tensor):
        return np.asarray(np.sum(tensor), dtype=self._np_dtype).reshape(1)

    def sum_dim(self, tensor, dim):
        dim = normalize_dim(dim, tensor.ndim)
        return np.sum(tensor, axis=dim, keepdims=True)

    def mean(self, tensor):
        return np.asarray(np.mean(tensor), dtype=self._np_dtype).reshape(1)

    def mean_dim(self, tensor, dim):
        dim = normalize_dim(dim, tensor.ndim)
        return np.mean(tensor, axis=dim, keepdims=True)
