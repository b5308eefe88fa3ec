"""
Autodiff decoration of a numeric backend.

``ADBackend(inner)`` implements the whole capability contract of ``Backend``
over ``ADTensor`` primitives: differentiable operations go through
``ad_tensor``, the rest (bool tensors, comparisons, data readback) are handed
to the inner backend unchanged. One generic class serves every backend.
"""

from typing import Any, Optional, Sequence
import logging

from autodiff_ml import ad_tensor as ad
from autodiff_ml.ad_backward import Gradients, backward as _backward
from autodiff_ml.ad_tensor import ADTensor
from autodiff_ml.backend import Backend, Device, Shape, missing_operations
from autodiff_ml.distribution import Distribution
from autodiff_ml.errors import BackendError

logger = logging.getLogger(__name__)


class ADBackend(Backend):
    """Differentiable variant of ``inner``; tensors are ``ADTensor``."""

    def __init__(self, inner: Backend):
        if isinstance(inner, ADBackend):
            raise BackendError(f"{inner.name()} is already an autodiff backend")
        missing = missing_operations(type(inner))
        if missing:
            raise BackendError(f"{inner.name()} does not implement: {', '.join(missing)}")
        self._inner = inner
        logger.debug("Wrapped %s for autodiff", inner.name())

    # ---- identity ----
    @property
    def inner_backend(self) -> Backend:
        return self._inner

    @property
    def dtype(self) -> str:
        return self._inner.dtype

    def name(self) -> str:
        return f"autodiff<{self._inner.name()}>"

    def default_device(self) -> Device:
        return self._inner.default_device()

    def ad_enabled(self) -> bool:
        return True

    def full_precision(self) -> "ADBackend":
        inner = self._inner.full_precision()
        if inner is self._inner:
            return self
        return ADBackend(inner)

    # ---- differentiable backend contract ----
    def backward(self, tensor: ADTensor) -> Gradients:
        return _backward(tensor)

    def grad(self, tensor: ADTensor, gradients: Gradients) -> Optional[Any]:
        return gradients.wrt(tensor)

    def inner(self, tensor: ADTensor) -> Any:
        return tensor.tensor()

    def from_inner(self, tensor: Any, requires_grad: bool = True) -> ADTensor:
        return ADTensor.from_tensor(tensor, self._inner, requires_grad)

    # ---- creation ----
    def from_data(self, data, device=None, requires_grad: bool = True) -> ADTensor:
        return self.from_inner(self._inner.from_data(data, device), requires_grad)

    def from_data_bool(self, data, device=None):
        return self._inner.from_data_bool(data, device)

    def random(self, shape: Shape, distribution: Distribution, device=None,
               requires_grad: bool = True) -> ADTensor:
        return self.from_inner(self._inner.random(shape, distribution, device), requires_grad)

    def zeros(self, shape: Shape, device=None, requires_grad: bool = True) -> ADTensor:
        return self.from_inner(self._inner.zeros(shape, device), requires_grad)

    def ones(self, shape: Shape, device=None, requires_grad: bool = True) -> ADTensor:
        return self.from_inner(self._inner.ones(shape, device), requires_grad)

    # ---- data / metadata ----
    def to_data(self, tensor: ADTensor):
        return self._inner.to_data(tensor.tensor())

    def bool_to_data(self, tensor):
        return self._inner.bool_to_data(tensor)

    def shape(self, tensor: ADTensor) -> Shape:
        return tensor.shape

    def device(self, tensor: ADTensor) -> Device:
        return tensor.device

    def to_device(self, tensor: ADTensor, device: Device) -> ADTensor:
        moved = self._inner.to_device(tensor.tensor(), device)
        if moved is tensor.tensor():
            return tensor
        # Cross-device copies start a new leaf.
        return self.from_inner(moved, tensor.requires_grad)

    def clone(self, tensor: ADTensor) -> ADTensor:
        return ad.clone(tensor)

    # ---- elementwise ----
    def add(self, lhs, rhs):
        return ad.add(lhs, rhs)

    def sub(self, lhs, rhs):
        return ad.sub(lhs, rhs)

    def mul(self, lhs, rhs):
        return ad.mul(lhs, rhs)

    def div(self, lhs, rhs):
        return ad.div(lhs, rhs)

    def neg(self, tensor):
        return ad.neg(tensor)

    def add_scalar(self, tensor, scalar):
        return ad.add_scalar(tensor, scalar)

    def sub_scalar(self, tensor, scalar):
        return ad.sub_scalar(tensor, scalar)

    def mul_scalar(self, tensor, scalar):
        return ad.mul_scalar(tensor, scalar)

    def div_scalar(self, tensor, scalar):
        return ad.div_scalar(tensor, scalar)

    def powf(self, tensor, exponent):
        return ad.powf(tensor, exponent)

    def exp(self, tensor):
        return ad.exp(tensor)

    def log(self, tensor):
        return ad.log(tensor)

    def tanh(self, tensor):
        return ad.tanh(tensor)

    def relu(self, tensor):
        return ad.relu(tensor)

    # ---- comparison / masking ----
    def equal(self, lhs: ADTensor, rhs: ADTensor):
        return self._inner.equal(lhs.tensor(), rhs.tensor())

    def greater_elem(self, tensor: ADTensor, scalar):
        return self._inner.greater_elem(tensor.tensor(), scalar)

    def lower_equal_elem(self, tensor: ADTensor, scalar):
        return self._inner.lower_equal_elem(tensor.tensor(), scalar)

    def mask_fill(self, tensor, mask, value):
        return ad.mask_fill(tensor, mask, value)

    # ---- matrix ----
    def matmul(self, lhs, rhs):
        return ad.matmul(lhs, rhs)

    # ---- shape ----
    def reshape(self, tensor, shape):
        return ad.reshape(tensor, shape)

    def swap_dims(self, tensor, dim1, dim2):
        return ad.swap_dims(tensor, dim1, dim2)

    def expand(self, tensor, shape):
        return ad.expand(tensor, shape)

    def slice(self, tensor, ranges):
        return ad.slice(tensor, ranges)

    def slice_assign(self, tensor, ranges, value):
        return ad.slice_assign(tensor, ranges, value)

    def cat(self, tensors: Sequence[ADTensor], dim: int):
        return ad.cat(tensors, dim)

    # ---- reductions ----
    def sum(self, tensor):
        return ad.sum(tensor)

    def sum_dim(self, tensor, dim):
        return ad.sum_dim(tensor, dim)

    def mean(self, tensor):
        return ad.mean(tensor)

    def mean_dim(self, tensor, dim):
        return ad.mean_dim(tensor, dim)
