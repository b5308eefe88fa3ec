"""Finite-difference gradient checking.

Compares the analytic gradient of ``sum(fn(*inputs))`` with central
differences. Use a float64 backend: float32 round-off swamps small ``eps``.
"""

from typing import Callable, Optional, Sequence
import logging

import numpy as np

from autodiff_ml import ad_tensor as ad
from autodiff_ml.ad_backward import grads_for
from autodiff_ml.ad_graph import no_grad
from autodiff_ml.errors import GradcheckError

logger = logging.getLogger(__name__)


def _objective(fn, backend, arrays) -> float:
    with no_grad():
        leaves = [backend.from_data(a) for a in arrays]
        out = ad.sum(fn(*leaves))
        return float(backend.to_data(out).reshape(-1)[0])


def numerical_gradient(fn: Callable, inputs: Sequence[np.ndarray], index: int,
                       backend, eps: float = 1e-6) -> np.ndarray:
    """Central-difference gradient of ``sum(fn(*inputs))`` w.r.t. ``inputs[index]``."""
    arrays = [np.array(x, dtype=np.float64) for x in inputs]
    target = arrays[index]
    grad = np.zeros_like(target)
    flat = target.reshape(-1)
    grad_flat = grad.reshape(-1)
    for i in range(flat.size):
        orig = flat[i]
        flat[i] = orig + eps
        plus = _objective(fn, backend, arrays)
        flat[i] = orig - eps
        minus = _objective(fn, backend, arrays)
        flat[i] = orig
        grad_flat[i] = (plus - minus) / (2.0 * eps)
    return grad


def gradcheck(fn: Callable, inputs: Sequence[np.ndarray], backend=None,
              eps: float = 1e-6, atol: float = 1e-5, rtol: float = 1e-3,
              raise_exception: bool = True) -> bool:
    """
    Check analytic gradients of ``fn`` against finite differences.

    Args:
        fn: function of ADTensors returning an ADTensor
        inputs: host arrays, one per argument of ``fn``
        backend: ADBackend to run on (default: float64 ndarray)
        eps: finite-difference step
        atol, rtol: tolerances for np.allclose
        raise_exception: raise GradcheckError on mismatch instead of returning False

    Returns:
        True when every input gradient matches.
    """
    if backend is None:
        from autodiff_ml.backend import get_backend
        backend = get_backend("ndarray", dtype="float64")

    leaves = [backend.from_data(np.asarray(x, dtype=np.float64)) for x in inputs]
    gradients = ad.sum(fn(*leaves)).backward()

    for i, (leaf, analytic) in enumerate(zip(leaves, grads_for(gradients, leaves))):
        numeric = numerical_gradient(fn, inputs, i, backend, eps)
        if analytic is None:
            # No path from the output: the true gradient must be zero.
            analytic_np = np.zeros_like(numeric)
        else:
            analytic_np = np.asarray(backend.inner_backend.to_data(analytic), dtype=np.float64)
        if analytic_np.shape != numeric.shape or not np.allclose(analytic_np, numeric, atol=atol, rtol=rtol):
            diff = np.max(np.abs(analytic_np - numeric)) if analytic_np.shape == numeric.shape else None
            message = (f"gradcheck: input {i} mismatch, max diff = {diff}\n"
                       f"analytic:\n{analytic_np}\nnumerical:\n{numeric}")
            if raise_exception:
                raise GradcheckError(message)
            logger.warning(message)
            return False
    return True
