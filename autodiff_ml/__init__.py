"""
autodiff_ml: backend-agnostic reverse-mode automatic differentiation.

Wraps a numeric tensor backend (numpy on CPU, or WGSL compute shaders via
wgpu-py) in a differentiable tensor type, records operations into a graph
during the forward pass and replays it backward on demand.

Modules:
    backend          - Backend capability contract, Device, backend registry
    ndarray_backend  - CPU backend on numpy arrays
    wgpu_backend     - GPU backend on wgpu storage buffers (imported lazily)
    ad_graph         - Nodes, op variants, node arena, traversal, grad mode
    ad_tensor        - ADTensor and the differentiable operations
    ad_backward      - Backward engine and Gradients
    ad_backend       - ADBackend: autodiff<inner> adapter
    gradcheck        - Finite-difference gradient checking
"""

from autodiff_ml.errors import (
    AutodiffError, ShapeMismatchError, BackwardError,
    BackendError, BackendMismatchError, GradcheckError,
)

from autodiff_ml.config import Settings, get_settings, load_settings, reload_settings

from autodiff_ml.distribution import Distribution

from autodiff_ml.backend import (
    Backend, Device, CPU, CAPABILITY_OPS,
    missing_operations, register_backend, available_backends, get_backend,
)

from autodiff_ml.ndarray_backend import NdArrayBackend

from autodiff_ml.ad_graph import (
    Node, NodeArena, ARENA,
    no_grad, enable_grad, is_grad_enabled,
    reverse_topological,
)

from autodiff_ml.ad_tensor import ADTensor

from autodiff_ml.ad_backward import Gradients, backward, sum_to_shape

from autodiff_ml.ad_backend import ADBackend

from autodiff_ml.gradcheck import gradcheck, numerical_gradient

__version__ = "0.1.0"

__all__ = [
    # Errors
    "AutodiffError", "ShapeMismatchError", "BackwardError",
    "BackendError", "BackendMismatchError", "GradcheckError",
    # Config
    "Settings", "get_settings", "load_settings", "reload_settings",
    # Backends
    "Distribution",
    "Backend", "Device", "CPU", "CAPABILITY_OPS",
    "missing_operations", "register_backend", "available_backends", "get_backend",
    "NdArrayBackend",
    # Autodiff
    "Node", "NodeArena", "ARENA",
    "no_grad", "enable_grad", "is_grad_enabled",
    "reverse_topological",
    "ADTensor", "Gradients", "backward", "sum_to_shape",
    "ADBackend",
    "gradcheck", "numerical_gradient",
]
