"""Shared fixtures: float64 CPU backends and an optional wgpu backend."""

import pytest

from autodiff_ml.ad_backend import ADBackend
from autodiff_ml.ndarray_backend import NdArrayBackend


@pytest.fixture
def cpu():
    """Plain float64 ndarray backend."""
    return NdArrayBackend(dtype="float64", seed=0)


@pytest.fixture
def ad(cpu):
    """autodiff<ndarray> in float64, precise enough for finite differences."""
    return ADBackend(cpu)


@pytest.fixture(scope="session")
def gpu():
    from autodiff_ml.wgpu_backend import WgpuBackend, gpu_available
    if not gpu_available():
        pytest.skip("no wgpu adapter available")
    return WgpuBackend(seed=0)
