"""wgpu backend vs numpy reference, float32 tolerance. Skipped without a GPU adapter."""

import numpy as np
import pytest

from autodiff_ml.ad_backend import ADBackend
from autodiff_ml.distribution import Distribution


def check(gpu, out, expected, atol=1e-4):
    got = gpu.to_data(out)
    assert got.shape == np.shape(expected), f"shape {got.shape} != {np.shape(expected)}"
    assert np.allclose(got, expected, atol=atol), \
        f"max diff = {np.max(np.abs(got - expected))}"


def test_roundtrip_and_identity(gpu):
    data = np.random.randn(3, 5).astype(np.float32)
    check(gpu, gpu.from_data(data), data)
    assert gpu.name() == "wgpu"
    assert str(gpu.default_device()) == "gpu:0"
    check(gpu, gpu.zeros((2, 2)), np.zeros((2, 2)))
    check(gpu, gpu.ones((3,)), np.ones(3))


def test_elementwise(gpu):
    a = np.random.randn(4, 3).astype(np.float32)
    b = np.random.uniform(0.5, 2.0, size=(3,)).astype(np.float32)
    ga, gb = gpu.from_data(a), gpu.from_data(b)
    check(gpu, gpu.add(ga, gb), a + b)
    check(gpu, gpu.sub(ga, gb), a - b)
    check(gpu, gpu.mul(ga, gb), a * b)
    check(gpu, gpu.div(ga, gb), a / b)
    check(gpu, gpu.neg(ga), -a)
    check(gpu, gpu.add_scalar(ga, 1.5), a + 1.5)
    check(gpu, gpu.mul_scalar(ga, -2.0), a * -2.0)
    check(gpu, gpu.div_scalar(ga, 4.0), a / 4.0)
    check(gpu, gpu.exp(ga), np.exp(a))
    check(gpu, gpu.log(gb), np.log(b))
    check(gpu, gpu.tanh(ga), np.tanh(a))
    check(gpu, gpu.relu(ga), np.maximum(a, 0))
    check(gpu, gpu.powf(ga, 2.0), a ** 2)
    check(gpu, gpu.powf(ga, 3.0), a ** 3)
    check(gpu, gpu.powf(gb, 0.5), np.sqrt(b))


def test_comparisons_and_mask(gpu):
    a = np.array([[1.0, -2.0, 3.0], [0.0, 5.0, -1.0]], dtype=np.float32)
    ga = gpu.from_data(a)
    assert gpu.bool_to_data(gpu.greater_elem(ga, 0.0)).tolist() == (a > 0).tolist()
    assert gpu.bool_to_data(gpu.lower_equal_elem(ga, 0.0)).tolist() == (a <= 0).tolist()
    assert gpu.bool_to_data(gpu.equal(ga, ga)).all()
    mask = gpu.from_data_bool([True, False, True])
    check(gpu, gpu.mask_fill(ga, mask, 7.0), np.where([True, False, True], 7.0, a))


def test_matmul(gpu):
    a = np.random.randn(37, 21).astype(np.float32)
    b = np.random.randn(21, 19).astype(np.float32)
    check(gpu, gpu.matmul(gpu.from_data(a), gpu.from_data(b)), a @ b, atol=1e-3)
    a = np.random.randn(3, 5, 4).astype(np.float32)
    b = np.random.randn(4, 6).astype(np.float32)
    check(gpu, gpu.matmul(gpu.from_data(a), gpu.from_data(b)), a @ b, atol=1e-3)


def test_shape_ops(gpu):
    x = np.random.randn(2, 3, 4).astype(np.float32)
    gx = gpu.from_data(x)
    check(gpu, gpu.reshape(gx, (4, 6)), x.reshape(4, 6))
    check(gpu, gpu.swap_dims(gx, 0, 2), np.swapaxes(x, 0, 2))
    check(gpu, gpu.swap_dims(gx, -1, -2), np.swapaxes(x, -1, -2))
    col = np.random.randn(3, 1).astype(np.float32)
    check(gpu, gpu.expand(gpu.from_data(col), (2, 3, 4)), np.broadcast_to(col, (2, 3, 4)))
    check(gpu, gpu.slice(gx, [(1, 2), (0, 2)]), x[1:2, 0:2])
    value = np.ones((1, 2, 4), dtype=np.float32)
    expected = x.copy()
    expected[1:2, 0:2] = value
    check(gpu, gpu.slice_assign(gx, [(1, 2), (0, 2)], gpu.from_data(value)), expected)
    check(gpu, gpu.cat([gx, gx], 1), np.concatenate([x, x], axis=1))


def test_reductions(gpu):
    x = np.random.randn(3, 4, 5).astype(np.float32)
    gx = gpu.from_data(x)
    check(gpu, gpu.sum(gx), np.array([x.sum()]), atol=1e-3)
    check(gpu, gpu.mean(gx), np.array([x.mean()]))
    check(gpu, gpu.sum_dim(gx, 1), x.sum(axis=1, keepdims=True))
    check(gpu, gpu.mean_dim(gx, -1), x.mean(axis=-1, keepdims=True))


def test_clone(gpu):
    data = np.arange(6, dtype=np.float32).reshape(2, 3)
    x = gpu.from_data(data)
    y = gpu.clone(x)
    assert y.buffer is not x.buffer
    check(gpu, y, data)


def test_random(gpu):
    r = gpu.to_data(gpu.random((1000,), Distribution.uniform(2.0, 3.0)))
    assert r.min() >= 2.0 and r.max() <= 3.0


def test_autodiff_on_gpu(gpu):
    ad = ADBackend(gpu)
    assert ad.name() == "autodiff<wgpu>"
    x_np = np.random.randn(4, 3).astype(np.float32)
    w_np = np.random.randn(3, 2).astype(np.float32)
    b_np = np.random.randn(2).astype(np.float32)
    x = ad.from_data(x_np, requires_grad=False)
    w = ad.from_data(w_np)
    b = ad.from_data(b_np)
    loss = ((x @ w + b).tanh() * 0.5).sum()
    g = loss.backward()

    # numpy reference
    pre = x_np @ w_np + b_np
    d_pre = 0.5 * (1 - np.tanh(pre) ** 2)
    check(gpu, g.wrt(w), x_np.T @ d_pre, atol=1e-3)
    check(gpu, g.wrt(b), d_pre.sum(axis=0), atol=1e-3)
    assert g.wrt(x) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
