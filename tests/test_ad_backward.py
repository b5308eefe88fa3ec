"""Backward engine: accumulation, broadcasting, missing gradients and failures."""

import numpy as np
import pytest

from autodiff_ml import ad_backward
from autodiff_ml.ad_backward import Gradients, grads_for, sum_to_shape
from autodiff_ml.ad_graph import NegOp, no_grad
from autodiff_ml.errors import BackwardError, ShapeMismatchError
from autodiff_ml.gradcheck import gradcheck


def test_square_at_two(ad):
    """d(x*x)/dx at x = 2 is 4."""
    x = ad.from_data([2.0])
    y = x * x
    g = ad.backward(y)
    assert np.allclose(ad.grad(x, g), [4.0])


def test_sum_of_product(ad):
    a = ad.from_data([1.0, 2.0])
    b = ad.from_data([3.0, 4.0])
    g = (a * b).sum().backward()
    assert np.allclose(g.wrt(a), [3.0, 4.0])
    assert np.allclose(g.wrt(b), [1.0, 2.0])


def test_product_rule_matches_finite_differences(ad):
    rng = np.random.default_rng(0)
    a = rng.standard_normal((3, 4))
    b = rng.standard_normal((3, 4))
    assert gradcheck(lambda x, y: (x * y).exp() * x, [a, b], ad)


def test_diamond_accumulates_both_paths(ad):
    """y = (3x) * (x + 1): dy/dx = 3(x + 1) + 3x = 15 at x = 2."""
    x = ad.from_data([2.0])
    y = (x * 3.0) * (x + 1.0)
    g = y.backward()
    assert np.allclose(g.wrt(x), [15.0])


def test_same_operand_twice(ad):
    x = ad.from_data([1.0, -2.0, 3.0])
    g = (x + x + x).sum().backward()
    assert np.allclose(g.wrt(x), [3.0, 3.0, 3.0])


def test_broadcast_gradient_reduced_to_operand_shape(ad):
    a = ad.from_data(np.ones((3, 4)))
    b = ad.from_data(np.arange(4.0))
    g = (a + b).sum().backward()
    assert g.wrt(a).shape == (3, 4)
    assert g.wrt(b).shape == (4,)
    assert np.allclose(g.wrt(b), [3.0, 3.0, 3.0, 3.0])


def test_broadcast_size_one_dims(ad):
    a = ad.from_data(np.ones((2, 3)))
    col = ad.from_data([[1.0], [2.0]])
    g = (a * col).sum().backward()
    assert g.wrt(col).shape == (2, 1)
    assert np.allclose(g.wrt(col), [[3.0], [3.0]])
    assert np.allclose(g.wrt(a), [[1.0, 1.0, 1.0], [2.0, 2.0, 2.0]])


def test_root_gradient_is_ones(ad):
    x = ad.from_data([[1.0, 2.0], [3.0, 4.0]])
    y = x * 2.0
    g = y.backward()
    assert np.allclose(g.wrt(y), np.ones((2, 2)))
    assert np.allclose(g.wrt(x), 2.0 * np.ones((2, 2)))


def test_untracked_backward_is_empty(ad):
    x = ad.from_data([1.0, 2.0], requires_grad=False)
    g = (x * x).backward()
    assert isinstance(g, Gradients)
    assert len(g) == 0
    assert not g
    assert g.wrt(x) is None


def test_untracked_operand_gets_no_gradient(ad):
    x = ad.from_data([1.0, 2.0])
    c = ad.from_data([5.0, 6.0], requires_grad=False)
    g = (x * c).sum().backward()
    assert np.allclose(g.wrt(x), [5.0, 6.0])
    assert c not in g
    assert g.wrt(c) is None


def test_zero_gradient_differs_from_absent(ad):
    x = ad.from_data([1.0, 2.0])
    other = ad.from_data([3.0])
    g = (x * 0.0).sum().backward()
    zero = g.wrt(x)
    assert zero is not None
    assert np.allclose(zero, [0.0, 0.0])
    assert g.wrt(other) is None
    assert x in g and other not in g
    assert x.id in g


def test_reads_are_idempotent(ad):
    x = ad.from_data([1.0, 2.0])
    g = (x.exp()).sum().backward()
    first = np.array(g.wrt(x))
    second = np.array(g.wrt(x))
    assert np.array_equal(first, second)
    assert np.array_equal(g.get(x.id), first)


def test_updating_a_read_leaves_gradients_intact(ad):
    """add_scalar passes the root gradient straight through to x."""
    x = ad.from_data([1.0, 2.0])
    y = x + 0.0
    g = ad.backward(y)
    read = ad.grad(x, g)
    read -= 0.5
    assert np.allclose(ad.grad(x, g), [1.0, 1.0])
    assert np.allclose(g.wrt(y), [1.0, 1.0])
    assert np.allclose(x.grad(g), [1.0, 1.0])


def test_gradients_are_read_only(ad):
    x = ad.from_data([1.0])
    g = (x * x).backward()
    with pytest.raises(TypeError):
        g[x.id] = None
    assert set(g) == set(g.ids())


def test_repeated_backward_is_bit_identical(ad):
    rng = np.random.default_rng(1)
    x = ad.from_data(rng.standard_normal((4, 3)))
    w = ad.from_data(rng.standard_normal((3, 2)))
    h = (x @ w).tanh()
    y = (h * h + h).mean() + (x * x).sum()
    first = grads_for(y.backward(), [x, w])
    second = grads_for(y.backward(), [x, w])
    for a, b in zip(first, second):
        assert np.array_equal(a, b)


def test_backward_does_not_mutate_graph(ad):
    x = ad.from_data([3.0])
    y = x * x
    node = y.node
    y.backward()
    assert y.node is node
    assert node.parents == (x.id, x.id)


def test_rule_failure_aborts_with_backward_error(ad, monkeypatch):
    def broken(backend, op, grad, needs):
        raise ZeroDivisionError("boom")

    monkeypatch.setitem(ad_backward._RULES, NegOp, broken)
    x = ad.from_data([1.0, 2.0])
    y = (-x).sum()
    with pytest.raises(BackwardError) as info:
        y.backward()
    assert isinstance(info.value.__cause__, ZeroDivisionError)


def test_wrong_gradient_shape_aborts(ad, monkeypatch):
    def wrong_shape(backend, op, grad, needs):
        return (backend.ones((5,), backend.device(grad)),)

    monkeypatch.setitem(ad_backward._RULES, NegOp, wrong_shape)
    x = ad.from_data([1.0, 2.0])
    y = (-x).sum()
    with pytest.raises(ShapeMismatchError):
        y.backward()


def test_sum_to_shape(cpu):
    grad = cpu.from_data(np.ones((2, 3, 4)))
    assert sum_to_shape(cpu, grad, (2, 3, 4)) is grad
    assert np.allclose(sum_to_shape(cpu, grad, (4,)), 6.0 * np.ones(4))
    assert np.allclose(sum_to_shape(cpu, grad, (3, 1)), 8.0 * np.ones((3, 1)))
    assert np.allclose(sum_to_shape(cpu, grad, (1, 1, 1)), [[[24.0]]])
    with pytest.raises(ShapeMismatchError):
        sum_to_shape(cpu, grad, (5,))


def test_no_grad_forward_then_backward(ad):
    x = ad.from_data([2.0])
    with no_grad():
        frozen = x * 10.0
    y = x * frozen
    g = y.backward()
    # frozen acts as a constant 20
    assert np.allclose(g.wrt(x), [20.0])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
