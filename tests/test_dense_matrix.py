import math

import numpy as np
import pytest

from matgrad.dense_matrix import DenseMatrix
from matgrad.errors import MatgradError, ShapeMismatchError


def _random(rows, cols):
    return DenseMatrix.from_numpy(np.random.randn(rows, cols))


def test_construction():
    m = DenseMatrix(2, 3)
    assert m.shape == (2, 3)
    assert m.numel() == 6
    np.testing.assert_array_equal(m.to_numpy(), np.zeros((2, 3)))

    m = DenseMatrix(2, 2, [1.0, 2.0, 3.0, 4.0])
    assert m.get(1, 0) == 3.0

    with pytest.raises(ShapeMismatchError):
        DenseMatrix(2, 2, [1.0, 2.0, 3.0])


def test_from_numpy_copies():
    arr = np.ones((2, 2))
    m = DenseMatrix.from_numpy(arr)
    arr[0, 0] = 5.0
    assert m.get(0, 0) == 1.0


def test_get_set_bounds():
    m = DenseMatrix(2, 3)
    m.set(1, 2, 7.5)
    assert m.get(1, 2) == 7.5
    with pytest.raises(IndexError):
        m.get(2, 0)
    with pytest.raises(IndexError):
        m.set(0, 3, 1.0)


def test_add_sub_roundtrip():
    a = _random(4, 3)
    b = _random(4, 3)
    assert ((a + b) - b).allclose(a, atol=1e-12)


def test_scalar_mul_and_neg():
    a = _random(3, 3)
    np.testing.assert_allclose((2.0 * a).to_numpy(), 2.0 * a.to_numpy())
    np.testing.assert_allclose((a * 3).to_numpy(), 3.0 * a.to_numpy())
    np.testing.assert_allclose((-a).to_numpy(), -a.to_numpy())


def test_matmul_matches_numpy():
    a = _random(5, 7)
    b = _random(7, 3)
    np.testing.assert_allclose((a @ b).to_numpy(), a.to_numpy() @ b.to_numpy(), atol=1e-12)


def test_transpose_of_product():
    a = _random(4, 6)
    b = _random(6, 2)
    assert (a @ b).transpose().allclose(b.T @ a.T, atol=1e-12)


def test_matmul_transposed():
    a = _random(3, 5)
    b = _random(4, 5)
    assert a.matmul_transposed(b).allclose(a @ b.T, atol=1e-12)


@pytest.mark.parametrize("op", ["add", "sub", "matmul", "sub_mul", "add_"])
def test_shape_mismatch(op):
    a = DenseMatrix(2, 3)
    b = DenseMatrix(3, 3) if op != "matmul" else DenseMatrix(2, 3)
    with pytest.raises(ShapeMismatchError) as excinfo:
        if op == "add":
            a + b
        elif op == "sub":
            a - b
        elif op == "matmul":
            a @ b
        elif op == "sub_mul":
            a.sub_mul(0.5, b)
        else:
            a.add_(b)
    assert isinstance(excinfo.value, MatgradError)
    assert isinstance(excinfo.value, ValueError)


def test_in_place_updates():
    a = DenseMatrix(2, 2, [1.0, 2.0, 3.0, 4.0])
    g = DenseMatrix(2, 2, [1.0, 1.0, 1.0, 1.0])
    a.sub_mul(0.5, g)
    np.testing.assert_allclose(a.to_numpy(), [[0.5, 1.5], [2.5, 3.5]])
    a.add_(g)
    np.testing.assert_allclose(a.to_numpy(), [[1.5, 2.5], [3.5, 4.5]])
    a.fill(0.25)
    np.testing.assert_allclose(a.to_numpy(), np.full((2, 2), 0.25))


def test_copy_is_deep():
    a = DenseMatrix(2, 2, [1.0, 2.0, 3.0, 4.0])
    b = a.copy()
    b.set(0, 0, 9.0)
    assert a.get(0, 0) == 1.0


def test_apply_and_apply_binary():
    a = DenseMatrix(1, 3, [-1.0, 0.0, 2.0])
    b = DenseMatrix(1, 3, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(a.apply(np.abs).to_numpy(), [[1.0, 0.0, 2.0]])
    np.testing.assert_allclose(a.apply_binary(b, lambda x, y: x * y).to_numpy(), [[-1.0, 0.0, 6.0]])


def test_apply_scalar_and_constant_functions():
    a = DenseMatrix(2, 2, [-1.0, 0.5, 2.0, -3.0])
    np.testing.assert_allclose(a.apply(math.fabs).to_numpy(), [[1.0, 0.5], [2.0, 3.0]])
    np.testing.assert_array_equal(a.apply(lambda v: 7.0).to_numpy(), np.full((2, 2), 7.0))
    np.testing.assert_array_equal(a.apply_binary(a, lambda x, y: 1.0).to_numpy(), np.ones((2, 2)))
    # array-native function returning a scalar is broadcast
    np.testing.assert_array_equal(a.apply(lambda arr: 0.0, vectorized=True).to_numpy(), np.zeros((2, 2)))


def test_sigmoid_primitives():
    x = DenseMatrix(1, 3, [-2.0, 0.0, 3.0])
    s = 1.0 / (1.0 + np.exp(-x.to_numpy()))
    np.testing.assert_allclose(x.sigmoid().to_numpy(), s)

    grad = DenseMatrix(1, 3, [1.0, 1.0, 1.0])
    upstream = DenseMatrix(1, 3, [2.0, 2.0, 2.0])
    grad.sigmoid_backward_(x, upstream)
    np.testing.assert_allclose(grad.to_numpy(), 1.0 + 2.0 * s * (1.0 - s))


def test_binary_cross_entropy_mean():
    p = DenseMatrix(1, 4, [0.9, 0.2, 0.7, 0.1])
    t = DenseMatrix(1, 4, [1.0, 0.0, 1.0, 0.0])
    expected = np.mean(-np.log([0.9, 0.8, 0.7, 0.9]))
    loss = p.binary_cross_entropy(t, 1e-12).mean()
    assert loss.shape == (1, 1)
    assert loss.get(0, 0) == pytest.approx(expected)


def test_mean_and_sum():
    m = DenseMatrix(2, 2, [1.0, 2.0, 3.0, 4.0])
    assert m.sum() == 10.0
    assert m.mean().get(0, 0) == 2.5
    with pytest.raises(ValueError):
        DenseMatrix(0, 3).mean()
