"""WGSL kernels against numpy. Skipped when no wgpu adapter is present."""

import numpy as np
import pytest

pytest.importorskip("wgpu")

from matgrad import autograd
from matgrad.autograd import Arena, backward, leaf
from matgrad.errors import ContextMismatchError, KernelBuildError, ShapeMismatchError
from matgrad.nn import MLP, SGD, train, xor_dataset
from matgrad.wgpu_matrix import (
    KERNELS, WGSL_PARAMS, KernelSpec, WgpuMatrix, _kernel_caches, initialize_kernels,
)


def _rand(*shape):
    return np.random.randn(*shape).astype(np.float32)


@pytest.fixture
def upload(wgpu_device):
    def _upload(arr):
        return WgpuMatrix.from_numpy(arr, device=wgpu_device)
    return _upload


def test_initialize_kernels_is_idempotent(wgpu_device):
    first = initialize_kernels(wgpu_device)
    second = initialize_kernels(wgpu_device)
    assert first is second
    assert set(first.kernels) == set(KERNELS)


def test_kernel_build_error_leaves_no_cache(wgpu_device):
    broken = {"broken": KernelSpec(WGSL_PARAMS + "fn main( {", ("read_write", "uniform"))}

    class FakeDevice:
        """Forwards to the real device; a distinct key for the kernel cache."""

        def __getattr__(self, name):
            return getattr(wgpu_device, name)

    device = FakeDevice()
    with pytest.raises(KernelBuildError) as excinfo:
        initialize_kernels(device, kernels=broken)
    assert excinfo.value.kernel == "broken"
    assert excinfo.value.log
    assert device not in _kernel_caches


def test_roundtrip_and_copy(upload):
    a_np = _rand(3, 5)
    a = upload(a_np)
    np.testing.assert_array_equal(a.to_numpy(), a_np)
    assert a.copy_to_host() == a_np.reshape(-1).tolist()

    b = a.copy()
    b.fill(2.0)
    np.testing.assert_array_equal(a.to_numpy(), a_np)
    np.testing.assert_array_equal(b.to_numpy(), np.full((3, 5), 2.0, dtype=np.float32))


def test_zero_initialized(wgpu_device):
    m = WgpuMatrix(4, 4, device=wgpu_device)
    np.testing.assert_array_equal(m.to_numpy(), np.zeros((4, 4), dtype=np.float32))


def test_add_and_sub_mul(upload):
    a_np, b_np = _rand(17, 33), _rand(17, 33)
    a, b = upload(a_np), upload(b_np)
    np.testing.assert_allclose((a + b).to_numpy(), a_np + b_np, rtol=1e-6)

    a.sub_mul(0.25, b)
    np.testing.assert_allclose(a.to_numpy(), a_np - 0.25 * b_np, rtol=1e-5, atol=1e-6)
    a.add_(b)
    np.testing.assert_allclose(a.to_numpy(), a_np + 0.75 * b_np, rtol=1e-5, atol=1e-6)


@pytest.mark.parametrize("m,k,n", [(1, 1, 1), (3, 4, 5), (16, 16, 16), (37, 21, 50)])
def test_matmul(upload, m, k, n):
    a_np, b_np = _rand(m, k), _rand(k, n)
    out = upload(a_np) @ upload(b_np)
    assert out.shape == (m, n)
    np.testing.assert_allclose(out.to_numpy(), a_np @ b_np, rtol=1e-4, atol=1e-4)


def test_transpose_of_product(upload):
    a_np, b_np = _rand(9, 20), _rand(20, 6)
    a, b = upload(a_np), upload(b_np)
    lhs = (a @ b).transpose().to_numpy()
    rhs = (b.T @ a.T).to_numpy()
    np.testing.assert_allclose(lhs, rhs, rtol=1e-4, atol=1e-4)
    assert a.matmul_transposed(upload(_rand(4, 20))).shape == (9, 4)


def test_sigmoid_kernels(upload):
    x_np = _rand(5, 40)
    s = 1.0 / (1.0 + np.exp(-x_np))
    x = upload(x_np)
    np.testing.assert_allclose(x.sigmoid().to_numpy(), s, rtol=1e-5, atol=1e-6)

    g_np = _rand(5, 40)
    grad = upload(np.ones((5, 40), dtype=np.float32))
    grad.sigmoid_backward_(x, upload(g_np))
    np.testing.assert_allclose(grad.to_numpy(), 1.0 + g_np * s * (1 - s), rtol=1e-5, atol=1e-6)


def test_bce_kernels(upload):
    p_np = np.random.uniform(0.05, 0.95, size=(1, 300)).astype(np.float32)
    t_np = (np.random.rand(1, 300) > 0.5).astype(np.float32)
    eps = 1e-8
    p, t = upload(p_np), upload(t_np)

    loss = p.binary_cross_entropy(t, eps).mean()
    expected = np.mean(-t_np * np.log(p_np + eps) - (1 - t_np) * np.log(1 - p_np + eps))
    assert loss.shape == (1, 1)
    assert loss.to_numpy()[0, 0] == pytest.approx(expected, rel=1e-4)

    grad = p.zeros_like()
    grad.bce_backward_(p, t, upload(np.array([[2.0]], dtype=np.float32)), eps)
    expected_grad = 2.0 * (-t_np / (p_np + eps) + (1 - t_np) / (1 - p_np + eps)) / p_np.size
    np.testing.assert_allclose(grad.to_numpy(), expected_grad, rtol=1e-4, atol=1e-6)


def test_mean(upload):
    x_np = _rand(31, 29)
    assert upload(x_np).mean().to_numpy()[0, 0] == pytest.approx(float(x_np.mean()), abs=1e-5)


def test_shape_errors(upload):
    with pytest.raises(ShapeMismatchError):
        upload(_rand(2, 3)) + upload(_rand(3, 2))
    with pytest.raises(ShapeMismatchError):
        upload(_rand(2, 3)) @ upload(_rand(2, 3))


def test_context_mismatch(wgpu_device):
    import wgpu

    adapter = wgpu.gpu.request_adapter_sync(power_preference="high-performance")
    other_device = adapter.request_device_sync()
    a = WgpuMatrix.from_numpy(_rand(2, 2), device=wgpu_device)
    b = WgpuMatrix.from_numpy(_rand(2, 2), device=other_device)
    with pytest.raises(ContextMismatchError):
        a + b
    with pytest.raises(ContextMismatchError):
        a.add_(b)


def test_autograd_matches_numpy(upload):
    w_np, x_np = _rand(4, 3), _rand(3, 6)
    w, x = leaf(upload(w_np)), leaf(upload(x_np), requires_grad=False)
    arena = Arena()
    with arena.step():
        out = autograd.sigmoid(arena, autograd.matmul(arena, w, x))
        backward(out)
    s = 1.0 / (1.0 + np.exp(-(w_np @ x_np)))
    np.testing.assert_allclose(w.grad.to_numpy(), (s * (1 - s)) @ x_np.T, rtol=1e-4, atol=1e-5)


def test_apply_not_supported(upload):
    arena = Arena()
    with pytest.raises(NotImplementedError):
        autograd.apply(arena, leaf(upload(_rand(2, 2))), np.exp)


def test_xor_training(upload):
    x, y = xor_dataset()
    model = MLP(x.shape[0], 16, y.shape[0], matrix_factory=upload, seed=0)
    optimizer = SGD(model.parameters(), lr=2.0)
    x_node = leaf(upload(x), requires_grad=False)
    y_node = leaf(upload(y), requires_grad=False)
    history = train(model, optimizer, x_node, y_node, epochs=5000, log_every=1000)
    assert history[-1] < history[0]
    assert history[-1] < 0.1
    np.testing.assert_array_equal(model.predict(x_node) > 0.5, y > 0.5)
