"""
Capability set shared by every matrix backend.

The autograd operators in ``matgrad.autograd`` only talk to matrices through
the methods declared here, which is what lets one operator library drive the
dense, distributed and wgpu backends.

Core classes:
  - Matrix: interface every backend implements
  - HostElementwiseMixin: sigmoid / BCE built from ``apply``/``apply_binary``
    for backends whose elements live in host memory
"""

import numpy as np

from matgrad import config


def sigmoid(x):
    """Logistic sigmoid, elementwise over an array."""
    return 1.0 / (1.0 + np.exp(-x))


def sigmoid_derivative(x):
    """d/dx sigmoid(x), in terms of the sigmoid's input."""
    s = sigmoid(x)
    return s * (1.0 - s)


class Matrix:
    """Interface for a 2D matrix backend.

    Methods ending in ``_`` and ``sub_mul`` mutate the receiver; everything
    else returns a new matrix.
    """

    rows: int
    cols: int

    # default BCE epsilon for this backend's precision
    bce_epsilon = config.BCE_EPSILON_HOST

    @property
    def shape(self):
        return (self.rows, self.cols)

    def numel(self):
        return self.rows * self.cols

    # ---- Construction ----
    def zeros_like(self):
        """Zero matrix with this matrix's shape, storage and placement."""
        raise NotImplementedError

    def copy(self):
        raise NotImplementedError

    # ---- In-place ----
    def fill(self, value):
        raise NotImplementedError

    def sub_mul(self, scalar, other):
        """self -= scalar * other"""
        raise NotImplementedError

    def add_(self, other):
        """self += other (gradient accumulation)."""
        raise NotImplementedError

    # ---- Arithmetic ----
    def __add__(self, other):
        raise NotImplementedError

    def __matmul__(self, other):
        raise NotImplementedError

    def transpose(self):
        raise NotImplementedError

    @property
    def T(self):
        return self.transpose()

    def matmul_transposed(self, other):
        """self @ other.T"""
        return self @ other.transpose()

    # ---- Activation & loss primitives ----
    def sigmoid(self):
        raise NotImplementedError

    def sigmoid_backward_(self, inputs, out_grad):
        """self += out_grad * sigmoid'(inputs)"""
        raise NotImplementedError

    def binary_cross_entropy(self, targets, eps):
        """Elementwise BCE with self as predictions."""
        raise NotImplementedError

    def bce_backward_(self, predictions, targets, upstream, eps):
        """self += upstream * dBCE/dpredictions / N, upstream being a 1x1 matrix."""
        raise NotImplementedError

    def mean(self):
        """Mean of all elements as a 1x1 matrix."""
        raise NotImplementedError

    # ---- Host transfer ----
    def to_numpy(self):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.rows}x{self.cols})"


class HostElementwiseMixin:
    """Activation and loss primitives for backends with ``apply``/``apply_binary``."""

    def sigmoid(self):
        return self.apply(sigmoid, vectorized=True)

    def sigmoid_backward_(self, inputs, out_grad):
        self.add_(out_grad.apply_binary(inputs, lambda g, x: g * sigmoid_derivative(x), vectorized=True))

    def binary_cross_entropy(self, targets, eps):
        return self.apply_binary(
            targets,
            lambda p, t: -t * np.log(p + eps) - (1.0 - t) * np.log(1.0 - p + eps),
            vectorized=True,
        )

    def bce_backward_(self, predictions, targets, upstream, eps):
        scale = upstream.get(0, 0) / predictions.numel()
        self.add_(predictions.apply_binary(
            targets,
            lambda p, t: scale * (-t / (p + eps) + (1.0 - t) / (1.0 - p + eps)),
            vectorized=True,
        ))
