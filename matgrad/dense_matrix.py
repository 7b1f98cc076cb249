"""In-process dense matrix backend on row-major numpy storage."""

import numbers

import numpy as np

from matgrad.errors import ShapeMismatchError
from matgrad.matrix import Matrix, HostElementwiseMixin


def _elementwise(func, shape, *arrays, vectorized=False):
    """Run ``func`` over whole arrays, or element by element for scalar functions."""
    if not (vectorized or isinstance(func, np.ufunc)):
        func = np.vectorize(func, otypes=[np.float64])
    result = np.asarray(func(*arrays), dtype=np.float64)
    return np.broadcast_to(result, shape).copy()


class DenseMatrix(HostElementwiseMixin, Matrix):
    """Row-major float64 matrix held in a contiguous numpy array."""

    def __init__(self, rows, cols, data=None):
        """
        Args:
            rows: number of rows
            cols: number of columns
            data: optional host values, anything numpy can reshape to (rows, cols)
        """
        if rows < 0 or cols < 0:
            raise ValueError(f"Invalid matrix shape ({rows}, {cols})")
        self.rows = rows
        self.cols = cols
        if data is None:
            self._data = np.zeros((rows, cols), dtype=np.float64)
        else:
            arr = np.asarray(data, dtype=np.float64)
            if arr.size != rows * cols:
                raise ShapeMismatchError(
                    f"Cannot build a {rows}x{cols} matrix from {arr.size} values"
                )
            self._data = np.ascontiguousarray(arr.reshape(rows, cols)).copy()

    # ---- Factory Methods ----
    @staticmethod
    def from_numpy(arr):
        """Create a matrix holding a copy of a 2D array."""
        arr = np.asarray(arr)
        if arr.ndim != 2:
            raise ValueError(f"Expected a 2D array, got shape {arr.shape}")
        return DenseMatrix(arr.shape[0], arr.shape[1], arr)

    @staticmethod
    def _wrap(arr):
        m = DenseMatrix.__new__(DenseMatrix)
        m.rows, m.cols = arr.shape
        m._data = np.ascontiguousarray(arr, dtype=np.float64)
        return m

    def zeros_like(self):
        return DenseMatrix(self.rows, self.cols)

    def copy(self):
        return DenseMatrix._wrap(self._data.copy())

    # ---- Element Access ----
    def get(self, i, j):
        self._check_index(i, j)
        return float(self._data[i, j])

    def set(self, i, j, value):
        self._check_index(i, j)
        self._data[i, j] = value

    def _check_index(self, i, j):
        if not (0 <= i < self.rows and 0 <= j < self.cols):
            raise IndexError(f"Index ({i}, {j}) out of range for {self.rows}x{self.cols} matrix")

    @property
    def data(self):
        """The underlying row-major array (not a copy)."""
        return self._data

    def to_numpy(self):
        return self._data.copy()

    # ---- In-place ----
    def fill(self, value):
        self._data.fill(value)

    def sub_mul(self, scalar, other):
        self._check_same_shape(other, "sub_mul")
        self._data -= scalar * other._data

    def add_(self, other):
        self._check_same_shape(other, "add_")
        self._data += other._data

    # ---- Elementwise ----
    def apply(self, func, vectorized=False):
        """Apply ``func`` to every element.

        ``func`` may be a numpy ufunc or a plain scalar function such as
        ``math.tanh``; constant results are broadcast to the matrix shape.
        Pass ``vectorized=True`` for functions that already take whole arrays.
        """
        return DenseMatrix._wrap(_elementwise(func, self.shape, self._data, vectorized=vectorized))

    def apply_binary(self, other, func, vectorized=False):
        self._check_same_shape(other, "apply_binary")
        return DenseMatrix._wrap(_elementwise(func, self.shape, self._data, other._data, vectorized=vectorized))

    def __add__(self, other):
        if not isinstance(other, DenseMatrix):
            return NotImplemented
        self._check_same_shape(other, "addition")
        return DenseMatrix._wrap(self._data + other._data)

    def __sub__(self, other):
        if not isinstance(other, DenseMatrix):
            return NotImplemented
        self._check_same_shape(other, "subtraction")
        return DenseMatrix._wrap(self._data - other._data)

    def __mul__(self, scalar):
        if not isinstance(scalar, numbers.Real):
            return NotImplemented
        return DenseMatrix._wrap(self._data * scalar)

    __rmul__ = __mul__

    def __neg__(self):
        return DenseMatrix._wrap(-self._data)

    # ---- Matrix Operations ----
    def __matmul__(self, other):
        """Matrix product.

        The right operand is transposed into its own row-major buffer first so
        the inner products walk contiguous rows of both operands.
        """
        if not isinstance(other, DenseMatrix):
            return NotImplemented
        if self.cols != other.rows:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for multiplication: "
                f"{self.shape} @ {other.shape}"
            )
        other_t = np.ascontiguousarray(other._data.T)
        return DenseMatrix._wrap(np.einsum("ik,jk->ij", self._data, other_t))

    def transpose(self):
        return DenseMatrix._wrap(self._data.T.copy())

    def sum(self):
        return float(self._data.sum())

    def mean(self):
        if self.numel() == 0:
            raise ValueError("mean of an empty matrix")
        return DenseMatrix(1, 1, [self._data.mean()])

    def allclose(self, other, atol=1e-8):
        """Elementwise comparison within an absolute tolerance."""
        return self.shape == other.shape and np.allclose(self._data, other._data, rtol=0.0, atol=atol)

    def _check_same_shape(self, other, what):
        if self.shape != other.shape:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for {what}: {self.shape} vs {other.shape}"
            )

    def __repr__(self):
        return f"DenseMatrix({self.rows}x{self.cols})"
