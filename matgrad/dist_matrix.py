"""
Column-partitioned matrix backend over a torch.distributed process group.

A global ``R x C`` matrix is split by columns across ``P`` ranks. Each rank
stores its contiguous column slice as a DenseMatrix. Columns are split as
evenly as possible and the ``C % P`` leftover columns go to the highest
ranks, one each.

Replicated operands (weights) stay plain DenseMatrix objects that hold the
same value on every rank; ``synchronize`` establishes that.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from matgrad.comm import Communicator
from matgrad.dense_matrix import DenseMatrix
from matgrad.errors import OwnershipError, ShapeMismatchError
from matgrad.matrix import Matrix, HostElementwiseMixin

logger = logging.getLogger(__name__)


# ============================================================================
# Partition Rule
# ============================================================================

def column_partition(global_cols: int, world_size: int, rank: int) -> Tuple[int, int]:
    """Return ``(start_col, local_cols)`` owned by ``rank``."""
    if world_size <= 0:
        raise ValueError(f"world_size must be positive, got {world_size}")
    if not 0 <= rank < world_size:
        raise ValueError(f"rank {rank} outside process group of size {world_size}")
    base, extra = divmod(global_cols, world_size)
    first_wide = world_size - extra
    if rank < first_wide:
        return rank * base, base
    return first_wide * base + (rank - first_wide) * (base + 1), base + 1


def owner_of_column(global_cols: int, world_size: int, col: int) -> int:
    """Rank owning global column ``col`` under ``column_partition``."""
    if world_size <= 0:
        raise ValueError(f"world_size must be positive, got {world_size}")
    if not 0 <= col < global_cols:
        raise IndexError(f"column {col} out of range for {global_cols} columns")
    base, extra = divmod(global_cols, world_size)
    first_wide = world_size - extra
    narrow_span = first_wide * base
    if col < narrow_span:
        return col // base
    return first_wide + (col - narrow_span) // (base + 1)


# ============================================================================
# DistributedMatrix
# ============================================================================

class DistributedMatrix(HostElementwiseMixin, Matrix):
    """Global matrix whose columns are spread over the ranks of ``comm``.

    ``rows``/``cols`` are the global dimensions; ``local`` holds columns
    ``[start_col, start_col + local_cols)``.
    """

    def __init__(self, global_rows: int, global_cols: int, local: DenseMatrix,
                 comm: Communicator):
        start_col, local_cols = column_partition(global_cols, comm.world_size, comm.rank)
        if local.shape != (global_rows, local_cols):
            raise ShapeMismatchError(
                f"rank {comm.rank} expects a local slice of shape "
                f"{(global_rows, local_cols)}, got {local.shape}"
            )
        self.rows = global_rows
        self.cols = global_cols
        self.start_col = start_col
        self.local_cols = local_cols
        self.local = local
        self.comm = comm

    # ---- Factory Methods ----
    @staticmethod
    def from_matrix(matrix, comm: Communicator) -> "DistributedMatrix":
        """Distribute a full matrix that every rank holds (DenseMatrix or ndarray).

        Each rank keeps only its own columns; no communication happens.
        """
        full = matrix.data if isinstance(matrix, DenseMatrix) else np.asarray(matrix, dtype=np.float64)
        rows, cols = full.shape
        start, width = column_partition(cols, comm.world_size, comm.rank)
        local = DenseMatrix.from_numpy(full[:, start:start + width])
        return DistributedMatrix(rows, cols, local, comm)

    @staticmethod
    def zeros(rows: int, cols: int, comm: Communicator) -> "DistributedMatrix":
        _, width = column_partition(cols, comm.world_size, comm.rank)
        return DistributedMatrix(rows, cols, DenseMatrix(rows, width), comm)

    def _like(self, local: DenseMatrix) -> "DistributedMatrix":
        return DistributedMatrix(self.rows, self.cols, local, self.comm)

    def zeros_like(self):
        return self._like(self.local.zeros_like())

    def copy(self):
        return self._like(self.local.copy())

    # ---- Index Arithmetic ----
    def global_col_index(self, local_col: int) -> int:
        if not 0 <= local_col < self.local_cols:
            raise IndexError(f"local column {local_col} out of range for {self.local_cols} local columns")
        return self.start_col + local_col

    def local_col_index(self, global_col: int) -> Optional[int]:
        """Local index of ``global_col``, or None if another rank owns it."""
        if self.start_col <= global_col < self.start_col + self.local_cols:
            return global_col - self.start_col
        return None

    def owner_process(self, global_col: int) -> int:
        return owner_of_column(self.cols, self.comm.world_size, global_col)

    # ---- Element Access ----
    def get(self, i: int, j: int) -> float:
        """Element at global position (i, j); j must be a local column."""
        return self.local.get(i, self._require_local(j))

    def set(self, i: int, j: int, value: float) -> None:
        self.local.set(i, self._require_local(j), value)

    def _require_local(self, global_col: int) -> int:
        local_col = self.local_col_index(global_col)
        if local_col is None:
            raise OwnershipError(global_col, self.comm.rank, self.start_col, self.local_cols)
        return local_col

    # ---- Local Operations (no communication) ----
    def fill(self, value):
        self.local.fill(value)

    def apply(self, func, vectorized=False):
        return self._like(self.local.apply(func, vectorized=vectorized))

    def apply_binary(self, other, func, vectorized=False):
        self._check_same_partition(other, "apply_binary")
        return self._like(self.local.apply_binary(other.local, func, vectorized=vectorized))

    def __add__(self, other):
        if not isinstance(other, DistributedMatrix):
            return NotImplemented
        self._check_same_partition(other, "addition")
        return self._like(self.local + other.local)

    def add_(self, other):
        self._check_same_partition(other, "add_")
        self.local.add_(other.local)

    def sub_mul(self, scalar, other):
        self._check_same_partition(other, "sub_mul")
        self.local.sub_mul(scalar, other.local)

    def __rmatmul__(self, left):
        """Replicated ``left`` times this matrix; keeps this partitioning."""
        if not isinstance(left, DenseMatrix):
            return NotImplemented
        if left.cols != self.rows:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for multiplication: "
                f"{left.shape} @ {self.shape}"
            )
        return DistributedMatrix(left.rows, self.cols, left @ self.local, self.comm)

    def __matmul__(self, other):
        return NotImplemented

    # ---- Collective Operations ----
    def matmul_transposed(self, other: "DistributedMatrix") -> DenseMatrix:
        """``self @ other.T`` replicated on every rank.

        Each rank multiplies its local slices; an all-reduce sums the partial
        products.
        """
        if not isinstance(other, DistributedMatrix):
            raise TypeError("matmul_transposed expects a DistributedMatrix")
        self._check_same_columns(other, "matmul_transposed")
        partial = self.local.data @ other.local.data.T
        return DenseMatrix.from_numpy(self.comm.all_reduce_sum(np.ascontiguousarray(partial)))

    def sum(self) -> float:
        """Sum of all global elements, replicated on every rank."""
        partial = np.array([self.local.data.sum()], dtype=np.float64)
        return float(self.comm.all_reduce_sum(partial)[0])

    def mean(self) -> DenseMatrix:
        if self.numel() == 0:
            raise ValueError("mean of an empty matrix")
        return DenseMatrix(1, 1, [self.sum() / self.numel()])

    def gather(self) -> DenseMatrix:
        """Full matrix on every rank. For inspection and tests only."""
        world_size = self.comm.world_size
        width = max(column_partition(self.cols, world_size, r)[1] for r in range(world_size))
        padded = np.zeros((self.rows, width), dtype=np.float64)
        padded[:, :self.local_cols] = self.local.data
        slices = self.comm.all_gather(padded)
        full = np.zeros((self.rows, self.cols), dtype=np.float64)
        for rank, piece in enumerate(slices):
            start, local_cols = column_partition(self.cols, world_size, rank)
            full[:, start:start + local_cols] = piece[:, :local_cols]
        return DenseMatrix.from_numpy(full)

    def to_numpy(self):
        return self.gather().to_numpy()

    def transpose(self) -> "DistributedMatrix":
        """Transpose, re-partitioned over the new columns. Collective."""
        return DistributedMatrix.from_matrix(self.gather().transpose(), self.comm)

    # ---- Checks ----
    def _check_same_columns(self, other, what):
        if (self.cols, self.start_col, self.local_cols) != (other.cols, other.start_col, other.local_cols):
            raise ShapeMismatchError(
                f"{what} needs identical column partitioning: "
                f"{self.cols} cols from {self.start_col} vs {other.cols} cols from {other.start_col}"
            )

    def _check_same_partition(self, other, what):
        if not isinstance(other, DistributedMatrix):
            raise TypeError(f"{what} expects a DistributedMatrix, got {type(other).__name__}")
        if self.rows != other.rows:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for {what}: {self.shape} vs {other.shape}"
            )
        self._check_same_columns(other, what)

    def __repr__(self):
        return (f"DistributedMatrix({self.rows}x{self.cols}, rank={self.comm.rank}, "
                f"cols=[{self.start_col}, {self.start_col + self.local_cols}))")


def synchronize(matrix: DenseMatrix, source_rank: int, comm: Communicator) -> DenseMatrix:
    """Overwrite a replicated matrix on every rank with ``source_rank``'s value."""
    comm.broadcast(matrix.data, src=source_rank)
    return matrix
