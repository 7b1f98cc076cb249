"""
matgrad: reverse-mode autodiff over dense, distributed and wgpu matrices.

Modules:
    dense_matrix - in-process numpy backend
    dist_matrix  - column-partitioned backend over torch.distributed
    wgpu_matrix  - WGSL compute-shader backend (imported on demand, needs wgpu)
    autograd     - Node, Arena and the operator library
    nn           - two-layer MLP, SGD and the training loop
"""

from matgrad.errors import (
    MatgradError, ShapeMismatchError, OwnershipError,
    ContextMismatchError, KernelBuildError, ReleasedNodeError,
)

from matgrad.matrix import Matrix
from matgrad.dense_matrix import DenseMatrix
from matgrad.dist_matrix import DistributedMatrix, column_partition, owner_of_column, synchronize

from matgrad.autograd import (
    Node, Arena, leaf, backward, zero_grad,
    add, matmul, transpose, apply, sigmoid, binary_cross_entropy,
)

from matgrad.nn import Module, MLP, SGD, train, xor_dataset

__all__ = [
    # Errors
    "MatgradError", "ShapeMismatchError", "OwnershipError",
    "ContextMismatchError", "KernelBuildError", "ReleasedNodeError",
    # Matrices
    "Matrix", "DenseMatrix", "DistributedMatrix",
    "column_partition", "owner_of_column", "synchronize",
    # Autograd
    "Node", "Arena", "leaf", "backward", "zero_grad",
    "add", "matmul", "transpose", "apply", "sigmoid", "binary_cross_entropy",
    # Model
    "Module", "MLP", "SGD", "train", "xor_dataset",
]
