"""
Two-layer perceptron, SGD and the full-batch training loop.

The model is backend agnostic: weights are created through a matrix factory
(``DenseMatrix.from_numpy`` by default, a ``WgpuMatrix`` factory for the
accelerator). With a communicator the weights stay replicated DenseMatrix
objects and the inputs are DistributedMatrix objects.
"""

import logging
import math
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from matgrad import autograd
from matgrad.autograd import Arena, Node, leaf
from matgrad.dense_matrix import DenseMatrix
from matgrad.dist_matrix import synchronize

logger = logging.getLogger(__name__)


# ============================================================================
# Base Module Class
# ============================================================================

class Module:
    """Base class for models; registers parameter leaves assigned as attributes."""

    def __init__(self):
        self._parameters: Dict[str, Node] = {}

    def __setattr__(self, name, value):
        if isinstance(value, Node) and value.is_leaf and value.requires_grad:
            if not hasattr(self, "_parameters"):
                super().__setattr__("_parameters", {})
            self._parameters[name] = value
        super().__setattr__(name, value)

    def parameters(self):
        """Yield all parameter nodes."""
        yield from self._parameters.values()

    def named_parameters(self):
        yield from self._parameters.items()

    def __call__(self, *args, **kwargs):
        return self.forward(*args, **kwargs)

    def forward(self, *args, **kwargs):
        """Override this in subclasses."""
        raise NotImplementedError


def xavier_normal(fan_out: int, fan_in: int, rng: np.random.RandomState) -> np.ndarray:
    """Normal init with std = sqrt(2 / (fan_in + fan_out))."""
    std = math.sqrt(2.0 / (fan_in + fan_out))
    return rng.normal(0.0, std, size=(fan_out, fan_in))


# ============================================================================
# MLP
# ============================================================================

class MLP(Module):
    """sigmoid(W2 @ sigmoid(W1 @ x)), samples in columns.

    There are no bias vectors; a constant input row plays that role.
    """

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        output_size: int,
        matrix_factory: Optional[Callable[[np.ndarray], object]] = None,
        comm=None,
        seed: Optional[int] = None,
    ):
        """
        Args:
            input_size: features per sample (rows of x)
            hidden_size: hidden units
            output_size: outputs per sample
            matrix_factory: builds a backend matrix from a 2D array
            comm: Communicator; weights are initialized on rank 0 and broadcast
            seed: RNG seed for the initial weights
        """
        super().__init__()
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.output_size = output_size
        self.comm = comm

        factory = matrix_factory or DenseMatrix.from_numpy
        rng = np.random.RandomState(seed)
        w1 = factory(xavier_normal(hidden_size, input_size, rng))
        w2 = factory(xavier_normal(output_size, hidden_size, rng))
        if comm is not None:
            if not isinstance(w1, DenseMatrix):
                raise TypeError("distributed training needs replicated DenseMatrix weights")
            synchronize(w1, 0, comm)
            synchronize(w2, 0, comm)
        self.W1 = leaf(w1)
        self.W2 = leaf(w2)

    def forward(self, arena: Arena, x: Node) -> Node:
        z1 = autograd.matmul(arena, self.W1, x)
        a1 = autograd.sigmoid(arena, z1)
        z2 = autograd.matmul(arena, self.W2, a1)
        return autograd.sigmoid(arena, z2)

    def loss(self, arena: Arena, x: Node, targets: Node) -> Node:
        return autograd.binary_cross_entropy(arena, self.forward(arena, x), targets)

    def predict(self, x: Node) -> np.ndarray:
        """Forward pass on a scratch arena; returns the outputs on the host."""
        arena = Arena()
        with arena.step():
            return self.forward(arena, x).value.to_numpy()


class SGD:
    """Plain gradient descent: W -= lr * dW."""

    def __init__(self, parameters, lr: float = 1.0):
        self.params: List[Node] = list(parameters)
        self.lr = lr

    def zero_grad(self):
        autograd.zero_grad(self.params)

    def step(self):
        for param in self.params:
            param.value.sub_mul(self.lr, param.grad)


# ============================================================================
# Data & Training
# ============================================================================

def xor_dataset() -> Tuple[np.ndarray, np.ndarray]:
    """XOR inputs (3 x 4, last row is a constant bias feature) and targets (1 x 4)."""
    x = np.array([
        [0.0, 0.0, 1.0, 1.0],
        [0.0, 1.0, 0.0, 1.0],
        [1.0, 1.0, 1.0, 1.0],
    ])
    y = np.array([[0.0, 1.0, 1.0, 0.0]])
    return x, y


def train(
    model: MLP,
    optimizer: SGD,
    x: Node,
    targets: Node,
    epochs: int,
    arena: Optional[Arena] = None,
    log_every: int = 100,
) -> List[float]:
    """
    Full-batch training. One graph per epoch, released when the step ends.

    Returns:
        Mean BCE every ``log_every`` epochs and after the last epoch.
    """
    arena = arena or Arena()
    is_main = model.comm is None or model.comm.rank == 0
    history = []
    for epoch in range(epochs):
        with arena.step():
            optimizer.zero_grad()
            loss = model.loss(arena, x, targets)
            autograd.backward(loss)
            optimizer.step()
            if (epoch + 1) % log_every == 0 or epoch + 1 == epochs:
                # host read; kept off the per-epoch path for the device backend
                loss_value = float(loss.value.to_numpy()[0, 0])
                history.append(loss_value)
                if is_main:
                    logger.info(f"Epoch {epoch + 1}/{epochs}  loss={loss_value:.6f}")
    return history
