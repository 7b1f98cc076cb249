"""
Reverse-mode automatic differentiation over matrix backends.

A step's graph is recorded into an explicit Arena owned by the training loop.
Every operator result gets an index in the arena's node table; the backward
pass walks those indices and the table is released in bulk when the step ends.
Parameter and input leaves are created with ``leaf`` and live outside the
arena.

Core classes:
  - Node: matrix value, gradient accumulator, backward closure, dependencies
  - Arena: per-step node table with begin_step/end_step scope
  - Operators: add, matmul, transpose, apply, sigmoid, binary_cross_entropy

Backward closures accumulate straight into their inputs' gradients, so
gradients from every consumer of a node sum up before that node's own
closure runs.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Callable, Iterable, List, Optional, Sequence, Union

import numpy as np

from matgrad.errors import ReleasedNodeError, ShapeMismatchError

logger = logging.getLogger(__name__)


class Node:
    """
    Node in the computation graph.

    Owns its ``value`` and ``grad`` matrices. ``grad`` has the shape of
    ``value``, starts at zero and is only ever accumulated into.
    """

    def __init__(
        self,
        value,
        dependencies: Sequence['Node'] = (),
        backward_fn: Optional[Callable[['Node'], None]] = None,
        requires_grad: bool = True
    ):
        """
        Args:
            value: Matrix held by this node
            dependencies: input nodes, in operand order
            backward_fn: closure called with this node once its gradient is complete
            requires_grad: whether gradients should flow into this node
        """
        self._value = value
        self._grad = value.zeros_like()
        self.dependencies = list(dependencies)
        self.backward_fn = backward_fn
        self.requires_grad = requires_grad
        self.arena: Optional['Arena'] = None
        self.index: Optional[int] = None  # position in the arena table
        self._released = False

    @staticmethod
    def zeros(like, requires_grad: bool = True) -> 'Node':
        """Zero-valued leaf with the shape and placement of ``like``."""
        return Node(like.zeros_like(), requires_grad=requires_grad)

    @property
    def value(self):
        if self._released:
            raise ReleasedNodeError(f"node {self.index} was released when its arena was cleared")
        return self._value

    @property
    def grad(self):
        if self._released:
            raise ReleasedNodeError(f"node {self.index} was released when its arena was cleared")
        return self._grad

    @property
    def rows(self) -> int:
        return self.value.rows

    @property
    def cols(self) -> int:
        return self.value.cols

    @property
    def shape(self):
        return self.value.shape

    @property
    def is_leaf(self) -> bool:
        return self.backward_fn is None

    @property
    def released(self) -> bool:
        return self._released

    def _release(self):
        self._value = None
        self._grad = None
        self.dependencies = []
        self.backward_fn = None
        self._released = True

    def __repr__(self):
        if self._released:
            return f"Node(index={self.index}, released)"
        return (f"Node(shape={self.shape}, index={self.index}, "
                f"requires_grad={self.requires_grad})")


def leaf(matrix, requires_grad: bool = True) -> Node:
    """Wrap an existing matrix as a graph leaf (parameter or input)."""
    return Node(matrix, requires_grad=requires_grad)


class Arena:
    """Table of the nodes recorded during one training step."""

    def __init__(self):
        self._nodes: List[Node] = []
        self._lock = threading.Lock()
        self._in_backward = False
        self._in_step = False

    def __len__(self):
        return len(self._nodes)

    def __getitem__(self, index: int) -> Node:
        return self._nodes[index]

    def record(self, value, dependencies: Sequence[Node], backward_fn: Callable[[Node], None]) -> Node:
        """Register a new operator result; valid until the next ``clear``."""
        for dep in dependencies:
            if dep.released:
                raise ReleasedNodeError(f"cannot record an operation on released node {dep.index}")
        node = Node(
            value,
            dependencies,
            backward_fn,
            requires_grad=any(dep.requires_grad for dep in dependencies),
        )
        with self._lock:
            node.arena = self
            node.index = len(self._nodes)
            self._nodes.append(node)
        return node

    def owns(self, node: Node) -> bool:
        return node.arena is self and not node.released

    def clear(self) -> None:
        """Release every recorded node."""
        with self._lock:
            if self._in_backward:
                raise RuntimeError("Arena.clear() called while a backward pass is running")
            for node in self._nodes:
                node._release()
            count = len(self._nodes)
            self._nodes = []
        logger.debug(f"Released {count} graph nodes")

    def begin_step(self) -> None:
        if self._in_step:
            raise RuntimeError("begin_step() called twice without end_step()")
        if self._nodes:
            raise RuntimeError(f"begin_step() with {len(self._nodes)} nodes left from a previous step")
        self._in_step = True

    def end_step(self) -> None:
        self._in_step = False
        self.clear()

    @contextmanager
    def step(self):
        """Scope of one training step; the arena is cleared on exit."""
        self.begin_step()
        try:
            yield self
        finally:
            self.end_step()

    def backward(self, root: Node, seed: float = 1.0) -> None:
        """
        Seed ``root.grad`` and propagate gradients to every ancestor.

        Kahn's algorithm over table indices: each recorded node counts its
        consumers inside the subgraph reachable from ``root`` and runs its
        closure once that count drops to zero. Recorded nodes start each pass
        from zero, so repeating a backward adds the leaf gradients once more.
        """
        if not self.owns(root):
            raise ValueError("backward root was not recorded in this arena")

        # Step 1: reachable subgraph and consumer counts
        pending = [0] * len(self._nodes)
        reachable = [False] * len(self._nodes)
        reachable[root.index] = True
        stack = [root.index]
        while stack:
            node = self._nodes[stack.pop()]
            for dep in node.dependencies:
                if not self.owns(dep):
                    continue
                pending[dep.index] += 1
                if not reachable[dep.index]:
                    reachable[dep.index] = True
                    stack.append(dep.index)

        # Step 2: clear what an earlier pass left in recorded nodes, then seed
        for index, seen in enumerate(reachable):
            if seen:
                self._nodes[index].grad.fill(0.0)
        root.grad.fill(seed)

        # Step 3: run closures in reverse topological order
        self._in_backward = True
        try:
            ready = deque([root.index])
            while ready:
                node = self._nodes[ready.popleft()]
                if node.requires_grad:
                    node.backward_fn(node)
                for dep in node.dependencies:
                    if not self.owns(dep):
                        continue
                    pending[dep.index] -= 1
                    if pending[dep.index] == 0:
                        ready.append(dep.index)
        finally:
            self._in_backward = False


def backward(root: Node, seed: float = 1.0) -> None:
    """Backpropagate from ``root``, seeding its gradient with ``seed``."""
    if root.arena is None:
        # a bare leaf has nothing upstream
        root.grad.fill(seed)
        return
    root.arena.backward(root, seed)


def zero_grad(nodes: Union[Node, Iterable[Node]]) -> None:
    """Reset gradients to zero (parameters, between steps)."""
    if isinstance(nodes, Node):
        nodes = [nodes]
    for node in nodes:
        node.grad.fill(0.0)


# ============================================================================
# Operators
# ============================================================================

def _check_nodes(*nodes):
    for node in nodes:
        if not isinstance(node, Node):
            raise TypeError(f"Expected a Node, got {type(node).__name__}")


def add(arena: Arena, a: Node, b: Node) -> Node:
    """
    Element-wise addition.

    Forward: out = a + b
    Backward: da += upstream, db += upstream
    """
    _check_nodes(a, b)
    if a.shape != b.shape:
        raise ShapeMismatchError(f"Matrix dimensions do not match for addition: {a.shape} vs {b.shape}")

    def backward_add(out: Node):
        if a.requires_grad:
            a.grad.add_(out.grad)
        if b.requires_grad:
            b.grad.add_(out.grad)

    return arena.record(a.value + b.value, [a, b], backward_add)


def matmul(arena: Arena, a: Node, b: Node) -> Node:
    """
    Matrix multiplication.

    Forward: out = a @ b
    Backward: da += upstream @ b.T, db += a.T @ upstream
    """
    _check_nodes(a, b)
    if a.cols != b.rows:
        raise ShapeMismatchError(
            f"Matrix dimensions do not match for multiplication: {a.shape} @ {b.shape}"
        )

    def backward_matmul(out: Node):
        if a.requires_grad:
            a.grad.add_(out.grad.matmul_transposed(b.value))
        if b.requires_grad:
            b.grad.add_(a.value.transpose() @ out.grad)

    return arena.record(a.value @ b.value, [a, b], backward_matmul)


def transpose(arena: Arena, a: Node) -> Node:
    """Forward: out = a.T  Backward: da += upstream.T"""
    _check_nodes(a)

    def backward_transpose(out: Node):
        if a.requires_grad:
            a.grad.add_(out.grad.transpose())

    return arena.record(a.value.transpose(), [a], backward_transpose)


def apply(arena: Arena, a: Node, func: Callable, derivative: Optional[Callable] = None) -> Node:
    """
    Element-wise map.

    ``func`` and ``derivative`` map a float to a float (``math.tanh``, a
    constant function) or are numpy ufuncs. Without a derivative no gradient
    reaches ``a``. Needs a backend with host-side ``apply``.
    """
    _check_nodes(a)
    if not hasattr(a.value, "apply"):
        raise NotImplementedError(
            f"{type(a.value).__name__} cannot map arbitrary Python functions; "
            "use a built-in operator such as sigmoid"
        )

    def backward_apply(out: Node):
        if derivative is not None and a.requires_grad:
            a.grad.add_(out.grad.apply_binary(a.value.apply(derivative), np.multiply))

    return arena.record(a.value.apply(func), [a], backward_apply)


def sigmoid(arena: Arena, a: Node) -> Node:
    """
    Sigmoid activation: 1 / (1 + exp(-x)).

    Backward: da += upstream * sigmoid(x) * (1 - sigmoid(x))
    """
    _check_nodes(a)

    def backward_sigmoid(out: Node):
        if a.requires_grad:
            a.grad.sigmoid_backward_(a.value, out.grad)

    return arena.record(a.value.sigmoid(), [a], backward_sigmoid)


def binary_cross_entropy(arena: Arena, predictions: Node, targets: Node,
                         eps: Optional[float] = None) -> Node:
    """
    Mean binary cross-entropy as a 1x1 node.

    Forward: loss = mean(-t * log(p + eps) - (1 - t) * log(1 - p + eps))
    Backward: dp += dloss * (-t / (p + eps) + (1 - t) / (1 - p + eps)) / N
    """
    _check_nodes(predictions, targets)
    if predictions.shape != targets.shape:
        raise ShapeMismatchError(
            f"Matrix dimensions do not match for binary_cross_entropy: "
            f"{predictions.shape} vs {targets.shape}"
        )
    if eps is None:
        eps = predictions.value.bce_epsilon

    def backward_bce(out: Node):
        if predictions.requires_grad:
            predictions.grad.bce_backward_(predictions.value, targets.value, out.grad, eps)

    loss = predictions.value.binary_cross_entropy(targets.value, eps).mean()
    return arena.record(loss, [predictions, targets], backward_bce)
