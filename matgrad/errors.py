"""Exception types raised by matgrad.

Every error surfaces synchronously at the call that detects it; nothing in
the library retries.
"""


class MatgradError(Exception):
    """Base class for all matgrad errors."""


class ShapeMismatchError(MatgradError, ValueError):
    """Operands have incompatible dimensions (or column partitionings)."""


class OwnershipError(MatgradError, IndexError):
    """A distributed matrix was asked for a column this rank does not own."""

    def __init__(self, col: int, rank: int, start_col: int, local_cols: int):
        self.col = col
        self.rank = rank
        super().__init__(
            f"column {col} is not owned by rank {rank} "
            f"(local range [{start_col}, {start_col + local_cols}))"
        )


class ContextMismatchError(MatgradError, RuntimeError):
    """Device matrices from different wgpu devices/queues were combined."""


class KernelBuildError(MatgradError, RuntimeError):
    """A WGSL kernel failed to compile into a compute pipeline.

    Attributes:
        kernel: name of the kernel that failed
        device: description of the adapter/device it was built for
        log: compiler diagnostic text
    """

    def __init__(self, kernel: str, device: str, log: str):
        self.kernel = kernel
        self.device = device
        self.log = log
        super().__init__(
            f"failed to build kernel '{kernel}' for device {device}:\n{log}"
        )


class ReleasedNodeError(MatgradError, RuntimeError):
    """A graph node was used after its arena was cleared."""
