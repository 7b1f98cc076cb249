"""
Process-group collectives for the column-partitioned backend.

Thin wrapper over ``torch.distributed``. Matrices keep their storage in numpy;
collectives share that memory with a torch tensor view, so no extra copies are
made on the way in or out.

Every collective is a group-wide synchronization point: all ranks must call
the same collectives in the same order or the group deadlocks.
"""

import logging
from typing import List, Optional

import numpy as np
import torch
import torch.distributed as dist

from matgrad import config

logger = logging.getLogger(__name__)


def init_process_group(rank: int, world_size: int, init_method: str,
                       backend: Optional[str] = None) -> "Communicator":
    """Join (or create) the default process group and return its communicator.

    Args:
        rank: this process's rank in [0, world_size)
        world_size: number of processes in the group
        init_method: rendezvous URL, e.g. "tcp://127.0.0.1:29500"
        backend: torch.distributed backend, defaults to config.DIST_BACKEND
    """
    backend = backend or config.DIST_BACKEND
    dist.init_process_group(
        backend=backend, init_method=init_method,
        rank=rank, world_size=world_size,
    )
    logger.debug(f"rank {rank}/{world_size} joined process group ({backend})")
    return Communicator()


def destroy_process_group() -> None:
    if dist.is_initialized():
        dist.destroy_process_group()


class Communicator:
    """Collective operations over one torch.distributed process group."""

    def __init__(self, group=None):
        if not dist.is_initialized():
            raise RuntimeError("torch.distributed is not initialized; call init_process_group first")
        self.group = group
        self.rank = dist.get_rank(group)
        self.world_size = dist.get_world_size(group)

    def all_reduce_sum(self, arr: np.ndarray) -> np.ndarray:
        """Sum ``arr`` elementwise across ranks, in place. Returns ``arr``."""
        dist.all_reduce(torch.from_numpy(arr), op=dist.ReduceOp.SUM, group=self.group)
        return arr

    def broadcast(self, arr: np.ndarray, src: int) -> np.ndarray:
        """Overwrite ``arr`` on every rank with the value it has on ``src``."""
        dist.broadcast(torch.from_numpy(arr), src=src, group=self.group)
        return arr

    def all_gather(self, arr: np.ndarray) -> List[np.ndarray]:
        """Collect one equally-shaped array from every rank, in rank order."""
        local = torch.from_numpy(np.ascontiguousarray(arr))
        gathered = [torch.empty_like(local) for _ in range(self.world_size)]
        dist.all_gather(gathered, local, group=self.group)
        return [t.numpy() for t in gathered]

    def barrier(self) -> None:
        dist.barrier(group=self.group)

    def __repr__(self):
        return f"Communicator(rank={self.rank}, world_size={self.world_size})"
