#!/usr/bin/env python3
"""
Train the two-layer MLP on XOR with any of the three matrix backends.

Usage:
    python -m matgrad.examples.train_xor --backend dense
    python -m matgrad.examples.train_xor --backend distributed --world-size 3
    python -m matgrad.examples.train_xor --backend wgpu
"""

import argparse
import logging
import socket

import numpy as np
import torch.multiprocessing as mp

from matgrad import config
from matgrad.autograd import leaf
from matgrad.dense_matrix import DenseMatrix
from matgrad.nn import MLP, SGD, train, xor_dataset

logger = logging.getLogger("matgrad.examples.train_xor")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Train an MLP on XOR")
    parser.add_argument("--backend", choices=["dense", "distributed", "wgpu"], default="dense")
    parser.add_argument("--world-size", type=int, default=2, help="processes for --backend distributed")
    parser.add_argument("--hidden", type=int, default=16)
    parser.add_argument("--lr", type=float, default=2.0)
    parser.add_argument("--epochs", type=int, default=5000)
    parser.add_argument("--log-every", type=int, default=500)
    parser.add_argument("--seed", type=int, default=0)
    return parser.parse_args(argv)


def _report(model, x_node, y):
    predictions = model.predict(x_node)
    for j in range(y.shape[1]):
        logger.info(f"sample {j}: target={y[0, j]:.0f} prediction={predictions[0, j]:.4f}")


def run_dense(args):
    x, y = xor_dataset()
    model = MLP(x.shape[0], args.hidden, y.shape[0], seed=args.seed)
    optimizer = SGD(model.parameters(), lr=args.lr)
    x_node = leaf(DenseMatrix.from_numpy(x), requires_grad=False)
    y_node = leaf(DenseMatrix.from_numpy(y), requires_grad=False)
    train(model, optimizer, x_node, y_node, args.epochs, log_every=args.log_every)
    _report(model, x_node, y)


def run_wgpu(args):
    from matgrad.wgpu_matrix import WgpuMatrix, _get_device, initialize_kernels

    device = _get_device()
    initialize_kernels(device)

    def factory(arr):
        return WgpuMatrix.from_numpy(arr, device=device)

    x, y = xor_dataset()
    model = MLP(x.shape[0], args.hidden, y.shape[0], matrix_factory=factory, seed=args.seed)
    optimizer = SGD(model.parameters(), lr=args.lr)
    x_node = leaf(factory(x), requires_grad=False)
    y_node = leaf(factory(y), requires_grad=False)
    train(model, optimizer, x_node, y_node, args.epochs, log_every=args.log_every)
    _report(model, x_node, y)


def _distributed_worker(rank, world_size, init_method, args):
    from matgrad.comm import destroy_process_group, init_process_group
    from matgrad.dist_matrix import DistributedMatrix

    logging.basicConfig(level=config.LOG_LEVEL, format=f"[rank {rank}] %(name)s: %(message)s")
    comm = init_process_group(rank, world_size, init_method)
    try:
        x, y = xor_dataset()
        model = MLP(x.shape[0], args.hidden, y.shape[0], comm=comm, seed=args.seed)
        optimizer = SGD(model.parameters(), lr=args.lr)
        x_node = leaf(DistributedMatrix.from_matrix(x, comm), requires_grad=False)
        y_node = leaf(DistributedMatrix.from_matrix(y, comm), requires_grad=False)
        train(model, optimizer, x_node, y_node, args.epochs, log_every=args.log_every)
        predictions = model.predict(x_node)
        if rank == 0:
            logger.info(f"predictions: {np.round(predictions, 4).tolist()}")
    finally:
        destroy_process_group()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def run_distributed(args):
    init_method = f"tcp://127.0.0.1:{free_port()}"
    logger.info(f"Spawning {args.world_size} processes ({config.DIST_BACKEND})")
    mp.spawn(_distributed_worker, args=(args.world_size, init_method, args),
             nprocs=args.world_size, join=True)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=config.LOG_LEVEL, format="%(name)s: %(message)s")
    logger.info(f"matgrad XOR demo, backend={args.backend}")

    if args.backend == "dense":
        run_dense(args)
    elif args.backend == "wgpu":
        run_wgpu(args)
    else:
        run_distributed(args)


if __name__ == "__main__":
    main()
