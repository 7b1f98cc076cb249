"""Runtime configuration, read once from the environment at import time."""

import os

# wgpu adapter selection ("high-performance" picks the real GPU over llvmpipe)
POWER_PREFERENCE = os.environ.get("MATGRAD_POWER_PREFERENCE", "high-performance")

# torch.distributed backend used by the column-partitioned matrices
DIST_BACKEND = os.environ.get("MATGRAD_DIST_BACKEND", "gloo")

LOG_LEVEL = os.environ.get("MATGRAD_LOG_LEVEL", "INFO")

# BCE guards against log(0). float32 device buffers cannot resolve 1e-12.
BCE_EPSILON_HOST = 1e-12
BCE_EPSILON_DEVICE = 1e-8

WORKGROUP_SIZE = 256
TILE_SIZE = 16
