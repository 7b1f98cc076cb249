import random

import numpy as np
import pytest
import torch


@pytest.fixture(autouse=True)
def _setup_global_state() -> None:
    # Seed all RNGs.
    seed = 42
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    # Reference gradients are computed in double precision.
    torch.set_default_dtype(torch.float64)


@pytest.fixture(scope="session")
def wgpu_device():
    """Default wgpu device, or skip when no adapter is available."""
    wgpu = pytest.importorskip("wgpu")
    try:
        adapter = wgpu.gpu.request_adapter_sync(power_preference="high-performance")
    except RuntimeError as err:
        pytest.skip(f"no wgpu adapter: {err}")
    if adapter is None:
        pytest.skip("no wgpu adapter")
    from matgrad.wgpu_matrix import _get_device

    return _get_device()
