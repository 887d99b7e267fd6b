"""Shared fixtures.

GPU tests request the ``device`` fixture and are skipped when wgpu cannot
find a usable adapter.
"""

import numpy as np
import pytest

# Load torch's dynamo (pulled in by torch.optim) before any wgpu adapter is
# created: importing it after a llvmpipe adapter is up segfaults the process.
try:
    import torch._dynamo  # noqa: F401
except ImportError:
    pass


@pytest.fixture(scope="session")
def device():
    wgpu = pytest.importorskip("wgpu")
    from wgpu_gpt.errors import DeviceError
    from wgpu_gpt.wgpu_device import get_device

    try:
        dev = get_device()
    except DeviceError as e:
        pytest.skip(f"No GPU adapter: {e}")
    info = dev.adapter.info
    print(f"Selected: {info['device']} ({info['adapter_type']}, {info['backend_type']})")
    assert isinstance(dev, wgpu.GPUDevice)
    return dev


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
