"""Execution backends.

A backend realizes graph nodes as actual computation. ``Backend`` is the
capability interface; ``CpuBackend`` evaluates the numpy rules in process and
``GpuBackend`` (see ``wgpu_gpt.wgpu_device``) dispatches generated WGSL
kernels through wgpu.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import numpy as np

from wgpu_gpt.funcs.base import Function, Shape, TensorId

logger = logging.getLogger(__name__)


@dataclass
class Node:
    """One operator application inside a graph."""

    index: int
    op: Function
    inputs: List[TensorId]
    out: TensorId
    input_shapes: List[Shape]
    out_shape: Shape
    # Input versions seen by the last evaluation, None before the first one.
    consumed: Optional[Tuple[int, ...]] = field(default=None, repr=False)


class Backend(Protocol):
    """What the graph needs from an execution backend."""

    name: str

    def alloc(self, tid: TensorId, shape: Shape) -> None:
        """Create zero-filled value and gradient storage for a tensor."""
        ...

    def write(self, tid: TensorId, data: np.ndarray) -> None:
        ...

    def read(self, tid: TensorId) -> np.ndarray:
        """Blocking copy of a tensor's value into host memory."""
        ...

    def write_grad(self, tid: TensorId, data: np.ndarray) -> None:
        ...

    def read_grad(self, tid: TensorId) -> np.ndarray:
        ...

    def zero_grad(self, tids: Iterable[TensorId]) -> None:
        ...

    def run_forward(self, node: Node) -> None:
        ...

    def run_backward(self, node: Node) -> None:
        """Accumulate the node's gradient contributions into its inputs."""
        ...

    def sync(self) -> None:
        """Block until all submitted work is complete."""
        ...


class CpuBackend:
    """Direct backend: numpy arrays owned in process."""

    name = "cpu"

    def __init__(self):
        self.values: Dict[TensorId, np.ndarray] = {}
        self.grads: Dict[TensorId, np.ndarray] = {}

    def alloc(self, tid, shape):
        self.values[tid] = np.zeros(shape, dtype=np.float32)
        self.grads[tid] = np.zeros(shape, dtype=np.float32)

    def write(self, tid, data):
        self.values[tid][...] = data

    def read(self, tid):
        return self.values[tid].copy()

    def write_grad(self, tid, data):
        self.grads[tid][...] = data

    def read_grad(self, tid):
        return self.grads[tid].copy()

    def zero_grad(self, tids):
        for tid in tids:
            self.grads[tid].fill(0.0)

    def run_forward(self, node):
        inps = [self.values[i] for i in node.inputs]
        self.values[node.out][...] = node.op.run(inps)

    def run_backward(self, node):
        inps = [self.values[i] for i in node.inputs]
        contributions = node.op.grad(inps, self.values[node.out], self.grads[node.out])
        # Fixed input order; an input used twice receives both contributions.
        for tid, contribution in zip(node.inputs, contributions):
            if contribution is not None:
                self.grads[tid] += contribution

    def sync(self):
        pass


def make_backend(name: str) -> Backend:
    """Instantiate a backend by name ("cpu" or "gpu")."""
    logger.info("Using %s backend", name)
    if name == "cpu":
        return CpuBackend()
    if name == "gpu":
        from wgpu_gpt.wgpu_device import GpuBackend

        return GpuBackend()
    raise ValueError(f"Unknown backend: {name!r}")
