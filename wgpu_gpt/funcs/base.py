"""Operator base class and the WGSL kernel description types.

Every operator kind colocates four rules:

  - ``output_shape``: input shapes -> output shape (or ShapeMismatch)
  - ``run``: direct forward over numpy arrays
  - ``grad``: direct backward, returns one contribution per input
  - ``gpu_impl``: emits a GpuFunctionGroup of WGSL programs

Kernels address buffers through symbolic binding names:

  out, out_grad         the node's output tensor and its gradient
  in0, in0_grad, ...    the node's inputs (by position) and their gradients
  aux0, aux1, ...       buffers shared across the kernels of one operator
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from wgpu_gpt.errors import ShapeMismatch

TensorId = int
Shape = Tuple[int, ...]

LOCAL_WORK_SIZE = 64


def numel(shape: Sequence[int]) -> int:
    """Total number of elements of a shape."""
    result = 1
    for s in shape:
        result *= s
    return result


@dataclass
class GpuFunction:
    """One WGSL compute program and how to launch it."""

    source_code: str
    kernel_name: str
    local_work_size: int
    global_work_size: int
    bindings: List[Tuple[str, str]]  # (binding name, "read" | "read_write")

    @property
    def workgroups(self) -> Tuple[int, int]:
        """Dispatch size, folded into y when x exceeds the device limit."""
        groups = max(1, (self.global_work_size + self.local_work_size - 1) // self.local_work_size)
        x = min(groups, 65535)
        y = (groups + x - 1) // x
        return x, y


@dataclass
class SharedBuffer:
    """Scratch buffer owned by a single operator instance.

    When ``refresh`` is set the backend uploads its result before every
    forward evaluation of the operator (random masks).
    """

    size: int
    refresh: Optional[Callable[[], np.ndarray]] = None


@dataclass
class GpuFunctionGroup:
    forward_funcs: List[GpuFunction] = field(default_factory=list)
    backward_funcs: List[GpuFunction] = field(default_factory=list)
    shared_buffers: List[SharedBuffer] = field(default_factory=list)


def wgsl_float(value: float) -> str:
    text = repr(float(value))
    if "e" not in text and "." not in text:
        text += ".0"
    return text


def wgsl_kernel(
    kernel_name: str,
    bindings: List[Tuple[str, str]],
    works: int,
    body: str,
    local_work_size: int = LOCAL_WORK_SIZE,
) -> GpuFunction:
    """Wrap a kernel body into a full WGSL program.

    The body runs once per element ``id`` in ``[0, works)``; threads past the
    true element count (work-group padding) return without touching memory.
    """
    decls = []
    for i, (name, access) in enumerate(bindings):
        decls.append(
            f"@group(0) @binding({i}) var<storage, {access}> {name}: array<f32>;"
        )
    source = "\n".join(decls) + f"""

@compute @workgroup_size({local_work_size})
fn {kernel_name}(@builtin(global_invocation_id) gid: vec3<u32>,
        @builtin(num_workgroups) nwg: vec3<u32>) {{
    let id = gid.x + gid.y * nwg.x * {local_work_size}u;
    if (id < {works}u) {{
{body}
    }}
}}
"""
    return GpuFunction(
        source_code=source,
        kernel_name=kernel_name,
        local_work_size=local_work_size,
        global_work_size=works,
        bindings=bindings,
    )


class Function:
    """Base class for operator kinds."""

    kind = "function"
    # Re-evaluated on every forward pass even when its inputs are unchanged.
    volatile = False

    def output_shape(self, shapes: List[Shape]) -> Shape:
        raise NotImplementedError

    def run(self, inps: List[np.ndarray]) -> np.ndarray:
        raise NotImplementedError

    def grad(
        self, inps: List[np.ndarray], out: np.ndarray, out_grad: np.ndarray
    ) -> List[Optional[np.ndarray]]:
        raise NotImplementedError

    def gpu_impl(self, out_id: TensorId, shapes: List[Shape]) -> GpuFunctionGroup:
        raise NotImplementedError

    def _check_arity(self, shapes: List[Shape], n: int) -> None:
        if len(shapes) != n:
            raise ShapeMismatch(f"{self.kind} expects {n} inputs, got {len(shapes)}")

    def __repr__(self):
        return f"{type(self).__name__}()"


def split_last(shape: Shape) -> Tuple[int, int]:
    """(rows, width) view of a shape reduced over its last dimension."""
    width = shape[-1]
    return numel(shape) // width, width
