"""Elementwise operators.

Binary operators broadcast their second operand over the leading
dimensions of the first: ``b.shape`` must equal a suffix of ``a.shape``.
That covers bias vectors, positional tables and layer-norm scales.
"""

import math
from typing import List, Optional

import numpy as np

from wgpu_gpt.errors import ShapeMismatch
from wgpu_gpt.funcs.base import (
    Function, GpuFunctionGroup, SharedBuffer, Shape,
    numel, wgsl_float, wgsl_kernel,
)


def _suffix_broadcast_shape(kind: str, shapes: List[Shape]) -> Shape:
    a, b = shapes
    if len(b) > len(a) or tuple(a[len(a) - len(b):]) != tuple(b):
        raise ShapeMismatch(f"{kind}: cannot broadcast {b} over {a}")
    return tuple(a)


def _reduce_to(grad: np.ndarray, shape: Shape) -> np.ndarray:
    """Sum a gradient over the leading dimensions that were broadcast."""
    return grad.reshape(-1, numel(shape)).sum(axis=0).reshape(shape)


class Add(Function):
    """out = a + b"""

    kind = "add"

    def output_shape(self, shapes):
        self._check_arity(shapes, 2)
        return _suffix_broadcast_shape(self.kind, shapes)

    def run(self, inps):
        return inps[0] + inps[1]

    def grad(self, inps, out, out_grad):
        return [out_grad, _reduce_to(out_grad, inps[1].shape)]

    def gpu_impl(self, out_id, shapes):
        works = numel(shapes[0])
        bn = numel(shapes[1])
        reps = works // bn
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read"), ("in1", "read")],
                    works,
                    f"        out[id] = in0[id] + in1[id % {bn}u];",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in0_grad", "read_write")],
                    works,
                    "        in0_grad[id] += out_grad[id];",
                ),
                wgsl_kernel(
                    f"grad_{out_id}_1",
                    [("out_grad", "read"), ("in1_grad", "read_write")],
                    bn,
                    f"""        var s = 0.0;
        for (var r = 0u; r < {reps}u; r++) {{
            s += out_grad[r * {bn}u + id];
        }}
        in1_grad[id] += s;""",
                ),
            ],
        )


class Mul(Function):
    """out = a * b"""

    kind = "mul"

    def output_shape(self, shapes):
        self._check_arity(shapes, 2)
        return _suffix_broadcast_shape(self.kind, shapes)

    def run(self, inps):
        return inps[0] * inps[1]

    def grad(self, inps, out, out_grad):
        a, b = inps
        return [out_grad * b, _reduce_to(out_grad * a, b.shape)]

    def gpu_impl(self, out_id, shapes):
        works = numel(shapes[0])
        bn = numel(shapes[1])
        reps = works // bn
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read"), ("in1", "read")],
                    works,
                    f"        out[id] = in0[id] * in1[id % {bn}u];",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in1", "read"), ("in0_grad", "read_write")],
                    works,
                    f"        in0_grad[id] += out_grad[id] * in1[id % {bn}u];",
                ),
                wgsl_kernel(
                    f"grad_{out_id}_1",
                    [("out_grad", "read"), ("in0", "read"), ("in1_grad", "read_write")],
                    bn,
                    f"""        var s = 0.0;
        for (var r = 0u; r < {reps}u; r++) {{
            s += out_grad[r * {bn}u + id] * in0[r * {bn}u + id];
        }}
        in1_grad[id] += s;""",
                ),
            ],
        )


class Coeff(Function):
    """out = a * coeff, for a constant scalar."""

    kind = "coeff"

    def __init__(self, coeff: float):
        self.coeff = float(coeff)

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        return tuple(shapes[0])

    def run(self, inps):
        return inps[0] * np.float32(self.coeff)

    def grad(self, inps, out, out_grad):
        return [out_grad * np.float32(self.coeff)]

    def gpu_impl(self, out_id, shapes):
        works = numel(shapes[0])
        c = wgsl_float(self.coeff)
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read")],
                    works,
                    f"        out[id] = in0[id] * {c};",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in0_grad", "read_write")],
                    works,
                    f"        in0_grad[id] += out_grad[id] * {c};",
                )
            ],
        )

    def __repr__(self):
        return f"Coeff({self.coeff})"


GELU_C = math.sqrt(2.0 / math.pi)


class Gelu(Function):
    """GELU, tanh approximation."""

    kind = "gelu"

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        return tuple(shapes[0])

    def run(self, inps):
        x = inps[0]
        t = np.tanh(np.float32(GELU_C) * (x + np.float32(0.044715) * x * x * x))
        return np.float32(0.5) * x * (1 + t)

    def grad(self, inps, out, out_grad):
        x = inps[0]
        t = np.tanh(np.float32(GELU_C) * (x + np.float32(0.044715) * x * x * x))
        d = 0.5 * (1 + t) + 0.5 * x * (1 - t * t) * GELU_C * (1 + 3 * 0.044715 * x * x)
        return [out_grad * d]

    def gpu_impl(self, out_id, shapes):
        works = numel(shapes[0])
        c = wgsl_float(GELU_C)
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read")],
                    works,
                    f"""        let x = in0[id];
        let t = tanh(clamp({c} * (x + 0.044715 * x * x * x), -15.0, 15.0));
        out[id] = 0.5 * x * (1.0 + t);""",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in0", "read"), ("in0_grad", "read_write")],
                    works,
                    f"""        let x = in0[id];
        let t = tanh(clamp({c} * (x + 0.044715 * x * x * x), -15.0, 15.0));
        let d = 0.5 * (1.0 + t) + 0.5 * x * (1.0 - t * t) * {c} * (1.0 + 0.134145 * x * x);
        in0_grad[id] += out_grad[id] * d;""",
                )
            ],
        )


class Relu(Function):
    kind = "relu"

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        return tuple(shapes[0])

    def run(self, inps):
        return np.maximum(inps[0], np.float32(0.0))

    def grad(self, inps, out, out_grad):
        return [out_grad * (inps[0] > 0).astype(np.float32)]

    def gpu_impl(self, out_id, shapes):
        works = numel(shapes[0])
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read")],
                    works,
                    "        out[id] = max(in0[id], 0.0);",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in0", "read"), ("in0_grad", "read_write")],
                    works,
                    "        in0_grad[id] += select(0.0, out_grad[id], in0[id] > 0.0);",
                )
            ],
        )


class Dropout(Function):
    """Inverted dropout with an injected random generator.

    With ``p == 0`` forward is a plain copy and backward passes the output
    gradient through unchanged. The mask is drawn on the host so both
    backends consume the generator identically.
    """

    kind = "dropout"

    def __init__(self, p: float, rng: Optional[np.random.Generator] = None):
        if not 0.0 <= p < 1.0:
            raise ValueError(f"Dropout probability must be in [0, 1), got {p}")
        if p > 0.0 and rng is None:
            raise ValueError("Dropout with p > 0 needs a random generator")
        self.p = float(p)
        self.rng = rng
        self.training = True
        self._mask = None
        self._masked = False

    @property
    def volatile(self):
        # A fresh mask each pass while training; one more pass after
        # switching to eval replaces the last masked output.
        return self.p > 0.0 and (self.training or self._masked)

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        return tuple(shapes[0])

    def next_mask(self, size: int) -> np.ndarray:
        if self.p == 0.0 or not self.training:
            return np.ones(size, dtype=np.float32)
        keep = self.rng.random(size) >= self.p
        return keep.astype(np.float32) / np.float32(1.0 - self.p)

    def _draw(self, size: int) -> np.ndarray:
        self._masked = self.training
        return self.next_mask(size)

    def run(self, inps):
        x = inps[0]
        if self.p == 0.0:
            self._mask = None
            return x.copy()
        self._mask = self._draw(x.size).reshape(x.shape)
        return x * self._mask

    def grad(self, inps, out, out_grad):
        if self._mask is None:
            return [out_grad]
        return [out_grad * self._mask]

    def gpu_impl(self, out_id, shapes):
        works = numel(shapes[0])
        if self.p == 0.0:
            return GpuFunctionGroup(
                forward_funcs=[
                    wgsl_kernel(
                        f"calc_{out_id}_0",
                        [("out", "read_write"), ("in0", "read")],
                        works,
                        "        out[id] = in0[id];",
                    )
                ],
                backward_funcs=[
                    wgsl_kernel(
                        f"grad_{out_id}_0",
                        [("out_grad", "read"), ("in0_grad", "read_write")],
                        works,
                        "        in0_grad[id] += out_grad[id];",
                    )
                ],
            )
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read"), ("aux0", "read")],
                    works,
                    "        out[id] = in0[id] * aux0[id];",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("aux0", "read"), ("in0_grad", "read_write")],
                    works,
                    "        in0_grad[id] += out_grad[id] * aux0[id];",
                )
            ],
            shared_buffers=[SharedBuffer(works, refresh=lambda: self._draw(works))],
        )

    def __repr__(self):
        return f"Dropout(p={self.p})"
