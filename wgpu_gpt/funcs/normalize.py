"""Row-wise operators reducing over the last dimension."""

import numpy as np

from wgpu_gpt.errors import ShapeMismatch
from wgpu_gpt.funcs.base import (
    Function, GpuFunctionGroup, SharedBuffer, numel, split_last,
    wgsl_float, wgsl_kernel,
)

# Large finite negative instead of -inf; WGSL has no infinity literal.
MASK_VALUE = -1e9


class LayerNorm(Function):
    """Normalize every row to zero mean and unit variance (no affine).

    Scale and shift are separate Mul/Add nodes against parameters.
    """

    kind = "layer_norm"

    def __init__(self, eps: float = 1e-5):
        self.eps = float(eps)

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        return tuple(shapes[0])

    def run(self, inps):
        x = inps[0]
        mean = x.mean(axis=-1, keepdims=True)
        var = ((x - mean) ** 2).mean(axis=-1, keepdims=True)
        return (x - mean) / np.sqrt(var + self.eps)

    def grad(self, inps, out, out_grad):
        x = inps[0]
        mean = x.mean(axis=-1, keepdims=True)
        var = ((x - mean) ** 2).mean(axis=-1, keepdims=True)
        inv_std = 1.0 / np.sqrt(var + self.eps)
        g_mean = out_grad.mean(axis=-1, keepdims=True)
        gy_mean = (out_grad * out).mean(axis=-1, keepdims=True)
        return [inv_std * (out_grad - g_mean - out * gy_mean)]

    def gpu_impl(self, out_id, shapes):
        rows, width = split_last(shapes[0])
        eps = wgsl_float(self.eps)
        # aux0 keeps 1/std per row for the backward kernel.
        forward = wgsl_kernel(
            f"calc_{out_id}_0",
            [("out", "read_write"), ("in0", "read"), ("aux0", "read_write")],
            rows,
            f"""        let base = id * {width}u;
        var mean = 0.0;
        for (var j = 0u; j < {width}u; j++) {{
            mean += in0[base + j];
        }}
        mean = mean / {width}.0;
        var var_sum = 0.0;
        for (var j = 0u; j < {width}u; j++) {{
            let d = in0[base + j] - mean;
            var_sum += d * d;
        }}
        let inv_std = 1.0 / sqrt(var_sum / {width}.0 + {eps});
        aux0[id] = inv_std;
        for (var j = 0u; j < {width}u; j++) {{
            out[base + j] = (in0[base + j] - mean) * inv_std;
        }}""",
        )
        backward = wgsl_kernel(
            f"grad_{out_id}_0",
            [("out", "read"), ("out_grad", "read"), ("aux0", "read"),
             ("in0_grad", "read_write")],
            rows * width,
            f"""        let row = id / {width}u;
        let base = row * {width}u;
        var g_sum = 0.0;
        var gy_sum = 0.0;
        for (var j = 0u; j < {width}u; j++) {{
            g_sum += out_grad[base + j];
            gy_sum += out_grad[base + j] * out[base + j];
        }}
        let g_mean = g_sum / {width}.0;
        let gy_mean = gy_sum / {width}.0;
        in0_grad[id] += aux0[row] * (out_grad[id] - g_mean - out[id] * gy_mean);""",
        )
        return GpuFunctionGroup(
            forward_funcs=[forward],
            backward_funcs=[backward],
            shared_buffers=[SharedBuffer(rows)],
        )

    def __repr__(self):
        return f"LayerNorm(eps={self.eps})"


class Softmax(Function):
    """Numerically stable softmax over the last dimension."""

    kind = "softmax"

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        return tuple(shapes[0])

    def run(self, inps):
        x = inps[0]
        e = np.exp(x - x.max(axis=-1, keepdims=True))
        return e / e.sum(axis=-1, keepdims=True)

    def grad(self, inps, out, out_grad):
        s = (out_grad * out).sum(axis=-1, keepdims=True)
        return [out * (out_grad - s)]

    def gpu_impl(self, out_id, shapes):
        rows, width = split_last(shapes[0])
        forward = wgsl_kernel(
            f"calc_{out_id}_0",
            [("out", "read_write"), ("in0", "read")],
            rows,
            f"""        let base = id * {width}u;
        var mx = in0[base];
        for (var j = 1u; j < {width}u; j++) {{
            mx = max(mx, in0[base + j]);
        }}
        var total = 0.0;
        for (var j = 0u; j < {width}u; j++) {{
            let e = exp(in0[base + j] - mx);
            out[base + j] = e;
            total += e;
        }}
        for (var j = 0u; j < {width}u; j++) {{
            out[base + j] = out[base + j] / total;
        }}""",
        )
        backward = wgsl_kernel(
            f"grad_{out_id}_0",
            [("out", "read"), ("out_grad", "read"), ("in0_grad", "read_write")],
            rows * width,
            f"""        let base = (id / {width}u) * {width}u;
        var s = 0.0;
        for (var j = 0u; j < {width}u; j++) {{
            s += out_grad[base + j] * out[base + j];
        }}
        in0_grad[id] += out[id] * (out_grad[id] - s);""",
        )
        return GpuFunctionGroup(forward_funcs=[forward], backward_funcs=[backward])


class TrilMask(Function):
    """Causal mask: entries above the diagonal of the last two dims are masked."""

    kind = "tril_mask"

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        (a,) = shapes
        if len(a) < 2 or a[-1] != a[-2]:
            raise ShapeMismatch(f"tril_mask needs square trailing dimensions, got {a}")
        return tuple(a)

    def _keep(self, n: int) -> np.ndarray:
        return np.tril(np.ones((n, n), dtype=bool))

    def run(self, inps):
        x = inps[0]
        return np.where(self._keep(x.shape[-1]), x, np.float32(MASK_VALUE)).astype(x.dtype)

    def grad(self, inps, out, out_grad):
        return [np.where(self._keep(out_grad.shape[-1]), out_grad, 0).astype(out_grad.dtype)]

    def gpu_impl(self, out_id, shapes):
        n = shapes[0][-1]
        works = numel(shapes[0])
        coords = f"""        let r = (id / {n}u) % {n}u;
        let c = id % {n}u;"""
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read")],
                    works,
                    coords + f"\n        out[id] = select({wgsl_float(MASK_VALUE)}, in0[id], c <= r);",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in0_grad", "read_write")],
                    works,
                    coords + "\n        in0_grad[id] += select(0.0, out_grad[id], c <= r);",
                )
            ],
        )
