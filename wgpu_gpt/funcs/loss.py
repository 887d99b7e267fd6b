"""Loss operators."""

import numpy as np

from wgpu_gpt.errors import ShapeMismatch
from wgpu_gpt.funcs.base import (
    Function, GpuFunctionGroup, SharedBuffer, split_last, wgsl_kernel,
)


class CrossEntropy(Function):
    """Mean softmax cross entropy over all positions.

    Inputs are ``(logits, targets)`` with ``logits`` shaped ``(..., vocab)``
    and ``targets`` holding one class id per row. The output is a single
    element, so it can seed ``Graph.backward``.
    """

    kind = "cross_entropy"

    def output_shape(self, shapes):
        self._check_arity(shapes, 2)
        logits, targets = shapes
        if tuple(targets) != tuple(logits[:-1]):
            raise ShapeMismatch(
                f"cross_entropy targets {targets} do not match logits {logits}"
            )
        return (1,)

    def _rows(self, logits, targets):
        rows, width = split_last(logits.shape)
        return logits.reshape(rows, width), targets.reshape(rows).astype(np.int64)

    def run(self, inps):
        x, t = self._rows(*inps)
        mx = x.max(axis=-1, keepdims=True)
        lse = np.log(np.exp(x - mx).sum(axis=-1)) + mx[:, 0]
        losses = lse - x[np.arange(len(t)), t]
        return np.array([losses.mean()], dtype=inps[0].dtype)

    def grad(self, inps, out, out_grad):
        x, t = self._rows(*inps)
        e = np.exp(x - x.max(axis=-1, keepdims=True))
        p = e / e.sum(axis=-1, keepdims=True)
        p[np.arange(len(t)), t] -= 1
        d_logits = p * (out_grad[0] / len(t))
        return [d_logits.reshape(inps[0].shape), None]

    def gpu_impl(self, out_id, shapes):
        rows, width = split_last(shapes[0])
        # aux0: row max, aux1: row sum of exp, aux2: per-row loss
        per_row = wgsl_kernel(
            f"calc_{out_id}_0",
            [("in0", "read"), ("in1", "read"), ("aux0", "read_write"),
             ("aux1", "read_write"), ("aux2", "read_write")],
            rows,
            f"""        let base = id * {width}u;
        var mx = in0[base];
        for (var j = 1u; j < {width}u; j++) {{
            mx = max(mx, in0[base + j]);
        }}
        var total = 0.0;
        for (var j = 0u; j < {width}u; j++) {{
            total += exp(in0[base + j] - mx);
        }}
        aux0[id] = mx;
        aux1[id] = total;
        aux2[id] = log(total) + mx - in0[base + u32(in1[id])];""",
        )
        mean = wgsl_kernel(
            f"calc_{out_id}_1",
            [("out", "read_write"), ("aux2", "read")],
            1,
            f"""        var s = 0.0;
        for (var r = 0u; r < {rows}u; r++) {{
            s += aux2[r];
        }}
        out[0] = s / {rows}.0;""",
        )
        backward = wgsl_kernel(
            f"grad_{out_id}_0",
            [("out_grad", "read"), ("in0", "read"), ("in1", "read"), ("aux0", "read"),
             ("aux1", "read"), ("in0_grad", "read_write")],
            rows * width,
            f"""        let row = id / {width}u;
        let j = id % {width}u;
        var p = exp(in0[id] - aux0[row]) / aux1[row];
        if (j == u32(in1[row])) {{
            p = p - 1.0;
        }}
        in0_grad[id] += out_grad[0] * p / {rows}.0;""",
        )
        return GpuFunctionGroup(
            forward_funcs=[per_row, mean],
            backward_funcs=[backward],
            shared_buffers=[SharedBuffer(rows), SharedBuffer(rows), SharedBuffer(rows)],
        )
