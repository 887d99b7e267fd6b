"""Token embedding lookup.

Token ids travel through the graph as float32 values; they are exact for
any vocabulary below 2**24 entries.
"""

import numpy as np

from wgpu_gpt.errors import ShapeMismatch
from wgpu_gpt.funcs.base import Function, GpuFunctionGroup, numel, wgsl_kernel


class Embedding(Function):
    """out[..., :] = table[ids[...], :]

    Inputs are ``(ids, table)``; ``ids`` receives no gradient.
    """

    kind = "embedding"

    def output_shape(self, shapes):
        self._check_arity(shapes, 2)
        ids, table = shapes
        if len(table) != 2:
            raise ShapeMismatch(f"embedding table must be 2d, got {table}")
        return tuple(ids) + (table[1],)

    def run(self, inps):
        ids, table = inps
        return table[ids.astype(np.int64)]

    def grad(self, inps, out, out_grad):
        ids, table = inps
        d_table = np.zeros_like(table)
        # np.add.at accumulates repeated ids in index order.
        np.add.at(d_table, ids.astype(np.int64).reshape(-1), out_grad.reshape(-1, table.shape[1]))
        return [None, d_table]

    def gpu_impl(self, out_id, shapes):
        ids, table = shapes
        positions = numel(ids)
        vocab, dim = table
        forward = wgsl_kernel(
            f"calc_{out_id}_0",
            [("out", "read_write"), ("in0", "read"), ("in1", "read")],
            positions * dim,
            f"""        let p = id / {dim}u;
        let j = id % {dim}u;
        out[id] = in1[u32(in0[p]) * {dim}u + j];""",
        )
        # Gather over positions per table entry: no atomics, fixed order.
        backward = wgsl_kernel(
            f"grad_{out_id}_1",
            [("out_grad", "read"), ("in0", "read"), ("in1_grad", "read_write")],
            vocab * dim,
            f"""        let v = id / {dim}u;
        let j = id % {dim}u;
        var s = 0.0;
        for (var p = 0u; p < {positions}u; p++) {{
            if (u32(in0[p]) == v) {{
                s += out_grad[p * {dim}u + j];
            }}
        }}
        in1_grad[id] += s;""",
        )
        return GpuFunctionGroup(forward_funcs=[forward], backward_funcs=[backward])
