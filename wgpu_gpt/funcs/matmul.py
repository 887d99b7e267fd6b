"""Matrix multiplication and layout operators."""

from typing import List

import numpy as np

from wgpu_gpt.errors import ShapeMismatch
from wgpu_gpt.funcs.base import Function, GpuFunctionGroup, numel, wgsl_kernel


class MatMul(Function):
    """Batched matrix product over the last two dimensions.

    ``a`` is ``(..., m, k)``. ``b`` is either ``(k, n)``, shared by every
    batch entry (weights), or ``(..., k, n)`` with the same leading
    dimensions as ``a`` (attention).
    """

    kind = "matmul"

    def output_shape(self, shapes):
        self._check_arity(shapes, 2)
        a, b = shapes
        if len(a) < 2 or len(b) < 2:
            raise ShapeMismatch(f"matmul needs at least 2d operands, got {a} and {b}")
        if a[-1] != b[-2]:
            raise ShapeMismatch(f"matmul inner dimensions differ: {a} @ {b}")
        if len(b) > 2 and tuple(b[:-2]) != tuple(a[:-2]):
            raise ShapeMismatch(f"matmul batch dimensions differ: {a} @ {b}")
        return tuple(a[:-1]) + (b[-1],)

    def run(self, inps):
        return np.matmul(inps[0], inps[1])

    def grad(self, inps, out, out_grad):
        a, b = inps
        da = np.matmul(out_grad, np.swapaxes(b, -1, -2))
        if b.ndim == 2:
            k, n = b.shape
            db = a.reshape(-1, k).T @ out_grad.reshape(-1, n)
        else:
            db = np.matmul(np.swapaxes(a, -1, -2), out_grad)
        return [da, db]

    def gpu_impl(self, out_id, shapes):
        a, b = shapes
        m, k = a[-2], a[-1]
        n = b[-1]
        batch = numel(a[:-2])
        batched = len(b) > 2
        b_off = f"bi * {k * n}u" if batched else "0u"
        forward = wgsl_kernel(
            f"calc_{out_id}_0",
            [("out", "read_write"), ("in0", "read"), ("in1", "read")],
            batch * m * n,
            f"""        let bi = id / {m * n}u;
        let r = (id / {n}u) % {m}u;
        let c = id % {n}u;
        var s = 0.0;
        for (var i = 0u; i < {k}u; i++) {{
            s += in0[bi * {m * k}u + r * {k}u + i] * in1[{b_off} + i * {n}u + c];
        }}
        out[id] = s;""",
        )
        grad_a = wgsl_kernel(
            f"grad_{out_id}_0",
            [("out_grad", "read"), ("in1", "read"), ("in0_grad", "read_write")],
            batch * m * k,
            f"""        let bi = id / {m * k}u;
        let r = (id / {k}u) % {m}u;
        let i = id % {k}u;
        var s = 0.0;
        for (var c = 0u; c < {n}u; c++) {{
            s += out_grad[bi * {m * n}u + r * {n}u + c] * in1[{b_off} + i * {n}u + c];
        }}
        in0_grad[id] += s;""",
        )
        if batched:
            grad_b = wgsl_kernel(
                f"grad_{out_id}_1",
                [("out_grad", "read"), ("in0", "read"), ("in1_grad", "read_write")],
                batch * k * n,
                f"""        let bi = id / {k * n}u;
        let i = (id / {n}u) % {k}u;
        let c = id % {n}u;
        var s = 0.0;
        for (var r = 0u; r < {m}u; r++) {{
            s += in0[bi * {m * k}u + r * {k}u + i] * out_grad[bi * {m * n}u + r * {n}u + c];
        }}
        in1_grad[id] += s;""",
            )
        else:
            grad_b = wgsl_kernel(
                f"grad_{out_id}_1",
                [("out_grad", "read"), ("in0", "read"), ("in1_grad", "read_write")],
                k * n,
                f"""        let i = id / {n}u;
        let c = id % {n}u;
        var s = 0.0;
        for (var r = 0u; r < {batch * m}u; r++) {{
            s += in0[r * {k}u + i] * out_grad[r * {n}u + c];
        }}
        in1_grad[id] += s;""",
            )
        return GpuFunctionGroup(forward_funcs=[forward], backward_funcs=[grad_a, grad_b])


class Transpose(Function):
    """Swap the last two dimensions."""

    kind = "transpose"

    def output_shape(self, shapes):
        self._check_arity(shapes, 1)
        (a,) = shapes
        if len(a) < 2:
            raise ShapeMismatch(f"transpose needs at least 2 dimensions, got {a}")
        return tuple(a[:-2]) + (a[-1], a[-2])

    def run(self, inps):
        return np.ascontiguousarray(np.swapaxes(inps[0], -1, -2))

    def grad(self, inps, out, out_grad):
        return [np.swapaxes(out_grad, -1, -2)]

    def gpu_impl(self, out_id, shapes):
        (a,) = shapes
        m, n = a[-2], a[-1]
        works = numel(a)
        return GpuFunctionGroup(
            forward_funcs=[
                wgsl_kernel(
                    f"calc_{out_id}_0",
                    [("out", "read_write"), ("in0", "read")],
                    works,
                    f"""        let bi = id / {m * n}u;
        let i = (id / {m}u) % {n}u;
        let j = id % {m}u;
        out[id] = in0[bi * {m * n}u + j * {n}u + i];""",
                )
            ],
            backward_funcs=[
                wgsl_kernel(
                    f"grad_{out_id}_0",
                    [("out_grad", "read"), ("in0_grad", "read_write")],
                    works,
                    f"""        let bi = id / {m * n}u;
        let r = (id / {n}u) % {m}u;
        let c = id % {n}u;
        in0_grad[id] += out_grad[bi * {m * n}u + c * {m}u + r];""",
                )
            ],
        )


class Concat(Function):
    """Concatenate inputs along the last dimension."""

    kind = "concat"

    def output_shape(self, shapes):
        if not shapes:
            raise ShapeMismatch("concat needs at least one input")
        lead = tuple(shapes[0][:-1])
        for s in shapes[1:]:
            if tuple(s[:-1]) != lead:
                raise ShapeMismatch(f"concat leading dimensions differ: {shapes}")
        return lead + (sum(s[-1] for s in shapes),)

    def run(self, inps):
        return np.concatenate(inps, axis=-1)

    def grad(self, inps, out, out_grad):
        grads: List[np.ndarray] = []
        offset = 0
        for x in inps:
            width = x.shape[-1]
            grads.append(out_grad[..., offset:offset + width])
            offset += width
        return grads

    def gpu_impl(self, out_id, shapes):
        total = sum(s[-1] for s in shapes)
        group = GpuFunctionGroup()
        offset = 0
        # One kernel per input keeps the number of bindings per program small.
        for k, s in enumerate(shapes):
            width = s[-1]
            works = numel(s)
            index = f"(id / {width}u) * {total}u + {offset}u + id % {width}u"
            group.forward_funcs.append(
                wgsl_kernel(
                    f"calc_{out_id}_{k}",
                    [("out", "read_write"), (f"in{k}", "read")],
                    works,
                    f"        out[{index}] = in{k}[id];",
                )
            )
            group.backward_funcs.append(
                wgsl_kernel(
                    f"grad_{out_id}_{k}",
                    [("out_grad", "read"), (f"in{k}_grad", "read_write")],
                    works,
                    f"        in{k}_grad[id] += out_grad[{index}];",
                )
            )
            offset += width
        return group
