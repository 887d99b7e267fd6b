"""Operator registry.

Each operator kind is one class carrying its shape, forward, backward and
WGSL codegen rules side by side. ``REGISTRY`` maps the ``kind`` tag to the
class.
"""

from wgpu_gpt.funcs.base import (
    Function, GpuFunction, GpuFunctionGroup, SharedBuffer, TensorId, Shape, numel,
)
from wgpu_gpt.funcs.elementwise import Add, Mul, Coeff, Gelu, Relu, Dropout
from wgpu_gpt.funcs.matmul import MatMul, Transpose, Concat
from wgpu_gpt.funcs.normalize import LayerNorm, Softmax, TrilMask
from wgpu_gpt.funcs.embedding import Embedding
from wgpu_gpt.funcs.loss import CrossEntropy

REGISTRY = {
    cls.kind: cls
    for cls in (
        Add, Mul, Coeff, Gelu, Relu, Dropout,
        MatMul, Transpose, Concat,
        LayerNorm, Softmax, TrilMask,
        Embedding, CrossEntropy,
    )
}

__all__ = [
    "Function", "GpuFunction", "GpuFunctionGroup", "SharedBuffer",
    "TensorId", "Shape", "numel",
    "Add", "Mul", "Coeff", "Gelu", "Relu", "Dropout",
    "MatMul", "Transpose", "Concat",
    "LayerNorm", "Softmax", "TrilMask",
    "Embedding", "CrossEntropy",
    "REGISTRY",
]
