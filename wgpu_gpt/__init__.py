"""
wgpu_gpt: a small GPT trained on its own autodiff graph, on CPU or via wgpu.

Provides a computation graph with reverse-mode differentiation whose
operators run either as numpy routines or as generated WGSL compute shaders
dispatched through wgpu-py.

Modules:
    graph        - Computation graph, forward/backward evaluation
    funcs        - Operator kinds (shape, forward, backward and WGSL rules)
    backend      - Backend interface and the numpy backend
    wgpu_device  - wgpu backend (imported lazily, needs a GPU adapter)
    optimizer    - AdamW and learning-rate schedules
    gpt          - Transformer model, training and inference
    checkpoint   - Training state save/load
    tokenizer    - Character tokenizer
"""

from wgpu_gpt.errors import (
    GraphError, ShapeMismatch, UnknownTensor, DeviceError, CheckpointMismatch,
)

from wgpu_gpt.backend import Backend, CpuBackend, Node, make_backend

from wgpu_gpt.graph import Graph

from wgpu_gpt.optimizer import AdamW, OptimizerState, linear_warmup_decay

from wgpu_gpt.checkpoint import TrainingState, save_training_state, load_training_state

from wgpu_gpt.gpt import GPT, GPTConfig, sample_batch

from wgpu_gpt.tokenizer import CharTokenizer

__version__ = "0.1.0"

__all__ = [
    # Errors
    "GraphError", "ShapeMismatch", "UnknownTensor", "DeviceError", "CheckpointMismatch",
    # Engine
    "Backend", "CpuBackend", "Node", "make_backend", "Graph",
    # Training
    "AdamW", "OptimizerState", "linear_warmup_decay",
    "TrainingState", "save_training_state", "load_training_state",
    # Model
    "GPT", "GPTConfig", "sample_batch", "CharTokenizer",
]
