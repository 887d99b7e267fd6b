"""wgpu device backend.

Realizes graph nodes with the WGSL programs emitted by each operator's
``gpu_impl``. Kernels are compiled on first use of a node and cached by
their kernel name, which embeds the node's output tensor id. Every tensor
owns a value buffer and a gradient buffer on the device; operators may add
shared scratch buffers of their own.
"""

import atexit
import logging
import re
from typing import Dict, List, Tuple

import numpy as np
import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from wgpu_gpt.backend import Node
from wgpu_gpt.errors import DeviceError
from wgpu_gpt.funcs.base import GpuFunction, numel

logger = logging.getLogger(__name__)

# ============================================================================
# Device Singleton
# ============================================================================

_device = None

_BUFFER_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC
)

_BINDING_RE = re.compile(r"^(out|in(\d+)|aux(\d+))(_grad)?$")


def get_device():
    """Get or create the wgpu device singleton (high-performance adapter)."""
    global _device
    if _device is None:
        try:
            adapter = wgpu.gpu.request_adapter_sync(power_preference="high-performance")
        except (wgpu.GPUError, RuntimeError) as e:
            raise DeviceError(f"Unable to request a GPU adapter: {e}") from e
        if adapter is None:
            raise DeviceError("No GPU adapter available")
        info = adapter.info
        logger.info(
            "Using adapter %s (%s, %s)",
            info.get("device", "?"), info.get("adapter_type", "?"), info.get("backend_type", "?"),
        )
        try:
            _device = adapter.request_device_sync()
        except wgpu.GPUError as e:
            raise DeviceError(f"Unable to create a GPU device: {e}") from e
    return _device


def _cleanup():
    """Release the device on interpreter exit."""
    global _device
    if _device is not None:
        try:
            _device.destroy()
        except wgpu.GPUError as e:
            logger.debug("Device destroy failed: %s", e)
        _device = None


atexit.register(_cleanup)


# ============================================================================
# Compiled kernels
# ============================================================================

class _CompiledGroup:
    """Pipelines and bind groups of one node, in dispatch order."""

    def __init__(self, shared_buffers, forward, backward, refreshers):
        self.shared_buffers = shared_buffers
        self.forward: List[Tuple[object, object, Tuple[int, int]]] = forward
        self.backward: List[Tuple[object, object, Tuple[int, int]]] = backward
        self.refreshers = refreshers


class GpuBackend:
    """Device backend dispatching generated WGSL compute kernels."""

    name = "gpu"

    def __init__(self, device=None):
        self.device = device if device is not None else get_device()
        self.shapes: Dict[int, Tuple[int, ...]] = {}
        self.buffers: Dict[int, object] = {}
        self.grad_buffers: Dict[int, object] = {}
        self.groups: Dict[int, _CompiledGroup] = {}
        self.pipelines: Dict[str, object] = {}

    # ---- Storage ----

    def _create_buffer(self, count: int):
        return self.device.create_buffer(size=max(count, 1) * 4, usage=_BUFFER_USAGE)

    def alloc(self, tid, shape):
        try:
            self.buffers[tid] = self._create_buffer(numel(shape))
            self.grad_buffers[tid] = self._create_buffer(numel(shape))
        except wgpu.GPUError as e:
            raise DeviceError(f"Allocation of tensor {tid} {shape} failed: {e}") from e
        self.shapes[tid] = tuple(shape)

    def _upload(self, buffer, data: np.ndarray):
        arr = np.ascontiguousarray(data, dtype=np.float32)
        try:
            self.device.queue.write_buffer(buffer, 0, arr.tobytes())
        except wgpu.GPUError as e:
            raise DeviceError(f"Buffer upload failed: {e}") from e

    def _download(self, buffer, shape) -> np.ndarray:
        self.sync()
        try:
            data = self.device.queue.read_buffer(buffer)
        except wgpu.GPUError as e:
            raise DeviceError(f"Buffer readback failed: {e}") from e
        return np.frombuffer(data, dtype=np.float32).copy().reshape(shape)

    def write(self, tid, data):
        self._upload(self.buffers[tid], np.broadcast_to(data, self.shapes[tid]))

    def read(self, tid):
        return self._download(self.buffers[tid], self.shapes[tid])

    def write_grad(self, tid, data):
        self._upload(self.grad_buffers[tid], np.broadcast_to(data, self.shapes[tid]))

    def read_grad(self, tid):
        return self._download(self.grad_buffers[tid], self.shapes[tid])

    def zero_grad(self, tids):
        encoder = self.device.create_command_encoder()
        for tid in tids:
            encoder.clear_buffer(self.grad_buffers[tid])
        self._submit(encoder)

    # ---- Kernels ----

    def _resolve(self, node: Node, shared_buffers, name: str):
        match = _BINDING_RE.match(name)
        if match is None:
            raise DeviceError(f"Unknown kernel binding {name!r} in node {node.out}")
        is_grad = match.group(4) is not None
        if match.group(3) is not None:
            return shared_buffers[int(match.group(3))]
        tid = node.out if match.group(2) is None else node.inputs[int(match.group(2))]
        return self.grad_buffers[tid] if is_grad else self.buffers[tid]

    def _pipeline(self, func: GpuFunction):
        pipeline = self.pipelines.get(func.kernel_name)
        if pipeline is not None:
            return pipeline

        logger.debug("Compiling kernel %s", func.kernel_name)
        shader_module = self.device.create_shader_module(code=func.source_code)

        entries = []
        for i, (_, access) in enumerate(func.bindings):
            entries.append({
                "binding": i,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {
                    "type": "read-only-storage" if access == "read" else "storage",
                    "has_dynamic_offset": False,
                },
            })
        bind_group_layout = self.device.create_bind_group_layout(entries=entries)
        pipeline_layout = self.device.create_pipeline_layout(
            bind_group_layouts=[bind_group_layout]
        )
        pipeline = self.device.create_compute_pipeline(
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": func.kernel_name},
        )
        self.pipelines[func.kernel_name] = pipeline
        return pipeline

    def _prepare(self, node: Node, shared_buffers, func: GpuFunction):
        pipeline = self._pipeline(func)
        resources = []
        for i, (name, _) in enumerate(func.bindings):
            buf = self._resolve(node, shared_buffers, name)
            resources.append({
                "binding": i,
                "resource": {"buffer": buf, "offset": 0, "size": buf.size},
            })
        bind_group = self.device.create_bind_group(
            layout=pipeline.get_bind_group_layout(0),
            entries=resources,
        )
        return pipeline, bind_group, func.workgroups

    def _compiled(self, node: Node) -> _CompiledGroup:
        compiled = self.groups.get(node.out)
        if compiled is not None:
            return compiled
        group = node.op.gpu_impl(node.out, node.input_shapes)
        try:
            shared_buffers = [self._create_buffer(s.size) for s in group.shared_buffers]
            forward = [self._prepare(node, shared_buffers, f) for f in group.forward_funcs]
            backward = [self._prepare(node, shared_buffers, f) for f in group.backward_funcs]
        except wgpu.GPUError as e:
            raise DeviceError(f"Kernel compilation failed for {node.op!r} (tensor {node.out}): {e}") from e
        refreshers = [
            (shared_buffers[i], s.refresh)
            for i, s in enumerate(group.shared_buffers)
            if s.refresh is not None
        ]
        compiled = _CompiledGroup(shared_buffers, forward, backward, refreshers)
        self.groups[node.out] = compiled
        return compiled

    def _dispatch(self, kernels):
        encoder = self.device.create_command_encoder()
        for pipeline, bind_group, (x, y) in kernels:
            compute_pass = encoder.begin_compute_pass()
            compute_pass.set_pipeline(pipeline)
            compute_pass.set_bind_group(0, bind_group)
            compute_pass.dispatch_workgroups(x, y)
            compute_pass.end()
        self._submit(encoder)

    def _submit(self, encoder):
        try:
            self.device.queue.submit([encoder.finish()])
        except wgpu.GPUError as e:
            raise DeviceError(f"Kernel dispatch failed: {e}") from e

    def run_forward(self, node):
        compiled = self._compiled(node)
        for buffer, refresh in compiled.refreshers:
            self._upload(buffer, refresh())
        self._dispatch(compiled.forward)

    def run_backward(self, node):
        self._dispatch(self._compiled(node).backward)

    def sync(self):
        try:
            self.device.queue.on_submitted_work_done_sync()
        except wgpu.GPUError as e:
            raise DeviceError(f"Device synchronization failed: {e}") from e
