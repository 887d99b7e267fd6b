"""
Computation graph with reverse-mode automatic differentiation.

Tensors are identified by integer ids. Nodes are appended in creation order,
which is also the topological order used by forward evaluation and, reversed,
by backward propagation.

Core pieces:
  - Graph.alloc / Graph.load: create and fill leaf tensors
  - Graph.call: apply an operator to existing tensors
  - Graph.forward: re-evaluate nodes whose inputs changed
  - Graph.backward: accumulate gradients from a scalar loss, optionally
    stopping after a fixed number of nodes
  - Graph.optimize: hand parameters and gradients to an optimizer
"""

from typing import Dict, Iterable, List, Optional, Tuple
import logging

import numpy as np

from wgpu_gpt.backend import Backend, CpuBackend, Node
from wgpu_gpt.errors import ShapeMismatch, UnknownTensor
from wgpu_gpt.funcs.base import Function, Shape, TensorId, numel

logger = logging.getLogger(__name__)


class Graph:
    """DAG of tensors and operator nodes bound to one execution backend."""

    def __init__(self, backend: Optional[Backend] = None):
        self.backend = backend if backend is not None else CpuBackend()
        self.shapes: Dict[TensorId, Shape] = {}
        self.names: Dict[TensorId, str] = {}
        self.versions: Dict[TensorId, int] = {}
        self.nodes: List[Node] = []
        self.producers: Dict[TensorId, Node] = {}
        self.params: List[TensorId] = []
        self._by_name: Dict[str, TensorId] = {}

    def __repr__(self):
        return (f"Graph(backend={self.backend.name}, tensors={len(self.shapes)}, "
                f"nodes={len(self.nodes)}, params={len(self.params)})")

    # ---- Construction ----

    def _check(self, tid: TensorId) -> None:
        if tid not in self.shapes:
            raise UnknownTensor(f"Tensor {tid} does not exist")

    def _new_tensor(self, shape: Shape) -> TensorId:
        shape = tuple(int(s) for s in shape)
        if not shape or any(s <= 0 for s in shape):
            raise ShapeMismatch(f"Invalid tensor shape {shape}")
        tid = len(self.shapes)
        self.backend.alloc(tid, shape)
        self.shapes[tid] = shape
        self.versions[tid] = 0
        return tid

    def alloc(
        self,
        shape: Optional[Shape] = None,
        data: Optional[np.ndarray] = None,
        name: Optional[str] = None,
        is_param: bool = False,
    ) -> TensorId:
        """
        Create a leaf tensor.

        Args:
            shape: Tensor shape; inferred from ``data`` when omitted
            data: Optional initial contents (zeros otherwise)
            name: Unique name, required for parameters
            is_param: Register the tensor for optimization and checkpoints

        Returns:
            The new tensor id
        """
        if shape is None:
            if data is None:
                raise ValueError("alloc needs a shape or initial data")
            shape = np.shape(data)
        if is_param and not name:
            raise ValueError("Parameters must be named")
        if name is not None and name in self._by_name:
            raise ValueError(f"Tensor name {name!r} already in use")

        tid = self._new_tensor(shape)
        if name is not None:
            self.names[tid] = name
            self._by_name[name] = tid
        if is_param:
            self.params.append(tid)
        if data is not None:
            self.load(tid, data)
        return tid

    def call(self, op: Function, inputs: List[TensorId]) -> TensorId:
        """Apply ``op`` to ``inputs`` and return the id of its output tensor."""
        for tid in inputs:
            self._check(tid)
        input_shapes = [self.shapes[tid] for tid in inputs]
        out_shape = tuple(op.output_shape(input_shapes))
        out = self._new_tensor(out_shape)
        node = Node(
            index=len(self.nodes),
            op=op,
            inputs=list(inputs),
            out=out,
            input_shapes=input_shapes,
            out_shape=out_shape,
        )
        self.nodes.append(node)
        self.producers[out] = node
        return out

    # ---- Data access ----

    def load(self, tid: TensorId, data) -> None:
        """Overwrite a tensor's contents from host memory."""
        self._check(tid)
        arr = np.asarray(data, dtype=np.float32)
        if arr.shape != self.shapes[tid]:
            if arr.size != numel(self.shapes[tid]):
                raise ShapeMismatch(
                    f"Cannot load data of shape {arr.shape} into tensor {tid} {self.shapes[tid]}"
                )
            arr = arr.reshape(self.shapes[tid])
        self.backend.write(tid, arr)
        self.versions[tid] += 1

    def get(self, tid: TensorId) -> np.ndarray:
        self._check(tid)
        return self.backend.read(tid)

    def get_grad(self, tid: TensorId) -> np.ndarray:
        self._check(tid)
        return self.backend.read_grad(tid)

    def tensor_by_name(self, name: str) -> TensorId:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownTensor(f"No tensor named {name!r}") from None

    def named_params(self) -> List[Tuple[str, TensorId]]:
        """Parameters in registration order."""
        return [(self.names[tid], tid) for tid in self.params]

    # ---- Evaluation ----

    def forward(self, fresh: Optional[Iterable[TensorId]] = None) -> int:
        """
        Evaluate nodes in topological order.

        A node runs when one of its inputs was written since its last
        evaluation, or when its operator is volatile. Tensors in ``fresh``
        are treated as written.

        Returns:
            Number of nodes evaluated
        """
        for tid in fresh or ():
            self._check(tid)
            self.versions[tid] += 1

        evaluated = 0
        for node in self.nodes:
            seen = tuple(self.versions[tid] for tid in node.inputs)
            if node.op.volatile or node.consumed != seen:
                self.backend.run_forward(node)
                node.consumed = seen
                self.versions[node.out] += 1
                evaluated += 1
        logger.debug("forward: evaluated %d of %d nodes", evaluated, len(self.nodes))
        return evaluated

    def zero_grad(self) -> None:
        self.backend.zero_grad(list(self.shapes))

    def _reachable(self, loss: TensorId) -> set:
        seen = set()
        stack = [loss]
        while stack:
            node = self.producers.get(stack.pop())
            if node is None or node.index in seen:
                continue
            seen.add(node.index)
            stack.extend(node.inputs)
        return seen

    def backward(self, loss: TensorId, limit: Optional[int] = None) -> int:
        """
        Propagate gradients from a single-element loss tensor.

        The loss gradient is set to 1, then the nodes the loss depends on run
        their backward rules in reverse creation order, accumulating into
        their inputs' gradients. With ``limit`` set, propagation stops after
        that many nodes.

        Returns:
            Number of backward rules invoked
        """
        self._check(loss)
        if numel(self.shapes[loss]) != 1:
            raise ShapeMismatch(
                f"Loss must hold a single element, got shape {self.shapes[loss]}"
            )
        if limit is not None and limit < 0:
            raise ValueError(f"Backward limit must be non-negative, got {limit}")

        self.backend.write_grad(loss, np.ones(self.shapes[loss], dtype=np.float32))
        reachable = self._reachable(loss)

        invoked = 0
        for node in reversed(self.nodes):
            if node.index not in reachable:
                continue
            if limit is not None and invoked >= limit:
                break
            self.backend.run_backward(node)
            invoked += 1
        logger.debug("backward: invoked %d of %d reachable nodes", invoked, len(reachable))
        return invoked

    # ---- Optimization ----

    def optimize(self, optimizer, state, learning_rate: float) -> None:
        """Run one optimizer step over every parameter and store the results."""
        params = [
            (name, self.backend.read(tid), self.backend.read_grad(tid))
            for name, tid in self.named_params()
        ]
        optimizer.step(params, state, learning_rate)
        for (_, tid), (_, value, _) in zip(self.named_params(), params):
            self.backend.write(tid, value)
            self.versions[tid] += 1

    def sync(self) -> None:
        self.backend.sync()
