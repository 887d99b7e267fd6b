"""GPT language model assembled on the computation graph.

Architecture:
    Token Embedding (vocab_size -> embedding_degree) + Learned Position Embedding
    -> num_layers x Block:
        Pre-LayerNorm -> per-head causal self-attention -> Concat -> Proj -> Residual
        Pre-LayerNorm -> FeedForward(GELU) -> Residual
    -> Final LayerNorm
    -> Head: Linear(vocab_size) -> CrossEntropy

The graph is built once for a fixed ``(batch_size, num_tokens)`` window.
Training writes a sampled batch into it; inference writes the running
context into the first row and reads logits back from the same graph.

Usage:
    graph = Graph(make_backend("cpu"))
    gpt = GPT(np.random.default_rng(0), graph, GPTConfig(vocab_size=65))
    losses = gpt.train(dataset, steps=100, batch_size=32, backward_limit=None,
                       optimizer=AdamW(), learning_rate_fn=linear_warmup_decay())
    ids = gpt.infer(rng, prompt_ids, count=100, temperature=0.5)
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple
import copy
import logging
import time

import numpy as np

from wgpu_gpt.checkpoint import TrainingState
from wgpu_gpt.errors import CheckpointMismatch
from wgpu_gpt.funcs import (
    Add, Coeff, Concat, CrossEntropy, Dropout, Embedding, Gelu, LayerNorm,
    MatMul, Mul, Softmax, Transpose, TrilMask,
)
from wgpu_gpt.funcs.base import numel
from wgpu_gpt.graph import Graph
from wgpu_gpt.optimizer import Optimizer, OptimizerState

logger = logging.getLogger(__name__)


@dataclass
class GPTConfig:
    """Model hyperparameters."""

    vocab_size: int
    num_tokens: int = 64  # context window
    embedding_degree: int = 64  # d_model
    num_layers: int = 4
    num_heads: int = 4
    head_size: int = 16
    dropout: float = 0.0
    batch_size: int = 32

    def __post_init__(self):
        for name in ("vocab_size", "num_tokens", "embedding_degree",
                     "num_layers", "num_heads", "head_size", "batch_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.num_heads * self.head_size != self.embedding_degree:
            raise ValueError(
                f"num_heads * head_size ({self.num_heads} * {self.head_size}) "
                f"must equal embedding_degree ({self.embedding_degree})"
            )
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {self.dropout}")


def sample_batch(
    rng: np.random.Generator, dataset: np.ndarray, batch_size: int, num_tokens: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Draw ``batch_size`` contiguous windows and their next-token targets."""
    if len(dataset) < num_tokens + 1:
        raise ValueError(
            f"Dataset has {len(dataset)} tokens, need at least {num_tokens + 1}"
        )
    starts = rng.integers(0, len(dataset) - num_tokens, size=batch_size)
    xs = np.stack([dataset[s:s + num_tokens] for s in starts])
    ys = np.stack([dataset[s + 1:s + num_tokens + 1] for s in starts])
    return xs, ys


class GPT:
    """
    Decoder-only transformer bound to a graph.

    Args:
        rng: Generator for weight init and dropout masks
        graph: Empty graph to build the model into
        config: Model hyperparameters
    """

    def __init__(self, rng: np.random.Generator, graph: Graph, config: GPTConfig):
        self.rng = rng
        self.graph = graph
        self.config = config
        self.optimizer_state = OptimizerState()
        self._dropouts: List[Dropout] = []
        self._build()

    def _xavier_uniform(self, rows: int, cols: int) -> np.ndarray:
        limit = np.sqrt(6.0 / (rows + cols))
        return self.rng.uniform(-limit, limit, (rows, cols)).astype(np.float32)

    def _param(self, name: str, data: np.ndarray) -> int:
        return self.graph.alloc(data=data, name=name, is_param=True)

    def _linear(self, x: int, name: str, d_in: int, d_out: int, bias: bool = True) -> int:
        w = self._param(f"{name}.weight", self._xavier_uniform(d_in, d_out))
        y = self.graph.call(MatMul(), [x, w])
        if bias:
            b = self._param(f"{name}.bias", np.zeros(d_out, dtype=np.float32))
            y = self.graph.call(Add(), [y, b])
        return y

    def _norm(self, x: int, name: str) -> int:
        d = self.config.embedding_degree
        gamma = self._param(f"{name}.gamma", np.ones(d, dtype=np.float32))
        beta = self._param(f"{name}.beta", np.zeros(d, dtype=np.float32))
        y = self.graph.call(LayerNorm(), [x])
        y = self.graph.call(Mul(), [y, gamma])
        return self.graph.call(Add(), [y, beta])

    def _dropout(self, x: int) -> int:
        op = Dropout(self.config.dropout, self.rng)
        self._dropouts.append(op)
        return self.graph.call(op, [x])

    def _attention(self, x: int, i: int) -> int:
        g = self.graph
        cfg = self.config
        heads = []
        for h in range(cfg.num_heads):
            prefix = f"layers.{i}.attn.heads.{h}"
            q = self._linear(x, f"{prefix}.W_q", cfg.embedding_degree, cfg.head_size, bias=False)
            k = self._linear(x, f"{prefix}.W_k", cfg.embedding_degree, cfg.head_size, bias=False)
            v = self._linear(x, f"{prefix}.W_v", cfg.embedding_degree, cfg.head_size, bias=False)
            scores = g.call(MatMul(), [q, g.call(Transpose(), [k])])
            scores = g.call(Coeff(1.0 / np.sqrt(cfg.head_size)), [scores])
            scores = g.call(TrilMask(), [scores])
            att = g.call(Softmax(), [scores])
            att = self._dropout(att)
            heads.append(g.call(MatMul(), [att, v]))
        cat = g.call(Concat(), heads)
        out = self._linear(cat, f"layers.{i}.attn.W_o", cfg.embedding_degree, cfg.embedding_degree)
        return self._dropout(out)

    def _feed_forward(self, x: int, i: int) -> int:
        d = self.config.embedding_degree
        y = self._linear(x, f"layers.{i}.ff.linear1", d, 4 * d)
        y = self.graph.call(Gelu(), [y])
        y = self._linear(y, f"layers.{i}.ff.linear2", 4 * d, d)
        return self._dropout(y)

    def _build(self):
        g = self.graph
        cfg = self.config
        window = (cfg.batch_size, cfg.num_tokens)

        self.inputs = g.alloc(shape=window, name="inputs")
        self.targets = g.alloc(shape=window, name="targets")

        token_embedding = self._param(
            "token_embedding.weight", self._xavier_uniform(cfg.vocab_size, cfg.embedding_degree)
        )
        pos_embedding = self._param(
            "pos_embedding.weight", self._xavier_uniform(cfg.num_tokens, cfg.embedding_degree)
        )
        x = g.call(Embedding(), [self.inputs, token_embedding])
        x = g.call(Add(), [x, pos_embedding])

        for i in range(cfg.num_layers):
            x = g.call(Add(), [x, self._attention(self._norm(x, f"layers.{i}.norm1"), i)])
            x = g.call(Add(), [x, self._feed_forward(self._norm(x, f"layers.{i}.norm2"), i)])

        x = self._norm(x, "final_norm")
        self.logits = self._linear(x, "head", cfg.embedding_degree, cfg.vocab_size)
        self.loss = g.call(CrossEntropy(), [self.logits, self.targets])
        logger.info("Built GPT: %d parameters, %d graph nodes", self.num_params(), len(g.nodes))

    # ---- Introspection ----

    def num_params(self) -> int:
        return sum(numel(self.graph.shapes[tid]) for _, tid in self.graph.named_params())

    def set_training(self, training: bool) -> None:
        """Enable or disable dropout."""
        for op in self._dropouts:
            op.training = training

    def sync(self) -> None:
        """Block until all submitted device work is complete."""
        self.graph.sync()

    # ---- Training state ----

    def get_training_state(self) -> TrainingState:
        self.sync()
        tensors = OrderedDict(
            (name, self.graph.get(tid)) for name, tid in self.graph.named_params()
        )
        return TrainingState(tensors=tensors, optimizer=copy.deepcopy(self.optimizer_state))

    def set_training_state(self, state: TrainingState, strict: bool = True) -> None:
        """
        Restore parameters and optimizer state.

        Strict loading requires the same parameter names, order and shapes as
        this model and validates everything before writing. Otherwise
        matching tensors are copied and the rest skipped with a warning.
        """
        params = self.graph.named_params()
        if strict:
            names = [name for name, _ in params]
            if list(state.tensors) != names:
                raise CheckpointMismatch(
                    f"Parameter set differs: checkpoint has {len(state.tensors)} tensors, "
                    f"model has {len(names)}"
                )
            for name, tid in params:
                if tuple(np.shape(state.tensors[name])) != self.graph.shapes[tid]:
                    raise CheckpointMismatch(
                        f"Shape of {name!r} differs: checkpoint "
                        f"{np.shape(state.tensors[name])}, model {self.graph.shapes[tid]}"
                    )
            shapes = {name: self.graph.shapes[tid] for name, tid in params}
            for name, slots in state.optimizer.state.items():
                if name not in shapes:
                    raise CheckpointMismatch(f"Optimizer state for unknown parameter {name!r}")
                for key, value in slots.items():
                    if tuple(np.shape(value)) != shapes[name]:
                        raise CheckpointMismatch(
                            f"Optimizer slot {name}/{key} has shape {np.shape(value)}, "
                            f"parameter has {shapes[name]}"
                        )
            for name, tid in params:
                self.graph.load(tid, state.tensors[name])
            self.optimizer_state = copy.deepcopy(state.optimizer)
            return

        loaded = set()
        for name, tid in params:
            value = state.tensors.get(name)
            if value is None:
                logger.warning("Checkpoint has no tensor %r; keeping initial value", name)
                continue
            if tuple(np.shape(value)) != self.graph.shapes[tid]:
                logger.warning("Skipping %r: checkpoint shape %s, model shape %s",
                               name, np.shape(value), self.graph.shapes[tid])
                continue
            self.graph.load(tid, value)
            loaded.add(name)
        for name in state.tensors:
            if name not in loaded and name not in dict(params):
                logger.warning("Skipping %r: not a parameter of this model", name)
        shapes = dict((name, self.graph.shapes[tid]) for name, tid in params)
        slots = {}
        for name, entry in state.optimizer.state.items():
            if name not in loaded:
                continue
            if any(tuple(np.shape(v)) != shapes[name] for v in entry.values()):
                logger.warning("Dropping optimizer state of %r: slot shapes differ", name)
                continue
            slots[name] = copy.deepcopy(entry)
        self.optimizer_state = OptimizerState(step=state.optimizer.step, state=slots)

    # ---- Training ----

    def train(
        self,
        dataset: Sequence[int],
        steps: int,
        batch_size: int,
        backward_limit: Optional[int],
        optimizer: Optimizer,
        learning_rate_fn: Callable[[int], float],
        callback: Optional[Callable[["GPT"], None]] = None,
        callback_every: int = 50,
        rng: Optional[np.random.Generator] = None,
    ) -> List[float]:
        """
        Run ``steps`` optimization steps on random windows of ``dataset``.

        Args:
            dataset: Token id stream
            steps: Number of optimizer steps
            batch_size: Must equal the batch size the graph was built for
            backward_limit: Stop backward after this many nodes (None = all)
            optimizer: Update rule, e.g. AdamW
            learning_rate_fn: Maps the optimizer step counter to a learning rate
            callback: Called with the model every ``callback_every`` steps
            rng: Batch sampler generator (defaults to the model's)

        Returns:
            Loss of every step
        """
        if batch_size != self.config.batch_size:
            raise ValueError(
                f"Graph was built for batch size {self.config.batch_size}, got {batch_size}"
            )
        rng = rng if rng is not None else self.rng
        data = np.asarray(dataset, dtype=np.int64)
        g = self.graph
        self.set_training(True)

        losses = []
        for _ in range(steps):
            start = time.perf_counter()
            xs, ys = sample_batch(rng, data, batch_size, self.config.num_tokens)
            g.load(self.inputs, xs)
            g.load(self.targets, ys)
            g.zero_grad()
            g.forward()
            loss = float(g.get(self.loss)[0])
            g.backward(self.loss, backward_limit)
            lr = learning_rate_fn(self.optimizer_state.step)
            g.optimize(optimizer, self.optimizer_state, lr)
            losses.append(loss)

            step = self.optimizer_state.step
            logger.info("Step: %d Loss: %.4f LR: %.6f Elapsed: %.1fms",
                        step, loss, lr, (time.perf_counter() - start) * 1000)
            if callback is not None and step % callback_every == 0:
                callback(self)
                self.set_training(True)
        return losses

    # ---- Inference ----

    def infer(
        self,
        rng: np.random.Generator,
        prompt: Sequence[int],
        count: int,
        temperature: float,
        callback: Optional[Callable[[int], None]] = None,
    ) -> List[int]:
        """
        Autoregressively extend ``prompt`` by ``count`` tokens.

        Temperature 0 picks the most likely token; higher values sample from
        the tempered distribution. ``callback`` receives each new token.

        Returns:
            Prompt followed by the generated tokens
        """
        if temperature < 0:
            raise ValueError(f"temperature must be non-negative, got {temperature}")
        if len(prompt) == 0:
            raise ValueError("prompt must contain at least one token")

        cfg = self.config
        g = self.graph
        self.set_training(False)
        tokens = [int(t) for t in prompt]
        window = np.zeros((cfg.batch_size, cfg.num_tokens), dtype=np.float32)

        for _ in range(count):
            context = tokens[-cfg.num_tokens:]
            window[...] = 0
            window[0, :len(context)] = context
            g.load(self.inputs, window)
            g.forward()
            logits = g.get(self.logits)[0, len(context) - 1].astype(np.float64)

            if temperature == 0:
                token = int(np.argmax(logits))
            else:
                z = logits / temperature
                p = np.exp(z - z.max())
                p /= p.sum()
                token = int(rng.choice(len(p), p=p))

            tokens.append(token)
            if callback is not None:
                callback(token)
        return tokens
