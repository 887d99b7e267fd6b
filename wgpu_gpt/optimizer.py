"""Optimizers and learning-rate schedules."""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Protocol, Tuple

import numpy as np

# (name, value, gradient); values are updated in place
ParamSlot = Tuple[str, np.ndarray, np.ndarray]


@dataclass
class OptimizerState:
    """Global step counter plus auxiliary arrays per parameter name."""

    step: int = 0
    state: Dict[str, Dict[str, np.ndarray]] = field(default_factory=dict)


class Optimizer(Protocol):
    def step(self, params: List[ParamSlot], state: OptimizerState, learning_rate: float) -> None:
        ...


class AdamW:
    """AdamW optimizer with decoupled weight decay."""

    def __init__(
        self,
        betas: Tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.01,
    ):
        self.betas = betas
        self.eps = eps
        self.weight_decay = weight_decay

    def step(self, params, state, learning_rate):
        """Perform a single optimization step on the given parameters."""
        beta1, beta2 = self.betas
        state.step += 1
        step = state.step

        for name, value, grad in params:
            slot = state.state.get(name)
            if slot is None:
                slot = {"m": np.zeros_like(value), "v": np.zeros_like(value)}
                state.state[name] = slot
            m, v = slot["m"], slot["v"]

            # m = beta1 * m + (1 - beta1) * grad
            m *= beta1
            m += (1 - beta1) * grad
            # v = beta2 * v + (1 - beta2) * grad^2
            v *= beta2
            v += (1 - beta2) * (grad ** 2)

            m_hat = m / (1 - beta1 ** step)
            v_hat = v / (1 - beta2 ** step)

            # param = param - lr * (m_hat / (sqrt(v_hat) + eps) + wd * param)
            update = learning_rate * (
                m_hat / (np.sqrt(v_hat) + self.eps) + self.weight_decay * value
            )
            value -= update.astype(value.dtype, copy=False)

    def __repr__(self):
        return f"AdamW(betas={self.betas}, eps={self.eps}, weight_decay={self.weight_decay})"


def linear_warmup_decay(
    base_lr: float = 0.001,
    min_lr: float = 0.00001,
    warmup_steps: int = 100,
    decay_steps: int = 50000,
) -> Callable[[int], float]:
    """
    Linear warm-up to ``base_lr``, then linear decay down to ``min_lr``.

    Returns a pure function of the step index.
    """

    def learning_rate(step: int) -> float:
        if step < warmup_steps:
            return base_lr / warmup_steps * step
        return max(min_lr, base_lr - (base_lr - min_lr) * (step - warmup_steps) / decay_steps)

    return learning_rate
