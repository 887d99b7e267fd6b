"""
Training state and its on-disk format.

A checkpoint is a single ``.npz`` archive:

  __order__            parameter names in graph order
  tensor/<name>        parameter values
  opt/<name>/<key>     optimizer auxiliary arrays
  step                 optimizer step counter

Files are written to a temporary sibling and renamed into place, so a
checkpoint on disk is always complete.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict
import logging
import os

import numpy as np

from wgpu_gpt.errors import CheckpointMismatch
from wgpu_gpt.optimizer import OptimizerState

logger = logging.getLogger(__name__)


@dataclass
class TrainingState:
    """Parameter values (in graph order) plus the optimizer state."""

    tensors: Dict[str, np.ndarray] = field(default_factory=OrderedDict)
    optimizer: OptimizerState = field(default_factory=OptimizerState)


def save_training_state(path, state: TrainingState) -> None:
    """Serialize ``state`` to ``path`` atomically."""
    arrays = {"__order__": np.array(list(state.tensors), dtype=np.str_)}
    for name, value in state.tensors.items():
        arrays[f"tensor/{name}"] = np.asarray(value)
    for name, slots in state.optimizer.state.items():
        for key, value in slots.items():
            arrays[f"opt/{name}/{key}"] = np.asarray(value)
    arrays["step"] = np.array(state.optimizer.step, dtype=np.int64)

    path = os.fspath(path)
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "wb") as f:
            np.savez(f, **arrays)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    logger.info("Saved training state (%d tensors, step %d) to %s",
                len(state.tensors), state.optimizer.step, path)


def load_training_state(path) -> TrainingState:
    """Read a checkpoint written by ``save_training_state``."""
    with np.load(os.fspath(path), allow_pickle=False) as data:
        keys = set(data.files)
        if "__order__" not in keys or "step" not in keys:
            raise CheckpointMismatch(f"{path} is not a training state checkpoint")

        tensors = OrderedDict()
        for name in data["__order__"].tolist():
            key = f"tensor/{name}"
            if key not in keys:
                raise CheckpointMismatch(f"{path} lacks tensor {name!r}")
            tensors[name] = data[key]

        opt_state: Dict[str, Dict[str, np.ndarray]] = {}
        for key in sorted(keys):
            if not key.startswith("opt/"):
                continue
            name, _, slot = key[len("opt/"):].rpartition("/")
            opt_state.setdefault(name, {})[slot] = data[key]

        step = int(data["step"])

    return TrainingState(tensors=tensors, optimizer=OptimizerState(step=step, state=opt_state))
