"""GPT assembly, training driver, inference and training state handling."""

import logging

import numpy as np
import pytest

from wgpu_gpt.checkpoint import TrainingState, load_training_state, save_training_state
from wgpu_gpt.errors import CheckpointMismatch
from wgpu_gpt.gpt import GPT, GPTConfig, sample_batch
from wgpu_gpt.graph import Graph
from wgpu_gpt.optimizer import AdamW, linear_warmup_decay


def small_config(**overrides):
    params = dict(vocab_size=5, num_tokens=4, embedding_degree=8, num_layers=1,
                  num_heads=2, head_size=4, dropout=0.0, batch_size=2)
    params.update(overrides)
    return GPTConfig(**params)


def make_gpt(seed=0, **overrides):
    return GPT(np.random.default_rng(seed), Graph(), small_config(**overrides))


def constant_lr(value):
    return lambda step: value


# ---- Config and assembly ----

def test_config_validation():
    with pytest.raises(ValueError):
        small_config(num_heads=3)
    with pytest.raises(ValueError):
        small_config(vocab_size=0)
    with pytest.raises(ValueError):
        small_config(dropout=1.0)


def test_num_params():
    gpt = make_gpt()
    V, T, E = 5, 4, 8
    per_layer = 2 * 2 * E + 3 * E * E + (E * E + E) + (E * 4 * E + 4 * E) + (4 * E * E + E)
    expected = V * E + T * E + per_layer + 2 * E + (E * V + V)
    assert gpt.num_params() == expected


def test_parameter_names():
    gpt = make_gpt(num_layers=2)
    names = [name for name, _ in gpt.graph.named_params()]
    assert names[0] == "token_embedding.weight"
    assert names[1] == "pos_embedding.weight"
    assert "layers.1.attn.heads.1.W_v.weight" in names
    assert "layers.0.ff.linear2.bias" in names
    assert names[-1] == "head.bias"
    assert len(names) == len(set(names))


def test_loss_is_scalar_near_uniform():
    gpt = make_gpt()
    gpt.graph.load(gpt.inputs, np.array([[0, 1, 2, 3], [4, 3, 2, 1]]))
    gpt.graph.load(gpt.targets, np.array([[1, 2, 3, 4], [3, 2, 1, 0]]))
    gpt.graph.forward()
    loss = gpt.graph.get(gpt.loss)
    assert loss.shape == (1,)
    assert 0.5 * np.log(5) < loss[0] < 3 * np.log(5)


# ---- Batching ----

def test_sample_batch_shapes_and_shift(rng):
    data = np.arange(20)
    xs, ys = sample_batch(rng, data, 3, 5)
    assert xs.shape == (3, 5) and ys.shape == (3, 5)
    assert np.array_equal(ys, xs + 1)
    with pytest.raises(ValueError):
        sample_batch(rng, np.arange(5), 3, 5)


def test_train_argument_errors():
    gpt = make_gpt()
    with pytest.raises(ValueError):
        gpt.train([0, 1] * 10, 1, 3, None, AdamW(), constant_lr(0.01))
    with pytest.raises(ValueError):
        gpt.train([0, 1, 2], 1, 2, None, AdamW(), constant_lr(0.01))


# ---- Training ----

def two_token_run(seed):
    gpt = GPT(np.random.default_rng(seed), Graph(), small_config(vocab_size=2))
    losses = gpt.train([0, 1] * 32, 80, 2, None, AdamW(), constant_lr(0.01),
                       rng=np.random.default_rng(seed + 1))
    return gpt, losses


def test_two_token_training_reduces_loss():
    gpt, losses = two_token_run(3)
    assert len(losses) == 80
    assert np.mean(losses[-5:]) < 0.5 * losses[0]
    assert gpt.optimizer_state.step == 80

    tokens = gpt.infer(np.random.default_rng(0), [0], 6, 0.0)
    assert tokens == [0, 1, 0, 1, 0, 1, 0]


def test_training_is_deterministic():
    _, first = two_token_run(5)
    _, second = two_token_run(5)
    assert first == second


def test_callback_every_n_steps():
    gpt = make_gpt()
    seen = []
    gpt.train(list(range(5)) * 4, 7, 2, None, AdamW(), constant_lr(0.01),
              callback=lambda model: seen.append(model.optimizer_state.step), callback_every=3)
    assert seen == [3, 6]


def test_backward_limit_leaves_parameters_without_gradient():
    gpt = make_gpt()
    emb = gpt.graph.tensor_by_name("token_embedding.weight")
    before = gpt.graph.get(emb)
    gpt.train(list(range(5)) * 4, 1, 2, 1, AdamW(weight_decay=0.01), constant_lr(0.1))
    # Only the loss node ran backward; the update is pure weight decay.
    assert np.allclose(gpt.graph.get(emb), before * (1 - 0.1 * 0.01), atol=1e-7)
    head = gpt.graph.tensor_by_name("head.weight")
    assert np.all(gpt.graph.get_grad(head) == 0)


# ---- Inference ----

def test_greedy_inference_is_reproducible():
    gpt = make_gpt()
    received = []
    first = gpt.infer(np.random.default_rng(0), [1, 2], 10, 0.0, received.append)
    second = gpt.infer(np.random.default_rng(99), [1, 2], 10, 0.0)
    assert first == second
    assert len(first) == 12 and first[:2] == [1, 2]
    assert received == first[2:]


def test_sampled_inference_is_seeded():
    gpt = make_gpt()
    a = gpt.infer(np.random.default_rng(4), [0], 8, 1.0)
    b = gpt.infer(np.random.default_rng(4), [0], 8, 1.0)
    assert a == b
    assert all(0 <= t < 5 for t in a)


def test_inference_argument_errors():
    gpt = make_gpt()
    with pytest.raises(ValueError):
        gpt.infer(np.random.default_rng(0), [0], 3, -1.0)
    with pytest.raises(ValueError):
        gpt.infer(np.random.default_rng(0), [], 3, 0.0)


def test_inference_disables_dropout():
    gpt = make_gpt(dropout=0.5)
    a = gpt.infer(np.random.default_rng(0), [0, 1], 5, 0.0)
    b = gpt.infer(np.random.default_rng(0), [0, 1], 5, 0.0)
    assert a == b


# ---- Training state ----

def test_training_state_round_trip_is_bit_identical():
    gpt = make_gpt()
    gpt.train(list(range(5)) * 4, 3, 2, None, AdamW(), constant_lr(0.01))
    saved = gpt.get_training_state()
    gpt.train(list(range(5)) * 4, 2, 2, None, AdamW(), constant_lr(0.01))

    gpt.set_training_state(saved, strict=True)
    restored = gpt.get_training_state()
    assert list(restored.tensors) == list(saved.tensors)
    for name in saved.tensors:
        assert np.array_equal(restored.tensors[name], saved.tensors[name])
    assert restored.optimizer.step == saved.optimizer.step == 3
    for name, slots in saved.optimizer.state.items():
        for key, value in slots.items():
            assert np.array_equal(restored.optimizer.state[name][key], value)


def test_strict_load_mismatch_changes_nothing():
    small = make_gpt(num_layers=1)
    big = make_gpt(seed=1, num_layers=2)
    before = big.get_training_state()
    with pytest.raises(CheckpointMismatch):
        big.set_training_state(small.get_training_state(), strict=True)
    after = big.get_training_state()
    for name in before.tensors:
        assert np.array_equal(after.tensors[name], before.tensors[name])

    wrong_shape = make_gpt(vocab_size=6)
    with pytest.raises(CheckpointMismatch):
        small.set_training_state(wrong_shape.get_training_state(), strict=True)


@pytest.mark.parametrize("corrupt", ["slot_shape", "unknown_name"])
def test_strict_load_rejects_bad_optimizer_state(corrupt):
    data = list(range(5)) * 4
    trained = make_gpt()
    trained.train(data, 2, 2, None, AdamW(), constant_lr(0.01))
    state = trained.get_training_state()
    if corrupt == "slot_shape":
        state.optimizer.state["head.bias"]["m"] = np.zeros(3, dtype=np.float32)
    else:
        state.optimizer.state["not.a.param"] = {"m": np.zeros(5, dtype=np.float32)}

    gpt = make_gpt(seed=1)
    before = gpt.get_training_state()
    with pytest.raises(CheckpointMismatch):
        gpt.set_training_state(state, strict=True)
    after = gpt.get_training_state()
    for name in before.tensors:
        assert np.array_equal(after.tensors[name], before.tensors[name])
    assert after.optimizer.step == 0
    assert after.optimizer.state == {}

    # The model is still trainable after the rejected load.
    losses = gpt.train(data, 1, 2, None, AdamW(), constant_lr(0.01))
    assert np.isfinite(losses[0])


def test_non_strict_load_drops_misshapen_optimizer_slots(caplog):
    trained = make_gpt()
    trained.train(list(range(5)) * 4, 2, 2, None, AdamW(), constant_lr(0.01))
    state = trained.get_training_state()
    state.optimizer.state["head.bias"]["v"] = np.zeros(3, dtype=np.float32)

    gpt = make_gpt(seed=1)
    with caplog.at_level(logging.WARNING, logger="wgpu_gpt.gpt"):
        gpt.set_training_state(state, strict=False)
    assert "head.bias" in caplog.text
    assert "head.bias" not in gpt.optimizer_state.state
    assert "head.weight" in gpt.optimizer_state.state
    gpt.train(list(range(5)) * 4, 1, 2, None, AdamW(), constant_lr(0.01))
    assert gpt.optimizer_state.step == 3


def test_non_strict_load_reuses_matching_tensors(caplog):
    small = make_gpt(num_layers=1)
    small.train(list(range(5)) * 4, 2, 2, None, AdamW(), constant_lr(0.01))
    big = make_gpt(seed=1, num_layers=2)
    untouched = big.graph.get(big.graph.tensor_by_name("layers.1.norm1.gamma"))

    with caplog.at_level(logging.WARNING, logger="wgpu_gpt.gpt"):
        big.set_training_state(small.get_training_state(), strict=False)
    assert "layers.1" in caplog.text

    state = small.get_training_state()
    for name in ("token_embedding.weight", "layers.0.attn.W_o.weight", "head.bias"):
        tid = big.graph.tensor_by_name(name)
        assert np.array_equal(big.graph.get(tid), state.tensors[name])
    tid = big.graph.tensor_by_name("layers.1.norm1.gamma")
    assert np.array_equal(big.graph.get(tid), untouched)
    assert big.optimizer_state.step == 2
    assert "layers.1.norm1.gamma" not in big.optimizer_state.state


def test_resume_continues_identically(tmp_path):
    data = list(range(5)) * 6
    schedule = linear_warmup_decay(base_lr=0.01, min_lr=0.001, warmup_steps=2, decay_steps=10)

    straight = make_gpt(seed=0)
    expected = straight.train(data, 6, 2, None, AdamW(), schedule, rng=np.random.default_rng(7))

    batches = np.random.default_rng(7)
    first = make_gpt(seed=0)
    head = first.train(data, 3, 2, None, AdamW(), schedule, rng=batches)
    path = tmp_path / "model.npz"
    save_training_state(path, first.get_training_state())

    resumed = make_gpt(seed=42)
    resumed.set_training_state(load_training_state(path), strict=True)
    tail = resumed.train(data, 3, 2, None, AdamW(), schedule, rng=batches)
    assert head + tail == expected


# ---- Checkpoint files ----

def test_checkpoint_file_round_trip(tmp_path):
    gpt = make_gpt()
    gpt.train(list(range(5)) * 4, 2, 2, None, AdamW(), constant_lr(0.01))
    state = gpt.get_training_state()
    path = tmp_path / "state.npz"
    save_training_state(path, state)
    assert not (tmp_path / "state.npz.tmp").exists()

    loaded = load_training_state(path)
    assert list(loaded.tensors) == list(state.tensors)
    assert loaded.optimizer.step == 2
    for name, value in state.tensors.items():
        assert np.array_equal(loaded.tensors[name], value)
    for name, slots in state.optimizer.state.items():
        assert set(loaded.optimizer.state[name]) == {"m", "v"}
        for key, value in slots.items():
            assert np.array_equal(loaded.optimizer.state[name][key], value)


def test_failed_save_leaves_previous_checkpoint(tmp_path, monkeypatch):
    gpt = make_gpt()
    path = tmp_path / "state.npz"
    save_training_state(path, gpt.get_training_state())
    previous = path.read_bytes()

    def broken_savez(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(np, "savez", broken_savez)
    with pytest.raises(OSError):
        save_training_state(path, gpt.get_training_state())
    assert not (tmp_path / "state.npz.tmp").exists()
    assert path.read_bytes() == previous


def test_checkpoint_missing_entries(tmp_path):
    path = tmp_path / "bad.npz"
    np.savez(path, something=np.zeros(3))
    with pytest.raises(CheckpointMismatch):
        load_training_state(path)

    path = tmp_path / "partial.npz"
    np.savez(path, __order__=np.array(["w"]), step=np.array(0))
    with pytest.raises(CheckpointMismatch):
        load_training_state(path)


def test_empty_training_state_defaults():
    state = TrainingState()
    assert state.optimizer.step == 0
    assert len(state.tensors) == 0
