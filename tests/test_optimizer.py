import numpy as np
import pytest

from wgpu_gpt.optimizer import AdamW, OptimizerState, linear_warmup_decay


def test_adamw_first_step():
    value = np.array([1.0, -2.0], dtype=np.float32)
    grad = np.array([0.5, 0.0], dtype=np.float32)
    state = OptimizerState()
    AdamW().step([("w", value, grad)], state, 0.1)

    assert state.step == 1
    # Bias-corrected first step moves by lr * sign(grad), plus decay lr * wd * w
    assert np.allclose(value, [1.0 - 0.1 * (1.0 + 0.01), -2.0 + 0.1 * 0.01 * 2.0], atol=1e-6)
    assert np.allclose(state.state["w"]["m"], [0.05, 0.0])
    assert np.allclose(state.state["w"]["v"], [0.00025, 0.0])


def test_adamw_updates_in_place_and_only_given_params():
    a = np.ones(3, dtype=np.float32)
    b = np.ones(3, dtype=np.float32)
    ref = a
    state = OptimizerState()
    AdamW().step([("a", a, np.ones(3, dtype=np.float32))], state, 0.01)
    assert ref is a
    assert np.all(a < 1.0)
    assert np.all(b == 1.0)
    assert set(state.state) == {"a"}


def test_adamw_step_counter_is_global():
    state = OptimizerState()
    opt = AdamW()
    for _ in range(3):
        opt.step([("w", np.zeros(2, dtype=np.float32), np.ones(2, dtype=np.float32))], state, 0.01)
    assert state.step == 3


def test_adamw_matches_torch():
    torch = pytest.importorskip("torch")
    rng = np.random.default_rng(0)
    w0 = rng.standard_normal((4, 3)).astype(np.float32)
    grads = [rng.standard_normal((4, 3)).astype(np.float32) for _ in range(5)]

    value = w0.copy()
    state = OptimizerState()
    opt = AdamW(betas=(0.9, 0.999), eps=1e-8, weight_decay=0.01)
    for g in grads:
        opt.step([("w", value, g)], state, 1e-2)

    param = torch.nn.Parameter(torch.from_numpy(w0.copy()))
    torch_opt = torch.optim.AdamW([param], lr=1e-2, betas=(0.9, 0.999), eps=1e-8, weight_decay=0.01)
    for g in grads:
        param.grad = torch.from_numpy(g.copy())
        torch_opt.step()

    assert np.allclose(value, param.detach().numpy(), atol=1e-5), \
        f"max diff {np.abs(value - param.detach().numpy()).max()}"


def test_linear_warmup_decay():
    lr = linear_warmup_decay()
    assert lr(0) == 0.0
    assert np.isclose(lr(50), 0.0005)
    assert np.isclose(lr(100), 0.001)
    assert np.isclose(lr(100 + 25000), 0.001 - 0.00099 * 0.5)
    assert lr(10 ** 7) == 0.00001

    custom = linear_warmup_decay(base_lr=1.0, min_lr=0.5, warmup_steps=0, decay_steps=10)
    assert custom(0) == 1.0
    assert np.isclose(custom(5), 0.75)
    assert custom(100) == 0.5
