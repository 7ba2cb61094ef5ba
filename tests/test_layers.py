import numpy as np
import pytest

from hlsattn.fixed import (
    DATA_T,
    EXP_LUT_SIZE,
    EXP_MIN,
    EXP_T,
    LN_PARAM_T,
    N_HEADS,
    WEIGHT_T,
)
from hlsattn.layers import (
    T_KV,
    compute_scores,
    concat_and_project,
    exp_fixed,
    exp_lut,
    ffn_block,
    layernorm,
    linear,
    reshape_and_append_bias_kv,
    skip_and_norm,
    softmax_and_context,
    softmax_row,
)

E = 16


def _rng(seed=0):
    return np.random.default_rng(seed)


def test_exp_lut_shape_and_endpoints():
    table = exp_lut()
    assert table.shape == (EXP_LUT_SIZE + 1,)
    assert table[-1] == 1.0
    assert np.all(np.diff(table) >= 0)
    assert abs(table[0] - np.exp(EXP_MIN)) < 2 * EXP_T.lsb()


def test_exp_lut_returns_independent_copy():
    table = exp_lut()
    table[:] = 0.0
    assert exp_lut()[-1] == 1.0


def test_exp_fixed_saturates():
    assert exp_fixed(0.0) == 1.0
    assert exp_fixed(3.0) == 1.0
    assert exp_fixed(EXP_MIN) == 0.0
    assert exp_fixed(-20.0) == 0.0


def test_exp_fixed_brackets_true_exponential():
    xs = np.linspace(-7.9, -0.01, 50)
    result = exp_fixed(xs)
    assert result.shape == xs.shape
    step = -EXP_MIN / EXP_LUT_SIZE
    assert np.all(result <= np.exp(xs) + 1e-6)
    assert np.all(result >= np.exp(xs - 2 * step) - 1e-6)


def test_softmax_row_sums_to_one():
    row = _rng(3).uniform(-3.0, 3.0, size=13)
    out = softmax_row(row)
    assert abs(out.sum() - 1.0) < 2e-3
    assert np.all(out >= 0.0)
    assert np.argmax(out) == np.argmax(row)


def test_softmax_row_uniform_input():
    out = softmax_row(np.zeros(4))
    assert np.all(out == out[0])
    np.testing.assert_allclose(out, 0.25, atol=1e-3)


def test_softmax_row_rejects_empty():
    with pytest.raises(ValueError):
        softmax_row([])


def test_linear_matches_float_reference():
    rng = _rng(4)
    x = DATA_T.quantize(rng.uniform(-1, 1, size=(5, E)))
    w = WEIGHT_T.quantize(rng.uniform(-0.5, 0.5, size=(E, E)))
    b = WEIGHT_T.quantize(rng.uniform(-0.5, 0.5, size=E))
    out = linear(x, w, b)
    assert out.shape == (5, E)
    np.testing.assert_allclose(out, x @ w.T + b, atol=2e-3)


def test_linear_identity_is_exact():
    x = _rng(5).uniform(-2, 2, size=(3, E))
    out = linear(x, np.eye(E), np.zeros(E))
    np.testing.assert_array_equal(out, DATA_T.quantize(x))


def test_linear_shape_mismatch():
    with pytest.raises(ValueError):
        linear(np.zeros((2, E)), np.zeros((E, E - 1)), np.zeros(E))


def test_layernorm_normalises_rows():
    x = _rng(6).uniform(-2, 2, size=(4, E))
    out = layernorm(x, np.ones(E), np.zeros(E))
    assert out.shape == x.shape
    assert np.all(np.abs(out.mean(axis=1)) < 0.01)
    np.testing.assert_allclose(out.std(axis=1), 1.0, atol=0.02)


def test_layernorm_constant_row_gives_beta():
    beta = _rng(7).uniform(-1, 1, size=E)
    out = layernorm(np.full((2, E), 0.5), np.ones(E), beta)
    expected = DATA_T.quantize(LN_PARAM_T.quantize(beta))
    np.testing.assert_array_equal(out, np.vstack([expected, expected]))


def test_reshape_and_append_bias_kv():
    rng = _rng(8)
    q = rng.uniform(-1, 1, size=(12, E))
    k = rng.uniform(-1, 1, size=(3, E))
    v = rng.uniform(-1, 1, size=(3, E))
    bias_k = rng.uniform(-1, 1, size=E)
    bias_v = rng.uniform(-1, 1, size=E)
    q_h, k_h, v_h = reshape_and_append_bias_kv(q, k, v, bias_k, bias_v)
    head_dim = E // N_HEADS
    assert q_h.shape == (N_HEADS, 12, head_dim)
    assert k_h.shape == v_h.shape == (N_HEADS, T_KV, head_dim)
    np.testing.assert_array_equal(
        q_h.transpose(1, 0, 2).reshape(12, E), DATA_T.quantize(q)
    )
    np.testing.assert_array_equal(
        k_h[:, :3].transpose(1, 0, 2).reshape(3, E), DATA_T.quantize(k)
    )
    np.testing.assert_array_equal(
        k_h[:, -1].reshape(E), DATA_T.quantize(WEIGHT_T.quantize(bias_k))
    )
    np.testing.assert_array_equal(
        v_h[:, -1].reshape(E), DATA_T.quantize(WEIGHT_T.quantize(bias_v))
    )


def test_reshape_rejects_mismatched_kv():
    with pytest.raises(ValueError):
        reshape_and_append_bias_kv(
            np.zeros((2, E)), np.zeros((3, E)), np.zeros((2, E)), np.zeros(E), np.zeros(E)
        )


def test_compute_scores_close_to_scaled_dot_product():
    rng = _rng(9)
    q = DATA_T.quantize(rng.uniform(-1, 1, size=(12, 4)))
    k = DATA_T.quantize(rng.uniform(-1, 1, size=(13, 4)))
    scores = compute_scores(q, k)
    assert scores.shape == (12, 13)
    np.testing.assert_allclose(scores, q @ k.T * 0.5, atol=2e-3)


def test_softmax_and_context_weights_values():
    rng = _rng(10)
    scores = rng.uniform(-2, 2, size=(5, 4))
    v = DATA_T.quantize(rng.uniform(-1, 1, size=(4, 4)))
    context = softmax_and_context(scores, v)
    assert context.shape == (5, 4)
    np.testing.assert_allclose(context, softmax_row(scores) @ v, atol=2e-3)


def test_softmax_and_context_dominant_key_selects_its_value():
    v = DATA_T.quantize(_rng(11).uniform(-1, 1, size=(4, 4)))
    scores = np.array([[20.0, 0.0, 0.0, 0.0]])
    context = softmax_and_context(scores, v)
    np.testing.assert_array_equal(context[0], v[0])


def test_softmax_and_context_shape_mismatch():
    with pytest.raises(ValueError):
        softmax_and_context(np.zeros((2, 3)), np.zeros((4, 4)))


def test_concat_and_project_identity():
    context = DATA_T.quantize(_rng(12).uniform(-1, 1, size=(N_HEADS, 3, E // N_HEADS)))
    out = concat_and_project(context, np.eye(E), np.zeros(E))
    np.testing.assert_array_equal(out, context.transpose(1, 0, 2).reshape(3, E))


def test_skip_and_norm_adds_residual_before_norm():
    rng = _rng(13)
    x = rng.uniform(-1, 1, size=(3, E))
    residual = rng.uniform(-1, 1, size=(3, E))
    gamma = rng.uniform(0.5, 1.5, size=E)
    beta = rng.uniform(-0.5, 0.5, size=E)
    summed = DATA_T.quantize(DATA_T.quantize(x) + DATA_T.quantize(residual))
    np.testing.assert_array_equal(
        skip_and_norm(x, residual, gamma, beta), layernorm(summed, gamma, beta)
    )


def test_ffn_block_output_is_normalised():
    rng = _rng(14)
    layers = 3
    x = rng.uniform(-1, 1, size=(6, E))
    ffn_w = rng.uniform(-0.5, 0.5, size=(layers, E, E))
    ffn_b = rng.uniform(-0.1, 0.1, size=(layers, E))
    ffn_g = np.ones((layers, E))
    ffn_beta = np.zeros((layers, E))
    out = ffn_block(x, ffn_w, ffn_b, ffn_g, ffn_beta, np.ones(E), np.zeros(E))
    assert out.shape == x.shape
    assert np.all(np.abs(out.mean(axis=1)) < 0.01)
    np.testing.assert_allclose(out.std(axis=1), 1.0, atol=0.02)


def test_ffn_block_rejects_mismatched_layer_counts():
    with pytest.raises(ValueError):
        ffn_block(
            np.zeros((2, E)),
            np.zeros((3, E, E)),
            np.zeros((2, E)),
            np.ones((3, E)),
            np.zeros((3, E)),
            np.ones(E),
            np.zeros(E),
        )