"""Bit-accurate building blocks of the fixed-point multi-head attention datapath."""

from __future__ import annotations

import functools

import numpy as np

from .fixed import (
    ACC_T,
    DATA_T,
    EXP_LUT_SIZE,
    EXP_MIN,
    EXP_T,
    LN_EPS,
    LN_PARAM_T,
    N_HEADS,
    PROB_T,
    SCALE,
    SCORE_T,
    WEIGHT_T,
    FixedType,
)

T_DIM = 3  # number of categories
T_KV = T_DIM + 1  # categories plus the bias_kv token


def _accumulate(terms, start=0.0, kind: FixedType = ACC_T) -> np.ndarray:
    """Sum ``terms`` one after another, converting to ``kind`` after every addition."""
    total = np.asarray(kind.quantize(start), dtype=np.float64)
    for term in terms:
        total = np.asarray(kind.quantize(total + term), dtype=np.float64)
    return total


def _matrix(values, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be two-dimensional, got shape {arr.shape}")
    return arr


def _vector(values, length: int, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.shape != (length,):
        raise ValueError(f"{name} must have shape ({length},), got {arr.shape}")
    return arr


def linear(inputs, weight, bias) -> np.ndarray:
    """Compute ``inputs @ weight.T + bias`` with a fixed-point accumulator."""
    x = DATA_T.quantize(_matrix(inputs, "inputs"))
    w = WEIGHT_T.quantize(_matrix(weight, "weight"))
    if x.shape[1] != w.shape[1]:
        raise ValueError(f"inputs width {x.shape[1]} does not match weight width {w.shape[1]}")
    b = WEIGHT_T.quantize(_vector(bias, w.shape[0], "bias"))
    products = x[:, None, :] * w[None, :, :]
    start = np.broadcast_to(b, products.shape[:-1])
    return DATA_T.quantize(_accumulate(np.moveaxis(products, -1, 0), start))


def layernorm(x, gamma, beta) -> np.ndarray:
    """Normalise each row to zero mean and unit variance, then apply gamma and beta."""
    rows = DATA_T.quantize(_matrix(x, "x"))
    width = rows.shape[1]
    if width == 0:
        raise ValueError("layernorm needs at least one column")
    g = LN_PARAM_T.quantize(_vector(gamma, width, "gamma"))
    b = LN_PARAM_T.quantize(_vector(beta, width, "beta"))

    mean = DATA_T.quantize(_accumulate(rows.T) / width)
    diff = ACC_T.quantize(rows - mean[:, None])
    var_sum = _accumulate((diff * diff).T)
    variance = (DATA_T.quantize(var_sum) / width).astype(np.float32) + np.float32(LN_EPS)
    with np.errstate(divide="ignore"):
        inv_std = DATA_T.quantize(np.float32(1.0) / np.sqrt(variance))
    x_norm = DATA_T.quantize(diff * inv_std[:, None])
    return DATA_T.quantize(g * x_norm + b)


@functools.lru_cache(maxsize=None)
def _exp_table() -> np.ndarray:
    steps = np.arange(EXP_LUT_SIZE + 1, dtype=np.float32)
    x_val = np.float32(EXP_MIN) * (np.float32(1.0) - steps / np.float32(EXP_LUT_SIZE))
    table = EXP_T.quantize(np.exp(x_val))
    table.flags.writeable = False
    return table


def exp_lut() -> np.ndarray:
    """The exponential lookup table over ``[EXP_MIN, 0]``, ``EXP_LUT_SIZE + 1`` entries."""
    return _exp_table().copy()


def exp_fixed(x):
    """Table-based ``exp`` of score values; 1 for ``x >= 0`` and 0 for ``x <= EXP_MIN``."""
    scores = np.asarray(SCORE_T.quantize(x), dtype=np.float64)
    frac = (scores.astype(np.float32) - np.float32(EXP_MIN)) / np.float32(-EXP_MIN)
    index = np.trunc(frac * np.float32(EXP_LUT_SIZE))
    index = np.clip(index, 0, EXP_LUT_SIZE - 1).astype(np.int64)
    looked_up = _exp_table()[index]
    result = np.where(scores >= 0.0, 1.0, np.where(scores <= EXP_MIN, 0.0, looked_up))
    if result.ndim == 0:
        return float(result)
    return result


def softmax_row(row) -> np.ndarray:
    """Fixed-point softmax along the last axis."""
    scores = np.asarray(SCORE_T.quantize(row), dtype=np.float64)
    if scores.ndim == 0 or scores.shape[-1] == 0:
        raise ValueError("softmax needs a non-empty row")
    max_val = scores.max(axis=-1, keepdims=True)
    exp_vals = np.asarray(exp_fixed(SCORE_T.quantize(scores - max_val)), dtype=np.float64)
    exp_sum = _accumulate(np.moveaxis(exp_vals, -1, 0), kind=EXP_T)
    with np.errstate(divide="ignore"):
        inv_sum = EXP_T.quantize(np.float32(1.0) / exp_sum.astype(np.float32))
    return PROB_T.quantize(exp_vals * np.asarray(inv_sum)[..., None])


def ffn_block(x, ffn_w, ffn_b, ffn_ln_g, ffn_ln_b, post_g, post_b) -> np.ndarray:
    """Stacked Linear, LayerNorm and ReLU layers, then a skip connection and LayerNorm."""
    layers = list(zip(ffn_w, ffn_b, ffn_ln_g, ffn_ln_b, strict=False))
    counts = {len(ffn_w), len(ffn_b), len(ffn_ln_g), len(ffn_ln_b)}
    if len(counts) != 1:
        raise ValueError("ffn weights, biases and layer norm parameters differ in layer count")

    residual = DATA_T.quantize(_matrix(x, "x"))
    out = residual
    for weight, bias, gamma, beta in layers:
        hidden = layernorm(linear(out, weight, bias), gamma, beta)
        out = np.maximum(hidden, 0.0)
    return skip_and_norm(out, residual, post_g, post_b)


def _split_heads(full: np.ndarray) -> np.ndarray:
    rows, width = full.shape
    if width % N_HEADS:
        raise ValueError(f"embedding width {width} is not divisible by {N_HEADS} heads")
    return full.reshape(rows, N_HEADS, width // N_HEADS).transpose(1, 0, 2)


def reshape_and_append_bias_kv(q_full, k_full, v_full, bias_k, bias_v):
    """Split Q, K and V into heads and append the bias_kv token to K and V.

    Returns ``(q_h, k_h, v_h)`` of shapes ``(H, N_Q, D)``, ``(H, N_KEY + 1, D)``
    and ``(H, N_KEY + 1, D)``.
    """
    q = DATA_T.quantize(_matrix(q_full, "q_full"))
    k = DATA_T.quantize(_matrix(k_full, "k_full"))
    v = DATA_T.quantize(_matrix(v_full, "v_full"))
    if k.shape != v.shape:
        raise ValueError(f"k_full shape {k.shape} differs from v_full shape {v.shape}")
    if q.shape[1] != k.shape[1]:
        raise ValueError("q_full and k_full differ in embedding width")
    width = k.shape[1]

    q_h = _split_heads(q)
    k_h = _split_heads(k)
    v_h = _split_heads(v)
    head_dim = width // N_HEADS
    bk = DATA_T.quantize(WEIGHT_T.quantize(_vector(bias_k, width, "bias_k")))
    bv = DATA_T.quantize(WEIGHT_T.quantize(_vector(bias_v, width, "bias_v")))
    k_h = np.concatenate([k_h, bk.reshape(N_HEADS, 1, head_dim)], axis=1)
    v_h = np.concatenate([v_h, bv.reshape(N_HEADS, 1, head_dim)], axis=1)
    return q_h, k_h, v_h


def compute_scores(q, k) -> np.ndarray:
    """Scaled dot-product scores ``q @ k.T * SCALE`` for one head."""
    queries = DATA_T.quantize(_matrix(q, "q"))
    keys = DATA_T.quantize(_matrix(k, "k"))
    if queries.shape[1] != keys.shape[1]:
        raise ValueError("q and k differ in head dimension")
    products = queries[:, None, :] * keys[None, :, :]
    total = _accumulate(np.moveaxis(products, -1, 0))
    return SCORE_T.quantize(total * ACC_T.quantize(SCALE))


def softmax_and_context(scores, v) -> np.ndarray:
    """Softmax the scores row by row and weight the value rows with the result."""
    weights = softmax_row(_matrix(scores, "scores"))
    values = DATA_T.quantize(_matrix(v, "v"))
    if weights.shape[1] != values.shape[0]:
        raise ValueError(
            f"scores have {weights.shape[1]} keys but v has {values.shape[0]} rows"
        )
    products = weights[:, :, None] * values[None, :, :]
    return DATA_T.quantize(_accumulate(np.moveaxis(products, 1, 0)))


def concat_and_project(context, wo, bo) -> np.ndarray:
    """Concatenate per-head contexts ``(H, N, D)`` and apply the output projection."""
    ctx = DATA_T.quantize(np.asarray(context, dtype=np.float64))
    if ctx.ndim != 3:
        raise ValueError(f"context must be three-dimensional, got shape {ctx.shape}")
    heads, rows, head_dim = ctx.shape
    concat = ctx.transpose(1, 0, 2).reshape(rows, heads * head_dim)
    return linear(concat, wo, bo)


def skip_and_norm(x, residual, gamma, beta) -> np.ndarray:
    """Add the residual and apply layer norm."""
    current = DATA_T.quantize(_matrix(x, "x"))
    skip = DATA_T.quantize(_matrix(residual, "residual"))
    if current.shape != skip.shape:
        raise ValueError(f"x shape {current.shape} differs from residual shape {skip.shape}")
    return layernorm(DATA_T.quantize(current + skip), gamma, beta)