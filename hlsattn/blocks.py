"""The three attention blocks: object self-attention, category self-attention and cross-attention."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Callable, Optional

import numpy as np

from .fixed import DATA_T, N_HEADS, NEG_INF, SCORE_T
from .layers import (
    compute_scores,
    concat_and_project,
    ffn_block,
    layernorm,
    linear,
    reshape_and_append_bias_kv,
    skip_and_norm,
    softmax_and_context,
)


@dataclass(frozen=True)
class BlockWeights:
    """Parameters of one attention block: projections, layer norms and the FFN stack."""

    wq: np.ndarray
    bq: np.ndarray
    wk: np.ndarray
    bk: np.ndarray
    wv: np.ndarray
    bv: np.ndarray
    bias_k: np.ndarray
    bias_v: np.ndarray
    wo: np.ndarray
    bo: np.ndarray
    attn_ln_g: np.ndarray
    attn_ln_b: np.ndarray
    ffn_w: np.ndarray
    ffn_b: np.ndarray
    ffn_ln_g: np.ndarray
    ffn_ln_b: np.ndarray
    post_ffn_g: np.ndarray
    post_ffn_b: np.ndarray

    def __post_init__(self) -> None:
        for field in fields(self):
            value = np.array(getattr(self, field.name), dtype=np.float64)
            value.flags.writeable = False
            object.__setattr__(self, field.name, value)


def _rows(values, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be two-dimensional, got shape {arr.shape}")
    return DATA_T.quantize(arr)


def _padding(mask, rows: int) -> np.ndarray:
    arr = np.asarray(mask, dtype=bool)
    if arr.shape != (rows,):
        raise ValueError(f"padding_mask must have shape ({rows},), got {arr.shape}")
    return arr


ScoreAdjust = Callable[[int, np.ndarray], np.ndarray]


def _multi_head(queries, keys, weights: BlockWeights, adjust: Optional[ScoreAdjust] = None):
    """Project, split into heads with bias_kv, attend per head and project back."""
    q_full = linear(queries, weights.wq, weights.bq)
    k_full = linear(keys, weights.wk, weights.bk)
    v_full = linear(keys, weights.wv, weights.bv)
    q_h, k_h, v_h = reshape_and_append_bias_kv(
        q_full, k_full, v_full, weights.bias_k, weights.bias_v
    )
    contexts = []
    for head, (q, k, v) in enumerate(zip(q_h, k_h, v_h)):
        scores = compute_scores(q, k)
        if adjust is not None:
            scores = adjust(head, scores)
        contexts.append(softmax_and_context(scores, v))
    return concat_and_project(np.stack(contexts), weights.wo, weights.bo)


def _ffn(x, weights: BlockWeights) -> np.ndarray:
    return ffn_block(
        x,
        weights.ffn_w,
        weights.ffn_b,
        weights.ffn_ln_g,
        weights.ffn_ln_b,
        weights.post_ffn_g,
        weights.post_ffn_b,
    )


def _remask(x: np.ndarray, mask: np.ndarray) -> np.ndarray:
    return np.where(mask[:, None], 0.0, x)


def attn_block_obj(x, padding_mask, weights: BlockWeights, wij_bias=None) -> np.ndarray:
    """Object self-attention with optional pairwise score bias; returns the new embeddings.

    ``wij_bias`` has shape ``(N_HEADS * n, n + 1)``, row ``h * n + i`` holding the
    bias of query ``i`` in head ``h``; only its first ``n`` columns are used.
    Keys at padded positions get the score ``NEG_INF`` and padded rows come out zero.
    """
    residual = _rows(x, "x")
    n = residual.shape[0]
    mask = _padding(padding_mask, n)
    masked_keys = np.flatnonzero(mask)

    head_bias = None
    if wij_bias is not None:
        bias = np.asarray(wij_bias, dtype=np.float64)
        if bias.shape != (N_HEADS * n, n + 1):
            raise ValueError(
                f"wij_bias must have shape ({N_HEADS * n}, {n + 1}), got {bias.shape}"
            )
        head_bias = SCORE_T.quantize(bias).reshape(N_HEADS, n, n + 1)[:, :, :n]

    def adjust(head: int, scores: np.ndarray) -> np.ndarray:
        scores = scores.copy()
        if head_bias is not None:
            scores[:, :n] = SCORE_T.quantize(scores[:, :n] + head_bias[head])
        scores[:, masked_keys] = NEG_INF
        return scores

    attn_out = _multi_head(residual, residual, weights, adjust)
    out = skip_and_norm(attn_out, residual, weights.attn_ln_g, weights.attn_ln_b)
    return _remask(_ffn(out, weights), mask)


def attn_block_cand(c, weights: BlockWeights) -> np.ndarray:
    """Category self-attention without masking; returns the new category embeddings."""
    residual = _rows(c, "c")
    attn_out = _multi_head(residual, residual, weights)
    out = skip_and_norm(attn_out, residual, weights.attn_ln_g, weights.attn_ln_b)
    return _ffn(out, weights)


def attn_block_cross(x, c, padding_mask, weights: BlockWeights) -> np.ndarray:
    """Cross-attention of objects ``x`` onto categories ``c``, without an attention skip."""
    queries = _rows(x, "x")
    keys = _rows(c, "c")
    mask = _padding(padding_mask, queries.shape[0])
    attn_out = _multi_head(queries, keys, weights)
    out = layernorm(attn_out, weights.attn_ln_g, weights.attn_ln_b)
    return _remask(_ffn(out, weights), mask)