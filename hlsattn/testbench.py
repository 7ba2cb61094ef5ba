"""Run an object attention block on exported weights and compare it with a reference."""

from __future__ import annotations

import argparse
import math
import os
from dataclasses import dataclass

import numpy as np

from .blocks import BlockWeights, attn_block_obj
from .fixed import DATA_T, E_DIM, N_FFN_LAYERS, N_HEADS, N_KV, N_MAX
from .npyio import npy_load

TOLERANCE = 0.1
DEFAULT_BLOCK = "obj_blocks.0"
DEFAULT_INPUT = "test_vec_obj_block_0_in.npy"
DEFAULT_GOLDEN = "test_vec_obj_block_0_out.npy"


@dataclass(frozen=True)
class Comparison:
    """Error statistics of a result against its reference over unpadded rows."""

    max_error: float
    rmse: float
    samples: int

    def passed(self, tolerance: float = TOLERANCE) -> bool:
        return self.max_error < tolerance


def _load(path, shape: tuple[int, ...]) -> np.ndarray:
    flat = npy_load(path).as_array().astype(np.float32).astype(np.float64).ravel()
    needed = math.prod(shape)
    if flat.size < needed:
        raise ValueError(f"{os.fspath(path)} holds {flat.size} values, need {needed}")
    return flat[:needed].reshape(shape)


def load_block_weights(directory, block=DEFAULT_BLOCK) -> BlockWeights:
    """Load the parameters of ``block`` from per-tensor ``.npy`` files in ``directory``."""

    def path(name: str) -> str:
        return os.path.join(os.fspath(directory), f"{block}.{name}.npy")

    def matrix(name: str) -> np.ndarray:
        return _load(path(name), (E_DIM, E_DIM))

    def vector(name: str) -> np.ndarray:
        return _load(path(name), (E_DIM,))

    # Sequential indices: 3*i is the Linear layer, 3*i + 1 its LayerNorm.
    layers = range(N_FFN_LAYERS)
    return BlockWeights(
        wq=matrix("attn.Wq"),
        bq=vector("attn.bq"),
        wk=matrix("attn.Wk"),
        bk=vector("attn.bk"),
        wv=matrix("attn.Wv"),
        bv=vector("attn.bv"),
        bias_k=vector("attn.bias_k"),
        bias_v=vector("attn.bias_v"),
        wo=matrix("attn.Wo"),
        bo=vector("attn.bo"),
        attn_ln_g=vector("post_attn_norm.weight"),
        attn_ln_b=vector("post_attn_norm.bias"),
        ffn_w=np.stack([matrix(f"ffwd.{3 * i}.weight") for i in layers]),
        ffn_b=np.stack([vector(f"ffwd.{3 * i}.bias") for i in layers]),
        ffn_ln_g=np.stack([vector(f"ffwd.{3 * i + 1}.weight") for i in layers]),
        ffn_ln_b=np.stack([vector(f"ffwd.{3 * i + 1}.bias") for i in layers]),
        post_ffn_g=vector("post_ffwd_norm.weight"),
        post_ffn_b=vector("post_ffwd_norm.bias"),
    )


def padding_mask_from_input(x) -> np.ndarray:
    """A row is padding when its first feature is exactly zero."""
    arr = np.asarray(x, dtype=np.float32)
    if arr.ndim != 2:
        raise ValueError(f"x must be two-dimensional, got shape {arr.shape}")
    return arr[:, 0] == 0.0


def compare_outputs(result, golden, padding_mask) -> Comparison:
    """Maximum absolute error and RMSE between ``result`` and ``golden`` on unpadded rows."""
    res = np.asarray(result, dtype=np.float64)
    ref = np.asarray(golden, dtype=np.float64)
    if res.shape != ref.shape:
        raise ValueError(f"result shape {res.shape} differs from golden shape {ref.shape}")
    keep = ~np.asarray(padding_mask, dtype=bool)
    if keep.shape != res.shape[:1]:
        raise ValueError("padding_mask length does not match the number of rows")
    errors = np.abs(res[keep] - ref[keep]).ravel()
    if errors.size == 0:
        return Comparison(max_error=0.0, rmse=math.nan, samples=0)
    return Comparison(
        max_error=float(errors.max()),
        rmse=float(np.sqrt(np.mean(errors * errors))),
        samples=int(errors.size),
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Run an object attention block and compare it with a reference output."
    )
    parser.add_argument("directory", help="directory holding the exported .npy files")
    parser.add_argument("--block", default=DEFAULT_BLOCK, help="weight file prefix")
    parser.add_argument("--input", default=DEFAULT_INPUT, help="input test vector file")
    parser.add_argument("--golden", default=DEFAULT_GOLDEN, help="reference output file")
    parser.add_argument("--wij", default=None, help="optional pairwise score bias file")
    parser.add_argument("--tolerance", type=float, default=TOLERANCE)
    args = parser.parse_args(argv)

    def in_dir(name: str) -> str:
        return os.path.join(args.directory, name)

    weights = load_block_weights(args.directory, args.block)
    raw = _load(in_dir(args.input), (N_MAX, E_DIM))
    mask = padding_mask_from_input(raw)
    golden = DATA_T.quantize(_load(in_dir(args.golden), (N_MAX, E_DIM)))
    wij = None if args.wij is None else _load(in_dir(args.wij), (N_HEADS * N_MAX, N_KV))

    result = attn_block_obj(DATA_T.quantize(raw), mask, weights, wij)
    comparison = compare_outputs(result, golden, mask)

    print("comparison between hls value and reference")
    print(f"max absolute err: {comparison.max_error:.6f}")
    print(f"rmse: {comparison.rmse:.6f}")
    print(f" samples compared: {comparison.samples}")

    if comparison.passed(args.tolerance):
        print(f"pass: max error {comparison.max_error:.6f} < tolerance {args.tolerance:.4f}")
        return 0
    print(f"fail: max error {comparison.max_error:.6f} >= tolerance {args.tolerance:.4f}")
    return 1