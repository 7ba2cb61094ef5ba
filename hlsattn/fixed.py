"""Fixed-point number formats and model constants of the attention datapath."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

N_MAX = 12  # maximum number of jets
E_DIM = 16  # embedding dimension
N_HEADS = 4  # attention heads
D_HEAD = E_DIM // N_HEADS  # per-head dimension
N_KV = N_MAX + 1  # key/value length including the bias_kv token

N_FFN_LAYERS = 3  # Linear + LayerNorm + ReLU repetitions inside the FFN
FFN_DIM = E_DIM

EXP_LUT_SIZE = 256
EXP_MIN = -8.0


@dataclass(frozen=True)
class FixedType:
    """A signed fixed-point format with ``width`` bits, ``integer_bits`` of them integer.

    Conversion truncates toward negative infinity and wraps on overflow.
    """

    width: int
    integer_bits: int

    def __post_init__(self) -> None:
        if self.width < 1:
            raise ValueError(f"width must be positive, got {self.width}")

    @property
    def fraction_bits(self) -> int:
        return self.width - self.integer_bits

    def lsb(self) -> float:
        """The value of one unit in the last place."""
        return 2.0 ** -self.fraction_bits

    def max_value(self) -> float:
        return (2 ** (self.width - 1) - 1) * self.lsb()

    def min_value(self) -> float:
        return -(2 ** (self.width - 1)) * self.lsb()

    def quantize(self, values):
        """Convert ``values`` to this format; non-finite inputs become zero.

        A scalar yields a float, anything else an array of the same shape.
        """
        arr = np.asarray(values, dtype=np.float64)
        scale = 2.0 ** self.fraction_bits
        with np.errstate(invalid="ignore", over="ignore"):
            steps = np.floor(arr * scale)
        steps = np.where(np.isfinite(steps), steps, 0.0)
        half = 2.0 ** (self.width - 1)
        wrapped = np.mod(steps + half, 2.0 * half) - half
        result = wrapped / scale
        if result.ndim == 0:
            return float(result)
        return result


DATA_T = FixedType(16, 5)  # embeddings, residuals, FFN activations
WEIGHT_T = FixedType(16, 4)  # weights and biases
SCORE_T = FixedType(16, 6)  # attention scores
PROB_T = FixedType(16, 2)  # post-softmax probabilities
LN_PARAM_T = FixedType(16, 4)  # layer norm parameters
ACC_T = FixedType(32, 10)  # dot-product accumulator
EXP_T = FixedType(32, 10)  # softmax intermediate

SCALE = SCORE_T.quantize(0.5)  # 1 / sqrt(D_HEAD)
NEG_INF = SCORE_T.quantize(-64.0)  # outside score_t's range, so it wraps
LN_EPS = DATA_T.quantize(1e-5)  # below data_t's resolution