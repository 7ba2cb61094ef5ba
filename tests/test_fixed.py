import math

import numpy as np
import pytest

from hlsattn.fixed import (
    ACC_T,
    DATA_T,
    LN_EPS,
    NEG_INF,
    SCALE,
    SCORE_T,
    FixedType,
)


def test_data_type_range_follows_format():
    assert DATA_T.lsb() == 2.0 ** -11
    assert DATA_T.min_value() == -16.0
    assert DATA_T.max_value() == 16.0 - DATA_T.lsb()


def test_quantize_truncates_toward_negative_infinity():
    lsb = DATA_T.lsb()
    assert DATA_T.quantize(-lsb / 2) == -lsb
    assert DATA_T.quantize(lsb * 0.9) == 0.0
    assert DATA_T.quantize(3 * lsb + lsb / 3) == 3 * lsb


def test_quantize_wraps_on_overflow():
    assert DATA_T.quantize(DATA_T.max_value() + DATA_T.lsb()) == DATA_T.min_value()
    assert DATA_T.quantize(DATA_T.min_value() - DATA_T.lsb()) == DATA_T.max_value()


def test_quantize_is_idempotent_and_in_range():
    rng = np.random.default_rng(1)
    values = rng.uniform(-40.0, 40.0, size=(7, 5))
    once = DATA_T.quantize(values)
    assert once.shape == values.shape
    np.testing.assert_array_equal(DATA_T.quantize(once), once)
    assert np.all(once >= DATA_T.min_value())
    assert np.all(once <= DATA_T.max_value())
    steps = once / DATA_T.lsb()
    np.testing.assert_array_equal(steps, np.round(steps))


def test_quantize_keeps_in_range_values_within_one_lsb():
    rng = np.random.default_rng(2)
    values = rng.uniform(-15.0, 15.0, size=100)
    q = DATA_T.quantize(values)
    assert q.shape == values.shape
    diff = values - q
    assert float(diff.min()) >= 0.0
    assert float(diff.max()) < DATA_T.lsb()
    lsb = DATA_T.lsb()
    assert DATA_T.quantize(1.0 + lsb / 2) == 1.0
    assert DATA_T.quantize(-1.0 + lsb / 2) == -1.0


def test_quantize_scalar_gives_float():
    result = SCORE_T.quantize(1.5)
    assert isinstance(result, float)
    assert result == 1.5


def test_quantize_non_finite_becomes_zero():
    result = DATA_T.quantize([math.inf, -math.inf, math.nan, 1.0])
    np.testing.assert_array_equal(result, [0.0, 0.0, 0.0, 1.0])


def test_accumulator_drops_excess_fraction_bits():
    product = 2.0 ** -23 + 1.0
    assert ACC_T.quantize(product) == 1.0


def test_constants_follow_conversion_rules():
    assert SCALE == SCORE_T.quantize(0.5) == 0.5
    assert LN_EPS == DATA_T.quantize(1e-5)
    assert LN_EPS < DATA_T.lsb()
    # -64 lies outside score_t's range and wraps around.
    assert NEG_INF == SCORE_T.quantize(-64.0) == 0.0


def test_invalid_width_rejected():
    with pytest.raises(ValueError):
        FixedType(0, 0)