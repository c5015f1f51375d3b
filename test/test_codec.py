"""Tests for the register codec."""

import math
import random

import pytest

from hardware.codec import (
    INT16_MAX,
    INT16_MIN,
    decode_float32_le,
    decode_int16,
    encode_float32_le,
    encode_int16,
    float32_bits,
)
from hardware.device_types import OutOfRangeError


def _is_nan_pattern(low, high):
    bits = (high << 16) | low
    return (bits & 0x7F800000) == 0x7F800000 and (bits & 0x007FFFFF) != 0


class TestFloat32:
    def test_low_word_first(self):
        assert decode_float32_le(0x0000, 0x3F80) == 1.0
        assert encode_float32_le(1.0) == (0x0000, 0x3F80)

    def test_force_value(self):
        low, high = encode_float32_le(1500.0)
        assert decode_float32_le(low, high) == 1500.0
        assert float32_bits(low, high) == 0x44BB8000

    def test_special_patterns_decode(self):
        assert decode_float32_le(0x0000, 0x7F80) == math.inf
        assert decode_float32_le(0x0000, 0xFF80) == -math.inf
        assert math.isnan(decode_float32_le(0x0001, 0x7FC0))
        negative_zero = decode_float32_le(0x0000, 0x8000)
        assert negative_zero == 0.0 and math.copysign(1.0, negative_zero) < 0

    @pytest.mark.parametrize("low,high", [(0, 0), (1, 0), (0xFFFF, 0x7F7F), (0x0000, 0x8000), (0x0000, 0x7F80)])
    def test_round_trip_edges(self, low, high):
        assert encode_float32_le(decode_float32_le(low, high)) == (low, high)

    def test_round_trip_random_pairs(self):
        rng = random.Random(20240611)
        checked = 0
        while checked < 2000:
            low, high = rng.randrange(0x10000), rng.randrange(0x10000)
            if _is_nan_pattern(low, high):
                continue
            assert encode_float32_le(decode_float32_le(low, high)) == (low, high)
            checked += 1

    @pytest.mark.parametrize("word", [-1, 0x10000, True, 1.5, "12"])
    def test_rejects_non_words(self, word):
        with pytest.raises(OutOfRangeError):
            decode_float32_le(word, 0)

    def test_overflowing_value_rejected(self):
        with pytest.raises(OutOfRangeError):
            encode_float32_le(1e40)


class TestInt16:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, 0),
            (2.5, 3),
            (2.4, 2),
            (-2.5, 0xFFFE),
            (-1, 0xFFFF),
            (INT16_MAX, 0x7FFF),
            (INT16_MIN, 0x8000),
            (32767.4, 0x7FFF),
            (-32768.5, 0x8000),
        ],
    )
    def test_encode(self, value, expected):
        assert encode_int16(value) == expected

    @pytest.mark.parametrize("value", [32767.5, 40000, -32768.6, -40000, math.nan, math.inf, -math.inf, "abc", None])
    def test_encode_rejects(self, value):
        with pytest.raises(OutOfRangeError):
            encode_int16(value)

    def test_out_of_range_is_value_error(self):
        with pytest.raises(ValueError):
            encode_int16(1e6)

    @pytest.mark.parametrize("word,expected", [(0, 0), (1, 1), (0x7FFF, 32767), (0x8000, -32768), (0xFFFF, -1)])
    def test_decode(self, word, expected):
        assert decode_int16(word) == expected

    def test_signed_round_trip(self):
        for value in range(INT16_MIN, INT16_MAX + 1, 97):
            assert decode_int16(encode_int16(value)) == value
