"""Conversions between Python numbers and 16-bit Modbus register words."""

from __future__ import annotations

import math
import struct
from typing import Tuple

from .device_types import OutOfRangeError

INT16_MIN = -32768
INT16_MAX = 32767
WORD_MASK = 0xFFFF


def _check_word(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= WORD_MASK:
        raise OutOfRangeError(f"Register word out of range: {value!r}")
    return value


def decode_float32_le(reg_low: int, reg_high: int) -> float:
    """Decode an IEEE-754 single stored low word first.

    Every bit pattern decodes, so NaN and infinities are returned as-is.
    """

    raw = struct.pack("<HH", _check_word(reg_low), _check_word(reg_high))
    return struct.unpack("<f", raw)[0]


def encode_float32_le(value: float) -> Tuple[int, int]:
    """Return the ``(low, high)`` register pair for ``value``."""

    try:
        raw = struct.pack("<f", float(value))
    except OverflowError as exc:
        raise OutOfRangeError(f"Value {value!r} does not fit a float32") from exc
    low, high = struct.unpack("<HH", raw)
    return low, high


def float32_bits(reg_low: int, reg_high: int) -> int:
    """Return the raw 32-bit pattern of a register pair."""

    return (_check_word(reg_high) << 16) | _check_word(reg_low)


def encode_int16(value: float) -> int:
    """Round ``value`` half-up and return it as an unsigned register word.

    Values outside the signed 16-bit range raise :class:`OutOfRangeError`;
    they are never wrapped.
    """

    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise OutOfRangeError(f"Value {value!r} is not numeric") from exc
    if math.isnan(number) or math.isinf(number):
        raise OutOfRangeError(f"Value {value!r} is not finite")
    rounded = math.floor(number + 0.5)
    if not INT16_MIN <= rounded <= INT16_MAX:
        raise OutOfRangeError(f"Value {value!r} outside int16 range [{INT16_MIN}, {INT16_MAX}]")
    return rounded & WORD_MASK


def decode_int16(word: int) -> int:
    """Return the signed view of one register word."""

    word = _check_word(word)
    return word - 0x10000 if word & 0x8000 else word


__all__ = [
    "INT16_MAX",
    "INT16_MIN",
    "decode_float32_le",
    "decode_int16",
    "encode_float32_le",
    "encode_int16",
    "float32_bits",
]
