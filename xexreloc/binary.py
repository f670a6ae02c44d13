"""Big-endian field helpers shared by the planner, applier and compactor."""

from __future__ import annotations

from typing import Any, Union

from .errors import ConfigurationError

WORD_SIZE = 4

Buffer = Union[bytes, bytearray, memoryview]


def read_be32(data: Buffer, offset: int) -> int:
    if offset < 0 or offset + WORD_SIZE > len(data):
        raise ValueError(f"BE32 read at 0x{offset:X} falls outside buffer of {len(data)} bytes")
    return int.from_bytes(data[offset : offset + WORD_SIZE], "big")


def write_be32(buffer: bytearray, offset: int, value: int) -> None:
    if offset < 0 or offset + WORD_SIZE > len(buffer):
        raise ValueError(f"BE32 write at 0x{offset:X} falls outside buffer of {len(buffer)} bytes")
    buffer[offset : offset + WORD_SIZE] = (value & 0xFFFFFFFF).to_bytes(WORD_SIZE, "big")


def read_be16(data: Buffer, offset: int) -> int:
    if offset < 0 or offset + 2 > len(data):
        raise ValueError(f"BE16 read at 0x{offset:X} falls outside buffer of {len(data)} bytes")
    return int.from_bytes(data[offset : offset + 2], "big")


def write_be16(buffer: bytearray, offset: int, value: int) -> None:
    if offset < 0 or offset + 2 > len(buffer):
        raise ValueError(f"BE16 write at 0x{offset:X} falls outside buffer of {len(buffer)} bytes")
    buffer[offset : offset + 2] = (value & 0xFFFF).to_bytes(2, "big")


def align_up(value: int, alignment: int) -> int:
    """Round ``value`` up to the next multiple of ``alignment``.

    Alignments of zero or one leave the value untouched.  Non power-of-two
    alignments are accepted as well since some catalogs describe record
    strides rather than hardware boundaries.
    """

    if alignment <= 1:
        return value
    remainder = value % alignment
    if remainder == 0:
        return value
    return value + (alignment - remainder)


def ranges_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Return ``True`` when the half-open ranges share at least one byte."""

    return a_start < b_end and b_start < a_end


def coerce_int(value: Any, what: str) -> int:
    """Interpret ``value`` as an integer, accepting ``"0x..."`` strings."""

    if isinstance(value, bool):
        raise ConfigurationError(f"{what} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 0)
        except ValueError:
            raise ConfigurationError(f"{what} is not a valid integer: {value!r}") from None
    raise ConfigurationError(f"{what} must be an integer, got {type(value).__name__}")


def format_bytes(count: int) -> str:
    if count >= 1_048_576:
        return f"{count / 1_048_576:.2f} MB"
    if count >= 1_024:
        return f"{count / 1_024:.1f} KB"
    return f"{count} B"


def percent(used: int, total: int) -> str:
    if total <= 0:
        return "N/A"
    return f"{used / total * 100:.1f}%"
