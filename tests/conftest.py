from typing import Callable, Sequence, Tuple

import pytest

from xexreloc.binary import write_be32


def build_xex(
    length: int = 0x4000,
    blocks: Sequence[Tuple[int, int]] = ((0x1000, 0),),
    image_size: int = 0x3000,
    compression: int = 1,
) -> bytes:
    """Smallest buffer :func:`xexreloc.analyze_image` accepts as an XEX2 file."""

    data = bytearray(length)
    data[:4] = b"XEX2"
    write_be32(data, 0x104, image_size)
    write_be32(data, 0x1C00, 8 + 8 * len(blocks))
    write_be32(data, 0x1C04, compression)
    for index, (data_size, zero_size) in enumerate(blocks):
        write_be32(data, 0x1C08 + index * 8, data_size)
        write_be32(data, 0x1C0C + index * 8, zero_size)
    return bytes(data)


@pytest.fixture
def make_xex() -> Callable[..., bytes]:
    return build_xex
