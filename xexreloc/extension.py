"""XEX2 block table analysis and file extension.

Only uncompressed ("basic", type 1) images are understood.  The loader maps
the data blocks described at 0x1C08 one after the other from 0x82000000;
appending bytes to the file and growing the last block's ``data_size`` makes
those bytes visible right after the current end of the mapped data.  The
header ``image_size`` is never touched, which caps the extension at the gap
between ``image_size`` and the sum of all block sizes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from .binary import read_be32, write_be32
from .errors import ExtensionError

logger = logging.getLogger(__name__)

XEX_MAGIC = b"XEX2"
MIN_HEADER_LENGTH = 0x2000
HEADER_IMAGE_SIZE_OFFSET = 0x104
HEADER_SHA1_OFFSET = 0x108
FILE_FORMAT_INFO_OFFSET = 0x1C00
BLOCK_ENTRIES_OFFSET = 0x1C08
BLOCK_ENTRY_SIZE = 8
DATA_START_OFFSET = 0x3000
XEX_BASE_ADDRESS = 0x82000000
BASIC_COMPRESSION = 1

HEADER_FORMATS = ("xex2", "raw")


@dataclass(frozen=True)
class XexBlock:
    index: int
    file_offset: int
    data_size: int
    zero_size: int
    memory_address: int

    @property
    def memory_size(self) -> int:
        return self.data_size + self.zero_size

    @property
    def entry_offset(self) -> int:
        return BLOCK_ENTRIES_OFFSET + self.index * BLOCK_ENTRY_SIZE


@dataclass
class XexAnalysis:
    """Result of :func:`analyze_image`; ``valid`` is ``False`` with ``error`` set otherwise."""

    valid: bool
    error: str = ""
    file_size: int = 0
    image_size: int = 0
    sha1: bytes = b""
    compression_type: int = 0
    blocks: List[XexBlock] = field(default_factory=list)
    total_data_size: int = 0
    total_zero_size: int = 0
    end_memory_address: int = 0
    max_extension_size: int = 0

    @property
    def last_block(self) -> XexBlock:
        return self.blocks[-1]

    @property
    def last_block_zero_size(self) -> int:
        return self.blocks[-1].zero_size if self.blocks else 0

    def describe(self) -> List[str]:
        if not self.valid:
            return [f"Invalid XEX: {self.error}"]
        compression = {1: "Basic", 2: "LZX"}.get(self.compression_type, f"Type {self.compression_type}")
        return [
            "XEX Analysis:",
            f"  File size: 0x{self.file_size:X} ({self.file_size / 1024 / 1024:.2f} MB)",
            f"  Image size: 0x{self.image_size:X} ({self.image_size / 1024 / 1024:.2f} MB)",
            f"  Compression: {compression}",
            f"  Blocks: {len(self.blocks)}",
            f"  Data end address: 0x{self.end_memory_address:08X}",
            f"  Extension headroom: 0x{self.max_extension_size:X} ({self.max_extension_size // 1024} KB)",
            f"  Last block zero_size: 0x{self.last_block_zero_size:X}",
            f"  SHA1: {self.sha1.hex()}",
        ]


def analyze_image(image: bytes) -> XexAnalysis:
    """Parse the XEX2 header of ``image`` without raising."""

    if len(image) < MIN_HEADER_LENGTH or image[:4] != XEX_MAGIC:
        return XexAnalysis(valid=False, error="Not a valid XEX2 file")

    analysis = XexAnalysis(valid=True, file_size=len(image))
    analysis.image_size = read_be32(image, HEADER_IMAGE_SIZE_OFFSET)
    analysis.sha1 = bytes(image[HEADER_SHA1_OFFSET : HEADER_SHA1_OFFSET + 20])

    info_size = read_be32(image, FILE_FORMAT_INFO_OFFSET)
    analysis.compression_type = read_be32(image, FILE_FORMAT_INFO_OFFSET + 4)
    if analysis.compression_type != BASIC_COMPRESSION:
        analysis.valid = False
        analysis.error = (
            f"Unsupported compression type: {analysis.compression_type}. "
            "Only basic compression (type 1) is supported."
        )
        return analysis

    block_count = (info_size - 8) // BLOCK_ENTRY_SIZE
    if block_count <= 0:
        analysis.valid = False
        analysis.error = "File format info describes no data blocks"
        return analysis
    if BLOCK_ENTRIES_OFFSET + block_count * BLOCK_ENTRY_SIZE > len(image):
        analysis.valid = False
        analysis.error = f"Block table with {block_count} entries runs past the end of the file"
        return analysis

    file_offset = DATA_START_OFFSET
    memory_offset = 0
    for index in range(block_count):
        entry = BLOCK_ENTRIES_OFFSET + index * BLOCK_ENTRY_SIZE
        data_size = read_be32(image, entry)
        zero_size = read_be32(image, entry + 4)
        analysis.blocks.append(
            XexBlock(index, file_offset, data_size, zero_size, (XEX_BASE_ADDRESS + memory_offset) & 0xFFFFFFFF)
        )
        analysis.total_data_size += data_size
        analysis.total_zero_size += zero_size
        file_offset += data_size
        memory_offset += data_size + zero_size

    analysis.end_memory_address = (XEX_BASE_ADDRESS + memory_offset) & 0xFFFFFFFF
    analysis.max_extension_size = max(0, analysis.image_size - memory_offset)
    return analysis


def extend_image(
    image: bytes,
    size: int,
    header: str = "xex2",
    *,
    via_zero_size: bool = False,
) -> Tuple[bytes, List[str]]:
    """Append ``size`` zero bytes to ``image`` and announce them in the header.

    ``header="raw"`` only grows the file.  For ``"xex2"`` the last block's
    ``data_size`` grows by ``size``; with ``via_zero_size`` the same amount is
    also taken out of its ``zero_size`` so the mapped footprint stays the
    same, which lifts the ``image_size`` headroom limit in exchange for the
    last block's zero fill.
    """

    if header not in HEADER_FORMATS:
        raise ExtensionError(f"unknown header format {header!r}")
    if size <= 0:
        raise ExtensionError("No data to append")

    log: List[str] = []
    if header == "raw":
        log.append(f"Appended {size:,} bytes to raw image of {len(image):,} bytes")
        return bytes(image) + bytes(size), log

    analysis = analyze_image(image)
    if not analysis.valid:
        raise ExtensionError(analysis.error)

    last = analysis.last_block
    log.append(f"Original XEX: {analysis.file_size:,} bytes")
    log.append(f"Original image size: 0x{analysis.image_size:X}")
    log.append(f"Data to append: {size:,} bytes")

    if via_zero_size:
        if size > last.zero_size:
            raise ExtensionError(
                f"Data ({size:,} bytes) exceeds last block zero_size ({last.zero_size:,} bytes)"
            )
    elif size > analysis.max_extension_size:
        raise ExtensionError(
            f"Extension size ({size:,} bytes) exceeds available headroom "
            f"({analysis.max_extension_size:,} bytes). The XEX can only be extended by the difference "
            f"between image_size (0x{analysis.image_size:X}) and block memory total "
            f"(0x{analysis.total_data_size + analysis.total_zero_size:X})."
        )

    result = bytearray(image)
    result.extend(bytes(size))
    new_data_size = last.data_size + size
    write_be32(result, last.entry_offset, new_data_size)
    log.append(f"Updated block {last.index} data_size: 0x{last.data_size:X} -> 0x{new_data_size:X}")
    data_address = analysis.end_memory_address
    if via_zero_size:
        new_zero_size = last.zero_size - size
        write_be32(result, last.entry_offset + 4, new_zero_size)
        log.append(f"Updated block {last.index} zero_size: 0x{last.zero_size:X} -> 0x{new_zero_size:X}")
        data_address = last.memory_address + last.data_size
    log.append(f"New data at memory address: 0x{data_address:08X}")
    log.append(f"Image size: 0x{analysis.image_size:X} (unchanged)")
    logger.info("extended image by 0x%X bytes (block %d)", size, last.index)
    return bytes(result), log
