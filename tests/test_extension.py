import pytest

from xexreloc import ExtensionError, analyze_image, extend_image
from xexreloc.binary import read_be32


def test_analyze_reads_block_table(make_xex) -> None:
    image = make_xex(blocks=[(0x800, 0x100), (0x400, 0x200)], image_size=0x2000)

    analysis = analyze_image(image)

    assert analysis.valid
    assert analysis.file_size == 0x4000
    assert [block.memory_address for block in analysis.blocks] == [0x82000000, 0x82000900]
    assert [block.file_offset for block in analysis.blocks] == [0x3000, 0x3800]
    assert analysis.total_data_size == 0xC00
    assert analysis.total_zero_size == 0x300
    assert analysis.end_memory_address == 0x82000F00
    assert analysis.max_extension_size == 0x2000 - 0xF00
    assert analysis.last_block_zero_size == 0x200
    assert "  Blocks: 2" in analysis.describe()


@pytest.mark.parametrize(
    "image,message",
    [
        (b"XEX2" + bytes(0x100), "Not a valid XEX2 file"),
        (bytes(0x4000), "Not a valid XEX2 file"),
    ],
)
def test_analyze_rejects_non_xex(image: bytes, message: str) -> None:
    analysis = analyze_image(image)

    assert not analysis.valid
    assert analysis.error == message
    assert analysis.describe() == [f"Invalid XEX: {message}"]


def test_analyze_rejects_compressed_images(make_xex) -> None:
    analysis = analyze_image(make_xex(compression=2))

    assert not analysis.valid
    assert "Unsupported compression type: 2" in analysis.error


def test_analyze_rejects_empty_block_table(make_xex) -> None:
    analysis = analyze_image(make_xex(blocks=[]))

    assert not analysis.valid
    assert "no data blocks" in analysis.error


def test_extend_xex_grows_last_block(make_xex) -> None:
    image = make_xex(blocks=[(0x800, 0x100), (0x400, 0x200)], image_size=0x2000)

    extended, log = extend_image(image, 0x300)

    assert len(extended) == len(image) + 0x300
    assert extended[:0x1C10] == image[:0x1C10]
    assert read_be32(extended, 0x1C10) == 0x700
    assert read_be32(extended, 0x1C14) == 0x200
    assert read_be32(extended, 0x104) == 0x2000
    assert "New data at memory address: 0x82000F00" in log
    assert analyze_image(extended).total_data_size == 0xF00


def test_extend_xex_via_zero_size_keeps_footprint(make_xex) -> None:
    image = make_xex(blocks=[(0x800, 0x100), (0x400, 0x200)], image_size=0x2000)

    extended, log = extend_image(image, 0x180, via_zero_size=True)

    assert read_be32(extended, 0x1C10) == 0x580
    assert read_be32(extended, 0x1C14) == 0x80
    assert "New data at memory address: 0x82000D00" in log
    analysis = analyze_image(extended)
    assert analysis.end_memory_address == analyze_image(image).end_memory_address


def test_extend_xex_respects_headroom(make_xex) -> None:
    image = make_xex(blocks=[(0x1000, 0)], image_size=0x1800)

    with pytest.raises(ExtensionError, match="exceeds available headroom"):
        extend_image(image, 0x900)
    with pytest.raises(ExtensionError, match="exceeds last block zero_size"):
        extend_image(image, 0x10, via_zero_size=True)


def test_extend_raw_only_appends() -> None:
    extended, log = extend_image(b"\x01\x02", 3, header="raw")

    assert extended == b"\x01\x02\x00\x00\x00"
    assert log == ["Appended 3 bytes to raw image of 2 bytes"]


@pytest.mark.parametrize("size,header,message", [(0, "raw", "No data"), (4, "elf", "unknown header"), (4, "xex2", "Not a valid")])
def test_extend_rejects_bad_requests(size: int, header: str, message: str) -> None:
    with pytest.raises(ExtensionError, match=message):
        extend_image(bytes(16), size, header)
