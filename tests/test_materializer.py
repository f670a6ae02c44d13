import logging
import sys
from pathlib import Path

import pytest

from xexreloc import (
    BlobMaterializer,
    ConfigurationError,
    ExternalRegenerator,
    Item,
    ItemPayload,
    Placement,
    RegenerationError,
    RegionKind,
)

FAKE_TOOL = """
import sys
from pathlib import Path

source, output, va = sys.argv[1:4]
print("converting", va)
Path(output).write_bytes(Path(source).read_bytes() + bytes.fromhex(va))
"""


def _placement(name: str = "Beta", size: int = 8, repack: bool = True, va: int = 0x82000200) -> Placement:
    return Placement(name, RegionKind.PRIMARY_POOL, 0x200, va, size, requires_repack=repack)


def test_captured_bytes_are_used_when_nothing_moved() -> None:
    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured", b"source")})

    blob = materializer.build(Item("Beta", 8, address_sensitive=True), _placement(repack=False))

    assert blob == b"captured"


def test_moved_items_are_regenerated_at_their_new_va() -> None:
    calls = []

    def regenerate(source: bytes, va: int) -> bytes:
        calls.append((source, va))
        return b"rebuilt!"

    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured", b"source")}, regenerate)

    blob = materializer.build(Item("Beta", 8, address_sensitive=True), _placement())

    assert blob == b"rebuilt!"
    assert calls == [(b"source", 0x82000200)]


def test_regeneration_without_a_regenerator_is_a_configuration_error() -> None:
    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured", b"source")})

    with pytest.raises(ConfigurationError, match="no regenerator"):
        materializer.build(Item("Beta", 8, address_sensitive=True), _placement())


def test_missing_source_falls_back_to_captured_bytes(caplog) -> None:
    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured")})

    with caplog.at_level(logging.WARNING):
        blob = materializer.build(Item("Beta", 8, address_sensitive=True), _placement())

    assert blob == b"captured"
    assert "reusing captured bytes" in caplog.text


def test_back_pointer_items_keep_their_captured_bytes() -> None:
    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured", b"source")})

    blob = materializer.build(Item("Beta", 8, address_sensitive=True, back_pointer=True), _placement())

    assert blob == b"captured"


def test_size_mismatch_is_logged(caplog) -> None:
    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured", b"source")}, lambda source, va: b"longer blob")

    with caplog.at_level(logging.WARNING):
        blob = materializer.build(Item("Beta", 8, address_sensitive=True), _placement())

    assert blob == b"longer blob"
    assert "differs from planned" in caplog.text


def test_zero_length_and_missing_payloads() -> None:
    materializer = BlobMaterializer({})

    assert materializer.build(Item("Empty", 0), _placement("Empty", size=0)) == b""
    with pytest.raises(ConfigurationError, match="no payload captured"):
        materializer.build(Item("Beta", 8), _placement())
    with pytest.raises(ConfigurationError, match="placement for unknown item"):
        materializer.build_all([Item("Alpha", 8)], [_placement()])


def test_empty_regeneration_output_is_fatal() -> None:
    materializer = BlobMaterializer({"Beta": ItemPayload(b"captured", b"source")}, lambda source, va: b"")

    with pytest.raises(RegenerationError, match="produced no bytes"):
        materializer.build(Item("Beta", 8, address_sensitive=True), _placement())


def test_external_regenerator_runs_the_command(tmp_path: Path, caplog) -> None:
    tool = tmp_path / "tool.py"
    tool.write_text(FAKE_TOOL, "utf-8")

    with caplog.at_level(logging.INFO):
        data = ExternalRegenerator([sys.executable, str(tool)])(b"src", 0x82ABCDEF)

    assert data == b"src\x82\xab\xcd\xef"
    assert "converting 82ABCDEF" in caplog.text


@pytest.mark.parametrize(
    "script,message",
    [
        ("import sys; sys.exit(3)", "exited with code 3"),
        ("pass", "produced no output"),
        ("import sys; open(sys.argv[2], 'wb').close()", "empty blob"),
    ],
)
def test_external_regenerator_failures(tmp_path: Path, script: str, message: str) -> None:
    tool = tmp_path / "tool.py"
    tool.write_text(script, "utf-8")

    with pytest.raises(RegenerationError, match=message):
        ExternalRegenerator([sys.executable, str(tool)])(b"src", 0x82000000)


def test_external_regenerator_reports_missing_programs(tmp_path: Path) -> None:
    with pytest.raises(RegenerationError, match="could not launch"):
        ExternalRegenerator([str(tmp_path / "does-not-exist")])(b"src", 0x82000000)
    with pytest.raises(ConfigurationError, match="must not be empty"):
        ExternalRegenerator([])
