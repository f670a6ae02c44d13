"""Produce the bytes that get written for each placement."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence

from .errors import ConfigurationError, RegenerationError
from .model import Item, Placement

logger = logging.getLogger(__name__)

Regenerator = Callable[[bytes, int], bytes]


@dataclass(frozen=True)
class ItemPayload:
    """Bytes captured for an item plus the optional source it was built from."""

    captured: bytes
    source: Optional[bytes] = None


class ExternalRegenerator:
    """Run an external converter as ``command... input output VA``.

    The VA is passed as eight upper-case hex digits.  The call blocks until
    the tool exits; there is no timeout.
    """

    def __init__(self, command: Sequence[str], work_dir: Optional[Path] = None) -> None:
        if not command:
            raise ConfigurationError("regeneration command must not be empty")
        self.command = list(command)
        self.work_dir = work_dir

    def __call__(self, source: bytes, va: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="xexreloc-", dir=self.work_dir) as tmp:
            input_path = Path(tmp) / "input.set"
            output_path = Path(tmp) / f"output_{va:08X}.bin"
            input_path.write_bytes(source)
            args = self.command + [str(input_path), str(output_path), f"{va:08X}"]
            logger.debug("running %s", " ".join(args))
            try:
                completed = subprocess.run(args, capture_output=True, text=True)
            except OSError as exc:
                raise RegenerationError(f"could not launch {self.command[0]}: {exc}") from exc

            if completed.stdout.strip():
                logger.info("%s: %s", self.command[0], completed.stdout.strip())
            if completed.stderr.strip():
                logger.warning("%s: %s", self.command[0], completed.stderr.strip())
            if completed.returncode != 0:
                raise RegenerationError(
                    f"{self.command[0]} exited with code {completed.returncode} for VA 0x{va:08X}"
                )
            if not output_path.exists():
                raise RegenerationError(f"{self.command[0]} produced no output for VA 0x{va:08X}")
            data = output_path.read_bytes()
        if not data:
            raise RegenerationError(f"{self.command[0]} produced an empty blob for VA 0x{va:08X}")
        return data


class BlobMaterializer:
    """Turn placements into bytes, regenerating moved address-sensitive items."""

    def __init__(self, payloads: Mapping[str, ItemPayload], regenerator: Optional[Regenerator] = None) -> None:
        self.payloads = dict(payloads)
        self.regenerator = regenerator

    def build(self, item: Item, placement: Placement) -> bytes:
        if item.name != placement.item:
            raise ConfigurationError(f"placement for {placement.item!r} passed with item {item.name!r}")
        if item.size == 0 or placement.size == 0:
            return b""

        payload = self.payloads.get(item.name)
        if payload is None:
            raise ConfigurationError(f"no payload captured for {item.name!r}")
        if not placement.requires_repack:
            return payload.captured
        if item.back_pointer:
            # The applier rewrites the trailing back-pointer in place.
            return payload.captured
        if payload.source is not None:
            if self.regenerator is None:
                raise ConfigurationError(f"{item.name!r} needs regeneration but no regenerator is configured")
            data = self.regenerator(payload.source, placement.va)
            if not data:
                raise RegenerationError(f"regeneration of {item.name!r} produced no bytes")
            if len(data) != placement.size:
                logger.warning(
                    "%s: regenerated size 0x%X differs from planned 0x%X", item.name, len(data), placement.size
                )
            return data

        logger.warning(
            "%s moved to VA 0x%08X but has no source; reusing captured bytes", item.name, placement.va
        )
        return payload.captured

    def build_all(self, items: Iterable[Item], placements: Iterable[Placement]) -> Dict[str, bytes]:
        by_name = {item.name: item for item in items}
        blobs: Dict[str, bytes] = {}
        for placement in placements:
            item = by_name.get(placement.item)
            if item is None:
                raise ConfigurationError(f"placement for unknown item {placement.item!r}")
            blobs[placement.item] = self.build(item, placement)
        return blobs
