"""Write planned blobs into a copy of the image and repair every reference."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from .binary import WORD_SIZE, read_be32, write_be32
from .catalog import RegionCatalog
from .errors import ConfigurationError, ExtensionError, OverlapError
from .extension import extend_image
from .menus import MenuReconciler
from .model import Placement, RelocationStyle

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    image: bytes
    log: List[str] = field(default_factory=list)


def fix_back_pointer(buffer: bytearray, start: int, size: int, old_va: int, new_va: int) -> Optional[int]:
    """Rewrite the last word in ``[start, start + size)`` equal to ``old_va``.

    The scan walks backwards in 4 byte steps from the final word of the blob
    and returns the offset that was patched, or ``None`` if nothing matched.
    """

    position = start + size - WORD_SIZE
    while position >= start:
        if position + WORD_SIZE <= len(buffer) and read_be32(buffer, position) == old_va:
            write_be32(buffer, position, new_va)
            return position
        position -= WORD_SIZE
    return None


class Applier:
    """Apply one layer's placements; the source image is never modified."""

    def __init__(self, catalog: RegionCatalog, *, reconciler: Optional[MenuReconciler] = None) -> None:
        self.catalog = catalog
        self.reconciler = reconciler

    def check(self, placements: Sequence[Placement], blobs: Mapping[str, bytes]) -> None:
        """Reject overlapping placements, oversized blobs and missing blobs."""

        names = set()
        for placement in placements:
            if placement.item in names:
                raise OverlapError(f"{placement.item!r} is placed more than once")
            names.add(placement.item)
            if placement.size == 0:
                continue
            blob = blobs.get(placement.item)
            if blob is None:
                raise ConfigurationError(f"no blob supplied for {placement.item!r}")
            if len(blob) > placement.size:
                raise OverlapError(
                    f"blob for {placement.item!r} is 0x{len(blob):X} bytes but only 0x{placement.size:X} were planned"
                )

        occupied = sorted((p for p in placements if p.size > 0), key=lambda p: p.offset)
        for previous, current in zip(occupied, occupied[1:]):
            if current.offset < previous.end:
                raise OverlapError(
                    f"{previous.item!r} [0x{previous.offset:X}, 0x{previous.end:X}) overlaps "
                    f"{current.item!r} at 0x{current.offset:X}"
                )

    def apply(
        self,
        source_image: bytes,
        placements: Sequence[Placement],
        blobs: Mapping[str, bytes],
        *,
        allow_extension: bool = False,
        reconcile_index: bool = True,
        menu_order: Optional[Sequence[str]] = None,
    ) -> ApplyResult:
        catalog = self.catalog
        self.check(placements, blobs)
        log: List[str] = [f"=== {catalog.name.upper()} APPLY REPORT ==="]

        image = bytes(source_image)
        required = max((p.end for p in placements), default=0)
        if required > len(image):
            if not allow_extension:
                raise ExtensionError(f"placements reach 0x{required:X} but extension is disabled")
            if catalog.extension is None:
                raise ExtensionError(f"layer {catalog.name!r} has no extension configured")
            image, extension_log = extend_image(image, required - len(image), catalog.extension.header)
            log.extend("  " + line for line in extension_log)

        buffer = bytearray(image)
        for placement in placements:
            blob = blobs.get(placement.item, b"") if placement.size else b""
            if blob and len(blob) != placement.size:
                self._warn(log, f"{placement.item} size mismatch (blob 0x{len(blob):X}, planned 0x{placement.size:X}).")
            buffer[placement.offset : placement.offset + len(blob)] = blob
            self._write_pointers(buffer, placement.item, placement.va)
            log.append(f"  {placement.item:<14} -> 0x{placement.offset:08X}  VA 0x{placement.va:08X}")

            original_va = catalog.original_va(placement.item)
            if (
                catalog.relocation is RelocationStyle.BACK_POINTER
                and blob
                and original_va is not None
                and placement.va != original_va
            ):
                patched = fix_back_pointer(buffer, placement.offset, len(blob), original_va, placement.va)
                if patched is None:
                    self._warn(log, f"Could not locate back-pointer in {placement.item}.")
                else:
                    log.append(f"    back-pointer @ 0x{patched:08X}: 0x{original_va:08X} -> 0x{placement.va:08X}")

        by_name = {placement.item: placement for placement in placements}
        for secondary, primary in catalog.mirrors:
            source = by_name.get(primary)
            if source is None:
                continue
            self._write_pointers(buffer, secondary, source.va)
            log.append(f"  {secondary:<14} -> mirrors {primary} VA 0x{source.va:08X}")

        if reconcile_index and self.reconciler is not None:
            self.reconciler.reconcile(buffer, [p.item for p in placements], menu_order, log)

        logger.info("%s: applied %d placements", catalog.name, len(placements))
        return ApplyResult(image=bytes(buffer), log=log)

    def _write_pointers(self, buffer: bytearray, name: str, va: int) -> None:
        for entry in self.catalog.pointer_entries(name):
            try:
                write_be32(buffer, entry.offset, va)
            except ValueError as exc:
                raise ConfigurationError(f"{entry.table} pointer for {name!r}: {exc}") from exc

    @staticmethod
    def _warn(log: List[str], message: str) -> None:
        logger.warning("%s", message)
        log.append(f"  WARN: {message}")
