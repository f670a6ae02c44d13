"""Compaction of a contiguous table of fixed-size records.

The multiplayer setup region of the default image is a run of records laid
out back to back.  Dropping some of them and sliding the survivors down frees
a tail that the planner can later hand out as a
:attr:`~xexreloc.model.RegionKind.COMPACTED_FREED_TAIL` segment.  Moving the
survivors invalidates every pointer stored in the level index table, so the
operation is split into two explicit states:

``compact`` returns a :class:`CompactedImage` which only exposes the range
that is still in flux.  ``fix_pointers`` consumes that object exactly once
and returns a :class:`PointersFixedImage`, the only object that hands out the
freed tail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .binary import coerce_int, read_be32, write_be32
from .errors import ConfigurationError, SequencingError
from .model import CompactableRecord, FreeSegment, RegionKind, Span

logger = logging.getLogger(__name__)

__all__ = [
    "CompactionLayout",
    "CompactedImage",
    "PointersFixedImage",
    "RegionCompactor",
]


@dataclass(frozen=True)
class CompactionLayout:
    """Known record layout plus the index table that points into it."""

    region_start: int
    region_end: int
    records: Tuple[CompactableRecord, ...]
    va_base: int
    index_start: int = 0
    index_end: int = 0
    index_stride: int = 0x38
    index_id_offset: int = 0
    index_pointer_offset: int = 0x20
    default_remove: Tuple[str, ...] = ()

    @property
    def index_entry_count(self) -> int:
        if self.index_stride <= 0 or self.index_end <= self.index_start:
            return 0
        return (self.index_end - self.index_start) // self.index_stride

    def find(self, name: str) -> Optional[CompactableRecord]:
        wanted = name.casefold()
        for record in self.records:
            if record.name.casefold() == wanted:
                return record
        return None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CompactionLayout":
        for key in ("region_start", "region_end", "records", "va_base"):
            if key not in data:
                raise ConfigurationError(f"compaction.{key} is required")
        records: List[CompactableRecord] = []
        for index, entry in enumerate(data["records"]):
            if not isinstance(entry, Mapping) or not {"name", "offset", "size"} <= set(entry):
                raise ConfigurationError(f"compaction.records[{index}] needs name, offset and size")
            if any(record.name.casefold() == str(entry["name"]).casefold() for record in records):
                raise ConfigurationError(f"compaction.records: duplicate record {entry['name']!r}")
            records.append(
                CompactableRecord(
                    name=str(entry["name"]),
                    offset=coerce_int(entry["offset"], f"compaction.records[{index}].offset"),
                    size=coerce_int(entry["size"], f"compaction.records[{index}].size"),
                )
            )
        index = data.get("index", {})
        if not isinstance(index, Mapping):
            raise ConfigurationError("compaction.index must be a mapping")
        return cls(
            region_start=coerce_int(data["region_start"], "compaction.region_start"),
            region_end=coerce_int(data["region_end"], "compaction.region_end"),
            records=tuple(records),
            va_base=coerce_int(data["va_base"], "compaction.va_base"),
            index_start=coerce_int(index.get("start", 0), "compaction.index.start"),
            index_end=coerce_int(index.get("end", 0), "compaction.index.end"),
            index_stride=coerce_int(index.get("stride", 0x38), "compaction.index.stride"),
            index_id_offset=coerce_int(index.get("id_offset", 0), "compaction.index.id_offset"),
            index_pointer_offset=coerce_int(index.get("pointer_offset", 0x20), "compaction.index.pointer_offset"),
            default_remove=tuple(str(name) for name in data.get("default_remove", ())),
        )


@dataclass
class CompactedImage:
    """Image whose records moved but whose index pointers are still stale."""

    image: bytes
    original: Tuple[CompactableRecord, ...]
    layout: Tuple[CompactableRecord, ...]
    removed: Tuple[CompactableRecord, ...]
    report: List[str]
    pending_range: Span
    _consumed: bool = field(default=False, repr=False)

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def new_end(self) -> int:
        if not self.layout:
            return self.pending_range.start
        return self.layout[-1].end


@dataclass(frozen=True)
class PointersFixedImage:
    """Final compaction state; the freed tail may now be planned into."""

    image: bytes
    layout: Tuple[CompactableRecord, ...]
    report: List[str]
    freed_segment: FreeSegment

    @property
    def bytes_freed(self) -> int:
        return self.freed_segment.size


class RegionCompactor:
    """Remove records from a sequential table and repair the index into it."""

    def __init__(self, layout: CompactionLayout) -> None:
        self.layout = layout

    def scan(self, image: bytes) -> List[CompactableRecord]:
        """Validate the configured layout against ``image`` and return it.

        Records must tile the region exactly: the first starts at the region
        start, each following record starts where its predecessor ends and
        the last one ends on the region end.
        """

        layout = self.layout
        if layout.region_end > len(image):
            raise ConfigurationError(
                f"compaction region ends at 0x{layout.region_end:X} but the image is only 0x{len(image):X} bytes"
            )
        if not layout.records:
            raise ConfigurationError("compaction layout has no records")
        cursor = layout.region_start
        for record in layout.records:
            if record.size < 0:
                raise ConfigurationError(f"record {record.name!r} has a negative size")
            if record.offset != cursor:
                raise ConfigurationError(
                    f"record {record.name!r} starts at 0x{record.offset:X}, expected 0x{cursor:X}"
                )
            cursor = record.end
        if cursor != layout.region_end:
            raise ConfigurationError(
                f"records end at 0x{cursor:X} but the region ends at 0x{layout.region_end:X}"
            )
        return list(layout.records)

    def compact(self, image: bytes, names_to_remove: Optional[Iterable[str]] = None) -> CompactedImage:
        layout = self.layout
        records = self.scan(image)
        requested = list(layout.default_remove if names_to_remove is None else names_to_remove)
        remove = {name.casefold() for name in requested}

        report: List[str] = []
        known = {record.name.casefold() for record in records}
        for name in requested:
            if name.casefold() not in known:
                report.append(f"WARN: '{name}' not found in layout - skipped.")
                logger.warning("compaction: unknown record %r ignored", name)

        kept = [record for record in records if record.name.casefold() not in remove]
        removed = [record for record in records if record.name.casefold() in remove]
        freed_by_removal = sum(record.size for record in removed)

        report.append("=== REGION COMPACTION ===")
        plural = "entry" if len(removed) == 1 else "entries"
        report.append(f"Removing {len(removed)} {plural}  ({freed_by_removal:,} bytes freed):")
        for record in removed:
            report.append(f"  - {record.name:<28}  size 0x{record.size:05X}  ({record.size:,} bytes)")
        report.append("")
        report.append(f"Keeping {len(kept)} entries - new layout:")

        result = bytearray(image)
        result[layout.region_start : layout.region_end] = bytes(layout.region_end - layout.region_start)

        moved: List[CompactableRecord] = []
        cursor = layout.region_start
        for record in kept:
            result[cursor : cursor + record.size] = image[record.offset : record.end]
            moved.append(record.moved_to(cursor))
            delta = cursor - record.offset
            delta_text = "unchanged" if delta == 0 else f"{delta:+d} bytes"
            report.append(f"  {record.name:<28}  0x{record.offset:07X} -> 0x{cursor:07X}  ({delta_text})")
            cursor += record.size

        freed = layout.region_end - cursor
        report.append("")
        report.append("Compaction complete.")
        report.append(f"  Bytes freed : {freed:,}  (0x{freed:X})")
        report.append(f"  New end     : 0x{cursor:07X}  (was 0x{layout.region_end:07X})")
        logger.info("compacted %d records, freed 0x%X bytes", len(removed), freed)

        return CompactedImage(
            image=bytes(result),
            original=tuple(records),
            layout=tuple(moved),
            removed=tuple(removed),
            report=report,
            pending_range=Span(layout.region_start, layout.region_end),
        )

    def fix_pointers(self, compacted: CompactedImage) -> PointersFixedImage:
        """Rewrite index pointers for a :class:`CompactedImage`, exactly once."""

        if not isinstance(compacted, CompactedImage):
            raise SequencingError(
                f"fix_pointers expects the result of compact(), got {type(compacted).__name__}"
            )
        if compacted.consumed:
            raise SequencingError("pointers for this compaction were already fixed")

        layout = self.layout
        count = layout.index_entry_count
        if count and layout.index_start + count * layout.index_stride > len(compacted.image):
            raise ConfigurationError("index table extends past the end of the image")

        buffer = bytearray(compacted.image)
        moved_by_name: Dict[str, CompactableRecord] = {r.name.casefold(): r for r in compacted.layout}
        report = ["=== INDEX POINTER FIXUP ==="]
        if count:
            report.append(
                f"  Table : 0x{layout.index_start:07X} - 0x{layout.index_end - 1:07X}"
                f"  ({count} entries x 0x{layout.index_stride:X} bytes)"
            )
        else:
            report.append("  No index table configured.")
        report.append("")

        updated = zeroed = unchanged = 0
        for entry in range(count):
            base = layout.index_start + entry * layout.index_stride
            item_id = read_be32(buffer, base + layout.index_id_offset)
            if item_id == 0:
                continue
            pointer = read_be32(buffer, base + layout.index_pointer_offset)
            if pointer == 0:
                continue
            owner = _owning_record(compacted.original, pointer - layout.va_base)
            if owner is None:
                unchanged += 1
                continue
            moved = moved_by_name.get(owner.name.casefold())
            if moved is None:
                write_be32(buffer, base + layout.index_pointer_offset, 0)
                report.append(f"  Id 0x{item_id:02X}  0x{pointer:08X}  REMOVED (in '{owner.name}') - zeroed")
                zeroed += 1
                continue
            delta = moved.offset - owner.offset
            if delta == 0:
                unchanged += 1
                continue
            new_pointer = (pointer + delta) & 0xFFFFFFFF
            write_be32(buffer, base + layout.index_pointer_offset, new_pointer)
            report.append(
                f"  Id 0x{item_id:02X}  0x{pointer:08X} -> 0x{new_pointer:08X}  (delta {delta:+d}, in '{owner.name}')"
            )
            updated += 1

        report.append("")
        report.append(f"  Updated : {updated}")
        report.append(f"  Zeroed  : {zeroed}  (pointers into removed entries)")
        report.append(f"  Skipped : {unchanged}  (outside region or already correct)")

        compacted._consumed = True
        return PointersFixedImage(
            image=bytes(buffer),
            layout=compacted.layout,
            report=report,
            freed_segment=FreeSegment(compacted.new_end, layout.region_end, RegionKind.COMPACTED_FREED_TAIL),
        )


def _owning_record(records: Sequence[CompactableRecord], offset: int) -> Optional[CompactableRecord]:
    for record in records:
        if record.offset <= offset < record.end:
            return record
    return None
