"""Bin-packing allocator for relocatable blobs.

Planning is a pure function of the catalog, the current image and the
requested items.  Items are visited in priority order.  An item that fits its
fixed slot stays there unless a repack was forced.  Everything else is packed
first-fit into the receiving regions, which are tried in a fixed precedence:

1. caller supplied free segments (a compacted tail, for instance);
2. the primary pools;
3. the overflow pools, when enabled;
4. a file extension growing in chunks up to a hard ceiling, when enabled.

Each region keeps a monotonic cursor.  Bytes already claimed by a retained
fixed slot, by a pending compaction or by a region earlier in the precedence
are carved out before packing starts, so no byte is offered twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .binary import align_up, ranges_overlap
from .catalog import RegionCatalog
from .errors import ConfigurationError
from .extension import analyze_image
from .model import FreeSegment, Item, Placement, PlanResult, RegionKind, Span, order_by_priority

logger = logging.getLogger(__name__)

ItemsArg = Union[Mapping[str, int], Sequence[Item]]
RangeArg = Union[Span, FreeSegment, Tuple[int, int]]


@dataclass
class _Region:
    """Mutable packing state for one contiguous receiving range."""

    start: int
    end: int
    kind: RegionKind
    cursor: int = field(init=False)

    def __post_init__(self) -> None:
        self.cursor = self.start

    def try_take(self, size: int, alignment: int) -> Optional[int]:
        offset = align_up(self.cursor, alignment)
        if offset + size > self.end:
            return None
        self.cursor = offset + size
        return offset


@dataclass
class _Extension:
    """File extension region that grows in ``chunk``-sized steps."""

    start: int
    ceiling: int
    chunk: int
    image_length: int
    va_start: Optional[int]
    end: int = field(init=False)
    cursor: int = field(init=False)

    def __post_init__(self) -> None:
        self.end = self.start
        self.cursor = self.start

    def try_take(self, size: int, alignment: int) -> Optional[int]:
        offset = align_up(self.cursor, alignment)
        needed = offset + size
        if needed > self.ceiling:
            return None
        if needed > self.end:
            chunks = -(-(needed - self.start) // self.chunk)
            self.end = min(self.ceiling, self.start + chunks * self.chunk)
        self.cursor = needed
        return offset


def _as_span(value: RangeArg) -> Tuple[int, int]:
    if isinstance(value, (Span, FreeSegment)):
        return value.start, value.end
    start, end = value
    return int(start), int(end)


def _subtract(regions: List[_Region], start: int, end: int) -> List[_Region]:
    """Remove ``[start, end)`` from every region, splitting where needed."""

    if end <= start:
        return regions
    result: List[_Region] = []
    for region in regions:
        if not ranges_overlap(region.start, region.end, start, end):
            result.append(region)
            continue
        if region.start < start:
            result.append(_Region(region.start, start, region.kind))
        if end < region.end:
            result.append(_Region(end, region.end, region.kind))
    return result


class PlacementPlanner:
    """Decide where every item of one catalog layer goes."""

    def __init__(self, catalog: RegionCatalog) -> None:
        self.catalog = catalog

    def build_items(self, items: ItemsArg) -> List[Item]:
        if isinstance(items, Mapping):
            built = self.catalog.make_items(items)
        else:
            built = list(items)
        seen: Set[str] = set()
        for item in built:
            if item.name in seen:
                raise ConfigurationError(f"item {item.name!r} requested twice")
            seen.add(item.name)
        return built

    def plan(
        self,
        image: bytes,
        items: ItemsArg,
        *,
        priority_order: Optional[Sequence[str]] = None,
        allow_overflow_pool: bool = False,
        allow_extension: bool = False,
        extension_chunk_size: Optional[int] = None,
        alignment: Optional[int] = None,
        force_repack: bool = False,
        never_relocate: Optional[Iterable[str]] = None,
        extra_free_segments: Iterable[RangeArg] = (),
        pending_ranges: Iterable[RangeArg] = (),
    ) -> PlanResult:
        catalog = self.catalog
        align = catalog.alignment if alignment is None else alignment
        if align < 1:
            raise ConfigurationError("alignment must be at least 1")
        pinned = set(catalog.never_relocate if never_relocate is None else never_relocate)
        pending = [_as_span(value) for value in pending_ranges]

        result = PlanResult()
        result.report.append(f"=== {catalog.name.upper()} PATCH PLAN ===")

        by_name: Dict[str, Item] = {}
        mirrors = catalog.mirror_map()
        for item in self.build_items(items):
            if item.name in mirrors:
                result.report.append(f"  {item.name} mirrors {mirrors[item.name]}; not planned separately")
                continue
            by_name[item.name] = item
        order = order_by_priority(list(by_name), catalog.priority_order if priority_order is None else priority_order)

        placed: Dict[str, Placement] = {}
        candidates: List[str] = []
        for name in order:
            item = by_name[name]
            slot = item.fixed_slot
            keep = name in pinned or not force_repack
            available = (
                slot is not None
                and item.size <= slot.capacity
                and slot.end <= len(image)
                and not any(ranges_overlap(slot.offset, slot.end, start, end) for start, end in pending)
            )
            if slot is not None and keep and available:
                placed[name] = Placement(
                    item=name,
                    region=RegionKind.FIXED_SLOT,
                    offset=slot.offset,
                    va=catalog.va_for(slot.offset),
                    size=item.size,
                    requires_repack=False,
                )
            else:
                candidates.append(name)

        regions = self._receiving_regions(image, extra_free_segments, allow_overflow_pool)
        for placement in placed.values():
            regions = _subtract(regions, placement.offset, placement.end)
        for start, end in pending:
            regions = _subtract(regions, start, end)

        extension = None
        if candidates:
            extension = self._extension(image, align, allow_extension, extension_chunk_size, pending, result.report)

        for name in candidates:
            item = by_name[name]
            placement = self._allocate(item, regions, extension, align)
            if placement is None:
                result.unplaced.append(name)
                result.report.append(f"  WARN: {name} did not fit.")
                logger.warning("%s: %s (0x%X bytes) did not fit", catalog.name, name, item.size)
                continue
            placed[name] = placement

        result.placements = [placed[name] for name in order if name in placed]
        extension_ends = [p.end for p in result.placements if p.region is RegionKind.FILE_EXTENSION]
        if extension_ends and extension is not None:
            result.extension_bytes = max(0, max(extension_ends) - len(image))
            result.report.append(
                f"  Extension: 0x{result.extension_bytes:X} bytes appended "
                f"(0x{extension.end - extension.start:X} reserved, ceiling 0x{extension.ceiling:X})"
            )
        result.report[1:1] = ["  " + placement.describe() for placement in result.placements]
        return result

    def _receiving_regions(
        self,
        image: bytes,
        extra_free_segments: Iterable[RangeArg],
        allow_overflow_pool: bool,
    ) -> List[_Region]:
        ordered: List[_Region] = []
        for value in extra_free_segments:
            start, end = _as_span(value)
            kind = value.kind if isinstance(value, FreeSegment) else RegionKind.COMPACTED_FREED_TAIL
            ordered.append(_Region(start, end, kind))
        ordered.extend(_Region(span.start, span.end, RegionKind.PRIMARY_POOL) for span in self.catalog.primary_pools)
        if allow_overflow_pool:
            ordered.extend(
                _Region(span.start, span.end, RegionKind.OVERFLOW_POOL) for span in self.catalog.overflow_pools
            )

        regions: List[_Region] = []
        for region in ordered:
            pieces = [_Region(region.start, min(region.end, len(image)), region.kind)]
            for earlier in regions:
                pieces = _subtract(pieces, earlier.start, earlier.end)
            regions.extend(piece for piece in pieces if piece.end > piece.start)
        return regions

    def _extension(
        self,
        image: bytes,
        align: int,
        allow_extension: bool,
        chunk_size: Optional[int],
        pending: Sequence[Tuple[int, int]],
        report: List[str],
    ) -> Optional[_Extension]:
        config = self.catalog.extension
        if not allow_extension or config is None:
            return None
        ceiling = config.ceiling
        va_start = config.va_start
        if config.header == "xex2":
            analysis = analyze_image(image)
            if not analysis.valid:
                report.append(f"  WARN: extension disabled ({analysis.error})")
                logger.warning("%s: extension disabled: %s", self.catalog.name, analysis.error)
                return None
            ceiling = min(ceiling, len(image) + analysis.max_extension_size)
            va_start = analysis.end_memory_address
        # Pending ranges past the end of the file belong to an earlier layer's extension.
        claimed_end = max((end for _, end in pending), default=0)
        start = align_up(max(config.start or 0, len(image), claimed_end), align)
        chunk = config.chunk_size if chunk_size is None else chunk_size
        if chunk <= 0:
            raise ConfigurationError("extension chunk size must be positive")
        return _Extension(start, ceiling, chunk, len(image), va_start)

    def _allocate(
        self,
        item: Item,
        regions: List[_Region],
        extension: Optional[_Extension],
        align: int,
    ) -> Optional[Placement]:
        catalog = self.catalog
        for region in regions:
            offset = region.try_take(item.size, align)
            if offset is not None:
                return Placement(
                    item=item.name,
                    region=region.kind,
                    offset=offset,
                    va=catalog.va_for(offset),
                    size=item.size,
                    requires_repack=item.address_sensitive,
                )
        if extension is None:
            return None
        offset = extension.try_take(item.size, align)
        if offset is None:
            return None
        if extension.va_start is None:
            va = catalog.va_for(offset)
        elif catalog.extension is not None and catalog.extension.header == "xex2":
            va = (extension.va_start + offset - extension.image_length) & 0xFFFFFFFF
        else:
            va = (extension.va_start + offset - extension.start) & 0xFFFFFFFF
        return Placement(
            item=item.name,
            region=RegionKind.FILE_EXTENSION,
            offset=offset,
            va=va,
            size=item.size,
            requires_repack=item.address_sensitive,
        )
