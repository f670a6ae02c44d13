"""Dataclasses describing items, placements and receiving regions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import CapacityError


class RegionKind(Enum):
    """Closed set of places a blob can end up in."""

    FIXED_SLOT = auto()
    PRIMARY_POOL = auto()
    OVERFLOW_POOL = auto()
    COMPACTED_FREED_TAIL = auto()
    FILE_EXTENSION = auto()

    @property
    def relocates(self) -> bool:
        return self is not RegionKind.FIXED_SLOT

    @property
    def label(self) -> str:
        return {
            RegionKind.FIXED_SLOT: "fixed",
            RegionKind.PRIMARY_POOL: "pool",
            RegionKind.OVERFLOW_POOL: "overflow",
            RegionKind.COMPACTED_FREED_TAIL: "freed-tail",
            RegionKind.FILE_EXTENSION: "extension",
        }[self]


class RelocationStyle(Enum):
    """How a layer's content reacts to a change of address."""

    NONE = "none"
    REGENERATE = "regenerate"
    BACK_POINTER = "back_pointer"


@dataclass(frozen=True)
class FixedSlot:
    """Pre-declared location an item conventionally occupies."""

    name: str
    offset: int
    capacity: int

    @property
    def end(self) -> int:
        return self.offset + self.capacity


@dataclass(frozen=True)
class Span:
    """Half-open ``[start, end)`` byte range inside the image."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return max(0, self.end - self.start)

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end


@dataclass(frozen=True)
class FreeSegment:
    """Caller supplied byte range offered to the planner before the pools."""

    start: int
    end: int
    kind: RegionKind = RegionKind.COMPACTED_FREED_TAIL

    @property
    def size(self) -> int:
        return max(0, self.end - self.start)


@dataclass(frozen=True)
class PointerTableEntry:
    """A BE32 field that must hold the resolved VA of ``item``."""

    table: str
    item: str
    offset: int


@dataclass(frozen=True)
class Item:
    name: str
    size: int
    address_sensitive: bool = False
    fixed_slot: Optional[FixedSlot] = None
    back_pointer: bool = False

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError(f"item {self.name!r} has negative size {self.size}")


@dataclass(frozen=True)
class Placement:
    item: str
    region: RegionKind
    offset: int
    va: int
    size: int
    requires_repack: bool = False

    @property
    def end(self) -> int:
        return self.offset + self.size

    def describe(self) -> str:
        flag = ", repack" if self.requires_repack else ""
        return (
            f"{self.item:<14} -> 0x{self.offset:08X}  VA 0x{self.va:08X}  "
            f"size 0x{self.size:X}  ({self.region.label}{flag})"
        )


@dataclass(frozen=True)
class CompactableRecord:
    """Fixed-size record inside a contiguous sequential table."""

    name: str
    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size

    def moved_to(self, offset: int) -> "CompactableRecord":
        return CompactableRecord(self.name, offset, self.size)


@dataclass
class PlanResult:
    """Outcome of a single planning run."""

    placements: List[Placement] = field(default_factory=list)
    unplaced: List[str] = field(default_factory=list)
    report: List[str] = field(default_factory=list)
    extension_bytes: int = 0

    def __iter__(self) -> Iterator[Placement]:  # pragma: no cover - trivial
        return iter(self.placements)

    def __len__(self) -> int:  # pragma: no cover - trivial
        return len(self.placements)

    @property
    def placed_names(self) -> Tuple[str, ...]:
        return tuple(placement.item for placement in self.placements)

    def placement_for(self, name: str) -> Optional[Placement]:
        for placement in self.placements:
            if placement.item == name:
                return placement
        return None

    def by_name(self) -> Dict[str, Placement]:
        return {placement.item: placement for placement in self.placements}

    def relocated(self) -> List[Placement]:
        return [p for p in self.placements if p.region.relocates]

    def raise_for_unplaced(self) -> None:
        if self.unplaced:
            raise CapacityError(self.unplaced)


def order_by_priority(names: Sequence[str], priority: Sequence[str]) -> List[str]:
    """Sort ``names`` by ``priority``; unlisted names keep their order at the end."""

    rank = {}
    for index, name in enumerate(priority):
        rank.setdefault(name, index)
    listed = sorted((n for n in names if n in rank), key=lambda n: rank[n])
    unlisted = [n for n in names if n not in rank]
    return listed + unlisted
