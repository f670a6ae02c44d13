"""Static region configuration and profile loading.

A :class:`RegionCatalog` describes one *layer* of relocatable blobs: the
fixed slots its items conventionally occupy, the pools relocated items may
be packed into, the optional file extension, and the pointer tables that
must be rewritten once an item moves.  The default GoldenEye XBLA profile has
two layers (level setups and STAN clipping blobs) but nothing in the engine
depends on that.

Profiles are loaded from JSON or YAML documents.  Integers may be written as
plain numbers or as strings understood by ``int(value, 0)`` so offsets can be
kept in hexadecimal, which is how every reverse engineering note about the
image lists them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

from .binary import coerce_int
from .compactor import CompactionLayout
from .constants import GOLDENEYE_XBLA_PROFILE
from .errors import ConfigurationError
from .menus import MenuLayout
from .model import FixedSlot, Item, PointerTableEntry, RelocationStyle, Span

__all__ = [
    "ExtensionConfig",
    "RegionCatalog",
    "TargetProfile",
    "coerce_int",
    "default_profile",
    "load_profile",
]


def _coerce_span(value: Any, what: str) -> Span:
    if isinstance(value, Mapping):
        start, end = value.get("start"), value.get("end")
    elif isinstance(value, Sequence) and not isinstance(value, str) and len(value) == 2:
        start, end = value
    else:
        raise ConfigurationError(f"{what} must be a [start, end] pair")
    span = Span(coerce_int(start, f"{what}.start"), coerce_int(end, f"{what}.end"))
    if span.end < span.start:
        raise ConfigurationError(f"{what} ends (0x{span.end:X}) before it starts (0x{span.start:X})")
    return span


def _coerce_spans(value: Any, what: str) -> Tuple[Span, ...]:
    """Accept a single ``[start, end]`` pair or a list of them."""

    if isinstance(value, Sequence) and not isinstance(value, str) and value:
        if all(isinstance(entry, (Mapping, Sequence)) and not isinstance(entry, str) for entry in value):
            return tuple(_coerce_span(entry, f"{what}[{index}]") for index, entry in enumerate(value))
    return (_coerce_span(value, what),)


@dataclass(frozen=True)
class ExtensionConfig:
    """Where appended data may live and how it is announced in the header.

    ``start`` of ``None`` means "wherever the image currently ends".
    ``header`` is ``"xex2"`` to bump the last block's ``data_size`` or
    ``"raw"`` to simply grow the file.
    """

    ceiling: int
    start: Optional[int] = None
    chunk_size: int = 0x200000
    header: str = "xex2"
    va_start: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], what: str) -> "ExtensionConfig":
        if "ceiling" not in data:
            raise ConfigurationError(f"{what}.ceiling is required")
        start = data.get("start")
        va_start = data.get("va_start")
        config = cls(
            ceiling=coerce_int(data["ceiling"], f"{what}.ceiling"),
            start=None if start is None else coerce_int(start, f"{what}.start"),
            chunk_size=coerce_int(data.get("chunk_size", 0x200000), f"{what}.chunk_size"),
            header=str(data.get("header", "xex2")).lower(),
            va_start=None if va_start is None else coerce_int(va_start, f"{what}.va_start"),
        )
        if config.header not in {"xex2", "raw"}:
            raise ConfigurationError(f"{what}.header must be 'xex2' or 'raw', got {config.header!r}")
        if config.chunk_size <= 0:
            raise ConfigurationError(f"{what}.chunk_size must be positive")
        if config.start is not None and config.ceiling < config.start:
            raise ConfigurationError(f"{what}.ceiling lies before its start")
        return config


@dataclass(frozen=True)
class RegionCatalog:
    """Immutable description of one relocatable layer."""

    name: str
    va_base: int
    primary_pools: Tuple[Span, ...]
    alignment: int = 0x10
    fixed_slots: Tuple[FixedSlot, ...] = ()
    overflow_pools: Tuple[Span, ...] = ()
    extension: Optional[ExtensionConfig] = None
    pointer_tables: Tuple[PointerTableEntry, ...] = ()
    mirrors: Tuple[Tuple[str, str], ...] = ()
    priority_order: Tuple[str, ...] = ()
    never_relocate: frozenset = frozenset()
    adjacency: Tuple[Tuple[str, str], ...] = ()
    relocation: RelocationStyle = RelocationStyle.REGENERATE

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.alignment < 1:
            raise ConfigurationError(f"{self.name}: alignment must be at least 1")
        if not 0 <= self.va_base <= 0xFFFFFFFF:
            raise ConfigurationError(f"{self.name}: va_base 0x{self.va_base:X} is not a 32-bit address")
        seen = set()
        for slot in self.fixed_slots:
            if slot.name in seen:
                raise ConfigurationError(f"{self.name}: duplicate fixed slot {slot.name!r}")
            seen.add(slot.name)
            if slot.offset < 0 or slot.capacity < 0:
                raise ConfigurationError(f"{self.name}: fixed slot {slot.name!r} has negative bounds")
        pointer_items = {entry.item for entry in self.pointer_tables}
        for secondary, primary in self.mirrors:
            if secondary not in pointer_items:
                raise ConfigurationError(
                    f"{self.name}: mirror target {secondary!r} has no pointer table entry"
                )
            if primary == secondary:
                raise ConfigurationError(f"{self.name}: {primary!r} cannot mirror itself")
        for leader, follower in self.adjacency:
            if not leader or not follower or leader == follower:
                raise ConfigurationError(f"{self.name}: invalid adjacency pair ({leader!r}, {follower!r})")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def va_for(self, offset: int) -> int:
        return (self.va_base + offset) & 0xFFFFFFFF

    def offset_for(self, va: int) -> int:
        return va - self.va_base

    def slot(self, name: str) -> Optional[FixedSlot]:
        for slot in self.fixed_slots:
            if slot.name == name:
                return slot
        return None

    def original_va(self, name: str) -> Optional[int]:
        slot = self.slot(name)
        return None if slot is None else self.va_for(slot.offset)

    def pointer_entries(self, name: str) -> List[PointerTableEntry]:
        return [entry for entry in self.pointer_tables if entry.item == name]

    def mirror_map(self) -> Dict[str, str]:
        return dict(self.mirrors)

    def known_items(self) -> List[str]:
        names: List[str] = []
        candidates = list(self.priority_order)
        candidates.extend(slot.name for slot in self.fixed_slots)
        candidates.extend(entry.item for entry in self.pointer_tables)
        for name in candidates:
            if name not in names:
                names.append(name)
        return names

    def make_item(self, name: str, size: int) -> Item:
        return Item(
            name=name,
            size=size,
            address_sensitive=self.relocation is not RelocationStyle.NONE,
            fixed_slot=self.slot(name),
            back_pointer=self.relocation is RelocationStyle.BACK_POINTER,
        )

    def make_items(self, sizes: Mapping[str, int]) -> List[Item]:
        return [self.make_item(name, size) for name, size in sizes.items()]

    def pool_capacity(self, *, include_overflow: bool = False) -> int:
        pools = self.primary_pools + (self.overflow_pools if include_overflow else ())
        return sum(span.size for span in pools)

    def overflow_capacity(self) -> int:
        return sum(span.size for span in self.overflow_pools)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "RegionCatalog":
        what = f"layers.{name}"
        for key in ("va_base", "primary_pool"):
            if key not in data:
                raise ConfigurationError(f"{what}.{key} is required")

        relocation_raw = str(data.get("relocation", "regenerate")).lower()
        try:
            relocation = RelocationStyle(relocation_raw)
        except ValueError:
            raise ConfigurationError(f"{what}.relocation has unknown value {relocation_raw!r}") from None

        overflow = data.get("overflow_pool")
        extension = data.get("extension")
        if extension is not None and not isinstance(extension, Mapping):
            raise ConfigurationError(f"{what}.extension must be a mapping")

        return cls(
            name=name,
            va_base=coerce_int(data["va_base"], f"{what}.va_base"),
            alignment=coerce_int(data.get("alignment", 0x10), f"{what}.alignment"),
            primary_pools=_coerce_spans(data["primary_pool"], f"{what}.primary_pool"),
            overflow_pools=() if overflow is None else _coerce_spans(overflow, f"{what}.overflow_pool"),
            extension=None if extension is None else ExtensionConfig.from_mapping(extension, f"{what}.extension"),
            fixed_slots=_parse_fixed_slots(data, what),
            pointer_tables=_parse_pointer_tables(data.get("pointer_tables", {}), what),
            mirrors=tuple(
                (str(secondary), str(primary))
                for secondary, primary in _as_mapping(data.get("mirrors", {}), f"{what}.mirrors").items()
            ),
            priority_order=tuple(str(n) for n in data.get("priority_order", ())),
            never_relocate=frozenset(str(n) for n in data.get("never_relocate", ())),
            adjacency=_parse_pairs(data.get("adjacency", ()), f"{what}.adjacency"),
            relocation=relocation,
        )


def _as_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{what} must be a mapping")
    return value


def _parse_pairs(value: Iterable[Any], what: str) -> Tuple[Tuple[str, str], ...]:
    pairs: List[Tuple[str, str]] = []
    for entry in value:
        if isinstance(entry, Mapping):
            pair = (entry.get("leader"), entry.get("follower"))
        elif isinstance(entry, Sequence) and not isinstance(entry, str) and len(entry) == 2:
            pair = (entry[0], entry[1])
        else:
            raise ConfigurationError(f"{what} entries must be [leader, follower] pairs")
        if pair[0] is None or pair[1] is None:
            raise ConfigurationError(f"{what} entries need both leader and follower")
        pairs.append((str(pair[0]), str(pair[1])))
    return tuple(pairs)


def _parse_pointer_tables(value: Any, what: str) -> Tuple[PointerTableEntry, ...]:
    entries: List[PointerTableEntry] = []
    for table, fields in _as_mapping(value, f"{what}.pointer_tables").items():
        for item, offset in _as_mapping(fields, f"{what}.pointer_tables.{table}").items():
            entries.append(
                PointerTableEntry(
                    table=str(table),
                    item=str(item),
                    offset=coerce_int(offset, f"{what}.pointer_tables.{table}.{item}"),
                )
            )
    return tuple(entries)


def _parse_fixed_slots(data: Mapping[str, Any], what: str) -> Tuple[FixedSlot, ...]:
    """Build fixed slots, deriving missing capacities from neighbouring starts.

    A slot without an explicit ``size`` extends up to the next slot start in
    file order.  ``slot_boundaries`` lists additional starts that bound slots
    without being items themselves (multiplayer-only entries, for example);
    the last slot ends at ``slot_table_end``.
    """

    raw_slots = data.get("fixed_slots", ())
    parsed: List[Tuple[str, int, Optional[int]]] = []
    for index, entry in enumerate(raw_slots):
        if not isinstance(entry, Mapping) or "name" not in entry or "offset" not in entry:
            raise ConfigurationError(f"{what}.fixed_slots[{index}] needs a name and an offset")
        size = entry.get("size")
        parsed.append(
            (
                str(entry["name"]),
                coerce_int(entry["offset"], f"{what}.fixed_slots[{index}].offset"),
                None if size is None else coerce_int(size, f"{what}.fixed_slots[{index}].size"),
            )
        )

    if not parsed:
        return ()

    boundaries = sorted(
        {offset for _, offset, _ in parsed}
        | {coerce_int(b, f"{what}.slot_boundaries") for b in data.get("slot_boundaries", ())}
    )
    table_end = data.get("slot_table_end")
    end_of_table = None if table_end is None else coerce_int(table_end, f"{what}.slot_table_end")

    slots: List[FixedSlot] = []
    for name, offset, size in parsed:
        if size is None:
            following = [b for b in boundaries if b > offset]
            if following:
                size = following[0] - offset
            elif end_of_table is not None:
                size = max(0, end_of_table - offset)
            else:
                raise ConfigurationError(
                    f"{what}: cannot derive capacity of slot {name!r} without slot_table_end"
                )
        slots.append(FixedSlot(name, offset, size))
    return tuple(slots)


@dataclass(frozen=True)
class TargetProfile:
    """Every static table needed to patch one kind of image."""

    name: str
    layers: Mapping[str, RegionCatalog] = field(default_factory=dict)
    compaction: Optional[CompactionLayout] = None
    menu: Optional[MenuLayout] = None

    def layer(self, name: str) -> RegionCatalog:
        try:
            return self.layers[name]
        except KeyError:
            known = ", ".join(sorted(self.layers)) or "<none>"
            raise ConfigurationError(f"profile {self.name!r} has no layer {name!r} (known: {known})") from None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, name: Optional[str] = None) -> "TargetProfile":
        if not isinstance(data, Mapping):
            raise ConfigurationError("profile document must be a mapping")
        layers_raw = _as_mapping(data.get("layers", {}), "layers")
        if not layers_raw:
            raise ConfigurationError("profile defines no layers")
        layers = {
            str(layer): RegionCatalog.from_mapping(str(layer), _as_mapping(body, f"layers.{layer}"))
            for layer, body in layers_raw.items()
        }
        compaction = data.get("compaction")
        menu = data.get("menu")
        return cls(
            name=str(data.get("name", name or "profile")),
            layers=layers,
            compaction=None if compaction is None else CompactionLayout.from_mapping(
                _as_mapping(compaction, "compaction")
            ),
            menu=None if menu is None else MenuLayout.from_mapping(_as_mapping(menu, "menu")),
        )


def load_profile(path: Path) -> TargetProfile:
    """Load a :class:`TargetProfile` from a ``.json``, ``.yaml`` or ``.yml`` file."""

    if not path.exists():
        raise ConfigurationError(f"profile not found: {path}")
    text = path.read_text("utf-8")
    suffix = path.suffix.lower()
    if suffix == ".json":
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ConfigurationError(f"{path}: invalid JSON ({exc})") from exc
    elif suffix in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{path}: invalid YAML ({exc})") from exc
    else:
        raise ConfigurationError(f"unsupported profile format {path.suffix!r}; use .json, .yaml or .yml")
    return TargetProfile.from_mapping(data, name=path.stem)


def default_profile() -> TargetProfile:
    """Return the built-in GoldenEye XBLA profile."""

    return TargetProfile.from_mapping(GOLDENEYE_XBLA_PROFILE)
