"""Rebuild the position based menu, image and briefing tables.

The game shows missions in a fixed number of menu slots.  Each slot is a
12 byte struct ``[pointer:4][folder text id:2][icon text id:2][level id:4]``
and the slot position, not the level id, decides where a mission appears.
After placement the structs are refilled so the placed missions occupy the
first slots in order, the image id table (located by its vanilla signature)
is rewritten to match, and the 0x30 byte briefing blocks are moved into the
canonical briefing index of each destination slot.  Unused slots are
cleared.

Nothing here affects pointer correctness; a failure to locate a table is
reported as a warning and the remaining steps still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .binary import coerce_int, read_be16, read_be32, write_be16, write_be32
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["MenuLevel", "MenuLayout", "MenuReconciler"]


@dataclass(frozen=True)
class MenuLevel:
    name: str
    level_id: int
    image_id: Optional[int] = None
    brief_base: Optional[int] = None
    briefing_index: Optional[int] = None


@dataclass(frozen=True)
class MenuLayout:
    """Addresses and identifiers describing the menu tables of one image."""

    menu_start: int
    menu_end: int
    briefing_start: int
    briefing_count: int
    levels: Tuple[MenuLevel, ...]
    vanilla_menu_order: Tuple[str, ...]
    vanilla_image_order: Tuple[int, ...] = ()
    entry_size: int = 12
    struct_marker: int = 0x82
    briefing_entry_size: int = 0x30
    image_scan_start: int = 0

    def level(self, name: str) -> Optional[MenuLevel]:
        for level in self.levels:
            if level.name == name:
                return level
        return None

    def level_by_id(self, level_id: int) -> Optional[MenuLevel]:
        for level in self.levels:
            if level.level_id == level_id:
                return level
        return None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MenuLayout":
        for key in ("menu_start", "menu_end", "briefing_start", "briefing_count", "levels", "vanilla_menu_order"):
            if key not in data:
                raise ConfigurationError(f"menu.{key} is required")
        levels_raw = data["levels"]
        if not isinstance(levels_raw, Mapping):
            raise ConfigurationError("menu.levels must map level names to their identifiers")

        levels: List[MenuLevel] = []
        for name, body in levels_raw.items():
            what = f"menu.levels.{name}"
            if not isinstance(body, Mapping) or "id" not in body:
                raise ConfigurationError(f"{what} needs an id")
            levels.append(
                MenuLevel(
                    name=str(name),
                    level_id=coerce_int(body["id"], f"{what}.id"),
                    image_id=_optional_int(body.get("image"), f"{what}.image"),
                    brief_base=_optional_int(body.get("brief_base"), f"{what}.brief_base"),
                    briefing_index=_optional_int(body.get("briefing_index"), f"{what}.briefing_index"),
                )
            )

        names = {level.name for level in levels}
        order = tuple(str(name) for name in data["vanilla_menu_order"])
        missing = [name for name in order if name not in names]
        if missing:
            raise ConfigurationError("menu.vanilla_menu_order names unknown levels: " + ", ".join(missing))

        return cls(
            menu_start=coerce_int(data["menu_start"], "menu.menu_start"),
            menu_end=coerce_int(data["menu_end"], "menu.menu_end"),
            briefing_start=coerce_int(data["briefing_start"], "menu.briefing_start"),
            briefing_count=coerce_int(data["briefing_count"], "menu.briefing_count"),
            levels=tuple(levels),
            vanilla_menu_order=order,
            vanilla_image_order=tuple(
                coerce_int(value, "menu.vanilla_image_order") for value in data.get("vanilla_image_order", ())
            ),
            entry_size=coerce_int(data.get("entry_size", 12), "menu.entry_size"),
            struct_marker=coerce_int(data.get("struct_marker", 0x82), "menu.struct_marker"),
            briefing_entry_size=coerce_int(data.get("briefing_entry_size", 0x30), "menu.briefing_entry_size"),
            image_scan_start=coerce_int(data.get("image_scan_start", 0), "menu.image_scan_start"),
        )


def _optional_int(value: Any, what: str) -> Optional[int]:
    return None if value is None else coerce_int(value, what)


class MenuReconciler:
    """Refill the menu slots of ``buffer`` with the placed missions."""

    def __init__(self, layout: MenuLayout) -> None:
        self.layout = layout

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def menu_structs(self, buffer: bytearray) -> Dict[int, int]:
        """Map level id to the start of the menu struct currently holding it."""

        layout = self.layout
        valid = {level.level_id for level in layout.levels}
        structs: Dict[int, int] = {}
        for offset in range(layout.menu_start, layout.menu_end, 4):
            if offset + 4 > len(buffer):
                break
            level_id = read_be32(buffer, offset)
            if level_id == 0 or level_id not in valid:
                continue
            start = offset - 8
            if start >= layout.menu_start and buffer[start] == layout.struct_marker:
                structs[level_id] = start
        return structs

    def text_ids(self, buffer: bytearray, structs: Mapping[int, int], log: List[str]) -> Dict[int, Tuple[int, int]]:
        result: Dict[int, Tuple[int, int]] = {}
        for level_id, start in structs.items():
            if start + 8 > len(buffer):
                self._warn(log, f"Menu struct for 0x{level_id:X} out of range.")
                continue
            result[level_id] = (read_be16(buffer, start + 4), read_be16(buffer, start + 6))
        return result

    def find_image_table(self, buffer: bytearray, log: List[str]) -> Optional[int]:
        layout = self.layout
        if not layout.vanilla_image_order:
            return None
        signature = b"".join(value.to_bytes(4, "big") for value in layout.vanilla_image_order)
        position = buffer.find(signature, layout.image_scan_start)
        while position != -1 and (position - layout.image_scan_start) % 4:
            position = buffer.find(signature, position + 1)
        if position == -1:
            self._warn(log, "Image table not found; images won't be reordered.")
            return None
        log.append(f"Image table found at 0x{position:X}")
        return position

    def briefing_indices(self, buffer: bytearray, log: List[str]) -> Dict[int, int]:
        """Discover which briefing block belongs to which level by its first byte."""

        layout = self.layout
        by_base = {level.brief_base: level.level_id for level in layout.levels if level.brief_base is not None}
        result: Dict[int, int] = {}
        for index in range(layout.briefing_count):
            offset = layout.briefing_start + index * layout.briefing_entry_size
            if offset + 4 > len(buffer):
                break
            base = buffer[offset]
            level_id = by_base.get(base)
            if level_id is None:
                self._warn(log, f"Briefing block idx {index}: unknown base 0x{base:02X}. Skipping.")
                continue
            result[level_id] = index
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def ordered_levels(
        self,
        placed_names: Sequence[str],
        menu_order: Optional[Sequence[str]],
        log: List[str],
    ) -> List[MenuLevel]:
        levels = [level for level in (self.layout.level(name) for name in placed_names) if level is not None]
        if not menu_order:
            return levels

        rank: Dict[str, int] = {}
        for name in menu_order:
            rank.setdefault(name, len(rank))
        present = {level.name for level in levels}
        unknown = [name for name in rank if name not in present]
        if unknown:
            self._warn(log, "Desired menu contains levels not present in placements: " + ", ".join(unknown))
        explicit = sorted((level for level in levels if level.name in rank), key=lambda level: rank[level.name])
        rest = [level for level in levels if level.name not in rank]
        log.append(f"Applied custom menu order ({len(explicit)} matched, {len(rest)} left in original order).")
        return explicit + rest

    def reconcile(
        self,
        buffer: bytearray,
        placed_names: Sequence[str],
        menu_order: Optional[Sequence[str]] = None,
        log: Optional[List[str]] = None,
    ) -> List[str]:
        layout = self.layout
        lines: List[str] = [] if log is None else log
        levels = self.ordered_levels(placed_names, menu_order, lines)

        structs = self.menu_structs(buffer)
        texts = self.text_ids(buffer, structs, lines)
        image_table = self.find_image_table(buffer, lines)
        brief_index = self.briefing_indices(buffer, lines)

        original_briefs: Dict[int, bytes] = {}
        for level in levels:
            index = brief_index.get(level.level_id)
            if index is None:
                self._warn(lines, f"Could not discover briefing index for {level.name} (0x{level.level_id:X}).")
                continue
            start = layout.briefing_start + index * layout.briefing_entry_size
            original_briefs[level.level_id] = bytes(buffer[start : start + layout.briefing_entry_size])

        slot_ids = [self._vanilla_id(name) for name in layout.vanilla_menu_order]
        filled = 0
        count = min(len(levels), len(slot_ids))
        for slot in range(count):
            dest_id = slot_ids[slot]
            start = self._slot_struct(buffer, structs, dest_id, slot)
            if start is None:
                self._warn(lines, f"Couldn't locate destination menu struct for 0x{dest_id:X} (slot {slot}).")
                continue
            source = levels[slot]
            folder, icon = texts.get(source.level_id, (0, 0))
            write_be16(buffer, start + 4, folder)
            write_be16(buffer, start + 6, icon)
            write_be32(buffer, start + 8, source.level_id)
            if image_table is not None and source.image_id is not None:
                write_be32(buffer, image_table + slot * 4, source.image_id)
            lines.append(f"  Slot {slot}: {source.name} -> dest 0x{dest_id:X}")
            filled += 1

        for slot in range(count, len(slot_ids)):
            start = self._slot_struct(buffer, structs, slot_ids[slot], slot)
            if start is None:
                continue
            write_be16(buffer, start + 4, 0)
            write_be16(buffer, start + 6, 0)
            write_be32(buffer, start + 8, 0)
            if image_table is not None:
                write_be32(buffer, image_table + slot * 4, 0xFFFFFFFF)

        for slot in range(count):
            dest_id = slot_ids[slot]
            source_id = levels[slot].level_id
            block = original_briefs.get(source_id)
            if block is None:
                continue
            dest_index = brief_index.get(dest_id)
            if dest_index is None:
                dest_level = layout.level_by_id(dest_id)
                dest_index = None if dest_level is None else dest_level.briefing_index
            if dest_index is None:
                self._warn(lines, f"Could not discover dest briefing index for 0x{dest_id:X}; slot {slot}.")
                continue
            start = layout.briefing_start + dest_index * layout.briefing_entry_size
            if start + layout.briefing_entry_size > len(buffer):
                self._warn(lines, f"Briefing index {dest_index} for 0x{dest_id:X} lies past the end of the image.")
                continue
            buffer[start : start + layout.briefing_entry_size] = block
            lines.append(f"    Briefing: 0x{source_id:X} -> 0x{dest_id:X} @ idx {dest_index}")

        lines.append(f"Packed {filled} levels. Cleared {len(slot_ids) - filled} slots.")
        return lines

    def _vanilla_id(self, name: str) -> int:
        level = self.layout.level(name)
        if level is None:
            raise ConfigurationError(f"vanilla menu order names unknown level {name!r}")
        return level.level_id

    def _slot_struct(self, buffer: bytearray, structs: Mapping[int, int], dest_id: int, slot: int) -> Optional[int]:
        start = structs.get(dest_id)
        if start is not None:
            return start
        # Cleared slots carry level id 0 and are invisible to the scan.
        layout = self.layout
        fallback = layout.menu_start + slot * layout.entry_size
        if fallback + layout.entry_size <= len(buffer) and buffer[fallback] == layout.struct_marker:
            return fallback
        return None

    @staticmethod
    def _warn(log: List[str], message: str) -> None:
        logger.warning("%s", message)
        log.append(f"WARN: {message}")
