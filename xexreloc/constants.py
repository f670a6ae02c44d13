"""Built-in tables for the GoldenEye XBLA executable.

Every value is a file offset into the decrypted, uncompressed ``default.xex``
unless stated otherwise.  The tables are assembled into
:data:`GOLDENEYE_XBLA_PROFILE`, the same document shape accepted by
:func:`xexreloc.catalog.load_profile`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

VA_BASE = 0x8200D000
ALIGNMENT = 0x10
EXTEND_CHUNK = 0x200000

# ---------------------------------------------------------------------------
# Level setup blocks
# ---------------------------------------------------------------------------

SETUP_BLOCKS_START = 0xC7DF38
SHARED_READ_ONLY_END = 0xC94480
MP_HEADERS_START = 0xDB8CC0
SETUP_BLOCKS_END = 0xDDFF60
END_OF_XEX_DEFAULT_START = 0xF1B6D0

SETUP_SLOTS: Tuple[Tuple[str, int], ...] = (
    ("Archives", 0xC94480),
    ("Control", 0xCA4CF8),
    ("Facility", 0xCBB470),
    ("Aztec", 0xCCC988),
    ("Caverns", 0xCE2420),
    ("Cradle", 0xCE7B08),
    ("Egyptian", 0xCF0BD8),
    ("Dam", 0xD045F0),
    ("Depot", 0xD11A40),
    ("Frigate", 0xD1F3E8),
    ("Jungle", 0xD37440),
    ("Cuba", 0xD39898),
    ("Streets", 0xD47C40),
    ("Runway", 0xD4F238),
    ("Bunker (1)", 0xD589C0),
    ("Bunker (2)", 0xD67C10),
    ("Surface (1)", 0xD787E8),
    ("Surface (2)", 0xD86CD0),
    ("Silo", 0xD9AAC8),
    ("Statue", 0xDA18C0),
    ("Train", 0xDB4C50),
)

PRIORITY_ORDER: Tuple[str, ...] = (
    "Dam", "Facility", "Runway", "Surface (1)", "Bunker (1)", "Silo",
    "Frigate", "Surface (2)", "Bunker (2)", "Statue", "Archives", "Streets",
    "Depot", "Train", "Jungle", "Control", "Caverns", "Cradle", "Cuba",
    "Aztec", "Egyptian",
)

# BE32 fields in the level id table holding each setup's VA.
SETUP_POINTERS: Dict[str, int] = {
    "Bunker (1)": 0x84AFA8,
    "Silo": 0x84AFE0,
    "Statue": 0x84B018,
    "Control": 0x84B050,
    "Archives": 0x84B088,
    "Train": 0x84B0C0,
    "Frigate": 0x84B0F8,
    "Bunker (2)": 0x84B130,
    "Aztec": 0x84B168,
    "Streets": 0x84B1A0,
    "Depot": 0x84B1D8,
    "Egyptian": 0x84B248,
    "Dam": 0x84B280,
    "Facility": 0x84B2B8,
    "Runway": 0x84B2F0,
    "Surface (1)": 0x84B328,
    "Jungle": 0x84B360,
    "Caverns": 0x84B3D0,
    "Cradle": 0x84B440,
    "Surface (2)": 0x84B4B0,
    "Cuba": 0x84B718,
}

# Cuba embeds absolute addresses and cannot be rebuilt; it is only reachable
# after Cradle so the two have to ship in the same image.
NEVER_RELOCATE = ("Cuba",)
ADJACENCY = (("Cradle", "Cuba"),)

# ---------------------------------------------------------------------------
# STAN (clipping) blobs
# ---------------------------------------------------------------------------

STAN_REGION_START = 0x720588
STAN_REGION_END = 0x84AF3C

# Every slot start in file order, multiplayer-only slots included; they only
# bound the capacity of their predecessors.
STAN_SLOT_STARTS: Tuple[int, ...] = (
    0x720588, 0x724720, 0x732090, 0x744530, 0x7591C0,
    0x75D358, 0x76A088, 0x775880, 0x77BBA0, 0x7832C8,
    0x799298, 0x7A99B8, 0x7B8C28, 0x7BA9E0, 0x7BEB78,
    0x7CF6E0, 0x7D14D8, 0x7D52D0, 0x7DF740, 0x7E40D8,
    0x7E83D0, 0x7F11D8, 0x7FC680, 0x810B58, 0x825030,
    0x8258D8, 0x83A310, 0x845400,
)

STAN_SLOTS: Tuple[Tuple[str, int], ...] = (
    ("Archives", 0x724720),
    ("Control", 0x732090),
    ("Facility", 0x744530),
    ("Aztec", 0x75D358),
    ("Caverns", 0x76A088),
    ("Cradle", 0x775880),
    ("Egyptian", 0x77BBA0),
    ("Dam", 0x7832C8),
    ("Depot", 0x799298),
    ("Frigate", 0x7A99B8),
    ("Jungle", 0x7BEB78),
    ("Cuba", 0x7CF6E0),
    ("Streets", 0x7D52D0),
    ("Runway", 0x7E40D8),
    ("Bunker (1)", 0x7E83D0),
    ("Bunker (2)", 0x7F11D8),
    ("Surface (1)", 0x7FC680),
    ("Silo", 0x8258D8),
    ("Statue", 0x83A310),
    ("Train", 0x845400),
)

# Unused tail of the Stack slot, then the Surface (2) and "sho" slots.
STAN_POOLS: Tuple[Tuple[int, int], ...] = (
    (0x7595B8, 0x75D358),
    (0x810B58, 0x8258D8),
)

# The STAN pointer sits one word before the setup pointer in every entry.
STAN_POINTERS: Dict[str, int] = {name: offset - 4 for name, offset in SETUP_POINTERS.items()}

# ---------------------------------------------------------------------------
# Multiplayer setup region and level id table
# ---------------------------------------------------------------------------

MP_REGION_START = 0x84C5F0
MP_REGION_END = 0xB00AC0

MP_RECORDS: Tuple[Tuple[str, int, int], ...] = (
    ("Library / Basement / Stack", 0x84C5F0, 0x9F60),
    ("Archives", 0x856550, 0x25AF0),
    ("Control", 0x87C040, 0x2E380),
    ("Facility", 0x8AA3C0, 0x30F80),
    ("Aztec", 0x8DB340, 0x21A50),
    ("Citadel", 0x8FCD90, 0x5530),
    ("Caverns", 0x9022C0, 0x244F0),
    ("Cradle", 0x9267B0, 0x10350),
    ("Egypt", 0x936B00, 0x156B0),
    ("Dam", 0x94C1B0, 0x301A0),
    ("Depot", 0x97C350, 0x2C970),
    ("Frigate", 0x9A8CC0, 0x2D9C0),
    ("Temple", 0x9D6680, 0x4870),
    ("Jungle", 0x9DAEF0, 0x150F0),
    ("Cuba", 0x9EFFE0, 0xFA0),
    ("Caves", 0x9F0F80, 0x6E50),
    ("Streets", 0x9F7DD0, 0x19C30),
    ("Complex", 0xA11A00, 0x9610),
    ("Runway", 0xA1B010, 0xA3D0),
    ("Bunker I", 0xA253E0, 0x10DF0),
    ("Bunker II", 0xA361D0, 0x1ADA0),
    ("Surface I & II", 0xA50F70, 0x1C5D0),
    ("Silo", 0xA6D540, 0x50F40),
    ("Statue", 0xABE480, 0x220D0),
    ("Train", 0xAE0550, 0x20570),
)

MP_DEFAULT_REMOVE = ("Library / Basement / Stack", "Citadel", "Caves", "Complex", "Temple")

LEVEL_ID_TABLE_START = 0x84AF90
LEVEL_ID_TABLE_END = 0x84B7E0
LEVEL_ID_ENTRY_SIZE = 0x38
LEVEL_ID_BG_POINTER = 0x20

# ---------------------------------------------------------------------------
# Menu, image and briefing tables
# ---------------------------------------------------------------------------

MENU_START = 0x71E570
MENU_END = 0x71E8B7
BRIEFING_START = 0x71DF60
BRIEFING_COUNT = 21
IMAGE_SCAN_START = 0x700000

# name -> (level id, image id / briefing base byte, vanilla briefing index)
MENU_LEVELS: Dict[str, Tuple[int, int, int]] = {
    "Dam": (0x21, 0x2C, 0),
    "Facility": (0x22, 0x0C, 1),
    "Runway": (0x23, 0x70, 2),
    "Surface (1)": (0x24, 0x7C, 3),
    "Bunker (1)": (0x09, 0x78, 4),
    "Silo": (0x14, 0x88, 5),
    "Frigate": (0x1A, 0x34, 6),
    "Surface (2)": (0x2B, 0x80, 7),
    "Bunker (2)": (0x1B, 0x74, 8),
    "Statue": (0x16, 0x8C, 9),
    "Archives": (0x18, 0x08, 10),
    "Streets": (0x1D, 0x64, 11),
    "Depot": (0x1E, 0x30, 12),
    "Train": (0x19, 0x90, 13),
    "Jungle": (0x25, 0x48, 14),
    "Control": (0x17, 0x20, 15),
    "Caverns": (0x27, 0x1C, 16),
    "Cradle": (0x29, 0x24, 17),
    "Aztec": (0x1C, 0x14, 18),
    "Egyptian": (0x20, 0x28, 19),
}

VANILLA_MENU_ORDER: Tuple[str, ...] = tuple(name for name in PRIORITY_ORDER if name in MENU_LEVELS)

VANILLA_IMAGE_ORDER: Tuple[int, ...] = (
    0x2C, 0x0C, 0x70, 0x7C, 0x78, 0x88, 0x34, 0x80, 0x74, 0x8C,
    0x08, 0x64, 0x30, 0x90, 0x48, 0x20, 0x1C, 0x24, 0x14, 0x28,
)


def _slots(entries: Tuple[Tuple[str, int], ...]) -> List[Dict[str, Any]]:
    return [{"name": name, "offset": offset} for name, offset in entries]


GOLDENEYE_XBLA_PROFILE: Dict[str, Any] = {
    "name": "goldeneye-xbla",
    "layers": {
        "setup": {
            "va_base": VA_BASE,
            "alignment": ALIGNMENT,
            "relocation": "regenerate",
            "fixed_slots": _slots(SETUP_SLOTS),
            "slot_table_end": SETUP_BLOCKS_END,
            "primary_pool": [SHARED_READ_ONLY_END, MP_HEADERS_START],
            "overflow_pool": [MP_HEADERS_START, SETUP_BLOCKS_END],
            # The ceiling is clamped to the image_size headroom of the header.
            "extension": {"ceiling": 0x7FFFFFFF, "chunk_size": EXTEND_CHUNK, "header": "xex2"},
            "pointer_tables": {"level_setup": dict(SETUP_POINTERS)},
            "priority_order": list(PRIORITY_ORDER),
            "never_relocate": list(NEVER_RELOCATE),
            "adjacency": [list(pair) for pair in ADJACENCY],
        },
        "stan": {
            "va_base": VA_BASE,
            "alignment": ALIGNMENT,
            "relocation": "back_pointer",
            "fixed_slots": _slots(STAN_SLOTS),
            "slot_boundaries": list(STAN_SLOT_STARTS),
            "slot_table_end": STAN_REGION_END,
            "primary_pool": [list(pool) for pool in STAN_POOLS],
            "pointer_tables": {"level_stan": dict(STAN_POINTERS)},
            "mirrors": {"Surface (2)": "Surface (1)"},
            "priority_order": list(PRIORITY_ORDER),
        },
    },
    "compaction": {
        "region_start": MP_REGION_START,
        "region_end": MP_REGION_END,
        "va_base": VA_BASE,
        "records": [{"name": name, "offset": offset, "size": size} for name, offset, size in MP_RECORDS],
        "default_remove": list(MP_DEFAULT_REMOVE),
        "index": {
            "start": LEVEL_ID_TABLE_START,
            "end": LEVEL_ID_TABLE_END,
            "stride": LEVEL_ID_ENTRY_SIZE,
            "id_offset": 0,
            "pointer_offset": LEVEL_ID_BG_POINTER,
        },
    },
    "menu": {
        "menu_start": MENU_START,
        "menu_end": MENU_END,
        "briefing_start": BRIEFING_START,
        "briefing_count": BRIEFING_COUNT,
        "image_scan_start": IMAGE_SCAN_START,
        "levels": {
            name: {"id": level_id, "image": image, "brief_base": image, "briefing_index": index}
            for name, (level_id, image, index) in MENU_LEVELS.items()
        },
        "vanilla_menu_order": list(VANILLA_MENU_ORDER),
        "vanilla_image_order": list(VANILLA_IMAGE_ORDER),
    },
}
