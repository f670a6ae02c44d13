import json
from pathlib import Path

import pytest

from xexreloc import ConfigurationError, RegionCatalog, RelocationStyle, Span, TargetProfile, default_profile, load_profile
from xexreloc.catalog import ExtensionConfig
from xexreloc.model import FixedSlot, PointerTableEntry

PROFILE = {
    "name": "toy",
    "layers": {
        "setup": {
            "va_base": "0x82000000",
            "alignment": 16,
            "primary_pool": ["0x200", "0x300"],
            "overflow_pool": [["0x300", "0x340"], ["0x380", "0x3C0"]],
            "fixed_slots": [
                {"name": "Alpha", "offset": "0x100"},
                {"name": "Gamma", "offset": "0x180", "size": "0x10"},
            ],
            "slot_boundaries": ["0x140"],
            "slot_table_end": "0x200",
            "pointer_tables": {"index": {"Alpha": "0x10", "Beta": "0x14"}},
            "extension": {"ceiling": "0x10000", "chunk_size": "0x200", "header": "raw"},
            "priority_order": ["Beta", "Alpha"],
            "never_relocate": ["Alpha"],
            "adjacency": [["Alpha", "Beta"]],
        }
    },
}

PROFILE_YAML = """
name: toy
layers:
  stan:
    va_base: 0x82000000
    relocation: back_pointer
    primary_pool: [0x200, 0x300]
    fixed_slots:
      - {name: Alpha, offset: 0x100}
      - {name: Beta, offset: 0x140}
    slot_table_end: 0x1A0
    pointer_tables:
      stan_index:
        Alpha: 0x0C
        Beta: 0x10
        Beta (2): 0x14
    mirrors:
      Beta (2): Beta
"""


def test_profile_loads_from_json(tmp_path: Path) -> None:
    path = tmp_path / "toy.json"
    path.write_text(json.dumps(PROFILE), "utf-8")

    profile = load_profile(path)
    catalog = profile.layer("setup")

    assert profile.name == "toy"
    assert catalog.va_base == 0x82000000
    assert catalog.primary_pools == (Span(0x200, 0x300),)
    assert catalog.overflow_pools == (Span(0x300, 0x340), Span(0x380, 0x3C0))
    assert catalog.overflow_capacity() == 0x80
    assert catalog.pool_capacity(include_overflow=True) == 0x180
    assert catalog.extension == ExtensionConfig(ceiling=0x10000, chunk_size=0x200, header="raw")
    assert catalog.never_relocate == frozenset({"Alpha"})
    assert catalog.adjacency == (("Alpha", "Beta"),)
    assert catalog.known_items() == ["Beta", "Alpha", "Gamma"]


def test_slot_capacity_is_derived_from_the_next_boundary(tmp_path: Path) -> None:
    path = tmp_path / "toy.json"
    path.write_text(json.dumps(PROFILE), "utf-8")

    catalog = load_profile(path).layer("setup")

    assert catalog.slot("Alpha") == FixedSlot("Alpha", 0x100, 0x40)
    assert catalog.slot("Gamma") == FixedSlot("Gamma", 0x180, 0x10)
    assert catalog.original_va("Alpha") == 0x82000100
    assert catalog.original_va("Beta") is None


def test_profile_loads_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "toy.yaml"
    path.write_text(PROFILE_YAML, "utf-8")

    catalog = load_profile(path).layer("stan")

    assert catalog.relocation is RelocationStyle.BACK_POINTER
    assert catalog.slot("Alpha").capacity == 0x40
    assert catalog.slot("Beta").capacity == 0x60
    assert catalog.mirror_map() == {"Beta (2)": "Beta"}
    assert catalog.pointer_entries("Beta") == [PointerTableEntry("stan_index", "Beta", 0x10)]
    item = catalog.make_item("Alpha", 0x20)
    assert item.address_sensitive and item.back_pointer
    assert item.fixed_slot == catalog.slot("Alpha")


def test_unknown_layer_lists_the_known_ones() -> None:
    profile = TargetProfile.from_mapping(PROFILE)

    with pytest.raises(ConfigurationError, match="known: setup"):
        profile.layer("stan")


def test_load_profile_rejects_unknown_suffix(tmp_path: Path) -> None:
    path = tmp_path / "toy.ini"
    path.write_text("[setup]", "utf-8")

    with pytest.raises(ConfigurationError, match="unsupported profile format"):
        load_profile(path)


def test_load_profile_reports_missing_and_broken_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="profile not found"):
        load_profile(tmp_path / "absent.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{", "utf-8")
    with pytest.raises(ConfigurationError, match="invalid JSON"):
        load_profile(broken)

    broken_yaml = tmp_path / "broken.yaml"
    broken_yaml.write_text("layers: [unclosed", "utf-8")
    with pytest.raises(ConfigurationError, match="invalid YAML"):
        load_profile(broken_yaml)


@pytest.mark.parametrize(
    "patch,message",
    [
        ({"va_base": None}, "va_base"),
        ({"primary_pool": ["0x300", "0x200"]}, "before it starts"),
        ({"relocation": "teleport"}, "unknown value"),
        ({"extension": {"chunk_size": 1}}, "ceiling is required"),
        ({"extension": {"ceiling": 1, "header": "elf"}}, "header must be"),
        ({"adjacency": [["Alpha"]]}, "pairs"),
        ({"mirrors": {"Delta": "Alpha"}}, "no pointer table entry"),
        ({"slot_table_end": None, "fixed_slots": [{"name": "Alpha", "offset": "0x400"}]}, "slot_table_end"),
    ],
)
def test_malformed_layers_are_rejected(patch, message: str) -> None:
    layer = dict(PROFILE["layers"]["setup"])
    for key, value in patch.items():
        if value is None:
            layer.pop(key)
        else:
            layer[key] = value

    with pytest.raises(ConfigurationError, match=message):
        RegionCatalog.from_mapping("setup", layer)


def test_catalog_rejects_duplicate_slots() -> None:
    with pytest.raises(ConfigurationError, match="duplicate fixed slot"):
        RegionCatalog(
            name="toy",
            va_base=0x82000000,
            primary_pools=(Span(0, 0x10),),
            fixed_slots=(FixedSlot("Alpha", 0, 4), FixedSlot("Alpha", 4, 4)),
        )


def test_configuration_errors_are_value_errors() -> None:
    with pytest.raises(ValueError):
        RegionCatalog(name="toy", va_base=0x1_0000_0000, primary_pools=())


def test_default_profile_matches_known_layout() -> None:
    profile = default_profile()
    setup = profile.layer("setup")
    stan = profile.layer("stan")

    assert setup.va_for(0xC94480) == 0x82CA1480
    assert setup.slot("Train").capacity == 0xDDFF60 - 0xDB4C50
    assert setup.slot("Cuba").end == 0xD47C40
    assert "Cuba" in setup.never_relocate
    assert setup.adjacency == (("Cradle", "Cuba"),)
    assert [entry.offset for entry in setup.pointer_entries("Dam")] == [0x84B280]

    assert stan.slot("Surface (1)").capacity == 0x810B58 - 0x7FC680
    assert stan.slot("Train").end == 0x84AF3C
    assert [entry.offset for entry in stan.pointer_entries("Dam")] == [0x84B27C]
    assert stan.mirror_map() == {"Surface (2)": "Surface (1)"}

    assert profile.compaction is not None and len(profile.compaction.records) == 25
    assert profile.menu is not None and len(profile.menu.vanilla_menu_order) == 20
