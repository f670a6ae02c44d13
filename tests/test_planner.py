import random
from typing import Dict

import pytest

from xexreloc import (
    CapacityError,
    ConfigurationError,
    FixedSlot,
    FreeSegment,
    Item,
    PlacementPlanner,
    PointerTableEntry,
    RegionCatalog,
    RegionKind,
    Span,
)
from xexreloc.catalog import ExtensionConfig

VA_BASE = 0x82000000
IMAGE = bytes(0x400)


def _catalog(**overrides) -> RegionCatalog:
    fields = dict(
        name="toy",
        va_base=VA_BASE,
        alignment=0x10,
        primary_pools=(Span(0x200, 0x300),),
        fixed_slots=(FixedSlot("Alpha", 0x100, 0x20),),
        pointer_tables=(
            PointerTableEntry("index", "Alpha", 0x10),
            PointerTableEntry("index", "Beta", 0x14),
        ),
        extension=ExtensionConfig(ceiling=0x10000, chunk_size=0x200, header="raw"),
    )
    fields.update(overrides)
    return RegionCatalog(**fields)


def test_fitting_item_stays_in_slot_and_other_goes_to_pool() -> None:
    result = PlacementPlanner(_catalog()).plan(IMAGE, {"Alpha": 0x18, "Beta": 0x50})

    alpha, beta = result.placements
    assert (alpha.item, alpha.region, alpha.offset, alpha.va) == ("Alpha", RegionKind.FIXED_SLOT, 0x100, 0x82000100)
    assert not alpha.requires_repack
    assert (beta.item, beta.region, beta.offset, beta.va) == ("Beta", RegionKind.PRIMARY_POOL, 0x200, 0x82000200)
    assert beta.requires_repack
    assert result.unplaced == []
    assert result.report[0] == "=== TOY PATCH PLAN ==="


def test_oversized_item_is_reported_unplaced_without_extension() -> None:
    result = PlacementPlanner(_catalog()).plan(IMAGE, {"Alpha": 0x18, "Beta": 0x200})

    assert result.placed_names == ("Alpha",)
    assert result.unplaced == ["Beta"]
    assert "  WARN: Beta did not fit." in result.report
    with pytest.raises(CapacityError, match="Beta") as excinfo:
        result.raise_for_unplaced()
    assert excinfo.value.unplaced == ("Beta",)


def test_extension_receives_items_the_pools_cannot_hold() -> None:
    result = PlacementPlanner(_catalog()).plan(
        IMAGE,
        {"Alpha": 0x18, "Beta": 0x200},
        allow_extension=True,
        extension_chunk_size=0x200,
    )

    beta = result.placement_for("Beta")
    assert result.unplaced == []
    assert beta.region is RegionKind.FILE_EXTENSION
    assert (beta.offset, beta.size, beta.va) == (0x400, 0x200, 0x82000400)
    assert result.extension_bytes == 0x200


def test_extension_stops_at_the_ceiling() -> None:
    catalog = _catalog(extension=ExtensionConfig(ceiling=0x500, chunk_size=0x100, header="raw"))

    result = PlacementPlanner(catalog).plan(IMAGE, {"Beta": 0x80, "Gamma": 0x100, "Delta": 0x90}, allow_extension=True)

    assert result.placement_for("Beta").region is RegionKind.PRIMARY_POOL
    assert result.placement_for("Gamma").offset == 0x400
    assert result.unplaced == ["Delta"]


def test_xex2_extension_maps_after_the_last_block(make_xex) -> None:
    catalog = _catalog(
        primary_pools=(Span(0x3000, 0x3100),),
        extension=ExtensionConfig(ceiling=0x7FFFFFFF, chunk_size=0x200, header="xex2"),
    )
    image = make_xex(blocks=[(0x1000, 0)], image_size=0x3000)

    result = PlacementPlanner(catalog).plan(image, {"Beta": 0x200, "Gamma": 0x3000}, allow_extension=True)

    beta = result.placement_for("Beta")
    assert beta.region is RegionKind.FILE_EXTENSION
    assert (beta.offset, beta.va) == (0x4000, 0x82001000)
    # Headroom is image_size minus the mapped blocks: 0x2000 bytes.
    assert result.unplaced == ["Gamma"]


def test_xex2_extension_is_disabled_for_invalid_images() -> None:
    catalog = _catalog(extension=ExtensionConfig(ceiling=0x7FFFFFFF, header="xex2"))

    result = PlacementPlanner(catalog).plan(IMAGE, {"Beta": 0x200}, allow_extension=True)

    assert result.unplaced == ["Beta"]
    assert any(line.startswith("  WARN: extension disabled") for line in result.report)


def test_force_repack_moves_slot_items_into_the_pool() -> None:
    result = PlacementPlanner(_catalog()).plan(IMAGE, {"Alpha": 0x18}, force_repack=True)

    alpha = result.placement_for("Alpha")
    assert (alpha.region, alpha.offset, alpha.requires_repack) == (RegionKind.PRIMARY_POOL, 0x200, True)


def test_never_relocate_only_overrides_force_repack() -> None:
    planner = PlacementPlanner(_catalog(never_relocate=frozenset({"Alpha"})))

    kept = planner.plan(IMAGE, {"Alpha": 0x18}, force_repack=True)
    too_big = planner.plan(IMAGE, {"Alpha": 0x30})

    assert kept.placement_for("Alpha").region is RegionKind.FIXED_SLOT
    alpha = too_big.placement_for("Alpha")
    assert (alpha.region, alpha.offset, alpha.requires_repack) == (RegionKind.PRIMARY_POOL, 0x200, True)
    assert too_big.unplaced == []


def test_slot_past_the_end_of_the_image_relocates_the_item() -> None:
    catalog = _catalog(fixed_slots=(FixedSlot("Alpha", 0x800, 0x20),))
    result = PlacementPlanner(catalog).plan(IMAGE, {"Alpha": 0x18})

    alpha = result.placement_for("Alpha")
    assert (alpha.region, alpha.offset, alpha.requires_repack) == (RegionKind.PRIMARY_POOL, 0x200, True)
    assert result.unplaced == []


def test_slot_overflow_relocates_the_item() -> None:
    result = PlacementPlanner(_catalog()).plan(IMAGE, {"Alpha": 0x30})

    alpha = result.placement_for("Alpha")
    assert (alpha.region, alpha.offset, alpha.requires_repack) == (RegionKind.PRIMARY_POOL, 0x200, True)


def test_free_segments_are_tried_before_the_pools() -> None:
    result = PlacementPlanner(_catalog()).plan(
        IMAGE,
        {"Beta": 0x50, "Gamma": 0x50},
        extra_free_segments=[FreeSegment(0x300, 0x360)],
    )

    assert result.placement_for("Beta").region is RegionKind.COMPACTED_FREED_TAIL
    assert result.placement_for("Beta").offset == 0x300
    assert result.placement_for("Gamma").region is RegionKind.PRIMARY_POOL


def test_overflow_pool_only_used_when_enabled() -> None:
    planner = PlacementPlanner(_catalog(overflow_pools=(Span(0x300, 0x380),)))
    items = {"Beta": 0xC0, "Gamma": 0x60}

    without = planner.plan(IMAGE, items)
    with_overflow = planner.plan(IMAGE, items, allow_overflow_pool=True)

    assert without.unplaced == ["Gamma"]
    gamma = with_overflow.placement_for("Gamma")
    assert (gamma.region, gamma.offset) == (RegionKind.OVERFLOW_POOL, 0x300)


def test_pending_ranges_are_never_handed_out() -> None:
    planner = PlacementPlanner(_catalog())

    result = planner.plan(IMAGE, {"Alpha": 0x18, "Beta": 0x50}, pending_ranges=[Span(0x100, 0x120), (0x200, 0x280)])

    assert result.placement_for("Alpha").offset == 0x280
    assert result.placement_for("Beta").offset == 0x2A0
    assert result.unplaced == []


def test_pools_are_clipped_to_the_image() -> None:
    result = PlacementPlanner(_catalog()).plan(bytes(0x240), {"Beta": 0x50})

    assert result.unplaced == ["Beta"]


def test_priority_order_decides_who_gets_the_space() -> None:
    planner = PlacementPlanner(_catalog(priority_order=("Gamma", "Beta")))

    result = planner.plan(IMAGE, {"Beta": 0x80, "Gamma": 0x90})

    assert result.placed_names == ("Gamma",)
    assert result.unplaced == ["Beta"]
    assert planner.plan(IMAGE, {"Beta": 0x80, "Gamma": 0x90}, priority_order=["Beta"]).placed_names == ("Beta",)


def test_zero_length_item_is_placed_without_claiming_bytes() -> None:
    result = PlacementPlanner(_catalog()).plan(IMAGE, {"Empty": 0, "Beta": 0x50})

    assert result.placement_for("Empty").size == 0
    assert result.placement_for("Beta").offset == 0x200


def test_mirror_secondaries_are_not_planned() -> None:
    catalog = _catalog(
        pointer_tables=(
            PointerTableEntry("index", "Beta", 0x14),
            PointerTableEntry("index", "Beta (2)", 0x18),
        ),
        mirrors=(("Beta (2)", "Beta"),),
    )

    result = PlacementPlanner(catalog).plan(IMAGE, {"Beta": 0x50, "Beta (2)": 0x50})

    assert result.placed_names == ("Beta",)
    assert result.unplaced == []
    assert "  Beta (2) mirrors Beta; not planned separately" in result.report


def test_duplicate_items_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="requested twice"):
        PlacementPlanner(_catalog()).plan(IMAGE, [Item("Beta", 4), Item("Beta", 8)])


def test_fixed_slot_placement_is_idempotent() -> None:
    planner = PlacementPlanner(_catalog())

    first = planner.plan(IMAGE, {"Alpha": 0x18, "Beta": 0x50})
    second = planner.plan(IMAGE, {"Alpha": 0x18, "Beta": 0x50})

    assert first.placements == second.placements


def test_alignment_override_applies_to_pool_offsets() -> None:
    result = PlacementPlanner(_catalog()).plan(IMAGE, {"Beta": 0x4, "Gamma": 0x4}, alignment=0x40)

    assert [p.offset for p in result.placements] == [0x200, 0x240]


@pytest.mark.parametrize("seed", range(8))
def test_items_that_fit_one_region_all_land_inside_it(seed: int) -> None:
    rng = random.Random(seed)
    sizes: Dict[str, int] = {}
    budget = 0x100
    while budget >= 0x10:
        size = rng.randrange(1, min(budget, 0x40) // 0x10 + 1) * 0x10
        sizes[f"item{len(sizes)}"] = size
        budget -= size

    result = PlacementPlanner(_catalog()).plan(IMAGE, sizes)

    assert result.unplaced == []
    for placement in result.placements:
        assert 0x200 <= placement.offset and placement.end <= 0x300


@pytest.mark.parametrize("seed", range(10))
def test_random_plans_never_overlap(seed: int) -> None:
    rng = random.Random(seed)
    slots = tuple(FixedSlot(f"slot{i}", 0x400 + i * 0x100, 0x100) for i in range(6))
    catalog = _catalog(
        fixed_slots=slots,
        primary_pools=(Span(0x1000, 0x1800),),
        overflow_pools=(Span(0x1800, 0x1C00),),
    )
    sizes = {slot.name: rng.randrange(0, 0x180) for slot in slots}
    sizes.update({f"loose{i}": rng.randrange(0, 0x300) for i in range(6)})

    result = PlacementPlanner(catalog).plan(
        bytes(0x2000),
        sizes,
        allow_overflow_pool=True,
        force_repack=rng.random() < 0.3,
        extra_free_segments=[FreeSegment(0x200, 0x300)],
    )

    occupied = sorted((p for p in result.placements if p.size), key=lambda p: p.offset)
    for previous, current in zip(occupied, occupied[1:]):
        assert previous.end <= current.offset
    for placement in result.placements:
        assert placement.size == sizes[placement.item]
        assert placement.end <= 0x2000
    assert set(result.placed_names) | set(result.unplaced) == set(sizes)


def test_extension_starts_after_ranges_claimed_past_the_file() -> None:
    result = PlacementPlanner(_catalog()).plan(
        IMAGE,
        {"Beta": 0x200},
        allow_extension=True,
        pending_ranges=[(0x400, 0x520)],
    )

    assert result.placement_for("Beta").offset == 0x520
    assert result.extension_bytes == 0x320
