"""Human readable summaries of a finished plan."""

from __future__ import annotations

from typing import Dict, Iterable, List

from .binary import format_bytes, percent
from .catalog import RegionCatalog
from .model import Placement, RegionKind


def bytes_by_region(placements: Iterable[Placement]) -> Dict[RegionKind, int]:
    totals = {kind: 0 for kind in RegionKind}
    for placement in placements:
        totals[placement.region] += placement.size
    return totals


def space_usage_report(catalog: RegionCatalog, placements: Iterable[Placement]) -> List[str]:
    """Summarise how much of each receiving region ``placements`` consume.

    Fixed slot bytes are counted against the primary pool because the slots
    live inside it in every known layout.
    """

    placements = list(placements)
    totals = bytes_by_region(placements)
    fixed_count = sum(1 for p in placements if p.region is RegionKind.FIXED_SLOT)

    pool_total = catalog.pool_capacity()
    fixed = totals[RegionKind.FIXED_SLOT]
    pool = totals[RegionKind.PRIMARY_POOL]
    used = fixed + pool

    lines = [f"=== {catalog.name.upper()} SPACE USAGE ==="]
    lines.append(f"  Primary pool    {format_bytes(used):>14} / {format_bytes(pool_total):<14}  {percent(used, pool_total):>5}")
    noun = "item" if fixed_count == 1 else "items"
    lines.append(f"    Fixed slots : {format_bytes(fixed):>14}  ({fixed_count} {noun}, in place)")
    lines.append(f"    Pool used   : {format_bytes(pool):>14}  ({format_bytes(max(0, pool_total - used))} remaining)")

    overflow = totals[RegionKind.OVERFLOW_POOL]
    if overflow:
        overflow_total = catalog.overflow_capacity()
        lines.append(
            f"  Overflow pool   {format_bytes(overflow):>14} / {format_bytes(overflow_total):<14}  "
            f"{percent(overflow, overflow_total):>5}"
        )

    tail = totals[RegionKind.COMPACTED_FREED_TAIL]
    if tail:
        lines.append(f"  Compacted tail  {format_bytes(tail):>14}")

    extension = totals[RegionKind.FILE_EXTENSION]
    if extension:
        lines.append(f"  Extension       {format_bytes(extension):>14}  appended to file")
    return lines
