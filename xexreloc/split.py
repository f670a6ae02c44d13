"""Partition items between two output images.

Image A receives the highest priority items that fit.  Adjacency pairs
``(leader, follower)`` must end up in the same image: whenever only one side
of a pair is placed in A, the placed side is demoted and A is planned again
until the set is stable.  Everything else is planned from scratch against
image B.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .catalog import RegionCatalog
from .model import Item, PlanResult, order_by_priority
from .planner import ItemsArg, PlacementPlanner

logger = logging.getLogger(__name__)


@dataclass
class SplitPlan:
    a: PlanResult
    remaining_a: List[str] = field(default_factory=list)
    b: PlanResult = field(default_factory=PlanResult)

    @property
    def unplaced(self) -> List[str]:
        """Items that fit in neither image."""

        return list(self.b.unplaced)

    @property
    def summary(self) -> str:
        return f"=== SPLIT POINT: image A has {len(self.a.placements)} items. Image B has {len(self.remaining_a)}. ==="

    @property
    def report(self) -> List[str]:
        lines = list(self.a.report)
        if self.remaining_a:
            lines.append("")
            lines.append(self.summary)
            lines.extend(self.b.report)
        return lines


class SplitPlanner:
    def __init__(self, catalog: RegionCatalog) -> None:
        self.catalog = catalog
        self.planner = PlacementPlanner(catalog)

    def plan_split(
        self,
        image: bytes,
        items: ItemsArg,
        *,
        adjacency: Optional[Sequence[Tuple[str, str]]] = None,
        contiguous_prefix: bool = False,
        image_b: Optional[bytes] = None,
        **options: Any,
    ) -> SplitPlan:
        """Plan image A, then plan every item left over against image B.

        ``options`` are forwarded to :meth:`PlacementPlanner.plan` for both
        images.  With ``contiguous_prefix`` image A receives the longest
        priority prefix that fits completely, followers travelling with their
        leader; otherwise A is planned with every item and pairs are repaired
        by demotion.
        """

        built = self.planner.build_items(items)
        by_name: Dict[str, Item] = {item.name: item for item in built}
        pairs = [
            (leader, follower)
            for leader, follower in (self.catalog.adjacency if adjacency is None else adjacency)
            if leader in by_name and follower in by_name
        ]
        priority = options.get("priority_order") or self.catalog.priority_order
        ordered = order_by_priority(list(by_name), priority)

        if contiguous_prefix:
            in_a, plan_a = self._prefix(image, ordered, by_name, pairs, options)
        else:
            in_a, plan_a = self._demote_until_stable(image, ordered, by_name, pairs, options)

        remaining = [name for name in ordered if name not in in_a]
        plan_b = self.planner.plan(image if image_b is None else image_b, [by_name[n] for n in remaining], **options)
        if plan_b.unplaced:
            logger.warning("split: %d items fit in neither image: %s", len(plan_b.unplaced), ", ".join(plan_b.unplaced))
        return SplitPlan(a=plan_a, remaining_a=remaining, b=plan_b)

    def _placed(self, result: PlanResult, requested: Set[str]) -> Set[str]:
        placed = set(result.placed_names)
        for secondary, primary in self.catalog.mirrors:
            if secondary in requested and primary in placed:
                placed.add(secondary)
        return placed

    def _demote_until_stable(
        self,
        image: bytes,
        ordered: List[str],
        by_name: Dict[str, Item],
        pairs: List[Tuple[str, str]],
        options: Dict[str, Any],
    ) -> Tuple[Set[str], PlanResult]:
        current = set(ordered)
        while True:
            result = self.planner.plan(image, [by_name[n] for n in ordered if n in current], **options)
            placed = self._placed(result, current)
            for leader, follower in pairs:
                if (leader in placed) != (follower in placed):
                    placed.discard(leader)
                    placed.discard(follower)
            if placed == current:
                return current, result
            current = placed

    def _prefix(
        self,
        image: bytes,
        ordered: List[str],
        by_name: Dict[str, Item],
        pairs: List[Tuple[str, str]],
        options: Dict[str, Any],
    ) -> Tuple[Set[str], PlanResult]:
        leader_of = {follower: leader for leader, follower in pairs}
        base = [name for name in ordered if name not in leader_of]

        best: Set[str] = set()
        best_result = self.planner.plan(image, [], **options)
        for count in range(1, len(base) + 1):
            prefix = set(base[:count])
            prefix.update(f for f, leader in leader_of.items() if leader in prefix)
            result = self.planner.plan(image, [by_name[n] for n in ordered if n in prefix], **options)
            if result.unplaced:
                break
            best, best_result = prefix, result
        return best, best_result
