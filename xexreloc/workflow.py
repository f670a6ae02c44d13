"""End-to-end plan, build and apply runs over every layer of a profile.

Layers are processed in the order they are given.  Each later layer sees the
previous layers' placements as pending ranges so a shared free segment (the
compacted tail, for instance) is never handed out twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .applier import Applier
from .catalog import RegionCatalog, TargetProfile
from .errors import ConfigurationError
from .materializer import BlobMaterializer, ItemPayload, Regenerator
from .menus import MenuReconciler
from .model import FreeSegment, PlanResult, Span
from .planner import PlacementPlanner
from .report import space_usage_report
from .split import SplitPlan, SplitPlanner

logger = logging.getLogger(__name__)

LayerPayloads = Mapping[str, Mapping[str, ItemPayload]]


@dataclass
class PatchOptions:
    allow_overflow_pool: bool = False
    allow_extension: bool = False
    extension_chunk_size: Optional[int] = None
    alignment: Optional[int] = None
    force_repack: bool = False
    never_relocate: Optional[Sequence[str]] = None
    reconcile_index: bool = True
    menu_order: Optional[Sequence[str]] = None
    menu_layer: str = "setup"
    contiguous_prefix: bool = False

    def plan_kwargs(self) -> Dict[str, Any]:
        return {
            "allow_overflow_pool": self.allow_overflow_pool,
            "allow_extension": self.allow_extension,
            "extension_chunk_size": self.extension_chunk_size,
            "alignment": self.alignment,
            "force_repack": self.force_repack,
            "never_relocate": self.never_relocate,
        }


@dataclass
class PatchOutcome:
    image: bytes
    plans: Dict[str, PlanResult] = field(default_factory=dict)
    report: List[str] = field(default_factory=list)

    @property
    def unplaced(self) -> Dict[str, List[str]]:
        return {layer: list(plan.unplaced) for layer, plan in self.plans.items() if plan.unplaced}


@dataclass
class SplitOutcome:
    a: PatchOutcome
    b: PatchOutcome
    split: SplitPlan

    @property
    def unplaced(self) -> List[str]:
        return self.split.unplaced


def load_payloads(
    catalog: RegionCatalog,
    directory: Path,
    regenerator: Optional[Regenerator] = None,
) -> Dict[str, ItemPayload]:
    """Collect ``<item>.bin`` captures and ``<item>.set`` sources from ``directory``.

    An item with a source but no capture is converted once at its original
    address (or the start of the first pool) to learn its size.
    """

    if not directory.is_dir():
        raise ConfigurationError(f"blob directory not found: {directory}")
    payloads: Dict[str, ItemPayload] = {}
    for name in catalog.known_items():
        captured_path = directory / f"{name}.bin"
        source_path = directory / f"{name}.set"
        source = source_path.read_bytes() if source_path.is_file() else None
        if captured_path.is_file():
            payloads[name] = ItemPayload(captured_path.read_bytes(), source)
        elif source is not None:
            if regenerator is None:
                raise ConfigurationError(f"{source_path.name} has no capture and no regeneration command was given")
            va = catalog.original_va(name)
            if va is None:
                va = catalog.va_for(catalog.primary_pools[0].start)
            logger.info("capturing %s at VA 0x%08X", name, va)
            payloads[name] = ItemPayload(regenerator(source, va), source)
    return payloads


def _run_layers(
    image: bytes,
    profile: TargetProfile,
    layers: LayerPayloads,
    options: PatchOptions,
    regenerator: Optional[Regenerator],
    free_segments: Sequence[FreeSegment],
    pending_ranges: Sequence[Span],
    fixed_plans: Optional[Mapping[str, PlanResult]] = None,
    dry_run: bool = False,
) -> PatchOutcome:
    outcome = PatchOutcome(image=bytes(image))
    claimed: List[Tuple[int, int]] = []
    for layer_name, payloads in layers.items():
        catalog = profile.layer(layer_name)
        items = catalog.make_items({name: len(payload.captured) for name, payload in payloads.items()})
        plan = (fixed_plans or {}).get(layer_name)
        if plan is None:
            plan = PlacementPlanner(catalog).plan(
                outcome.image,
                items,
                extra_free_segments=free_segments,
                pending_ranges=list(pending_ranges) + [Span(start, end) for start, end in claimed],
                **options.plan_kwargs(),
            )
        claimed.extend((p.offset, p.end) for p in plan.placements)
        outcome.plans[layer_name] = plan
        outcome.report.extend(plan.report)
        if dry_run:
            outcome.report.extend(space_usage_report(catalog, plan.placements))
            outcome.report.append("")
            continue

        blobs = BlobMaterializer(payloads, regenerator).build_all(items, plan.placements)
        reconciler = None
        if profile.menu is not None and layer_name == options.menu_layer:
            reconciler = MenuReconciler(profile.menu)
        applied = Applier(catalog, reconciler=reconciler).apply(
            outcome.image,
            plan.placements,
            blobs,
            allow_extension=options.allow_extension,
            reconcile_index=options.reconcile_index,
            menu_order=options.menu_order,
        )
        outcome.image = applied.image
        outcome.report.extend(applied.log)
        outcome.report.extend(space_usage_report(catalog, plan.placements))
        outcome.report.append("")
    return outcome


def patch_single(
    image: bytes,
    profile: TargetProfile,
    layers: LayerPayloads,
    *,
    options: Optional[PatchOptions] = None,
    regenerator: Optional[Regenerator] = None,
    free_segments: Iterable[FreeSegment] = (),
    pending_ranges: Iterable[Span] = (),
    dry_run: bool = False,
) -> PatchOutcome:
    """Plan, build and apply every layer against one image.

    With ``dry_run`` only the plans and their reports are produced; the
    returned image is an unmodified copy.
    """

    return _run_layers(
        image,
        profile,
        layers,
        options or PatchOptions(),
        regenerator,
        list(free_segments),
        list(pending_ranges),
        dry_run=dry_run,
    )


def patch_split(
    image: bytes,
    profile: TargetProfile,
    layers: LayerPayloads,
    *,
    split_layer: Optional[str] = None,
    image_b: Optional[bytes] = None,
    options: Optional[PatchOptions] = None,
    regenerator: Optional[Regenerator] = None,
    free_segments: Iterable[FreeSegment] = (),
    pending_ranges: Iterable[Span] = (),
    dry_run: bool = False,
) -> SplitOutcome:
    """Split ``split_layer`` across two images; other layers follow its items."""

    options = options or PatchOptions()
    if not layers:
        raise ConfigurationError("no layers to patch")
    primary = split_layer or next(iter(layers))
    if primary not in layers:
        raise ConfigurationError(f"split layer {primary!r} has no payloads")
    free = list(free_segments)
    pending = list(pending_ranges)

    catalog = profile.layer(primary)
    items = catalog.make_items({name: len(p.captured) for name, p in layers[primary].items()})
    split = SplitPlanner(catalog).plan_split(
        image,
        items,
        contiguous_prefix=options.contiguous_prefix,
        image_b=image_b,
        extra_free_segments=free,
        pending_ranges=pending,
        **options.plan_kwargs(),
    )
    in_b = set(split.remaining_a)
    layers_a = {layer: {n: p for n, p in payloads.items() if n not in in_b} for layer, payloads in layers.items()}
    layers_b = {layer: {n: p for n, p in payloads.items() if n in in_b} for layer, payloads in layers.items()}

    outcome_a = _run_layers(image, profile, layers_a, options, regenerator, free, pending, {primary: split.a}, dry_run)
    outcome_b = _run_layers(
        image if image_b is None else image_b,
        profile,
        layers_b,
        options,
        regenerator,
        free,
        pending,
        {primary: split.b},
        dry_run,
    )
    return SplitOutcome(a=outcome_a, b=outcome_b, split=split)
