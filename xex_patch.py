#!/usr/bin/env python3
"""Command-line interface for the XEX blob relocator."""

from __future__ import annotations

import argparse
import logging
import shlex
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from xexreloc import (
    ExternalRegenerator,
    PatchError,
    RegionCompactor,
    TargetProfile,
    analyze_image,
    default_profile,
    load_profile,
)
from xexreloc.model import FreeSegment
from xexreloc.workflow import PatchOptions, load_payloads, patch_single, patch_split


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--profile",
        type=Path,
        default=None,
        help="JSON or YAML profile describing the image; defaults to the built-in GoldenEye XBLA tables",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Describe the XEX2 block table of an image")
    analyze.add_argument("image", type=Path)

    compact = commands.add_parser("compact", help="Drop records from the compaction region and fix the index")
    compact.add_argument("image", type=Path)
    compact.add_argument("-o", "--output", type=Path, required=True, help="Where to write the compacted image")
    compact.add_argument(
        "--remove",
        action="append",
        default=None,
        help="Record to remove (repeatable); defaults to the profile's default list",
    )

    for name, summary in (("plan", "Print where every blob would go"), ("patch", "Write a patched image")):
        sub = commands.add_parser(name, help=summary)
        sub.add_argument("image", type=Path)
        sub.add_argument("--blobs", type=Path, help="Directory of <item>.bin captures and <item>.set sources")
        sub.add_argument("--stan-blobs", type=Path, help="Directory of <item>.bin clipping captures")
        sub.add_argument(
            "--regenerate",
            default=None,
            help="Converter invoked as '<command> input output VA' for moved blobs",
        )
        sub.add_argument("--allow-overflow", action="store_true", help="Allow packing into the overflow pool")
        sub.add_argument("--allow-extension", action="store_true", help="Allow growing the file")
        sub.add_argument("--force-repack", action="store_true", help="Move every relocatable item out of its slot")
        sub.add_argument(
            "--compact",
            action="store_true",
            help="Compact the profile's record table first and offer the freed tail to the planner",
        )
        sub.add_argument("--no-menu", action="store_true", help="Leave the menu, image and briefing tables alone")
        sub.add_argument("--menu-order", default=None, help="Comma separated mission order for the menu")
        sub.add_argument("--split", action="store_true", help="Split the items across two images")
        sub.add_argument("--image-b", type=Path, default=None, help="Base image for the second half of a split")
        if name == "patch":
            sub.add_argument("-o", "--output", type=Path, required=True, help="Patched image (image A for a split)")
            sub.add_argument("--output-b", type=Path, default=None, help="Second image of a split")
        sub.add_argument("--report", type=Path, default=None, help="Also write the report to this file")
    return parser.parse_args(argv)


def resolve_profile(args: argparse.Namespace) -> TargetProfile:
    if args.profile is None:
        return default_profile()
    return load_profile(args.profile)


def read_image(path: Path) -> bytes:
    if not path.is_file():
        raise SystemExit(f"missing input file: {path}")
    return path.read_bytes()


def emit(lines: Sequence[str], report_path: Optional[Path] = None) -> None:
    text = "\n".join(lines)
    print(text)
    if report_path is not None:
        report_path.write_text(text + "\n", "utf-8")


def run_analyze(args: argparse.Namespace) -> None:
    emit(analyze_image(read_image(args.image)).describe())


def run_compact(args: argparse.Namespace) -> None:
    profile = resolve_profile(args)
    if profile.compaction is None:
        raise SystemExit(f"profile {profile.name!r} has no compaction section")
    compactor = RegionCompactor(profile.compaction)
    compacted = compactor.compact(read_image(args.image), args.remove)
    fixed = compactor.fix_pointers(compacted)
    args.output.write_bytes(fixed.image)
    emit(compacted.report + [""] + fixed.report)
    print(f"compacted image written to {args.output}")


def collect_layers(args: argparse.Namespace, profile: TargetProfile, regenerator) -> Dict[str, Dict]:
    layers: Dict[str, Dict] = {}
    for layer, directory in (("setup", args.blobs), ("stan", args.stan_blobs)):
        if directory is None:
            continue
        layers[layer] = load_payloads(profile.layer(layer), directory, regenerator)
    if not layers:
        raise SystemExit("nothing to do: pass --blobs and/or --stan-blobs")
    return layers


def run_plan_or_patch(args: argparse.Namespace) -> None:
    profile = resolve_profile(args)
    image = read_image(args.image)
    regenerator = ExternalRegenerator(shlex.split(args.regenerate)) if args.regenerate else None
    layers = collect_layers(args, profile, regenerator)

    report: List[str] = []
    free_segments: List[FreeSegment] = []
    if args.compact:
        if profile.compaction is None:
            raise SystemExit(f"profile {profile.name!r} has no compaction section")
        compactor = RegionCompactor(profile.compaction)
        compacted = compactor.compact(image)
        fixed = compactor.fix_pointers(compacted)
        image = fixed.image
        free_segments.append(fixed.freed_segment)
        report.extend(compacted.report + [""] + fixed.report + [""])

    options = PatchOptions(
        allow_overflow_pool=args.allow_overflow,
        allow_extension=args.allow_extension,
        force_repack=args.force_repack,
        reconcile_index=not args.no_menu,
        menu_order=[name.strip() for name in args.menu_order.split(",")] if args.menu_order else None,
    )

    writing = args.command == "patch"
    if args.split:
        image_b = read_image(args.image_b) if args.image_b else None
        outcome = patch_split(
            image,
            profile,
            layers,
            image_b=image_b,
            options=options,
            regenerator=regenerator,
            free_segments=free_segments,
            dry_run=not writing,
        )
        report.extend(outcome.a.report)
        report.append(outcome.split.summary)
        report.append("")
        report.extend(outcome.b.report)
        if outcome.unplaced:
            report.append("Items that fit in neither image: " + ", ".join(outcome.unplaced))
        if writing:
            if outcome.split.remaining_a and args.output_b is None:
                raise SystemExit("the split needs a second image; pass --output-b")
            args.output.write_bytes(outcome.a.image)
            if args.output_b is not None:
                args.output_b.write_bytes(outcome.b.image)
    else:
        outcome = patch_single(
            image,
            profile,
            layers,
            options=options,
            regenerator=regenerator,
            free_segments=free_segments,
            dry_run=not writing,
        )
        report.extend(outcome.report)
        for layer, names in outcome.unplaced.items():
            report.append(f"Unplaced {layer} items: " + ", ".join(names))
        if writing:
            args.output.write_bytes(outcome.image)

    emit(report, args.report)
    if writing:
        print(f"patched image written to {args.output}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    start_time = time.perf_counter()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    handlers = {"analyze": run_analyze, "compact": run_compact, "plan": run_plan_or_patch, "patch": run_plan_or_patch}
    try:
        handlers[args.command](args)
    except PatchError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    total_time = time.perf_counter() - start_time
    print(f"total execution time: {total_time:.2f}s")


if __name__ == "__main__":
    main()
