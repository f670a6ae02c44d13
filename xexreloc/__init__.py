"""Relocate, regenerate and re-point variable size blobs inside XEX images."""

from .applier import Applier, ApplyResult
from .catalog import RegionCatalog, TargetProfile, default_profile, load_profile
from .compactor import CompactedImage, CompactionLayout, PointersFixedImage, RegionCompactor
from .errors import (
    CapacityError,
    ConfigurationError,
    ExtensionError,
    OverlapError,
    PatchError,
    RegenerationError,
    SequencingError,
)
from .extension import XexAnalysis, analyze_image, extend_image
from .materializer import BlobMaterializer, ExternalRegenerator, ItemPayload
from .menus import MenuLayout, MenuReconciler
from .model import (
    CompactableRecord,
    FixedSlot,
    FreeSegment,
    Item,
    Placement,
    PlanResult,
    PointerTableEntry,
    RegionKind,
    RelocationStyle,
    Span,
)
from .planner import PlacementPlanner
from .split import SplitPlan, SplitPlanner

__all__ = [
    "Applier",
    "ApplyResult",
    "BlobMaterializer",
    "CapacityError",
    "CompactableRecord",
    "CompactedImage",
    "CompactionLayout",
    "ConfigurationError",
    "ExtensionError",
    "ExternalRegenerator",
    "FixedSlot",
    "FreeSegment",
    "Item",
    "ItemPayload",
    "MenuLayout",
    "MenuReconciler",
    "OverlapError",
    "PatchError",
    "Placement",
    "PlacementPlanner",
    "PlanResult",
    "PointerTableEntry",
    "PointersFixedImage",
    "RegenerationError",
    "RegionCatalog",
    "RegionCompactor",
    "RegionKind",
    "RelocationStyle",
    "SequencingError",
    "Span",
    "SplitPlan",
    "SplitPlanner",
    "TargetProfile",
    "XexAnalysis",
    "analyze_image",
    "default_profile",
    "extend_image",
    "load_profile",
]
