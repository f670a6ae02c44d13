"""Exception taxonomy for planning, materialising and applying patches."""

from __future__ import annotations

from typing import Iterable, Tuple

__all__ = [
    "PatchError",
    "ConfigurationError",
    "CapacityError",
    "RegenerationError",
    "OverlapError",
    "SequencingError",
    "ExtensionError",
]


class PatchError(Exception):
    """Base class for every error raised by :mod:`xexreloc`."""


class ConfigurationError(PatchError, ValueError):
    """A catalog entry is missing, malformed or inconsistent."""


class CapacityError(PatchError):
    """Items could not be placed after every receiving region was tried.

    Planning reports unplaced items as data.  This exception only surfaces
    when a caller explicitly asks for it via
    :meth:`xexreloc.model.PlanResult.raise_for_unplaced`.
    """

    def __init__(self, unplaced: Iterable[str]) -> None:
        self.unplaced: Tuple[str, ...] = tuple(unplaced)
        super().__init__("unable to place: " + ", ".join(self.unplaced))


class RegenerationError(PatchError, RuntimeError):
    """The external rebuild step failed or produced no output."""


class OverlapError(PatchError, ValueError):
    """Two placements (or a blob and its neighbour) share file bytes."""


class SequencingError(PatchError, RuntimeError):
    """A compaction step was invoked out of order or more than once."""


class ExtensionError(PatchError, ValueError):
    """The image could not be grown to hold extension placements."""
