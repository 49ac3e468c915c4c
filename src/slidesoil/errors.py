#!/usr/bin/env python3
"""slidesoil.errors

Exceptions raised by the slidesoil library.

Errors that invalidate the whole output (missing event-date column, shape
mismatch, empty input, unreadable raster) are raised. Problems local to a
single (feature, acquisition) pair never are: they show up as NaN values.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union


class SlideSoilError(Exception):
    """Base class for slidesoil errors."""


class MissingRequiredAttribute(SlideSoilError, ValueError):
    """A feature collection lacks the event-date attribute (or a row has none)."""

    def __init__(self, attribute: str, detail: Optional[str] = None):
        self.attribute = attribute
        msg = f"Missing required attribute '{attribute}'"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class ShapeMismatch(SlideSoilError, ValueError):
    """A raster in an accumulation batch disagrees with the first raster's shape."""

    def __init__(self, path: Union[str, Path], shape: Tuple[int, ...], expected: Tuple[int, ...]):
        self.path = Path(path)
        self.shape = tuple(shape)
        self.expected = tuple(expected)
        super().__init__(
            f"Shape mismatch for {self.path}: got {self.shape}, expected {self.expected}"
        )


class EmptyInput(SlideSoilError, ValueError):
    """No images were supplied where at least one is required."""


class UnreadableImage(SlideSoilError, OSError):
    """A raster path could not be opened or read."""

    def __init__(self, path: Union[str, Path], reason: Optional[str] = None):
        self.path = Path(path)
        self.reason = reason
        msg = f"Unreadable raster: {self.path}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


UnreadableRaster = UnreadableImage
