#!/usr/bin/env python3
"""archive.py

Read access to a soil-moisture raster archive.

One GeoTIFF per acquisition, with the acquisition date encoded in the file name
(e.g. SM_20200106.tif). This module:
- Parses acquisition dates from file names (regex + strptime format)
- Lists an archive directory into date-sorted AcquisitionRefs
- Reads band 1 of a raster into a Grid, with nodata converted to NaN
- Writes a Grid back to GeoTIFF using the source profile

Missing-marker convention: NaN in a float64 array. Callers never see the raw
nodata value of the source file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import rasterio
from rasterio.errors import RasterioIOError
from affine import Affine

from slidesoil.config import DEFAULT_ARCHIVE_GLOB, DEFAULT_DATE_FORMAT, DEFAULT_DATE_PATTERN
from slidesoil.errors import UnreadableImage


PathLike = Union[str, Path]


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Grid:
    """A single-band raster held in memory.

    values: 2-D array, NaN marks missing cells (float grids from read_grid).
    transform: affine pixel -> map transform.
    crs: coordinate reference system of the source (opaque to slidesoil).
    profile: rasterio profile of the source, reused when writing outputs.
    """

    values: np.ndarray
    transform: Affine = field(default_factory=Affine.identity)
    crs: Any = None
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.values.shape)  # type: ignore[return-value]


@dataclass(frozen=True, order=True)
class AcquisitionRef:
    """Path + acquisition date of one archive raster (no pixels read)."""

    date: date
    path: Path

    @classmethod
    def from_path(
        cls,
        path: PathLike,
        pattern: str = DEFAULT_DATE_PATTERN,
        date_format: str = DEFAULT_DATE_FORMAT,
    ) -> "AcquisitionRef":
        return cls(date=acquisition_date_from_name(path, pattern, date_format), path=Path(path))


@dataclass(frozen=True)
class RasterAcquisition:
    """An acquisition together with its pixels."""

    ref: AcquisitionRef
    grid: Grid

    @property
    def date(self) -> date:
        return self.ref.date

    @property
    def path(self) -> Path:
        return self.ref.path


# -----------------------------------------------------------------------------
# Dates and listing
# -----------------------------------------------------------------------------

def acquisition_date_from_name(
    path: PathLike,
    pattern: str = DEFAULT_DATE_PATTERN,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> date:
    """Parse the acquisition date from a raster's file name.

    The first capture group of `pattern` (or the whole match when the pattern
    has no group) is parsed with `date_format`.

    Raises ValueError if the name does not contain a date.
    """
    name = Path(path).name
    m = re.search(pattern, name)
    if not m:
        raise ValueError(f"No date matching {pattern!r} in file name: {name}")
    token = m.group(1) if m.groups() else m.group(0)
    try:
        return datetime.strptime(token, date_format).date()
    except ValueError as e:
        raise ValueError(f"Can't parse {token!r} from {name} with format {date_format!r}") from e


def list_acquisitions(
    root: PathLike,
    glob: str = DEFAULT_ARCHIVE_GLOB,
    pattern: str = DEFAULT_DATE_PATTERN,
    date_format: str = DEFAULT_DATE_FORMAT,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[AcquisitionRef]:
    """List archive rasters under `root` as date-sorted AcquisitionRefs.

    `start`/`end` optionally restrict to an inclusive date range.
    Every matched file must carry a parsable date (ValueError otherwise):
    a file silently left out would look like a missing acquisition.
    """
    root = Path(root)
    if not root.is_dir():
        raise SystemExit(f"Archive directory not found: {root}")

    refs: List[AcquisitionRef] = []
    for p in sorted(root.glob(glob)):
        if not p.is_file():
            continue
        ref = AcquisitionRef.from_path(p, pattern, date_format)
        if start is not None and ref.date < start:
            continue
        if end is not None and ref.date > end:
            continue
        refs.append(ref)
    refs.sort()
    return refs


# -----------------------------------------------------------------------------
# Raster IO
# -----------------------------------------------------------------------------

def read_grid(path: PathLike) -> Grid:
    """Read band 1 of a raster as a float64 Grid with NaN for nodata.

    Raises UnreadableImage if the file can't be opened or read.
    """
    path = Path(path)
    try:
        with rasterio.open(path) as src:
            data = src.read(1, masked=True)
            profile = src.profile.copy()
            transform = src.transform
            crs = src.crs
    except (RasterioIOError, OSError) as e:
        raise UnreadableImage(path, str(e)) from e

    values = np.ma.filled(data.astype("float64"), np.nan)
    return Grid(values=values, transform=transform, crs=crs, profile=profile)


def read_acquisition(ref: AcquisitionRef, reader=read_grid) -> RasterAcquisition:
    """Read the pixels for an AcquisitionRef."""
    return RasterAcquisition(ref=ref, grid=reader(ref.path))


def write_grid(grid: Grid, out_path: PathLike, *, nodata: Optional[float] = None) -> Path:
    """Write a Grid as a single-band GeoTIFF, keeping the source georeference."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    profile = dict(grid.profile)
    profile.update(
        driver="GTiff",
        height=grid.values.shape[0],
        width=grid.values.shape[1],
        count=1,
        dtype=str(grid.values.dtype),
        transform=grid.transform,
        crs=grid.crs,
        nodata=nodata,
        compress="deflate",
    )
    # Source block layout does not carry over to the output
    profile.pop("tiled", None)
    profile.pop("blockxsize", None)
    profile.pop("blockysize", None)

    with rasterio.open(out_path, "w", **profile) as dst:
        dst.write(grid.values, 1)
    return out_path
