#!/usr/bin/env python3
"""slidesoil.geo

Value extraction from an in-memory Grid at a vector geometry.

Cell selection rules:
- Point, no buffer: the cell containing the point (floor of the inverse
  affine transform). Outside the grid, or a nodata cell, gives NaN.
- Point with buffer > 0: the point is buffered and handled as a polygon.
  Buffers are only applied to points; polygons use their own outline.
- Polygon: cells whose centre falls inside the geometry. With
  all_touched=True, every cell the geometry touches.

Aggregation:
- Named functions (mean, min, max, median, sum, std, count) or callables are
  applied to the non-missing selected cells. If none are left the result is
  NaN (count gives 0).
- Without functions the raw selected values are returned, NaN included.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from affine import Affine
from rasterio.features import geometry_mask
from rasterio.windows import Window
from rasterio.windows import transform as window_transform
from shapely.geometry import MultiPoint, Point, mapping
from shapely.geometry.base import BaseGeometry

from slidesoil.soilmoisture.archive import Grid


AggFunc = Union[str, Callable[[np.ndarray], float]]
ExtractedValue = Union[float, np.ndarray, Dict[str, float]]

AGGREGATIONS: Dict[str, Callable[[np.ndarray], float]] = {
    "mean": np.mean,
    "min": np.min,
    "max": np.max,
    "median": np.median,
    "sum": np.sum,
    "std": np.std,
    "count": np.size,
}


# -----------------------------------------------------------------------------
# Aggregation helpers
# -----------------------------------------------------------------------------

def resolve_functions(functions: Sequence[AggFunc]) -> List[Tuple[str, Callable[[np.ndarray], float]]]:
    """Turn names/callables into (name, callable) pairs, keeping order.

    Raises ValueError for unknown names or duplicate result names.
    """
    resolved: List[Tuple[str, Callable[[np.ndarray], float]]] = []
    seen = set()
    for fn in functions:
        if isinstance(fn, str):
            key = fn.strip().lower()
            if key not in AGGREGATIONS:
                raise ValueError(
                    f"Unknown aggregation function {fn!r}. Available: {sorted(AGGREGATIONS)}"
                )
            name, func = key, AGGREGATIONS[key]
        elif callable(fn):
            name, func = getattr(fn, "__name__", repr(fn)), fn
        else:
            raise ValueError(f"Aggregation must be a name or a callable, got {fn!r}")
        if name in seen:
            raise ValueError(f"Duplicate aggregation function: {name}")
        seen.add(name)
        resolved.append((name, func))
    return resolved


def aggregate(values: np.ndarray, functions: Sequence[Tuple[str, Callable[[np.ndarray], float]]]) -> Dict[str, float]:
    """Apply each function to the non-missing values."""
    valid = values[~np.isnan(values)]
    out: Dict[str, float] = {}
    for name, func in functions:
        if valid.size == 0:
            out[name] = 0.0 if func is np.size else float("nan")
        else:
            out[name] = float(func(valid))
    return out


# -----------------------------------------------------------------------------
# Cell selection
# -----------------------------------------------------------------------------

def _cell_index(transform: Affine, x: float, y: float) -> Tuple[int, int]:
    """(row, col) of the cell containing map coordinate (x, y)."""
    col, row = ~transform * (x, y)
    return math.floor(row), math.floor(col)


def sample_point(grid: Grid, x: float, y: float) -> float:
    """Value of the cell containing (x, y); NaN outside the grid or on nodata."""
    row, col = _cell_index(grid.transform, x, y)
    nrows, ncols = grid.values.shape
    if row < 0 or col < 0 or row >= nrows or col >= ncols:
        return float("nan")
    return float(grid.values[row, col])


def _bounds_window(grid: Grid, geom: BaseGeometry) -> Optional[Window]:
    """Grid window covering the geometry bounds (padded by one cell), or None."""
    minx, miny, maxx, maxy = geom.bounds
    corners = [(minx, miny), (minx, maxy), (maxx, miny), (maxx, maxy)]
    rows, cols = zip(*(_cell_index(grid.transform, cx, cy) for cx, cy in corners))
    nrows, ncols = grid.values.shape

    r0 = max(min(rows) - 1, 0)
    r1 = min(max(rows) + 1, nrows - 1)
    c0 = max(min(cols) - 1, 0)
    c1 = min(max(cols) + 1, ncols - 1)
    if r0 > r1 or c0 > c1:
        return None
    return Window(col_off=c0, row_off=r0, width=c1 - c0 + 1, height=r1 - r0 + 1)


def cell_values(grid: Grid, geom: BaseGeometry, all_touched: bool = False) -> np.ndarray:
    """Values of the cells selected by an area geometry (row-major order)."""
    if geom.is_empty:
        return np.empty(0, dtype=grid.values.dtype)

    win = _bounds_window(grid, geom)
    if win is None:
        return np.empty(0, dtype=grid.values.dtype)

    r0, c0 = int(win.row_off), int(win.col_off)
    sub = grid.values[r0:r0 + int(win.height), c0:c0 + int(win.width)]
    inside = geometry_mask(
        [mapping(geom)],
        out_shape=sub.shape,
        transform=window_transform(win, grid.transform),
        invert=True,
        all_touched=all_touched,
    )
    return sub[inside]


# -----------------------------------------------------------------------------
# Public entrypoint
# -----------------------------------------------------------------------------

def extract_at(
    grid: Grid,
    geometry: BaseGeometry,
    buffer: Optional[float] = None,
    functions: Sequence[AggFunc] = (),
    *,
    all_touched: bool = False,
) -> ExtractedValue:
    """Extract value(s) from `grid` at `geometry`.

    Returns a float for plain point sampling, a dict of function name -> float
    when functions are given, otherwise the raw array of selected cell values.
    A geometry with no valid overlap yields NaN values, never an error. A null
    or empty geometry is treated the same way.
    """
    resolved = resolve_functions(functions)

    if not isinstance(geometry, BaseGeometry) or geometry.is_empty:
        if resolved:
            return aggregate(np.empty(0), resolved)
        if isinstance(geometry, Point) and not buffer:
            return float("nan")
        return np.empty(0, dtype=grid.values.dtype)

    is_point = isinstance(geometry, Point)

    if is_point and not buffer:
        value = sample_point(grid, geometry.x, geometry.y)
        if resolved:
            return aggregate(np.array([value]), resolved)
        return value

    if isinstance(geometry, (Point, MultiPoint)) and buffer:
        geometry = geometry.buffer(float(buffer))

    values = cell_values(grid, geometry, all_touched=all_touched)
    if resolved:
        return aggregate(values, resolved)
    return values
