#!/usr/bin/env python3
"""occurrence.py

Count, per pixel, how many soil-moisture images have a positive value.

Each image is reclassified to 1 where the value is strictly positive and 0
everywhere else (zero, negative, and nodata/NaN all count as 0), then added
into a running int32 sum. Only the running sum and the image being folded are
held in memory.

The result keeps the georeference of the first image, so it can be written
next to the inputs with write_grid().

Notes:
- Negative values count as "not positive". This mirrors the archive's
  historical behaviour and has not been confirmed with the data owners.
- Nodata is NOT propagated: a pixel that is missing in every image counts 0.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from slidesoil.errors import EmptyInput, ShapeMismatch, UnreadableImage
from slidesoil.soilmoisture.archive import Grid, read_grid


PathLike = Union[str, Path]
Reader = Callable[[Path], Grid]
ProgressCallback = Callable[[int, int, Path], None]

COUNT_DTYPE = np.int32


@dataclass
class OccurrenceResult:
    """Per-pixel positive counts plus bookkeeping."""

    grid: Grid
    n_images: int
    skipped: List[Path] = field(default_factory=list)


def classify_positive(values: np.ndarray) -> np.ndarray:
    """1 where values > 0, else 0 (NaN included)."""
    return (np.nan_to_num(values, nan=0.0) > 0).astype(COUNT_DTYPE)


def _fold(
    paths: Sequence[Tuple[int, Path]],
    acc: np.ndarray,
    reader: Reader,
    skip_unreadable: bool,
    progress: Optional[ProgressCallback],
    total: int,
) -> List[Path]:
    """Fold a slice of (position, path) pairs into `acc` in place.

    Returns the paths skipped as unreadable.
    """
    expected = acc.shape
    skipped: List[Path] = []
    for pos, path in paths:
        try:
            grid = reader(path)
        except UnreadableImage:
            if not skip_unreadable:
                raise
            skipped.append(path)
            continue
        if grid.values.shape != expected:
            raise ShapeMismatch(path, grid.values.shape, expected)
        acc += classify_positive(grid.values)
        if progress is not None:
            progress(pos, total, path)
    return skipped


def _chunks(items: Sequence, n: int) -> List[Sequence]:
    """Split into at most n contiguous, near-equal slices."""
    n = max(1, min(n, len(items)))
    size, extra = divmod(len(items), n)
    out = []
    start = 0
    for i in range(n):
        stop = start + size + (1 if i < extra else 0)
        out.append(items[start:stop])
        start = stop
    return out


def accumulate(
    image_paths: Sequence[PathLike],
    *,
    reader: Reader = read_grid,
    progress: Optional[ProgressCallback] = None,
    skip_unreadable: bool = False,
    workers: Optional[int] = None,
) -> OccurrenceResult:
    """Count, per pixel, the images with a strictly positive value.

    Parameters
    ----------
    image_paths : sequence of paths
        Rasters with identical shape. The first readable one sets the expected
        shape and the output georeference.
    reader : callable
        path -> Grid. Defaults to read_grid (rasterio, band 1).
    progress : callable | None
        Called as progress(i, n, path) after image i (1-based) is folded in.
    skip_unreadable : bool
        If True, unreadable paths are skipped and listed in result.skipped.
        Default is to fail with UnreadableImage.
    workers : int | None
        If > 1, fold contiguous slices in a thread pool and add the partial
        sums. The result is identical to the sequential fold.

    Raises
    ------
    EmptyInput
        No paths given (or none readable, with skip_unreadable).
    ShapeMismatch
        An image's shape differs from the first image's.
    UnreadableImage
        A path can't be read and skip_unreadable is False.
    """
    paths = [Path(p) for p in image_paths]
    if not paths:
        raise EmptyInput("accumulate() needs at least one image path")
    total = len(paths)

    # --- First readable image: reference shape + georeference ---
    skipped: List[Path] = []
    first: Optional[Grid] = None
    first_pos = 0
    for first_pos, path in enumerate(paths, start=1):
        try:
            first = reader(path)
            break
        except UnreadableImage:
            if not skip_unreadable:
                raise
            skipped.append(path)
    if first is None:
        raise EmptyInput(f"None of the {total} image paths could be read")

    expected = tuple(first.values.shape)
    acc = classify_positive(first.values)
    if progress is not None:
        progress(first_pos, total, paths[first_pos - 1])

    # --- Fold the rest ---
    rest = list(enumerate(paths, start=1))[first_pos:]
    if workers and workers > 1 and len(rest) > 1:
        chunks = _chunks(rest, workers)
        partials = [np.zeros(expected, dtype=COUNT_DTYPE) for _ in chunks]
        with ThreadPoolExecutor(max_workers=workers) as ex:
            futures = [
                ex.submit(_fold, chunk, part, reader, skip_unreadable, progress, total)
                for chunk, part in zip(chunks, partials)
            ]
            # Merge in slice order so `skipped` keeps input order
            for part, fut in zip(partials, futures):
                skipped.extend(fut.result())
                acc += part
    else:
        skipped.extend(_fold(rest, acc, reader, skip_unreadable, progress, total))

    profile = dict(first.profile)
    profile.update(dtype="int32", nodata=None)
    out = Grid(values=acc, transform=first.transform, crs=first.crs, profile=profile)
    return OccurrenceResult(grid=out, n_images=total - len(skipped), skipped=skipped)
