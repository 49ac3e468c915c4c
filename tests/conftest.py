#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import rasterio  # noqa: E402
from rasterio.transform import from_origin  # noqa: E402

from slidesoil.errors import UnreadableImage  # noqa: E402
from slidesoil.soilmoisture.archive import Grid  # noqa: E402


# 4x4 grid of 1-unit cells covering x 0..4, y 0..4
TRANSFORM = from_origin(0, 4, 1, 1)


class MemoryReader:
    """path -> Grid lookup that records every read."""

    def __init__(self, grids, unreadable=()):
        self.grids = {Path(k): v for k, v in grids.items()}
        self.unreadable = {Path(p) for p in unreadable}
        self.calls = []

    def __call__(self, path):
        path = Path(path)
        self.calls.append(path)
        if path in self.unreadable or path not in self.grids:
            raise UnreadableImage(path, "not in memory")
        values = self.grids[path]
        if not isinstance(values, Grid):
            values = Grid(values=np.asarray(values, dtype="float64"), transform=TRANSFORM)
        return values


@pytest.fixture
def write_tif():
    """Write a single-band GeoTIFF and return its path."""

    def _write(path, values, nodata=None, transform=TRANSFORM, crs="EPSG:32632"):
        values = np.asarray(values)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with rasterio.open(
            path,
            "w",
            driver="GTiff",
            height=values.shape[0],
            width=values.shape[1],
            count=1,
            dtype=str(values.dtype),
            crs=crs,
            transform=transform,
            nodata=nodata,
        ) as dst:
            dst.write(values, 1)
        return path

    return _write
