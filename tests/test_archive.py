#!/usr/bin/env python3

from __future__ import annotations

import math
from datetime import date

import numpy as np
import pytest

from slidesoil.errors import UnreadableImage, UnreadableRaster
from slidesoil.soilmoisture.archive import (
    AcquisitionRef,
    acquisition_date_from_name,
    list_acquisitions,
    read_grid,
)


def test_date_from_default_pattern():
    assert acquisition_date_from_name("data/SM_20200106.tif") == date(2020, 1, 6)


def test_date_from_custom_pattern():
    d = acquisition_date_from_name(
        "ASCAT_SSM_2019-11-30_v2.tif",
        pattern=r"(\d{4}-\d{2}-\d{2})",
        date_format="%Y-%m-%d",
    )
    assert d == date(2019, 11, 30)


def test_date_from_name_without_date_fails():
    with pytest.raises(ValueError):
        acquisition_date_from_name("readme.tif")
    with pytest.raises(ValueError):
        acquisition_date_from_name("SM_20201399.tif")


def test_list_acquisitions_sorted_and_filtered(tmp_path, write_tif):
    for name in ["SM_20200110.tif", "SM_20200102.tif", "SM_20200105.tif"]:
        write_tif(tmp_path / name, np.zeros((2, 2), dtype="float32"))
    (tmp_path / "notes.txt").write_text("not a raster")

    refs = list_acquisitions(tmp_path)
    assert [r.date.day for r in refs] == [2, 5, 10]

    refs = list_acquisitions(tmp_path, start=date(2020, 1, 3), end=date(2020, 1, 10))
    assert [r.path.name for r in refs] == ["SM_20200105.tif", "SM_20200110.tif"]


def test_list_acquisitions_rejects_undated_file(tmp_path, write_tif):
    write_tif(tmp_path / "SM_20200110.tif", np.zeros((2, 2), dtype="float32"))
    write_tif(tmp_path / "mosaic.tif", np.zeros((2, 2), dtype="float32"))
    with pytest.raises(ValueError):
        list_acquisitions(tmp_path)


def test_acquisition_refs_order_by_date():
    a = AcquisitionRef.from_path("x/SM_20200105.tif")
    b = AcquisitionRef.from_path("a/SM_20200101.tif")
    assert sorted([a, b]) == [b, a]


def test_read_grid_converts_nodata_to_nan(tmp_path, write_tif):
    path = write_tif(tmp_path / "SM_20200101.tif", np.array([[1, -9999], [3, 4]], dtype="int16"), nodata=-9999)
    grid = read_grid(path)
    assert grid.shape == (2, 2)
    assert grid.values.dtype == np.float64
    assert math.isnan(grid.values[0, 1])
    assert grid.values[1, 0] == 3.0
    assert grid.crs.to_epsg() == 32632


def test_read_grid_missing_file_is_unreadable(tmp_path):
    with pytest.raises(UnreadableImage) as exc:
        read_grid(tmp_path / "nope.tif")
    assert exc.value.path.name == "nope.tif"
    assert UnreadableRaster is UnreadableImage


def test_read_grid_garbage_file_is_unreadable(tmp_path):
    path = tmp_path / "SM_20200101.tif"
    path.write_bytes(b"not a tiff")
    with pytest.raises(UnreadableImage):
        read_grid(path)
