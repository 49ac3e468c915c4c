#!/usr/bin/env python3

from __future__ import annotations

import math
import random
from datetime import date, timedelta
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, box

from conftest import MemoryReader

from slidesoil.errors import MissingRequiredAttribute, UnreadableImage
from slidesoil.inventory.landslides import VectorFeature
from slidesoil.soilmoisture.archive import AcquisitionRef
from slidesoil.soilmoisture.windowed import (
    AcquisitionIndex,
    AggregationSpec,
    ExtractionWindow,
    extract,
    results_to_frame,
)


GRID = np.arange(16, dtype="float64").reshape(4, 4)


def _ref(d: date) -> AcquisitionRef:
    return AcquisitionRef(date=d, path=Path(f"sm/SM_{d:%Y%m%d}.tif"))


def _reader_for(refs, values=GRID, **kw) -> MemoryReader:
    return MemoryReader({r.path: values for r in refs}, **kw)


def _feature(x=0.5, y=3.5, d=date(2020, 1, 10), **attrs) -> VectorFeature:
    return VectorFeature(geometry=Point(x, y), event_date=d, attributes=attrs)


# -----------------------------------------------------------------------------
# Date matching
# -----------------------------------------------------------------------------

def test_window_bounds_are_inclusive_dates():
    w = ExtractionWindow(days_before=5, days_after=2)
    assert w.bounds(date(2020, 1, 10)) == (date(2020, 1, 5), date(2020, 1, 12))


def test_window_defaults_and_validation():
    w = ExtractionWindow()
    assert (w.days_before, w.days_after) == (5, 0)
    with pytest.raises(ValueError):
        ExtractionWindow(days_before=-1)
    with pytest.raises(ValueError):
        ExtractionWindow(days_after=1.5)


def test_index_select_is_sound_and_complete():
    start = date(2019, 12, 20)
    refs = [_ref(start + timedelta(days=i)) for i in range(40)]
    random.Random(3).shuffle(refs)
    index = AcquisitionIndex(refs)

    for before, after in [(0, 0), (5, 0), (3, 2), (0, 7)]:
        window = ExtractionWindow(before, after)
        event = date(2020, 1, 10)
        lo, hi = window.bounds(event)
        selected = index.select_for(event, window)

        assert all(lo <= r.date <= hi for r in selected)
        assert {r.date for r in selected} == {r.date for r in refs if lo <= r.date <= hi}
        assert [r.date for r in selected] == sorted(r.date for r in selected)
        # Both ends of the window are included
        assert selected[0].date == lo
        assert selected[-1].date == hi


def test_index_ignores_duplicate_refs():
    ref = _ref(date(2020, 1, 6))
    index = AcquisitionIndex([ref, ref])
    assert len(index) == 1


# -----------------------------------------------------------------------------
# extract()
# -----------------------------------------------------------------------------

def test_extract_selects_only_acquisitions_inside_window():
    refs = [_ref(date(2020, 1, 4)), _ref(date(2020, 1, 6)), _ref(date(2020, 1, 12))]
    reader = _reader_for(refs)

    results = extract([_feature()], refs, ExtractionWindow(5, 0), reader=reader)

    assert len(results) == 1
    assert results[0].dates == [date(2020, 1, 6)]
    assert results[0].entries[0].value == 0.0
    # Only the matched raster is read
    assert reader.calls == [refs[1].path]


def test_extract_includes_both_window_ends():
    refs = [_ref(date(2020, 1, d)) for d in (4, 5, 10, 11)]
    results = extract([_feature()], refs, ExtractionWindow(5, 0), reader=_reader_for(refs))
    assert results[0].dates == [date(2020, 1, 5), date(2020, 1, 10)]


def test_extract_entries_are_in_ascending_date_order():
    refs = [_ref(date(2020, 1, d)) for d in (9, 6, 8, 7)]
    results = extract([_feature()], refs, reader=_reader_for(refs))
    assert results[0].dates == [date(2020, 1, d) for d in (6, 7, 8, 9)]


def test_extract_preserves_feature_count_and_order():
    refs = [_ref(date(2020, 1, 6))]
    feats = [
        _feature(d=date(2020, 1, 10), id="a"),
        _feature(d=date(2021, 6, 1), id="b"),
        _feature(d=date(2020, 1, 7), id="c"),
    ]

    results = extract(feats, refs, reader=_reader_for(refs))

    assert [r.feature.attributes["id"] for r in results] == ["a", "b", "c"]
    assert [len(r.entries) for r in results] == [1, 0, 1]


def test_extract_with_no_acquisitions_returns_empty_lists():
    feats = [_feature(), _feature(d=date(2020, 2, 1))]
    results = extract(feats, [], reader=MemoryReader({}))
    assert len(results) == 2
    assert all(r.entries == [] for r in results)


def test_extract_reads_each_acquisition_once():
    refs = [_ref(date(2020, 1, 8)), _ref(date(2020, 1, 9))]
    reader = _reader_for(refs)
    feats = [_feature(x=0.5), _feature(x=1.5), _feature(x=2.5)]

    results = extract(feats, refs, reader=reader)

    assert sorted(reader.calls) == sorted(r.path for r in refs)
    assert [r.entries[0].value for r in results] == [0.0, 1.0, 2.0]


def test_missing_date_column_fails_before_any_read():
    refs = [_ref(date(2020, 1, 6))]
    reader = _reader_for(refs)
    gdf = gpd.GeoDataFrame({"id": [1, 2]}, geometry=[Point(0.5, 3.5), Point(1.5, 3.5)])

    with pytest.raises(MissingRequiredAttribute):
        extract(gdf, refs, reader=reader)
    assert reader.calls == []


def test_feature_without_event_date_fails_before_any_read():
    refs = [_ref(date(2020, 1, 6))]
    reader = _reader_for(refs)
    feats = [_feature(), VectorFeature(geometry=Point(1, 1), event_date=None)]

    with pytest.raises(MissingRequiredAttribute):
        extract(feats, refs, reader=reader)
    assert reader.calls == []


def test_extract_accepts_geodataframe_with_date_column():
    refs = [_ref(date(2020, 1, 6))]
    gdf = gpd.GeoDataFrame(
        {"id": ["x"], "event": ["2020-01-10"]},
        geometry=[Point(1.5, 3.5)],
    )

    results = extract(gdf, refs, date_field="event", reader=_reader_for(refs))

    assert results[0].feature.attributes["id"] == "x"
    assert results[0].entries[0].value == 1.0


def test_all_missing_footprint_yields_nan_per_matched_date():
    refs = [_ref(date(2020, 1, d)) for d in (6, 8, 9)]
    reader = _reader_for(refs, values=np.full((4, 4), np.nan))

    results = extract([_feature()], refs, reader=reader)

    assert len(results[0].entries) == 3
    assert all(math.isnan(e.value) for e in results[0].entries)


def test_point_outside_grid_yields_nan_not_error():
    refs = [_ref(date(2020, 1, 6))]
    results = extract([_feature(x=100.0, y=100.0)], refs, reader=_reader_for(refs))
    assert len(results[0].entries) == 1
    assert math.isnan(results[0].entries[0].value)


def test_null_and_empty_geometries_yield_missing_values():
    refs = [_ref(date(2020, 1, 6))]
    gdf = gpd.GeoDataFrame(
        {"id": ["a", "b"], "date": ["2020-01-10", "2020-01-10"]},
        geometry=[Point(0.5, 3.5), None],
    )
    agg = AggregationSpec(functions=("mean", "count"))

    results = extract(gdf, refs, agg=agg, reader=_reader_for(refs))

    assert results[0].entries[0].value == {"mean": 0.0, "count": 1.0}
    missing = results[1].entries[0].value
    assert math.isnan(missing["mean"])
    assert missing["count"] == 0.0

    empty = VectorFeature(geometry=Point(), event_date=date(2020, 1, 10))
    results = extract([empty], refs, reader=_reader_for(refs))
    assert math.isnan(results[0].entries[0].value)


def test_buffered_point_aggregates_cells():
    refs = [_ref(date(2020, 1, 6))]
    agg = AggregationSpec(buffer=0.8, functions=("mean", "min", "max"))

    results = extract([_feature(x=2.0, y=2.0)], refs, agg=agg, reader=_reader_for(refs))

    value = results[0].entries[0].value
    assert list(value) == ["mean", "min", "max"]
    assert value["mean"] == pytest.approx(7.5)
    assert value["min"] == 5.0
    assert value["max"] == 10.0


def test_aggregation_skips_missing_cells():
    refs = [_ref(date(2020, 1, 6))]
    grid = GRID.copy()
    grid[1, 1] = np.nan
    agg = AggregationSpec(functions=("mean", "count"))
    feat = VectorFeature(geometry=box(1, 1, 3, 3), event_date=date(2020, 1, 10))

    results = extract([feat], refs, agg=agg, reader=_reader_for(refs, values=grid))

    value = results[0].entries[0].value
    assert value["mean"] == pytest.approx(25 / 3)
    assert value["count"] == 3.0


def test_polygon_without_functions_returns_raw_values():
    refs = [_ref(date(2020, 1, 6))]
    feat = VectorFeature(geometry=box(1, 1, 3, 3), event_date=date(2020, 1, 10))

    results = extract([feat], refs, reader=_reader_for(refs))

    assert results[0].entries[0].value.tolist() == [5.0, 6.0, 9.0, 10.0]


def test_unknown_aggregation_fails_early():
    with pytest.raises(ValueError):
        AggregationSpec(functions=("average",))
    with pytest.raises(ValueError):
        AggregationSpec(buffer=-1)


def test_unreadable_raster_fails_by_default():
    refs = [_ref(date(2020, 1, 6)), _ref(date(2020, 1, 8))]
    reader = _reader_for(refs, unreadable=[refs[1].path])
    with pytest.raises(UnreadableImage):
        extract([_feature()], refs, reader=reader)


def test_unreadable_raster_can_be_skipped_and_reported():
    refs = [_ref(date(2020, 1, 6)), _ref(date(2020, 1, 8))]
    reader = _reader_for(refs, unreadable=[refs[1].path])

    results = extract([_feature()], refs, reader=reader, skip_unreadable=True)

    assert results[0].dates == [date(2020, 1, 6)]
    assert results.skipped == [refs[1]]


def test_workers_give_same_result_as_sequential():
    start = date(2020, 1, 1)
    refs = [_ref(start + timedelta(days=i)) for i in range(12)]
    grids = {r.path: GRID + i for i, r in enumerate(refs)}
    feats = [_feature(x=0.5 + (i % 4), d=start + timedelta(days=i)) for i in range(8)]

    seq = extract(feats, refs, ExtractionWindow(3, 2), reader=MemoryReader(grids))
    par = extract(feats, refs, ExtractionWindow(3, 2), reader=MemoryReader(grids), workers=4)

    assert [[(e.date, e.value) for e in r.entries] for r in seq] == [
        [(e.date, e.value) for e in r.entries] for r in par
    ]


def test_progress_is_called_per_acquisition():
    refs = [_ref(date(2020, 1, d)) for d in (6, 7, 8)]
    seen = []

    extract([_feature()], refs, reader=_reader_for(refs), progress=lambda i, n, ref: seen.append((i, n, ref.date)))

    assert seen == [(1, 3, date(2020, 1, 6)), (2, 3, date(2020, 1, 7)), (3, 3, date(2020, 1, 8))]


# -----------------------------------------------------------------------------
# results_to_frame()
# -----------------------------------------------------------------------------

def test_results_to_frame_long_format():
    refs = [_ref(date(2020, 1, 6)), _ref(date(2020, 1, 9))]
    feats = [_feature(id="a"), _feature(d=date(2022, 1, 1), id="b")]

    results = extract(feats, refs, reader=_reader_for(refs))
    df = results_to_frame(results)

    assert len(df) == 3
    assert df["id"].tolist() == ["a", "a", "b"]
    assert df["days_from_event"].tolist()[:2] == [-4, -1]
    assert df["sm"].tolist()[:2] == [0.0, 0.0]
    assert df["sm_date"].isna().tolist() == [False, False, True]


def test_results_to_frame_function_columns():
    refs = [_ref(date(2020, 1, 6))]
    agg = AggregationSpec(buffer=0.8, functions=("mean", "max"))
    results = extract([_feature(x=2.0, y=2.0, id="a")], refs, agg=agg, reader=_reader_for(refs))

    df = results_to_frame(results)

    assert {"sm_mean", "sm_max"} <= set(df.columns)
    assert df.loc[0, "sm_max"] == 10.0


def test_results_to_frame_keeps_attribute_columns_intact():
    refs = [_ref(date(2020, 1, 6))]
    feats = [_feature(fid="inventory-7", event_date="10/01/2020")]

    df = results_to_frame(extract(feats, refs, reader=_reader_for(refs)))

    assert df.loc[0, "fid"] == "inventory-7"
    assert df.loc[0, "event_date"] == "10/01/2020"
    assert df.loc[0, "feature_date"] == date(2020, 1, 10)


def test_results_to_frame_rejects_colliding_attribute():
    refs = [_ref(date(2020, 1, 6))]
    agg = AggregationSpec(functions=("mean",))
    feats = [_feature(sm_mean=0.3)]

    results = extract(feats, refs, agg=agg, reader=_reader_for(refs))

    with pytest.raises(ValueError, match="sm_mean"):
        results_to_frame(results)
