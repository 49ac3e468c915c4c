#!/usr/bin/env python3
"""windowed.py

Time-windowed extraction of soil-moisture values at landslide features.

For every feature with event date D and a window (before=b, after=a), all
acquisitions dated inside [D - b, D + a] (both ends inclusive) are selected,
and the raster value(s) at the feature geometry are extracted for each one.

Evaluation is acquisition-major: the union of selected acquisitions is read
once each, in ascending date order, and every feature that selected it is
sampled from the same in-memory grid. Results are then regrouped per feature,
so the output always has one ExtractionResult per input feature, in input order,
with entries in ascending date order.

Failure modes:
- missing event date column / value -> MissingRequiredAttribute, before any read
- unreadable raster -> UnreadableImage (or skipped and reported, if asked)
- no acquisitions in a window -> empty entry list, not an error
- no valid cells at a geometry -> NaN value, not an error
"""

from __future__ import annotations

import bisect
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from slidesoil.config import DEFAULT_DATE_FIELD, DEFAULT_DAYS_AFTER, DEFAULT_DAYS_BEFORE, coerce_non_negative_int
from slidesoil.errors import UnreadableImage
from slidesoil.geo import AggFunc, ExtractedValue, extract_at, resolve_functions
from slidesoil.inventory.landslides import VectorFeature, check_event_dates, features_from_frame
from slidesoil.soilmoisture.archive import AcquisitionRef, Grid, read_acquisition, read_grid


Reader = Callable[[Path], Grid]
ProgressCallback = Callable[[int, int, AcquisitionRef], None]


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionWindow:
    """Inclusive day window around an event date."""

    days_before: int = DEFAULT_DAYS_BEFORE
    days_after: int = DEFAULT_DAYS_AFTER

    def __post_init__(self) -> None:
        object.__setattr__(self, "days_before", coerce_non_negative_int(self.days_before, "days_before"))
        object.__setattr__(self, "days_after", coerce_non_negative_int(self.days_after, "days_after"))

    def bounds(self, event_date: date) -> Tuple[date, date]:
        return (
            event_date - timedelta(days=self.days_before),
            event_date + timedelta(days=self.days_after),
        )


@dataclass(frozen=True)
class AggregationSpec:
    """Buffer distance and aggregation functions for area extraction.

    buffer: None or 0 means plain point sampling. Units are those of the
        raster CRS (features must already be in it).
    functions: names (mean, min, max, median, sum, std, count) or callables;
        empty means return the raw cell values.
    all_touched: select every touched cell instead of cell centres.
    """

    buffer: Optional[float] = None
    functions: Tuple[AggFunc, ...] = ()
    all_touched: bool = False

    def __post_init__(self) -> None:
        if self.buffer is not None and float(self.buffer) < 0:
            raise ValueError(f"buffer must be >= 0, got {self.buffer}")
        object.__setattr__(self, "functions", tuple(self.functions))
        # Unknown names fail here, before any raster is read
        resolve_functions(self.functions)


@dataclass(frozen=True)
class ExtractionEntry:
    """One extracted value (or set of values) for one acquisition."""

    date: date
    path: Path
    value: ExtractedValue


@dataclass
class ExtractionResult:
    """All entries for one feature, in ascending date order."""

    feature: VectorFeature
    entries: List[ExtractionEntry] = field(default_factory=list)

    @property
    def dates(self) -> List[date]:
        return [e.date for e in self.entries]


class ExtractionResults(list):
    """List of ExtractionResult, one per input feature.

    `skipped` holds the acquisitions left out because they couldn't be read
    (only ever non-empty with skip_unreadable=True).
    """

    def __init__(self, results: Iterable[ExtractionResult] = (), skipped: Iterable[AcquisitionRef] = ()):
        super().__init__(results)
        self.skipped: List[AcquisitionRef] = list(skipped)


# -----------------------------------------------------------------------------
# Date matching
# -----------------------------------------------------------------------------

class AcquisitionIndex:
    """Acquisitions sorted by date, with inclusive range lookup."""

    def __init__(self, acquisitions: Iterable[AcquisitionRef]):
        self._refs: List[AcquisitionRef] = sorted(set(acquisitions), key=lambda r: (r.date, str(r.path)))
        self._dates: List[date] = [r.date for r in self._refs]

    def __len__(self) -> int:
        return len(self._refs)

    def __iter__(self):
        return iter(self._refs)

    def select(self, start: date, end: date) -> List[AcquisitionRef]:
        """All acquisitions with start <= date <= end, ascending by date."""
        if start > end:
            return []
        lo = bisect.bisect_left(self._dates, start)
        hi = bisect.bisect_right(self._dates, end)
        return self._refs[lo:hi]

    def select_for(self, event_date: date, window: ExtractionWindow) -> List[AcquisitionRef]:
        return self.select(*window.bounds(event_date))


# -----------------------------------------------------------------------------
# Core function
# -----------------------------------------------------------------------------

def _as_features(features: Union[Sequence[VectorFeature], pd.DataFrame], date_field: str) -> List[VectorFeature]:
    if isinstance(features, pd.DataFrame):
        return features_from_frame(features, date_field=date_field)
    feats = list(features)
    check_event_dates(feats, date_field=date_field)
    return feats


def extract(
    features: Union[Sequence[VectorFeature], pd.DataFrame],
    acquisitions: Iterable[AcquisitionRef],
    window: Optional[ExtractionWindow] = None,
    agg: Optional[AggregationSpec] = None,
    *,
    date_field: str = DEFAULT_DATE_FIELD,
    reader: Reader = read_grid,
    workers: Optional[int] = None,
    progress: Optional[ProgressCallback] = None,
    skip_unreadable: bool = False,
    verbose: bool = False,
) -> ExtractionResults:
    """Extract soil-moisture values around each feature's event date.

    Args:
        features: VectorFeatures, or a (Geo)DataFrame with a `date_field` column.
        acquisitions: AcquisitionRefs (path + date) to match against.
        window: day window around the event date (default 5 before, 0 after).
        agg: buffer/aggregation settings (default: point sampling).
        date_field: name of the event-date attribute, used for error messages
            and to convert DataFrames.
        reader: raster reader, path -> Grid.
        workers: if > 1, read/extract acquisitions in a thread pool. Results are
            identical to the sequential run.
        progress: called as progress(done, total, ref) after each acquisition.
        skip_unreadable: leave unreadable rasters out (listed in
            `results.skipped`) instead of failing.
        verbose: print a short summary.

    Returns:
        ExtractionResults: one ExtractionResult per feature, same order as input.

    Raises:
        MissingRequiredAttribute: a feature (or the frame) has no event date.
        UnreadableImage: a selected raster can't be read (unless skip_unreadable).
    """
    window = window or ExtractionWindow()
    agg = agg or AggregationSpec()

    # --- Preconditions (no raster IO yet) ---
    feats = _as_features(features, date_field)
    index = AcquisitionIndex(acquisitions)

    # --- Date matching ---
    selections: List[List[AcquisitionRef]] = [index.select_for(f.event_date, window) for f in feats]

    # Which features want which acquisition
    wanted: Dict[AcquisitionRef, List[int]] = {}
    for i, refs in enumerate(selections):
        for ref in refs:
            wanted.setdefault(ref, []).append(i)
    to_read = sorted(wanted, key=lambda r: (r.date, str(r.path)))

    if verbose:
        n_empty = sum(1 for s in selections if not s)
        print(f"[EXTRACT] {len(feats)} features, {len(index)} acquisitions, window -{window.days_before}/+{window.days_after} days")
        print(f"[EXTRACT] {len(to_read)} acquisitions fall in at least one window; {n_empty} features have none")

    # --- Read + extract, acquisition-major ---
    def _work(ref: AcquisitionRef) -> Optional[Dict[int, ExtractedValue]]:
        try:
            acq = read_acquisition(ref, reader)
        except UnreadableImage:
            if skip_unreadable:
                return None
            raise
        return {
            i: extract_at(
                acq.grid,
                feats[i].geometry,
                buffer=agg.buffer,
                functions=agg.functions,
                all_touched=agg.all_touched,
            )
            for i in wanted[ref]
        }

    extracted: Dict[AcquisitionRef, Optional[Dict[int, ExtractedValue]]] = {}
    total = len(to_read)
    if workers and workers > 1 and total > 1:
        with ThreadPoolExecutor(max_workers=workers) as ex:
            # map() yields in submission order, so progress stays ordered too
            for done, (ref, values) in enumerate(zip(to_read, ex.map(_work, to_read)), start=1):
                extracted[ref] = values
                if progress is not None:
                    progress(done, total, ref)
    else:
        for done, ref in enumerate(to_read, start=1):
            extracted[ref] = _work(ref)
            if progress is not None:
                progress(done, total, ref)

    skipped = [ref for ref in to_read if extracted[ref] is None]
    if skipped and verbose:
        for ref in skipped:
            print(f"[SKIP] unreadable: {ref.path}")

    # --- Regroup per feature ---
    results = ExtractionResults(skipped=skipped)
    for i, feat in enumerate(feats):
        entries = []
        for ref in selections[i]:
            values = extracted[ref]
            if values is None:
                continue
            entries.append(ExtractionEntry(date=ref.date, path=ref.path, value=values[i]))
        results.append(ExtractionResult(feature=feat, entries=entries))

    if verbose:
        n_entries = sum(len(r.entries) for r in results)
        print(f"[EXTRACT] Done: {n_entries} entries for {len(results)} features")

    return results


# -----------------------------------------------------------------------------
# Tabular output
# -----------------------------------------------------------------------------

def _check_attribute_names(feat: VectorFeature, entries: Sequence[ExtractionEntry], value_column: str) -> None:
    generated = {"feature_fid", "feature_date", "sm_date", "days_from_event", "sm_path", "cell", value_column}
    for entry in entries:
        if isinstance(entry.value, dict):
            generated.update(f"{value_column}_{name}" for name in entry.value)
    clash = sorted(generated.intersection(feat.attributes))
    if clash:
        raise ValueError(f"Feature attribute(s) {clash} collide with output columns; rename them first")


def results_to_frame(results: Sequence[ExtractionResult], value_column: str = "sm") -> pd.DataFrame:
    """Flatten results into a long table, one row per feature and acquisition.

    Columns: feature attributes, `feature_fid`, `feature_date`, `sm_date`,
    `days_from_event`, `sm_path`, then either `value_column` (point values), one
    `{value_column}_{fn}` column per aggregation function, or, for raw area
    values, one row per cell with `cell` and `value_column`.
    Features without entries are kept as a single row with empty values.

    Raises ValueError if a feature attribute would be overwritten by one of the
    generated columns.
    """
    records: List[Dict[str, Any]] = []
    for res in results:
        feat = res.feature
        _check_attribute_names(feat, res.entries, value_column)
        base: Dict[str, Any] = dict(feat.attributes)
        base["feature_fid"] = feat.fid
        base["feature_date"] = feat.event_date

        if not res.entries:
            records.append({**base, "sm_date": None, "days_from_event": None, "sm_path": None})
            continue

        for entry in res.entries:
            row = {
                **base,
                "sm_date": entry.date,
                "days_from_event": (entry.date - feat.event_date).days,
                "sm_path": str(entry.path),
            }
            value = entry.value
            if isinstance(value, dict):
                for name, v in value.items():
                    row[f"{value_column}_{name}"] = v
                records.append(row)
            elif isinstance(value, np.ndarray):
                if value.size == 0:
                    records.append({**row, "cell": None, value_column: np.nan})
                for cell, v in enumerate(value.tolist()):
                    records.append({**row, "cell": cell, value_column: v})
            else:
                records.append({**row, value_column: value})

    return pd.DataFrame.from_records(records)
