#!/usr/bin/env python3
"""landslides.py

Landslide inventories as typed, dated features.

A landslide inventory is any vector layer (GeoPackage, shapefile, GeoJSON) with
point or polygon geometries and an event-date column. Each row becomes a
VectorFeature:
- geometry: the shapely geometry, unchanged
- event_date: a datetime.date (required)
- attributes: every other column, passed through untouched
- fid: the row's index label in the source frame

Missing event dates are a hard error: an inventory without dates can't be
matched to acquisitions, and dropping undated rows would hide that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Hashable, List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry.base import BaseGeometry

from slidesoil.config import DEFAULT_DATE_FIELD
from slidesoil.errors import MissingRequiredAttribute


@dataclass(frozen=True)
class VectorFeature:
    """One dated geometry with passthrough attributes."""

    geometry: Optional[BaseGeometry]
    event_date: Optional[date]
    attributes: Dict[str, Any] = field(default_factory=dict)
    fid: Hashable = None


def parse_event_date(value: Any) -> Optional[date]:
    """Coerce a cell value to a date. Returns None for empty/unparsable values."""
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
    elif pd.isna(value):
        # NaT is a datetime subclass; catch it before the isinstance checks
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (bool, np.bool_)):
        return None
    if isinstance(value, (int, float, np.integer, np.floating)):
        return _date_from_number(value)
    try:
        ts = pd.to_datetime(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(ts):
        return None
    return ts.date()


def _date_from_number(value: Any) -> Optional[date]:
    """Read a numeric cell as yyyymmdd (e.g. 20200110). Anything else is unparsable."""
    if not np.isfinite(value) or float(value) != int(value):
        return None
    text = str(int(value))
    if len(text) != 8:
        return None
    try:
        return datetime.strptime(text, "%Y%m%d").date()
    except ValueError:
        return None


def check_event_dates(features: List[VectorFeature], date_field: str = DEFAULT_DATE_FIELD) -> None:
    """Raise MissingRequiredAttribute if any feature lacks an event date."""
    for i, feat in enumerate(features):
        if feat.event_date is None:
            label = feat.fid if feat.fid is not None else i
            raise MissingRequiredAttribute(date_field, f"feature {label!r} has no event date")


def features_from_frame(frame: pd.DataFrame, date_field: str = DEFAULT_DATE_FIELD) -> List[VectorFeature]:
    """Convert a (Geo)DataFrame into VectorFeatures, keeping row order.

    Raises MissingRequiredAttribute if the date column is absent, or if any row's
    date is empty or can't be parsed.
    """
    if date_field not in frame.columns:
        raise MissingRequiredAttribute(
            date_field, f"available columns: {[str(c) for c in frame.columns]}"
        )

    geom_col = frame.geometry.name if isinstance(frame, gpd.GeoDataFrame) else "geometry"
    if geom_col not in frame.columns:
        raise ValueError(f"Feature collection has no geometry column ({geom_col!r})")

    passthrough = [c for c in frame.columns if c != geom_col]

    features: List[VectorFeature] = []
    for idx, row in frame.iterrows():
        raw = row[date_field]
        geom = row[geom_col]
        event_date = parse_event_date(raw)
        if event_date is None:
            raise MissingRequiredAttribute(
                date_field, f"row {idx!r} has an empty or unparsable date ({raw!r})"
            )
        features.append(
            VectorFeature(
                geometry=geom if isinstance(geom, BaseGeometry) else None,
                event_date=event_date,
                attributes={str(c): row[c] for c in passthrough},
                fid=idx,
            )
        )
    return features


def read_features(
    path: Path,
    date_field: str = DEFAULT_DATE_FIELD,
    layer: Optional[str] = None,
) -> List[VectorFeature]:
    """Read a landslide inventory from disk into VectorFeatures."""
    if not path.exists():
        raise SystemExit(f"Feature file not found: {path}")

    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.empty:
        print(f"[FEATURES] warning: {path} contains zero features")
    return features_from_frame(gdf, date_field=date_field)
