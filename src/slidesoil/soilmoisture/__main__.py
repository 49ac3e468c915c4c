#!/usr/bin/env python3
"""slidesoil.soilmoisture

Soil-moisture CLI for slidesoil.

Subcommands:
- extract       → time-windowed values at landslide features
- count-images  → per-pixel count of images with a positive value
- verify        → list what the archive contains (dates, sample paths)

Design notes:
- Settings come from config YAML (--config); CLI flags override them
- Lazy-imports the heavy modules to keep CLI startup fast
- All subcommands support --dry-run for safe exploration
- Library errors become SystemExit with a readable message

Examples:
  # Soil moisture in the 5 days before each landslide, 500 m buffer mean/max
  python -m slidesoil.soilmoisture extract \
    --features data/raw/landslides/inventory.gpkg \
    --archive data/raw/soilmoisture \
    --days-before 5 --point-buffer 500 --aggre-fun mean --aggre-fun max \
    --out data/processed/landslide_sm.csv

  # How many images have a positive value, per pixel, for 2020
  python -m slidesoil.soilmoisture count-images \
    --archive data/raw/soilmoisture --start 2020-01-01 --end 2020-12-31 \
    --out data/processed/sm_image_count_2020.tif

  # Check the archive
  python -m slidesoil.soilmoisture verify --archive data/raw/soilmoisture
"""

from __future__ import annotations

import argparse
import json
from collections import Counter
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from slidesoil.config import (
    Settings,
    format_date_range,
    load_settings,
    DEFAULT_CONFIG_YAML,
)
from slidesoil.errors import SlideSoilError


# -----------------------------------------------------------------------------
# Argument helpers
# -----------------------------------------------------------------------------

def _iso_date(s: str) -> date:
    try:
        return datetime.strptime(s, "%Y-%m-%d").date()
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {s!r}") from e


def _add_archive_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--archive", type=Path, default=None, help="Soil-moisture raster directory (default from config)")
    p.add_argument("--glob", default=None, help="File pattern inside the archive (default from config, '*.tif')")
    p.add_argument("--date-pattern", default=None, help="Regex with one group capturing the date in file names")
    p.add_argument("--date-format", default=None, help="strptime format for the captured date (default %%Y%%m%%d)")


def _add_run_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--workers", type=int, default=None, help="Thread pool size (default: sequential)")
    p.add_argument(
        "--skip-unreadable",
        action="store_true",
        default=None,
        help="Skip unreadable rasters and report them instead of failing",
    )
    p.add_argument("--verbose", "-v", action="store_true", help="Print progress")


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for slidesoil.soilmoisture.

    Structure:
    - Global args: apply to all subcommands (--config, --dry-run)
    - Subcommands: one per operation (extract, count-images, verify)
    """
    ap = argparse.ArgumentParser(
        prog="slidesoil.soilmoisture",
        description="Soil-moisture extraction at landslide locations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to settings YAML (default: {DEFAULT_CONFIG_YAML} if present)",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without reading rasters or writing files",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    # --- extract ---
    ext = sub.add_parser(
        "extract",
        help="Extract soil moisture around each landslide's event date",
        description="""
For each landslide in the inventory, select every soil-moisture image dated
within [event_date - days_before, event_date + days_after] (inclusive), and
extract the value at the landslide geometry.

Points are sampled at their cell unless --point-buffer is given. Buffers and
polygons use cells whose centre is inside the geometry (--all-touched: every
touched cell). Without --aggre-fun, all cell values are written.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ext.add_argument("--features", required=True, type=Path, help="Landslide inventory (GeoPackage, shapefile, ...)")
    ext.add_argument("--layer", default=None, help="Layer name inside --features")
    ext.add_argument("--date-field", default=None, help="Event-date column (default from config, 'date')")
    _add_archive_args(ext)
    ext.add_argument("--days-before", type=int, default=None, help="Days before the event (default 5)")
    ext.add_argument("--days-after", type=int, default=None, help="Days after the event (default 0)")
    ext.add_argument("--point-buffer", type=float, default=None, help="Buffer distance for point features (raster CRS units)")
    ext.add_argument(
        "--aggre-fun",
        action="append",
        default=None,
        help="Aggregation function (mean, min, max, median, sum, std, count); repeatable",
    )
    ext.add_argument("--all-touched", action="store_true", default=None, help="Use every touched cell for areas")
    ext.add_argument("--out", type=Path, default=None, help="Output table (.csv or .parquet)")
    _add_run_args(ext)

    # --- count-images ---
    cnt = sub.add_parser(
        "count-images",
        help="Count, per pixel, images with a positive value",
        description="""
Fold every archive image (optionally restricted to a date range) into a
per-pixel count of images whose value is strictly positive. Nodata, zero and
negative values all count as 0. All images must share one grid shape.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_archive_args(cnt)
    cnt.add_argument("--start", type=_iso_date, default=None, help="First acquisition date (YYYY-MM-DD)")
    cnt.add_argument("--end", type=_iso_date, default=None, help="Last acquisition date (YYYY-MM-DD)")
    cnt.add_argument("--out", type=Path, required=True, help="Output GeoTIFF path")
    _add_run_args(cnt)

    # --- verify ---
    ver = sub.add_parser("verify", help="List acquisitions found in the archive")
    _add_archive_args(ver)
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


def _resolve_settings(args: argparse.Namespace) -> Settings:
    """Config YAML first, then CLI overrides."""
    base = load_settings(args.config)
    settings = base.with_overrides(
        archive=getattr(args, "archive", None),
        glob=getattr(args, "glob", None),
        date_pattern=getattr(args, "date_pattern", None),
        date_format=getattr(args, "date_format", None),
        date_field=getattr(args, "date_field", None),
        days_before=getattr(args, "days_before", None),
        days_after=getattr(args, "days_after", None),
        point_buffer=getattr(args, "point_buffer", None),
        aggre_fun=tuple(args.aggre_fun) if getattr(args, "aggre_fun", None) else None,
        all_touched=getattr(args, "all_touched", None),
        workers=getattr(args, "workers", None),
        skip_unreadable=getattr(args, "skip_unreadable", None),
    )
    if settings.archive is None:
        raise SystemExit("No archive given: pass --archive or set archive.root in the config YAML")
    return settings


def _list(settings: Settings, start: Optional[date] = None, end: Optional[date] = None):
    from slidesoil.soilmoisture.archive import list_acquisitions

    try:
        return list_acquisitions(
            settings.archive,
            glob=settings.glob,
            pattern=settings.date_pattern,
            date_format=settings.date_format,
            start=start,
            end=end,
        )
    except ValueError as e:
        raise SystemExit(f"Archive listing failed: {e}") from e


def _print_progress(label: str):
    def _cb(done: int, total: int, item) -> None:
        name = getattr(item, "path", item)
        print(f"[{label}] {done}/{total} {Path(name).name}")
    return _cb


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_extract(args: argparse.Namespace) -> int:
    """Handle the extract subcommand."""
    settings = _resolve_settings(args)

    if not args.features.exists():
        raise SystemExit(f"Feature file not found: {args.features}")

    refs = _list(settings)

    # Lazy import: avoid loading geopandas until needed
    from slidesoil.soilmoisture.windowed import AggregationSpec, ExtractionWindow

    try:
        window = ExtractionWindow(settings.days_before, settings.days_after)
        agg = AggregationSpec(
            buffer=settings.point_buffer,
            functions=settings.aggre_fun,
            all_touched=settings.all_touched,
        )
    except ValueError as e:
        raise SystemExit(f"Invalid extraction settings: {e}") from e

    if args.dry_run:
        print("[dry-run] Would extract soil moisture:")
        print(f"  Features: {args.features} (date field: {settings.date_field})")
        print(f"  Archive: {settings.archive} ({len(refs)} acquisitions {format_date_range([r.date for r in refs])})")
        print(f"  Window: -{settings.days_before} / +{settings.days_after} days")
        print(f"  Buffer: {settings.point_buffer}  Functions: {list(settings.aggre_fun) or 'raw values'}")
        print(f"  Output: {args.out}")
        return 0

    from slidesoil.inventory.landslides import read_features
    from slidesoil.soilmoisture.windowed import extract, results_to_frame

    try:
        features = read_features(args.features, date_field=settings.date_field, layer=args.layer)
        results = extract(
            features,
            refs,
            window,
            agg,
            date_field=settings.date_field,
            workers=settings.workers,
            progress=_print_progress("EXTRACT") if args.verbose else None,
            skip_unreadable=settings.skip_unreadable,
            verbose=args.verbose,
        )
        df = results_to_frame(results)
    except (SlideSoilError, ValueError) as e:
        raise SystemExit(f"Extraction failed: {e}") from e

    for ref in results.skipped:
        print(f"[SKIP] unreadable raster: {ref.path}")

    n_matched = sum(1 for r in results if r.entries)
    print(f"[EXTRACT] {n_matched}/{len(results)} features matched at least one acquisition")

    if args.out is None:
        print(df.to_string(index=False, max_rows=20))
        return 0

    args.out.parent.mkdir(parents=True, exist_ok=True)
    if args.out.suffix.lower() == ".parquet":
        df.to_parquet(args.out, index=False)
    else:
        df.to_csv(args.out, index=False)
    print(f"Wrote {len(df)} rows -> {args.out}")
    return 0


def _handle_count_images(args: argparse.Namespace) -> int:
    """Handle the count-images subcommand."""
    settings = _resolve_settings(args)
    refs = _list(settings, start=args.start, end=args.end)

    if args.dry_run:
        print("[dry-run] Would count positive images per pixel:")
        print(f"  Archive: {settings.archive} ({len(refs)} images {format_date_range([r.date for r in refs])})")
        print(f"  Output: {args.out}")
        return 0

    from slidesoil.soilmoisture.archive import write_grid
    from slidesoil.soilmoisture.occurrence import accumulate

    try:
        result = accumulate(
            [r.path for r in refs],
            progress=_print_progress("COUNT") if args.verbose else None,
            skip_unreadable=settings.skip_unreadable,
            workers=settings.workers,
        )
    except SlideSoilError as e:
        raise SystemExit(f"Image count failed: {e}") from e

    for path in result.skipped:
        print(f"[SKIP] unreadable raster: {path}")

    write_grid(result.grid, args.out)
    print(f"[COUNT] {result.n_images} images folded, max count {int(result.grid.values.max())}")
    print(f"Wrote counts -> {args.out}")
    return 0


def _handle_verify(args: argparse.Namespace) -> int:
    """Handle the verify subcommand."""
    settings = _resolve_settings(args)
    refs = _list(settings)
    dates = [r.date for r in refs]

    summary = {
        "archive": str(settings.archive),
        "ok": len(refs) > 0,
        "count": len(refs),
        "first": dates[0].isoformat() if dates else None,
        "last": dates[-1].isoformat() if dates else None,
        "duplicate_dates": sorted(d.isoformat() for d, n in Counter(dates).items() if n > 1),
        "sample": [str(r.path) for r in refs[:5]],
    }

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        status = "OK" if summary["ok"] else "EMPTY"
        print(f"[{status}] {summary['archive']} ({settings.glob})")
        print(f"  - count: {summary['count']}")
        print(f"  - dates: {format_date_range(dates)}")
        if summary["duplicate_dates"]:
            print(f"  - duplicate dates: {', '.join(summary['duplicate_dates'])}")
        for s in summary["sample"]:
            print(f"    - {s}")
    return 0 if summary["ok"] else 2


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for slidesoil.soilmoisture CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "extract": _handle_extract,
        "count-images": _handle_count_images,
        "verify": _handle_verify,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
