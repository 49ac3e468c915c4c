#!/usr/bin/env python3
"""slidesoil.config

Shared configuration utilities for the slidesoil CLI and library.

Design notes:
- YAML loading is strict: an explicitly requested file must exist and be a mapping.
- The default config path is optional; built-in defaults apply when it is absent.
- CLI flags override YAML values, YAML values override built-in defaults.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
# Centralized so the CLI and the library agree on them.

DEFAULT_CONFIG_YAML = Path("config/soilmoisture.yaml")
DEFAULT_ARCHIVE_GLOB = "*.tif"
DEFAULT_DATE_PATTERN = r"(\d{8})"
DEFAULT_DATE_FORMAT = "%Y%m%d"
DEFAULT_DATE_FIELD = "date"
DEFAULT_DAYS_BEFORE = 5
DEFAULT_DAYS_AFTER = 0


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    """Resolved settings for extraction and image counting."""

    archive: Optional[Path] = None
    glob: str = DEFAULT_ARCHIVE_GLOB
    date_pattern: str = DEFAULT_DATE_PATTERN
    date_format: str = DEFAULT_DATE_FORMAT
    date_field: str = DEFAULT_DATE_FIELD
    days_before: int = DEFAULT_DAYS_BEFORE
    days_after: int = DEFAULT_DAYS_AFTER
    point_buffer: Optional[float] = None
    aggre_fun: Tuple[str, ...] = ()
    all_touched: bool = False
    workers: Optional[int] = None
    skip_unreadable: bool = False

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-None override applied."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean)


def coerce_non_negative_int(x: Any, name: str) -> int:
    """Coerce a window size to a non-negative int, raising ValueError otherwise."""
    if isinstance(x, bool):
        raise ValueError(f"{name} must be a non-negative integer, got {x!r}")
    try:
        value = int(x)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} must be a non-negative integer, got {x!r}") from e
    if value != x and not isinstance(x, str):
        raise ValueError(f"{name} must be a whole number of days, got {x!r}")
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


def coerce_functions(x: Any) -> Tuple[str, ...]:
    """Accept a single name, a list of names, or nothing."""
    if x is None:
        return ()
    if isinstance(x, str):
        return (x,) if x.strip() else ()
    if isinstance(x, (list, tuple)):
        return tuple(str(v) for v in x)
    raise ValueError(f"aggre_fun must be a name or a list of names, got {x!r}")


def settings_from_mapping(data: Dict[str, Any]) -> Settings:
    """Build Settings from a parsed YAML mapping.

    Expects structure like:
        archive:
          root: data/raw/soilmoisture
          glob: "*.tif"
          date_pattern: "(\\d{8})"
          date_format: "%Y%m%d"
        features:
          date_field: date
        window:
          days_before: 5
          days_after: 0
        extraction:
          point_buffer: 500
          aggre_fun: [mean, max]
          all_touched: false
        run:
          workers: 4
          skip_unreadable: false

    Unknown keys are ignored. Every section is optional.
    """
    archive = _section(data, "archive")
    features = _section(data, "features")
    window = _section(data, "window")
    extraction = _section(data, "extraction")
    run = _section(data, "run")

    root = archive.get("root")
    buffer = extraction.get("point_buffer")
    workers = run.get("workers")

    return Settings(
        archive=Path(root) if root else None,
        glob=str(archive.get("glob", DEFAULT_ARCHIVE_GLOB)),
        date_pattern=str(archive.get("date_pattern", DEFAULT_DATE_PATTERN)),
        date_format=str(archive.get("date_format", DEFAULT_DATE_FORMAT)),
        date_field=str(features.get("date_field", DEFAULT_DATE_FIELD)),
        days_before=coerce_non_negative_int(window.get("days_before", DEFAULT_DAYS_BEFORE), "days_before"),
        days_after=coerce_non_negative_int(window.get("days_after", DEFAULT_DAYS_AFTER), "days_after"),
        point_buffer=float(buffer) if buffer is not None else None,
        aggre_fun=coerce_functions(extraction.get("aggre_fun")),
        all_touched=bool(extraction.get("all_touched", False)),
        workers=int(workers) if workers is not None else None,
        skip_unreadable=bool(run.get("skip_unreadable", False)),
    )


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from YAML.

    With no path, the default config is used if it exists, else built-in defaults.
    An explicitly given path must exist.
    """
    if path is None:
        if not DEFAULT_CONFIG_YAML.exists():
            return Settings()
        path = DEFAULT_CONFIG_YAML
    return settings_from_mapping(load_yaml(path))


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{key}' must be a mapping")
    return value


def format_date_range(dates: List[Any]) -> str:
    """Format the first/last of a sorted date list as a readable string."""
    if not dates:
        return "[]"
    return f"[{dates[0]} .. {dates[-1]}]"
