#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path

import pytest

from slidesoil import config


def test_defaults_without_any_config():
    s = config.settings_from_mapping({})
    assert s.days_before == 5
    assert s.days_after == 0
    assert s.point_buffer is None
    assert s.aggre_fun == ()
    assert s.date_field == "date"
    assert s.archive is None


def test_settings_from_yaml(tmp_path):
    path = tmp_path / "sm.yaml"
    path.write_text(
        "archive:\n"
        "  root: data/sm\n"
        "  glob: '*/*.tif'\n"
        "window:\n"
        "  days_before: 10\n"
        "  days_after: 2\n"
        "extraction:\n"
        "  point_buffer: 250\n"
        "  aggre_fun: mean\n"
        "run:\n"
        "  workers: 4\n"
    )
    s = config.load_settings(path)
    assert s.archive == Path("data/sm")
    assert s.glob == "*/*.tif"
    assert (s.days_before, s.days_after) == (10, 2)
    assert s.point_buffer == 250.0
    assert s.aggre_fun == ("mean",)
    assert s.workers == 4


def test_cli_overrides_skip_none():
    s = config.Settings(days_before=10).with_overrides(days_before=None, days_after=3)
    assert (s.days_before, s.days_after) == (10, 3)


def test_bad_window_values_fail():
    with pytest.raises(ValueError):
        config.settings_from_mapping({"window": {"days_before": -2}})
    with pytest.raises(ValueError):
        config.settings_from_mapping({"window": {"days_after": "soon"}})


def test_bad_section_type_fails():
    with pytest.raises(ValueError):
        config.settings_from_mapping({"window": [1, 2]})


def test_explicit_missing_config_fails_fast(tmp_path):
    with pytest.raises(SystemExit):
        config.load_settings(tmp_path / "missing.yaml")


def test_non_mapping_yaml_fails_fast(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(SystemExit):
        config.load_yaml(path)
