from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from upload_analyzer.analyzer import AnalyzeLimits, limits_from_config
from upload_analyzer.config import AppConfig, config_to_snapshot, load_config


def test_defaults_without_file():
    cfg = load_config(None)
    assert cfg.log_level == "WARNING"
    assert cfg.limits.max_input_bytes == 512 * 1024 * 1024
    assert limits_from_config(cfg) == AnalyzeLimits()


def test_yaml_overrides(tmp_path: Path):
    p = tmp_path / "cfg.yaml"
    p.write_text(
        "log_level: DEBUG\n"
        "output:\n"
        "  table: true\n"
        "limits:\n"
        "  msi_max_rows: 10\n"
        "  dmg_tail_scan_bytes: 4096\n",
        encoding="utf-8",
    )
    cfg = load_config(str(p))
    assert cfg.log_level == "DEBUG"
    assert cfg.output.table is True
    limits = limits_from_config(cfg)
    assert limits.msi_max_rows == 10
    assert limits.dmg_tail_scan_bytes == 4096
    assert limits.rpm_max_index_entries == AnalyzeLimits().rpm_max_index_entries


def test_empty_yaml_is_defaults(tmp_path: Path):
    p = tmp_path / "empty.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config(str(p)) == AppConfig()


def test_bad_limit_type_rejected(tmp_path: Path):
    p = tmp_path / "bad.yaml"
    p.write_text("limits:\n  msi_max_rows: many\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(str(p))


def test_snapshot_is_plain_dict():
    snap = config_to_snapshot(AppConfig())
    assert snap["limits"]["deb_max_members"] == 1024
    assert snap["output"] == {"table": False, "indent": None}
