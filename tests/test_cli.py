from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from builders import build_deb, build_pe
from upload_analyzer.cli import app

runner = CliRunner()


def _write(tmp_path: Path, name: str, data: bytes) -> Path:
    p = tmp_path / name
    p.write_bytes(data)
    return p


def test_cli_info(tmp_path: Path):
    p = _write(tmp_path, "tool.exe", build_pe(machine=0x8664, pe32_plus=True))
    result = runner.invoke(app, ["info", str(p)])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"Format": "PE", "Size": p.stat().st_size, "FormatVersion": "PE32+"}


def test_cli_analyze_writes_out_file(tmp_path: Path):
    p = _write(tmp_path, "foo.deb", build_deb("Package: foo\nVersion: 1.0\nArchitecture: amd64\n"))
    out = tmp_path / "reports" / "foo.json"
    result = runner.invoke(app, ["analyze", str(p), "--out", str(out)])
    assert result.exit_code == 0, result.output
    printed = json.loads(result.stdout)
    assert printed["Package"] == "foo"
    assert json.loads(out.read_text(encoding="utf-8")) == printed


def test_cli_analyze_error_exit_code(tmp_path: Path):
    p = _write(tmp_path, "notes.txt", b"plain text, nothing to see\n")
    result = runner.invoke(app, ["analyze", str(p)])
    assert result.exit_code == 1
    assert json.loads(result.stdout)["error"] == "Unsupported file format"


def test_cli_table_output(tmp_path: Path):
    p = _write(tmp_path, "foo.deb", build_deb("Package: foo\n"))
    result = runner.invoke(app, ["analyze", str(p), "--table"])
    assert result.exit_code == 0, result.output
    assert "Upload Analyzer - DEB" in result.stdout
    assert "foo" in result.stdout


def test_cli_rejects_oversized_input(tmp_path: Path):
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("limits:\n  max_input_bytes: 16\n", encoding="utf-8")
    p = _write(tmp_path, "big.bin", b"\x00" * 64)
    result = runner.invoke(app, ["analyze", str(p), "--config", str(cfg)])
    assert result.exit_code == 2


def test_cli_missing_file(tmp_path: Path):
    result = runner.invoke(app, ["info", str(tmp_path / "nope.bin")])
    assert result.exit_code != 0


def test_cli_config_snapshot():
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["limits"]["max_list_items"] == 500


def test_cli_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "upload-analyzer version:" in result.stdout
