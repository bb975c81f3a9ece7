from __future__ import annotations

import json
import logging
from importlib import metadata
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from upload_analyzer.analyzer import analyze, inspect, limits_from_config
from upload_analyzer.config import AppConfig, config_to_snapshot, load_config
from upload_analyzer.model import AnalysisError
from upload_analyzer.reporters.console import render_console

app = typer.Typer(add_completion=False)


def version_callback(value: bool):
    if value:
        try:
            v = metadata.version("upload-analyzer")
        except metadata.PackageNotFoundError:
            v = "0.1.0-dev"
        typer.echo(f"upload-analyzer version: {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
):
    """
    Static format identification and metadata extraction for installers and packages.
    """
    pass


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _read_input(path: str, cfg: AppConfig) -> bytes:
    p = Path(path).expanduser().resolve()
    if not p.exists() or not p.is_file():
        raise typer.BadParameter(f"File does not exist: {p}")
    size = p.stat().st_size
    if size > cfg.limits.max_input_bytes:
        typer.secho(
            f"Refusing {p.name}: {size} bytes exceeds max_input_bytes={cfg.limits.max_input_bytes}.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=2)
    return p.read_bytes()


def _write_json(path: Path, obj: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")


@app.command()
def info(
    path: str = typer.Argument(..., help="Input file."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Print {Format, Size, FormatVersion} for a file."""
    cfg = load_config(config)
    setup_logging(cfg.log_level)
    data = _read_input(path, cfg)
    typer.echo(json.dumps(inspect(data, limits=limits_from_config(cfg)).to_dict(), ensure_ascii=False))


@app.command("analyze")
def analyze_cmd(
    path: str = typer.Argument(..., help="Input file."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    table: bool = typer.Option(False, "--table", help="Render a table instead of JSON."),
    out: str = typer.Option(None, "--out", help="Also write the JSON result to this file."),
    log_level: str = typer.Option(None, "--log-level", help="Override the configured log level."),
):
    """Extract metadata from a PE, MSI, DMG, DEB or RPM file."""
    cfg = load_config(config)
    setup_logging(log_level or cfg.log_level)
    data = _read_input(path, cfg)

    result = analyze(data, limits=limits_from_config(cfg))
    is_error = isinstance(result, AnalysisError)
    obj = result.to_dict() if is_error else result

    if table or cfg.output.table:
        render_console(obj, Path(path).name)
    else:
        typer.echo(json.dumps(obj, indent=cfg.output.indent, ensure_ascii=False))

    if out:
        _write_json(Path(out).expanduser(), obj)

    if is_error:
        raise typer.Exit(code=1)


@app.command("config")
def show_config(
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """Print the effective configuration."""
    typer.echo(json.dumps(config_to_snapshot(load_config(config)), indent=2))


if __name__ == "__main__":
    app()
