from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel


class Limits(BaseModel):
    # Input
    max_input_bytes: int = 512 * 1024 * 1024

    # PE
    pe_max_sections: int = 96
    pe_max_import_dlls: int = 256
    pe_max_funcs_per_dll: int = 2048
    pe_max_exports: int = 4096
    pe_max_resource_nodes: int = 2048

    # MSI
    msi_max_rows: int = 10_000
    max_list_items: int = 500

    # DMG
    dmg_tail_scan_bytes: int = 64 * 1024
    dmg_max_decompressed_bytes: int = 64 * 1024 * 1024
    dmg_max_chunks: int = 100_000

    # DEB
    deb_max_members: int = 1024
    deb_max_control_bytes: int = 1024 * 1024

    # RPM
    rpm_max_index_entries: int = 10_000


class OutputCfg(BaseModel):
    table: bool = False
    indent: Optional[int] = None


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    log_level: str = "WARNING"
    output: OutputCfg = OutputCfg()
    limits: Limits = Limits()


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return AppConfig.model_validate(data or {})


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()
