from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Union

from upload_analyzer.deb import analyze_deb
from upload_analyzer.dmg import analyze_dmg
from upload_analyzer.errors import AnalysisFailure, ErrorKind
from upload_analyzer.model import AnalysisError, DetectedFormat, FileInfo
from upload_analyzer.msi import analyze_msi
from upload_analyzer.normalize import normalize
from upload_analyzer.pe import analyze_pe
from upload_analyzer.rpm import analyze_rpm
from upload_analyzer.sniff import sniff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalyzeLimits:
    # PE parsing bounds
    pe_max_sections: int = 96
    pe_max_import_dlls: int = 256
    pe_max_funcs_per_dll: int = 2048
    pe_max_exports: int = 4096
    pe_max_resource_nodes: int = 2048

    # MSI table bounds
    msi_max_rows: int = 10_000
    max_list_items: int = 500

    # DMG bounds
    dmg_tail_scan_bytes: int = 64 * 1024
    dmg_max_decompressed_bytes: int = 64 * 1024 * 1024
    dmg_max_chunks: int = 100_000

    # DEB bounds
    deb_max_members: int = 1024
    deb_max_control_bytes: int = 1024 * 1024

    # RPM bounds
    rpm_max_index_entries: int = 10_000


def limits_from_config(cfg) -> AnalyzeLimits:
    lim = getattr(cfg, "limits", None)
    defaults = AnalyzeLimits()

    def g(name: str):
        return getattr(lim, name, getattr(defaults, name)) if lim is not None else getattr(defaults, name)

    return AnalyzeLimits(**{name: g(name) for name in AnalyzeLimits.__dataclass_fields__})


def _decode_pe(data: bytes, limits: AnalyzeLimits) -> Dict[str, Any]:
    return analyze_pe(
        data,
        max_sections=limits.pe_max_sections,
        max_dlls=limits.pe_max_import_dlls,
        max_funcs_per_dll=limits.pe_max_funcs_per_dll,
        max_exports=limits.pe_max_exports,
        max_resource_nodes=limits.pe_max_resource_nodes,
    )


def _decode_msi(data: bytes, limits: AnalyzeLimits) -> Dict[str, Any]:
    return analyze_msi(data, max_rows=limits.msi_max_rows, max_list_items=limits.max_list_items)


def _decode_dmg(data: bytes, limits: AnalyzeLimits) -> Dict[str, Any]:
    return analyze_dmg(
        data,
        tail_scan_bytes=limits.dmg_tail_scan_bytes,
        max_decompressed_bytes=limits.dmg_max_decompressed_bytes,
        max_chunks=limits.dmg_max_chunks,
    )


def _decode_deb(data: bytes, limits: AnalyzeLimits) -> Dict[str, Any]:
    return analyze_deb(data, max_members=limits.deb_max_members, max_control_bytes=limits.deb_max_control_bytes)


def _decode_rpm(data: bytes, limits: AnalyzeLimits) -> Dict[str, Any]:
    return analyze_rpm(data, max_index_entries=limits.rpm_max_index_entries)


# One decoder per format the sniffer can confirm; nothing else is dispatched.
DECODERS: Dict[DetectedFormat, Callable[[bytes, AnalyzeLimits], Dict[str, Any]]] = {
    DetectedFormat.PE: _decode_pe,
    DetectedFormat.MSI: _decode_msi,
    DetectedFormat.DMG: _decode_dmg,
    DetectedFormat.DEB: _decode_deb,
    DetectedFormat.RPM: _decode_rpm,
}


def inspect(data: bytes, *, limits: AnalyzeLimits = AnalyzeLimits()) -> FileInfo:
    return sniff(bytes(data), tail_scan_bytes=limits.dmg_tail_scan_bytes)


def analyze(data: bytes, *, limits: AnalyzeLimits = AnalyzeLimits()) -> Union[Dict[str, Any], AnalysisError]:
    """
    Classify `data` and run the matching decoder.

    Returns the normalized analysis dict, or an AnalysisError. Never raises.
    """
    data = bytes(data)
    info = sniff(data, tail_scan_bytes=limits.dmg_tail_scan_bytes)

    if info.Format is DetectedFormat.INVALID:
        return AnalysisError(
            error="Invalid binary",
            details=f"No complete format signature in {info.Size} bytes.",
            kind=ErrorKind.DETECTION,
        )
    if info.Format is DetectedFormat.UNKNOWN:
        return AnalysisError(
            error="Unsupported file format",
            details="Only PE, MSI, DMG, DEB and RPM files are supported.",
            kind=ErrorKind.DETECTION,
        )

    fmt = info.Format
    try:
        raw = DECODERS[fmt](data, limits)
    except AnalysisFailure as e:
        logger.debug("%s decoder stopped: %r", fmt.value, e)
        if e.format is None:
            e.format = fmt.value
        return AnalysisError.from_failure(e)
    except Exception as e:
        logger.warning("%s decoder crashed: %s: %s", fmt.value, type(e).__name__, e)
        return AnalysisError(
            error="Analysis failed",
            details=f"{type(e).__name__}: {e}",
            Format=fmt.value,
            kind=ErrorKind.EXTRACTION,
        )
    return normalize(fmt, raw)


def _to_text(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False)


def get_file_info(data: bytes) -> str:
    """{Format, Size, FormatVersion?} as JSON text."""
    return _to_text(inspect(data).to_dict())


def analyze_file(data: bytes) -> str:
    """Analysis or {error, details?, Format?, kind} as JSON text."""
    result = analyze(data)
    if isinstance(result, AnalysisError):
        return _to_text(result.to_dict())
    return _to_text(result)
