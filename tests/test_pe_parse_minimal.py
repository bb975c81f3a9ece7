from __future__ import annotations

import struct

import pytest

from upload_analyzer.analyzer import analyze
from upload_analyzer.errors import StructuralFailure
from upload_analyzer.pe import analyze_pe, parse_pe_bytes


def _build_minimal_pe(machine: int = 0x14C, *, pe32_plus: bool = False) -> bytes:
    # Minimal DOS header (64 bytes) with e_lfanew at 0x3C pointing to 0x80
    dos = bytearray(b"MZ" + b"\x00" * 58)
    dos += struct.pack("<I", 0x80)  # e_lfanew
    if len(dos) < 0x80:
        dos += b"\x00" * (0x80 - len(dos))

    nt = bytearray(b"PE\x00\x00")

    size_opt = 0xF0 if pe32_plus else 0xE0
    coff = struct.pack("<HHIIIHH", machine, 1, 0x5F3759DF, 0, 0, size_opt, 0x0002)

    opt = bytearray(b"\x00" * size_opt)
    struct.pack_into("<H", opt, 0x00, 0x20B if pe32_plus else 0x10B)
    struct.pack_into("<I", opt, 0x10, 0x1000)  # AddressOfEntryPoint
    if pe32_plus:
        struct.pack_into("<Q", opt, 0x18, 0x140000000)
    else:
        struct.pack_into("<I", opt, 0x1C, 0x400000)
    struct.pack_into("<I", opt, 0x38, 0x2000)  # SizeOfImage
    struct.pack_into("<H", opt, 0x44, 3)  # Subsystem (console)
    struct.pack_into("<H", opt, 0x46, 0x8160)  # DllCharacteristics

    sh = bytearray(40)
    sh[0:8] = b".text\x00\x00\x00"
    struct.pack_into("<I", sh, 8, 0x100)
    struct.pack_into("<I", sh, 12, 0x1000)
    struct.pack_into("<I", sh, 16, 0x200)
    struct.pack_into("<I", sh, 20, 0x200)
    struct.pack_into("<I", sh, 36, 0x60000020)  # code + execute + read

    blob = bytes(dos) + bytes(nt) + coff + bytes(opt) + bytes(sh)
    if len(blob) < 0x200:
        blob += b"\x00" * (0x200 - len(blob))
    blob += b"\x90" * 0x200
    return blob


def test_parse_minimal_pe_success():
    res = parse_pe_bytes(_build_minimal_pe())

    assert res.present is True
    assert res.pe is not None
    assert res.pe["machine"] == 0x14C
    assert res.pe["is_pe32_plus"] is False
    assert res.pe["address_of_entry_point"] == 0x1000
    assert res.pe["image_base"] == 0x400000
    assert res.pe["sections"][0]["name"] == ".text"
    assert res.pe["is_dll"] is False


def test_parse_non_pe_bytes_not_present():
    res = parse_pe_bytes(b"hello world")
    assert res.present is False
    assert res.pe is None
    assert res.errors == []


def test_minimal_x64_pe_reports_architecture():
    out = analyze(_build_minimal_pe(0x8664, pe32_plus=True))
    assert out["Format"] == "PE"
    assert out["Architecture"] == "x64"
    assert out["EntryPoint"] == "0x00001000"
    assert out["ImageBase"] == "0x0000000140000000"
    assert out["Subsystem"] == "Windows Console"
    assert out["Timestamp"] == 0x5F3759DF
    assert out["IsDLL"] is False
    assert out["Sections"][0]["name"] == ".text"
    # nothing to report, so the keys are absent rather than empty
    assert "Imports" not in out
    assert "SignedBy" not in out


def test_header_flags_and_image_size_are_reported():
    out = analyze(_build_minimal_pe(0x8664, pe32_plus=True))
    assert out["SizeOfImage"] == 0x2000
    assert out["Characteristics"] == "0x0002"
    assert out["DllCharacteristics"] == "0x8160"


def test_unknown_machine_is_reported_as_hex():
    out = analyze(_build_minimal_pe(0x01F0))
    assert "Architecture" not in out
    assert out["Machine"] == "0x01F0"


def test_truncated_section_table_is_structural_failure():
    data = _build_minimal_pe()[:0x190]
    with pytest.raises(StructuralFailure) as ei:
        analyze_pe(data)
    assert ei.value.format == "PE"
    assert "Section table" in ei.value.details
