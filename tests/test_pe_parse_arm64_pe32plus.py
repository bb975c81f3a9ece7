from __future__ import annotations

import struct

from upload_analyzer.pe import parse_pe_bytes, pe_metadata
from upload_analyzer.sniff import sniff


def _build_arm64_pe32plus() -> bytes:
    # DOS header with e_lfanew -> 0x80
    dos = bytearray(b"MZ" + b"\x00" * 58)
    dos += struct.pack("<I", 0x80)
    if len(dos) < 0x80:
        dos += b"\x00" * (0x80 - len(dos))

    nt = bytearray(b"PE\x00\x00")

    # COFF: machine=ARM64 (0xAA64), 1 section, DLL image
    coff = struct.pack("<HHIIIHH", 0xAA64, 1, 0x12345678, 0, 0, 0xF0, 0x2022)

    opt = bytearray(b"\x00" * 0xF0)
    struct.pack_into("<H", opt, 0x00, 0x20B)  # PE32+
    struct.pack_into("<I", opt, 0x10, 0x1000)  # EntryPoint
    struct.pack_into("<Q", opt, 0x18, 0x180000000)  # ImageBase
    struct.pack_into("<I", opt, 0x38, 0x2000)  # SizeOfImage
    struct.pack_into("<H", opt, 0x44, 2)  # Subsystem

    sh = bytearray(40)
    sh[0:8] = b".text\x00\x00\x00"
    struct.pack_into("<I", sh, 8, 0x100)
    struct.pack_into("<I", sh, 12, 0x1000)
    struct.pack_into("<I", sh, 16, 0x200)
    struct.pack_into("<I", sh, 20, 0x200)
    struct.pack_into("<I", sh, 36, 0x60000020)

    blob = bytes(dos) + bytes(nt) + coff + bytes(opt) + bytes(sh)
    if len(blob) < 0x200:
        blob += b"\x00" * (0x200 - len(blob))
    blob += b"\x90" * 0x200
    return blob


def test_arm64_pe32plus_detected():
    data = _build_arm64_pe32plus()
    res = parse_pe_bytes(data)
    assert res.present is True
    assert res.pe is not None
    assert res.pe["machine"] == 0xAA64
    assert res.pe["is_pe32_plus"] is True
    assert res.pe["is_dll"] is True

    raw = pe_metadata(res.pe)
    assert raw["architecture"] == "ARM64"
    assert raw["image_base"] == "0x0000000180000000"
    assert raw["is_dll"] is True

    assert sniff(data).FormatVersion == "PE32+"
