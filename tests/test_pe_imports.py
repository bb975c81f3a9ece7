from __future__ import annotations

import struct

from upload_analyzer.pe import parse_pe_bytes, pe_metadata


def _build_pe32_with_imports() -> bytes:
    # Layout plan:
    # - e_lfanew = 0x80
    # - one section .rdata at RVA 0x2000, raw_ptr 0x200, raw_size 0x400
    # - import descriptors at RVA 0x2000 (KERNEL32, then USER32)
    # - KERNEL32 thunks at RVA 0x2040, USER32 thunks at RVA 0x2050
    # - names at 0x2080.. and import-by-name records at 0x20C0..

    e_lfanew = 0x80
    dos = bytearray(b"MZ" + b"\x00" * 58)
    dos += struct.pack("<I", e_lfanew)
    if len(dos) < e_lfanew:
        dos += b"\x00" * (e_lfanew - len(dos))

    nt = bytearray(b"PE\x00\x00")
    coff = struct.pack("<HHIIIHH", 0x14C, 1, 0x11111111, 0, 0, 0xE0, 0x0002)

    opt = bytearray(b"\x00" * 0xE0)
    struct.pack_into("<H", opt, 0x00, 0x10B)  # PE32
    struct.pack_into("<I", opt, 0x10, 0x1000)  # EntryPoint
    struct.pack_into("<I", opt, 0x1C, 0x400000)  # ImageBase
    struct.pack_into("<I", opt, 0x38, 0x3000)  # SizeOfImage
    struct.pack_into("<H", opt, 0x44, 2)  # Subsystem
    struct.pack_into("<I", opt, 0x5C, 16)  # NumberOfRvaAndSizes
    struct.pack_into("<I", opt, 0x60 + 1 * 8, 0x2000)  # Import RVA
    struct.pack_into("<I", opt, 0x60 + 1 * 8 + 4, 0x100)  # Import size

    sh = bytearray(40)
    sh[0:8] = b".rdata\x00\x00"
    struct.pack_into("<I", sh, 8, 0x400)
    struct.pack_into("<I", sh, 12, 0x2000)
    struct.pack_into("<I", sh, 16, 0x400)
    struct.pack_into("<I", sh, 20, 0x200)
    struct.pack_into("<I", sh, 36, 0x40000040)

    blob = bytes(dos) + bytes(nt) + coff + bytes(opt) + bytes(sh)
    if len(blob) < 0x200:
        blob += b"\x00" * (0x200 - len(blob))

    rdata = bytearray(b"\x00" * 0x400)

    # Descriptor 0: KERNEL32.dll via OriginalFirstThunk
    struct.pack_into("<I", rdata, 0, 0x2040)
    struct.pack_into("<I", rdata, 12, 0x2080)
    struct.pack_into("<I", rdata, 16, 0x2040)
    # Descriptor 1: USER32.dll via FirstThunk only
    struct.pack_into("<I", rdata, 20 + 12, 0x2090)
    struct.pack_into("<I", rdata, 20 + 16, 0x2050)
    # Descriptor 2 is the zero terminator

    # KERNEL32 thunks: ExitProcess, ordinal 17, GetTickCount, end
    struct.pack_into("<IIII", rdata, 0x40, 0x20C0, 0x80000011, 0x20E0, 0)
    # USER32 thunks: MessageBoxW, end
    struct.pack_into("<II", rdata, 0x50, 0x2100, 0)

    rdata[0x80 : 0x80 + 13] = b"KERNEL32.dll\x00"
    rdata[0x90 : 0x90 + 11] = b"USER32.dll\x00"
    rdata[0xC2 : 0xC2 + 12] = b"ExitProcess\x00"
    rdata[0xE2 : 0xE2 + 13] = b"GetTickCount\x00"
    rdata[0x102 : 0x102 + 12] = b"MessageBoxW\x00"

    blob += bytes(rdata)
    return blob


def test_pe_imports_parsed():
    res = parse_pe_bytes(_build_pe32_with_imports())
    assert res.present is True
    assert res.pe is not None
    imps = res.pe["imports"]
    assert [i["dll"] for i in imps] == ["KERNEL32.dll", "USER32.dll"]
    assert imps[0]["functions"] == ["ExitProcess", "#17", "GetTickCount"]
    assert imps[1]["functions"] == ["MessageBoxW"]


def test_pe_imports_rendered_in_walk_order():
    res = parse_pe_bytes(_build_pe32_with_imports())
    raw = pe_metadata(res.pe)
    assert raw["imports"] == [
        "ExitProcess (KERNEL32.dll)",
        "#17 (KERNEL32.dll)",
        "GetTickCount (KERNEL32.dll)",
        "MessageBoxW (USER32.dll)",
    ]


def test_pe_import_rva_outside_sections_is_recorded():
    data = bytearray(_build_pe32_with_imports())
    # point the import directory at an unmapped RVA
    struct.pack_into("<I", data, 0x80 + 4 + 20 + 0x60 + 8, 0x9000)
    res = parse_pe_bytes(bytes(data))
    assert res.pe is not None
    assert res.pe["imports"] == []
    assert any(e["code"] == "E_PE_IMPORT_RVA_UNMAPPABLE" for e in res.errors)
