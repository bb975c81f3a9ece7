from __future__ import annotations

from typing import Optional

from upload_analyzer.binread import be32, read_bytes, u16, u32
from upload_analyzer.model import DetectedFormat, FileInfo

MIN_SIGNATURE_LENGTH = 8

CFB_SIGNATURE = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"
AR_MAGIC = b"!<arch>\n"
RPM_LEAD_MAGIC = b"\xED\xAB\xEE\xDB"
DOS_SIGNATURE = b"MZ"
NT_SIGNATURE = b"PE\x00\x00"

KOLY_MAGIC = b"koly"
KOLY_SIZE = 512
ENCRYPTED_DMG_MAGIC = b"encrcdsa"
DEFAULT_TAIL_SCAN_BYTES = 64 * 1024

AR_HEADER_SIZE = 60
DEB_PROBE_MEMBERS = 4

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B


def locate_koly(data: bytes, *, tail_scan_bytes: int = DEFAULT_TAIL_SCAN_BYTES) -> Optional[int]:
    """
    Offset of the UDIF trailer, or None.

    The trailer normally sits at len-512. Older tools leave trailing junk, so
    the last `tail_scan_bytes` are also searched backwards for a 'koly' whose
    header-size field reads 512.
    """
    n = len(data)
    if n < KOLY_SIZE:
        return None
    fixed = n - KOLY_SIZE
    if data[fixed : fixed + 4] == KOLY_MAGIC:
        return fixed

    lo = max(0, n - tail_scan_bytes)
    pos = data.rfind(KOLY_MAGIC, lo, n)
    while pos != -1:
        if pos + KOLY_SIZE <= n and be32(data, pos + 8) == KOLY_SIZE:
            return pos
        pos = data.rfind(KOLY_MAGIC, lo, pos)
    return None


def _deb_version(data: bytes) -> Optional[str]:
    """Content of the debian-binary member when it is among the first ar members."""
    off = len(AR_MAGIC)
    for _ in range(DEB_PROBE_MEMBERS):
        hdr = read_bytes(data, off, AR_HEADER_SIZE)
        if hdr is None or hdr[58:60] != b"`\n":
            return None
        name = hdr[0:16].decode("ascii", errors="replace").strip().rstrip("/")
        try:
            size = int(hdr[48:58].decode("ascii", errors="replace").strip() or "0")
        except ValueError:
            return None
        body_off = off + AR_HEADER_SIZE
        if name == "debian-binary":
            body = read_bytes(data, body_off, min(size, 16)) or b""
            return body.decode("ascii", errors="replace").strip()
        off = body_off + size + (size & 1)
    return None


def _pe_version(data: bytes) -> Optional[str]:
    """'PE32'/'PE32+' for a locatable NT header, '' when the magic is unknown, None when absent."""
    e_lfanew = u32(data, 0x3C)
    if e_lfanew is None or e_lfanew >= len(data):
        return None
    if read_bytes(data, e_lfanew, 4) != NT_SIGNATURE:
        return None
    magic = u16(data, e_lfanew + 24)
    if magic == PE32_MAGIC:
        return "PE32"
    if magic == PE32P_MAGIC:
        return "PE32+"
    return ""


def sniff(data: bytes, *, tail_scan_bytes: int = DEFAULT_TAIL_SCAN_BYTES) -> FileInfo:
    """
    Classify a buffer. First match wins:
    CFB -> MSI, UDIF trailer -> DMG, ar + debian-binary -> DEB,
    RPM lead -> RPM, MZ + PE header -> PE.
    """
    size = len(data)
    if size < MIN_SIGNATURE_LENGTH:
        return FileInfo(Format=DetectedFormat.INVALID, Size=size)

    if data[:8] == CFB_SIGNATURE:
        minor = u16(data, 0x18)
        major = u16(data, 0x1A)
        version = f"{major}.{minor}" if major is not None and minor is not None else None
        return FileInfo(Format=DetectedFormat.MSI, Size=size, FormatVersion=version)

    if data[:8] == ENCRYPTED_DMG_MAGIC:
        return FileInfo(Format=DetectedFormat.DMG, Size=size)
    koly = locate_koly(data, tail_scan_bytes=tail_scan_bytes)
    if koly is not None:
        version = be32(data, koly + 4)
        return FileInfo(
            Format=DetectedFormat.DMG,
            Size=size,
            FormatVersion=str(version) if version is not None else None,
        )

    if data[:8] == AR_MAGIC:
        deb_version = _deb_version(data)
        if deb_version is not None:
            return FileInfo(Format=DetectedFormat.DEB, Size=size, FormatVersion=deb_version or None)

    if data[:4] == RPM_LEAD_MAGIC:
        major = data[4]
        minor = data[5]
        return FileInfo(Format=DetectedFormat.RPM, Size=size, FormatVersion=f"{major}.{minor}")

    if data[:2] == DOS_SIGNATURE:
        pe_version = _pe_version(data)
        if pe_version is None:
            return FileInfo(Format=DetectedFormat.INVALID, Size=size)
        return FileInfo(Format=DetectedFormat.PE, Size=size, FormatVersion=pe_version or None)

    return FileInfo(Format=DetectedFormat.UNKNOWN, Size=size)
