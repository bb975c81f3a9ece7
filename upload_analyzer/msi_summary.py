from __future__ import annotations

import codecs
import logging
from typing import Any, Dict, Optional

from upload_analyzer.binread import filetime_to_iso, read_bytes, u16, u32, u64
from upload_analyzer.errors import ExtractionFailure

logger = logging.getLogger(__name__)

SUMMARY_STREAM = "\x05SummaryInformation"

PROPERTY_SET_BYTE_ORDER = 0xFFFE

VT_I2 = 2
VT_I4 = 3
VT_LPSTR = 30
VT_LPWSTR = 31
VT_FILETIME = 64

PID_CODEPAGE = 1

# Summary information property ids used by Windows Installer
SUMMARY_PIDS = {
    2: "Title",
    3: "Subject",
    4: "Author",
    5: "Keywords",
    6: "Comments",
    7: "Template",
    8: "LastAuthor",
    9: "RevisionNumber",
    12: "CreateTime",
    13: "LastSaveTime",
    14: "PageCount",
    15: "WordCount",
    18: "CreatingApplication",
    19: "Security",
}

MAX_PROPERTIES = 256
MAX_STRING_BYTES = 64 * 1024


def python_codec(codepage: Optional[int]) -> str:
    """Map a Windows codepage number to a Python codec name, cp1252 when unknown."""
    if codepage == 65001:
        return "utf-8"
    if codepage == 1200:
        return "utf-16-le"
    if codepage:
        try:
            return codecs.lookup(f"cp{codepage}").name
        except LookupError:
            pass
    return "cp1252"


def _read_value(section: bytes, off: int, codec: str) -> Any:
    vt = u32(section, off)
    if vt is None:
        return None
    body = off + 4
    if vt == VT_I2:
        v = u16(section, body)
        return None if v is None else v - 0x10000 if v & 0x8000 else v
    if vt == VT_I4:
        v = u32(section, body)
        return None if v is None else v - 0x1_0000_0000 if v & 0x80000000 else v
    if vt == VT_LPSTR:
        n = u32(section, body)
        if n is None or n > MAX_STRING_BYTES:
            return None
        raw = read_bytes(section, body + 4, n)
        return None if raw is None else raw.decode(codec, errors="replace").split("\x00", 1)[0]
    if vt == VT_LPWSTR:
        n = u32(section, body)
        if n is None or n * 2 > MAX_STRING_BYTES:
            return None
        raw = read_bytes(section, body + 4, n * 2)
        return None if raw is None else raw.decode("utf-16-le", errors="replace").split("\x00", 1)[0]
    if vt == VT_FILETIME:
        return filetime_to_iso(u64(section, body))
    return None


def parse_summary_information(blob: bytes) -> Dict[str, Any]:
    """
    Decode the first section of an OLE property set.

    Returns {name: value} for the Windows Installer summary properties that
    carry a value. Strings are decoded with the set's codepage property,
    FILETIMEs become ISO-8601 UTC strings.
    """
    if u16(blob, 0) != PROPERTY_SET_BYTE_ORDER:
        raise ExtractionFailure("Summary information has a bad byte-order mark")
    if (u32(blob, 24) or 0) < 1:
        raise ExtractionFailure("Summary information holds no property sections")

    sec_off = u32(blob, 44)
    if sec_off is None or sec_off + 8 > len(blob):
        raise ExtractionFailure("Summary information section offset out of bounds")
    sec_size = u32(blob, sec_off) or 0
    section = blob[sec_off : min(len(blob), sec_off + sec_size)]
    count = u32(section, 4) or 0
    if count > MAX_PROPERTIES:
        logger.debug("Summary property count %d clamped to %d", count, MAX_PROPERTIES)
        count = MAX_PROPERTIES

    entries = []
    for i in range(count):
        pid = u32(section, 8 + i * 8)
        off = u32(section, 12 + i * 8)
        if pid is None or off is None:
            break
        entries.append((pid, off))

    codec = "cp1252"
    for pid, off in entries:
        if pid == PID_CODEPAGE:
            cp = _read_value(section, off, codec)
            if isinstance(cp, int):
                codec = python_codec(cp & 0xFFFF)
            break

    out: Dict[str, Any] = {}
    for pid, off in entries:
        name = SUMMARY_PIDS.get(pid)
        if name is None or name in out:
            continue
        value = _read_value(section, off, codec)
        if value is None or value == "":
            continue
        out[name] = value
    return out
