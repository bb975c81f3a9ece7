from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from upload_analyzer.binread import align, be16, be32, be64, read_c_string, u8
from upload_analyzer.errors import StructuralFailure

logger = logging.getLogger(__name__)

LEAD_MAGIC = b"\xED\xAB\xEE\xDB"
LEAD_SIZE = 96
HEADER_MAGIC = b"\x8E\xAD\xE8\x01"
HEADER_INTRO_SIZE = 16
INDEX_ENTRY_SIZE = 16
SIGNATURE_ALIGNMENT = 8

# Tag value types
RPM_NULL_TYPE = 0
RPM_CHAR_TYPE = 1
RPM_INT8_TYPE = 2
RPM_INT16_TYPE = 3
RPM_INT32_TYPE = 4
RPM_INT64_TYPE = 5
RPM_STRING_TYPE = 6
RPM_BIN_TYPE = 7
RPM_STRING_ARRAY_TYPE = 8
RPM_I18NSTRING_TYPE = 9

# Header tags read from the main header, in output order
TAGS = {
    1000: "NAME",
    1001: "VERSION",
    1002: "RELEASE",
    1004: "SUMMARY",
    1005: "DESCRIPTION",
    1006: "BUILDTIME",
    1009: "SIZE",
    1011: "VENDOR",
    1014: "LICENSE",
    1015: "PACKAGER",
    1016: "GROUP",
    1020: "URL",
    1021: "OS",
    1022: "ARCH",
    1044: "SOURCERPM",
}

LEAD_ARCHES = {
    1: "i386",
    2: "alpha",
    3: "sparc",
    4: "mips",
    5: "ppc",
    6: "m68k",
    9: "ia64",
    12: "arm",
    14: "s390",
    15: "s390x",
    16: "ppc64",
    19: "aarch64",
}

PACKAGE_TYPES = {0: "binary", 1: "source"}


@dataclass(frozen=True)
class RpmLead:
    major: int
    minor: int
    package_type: int
    archnum: int
    name: str


@dataclass(frozen=True)
class HeaderBlock:
    offset: int
    nindex: int
    hsize: int

    @property
    def store(self) -> int:
        return self.offset + HEADER_INTRO_SIZE + self.nindex * INDEX_ENTRY_SIZE

    @property
    def end(self) -> int:
        return self.store + self.hsize


def parse_lead(data: bytes) -> RpmLead:
    if len(data) < LEAD_SIZE or data[:4] != LEAD_MAGIC:
        raise StructuralFailure("Truncated RPM lead", details=f"{len(data)} bytes", format="RPM")
    return RpmLead(
        major=data[4],
        minor=data[5],
        package_type=be16(data, 6) or 0,
        archnum=be16(data, 8) or 0,
        name=read_c_string(data, 10, max_len=66, encoding="utf-8") or "",
    )


def read_header_block(data: bytes, off: int, *, which: str, max_index_entries: int) -> HeaderBlock:
    if data[off : off + 4] != HEADER_MAGIC:
        raise StructuralFailure("Corrupt RPM header", details=f"{which} header: bad magic at offset {off}", format="RPM")
    nindex = be32(data, off + 8)
    hsize = be32(data, off + 12)
    if nindex is None or hsize is None:
        raise StructuralFailure("Corrupt RPM header", details=f"{which} header: truncated intro", format="RPM")
    if nindex > max_index_entries:
        raise StructuralFailure(
            "Corrupt RPM header",
            details=f"{which} header: {nindex} index entries exceeds {max_index_entries}",
            format="RPM",
        )
    block = HeaderBlock(offset=off, nindex=nindex, hsize=hsize)
    if block.end > len(data):
        raise StructuralFailure("Corrupt RPM header", details=f"{which} header: data store extends past end of file", format="RPM")
    return block


def _read_strings(data: bytes, off: int, end: int, count: int) -> List[str]:
    out: List[str] = []
    for _ in range(count):
        s = read_c_string(data, off, max_len=end - off, encoding="utf-8")
        if s is None:
            break
        out.append(s)
        off += len(s.encode("utf-8")) + 1
    return out


def read_tag_value(data: bytes, block: HeaderBlock, rtype: int, offset: int, count: int) -> Any:
    """Resolve one index entry against the data store; None when out of bounds."""
    pos = block.store + offset
    if offset >= block.hsize or count < 1:
        return None
    if rtype in (RPM_STRING_TYPE, RPM_STRING_ARRAY_TYPE, RPM_I18NSTRING_TYPE):
        # Arrays: the first entry is the untranslated (C locale) value
        values = _read_strings(data, pos, block.end, 1)
    elif rtype in (RPM_CHAR_TYPE, RPM_INT8_TYPE):
        values = [u8(data, pos)] if pos + 1 <= block.end else []
    elif rtype == RPM_INT16_TYPE:
        values = [be16(data, pos)] if pos + 2 <= block.end else []
    elif rtype == RPM_INT32_TYPE:
        values = [be32(data, pos)] if pos + 4 <= block.end else []
    elif rtype == RPM_INT64_TYPE:
        values = [be64(data, pos)] if pos + 8 <= block.end else []
    else:
        return None
    return values[0] if values else None


def read_tags(data: bytes, block: HeaderBlock) -> Dict[int, Any]:
    found: Dict[int, Any] = {}
    for i in range(block.nindex):
        ent = block.offset + HEADER_INTRO_SIZE + i * INDEX_ENTRY_SIZE
        tag = be32(data, ent)
        if tag not in TAGS or tag in found:
            continue
        rtype = be32(data, ent + 4) or RPM_NULL_TYPE
        offset = be32(data, ent + 8) or 0
        count = be32(data, ent + 12) or 0
        value = read_tag_value(data, block, rtype, offset, count)
        if value is None:
            logger.debug("RPM tag %s unreadable (type=%d offset=%d)", TAGS[tag], rtype, offset)
            continue
        found[tag] = value
    return found


def analyze_rpm(data: bytes, *, max_index_entries: int = 10_000) -> Dict[str, Any]:
    lead = parse_lead(data)
    sig = read_header_block(data, LEAD_SIZE, which="signature", max_index_entries=max_index_entries)
    main_off = LEAD_SIZE + align(sig.end - LEAD_SIZE, SIGNATURE_ALIGNMENT)
    main = read_header_block(data, main_off, which="main", max_index_entries=max_index_entries)

    tags = read_tags(data, main)
    raw: Dict[str, Any] = {TAGS[t]: tags[t] for t in TAGS if t in tags}

    # Lead values only fill in what the header does not say
    if lead.archnum in LEAD_ARCHES:
        raw["lead_arch"] = LEAD_ARCHES[lead.archnum]
    if lead.package_type in PACKAGE_TYPES:
        raw["package_type"] = PACKAGE_TYPES[lead.package_type]
    return raw
