from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import olefile

from upload_analyzer.binread import u16, u32
from upload_analyzer.errors import AnalysisFailure, ExtractionFailure, StructuralFailure
from upload_analyzer.msi_summary import SUMMARY_STREAM, parse_summary_information, python_codec

logger = logging.getLogger(__name__)

CFB_SIGNATURE = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"
CFB_HEADER_SIZE = 512

# Stream-name mangling alphabet
NAME_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz._"
_ALPHABET_INDEX = {ch: i for i, ch in enumerate(NAME_ALPHABET)}
NAME_PAIR_BASE = 0x3800
NAME_SINGLE_BASE = 0x4800
NAME_TABLE_PREFIX = 0x4840

STRING_POOL = "!_StringPool"
STRING_DATA = "!_StringData"
COLUMNS_TABLE = "_Columns"

LONG_STRING_REFS = 0x8000

# Column type bits
MSITYPE_VALID = 0x0100
MSITYPE_STRING = 0x0800
MSITYPE_NULLABLE = 0x1000

PROPERTY_KEYS = (
    "ProductName",
    "ProductVersion",
    "Manufacturer",
    "ProductCode",
    "UpgradeCode",
    "ProductLanguage",
    "ARPURLINFOABOUT",
)

WIX_PROPERTY_PREFIXES = ("WIXUI_", "WIXSHELLEXEC", "WIX_", "WIXBUNDLE")

# Creating-application markers, checked in order
FRAMEWORK_MARKERS = (
    ("WiX Toolset", ("windows installer xml", "wix toolset", "wixtoolset")),
    ("InstallShield", ("installshield",)),
    ("Advanced Installer", ("advanced installer",)),
)

TEMPLATE_PLATFORMS = {
    "intel": "x86",
    "x64": "x64",
    "amd64": "x64",
    "intel64": "x64",
    "arm64": "ARM64",
    "arm": "ARM",
}

# Used when _Columns is missing or unreadable. (name, kind) with kind in s/i2/i4.
FALLBACK_SCHEMAS: Dict[str, List[Tuple[str, str]]] = {
    "Property": [("Property", "s"), ("Value", "s")],
    "Component": [
        ("Component", "s"),
        ("ComponentId", "s"),
        ("Directory_", "s"),
        ("Attributes", "i2"),
        ("Condition", "s"),
        ("KeyPath", "s"),
    ],
    "Feature": [
        ("Feature", "s"),
        ("Feature_Parent", "s"),
        ("Title", "s"),
        ("Description", "s"),
        ("Display", "i2"),
        ("Level", "i2"),
        ("Directory_", "s"),
        ("Attributes", "i2"),
    ],
    "File": [
        ("File", "s"),
        ("Component_", "s"),
        ("FileName", "s"),
        ("FileSize", "i4"),
        ("Version", "s"),
        ("Language", "s"),
        ("Attributes", "i2"),
        ("Sequence", "i2"),
    ],
    "CustomAction": [("Action", "s"), ("Type", "i2"), ("Source", "s"), ("Target", "s")],
}

_KIND_TYPES = {"s": MSITYPE_VALID | MSITYPE_STRING | 0xFF, "i2": MSITYPE_VALID | 2, "i4": MSITYPE_VALID | 4}


def decode_stream_name(name: str) -> str:
    """Reverse the MSI stream-name mangling; unmangled characters pass through."""
    out: List[str] = []
    for ch in name:
        c = ord(ch)
        if NAME_PAIR_BASE <= c < NAME_SINGLE_BASE:
            c -= NAME_PAIR_BASE
            out.append(NAME_ALPHABET[c & 0x3F])
            out.append(NAME_ALPHABET[(c >> 6) & 0x3F])
        elif NAME_SINGLE_BASE <= c < NAME_TABLE_PREFIX:
            out.append(NAME_ALPHABET[c - NAME_SINGLE_BASE])
        elif c == NAME_TABLE_PREFIX:
            out.append("!")
        else:
            out.append(ch)
    return "".join(out)


def encode_stream_name(name: str) -> str:
    """Mangle a logical name the way Windows Installer stores it. '!' marks a table."""
    out: List[str] = []
    if name.startswith("!"):
        out.append(chr(NAME_TABLE_PREFIX))
        name = name[1:]
    i = 0
    while i < len(name):
        a = _ALPHABET_INDEX.get(name[i])
        if a is None:
            out.append(name[i])
            i += 1
            continue
        b = _ALPHABET_INDEX.get(name[i + 1]) if i + 1 < len(name) else None
        if b is not None:
            out.append(chr(NAME_PAIR_BASE + a + (b << 6)))
            i += 2
        else:
            out.append(chr(NAME_SINGLE_BASE + a))
            i += 1
    return "".join(out)


@dataclass(frozen=True)
class Column:
    name: str
    type: int

    @property
    def is_string(self) -> bool:
        return bool(self.type & MSITYPE_STRING)

    @property
    def is_binary(self) -> bool:
        return (self.type & ~MSITYPE_NULLABLE) == (MSITYPE_STRING | MSITYPE_VALID)

    def width(self, ref_width: int) -> int:
        if self.is_binary:
            return 2
        if self.is_string:
            return ref_width
        return 2 if (self.type & 0xFF) <= 2 else 4


class StringPool:
    """The shared string table backing every string column."""

    def __init__(self, strings: List[str], ref_width: int):
        self.strings = strings
        self.ref_width = ref_width

    def __len__(self) -> int:
        return len(self.strings)

    def get(self, index: int) -> str:
        if index < 0 or index >= len(self.strings):
            raise ExtractionFailure(
                "String pool index out of range",
                details=f"index {index} with {len(self.strings)} entries",
                format="MSI",
            )
        return self.strings[index]

    @classmethod
    def parse(cls, pool: bytes, data: bytes, *, max_entries: int = 1_000_000) -> "StringPool":
        codepage = u16(pool, 0) or 0
        flags = u16(pool, 2) or 0
        codepage |= (flags & ~LONG_STRING_REFS) << 16
        codec = python_codec(codepage)

        # Index 0 is the empty string
        strings: List[str] = [""]
        offset = 0
        count = len(pool) // 4
        i = 1
        while i < count and len(strings) < max_entries:
            length = u16(pool, i * 4) or 0
            refs = u16(pool, i * 4 + 2) or 0
            if length == 0 and refs == 0:
                strings.append("")
                i += 1
                continue
            if length == 0:
                # Strings over 64k: the next record holds the 32-bit length
                length = (u16(pool, i * 4 + 4) or 0) | ((u16(pool, i * 4 + 6) or 0) << 16)
                i += 2
            else:
                i += 1
            raw = data[offset : offset + length]
            offset += length
            strings.append(raw.decode(codec, errors="replace"))

        ref_width = 3 if (flags & LONG_STRING_REFS) or len(strings) > 0xFFFF else 2
        return cls(strings, ref_width)


class MsiDatabase:
    """Read-only view over the relational tables of an opened compound file."""

    def __init__(self, ole: olefile.OleFileIO, *, max_rows: int = 10_000):
        self.ole = ole
        self.max_rows = max_rows
        self.streams: Dict[str, List[str]] = {}
        for path in ole.listdir(streams=True, storages=False):
            if len(path) == 1:
                self.streams[decode_stream_name(path[0])] = path
        self.pool: Optional[StringPool] = None
        pool_raw = self.read_stream(STRING_POOL)
        data_raw = self.read_stream(STRING_DATA)
        if pool_raw is not None and data_raw is not None:
            self.pool = StringPool.parse(pool_raw, data_raw)
        self._columns: Optional[Dict[str, List[Column]]] = None

    def read_stream(self, logical_name: str) -> Optional[bytes]:
        path = self.streams.get(logical_name)
        if path is None:
            return None
        try:
            with self.ole.openstream(path) as f:
                return f.read()
        except (OSError, ValueError, IndexError) as e:
            raise ExtractionFailure("Unreadable stream", details=f"{logical_name}: {e}", format="MSI") from e

    def _read_columns_table(self) -> Dict[str, List[Column]]:
        meta = [
            Column("Table", MSITYPE_VALID | MSITYPE_STRING | 64),
            Column("Number", MSITYPE_VALID | 2),
            Column("Name", MSITYPE_VALID | MSITYPE_STRING | 64),
            Column("Type", MSITYPE_VALID | 2),
        ]
        by_table: Dict[str, List[Tuple[int, Column]]] = {}
        for row in self._rows_with_columns("!" + COLUMNS_TABLE, meta):
            table, number, name, ctype = row.get("Table"), row.get("Number"), row.get("Name"), row.get("Type")
            if not table or not name or number is None or ctype is None:
                continue
            by_table.setdefault(table, []).append((number, Column(name, ctype & 0xFFFF)))
        return {t: [c for _, c in sorted(cols, key=lambda x: x[0])] for t, cols in by_table.items()}

    def columns(self, table: str) -> List[Column]:
        if self._columns is None:
            try:
                self._columns = self._read_columns_table()
            except AnalysisFailure as e:
                logger.debug("Unreadable _Columns table: %s", e)
                self._columns = {}
        cols = self._columns.get(table)
        if cols:
            return cols
        return [Column(n, _KIND_TYPES[k]) for n, k in FALLBACK_SCHEMAS.get(table, [])]

    def _rows_with_columns(self, stream_name: str, columns: List[Column]) -> List[Dict[str, Any]]:
        blob = self.read_stream(stream_name)
        if blob is None or not columns:
            return []
        if self.pool is None:
            raise ExtractionFailure("String pool missing", format="MSI")
        widths = [c.width(self.pool.ref_width) for c in columns]
        row_size = sum(widths)
        nrows = min(len(blob) // row_size, self.max_rows)
        total_rows = len(blob) // row_size

        rows: List[Dict[str, Any]] = [{} for _ in range(nrows)]
        col_base = 0
        for col, width in zip(columns, widths):
            for r in range(nrows):
                off = col_base + r * width
                raw = int.from_bytes(blob[off : off + width], "little")
                rows[r][col.name] = self._cell(col, width, raw)
            col_base += total_rows * width
        return rows

    def _cell(self, col: Column, width: int, raw: int) -> Any:
        if col.is_binary:
            return None
        if col.is_string:
            if raw == 0:
                return None
            try:
                return self.pool.get(raw)
            except ExtractionFailure as e:
                logger.debug("Field %s dropped: %s (%s)", col.name, e.message, e.details)
                return None
        if raw == 0:
            return None
        return raw ^ (0x8000 if width == 2 else 0x80000000)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self._rows_with_columns("!" + table, self.columns(table))

    def properties(self) -> Dict[str, str]:
        props: Dict[str, str] = {}
        for row in self.rows("Property"):
            key, value = row.get("Property"), row.get("Value")
            if isinstance(key, str) and isinstance(value, str) and key and key not in props:
                props[key] = value
        return props


def _is_empty_container(data: bytes) -> bool:
    # Header only, or a header that declares no FAT sectors
    return len(data) <= CFB_HEADER_SIZE or u32(data, 0x2C) == 0


def open_compound_file(data: bytes) -> olefile.OleFileIO:
    try:
        return olefile.OleFileIO(io.BytesIO(data))
    except Exception as e:
        raise StructuralFailure("Unreadable compound file", details=f"{type(e).__name__}: {e}", format="MSI") from e


def template_architecture(template: Optional[str]) -> Optional[str]:
    """'Intel;1033' -> 'x86', 'x64;1033' -> 'x64'."""
    if not template:
        return None
    platform = template.split(";", 1)[0].split(",", 1)[0].strip().lower()
    return TEMPLATE_PLATFORMS.get(platform)


def detect_framework(properties: Dict[str, str], creating_application: Optional[str]) -> Optional[str]:
    for key in properties:
        if key.upper().startswith(WIX_PROPERTY_PREFIXES):
            return "WiX Toolset"
    app = (creating_application or "").lower()
    for label, markers in FRAMEWORK_MARKERS:
        if any(m in app for m in markers):
            return label
    return None


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _long_file_name(name: Optional[str]) -> Optional[str]:
    # FileName holds "SHORT~1.TXT|Long Name.txt" when both are present
    if not name:
        return None
    return name.split("|", 1)[-1]


def _key_list(db: MsiDatabase, table: str, key: str, *, limit: int, transform=None) -> List[str]:
    try:
        rows = db.rows(table)
    except AnalysisFailure as e:
        logger.debug("Table %s unreadable: %s", table, e)
        return []
    out: List[str] = []
    for row in rows:
        v = row.get(key)
        if not isinstance(v, str):
            continue
        if transform is not None:
            v = transform(v)
        if v and v not in out:
            out.append(v)
            if len(out) >= limit:
                break
    return out


def analyze_msi(data: bytes, *, max_rows: int = 10_000, max_list_items: int = 500) -> Dict[str, Any]:
    """Raw MSI facts keyed by property / summary names, plus table lists."""
    if _is_empty_container(data):
        return {}

    ole = open_compound_file(data)
    try:
        try:
            db = MsiDatabase(ole, max_rows=max_rows)
        except Exception as e:
            raise StructuralFailure("Unreadable compound file", details=f"{type(e).__name__}: {e}", format="MSI") from e

        raw: Dict[str, Any] = {}

        try:
            props = db.properties()
        except AnalysisFailure as e:
            logger.debug("Property table unreadable: %s", e)
            props = {}
        for key in PROPERTY_KEYS:
            if props.get(key):
                raw[key] = props[key]

        summary: Dict[str, Any] = {}
        try:
            blob = db.read_stream(SUMMARY_STREAM)
            if blob is not None:
                summary = parse_summary_information(blob)
        except ExtractionFailure as e:
            logger.debug("Summary information unreadable: %s", e)
        raw.update(summary)

        arch = template_architecture(_text(summary.get("Template")))
        if arch:
            raw["template_architecture"] = arch

        framework = detect_framework(props, _text(summary.get("CreatingApplication")))
        if framework:
            raw["installer_framework"] = framework

        raw["components"] = _key_list(db, "Component", "Component", limit=max_list_items)
        raw["features"] = _key_list(db, "Feature", "Feature", limit=max_list_items)
        raw["files"] = _key_list(db, "File", "FileName", limit=max_list_items, transform=_long_file_name)
        raw["custom_actions"] = _key_list(db, "CustomAction", "Action", limit=max_list_items)
        return raw
    finally:
        ole.close()
