from __future__ import annotations

import struct
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

# 100ns ticks between 1601-01-01 and 1970-01-01
FILETIME_EPOCH_DELTA = 116_444_736_000_000_000


def _unpack(fmt: str, size: int, data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + size > len(data):
        return None
    return struct.unpack_from(fmt, data, off)[0]


def u8(data: bytes, off: int) -> Optional[int]:
    return _unpack("<B", 1, data, off)


def u16(data: bytes, off: int) -> Optional[int]:
    return _unpack("<H", 2, data, off)


def u32(data: bytes, off: int) -> Optional[int]:
    return _unpack("<I", 4, data, off)


def u64(data: bytes, off: int) -> Optional[int]:
    return _unpack("<Q", 8, data, off)


def be16(data: bytes, off: int) -> Optional[int]:
    return _unpack(">H", 2, data, off)


def be32(data: bytes, off: int) -> Optional[int]:
    return _unpack(">I", 4, data, off)


def be64(data: bytes, off: int) -> Optional[int]:
    return _unpack(">Q", 8, data, off)


def read_bytes(data: bytes, off: int, size: int) -> Optional[bytes]:
    if off < 0 or size < 0 or off + size > len(data):
        return None
    return data[off : off + size]


def safe_ascii(b: bytes) -> str:
    return b.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def read_c_string(data: bytes, off: int, *, max_len: int = 512, encoding: str = "ascii") -> Optional[str]:
    if off < 0 or off >= len(data):
        return None
    end = min(len(data), off + max_len)
    chunk = data[off:end]
    nul = chunk.find(b"\x00")
    if nul == -1:
        return None
    return chunk[:nul].decode(encoding, errors="replace")


def read_utf16le_zstring(data: bytes, off: int, *, max_chars: int = 512) -> Tuple[Optional[str], int]:
    """
    Read UTF-16LE null-terminated string starting at off.
    Returns (string_without_null, bytes_consumed_including_null).
    """
    if off < 0 or off >= len(data):
        return None, 0
    end = min(len(data), off + max_chars * 2)
    i = off
    while i + 1 < end:
        if data[i] == 0 and data[i + 1] == 0:
            return data[off:i].decode("utf-16le", errors="replace"), (i + 2) - off
        i += 2
    return None, 0


def align4(x: int) -> int:
    return (x + 3) & ~3


def align(x: int, n: int) -> int:
    return (x + n - 1) // n * n


def find_all(data: bytes, needle: bytes, *, start: int = 0, limit: int = 64) -> List[int]:
    """Offsets of needle in data, in ascending order, at most `limit` of them."""
    out: List[int] = []
    if not needle:
        return out
    pos = data.find(needle, start)
    while pos != -1 and len(out) < limit:
        out.append(pos)
        pos = data.find(needle, pos + 1)
    return out


def filetime_to_iso(ft: Optional[int]) -> Optional[str]:
    """
    Windows FILETIME -> ISO-8601 UTC with 'Z' suffix, seconds precision.
    Zero and out-of-range values give None.
    """
    if not ft:
        return None
    try:
        dt = datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(
            microseconds=(int(ft) - FILETIME_EPOCH_DELTA) // 10
        )
    except OverflowError:
        return None
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")
