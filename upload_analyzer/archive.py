from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

from upload_analyzer.binread import read_bytes
from upload_analyzer.errors import err

AR_MAGIC = b"!<arch>\n"
AR_HEADER_SIZE = 60
AR_FMAG = b"`\n"
GNU_NAME_TABLE = "//"
GNU_SYMBOL_TABLE = "/"
BSD_LONG_NAME_PREFIX = "#1/"


@dataclass(frozen=True)
class ArchiveMember:
    path: str
    size: int
    offset: int
    mtime: Optional[int] = None
    mode: Optional[int] = None


def _is_safe_member_path(member_path: str) -> bool:
    p = PurePosixPath(member_path)
    if p.is_absolute():
        return False
    if any(part == ".." for part in p.parts):
        return False
    return True


def _field_int(raw: bytes, base: int = 10) -> Optional[int]:
    s = raw.decode("ascii", errors="replace").strip()
    if not s:
        return None
    try:
        return int(s, base)
    except ValueError:
        return None


def list_ar_members(data: bytes, *, max_members: int = 1024) -> Tuple[List[ArchiveMember], List[Dict[str, Any]]]:
    """
    Walk an ar archive held in memory.

    Handles GNU "//" long-name tables and BSD "#1/<len>" names. Member
    content is padded to an even offset. The walk stops at the first
    malformed header and reports it in the error list.
    """
    errors: List[Dict[str, Any]] = []
    members: List[ArchiveMember] = []
    if data[: len(AR_MAGIC)] != AR_MAGIC:
        return members, [err("E_AR_BAD_MAGIC", "Missing ar global header.")]

    gnu_names = b""
    off = len(AR_MAGIC)
    while off + AR_HEADER_SIZE <= len(data):
        if len(members) >= max_members:
            errors.append(err("E_AR_TOO_MANY_MEMBERS", f"ar member count exceeded max_members={max_members}."))
            break
        hdr = data[off : off + AR_HEADER_SIZE]
        if hdr[58:60] != AR_FMAG:
            errors.append(err("E_AR_BAD_HEADER", "ar member header terminator missing.", offset=off))
            break
        size = _field_int(hdr[48:58])
        if size is None:
            errors.append(err("E_AR_BAD_SIZE", "ar member size is not a number.", offset=off))
            break
        body = off + AR_HEADER_SIZE
        if body + size > len(data):
            errors.append(err("E_AR_MEMBER_TRUNCATED", "ar member extends past end of archive.", offset=off, size=size))
            break

        name = hdr[0:16].decode("ascii", errors="replace").rstrip(" ")
        content_off = body
        content_size = size
        if name == GNU_NAME_TABLE:
            gnu_names = data[body : body + size]
            off = body + size + (size & 1)
            continue
        if name.startswith(BSD_LONG_NAME_PREFIX):
            name_len = _field_int(name[len(BSD_LONG_NAME_PREFIX) :].encode("ascii")) or 0
            name = (read_bytes(data, body, min(name_len, size)) or b"").rstrip(b"\x00").decode("utf-8", errors="replace")
            content_off += name_len
            content_size = max(0, size - name_len)
        elif name.startswith("/") and name[1:].strip().isdigit() and gnu_names:
            start = int(name[1:].strip())
            end = gnu_names.find(b"/\n", start)
            name = gnu_names[start : end if end != -1 else len(gnu_names)].decode("utf-8", errors="replace")
        elif name != GNU_SYMBOL_TABLE:
            name = name.rstrip("/")

        if name == GNU_SYMBOL_TABLE:
            pass
        elif not _is_safe_member_path(name):
            errors.append(err("E_AR_MEMBER_UNSAFE_PATH", "ar member path is unsafe (absolute or traversal).", member_path=name))
        else:
            members.append(
                ArchiveMember(
                    path=name,
                    size=content_size,
                    offset=content_off,
                    mtime=_field_int(hdr[16:28]),
                    mode=_field_int(hdr[40:48], 8),
                )
            )
        off = body + size + (size & 1)

    return members, errors


def read_member(data: bytes, member: ArchiveMember) -> bytes:
    return data[member.offset : member.offset + member.size]
