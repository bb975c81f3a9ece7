from __future__ import annotations

from typing import Any, Dict, List, Optional

from upload_analyzer.binread import be32, find_all, u32

# Magic values as they appear on disk
MH_MAGIC_LE = b"\xce\xfa\xed\xfe"
MH_MAGIC_64_LE = b"\xcf\xfa\xed\xfe"
MH_MAGIC_BE = b"\xfe\xed\xfa\xce"
MH_MAGIC_64_BE = b"\xfe\xed\xfa\xcf"
FAT_MAGIC = b"\xca\xfe\xba\xbe"
FAT_MAGIC_64 = b"\xca\xfe\xba\xbf"

# Java class files share FAT_MAGIC; their "count" is the class version (>= 45)
MAX_FAT_ARCHS = 16
MAX_MH_FILETYPE = 12

CPU_TYPES = {
    7: "x86",
    0x01000007: "x86_64",
    12: "arm",
    0x0100000C: "arm64",
    0x0200000C: "arm64_32",
    18: "ppc",
    0x01000012: "ppc64",
}


def _fat_archs(data: bytes, off: int) -> Optional[List[str]]:
    is64 = data[off : off + 4] == FAT_MAGIC_64
    count = be32(data, off + 4)
    if count is None or not 1 <= count <= MAX_FAT_ARCHS:
        return None
    stride = 32 if is64 else 20
    archs: List[str] = []
    for i in range(count):
        cpu = be32(data, off + 8 + i * stride)
        if cpu is None or cpu not in CPU_TYPES:
            return None
        if CPU_TYPES[cpu] not in archs:
            archs.append(CPU_TYPES[cpu])
    return archs


def _thin_arch(data: bytes, off: int) -> Optional[str]:
    big_endian = data[off : off + 4] in (MH_MAGIC_BE, MH_MAGIC_64_BE)
    read = be32 if big_endian else u32
    cpu = read(data, off + 4)
    filetype = read(data, off + 12)
    if cpu not in CPU_TYPES or filetype is None or not 1 <= filetype <= MAX_MH_FILETYPE:
        return None
    return CPU_TYPES[cpu]


def scan_macho(data: bytes, *, max_hits: int = 256) -> Dict[str, Any]:
    """
    Look for a Mach-O header anywhere in `data`.

    A fat header with several slots gives {"architecture": "Universal",
    "architectures": [...]}; a thin header (or single-slot fat) gives
    {"architecture": name}. Empty dict when nothing valid is found.
    """
    for magic in (FAT_MAGIC, FAT_MAGIC_64):
        for off in find_all(data, magic, limit=max_hits):
            archs = _fat_archs(data, off)
            if not archs:
                continue
            if len(archs) == 1:
                return {"architecture": archs[0]}
            return {"architecture": "Universal", "architectures": archs}

    hits: List[int] = []
    for magic in (MH_MAGIC_64_LE, MH_MAGIC_LE, MH_MAGIC_64_BE, MH_MAGIC_BE):
        hits.extend(find_all(data, magic, limit=max_hits))
    for off in sorted(hits):
        arch = _thin_arch(data, off)
        if arch:
            return {"architecture": arch}
    return {}
