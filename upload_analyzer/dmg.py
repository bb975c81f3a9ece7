from __future__ import annotations

import bz2
import logging
import lzma
import plistlib
import re
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from xml.parsers.expat import ExpatError

from upload_analyzer.binread import be32, be64, find_all, read_bytes
from upload_analyzer.errors import UnsupportedFeature
from upload_analyzer.macho import scan_macho
from upload_analyzer.sniff import DEFAULT_TAIL_SCAN_BYTES, ENCRYPTED_DMG_MAGIC, locate_koly

logger = logging.getLogger(__name__)

ENCRYPTED_DMG_TRAILER = b"cdsaencr"

MISH_MAGIC = b"mish"
MISH_HEADER_SIZE = 204
MISH_CHUNK_SIZE = 40

CHUNK_ZERO = 0x00000000
CHUNK_RAW = 0x00000001
CHUNK_IGNORE = 0x00000002
CHUNK_ADC = 0x80000004
CHUNK_ZLIB = 0x80000005
CHUNK_BZIP2 = 0x80000006
CHUNK_LZFSE = 0x80000007
CHUNK_LZMA = 0x80000008
CHUNK_COMMENT = 0x7FFFFFFE
CHUNK_END = 0xFFFFFFFF

# Order doubles as the tie-break when two codecs carry the same amount of data
CODEC_NAMES = {
    CHUNK_ZLIB: "zlib",
    CHUNK_BZIP2: "bzip2",
    CHUNK_ADC: "ADC",
    CHUNK_LZFSE: "LZFSE",
    CHUNK_LZMA: "LZMA",
}

# Data-fork prologues used when there is no block table to consult
FORK_PROLOGUES = (
    (b"BZh", "bzip2"),
    (b"\xfd7zXZ\x00", "LZMA"),
    (b"\x5d\x00\x00", "LZMA"),
    (b"bvx2", "LZFSE"),
    (b"bvx1", "LZFSE"),
    (b"bvxn", "LZFSE"),
    (b"\x78\x01", "zlib"),
    (b"\x78\x5e", "zlib"),
    (b"\x78\x9c", "zlib"),
    (b"\x78\xda", "zlib"),
)

BPLIST_MAGIC = b"bplist00"
# 6 unused bytes, offset-int size, object-ref size, then a 64-bit object count
_BPLIST_TRAILER = re.compile(rb"\x00{6}[\x01-\x08][\x01-\x08]\x00{4}", re.DOTALL)
BPLIST_TRAILER_SIZE = 32
MAX_PLIST_BYTES = 4 * 1024 * 1024

PLIST_ERRORS = (plistlib.InvalidFileException, ValueError, ExpatError, OverflowError, LookupError, IndexError)


# The trailer version is read by the sniffer; the flags word carries no
# encryption bit, encrypted images are recognised by their wrapper instead.
@dataclass(frozen=True)
class KolyBlock:
    data_fork_offset: int
    data_fork_length: int
    xml_offset: int
    xml_length: int
    sector_count: int


@dataclass(frozen=True)
class Chunk:
    type: int
    sector_count: int
    comp_offset: int
    comp_length: int


def parse_koly(data: bytes, off: int) -> KolyBlock:
    return KolyBlock(
        data_fork_offset=be64(data, off + 24) or 0,
        data_fork_length=be64(data, off + 32) or 0,
        xml_offset=be64(data, off + 216) or 0,
        xml_length=be64(data, off + 224) or 0,
        sector_count=be64(data, off + 492) or 0,
    )


def _load_plist(blob: bytes) -> Optional[Any]:
    try:
        return plistlib.loads(blob)
    except PLIST_ERRORS as e:
        logger.debug("Property list rejected: %s", e)
        return None


def parse_block_table(mish: bytes, *, base: int, max_chunks: int) -> List[Chunk]:
    """Chunks of one mish block; offsets are made absolute using `base`."""
    if mish[:4] != MISH_MAGIC:
        return []
    data_offset = be64(mish, 24) or 0
    count = be32(mish, 200) or 0
    chunks: List[Chunk] = []
    for i in range(min(count, max_chunks)):
        off = MISH_HEADER_SIZE + i * MISH_CHUNK_SIZE
        if off + MISH_CHUNK_SIZE > len(mish):
            break
        ctype = be32(mish, off)
        if ctype == CHUNK_END:
            break
        chunks.append(
            Chunk(
                type=ctype,
                sector_count=be64(mish, off + 16) or 0,
                comp_offset=base + data_offset + (be64(mish, off + 24) or 0),
                comp_length=be64(mish, off + 32) or 0,
            )
        )
    return chunks


def read_chunks(data: bytes, koly: KolyBlock, *, max_chunks: int = 100_000) -> List[Chunk]:
    """Chunks from every blkx entry of the XML resource description."""
    if not koly.xml_offset or not koly.xml_length or koly.xml_length > MAX_PLIST_BYTES:
        return []
    xml = read_bytes(data, koly.xml_offset, koly.xml_length)
    if xml is None:
        logger.debug("UDIF XML description out of bounds (offset=%d)", koly.xml_offset)
        return []
    plist = _load_plist(xml)
    if not isinstance(plist, dict):
        return []
    fork = plist.get("resource-fork")
    blkx = fork.get("blkx") if isinstance(fork, dict) else None
    chunks: List[Chunk] = []
    for entry in blkx if isinstance(blkx, list) else []:
        mish = entry.get("Data") if isinstance(entry, dict) else None
        if isinstance(mish, bytes):
            chunks.extend(parse_block_table(mish, base=koly.data_fork_offset, max_chunks=max_chunks - len(chunks)))
        if len(chunks) >= max_chunks:
            break
    return chunks


def dominant_codec(chunks: List[Chunk]) -> Optional[str]:
    tally: Dict[int, Tuple[int, int]] = {}
    has_raw = False
    for c in chunks:
        if c.type in CODEC_NAMES:
            size, count = tally.get(c.type, (0, 0))
            tally[c.type] = (size + c.comp_length, count + 1)
        elif c.type == CHUNK_RAW:
            has_raw = True
    if tally:
        order = list(CODEC_NAMES)
        best = max(tally, key=lambda t: (tally[t][0], tally[t][1], -order.index(t)))
        return CODEC_NAMES[best]
    return "raw" if has_raw else None


def sniff_fork_codec(data: bytes, koly: KolyBlock) -> Optional[str]:
    if not koly.data_fork_length:
        return None
    head = read_bytes(data, koly.data_fork_offset, min(8, koly.data_fork_length)) or b""
    for prologue, name in FORK_PROLOGUES:
        if head.startswith(prologue):
            return name
    return "raw"


def adc_decompress(src: bytes, max_out: int) -> bytes:
    """Apple Data Compression: literal runs plus 2- and 3-byte back references."""
    out = bytearray()
    i = 0
    n_src = len(src)
    while i < n_src and len(out) < max_out:
        b = src[i]
        if b & 0x80:
            n = (b & 0x7F) + 1
            out += src[i + 1 : i + 1 + n]
            i += 1 + n
            continue
        if b & 0x40:
            if i + 2 >= n_src:
                break
            n = (b & 0x3F) + 4
            dist = ((src[i + 1] << 8) | src[i + 2]) + 1
            i += 3
        else:
            if i + 1 >= n_src:
                break
            n = ((b >> 2) & 0x0F) + 3
            dist = (((b & 0x03) << 8) | src[i + 1]) + 1
            i += 2
        if dist > len(out):
            raise ValueError(f"ADC back reference {dist} before start of output")
        for _ in range(n):
            out.append(out[-dist])
    return bytes(out[:max_out])


def _decompress_chunk(ctype: int, blob: bytes, max_out: int) -> bytes:
    if ctype == CHUNK_RAW:
        return blob[:max_out]
    if ctype == CHUNK_ZLIB:
        return zlib.decompressobj().decompress(blob, max_out)
    if ctype == CHUNK_BZIP2:
        return bz2.BZ2Decompressor().decompress(blob, max_length=max_out)
    if ctype == CHUNK_LZMA:
        return lzma.LZMADecompressor().decompress(blob, max_length=max_out)
    if ctype == CHUNK_ADC:
        return adc_decompress(blob, max_out)
    # Zero-fill, comments and LZFSE carry nothing we can read
    return b""


def extract_content(data: bytes, koly: KolyBlock, chunks: List[Chunk], *, max_bytes: int) -> bytes:
    if not chunks:
        start = koly.data_fork_offset
        return data[start : start + min(koly.data_fork_length, max_bytes)]

    out = bytearray()
    for c in chunks:
        remaining = max_bytes - len(out)
        if remaining <= 0:
            break
        blob = read_bytes(data, c.comp_offset, c.comp_length)
        if blob is None:
            logger.debug("DMG chunk out of bounds (offset=%d length=%d)", c.comp_offset, c.comp_length)
            continue
        try:
            out += _decompress_chunk(c.type, blob, remaining)
        except (zlib.error, OSError, EOFError, lzma.LZMAError, ValueError) as e:
            logger.debug("DMG chunk type 0x%08X not decodable: %s", c.type, e)
    return bytes(out)


def _is_bundle_info(obj: Any) -> bool:
    return isinstance(obj, dict) and any(isinstance(k, str) and k.startswith("CFBundle") for k in obj)


def _xml_plists(content: bytes, *, max_hits: int):
    starts = sorted(set(find_all(content, b"<?xml", limit=max_hits) + find_all(content, b"<plist", limit=max_hits)))
    for start in starts[:max_hits]:
        end = content.find(b"</plist>", start, start + MAX_PLIST_BYTES)
        if end != -1:
            yield content[start : end + len(b"</plist>")]


def _binary_plists(content: bytes, *, max_hits: int):
    for start in find_all(content, BPLIST_MAGIC, limit=max_hits):
        window_end = min(len(content), start + MAX_PLIST_BYTES)
        for m in _BPLIST_TRAILER.finditer(content, start + len(BPLIST_MAGIC), window_end):
            tpos = m.start()
            int_size = content[tpos + 6]
            num_objects = be64(content, tpos + 8)
            table_offset = be64(content, tpos + 24)
            if num_objects is None or table_offset is None:
                continue
            # The offset table sits right before the trailer
            if start + table_offset + num_objects * int_size == tpos:
                yield content[start : tpos + BPLIST_TRAILER_SIZE]
                break


def find_bundle_info(content: bytes, *, max_hits: int = 64) -> Dict[str, Any]:
    """First embedded Info.plist-like dictionary (XML or binary)."""
    for candidate in _xml_plists(content, max_hits=max_hits):
        obj = _load_plist(candidate)
        if _is_bundle_info(obj):
            return obj
    for candidate in _binary_plists(content, max_hits=max_hits):
        obj = _load_plist(candidate)
        if _is_bundle_info(obj):
            return obj
    return {}


def analyze_dmg(
    data: bytes,
    *,
    tail_scan_bytes: int = DEFAULT_TAIL_SCAN_BYTES,
    max_decompressed_bytes: int = 64 * 1024 * 1024,
    max_chunks: int = 100_000,
) -> Dict[str, Any]:
    if data[:8] == ENCRYPTED_DMG_MAGIC or data[-8:] == ENCRYPTED_DMG_TRAILER:
        raise UnsupportedFeature("Encrypted disk image", details="Encrypted DMG contents are not parsed.", format="DMG")

    koly_off = locate_koly(data, tail_scan_bytes=tail_scan_bytes)
    if koly_off is None:
        raise UnsupportedFeature("Unrecognized DMG format", details="No UDIF trailer found.", format="DMG")
    koly = parse_koly(data, koly_off)

    raw: Dict[str, Any] = {
        "sector_count": koly.sector_count,
        "data_fork_length": koly.data_fork_length,
    }

    chunks = read_chunks(data, koly, max_chunks=max_chunks)
    codec = dominant_codec(chunks) if chunks else sniff_fork_codec(data, koly)
    if codec:
        raw["compression"] = codec

    content = extract_content(data, koly, chunks, max_bytes=max_decompressed_bytes)
    for key, value in find_bundle_info(content).items():
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            raw.setdefault(key, value)

    raw.update(scan_macho(content))
    return raw
