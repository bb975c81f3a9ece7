from __future__ import annotations

import io
import logging
import tarfile
import zlib
from typing import Any, Dict, Optional

from upload_analyzer.archive import list_ar_members, read_member
from upload_analyzer.errors import StructuralFailure, UnsupportedFeature

logger = logging.getLogger(__name__)

DEBIAN_BINARY = "debian-binary"
CONTROL_PREFIX = "control.tar"
SUPPORTED_CONTROL = "control.tar.gz"
CONTROL_FILE_NAMES = ("control", "./control")

MAX_TAR_ENTRIES = 256

INT_FIELDS = ("Installed-Size",)


def parse_control(text: str) -> Dict[str, str]:
    """
    Parse the first paragraph of a deb822 control file.

    Continuation lines are appended with a newline; a lone "." stands for an
    empty line. The first occurrence of a field wins.
    """
    fields: Dict[str, str] = {}
    key: Optional[str] = None
    for line in text.splitlines():
        if not line.strip():
            if fields:
                break
            continue
        if line[0] in " \t":
            if key is None:
                continue
            cont = line.strip()
            fields[key] += "\n" + ("" if cont == "." else cont)
            continue
        if ":" not in line:
            key = None
            continue
        name, value = line.split(":", 1)
        name = name.strip()
        if name in fields:
            key = None
            continue
        fields[name] = value.strip()
        key = name
    return fields


def read_control_file(archive: bytes, *, max_bytes: int) -> Optional[bytes]:
    """The `control` member of a gzip'd tar, or None when absent."""
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tf:
        for i, ti in enumerate(tf):
            if i >= MAX_TAR_ENTRIES:
                break
            if ti.name in CONTROL_FILE_NAMES and ti.isfile():
                f = tf.extractfile(ti)
                if f is None:
                    return None
                return f.read(max_bytes)
    return None


def analyze_deb(data: bytes, *, max_members: int = 1024, max_control_bytes: int = 1024 * 1024) -> Dict[str, Any]:
    members, ar_errors = list_ar_members(data, max_members=max_members)
    for e in ar_errors:
        logger.debug("ar walk issue: %s", e)

    by_name = {m.path: m for m in members}
    if DEBIAN_BINARY not in by_name:
        raise StructuralFailure("Missing debian-binary member", format="DEB")

    control = next((m for m in members if m.path.startswith(CONTROL_PREFIX)), None)
    if control is None:
        raise StructuralFailure("Missing control archive", details="No control.tar.* member in ar archive.", format="DEB")
    if control.path != SUPPORTED_CONTROL:
        raise UnsupportedFeature(
            "Unsupported control archive compression",
            details=f"{control.path} (only {SUPPORTED_CONTROL} is supported)",
            format="DEB",
        )
    if control.size > max_control_bytes:
        raise StructuralFailure(
            "Control archive too large",
            details=f"{control.size} bytes exceeds {max_control_bytes}",
            format="DEB",
        )

    try:
        blob = read_control_file(read_member(data, control), max_bytes=max_control_bytes)
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise StructuralFailure("Corrupt control archive", details=f"{type(e).__name__}: {e}", format="DEB") from e
    if blob is None:
        raise StructuralFailure("Control file not found in control archive", format="DEB")

    raw: Dict[str, Any] = {}
    for name, value in parse_control(blob.decode("utf-8", errors="replace")).items():
        if name in INT_FIELDS:
            try:
                raw[name] = int(value)
            except ValueError:
                logger.debug("Ignoring non-numeric %s: %r", name, value)
            continue
        raw[name] = value
    raw["members"] = [m.path for m in members]
    return raw
