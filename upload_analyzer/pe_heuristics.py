from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID

from upload_analyzer.msi import analyze_msi

logger = logging.getLogger(__name__)

CFB_SIGNATURE = b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"

WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002

# DER encoding of OID 2.5.4.3 (commonName)
_CN_OID_DER = b"\x06\x03\x55\x04\x03"
_DER_STRING_TAGS = {
    0x0C: "utf-8",  # UTF8String
    0x13: "ascii",  # PrintableString
    0x14: "latin-1",  # T61String
    0x16: "ascii",  # IA5String
    0x1E: "utf-16-be",  # BMPString
}
# UTCTime / GeneralizedTime headers that close the validity block before a subject
_DER_TIME_MARKERS = (b"\x17\x0d", b"\x18\x0f")

# Fields lifted from an MSI carried inside the image
EMBEDDED_MSI_FIELDS = ("ProductName", "Manufacturer", "ProductVersion")

# Ordered: the first installer whose marker appears wins.
INSTALLER_MARKERS: Tuple[Tuple[str, Tuple[bytes, ...]], ...] = (
    ("Inno Setup", (b"Inno Setup", b"InnoSetupVersion", b"JR.Inno.Setup")),
    ("NSIS (Nullsoft)", (b"Nullsoft Install System", b"NullsoftInst", b"NSIS Error")),
    ("InstallShield", (b"InstallShield",)),
    ("WiX Toolset", (b"Windows Installer XML", b"WiX Toolset", b"WixBundleManifest", b"WixStandardBootstrapperApplication")),
    ("Wise Installer", (b"Wise Installation", b"WiseMain")),
    ("Setup Factory", (b"Setup Factory",)),
    ("Smart Install Maker", (b"Smart Install Maker",)),
)

# Section names written by specific bootstrappers
INSTALLER_SECTIONS = {
    ".wixburn": "WiX Toolset",
}


def security_directory_listed(pe: Dict[str, Any]) -> bool:
    """
    Presence-only check for the certificate table.
    NOTE: This directory uses FILE OFFSET + SIZE (not RVA).
    """
    size = int(pe.get("security_table_size", 0) or 0)
    off = int(pe.get("security_table_offset", 0) or 0)
    return size > 0 and off > 0


def signed_data_blob(pe: Dict[str, Any], data: bytes) -> Optional[bytes]:
    """
    Return the PKCS#7 SignedData of the first WIN_CERTIFICATE, or None when
    the table is absent, out of bounds, truncated or of another type.
    """
    if not security_directory_listed(pe):
        return None
    off = int(pe["security_table_offset"])
    size = int(pe["security_table_size"])
    if off + size > len(data) or size < 8:
        return None

    dw_len = int.from_bytes(data[off : off + 4], "little")
    cert_type = int.from_bytes(data[off + 6 : off + 8], "little")
    if dw_len < 8 or dw_len > size:
        return None
    if cert_type != WIN_CERT_TYPE_PKCS_SIGNED_DATA:
        return None
    return data[off + 8 : off + dw_len]


def _common_name(name: x509.Name) -> Optional[str]:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return None
    value = attrs[0].value
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


def _signer_from_certificates(certs: List[x509.Certificate]) -> Optional[str]:
    issuers = {c.issuer for c in certs}
    leaves = [c for c in certs if c.subject not in issuers] or certs
    for cert in leaves:
        cn = _common_name(cert.subject)
        if cn:
            return cn
    return None


def _der_string_at(blob: bytes, off: int) -> Optional[str]:
    if off + 2 > len(blob):
        return None
    tag = blob[off]
    length = blob[off + 1]
    if tag not in _DER_STRING_TAGS or length & 0x80:
        return None
    raw = blob[off + 2 : off + 2 + length]
    if len(raw) != length:
        return None
    return raw.decode(_DER_STRING_TAGS[tag], errors="replace")


def _signer_from_der_scan(blob: bytes, *, max_hits: int = 64) -> Optional[str]:
    """
    Best-effort walk for blobs cryptography refuses.

    Takes the first commonName that follows a validity block, i.e. the
    subject of the first certificate in the set.
    """
    first_cn = None
    pos = blob.find(_CN_OID_DER)
    hits = 0
    while pos != -1 and hits < max_hits:
        hits += 1
        cn = _der_string_at(blob, pos + len(_CN_OID_DER))
        if cn:
            first_cn = first_cn or cn
            window = blob[max(0, pos - 96) : pos]
            if any(m in window for m in _DER_TIME_MARKERS):
                return cn
        pos = blob.find(_CN_OID_DER, pos + 1)
    return first_cn


def signer_common_name(blob: bytes) -> Optional[str]:
    try:
        certs = pkcs7.load_der_pkcs7_certificates(blob)
    except (ValueError, UnsupportedAlgorithm) as e:
        logger.debug("PKCS#7 load failed, falling back to DER scan: %s", e)
        return _signer_from_der_scan(blob)
    return _signer_from_certificates(certs) or _signer_from_der_scan(blob)


def installer_type(data: bytes, *, section_names: List[str], resource_names: List[str]) -> Optional[str]:
    """
    Match known installer markers against the image bytes (ASCII and
    UTF-16LE), named resources and section names.
    """
    for name in section_names:
        hit = INSTALLER_SECTIONS.get(name.strip().lower())
        if hit:
            return hit

    resources_blob = "\n".join(resource_names).encode("utf-8", errors="replace").lower()
    for label, markers in INSTALLER_MARKERS:
        for marker in markers:
            if marker in data or marker.decode("ascii").encode("utf-16le") in data:
                return label
            if marker.lower() in resources_blob:
                return label
    return None


def embedded_msi_offset(data: bytes) -> Optional[int]:
    """Offset of a compound-file signature past the start of the image."""
    pos = data.find(CFB_SIGNATURE, 1)
    return pos if pos > 0 else None


def embedded_msi_metadata(data: bytes, offset: int, *, max_rows: int = 1000) -> Dict[str, str]:
    try:
        raw = analyze_msi(data[offset:], max_rows=max_rows, max_list_items=1)
    except Exception as e:
        logger.debug("Embedded MSI at offset %d unreadable: %s", offset, e)
        return {}
    out: Dict[str, str] = {}
    for key in EMBEDDED_MSI_FIELDS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            out[key] = value.strip()
    return out


def compute_pe_heuristics(pe: Dict[str, Any], data: bytes) -> Dict[str, Any]:
    """
    Derived fields from a parsed PE dict: signer, installer type, embedded MSI.
    Static only; never executes or unpacks anything.
    """
    out: Dict[str, Any] = {
        "security_directory_listed": security_directory_listed(pe),
        "signed_by": None,
        "installer_type": None,
        "embedded_msi": None,
        "embedded_msi_offset": None,
        "embedded_msi_metadata": {},
    }

    blob = signed_data_blob(pe, data)
    if blob:
        out["signed_by"] = signer_common_name(blob)

    out["installer_type"] = installer_type(
        data,
        section_names=[s.get("name", "") for s in pe.get("sections", [])],
        resource_names=list(pe.get("resource_names", [])),
    )

    msi_off = embedded_msi_offset(data)
    if msi_off is not None:
        out["embedded_msi"] = True
        out["embedded_msi_offset"] = msi_off
        out["embedded_msi_metadata"] = embedded_msi_metadata(data, msi_off)
    return out
