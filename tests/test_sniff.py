from __future__ import annotations

import json

import pytest

from builders import CFB_SIGNATURE, CHUNK_RAW, ar_archive, build_deb, build_dmg, build_pe, build_rpm
from upload_analyzer.analyzer import get_file_info
from upload_analyzer.model import DetectedFormat
from upload_analyzer.sniff import locate_koly, sniff


def test_two_byte_mz_is_invalid_binary():
    info = sniff(b"MZ")
    assert info.Format is DetectedFormat.INVALID
    assert info.to_dict() == {"Format": "Invalid binary", "Size": 2}


def test_get_file_info_returns_json_text():
    assert json.loads(get_file_info(b"MZ")) == {"Format": "Invalid binary", "Size": 2}


@pytest.mark.parametrize(
    "data",
    [b"", b"\x00", b"\xD0\xCF\x11\xE0\xA1\xB1\x1A", b"\xED\xAB\xEE"],
)
def test_short_inputs_are_invalid(data):
    assert sniff(data).Format is DetectedFormat.INVALID


def test_unknown_bytes():
    info = sniff(b"just some text file\n")
    assert info.Format is DetectedFormat.UNKNOWN
    assert info.to_dict() == {"Format": "Unknown", "Size": 20}


def test_mz_without_pe_header_is_invalid():
    data = b"MZ" + b"\x00" * 200
    assert sniff(data).Format is DetectedFormat.INVALID


def test_pe_versions():
    assert sniff(build_pe()).FormatVersion == "PE32"
    assert sniff(build_pe(pe32_plus=True, machine=0x8664)).FormatVersion == "PE32+"


def test_cfb_is_msi_with_header_version():
    data = bytearray(CFB_SIGNATURE + b"\x00" * 504)
    data[0x18:0x1C] = b"\x3e\x00\x03\x00"
    info = sniff(bytes(data))
    assert info.Format is DetectedFormat.MSI
    assert info.FormatVersion == "3.62"


def test_dmg_from_koly_trailer():
    info = sniff(build_dmg([(CHUNK_RAW, b"\x00" * 512)]))
    assert info.Format is DetectedFormat.DMG
    assert info.FormatVersion == "4"


def test_dmg_with_trailing_junk():
    data = build_dmg([(CHUNK_RAW, b"\x00" * 512)], tail_junk=b"\xff" * 100)
    assert locate_koly(data) == len(data) - 612
    assert sniff(data).Format is DetectedFormat.DMG


def test_encrypted_dmg_header():
    assert sniff(b"encrcdsa" + b"\x00" * 100).Format is DetectedFormat.DMG


def test_deb_reports_debian_binary_version():
    info = sniff(build_deb("Package: foo\n"))
    assert info.Format is DetectedFormat.DEB
    assert info.FormatVersion == "2.0"


def test_plain_ar_archive_is_not_deb():
    data = ar_archive([("hello.o", b"\x7fELF" + b"\x00" * 20)])
    assert sniff(data).Format is DetectedFormat.UNKNOWN


def test_rpm_lead_version():
    info = sniff(build_rpm([]))
    assert info.Format is DetectedFormat.RPM
    assert info.FormatVersion == "3.0"


def test_cfb_signature_takes_priority_over_everything():
    # A compound file that happens to carry a koly-like tail is still an MSI
    data = CFB_SIGNATURE + b"\x00" * 504 + b"koly" + b"\x00" * 508
    assert sniff(data).Format is DetectedFormat.MSI
