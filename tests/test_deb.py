from __future__ import annotations

import pytest

from builders import ar_archive, build_deb, tar_gz
from upload_analyzer.analyzer import analyze
from upload_analyzer.deb import analyze_deb, parse_control
from upload_analyzer.errors import StructuralFailure, UnsupportedFeature

CONTROL = """\
Package: foo
Version: 1.0
Architecture: amd64
Maintainer: Jane Doe <jane@example.com>
Installed-Size: 1234
Depends: libc6 (>= 2.31), libssl3
Pre-Depends: dpkg (>= 1.19)
Homepage: https://example.com/foo
Description: short summary
 First line of the long description.
 .
 Second paragraph.
"""


def test_minimal_deb():
    data = build_deb("Package: foo\nVersion: 1.0\nArchitecture: amd64\n")
    out = analyze(data)
    assert out["Format"] == "DEB"
    assert out["Package"] == "foo"
    assert out["Version"] == "1.0"
    assert out["Architecture"] == "amd64"


def test_full_control_fields():
    out = analyze(build_deb(CONTROL))
    assert out["Maintainer"] == "Jane Doe <jane@example.com>"
    assert out["InstalledSize"] == 1234
    assert out["Depends"] == "libc6 (>= 2.31), libssl3"
    assert out["PreDepends"] == "dpkg (>= 1.19)"
    assert out["Homepage"] == "https://example.com/foo"
    assert out["Description"] == "short summary\nFirst line of the long description.\n\nSecond paragraph."
    assert out["Members"] == ["debian-binary", "control.tar.gz", "data.tar.gz"]


def test_control_without_dot_prefix():
    out = analyze(build_deb("Package: bar\nVersion: 2\n", control_path="control"))
    assert out["Package"] == "bar"


def test_parse_control_first_paragraph_and_first_key_wins():
    fields = parse_control("Package: a\nPackage: b\nVersion: 1\n\nPackage: c\n")
    assert fields == {"Package": "a", "Version": "1"}


def test_non_numeric_installed_size_is_dropped():
    out = analyze(build_deb("Package: foo\nInstalled-Size: lots\n"))
    assert "InstalledSize" not in out


def test_xz_control_archive_is_unsupported():
    data = build_deb("Package: foo\n", control_member="control.tar.xz")
    with pytest.raises(UnsupportedFeature):
        analyze_deb(data)
    out = analyze(data)
    assert out.Format == "DEB"
    assert out.kind.value == "unsupported"


def test_missing_control_archive():
    data = ar_archive([("debian-binary", b"2.0\n"), ("data.tar.gz", tar_gz({"./x": b"x"}))])
    with pytest.raises(StructuralFailure) as ei:
        analyze_deb(data)
    assert ei.value.message == "Missing control archive"


def test_control_archive_without_control_file():
    data = ar_archive([("debian-binary", b"2.0\n"), ("control.tar.gz", tar_gz({"./md5sums": b""}))])
    with pytest.raises(StructuralFailure) as ei:
        analyze_deb(data)
    assert ei.value.message == "Control file not found in control archive"


def test_corrupt_control_archive():
    data = ar_archive([("debian-binary", b"2.0\n"), ("control.tar.gz", b"\x1f\x8b\x08\x00garbage")])
    out = analyze(data)
    assert out.error == "Corrupt control archive"
    assert out.Format == "DEB"
