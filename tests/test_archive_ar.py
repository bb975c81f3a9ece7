from __future__ import annotations

from builders import ar_archive
from upload_analyzer.archive import list_ar_members, read_member


def test_members_are_listed_in_order():
    data = ar_archive([("debian-binary", b"2.0\n"), ("odd.txt", b"abc"), ("even.txt", b"ab")])
    members, errors = list_ar_members(data)
    assert errors == []
    assert [m.path for m in members] == ["debian-binary", "odd.txt", "even.txt"]
    assert read_member(data, members[1]) == b"abc"
    assert read_member(data, members[2]) == b"ab"
    assert members[0].mode == 0o100644


def test_gnu_long_names():
    table = b"a_very_long_member_name.txt/\n"
    data = ar_archive([("//", table), ("/0", b"payload")])
    members, errors = list_ar_members(data)
    assert errors == []
    assert [m.path for m in members] == ["a_very_long_member_name.txt"]
    assert read_member(data, members[0]) == b"payload"


def test_bsd_long_names():
    name = b"another_long_member_name.bin"
    data = ar_archive([(f"#1/{len(name)}", name + b"DATA")])
    members, _ = list_ar_members(data)
    assert members[0].path == name.decode()
    assert read_member(data, members[0]) == b"DATA"


def test_truncated_member_stops_walk():
    data = ar_archive([("debian-binary", b"2.0\n"), ("big", b"x" * 100)])[:-50]
    members, errors = list_ar_members(data)
    assert [m.path for m in members] == ["debian-binary"]
    assert errors[0]["code"] == "E_AR_MEMBER_TRUNCATED"


def test_unsafe_paths_are_skipped():
    data = ar_archive([("../evil", b"x"), ("ok", b"y")])
    members, errors = list_ar_members(data)
    assert [m.path for m in members] == ["ok"]
    assert errors[0]["code"] == "E_AR_MEMBER_UNSAFE_PATH"


def test_bad_magic():
    members, errors = list_ar_members(b"not an archive")
    assert members == []
    assert errors[0]["code"] == "E_AR_BAD_MAGIC"
