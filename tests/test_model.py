from upload_analyzer.errors import ErrorKind, StructuralFailure, UnsupportedFeature
from upload_analyzer.model import AnalysisError, DetectedFormat, FileInfo, PeSection


def test_file_info_omits_missing_version():
    info = FileInfo(Format=DetectedFormat.PE, Size=1024)
    assert info.to_dict() == {"Format": "PE", "Size": 1024}


def test_file_info_with_version():
    info = FileInfo(Format=DetectedFormat.MSI, Size=4096, FormatVersion="3.62")
    assert info.to_dict() == {"Format": "MSI", "Size": 4096, "FormatVersion": "3.62"}


def test_analysis_error_from_failure():
    exc = StructuralFailure("Corrupt RPM header", details="main header: bad magic at offset 136", format="RPM")
    e = AnalysisError.from_failure(exc)
    assert e.kind is ErrorKind.STRUCTURAL
    assert e.to_dict() == {
        "error": "Corrupt RPM header",
        "details": "main header: bad magic at offset 136",
        "Format": "RPM",
        "kind": "structural",
    }


def test_failure_kinds():
    assert UnsupportedFeature("x").kind is ErrorKind.UNSUPPORTED
    assert StructuralFailure("x").format is None


def test_analysis_error_round_trip_validation():
    """A dumped error can be re-validated by the model."""
    e = AnalysisError(error="Invalid binary", kind=ErrorKind.DETECTION)
    e2 = AnalysisError.model_validate(e.to_dict())
    assert e2 == e
    assert AnalysisError.model_validate_json(e.model_dump_json()).kind is ErrorKind.DETECTION


def test_pe_section_dump():
    s = PeSection(name=".text", virtual_address=0x1000, virtual_size=0x10, raw_data_size=0x200, characteristics=0x60000020)
    assert s.model_dump()["name"] == ".text"
