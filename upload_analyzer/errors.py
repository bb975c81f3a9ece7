from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    DETECTION = "detection"
    STRUCTURAL = "structural"
    UNSUPPORTED = "unsupported"
    EXTRACTION = "extraction"


class AnalysisFailure(Exception):
    """
    Base for failures that stop a decoder.

    Carries a kind tag, a human-readable message, optional details and the
    format when classification had already succeeded.
    """

    kind = ErrorKind.EXTRACTION

    def __init__(self, message: str, *, details: Optional[str] = None, format: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.format = format

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, details={self.details!r}, format={self.format!r})"


class DetectionFailure(AnalysisFailure):
    kind = ErrorKind.DETECTION


class StructuralFailure(AnalysisFailure):
    kind = ErrorKind.STRUCTURAL


class UnsupportedFeature(AnalysisFailure):
    kind = ErrorKind.UNSUPPORTED


class ExtractionFailure(AnalysisFailure):
    """A single field, table, stream or resource could not be decoded."""

    kind = ErrorKind.EXTRACTION


def err(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    d = {"code": code, "message": message}
    d.update(extra)
    return d
