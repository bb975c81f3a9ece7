from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from upload_analyzer.errors import AnalysisFailure, ErrorKind


class DetectedFormat(str, Enum):
    PE = "PE"
    MSI = "MSI"
    DMG = "DMG"
    DEB = "DEB"
    RPM = "RPM"
    UNKNOWN = "Unknown"
    INVALID = "Invalid binary"


class FileInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    Format: DetectedFormat
    Size: int
    FormatVersion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class AnalysisError(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: str
    details: Optional[str] = None
    Format: Optional[str] = None
    kind: ErrorKind = ErrorKind.EXTRACTION

    @classmethod
    def from_failure(cls, exc: AnalysisFailure) -> "AnalysisError":
        return cls(error=exc.message, details=exc.details, Format=exc.format, kind=exc.kind)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class PeSection(BaseModel):
    name: str
    virtual_address: int
    virtual_size: int
    raw_data_size: int
    characteristics: int
