from __future__ import annotations

from typing import Any, Dict, Mapping

from upload_analyzer.model import DetectedFormat

# Raw decoder key -> canonical key, per format. Each raw fact has exactly one
# destination; when two raw keys share a destination, the earlier one in the
# decoder's output wins and the later one is a fallback.
PE_KEYS: Dict[str, str] = {
    "architecture": "Architecture",
    "machine": "Machine",
    "time_date_stamp": "Timestamp",
    "address_of_entry_point": "EntryPoint",
    "image_base": "ImageBase",
    "subsystem": "Subsystem",
    "size_of_image": "SizeOfImage",
    "characteristics": "Characteristics",
    "dll_characteristics": "DllCharacteristics",
    "is_dll": "IsDLL",
    "CompanyName": "CompanyName",
    "ProductName": "ProductName",
    "FileVersion": "FileVersion",
    "ProductVersion": "ProductVersion",
    "FileDescription": "FileDescription",
    "InternalName": "InternalName",
    "OriginalFilename": "OriginalFilename",
    "LegalCopyright": "LegalCopyright",
    "LegalTrademarks": "LegalTrademarks",
    "Comments": "Comments",
    "PrivateBuild": "PrivateBuild",
    "SpecialBuild": "SpecialBuild",
    "FixedFileVersion": "FileVersion",
    "FixedProductVersion": "ProductVersion",
    "signed_by": "SignedBy",
    "installer_type": "InstallerType",
    "embedded_msi": "EmbeddedMSI",
    "embedded_msi_offset": "EmbeddedMSIOffset",
    "embedded_msi_ProductName": "ProductName",
    "embedded_msi_Manufacturer": "Manufacturer",
    "embedded_msi_ProductVersion": "ProductVersion",
    "sections": "Sections",
    "imports": "Imports",
    "exports": "Exports",
}

MSI_KEYS: Dict[str, str] = {
    "ProductName": "ProductName",
    "ProductVersion": "ProductVersion",
    "Manufacturer": "Manufacturer",
    "ProductCode": "ProductCode",
    "UpgradeCode": "UpgradeCode",
    "ProductLanguage": "ProductLanguage",
    "ARPURLINFOABOUT": "Homepage",
    "template_architecture": "Architecture",
    "Title": "Title",
    "Subject": "Subject",
    "Author": "Author",
    "Keywords": "Keywords",
    "Comments": "Comments",
    "Template": "Template",
    "LastAuthor": "LastSavedBy",
    "RevisionNumber": "PackageCode",
    "CreateTime": "CreationTime",
    "LastSaveTime": "LastSavedTime",
    "PageCount": "MinimumInstallerVersion",
    "CreatingApplication": "CreatingApplication",
    "installer_framework": "InstallerFramework",
    "components": "Components",
    "features": "Features",
    "files": "Files",
    "custom_actions": "CustomActions",
}

DMG_KEYS: Dict[str, str] = {
    "compression": "Compression",
    "sector_count": "SectorCount",
    "data_fork_length": "DataForkLength",
    "CFBundleName": "ProductName",
    "CFBundleDisplayName": "DisplayName",
    "CFBundleShortVersionString": "ProductVersion",
    "CFBundleVersion": "BundleVersion",
    "CFBundleIdentifier": "BundleIdentifier",
    "CFBundleExecutable": "BundleExecutable",
    "CFBundleIconFile": "IconFile",
    "CFBundlePackageType": "PackageType",
    "CFBundleGetInfoString": "FileDescription",
    "LSMinimumSystemVersion": "MinimumSystemVersion",
    "LSApplicationCategoryType": "ApplicationCategory",
    "NSPrincipalClass": "PrincipalClass",
    "NSHumanReadableCopyright": "LegalCopyright",
    "architecture": "Architecture",
    "architectures": "Architectures",
}

DEB_KEYS: Dict[str, str] = {
    "Package": "Package",
    "Version": "Version",
    "Architecture": "Architecture",
    "Maintainer": "Maintainer",
    "Description": "Description",
    "Depends": "Depends",
    "Pre-Depends": "PreDepends",
    "Recommends": "Recommends",
    "Suggests": "Suggests",
    "Conflicts": "Conflicts",
    "Provides": "Provides",
    "Replaces": "Replaces",
    "Section": "Section",
    "Priority": "Priority",
    "Homepage": "Homepage",
    "Source": "Source",
    "Installed-Size": "InstalledSize",
    "members": "Members",
}

RPM_KEYS: Dict[str, str] = {
    "NAME": "ProductName",
    "VERSION": "ProductVersion",
    "RELEASE": "Release",
    "SUMMARY": "Summary",
    "DESCRIPTION": "Description",
    "BUILDTIME": "BuildTime",
    "SIZE": "InstalledSize",
    "VENDOR": "Vendor",
    "LICENSE": "License",
    "PACKAGER": "Packager",
    "GROUP": "Group",
    "URL": "Homepage",
    "OS": "OS",
    "ARCH": "Architecture",
    "lead_arch": "Architecture",
    "SOURCERPM": "SourceRpm",
    "package_type": "PackageType",
}

FORMAT_KEYS: Dict[DetectedFormat, Dict[str, str]] = {
    DetectedFormat.PE: PE_KEYS,
    DetectedFormat.MSI: MSI_KEYS,
    DetectedFormat.DMG: DMG_KEYS,
    DetectedFormat.DEB: DEB_KEYS,
    DetectedFormat.RPM: RPM_KEYS,
}


def canonical_schema() -> set:
    keys = {"Format"}
    for table in FORMAT_KEYS.values():
        keys.update(table.values())
    return keys


def _clean(value: Any) -> Any:
    """Stripped value, or None when there is nothing to report."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (list, tuple)):
        items = [v for v in (_clean(x) for x in value) if v is not None]
        return items or None
    if isinstance(value, dict):
        return {k: v for k, v in value.items() if v is not None} or None
    return value


def normalize(fmt: DetectedFormat, raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Project a decoder's raw facts onto the canonical schema.

    `Format` comes first. Unmapped raw keys and empty values are dropped and
    a canonical key is never overwritten once set.
    """
    table = FORMAT_KEYS[fmt]
    out: Dict[str, Any] = {"Format": fmt.value}
    for raw_key, value in raw.items():
        key = table.get(raw_key)
        if key is None or key in out:
            continue
        value = _clean(value)
        if value is None:
            continue
        out[key] = value
    return out
