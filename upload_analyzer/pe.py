from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from upload_analyzer.binread import (
    align4,
    read_bytes,
    read_c_string,
    read_utf16le_zstring,
    safe_ascii,
    u16,
    u32,
    u64,
)
from upload_analyzer.errors import StructuralFailure, err
from upload_analyzer.model import PeSection
from upload_analyzer.pe_heuristics import compute_pe_heuristics

logger = logging.getLogger(__name__)

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\x00\x00"

IMAGE_FILE_DLL = 0x2000

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B

# Data directory indices
DIR_EXPORT = 0
DIR_IMPORT = 1
DIR_RESOURCE = 2
DIR_SECURITY = 4

# Resource constants
RT_VERSION = 16
RESOURCE_MAX_DEPTH = 3
VS_FIXEDFILEINFO_SIGNATURE = 0xFEEF04BD

MACHINE_ARCH = {
    0x14C: "x86",
    0x8664: "x64",
    0x1C0: "ARM",
    0x1C4: "ARM",
    0xAA64: "ARM64",
}

SUBSYSTEMS = {
    1: "Native",
    2: "Windows GUI",
    3: "Windows Console",
    5: "OS/2 Console",
    7: "POSIX Console",
    9: "Windows CE GUI",
    10: "EFI Application",
    11: "EFI Boot Service Driver",
    12: "EFI Runtime Driver",
    13: "EFI ROM",
    14: "Xbox",
    16: "Windows Boot Application",
}

VERSION_STRING_KEYS = (
    "CompanyName",
    "ProductName",
    "FileVersion",
    "ProductVersion",
    "FileDescription",
    "InternalName",
    "OriginalFilename",
    "LegalCopyright",
    "LegalTrademarks",
    "Comments",
    "PrivateBuild",
    "SpecialBuild",
)

ResourceId = Union[int, str]


@dataclass(frozen=True)
class PeParseResult:
    present: bool
    pe: Optional[Dict[str, Any]]
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _rva_to_offset(rva: int, *, sections: List[Dict[str, Any]], file_len: int) -> Optional[int]:
    if rva <= 0:
        return None
    for s in sections:
        va = int(s.get("virtual_address", 0) or 0)
        vs = int(s.get("virtual_size", 0) or 0)
        raw_ptr = int(s.get("raw_ptr", 0) or 0)
        raw_size = int(s.get("raw_data_size", 0) or 0)
        span = max(vs, raw_size)
        if span <= 0:
            continue
        if va <= rva < va + span:
            off = raw_ptr + (rva - va)
            if 0 <= off < file_len:
                return off
    return None


def _parse_imports(
    data: bytes,
    *,
    is_pe32_plus: bool,
    sections: List[Dict[str, Any]],
    import_rva: int,
    max_dlls: int = 256,
    max_funcs_per_dll: int = 2048,
    max_name_len: int = 512,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Walk IMAGE_IMPORT_DESCRIPTORs in table order.

    Each entry is {"dll": name, "functions": [...]} where ordinal-only thunks
    are kept as "#<ordinal>". Order is walk order, duplicates dropped.
    """
    errors: List[Dict[str, Any]] = []
    imports: List[Dict[str, Any]] = []

    base_off = _rva_to_offset(import_rva, sections=sections, file_len=len(data))
    if base_off is None:
        return [], [
            err(
                "E_PE_IMPORT_RVA_UNMAPPABLE",
                "Import directory RVA could not be mapped to file offset.",
                import_rva=import_rva,
            )
        ]

    desc_off = base_off
    entry_size = 8 if is_pe32_plus else 4
    ordinal_flag = 0x8000000000000000 if is_pe32_plus else 0x80000000

    for dll_index in range(max_dlls + 1):
        if dll_index == max_dlls:
            errors.append(err("E_PE_IMPORT_TOO_MANY_DLLS", f"Import DLL count exceeded max_dlls={max_dlls}."))
            break

        desc = read_bytes(data, desc_off, 20)
        if desc is None:
            errors.append(err("E_PE_IMPORT_DESC_TRUNCATED", "Import descriptor table truncated.", desc_off=desc_off))
            break
        if desc == b"\x00" * 20:
            break
        desc_off += 20

        original_first_thunk = u32(desc, 0) or 0
        name_rva = u32(desc, 12) or 0
        first_thunk = u32(desc, 16) or 0

        name_off = _rva_to_offset(name_rva, sections=sections, file_len=len(data))
        dll_name = read_c_string(data, name_off, max_len=max_name_len) if name_off is not None else None
        if not dll_name:
            errors.append(err("E_PE_IMPORT_DLL_NAME_UNREADABLE", "Import DLL name could not be read.", name_rva=name_rva))
            continue

        thunk_rva = original_first_thunk or first_thunk
        thunk_off = _rva_to_offset(thunk_rva, sections=sections, file_len=len(data))
        if thunk_off is None:
            errors.append(err("E_PE_IMPORT_THUNK_UNMAPPABLE", "Import thunk RVA could not be mapped.", thunk_rva=thunk_rva, dll=dll_name))
            continue

        funcs: List[str] = []
        seen = set()
        for idx in range(max_funcs_per_dll):
            ent_off = thunk_off + idx * entry_size
            val = u64(data, ent_off) if is_pe32_plus else u32(data, ent_off)
            if val is None:
                errors.append(err("E_PE_IMPORT_THUNK_TRUNCATED", "Import thunk table truncated.", dll=dll_name))
                break
            if val == 0:
                break

            if val & ordinal_flag:
                name = f"#{val & 0xFFFF}"
            else:
                ibn_off = _rva_to_offset(int(val & 0x7FFFFFFF), sections=sections, file_len=len(data))
                name = read_c_string(data, ibn_off + 2, max_len=max_name_len) if ibn_off is not None else None
                if not name:
                    errors.append(err("E_PE_IMPORT_BY_NAME_UNREADABLE", "Imported function name unreadable.", dll=dll_name))
                    continue

            if name not in seen:
                seen.add(name)
                funcs.append(name)

        imports.append({"dll": dll_name, "functions": funcs})

    return imports, errors


def _parse_exports(
    data: bytes,
    *,
    sections: List[Dict[str, Any]],
    export_rva: int,
    max_names: int = 4096,
    max_name_len: int = 512,
) -> Tuple[List[str], List[Dict[str, Any]]]:
    base_off = _rva_to_offset(export_rva, sections=sections, file_len=len(data))
    if base_off is None:
        return [], [err("E_PE_EXPORT_RVA_UNMAPPABLE", "Export directory RVA could not be mapped to file offset.", export_rva=export_rva)]
    if base_off + 40 > len(data):
        return [], [err("E_PE_EXPORT_DIR_TRUNCATED", "Export directory truncated.", export_off=base_off)]

    errors: List[Dict[str, Any]] = []
    num_names = u32(data, base_off + 24) or 0
    addr_names_rva = u32(data, base_off + 32) or 0

    if num_names > max_names:
        errors.append(err("E_PE_EXPORT_TOO_MANY_NAMES", f"Export name count exceeded max_names={max_names}.", num_names=num_names))
        num_names = max_names

    names: List[str] = []
    if not num_names:
        return names, errors

    names_off = _rva_to_offset(addr_names_rva, sections=sections, file_len=len(data)) if addr_names_rva else None
    if names_off is None:
        errors.append(err("E_PE_EXPORT_TABLES_UNMAPPABLE", "Export name pointer table unmappable.", addr_names_rva=addr_names_rva))
        return names, errors

    seen = set()
    for i in range(num_names):
        ptr_rva = u32(data, names_off + i * 4)
        if ptr_rva is None:
            errors.append(err("E_PE_EXPORT_NAMES_TRUNCATED", "Export name pointer table truncated.", index=i))
            break
        ptr_off = _rva_to_offset(ptr_rva, sections=sections, file_len=len(data))
        s = read_c_string(data, ptr_off, max_len=max_name_len) if ptr_off is not None else None
        if not s:
            errors.append(err("E_PE_EXPORT_NAME_UNREADABLE", "Export name unreadable.", name_rva=ptr_rva))
            continue
        if s not in seen:
            seen.add(s)
            names.append(s)
    return names, errors


def _format_version(ms: int, ls: int) -> str:
    return f"{ms >> 16}.{ms & 0xFFFF}.{ls >> 16}.{ls & 0xFFFF}"


def _parse_versioninfo(
    vs: bytes,
    *,
    max_pairs: int = 200,
    max_key_chars: int = 200,
    max_val_chars: int = 2000,
) -> Tuple[Dict[str, str], List[Dict[str, Any]]]:
    """
    Parse VS_VERSIONINFO.

    Returns the string pairs of the first StringTable holding any non-empty
    value, plus "FixedFileVersion"/"FixedProductVersion" from
    VS_FIXEDFILEINFO when present.
    """
    errors: List[Dict[str, Any]] = []
    fixed: Dict[str, str] = {}

    def read_block(off: int, limit: int) -> Optional[Tuple[int, int, str, int, int]]:
        # (wValueLength, wType, key, value_off, block_end)
        if off < 0 or off + 6 > limit:
            return None
        wlen = u16(vs, off)
        wvlen = u16(vs, off + 2)
        wtype = u16(vs, off + 4)
        if wlen is None or wvlen is None or wtype is None or wlen < 6:
            return None
        end = off + wlen
        if end > limit:
            return None
        key, consumed = read_utf16le_zstring(vs, off + 6, max_chars=max_key_chars)
        if key is None or off + 6 + consumed > end:
            return None
        return wvlen, wtype, key, align4(off + 6 + consumed), end

    def children(first: int, end: int):
        cur = align4(first)
        while cur + 6 <= end:
            blk = read_block(cur, end)
            if blk is None:
                break
            yield blk
            cur = align4(blk[4])

    def string_table(first: int, end: int) -> Dict[str, str]:
        pairs: Dict[str, str] = {}
        for wvlen, wtype, key, val_off, blk_end in children(first, end):
            if len(pairs) >= max_pairs:
                errors.append(err("E_PE_VI_TOO_MANY_PAIRS", f"StringTable exceeded max_pairs={max_pairs}."))
                break
            if wvlen <= 0 or key in pairs:
                continue
            # wValueLength counts WCHARs; some linkers write bytes, so clamp to the block
            raw = vs[val_off : min(blk_end, val_off + min(wvlen, max_val_chars) * 2)]
            pairs[key] = raw.decode("utf-16le", errors="replace").split("\x00", 1)[0].strip()
        return pairs

    root = read_block(0, len(vs))
    if root is None:
        return {}, [err("E_PE_VI_PARSE_FAILED", "Failed to parse VS_VERSIONINFO root.")]
    wvlen, wtype, key, val_off, end = root
    if key != "VS_VERSION_INFO":
        return {}, [err("E_PE_VI_BAD_ROOT", "Root key is not VS_VERSION_INFO.", root_key=key)]

    value_bytes = wvlen if wtype == 0 else wvlen * 2
    if value_bytes >= 52 and u32(vs, val_off) == VS_FIXEDFILEINFO_SIGNATURE:
        fv_ms, fv_ls = u32(vs, val_off + 8), u32(vs, val_off + 12)
        pv_ms, pv_ls = u32(vs, val_off + 16), u32(vs, val_off + 20)
        if fv_ms is not None and fv_ls is not None and (fv_ms or fv_ls):
            fixed["FixedFileVersion"] = _format_version(fv_ms, fv_ls)
        if pv_ms is not None and pv_ls is not None and (pv_ms or pv_ls):
            fixed["FixedProductVersion"] = _format_version(pv_ms, pv_ls)

    chosen: Dict[str, str] = {}
    for _, _, child_key, child_val, child_end in children(val_off + value_bytes, end):
        if child_key != "StringFileInfo" or chosen:
            continue
        for _, _, _, table_val, table_end in children(child_val, child_end):
            pairs = string_table(table_val, table_end)
            if any(pairs.values()):
                chosen = pairs
                break

    # String values first: the normalizer keeps the first writer of a key
    out = {k: chosen[k] for k in VERSION_STRING_KEYS if chosen.get(k)}
    out.update(fixed)
    return out, errors


def _walk_resources(
    data: bytes,
    *,
    sections: List[Dict[str, Any]],
    resource_rva: int,
    resource_size: int,
    max_nodes: int = 2048,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Walk the type/name/language resource tree, depth-limited to three levels.

    Returns leaves as {"path": (type, name, lang), "data_rva", "size"} in
    directory order. Named entries carry their UTF-16 name instead of an id.
    """
    errors: List[Dict[str, Any]] = []
    leaves: List[Dict[str, Any]] = []

    base_off = _rva_to_offset(resource_rva, sections=sections, file_len=len(data))
    if base_off is None:
        return leaves, [err("E_PE_RSRC_RVA_UNMAPPABLE", "Resource directory RVA could not be mapped to file offset.", resource_rva=resource_rva)]
    base_end = min(len(data), base_off + max(0, resource_size))
    if base_end - base_off < 16:
        return leaves, [err("E_PE_RSRC_TRUNCATED", "Resource directory truncated.", resource_off=base_off)]

    nodes_seen = 0

    def entry_id(name_or_id: int) -> Optional[ResourceId]:
        if not name_or_id & 0x80000000:
            return name_or_id & 0xFFFF
        str_off = base_off + (name_or_id & 0x7FFFFFFF)
        n = u16(data, str_off)
        if n is None or str_off + 2 + n * 2 > base_end:
            return None
        return data[str_off + 2 : str_off + 2 + n * 2].decode("utf-16le", errors="replace")

    def walk(dir_rel: int, path: Tuple[ResourceId, ...]) -> bool:
        nonlocal nodes_seen
        off = base_off + dir_rel
        if off + 16 > base_end:
            errors.append(err("E_PE_RSRC_DIR_OOB", "Resource directory out of bounds.", dir_rel=dir_rel))
            return True
        total = (u16(data, off + 12) or 0) + (u16(data, off + 14) or 0)
        for i in range(total):
            nodes_seen += 1
            if nodes_seen > max_nodes:
                errors.append(err("E_PE_RSRC_TOO_MANY_NODES", f"Resource nodes exceeded max_nodes={max_nodes}."))
                return False
            eoff = off + 16 + i * 8
            if eoff + 8 > base_end:
                errors.append(err("E_PE_RSRC_ENTRY_OOB", "Resource entry out of bounds.", dir_rel=dir_rel))
                break
            rid = entry_id(u32(data, eoff) or 0)
            if rid is None:
                errors.append(err("E_PE_RSRC_NAME_UNREADABLE", "Resource entry name unreadable.", dir_rel=dir_rel))
                continue
            target = u32(data, eoff + 4) or 0
            is_dir = bool(target & 0x80000000)
            target_rel = target & 0x7FFFFFFF
            if is_dir:
                if len(path) + 1 >= RESOURCE_MAX_DEPTH:
                    errors.append(err("E_PE_RSRC_TOO_DEEP", "Resource tree deeper than three levels."))
                    continue
                if not walk(target_rel, path + (rid,)):
                    return False
                continue
            entry_off = base_off + target_rel
            if entry_off + 16 > base_end:
                errors.append(err("E_PE_RSRC_DATA_ENTRY_OOB", "Resource data entry out of bounds.", target_rel=target_rel))
                continue
            leaves.append(
                {
                    "path": path + (rid,),
                    "data_rva": u32(data, entry_off) or 0,
                    "size": u32(data, entry_off + 4) or 0,
                }
            )
        return True

    walk(0, ())
    return leaves, errors


def _read_version_resource(
    data: bytes,
    *,
    sections: List[Dict[str, Any]],
    leaves: List[Dict[str, Any]],
    max_vs_size: int = 2_000_000,
) -> Tuple[Dict[str, str], List[Dict[str, Any]]]:
    leaf = next((x for x in leaves if x["path"] and x["path"][0] == RT_VERSION), None)
    if leaf is None or leaf["size"] <= 0:
        return {}, []

    data_off = _rva_to_offset(leaf["data_rva"], sections=sections, file_len=len(data))
    if data_off is None:
        return {}, [err("E_PE_RSRC_DATA_RVA_UNMAPPABLE", "Resource data RVA could not be mapped.", data_rva=leaf["data_rva"])]
    size = min(leaf["size"], max_vs_size, len(data) - data_off)
    return _parse_versioninfo(data[data_off : data_off + size])


def parse_pe_bytes(
    data: bytes,
    *,
    max_sections: int = 96,
    max_dlls: int = 256,
    max_funcs_per_dll: int = 2048,
    max_exports: int = 4096,
    max_resource_nodes: int = 2048,
) -> PeParseResult:
    """
    Parse headers, sections, imports, exports and resources.

    `pe` is None when the DOS header, NT headers, optional header or section
    table cannot be located inside the buffer; `errors` then names the cause.
    Everything past the section table is best-effort and only adds to `errors`.
    """
    errors: List[Dict[str, Any]] = []

    if data[:2] != IMAGE_DOS_SIGNATURE:
        return PeParseResult(present=False, pe=None)
    if len(data) < 64:
        return PeParseResult(present=True, pe=None, errors=[err("E_PE_DOS_TRUNCATED", "DOS header truncated.")])

    e_lfanew = u32(data, 0x3C)
    if e_lfanew is None or e_lfanew >= len(data):
        return PeParseResult(present=True, pe=None, errors=[err("E_PE_E_LFANEW_OOB", "e_lfanew points outside file.", e_lfanew=e_lfanew)])

    if read_bytes(data, e_lfanew, 4) != IMAGE_NT_SIGNATURE:
        return PeParseResult(present=True, pe=None, errors=[err("E_PE_BAD_NT_SIGNATURE", "Missing PE\\0\\0 signature.", e_lfanew=e_lfanew)])

    coff_off = e_lfanew + 4
    if coff_off + 20 > len(data):
        return PeParseResult(present=True, pe=None, errors=[err("E_PE_COFF_TRUNCATED", "COFF header truncated.", coff_off=coff_off)])

    machine = u16(data, coff_off) or 0
    number_of_sections = u16(data, coff_off + 2) or 0
    time_date_stamp = u32(data, coff_off + 4) or 0
    size_of_optional_header = u16(data, coff_off + 16) or 0
    characteristics = u16(data, coff_off + 18) or 0

    opt_off = coff_off + 20
    if opt_off + size_of_optional_header > len(data):
        return PeParseResult(
            present=True,
            pe=None,
            errors=[
                err(
                    "E_PE_OPT_TRUNCATED",
                    "Optional header extends past end of file.",
                    opt_off=opt_off,
                    size_of_optional_header=size_of_optional_header,
                )
            ],
        )
    opt_end = opt_off + size_of_optional_header

    def opt_field(reader, rel: int) -> Optional[int]:
        return reader(data, opt_off + rel) if opt_off + rel < opt_end else None

    opt_magic = opt_field(u16, 0)
    if opt_magic not in (PE32_MAGIC, PE32P_MAGIC):
        errors.append(err("E_PE_OPT_BAD_MAGIC", "Optional header magic not PE32/PE32+.", opt_magic=opt_magic))
    is_pe32_plus = opt_magic == PE32P_MAGIC

    address_of_entry_point = opt_field(u32, 0x10)
    image_base = opt_field(u64, 0x18) if is_pe32_plus else opt_field(u32, 0x1C)
    size_of_image = opt_field(u32, 0x38)
    subsystem = opt_field(u16, 0x44)
    dll_characteristics = opt_field(u16, 0x46)

    num_rva_and_sizes = opt_field(u32, 0x6C if is_pe32_plus else 0x5C) or 0
    dd_off = opt_off + (0x70 if is_pe32_plus else 0x60)

    def data_dir(idx: int) -> Tuple[int, int]:
        if num_rva_and_sizes >= idx + 1 and dd_off + (idx + 1) * 8 <= opt_end:
            return u32(data, dd_off + idx * 8) or 0, u32(data, dd_off + idx * 8 + 4) or 0
        return 0, 0

    export_rva, export_size = data_dir(DIR_EXPORT)
    import_rva, import_size = data_dir(DIR_IMPORT)
    resource_rva, resource_size = data_dir(DIR_RESOURCE)
    security_offset, security_size = data_dir(DIR_SECURITY)

    num_sections = number_of_sections
    if num_sections > max_sections:
        errors.append(
            err(
                "E_PE_SECTION_COUNT_CLAMPED",
                f"Section count too large; clamped to max_sections={max_sections}.",
                number_of_sections=number_of_sections,
            )
        )
        num_sections = max_sections

    sect_off = opt_end
    if sect_off + num_sections * 40 > len(data):
        return PeParseResult(
            present=True,
            pe=None,
            errors=errors + [err("E_PE_SECTION_TABLE_OOB", "Section table extends past end of file.", sect_off=sect_off, number_of_sections=num_sections)],
        )

    sections: List[Dict[str, Any]] = []
    for i in range(num_sections):
        sh_off = sect_off + i * 40
        sections.append(
            {
                "name": safe_ascii(data[sh_off : sh_off + 8]),
                "virtual_size": u32(data, sh_off + 8) or 0,
                "virtual_address": u32(data, sh_off + 12) or 0,
                "raw_data_size": u32(data, sh_off + 16) or 0,
                "raw_ptr": u32(data, sh_off + 20) or 0,
                "characteristics": u32(data, sh_off + 36) or 0,
            }
        )

    pe: Dict[str, Any] = {
        "machine": machine,
        "time_date_stamp": time_date_stamp,
        "characteristics": characteristics,
        "is_dll": bool(characteristics & IMAGE_FILE_DLL),
        "is_pe32_plus": is_pe32_plus,
        "address_of_entry_point": address_of_entry_point,
        "image_base": image_base,
        "subsystem": subsystem,
        "size_of_image": size_of_image,
        "dll_characteristics": dll_characteristics,
        "security_table_offset": security_offset,
        "security_table_size": security_size,
        "sections": sections,
        "imports": [],
        "exports": [],
        "version_info": {},
        "resource_names": [],
    }

    if import_rva and import_size:
        pe["imports"], imp_errs = _parse_imports(
            data,
            is_pe32_plus=is_pe32_plus,
            sections=sections,
            import_rva=import_rva,
            max_dlls=max_dlls,
            max_funcs_per_dll=max_funcs_per_dll,
        )
        errors.extend(imp_errs)

    if export_rva and export_size:
        pe["exports"], exp_errs = _parse_exports(data, sections=sections, export_rva=export_rva, max_names=max_exports)
        errors.extend(exp_errs)

    if resource_rva and resource_size:
        leaves, rsrc_errs = _walk_resources(
            data,
            sections=sections,
            resource_rva=resource_rva,
            resource_size=resource_size,
            max_nodes=max_resource_nodes,
        )
        errors.extend(rsrc_errs)
        names: List[str] = []
        for leaf in leaves:
            for part in leaf["path"][:2]:
                if isinstance(part, str) and part not in names:
                    names.append(part)
        pe["resource_names"] = names
        pe["version_info"], vi_errs = _read_version_resource(data, sections=sections, leaves=leaves)
        errors.extend(vi_errs)

    # Heuristics must never break parsing
    try:
        pe["heuristics"] = compute_pe_heuristics(pe, data)
    except Exception as e:
        errors.append(err("E_PE_HEURISTICS_FAILED", f"Failed to compute PE heuristics: {type(e).__name__}"))

    return PeParseResult(present=True, pe=pe, errors=errors)


def pe_metadata(pe: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a parsed PE dict into raw facts for the normalizer."""
    raw: Dict[str, Any] = {}
    machine = pe["machine"]
    if machine in MACHINE_ARCH:
        raw["architecture"] = MACHINE_ARCH[machine]
    else:
        raw["machine"] = f"0x{machine:04X}"

    if pe["time_date_stamp"]:
        raw["time_date_stamp"] = pe["time_date_stamp"]
    if pe["address_of_entry_point"] is not None:
        raw["address_of_entry_point"] = f"0x{pe['address_of_entry_point']:08X}"
    if pe["image_base"] is not None:
        width = 16 if pe["is_pe32_plus"] else 8
        raw["image_base"] = f"0x{pe['image_base']:0{width}X}"
    if pe["subsystem"] is not None:
        raw["subsystem"] = SUBSYSTEMS.get(pe["subsystem"], str(pe["subsystem"]))
    if pe["size_of_image"] is not None:
        raw["size_of_image"] = pe["size_of_image"]
    raw["characteristics"] = f"0x{pe['characteristics']:04X}"
    if pe["dll_characteristics"] is not None:
        raw["dll_characteristics"] = f"0x{pe['dll_characteristics']:04X}"
    raw["is_dll"] = pe["is_dll"]

    raw.update(pe["version_info"])

    raw["sections"] = [
        PeSection(
            name=s["name"],
            virtual_address=s["virtual_address"],
            virtual_size=s["virtual_size"],
            raw_data_size=s["raw_data_size"],
            characteristics=s["characteristics"],
        ).model_dump()
        for s in pe["sections"]
    ]

    rendered: List[str] = []
    seen = set()
    for imp in pe["imports"]:
        for fn in imp["functions"]:
            s = f"{fn} ({imp['dll']})"
            if s not in seen:
                seen.add(s)
                rendered.append(s)
    raw["imports"] = rendered
    raw["exports"] = list(pe["exports"])

    h = pe.get("heuristics") or {}
    for key in ("signed_by", "installer_type", "embedded_msi", "embedded_msi_offset"):
        if h.get(key) is not None:
            raw[key] = h[key]

    # Embedded MSI facts only fill gaps and never repeat a value already reported
    taken = {v for v in raw.values() if isinstance(v, str)}
    for field, value in (h.get("embedded_msi_metadata") or {}).items():
        if value not in taken:
            raw[f"embedded_msi_{field}"] = value
            taken.add(value)
    return raw


def analyze_pe(data: bytes, **limits: Any) -> Dict[str, Any]:
    res = parse_pe_bytes(data, **limits)
    if res.pe is None:
        cause = res.errors[-1]["message"] if res.errors else "Not a PE image."
        raise StructuralFailure("Invalid PE structure", details=cause, format="PE")
    for e in res.errors:
        logger.debug("PE extraction issue: %s", e)
    return pe_metadata(res.pe)
