"""
PE/COFF Binary Format Parser
===============================

Manual struct-based parser for the Portable Executable (PE) format used
by Microsoft Windows for executables (.exe) and dynamic link libraries
(.dll).

All parsing is performed using :mod:`struct` without external libraries
such as ``pefile`` or ``lief``.  Both PE32 (32-bit) and PE32+ (64-bit)
optional headers are supported.

The parser extracts:
    - DOS header and PE signature
    - COFF file header (machine, section count, symbol table pointer)
    - Optional header (entry point, image base, data directories)
    - Section table
    - COFF symbol table (static symbols, long names via the string table)
    - Export directory and import directory (dynamic symbols)

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pietrek, M. (1994). Peering Inside the PE: A Tour of the Win32
      Portable Executable File Format. Microsoft Systems Journal.
"""

from __future__ import annotations

import struct
from typing import Optional

from binload.core.errors import (
    NotAnExecutableError,
    SectionLoadError,
    SymbolTableReadError,
    UnsupportedArchitectureError,
)
from binload.core.handle import Buffer
from binload.core.models import UINT64_MAX, Arch, BinaryType, Section, SectionType
from binload.parsers.base import FormatError, FormatParser, RawSymbol


# ---------------------------------------------------------------------------
# PE Constants
# ---------------------------------------------------------------------------

MZ_MAGIC: bytes = b"MZ"
PE_MAGIC: bytes = b"PE\x00\x00"

# Optional header magic
PE32_MAGIC: int = 0x10B      # PE32 (32-bit)
PE32PLUS_MAGIC: int = 0x20B  # PE32+ (64-bit)

# Machine types
IMAGE_FILE_MACHINE_I386: int = 0x14C
IMAGE_FILE_MACHINE_R4000: int = 0x166
IMAGE_FILE_MACHINE_ARM: int = 0x1C0
IMAGE_FILE_MACHINE_ARMNT: int = 0x1C4
IMAGE_FILE_MACHINE_IA64: int = 0x200
IMAGE_FILE_MACHINE_AMD64: int = 0x8664
IMAGE_FILE_MACHINE_ARM64: int = 0xAA64
IMAGE_FILE_MACHINE_RISCV32: int = 0x5032
IMAGE_FILE_MACHINE_RISCV64: int = 0x5064
IMAGE_FILE_MACHINE_LOONGARCH64: int = 0x6264

# Printable machine names (libbfd spelling)
_MACHINE_NAMES: dict[int, str] = {
    IMAGE_FILE_MACHINE_I386: "i386",
    IMAGE_FILE_MACHINE_R4000: "mips",
    IMAGE_FILE_MACHINE_ARM: "arm",
    IMAGE_FILE_MACHINE_ARMNT: "arm",
    IMAGE_FILE_MACHINE_IA64: "ia64",
    IMAGE_FILE_MACHINE_AMD64: "i386:x86-64",
    IMAGE_FILE_MACHINE_ARM64: "aarch64",
    IMAGE_FILE_MACHINE_RISCV32: "riscv:rv32",
    IMAGE_FILE_MACHINE_RISCV64: "riscv:rv64",
    IMAGE_FILE_MACHINE_LOONGARCH64: "loongarch64",
}

_TARGET_NAMES: dict[int, str] = {
    IMAGE_FILE_MACHINE_I386: "pei-i386",
    IMAGE_FILE_MACHINE_AMD64: "pei-x86-64",
    IMAGE_FILE_MACHINE_ARM: "pei-arm-little",
    IMAGE_FILE_MACHINE_ARMNT: "pei-arm-little",
    IMAGE_FILE_MACHINE_ARM64: "pei-aarch64-little",
    IMAGE_FILE_MACHINE_IA64: "pei-ia64",
}

# Section characteristics
IMAGE_SCN_CNT_CODE: int = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA: int = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA: int = 0x00000080
IMAGE_SCN_MEM_EXECUTE: int = 0x20000000
IMAGE_SCN_MEM_READ: int = 0x40000000
IMAGE_SCN_MEM_WRITE: int = 0x80000000

# Data directory indices
IMAGE_DIRECTORY_ENTRY_EXPORT: int = 0
IMAGE_DIRECTORY_ENTRY_IMPORT: int = 1

# COFF symbol table
IMAGE_SIZEOF_SYMBOL: int = 18
IMAGE_SYM_DTYPE_FUNCTION: int = 0x20
_SYMBOL_FMT: str = "<8sIhHBB"

_COFF_HEADER_FMT: str = "<HHIIIHH"
_SECTION_HEADER_SIZE: int = 40
_IMPORT_DESCRIPTOR_SIZE: int = 20
_EXPORT_DIRECTORY_SIZE: int = 40
_MAX_IMPORT_DESCRIPTORS: int = 4096


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _COFFHeader:
    """Parsed COFF file header."""
    __slots__ = (
        "machine", "number_of_sections", "time_date_stamp",
        "pointer_to_symbol_table", "number_of_symbols",
        "size_of_optional_header", "characteristics",
    )

    def __init__(self) -> None:
        self.machine: int = 0
        self.number_of_sections: int = 0
        self.time_date_stamp: int = 0
        self.pointer_to_symbol_table: int = 0
        self.number_of_symbols: int = 0
        self.size_of_optional_header: int = 0
        self.characteristics: int = 0


class _OptionalHeader:
    """Fields of the PE optional header that the loader consumes."""
    __slots__ = ("magic", "address_of_entry_point", "image_base", "data_directories")

    def __init__(self) -> None:
        self.magic: int = 0
        self.address_of_entry_point: int = 0
        self.image_base: int = 0
        self.data_directories: list[tuple[int, int]] = []  # (rva, size) pairs


class _PESection:
    """Parsed PE section header."""
    __slots__ = (
        "name", "virtual_size", "virtual_address",
        "size_of_raw_data", "pointer_to_raw_data", "characteristics",
    )

    def __init__(self) -> None:
        self.name: str = ""
        self.virtual_size: int = 0
        self.virtual_address: int = 0
        self.size_of_raw_data: int = 0
        self.pointer_to_raw_data: int = 0
        self.characteristics: int = 0

    @property
    def is_executable(self) -> bool:
        return bool(self.characteristics & (IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE))


# ---------------------------------------------------------------------------
# PE Parser
# ---------------------------------------------------------------------------

class PEParser(FormatParser):
    """Manual struct-based PE/COFF binary parser.

    Addresses produced by this parser are link-time virtual addresses,
    i.e. relative virtual addresses rebased on the preferred ``ImageBase``.

    Usage::

        parser = PEParser(raw_bytes, "app.exe")
        parser.parse_headers()
        arch, bits, arch_str = parser.resolve_arch()
        sections = parser.get_sections()
    """

    binary_type = BinaryType.PE

    def __init__(
        self,
        data: Buffer,
        filename: str = "<memory>",
        *,
        max_symbols: Optional[int] = None,
    ) -> None:
        super().__init__(data, filename, max_symbols=max_symbols)
        self._e_lfanew: int = 0
        self._coff_header: _COFFHeader = _COFFHeader()
        self._optional_header: _OptionalHeader = _OptionalHeader()
        self._sections: Optional[list[_PESection]] = None
        self._coff_strtab: Optional[bytes] = None
        self._dynamic: Optional[list[RawSymbol]] = None

    # ------------------------------------------------------------------ #
    #  Header stage
    # ------------------------------------------------------------------ #

    def parse_headers(self) -> None:
        """Parse the DOS, COFF and optional headers."""
        try:
            self._parse_dos_header()
            self._parse_coff_header()
            self._parse_optional_header()
        except (FormatError, struct.error) as exc:
            raise NotAnExecutableError(self.filename, str(exc)) from exc

    @property
    def is_pe32plus(self) -> bool:
        return self._optional_header.magic == PE32PLUS_MAGIC

    @property
    def image_base(self) -> int:
        return self._optional_header.image_base

    @property
    def machine(self) -> int:
        return self._coff_header.machine

    @property
    def entry(self) -> int:
        oh = self._optional_header
        return (oh.image_base + oh.address_of_entry_point) & UINT64_MAX

    @property
    def type_str(self) -> str:
        return _TARGET_NAMES.get(self._coff_header.machine, "pei-unknown")

    def _parse_dos_header(self) -> None:
        if self._size < 64 or self._data[:2] != MZ_MAGIC:
            raise FormatError("missing MS-DOS header")
        self._e_lfanew = struct.unpack_from("<I", self._data, 0x3C)[0]
        self._check_range(self._e_lfanew, 4, "PE signature")
        if self._data[self._e_lfanew : self._e_lfanew + 4] != PE_MAGIC:
            raise FormatError("missing PE signature")

    def _parse_coff_header(self) -> None:
        """Parse the COFF file header (20 bytes after the PE signature)."""
        offset = self._e_lfanew + 4
        self._check_range(offset, struct.calcsize(_COFF_HEADER_FMT), "COFF header")
        coff = self._coff_header
        (
            coff.machine,
            coff.number_of_sections,
            coff.time_date_stamp,
            coff.pointer_to_symbol_table,
            coff.number_of_symbols,
            coff.size_of_optional_header,
            coff.characteristics,
        ) = struct.unpack_from(_COFF_HEADER_FMT, self._data, offset)

    def _parse_optional_header(self) -> None:
        """Parse the PE optional header (PE32 or PE32+)."""
        size = self._coff_header.size_of_optional_header
        if size == 0:
            raise FormatError("image has no optional header")

        offset = self._e_lfanew + 4 + 20
        self._check_range(offset, size, "optional header")
        oh = self._optional_header
        oh.magic = struct.unpack_from("<H", self._data, offset)[0]

        if oh.magic == PE32PLUS_MAGIC:
            fmt_std, fmt_win = "<HBBIIIII", "<QIIHHHHHHIIIIHHQQQQII"
        elif oh.magic == PE32_MAGIC:
            fmt_std, fmt_win = "<HBBIIIIII", "<IIIHHHHHHIIIIHHIIIIII"
        else:
            raise FormatError(f"unknown optional header magic 0x{oh.magic:x}")

        std_size = struct.calcsize(fmt_std)
        fixed_size = std_size + struct.calcsize(fmt_win)
        if size < fixed_size:
            raise FormatError(f"optional header too small ({size} bytes)")

        oh.address_of_entry_point = struct.unpack_from(fmt_std, self._data, offset)[6]
        win_fields = struct.unpack_from(fmt_win, self._data, offset + std_size)
        oh.image_base = win_fields[0]
        number_of_rva_and_sizes = win_fields[-1]

        # Only directories that fit inside the declared header are read.
        dd_offset = offset + fixed_size
        count = min(number_of_rva_and_sizes, 16, (size - fixed_size) // 8)
        oh.data_directories = [
            struct.unpack_from("<II", self._data, dd_offset + i * 8) for i in range(count)
        ]

    # ------------------------------------------------------------------ #
    #  Architecture stage
    # ------------------------------------------------------------------ #

    def resolve_arch(self) -> tuple[Arch, int, str]:
        machine = self._coff_header.machine
        if machine == IMAGE_FILE_MACHINE_I386:
            return Arch.X86, 32, "i386"
        if machine == IMAGE_FILE_MACHINE_AMD64:
            return Arch.X86, 64, "i386:x86-64"
        name = _MACHINE_NAMES.get(machine, f"unknown(0x{machine:x})")
        raise UnsupportedArchitectureError(self.filename, name, machine)

    # ------------------------------------------------------------------ #
    #  Static symbols (COFF symbol table)
    # ------------------------------------------------------------------ #

    def get_symtab_upper_bound(self) -> int:
        with self._stage(SymbolTableReadError):
            coff = self._coff_header
            if coff.pointer_to_symbol_table == 0 or coff.number_of_symbols == 0:
                return 0
            self._check_range(
                coff.pointer_to_symbol_table,
                coff.number_of_symbols * IMAGE_SIZEOF_SYMBOL,
                "COFF symbol table",
            )
            self._check_symbol_count(coff.number_of_symbols, "COFF symbol table")
            self._string_table()
            return coff.number_of_symbols

    def canonicalize_symtab(self, storage: list[Optional[RawSymbol]]) -> int:
        upper = self.get_symtab_upper_bound()
        if upper == 0:
            return 0
        with self._stage(SymbolTableReadError):
            self._check_storage(storage, upper)
            sections = self._section_headers()
            strtab = self._string_table()
            base = self._coff_header.pointer_to_symbol_table

            count = 0
            index = 0
            while index < upper:
                raw_name, value, section_number, sym_type, _storage_class, aux = struct.unpack_from(
                    _SYMBOL_FMT, self._data, base + index * IMAGE_SIZEOF_SYMBOL
                )
                index += 1 + aux

                defined = 0 < section_number <= len(sections)
                if defined:
                    value += self.image_base + sections[section_number - 1].virtual_address

                storage[count] = RawSymbol(
                    name=self._symbol_name(raw_name, strtab),
                    value=value,
                    is_function=defined and (sym_type & 0x30) == IMAGE_SYM_DTYPE_FUNCTION,
                )
                count += 1
            return count

    def _symbol_name(self, raw_name: bytes, strtab: bytes) -> str:
        if raw_name[:4] == b"\x00\x00\x00\x00":
            offset = struct.unpack_from("<I", raw_name, 4)[0]
            return self._read_cstring(strtab, offset)
        return raw_name.split(b"\x00", 1)[0].decode("utf-8", errors="replace")

    def _string_table(self) -> bytes:
        """COFF string table, located right after the symbol records."""
        if self._coff_strtab is not None:
            return self._coff_strtab

        coff = self._coff_header
        offset = coff.pointer_to_symbol_table + coff.number_of_symbols * IMAGE_SIZEOF_SYMBOL
        strtab = b""
        if offset + 4 <= self._size:
            size = struct.unpack_from("<I", self._data, offset)[0]
            if size >= 4:
                strtab = self._slice(offset, size, "COFF string table")
        self._coff_strtab = strtab
        return strtab

    # ------------------------------------------------------------------ #
    #  Dynamic symbols (exports, then imports)
    # ------------------------------------------------------------------ #

    def get_dynamic_symtab_upper_bound(self) -> int:
        with self._stage(SymbolTableReadError):
            return len(self._dynamic_symbols())

    def canonicalize_dynamic_symtab(self, storage: list[Optional[RawSymbol]]) -> int:
        with self._stage(SymbolTableReadError):
            symbols = self._dynamic_symbols()
            self._check_storage(storage, len(symbols))
            storage[: len(symbols)] = symbols
            return len(symbols)

    def _dynamic_symbols(self) -> list[RawSymbol]:
        if self._dynamic is None:
            symbols = self._parse_export_directory()
            symbols.extend(self._parse_import_directory())
            self._check_symbol_count(len(symbols), "export/import tables")
            self._dynamic = symbols
        return self._dynamic

    def _directory(self, index: int) -> tuple[int, int]:
        dirs = self._optional_header.data_directories
        return dirs[index] if index < len(dirs) else (0, 0)

    def _parse_export_directory(self) -> list[RawSymbol]:
        """Exported names, in name-table order."""
        export_rva, export_size = self._directory(IMAGE_DIRECTORY_ENTRY_EXPORT)
        if export_rva == 0 or export_size == 0:
            return []

        export_offset = self._require_offset(export_rva, "export directory")
        self._check_range(export_offset, _EXPORT_DIRECTORY_SIZE, "export directory")
        fields = struct.unpack_from("<IIHHIIIIIII", self._data, export_offset)
        number_of_functions = fields[6]
        number_of_names = fields[7]
        functions_rva, names_rva, ordinals_rva = fields[8], fields[9], fields[10]
        if number_of_names == 0:
            return []
        self._check_symbol_count(number_of_names, "export name table")

        functions_offset = self._require_offset(functions_rva, "export address table")
        names_offset = self._require_offset(names_rva, "export name table")
        ordinals_offset = self._require_offset(ordinals_rva, "export ordinal table")
        self._check_range(functions_offset, number_of_functions * 4, "export address table")
        self._check_range(names_offset, number_of_names * 4, "export name table")
        self._check_range(ordinals_offset, number_of_names * 2, "export ordinal table")

        sections = self._section_headers()
        result: list[RawSymbol] = []
        for i in range(number_of_names):
            name_rva = struct.unpack_from("<I", self._data, names_offset + i * 4)[0]
            ordinal_idx = struct.unpack_from("<H", self._data, ordinals_offset + i * 2)[0]
            if ordinal_idx >= number_of_functions:
                raise FormatError(f"export ordinal {ordinal_idx} out of range")
            func_rva = struct.unpack_from("<I", self._data, functions_offset + ordinal_idx * 4)[0]

            # Forwarders point back into the export directory.
            if export_rva <= func_rva < export_rva + export_size:
                continue

            section = self._section_for_rva(func_rva, sections)
            result.append(RawSymbol(
                name=self._read_rva_string(name_rva),
                value=(self.image_base + func_rva) & UINT64_MAX,
                is_function=section is not None and section.is_executable,
            ))
        return result

    def _parse_import_directory(self) -> list[RawSymbol]:
        """Imported functions, named ``dll!function`` at their IAT slot."""
        import_rva, import_size = self._directory(IMAGE_DIRECTORY_ENTRY_IMPORT)
        if import_rva == 0 or import_size == 0:
            return []

        import_offset = self._require_offset(import_rva, "import directory")
        thunk_size = 8 if self.is_pe32plus else 4
        ordinal_flag = 1 << 63 if self.is_pe32plus else 1 << 31
        thunk_fmt = "<Q" if self.is_pe32plus else "<I"

        result: list[RawSymbol] = []
        for idx in range(_MAX_IMPORT_DESCRIPTORS):
            entry_offset = import_offset + idx * _IMPORT_DESCRIPTOR_SIZE
            self._check_range(entry_offset, _IMPORT_DESCRIPTOR_SIZE, "import descriptor")
            original_first_thunk, _stamp, _chain, name_rva, first_thunk = struct.unpack_from(
                "<IIIII", self._data, entry_offset
            )
            if name_rva == 0 and original_first_thunk == 0 and first_thunk == 0:
                break

            dll_name = self._read_rva_string(name_rva)
            lookup_rva = original_first_thunk or first_thunk
            slot_rva = first_thunk or original_first_thunk
            if not dll_name or lookup_rva == 0:
                continue
            lookup_offset = self._require_offset(lookup_rva, f"import lookup table of {dll_name}")

            entry_idx = 0
            while True:
                thunk_offset = lookup_offset + entry_idx * thunk_size
                self._check_range(thunk_offset, thunk_size, f"import lookup table of {dll_name}")
                thunk_value = struct.unpack_from(thunk_fmt, self._data, thunk_offset)[0]
                if thunk_value == 0:
                    break

                if thunk_value & ordinal_flag:
                    function = f"#{thunk_value & 0xFFFF}"
                else:
                    # IMAGE_IMPORT_BY_NAME: 2-byte hint, then the name
                    function = self._read_rva_string((thunk_value & 0x7FFFFFFF) + 2)

                result.append(RawSymbol(
                    name=f"{dll_name}!{function}" if function else "",
                    value=(self.image_base + slot_rva + entry_idx * thunk_size) & UINT64_MAX,
                    is_function=True,
                ))
                entry_idx += 1
                self._check_symbol_count(len(result), "import tables")
        return result

    # ------------------------------------------------------------------ #
    #  Section stage
    # ------------------------------------------------------------------ #

    def get_sections(self, load_bytes: bool = True) -> list[Section]:
        with self._stage(SectionLoadError):
            result: list[Section] = []
            for sec in self._section_headers():
                chars = sec.characteristics
                if sec.is_executable:
                    kind = SectionType.CODE
                elif chars & IMAGE_SCN_CNT_INITIALIZED_DATA:
                    kind = SectionType.DATA
                elif chars & IMAGE_SCN_CNT_UNINITIALIZED_DATA:
                    kind = SectionType.BSS
                else:
                    continue

                raw_size = sec.size_of_raw_data
                if sec.virtual_size:
                    raw_size = min(sec.virtual_size, raw_size)
                data = b""
                if kind is not SectionType.BSS and raw_size:
                    label = f"section {sec.name}"
                    if load_bytes:
                        data = self._slice(sec.pointer_to_raw_data, raw_size, label)
                    else:
                        self._check_range(sec.pointer_to_raw_data, raw_size, label)

                result.append(Section(
                    name=sec.name,
                    vma=(self.image_base + sec.virtual_address) & UINT64_MAX,
                    size=sec.virtual_size or sec.size_of_raw_data,
                    offset=sec.pointer_to_raw_data,
                    type=kind,
                    flags=self._section_characteristics_str(chars),
                    data=data,
                ))
            return result

    def _section_headers(self) -> list[_PESection]:
        """Parse (once) the section table following the optional header."""
        if self._sections is not None:
            return self._sections

        coff = self._coff_header
        offset = self._e_lfanew + 4 + 20 + coff.size_of_optional_header
        self._check_range(
            offset, coff.number_of_sections * _SECTION_HEADER_SIZE, "section table"
        )

        sections: list[_PESection] = []
        for i in range(coff.number_of_sections):
            sec_offset = offset + i * _SECTION_HEADER_SIZE
            sec = _PESection()
            raw_name = bytes(self._data[sec_offset : sec_offset + 8])
            sec.name = raw_name.split(b"\x00", 1)[0].decode("utf-8", errors="replace")
            (
                sec.virtual_size,
                sec.virtual_address,
                sec.size_of_raw_data,
                sec.pointer_to_raw_data,
                _relocs, _linenums, _nrelocs, _nlinenums,
                sec.characteristics,
            ) = struct.unpack_from("<IIIIIIHHI", self._data, sec_offset + 8)
            sections.append(sec)

        self._sections = sections
        return sections

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    @staticmethod
    def _section_for_rva(rva: int, sections: list[_PESection]) -> Optional[_PESection]:
        for sec in sections:
            if sec.virtual_address <= rva < sec.virtual_address + max(sec.virtual_size, sec.size_of_raw_data):
                return sec
        return None

    def _rva_to_offset(self, rva: int) -> Optional[int]:
        """Convert a Relative Virtual Address to a file offset.

        Returns:
            File offset, or ``None`` if the RVA is not backed by file data.
        """
        sections = self._section_headers()
        sec = self._section_for_rva(rva, sections)
        if sec is not None:
            delta = rva - sec.virtual_address
            if delta >= sec.size_of_raw_data:
                return None
            offset = sec.pointer_to_raw_data + delta
            return offset if offset < self._size else None
        # For addresses within the headers
        first_va = min((s.virtual_address for s in sections), default=0x1000)
        if rva < first_va:
            return rva if rva < self._size else None
        return None

    def _require_offset(self, rva: int, what: str) -> int:
        offset = self._rva_to_offset(rva)
        if offset is None:
            raise FormatError(f"{what} RVA 0x{rva:x} is not mapped by any section")
        return offset

    def _read_rva_string(self, rva: int) -> str:
        """Read a NUL-terminated string at *rva* (at most 4 KiB)."""
        offset = self._rva_to_offset(rva)
        if offset is None:
            return ""
        end = min(offset + 4096, self._size)
        return self._read_cstring(bytes(self._data[offset:end]), 0)

    @staticmethod
    def _section_characteristics_str(characteristics: int) -> str:
        """Convert section characteristics to a string such as ``"R X"``."""
        parts: list[str] = []
        if characteristics & IMAGE_SCN_MEM_READ:
            parts.append("R")
        if characteristics & IMAGE_SCN_MEM_WRITE:
            parts.append("W")
        if characteristics & IMAGE_SCN_MEM_EXECUTE:
            parts.append("X")
        return " ".join(parts) if parts else "-"
