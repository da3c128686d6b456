"""
ELF Binary Format Parser
==========================

Manual struct-based parser for the Executable and Linkable Format (ELF).

All parsing is performed using :mod:`struct` without any external libraries
such as ``pyelftools``.  Both 32-bit (ELF32) and 64-bit (ELF64) variants in
either byte order are decoded; only x86 and x86-64 are accepted by
:meth:`ELFParser.resolve_arch`.

The parser extracts:
    - ELF header (class, endianness, type, machine, entry point)
    - Section headers, including extended section numbering
    - Program headers (used when a file carries no section headers)
    - Symbol tables (.symtab and .dynsym)

References:
    - TIS Committee. (1995). Tool Interface Standard (TIS) Executable and
      Linkable Format (ELF) Specification, Version 1.2.
    - System V Application Binary Interface, Edition 4.1.
    - Linux man page: elf(5).
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
from binload.core.models import Arch, BinaryType, Section, SectionType
from binload.parsers.base import FormatError, FormatParser, RawSymbol


# ---------------------------------------------------------------------------
# ELF Constants
# ---------------------------------------------------------------------------

ELF_MAGIC: bytes = b"\x7fELF"

# ELF Class (32-bit vs 64-bit)
ELFCLASS32: int = 1
ELFCLASS64: int = 2

# Data encoding (endianness)
ELFDATA2LSB: int = 1  # Little-endian
ELFDATA2MSB: int = 2  # Big-endian

# ELF type
ET_NONE: int = 0
ET_REL: int = 1   # Relocatable
ET_EXEC: int = 2  # Executable
ET_DYN: int = 3   # Shared object / PIE
ET_CORE: int = 4  # Core dump

# Machine architectures
EM_SPARC: int = 2
EM_386: int = 3
EM_MIPS: int = 8
EM_PPC: int = 20
EM_PPC64: int = 21
EM_S390: int = 22
EM_ARM: int = 40
EM_SPARCV9: int = 43
EM_IA_64: int = 50
EM_X86_64: int = 62
EM_AARCH64: int = 183
EM_RISCV: int = 243
EM_LOONGARCH: int = 258

# Printable machine names (libbfd spelling)
_EM_NAMES: dict[int, str] = {
    EM_SPARC: "sparc",
    EM_386: "i386",
    EM_MIPS: "mips",
    EM_PPC: "powerpc:common",
    EM_PPC64: "powerpc:common64",
    EM_S390: "s390",
    EM_ARM: "arm",
    EM_SPARCV9: "sparc:v9",
    EM_IA_64: "ia64",
    EM_X86_64: "i386:x86-64",
    EM_AARCH64: "aarch64",
    EM_RISCV: "riscv",
    EM_LOONGARCH: "loongarch",
}

# Section header types
SHT_NULL: int = 0
SHT_SYMTAB: int = 2
SHT_STRTAB: int = 3
SHT_NOBITS: int = 8
SHT_DYNSYM: int = 11

# Section header flags
SHF_WRITE: int = 0x1
SHF_ALLOC: int = 0x2
SHF_EXECINSTR: int = 0x4

# Program header types / flags
PT_LOAD: int = 1
PF_X: int = 0x1
PF_W: int = 0x2
PF_R: int = 0x4

# Symbol types
STT_FUNC: int = 2
STT_GNU_IFUNC: int = 10

# Special section indices
SHN_UNDEF: int = 0
SHN_LORESERVE: int = 0xFF00
SHN_XINDEX: int = 0xFFFF

# Record layouts, keyed by ELF class
_EHDR_FMT: dict[int, str] = {ELFCLASS32: "HHIIIIIHHHHHH", ELFCLASS64: "HHIQQQIHHHHHH"}
_SHDR_FMT: dict[int, str] = {ELFCLASS32: "IIIIIIIIII", ELFCLASS64: "IIQQQQIIQQ"}
_SYM_FMT: dict[int, str] = {ELFCLASS32: "IIIBBH", ELFCLASS64: "IBBHQQ"}
_PHDR_FMT: dict[int, str] = {ELFCLASS32: "IIIIIIII", ELFCLASS64: "IIQQQQQQ"}


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _ELFHeader:
    """Parsed ELF header fields."""
    __slots__ = (
        "ei_class", "ei_data",
        "e_type", "e_machine", "e_version", "e_entry",
        "e_phoff", "e_shoff", "e_flags", "e_ehsize",
        "e_phentsize", "e_phnum", "e_shentsize", "e_shnum",
        "e_shstrndx",
    )

    def __init__(self) -> None:
        self.ei_class: int = 0
        self.ei_data: int = 0
        self.e_type: int = 0
        self.e_machine: int = 0
        self.e_version: int = 0
        self.e_entry: int = 0
        self.e_phoff: int = 0
        self.e_shoff: int = 0
        self.e_flags: int = 0
        self.e_ehsize: int = 0
        self.e_phentsize: int = 0
        self.e_phnum: int = 0
        self.e_shentsize: int = 0
        self.e_shnum: int = 0
        self.e_shstrndx: int = 0


class _SectionHeader:
    """Parsed section header entry."""
    __slots__ = (
        "sh_name", "sh_type", "sh_flags", "sh_addr",
        "sh_offset", "sh_size", "sh_link", "sh_info",
        "sh_addralign", "sh_entsize", "name",
    )

    def __init__(self, fields: tuple[int, ...]) -> None:
        (
            self.sh_name, self.sh_type, self.sh_flags, self.sh_addr,
            self.sh_offset, self.sh_size, self.sh_link, self.sh_info,
            self.sh_addralign, self.sh_entsize,
        ) = fields
        self.name: str = ""


class _ProgramHeader:
    """Parsed program header (segment) entry."""
    __slots__ = (
        "p_type", "p_flags", "p_offset", "p_vaddr",
        "p_paddr", "p_filesz", "p_memsz", "p_align",
    )

    def __init__(self) -> None:
        self.p_type: int = 0
        self.p_flags: int = 0
        self.p_offset: int = 0
        self.p_vaddr: int = 0
        self.p_paddr: int = 0
        self.p_filesz: int = 0
        self.p_memsz: int = 0
        self.p_align: int = 0


class _SymbolTable:
    """Validated location of a symbol table and its string table."""
    __slots__ = ("offset", "entsize", "count", "strtab")

    def __init__(self, offset: int, entsize: int, count: int, strtab: bytes) -> None:
        self.offset = offset
        self.entsize = entsize
        self.count = count
        self.strtab = strtab


# ---------------------------------------------------------------------------
# ELF Parser
# ---------------------------------------------------------------------------

class ELFParser(FormatParser):
    """Manual struct-based ELF binary parser.

    Usage::

        parser = ELFParser(raw_bytes, "/bin/ls")
        parser.parse_headers()
        arch, bits, arch_str = parser.resolve_arch()
        sections = parser.get_sections()
    """

    binary_type = BinaryType.ELF

    def __init__(
        self,
        data: Buffer,
        filename: str = "<memory>",
        *,
        max_symbols: Optional[int] = None,
    ) -> None:
        super().__init__(data, filename, max_symbols=max_symbols)
        self._header: _ELFHeader = _ELFHeader()
        self._endian: str = "<"
        self._parsed: bool = False
        self._sections: Optional[list[_SectionHeader]] = None
        self._tables: dict[int, Optional[_SymbolTable]] = {}

    # ------------------------------------------------------------------ #
    #  Header stage
    # ------------------------------------------------------------------ #

    def parse_headers(self) -> None:
        """Parse the ELF identification and file header."""
        if self._size < 16 or self._data[:4] != ELF_MAGIC:
            raise NotAnExecutableError(self.filename, "missing ELF magic")

        h = self._header
        h.ei_class = self._data[4]
        h.ei_data = self._data[5]
        if h.ei_class not in _EHDR_FMT:
            raise NotAnExecutableError(self.filename, f"invalid ELF class {h.ei_class}")
        if h.ei_data not in (ELFDATA2LSB, ELFDATA2MSB):
            raise NotAnExecutableError(self.filename, f"invalid ELF data encoding {h.ei_data}")
        self._endian = "<" if h.ei_data == ELFDATA2LSB else ">"

        fmt = self._endian + _EHDR_FMT[h.ei_class]
        if 16 + struct.calcsize(fmt) > self._size:
            raise NotAnExecutableError(self.filename, "truncated ELF header")
        (
            h.e_type, h.e_machine, h.e_version, h.e_entry,
            h.e_phoff, h.e_shoff, h.e_flags, h.e_ehsize,
            h.e_phentsize, h.e_phnum, h.e_shentsize, h.e_shnum,
            h.e_shstrndx,
        ) = struct.unpack_from(fmt, self._data, 16)

        if h.e_type == ET_CORE:
            raise NotAnExecutableError(self.filename, "ELF core dump is not an object file")
        if h.e_type not in (ET_REL, ET_EXEC, ET_DYN):
            raise NotAnExecutableError(self.filename, f"unknown ELF object type {h.e_type}")
        self._parsed = True

    @property
    def is_64bit(self) -> bool:
        return self._header.ei_class == ELFCLASS64

    @property
    def bits(self) -> int:
        return 64 if self.is_64bit else 32

    @property
    def entry(self) -> int:
        return self._header.e_entry

    @property
    def machine(self) -> int:
        return self._header.e_machine

    @property
    def type_str(self) -> str:
        h = self._header
        if h.e_machine == EM_386:
            target = "i386"
        elif h.e_machine == EM_X86_64:
            target = "x86-64"
        else:
            target = "little" if h.ei_data == ELFDATA2LSB else "big"
        return f"elf{self.bits}-{target}"

    # ------------------------------------------------------------------ #
    #  Architecture stage
    # ------------------------------------------------------------------ #

    def resolve_arch(self) -> tuple[Arch, int, str]:
        machine = self._header.e_machine
        if machine == EM_386 and not self.is_64bit:
            return Arch.X86, 32, "i386"
        if machine == EM_X86_64 and self.is_64bit:
            return Arch.X86, 64, "i386:x86-64"

        if machine == EM_X86_64:
            name = "i386:x64-32"
        elif machine == EM_386:
            name = "i386 (ELF64)"
        else:
            name = _EM_NAMES.get(machine, f"unknown(0x{machine:x})")
        raise UnsupportedArchitectureError(self.filename, name, machine)

    # ------------------------------------------------------------------ #
    #  Symbol stages
    # ------------------------------------------------------------------ #

    def get_symtab_upper_bound(self) -> int:
        with self._stage(SymbolTableReadError):
            table = self._symbol_table(SHT_SYMTAB)
        return table.count if table is not None else 0

    def canonicalize_symtab(self, storage: list[Optional[RawSymbol]]) -> int:
        with self._stage(SymbolTableReadError):
            return self._canonicalize(SHT_SYMTAB, storage)

    def get_dynamic_symtab_upper_bound(self) -> int:
        with self._stage(SymbolTableReadError):
            table = self._symbol_table(SHT_DYNSYM)
        return table.count if table is not None else 0

    def canonicalize_dynamic_symtab(self, storage: list[Optional[RawSymbol]]) -> int:
        with self._stage(SymbolTableReadError):
            return self._canonicalize(SHT_DYNSYM, storage)

    def _symbol_table(self, sh_type: int) -> Optional[_SymbolTable]:
        """Locate and validate the first section of type *sh_type*."""
        if sh_type in self._tables:
            return self._tables[sh_type]

        sections = self._section_headers()
        sh = next((s for s in sections if s.sh_type == sh_type), None)
        table: Optional[_SymbolTable] = None
        if sh is not None and sh.sh_size > 0:
            label = ".dynsym" if sh_type == SHT_DYNSYM else ".symtab"
            record = struct.calcsize(self._endian + _SYM_FMT[self._header.ei_class])
            if sh.sh_entsize == 0:
                raise FormatError(f"{label} has zero entry size")
            if sh.sh_entsize < record:
                raise FormatError(
                    f"{label} entry size {sh.sh_entsize} smaller than symbol record ({record})"
                )
            if sh.sh_size % sh.sh_entsize:
                raise FormatError(
                    f"{label} size 0x{sh.sh_size:x} is not a multiple of entry size {sh.sh_entsize}"
                )
            self._check_range(sh.sh_offset, sh.sh_size, label)
            count = sh.sh_size // sh.sh_entsize
            self._check_symbol_count(count, label)

            if sh.sh_link == SHN_UNDEF or sh.sh_link >= len(sections):
                raise FormatError(f"{label} has invalid string table link {sh.sh_link}")
            strtab_sh = sections[sh.sh_link]
            if strtab_sh.sh_type != SHT_STRTAB:
                raise FormatError(f"{label} links to a non-string-table section")
            strtab = self._slice(strtab_sh.sh_offset, strtab_sh.sh_size, f"{label} string table")
            table = _SymbolTable(sh.sh_offset, sh.sh_entsize, count, strtab)

        self._tables[sh_type] = table
        return table

    def _canonicalize(self, sh_type: int, storage: list[Optional[RawSymbol]]) -> int:
        table = self._symbol_table(sh_type)
        if table is None:
            return 0
        self._check_storage(storage, table.count)

        sections = self._section_headers()
        relocatable = self._header.e_type == ET_REL
        fmt = self._endian + _SYM_FMT[self._header.ei_class]

        for i in range(table.count):
            offset = table.offset + i * table.entsize
            if self.is_64bit:
                st_name, st_info, _st_other, st_shndx, st_value, _st_size = struct.unpack_from(
                    fmt, self._data, offset
                )
            else:
                st_name, st_value, _st_size, st_info, _st_other, st_shndx = struct.unpack_from(
                    fmt, self._data, offset
                )

            # Relocatable objects store section-relative values.
            if relocatable and SHN_UNDEF < st_shndx < SHN_LORESERVE and st_shndx < len(sections):
                st_value += sections[st_shndx].sh_addr

            storage[i] = RawSymbol(
                name=self._read_cstring(table.strtab, st_name),
                value=st_value,
                is_function=(st_info & 0xF) in (STT_FUNC, STT_GNU_IFUNC),
            )
        return table.count

    # ------------------------------------------------------------------ #
    #  Section stage
    # ------------------------------------------------------------------ #

    def get_sections(self, load_bytes: bool = True) -> list[Section]:
        with self._stage(SectionLoadError):
            headers = self._section_headers()
            if not headers:
                return self._segments_as_sections(load_bytes)

            result: list[Section] = []
            for sh in headers[1:]:
                if not sh.sh_flags & SHF_ALLOC:
                    continue
                if sh.sh_type == SHT_NOBITS:
                    kind = SectionType.BSS
                elif sh.sh_flags & SHF_EXECINSTR:
                    kind = SectionType.CODE
                else:
                    kind = SectionType.DATA

                data = b""
                if kind is not SectionType.BSS:
                    label = f"section {sh.name or sh.sh_name}"
                    if load_bytes:
                        data = self._slice(sh.sh_offset, sh.sh_size, label)
                    else:
                        self._check_range(sh.sh_offset, sh.sh_size, label)

                result.append(Section(
                    name=sh.name,
                    vma=sh.sh_addr,
                    size=sh.sh_size,
                    offset=sh.sh_offset,
                    type=kind,
                    flags=self._section_flags_str(sh.sh_flags),
                    data=data,
                ))
            return result

    def _segments_as_sections(self, load_bytes: bool) -> list[Section]:
        """Describe ``PT_LOAD`` segments when the section table is absent."""
        result: list[Section] = []
        for index, ph in enumerate(p for p in self._program_headers() if p.p_type == PT_LOAD):
            if ph.p_flags & PF_X:
                kind = SectionType.CODE
            elif ph.p_filesz == 0:
                kind = SectionType.BSS
            else:
                kind = SectionType.DATA

            label = f"segment load{index}"
            if load_bytes:
                data = self._slice(ph.p_offset, ph.p_filesz, label)
            else:
                self._check_range(ph.p_offset, ph.p_filesz, label)
                data = b""

            result.append(Section(
                name=f"load{index}",
                vma=ph.p_vaddr,
                size=ph.p_memsz,
                offset=ph.p_offset,
                type=kind,
                flags=self._segment_flags_str(ph.p_flags),
                data=data,
            ))
        return result

    # ------------------------------------------------------------------ #
    #  Section / program header tables
    # ------------------------------------------------------------------ #

    def _section_headers(self) -> list[_SectionHeader]:
        """Parse (once) all section headers and resolve their names."""
        if self._sections is not None:
            return self._sections

        h = self._header
        if h.e_shoff == 0:
            self._sections = []
            return self._sections

        fmt = self._endian + _SHDR_FMT[h.ei_class]
        record = struct.calcsize(fmt)
        if h.e_shentsize < record:
            raise FormatError(
                f"section header entry size {h.e_shentsize} smaller than record ({record})"
            )
        self._check_range(h.e_shoff, record, "section header table")

        # Extended numbering keeps the real counts in section 0.
        first = _SectionHeader(struct.unpack_from(fmt, self._data, h.e_shoff))
        shnum = h.e_shnum if h.e_shnum != 0 else first.sh_size
        shstrndx = first.sh_link if h.e_shstrndx == SHN_XINDEX else h.e_shstrndx
        if shnum == 0:
            self._sections = []
            return self._sections

        self._check_range(h.e_shoff, shnum * h.e_shentsize, "section header table")
        sections = [first]
        for i in range(1, shnum):
            offset = h.e_shoff + i * h.e_shentsize
            sections.append(_SectionHeader(struct.unpack_from(fmt, self._data, offset)))

        if SHN_UNDEF < shstrndx < len(sections):
            strtab_sh = sections[shstrndx]
            names = self._slice(strtab_sh.sh_offset, strtab_sh.sh_size, "section name table")
            for sh in sections:
                sh.name = self._read_cstring(names, sh.sh_name)

        self._sections = sections
        return sections

    def _program_headers(self) -> list[_ProgramHeader]:
        """Parse all program headers (segments)."""
        h = self._header
        if h.e_phoff == 0 or h.e_phnum == 0:
            return []

        fmt = self._endian + _PHDR_FMT[h.ei_class]
        record = struct.calcsize(fmt)
        if h.e_phentsize < record:
            raise FormatError(
                f"program header entry size {h.e_phentsize} smaller than record ({record})"
            )
        self._check_range(h.e_phoff, h.e_phnum * h.e_phentsize, "program header table")

        result: list[_ProgramHeader] = []
        for i in range(h.e_phnum):
            offset = h.e_phoff + i * h.e_phentsize
            ph = _ProgramHeader()
            fields = struct.unpack_from(fmt, self._data, offset)
            if self.is_64bit:
                (
                    ph.p_type, ph.p_flags, ph.p_offset, ph.p_vaddr,
                    ph.p_paddr, ph.p_filesz, ph.p_memsz, ph.p_align,
                ) = fields
            else:
                (
                    ph.p_type, ph.p_offset, ph.p_vaddr, ph.p_paddr,
                    ph.p_filesz, ph.p_memsz, ph.p_flags, ph.p_align,
                ) = fields
            result.append(ph)
        return result

    # ------------------------------------------------------------------ #
    #  Utility methods
    # ------------------------------------------------------------------ #

    @staticmethod
    def _section_flags_str(flags: int) -> str:
        """Convert section flags bitmask to a readable string.

        Returns:
            String like ``"WAX"`` for Write+Alloc+Exec.
        """
        parts: list[str] = []
        if flags & SHF_WRITE:
            parts.append("W")
        if flags & SHF_ALLOC:
            parts.append("A")
        if flags & SHF_EXECINSTR:
            parts.append("X")
        return "".join(parts) if parts else "-"

    @staticmethod
    def _segment_flags_str(flags: int) -> str:
        """Convert program header flags to a readable string (``"RWX"``)."""
        parts: list[str] = []
        if flags & PF_R:
            parts.append("R")
        if flags & PF_W:
            parts.append("W")
        if flags & PF_X:
            parts.append("X")
        return "".join(parts) if parts else "-"
