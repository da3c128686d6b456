"""
Synthetic executable builders for the test suite.

Produces small but structurally valid ELF and PE images in memory so the
tests never depend on binaries installed on the host.
"""

from __future__ import annotations

import struct
from typing import Optional, Sequence, Union

# ---------------------------------------------------------------------------
# ELF
# ---------------------------------------------------------------------------

ET_REL = 1
ET_EXEC = 2
ET_DYN = 3
ET_CORE = 4

EM_386 = 3
EM_ARM = 40
EM_X86_64 = 62
EM_AARCH64 = 183

SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOBITS = 8
SHT_DYNSYM = 11

SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4

STT_NOTYPE = 0
STT_OBJECT = 1
STT_FUNC = 2
STT_SECTION = 3
STT_GNU_IFUNC = 10

TEXT_INDEX = 1
DATA_INDEX = 2
BSS_INDEX = 3

TEXT_BYTES = b"\x55\x48\x89\xe5" + b"\x90" * 59 + b"\xc3"
DATA_BYTES = b"DATA" * 4
BSS_SIZE = 0x100

# (name, value, kind); kind is one of func, ifunc, object, notype,
# section or import (undefined function).
SymbolSpec = tuple[str, int, str]

_KINDS: dict[str, tuple[int, int]] = {
    "func": (STT_FUNC, TEXT_INDEX),
    "ifunc": (STT_GNU_IFUNC, TEXT_INDEX),
    "object": (STT_OBJECT, DATA_INDEX),
    "notype": (STT_NOTYPE, TEXT_INDEX),
    "section": (STT_SECTION, TEXT_INDEX),
    "import": (STT_FUNC, 0),
}


def _align(buf: bytearray, alignment: int) -> None:
    while len(buf) % alignment:
        buf.append(0)


def _strtab(names: Sequence[str]) -> tuple[bytes, dict[str, int]]:
    table = bytearray(b"\x00")
    offsets: dict[str, int] = {"": 0}
    for name in names:
        if name in offsets:
            continue
        offsets[name] = len(table)
        table += name.encode() + b"\x00"
    return bytes(table), offsets


def _elf_symbols(symbols: Sequence[SymbolSpec], bits: int) -> tuple[bytes, bytes]:
    strtab, offsets = _strtab([name for name, _value, _kind in symbols])
    entries = bytearray(b"\x00" * (24 if bits == 64 else 16))  # STN_UNDEF
    for name, value, kind in symbols:
        st_type, shndx = _KINDS[kind]
        st_info = (1 << 4) | st_type  # STB_GLOBAL
        if bits == 64:
            entries += struct.pack("<IBBHQQ", offsets[name], st_info, 0, shndx, value, 8)
        else:
            entries += struct.pack("<IIIBBH", offsets[name], value, 8, st_info, 0, shndx)
    return bytes(entries), strtab


def build_elf(
    symbols: Optional[Sequence[SymbolSpec]] = (),
    dynamic_symbols: Optional[Sequence[SymbolSpec]] = None,
    *,
    bits: int = 64,
    machine: Optional[int] = None,
    e_type: int = ET_EXEC,
    entry: int = 0x401000,
    text_addr: int = 0x401000,
    data_addr: int = 0x404000,
    with_sections: bool = True,
    symtab_entsize: Optional[int] = None,
    dynsym_entsize: Optional[int] = None,
) -> bytes:
    """Build a little-endian ELF image.

    ``symbols=None`` omits ``.symtab`` (a stripped binary) and
    ``dynamic_symbols=None`` omits ``.dynsym``.  ``with_sections=False``
    produces a file described only by ``PT_LOAD`` program headers.
    """
    if machine is None:
        machine = EM_X86_64 if bits == 64 else EM_386
    is64 = bits == 64
    ehsize = 64 if is64 else 52
    shentsize = 64 if is64 else 40
    phentsize = 56 if is64 else 32
    bss_addr = data_addr + 0x100

    out = bytearray(b"\x00" * ehsize)

    if not with_sections:
        phoff = len(out)
        out += b"\x00" * (2 * phentsize)
        _align(out, 16)
        text_off = len(out)
        out += TEXT_BYTES
        _align(out, 16)
        data_off = len(out)
        out += DATA_BYTES
        phdrs = [
            (1, 0x5, text_off, text_addr, len(TEXT_BYTES), len(TEXT_BYTES)),  # R X
            (1, 0x6, data_off, data_addr, len(DATA_BYTES), len(DATA_BYTES) + BSS_SIZE),  # RW
        ]
        for i, (p_type, flags, offset, vaddr, filesz, memsz) in enumerate(phdrs):
            if is64:
                raw = struct.pack("<IIQQQQQQ", p_type, flags, offset, vaddr, vaddr, filesz, memsz, 0x1000)
            else:
                raw = struct.pack("<IIIIIIII", p_type, offset, vaddr, vaddr, filesz, memsz, flags, 0x1000)
            out[phoff + i * phentsize : phoff + (i + 1) * phentsize] = raw
        out[:ehsize] = _elf_header(bits, e_type, machine, entry, phoff, 0, 2, 0, 0)
        return bytes(out)

    # (name, type, flags, addr, data, link, info, entsize, nobits_size)
    sections: list[list] = []
    sections.append([".text", SHT_PROGBITS, SHF_ALLOC | SHF_EXECINSTR, text_addr, TEXT_BYTES, 0, 0, 0, 0])
    sections.append([".data", SHT_PROGBITS, SHF_ALLOC | SHF_WRITE, data_addr, DATA_BYTES, 0, 0, 0, 0])
    sections.append([".bss", SHT_NOBITS, SHF_ALLOC | SHF_WRITE, bss_addr, b"", 0, 0, 0, BSS_SIZE])

    sym_entsize = 24 if is64 else 16
    if symbols is not None:
        table, strtab = _elf_symbols(symbols, bits)
        symtab_index = len(sections) + 1
        sections.append([".symtab", SHT_SYMTAB, 0, 0, table, symtab_index + 1, 1,
                         sym_entsize if symtab_entsize is None else symtab_entsize, 0])
        sections.append([".strtab", SHT_STRTAB, 0, 0, strtab, 0, 0, 0, 0])
    if dynamic_symbols is not None:
        table, strtab = _elf_symbols(dynamic_symbols, bits)
        dynsym_index = len(sections) + 1
        sections.append([".dynsym", SHT_DYNSYM, SHF_ALLOC, 0, table, dynsym_index + 1, 1,
                         sym_entsize if dynsym_entsize is None else dynsym_entsize, 0])
        sections.append([".dynstr", SHT_STRTAB, SHF_ALLOC, 0, strtab, 0, 0, 0, 0])

    shstrtab, name_offsets = _strtab([s[0] for s in sections] + [".shstrtab"])
    sections.append([".shstrtab", SHT_STRTAB, 0, 0, shstrtab, 0, 0, 0, 0])

    offsets: list[int] = []
    for sec in sections:
        _align(out, 16)
        offsets.append(len(out))
        out += sec[4]

    _align(out, 8)
    shoff = len(out)
    out += b"\x00" * shentsize  # SHN_UNDEF
    for sec, offset in zip(sections, offsets):
        name, sh_type, flags, addr, data, link, info, entsize, nobits_size = sec
        size = nobits_size if sh_type == SHT_NOBITS else len(data)
        fields = (name_offsets[name], sh_type, flags, addr, offset, size, link, info, 8, entsize)
        fmt = "<IIQQQQIIQQ" if is64 else "<IIIIIIIIII"
        out += struct.pack(fmt, *fields)

    shnum = len(sections) + 1
    out[:ehsize] = _elf_header(bits, e_type, machine, entry, 0, shoff, 0, shnum, shnum - 1)
    return bytes(out)


def _elf_header(
    bits: int,
    e_type: int,
    machine: int,
    entry: int,
    phoff: int,
    shoff: int,
    phnum: int,
    shnum: int,
    shstrndx: int,
) -> bytes:
    is64 = bits == 64
    ident = b"\x7fELF" + bytes([2 if is64 else 1, 1, 1, 0]) + b"\x00" * 8
    if is64:
        return ident + struct.pack(
            "<HHIQQQIHHHHHH", e_type, machine, 1, entry, phoff, shoff, 0,
            64, 56, phnum, 64, shnum, shstrndx,
        )
    return ident + struct.pack(
        "<HHIIIIIHHHHHH", e_type, machine, 1, entry, phoff, shoff, 0,
        52, 32, phnum, 40, shnum, shstrndx,
    )


def elf_section_header_offset(image: bytes) -> int:
    """``e_shoff`` of a 64-bit image produced by :func:`build_elf`."""
    return struct.unpack_from("<Q", image, 0x28)[0]


# ---------------------------------------------------------------------------
# PE
# ---------------------------------------------------------------------------

IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xAA64

PE_TEXT_RVA = 0x1000
PE_RDATA_RVA = 0x2000
PE_BSS_RVA = 0x3000
# File offset of .rdata: headers, then one file-aligned page of .text
PE_RDATA_OFFSET = 0x600
_E_LFANEW = 0x80
_FILE_ALIGN = 0x200

# (name, value, section_number, is_function)
CoffSymbol = tuple[str, int, int, bool]
ImportSpec = dict[str, Sequence[Union[str, int]]]


class _RData:
    """Allocator for the contents of ``.rdata``."""

    def __init__(self) -> None:
        self.buf = bytearray()

    @property
    def rva(self) -> int:
        return PE_RDATA_RVA + len(self.buf)

    def add(self, data: bytes, align: int = 4) -> int:
        _align(self.buf, align)
        rva = self.rva
        self.buf += data
        return rva

    def reserve(self, size: int, align: int = 4) -> int:
        return self.add(b"\x00" * size, align)

    def patch(self, rva: int, data: bytes) -> None:
        offset = rva - PE_RDATA_RVA
        self.buf[offset : offset + len(data)] = data


def _build_exports(
    rdata: _RData,
    exports: Sequence[tuple[str, int]],
    forwarders: Sequence[tuple[str, str]],
) -> tuple[int, int]:
    names = [name for name, _rva in exports] + [name for name, _target in forwarders]
    count = len(names)
    dir_rva = rdata.reserve(40)
    funcs_rva = rdata.reserve(4 * count)
    names_rva = rdata.reserve(4 * count)
    ords_rva = rdata.reserve(2 * count)
    dll_name_rva = rdata.add(b"test.dll\x00", 1)

    func_rvas = [rva for _name, rva in exports]
    for _name, target in forwarders:
        func_rvas.append(rdata.add(target.encode() + b"\x00", 1))
    for i, name in enumerate(names):
        name_rva = rdata.add(name.encode() + b"\x00", 1)
        rdata.patch(funcs_rva + 4 * i, struct.pack("<I", func_rvas[i]))
        rdata.patch(names_rva + 4 * i, struct.pack("<I", name_rva))
        rdata.patch(ords_rva + 2 * i, struct.pack("<H", i))

    rdata.patch(dir_rva, struct.pack(
        "<IIHHIIIIIII", 0, 0, 0, 0, dll_name_rva, 1, count, count, funcs_rva, names_rva, ords_rva,
    ))
    return dir_rva, rdata.rva - dir_rva


def _build_imports(rdata: _RData, imports: ImportSpec, bits: int) -> tuple[int, int]:
    thunk_fmt = "<Q" if bits == 64 else "<I"
    thunk_size = 8 if bits == 64 else 4
    ordinal_flag = 1 << 63 if bits == 64 else 1 << 31

    dlls = list(imports)
    desc_rva = rdata.reserve(20 * (len(dlls) + 1))
    for index, dll in enumerate(dlls):
        entries = imports[dll]
        thunks: list[int] = []
        for entry in entries:
            if isinstance(entry, int):
                thunks.append(ordinal_flag | entry)
            else:
                thunks.append(rdata.add(struct.pack("<H", 0) + entry.encode() + b"\x00", 2))
        table = b"".join(struct.pack(thunk_fmt, t) for t in thunks) + b"\x00" * thunk_size
        ilt_rva = rdata.add(table, thunk_size)
        iat_rva = rdata.add(table, thunk_size)
        name_rva = rdata.add(dll.encode() + b"\x00", 1)
        rdata.patch(desc_rva + 20 * index, struct.pack("<IIIII", ilt_rva, 0, 0, name_rva, iat_rva))
    return desc_rva, 20 * (len(dlls) + 1)


def pe_iat_rva(imports: ImportSpec, bits: int, dll: str, index: int) -> int:
    """RVA of an IAT slot, recomputed by replaying :func:`build_pe` layout."""
    rdata = _RData()
    _build_imports(rdata, imports, bits)
    desc_offset = list(imports).index(dll) * 20
    iat_rva = struct.unpack_from("<I", rdata.buf, desc_offset + 16)[0]
    return iat_rva + index * (8 if bits == 64 else 4)


def build_pe(
    *,
    bits: int = 64,
    machine: Optional[int] = None,
    entry_rva: int = 0x1000,
    image_base: Optional[int] = None,
    exports: Sequence[tuple[str, int]] = (),
    forwarders: Sequence[tuple[str, str]] = (),
    imports: Optional[ImportSpec] = None,
    coff_symbols: Sequence[CoffSymbol] = (),
) -> bytes:
    """Build a PE32 (``bits=32``) or PE32+ image with .text, .rdata and .bss.

    When *imports* are combined with *exports*, the import structures follow
    the export directory inside ``.rdata``; use :func:`pe_iat_rva` only for
    images built without exports.
    """
    if machine is None:
        machine = IMAGE_FILE_MACHINE_AMD64 if bits == 64 else IMAGE_FILE_MACHINE_I386
    if image_base is None:
        image_base = 0x140000000 if bits == 64 else 0x400000
    is64 = bits == 64

    rdata = _RData()
    export_dir = (0, 0)
    import_dir = (0, 0)
    if exports or forwarders:
        export_dir = _build_exports(rdata, exports, forwarders)
    if imports:
        import_dir = _build_imports(rdata, imports, bits)
    if not rdata.buf:
        rdata.add(b"\x00" * 16)
    _align(rdata.buf, _FILE_ALIGN)
    rdata_raw = bytes(rdata.buf)

    text_raw = TEXT_BYTES.ljust(_FILE_ALIGN, b"\xcc")
    text_off = 0x400
    rdata_off = PE_RDATA_OFFSET
    symtab_off = rdata_off + len(rdata_raw)

    # COFF symbol table (each function symbol carries one aux record)
    records = bytearray()
    strtab = bytearray()
    nsyms = 0
    for name, value, section_number, is_function in coff_symbols:
        encoded = name.encode()
        if len(encoded) <= 8:
            raw_name = encoded.ljust(8, b"\x00")
        else:
            raw_name = b"\x00\x00\x00\x00" + struct.pack("<I", 4 + len(strtab))
            strtab += encoded + b"\x00"
        sym_type = 0x20 if is_function else 0
        aux = 1 if is_function else 0
        records += struct.pack("<8sIhHBB", raw_name, value, section_number, sym_type, 2, aux)
        records += b"\x00" * 18 * aux
        nsyms += 1 + aux
    symbol_blob = bytes(records) + struct.pack("<I", 4 + len(strtab)) + bytes(strtab) if nsyms else b""

    opt_size = 240 if is64 else 224
    out = bytearray(b"\x00" * _E_LFANEW)
    out[0:2] = b"MZ"
    struct.pack_into("<I", out, 0x3C, _E_LFANEW)
    out += b"PE\x00\x00"
    out += struct.pack(
        "<HHIIIHH", machine, 3, 0, symtab_off if nsyms else 0, nsyms, opt_size,
        0x0022 if is64 else 0x0102,
    )

    if is64:
        out += struct.pack("<HBBIIIII", 0x20B, 14, 0, 0x200, len(rdata_raw), BSS_SIZE, entry_rva, PE_TEXT_RVA)
        out += struct.pack(
            "<QIIHHHHHHIIIIHHQQQQII", image_base, 0x1000, _FILE_ALIGN, 6, 0, 0, 0, 6, 0, 0,
            0x4000, 0x400, 0, 3, 0, 0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
        )
    else:
        out += struct.pack("<HBBIIIIII", 0x10B, 14, 0, 0x200, len(rdata_raw), BSS_SIZE, entry_rva, PE_TEXT_RVA, PE_RDATA_RVA)
        out += struct.pack(
            "<IIIHHHHHHIIIIHHIIIIII", image_base, 0x1000, _FILE_ALIGN, 6, 0, 0, 0, 6, 0, 0,
            0x4000, 0x400, 0, 3, 0, 0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
        )
    directories = [export_dir, import_dir] + [(0, 0)] * 14
    for rva, size in directories:
        out += struct.pack("<II", rva, size)

    section_table = [
        (b".text", 0x40, PE_TEXT_RVA, len(text_raw), text_off, 0x60000020),
        (b".rdata", len(rdata_raw), PE_RDATA_RVA, len(rdata_raw), rdata_off, 0x40000040),
        (b".bss", BSS_SIZE, PE_BSS_RVA, 0, 0, 0xC0000080),
    ]
    for name, vsize, vaddr, raw_size, raw_ptr, chars in section_table:
        out += struct.pack("<8sIIIIIIHHI", name, vsize, vaddr, raw_size, raw_ptr, 0, 0, 0, 0, chars)

    out = out.ljust(text_off, b"\x00")
    out += text_raw
    out += rdata_raw
    out += symbol_blob
    return bytes(out)


# ---------------------------------------------------------------------------
# Foreign / non-executable samples
# ---------------------------------------------------------------------------

MACHO_64 = b"\xcf\xfa\xed\xfe" + struct.pack("<II", 0x01000007, 3) + b"\x00" * 52
MSDOS_EXE = b"MZ" + b"\x90" * 0x3A + struct.pack("<I", 0) + b"\x00" * 64
AR_ARCHIVE = b"!<arch>\n" + b"hello.o/        0           0     0     644     4         `\n" + b"\x00" * 4
TEXT_FILE = b"#include <stdio.h>\nint main(void) { return 0; }\n"


def elf_core_dump() -> bytes:
    return _elf_header(64, ET_CORE, EM_X86_64, 0, 0, 0, 0, 0, 0)
