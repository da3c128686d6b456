"""
Binload Data Models
====================

Pydantic-based models for the architecture-agnostic view of a loaded
executable.  A :class:`Binary` is the aggregate root built by the loader;
its :class:`Symbol` and :class:`Section` entries are owned by it and never
shared with another binary.

References:
    - TIS Committee. (1995). Executable and Linkable Format (ELF) Specification.
    - Microsoft. (2024). PE Format. Microsoft Learn.
"""

from __future__ import annotations

import enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, PrivateAttr

UINT64_MAX: int = 0xFFFFFFFFFFFFFFFF


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class BinaryType(str, enum.Enum):
    """Supported executable container formats."""
    ELF = "elf"
    PE = "pe"


class TypeHint(str, enum.Enum):
    """Caller-supplied format hint.  Advisory only."""
    AUTO = "auto"
    ELF = "elf"
    PE = "pe"

    @classmethod
    def coerce(cls, value: TypeHint | str | None) -> TypeHint:
        """Accept enum members, case-insensitive strings and ``None``."""
        if value is None:
            return cls.AUTO
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())

    def matches(self, binary_type: BinaryType) -> bool:
        return self is TypeHint.AUTO or self.value == binary_type.value


class Arch(str, enum.Enum):
    """Supported target architectures."""
    X86 = "x86"


class SymbolType(str, enum.Enum):
    """Symbol kinds produced by the loader."""
    FUNCTION = "function"


class SectionType(str, enum.Enum):
    """Coarse classification of a loadable section."""
    CODE = "code"
    DATA = "data"
    BSS = "bss"


# ---------------------------------------------------------------------------
# Symbols
# ---------------------------------------------------------------------------

class Symbol(BaseModel):
    """A function symbol declared by the binary.

    Attributes:
        name: Symbol name as declared (mangled names are kept verbatim).
        addr: Link-time virtual address of the symbol.
        type: Symbol kind.
    """
    name: str = Field(min_length=1)
    addr: int = Field(default=0, ge=0, le=UINT64_MAX)
    type: SymbolType = SymbolType.FUNCTION


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

class Section(BaseModel):
    """A named, addressed region of the binary's memory image.

    Attributes:
        name: Section name (``.text``, ``.data`` ...).
        vma: Virtual address when loaded into memory.
        size: Size in memory, in bytes.
        offset: File offset of the section contents.
        type: CODE, DATA or BSS.
        flags: Permission/attribute flags as a readable string.
        data: Raw contents copied out of the file (empty for BSS).
    """
    name: str = ""
    vma: int = Field(default=0, ge=0, le=UINT64_MAX)
    size: int = Field(default=0, ge=0)
    offset: int = Field(default=0, ge=0)
    type: SectionType = SectionType.DATA
    flags: str = ""
    data: bytes = Field(default=b"", repr=False, exclude=True)

    def contains(self, addr: int) -> bool:
        """Return ``True`` if *addr* falls inside this section."""
        return self.vma <= addr < self.vma + self.size


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

class Binary(BaseModel):
    """Architecture-agnostic model of a loaded executable.

    Instances are only constructed once the format, architecture and section
    layout of a file are all known, so ``entry``, ``type``, ``arch`` and
    ``bits`` are always consistent with each other.

    Attributes:
        filename: Source path as given to the loader.
        entry: Virtual address of the program entry point.
        type: Container format.
        type_str: Human-readable target name (``elf64-x86-64``, ``pei-i386``).
        arch: Target architecture.
        bits: Address width (32 or 64).
        arch_str: Printable architecture name (``i386:x86-64``).
        symbols: Static function symbols in symbol-table order.
        dynamic_symbols: Dynamic (imported/exported) function symbols.
        sections: Loadable sections in section-table order.
    """
    filename: str
    entry: int = Field(ge=0, le=UINT64_MAX)
    type: BinaryType
    type_str: str = ""
    arch: Arch
    bits: Literal[32, 64]
    arch_str: str = ""
    symbols: list[Symbol] = Field(default_factory=list)
    dynamic_symbols: list[Symbol] = Field(default_factory=list)
    sections: list[Section] = Field(default_factory=list)

    _loaded: bool = PrivateAttr(default=True)

    @property
    def is_loaded(self) -> bool:
        """``False`` once :meth:`release` (``unload_binary``) has run."""
        return self._loaded

    @property
    def function_symbols(self) -> list[Symbol]:
        """Static symbols followed by dynamic symbols."""
        return [*self.symbols, *self.dynamic_symbols]

    def get_text_section(self) -> Optional[Section]:
        for sec in self.sections:
            if sec.name == ".text":
                return sec
        return None

    def find_section(self, addr: int) -> Optional[Section]:
        """Return the section containing virtual address *addr*, if any."""
        for sec in self.sections:
            if sec.contains(addr):
                return sec
        return None

    def get_symbol(self, name: str) -> Optional[Symbol]:
        """Return the first static or dynamic symbol called *name*."""
        for sym in self.function_symbols:
            if sym.name == name:
                return sym
        return None

    def release(self) -> None:
        """Drop section buffers and symbol lists.  Safe to call twice."""
        if not self._loaded:
            return
        for sec in self.sections:
            sec.data = b""
        self.sections.clear()
        self.symbols.clear()
        self.dynamic_symbols.clear()
        self._loaded = False
