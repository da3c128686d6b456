"""
Binload -- Executable Loading Layer
====================================

Loads ELF and PE executables from disk into one architecture-agnostic
model: entry point, function symbols, dynamic (imported / exported)
function symbols and section layout.

Capabilities:
    - Magic-number based container detection (ELF, PE; Mach-O, DEX,
      WebAssembly and MS-DOS images are recognised and rejected)
    - x86 / x86-64 architecture resolution
    - Static and dynamic function symbol extraction
    - Section layout with copied contents
    - Typed errors naming the file and the cause

Usage::

    from binload import load_binary, unload_binary

    binary = load_binary("/bin/ls")
    print(binary.type_str, hex(binary.entry), len(binary.symbols))
    unload_binary(binary)

References:
    - TIS Committee. (1995). ELF Specification.
    - Microsoft. (2024). PE Format.
"""

from binload.core.errors import (
    BinaryNotFoundError,
    LoadError,
    LoadIOError,
    LoadOutOfMemoryError,
    NotAnExecutableError,
    SectionLoadError,
    SymbolTableReadError,
    UnsupportedArchitectureError,
    UnsupportedFormatError,
)
from binload.core.loader import BinaryLoader, ensure_initialized, load_binary, unload_binary
from binload.core.models import (
    Arch,
    Binary,
    BinaryType,
    Section,
    SectionType,
    Symbol,
    SymbolType,
    TypeHint,
)

__version__ = "1.0.0"
__all__ = [
    "load_binary",
    "unload_binary",
    "ensure_initialized",
    "BinaryLoader",
    "Binary",
    "Symbol",
    "Section",
    "BinaryType",
    "Arch",
    "SymbolType",
    "SectionType",
    "TypeHint",
    "LoadError",
    "LoadIOError",
    "BinaryNotFoundError",
    "NotAnExecutableError",
    "UnsupportedFormatError",
    "UnsupportedArchitectureError",
    "SymbolTableReadError",
    "SectionLoadError",
    "LoadOutOfMemoryError",
]
