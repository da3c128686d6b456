"""
Loader Error Taxonomy
======================

Exception hierarchy raised by the binload pipeline.  Every failure that can
reach a caller of :func:`binload.load_binary` is a :class:`LoadError`
subclass carrying the offending file name and a human-readable reason, so a
single ``str(exc)`` line is enough to triage a failed load.

Structural errors (I/O, format, architecture, sections) abort the load.
Symbol-table errors are absorbed by the orchestrator and only degrade the
symbol sequences to empty.
"""

from __future__ import annotations

from typing import Optional


class LoadError(Exception):
    """Base class for every binary loading failure.

    Attributes:
        filename: Path of the binary being loaded (as given by the caller).
        reason: Human-readable description of the underlying cause.
    """

    def __init__(self, filename: str, reason: str) -> None:
        self.filename = filename
        self.reason = reason
        super().__init__(f"{filename}: {reason}")


class LoadIOError(LoadError):
    """The file could not be opened or read."""


class BinaryNotFoundError(LoadIOError):
    """The path does not exist."""


class NotAnExecutableError(LoadError):
    """The file is not an executable object (archive, text, data, core)."""


class UnsupportedFormatError(LoadError):
    """An executable container other than ELF or PE.

    Attributes:
        format_tag: Raw format tag observed in the file (``"mach-o"``,
            ``"msdos"``, ...).
    """

    def __init__(self, filename: str, format_tag: str, reason: Optional[str] = None) -> None:
        self.format_tag = format_tag
        super().__init__(filename, reason or f"unsupported binary type ({format_tag})")


class UnsupportedArchitectureError(LoadError):
    """A machine type outside x86-32 / x86-64.

    Attributes:
        arch_name: Printable architecture name reported by the header.
        machine: Raw numeric machine identifier.
    """

    def __init__(self, filename: str, arch_name: str, machine: int = 0) -> None:
        self.arch_name = arch_name
        self.machine = machine
        super().__init__(filename, f"unsupported architecture ({arch_name})")


class SymbolTableReadError(LoadError):
    """The symbol table size or contents are corrupt."""


class SectionLoadError(LoadError):
    """The section layout could not be read."""


class LoadOutOfMemoryError(LoadError):
    """Working storage for the symbol table could not be allocated."""
