"""
Format Parser Base
===================

Abstract interface shared by the container parsers.  The loader drives a
parser through fixed stages (headers, architecture, symbol tables, dynamic
symbol tables, sections); each stage is an explicit method so that a new
container format only has to implement this interface.

Symbol tables are read in two steps, mirroring how a caller sizes working
storage before filling it::

    upper = parser.get_symtab_upper_bound()
    storage = [None] * upper
    count = parser.canonicalize_symtab(storage)
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import ClassVar, Iterator, Optional, Sequence

from binload.core.errors import LoadError
from binload.core.models import Arch, BinaryType, Section
from binload.core.handle import Buffer


class FormatError(ValueError):
    """Structural problem found while decoding a container.

    Never escapes a parser: every public stage converts it into the
    :class:`~binload.core.errors.LoadError` subclass of that stage.
    """


class RawSymbol:
    """Symbol-table entry as decoded by a parser, before filtering."""
    __slots__ = ("name", "value", "is_function")

    def __init__(self, name: str, value: int, is_function: bool) -> None:
        self.name = name
        self.value = value
        self.is_function = is_function

    def __repr__(self) -> str:
        kind = "func" if self.is_function else "other"
        return f"RawSymbol({self.name!r}, 0x{self.value:x}, {kind})"


class FormatParser(ABC):
    """Base class for container parsers.

    Args:
        data: Complete file contents (``bytes`` or a read-only ``mmap``).
        filename: Name used in raised errors.
        max_symbols: Upper limit on a single symbol table; larger tables
            are reported as corrupt.
    """

    binary_type: ClassVar[BinaryType]

    def __init__(
        self,
        data: Buffer,
        filename: str = "<memory>",
        *,
        max_symbols: Optional[int] = None,
    ) -> None:
        self._data: Buffer = data
        self._size: int = len(data)
        self.filename: str = filename
        self.max_symbols: Optional[int] = max_symbols

    # ------------------------------------------------------------------ #
    #  Stages
    # ------------------------------------------------------------------ #

    @abstractmethod
    def parse_headers(self) -> None:
        """Decode the file headers.  Raises ``NotAnExecutableError``."""

    @property
    @abstractmethod
    def entry(self) -> int:
        """Virtual address of the program entry point."""

    @property
    @abstractmethod
    def type_str(self) -> str:
        """Target name such as ``elf64-x86-64`` or ``pei-i386``."""

    @abstractmethod
    def resolve_arch(self) -> tuple[Arch, int, str]:
        """Return ``(arch, bits, arch_str)``.

        Raises ``UnsupportedArchitectureError`` for anything but x86.
        """

    @abstractmethod
    def get_symtab_upper_bound(self) -> int:
        """Number of storage slots the static symbol table needs."""

    @abstractmethod
    def canonicalize_symtab(self, storage: list[Optional[RawSymbol]]) -> int:
        """Fill *storage* with static symbols and return how many."""

    @abstractmethod
    def get_dynamic_symtab_upper_bound(self) -> int:
        """Number of storage slots the dynamic symbol table needs."""

    @abstractmethod
    def canonicalize_dynamic_symtab(self, storage: list[Optional[RawSymbol]]) -> int:
        """Fill *storage* with dynamic symbols and return how many."""

    @abstractmethod
    def get_sections(self, load_bytes: bool = True) -> list[Section]:
        """Return the loadable sections.  Raises ``SectionLoadError``."""

    # ------------------------------------------------------------------ #
    #  Shared helpers
    # ------------------------------------------------------------------ #

    @contextmanager
    def _stage(self, error_cls: type[LoadError]) -> Iterator[None]:
        """Translate low-level decoding failures into *error_cls*."""
        try:
            yield
        except (struct.error, IndexError, ValueError, OverflowError) as exc:
            raise error_cls(self.filename, str(exc) or type(exc).__name__) from exc

    def _check_range(self, offset: int, size: int, what: str) -> None:
        if offset < 0 or size < 0 or offset + size > self._size:
            raise FormatError(
                f"{what} out of bounds (offset 0x{offset:x}, size 0x{size:x}, "
                f"file size 0x{self._size:x})"
            )

    def _slice(self, offset: int, size: int, what: str) -> bytes:
        self._check_range(offset, size, what)
        return bytes(self._data[offset : offset + size])

    def _check_symbol_count(self, count: int, what: str) -> None:
        if self.max_symbols is not None and count > self.max_symbols:
            raise FormatError(
                f"{what} declares {count:,} entries (limit {self.max_symbols:,})"
            )

    @staticmethod
    def _check_storage(storage: Sequence[object], count: int) -> None:
        if len(storage) < count:
            raise FormatError(
                f"symbol storage too small ({len(storage)} slots for {count} entries)"
            )

    @staticmethod
    def _read_cstring(data: bytes, offset: int) -> str:
        """Read a NUL-terminated string from *data* at *offset*."""
        if offset < 0 or offset >= len(data):
            return ""
        end = data.find(b"\x00", offset)
        if end == -1:
            end = len(data)
        return data[offset:end].decode("utf-8", errors="replace")
