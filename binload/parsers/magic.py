"""
Container Format Detection
===========================

Identifies the container flavour of a candidate executable by examining
its leading bytes (magic numbers / identification fields).

Two layers are provided:

:class:`MagicIdentifier`
    Describes arbitrary data (``"ZIP archive"``, ``"Text file"`` ...) and
    maps it to a short format tag (``"elf"``, ``"pe"``, ``"mach-o"``).

:class:`FormatDetector`
    Decides whether a buffer is a loadable executable object and, if so,
    which supported flavour it is.  Detection probes each flavour in turn;
    a probe that cannot conclude leaves a diagnostic behind, and those
    diagnostics are discarded as soon as a later probe confirms a flavour.

References:
    - Gary Kessler's File Signatures Table.
      https://www.garykessler.net/library/file_sigs.html
    - TIS Committee. (1995). ELF Specification, Version 1.2. (e_ident)
    - Microsoft. (2024). PE Format. (MS-DOS stub, PE signature)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Optional

from binload.core.errors import NotAnExecutableError, UnsupportedFormatError
from binload.core.models import BinaryType


@dataclass(frozen=True, slots=True)
class _Signature:
    """A single file-type magic signature entry.

    Attributes:
        magic: Byte pattern to match.
        offset: Byte offset within the file where *magic* is expected.
        description: Human-readable type description.
        tag: Short format tag.
    """
    magic: bytes
    offset: int
    description: str
    tag: str


# ---------------------------------------------------------------------------
# Signature table -- ordered by specificity (longer / rarer matches first)
# ---------------------------------------------------------------------------

_SIGNATURES: list[_Signature] = [
    # ── Executables & bytecode ──────────────────────────────────────────
    _Signature(b"\x7fELF", 0, "ELF executable", "elf"),
    _Signature(b"MZ", 0, "PE/MS-DOS executable", "msdos"),
    _Signature(b"dex\n", 0, "Android DEX", "dex"),
    _Signature(b"\xfe\xed\xfa\xce", 0, "Mach-O 32-bit", "mach-o"),
    _Signature(b"\xfe\xed\xfa\xcf", 0, "Mach-O 64-bit", "mach-o"),
    _Signature(b"\xce\xfa\xed\xfe", 0, "Mach-O 32-bit (reversed)", "mach-o"),
    _Signature(b"\xcf\xfa\xed\xfe", 0, "Mach-O 64-bit (reversed)", "mach-o"),
    _Signature(b"\xca\xfe\xba\xbe", 0, "Mach-O Fat Binary / Java Class", "mach-o-fat"),
    _Signature(b"\xbe\xba\xfe\xca", 0, "Mach-O Fat Binary (reversed)", "mach-o-fat"),
    _Signature(b"\x00asm", 0, "WebAssembly binary", "wasm"),

    # ── Archives & compressed formats ───────────────────────────────────
    _Signature(b"!<arch>\n", 0, "ar archive", "archive"),
    _Signature(b"!<thin>\n", 0, "ar thin archive", "archive"),
    _Signature(b"PK\x03\x04", 0, "ZIP archive", "archive"),
    _Signature(b"PK\x05\x06", 0, "ZIP archive (empty)", "archive"),
    _Signature(b"\x1f\x8b", 0, "GZIP compressed", "compressed"),
    _Signature(b"BZh", 0, "BZIP2 compressed", "compressed"),
    _Signature(b"\xfd\x37\x7a\x58\x5a\x00", 0, "XZ compressed", "compressed"),
    _Signature(b"7z\xbc\xaf\x27\x1c", 0, "7-Zip archive", "archive"),
    _Signature(b"\x28\xb5\x2f\xfd", 0, "Zstandard compressed", "compressed"),
    _Signature(b"ustar\x0000", 257, "POSIX TAR archive", "archive"),
    _Signature(b"ustar  \x00", 257, "GNU TAR archive", "archive"),

    # ── Data ────────────────────────────────────────────────────────────
    _Signature(b"\x89PNG\r\n\x1a\n", 0, "PNG image", "data"),
    _Signature(b"\xff\xd8\xff", 0, "JPEG image", "data"),
    _Signature(b"GIF8", 0, "GIF image", "data"),
    _Signature(b"%PDF", 0, "PDF document", "data"),
    _Signature(b"SQLite format 3\x00", 0, "SQLite database", "data"),
    _Signature(b"#!", 0, "Script (shebang)", "script"),
]

# Executable containers we recognise but do not load.
_FOREIGN_EXECUTABLE_TAGS: frozenset[str] = frozenset(
    {"msdos", "dex", "mach-o", "mach-o-fat", "wasm"}
)

# ELF identification / header constants used during probing
_ELF_MAGIC: bytes = b"\x7fELF"
_ELFCLASS32: int = 1
_ELFCLASS64: int = 2
_ELFDATA2LSB: int = 1
_ELFDATA2MSB: int = 2
_ELF_HEADER_SIZE: dict[int, int] = {_ELFCLASS32: 52, _ELFCLASS64: 64}
_ET_NONE: int = 0
_ET_REL: int = 1
_ET_EXEC: int = 2
_ET_DYN: int = 3
_ET_CORE: int = 4

# PE identification constants
_MZ_MAGIC: bytes = b"MZ"
_PE_MAGIC: bytes = b"PE\x00\x00"
_DOS_HEADER_SIZE: int = 64
_E_LFANEW_OFFSET: int = 0x3C


class MagicIdentifier:
    """Identify file types by magic byte signatures.

    Usage::

        identifier = MagicIdentifier()
        identifier.identify(raw_bytes)         # => "ar archive"
        identifier.identify_format(raw_bytes)  # => "archive"
    """

    def __init__(self) -> None:
        self._signatures: list[_Signature] = list(_SIGNATURES)

    def identify(self, data: bytes) -> str:
        """Return a human-readable description of *data*.

        Falls back to a text-versus-binary heuristic when no signature
        matches.
        """
        if not data:
            return "Empty file"

        sig = self._match(data)
        if sig is not None:
            return sig.description

        if self._looks_like_text(data[:4096]):
            return "Text file"

        return "Unknown binary"

    def identify_format(self, data: bytes) -> str:
        """Return a normalised short format tag.

        ``"elf"`` and ``"pe"`` are the loadable flavours; an ``MZ`` image
        without a PE header is ``"msdos"``.  Unmatched data is
        ``"unknown"``.
        """
        if not data:
            return "unknown"

        if len(data) >= 4 and data[:4] == _ELF_MAGIC:
            return "elf"
        if len(data) >= 2 and data[:2] == _MZ_MAGIC:
            return "pe" if self._pe_header_offset(data) is not None else "msdos"

        sig = self._match(data)
        return sig.tag if sig is not None else "unknown"

    # ------------------------------------------------------------------ #
    #  Private helpers
    # ------------------------------------------------------------------ #

    def _match(self, data: bytes) -> Optional[_Signature]:
        data_len = len(data)
        for sig in self._signatures:
            end = sig.offset + len(sig.magic)
            if end > data_len:
                continue
            if data[sig.offset : end] == sig.magic:
                return sig
        return None

    @staticmethod
    def _pe_header_offset(data: bytes) -> Optional[int]:
        """Return ``e_lfanew`` if it points at a ``PE\\0\\0`` signature."""
        if len(data) < _DOS_HEADER_SIZE:
            return None
        e_lfanew = struct.unpack_from("<I", data, _E_LFANEW_OFFSET)[0]
        if e_lfanew + 4 > len(data):
            return None
        if data[e_lfanew : e_lfanew + 4] != _PE_MAGIC:
            return None
        return e_lfanew

    @staticmethod
    def _looks_like_text(data: bytes) -> bool:
        """Heuristic check whether data appears to be text.

        A sample is considered text if fewer than 5% of bytes fall outside
        the printable ASCII + common whitespace range.
        """
        if not data:
            return False
        text_bytes = set(range(0x20, 0x7F)) | {0x09, 0x0A, 0x0D}
        non_text = sum(1 for b in data if b not in text_bytes)
        return non_text / len(data) < 0.05


# ---------------------------------------------------------------------------
# FormatDetector
# ---------------------------------------------------------------------------

_Probe = Callable[[bytes, list[str]], Optional[BinaryType]]


class FormatDetector:
    """Confirm that a buffer is a loadable executable object.

    Usage::

        detector = FormatDetector()
        flavour = detector.detect(handle.data, handle.filename)
    """

    def __init__(self, identifier: MagicIdentifier | None = None) -> None:
        self._identifier: MagicIdentifier = identifier or MagicIdentifier()
        self._probes: list[tuple[str, _Probe]] = [
            ("elf", self._probe_elf),
            ("pe", self._probe_pe),
        ]

    @property
    def identifier(self) -> MagicIdentifier:
        return self._identifier

    def detect(self, data: bytes, filename: str) -> BinaryType:
        """Return the container flavour of *data*.

        Raises:
            NotAnExecutableError: *data* is not an executable object.
            UnsupportedFormatError: *data* is an executable container of
                an unsupported flavour; carries the raw format tag.
        """
        if not data:
            raise NotAnExecutableError(filename, "file is empty")

        diagnostics: list[str] = []
        for _name, probe in self._probes:
            flavour = probe(data, diagnostics)
            if flavour is not None:
                # Earlier probes may have left inconclusive notes behind.
                diagnostics.clear()
                return flavour

        tag = self._identifier.identify_format(data)
        if tag in _FOREIGN_EXECUTABLE_TAGS:
            raise UnsupportedFormatError(filename, tag)

        description = self._identifier.identify(data)
        reason = f"does not appear to be an executable ({description})"
        if diagnostics:
            reason = f"{reason}: {'; '.join(diagnostics)}"
        raise NotAnExecutableError(filename, reason)

    # ------------------------------------------------------------------ #
    #  Probes
    # ------------------------------------------------------------------ #

    @staticmethod
    def _probe_elf(data: bytes, diagnostics: list[str]) -> Optional[BinaryType]:
        if len(data) < 16 or data[:4] != _ELF_MAGIC:
            return None

        ei_class = data[4]
        ei_data = data[5]
        if ei_class not in _ELF_HEADER_SIZE:
            diagnostics.append(f"elf: invalid class {ei_class}")
            return None
        if ei_data not in (_ELFDATA2LSB, _ELFDATA2MSB):
            diagnostics.append(f"elf: invalid data encoding {ei_data}")
            return None
        if len(data) < _ELF_HEADER_SIZE[ei_class]:
            diagnostics.append("elf: truncated header")
            return None

        endian = "<" if ei_data == _ELFDATA2LSB else ">"
        e_type = struct.unpack_from(f"{endian}H", data, 16)[0]
        if e_type == _ET_CORE:
            diagnostics.append("elf: core dump, not an object")
            return None
        if e_type not in (_ET_REL, _ET_EXEC, _ET_DYN):
            diagnostics.append(f"elf: unknown object type {e_type}")
            return None
        return BinaryType.ELF

    def _probe_pe(self, data: bytes, diagnostics: list[str]) -> Optional[BinaryType]:
        if len(data) < 2 or data[:2] != _MZ_MAGIC:
            return None
        if self._identifier._pe_header_offset(data) is None:
            diagnostics.append("pe: no PE signature behind MS-DOS header")
            return None
        return BinaryType.PE
