"""
Binload Console Output
=======================

Terminal rendering of a loaded :class:`~binload.core.models.Binary`: a
metadata panel, the section layout and both symbol tables.
"""

from __future__ import annotations

from rich.markup import escape

from shared.console import BinloadConsole, Column

from binload.core.models import Binary, Section, SectionType, Symbol


_SECTION_TYPE_STYLES: dict[SectionType, str] = {
    SectionType.CODE: "binload.code",
    SectionType.DATA: "binload.data",
    SectionType.BSS: "binload.bss",
}

_SECTION_COLUMNS: tuple[Column, ...] = (
    Column("#", style="dim", justify="right"),
    Column("Name", style="bold", min_width=12),
    Column("VMA", justify="right"),
    Column("Size", justify="right"),
    Column("Offset", justify="right"),
    Column("Flags"),
    Column("Type"),
)

_SYMBOL_COLUMNS: tuple[Column, ...] = (
    Column("Address", style="binload.addr", justify="right"),
    Column("Name"),
)


def _hex(value: int, bits: int) -> str:
    # Zero-padded to the address width of the binary.
    return f"0x{value:0{bits // 4}x}"


class BinaryConsoleOutput:
    """Rich terminal display for loaded binaries.

    Usage::

        BinaryConsoleOutput().display(binary, max_symbols=20)
    """

    def __init__(self, console: BinloadConsole | None = None) -> None:
        self._console: BinloadConsole = console or BinloadConsole()

    def display(
        self,
        binary: Binary,
        *,
        show_sections: bool = True,
        max_symbols: int = 50,
    ) -> None:
        """Display the header, then sections and symbols.

        Args:
            binary: The loaded binary.
            show_sections: Render the section table.
            max_symbols: Maximum rows per symbol table.
        """
        self.display_header(binary)
        if show_sections:
            self.display_sections(binary.sections, binary.bits)
        self.display_symbols("Symbols", binary.symbols, binary.bits, max_symbols)
        self.display_symbols("Dynamic Symbols", binary.dynamic_symbols, binary.bits, max_symbols)
        self._console.rule()

    def display_header(self, binary: Binary) -> None:
        items = [
            ("File", binary.filename),
            ("Format", f"{binary.type.value.upper()} ({binary.type_str})"),
            ("Arch", f"{binary.arch_str} ({binary.bits}-bit)"),
            ("Entry Point", _hex(binary.entry, binary.bits)),
            ("Sections", str(len(binary.sections))),
            (
                "Symbols",
                f"{len(binary.symbols)} static, {len(binary.dynamic_symbols)} dynamic",
            ),
        ]
        text_section = binary.get_text_section()
        if text_section is not None:
            items.append(
                (".text", f"{_hex(text_section.vma, binary.bits)} ({text_section.size:,} bytes)")
            )
        self._console.kv_panel("Binary Information", items)
        self._console.blank()

    def display_sections(self, sections: list[Section], bits: int = 64) -> None:
        self._console.section("Sections")
        rows = []
        for index, sec in enumerate(sections, 1):
            style = _SECTION_TYPE_STYLES[sec.type]
            rows.append(
                (
                    index,
                    escape(sec.name) or "<unnamed>",
                    _hex(sec.vma, bits),
                    f"{sec.size:,}",
                    f"0x{sec.offset:x}",
                    sec.flags,
                    f"[{style}]{sec.type.value.upper()}[/{style}]",
                )
            )
        self._console.table(_SECTION_COLUMNS, rows, empty="No sections")
        self._console.blank()

    def display_symbols(
        self,
        title: str,
        symbols: list[Symbol],
        bits: int = 64,
        max_display: int = 50,
    ) -> None:
        """Display one symbol sequence, truncated to *max_display* rows."""
        self._console.section(title)
        shown = symbols[:max_display]
        self._console.table(
            _SYMBOL_COLUMNS,
            [(_hex(sym.addr, bits), escape(sym.name)) for sym in shown],
        )
        if len(symbols) > len(shown):
            self._console.info(f"Showing {len(shown)} of {len(symbols)} symbols.")
        self._console.blank()
