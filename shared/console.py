"""
Binload Console
================

Thin layer over :class:`rich.console.Console` giving every binload screen
the same palette: section rules, one-line status messages, key/value panels
and tables.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

_BINLOAD_THEME = Theme(
    {
        "binload.section": "bold bright_magenta",
        "binload.border": "bright_cyan",
        "binload.header": "bold bright_magenta",
        "binload.success": "bold green",
        "binload.warning": "bold yellow",
        "binload.error": "bold red",
        "binload.info": "bold bright_blue",
        "binload.key": "bold",
        "binload.addr": "bright_cyan",
        "binload.code": "bold bright_red",
        "binload.data": "bright_cyan",
        "binload.bss": "dim cyan",
    }
)

# level -> (style, marker, label)
_LEVELS: dict[str, tuple[str, str, str]] = {
    "success": ("binload.success", "✔", "SUCCESS"),
    "info": ("binload.info", "ℹ", "INFO"),
    "warning": ("binload.warning", "⚠", "WARNING"),
    "error": ("binload.error", "✘", "ERROR"),
}


@dataclass(frozen=True, slots=True)
class Column:
    """Column of a :meth:`BinloadConsole.table`."""

    header: str
    style: str = ""
    justify: str = "left"
    min_width: int | None = None


class BinloadConsole:
    """Styled console used by the binload front end.

    Usage::

        con = BinloadConsole(stderr=True)
        con.error("/tmp/x: file does not appear to be an executable")

        con = BinloadConsole(record=True)
        con.kv_panel("Binary Information", [("Format", "ELF")])
        text = con.rich.export_text()
    """

    def __init__(self, *, quiet: bool = False, record: bool = False, stderr: bool = False) -> None:
        self._console = Console(
            theme=_BINLOAD_THEME,
            quiet=quiet,
            record=record,
            stderr=stderr,
            highlight=False,
        )

    @property
    def rich(self) -> Console:
        """The underlying Rich console."""
        return self._console

    # ------------------------------------------------------------------ #
    #  Messages
    # ------------------------------------------------------------------ #

    def message(self, level: str, text: str) -> None:
        """Print ``[marker] LABEL: text`` on a single line.

        Raises:
            KeyError: *level* is not one of success, info, warning, error.
        """
        style, marker, label = _LEVELS[level]
        self._console.print(
            f"[{style}]\\[{marker}] {label}:[/{style}] {escape(text)}",
            soft_wrap=True,
        )

    def success(self, text: str) -> None:
        self.message("success", text)

    def info(self, text: str) -> None:
        self.message("info", text)

    def warning(self, text: str) -> None:
        self.message("warning", text)

    def error(self, text: str) -> None:
        self.message("error", text)

    # ------------------------------------------------------------------ #
    #  Layout
    # ------------------------------------------------------------------ #

    def section(self, title: str) -> None:
        """Rule with *title*, followed by a blank line."""
        self._console.rule(f"  {escape(title)}  ", style="binload.section")
        self._console.print()

    def kv_panel(self, title: str, items: Sequence[tuple[str, str]]) -> None:
        """Bordered panel of ``key: value`` rows with aligned values.

        Keys and values are printed literally.
        """
        grid = Table.grid(padding=(0, 2))
        grid.add_column(style="binload.key", no_wrap=True)
        grid.add_column()
        for key, value in items:
            grid.add_row(f"{escape(key)}:", escape(value))
        self._console.print(
            Panel(
                grid,
                title=f"[bold bright_cyan]{escape(title)}[/bold bright_cyan]",
                border_style="binload.border",
                padding=(1, 2),
            )
        )

    def table(
        self,
        columns: Sequence[Column | str],
        rows: Sequence[Sequence[Any]],
        *,
        title: str | None = None,
        caption: str | None = None,
        empty: str = "None",
    ) -> None:
        """Render *rows* as a table, or an info line reading *empty*.

        Cells are stringified and may carry Rich markup; callers escape
        untrusted text.
        """
        if not rows:
            self.info(empty)
            return

        tbl = Table(
            title=title,
            caption=caption,
            border_style="binload.border",
            header_style="binload.header",
            padding=(0, 1),
        )
        for col in columns:
            if isinstance(col, str):
                col = Column(col)
            tbl.add_column(col.header, style=col.style, justify=col.justify, min_width=col.min_width)
        for row in rows:
            tbl.add_row(*(str(cell) for cell in row))
        self._console.print(tbl)

    def print(self, *args: Any, **kwargs: Any) -> None:
        self._console.print(*args, **kwargs)

    def blank(self, count: int = 1) -> None:
        for _ in range(count):
            self._console.print()

    def rule(self, style: str = "dim") -> None:
        self._console.rule(style=style)
