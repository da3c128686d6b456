"""
Symbol Extraction
==================

Turns a parser's raw symbol table into :class:`~binload.core.models.Symbol`
entries.  The table is read in two steps: the parser reports how many
storage slots it needs, the slots are allocated, and the parser fills them.
Only function symbols with a name survive.
"""

from __future__ import annotations

from typing import Optional

from binload.core.errors import LoadOutOfMemoryError, SymbolTableReadError
from binload.core.models import UINT64_MAX, Symbol, SymbolType
from binload.parsers.base import FormatParser, RawSymbol
from shared.logger import BinloadLogger


def extract_symbols(
    parser: FormatParser,
    *,
    dynamic: bool = False,
    logger: Optional[BinloadLogger] = None,
) -> list[Symbol]:
    """Read the static (or dynamic) symbol table of *parser*.

    Args:
        parser: A parser whose headers have been decoded.
        dynamic: Read the dynamic table instead of the static one.
        logger: Receives a debug line with the table statistics.

    Returns:
        Function symbols in table order; an empty list when the table is
        absent.

    Raises:
        SymbolTableReadError: The table is corrupt.
        LoadOutOfMemoryError: Working storage could not be allocated.
    """
    kind = "dynamic" if dynamic else "static"
    if dynamic:
        upper = parser.get_dynamic_symtab_upper_bound()
    else:
        upper = parser.get_symtab_upper_bound()
    if upper < 0:
        raise SymbolTableReadError(parser.filename, f"invalid {kind} symbol table size {upper}")
    if upper == 0:
        if logger is not None:
            logger.debug("No %s symbol table", kind)
        return []

    try:
        storage: list[Optional[RawSymbol]] = [None] * upper
    except MemoryError as exc:
        raise LoadOutOfMemoryError(
            parser.filename, f"cannot allocate storage for {upper:,} {kind} symbols"
        ) from exc

    try:
        if dynamic:
            count = parser.canonicalize_dynamic_symtab(storage)
        else:
            count = parser.canonicalize_symtab(storage)
        if count < 0 or count > upper:
            raise SymbolTableReadError(
                parser.filename, f"invalid {kind} symbol count {count} (expected at most {upper})"
            )

        symbols: list[Symbol] = []
        for raw in storage[:count]:
            if raw is None or not raw.is_function or not raw.name:
                continue
            symbols.append(Symbol(
                name=raw.name,
                addr=raw.value & UINT64_MAX,
                type=SymbolType.FUNCTION,
            ))
    finally:
        storage.clear()

    if logger is not None:
        logger.debug("%d of %d %s symbols are functions", len(symbols), count, kind)
    return symbols
