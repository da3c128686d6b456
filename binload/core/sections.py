"""Section layout stage."""

from __future__ import annotations

import struct
from typing import Optional

from binload.core.errors import SectionLoadError
from binload.core.models import Section
from binload.parsers.base import FormatParser
from shared.logger import BinloadLogger


def load_sections(
    parser: FormatParser,
    *,
    load_bytes: bool = True,
    logger: Optional[BinloadLogger] = None,
) -> list[Section]:
    """Return the loadable sections of *parser*.

    Section contents are copied out of the file mapping when *load_bytes*
    is set, so the returned sections outlive the opened handle.

    Raises:
        SectionLoadError: The section table or a section's data is invalid.
    """
    try:
        sections = parser.get_sections(load_bytes)
    except (struct.error, IndexError, ValueError) as exc:
        raise SectionLoadError(parser.filename, str(exc) or type(exc).__name__) from exc

    if logger is not None:
        logger.debug(
            "Loaded %d sections (%d bytes of contents)",
            len(sections),
            sum(len(sec.data) for sec in sections),
        )
    return sections
