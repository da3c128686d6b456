"""
Binload Load Orchestrator
==========================

Runs the loading pipeline for one executable and assembles the resulting
:class:`~binload.core.models.Binary`.

Loading Pipeline:
    1. Open and map the file (read-only)
    2. Detect the container flavour via magic bytes
    3. Decode the format headers
    4. Resolve the target architecture
    5. Extract static function symbols (best effort)
    6. Extract dynamic function symbols (best effort)
    7. Load the section layout

Stages 1-4 and 7 are required: a failure there aborts the load with the
stage's :class:`~binload.core.errors.LoadError`.  The symbol stages only log
a warning and leave their sequence empty.  The file is released on every
exit path, and no :class:`Binary` exists until every required stage has
succeeded.
"""

from __future__ import annotations

import os
import threading
import time
from typing import Optional

from binload.core.errors import (
    LoadError,
    LoadOutOfMemoryError,
    NotAnExecutableError,
    SymbolTableReadError,
)
from binload.core.handle import OpenedBinary
from binload.core.models import Binary, BinaryType, Symbol, TypeHint
from binload.core.sections import load_sections
from binload.core.symbols import extract_symbols
from binload.parsers.base import FormatParser
from binload.parsers.elf_parser import ELFParser
from binload.parsers.magic import FormatDetector
from binload.parsers.pe_parser import PEParser
from shared.config import BinloadConfig
from shared.logger import BinloadLogger


# ---------------------------------------------------------------------------
# One-time subsystem initialisation
# ---------------------------------------------------------------------------

_INIT_LOCK = threading.Lock()
_initialized: bool = False
_init_count: int = 0
_PARSERS: dict[BinaryType, type[FormatParser]] = {}
_DETECTOR: Optional[FormatDetector] = None


def ensure_initialized() -> None:
    """Build the parser registry and the shared detector exactly once.

    Safe to call from any number of threads; later calls are no-ops.
    """
    global _initialized, _init_count, _DETECTOR
    if _initialized:
        return
    with _INIT_LOCK:
        if _initialized:
            return
        _PARSERS[BinaryType.ELF] = ELFParser
        _PARSERS[BinaryType.PE] = PEParser
        _DETECTOR = FormatDetector()
        _init_count += 1
        _initialized = True


def _detector() -> FormatDetector:
    ensure_initialized()
    if _DETECTOR is None:
        raise RuntimeError("binload subsystem failed to initialise")
    return _DETECTOR


def init_count() -> int:
    """Number of times the subsystem has actually been initialised."""
    return _init_count


# ---------------------------------------------------------------------------
# BinaryLoader
# ---------------------------------------------------------------------------

class BinaryLoader:
    """Loads ELF and PE executables into :class:`Binary` models.

    Usage::

        loader = BinaryLoader()
        binary = loader.load("/bin/ls")
        print(binary.type_str, hex(binary.entry))
        loader.unload(binary)
    """

    def __init__(
        self,
        config: BinloadConfig | None = None,
        logger: BinloadLogger | None = None,
    ) -> None:
        """Initialise the loader.

        Args:
            config: Binload configuration.  Defaults are used if not provided.
            logger: Logger instance.  A new one is created if not provided.
        """
        self._config: BinloadConfig = config or BinloadConfig()
        self._owns_logger = logger is None
        if logger is None:
            settings = self._config.global_settings
            logger = BinloadLogger(
                "loader",
                log_level="DEBUG" if settings.debug else settings.log_level,
                log_file=settings.log_file,
                json_logs=settings.log_json,
            )
        self._logger: BinloadLogger = logger

    @property
    def config(self) -> BinloadConfig:
        return self._config

    @property
    def logger(self) -> BinloadLogger:
        return self._logger

    def close(self) -> None:
        """Release the log handlers of a logger this loader created itself."""
        if self._owns_logger:
            self._logger.close()

    # ------------------------------------------------------------------ #
    #  Public API
    # ------------------------------------------------------------------ #

    def load(
        self,
        path: str | os.PathLike[str],
        type_hint: TypeHint | str | None = TypeHint.AUTO,
    ) -> Binary:
        """Load the executable at *path*.

        Args:
            path: Filesystem path of the executable.
            type_hint: Expected container format.  Advisory only: when it
                disagrees with detection a warning is logged and the
                detected format wins.

        Returns:
            A fully populated :class:`Binary`.

        Raises:
            LoadError: A required stage failed.  ``str(exc)`` names the
                file and the cause.
        """
        ensure_initialized()
        hint = TypeHint.coerce(type_hint)
        filename = str(path)

        with self._logger.binary(filename):
            try:
                return self._load(filename, hint)
            except LoadError as exc:
                self._logger.info("Load failed: %s", exc, error=type(exc).__name__)
                raise

    def unload(self, binary: Binary) -> None:
        """Release the section buffers and symbol lists of *binary*.

        Calling it again on the same binary does nothing.
        """
        if not binary.is_loaded:
            return
        binary.release()
        self._logger.debug("Unloaded %s", binary.filename)

    # ------------------------------------------------------------------ #
    #  Pipeline
    # ------------------------------------------------------------------ #

    def _load(self, filename: str, hint: TypeHint) -> Binary:
        settings = self._config.loader
        start = time.perf_counter()
        log = self._logger

        with log.stage("open"):
            handle = OpenedBinary.open(filename, max_size=settings.max_file_size)

        with handle:
            with log.stage("detect"):
                binary_type = _detector().detect(handle.data, filename)
                log.debug("Detected %s container", binary_type.value)
                if not hint.matches(binary_type) and settings.warn_on_hint_mismatch:
                    log.warning(
                        "%s: type hint '%s' does not match detected format '%s'; "
                        "using detected format",
                        filename,
                        hint.value,
                        binary_type.value,
                    )

            parser = _PARSERS[binary_type](
                handle.data, filename, max_symbols=settings.max_symbols
            )

            with log.stage("parse_headers"):
                parser.parse_headers()

            with log.stage("resolve_arch"):
                arch, bits, arch_str = parser.resolve_arch()
                log.debug("Architecture %s (%d-bit), target %s", arch_str, bits, parser.type_str)

            with log.stage("extract_symbols"):
                symbols = self._best_effort_symbols(parser, dynamic=False)

            with log.stage("extract_dynamic_symbols"):
                dynamic_symbols = self._best_effort_symbols(parser, dynamic=True)

            with log.stage("load_sections"):
                sections = load_sections(
                    parser, load_bytes=settings.load_section_bytes, logger=log
                )

            with log.stage("build"):
                try:
                    binary = Binary(
                        filename=filename,
                        entry=parser.entry,
                        type=binary_type,
                        type_str=parser.type_str,
                        arch=arch,
                        bits=bits,
                        arch_str=arch_str,
                        symbols=symbols,
                        dynamic_symbols=dynamic_symbols,
                        sections=sections,
                    )
                except ValueError as exc:
                    raise NotAnExecutableError(filename, f"inconsistent headers ({exc})") from exc

        log.info(
            "Loaded %s: %s, %d symbols, %d dynamic symbols, %d sections (%.1f ms)",
            filename,
            binary.type_str,
            len(binary.symbols),
            len(binary.dynamic_symbols),
            len(binary.sections),
            (time.perf_counter() - start) * 1000.0,
        )
        return binary

    def _best_effort_symbols(self, parser: FormatParser, *, dynamic: bool) -> list[Symbol]:
        """Run a symbol stage, degrading to an empty list on a corrupt table."""
        try:
            return extract_symbols(parser, dynamic=dynamic, logger=self._logger)
        except (SymbolTableReadError, LoadOutOfMemoryError) as exc:
            self._logger.warning(
                "%s; continuing without %s symbols",
                exc,
                "dynamic" if dynamic else "static",
            )
            return []


# ---------------------------------------------------------------------------
# Module-level convenience
# ---------------------------------------------------------------------------

_DEFAULT_LOADER: Optional[BinaryLoader] = None
_DEFAULT_LOCK = threading.Lock()


def _default_loader() -> BinaryLoader:
    global _DEFAULT_LOADER
    with _DEFAULT_LOCK:
        if _DEFAULT_LOADER is None:
            _DEFAULT_LOADER = BinaryLoader()
        return _DEFAULT_LOADER


def load_binary(
    path: str | os.PathLike[str],
    type_hint: TypeHint | str | None = TypeHint.AUTO,
    *,
    config: BinloadConfig | None = None,
    logger: BinloadLogger | None = None,
) -> Binary:
    """Load the executable at *path* into a :class:`Binary`.

    A dedicated :class:`BinaryLoader` is used when *config* or *logger* is
    given; otherwise a shared default loader handles the call.

    Raises:
        LoadError: The file could not be loaded.
    """
    if config is None and logger is None:
        return _default_loader().load(path, type_hint)
    loader = BinaryLoader(config=config, logger=logger)
    try:
        return loader.load(path, type_hint)
    finally:
        loader.close()


def unload_binary(binary: Binary) -> None:
    """Release what *binary* retains.  Idempotent."""
    binary.release()
