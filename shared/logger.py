"""
Binload Structured Logger
==========================

:class:`BinloadLogger` is the logging facade of the loading pipeline.  Every
record it emits is attributed to the binary being loaded and to the pipeline
stage that produced it, so a load can be followed stage by stage on the Rich
console or in a rotating log file (plain text or JSON lines).

Binary and stage context is kept per thread: concurrent loads that share one
logger never see each other's context.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional

from rich.console import Console, ConsoleRenderable
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
    }
)

# Context attributes attached to every record
_CONTEXT_FIELDS: tuple[str, ...] = ("binary", "stage")


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.WARNING


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


# ============================ Formatters ====================================


class _JSONFormatter(logging.Formatter):
    """Emit each record as one JSON object per line.

    Output fields::

        {
          "timestamp": "2026-01-01T00:00:00+00:00",
          "level": "WARNING",
          "logger": "binload.loader",
          "message": "... continuing without static symbols",
          "binary": "/usr/bin/ls",
          "stage": "extract_symbols",
          "extra": {"error": "SymbolTableReadError"}
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in _CONTEXT_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                entry[attr] = value

        extra = getattr(record, "binload_extra", None)
        if extra:
            entry["extra"] = extra
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class _TextFormatter(logging.Formatter):
    """``timestamp | LEVEL | logger | binary [stage] | message``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(where)s%(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    def format(self, record: logging.LogRecord) -> str:
        binary = getattr(record, "binary", None)
        stage = getattr(record, "stage", None)
        where = binary or ""
        if stage:
            where = f"{where} [{stage}]".lstrip()
        record.where = f"{where} | " if where else ""
        return super().format(record)


class _StageConsoleHandler(RichHandler):
    """Rich handler on stderr that prefixes each message with its stage."""

    def __init__(self, level: int) -> None:
        super().__init__(
            level=level,
            console=Console(theme=_LOG_THEME, stderr=True),
            show_path=False,
            show_time=True,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
        )

    def render_message(self, record: logging.LogRecord, message: str) -> ConsoleRenderable:
        stage = getattr(record, "stage", None)
        if stage:
            message = f"[{stage}] {message}"
        return super().render_message(record, message)


class _Context(threading.local):
    def __init__(self) -> None:
        self.binary: Optional[str] = None
        self.stage: Optional[str] = None


# ============================ BinloadLogger =================================


class BinloadLogger:
    """Stage-aware logger for binload components.

    Usage::

        log = BinloadLogger("loader", log_file="binload.log", json_logs=True)
        with log.binary("/bin/ls"):
            with log.stage("detect"):
                log.debug("Detected %s container", "elf")
            log.warning("Symbol table is corrupt", error="SymbolTableReadError")

    Keyword arguments other than ``exc_info`` passed to the log methods are
    collected into the record's structured ``binload_extra`` mapping.

    Args:
        component: Logger name suffix (``binload.<component>``).
        log_level: Minimum severity (DEBUG, INFO, WARNING, ERROR).
        log_file: Rotating log file; ``None`` disables file logging.
        json_logs: Write JSON lines instead of plain text to *log_file*.
        max_bytes: Size at which the log file is rotated.
        backup_count: Number of rotated files to keep.
        console_output: Attach the Rich stderr handler.
    """

    def __init__(
        self,
        component: str,
        *,
        log_level: str = "WARNING",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
        console_output: bool = True,
    ) -> None:
        self._component = component
        self._context = _Context()
        level = _parse_level(log_level)

        # Unregistered: each instance owns its handlers and level.
        self._logger = logging.Logger(f"binload.{component}", level)
        self._logger.parent = logging.getLogger("binload")
        self._logger.propagate = False

        if console_output:
            self._logger.addHandler(_StageConsoleHandler(level))
        if log_file is not None:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                filename=str(path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            handler.setLevel(level)
            handler.setFormatter(_JSONFormatter() if json_logs else _TextFormatter())
            self._logger.addHandler(handler)

    # ------------------------------------------------------------------ #
    #  Context
    # ------------------------------------------------------------------ #

    @contextmanager
    def binary(self, filename: str) -> Iterator[BinloadLogger]:
        """Attribute every record emitted inside the block to *filename*."""
        ctx = self._context
        previous = ctx.binary
        ctx.binary = filename
        try:
            yield self
        finally:
            ctx.binary = previous

    @contextmanager
    def stage(self, name: str) -> Iterator[BinloadLogger]:
        """Run one pipeline stage.

        Records emitted inside the block carry ``stage=<name>``; the stage's
        duration (or the exception that ended it) is logged at DEBUG.
        """
        ctx = self._context
        previous = ctx.stage
        ctx.stage = name
        start = time.perf_counter()
        try:
            yield self
        except Exception as exc:
            self.debug("Stage failed after %.3f ms: %s", _elapsed_ms(start), type(exc).__name__)
            raise
        else:
            self.debug("Stage completed in %.3f ms", _elapsed_ms(start))
        finally:
            ctx.stage = previous

    @property
    def current_binary(self) -> Optional[str]:
        return self._context.binary

    @property
    def current_stage(self) -> Optional[str]:
        return self._context.stage

    # ------------------------------------------------------------------ #
    #  Log methods
    # ------------------------------------------------------------------ #

    def _log(self, level: int, msg: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)
        extra: dict[str, Any] = {
            "component": self._component,
            "binary": self._context.binary,
            "stage": self._context.stage,
        }
        if kwargs:
            extra["binload_extra"] = kwargs
        self._logger.log(level, msg, *args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def component(self) -> str:
        return self._component

    @property
    def underlying(self) -> logging.Logger:
        """The stdlib :class:`logging.Logger` behind this facade."""
        return self._logger

    def close(self) -> None:
        """Flush and detach every handler.  The logger stays usable but silent."""
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()
