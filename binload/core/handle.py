"""
Opened Binary Handle
=====================

Scoped, read-only view of an executable on disk.  The file is mapped with
:mod:`mmap` for the duration of a single load and released exactly once,
whichever way the load ends.
"""

from __future__ import annotations

import mmap
import os
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

from binload.core.errors import BinaryNotFoundError, LoadIOError

Buffer = Union[bytes, mmap.mmap]


class OpenedBinary:
    """Exclusive handle on an opened executable file.

    Usage::

        with OpenedBinary.open("/bin/ls") as handle:
            magic = handle.data[:4]

    Attributes:
        filename: Path as given by the caller.
        size: File size in bytes.
    """

    def __init__(self, filename: str, fh: BinaryIO, data: Buffer, size: int) -> None:
        self.filename = filename
        self.size = size
        self._fh: Optional[BinaryIO] = fh
        self._data: Optional[Buffer] = data

    @classmethod
    def open(cls, path: str | os.PathLike[str], *, max_size: int | None = None) -> OpenedBinary:
        """Open and map *path* read-only.

        Raises:
            BinaryNotFoundError: The path does not exist.
            LoadIOError: The path cannot be opened, is too large, or cannot
                be mapped.
        """
        filename = str(path)
        try:
            fh = open(Path(path), "rb")
        except FileNotFoundError as exc:
            raise BinaryNotFoundError(filename, f"failed to open binary ({exc.strerror})") from exc
        except OSError as exc:
            raise LoadIOError(filename, f"failed to open binary ({exc.strerror or exc})") from exc

        try:
            size = os.fstat(fh.fileno()).st_size
            if max_size is not None and size > max_size:
                raise LoadIOError(
                    filename,
                    f"file too large: {size:,} bytes (max: {max_size:,} bytes)",
                )
            if size == 0:
                data: Buffer = b""
            else:
                data = mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ)
        except LoadIOError:
            fh.close()
            raise
        except (OSError, ValueError) as exc:
            fh.close()
            raise LoadIOError(filename, f"failed to map binary ({exc})") from exc

        return cls(filename, fh, data, size)

    @property
    def data(self) -> Buffer:
        """The mapped file contents.

        Raises:
            LoadIOError: The handle has already been closed.
        """
        if self._data is None:
            raise LoadIOError(self.filename, "binary handle already closed")
        return self._data

    @property
    def closed(self) -> bool:
        return self._fh is None

    def close(self) -> None:
        """Release the mapping and the file descriptor.  Idempotent."""
        if self._fh is None:
            return
        data, fh = self._data, self._fh
        self._data = None
        self._fh = None
        try:
            if isinstance(data, mmap.mmap):
                data.close()
        finally:
            fh.close()

    def __enter__(self) -> OpenedBinary:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<OpenedBinary {self.filename!r} {self.size} bytes ({state})>"
