"""Shared fixtures for the binload test suite."""

import logging
from pathlib import Path

import pytest

from binload.core.loader import BinaryLoader
from shared.config import BinloadConfig
from shared.logger import BinloadLogger


class _ListHandler(logging.Handler):
    """Collects log records in memory."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def write_binary(tmp_path):
    """Factory writing raw bytes to a file under ``tmp_path``."""

    def _write(data: bytes, name: str = "sample.bin") -> Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return _write


@pytest.fixture
def quiet_logger():
    """DEBUG-level logger without console output."""
    return BinloadLogger("test", log_level="DEBUG", console_output=False)


@pytest.fixture
def log_records(quiet_logger):
    """Records emitted through ``quiet_logger``."""
    handler = _ListHandler()
    quiet_logger.underlying.addHandler(handler)
    yield handler.records
    quiet_logger.underlying.removeHandler(handler)


@pytest.fixture
def loader(quiet_logger):
    """Loader with default settings and a silent logger."""
    return BinaryLoader(config=BinloadConfig(), logger=quiet_logger)
